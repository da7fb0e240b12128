from datetime import datetime, timezone

from pipewatch.llm.prompts import CLOSING_INSTRUCTION, compose_fix_ci_prompt
from pipewatch.models.pipeline_monitor import MonitorTimestamps, PipelineMonitor
from pipewatch.models.workflow_run import WorkflowJob, WorkflowRun, WorkflowStep


def _failed_monitor(platform="github", **overrides):
    failed_job = WorkflowJob(id=555, name="test", status="completed", conclusion="failure", steps=[
        WorkflowStep(name="checkout", status="completed", conclusion="success", number=1),
        WorkflowStep(name="jest", status="completed", conclusion="failure", number=3),
    ])
    passing_job = WorkflowJob(id=556, name="lint", status="completed", conclusion="success")
    fields = dict(
        id="m1",
        session_id="s1",
        platform=platform,
        owner="acme",
        repo="widgets",
        branch="main",
        commit_sha="abc1234def5678",
        status="failed",
        runs=[
            WorkflowRun(id=1, name="Docs", status="completed", conclusion="success"),
            WorkflowRun(id=2, name="CI", status="completed", conclusion="failure",
                        jobs=[passing_job, failed_job]),
        ],
        timestamps=MonitorTimestamps(
            started_at=datetime(2026, 3, 1, tzinfo=timezone.utc),
            completed_at=datetime(2026, 3, 1, 0, 5, tzinfo=timezone.utc),
        ),
        failed_job_id=555,
        error_category="test_failure",
        error_summary='Job "test" failed at step "jest"',
    )
    fields.update(overrides)
    return PipelineMonitor(**fields)


def test_prompt_header_and_identifiers():
    lines = compose_fix_ci_prompt(_failed_monitor()).split("\n")

    assert lines[:6] == [
        "## Fix CI Failure",
        "",
        "**Platform:** GitHub Actions",
        "**Repository:** acme/widgets",
        "**Branch:** main",
        "**Commit:** abc1234",
    ]
    assert "**Error Category:** test failure" in lines
    assert '**Error:** Job "test" failed at step "jest"' in lines
    assert lines[-1] == CLOSING_INSTRUCTION


def test_prompt_lists_only_failed_jobs_and_steps():
    prompt = compose_fix_ci_prompt(_failed_monitor())

    assert "### Failed Workflow: CI" in prompt
    assert "- **test**" in prompt
    assert "  - Step 3: jest (FAILED)" in prompt
    assert "- **lint**" not in prompt
    assert "checkout" not in prompt
    assert "Docs" not in prompt


def test_prompt_gitlab_labels():
    prompt = compose_fix_ci_prompt(_failed_monitor(platform="gitlab"))
    assert "**Platform:** GitLab CI" in prompt
    assert "### Failed Pipeline: CI" in prompt


def test_prompt_includes_last_200_log_lines():
    logs = "\n".join(f"log {i}" for i in range(300))
    lines = compose_fix_ci_prompt(_failed_monitor(), logs).split("\n")

    start = lines.index("### CI Logs (last 200 lines)")
    assert lines[start + 1] == "```"
    assert lines[start + 2] == "log 100"
    assert lines[start + 201] == "log 299"
    assert lines[start + 202] == "```"
    assert "log 99" not in lines


def test_prompt_without_logs_or_failure_metadata():
    monitor = _failed_monitor(
        status="success", runs=[], error_category=None, error_summary=None, failed_job_id=None,
    )
    prompt = compose_fix_ci_prompt(monitor)

    assert "CI Logs" not in prompt
    assert "Error Category" not in prompt
    assert "### Failed" not in prompt
    assert prompt.endswith(CLOSING_INSTRUCTION)


def test_prompt_is_deterministic():
    monitor = _failed_monitor()
    assert compose_fix_ci_prompt(monitor, "x") == compose_fix_ci_prompt(monitor, "x")
