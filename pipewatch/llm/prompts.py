"""
Fix CI Prompts
==============
Turns a finished pipeline monitor into a "Fix CI" prompt for the coding
assistant.

Prompt Design Rules:
    - Identify the target precisely: platform, repo, branch, short commit
    - Lead with the categorised error and one-line summary when known
    - List ONLY failed jobs and their failed steps from the first failed run
    - Include at most the last 200 log lines (the tail holds the error)
    - Close with a fixed instruction: diagnose root cause, minimum change

compose_fix_ci_prompt() is pure: no I/O, same input → same text. Logs are
fetched separately (PipelineMonitorService.fetch_job_logs) and passed in.
"""
from typing import List, Optional

from pipewatch.core.constants import PROMPT_LOG_LINES
from pipewatch.models.pipeline_monitor import PipelineMonitor
from pipewatch.parser.classification import format_error_category


PLATFORM_LABELS = {
    "github": "GitHub Actions",
    "gitlab": "GitLab CI",
}

RUN_LABELS = {
    "github": "Workflow",
    "gitlab": "Pipeline",
}

CLOSING_INSTRUCTION = (
    "Please diagnose and fix the CI failure. Look at the error output above, "
    "identify the root cause, and make the minimum changes needed to pass CI."
)


def _log_excerpt(logs: str, max_lines: int = PROMPT_LOG_LINES) -> str:
    return "\n".join(logs.split("\n")[-max_lines:])


def compose_fix_ci_prompt(monitor: PipelineMonitor, logs: Optional[str] = None) -> str:
    """
    Build the Fix CI prompt for a monitor.

    Parameters
    ----------
    monitor : PipelineMonitor
        Usually a "failed" monitor; any status renders.
    logs : str, optional
        Raw job log text. Only the last 200 lines are embedded.

    Returns
    -------
    str
        Markdown prompt text.
    """
    parts: List[str] = [
        "## Fix CI Failure",
        "",
        f"**Platform:** {PLATFORM_LABELS.get(monitor.platform, monitor.platform)}",
        f"**Repository:** {monitor.project_path}",
        f"**Branch:** {monitor.branch}",
        f"**Commit:** {monitor.short_sha}",
    ]

    if monitor.error_category:
        parts.append(f"**Error Category:** {format_error_category(monitor.error_category)}")

    if monitor.error_summary:
        parts.append(f"**Error:** {monitor.error_summary}")

    failed_run = monitor.first_failed_run()
    if failed_run:
        parts.append("")
        parts.append(f"### Failed {RUN_LABELS.get(monitor.platform, 'Workflow')}: {failed_run.name}")
        for job in failed_run.failed_jobs():
            parts.append(f"- **{job.name}**")
            for step in job.steps:
                if step.conclusion == "failure":
                    parts.append(f"  - Step {step.number}: {step.name} (FAILED)")

    if logs:
        parts.append("")
        parts.append(f"### CI Logs (last {PROMPT_LOG_LINES} lines)")
        parts.append("```")
        parts.append(_log_excerpt(logs))
        parts.append("```")

    parts.append("")
    parts.append(CLOSING_INSTRUCTION)

    return "\n".join(parts)
