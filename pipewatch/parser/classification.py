"""
Classification
==============
Maps a failed CI job to one of the six error categories.

Allowed Categories:
    test_failure, build_error, lint_error, type_error, timeout, unknown

Classification Strategy:
    1. Look only at the job name and the FIRST failed step name
    2. Case-insensitive substring match against keyword tables
    3. Tables evaluated in fixed priority order; first hit wins
       ("build-and-test" is a test_failure, not a build_error)
    4. NEVER log-content inference here — logs are fetched on demand only

GitLab jobs carry a single synthetic step named after the stage, so step
keywords match stage names there ("test", "build", "lint") rather than tool
names. That loss of precision is accepted.
"""
from typing import Optional

from pipewatch.models.pipeline_monitor import ErrorCategory
from pipewatch.models.workflow_run import WorkflowJob


# ---------------------------------------------------------------------------
# Keyword Tables
# ---------------------------------------------------------------------------
# Each entry: (category, job-name keywords, step-name keywords)
_KEYWORD_TABLE: list[tuple[ErrorCategory, tuple[str, ...], tuple[str, ...]]] = [
    ("test_failure", ("test",),           ("test", "jest", "vitest", "pytest", "rspec")),
    ("build_error",  ("build", "compile"), ("build", "compile")),
    ("lint_error",   ("lint",),           ("lint", "eslint", "prettier", "rubocop")),
    ("type_error",   ("type", "tsc"),     ("type-check", "tsc", "mypy")),
]

_TIMEOUT_CONCLUSION = "timed_out"
_TIMEOUT_STEP_KEYWORD = "timeout"


def _contains_any(text: str, keywords: tuple[str, ...]) -> bool:
    return any(kw in text for kw in keywords)


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------
def categorize_job(job: WorkflowJob) -> ErrorCategory:
    """
    Classify a failed job into an error category.

    Parameters
    ----------
    job : WorkflowJob
        The failed job, with whatever step detail the provider exposed.

    Returns
    -------
    ErrorCategory
        First category whose keywords match, "timeout" for timed-out jobs,
        otherwise "unknown".
    """
    name = job.name.lower()
    failed_step = job.first_failed_step()
    step_name = failed_step.name.lower() if failed_step else ""

    for category, name_keywords, step_keywords in _KEYWORD_TABLE:
        if _contains_any(name, name_keywords) or _contains_any(step_name, step_keywords):
            return category

    if job.conclusion == _TIMEOUT_CONCLUSION or _TIMEOUT_STEP_KEYWORD in step_name:
        return "timeout"

    return "unknown"


def summarize_job_failure(job: WorkflowJob) -> str:
    """One-line summary naming the job and, when known, the failing step."""
    failed_step = job.first_failed_step()
    if failed_step:
        return f'Job "{job.name}" failed at step "{failed_step.name}"'
    return f'Job "{job.name}" failed'


def format_error_category(category: Optional[str]) -> str:
    """Human label for a category ("test_failure" → "test failure")."""
    if not category:
        return ""
    return category.replace("_", " ")
