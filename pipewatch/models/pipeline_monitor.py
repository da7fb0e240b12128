"""
Pipeline Monitor Model
======================
Pydantic model for one push-to-CI-completion observation.

This is the record persisted to the monitors file and broadcast to the UI.

Fields:
    id              — opaque uuid hex
    session_id      — owning chat session (events are broadcast to it)
    workspace_id    — optional, scopes credential lookup
    platform        — "github" | "gitlab"
    owner / repo    — repository coordinates (GitLab: group path / project)
    branch          — pushed branch
    commit_sha      — pushed commit
    status          — see MonitorStatus; only ever leaves "polling" once
    runs            — latest relevant runs, replaced wholesale per poll
    poll_count      — successful + transient-failed polls so far
    timestamps      — started_at, last_poll_at, completed_at
    failed_job_id   — set on "failed" when a failed job was found
    error_category  — set on "failed" (see parser/classification.py)
    error_summary   — one-line failure summary, or the provider error text on "error"
"""
from datetime import datetime
from typing import List, Literal, Optional
from pydantic import BaseModel

from pipewatch.core.constants import TERMINAL_STATUSES
from pipewatch.models.workflow_run import WorkflowRun

Platform = Literal["github", "gitlab"]

MonitorStatus = Literal[
    "polling",
    "success",
    "failed",
    "stalled",
    "error",
    "stopped",
]

ErrorCategory = Literal[
    "test_failure",
    "build_error",
    "lint_error",
    "type_error",
    "timeout",
    "unknown",
]


class MonitorTimestamps(BaseModel):
    started_at: datetime
    last_poll_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None


class PipelineMonitor(BaseModel):
    id: str
    session_id: str
    workspace_id: Optional[str] = None

    platform: Platform
    owner: str
    repo: str
    branch: str
    commit_sha: str

    status: MonitorStatus = "polling"
    runs: List[WorkflowRun] = []
    poll_count: int = 0
    timestamps: MonitorTimestamps

    failed_job_id: Optional[int] = None
    error_category: Optional[ErrorCategory] = None
    error_summary: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def project_path(self) -> str:
        return f"{self.owner}/{self.repo}"

    @property
    def short_sha(self) -> str:
        return self.commit_sha[:7]

    def first_failed_run(self) -> Optional[WorkflowRun]:
        return next((r for r in self.runs if r.is_failed), None)
