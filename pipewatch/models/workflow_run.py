"""
Workflow Run Model
==================
Provider-neutral view of one CI pipeline execution.

GitHub Actions workflow runs and GitLab pipelines are both normalised into
WorkflowRun → WorkflowJob → WorkflowStep. These are snapshots: every poll
builds fresh instances and replaces the monitor's list, nothing is patched
in place (models are frozen).

Vocabulary:
    status      — "queued" | "in_progress" | "completed" (unknown provider
                  values pass through unchanged)
    conclusion  — "success" | "failure" | "cancelled" | "skipped" | "timed_out" | ...
                  None until the provider reports the item completed
"""
from typing import List, Optional
from pydantic import BaseModel, ConfigDict


class WorkflowStep(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str
    status: str
    conclusion: Optional[str] = None
    number: int = 1


class WorkflowJob(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int
    name: str
    status: str
    conclusion: Optional[str] = None
    steps: List[WorkflowStep] = []

    def first_failed_step(self) -> Optional[WorkflowStep]:
        return next((s for s in self.steps if s.conclusion == "failure"), None)


class WorkflowRun(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int
    name: str
    status: str
    conclusion: Optional[str] = None
    head_branch: str = ""
    head_sha: str = ""
    html_url: str = ""
    jobs: List[WorkflowJob] = []

    @property
    def is_completed(self) -> bool:
        return self.status == "completed"

    @property
    def is_failed(self) -> bool:
        return self.conclusion == "failure"

    def failed_jobs(self) -> List[WorkflowJob]:
        return [j for j in self.jobs if j.conclusion == "failure"]
