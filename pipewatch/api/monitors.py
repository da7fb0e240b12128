"""
Pipeline Monitor API
====================
HTTP + WebSocket surface over PipelineMonitorService.

Routes:
    POST   /api/pipeline-monitors                         start monitoring a push
    GET    /api/pipeline-monitors                         list every monitor
    GET    /api/pipeline-monitors/{id}                    one monitor
    POST   /api/pipeline-monitors/{id}/stop               stop polling
    DELETE /api/pipeline-monitors/{id}                    forget a monitor
    GET    /api/pipeline-monitors/{id}/jobs/{job}/logs    last 2000 log lines
    POST   /api/pipeline-monitors/{id}/fix-prompt         Fix CI prompt text
    GET    /api/sessions/{session_id}/pipeline-monitor    the session's current monitor
    WS     /ws/sessions/{session_id}                      live pipeline:* events

The service and broadcaster are read from app.state (set in main.py's
lifespan), never from module globals.
"""
import logging
from typing import List, Optional

import httpx
from fastapi import APIRouter, Depends, HTTPException, Request, WebSocket, WebSocketDisconnect
from fastapi.responses import PlainTextResponse
from pydantic import BaseModel, field_validator

from pipewatch.agents.pipeline_monitor import PipelineMonitorService, StartMonitorOptions
from pipewatch.models.pipeline_monitor import PipelineMonitor, Platform
from pipewatch.services.ci_providers import MissingTokenError, ProviderError
from pipewatch.services.monitor_store import MonitorCapacityError, MonitorNotFoundError

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Pipeline Monitor"])


# ---------------------------------------------------------------------------
# Request / Response schemas
# ---------------------------------------------------------------------------
class StartMonitorRequest(BaseModel):
    session_id: str
    platform: Platform
    owner: str
    repo: str
    branch: str
    commit_sha: str
    workspace_id: Optional[str] = None

    @field_validator("session_id", "owner", "repo", "branch", "commit_sha")
    @classmethod
    def not_blank(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("must not be empty")
        return v


class FixPromptRequest(BaseModel):
    logs: Optional[str] = None


class FixPromptResponse(BaseModel):
    monitor_id: str
    prompt: str


# ---------------------------------------------------------------------------
# Dependencies
# ---------------------------------------------------------------------------
def get_monitor_service(request: Request) -> PipelineMonitorService:
    return request.app.state.monitor_service


def _require_monitor(service: PipelineMonitorService, monitor_id: str) -> PipelineMonitor:
    monitor = service.get_monitor(monitor_id)
    if monitor is None:
        raise HTTPException(status_code=404, detail=f"Monitor {monitor_id} not found")
    return monitor


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------
@router.post("/api/pipeline-monitors", response_model=PipelineMonitor, status_code=201)
async def start_monitor(
    body: StartMonitorRequest,
    service: PipelineMonitorService = Depends(get_monitor_service),
):
    try:
        return service.start_monitor(StartMonitorOptions(**body.model_dump()))
    except MonitorCapacityError as e:
        logger.warning("[API] Rejected monitor for %s/%s: %s", body.owner, body.repo, e)
        raise HTTPException(status_code=409, detail=str(e))


@router.get("/api/pipeline-monitors", response_model=List[PipelineMonitor])
async def list_monitors(service: PipelineMonitorService = Depends(get_monitor_service)):
    return service.list_monitors()


@router.get("/api/pipeline-monitors/{monitor_id}", response_model=PipelineMonitor)
async def get_monitor(monitor_id: str, service: PipelineMonitorService = Depends(get_monitor_service)):
    return _require_monitor(service, monitor_id)


@router.post("/api/pipeline-monitors/{monitor_id}/stop", response_model=PipelineMonitor)
async def stop_monitor(monitor_id: str, service: PipelineMonitorService = Depends(get_monitor_service)):
    monitor = service.stop_monitor(monitor_id)
    if monitor is None:
        raise HTTPException(status_code=404, detail=f"Monitor {monitor_id} not found")
    return monitor


@router.delete("/api/pipeline-monitors/{monitor_id}", status_code=204)
async def delete_monitor(monitor_id: str, service: PipelineMonitorService = Depends(get_monitor_service)):
    if not service.delete_monitor(monitor_id):
        raise HTTPException(status_code=404, detail=f"Monitor {monitor_id} not found")


@router.get("/api/pipeline-monitors/{monitor_id}/jobs/{job_id}/logs", response_class=PlainTextResponse)
async def get_job_logs(
    monitor_id: str,
    job_id: int,
    service: PipelineMonitorService = Depends(get_monitor_service),
):
    try:
        return await service.fetch_job_logs(monitor_id, job_id)
    except MonitorNotFoundError:
        raise HTTPException(status_code=404, detail=f"Monitor {monitor_id} not found")
    except MissingTokenError as e:
        raise HTTPException(status_code=424, detail=str(e))
    except (ProviderError, httpx.HTTPError) as e:
        logger.error("[API] Log fetch failed for %s job %s: %s", monitor_id, job_id, e)
        raise HTTPException(status_code=502, detail=str(e) or "CI provider unreachable")


@router.post("/api/pipeline-monitors/{monitor_id}/fix-prompt", response_model=FixPromptResponse)
async def fix_prompt(
    monitor_id: str,
    body: FixPromptRequest,
    service: PipelineMonitorService = Depends(get_monitor_service),
):
    try:
        prompt = service.compose_fix_prompt(monitor_id, body.logs)
    except MonitorNotFoundError:
        raise HTTPException(status_code=404, detail=f"Monitor {monitor_id} not found")
    return FixPromptResponse(monitor_id=monitor_id, prompt=prompt)


@router.get("/api/sessions/{session_id}/pipeline-monitor", response_model=PipelineMonitor)
async def get_session_monitor(session_id: str, service: PipelineMonitorService = Depends(get_monitor_service)):
    monitor = service.get_monitor_by_session(session_id)
    if monitor is None:
        raise HTTPException(status_code=404, detail=f"No pipeline monitor for session {session_id}")
    return monitor


@router.websocket("/ws/sessions/{session_id}")
async def session_events(websocket: WebSocket, session_id: str):
    broadcaster = websocket.app.state.broadcaster
    await websocket.accept()
    queue = broadcaster.subscribe(session_id)
    try:
        while True:
            envelope = await queue.get()
            await websocket.send_json(envelope)
    except WebSocketDisconnect:
        logger.debug("WebSocket for session %s disconnected", session_id)
    finally:
        broadcaster.unsubscribe(session_id, queue)
