"""
Build API endpoints.

POST /builds                     queue a build
GET  /builds                     list builds
GET  /builds/{build_id}/status   best-known build state
GET  /builds/{build_id}/logs     all stage logs, every attempt
POST /builds/{build_id}/cancel   cancel a queued or running build
POST /builds/{build_id}/rebuild  queue a new build from an existing one
GET  /builds/{build_id}/artifact download the packaged output
"""
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from fastapi.responses import FileResponse

from buildforge.core.errors import ConfigurationError
from buildforge.core.queue import CancelOutcome
from buildforge.core.service import BuildService
from buildforge.core.tracker import BuildNotFoundError
from buildforge.schemas.build import (
    BuildListResponse,
    BuildLogsView,
    BuildRequest,
    BuildStatus,
    BuildStatusView,
    CancelResult,
    EnqueueResult,
)


router = APIRouter(prefix="/builds", tags=["builds"])


def get_service(request: Request) -> BuildService:
    """Build service wired at application startup."""
    return request.app.state.engine.service


@router.post("", status_code=202, response_model=EnqueueResult)
def trigger_build(
    body: BuildRequest,
    service: BuildService = Depends(get_service),
) -> EnqueueResult:
    """
    Queue a build.

    Returns immediately with build_id and queue position. Poll
    GET /builds/{build_id}/status for progress.
    """
    try:
        return service.queue_build(body)
    except ConfigurationError as e:
        raise HTTPException(status_code=422, detail={"message": e.message, "reason": e.reason})


@router.get("", response_model=BuildListResponse)
def list_builds(
    project_id: Optional[str] = Query(default=None),
    status: Optional[BuildStatus] = Query(default=None),
    limit: int = Query(default=20, ge=1, le=100),
    offset: int = Query(default=0, ge=0),
    service: BuildService = Depends(get_service),
) -> BuildListResponse:
    return service.list_builds(project_id=project_id, status=status, limit=limit, offset=offset)


@router.get("/{build_id}/status", response_model=BuildStatusView)
def get_build_status(build_id: str, service: BuildService = Depends(get_service)) -> BuildStatusView:
    view = service.get_build_status(build_id)
    if view is None:
        raise HTTPException(status_code=404, detail="Build not found")
    return view


@router.get("/{build_id}/logs", response_model=BuildLogsView)
def get_build_logs(build_id: str, service: BuildService = Depends(get_service)) -> BuildLogsView:
    logs = service.get_build_logs(build_id)
    if not logs.exists:
        raise HTTPException(status_code=404, detail="Build not found")
    return logs


@router.post("/{build_id}/cancel", response_model=CancelResult)
def cancel_build(build_id: str, service: BuildService = Depends(get_service)) -> CancelResult:
    """
    Cancel a build. Queued builds are cancelled immediately; running builds
    are stopped by their worker shortly after (outcome "cancel_requested").
    """
    result = service.cancel_build(build_id)
    if result.outcome == CancelOutcome.NOT_FOUND.value:
        raise HTTPException(status_code=404, detail="Build not found")
    if result.outcome == CancelOutcome.ALREADY_TERMINAL.value:
        raise HTTPException(
            status_code=409,
            detail=f"Build already finished with status {result.status.value}",
        )
    return result


@router.post("/{build_id}/rebuild", status_code=202, response_model=EnqueueResult)
def rebuild(build_id: str, service: BuildService = Depends(get_service)) -> EnqueueResult:
    try:
        return service.rebuild(build_id)
    except BuildNotFoundError:
        raise HTTPException(status_code=404, detail="Build not found")
    except ConfigurationError as e:
        raise HTTPException(status_code=422, detail={"message": e.message, "reason": e.reason})


@router.get("/{build_id}/artifact")
def download_artifact(build_id: str, service: BuildService = Depends(get_service)) -> FileResponse:
    path = service.get_artifact_path(build_id)
    if path is None:
        raise HTTPException(status_code=404, detail="Artifact not found")
    return FileResponse(path=path, media_type="application/gzip", filename=path.name)
