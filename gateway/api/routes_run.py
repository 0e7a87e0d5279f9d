# ==============================
# Run, Gate & Admin Routes
# ==============================
from __future__ import annotations

from pathlib import Path
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Request, status
from fastapi.responses import FileResponse, Response, StreamingResponse
from pydantic import BaseModel, Field

from gateway.api.deps import get_engine
from gateway.api.event_stream import RunEventFeed, stream_run_events
from runledger.contracts.review_schema import MAX_NOTES_CHARS
from runledger.contracts.run_schema import RunOperationResult
from runledger.errors import RunNotFoundError
from runledger.orchestrator.engine import RunEngine


router = APIRouter()


class CreateRunRequest(BaseModel):
    topic: str = Field(...)
    settings: Dict[str, Any] = Field(default_factory=dict)


class ReviewRequest(BaseModel):
    status: str = Field(..., description="approve | request_changes | regenerate")
    notes: str = Field(default="", max_length=MAX_NOTES_CHARS)
    requested_changes: List[Dict[str, Any]] = Field(default_factory=list)


class ResumeRequest(BaseModel):
    gate_id: Optional[str] = Field(default=None)
    mode: Optional[str] = Field(default=None, description="resume | regenerate")


class RerunRequest(BaseModel):
    start_from: str = Field(...)


class CleanupRequest(BaseModel):
    keep_last: Optional[int] = Field(default=None)
    dry_run: bool = Field(default=False)


class SloPolicyRequest(BaseModel):
    thresholds_ms: Dict[str, Any] = Field(default_factory=dict)


_STATUS_BY_CODE = {
    "not_found": status.HTTP_404_NOT_FOUND,
    "conflict": status.HTTP_409_CONFLICT,
    "invalid_state": status.HTTP_409_CONFLICT,
    "internal_error": status.HTTP_500_INTERNAL_SERVER_ERROR,
}


def _ok(data: Dict[str, Any], *, meta: Dict[str, Any] | None = None) -> Dict[str, Any]:
    return {"ok": True, "data": data, "error": None, "meta": meta or {}}


def _error(
    *,
    http_status: int,
    code: str,
    message: str,
    details: Dict[str, Any] | None = None,
    meta: Dict[str, Any] | None = None,
) -> Dict[str, Any]:
    payload = {
        "ok": False,
        "data": None,
        "error": {"code": code, "message": message, "details": details or {}},
        "meta": meta or {},
    }
    raise HTTPException(status_code=http_status, detail=payload)


def _respond(result: RunOperationResult, *, meta: Dict[str, Any] | None = None) -> Dict[str, Any]:
    if result.ok:
        return _ok(result.data or {}, meta=meta)
    error = result.error
    if error is None:
        _error(
            http_status=status.HTTP_500_INTERNAL_SERVER_ERROR,
            code="unknown_error",
            message="Unknown failure.",
            meta=meta,
        )
    _error(
        http_status=_STATUS_BY_CODE.get(error.code, status.HTTP_400_BAD_REQUEST),
        code=error.code,
        message=error.message,
        details=error.details,
        meta=meta,
    )


# ==============================
# Runs
# ==============================
@router.post("/runs")
def create_run(req: CreateRunRequest, engine: RunEngine = Depends(get_engine)) -> Dict[str, Any]:
    return _respond(engine.create_run(topic=req.topic, settings=req.settings))


@router.get("/runs")
def list_runs(engine: RunEngine = Depends(get_engine)) -> Dict[str, Any]:
    return _respond(engine.list_runs())


@router.get("/runs/{run_id}")
def get_run(run_id: str, engine: RunEngine = Depends(get_engine)) -> Dict[str, Any]:
    return _respond(engine.get_run(run_id=run_id), meta={"run_id": run_id})


@router.post("/runs/{run_id}/cancel")
def cancel_run(run_id: str, engine: RunEngine = Depends(get_engine)) -> Dict[str, Any]:
    return _respond(engine.cancel_run(run_id=run_id), meta={"run_id": run_id})


@router.post("/runs/{run_id}/rerun")
def rerun(run_id: str, req: RerunRequest, engine: RunEngine = Depends(get_engine)) -> Dict[str, Any]:
    return _respond(engine.rerun(run_id=run_id, start_from=req.start_from), meta={"run_id": run_id})


# ==============================
# Gates
# ==============================
@router.get("/runs/{run_id}/gates")
def gate_history(run_id: str, engine: RunEngine = Depends(get_engine)) -> Dict[str, Any]:
    return _respond(engine.gate_history(run_id=run_id), meta={"run_id": run_id})


@router.post("/runs/{run_id}/gates/{gate_id}/submit")
def submit_review(
    run_id: str,
    gate_id: str,
    req: ReviewRequest,
    engine: RunEngine = Depends(get_engine),
) -> Dict[str, Any]:
    res = engine.submit_review(
        run_id=run_id,
        gate_id=gate_id,
        status=req.status,
        notes=req.notes,
        requested_changes=req.requested_changes,
    )
    return _respond(res, meta={"run_id": run_id, "gate_id": gate_id})


@router.post("/runs/{run_id}/resume")
def resume_run(
    run_id: str,
    req: Optional[ResumeRequest] = None,
    engine: RunEngine = Depends(get_engine),
) -> Dict[str, Any]:
    req = req or ResumeRequest()
    res = engine.resume_run(run_id=run_id, gate_id=req.gate_id, mode=req.mode)
    return _respond(res, meta={"run_id": run_id})


# ==============================
# Artifacts
# ==============================
@router.get("/runs/{run_id}/artifacts")
def list_artifacts(run_id: str, engine: RunEngine = Depends(get_engine)) -> Dict[str, Any]:
    return _respond(engine.list_artifacts(run_id=run_id), meta={"run_id": run_id})


@router.get("/runs/{run_id}/artifacts/{name}")
def get_artifact(run_id: str, name: str, engine: RunEngine = Depends(get_engine)) -> FileResponse:
    data = _respond(engine.locate_artifact(run_id=run_id, name=name), meta={"run_id": run_id})["data"]
    return FileResponse(Path(data["path"]), filename=name)


@router.get("/runs/{run_id}/export")
def export_run(run_id: str, engine: RunEngine = Depends(get_engine)) -> Response:
    data = _respond(engine.export_run(run_id=run_id), meta={"run_id": run_id})["data"]
    return Response(
        content=data["content"],
        media_type="application/zip",
        headers={"Content-Disposition": f'attachment; filename="{data["filename"]}"'},
    )


# ==============================
# Live Events
# ==============================
@router.get("/runs/{run_id}/events")
async def stream_events(run_id: str, request: Request, engine: RunEngine = Depends(get_engine)) -> StreamingResponse:
    feed = RunEventFeed()
    try:
        subscription = engine.subscribe_events(run_id=run_id, handler=feed.push)
    except RunNotFoundError as exc:
        _error(http_status=status.HTTP_404_NOT_FOUND, code=exc.code, message=exc.message, details=exc.details)
    stream = stream_run_events(
        request,
        feed,
        subscription,
        is_settled=lambda: engine.is_settled(run_id),
        ping_seconds=engine.settings.app.stream_ping_seconds,
    )
    return StreamingResponse(
        stream,
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "Connection": "keep-alive"},
    )


# ==============================
# Admin
# ==============================
@router.get("/admin/retention")
def retention(keep_last: Optional[int] = None, engine: RunEngine = Depends(get_engine)) -> Dict[str, Any]:
    return _respond(engine.retention(keep_last=keep_last))


@router.post("/admin/cleanup")
def cleanup(req: Optional[CleanupRequest] = None, engine: RunEngine = Depends(get_engine)) -> Dict[str, Any]:
    req = req or CleanupRequest()
    return _respond(engine.cleanup(keep_last=req.keep_last, dry_run=req.dry_run))


@router.get("/slo-policy")
def get_slo_policy(engine: RunEngine = Depends(get_engine)) -> Dict[str, Any]:
    return _respond(engine.get_slo_policy())


@router.put("/slo-policy")
def set_slo_policy(req: SloPolicyRequest, engine: RunEngine = Depends(get_engine)) -> Dict[str, Any]:
    return _respond(engine.set_slo_policy(thresholds_ms=req.thresholds_ms))
