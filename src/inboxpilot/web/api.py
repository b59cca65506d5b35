"""REST routes: function invocation, job/run polling and the SSE event stream."""

from __future__ import annotations

import asyncio
import json
import logging

from fastapi import APIRouter, Body, Depends, HTTPException
from fastapi.responses import JSONResponse
from pydantic import ValidationError
from sse_starlette.sse import EventSourceResponse

from inboxpilot import invoker as invoker_module
from inboxpilot.errors import ConfigurationError, InboxPilotError, NotFoundError
from inboxpilot.handlers import HANDLERS, PUBLIC_HANDLERS
from inboxpilot.invoker import subscribe_events, unsubscribe_events
from inboxpilot.web.auth import AuthContext, require_auth
from inboxpilot.web.db import SessionLocal
from inboxpilot.web.models import CompetitorResearchJob, EmailImportJob, PipelineRun
from inboxpilot.web.schemas import REQUEST_MODELS, FunctionRequest

logger = logging.getLogger(__name__)

router = APIRouter(tags=["api"])


def _error(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"success": False, "error": message})


def _row_dict(obj) -> dict:
    return {col.name: getattr(obj, col.name) for col in obj.__table__.columns}


@router.post("/functions/{name}")
def call_function(name: str, body: dict = Body(default={}), auth: AuthContext = Depends(require_auth)):
    """Run a handler synchronously and return its JSON result."""
    if name not in HANDLERS:
        raise HTTPException(404, f"Unknown function: {name}")
    if not auth.is_service and name not in PUBLIC_HANDLERS:
        raise HTTPException(403, f"{name} requires the service token")

    model = REQUEST_MODELS.get(name, FunctionRequest)
    if not auth.is_service and not body.get("workspace_id"):
        body = {**body, "workspace_id": auth.workspace_id}
    try:
        request = model.model_validate(body)
    except ValidationError as e:
        return _error(400, "; ".join(
            f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors()
        ))
    auth.check_workspace(request.workspace_id)
    payload = request.model_dump(exclude_none=True)

    try:
        result = invoker_module.invoker.invoke(name, payload)
    except ConfigurationError as e:
        return _error(400, str(e))
    except NotFoundError as e:
        return _error(404, str(e))
    except InboxPilotError as e:
        logger.error("function %s failed: %s", name, e, extra={"handler": name})
        return _error(500, str(e))
    except Exception as e:
        logger.exception("function %s crashed", name, extra={"handler": name})
        return _error(500, str(e))
    return result


def _get_owned(model, key, auth: AuthContext):
    session = SessionLocal()
    try:
        obj = session.get(model, key)
        if obj is None:
            raise HTTPException(404, f"{model.__tablename__} {key} not found")
        auth.check_workspace(obj.workspace_id)
        return _row_dict(obj)
    finally:
        session.close()


@router.get("/jobs/import/{job_id}")
def get_import_job(job_id: str, auth: AuthContext = Depends(require_auth)):
    return _get_owned(EmailImportJob, job_id, auth)


@router.get("/jobs/research/{job_id}")
def get_research_job(job_id: str, auth: AuthContext = Depends(require_auth)):
    return _get_owned(CompetitorResearchJob, job_id, auth)


def _run_dict(run: dict) -> dict:
    for key in ("metrics", "params"):
        try:
            run[key] = json.loads(run[key]) if run[key] else {}
        except (json.JSONDecodeError, TypeError):
            run[key] = {}
    return run


@router.get("/runs/{run_id}")
def get_run(run_id: int, auth: AuthContext = Depends(require_auth)):
    return _run_dict(_get_owned(PipelineRun, run_id, auth))


@router.get("/runs")
def list_runs(
    workspace_id: str | None = None,
    state: str | None = None,
    limit: int = 20,
    auth: AuthContext = Depends(require_auth),
):
    """List recent pipeline runs, newest first."""
    if not auth.is_service:
        workspace_id = workspace_id or auth.workspace_id
    auth.check_workspace(workspace_id)
    session = SessionLocal()
    try:
        query = session.query(PipelineRun)
        if workspace_id:
            query = query.filter(PipelineRun.workspace_id == workspace_id)
        if state:
            query = query.filter(PipelineRun.state == state)
        runs = query.order_by(PipelineRun.id.desc()).limit(max(1, min(limit, 200))).all()
        return [_run_dict(_row_dict(r)) for r in runs]
    finally:
        session.close()


@router.get("/events")
async def event_stream(auth: AuthContext = Depends(require_auth)):
    """SSE endpoint for live handler events."""
    queue = subscribe_events()

    async def event_generator():
        try:
            while True:
                if queue:
                    event = queue.popleft()
                    yield {"event": event.get("type", "message"), "data": json.dumps(event)}
                else:
                    await asyncio.sleep(0.5)
        finally:
            unsubscribe_events(queue)

    return EventSourceResponse(event_generator())
