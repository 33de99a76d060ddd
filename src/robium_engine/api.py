from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, Dict, List, Optional

from fastapi import Depends, FastAPI, Header, HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from starlette.responses import StreamingResponse

from .config import EngineSettings
from .errors import (
    EngineCoreError,
    EngineTimeout,
    EngineUnavailable,
    InvalidIdentifier,
    InvalidSpec,
    InvalidTransition,
    IsolationViolation,
    NotFound,
)
from .identity import identity
from .lifecycle import LifecycleController, RunRequest
from .registry import LifecycleState
from .supervisor import Supervisor
from .workspace import WorkspaceSpec

logger = logging.getLogger("robium.api")

TOKEN_HEADER = "X-Engine-Token"

# Most specific first: EngineTimeout is an EngineUnavailable.
ERROR_STATUS: list[tuple[type, int]] = [
    (InvalidSpec, 400),
    (InvalidIdentifier, 400),
    (NotFound, 404),
    (IsolationViolation, 409),
    (InvalidTransition, 409),
    (EngineTimeout, 504),
    (EngineUnavailable, 503),
]


def status_for(error: EngineCoreError) -> int:
    for cls, code in ERROR_STATUS:
        if isinstance(error, cls):
            return code
    return 502


class RunBody(BaseModel):
    project_id: str
    workspace_id: str
    run_id: str
    spec: Dict[str, Any] = Field(default_factory=dict)


class CompileBody(BaseModel):
    spec: Dict[str, Any] = Field(default_factory=dict)


def create_app(
    controller: LifecycleController,
    settings: Optional[EngineSettings] = None,
    supervisor: Optional[Supervisor] = None,
) -> FastAPI:
    settings = settings or controller.settings
    app = FastAPI(title="robium-engine")
    app.state.controller = controller
    app.state.supervisor = supervisor

    @app.exception_handler(EngineCoreError)
    async def engine_error(request: Request, exc: EngineCoreError) -> JSONResponse:
        code = status_for(exc)
        if code >= 500:
            logger.warning(f"{request.method} {request.url.path}: {exc}")
        return JSONResponse(
            status_code=code,
            content={"error": type(exc).__name__, "detail": str(exc)},
        )

    def require_token(x_engine_token: Optional[str] = Header(default=None)) -> None:
        if not settings.api_token:
            return
        if not x_engine_token or x_engine_token != settings.api_token:
            raise HTTPException(status_code=401, detail="unauthorized")

    auth = [Depends(require_token)]

    @app.get("/health")
    async def health() -> Dict[str, Any]:
        return {
            "ok": True,
            "runs": len(controller.registry),
            "supervisor": bool(supervisor and supervisor.running),
        }

    @app.post("/compile", dependencies=auth)
    async def compile_spec(body: CompileBody) -> Dict[str, Any]:
        spec = WorkspaceSpec.from_dict(body.spec)
        artifact = await asyncio.to_thread(controller.compiler.compile, spec)
        data = artifact.to_dict()
        data["dockerfile"] = artifact.dockerfile
        data["compose"] = artifact.compose
        return data

    @app.post("/runs", dependencies=auth)
    async def start_run(body: RunBody) -> Dict[str, Any]:
        request = RunRequest(
            project_id=body.project_id,
            workspace_id=body.workspace_id,
            run_id=body.run_id,
            spec=WorkspaceSpec.from_dict(body.spec),
        )
        ident = await asyncio.to_thread(controller.start, request)
        return controller.status(ident).to_dict()

    @app.get("/runs", dependencies=auth)
    async def list_runs(state: Optional[str] = None, project_id: Optional[str] = None) -> Dict[str, Any]:
        states = None
        if state:
            try:
                states = [LifecycleState(s.strip()) for s in state.split(",") if s.strip()]
            except ValueError:
                raise HTTPException(status_code=400, detail=f"unknown state in {state!r}")
        records = controller.list_records(states)
        if project_id:
            records = [r for r in records if r.identity.project_id == project_id]
        return {"runs": [r.to_dict() for r in records]}

    @app.get("/runs/{project_id}/{workspace_id}/{run_id}", dependencies=auth)
    async def get_run(project_id: str, workspace_id: str, run_id: str) -> Dict[str, Any]:
        return controller.status(identity(project_id, workspace_id, run_id)).to_dict()

    @app.post("/runs/{project_id}/{workspace_id}/{run_id}/stop", dependencies=auth)
    async def stop_run(project_id: str, workspace_id: str, run_id: str) -> Dict[str, Any]:
        record = await asyncio.to_thread(controller.stop, identity(project_id, workspace_id, run_id))
        return record.to_dict()

    @app.post("/runs/{project_id}/{workspace_id}/{run_id}/destroy", dependencies=auth)
    async def destroy_run(project_id: str, workspace_id: str, run_id: str) -> Dict[str, Any]:
        ident = identity(project_id, workspace_id, run_id)
        await asyncio.to_thread(controller.destroy, ident)
        return {"destroyed": True, "identity": ident.to_dict()}

    @app.post("/runs/{project_id}/{workspace_id}/{run_id}/touch", dependencies=auth)
    async def touch_run(project_id: str, workspace_id: str, run_id: str) -> Dict[str, Any]:
        ident = identity(project_id, workspace_id, run_id)
        controller.touch(ident)
        return {"ok": True, "last_activity": controller.status(ident).last_activity}

    @app.get("/events", dependencies=auth)
    async def events(
        project_id: Optional[str] = None,
        workspace_id: Optional[str] = None,
        run_id: Optional[str] = None,
        replay: bool = False,
        limit: int = 0,
    ) -> StreamingResponse:
        ident = None
        if project_id and workspace_id and run_id:
            ident = identity(project_id, workspace_id, run_id)

        async def stream():
            sent = 0
            source = controller.events.stream(identity=ident, replay=replay)
            try:
                async for event in source:
                    payload = json.dumps(event.to_dict(), ensure_ascii=False)
                    yield f"id: {event.sequence}\nevent: transition\ndata: {payload}\n\n".encode("utf-8")
                    sent += 1
                    if limit and sent >= limit:
                        break
            finally:
                await source.aclose()

        return StreamingResponse(
            stream(),
            media_type="text/event-stream",
            headers={
                "Cache-Control": "no-cache",
                "Connection": "keep-alive",
                "X-Accel-Buffering": "no",
            },
        )

    @app.post("/sweep", dependencies=auth)
    async def sweep() -> Dict[str, Any]:
        if supervisor is None:
            raise HTTPException(status_code=503, detail="supervisor not configured")
        report = await asyncio.to_thread(supervisor.run_once)
        return report.to_dict()

    @app.get("/alerts", dependencies=auth)
    async def alerts() -> Dict[str, List[Dict[str, Any]]]:
        if supervisor is None:
            return {"alerts": []}
        return {"alerts": [a.to_dict() for a in supervisor.alerts.alerts()]}

    return app
