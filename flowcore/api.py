"""HTTP surface for triggers, workflow control and monitoring."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, Optional

from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from . import __version__
from .errors import (
    IllegalTransition,
    InvalidEvent,
    InvalidSignature,
    QueueSaturated,
    UnsupportedWorkflow,
    WorkflowNotFound,
)
from .monitoring import AlertSeverity
from .runtime import Runtime

logger = logging.getLogger(__name__)


class EventIn(BaseModel):
    source: str
    type: str
    payload: Dict[str, Any] = Field(default_factory=dict)
    id: Optional[str] = None


class OutcomeIn(BaseModel):
    outcome: str
    context: Optional[Dict[str, Any]] = None
    triggered_by: str = "api"


class CancelIn(BaseModel):
    reason: Optional[str] = None
    triggered_by: str = "api"


class AcknowledgeIn(BaseModel):
    by: Optional[str] = None


def _register_error_handlers(app: FastAPI) -> None:
    @app.exception_handler(QueueSaturated)
    async def _saturated(request: Request, exc: QueueSaturated) -> JSONResponse:
        return JSONResponse(
            status_code=429,
            content={"detail": str(exc)},
            headers={"Retry-After": str(max(1, int(exc.retry_after)))},
        )

    @app.exception_handler(UnsupportedWorkflow)
    async def _unsupported(request: Request, exc: UnsupportedWorkflow) -> JSONResponse:
        return JSONResponse(status_code=422, content={"detail": str(exc)})

    @app.exception_handler(InvalidSignature)
    async def _bad_signature(request: Request, exc: InvalidSignature) -> JSONResponse:
        return JSONResponse(status_code=401, content={"detail": str(exc)})

    @app.exception_handler(InvalidEvent)
    async def _bad_event(request: Request, exc: InvalidEvent) -> JSONResponse:
        return JSONResponse(status_code=400, content={"detail": str(exc)})

    @app.exception_handler(WorkflowNotFound)
    async def _not_found(request: Request, exc: WorkflowNotFound) -> JSONResponse:
        return JSONResponse(status_code=404, content={"detail": str(exc)})

    @app.exception_handler(IllegalTransition)
    async def _illegal(request: Request, exc: IllegalTransition) -> JSONResponse:
        return JSONResponse(
            status_code=409,
            content={"detail": str(exc), "state": exc.state, "outcome": exc.outcome},
        )


def create_app(runtime: Optional[Runtime] = None, start_runtime: bool = True) -> FastAPI:
    """Create the FastAPI application around ``runtime``.

    With ``start_runtime`` the dispatcher, workers and scheduler run for the
    lifetime of the app; without it only the control surface is served.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        rt = runtime or Runtime()
        app.state.runtime = rt
        if start_runtime:
            await rt.start()
        try:
            yield
        finally:
            if start_runtime:
                await rt.stop()

    app = FastAPI(title="flowcore", version=__version__, lifespan=lifespan)
    if runtime is not None:
        app.state.runtime = runtime
    _register_error_handlers(app)

    def rt(request: Request) -> Runtime:
        return request.app.state.runtime

    @app.post("/events", status_code=202)
    async def submit_event(body: EventIn, request: Request) -> Dict[str, Any]:
        event_id = body.id or request.headers.get("idempotency-key")
        result = await rt(request).submit_event(body.source, body.type, body.payload, event_id)
        return {"event_id": result.event_id, "workflow_id": result.workflow_id, "job_ids": result.job_ids}

    @app.post("/webhooks/{source}", status_code=202)
    async def webhook(source: str, request: Request) -> Dict[str, Any]:
        body = await request.body()
        result = await rt(request).ingress.webhook(source, body, dict(request.headers))
        return {"event_id": result.event_id, "workflow_id": result.workflow_id, "job_ids": result.job_ids}

    @app.get("/workflows")
    async def list_workflows(request: Request, state: Optional[str] = None) -> list:
        workflows = await rt(request).engine.list_workflows(state)
        return [w.model_dump(mode="json") for w in workflows]

    @app.get("/workflows/{workflow_id}")
    async def get_workflow(workflow_id: str, request: Request) -> Dict[str, Any]:
        status = await rt(request).engine.describe(workflow_id)
        return status.model_dump(mode="json")

    @app.post("/workflows/{workflow_id}/cancel")
    async def cancel_workflow(
        workflow_id: str, request: Request, body: Optional[CancelIn] = None
    ) -> Dict[str, Any]:
        body = body or CancelIn()
        instance = await rt(request).cancel_workflow(workflow_id, body.triggered_by, body.reason)
        return {"workflow_id": instance.id, "state": instance.current_state}

    @app.post("/workflows/{workflow_id}/outcome")
    async def apply_outcome(workflow_id: str, body: OutcomeIn, request: Request) -> Dict[str, Any]:
        state, jobs = await rt(request).apply_outcome(
            workflow_id, body.outcome, body.triggered_by, context_update=body.context
        )
        return {"workflow_id": workflow_id, "state": state, "job_ids": [j.id for j in jobs]}

    @app.get("/metrics")
    async def metrics(request: Request) -> Dict[str, Any]:
        return await rt(request).metrics()

    @app.get("/alerts")
    async def list_alerts(
        request: Request, include_resolved: bool = False, severity: Optional[AlertSeverity] = None
    ) -> list:
        aggregator = rt(request).aggregator
        aggregator.flush()
        return [a.model_dump(mode="json") for a in aggregator.alerts(include_resolved, severity)]

    @app.post("/alerts/{alert_id}/acknowledge")
    async def acknowledge_alert(
        alert_id: str, request: Request, body: Optional[AcknowledgeIn] = None
    ) -> Dict[str, Any]:
        alert = rt(request).aggregator.acknowledge_alert(alert_id, (body or AcknowledgeIn()).by)
        if alert is None:
            raise HTTPException(status_code=404, detail=f"Alert not found: {alert_id}")
        return alert.model_dump(mode="json")

    @app.post("/alerts/{alert_id}/resolve")
    async def resolve_alert(alert_id: str, request: Request) -> Dict[str, Any]:
        alert = rt(request).aggregator.resolve_alert(alert_id)
        if alert is None:
            raise HTTPException(status_code=404, detail=f"Alert not found: {alert_id}")
        return alert.model_dump(mode="json")

    @app.get("/health")
    async def health(request: Request) -> JSONResponse:
        runtime_ = rt(request)
        if not runtime_.healthy:
            return JSONResponse(
                status_code=503,
                content={"status": "halted", "reason": runtime_.dispatcher.halt_reason},
            )
        return JSONResponse(
            content={"status": "ok", "system_health": runtime_.aggregator.system_health()}
        )

    return app
