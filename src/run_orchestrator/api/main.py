"""FastAPI app entrypoint for run-orchestrator."""

from __future__ import annotations

from contextlib import asynccontextmanager
from datetime import UTC, datetime
from typing import Any, Literal
from uuid import uuid4

from fastapi import FastAPI, Header, HTTPException, Request, WebSocket, WebSocketDisconnect
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from run_orchestrator.config.settings import Settings, get_settings
from run_orchestrator.errors import (
    DeadlineExceededError,
    InvalidRunTransitionError,
    MaxRetriesExceededError,
    OrchestratorError,
    RobotNotFoundError,
    RunNotAuthorizedError,
    RunNotFoundError,
    WorkerAcquisitionError,
)
from run_orchestrator.runs.responses import format_run_response
from run_orchestrator.runtime import Runtime, build_runtime
from run_orchestrator.storage.models import (
    IntegrationSettings,
    RobotRecord,
    RobotType,
    ScrapeFormat,
    WebhookConfig,
    WebhookEvent,
)

_ERROR_STATUS: tuple[tuple[type[OrchestratorError], int], ...] = (
    (RobotNotFoundError, 404),
    (RunNotFoundError, 404),
    (RunNotAuthorizedError, 403),
    (InvalidRunTransitionError, 409),
    (MaxRetriesExceededError, 409),
    (WorkerAcquisitionError, 503),
    (DeadlineExceededError, 504),
)


class CreateRobotRequest(BaseModel):
    name: str = Field(min_length=1)
    type: RobotType = "extract"
    url: str | None = None
    workflow: list[dict[str, Any]] = Field(default_factory=list)
    formats: list[ScrapeFormat] = Field(default_factory=lambda: ["markdown"])
    integrations: IntegrationSettings = Field(default_factory=IntegrationSettings)


class CreateRunRequest(BaseModel):
    formats: list[str] | None = None
    wait: bool = False
    trigger: Literal["manual", "api", "sdk"] = "api"


class WebhookRequest(BaseModel):
    url: str = Field(pattern=r"^https?://")
    events: list[WebhookEvent] = Field(default_factory=lambda: ["run_completed"], min_length=1)
    active: bool = True
    description: str | None = None
    # Unset delivery options fall back to the webhook_* settings.
    retry_attempts: int | None = Field(default=None, ge=1, le=10)
    retry_delay_s: float | None = Field(default=None, ge=0.0)
    timeout_s: float | None = Field(default=None, gt=0.0)


class WebhookTestRequest(BaseModel):
    webhook_id: str | None = None
    url: str | None = None


def _status_for(exc: OrchestratorError) -> int:
    for error_type, status_code in _ERROR_STATUS:
        if isinstance(exc, error_type):
            return status_code
    return 500


def create_app(
    *,
    runtime: Runtime | None = None,
    settings_override: Settings | None = None,
) -> FastAPI:
    settings = settings_override or (runtime.settings if runtime else get_settings())

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if not hasattr(app.state, "runtime"):
            app.state.runtime = build_runtime(settings)
        await app.state.runtime.store.migrate()
        # Deliver integration tasks left pending by a previous process.
        app.state.runtime.integrations.schedule_drain()
        yield
        await app.state.runtime.aclose()

    app = FastAPI(title=settings.app_name, lifespan=lifespan)

    # Keep test paths reliable when lifespan is not executed by the client.
    if runtime is not None:
        app.state.runtime = runtime

    def _runtime(request: Request) -> Runtime:
        if not hasattr(request.app.state, "runtime"):
            raise HTTPException(status_code=503, detail="Runtime not initialised")
        return request.app.state.runtime

    async def _owned_robot(runtime: Runtime, robot_id: str, user_id: str) -> RobotRecord:
        robot = await runtime.store.get_robot(robot_id)
        if robot is None:
            raise RobotNotFoundError(robot_id)
        if robot.user_id != user_id:
            raise RunNotAuthorizedError(robot_id, user_id)
        return robot

    @app.exception_handler(OrchestratorError)
    async def orchestrator_error(request: Request, exc: OrchestratorError) -> JSONResponse:
        return JSONResponse(status_code=_status_for(exc), content={"detail": str(exc)})

    @app.get("/health")
    def health() -> dict[str, str]:
        return {"status": "ok", "service": settings.app_name}

    @app.post("/robots", response_model=RobotRecord)
    async def create_robot(
        payload: CreateRobotRequest,
        request: Request,
        x_user_id: str = Header(alias="X-User-Id"),
    ) -> RobotRecord:
        now = datetime.now(UTC)
        robot = RobotRecord(
            robot_id=str(uuid4()),
            user_id=x_user_id,
            created_at=now,
            updated_at=now,
            **payload.model_dump(),
        )
        return await _runtime(request).store.create_robot(robot)

    @app.get("/robots/{robot_id}", response_model=RobotRecord)
    async def get_robot(
        robot_id: str, request: Request, x_user_id: str = Header(alias="X-User-Id")
    ) -> RobotRecord:
        return await _owned_robot(_runtime(request), robot_id, x_user_id)

    @app.post("/robots/{robot_id}/runs")
    async def create_run(
        robot_id: str,
        payload: CreateRunRequest,
        request: Request,
        x_user_id: str = Header(alias="X-User-Id"),
    ) -> dict[str, Any]:
        runtime = _runtime(request)
        run = await runtime.launcher.start_run(
            robot_id, x_user_id, trigger=payload.trigger, formats=payload.formats
        )
        if payload.wait:
            run = await runtime.launcher.wait_for_completion(
                run.run_id,
                timeout_s=settings.run_wait_timeout_s,
                poll_interval_s=settings.run_poll_interval_s,
            )
        return format_run_response(run)

    @app.get("/robots/{robot_id}/runs")
    async def list_runs(
        robot_id: str, request: Request, x_user_id: str = Header(alias="X-User-Id")
    ) -> dict[str, list[dict[str, Any]]]:
        runtime = _runtime(request)
        await _owned_robot(runtime, robot_id, x_user_id)
        runs = await runtime.store.list_runs(robot_id)
        return {"runs": [format_run_response(run) for run in runs]}

    @app.get("/robots/{robot_id}/runs/{run_id}")
    async def get_run(
        robot_id: str,
        run_id: str,
        request: Request,
        x_user_id: str = Header(alias="X-User-Id"),
    ) -> dict[str, Any]:
        runtime = _runtime(request)
        await _owned_robot(runtime, robot_id, x_user_id)
        run = await runtime.store.get_run(run_id)
        if run is None or run.robot_id != robot_id:
            raise RunNotFoundError(run_id)
        return format_run_response(run)

    @app.post("/runs/{run_id}/abort")
    async def abort_run(
        run_id: str, request: Request, x_user_id: str = Header(alias="X-User-Id")
    ) -> dict[str, Any]:
        run = await _runtime(request).launcher.abort_run(run_id, x_user_id)
        return format_run_response(run)

    @app.post("/runs/{run_id}/retry")
    async def retry_run(
        run_id: str, request: Request, x_user_id: str = Header(alias="X-User-Id")
    ) -> dict[str, Any]:
        run = await _runtime(request).launcher.retry_run(run_id, x_user_id)
        return format_run_response(run)

    @app.get("/robots/{robot_id}/webhooks", response_model=list[WebhookConfig])
    async def list_webhooks(
        robot_id: str, request: Request, x_user_id: str = Header(alias="X-User-Id")
    ) -> list[WebhookConfig]:
        robot = await _owned_robot(_runtime(request), robot_id, x_user_id)
        return robot.webhooks

    @app.post("/robots/{robot_id}/webhooks", response_model=WebhookConfig)
    async def add_webhook(
        robot_id: str,
        payload: WebhookRequest,
        request: Request,
        x_user_id: str = Header(alias="X-User-Id"),
    ) -> WebhookConfig:
        runtime = _runtime(request)
        robot = await _owned_robot(runtime, robot_id, x_user_id)
        if any(hook.url == payload.url for hook in robot.webhooks):
            raise HTTPException(status_code=409, detail="Webhook with this URL already exists")
        now = datetime.now(UTC)
        webhook = WebhookConfig(
            created_at=now,
            updated_at=now,
            **{
                "retry_attempts": settings.webhook_retry_attempts,
                "retry_delay_s": settings.webhook_retry_delay_s,
                "timeout_s": settings.webhook_timeout_s,
                **payload.model_dump(exclude_none=True),
            },
        )
        await runtime.store.update_webhooks(robot_id, [*robot.webhooks, webhook])
        return webhook

    @app.put("/robots/{robot_id}/webhooks/{webhook_id}", response_model=WebhookConfig)
    async def update_webhook(
        robot_id: str,
        webhook_id: str,
        payload: WebhookRequest,
        request: Request,
        x_user_id: str = Header(alias="X-User-Id"),
    ) -> WebhookConfig:
        runtime = _runtime(request)
        robot = await _owned_robot(runtime, robot_id, x_user_id)
        current = next((hook for hook in robot.webhooks if hook.id == webhook_id), None)
        if current is None:
            raise HTTPException(status_code=404, detail="Webhook not found")
        if any(hook.url == payload.url and hook.id != webhook_id for hook in robot.webhooks):
            raise HTTPException(status_code=409, detail="Webhook with this URL already exists")
        updated = current.model_copy(
            update={
                "description": None,
                **payload.model_dump(exclude_none=True),
                "updated_at": datetime.now(UTC),
            }
        )
        await runtime.store.update_webhooks(
            robot_id,
            [updated if hook.id == webhook_id else hook for hook in robot.webhooks],
        )
        return updated

    @app.delete("/robots/{robot_id}/webhooks/{webhook_id}")
    async def remove_webhook(
        robot_id: str,
        webhook_id: str,
        request: Request,
        x_user_id: str = Header(alias="X-User-Id"),
    ) -> dict[str, Any]:
        runtime = _runtime(request)
        robot = await _owned_robot(runtime, robot_id, x_user_id)
        remaining = [hook for hook in robot.webhooks if hook.id != webhook_id]
        if len(remaining) == len(robot.webhooks):
            raise HTTPException(status_code=404, detail="Webhook not found")
        await runtime.store.update_webhooks(robot_id, remaining)
        return {"ok": True, "removed": webhook_id}

    @app.delete("/robots/{robot_id}/webhooks")
    async def clear_webhooks(
        robot_id: str, request: Request, x_user_id: str = Header(alias="X-User-Id")
    ) -> dict[str, Any]:
        runtime = _runtime(request)
        robot = await _owned_robot(runtime, robot_id, x_user_id)
        await runtime.store.update_webhooks(robot_id, [])
        return {"ok": True, "removed": len(robot.webhooks)}

    @app.post("/robots/{robot_id}/webhooks/test")
    async def test_webhook(
        robot_id: str,
        payload: WebhookTestRequest,
        request: Request,
        x_user_id: str = Header(alias="X-User-Id"),
    ) -> dict[str, Any]:
        runtime = _runtime(request)
        robot = await _owned_robot(runtime, robot_id, x_user_id)
        webhook = next(
            (
                hook
                for hook in robot.webhooks
                if (payload.webhook_id and hook.id == payload.webhook_id)
                or (payload.url and hook.url == payload.url)
            ),
            None,
        )
        if webhook is None:
            raise HTTPException(status_code=404, detail="Webhook not found")
        return await runtime.webhooks.send_test(robot_id, webhook)

    @app.websocket("/ws/runs")
    async def run_events(websocket: WebSocket, user_id: str) -> None:
        runtime: Runtime = websocket.app.state.runtime
        queue = runtime.live.subscribe(user_id)
        try:
            await websocket.accept()
            while True:
                message = await queue.get()
                await websocket.send_json(message)
        except WebSocketDisconnect:
            pass
        finally:
            runtime.live.unsubscribe(user_id, queue)

    return app


app = create_app()
