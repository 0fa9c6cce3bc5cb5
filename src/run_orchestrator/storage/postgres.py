"""PostgreSQL-backed storage with automatic table migration."""

from __future__ import annotations

import asyncio
import json
from datetime import UTC, datetime, timedelta
from typing import Any

from pydantic import BaseModel

from run_orchestrator.errors import RobotNotFoundError, RunNotFoundError
from run_orchestrator.storage.models import (
    IntegrationSettings,
    IntegrationTask,
    ProxyConfig,
    RobotRecord,
    RunRecord,
    RunStatus,
    WebhookConfig,
)

_RUN_JSON_COLUMNS = (
    "requested_formats",
    "interpreter_settings",
    "serializable_output",
    "binary_output",
)


class PostgresStore:
    """Persist robots, runs and integration tasks in PostgreSQL."""

    def __init__(self, database_url: str) -> None:
        if not database_url:
            raise ValueError("RUN_ORCHESTRATOR_DATABASE_URL is required")
        self.database_url = database_url
        self._lock = asyncio.Lock()
        self._psycopg, self._dict_row, self._json_wrapper = self._load_psycopg()

    async def migrate(self) -> None:
        async with self._lock, await self._connect() as conn:
            await conn.execute("""
                CREATE TABLE IF NOT EXISTS robots (
                    robot_id TEXT PRIMARY KEY,
                    user_id TEXT NOT NULL,
                    name TEXT NOT NULL,
                    type TEXT NOT NULL,
                    url TEXT,
                    workflow_json JSONB NOT NULL DEFAULT '[]'::jsonb,
                    formats_json JSONB NOT NULL DEFAULT '["markdown"]'::jsonb,
                    webhooks_json JSONB NOT NULL DEFAULT '[]'::jsonb,
                    integrations_json JSONB NOT NULL DEFAULT '{}'::jsonb,
                    created_at TIMESTAMPTZ NOT NULL,
                    updated_at TIMESTAMPTZ NOT NULL
                )
                """)
            await conn.execute("""
                CREATE TABLE IF NOT EXISTS runs (
                    run_id TEXT PRIMARY KEY,
                    robot_id TEXT NOT NULL,
                    robot_name TEXT NOT NULL,
                    status TEXT NOT NULL,
                    worker_id TEXT,
                    started_at TIMESTAMPTZ NOT NULL,
                    finished_at TIMESTAMPTZ,
                    retry_count INTEGER NOT NULL DEFAULT 0,
                    run_by_user_id TEXT NOT NULL,
                    run_by_schedule_id TEXT,
                    run_by_api BOOLEAN NOT NULL DEFAULT FALSE,
                    run_by_sdk BOOLEAN NOT NULL DEFAULT FALSE,
                    requested_formats JSONB,
                    interpreter_settings JSONB NOT NULL DEFAULT '{}'::jsonb,
                    serializable_output JSONB NOT NULL DEFAULT '{}'::jsonb,
                    binary_output JSONB NOT NULL DEFAULT '{}'::jsonb,
                    log TEXT NOT NULL DEFAULT '',
                    created_at TIMESTAMPTZ NOT NULL,
                    updated_at TIMESTAMPTZ NOT NULL
                )
                """)
            await conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_runs_robot_id
                ON runs(robot_id, started_at DESC)
                """)
            await conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_runs_status
                ON runs(status)
                """)
            await conn.execute("""
                CREATE TABLE IF NOT EXISTS user_proxies (
                    user_id TEXT PRIMARY KEY,
                    proxy_url TEXT NOT NULL,
                    proxy_username TEXT,
                    proxy_password TEXT
                )
                """)
            await conn.execute("""
                CREATE TABLE IF NOT EXISTS integration_tasks (
                    sink TEXT NOT NULL,
                    run_id TEXT NOT NULL,
                    robot_id TEXT NOT NULL,
                    status TEXT NOT NULL,
                    retries INTEGER NOT NULL DEFAULT 0,
                    visible_after TIMESTAMPTZ NOT NULL,
                    last_error TEXT,
                    created_at TIMESTAMPTZ NOT NULL,
                    updated_at TIMESTAMPTZ NOT NULL,
                    PRIMARY KEY (sink, run_id)
                )
                """)
            await conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_integration_tasks_pending
                ON integration_tasks(status, visible_after)
                """)
            await conn.commit()

    async def close(self) -> None:
        return None

    async def create_robot(self, robot: RobotRecord) -> RobotRecord:
        async with self._lock, await self._connect() as conn:
            await conn.execute(
                """
                INSERT INTO robots (
                    robot_id,
                    user_id,
                    name,
                    type,
                    url,
                    workflow_json,
                    formats_json,
                    webhooks_json,
                    integrations_json,
                    created_at,
                    updated_at
                ) VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                """,
                self._robot_params(robot),
            )
            await conn.commit()
        created = await self.get_robot(robot.robot_id)
        if created is None:
            raise RuntimeError("Failed to load created robot")
        return created

    async def get_robot(self, robot_id: str) -> RobotRecord | None:
        async with self._lock, await self._connect() as conn:
            cursor = await conn.execute("SELECT * FROM robots WHERE robot_id = %s", (robot_id,))
            row = await cursor.fetchone()
        if row is None:
            return None
        return self._row_to_robot(row)

    async def update_robot(self, robot_id: str, **fields: Any) -> RobotRecord:
        current = await self.get_robot(robot_id)
        if current is None:
            raise RobotNotFoundError(robot_id)
        merged = current.model_copy(update={**fields, "updated_at": datetime.now(tz=UTC)})
        params = self._robot_params(merged)
        async with self._lock, await self._connect() as conn:
            await conn.execute(
                """
                UPDATE robots
                SET user_id = %s,
                    name = %s,
                    type = %s,
                    url = %s,
                    workflow_json = %s,
                    formats_json = %s,
                    webhooks_json = %s,
                    integrations_json = %s,
                    updated_at = %s
                WHERE robot_id = %s
                """,
                (*params[1:9], params[10], robot_id),
            )
            await conn.commit()
        refreshed = await self.get_robot(robot_id)
        if refreshed is None:
            raise RobotNotFoundError(robot_id)
        return refreshed

    async def update_webhooks(self, robot_id: str, webhooks: list[WebhookConfig]) -> RobotRecord:
        async with self._lock, await self._connect() as conn:
            cursor = await conn.execute(
                """
                UPDATE robots
                SET webhooks_json = %s,
                    updated_at = %s
                WHERE robot_id = %s
                RETURNING *
                """,
                (
                    self._json_wrapper([hook.model_dump(mode="json") for hook in webhooks]),
                    datetime.now(tz=UTC),
                    robot_id,
                ),
            )
            row = await cursor.fetchone()
            await conn.commit()
        if row is None:
            raise RobotNotFoundError(robot_id)
        return self._row_to_robot(row)

    async def update_integration(
        self, robot_id: str, sink: str, settings: BaseModel | None
    ) -> RobotRecord:
        value = settings.model_dump(mode="json") if settings is not None else None
        async with self._lock, await self._connect() as conn:
            cursor = await conn.execute(
                """
                UPDATE robots
                SET integrations_json = jsonb_set(
                        integrations_json, ARRAY[%s]::text[], %s::jsonb, true
                    ),
                    updated_at = %s
                WHERE robot_id = %s
                RETURNING *
                """,
                (sink, self._json_wrapper(value), datetime.now(tz=UTC), robot_id),
            )
            row = await cursor.fetchone()
            await conn.commit()
        if row is None:
            raise RobotNotFoundError(robot_id)
        return self._row_to_robot(row)

    async def touch_webhook(self, robot_id: str, webhook_id: str, called_at: datetime) -> None:
        stamp = called_at.isoformat()
        async with self._lock, await self._connect() as conn:
            cursor = await conn.execute(
                """
                UPDATE robots
                SET webhooks_json = COALESCE(
                    (
                        SELECT jsonb_agg(
                            CASE
                                WHEN hook->>'id' = %s
                                THEN hook
                                    || jsonb_build_object('last_called_at', %s::text)
                                    || jsonb_build_object('updated_at', %s::text)
                                ELSE hook
                            END
                            ORDER BY position
                        )
                        FROM jsonb_array_elements(webhooks_json) WITH ORDINALITY AS items(hook, position)
                    ),
                    '[]'::jsonb
                )
                WHERE robot_id = %s
                """,
                (webhook_id, stamp, stamp, robot_id),
            )
            await conn.commit()
        if cursor.rowcount == 0:
            raise RobotNotFoundError(robot_id)

    async def get_proxy_config(self, user_id: str) -> ProxyConfig | None:
        async with self._lock, await self._connect() as conn:
            cursor = await conn.execute(
                "SELECT * FROM user_proxies WHERE user_id = %s",
                (user_id,),
            )
            row = await cursor.fetchone()
        if row is None or not row.get("proxy_url"):
            return None
        return ProxyConfig(
            server=row["proxy_url"],
            username=row.get("proxy_username"),
            password=row.get("proxy_password"),
        )

    async def create_run(self, run: RunRecord) -> RunRecord:
        async with self._lock, await self._connect() as conn:
            await conn.execute(
                """
                INSERT INTO runs (
                    run_id,
                    robot_id,
                    robot_name,
                    status,
                    worker_id,
                    started_at,
                    finished_at,
                    retry_count,
                    run_by_user_id,
                    run_by_schedule_id,
                    run_by_api,
                    run_by_sdk,
                    requested_formats,
                    interpreter_settings,
                    serializable_output,
                    binary_output,
                    log,
                    created_at,
                    updated_at
                ) VALUES (
                    %s, %s, %s, %s, %s, %s, %s, %s, %s, %s,
                    %s, %s, %s, %s, %s, %s, %s, %s, %s
                )
                """,
                self._run_params(run),
            )
            await conn.commit()
        created = await self.get_run(run.run_id)
        if created is None:
            raise RuntimeError("Failed to load created run")
        return created

    async def get_run(self, run_id: str) -> RunRecord | None:
        async with self._lock, await self._connect() as conn:
            cursor = await conn.execute("SELECT * FROM runs WHERE run_id = %s", (run_id,))
            row = await cursor.fetchone()
        if row is None:
            return None
        return self._row_to_run(row)

    async def update_run(self, run_id: str, **fields: Any) -> RunRecord:
        current = await self.get_run(run_id)
        if current is None:
            raise RunNotFoundError(run_id)
        merged = current.model_copy(update={**fields, "updated_at": datetime.now(tz=UTC)})
        params = self._run_params(merged)
        async with self._lock, await self._connect() as conn:
            await conn.execute(
                """
                UPDATE runs
                SET robot_id = %s,
                    robot_name = %s,
                    status = %s,
                    worker_id = %s,
                    started_at = %s,
                    finished_at = %s,
                    retry_count = %s,
                    run_by_user_id = %s,
                    run_by_schedule_id = %s,
                    run_by_api = %s,
                    run_by_sdk = %s,
                    requested_formats = %s,
                    interpreter_settings = %s,
                    serializable_output = %s,
                    binary_output = %s,
                    log = %s,
                    updated_at = %s
                WHERE run_id = %s
                """,
                (*params[1:17], params[18], run_id),
            )
            await conn.commit()
        refreshed = await self.get_run(run_id)
        if refreshed is None:
            raise RunNotFoundError(run_id)
        return refreshed

    async def list_runs(self, robot_id: str) -> list[RunRecord]:
        async with self._lock, await self._connect() as conn:
            cursor = await conn.execute(
                """
                SELECT *
                FROM runs
                WHERE robot_id = %s
                ORDER BY started_at DESC
                """,
                (robot_id,),
            )
            rows = await cursor.fetchall()
        return [self._row_to_run(row) for row in rows]

    async def put_task(self, task: IntegrationTask, *, max_size: int) -> None:
        async with self._lock, await self._connect() as conn:
            cursor = await conn.execute(
                "SELECT COUNT(*) AS total FROM integration_tasks WHERE status = 'pending'"
            )
            row = await cursor.fetchone()
            if row and int(row["total"]) >= max_size:
                await conn.execute("""
                    DELETE FROM integration_tasks
                    WHERE (sink, run_id) IN (
                        SELECT sink, run_id
                        FROM integration_tasks
                        WHERE status = 'pending'
                        ORDER BY created_at ASC
                        LIMIT 1
                    )
                    """)
            await conn.execute(
                """
                INSERT INTO integration_tasks (
                    sink,
                    run_id,
                    robot_id,
                    status,
                    retries,
                    visible_after,
                    last_error,
                    created_at,
                    updated_at
                ) VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
                ON CONFLICT (sink, run_id) DO UPDATE
                SET status = EXCLUDED.status,
                    retries = EXCLUDED.retries,
                    visible_after = EXCLUDED.visible_after,
                    last_error = EXCLUDED.last_error,
                    updated_at = EXCLUDED.updated_at
                """,
                (
                    task.sink,
                    task.run_id,
                    task.robot_id,
                    task.status,
                    task.retries,
                    task.visible_after,
                    task.last_error,
                    task.created_at,
                    task.updated_at,
                ),
            )
            await conn.commit()

    async def claim_ready(
        self, *, now: datetime, visibility_timeout_s: float
    ) -> list[IntegrationTask]:
        lease_until = now + timedelta(seconds=visibility_timeout_s)
        async with self._lock, await self._connect() as conn:
            cursor = await conn.execute(
                """
                UPDATE integration_tasks
                SET visible_after = %s,
                    updated_at = %s
                WHERE status = 'pending'
                  AND visible_after <= %s
                RETURNING *
                """,
                (lease_until, now, now),
            )
            rows = await cursor.fetchall()
            await conn.commit()
        return [self._row_to_task(row) for row in rows]

    async def has_pending(self) -> bool:
        async with self._lock, await self._connect() as conn:
            cursor = await conn.execute("""
                SELECT EXISTS (
                    SELECT 1 FROM integration_tasks WHERE status = 'pending'
                ) AS present
                """)
            row = await cursor.fetchone()
        return bool(row and row.get("present"))

    async def next_visible_at(self) -> datetime | None:
        async with self._lock, await self._connect() as conn:
            cursor = await conn.execute("""
                SELECT MIN(visible_after) AS next_at
                FROM integration_tasks
                WHERE status = 'pending'
                """)
            row = await cursor.fetchone()
        if row is None or row.get("next_at") is None:
            return None
        return self._parse_datetime(row["next_at"])

    async def complete_task(self, sink: str, run_id: str) -> None:
        await self._finish_task(sink, run_id, status="completed", error=None)

    async def retry_task(
        self, sink: str, run_id: str, *, error: str, visible_after: datetime
    ) -> IntegrationTask:
        async with self._lock, await self._connect() as conn:
            cursor = await conn.execute(
                """
                UPDATE integration_tasks
                SET retries = retries + 1,
                    last_error = %s,
                    visible_after = %s,
                    updated_at = %s
                WHERE sink = %s AND run_id = %s
                RETURNING *
                """,
                (error, visible_after, datetime.now(tz=UTC), sink, run_id),
            )
            row = await cursor.fetchone()
            await conn.commit()
        if row is None:
            raise KeyError(f"Integration task {sink}/{run_id} does not exist")
        return self._row_to_task(row)

    async def fail_task(self, sink: str, run_id: str, *, error: str) -> None:
        await self._finish_task(sink, run_id, status="failed", error=error)

    async def _finish_task(
        self, sink: str, run_id: str, *, status: str, error: str | None
    ) -> None:
        async with self._lock, await self._connect() as conn:
            await conn.execute(
                """
                UPDATE integration_tasks
                SET status = %s,
                    last_error = COALESCE(%s, last_error),
                    updated_at = %s
                WHERE sink = %s AND run_id = %s
                """,
                (status, error, datetime.now(tz=UTC), sink, run_id),
            )
            await conn.commit()

    async def _connect(self) -> Any:
        return await self._psycopg.AsyncConnection.connect(
            self.database_url, row_factory=self._dict_row
        )

    def _robot_params(self, robot: RobotRecord) -> tuple[Any, ...]:
        return (
            robot.robot_id,
            robot.user_id,
            robot.name,
            robot.type,
            robot.url,
            self._json_wrapper(robot.workflow),
            self._json_wrapper(list(robot.formats)),
            self._json_wrapper([hook.model_dump(mode="json") for hook in robot.webhooks]),
            self._json_wrapper(robot.integrations.model_dump(mode="json")),
            robot.created_at,
            robot.updated_at,
        )

    def _run_params(self, run: RunRecord) -> tuple[Any, ...]:
        return (
            run.run_id,
            run.robot_id,
            run.robot_name,
            RunStatus(run.status).value,
            run.worker_id,
            run.started_at,
            run.finished_at,
            run.retry_count,
            run.run_by_user_id,
            run.run_by_schedule_id,
            run.run_by_api,
            run.run_by_sdk,
            (
                self._json_wrapper(run.requested_formats)
                if run.requested_formats is not None
                else None
            ),
            self._json_wrapper(run.interpreter_settings),
            self._json_wrapper(run.serializable_output),
            self._json_wrapper(run.binary_output),
            run.log,
            run.created_at,
            run.updated_at,
        )

    @staticmethod
    def _load_psycopg() -> tuple[Any, Any, Any]:
        try:
            import psycopg
            from psycopg.rows import dict_row
            from psycopg.types.json import Json
        except ImportError as exc:  # pragma: no cover
            raise RuntimeError(
                "PostgreSQL storage requires psycopg. "
                'Install with: python -m pip install "psycopg[binary]>=3.2,<4.0"'
            ) from exc
        return psycopg, dict_row, Json

    @staticmethod
    def _parse_json(raw: Any) -> Any:
        if isinstance(raw, str):
            return json.loads(raw)
        return raw

    @staticmethod
    def _parse_datetime(raw: Any) -> datetime:
        if isinstance(raw, datetime):
            return raw
        if isinstance(raw, str):
            return datetime.fromisoformat(raw)
        raise TypeError(f"Unsupported datetime value: {type(raw)!r}")

    @classmethod
    def _parse_optional_datetime(cls, raw: Any) -> datetime | None:
        if raw is None:
            return None
        return cls._parse_datetime(raw)

    @classmethod
    def _row_to_robot(cls, row: Any) -> RobotRecord:
        webhooks = cls._parse_json(row["webhooks_json"]) or []
        integrations = cls._parse_json(row["integrations_json"]) or {}
        return RobotRecord(
            robot_id=str(row["robot_id"]),
            user_id=str(row["user_id"]),
            name=row["name"],
            type=row["type"],
            url=row.get("url"),
            workflow=cls._parse_json(row["workflow_json"]) or [],
            formats=cls._parse_json(row["formats_json"]) or ["markdown"],
            webhooks=[WebhookConfig.model_validate(item) for item in webhooks],
            integrations=IntegrationSettings.model_validate(integrations),
            created_at=cls._parse_datetime(row["created_at"]),
            updated_at=cls._parse_datetime(row["updated_at"]),
        )

    @classmethod
    def _row_to_run(cls, row: Any) -> RunRecord:
        parsed = {column: cls._parse_json(row.get(column)) for column in _RUN_JSON_COLUMNS}
        return RunRecord(
            run_id=str(row["run_id"]),
            robot_id=str(row["robot_id"]),
            robot_name=row["robot_name"],
            status=RunStatus(row["status"]),
            worker_id=row.get("worker_id"),
            started_at=cls._parse_datetime(row["started_at"]),
            finished_at=cls._parse_optional_datetime(row.get("finished_at")),
            retry_count=int(row.get("retry_count") or 0),
            run_by_user_id=str(row["run_by_user_id"]),
            run_by_schedule_id=row.get("run_by_schedule_id"),
            run_by_api=bool(row.get("run_by_api")),
            run_by_sdk=bool(row.get("run_by_sdk")),
            requested_formats=parsed["requested_formats"],
            interpreter_settings=parsed["interpreter_settings"] or {},
            serializable_output=parsed["serializable_output"] or {},
            binary_output=parsed["binary_output"] or {},
            log=row.get("log") or "",
            created_at=cls._parse_datetime(row["created_at"]),
            updated_at=cls._parse_datetime(row["updated_at"]),
        )

    @classmethod
    def _row_to_task(cls, row: Any) -> IntegrationTask:
        return IntegrationTask(
            sink=row["sink"],
            run_id=str(row["run_id"]),
            robot_id=str(row["robot_id"]),
            status=row["status"],
            retries=int(row["retries"]),
            visible_after=cls._parse_datetime(row["visible_after"]),
            last_error=row.get("last_error"),
            created_at=cls._parse_datetime(row["created_at"]),
            updated_at=cls._parse_datetime(row["updated_at"]),
        )
