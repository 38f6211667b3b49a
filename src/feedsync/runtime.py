from __future__ import annotations

import logging
from datetime import date
from typing import Callable

import httpx

from .config import Config, bootstrap_runtime_config, load_runtime_config
from .connectors.http import build_http_client
from .connectors.registry import create_connector
from .events import EventSink, build_event_sink
from .handlers import register_sync_handlers
from .runner import TaskRunner
from .scheduler import CronScheduler
from .security.secrets import CredentialCodec
from .services.jobs_service import seed_jobs
from .storage import init_db
from .sync import ConnectorFactory, SyncOrchestrator
from .utils import log_event, utc_today


class Runtime:
    """One process worth of wiring: storage, HTTP client, runner and scheduler."""

    def __init__(
        self,
        conn,
        config: Config,
        http_client: httpx.AsyncClient | None = None,
        codec: CredentialCodec | None = None,
        event_sink: EventSink | None = None,
        connector_factory: ConnectorFactory = create_connector,
        today: Callable[[], date] = utc_today,
    ) -> None:
        self.conn = conn
        self.config = config
        self._owns_client = http_client is None
        self.http_client = http_client or build_http_client(config.http)
        self.codec = codec or CredentialCodec()
        self.event_sink = event_sink or build_event_sink(config.events.webhook_url, self.http_client)
        self.orchestrator = SyncOrchestrator(
            conn,
            self.http_client,
            self.codec,
            config.sync,
            config.http,
            connector_factory=connector_factory,
            today=today,
        )
        self.runner = TaskRunner(conn, self.event_sink)
        register_sync_handlers(self.runner, self.orchestrator)
        self.scheduler = CronScheduler(conn, self.runner, config.scheduler)

    @classmethod
    def open(cls, db_path: str | None = None, **kwargs) -> "Runtime":
        conn = init_db(db_path)
        bootstrap_runtime_config(conn)
        config = load_runtime_config(conn)
        seed_jobs(conn, config.seed_jobs)
        log_event(
            logging.getLogger("feedsync.runtime"),
            logging.INFO,
            "runtime_opened",
            db=conn.path,
            seed_jobs=len(config.seed_jobs),
        )
        return cls(conn, config, **kwargs)

    async def aclose(self) -> None:
        self.scheduler.shutdown()
        if self._owns_client:
            await self.http_client.aclose()
        self.conn.close()

    async def __aenter__(self) -> "Runtime":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()
