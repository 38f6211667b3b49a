from __future__ import annotations

import asyncio
import logging
import sqlite3
from datetime import date
from typing import Any, Callable

import httpx

from .config import HttpConfig, SyncConfig
from .connectors.base import Connector, ConnectorConfigError, ConnectorError
from .connectors.registry import UnknownProviderError, create_connector
from .models import (
    STATUS_DISABLED,
    STATUS_ERROR,
    STATUS_SKIPPED,
    STATUS_SUCCESS,
    BatchSyncResult,
    Source,
    SourceSyncResult,
)
from .quota import QuotaState, plan_pages, reset_if_stale
from .security.secrets import CredentialCodec, CryptoError
from .storage import (
    add_quota_usage,
    list_sources,
    prune_items,
    record_sync_error,
    record_sync_success,
    require_source,
    upsert_item,
)
from .utils import log_event, redact_secrets, utc_now_iso, utc_today

ConnectorFactory = Callable[[str, str, httpx.AsyncClient, HttpConfig], Connector[Any]]


class SyncOrchestrator:
    """Runs sources through their connector and merges the results into storage."""

    def __init__(
        self,
        conn,
        http_client: httpx.AsyncClient,
        codec: CredentialCodec,
        sync_config: SyncConfig,
        http_config: HttpConfig,
        connector_factory: ConnectorFactory = create_connector,
        today: Callable[[], date] = utc_today,
        logger: logging.Logger | None = None,
    ) -> None:
        self.conn = conn
        self.http_client = http_client
        self.codec = codec
        self.sync_config = sync_config
        self.http_config = http_config
        self._connector_factory = connector_factory
        self._today = today
        self._logger = logger or logging.getLogger("feedsync.sync")
        self._source_locks: dict[int, asyncio.Lock] = {}

    async def sync_source(self, source_id: int) -> SourceSyncResult:
        """Sync one source; concurrent calls for the same source run one at a time."""
        lock = self._source_locks.setdefault(source_id, asyncio.Lock())
        if lock.locked():
            log_event(self._logger, logging.INFO, "sync_waiting", source_id=source_id)
        async with lock:
            return await self._sync_source(source_id)

    async def _sync_source(self, source_id: int) -> SourceSyncResult:
        source = require_source(self.conn, source_id)
        if not source.enabled:
            log_event(self._logger, logging.INFO, "sync_disabled", source_id=source.id)
            return _result(source, STATUS_DISABLED, reason="source disabled")

        if not source.credential:
            return self._skip(source, "no key")
        try:
            credential = self.codec.decrypt(source.credential, source.provider_type)
        except CryptoError as exc:
            return self._fail(source, f"credential unreadable: {exc}")

        try:
            connector = self._connector_factory(
                source.provider_type, credential, self.http_client, self.http_config
            )
            config = connector.validate_config(source.config)
        except (UnknownProviderError, ConnectorConfigError) as exc:
            return self._fail(source, f"invalid source configuration: {exc}")

        current_day = self._today()
        today = current_day.isoformat()
        state = reset_if_stale(
            QuotaState(
                calls_used_today=source.calls_used_today,
                daily_call_quota=source.daily_call_quota,
                quota_reset_date=source.quota_reset_date,
            ),
            current_day,
        )
        plan = plan_pages(
            state,
            connector.estimate_calls(config),
            self.sync_config.per_run_page_ceiling,
        )
        if plan.exhausted:
            add_quota_usage(self.conn, source.id, calls_used=0, today=today)
            return self._skip(source, "daily limit reached")

        log_event(
            self._logger,
            logging.INFO,
            "sync_start",
            source_id=source.id,
            provider=source.provider_type,
            pages=plan.allowed_pages,
            remaining=plan.remaining,
        )
        try:
            fetched = await connector.fetch(config, source.last_sync_at, max_pages=plan.allowed_pages)
        except ConnectorError as exc:
            add_quota_usage(self.conn, source.id, calls_used=exc.calls_used, today=today)
            return self._fail(source, str(exc), calls_used=exc.calls_used)

        fetched_at = utc_now_iso()
        inserted = 0
        updated = 0
        try:
            for item in fetched.items:
                if upsert_item(self.conn, source.id, item, fetched_at):
                    inserted += 1
                else:
                    updated += 1
            self.conn.commit()
        except sqlite3.Error as exc:
            self.conn.rollback()
            add_quota_usage(self.conn, source.id, calls_used=fetched.calls_used, today=today)
            return self._fail(source, f"storage error: {exc}", calls_used=fetched.calls_used)

        record_sync_success(
            self.conn,
            source.id,
            inserted=inserted,
            synced_at=utc_now_iso(),
            calls_used=fetched.calls_used,
            today=today,
        )
        pruned = prune_items(self.conn, source.id, self._max_keep(source))

        for warning in fetched.warnings:
            log_event(self._logger, logging.WARNING, "sync_warning", source_id=source.id, warning=warning)
        log_event(
            self._logger,
            logging.INFO,
            "sync_done",
            source_id=source.id,
            inserted=inserted,
            updated=updated,
            calls_used=fetched.calls_used,
            pruned=pruned,
        )
        return SourceSyncResult(
            source_id=source.id,
            name=source.name,
            success=True,
            status=STATUS_SUCCESS,
            items_added=inserted,
            items_updated=updated,
            calls_used=fetched.calls_used,
            pruned=pruned,
            warnings=list(fetched.warnings),
        )

    async def sync_all(self) -> BatchSyncResult:
        results: list[SourceSyncResult] = []
        # sequential: keeps outstanding provider calls and quota accounting bounded
        for source in list_sources(self.conn, enabled_only=True):
            try:
                result = await self.sync_source(source.id)
            except Exception as exc:  # noqa: BLE001
                log_event(
                    self._logger,
                    logging.ERROR,
                    "sync_source_crashed",
                    source_id=source.id,
                    error=redact_secrets(str(exc)),
                )
                result = _result(source, STATUS_ERROR, error=redact_secrets(str(exc)))
            results.append(result)

        summary = BatchSyncResult(
            total=len(results),
            successful=sum(1 for result in results if result.status == STATUS_SUCCESS),
            failed=sum(1 for result in results if result.status == STATUS_ERROR),
            skipped=sum(
                1 for result in results if result.status in (STATUS_SKIPPED, STATUS_DISABLED)
            ),
            total_items=sum(result.items_added for result in results),
            results=results,
        )
        log_event(
            self._logger,
            logging.INFO,
            "sync_all_done",
            total=summary.total,
            successful=summary.successful,
            failed=summary.failed,
            skipped=summary.skipped,
            total_items=summary.total_items,
        )
        return summary

    def _max_keep(self, source: Source) -> int:
        override = source.config.get("max_keep")
        if isinstance(override, int) and override > 0:
            return override
        return self.sync_config.max_keep

    def _skip(self, source: Source, reason: str) -> SourceSyncResult:
        log_event(self._logger, logging.INFO, "sync_skipped", source_id=source.id, reason=reason)
        return _result(source, STATUS_SKIPPED, reason=reason)

    def _fail(self, source: Source, error: str, calls_used: int = 0) -> SourceSyncResult:
        error = redact_secrets(error)
        try:
            record_sync_error(self.conn, source.id, error)
        except sqlite3.Error as exc:
            log_event(
                self._logger,
                logging.ERROR,
                "sync_error_not_recorded",
                source_id=source.id,
                error=str(exc),
            )
        log_event(self._logger, logging.ERROR, "sync_failed", source_id=source.id, error=error)
        return _result(source, STATUS_ERROR, error=error, calls_used=calls_used)


def _result(source: Source, status: str, **fields: Any) -> SourceSyncResult:
    return SourceSyncResult(
        source_id=source.id,
        name=source.name,
        success=status == STATUS_SUCCESS,
        status=status,
        **fields,
    )
