from __future__ import annotations

from typing import TYPE_CHECKING, Any

from ..config import SyncConfig
from ..connectors.base import ConnectorConfigError
from ..connectors.registry import (
    UnknownProviderError,
    get_connector_class,
    list_connector_metadata,
)
from ..handlers import SOURCES_COMPONENT, source_job_type
from ..models import ConnectionTestResult, Source, StoredItem
from ..scheduler import validate_cron
from ..security.secrets import CredentialCodec, CryptoError
from ..storage import (
    delete_job,
    insert_job,
    insert_source,
    list_items,
    require_source,
    set_item_flag,
    update_job_fields,
    update_source_fields,
)
from ..storage import delete_source as _delete_source
from ..storage import list_sources as _list_sources

if TYPE_CHECKING:
    from ..runtime import Runtime


def list_providers() -> list[dict[str, Any]]:
    return [metadata.to_dict() for metadata in list_connector_metadata()]


def list_sources(conn: Any) -> list[Source]:
    return _list_sources(conn)


def get_source(conn: Any, source_id: int) -> Source:
    return require_source(conn, source_id)


def create_source(
    conn: Any,
    codec: CredentialCodec,
    sync_config: SyncConfig,
    payload: dict[str, Any],
) -> Source:
    """Create a source together with the job that schedules it."""
    name = str(payload.get("name") or "").strip()
    if not name:
        raise ValueError("name is required")
    provider_type = str(payload.get("provider_type") or "").strip()
    if not provider_type:
        raise ValueError("provider_type is required")
    try:
        config = _validated_config(provider_type, payload.get("config"))
    except UnknownProviderError as exc:
        raise ValueError(str(exc)) from exc

    enabled = bool(payload.get("enabled", True))
    quota = payload.get("daily_call_quota")
    daily_call_quota = sync_config.default_daily_quota if quota is None else int(quota)
    if daily_call_quota < 0:
        raise ValueError("daily_call_quota must be >= 0")
    cron, interval = _schedule_from_payload(payload, default_cron=sync_config.default_cron)

    credential = str(payload.get("credential") or "").strip()
    encrypted = codec.encrypt(credential, provider_type) if credential else None

    with conn.transaction():
        source_id = insert_source(
            conn,
            name=name,
            provider_type=provider_type,
            enabled=enabled,
            credential=encrypted,
            config=config,
            daily_call_quota=daily_call_quota,
            commit=False,
        )
        job_id = insert_job(
            conn,
            name=_job_name(name),
            job_type=source_job_type(source_id),
            component=SOURCES_COMPONENT,
            cron=cron,
            interval_seconds=interval,
            enabled=enabled,
            commit=False,
        )
        update_source_fields(conn, source_id, commit=False, job_id=job_id)
    return require_source(conn, source_id)


def update_source(
    conn: Any,
    codec: CredentialCodec,
    source_id: int,
    payload: dict[str, Any],
) -> Source:
    current = require_source(conn, source_id)
    fields: dict[str, Any] = {}
    job_changes: dict[str, Any] = {}

    if "name" in payload and payload["name"] is not None:
        name = str(payload["name"]).strip()
        if not name:
            raise ValueError("name must not be empty")
        fields["name"] = name
        job_changes["name"] = _job_name(name)
    if "enabled" in payload and payload["enabled"] is not None:
        fields["enabled"] = bool(payload["enabled"])
        job_changes["enabled"] = bool(payload["enabled"])
    if "config" in payload and payload["config"] is not None:
        fields["config"] = _validated_config(current.provider_type, payload["config"])
    if "daily_call_quota" in payload and payload["daily_call_quota"] is not None:
        quota = int(payload["daily_call_quota"])
        if quota < 0:
            raise ValueError("daily_call_quota must be >= 0")
        fields["daily_call_quota"] = quota
    if "credential" in payload and payload["credential"] is not None:
        credential = str(payload["credential"]).strip()
        fields["credential"] = (
            codec.encrypt(credential, current.provider_type) if credential else None
        )
    if payload.get("cron") is not None or payload.get("interval_seconds") is not None:
        cron, interval = _schedule_from_payload(payload, default_cron=None)
        job_changes["cron"] = cron
        job_changes["interval_seconds"] = interval

    with conn.transaction():
        update_source_fields(conn, source_id, commit=False, **fields)
        if job_changes and current.job_id is not None:
            update_job_fields(
                conn, source_job_type(source_id), commit=False, **job_changes
            )
    return require_source(conn, source_id)


def delete_source(conn: Any, source_id: int) -> None:
    source = require_source(conn, source_id)
    with conn.transaction():
        _delete_source(conn, source.id, commit=False)
        if source.job_id is not None:
            delete_job(conn, source.job_id, commit=False)


async def test_source_connection(runtime: "Runtime", source_id: int) -> ConnectionTestResult:
    source = require_source(runtime.conn, source_id)
    if not source.credential:
        return ConnectionTestResult(success=False, message="No credential configured")
    try:
        credential = runtime.codec.decrypt(source.credential, source.provider_type)
    except CryptoError as exc:
        return ConnectionTestResult(success=False, message=f"Credential unreadable: {exc}")
    try:
        connector_cls = get_connector_class(source.provider_type)
    except UnknownProviderError as exc:
        return ConnectionTestResult(success=False, message=str(exc))
    connector = connector_cls(credential, runtime.http_client, runtime.config.http)
    return await connector.test_connection()


def list_source_items(conn: Any, source_id: int, limit: int = 50, offset: int = 0) -> list[StoredItem]:
    require_source(conn, source_id)
    return list_items(conn, source_id, limit=max(1, min(limit, 500)), offset=max(0, offset))


def flag_item(conn: Any, item_id: int, flag: str, value: bool = True) -> None:
    set_item_flag(conn, item_id, flag, value)


def _validated_config(provider_type: str, raw: Any) -> dict[str, Any]:
    if raw is not None and not isinstance(raw, dict):
        raise ValueError("config must be an object")
    connector_cls = get_connector_class(provider_type)
    merged = dict(connector_cls.default_config())
    merged.update(raw or {})
    try:
        connector_cls.validate_config(merged)
    except ConnectorConfigError as exc:
        raise ValueError(f"invalid config: {exc}") from exc
    return merged


def _schedule_from_payload(
    payload: dict[str, Any], default_cron: str | None
) -> tuple[str | None, int | None]:
    cron = payload.get("cron")
    interval = payload.get("interval_seconds")
    if cron and interval:
        raise ValueError("set either cron or interval_seconds, not both")
    if interval is not None:
        interval = int(interval)
        if interval <= 0:
            raise ValueError("interval_seconds must be positive")
        return None, interval
    cron = str(cron).strip() if cron else default_cron
    if cron:
        validate_cron(cron)
    return cron, None


def _job_name(source_name: str) -> str:
    return f"Sync {source_name}"
