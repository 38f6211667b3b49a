from __future__ import annotations

from dataclasses import asdict, dataclass, field
from typing import Any

STATUS_SUCCESS = "success"
STATUS_SKIPPED = "skipped"
STATUS_ERROR = "error"
STATUS_DISABLED = "disabled"


@dataclass(frozen=True)
class Job:
    id: int
    name: str
    job_type: str
    component: str
    frequency_cron: str | None
    frequency_seconds: int | None
    enabled: bool
    last_run_at: str | None
    last_status: str | None
    last_result: dict[str, Any] | None
    error_count: int
    created_at: str
    updated_at: str

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class JobRun:
    id: int
    job_id: int
    job_type: str
    started_at: str
    finished_at: str | None
    status: str
    result: dict[str, Any] | None
    error_message: str | None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class Source:
    id: int
    name: str
    provider_type: str
    enabled: bool
    credential: str | None
    config: dict[str, Any]
    job_id: int | None
    last_sync_at: str | None
    last_error: str | None
    item_count: int
    error_count: int
    calls_used_today: int
    daily_call_quota: int
    quota_reset_date: str | None
    created_at: str
    updated_at: str

    @property
    def has_credential(self) -> bool:
        return bool(self.credential)

    def to_public_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data.pop("credential", None)
        data["has_credential"] = self.has_credential
        return data


@dataclass(frozen=True)
class NormalizedItem:
    provider_type: str
    external_id: str | None
    url: str
    title: str
    excerpt: str | None = None
    author: str | None = None
    published_at: str | None = None
    tags: list[str] = field(default_factory=list)
    raw_payload: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class StoredItem:
    id: int
    source_id: int
    provider_type: str
    external_id: str | None
    url: str
    title: str
    excerpt: str | None
    author: str | None
    published_at: str | None
    tags: list[str]
    fetched_at: str
    is_pinned: bool
    is_starred: bool
    is_dismissed: bool
    linked_at: str | None


@dataclass(frozen=True)
class FetchResult:
    items: list[NormalizedItem]
    calls_used: int
    warnings: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class ConnectionTestResult:
    success: bool
    message: str
    details: dict[str, Any] | None = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class ConnectorMetadata:
    provider_type: str
    display_name: str
    description: str
    requires_credential: bool
    config_schema: dict[str, Any]

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class RunOutcome:
    status: str
    result: dict[str, Any] | None = None
    error_message: str | None = None
    finished_at: str | None = None

    @classmethod
    def skipped(cls, reason: str) -> "RunOutcome":
        return cls(status=STATUS_SKIPPED, result={"reason": reason})

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class SourceSyncResult:
    source_id: int
    name: str
    success: bool
    status: str
    items_added: int = 0
    items_updated: int = 0
    calls_used: int = 0
    pruned: int = 0
    warnings: list[str] = field(default_factory=list)
    reason: str | None = None
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class BatchSyncResult:
    total: int
    successful: int
    failed: int
    skipped: int
    total_items: int
    results: list[SourceSyncResult]

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)
