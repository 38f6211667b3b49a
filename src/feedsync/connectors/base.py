"""Contract every provider connector implements.

A connector is built for a single sync or test call. It gets the decrypted
credential and a shared ``httpx.AsyncClient``, and it must not outlive that
call because it holds secret material.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, Generic, TypeVar

import httpx
import jsonschema

from ..config import HttpConfig
from ..models import ConnectionTestResult, ConnectorMetadata, FetchResult

ConfigT = TypeVar("ConfigT")


class ConnectorError(RuntimeError):
    def __init__(
        self, message: str, status_code: int | None = None, calls_used: int = 0
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        # page requests already issued when the failure happened
        self.calls_used = calls_used


class ConnectorConfigError(ConnectorError, ValueError):
    pass


class Connector(ABC, Generic[ConfigT]):
    provider_type: str = ""

    def __init__(self, credential: str, http_client: httpx.AsyncClient, http_config: HttpConfig) -> None:
        self.credential = credential
        self.http_client = http_client
        self.http_config = http_config

    @classmethod
    @abstractmethod
    def metadata(cls) -> ConnectorMetadata:
        ...

    @classmethod
    @abstractmethod
    def default_config(cls) -> dict[str, Any]:
        ...

    @classmethod
    def validate_config(cls, raw: dict[str, Any] | None) -> ConfigT:
        """Check ``raw`` against the metadata schema, then build the typed config."""
        merged = dict(cls.default_config())
        merged.update(raw or {})
        try:
            jsonschema.validate(merged, cls.metadata().config_schema)
        except jsonschema.ValidationError as exc:
            location = ".".join(str(part) for part in exc.absolute_path) or "config"
            raise ConnectorConfigError(f"{location}: {exc.message}") from exc
        return cls.build_config(merged)

    @classmethod
    @abstractmethod
    def build_config(cls, data: dict[str, Any]) -> ConfigT:
        ...

    @classmethod
    @abstractmethod
    def estimate_calls(cls, config: ConfigT) -> int:
        ...

    @abstractmethod
    async def test_connection(self) -> ConnectionTestResult:
        ...

    @abstractmethod
    async def fetch(
        self, config: ConfigT, last_sync_at: str | None, max_pages: int | None = None
    ) -> FetchResult:
        ...
