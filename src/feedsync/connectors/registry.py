from __future__ import annotations

from typing import Any

import httpx

from ..config import HttpConfig
from ..models import ConnectorMetadata
from .base import Connector

_CONNECTORS: dict[str, type[Connector]] = {}


class UnknownProviderError(LookupError):
    pass


def register_connector(connector_cls: type[Connector]) -> type[Connector]:
    if not connector_cls.provider_type:
        raise ValueError(f"{connector_cls.__name__} has no provider_type")
    _CONNECTORS[connector_cls.provider_type] = connector_cls
    return connector_cls


def unregister_connector(provider_type: str) -> None:
    _CONNECTORS.pop(provider_type, None)


def get_connector_class(provider_type: str) -> type[Connector]:
    _load_builtin_connectors()
    try:
        return _CONNECTORS[provider_type]
    except KeyError as exc:
        raise UnknownProviderError(f"unknown provider type {provider_type}") from exc


def create_connector(
    provider_type: str,
    credential: str,
    http_client: httpx.AsyncClient,
    http_config: HttpConfig,
) -> Connector[Any]:
    connector_cls = get_connector_class(provider_type)
    return connector_cls(credential, http_client, http_config)


def list_connector_metadata() -> list[ConnectorMetadata]:
    _load_builtin_connectors()
    return [_CONNECTORS[key].metadata() for key in sorted(_CONNECTORS)]


def _load_builtin_connectors() -> None:
    from . import newsdata  # noqa: F401
