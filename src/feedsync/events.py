from __future__ import annotations

import logging
from typing import Any, Protocol

import httpx

from .utils import json_dumps, log_event


class EventSink(Protocol):
    async def emit(self, event_name: str, payload: dict[str, Any]) -> None:
        ...


class LoggingEventSink:
    def __init__(self, logger: logging.Logger | None = None) -> None:
        self._logger = logger or logging.getLogger("feedsync.events")

    async def emit(self, event_name: str, payload: dict[str, Any]) -> None:
        log_event(
            self._logger,
            logging.INFO,
            "event_emitted",
            name=event_name,
            payload=json_dumps(payload),
        )


class WebhookEventSink:
    """POSTs ``{"event": name, "payload": ...}`` to a URL; delivery is best-effort."""

    def __init__(
        self,
        url: str,
        http_client: httpx.AsyncClient,
        logger: logging.Logger | None = None,
    ) -> None:
        self._url = url
        self._client = http_client
        self._logger = logger or logging.getLogger("feedsync.events")

    async def emit(self, event_name: str, payload: dict[str, Any]) -> None:
        body = json_dumps({"event": event_name, "payload": payload})
        try:
            response = await self._client.post(
                self._url,
                content=body,
                headers={"Content-Type": "application/json"},
            )
        except httpx.HTTPError as exc:
            log_event(
                self._logger,
                logging.WARNING,
                "event_delivery_failed",
                name=event_name,
                error=type(exc).__name__,
            )
            return
        if response.is_error:
            log_event(
                self._logger,
                logging.WARNING,
                "event_delivery_failed",
                name=event_name,
                status=response.status_code,
            )


def build_event_sink(webhook_url: str, http_client: httpx.AsyncClient) -> EventSink:
    if webhook_url:
        return WebhookEventSink(webhook_url, http_client)
    return LoggingEventSink()
