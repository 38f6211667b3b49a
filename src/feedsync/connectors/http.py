from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Any, Awaitable, Callable

import httpx

from ..config import HttpConfig
from ..utils import log_event, redact_secrets
from .base import ConnectorError

Sleep = Callable[[float], Awaitable[None]]

RETRYABLE_ERRORS = (httpx.ConnectError, httpx.TimeoutException)


def build_http_client(http_config: HttpConfig, **kwargs: Any) -> httpx.AsyncClient:
    timeout = httpx.Timeout(
        http_config.read_timeout_seconds,
        connect=http_config.connect_timeout_seconds,
    )
    headers = {"User-Agent": http_config.user_agent}
    return httpx.AsyncClient(timeout=timeout, headers=headers, **kwargs)


def parse_retry_after(value: str | None) -> float | None:
    if not value:
        return None
    value = value.strip()
    try:
        seconds = float(value)
    except ValueError:
        try:
            when = parsedate_to_datetime(value)
        except (TypeError, ValueError):
            return None
        if when.tzinfo is None:
            when = when.replace(tzinfo=timezone.utc)
        seconds = (when - datetime.now(tz=timezone.utc)).total_seconds()
    return max(0.0, seconds)


async def send_with_retry(
    client: httpx.AsyncClient,
    method: str,
    url: str,
    *,
    params: dict[str, Any] | None = None,
    max_retries: int = 3,
    backoff_seconds: float = 1.0,
    sleep: Sleep = asyncio.sleep,
    logger: logging.Logger | None = None,
) -> httpx.Response:
    """Send one logical request, retrying connect/timeout errors and 429s.

    Delays grow as ``backoff_seconds * 2**attempt``; a 429's Retry-After
    header replaces the computed delay. The last 429 response is returned
    unchanged so the caller can report it.
    """
    logger = logger or logging.getLogger("feedsync.connectors.http")
    attempt = 0
    while True:
        try:
            response = await client.request(method, url, params=params)
        except RETRYABLE_ERRORS as exc:
            if attempt >= max_retries:
                raise ConnectorError(
                    f"request failed after {attempt} retries: "
                    f"{redact_secrets(str(exc)) or type(exc).__name__}"
                ) from exc
            delay = backoff_seconds * (2**attempt)
            log_event(
                logger,
                logging.WARNING,
                "http_retry",
                attempt=attempt + 1,
                reason=type(exc).__name__,
                delay=delay,
            )
            await sleep(delay)
            attempt += 1
            continue

        if response.status_code == 429 and attempt < max_retries:
            delay = parse_retry_after(response.headers.get("Retry-After"))
            if delay is None:
                delay = backoff_seconds * (2**attempt)
            log_event(
                logger,
                logging.WARNING,
                "http_retry",
                attempt=attempt + 1,
                reason="rate_limited",
                delay=delay,
            )
            await sleep(delay)
            attempt += 1
            continue

        return response
