from __future__ import annotations

import json
from typing import Any, Callable

import httpx

from feedsync.connectors.newsdata import NewsDataConnector
from feedsync.security.secrets import CredentialCodec
from feedsync.storage import insert_source


class SleepRecorder:
    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


def article(article_id: str, **overrides: Any) -> dict[str, Any]:
    data = {
        "article_id": article_id,
        "title": f"Headline {article_id}",
        "link": f"https://news.example.com/{article_id}",
        "description": f"Summary for {article_id}",
        "pubDate": "2025-03-01 12:00:00",
        "creator": ["Reporter"],
        "keywords": ["markets"],
        "category": ["business"],
        "country": ["us"],
        "source_name": "Example News",
        "source_url": "https://news.example.com",
    }
    data.update(overrides)
    return data


def page(results: list[dict[str, Any]], next_page: str | None = None) -> dict[str, Any]:
    return {
        "status": "success",
        "totalResults": len(results),
        "results": results,
        "nextPage": next_page,
    }


def json_response(status_code: int, payload: Any, **kwargs: Any) -> httpx.Response:
    return httpx.Response(status_code, content=json.dumps(payload), **kwargs)


def mock_client(handler: Callable[[httpx.Request], httpx.Response]) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


def newsdata_factory(sleep: SleepRecorder):
    def factory(provider_type, credential, http_client, http_config):
        return NewsDataConnector(credential, http_client, http_config, sleep=sleep)

    return factory


def add_source(
    conn,
    codec: CredentialCodec | None,
    name: str = "Example",
    credential: str | None = "key-1",
    **overrides: Any,
) -> int:
    fields: dict[str, Any] = {
        "name": name,
        "provider_type": "newsdata",
        "enabled": True,
        "credential": codec.encrypt(credential, "newsdata") if codec and credential else None,
        "config": {"max_pages": 3},
        "daily_call_quota": 180,
    }
    fields.update(overrides)
    return insert_source(conn, **fields)
