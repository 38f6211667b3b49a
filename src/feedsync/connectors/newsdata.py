"""NewsData.io connector (latest and archive endpoints)."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

import httpx

from ..models import ConnectionTestResult, ConnectorMetadata, FetchResult, NormalizedItem
from ..utils import log_event, redact_secrets
from .base import Connector, ConnectorConfigError, ConnectorError
from .http import Sleep, send_with_retry
from .registry import register_connector

LATEST_ENDPOINT = "https://newsdata.io/api/1/latest"
ARCHIVE_ENDPOINT = "https://newsdata.io/api/1/archive"
MIN_PAGES = 1
MAX_PAGES = 10
DEFAULT_MAX_PAGES = 3
DATE_FORMAT = "%Y-%m-%d"

CONFIG_SCHEMA: dict[str, Any] = {
    "type": "object",
    "additionalProperties": False,
    "properties": {
        "language": {"type": ["string", "null"], "title": "Language", "examples": ["en"]},
        "countries": {"type": "array", "items": {"type": "string"}, "title": "Countries"},
        "categories": {"type": "array", "items": {"type": "string"}, "title": "Categories"},
        "domains": {"type": "array", "items": {"type": "string"}, "title": "Domains"},
        "exclude_domains": {
            "type": "array",
            "items": {"type": "string"},
            "title": "Exclude domains",
        },
        "query": {"type": ["string", "null"], "title": "Search query"},
        "max_pages": {
            "type": "integer",
            "minimum": MIN_PAGES,
            "maximum": MAX_PAGES,
            "default": DEFAULT_MAX_PAGES,
            "title": "Max pages per sync",
        },
        "max_keep": {"type": ["integer", "null"], "minimum": 1, "title": "Items to keep"},
        "use_archive": {"type": "boolean", "default": False, "title": "Use archive endpoint"},
        "from_date": {"type": ["string", "null"], "title": "From date (YYYY-MM-DD)"},
        "to_date": {"type": ["string", "null"], "title": "To date (YYYY-MM-DD)"},
    },
}


@dataclass(frozen=True)
class NewsDataConfig:
    language: str | None = "en"
    countries: list[str] = field(default_factory=list)
    categories: list[str] = field(default_factory=list)
    domains: list[str] = field(default_factory=list)
    exclude_domains: list[str] = field(default_factory=list)
    query: str | None = None
    max_pages: int = DEFAULT_MAX_PAGES
    max_keep: int | None = None
    use_archive: bool = False
    from_date: str | None = None
    to_date: str | None = None

    @property
    def endpoint(self) -> str:
        return ARCHIVE_ENDPOINT if self.use_archive else LATEST_ENDPOINT

    def query_params(self) -> dict[str, str]:
        params: dict[str, str] = {}
        if self.language:
            params["language"] = self.language
        if self.countries:
            params["country"] = ",".join(self.countries)
        if self.categories:
            params["category"] = ",".join(self.categories)
        if self.domains:
            params["domain"] = ",".join(self.domains)
        if self.exclude_domains:
            params["excludedomain"] = ",".join(self.exclude_domains)
        if self.query:
            params["q"] = self.query
        if self.from_date:
            params["from_date"] = self.from_date
        if self.to_date:
            params["to_date"] = self.to_date
        return params


@register_connector
class NewsDataConnector(Connector[NewsDataConfig]):
    provider_type = "newsdata"

    def __init__(self, *args: Any, sleep: Sleep | None = None, **kwargs: Any) -> None:
        super().__init__(*args, **kwargs)
        self._sleep = sleep
        self._logger = logging.getLogger("feedsync.connectors.newsdata")

    @classmethod
    def metadata(cls) -> ConnectorMetadata:
        return ConnectorMetadata(
            provider_type=cls.provider_type,
            display_name="NewsData.io",
            description="Latest and archived news articles from newsdata.io",
            requires_credential=True,
            config_schema=CONFIG_SCHEMA,
        )

    @classmethod
    def default_config(cls) -> dict[str, Any]:
        return {
            "language": "en",
            "countries": [],
            "categories": [],
            "domains": [],
            "exclude_domains": [],
            "query": None,
            "max_pages": DEFAULT_MAX_PAGES,
            "use_archive": False,
            "from_date": None,
            "to_date": None,
        }

    @classmethod
    def build_config(cls, data: dict[str, Any]) -> NewsDataConfig:
        from_date = _check_date(data.get("from_date"), "from_date")
        to_date = _check_date(data.get("to_date"), "to_date")
        if from_date and to_date and from_date > to_date:
            raise ConnectorConfigError("from_date must not be after to_date")
        if (from_date or to_date) and not data.get("use_archive"):
            raise ConnectorConfigError("from_date/to_date require use_archive")
        return NewsDataConfig(
            language=data.get("language") or None,
            countries=list(data.get("countries") or []),
            categories=list(data.get("categories") or []),
            domains=list(data.get("domains") or []),
            exclude_domains=list(data.get("exclude_domains") or []),
            query=(data.get("query") or "").strip() or None,
            max_pages=int(data.get("max_pages") or DEFAULT_MAX_PAGES),
            max_keep=data.get("max_keep"),
            use_archive=bool(data.get("use_archive")),
            from_date=from_date,
            to_date=to_date,
        )

    @classmethod
    def estimate_calls(cls, config: NewsDataConfig) -> int:
        return config.max_pages

    async def test_connection(self) -> ConnectionTestResult:
        try:
            response = await self._get(LATEST_ENDPOINT, {"language": "en"})
        except ConnectorError as exc:
            log_event(self._logger, logging.WARNING, "newsdata_test_failed", error=str(exc))
            return ConnectionTestResult(success=False, message=f"Connection error: {exc}")

        if response.is_success:
            try:
                data = response.json()
            except ValueError:
                return ConnectionTestResult(success=False, message="Invalid response body")
            log_event(
                self._logger,
                logging.INFO,
                "newsdata_test_ok",
                results=len(data.get("results") or []),
            )
            return ConnectionTestResult(
                success=True,
                message="Connection successful",
                details={
                    "total_results": data.get("totalResults"),
                    "status": data.get("status"),
                },
            )

        error_text = redact_secrets(response.text[:500])
        if response.status_code == 401:
            message = "Invalid API key"
        elif response.status_code == 429:
            message = "Rate limit exceeded"
        else:
            message = f"HTTP {response.status_code}: {error_text}"
        log_event(
            self._logger,
            logging.WARNING,
            "newsdata_test_failed",
            status=response.status_code,
        )
        return ConnectionTestResult(
            success=False,
            message=message,
            details={"status": response.status_code, "error": error_text},
        )

    async def fetch(
        self,
        config: NewsDataConfig,
        last_sync_at: str | None,
        max_pages: int | None = None,
    ) -> FetchResult:
        page_limit = config.max_pages if max_pages is None else min(config.max_pages, max_pages)
        endpoint = config.endpoint
        base_params = config.query_params()
        items: list[NormalizedItem] = []
        warnings: list[str] = []
        calls_used = 0
        next_page: str | None = None

        log_event(
            self._logger,
            logging.INFO,
            "newsdata_fetch_start",
            endpoint=endpoint,
            max_pages=page_limit,
            last_sync_at=last_sync_at,
        )
        for page_number in range(page_limit):
            params = dict(base_params)
            if next_page:
                params["page"] = next_page
            try:
                response = await self._get(endpoint, params)
            except ConnectorError as exc:
                exc.calls_used = calls_used
                raise
            calls_used += 1

            if not response.is_success:
                raise ConnectorError(
                    f"HTTP {response.status_code} from {endpoint}",
                    status_code=response.status_code,
                    calls_used=calls_used,
                )
            try:
                data = response.json()
            except ValueError as exc:
                raise ConnectorError(
                    f"failed to parse response from {endpoint}", calls_used=calls_used
                ) from exc
            if not isinstance(data, dict) or data.get("status") not in (None, "success"):
                raise ConnectorError(
                    f"provider returned an error: {_error_message(data)}",
                    status_code=response.status_code,
                    calls_used=calls_used,
                )

            results = data.get("results") or []
            page_items = [item for item in (map_article(raw) for raw in results) if item]
            items.extend(page_items)
            log_event(
                self._logger,
                logging.INFO,
                "newsdata_page_fetched",
                page=page_number + 1,
                articles=len(page_items),
            )

            next_page = data.get("nextPage") or None
            if not next_page:
                break

        if next_page and calls_used >= page_limit:
            warnings.append(f"reached max pages limit ({page_limit}), more articles available")

        return FetchResult(items=items, calls_used=calls_used, warnings=warnings)

    async def _get(self, url: str, params: dict[str, str]) -> httpx.Response:
        query = {"apikey": self.credential}
        query.update(params)
        kwargs: dict[str, Any] = {}
        if self._sleep is not None:
            kwargs["sleep"] = self._sleep
        return await send_with_retry(
            self.http_client,
            "GET",
            url,
            params=query,
            max_retries=self.http_config.max_retries,
            backoff_seconds=self.http_config.backoff_seconds,
            logger=self._logger,
            **kwargs,
        )


def map_article(raw: dict[str, Any]) -> NormalizedItem | None:
    title = str(raw.get("title") or "").strip()
    link = str(raw.get("link") or "").strip()
    if not title or not link:
        return None
    keywords = as_string_list(raw.get("keywords"))
    categories = as_string_list(raw.get("category"))
    tags: list[str] = []
    for tag in keywords + categories:
        if tag not in tags:
            tags.append(tag)
    creators = as_string_list(raw.get("creator"))
    author = ", ".join(creators) if creators else (raw.get("source_name") or source_domain(raw.get("source_url")))
    payload = dict(raw)
    payload["country"] = as_string_list(raw.get("country"))
    payload["category"] = categories
    payload["keywords"] = keywords
    return NormalizedItem(
        provider_type=NewsDataConnector.provider_type,
        external_id=str(raw.get("article_id") or "").strip() or None,
        url=link,
        title=title,
        excerpt=raw.get("description") or None,
        author=author or None,
        published_at=parse_pub_date(raw.get("pubDate")),
        tags=tags,
        raw_payload=payload,
    )


def as_string_list(value: Any) -> list[str]:
    """Accept a single string, a list, or nothing, and return a clean string list."""
    if value is None:
        return []
    if isinstance(value, str):
        value = [value]
    if not isinstance(value, (list, tuple)):
        return [str(value)]
    return [str(entry).strip() for entry in value if entry is not None and str(entry).strip()]


def parse_pub_date(value: Any) -> str | None:
    if not value or not isinstance(value, str):
        return None
    text = value.strip()
    try:
        parsed = datetime.strptime(text, "%Y-%m-%d %H:%M:%S").replace(tzinfo=timezone.utc)
    except ValueError:
        try:
            parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
        except ValueError:
            return None
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc).isoformat()


def source_domain(url: Any) -> str | None:
    if not url or not isinstance(url, str):
        return None
    try:
        return httpx.URL(url).host or None
    except httpx.InvalidURL:
        return None


def _check_date(value: Any, name: str) -> str | None:
    if value in (None, ""):
        return None
    try:
        datetime.strptime(str(value), DATE_FORMAT)
    except ValueError as exc:
        raise ConnectorConfigError(f"{name} must be YYYY-MM-DD") from exc
    return str(value)


def _error_message(data: Any) -> str:
    if isinstance(data, dict):
        results = data.get("results")
        if isinstance(results, dict) and results.get("message"):
            return str(results["message"])
        if data.get("message"):
            return str(data["message"])
    return "unknown error"
