"""
Remote record client with authentication, rate limiting, and retry logic.

This module fetches one page of remote entities at a time with:
- Bearer token authentication with a single refresh on 401
- Retry-After aware handling of HTTP 429
- Exponential backoff for timeouts, transport errors and 5xx responses
- Page-number and opaque-token pagination
- Incremental fetches via updated_since
"""

import asyncio
from dataclasses import dataclass, field
from datetime import datetime
from email.utils import parsedate_to_datetime
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple
import logging

import httpx
from pydantic import ValidationError

from core.config import settings
from core.exceptions import (
    AuthenticationError,
    NetworkError,
    RateLimitError,
    RecordParseError,
    RemoteResponseError,
    ResourceNotFoundError,
)
from ingestion.extractors.token_manager import TokenManager
from models.base import EntityKind, utc_now
from schemas.remote import RemoteEntity, ensure_utc

logger = logging.getLogger(__name__)

PAGE_PREFIX = "page:"
TOKEN_PREFIX = "token:"


@dataclass(frozen=True)
class Cursor:
    """
    Position in a paginated listing.

    Either a page number or an opaque server token; encoded as "page:N" or
    "token:<value>" when stored on a SyncRun.
    """
    page: Optional[int] = None
    token: Optional[str] = None

    @classmethod
    def first_page(cls) -> "Cursor":
        return cls(page=1)

    def encode(self) -> str:
        if self.token is not None:
            return f"{TOKEN_PREFIX}{self.token}"
        return f"{PAGE_PREFIX}{self.page}"

    @classmethod
    def decode(cls, value: Optional[str]) -> Optional["Cursor"]:
        if not value:
            return None
        if value.startswith(TOKEN_PREFIX):
            return cls(token=value[len(TOKEN_PREFIX):])
        if value.startswith(PAGE_PREFIX):
            return cls(page=int(value[len(PAGE_PREFIX):]))
        raise ValueError(f"Unrecognized cursor: {value!r}")

    def query_params(self, page_size: int) -> Dict[str, Any]:
        if self.token is not None:
            return {"cursor": self.token, "per_page": page_size}
        return {"page": self.page, "per_page": page_size}


@dataclass
class RemotePage:
    """One fetched page; next_cursor is None on the last page"""
    records: List[RemoteEntity] = field(default_factory=list)
    next_cursor: Optional[Cursor] = None
    total_count: Optional[int] = None
    parse_errors: List[RecordParseError] = field(default_factory=list)


class RemoteRecordClient:
    """
    Fetch remote entities page by page.

    Requests are sequential; the client never has more than one request in
    flight. Every request carries the configured timeout.

    Attributes:
        max_retries: Retries after the first attempt for 429/5xx/network errors
        backoff_base: First backoff delay in seconds, doubled per attempt
        backoff_max: Upper bound of any single wait
    """

    ENDPOINTS = {
        EntityKind.MATTERS: "/matters",
        EntityKind.CONTACTS: "/contacts",
        EntityKind.TASKS: "/tasks",
    }

    def __init__(
        self,
        base_url: Optional[str] = None,
        token_manager: Optional[TokenManager] = None,
        page_size: Optional[int] = None,
        timeout: Optional[float] = None,
        max_retries: Optional[int] = None,
        backoff_base: Optional[float] = None,
        backoff_max: Optional[float] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep
    ):
        self.base_url = (base_url or settings.PP_API_BASE_URL).rstrip("/")
        self.token_manager = token_manager or TokenManager.from_settings()
        self.page_size = page_size or settings.PP_PAGE_SIZE
        self.timeout = timeout or settings.REQUEST_TIMEOUT
        self.max_retries = settings.MAX_RETRIES if max_retries is None else max_retries
        self.backoff_base = settings.BACKOFF_BASE_SECONDS if backoff_base is None else backoff_base
        self.backoff_max = settings.BACKOFF_MAX_SECONDS if backoff_max is None else backoff_max
        self.sleep = sleep

        self._client = http_client
        self._owns_client = http_client is None

    async def __aenter__(self) -> "RemoteRecordClient":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._owns_client and self._client is not None:
            await self._client.aclose()
            self._client = None

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout)
        return self._client

    # ------------------------------------------------------------------
    # Backoff helpers
    # ------------------------------------------------------------------

    def _backoff_delay(self, attempt: int) -> float:
        return min(self.backoff_base * (2 ** attempt), self.backoff_max)

    def _retry_after(self, response: httpx.Response) -> Optional[float]:
        """Retry-After header as seconds; accepts delta-seconds or an HTTP date"""
        value = response.headers.get("Retry-After")
        if not value:
            return None
        try:
            seconds = float(value)
        except ValueError:
            try:
                retry_at = parsedate_to_datetime(value)
            except (TypeError, ValueError):
                return None
            seconds = (ensure_utc(retry_at) - utc_now()).total_seconds()
        return min(max(seconds, 0.0), self.backoff_max)

    # ------------------------------------------------------------------
    # Requests
    # ------------------------------------------------------------------

    async def _request_with_retry(self, url: str, params: Dict[str, Any]) -> httpx.Response:
        """
        GET with retry logic.

        Raises:
            RateLimitError: 429 persisted after max_retries
            NetworkError: 5xx / timeout / transport error persisted after max_retries
            AuthenticationError: 401 after one token refresh, or 403
            ResourceNotFoundError: 404
            RemoteResponseError: Any other 4xx
        """
        attempt = 0
        refreshed = False

        while True:
            token = await self.token_manager.get_access_token()
            headers = {"Authorization": f"Bearer {token}", "Accept": "application/json"}
            context = {"api_url": url, "params": dict(params), "retry_count": attempt}

            try:
                logger.debug(f"GET {url} {params} (attempt {attempt + 1}/{self.max_retries + 1})")
                response = await self.client.get(url, headers=headers, params=params, timeout=self.timeout)
            except (httpx.TimeoutException, httpx.TransportError) as e:
                if attempt < self.max_retries:
                    delay = self._backoff_delay(attempt)
                    logger.warning(f"{type(e).__name__} on {url}. Retrying in {delay} seconds")
                    await self.sleep(delay)
                    attempt += 1
                    continue
                raise NetworkError(
                    f"Request failed after {attempt + 1} attempts",
                    context={**context, "timeout": self.timeout},
                    original_exception=e
                )

            status = response.status_code
            context["status_code"] = status

            if status == 401:
                if refreshed:
                    raise AuthenticationError("Authentication failed after token refresh", context=context)
                logger.info("Received 401, refreshing access token")
                await self.token_manager.refresh(rejected_token=token)
                refreshed = True
                continue

            if status == 429:
                hint = self._retry_after(response)
                delay = hint if hint is not None else self._backoff_delay(attempt)
                if attempt < self.max_retries:
                    logger.warning(f"Rate limited. Retrying after {delay} seconds")
                    await self.sleep(delay)
                    attempt += 1
                    continue
                raise RateLimitError(f"Rate limit exceeded for {url}", context=context, retry_after=delay)

            if status >= 500:
                if attempt < self.max_retries:
                    delay = self._backoff_delay(attempt)
                    logger.warning(
                        f"Server error {status}. Retrying in {delay} seconds "
                        f"(attempt {attempt + 1}/{self.max_retries + 1})"
                    )
                    await self.sleep(delay)
                    attempt += 1
                    continue
                raise NetworkError(
                    f"Server error after {attempt + 1} attempts",
                    context={**context, "response_body": response.text[:500]}
                )

            if status == 403:
                raise AuthenticationError(f"Access forbidden for {url}", context=context)

            if status == 404:
                raise ResourceNotFoundError(f"Resource not found: {url}", context=context)

            if status >= 400:
                raise RemoteResponseError(
                    f"Remote API rejected the request with HTTP {status}",
                    context={**context, "response_body": response.text[:500]}
                )

            return response

    async def fetch_page(
        self,
        entity_kind: EntityKind,
        cursor: Optional[Cursor] = None,
        updated_since: Optional[datetime] = None
    ) -> RemotePage:
        """
        Fetch one page of entities.

        Records that cannot be parsed are reported in page.parse_errors and
        do not fail the page.

        Raises:
            FetchError: Any fatal failure (see _request_with_retry)
        """
        entity_kind = EntityKind(entity_kind)
        cursor = cursor or Cursor.first_page()
        url = f"{self.base_url}{self.ENDPOINTS[entity_kind]}"

        params = cursor.query_params(self.page_size)
        if updated_since is not None:
            params["updated_since"] = ensure_utc(updated_since).isoformat()

        logger.info(f"Fetching {entity_kind.value} {cursor.encode()}")
        response = await self._request_with_retry(url, params)

        try:
            data = response.json()
        except ValueError as e:
            raise RemoteResponseError(
                "Failed to parse JSON response",
                context={"api_url": url, "cursor": cursor.encode(), "response_body": response.text[:500]},
                original_exception=e
            )

        items, next_cursor, total_count = self._parse_envelope(data, cursor, url)

        page = RemotePage(next_cursor=next_cursor, total_count=total_count)
        for item in items:
            try:
                page.records.append(RemoteEntity.from_payload(entity_kind, item))
            except RecordParseError as e:
                page.parse_errors.append(e)
            except ValidationError as e:
                page.parse_errors.append(RecordParseError(
                    "Remote record failed validation",
                    context={
                        "entity_kind": entity_kind.value,
                        "remote_id": str(item.get("id")) if isinstance(item, dict) else None,
                    },
                    original_exception=e
                ))

        logger.debug(
            f"Fetched {len(page.records)} {entity_kind.value} "
            f"({len(page.parse_errors)} unparseable), next={next_cursor.encode() if next_cursor else None}"
        )
        return page

    def _parse_envelope(
        self,
        data: Any,
        cursor: Cursor,
        url: str
    ) -> Tuple[List[Any], Optional[Cursor], Optional[int]]:
        """
        Handle the supported response formats:
        - a bare JSON list (more pages while pages are full)
        - {"data": [...], "next_cursor": "..."}
        - {"data": [...], "total_count": N} or {"data": [...], "meta": {"total": N}}
        """
        total_count = None
        next_token = None
        has_next = None

        if isinstance(data, list):
            items = data
        elif isinstance(data, dict):
            items = data.get("data", data.get("results", []))
            next_token = data.get("next_cursor") or data.get("next_page_token")
            meta = data.get("meta") if isinstance(data.get("meta"), dict) else {}
            total_count = data.get("total_count", meta.get("total"))
            has_next = data.get("has_next")
        else:
            items = None

        if not isinstance(items, list):
            raise RemoteResponseError(
                "Unexpected response envelope",
                context={"api_url": url, "cursor": cursor.encode(), "body_type": type(data).__name__}
            )

        if not items:
            return items, None, total_count

        if next_token:
            return items, Cursor(token=str(next_token)), total_count

        if cursor.page is None:
            # Token pagination ends when the server stops returning a token
            return items, None, total_count

        if total_count is not None:
            more = cursor.page * self.page_size < int(total_count)
        elif has_next is not None:
            more = bool(has_next)
        else:
            more = len(items) >= self.page_size

        return items, Cursor(page=cursor.page + 1) if more else None, total_count
