"""
Source Fetcher for remote block and allow lists.

This module retrieves one source per call over HTTP(S) with conditional
requests built from the cached ETag/Last-Modified, a hard timeout bounding the
whole request, a cap on the body size and optional TLS enforcement. It never
retries within a pass. Every invocation appends exactly one fetch log and
reports the outcome to the health monitor.
"""

import asyncio
import time
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional
from urllib.parse import urlparse

import httpx

from .audit_logger import AuditLogger
from .config import FetchConfig
from .enums import FetchErrorCode, FetchStatus
from .exceptions import FetchError, FetchTimeoutError, HttpStatusError, NetworkError
from .health_monitor import HealthMonitor, content_hash
from .host_store import HostStore, new_id, utc_now
from .models import FetchOutcome, Source, SourceFetchLog


COMPONENT = "fetcher"


class _ContentTooLarge(Exception):
    pass


class SourceFetcher:
    """
    Async fetcher for source lists.

    Usage:
        async with fetcher.client() as client:
            outcome = await fetcher.fetch(source, client=client)
    """

    def __init__(
        self,
        store: HostStore,
        health: HealthMonitor,
        config: Optional[FetchConfig] = None,
        logger: Optional[AuditLogger] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        """
        Initialize the fetcher.

        Args:
            store: Host store holding cached bodies and fetch logs
            health: Health monitor receiving every outcome
            config: Fetch configuration (timeout, concurrency, TLS, size cap)
            logger: Optional audit logger
            transport: Optional httpx transport, e.g. httpx.MockTransport in tests
        """
        self._store = store
        self._health = health
        self._config = config or FetchConfig()
        self._logger = logger
        self._transport = transport

    @property
    def max_concurrency(self) -> int:
        return self._config.max_concurrency

    @property
    def timeout_seconds(self) -> float:
        return self._config.timeout_seconds

    @asynccontextmanager
    async def client(self) -> AsyncIterator[httpx.AsyncClient]:
        """Shared HTTP client for a batch of fetches."""
        async with httpx.AsyncClient(
            transport=self._transport,
            timeout=httpx.Timeout(self._config.timeout_seconds),
            headers={"User-Agent": self._config.user_agent},
            follow_redirects=True,
        ) as client:
            yield client

    async def fetch(
        self,
        source: Source,
        client: Optional[httpx.AsyncClient] = None,
    ) -> FetchOutcome:
        """
        Fetch one source.

        Args:
            source: The source to fetch
            client: Shared client; a temporary one is opened when omitted

        Returns:
            FetchOutcome with status SUCCESS, NOT_MODIFIED, ERROR or TIMEOUT
        """
        if client is None:
            async with self.client() as own_client:
                return await self.fetch(source, client=own_client)

        checked_at = utc_now()
        start_time = time.perf_counter()

        try:
            self._validate_url(source.url)
            outcome = await asyncio.wait_for(
                self._download(source, client),
                timeout=self._config.timeout_seconds,
            )
        except FetchError as e:
            outcome = self._failure(source, e, start_time)
        except (asyncio.TimeoutError, httpx.TimeoutException):
            outcome = self._failure(
                source,
                FetchTimeoutError(
                    code=FetchErrorCode.TIMEOUT.value,
                    message=f"Fetch timed out after {self._config.timeout_seconds}s",
                ),
                start_time,
            )
        except _ContentTooLarge:
            outcome = self._failure(
                source,
                FetchError(
                    code=FetchErrorCode.CONTENT_TOO_LARGE.value,
                    message=f"Body exceeds {self._config.max_content_bytes} bytes",
                ),
                start_time,
            )
        except httpx.HTTPError as e:
            error_msg = str(e) or type(e).__name__
            code = FetchErrorCode.NETWORK_ERROR
            if "ssl" in error_msg.lower() or "certificate" in error_msg.lower():
                code = FetchErrorCode.TLS_ERROR
            outcome = self._failure(
                source,
                NetworkError(code=code.value, message=f"Connection error: {error_msg}"),
                start_time,
            )

        outcome.response_time_ms = self._elapsed_ms(start_time)

        health = self._health.record(outcome, checked_at=checked_at)
        outcome.content_changed = health.content_changed

        self._store.append_fetch_log(SourceFetchLog(
            id=new_id(),
            source_id=source.id,
            status=outcome.status,
            created_at=checked_at,
            http_status=outcome.http_status,
            error_message=outcome.error_message,
            response_time_ms=outcome.response_time_ms,
            content_changed=outcome.content_changed,
        ))

        if self._logger:
            if outcome.status.is_success:
                self._logger.info(COMPONENT, f"Fetched source {source.name}", {
                    "source_id": source.id,
                    "status": outcome.status.value,
                    "http_status": outcome.http_status,
                    "bytes": len(outcome.content) if outcome.content else 0,
                    "response_time_ms": round(outcome.response_time_ms, 1),
                    "content_changed": outcome.content_changed,
                })
            else:
                self._logger.log_error(
                    COMPONENT,
                    f"Fetch failed for source {source.name}",
                    source_url=source.url,
                    response_status_code=outcome.http_status,
                    additional_data={
                        "source_id": source.id,
                        "status": outcome.status.value,
                        "error_code": outcome.error_code.value if outcome.error_code else None,
                        "error_message": outcome.error_message,
                    },
                )

        return outcome

    async def _download(self, source: Source, client: httpx.AsyncClient) -> FetchOutcome:
        cached = self._store.get_content(source.id)
        headers = {}
        if cached is not None:
            if cached.etag:
                headers["If-None-Match"] = cached.etag
            if cached.last_modified:
                headers["If-Modified-Since"] = cached.last_modified

        async with client.stream("GET", source.url, headers=headers) as response:
            if response.status_code == 304:
                if cached is None:
                    raise HttpStatusError(
                        code=FetchErrorCode.HTTP_STATUS.value,
                        message="HTTP 304 without a cached body",
                        details={"http_status": 304},
                    )
                return FetchOutcome(
                    source_id=source.id,
                    status=FetchStatus.NOT_MODIFIED,
                    content=cached.content.encode("utf-8"),
                    http_status=304,
                    content_hash=cached.content_hash,
                    etag=response.headers.get("ETag", cached.etag),
                    last_modified=response.headers.get("Last-Modified", cached.last_modified),
                )

            if not 200 <= response.status_code < 300:
                raise HttpStatusError(
                    code=FetchErrorCode.HTTP_STATUS.value,
                    message=f"Unexpected HTTP status: {response.status_code}",
                    details={"http_status": response.status_code},
                )

            body = bytearray()
            async for chunk in response.aiter_bytes():
                body.extend(chunk)
                if len(body) > self._config.max_content_bytes:
                    raise _ContentTooLarge()

            content = bytes(body)
            return FetchOutcome(
                source_id=source.id,
                status=FetchStatus.SUCCESS,
                content=content,
                http_status=response.status_code,
                content_hash=content_hash(content),
                etag=response.headers.get("ETag"),
                last_modified=response.headers.get("Last-Modified"),
            )

    def _validate_url(self, url: str) -> None:
        """
        Check the URL scheme.

        Raises:
            NetworkError: If the scheme is not http(s), or not https when TLS is required
        """
        scheme = urlparse(url).scheme.lower()
        if scheme not in ("http", "https"):
            raise NetworkError(
                code=FetchErrorCode.NETWORK_ERROR.value,
                message=f"Unsupported URL scheme: {scheme or 'none'}",
                details={"url": url},
            )
        if self._config.require_tls and scheme != "https":
            raise NetworkError(
                code=FetchErrorCode.TLS_ERROR.value,
                message=f"Source must use HTTPS: {url}",
                details={"url": url, "scheme": scheme},
            )

    def _failure(self, source: Source, error: FetchError, start_time: float) -> FetchOutcome:
        status = FetchStatus.TIMEOUT if isinstance(error, FetchTimeoutError) else FetchStatus.ERROR
        return FetchOutcome(
            source_id=source.id,
            status=status,
            http_status=error.details.get("http_status"),
            error_code=FetchErrorCode(error.code),
            error_message=error.message,
            response_time_ms=self._elapsed_ms(start_time),
        )

    def _elapsed_ms(self, start_time: float) -> float:
        return (time.perf_counter() - start_time) * 1000
