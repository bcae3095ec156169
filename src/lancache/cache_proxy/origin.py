"""Upstream (origin CDN) fetcher."""

from __future__ import annotations

from dataclasses import dataclass
from typing import AsyncIterator, Optional
from urllib.parse import quote

import httpx
import structlog
from fastapi import status

from ..common.settings import DEFAULT_USER_AGENT, LancacheSettings


LOGGER = structlog.get_logger("lancache.origin")


class OriginError(Exception):
    """Base class for failures talking to the origin."""

    status_code: int = status.HTTP_502_BAD_GATEWAY


class OriginUnreachable(OriginError):
    """DNS, connection, TLS or timeout failure before a response arrived."""

    def __init__(self, url: str, cause: Exception) -> None:
        super().__init__(f"upstream {url} unreachable: {cause}")
        self.url = url


class OriginRejected(OriginError):
    """The origin answered with a non-2xx status."""

    def __init__(self, url: str, status_code: int) -> None:
        super().__init__(f"upstream server returned {status_code}")
        self.url = url
        self.status_code = status_code


@dataclass
class OriginResponse:
    url: str
    content_length: Optional[int]
    content_type: Optional[str]
    _response: httpx.Response

    def aiter_bytes(self) -> AsyncIterator[bytes]:
        return self._response.aiter_bytes()

    async def aclose(self) -> None:
        await self._response.aclose()


# RFC 3986 pchar plus "/"; everything else in a decoded path is escaped again
_PATH_SAFE = "/:@!$&'()*+,;="


def origin_url(host: str, path: str) -> str:
    """Origin URL for the decoded request ``path``; "?" and "#" stay part of the path."""

    return f"https://{host}{quote(path, safe=_PATH_SAFE)}"


def _declared_length(response: httpx.Response) -> Optional[int]:
    # a content-encoded body is decoded by httpx, so its declared length no longer applies
    if response.headers.get("content-encoding", "identity").lower() != "identity":
        return None
    raw = response.headers.get("content-length")
    if raw is None:
        return None
    try:
        length = int(raw)
    except ValueError:
        return None
    return length if length > 0 else None


def build_http_client(settings: LancacheSettings) -> httpx.AsyncClient:
    timeout = httpx.Timeout(settings.upstream_timeout_seconds, connect=settings.upstream_connect_timeout_seconds)
    return httpx.AsyncClient(timeout=timeout, follow_redirects=True)


class OriginFetcher:
    def __init__(self, client: httpx.AsyncClient, user_agent: str = DEFAULT_USER_AGENT) -> None:
        self._client = client
        self._user_agent = user_agent

    async def fetch(self, host: str, path: str) -> OriginResponse:
        url = origin_url(host, path)
        try:
            request = self._client.build_request(
                "GET",
                url,
                headers={"User-Agent": self._user_agent, "Accept-Encoding": "identity"},
            )
        except httpx.InvalidURL as exc:
            raise OriginUnreachable(url, exc) from exc

        try:
            response = await self._client.send(request, stream=True)
        except httpx.RequestError as exc:
            # transport failures, redirect loops and undecodable responses alike
            raise OriginUnreachable(url, exc) from exc

        if not response.is_success:
            try:
                await response.aread()
            except httpx.HTTPError as exc:
                LOGGER.debug("while draining rejected upstream body", url=url, error=str(exc))
            finally:
                await response.aclose()
            raise OriginRejected(url, response.status_code)

        return OriginResponse(
            url=url,
            content_length=_declared_length(response),
            content_type=response.headers.get("content-type"),
            _response=response,
        )
