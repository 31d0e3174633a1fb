"""Transport boundary for source attempts.

Responsibilities
----------------
- Define the two transport shapes the attempt controller accepts:
  :class:`Transport` (``async fetch(source_id) -> bytes``) and
  :class:`SignalTransport` (``start(source_id, attempt)``, signalling the
  attempt directly, possibly more than once).
- Provide :class:`HttpxTransport`, an :class:`httpx.AsyncClient` based
  implementation with a Certifi-backed SSL context, polite User-Agent,
  pooled connections, and ``file://`` support for local mirrors.
- Map every failure onto :class:`TransportFailure` or :class:`StatusFailure`
  so the engine can treat them uniformly as fallback triggers.

Design Notes
------------
- Bodies are returned exactly as received via ``response.content``; no
  charset decoding happens before hashing, so the digest is computed over the
  same bytes the publisher hashed.
- Tests inject :class:`httpx.MockTransport` through the ``transport``
  argument instead of patching module globals.
"""

from __future__ import annotations

import asyncio
import logging
import ssl
import time
from pathlib import Path
from typing import TYPE_CHECKING, Optional, Protocol, runtime_checkable
from urllib.parse import unquote, urlsplit

import certifi
import httpx

from .errors import StatusFailure, TransportFailure

if TYPE_CHECKING:  # pragma: no cover - import for static analysis only
    from .attempt import Attempt

LOGGER = logging.getLogger(__name__)

_DEFAULT_LIMITS = httpx.Limits(max_connections=32, max_keepalive_connections=8, keepalive_expiry=15.0)


@runtime_checkable
class Transport(Protocol):
    """Coroutine transport: return the body or raise an attempt failure."""

    async def fetch(self, source_id: str) -> bytes: ...


@runtime_checkable
class SignalTransport(Protocol):
    """Signal transport: report through ``attempt.succeed`` / ``attempt.fail``."""

    def start(self, source_id: str, attempt: "Attempt") -> None: ...


def _build_ssl_context() -> ssl.SSLContext:
    context = ssl.create_default_context()
    context.load_verify_locations(certifi.where())
    return context


async def _request_hook(request: httpx.Request) -> None:
    request.extensions["needfetch_start"] = time.perf_counter()


async def _response_hook(response: httpx.Response) -> None:
    start = response.request.extensions.get("needfetch_start")
    elapsed_ms = None
    if isinstance(start, float):
        elapsed_ms = int((time.perf_counter() - start) * 1000)
    LOGGER.debug(
        "httpx-response",
        extra={
            "stage": "fetch",
            "source": str(response.request.url),
            "status": response.status_code,
            "elapsed_ms": elapsed_ms,
        },
    )


class HttpxTransport:
    """Fetch ``http(s)://`` sources with HTTPX and ``file://`` sources from disk.

    An :class:`httpx.AsyncClient` is bound to the event loop that created it,
    so one client is kept per running loop; callers that reuse a transport
    across ``asyncio.run`` invocations get a fresh client in each, and the
    client left behind by the previous loop is closed.
    """

    def __init__(
        self,
        *,
        user_agent: str = "needfetch/0.3",
        transport: Optional[httpx.AsyncBaseTransport] = None,
        verify_tls: bool = True,
        follow_redirects: bool = True,
    ) -> None:
        self.user_agent = user_agent
        self._transport = transport
        self._verify_tls = verify_tls
        self._follow_redirects = follow_redirects
        self._client: Optional[httpx.AsyncClient] = None
        self._client_loop: Optional[asyncio.AbstractEventLoop] = None

    async def _get_client(self) -> httpx.AsyncClient:
        loop = asyncio.get_running_loop()
        stale, stale_loop = self._client, self._client_loop
        if stale is not None and (stale_loop is not loop or stale.is_closed):
            self._client = None
            self._client_loop = None
            await self._retire_client(stale, stale_loop)
        if self._client is None:
            verify: object = _build_ssl_context() if self._verify_tls else False
            self._client = httpx.AsyncClient(
                headers={"User-Agent": self.user_agent},
                limits=_DEFAULT_LIMITS,
                timeout=httpx.Timeout(connect=10.0, read=60.0, write=30.0, pool=10.0),
                follow_redirects=self._follow_redirects,
                transport=self._transport,
                verify=verify,
                event_hooks={"request": [_request_hook], "response": [_response_hook]},
            )
            self._client_loop = loop
            LOGGER.debug("HTTP client created", extra={"stage": "fetch"})
        return self._client

    async def _retire_client(
        self, client: httpx.AsyncClient, loop: Optional[asyncio.AbstractEventLoop]
    ) -> None:
        """Close a client left behind by another event loop."""

        if client.is_closed:
            return
        if loop is not None and loop.is_running() and not loop.is_closed():
            # Connections belong to the old loop; close them there.
            asyncio.run_coroutine_threadsafe(client.aclose(), loop)
            return
        try:
            await client.aclose()
        except Exception as exc:  # pragma: no cover - depends on pool internals
            LOGGER.debug(
                "stale HTTP client did not close cleanly: %s",
                exc,
                exc_info=True,
                extra={"stage": "fetch"},
            )
        else:
            LOGGER.debug("stale HTTP client closed", extra={"stage": "fetch"})

    async def fetch(self, source_id: str) -> bytes:
        scheme = urlsplit(source_id).scheme.lower()
        if scheme == "file":
            return await self._read_file(source_id)
        if scheme not in ("http", "https"):
            raise TransportFailure(f"Unsupported source scheme for {source_id}", source=source_id)
        client = await self._get_client()
        try:
            response = await client.get(source_id)
        except httpx.HTTPError as exc:
            raise TransportFailure(f"Failed to load {source_id}: {exc}", source=source_id) from exc
        if response.status_code != 200:
            raise StatusFailure(
                f"Failed to load {source_id}: HTTP {response.status_code}",
                source=source_id,
                status_code=response.status_code,
            )
        return response.content

    async def _read_file(self, source_id: str) -> bytes:
        path = Path(unquote(urlsplit(source_id).path))
        try:
            return await asyncio.to_thread(path.read_bytes)
        except OSError as exc:
            raise TransportFailure(f"Failed to load {source_id}: {exc}", source=source_id) from exc

    async def aclose(self) -> None:
        """Close the client bound to the current loop, if any."""

        client, self._client = self._client, None
        self._client_loop = None
        if client is not None and not client.is_closed:
            await client.aclose()


__all__ = ["HttpxTransport", "SignalTransport", "Transport"]
