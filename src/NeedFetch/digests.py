# === NAVMAP v1 ===
# {
#   "module": "NeedFetch.digests",
#   "purpose": "Digest providers and the adapter that awaits sync, callback, or coroutine shapes",
#   "sections": [
#     {"id": "hashlibdigest", "name": "HashlibDigest", "anchor": "class-hashlibdigest", "kind": "class"},
#     {"id": "threadeddigest", "name": "ThreadedDigest", "anchor": "class-threadeddigest", "kind": "class"},
#     {"id": "digestfunction", "name": "DigestFunction", "anchor": "class-digestfunction", "kind": "class"}
#   ]
# }
# === /NAVMAP ===

"""Digest providers.

A digest provider turns raw bytes into a hexadecimal string.  The engine
accepts three shapes and resolves the shape once, when the provider is
installed:

- synchronous: ``digest(data) -> str``
- completion callback: ``digest(data, on_complete) -> None`` followed later
  by ``on_complete(hex)``, possibly from another thread
- coroutine function: ``async digest(data) -> str``

All three are exposed to the verifier through :meth:`DigestFunction.compute`
so the accept/reject logic never depends on how the value arrived.
"""

from __future__ import annotations

import asyncio
import hashlib
import inspect
import logging
from concurrent.futures import Executor, ThreadPoolExecutor
from typing import Any, Awaitable, Callable, Literal, Optional

from .errors import ConfigError
from .settings import SUPPORTED_ALGORITHMS

LOGGER = logging.getLogger(__name__)

DigestShape = Literal["sync", "callback", "coroutine"]
CompletionCallback = Callable[[str], None]


def normalize_digest(value: Optional[str]) -> Optional[str]:
    """Return ``value`` stripped and lower-cased.

    Only ``None`` selects diagnostic mode.  A blank string is refused so an
    unset config value or environment variable cannot switch verification off.

    Raises:
        ConfigError: If ``value`` is not a string or is blank.
    """

    if value is None:
        return None
    if not isinstance(value, str):
        raise ConfigError(f"expected digest must be a string, got {type(value).__name__}")
    candidate = value.strip().lower()
    if not candidate:
        raise ConfigError("expected digest is blank; pass None to log the digest instead")
    return candidate


class HashlibDigest:
    """Synchronous provider backed by :mod:`hashlib`.

    Instances hold no per-call state, so one provider can serve concurrent
    fetches.
    """

    def __init__(self, algorithm: str = "sha256") -> None:
        candidate = algorithm.strip().lower()
        if candidate not in SUPPORTED_ALGORITHMS:
            raise ConfigError(f"unsupported digest algorithm '{candidate}'")
        self.algorithm = candidate

    def __call__(self, data: bytes) -> str:
        return hashlib.new(self.algorithm, data).hexdigest()

    def __repr__(self) -> str:
        return f"HashlibDigest({self.algorithm!r})"


class ThreadedDigest:
    """Completion-callback provider that hashes in a worker thread.

    Large payloads are hashed off the event loop; ``on_complete`` is invoked
    from the worker thread once the digest is known.  A failure inside the
    worker is passed to ``on_complete`` as the exception instance so the
    awaiting side does not wait forever.
    """

    def __init__(
        self,
        inner: Optional[Callable[[bytes], str]] = None,
        *,
        executor: Optional[Executor] = None,
    ) -> None:
        self.inner = inner or HashlibDigest()
        self._executor = executor or ThreadPoolExecutor(
            max_workers=2, thread_name_prefix="needfetch-digest"
        )

    def __call__(self, data: bytes, on_complete: CompletionCallback) -> None:
        future = self._executor.submit(self.inner, data)

        def _done(fut) -> None:
            error = fut.exception()
            if error is not None:
                LOGGER.error("digest computation failed", exc_info=error)
                on_complete(error)
                return
            on_complete(fut.result())

        future.add_done_callback(_done)

    def shutdown(self) -> None:
        self._executor.shutdown(wait=False)


def _detect_shape(provider: Callable[..., Any]) -> DigestShape:
    target = provider
    if not inspect.isfunction(target) and not inspect.ismethod(target):
        call = getattr(provider, "__call__", None)
        if inspect.iscoroutinefunction(call):
            return "coroutine"
    if inspect.iscoroutinefunction(target):
        return "coroutine"
    try:
        signature = inspect.signature(provider)
    except (TypeError, ValueError):
        return "sync"
    positional = [
        param
        for param in signature.parameters.values()
        if param.kind in (param.POSITIONAL_ONLY, param.POSITIONAL_OR_KEYWORD)
        and param.default is param.empty
    ]
    if any(param.kind == param.VAR_POSITIONAL for param in signature.parameters.values()):
        return "sync"
    return "callback" if len(positional) >= 2 else "sync"


class DigestFunction:
    """A provider resolved to a single awaitable interface."""

    def __init__(self, provider: Callable[..., Any], shape: Optional[DigestShape] = None) -> None:
        if not callable(provider):
            raise ConfigError(f"digest provider must be callable, got {type(provider).__name__}")
        self.provider = provider
        self.shape: DigestShape = shape or _detect_shape(provider)

    @classmethod
    def from_provider(cls, provider: Any = None, *, algorithm: str = "sha256") -> "DigestFunction":
        """Wrap ``provider``; ``None`` selects :class:`HashlibDigest` for ``algorithm``."""

        if isinstance(provider, DigestFunction):
            return provider
        if provider is None:
            return cls(HashlibDigest(algorithm), shape="sync")
        return cls(provider)

    async def compute(self, data: bytes) -> str:
        """Return the hex digest of ``data`` regardless of provider shape."""

        if self.shape == "sync":
            value = self.provider(data)
        elif self.shape == "coroutine":
            value = await self.provider(data)
        else:
            value = await self._await_callback(data)
        if not isinstance(value, str):
            raise TypeError(f"digest provider returned {type(value).__name__}, expected str")
        return value.strip().lower()

    def _await_callback(self, data: bytes) -> Awaitable[str]:
        loop = asyncio.get_running_loop()
        future: asyncio.Future[str] = loop.create_future()

        def _settle(value: Any) -> None:
            if future.done():
                LOGGER.debug("ignoring repeated digest completion", extra={"stage": "digest"})
                return
            if isinstance(value, BaseException):
                future.set_exception(value)
            else:
                future.set_result(value)

        def on_complete(value: Any) -> None:
            loop.call_soon_threadsafe(_settle, value)

        self.provider(data, on_complete)
        return future

    def __repr__(self) -> str:
        return f"DigestFunction({self.provider!r}, shape={self.shape!r})"


__all__ = [
    "DigestFunction",
    "DigestShape",
    "HashlibDigest",
    "ThreadedDigest",
    "normalize_digest",
]
