"""Public entry points mirroring the polymorphic ``need(...)`` call.

Three invocation shapes are accepted::

    need(sources, expected_digest)
    need(consumer, sources, expected_digest)
    need(sources)                      # diagnostic mode, logs the digest

``need`` is a coroutine, ``need_sync`` blocks until the fetch finishes, and
``schedule_need`` starts a background task whose exhaustion error is routed
to the running loop's exception handler.
"""

from __future__ import annotations

import asyncio
import threading
from dataclasses import dataclass
from typing import Any, Optional

from .engine import FetchResult, NeedEngine
from .errors import ConfigError
from .settings import get_default_settings
from .sources import SourceList

_ENGINE_LOCK = threading.Lock()
_DEFAULT_ENGINE: Optional[NeedEngine] = None


@dataclass(frozen=True)
class Invocation:
    """Arguments of one ``need`` call after shape resolution."""

    sources: Any
    expected_digest: Optional[str] = None
    consumer: Any = None


def _is_source_sequence(value: Any) -> bool:
    return isinstance(value, (list, tuple, SourceList))


def parse_invocation(*args: Any) -> Invocation:
    """Resolve the polymorphic leading arguments of ``need``.

    Raises:
        ConfigError: If no source list can be located or too many
            arguments were given.
    """
    if not args:
        raise ConfigError("need() requires a source list")
    if _is_source_sequence(args[0]):
        if len(args) > 2:
            raise ConfigError("need(sources, digest) takes at most two arguments")
        return Invocation(sources=args[0], expected_digest=args[1] if len(args) > 1 else None)
    if len(args) < 2 or not _is_source_sequence(args[1]):
        raise ConfigError("need(consumer, sources, digest) requires a source list after the consumer")
    if len(args) > 3:
        raise ConfigError("need(consumer, sources, digest) takes at most three arguments")
    return Invocation(
        sources=args[1],
        expected_digest=args[2] if len(args) > 2 else None,
        consumer=args[0],
    )


def get_default_engine() -> NeedEngine:
    """Return the process-wide engine built from the default settings.

    The engine is rebuilt when :func:`configure_defaults` has installed new
    settings since it was created.
    """

    global _DEFAULT_ENGINE
    settings = get_default_settings()
    with _ENGINE_LOCK:
        if _DEFAULT_ENGINE is None or _DEFAULT_ENGINE.settings is not settings:
            _DEFAULT_ENGINE = NeedEngine(settings)
        return _DEFAULT_ENGINE


def reset_default_engine() -> None:
    """Drop the process-wide engine so the next call picks up new settings."""

    global _DEFAULT_ENGINE
    with _ENGINE_LOCK:
        _DEFAULT_ENGINE = None


async def need(
    *args: Any,
    engine: Optional[NeedEngine] = None,
    timeout_ms: Optional[int] = None,
) -> FetchResult:
    """Fetch, verify, and deliver; raises :class:`SourcesExhausted` on exhaustion."""

    invocation = parse_invocation(*args)
    active = engine or get_default_engine()
    return await active.fetch(
        invocation.sources,
        invocation.expected_digest,
        invocation.consumer,
        timeout_ms=timeout_ms,
    )


def need_sync(
    *args: Any,
    engine: Optional[NeedEngine] = None,
    timeout_ms: Optional[int] = None,
) -> FetchResult:
    """Blocking variant of :func:`need` for code without a running event loop."""

    active = engine or get_default_engine()

    async def _run() -> FetchResult:
        try:
            return await need(*args, engine=active, timeout_ms=timeout_ms)
        finally:
            await active.aclose()

    return asyncio.run(_run())


def _report_task_failure(task: "asyncio.Task[FetchResult]") -> None:
    if task.cancelled():
        return
    error = task.exception()
    if error is None:
        return
    task.get_loop().call_exception_handler(
        {"message": str(error), "exception": error, "task": task}
    )


def schedule_need(
    *args: Any,
    engine: Optional[NeedEngine] = None,
    timeout_ms: Optional[int] = None,
) -> "asyncio.Task[FetchResult]":
    """Start a fetch in the background of the running loop.

    The caller does not need to await the task: exhaustion and any other
    error is handed to the loop's exception handler, the asyncio counterpart
    of an uncaught error in an event callback.
    """
    invocation = parse_invocation(*args)
    loop = asyncio.get_running_loop()
    active = engine or get_default_engine()
    task = loop.create_task(
        active.fetch(
            invocation.sources,
            invocation.expected_digest,
            invocation.consumer,
            timeout_ms=timeout_ms,
        )
    )
    task.add_done_callback(_report_task_failure)
    return task


__all__ = [
    "Invocation",
    "get_default_engine",
    "need",
    "need_sync",
    "parse_invocation",
    "reset_default_engine",
    "schedule_need",
]
