# === NAVMAP v1 ===
# {
#   "module": "NeedFetch.attempt",
#   "purpose": "Single fetch attempt with timeout and settle-once outcome",
#   "sections": [
#     {"id": "attemptoutcome", "name": "AttemptOutcome", "anchor": "class-attemptoutcome", "kind": "class"},
#     {"id": "attempt", "name": "Attempt", "anchor": "class-attempt", "kind": "class"},
#     {"id": "attemptcontroller", "name": "AttemptController", "anchor": "class-attemptcontroller", "kind": "class"}
#   ]
# }
# === /NAVMAP ===

"""
Attempt Controller

Runs one fetch against one source and classifies the result as content,
transport failure, status failure, or timeout.

Design:
- An :class:`Attempt` settles exactly once.  Transports may report more than
  one signal for the same request (an error followed by a timeout, say); the
  first one decides the outcome and the rest are logged and dropped, so the
  engine can never fall back twice for one attempt.
- A late response that arrives after the timeout has settled the attempt is
  discarded the same way.
- The timeout timer is only armed when another source remains; the last
  source is left to the transport's own failure signal.
- The timer handle and any still-running fetch task are released on every
  exit path, including cancellation of the caller.
"""

from __future__ import annotations

import asyncio
import logging
import threading
import time
from dataclasses import dataclass
from typing import Any, Optional, Union

from .errors import AttemptFailure, AttemptTimeout, TransportFailure
from .transport import SignalTransport, Transport

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True)
class AttemptOutcome:
    """Result of one attempt: either ``content`` or ``error`` is set."""

    source: str
    content: Optional[bytes] = None
    error: Optional[AttemptFailure] = None
    elapsed_ms: int = 0

    def __post_init__(self) -> None:
        if (self.content is None) == (self.error is None):
            raise ValueError("AttemptOutcome requires exactly one of content or error")

    @property
    def ok(self) -> bool:
        return self.content is not None

    @property
    def reason(self) -> str:
        return "ok" if self.error is None else self.error.reason


class Attempt:
    """Transient state for one fetch of one source."""

    def __init__(self, source_id: str, loop: Optional[asyncio.AbstractEventLoop] = None) -> None:
        self.source_id = source_id
        self.started = time.perf_counter()
        self.timer: Optional[asyncio.TimerHandle] = None
        self.ignored_signals = 0
        self._loop = loop or asyncio.get_running_loop()
        self._thread_id = threading.get_ident()
        self._outcome: asyncio.Future[AttemptOutcome] = self._loop.create_future()

    @property
    def elapsed_ms(self) -> int:
        return int((time.perf_counter() - self.started) * 1000)

    @property
    def settled(self) -> bool:
        return self._outcome.done()

    def succeed(self, content: Union[bytes, bytearray, memoryview]) -> None:
        """Report the body received from the source."""

        if isinstance(content, (bytearray, memoryview)):
            content = bytes(content)
        if not isinstance(content, bytes):
            self.fail(
                TransportFailure(
                    f"transport returned {type(content).__name__} instead of bytes",
                    source=self.source_id,
                )
            )
            return
        self._signal(AttemptOutcome(self.source_id, content=content, elapsed_ms=self.elapsed_ms))

    def fail(self, error: BaseException) -> None:
        """Report a failure; non-attempt exceptions count as transport failures."""

        if not isinstance(error, AttemptFailure):
            error = TransportFailure(
                f"Failed to load {self.source_id}: {error!r}", source=self.source_id
            )
        if error.source is None:
            error.source = self.source_id
        self._signal(AttemptOutcome(self.source_id, error=error, elapsed_ms=self.elapsed_ms))

    def expire(self, timeout_ms: int) -> None:
        self.fail(
            AttemptTimeout(
                f"Timed out loading {self.source_id} after {timeout_ms} ms",
                source=self.source_id,
                timeout_ms=timeout_ms,
            )
        )

    async def wait(self) -> AttemptOutcome:
        return await self._outcome

    def _signal(self, outcome: AttemptOutcome) -> None:
        if threading.get_ident() == self._thread_id:
            self._settle(outcome)
        else:
            self._loop.call_soon_threadsafe(self._settle, outcome)

    def _settle(self, outcome: AttemptOutcome) -> None:
        if self._outcome.done():
            self.ignored_signals += 1
            LOGGER.debug(
                "ignoring repeated attempt signal",
                extra={"stage": "fetch", "source": self.source_id, "reason": outcome.reason},
            )
            return
        self._outcome.set_result(outcome)


def _settle_from_task(attempt: Attempt, task: "asyncio.Task[Any]") -> None:
    if task.cancelled():
        attempt.fail(TransportFailure(f"Fetch of {attempt.source_id} was cancelled"))
        return
    error = task.exception()
    if error is not None:
        attempt.fail(error)
        return
    attempt.succeed(task.result())


class AttemptController:
    """Execute attempts against one transport.

    Attributes:
        transport: Object implementing :class:`Transport` or
            :class:`SignalTransport`; the shape is resolved once here.
    """

    def __init__(self, transport: Union[Transport, SignalTransport]) -> None:
        if isinstance(transport, SignalTransport) and not isinstance(transport, Transport):
            self._signal_style = True
        elif isinstance(transport, Transport):
            self._signal_style = False
        else:
            raise TypeError(
                f"{type(transport).__name__} implements neither fetch() nor start()"
            )
        self.transport = transport

    async def run(self, source_id: str, *, timeout_ms: int, arm_timeout: bool) -> AttemptOutcome:
        """Fetch ``source_id`` once and return its classified outcome.

        Args:
            source_id: Locator to fetch.
            timeout_ms: Timeout applied when ``arm_timeout`` is true.
            arm_timeout: Whether another source remains after this one.
        """
        loop = asyncio.get_running_loop()
        attempt = Attempt(source_id, loop)
        task: Optional[asyncio.Task[Any]] = None
        if arm_timeout:
            attempt.timer = loop.call_later(timeout_ms / 1000.0, attempt.expire, timeout_ms)
        LOGGER.debug(
            "attempt started",
            extra={
                "stage": "fetch",
                "source": source_id,
                "timeout_ms": timeout_ms if arm_timeout else None,
            },
        )
        try:
            if self._signal_style:
                try:
                    self.transport.start(source_id, attempt)  # type: ignore[union-attr]
                except Exception as exc:
                    attempt.fail(exc)
            else:
                task = loop.create_task(self.transport.fetch(source_id))  # type: ignore[union-attr]
                task.add_done_callback(lambda finished: _settle_from_task(attempt, finished))
            return await attempt.wait()
        finally:
            if attempt.timer is not None:
                attempt.timer.cancel()
            if task is not None and not task.done():
                task.cancel()


__all__ = ["Attempt", "AttemptController", "AttemptOutcome"]
