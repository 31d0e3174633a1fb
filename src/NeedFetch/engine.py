# === NAVMAP v1 ===
# {
#   "module": "NeedFetch.engine",
#   "purpose": "Fetch-verify-fallback state machine over an ordered source list",
#   "sections": [
#     {"id": "attemptrecord", "name": "AttemptRecord", "anchor": "class-attemptrecord", "kind": "class"},
#     {"id": "fetchresult", "name": "FetchResult", "anchor": "class-fetchresult", "kind": "class"},
#     {"id": "needengine", "name": "NeedEngine", "anchor": "class-needengine", "kind": "class"}
#   ]
# }
# === /NAVMAP ===

"""
Fetch-Verify-Fallback Engine

Walks a source list left to right:

    Inspecting -> Stopped                      (STOP marker)
    Inspecting -> Exhausted                    (no elements left)
    Inspecting -> Attempting -> Falling Back   (transport/status/timeout)
    Attempting -> Verifying  -> Falling Back   (digest mismatch)
    Verifying  -> Delivering -> Done

Falling Back returns to Inspecting with the list advanced past the failed
source.  The walk is an explicit loop, so long source lists cannot exhaust
the call stack, and a failed source is never retried within one fetch.

Only exhaustion raises (:class:`SourcesExhausted`).  Reaching ``STOP``,
a filter veto, and delivery errors come back as :class:`FetchResult` states.
"""

from __future__ import annotations

import json
import logging
import random
from dataclasses import dataclass
from typing import Any, List, Literal, Optional, Tuple

from .attempt import AttemptController
from .delivery import DeliveryAdapter, DeliveryResult, resolve_consumer
from .digests import DigestFunction, normalize_digest
from .errors import ConfigError, DigestMismatch, SourcesExhausted, StatusFailure
from .logging_config import generate_correlation_id, mask_url
from .settings import NeedSettings, get_default_settings
from .sources import SourceList, prime_order
from .transport import HttpxTransport
from .verifier import Verifier

LOGGER = logging.getLogger(__name__)

FetchState = Literal["done", "stopped", "rejected", "delivery_failed"]

_DELIVERY_STATES = {"delivered": "done", "rejected": "rejected", "failed": "delivery_failed"}


def _render_consumer(consumer: Any) -> str:
    """Leading ``consumer, `` of the pin hint, empty when none was passed."""
    if consumer is None:
        return ""
    if isinstance(consumer, str):
        text = json.dumps(consumer)
    elif callable(consumer) and hasattr(consumer, "__qualname__"):
        text = consumer.__qualname__
    else:
        text = repr(consumer)
    return f"{text}, "


@dataclass(frozen=True)
class AttemptRecord:
    """One entry in the trail of sources tried during a fetch."""

    source: str
    outcome: str
    elapsed_ms: int
    trusted: bool = False
    actual_digest: Optional[str] = None
    status_code: Optional[int] = None


@dataclass(frozen=True)
class FetchResult:
    """Terminal state of a fetch that did not exhaust its sources."""

    state: FetchState
    correlation_id: str
    expected_digest: Optional[str]
    source: Optional[str] = None
    actual_digest: Optional[str] = None
    attempts: Tuple[AttemptRecord, ...] = ()
    delivery: Optional[DeliveryResult] = None

    @property
    def ok(self) -> bool:
        return self.state == "done"

    @property
    def fallbacks(self) -> int:
        """Number of sources abandoned before the terminal state."""
        return sum(1 for record in self.attempts if record.outcome != "accepted")

    @property
    def value(self) -> Any:
        """What the delivery target produced (module, path, or bytes)."""
        return self.delivery.value if self.delivery is not None else None


class NeedEngine:
    """Orchestrates attempts, verification, and delivery for one resource at a time.

    Engines hold no per-fetch mutable state, so one engine can serve many
    concurrent top-level fetches.

    Attributes:
        settings: Process or caller supplied :class:`NeedSettings`.
        transport: Object implementing ``fetch`` or ``start``.
        digest: Resolved :class:`DigestFunction`.
        delivery: :class:`DeliveryAdapter` used for accepted content.
    """

    def __init__(
        self,
        settings: Optional[NeedSettings] = None,
        *,
        transport: Any = None,
        digest: Any = None,
        delivery: Optional[DeliveryAdapter] = None,
        rng: Optional[random.Random] = None,
    ) -> None:
        self.settings = settings or get_default_settings()
        self.transport = transport or HttpxTransport(user_agent=self.settings.user_agent)
        self.digest = DigestFunction.from_provider(digest, algorithm=self.settings.digest_algorithm)
        self.delivery = delivery or DeliveryAdapter(self.settings.default_target)
        self._attempts = AttemptController(self.transport)
        self._verifier = Verifier(self.digest)
        self._rng = rng or random.Random()

    async def fetch(
        self,
        sources: Any,
        expected_digest: Optional[str] = None,
        consumer: Any = None,
        *,
        timeout_ms: Optional[int] = None,
    ) -> FetchResult:
        """Fetch the first source whose content verifies and deliver it.

        Args:
            sources: Sequence of locators with optional ``TRUST``/``STOP``
                markers, or a :class:`SourceList`.
            expected_digest: Hex digest the content must match.  ``None``
                accepts the first successful fetch and logs its digest.
            consumer: ``None``, a callable, a literal string, a mapping, or a
                consumer variant from :mod:`NeedFetch.delivery`.
            timeout_ms: Call-site override of the per-attempt timeout.

        Returns:
            FetchResult in state ``done``, ``stopped``, ``rejected`` or
            ``delivery_failed``.

        Raises:
            SourcesExhausted: If every source failed and the list had no
                ``STOP`` marker.
            ConfigError: If the arguments are malformed, or no digest was
                given while ``require_digest`` is set.
        """
        source_list = SourceList.parse(sources)
        expected = normalize_digest(expected_digest)
        spec = resolve_consumer(consumer)
        timeout = self.settings.resolve_timeout_ms(timeout_ms)
        if expected is None and self.settings.require_digest:
            raise ConfigError("an expected digest is required (require_digest is enabled)")
        remaining = prime_order(source_list, self.settings.priming_window, self._rng)

        correlation_id = generate_correlation_id()
        log_extra = {"correlation_id": correlation_id}
        records: List[AttemptRecord] = []

        while True:
            step = remaining.next()
            if step.kind == "stop":
                LOGGER.info(
                    "stop marker reached after %d failed source(s)",
                    len(records),
                    extra={**log_extra, "stage": "inspect"},
                )
                return FetchResult(
                    state="stopped",
                    correlation_id=correlation_id,
                    expected_digest=expected,
                    attempts=tuple(records),
                )
            if step.kind == "exhausted":
                error = SourcesExhausted(expected, [record.source for record in records])
                LOGGER.error(str(error), extra={**log_extra, "stage": "inspect"})
                raise error

            source = step.source
            assert source is not None
            remaining = step.remainder
            outcome = await self._attempts.run(
                source, timeout_ms=timeout, arm_timeout=step.has_fallback
            )
            if not outcome.ok:
                assert outcome.error is not None
                status_code = (
                    outcome.error.status_code if isinstance(outcome.error, StatusFailure) else None
                )
                records.append(
                    AttemptRecord(
                        source=source,
                        outcome=outcome.reason,
                        elapsed_ms=outcome.elapsed_ms,
                        trusted=step.trusted,
                        status_code=status_code,
                    )
                )
                LOGGER.warning(
                    "source failed (%s): %s",
                    outcome.reason,
                    outcome.error,
                    extra={
                        **log_extra,
                        "stage": "fetch",
                        "source": source,
                        "reason": outcome.reason,
                        "elapsed_ms": outcome.elapsed_ms,
                    },
                )
                continue

            assert outcome.content is not None
            verdict = await self._verifier.verify(outcome.content, expected, step.trusted)
            if not verdict.accepted:
                assert expected is not None and verdict.actual_digest is not None
                mismatch = DigestMismatch(mask_url(source), expected, verdict.actual_digest)
                records.append(
                    AttemptRecord(
                        source=source,
                        outcome="mismatch",
                        elapsed_ms=outcome.elapsed_ms,
                        actual_digest=verdict.actual_digest,
                    )
                )
                LOGGER.warning(
                    str(mismatch),
                    extra={**log_extra, "stage": "verify", "source": source, "reason": "mismatch"},
                )
                continue

            delivery_expected = expected
            if verdict.reason == "diagnostic":
                delivery_expected = verdict.actual_digest
                LOGGER.warning(
                    "need called without hash; change to: need(%s%s, %s)",
                    _render_consumer(consumer),
                    source_list.render(),
                    json.dumps(verdict.actual_digest),
                    extra={**log_extra, "stage": "verify", "source": source, "reason": "diagnostic"},
                )
            records.append(
                AttemptRecord(
                    source=source,
                    outcome="accepted",
                    elapsed_ms=outcome.elapsed_ms,
                    trusted=step.trusted,
                    actual_digest=verdict.actual_digest,
                )
            )
            delivery = await self.delivery.deliver(
                outcome.content,
                spec,
                source=source,
                actual_digest=verdict.actual_digest,
                expected_digest=delivery_expected,
                extra=log_extra,
            )
            return FetchResult(
                state=_DELIVERY_STATES[delivery.status],  # type: ignore[arg-type]
                correlation_id=correlation_id,
                expected_digest=delivery_expected,
                source=source,
                actual_digest=verdict.actual_digest,
                attempts=tuple(records),
                delivery=delivery,
            )

    async def aclose(self) -> None:
        """Release transport resources bound to the running loop."""

        closer = getattr(self.transport, "aclose", None)
        if closer is not None:
            await closer()


__all__ = ["AttemptRecord", "FetchResult", "FetchState", "NeedEngine"]
