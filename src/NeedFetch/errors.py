# === NAVMAP v1 ===
# {
#   "module": "NeedFetch.errors",
#   "purpose": "Exception hierarchy for source attempts, verification, and delivery",
#   "sections": [
#     {"id": "base", "name": "Base Exceptions", "anchor": "BAS", "kind": "api"},
#     {"id": "attempt", "name": "Attempt Failures", "anchor": "ATT", "kind": "api"},
#     {"id": "verification", "name": "Verification Errors", "anchor": "VER", "kind": "api"},
#     {"id": "delivery", "name": "Delivery Errors", "anchor": "DEL", "kind": "api"}
#   ]
# }
# === /NAVMAP ===

"""Exception hierarchy shared by the fetch, verification, and delivery stages.

Only :class:`SourcesExhausted` is meant to reach callers as a raised error.
Attempt failures and digest mismatches are consumed by the engine to drive
fallback, and filter or delivery failures are recorded on the returned
result.  The remaining types exist so each stage can describe what went wrong
with enough metadata for structured logging.
"""

from __future__ import annotations

from typing import Optional, Sequence

__all__ = [
    "NeedFetchError",
    "ConfigError",
    "AttemptFailure",
    "TransportFailure",
    "StatusFailure",
    "AttemptTimeout",
    "DigestMismatch",
    "SourcesExhausted",
    "FilterRejected",
    "DeliveryError",
]


class NeedFetchError(RuntimeError):
    """Base exception for fetch, verification, and delivery failures."""


class ConfigError(NeedFetchError):
    """Raised when settings, source lists, or invocation arguments are invalid."""


class AttemptFailure(NeedFetchError):
    """A single source attempt did not produce content."""

    reason = "error"

    def __init__(self, message: str, *, source: Optional[str] = None) -> None:
        super().__init__(message)
        self.source = source


class TransportFailure(AttemptFailure):
    """Raised when the transport could not reach the source."""

    reason = "transport"


class StatusFailure(AttemptFailure):
    """Raised when the source answered with a non-success status."""

    reason = "status"

    def __init__(
        self,
        message: str,
        *,
        source: Optional[str] = None,
        status_code: Optional[int] = None,
    ) -> None:
        super().__init__(message, source=source)
        self.status_code = status_code


class AttemptTimeout(AttemptFailure):
    """Raised when an attempt exceeded its per-attempt timeout."""

    reason = "timeout"

    def __init__(
        self,
        message: str,
        *,
        source: Optional[str] = None,
        timeout_ms: Optional[int] = None,
    ) -> None:
        super().__init__(message, source=source)
        self.timeout_ms = timeout_ms


class DigestMismatch(NeedFetchError):
    """Content from a source did not hash to the expected digest."""

    def __init__(self, source: str, expected: str, actual: str) -> None:
        super().__init__(f"{source} has incorrect hash {actual} (expected {expected})")
        self.source = source
        self.expected = expected
        self.actual = actual


class SourcesExhausted(NeedFetchError):
    """Every source failed and the list did not end with the stop marker."""

    def __init__(self, expected_digest: Optional[str], tried: Sequence[str] = ()) -> None:
        super().__init__(f"need: no source for hash {expected_digest}")
        self.expected_digest = expected_digest
        self.tried = tuple(tried)


class FilterRejected(NeedFetchError):
    """A consumer filter declined verified content."""


class DeliveryError(NeedFetchError):
    """Handing verified content to its target failed."""

    def __init__(self, message: str, *, target: Optional[str] = None) -> None:
        super().__init__(message)
        self.target = target
