# === NAVMAP v1 ===
# {
#   "module": "NeedFetch",
#   "purpose": "Package initialization for NeedFetch",
#   "sections": []
# }
# === /NAVMAP ===

"""Public API for fetching resources from untrusted mirrors with digest checks.

This facade exposes the ``need`` entry points, the engine, the source-list
markers, consumer variants, and the error types callers may want to catch.
"""

from __future__ import annotations

from .api import (
    Invocation,
    get_default_engine,
    need,
    need_sync,
    parse_invocation,
    reset_default_engine,
    schedule_need,
)
from .delivery import (
    CallbackConsumer,
    DeliveryAdapter,
    DeliveryResult,
    LiteralConsumer,
    NoConsumer,
    StructuredConsumer,
    resolve_consumer,
)
from .digests import DigestFunction, HashlibDigest, ThreadedDigest
from .engine import AttemptRecord, FetchResult, NeedEngine
from .errors import (
    ConfigError,
    DeliveryError,
    DigestMismatch,
    FilterRejected,
    NeedFetchError,
    SourcesExhausted,
)
from .settings import NeedSettings, configure_defaults, load_settings
from .sources import STOP, TRUST, SourceList

__version__ = "0.3.0"

__all__ = [
    "AttemptRecord",
    "CallbackConsumer",
    "ConfigError",
    "DeliveryAdapter",
    "DeliveryError",
    "DeliveryResult",
    "DigestFunction",
    "DigestMismatch",
    "FetchResult",
    "FilterRejected",
    "HashlibDigest",
    "Invocation",
    "LiteralConsumer",
    "NeedEngine",
    "NeedFetchError",
    "NeedSettings",
    "NoConsumer",
    "STOP",
    "SourceList",
    "SourcesExhausted",
    "StructuredConsumer",
    "TRUST",
    "ThreadedDigest",
    "__version__",
    "configure_defaults",
    "get_default_engine",
    "load_settings",
    "need",
    "need_sync",
    "parse_invocation",
    "reset_default_engine",
    "resolve_consumer",
    "schedule_need",
]
