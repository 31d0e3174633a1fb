# === NAVMAP v1 ===
# {
#   "module": "NeedFetch.delivery",
#   "purpose": "Consumer variants, delivery targets, and the adapter that hands verified content over",
#   "sections": [
#     {"id": "consumers", "name": "Consumer Variants", "anchor": "CON", "kind": "api"},
#     {"id": "resolve-consumer", "name": "resolve_consumer", "anchor": "function-resolve-consumer", "kind": "function"},
#     {"id": "targets", "name": "Delivery Targets", "anchor": "TGT", "kind": "api"},
#     {"id": "deliveryadapter", "name": "DeliveryAdapter", "anchor": "class-deliveryadapter", "kind": "class"}
#   ]
# }
# === /NAVMAP ===

"""Delivery of verified content.

Responsibilities
----------------
- Model the caller's consumer as one of four explicit variants
  (:class:`NoConsumer`, :class:`CallbackConsumer`, :class:`LiteralConsumer`,
  :class:`StructuredConsumer`) resolved once by :func:`resolve_consumer`.
- Run an optional filter over verified content; anything but ``bytes`` or
  ``str`` from the filter vetoes delivery.
- Hand the (possibly extended) content to a target: execute it as a fresh
  Python module, write it atomically to a file, or keep it in memory.
- Invoke the completion function with the :class:`DeliveryResult`.

Design Notes
------------
- Nothing here triggers source fallback.  Content reaching the adapter has
  already been accepted; a filter veto or an error raised while executing it
  is reported on the result and logged.
"""

from __future__ import annotations

import inspect
import logging
import os
import re
import sys
import tempfile
import types
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Any, Callable, Dict, Literal, Mapping, Optional, Protocol, Union
from urllib.parse import unquote, urlsplit

from .errors import ConfigError, DeliveryError, FilterRejected, NeedFetchError
from .settings import TargetKind

LOGGER = logging.getLogger(__name__)

DeliveryStatus = Literal["delivered", "rejected", "failed"]
FilterFunction = Callable[[bytes, Optional[str], Optional[str]], Any]
Completion = Union[Callable[["DeliveryResult"], Any], str]

# ============================================================================
# Consumer variants
# ============================================================================


@dataclass(frozen=True)
class NoConsumer:
    """Deliver to the default target and report nothing back."""


@dataclass(frozen=True)
class CallbackConsumer:
    """Call ``callback(result)`` once the content has been delivered."""

    callback: Callable[["DeliveryResult"], Any]


@dataclass(frozen=True)
class LiteralConsumer:
    """Append ``literal`` to the content before it is delivered."""

    literal: str


@dataclass(frozen=True)
class StructuredConsumer:
    """Full consumer description.

    Attributes:
        execute_as: Module name for the ``module`` target or destination path
            for the ``file`` target.
        target_kind: ``module``, ``file`` or ``memory``; the engine default
            applies when omitted.
        filter: ``filter(content, actual_digest, expected_digest)`` returning
            replacement content, or anything else to veto delivery.
        on_complete: Function called with the result, or a literal appended
            to the content.
    """

    execute_as: Optional[str] = None
    target_kind: Optional[TargetKind] = None
    filter: Optional[FilterFunction] = None
    on_complete: Optional[Completion] = None


ConsumerSpec = Union[NoConsumer, CallbackConsumer, LiteralConsumer, StructuredConsumer]

_KEY_ALIASES = {
    "executeAs": "execute_as",
    "execute_as": "execute_as",
    "targetKind": "target_kind",
    "target_kind": "target_kind",
    "filter": "filter",
    "onComplete": "on_complete",
    "on_complete": "on_complete",
    "cb": "on_complete",
}
_TARGET_KINDS = ("module", "file", "memory")


def resolve_consumer(consumer: Any) -> ConsumerSpec:
    """Map a caller-supplied consumer onto one of the four variants.

    Raises:
        ConfigError: For unknown mapping keys, bad field types, or
            unsupported consumer objects.
    """
    if consumer is None:
        return NoConsumer()
    if isinstance(consumer, (NoConsumer, CallbackConsumer, LiteralConsumer, StructuredConsumer)):
        if isinstance(consumer, StructuredConsumer):
            _validate_structured(consumer)
        return consumer
    if isinstance(consumer, str):
        return LiteralConsumer(consumer)
    if isinstance(consumer, Mapping):
        fields: Dict[str, Any] = {}
        for key, value in consumer.items():
            name = _KEY_ALIASES.get(key)
            if name is None:
                raise ConfigError(f"unknown consumer key '{key}'")
            fields[name] = value
        structured = StructuredConsumer(**fields)
        _validate_structured(structured)
        return structured
    if callable(consumer):
        return CallbackConsumer(consumer)
    raise ConfigError(f"unsupported consumer type {type(consumer).__name__}")


def _validate_structured(consumer: StructuredConsumer) -> None:
    if consumer.execute_as is not None and not isinstance(consumer.execute_as, (str, os.PathLike)):
        raise ConfigError("consumer execute_as must be a string or path")
    if consumer.target_kind is not None and consumer.target_kind not in _TARGET_KINDS:
        raise ConfigError(f"unknown consumer target_kind '{consumer.target_kind}'")
    if consumer.filter is not None and not callable(consumer.filter):
        raise ConfigError("consumer filter must be callable")
    if consumer.on_complete is not None and not (
        callable(consumer.on_complete) or isinstance(consumer.on_complete, str)
    ):
        raise ConfigError("consumer on_complete must be callable or a string")


# ============================================================================
# Delivery result
# ============================================================================


@dataclass(frozen=True)
class DeliveryResult:
    """Outcome of handing content to its target."""

    status: DeliveryStatus
    source: str
    content: bytes
    actual_digest: Optional[str]
    expected_digest: Optional[str]
    target_kind: Optional[str] = None
    target_name: Optional[str] = None
    value: Any = None
    error: Optional[NeedFetchError] = None

    @property
    def ok(self) -> bool:
        return self.status == "delivered"


# ============================================================================
# Targets
# ============================================================================


class DeliveryTarget(Protocol):
    """Execution mechanism for delivered content."""

    kind: str

    def deliver(self, content: bytes, name: str) -> Any: ...


class ModuleTarget:
    """Execute content as the source of a new module registered in ``sys.modules``.

    A previously registered module of the same name is restored if execution
    raises.
    """

    kind = "module"

    def deliver(self, content: bytes, name: str) -> types.ModuleType:
        filename = f"<needfetch:{name}>"
        code = compile(content, filename, "exec")
        module = types.ModuleType(name)
        module.__file__ = filename
        previous = sys.modules.get(name)
        sys.modules[name] = module
        try:
            exec(code, module.__dict__)
        except BaseException:
            if previous is not None:
                sys.modules[name] = previous
            else:
                sys.modules.pop(name, None)
            raise
        return module


def atomic_write_bytes(dest_path: Union[str, os.PathLike], content: bytes) -> Path:
    """Write ``content`` via temp file + fsync + ``os.replace``.

    Either the whole file appears at ``dest_path`` or nothing does; the
    temporary file is removed on any error.
    """
    destination = Path(dest_path)
    dest_dir = destination.parent
    dest_dir.mkdir(parents=True, exist_ok=True)
    fd, tmp_path = tempfile.mkstemp(dir=dest_dir, prefix=".part-", suffix=".tmp")
    try:
        with os.fdopen(fd, "wb") as handle:
            handle.write(content)
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(tmp_path, destination)
    except Exception:
        try:
            os.unlink(tmp_path)
        except FileNotFoundError:
            pass
        raise
    return destination


class FileTarget:
    kind = "file"

    def deliver(self, content: bytes, name: str) -> Path:
        return atomic_write_bytes(name, content)


class MemoryTarget:
    kind = "memory"

    def deliver(self, content: bytes, name: str) -> bytes:
        return content


_IDENTIFIER_CHARS = re.compile(r"[^0-9a-zA-Z_]+")
DERIVED_NAME_PREFIX = "needfetch"


def derive_target_name(source: str) -> str:
    """Guess a target name from the last path segment of ``source``.

    Derived names live under the ``needfetch_`` prefix so a mirror serving
    ``json.py`` cannot replace an imported module; callers that want a
    specific ``sys.modules`` entry name it with ``execute_as``.

    Examples:
        >>> derive_target_name("https://cdn.example.org/js/accounting.min.py")
        'needfetch_accounting_min'
    """
    path = unquote(urlsplit(source).path) or source
    stem = path.rstrip("/").rsplit("/", 1)[-1]
    if stem.endswith(".py"):
        stem = stem[:-3]
    name = _IDENTIFIER_CHARS.sub("_", stem).strip("_")
    return f"{DERIVED_NAME_PREFIX}_{name}" if name else DERIVED_NAME_PREFIX


# ============================================================================
# Adapter
# ============================================================================


async def _maybe_await(value: Any) -> Any:
    if inspect.isawaitable(value):
        return await value
    return value


class DeliveryAdapter:
    """Apply a consumer spec to verified content."""

    def __init__(
        self,
        default_target: TargetKind = "module",
        targets: Optional[Mapping[str, DeliveryTarget]] = None,
    ) -> None:
        self.default_target = default_target
        self.targets: Dict[str, DeliveryTarget] = {
            "module": ModuleTarget(),
            "file": FileTarget(),
            "memory": MemoryTarget(),
        }
        if targets:
            self.targets.update(targets)

    async def deliver(
        self,
        content: bytes,
        consumer: ConsumerSpec,
        *,
        source: str,
        actual_digest: Optional[str],
        expected_digest: Optional[str],
        extra: Optional[Mapping[str, Any]] = None,
    ) -> DeliveryResult:
        """Filter, extend, execute, and complete.

        Returns a :class:`DeliveryResult` whose ``status`` is ``delivered``,
        ``rejected`` (filter veto) or ``failed`` (target or completion raised).
        Never raises for problems with the content itself.
        """
        log_extra = {"stage": "deliver", "source": source, **(extra or {})}
        result = DeliveryResult(
            status="delivered",
            source=source,
            content=content,
            actual_digest=actual_digest,
            expected_digest=expected_digest,
        )

        if isinstance(consumer, StructuredConsumer) and consumer.filter is not None:
            try:
                filtered = await _maybe_await(consumer.filter(content, actual_digest, expected_digest))
            except Exception as exc:
                LOGGER.error("consumer filter raised", exc_info=True, extra=log_extra)
                return replace(
                    result,
                    status="failed",
                    error=DeliveryError(f"filter raised for {source}: {exc}", target="filter"),
                )
            if isinstance(filtered, str):
                filtered = filtered.encode("utf-8")
            elif isinstance(filtered, (bytearray, memoryview)):
                filtered = bytes(filtered)
            if not isinstance(filtered, bytes):
                LOGGER.info("consumer filter rejected content", extra=log_extra)
                return replace(
                    result,
                    status="rejected",
                    error=FilterRejected(f"filter rejected content from {source}"),
                )
            content = filtered

        completion: Optional[Completion] = None
        if isinstance(consumer, CallbackConsumer):
            completion = consumer.callback
        elif isinstance(consumer, LiteralConsumer):
            completion = consumer.literal
        elif isinstance(consumer, StructuredConsumer):
            completion = consumer.on_complete
        if isinstance(completion, str):
            content = content + b"\n" + completion.encode("utf-8")
            completion = None

        kind = self.default_target
        name: Optional[str] = None
        if isinstance(consumer, StructuredConsumer):
            kind = consumer.target_kind or kind
            if consumer.execute_as is not None:
                name = os.fspath(consumer.execute_as)
        target = self.targets.get(kind)
        result = replace(result, content=content, target_kind=kind)
        if target is None:
            return self._failed(result, DeliveryError(f"no delivery target '{kind}'"), log_extra)
        if name is None:
            if kind == "file":
                return self._failed(
                    result,
                    DeliveryError("file delivery requires execute_as", target=kind),
                    log_extra,
                )
            name = derive_target_name(source)
        result = replace(result, target_name=name)

        try:
            value = target.deliver(content, name)
        except Exception as exc:
            LOGGER.error(
                "error delivering %s to %s target %s", source, kind, name, exc_info=True, extra=log_extra
            )
            return replace(
                result,
                status="failed",
                error=DeliveryError(f"error delivering {source}: {exc}", target=kind),
            )
        result = replace(result, value=value)
        LOGGER.info(
            "delivered %s to %s target %s", source, kind, name, extra={**log_extra, "bytes": len(content)}
        )

        if callable(completion):
            try:
                await _maybe_await(completion(result))
            except Exception as exc:
                LOGGER.error("completion callback raised", exc_info=True, extra=log_extra)
                return replace(
                    result,
                    status="failed",
                    error=DeliveryError(f"completion raised after {source}: {exc}", target="completion"),
                )
        return result

    def _failed(
        self, result: DeliveryResult, error: DeliveryError, log_extra: Mapping[str, Any]
    ) -> DeliveryResult:
        LOGGER.error(str(error), extra=dict(log_extra))
        return replace(result, status="failed", error=error)


__all__ = [
    "CallbackConsumer",
    "ConsumerSpec",
    "DeliveryAdapter",
    "DeliveryResult",
    "DeliveryStatus",
    "DeliveryTarget",
    "FileTarget",
    "LiteralConsumer",
    "MemoryTarget",
    "ModuleTarget",
    "NoConsumer",
    "StructuredConsumer",
    "atomic_write_bytes",
    "derive_target_name",
    "resolve_consumer",
]
