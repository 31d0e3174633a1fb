# === NAVMAP v1 ===
# {
#   "module": "NeedFetch.sources",
#   "purpose": "Ordered source lists with trust-override and silent-stop markers",
#   "sections": [
#     {"id": "markers", "name": "Markers", "anchor": "MRK", "kind": "api"},
#     {"id": "sourcestep", "name": "SourceStep", "anchor": "class-sourcestep", "kind": "class"},
#     {"id": "sourcelist", "name": "SourceList", "anchor": "class-sourcelist", "kind": "class"},
#     {"id": "prime-order", "name": "prime_order", "anchor": "function-prime-order", "kind": "function"}
#   ]
# }
# === /NAVMAP ===

"""Ordered source lists and their positional markers.

A source list is a sequence of locator strings consumed left to right.  Two
markers change how it is consumed:

- ``TRUST`` (the empty string) placed directly after a source means the
  content from that source is delivered without digest verification.
- ``STOP`` placed anywhere ends processing silently: reaching it is a normal
  terminal state rather than an error.

Running out of elements without meeting ``STOP`` is the distinct
"sources exhausted" condition that the engine reports to the caller.
"""

from __future__ import annotations

import json
import random
from dataclasses import dataclass
from typing import Iterable, Literal, Optional, Tuple, Union

from .errors import ConfigError

TRUST = ""


class StopMarker:
    """Singleton sentinel terminating a source list without an error."""

    _instance: Optional["StopMarker"] = None

    def __new__(cls) -> "StopMarker":
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "STOP"

    def __bool__(self) -> bool:
        return False

    def __reduce__(self) -> str:
        return "STOP"


STOP = StopMarker()

SourceElement = Union[str, StopMarker]
StepKind = Literal["source", "stop", "exhausted"]


@dataclass(frozen=True)
class SourceStep:
    """Result of inspecting the head of a :class:`SourceList`."""

    kind: StepKind
    remainder: "SourceList"
    source: Optional[str] = None
    trusted: bool = False

    @property
    def has_fallback(self) -> bool:
        """True when another source could be attempted after this one."""
        return self.remainder.next().kind == "source"


@dataclass(frozen=True)
class SourceList:
    """Immutable view over the elements still to be consumed."""

    elements: Tuple[SourceElement, ...] = ()

    @classmethod
    def parse(cls, sources: Union["SourceList", Iterable[SourceElement]]) -> "SourceList":
        """Validate ``sources`` and wrap them.

        Raises:
            ConfigError: If ``sources`` is a bare string or contains anything
                other than strings and ``STOP``.
        """
        if isinstance(sources, SourceList):
            return sources
        if isinstance(sources, (str, bytes)):
            raise ConfigError("sources must be a sequence of locators, not a single string")
        elements = []
        for index, item in enumerate(sources):
            if isinstance(item, StopMarker):
                elements.append(STOP)
            elif isinstance(item, str):
                elements.append(item)
            else:
                raise ConfigError(
                    f"source #{index} must be a string or STOP, got {type(item).__name__}"
                )
        return cls(tuple(elements))

    def render(self) -> str:
        """Python literal for the list, markers spelled ``TRUST`` and ``STOP``.

        Examples:
            >>> SourceList(("https://a/x.py", TRUST, STOP)).render()
            '["https://a/x.py", TRUST, STOP]'
        """
        parts = []
        for item in self.elements:
            if item is STOP:
                parts.append("STOP")
            elif item == TRUST:
                parts.append("TRUST")
            else:
                parts.append(json.dumps(item))
        return "[" + ", ".join(parts) + "]"

    def next(self) -> SourceStep:
        """Inspect the head, consuming out-of-turn trust markers first.

        A ``TRUST`` marker that does not follow a consumed source carries no
        meaning and is dropped; it never grants trust to the next source.
        """
        elements = self.elements
        index = 0
        while index < len(elements) and elements[index] == TRUST:
            index += 1
        if index >= len(elements):
            return SourceStep(kind="exhausted", remainder=SourceList())
        head = elements[index]
        if head is STOP:
            return SourceStep(kind="stop", remainder=SourceList(elements[index + 1 :]))
        trusted = index + 1 < len(elements) and elements[index + 1] == TRUST
        consumed = index + (2 if trusted else 1)
        return SourceStep(
            kind="source",
            source=head,
            trusted=trusted,
            remainder=SourceList(elements[consumed:]),
        )


def prime_order(
    sources: SourceList,
    window: int,
    rng: Optional[random.Random] = None,
) -> SourceList:
    """Swap the head with one of the first ``window`` plain sources.

    Spreading first requests across mirrors warms their caches.  Only the
    leading run of untrusted sources before any marker is eligible, so a
    trusted source never moves and nothing is reordered past ``TRUST`` or
    ``STOP``.
    """
    if window <= 1:
        return sources
    elements = sources.elements
    eligible = 0
    for index, item in enumerate(elements):
        if item is STOP or item == TRUST:
            break
        if index + 1 < len(elements) and elements[index + 1] == TRUST:
            break
        eligible += 1
        if eligible >= window:
            break
    if eligible <= 1:
        return sources
    pick = (rng or random).randrange(eligible)
    if pick == 0:
        return sources
    reordered = list(elements)
    reordered[0], reordered[pick] = reordered[pick], reordered[0]
    return SourceList(tuple(reordered))


__all__ = [
    "STOP",
    "TRUST",
    "SourceElement",
    "SourceList",
    "SourceStep",
    "StopMarker",
    "prime_order",
]
