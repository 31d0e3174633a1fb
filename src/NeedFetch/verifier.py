"""Accept or reject fetched content against an expected digest."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Literal, Optional

from .digests import DigestFunction

VerdictReason = Literal["match", "trusted", "diagnostic", "mismatch"]


@dataclass(frozen=True)
class Verdict:
    """Verifier decision.

    Attributes:
        accepted: Whether the content may be delivered.
        actual_digest: Digest of the content, or ``None`` when the source was
            trusted and hashing was skipped.
        reason: ``match``, ``trusted``, ``diagnostic`` or ``mismatch``.
    """

    accepted: bool
    actual_digest: Optional[str]
    reason: VerdictReason


class Verifier:
    """Compare content digests with the caller's expectation.

    The decision is the same whether the digest provider answered
    synchronously, through a completion callback, or as a coroutine.
    """

    def __init__(self, digest: DigestFunction) -> None:
        self.digest = digest

    async def verify(
        self,
        content: bytes,
        expected_digest: Optional[str],
        trusted: bool,
    ) -> Verdict:
        """Decide whether ``content`` may be delivered.

        Args:
            content: Raw bytes exactly as received.
            expected_digest: Normalised expected digest, or ``None`` for
                diagnostic mode.
            trusted: Whether the source was followed by the trust marker.
        """
        if trusted:
            return Verdict(accepted=True, actual_digest=None, reason="trusted")
        actual = await self.digest.compute(content)
        if expected_digest is None:
            return Verdict(accepted=True, actual_digest=actual, reason="diagnostic")
        if actual == expected_digest:
            return Verdict(accepted=True, actual_digest=actual, reason="match")
        return Verdict(accepted=False, actual_digest=actual, reason="mismatch")


__all__ = ["Verdict", "VerdictReason", "Verifier"]
