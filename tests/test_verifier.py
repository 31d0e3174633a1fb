"""Accept/reject decisions of the verifier."""

from __future__ import annotations

import asyncio
import hashlib

import pytest

from NeedFetch.digests import DigestFunction
from NeedFetch.verifier import Verifier
from tests.fakes import CountingDigest


def _verify(content, expected, trusted=False, provider=None):
    verifier = Verifier(DigestFunction.from_provider(provider))
    return asyncio.run(verifier.verify(content, expected, trusted))


class TestVerifier:
    """Digest equality decides acceptance unless the source is trusted."""

    @pytest.mark.parametrize("content", [b"", b"x", b"\xff\xfe\x00binary", b"a" * 100_000])
    def test_matching_digest_accepted(self, content):
        verdict = _verify(content, hashlib.sha256(content).hexdigest())
        assert verdict.accepted
        assert verdict.reason == "match"

    def test_mismatch_rejected(self):
        verdict = _verify(b"tampered", hashlib.sha256(b"original").hexdigest())
        assert not verdict.accepted
        assert verdict.reason == "mismatch"
        assert verdict.actual_digest == hashlib.sha256(b"tampered").hexdigest()

    def test_trusted_source_is_not_hashed(self):
        counting = CountingDigest()
        verdict = _verify(b"anything", "0" * 64, trusted=True, provider=counting)
        assert verdict.accepted
        assert verdict.reason == "trusted"
        assert verdict.actual_digest is None
        assert counting.seen == []

    def test_missing_digest_is_diagnostic(self):
        verdict = _verify(b"content", None)
        assert verdict.accepted
        assert verdict.reason == "diagnostic"
        assert verdict.actual_digest == hashlib.sha256(b"content").hexdigest()

    def test_callback_provider_gives_same_decision(self):
        def provider(data, on_complete):
            on_complete(hashlib.sha256(data).hexdigest())

        expected = hashlib.sha256(b"payload").hexdigest()
        assert _verify(b"payload", expected, provider=provider).accepted
        assert not _verify(b"other", expected, provider=provider).accepted
