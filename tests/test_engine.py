# === NAVMAP v1 ===
# {
#   "module": "tests.test_engine",
#   "purpose": "State machine tests for NeedEngine.fetch",
#   "sections": [
#     {"id": "scenarios", "name": "TestScenarios", "anchor": "#class-testscenarios", "kind": "test"},
#     {"id": "fallback", "name": "TestFallback", "anchor": "#class-testfallback", "kind": "test"},
#     {"id": "exhaustion", "name": "TestExhaustion", "anchor": "#class-testexhaustion", "kind": "test"},
#     {"id": "diagnostic", "name": "TestDiagnosticMode", "anchor": "#class-testdiagnosticmode", "kind": "test"},
#     {"id": "delivery", "name": "TestDelivery", "anchor": "#class-testdelivery", "kind": "test"},
#     {"id": "configuration", "name": "TestConfiguration", "anchor": "#class-testconfiguration", "kind": "test"},
#     {"id": "concurrency", "name": "TestConcurrency", "anchor": "#class-testconcurrency", "kind": "test"}
#   ]
# }
# === /NAVMAP ===

"""End-to-end behaviour of the fetch-verify-fallback engine.

Covers the reference scenarios (single good source, fallback, exhaustion,
silent stop, trust override, filter veto) plus timeouts, repeated transport
signals, diagnostic mode, and concurrent top-level fetches.
"""

from __future__ import annotations

import asyncio
import hashlib
import logging
import random
import sys

import pytest

from NeedFetch.delivery import StructuredConsumer
from NeedFetch.engine import NeedEngine
from NeedFetch.errors import ConfigError, SourcesExhausted
from NeedFetch.settings import NeedSettings
from NeedFetch.sources import STOP, TRUST
from tests.fakes import ChattyTransport, CountingDigest, Delayed, FakeTransport

GOOD = b"VALUE = 42\n"
EVIL = b"VALUE = 666\n"
GOOD_HASH = hashlib.sha256(GOOD).hexdigest()


def _engine(routes=None, settings=None, **kwargs):
    transport = kwargs.pop("transport", None) or FakeTransport(routes)
    return NeedEngine(
        settings or NeedSettings(timeout_ms=200, default_target="memory"),
        transport=transport,
        **kwargs,
    )


def _fetch(engine, *args, **kwargs):
    return asyncio.run(engine.fetch(*args, **kwargs))


class TestScenarios:
    """Reference scenarios for the state machine."""

    def test_single_good_source(self):
        delivered = []
        engine = _engine({"good": GOOD})
        result = _fetch(engine, ["good"], GOOD_HASH, delivered.append)
        assert result.ok
        assert result.source == "good"
        assert result.value == GOOD
        assert len(delivered) == 1
        assert delivered[0].content == GOOD
        assert result.fallbacks == 0

    def test_falls_back_from_missing_source(self):
        engine = _engine({"good": GOOD})
        result = _fetch(engine, ["bad", "good"], GOOD_HASH)
        assert result.ok
        assert result.source == "good"
        assert result.fallbacks == 1
        assert [record.outcome for record in result.attempts] == ["status", "accepted"]
        assert result.attempts[0].status_code == 404

    def test_exhaustion_raises(self):
        engine = _engine({"bad1": EVIL})
        with pytest.raises(SourcesExhausted) as excinfo:
            _fetch(engine, ["bad1", "bad2"], GOOD_HASH)
        assert str(excinfo.value) == f"need: no source for hash {GOOD_HASH}"
        assert excinfo.value.tried == ("bad1", "bad2")

    def test_stop_marker_is_silent(self):
        delivered = []
        engine = _engine({"bad1": EVIL})
        result = _fetch(engine, ["bad1", "bad2", STOP], GOOD_HASH, delivered.append)
        assert result.state == "stopped"
        assert not result.ok
        assert result.delivery is None
        assert delivered == []
        assert len(result.attempts) == 2

    def test_trust_override_skips_hashing(self):
        counting = CountingDigest()
        engine = _engine({"untrusted": EVIL}, digest=counting)
        result = _fetch(engine, ["untrusted", TRUST], "0" * 64)
        assert result.ok
        assert result.value == EVIL
        assert result.actual_digest is None
        assert counting.seen == []
        assert result.attempts[0].trusted

    def test_filter_veto_does_not_fall_back(self):
        transport = FakeTransport({"good": GOOD, "other": GOOD})
        engine = _engine(transport=transport)
        consumer = StructuredConsumer(filter=lambda content, actual, expected: None)
        result = _fetch(engine, ["good", "other"], GOOD_HASH, consumer)
        assert result.state == "rejected"
        assert result.delivery.status == "rejected"
        assert transport.calls == ["good"]


class TestFallback:
    """Every source failure advances exactly one position."""

    def test_mismatch_falls_back(self, caplog):
        engine = _engine({"evil": EVIL, "good": GOOD})
        with caplog.at_level(logging.WARNING, logger="NeedFetch"):
            result = _fetch(engine, ["evil", "good"], GOOD_HASH)
        assert result.source == "good"
        assert result.attempts[0].outcome == "mismatch"
        assert result.attempts[0].actual_digest == hashlib.sha256(EVIL).hexdigest()
        assert any("has incorrect hash" in record.getMessage() for record in caplog.records)

    def test_timeout_falls_back(self):
        transport = FakeTransport({"slow": Delayed(5.0, GOOD), "good": GOOD})
        engine = _engine(transport=transport)
        result = _fetch(engine, ["slow", "good"], GOOD_HASH, timeout_ms=50)
        assert result.source == "good"
        assert result.attempts[0].outcome == "timeout"

    def test_last_source_is_not_timed_out(self):
        transport = FakeTransport({"slow": Delayed(0.3, GOOD)})
        engine = _engine(transport=transport)
        result = _fetch(engine, ["slow"], GOOD_HASH, timeout_ms=20)
        assert result.ok

    def test_last_source_before_stop_is_not_timed_out(self):
        transport = FakeTransport({"slow": Delayed(0.3, GOOD)})
        engine = _engine(transport=transport)
        result = _fetch(engine, ["slow", STOP], GOOD_HASH, timeout_ms=20)
        assert result.ok

    def test_double_signals_fall_back_once(self):
        transport = ChattyTransport({"good": GOOD})
        engine = _engine(transport=transport)
        result = _fetch(engine, ["a", "b", "good"], GOOD_HASH)
        assert result.ok
        assert transport.calls == ["a", "b", "good"]
        assert [record.outcome for record in result.attempts] == [
            "transport",
            "transport",
            "accepted",
        ]

    def test_failed_source_is_never_retried(self):
        transport = FakeTransport({"good": GOOD})
        engine = _engine(transport=transport)
        with pytest.raises(SourcesExhausted):
            _fetch(engine, ["bad", "bad", "worse"], GOOD_HASH)
        assert transport.calls == ["bad", "bad", "worse"]

    def test_trust_applies_only_to_marked_source(self):
        engine = _engine({"first": EVIL, "second": EVIL})
        result = _fetch(engine, ["first", "second", TRUST], GOOD_HASH)
        assert result.source == "second"
        assert [record.outcome for record in result.attempts] == ["mismatch", "accepted"]

    def test_leading_trust_marker_grants_nothing(self):
        engine = _engine({"evil": EVIL})
        with pytest.raises(SourcesExhausted):
            _fetch(engine, [TRUST, "evil"], GOOD_HASH)

    def test_long_source_list(self):
        sources = [f"mirror-{index}" for index in range(2000)] + ["good"]
        engine = _engine({"good": GOOD})
        result = _fetch(engine, sources, GOOD_HASH)
        assert result.ok
        assert result.fallbacks == 2000

    @pytest.mark.parametrize("suffix", [[], [STOP]])
    def test_empty_list(self, suffix):
        engine = _engine()
        if suffix:
            assert _fetch(engine, suffix, GOOD_HASH).state == "stopped"
        else:
            with pytest.raises(SourcesExhausted):
                _fetch(engine, suffix, GOOD_HASH)


class TestExhaustion:
    """Exhaustion is reported once per top-level call."""

    def test_raised_once_and_logged_once(self, caplog):
        engine = _engine()
        with caplog.at_level(logging.ERROR, logger="NeedFetch"):
            with pytest.raises(SourcesExhausted):
                _fetch(engine, ["a", "b", "c"], GOOD_HASH)
        errors = [record for record in caplog.records if record.levelno == logging.ERROR]
        assert len(errors) == 1
        assert "no source for hash" in errors[0].getMessage()

    def test_correlation_id_on_every_record(self, caplog):
        engine = _engine()
        with caplog.at_level(logging.WARNING, logger="NeedFetch"):
            with pytest.raises(SourcesExhausted):
                _fetch(engine, ["a", "b"], GOOD_HASH)
        ids = {
            record.correlation_id for record in caplog.records if record.name.startswith("NeedFetch")
        }
        assert len(ids) == 1


class TestDiagnosticMode:
    """Calls without a digest accept the first fetch and log the pin hint."""

    def test_logs_digest_to_pin(self, caplog):
        engine = _engine({"good": GOOD})
        with caplog.at_level(logging.WARNING, logger="NeedFetch"):
            result = _fetch(engine, ["bad", "good"])
        assert result.ok
        assert result.actual_digest == GOOD_HASH
        assert result.expected_digest == GOOD_HASH
        hint = [r.getMessage() for r in caplog.records if "called without hash" in r.getMessage()]
        assert hint == [f'need called without hash; change to: need(["bad", "good"], "{GOOD_HASH}")']

    def test_hint_repeats_markers_and_consumer(self, caplog):
        engine = _engine({"good": GOOD})

        def on_loaded(result):
            return None

        with caplog.at_level(logging.WARNING, logger="NeedFetch"):
            _fetch(engine, ["bad", "good", "spare", TRUST, STOP], None, on_loaded)
        hint = [r.getMessage() for r in caplog.records if "called without hash" in r.getMessage()]
        assert len(hint) == 1
        assert hint[0].endswith(f'.on_loaded, ["bad", "good", "spare", TRUST, STOP], "{GOOD_HASH}")')

    def test_hint_quotes_literal_consumer(self, caplog):
        engine = _engine({"good": GOOD})
        with caplog.at_level(logging.WARNING, logger="NeedFetch"):
            _fetch(engine, ["good"], None, "main()")
        hint = [r.getMessage() for r in caplog.records if "called without hash" in r.getMessage()]
        assert hint == [f'need called without hash; change to: need("main()", ["good"], "{GOOD_HASH}")']

    @pytest.mark.parametrize("blank", ["", "   "])
    def test_blank_digest_never_delivers(self, blank):
        delivered = []
        transport = FakeTransport({"evil": EVIL})
        engine = _engine(transport=transport)
        with pytest.raises(ConfigError):
            _fetch(engine, ["evil"], blank, delivered.append)
        assert delivered == []
        assert transport.calls == []

    def test_require_digest(self):
        engine = _engine({"good": GOOD}, NeedSettings(require_digest=True))
        with pytest.raises(ConfigError):
            _fetch(engine, ["good"])

    def test_digest_is_normalised(self):
        engine = _engine({"good": GOOD})
        assert _fetch(engine, ["good"], f"  {GOOD_HASH.upper()} ").ok


class TestDelivery:
    """Delivery happens at most once and its failures stay local."""

    def test_delivery_error_does_not_fall_back(self):
        transport = FakeTransport({"good": GOOD, "also-good": GOOD})
        engine = _engine(transport=transport)

        def explode(result):
            raise RuntimeError("consumer bug")

        result = _fetch(engine, ["good", "also-good"], GOOD_HASH, explode)
        assert result.state == "delivery_failed"
        assert transport.calls == ["good"]

    def test_literal_consumer_executes_in_module(self):
        engine = _engine({"good": GOOD}, NeedSettings(default_target="module"))
        consumer = {"executeAs": "needfetch_engine_literal", "onComplete": "VALUE *= 2"}
        try:
            result = _fetch(engine, ["good"], GOOD_HASH, consumer)
            assert result.value.VALUE == 84
        finally:
            sys.modules.pop("needfetch_engine_literal", None)

    def test_bad_consumer_rejected_before_fetch(self):
        transport = FakeTransport({"good": GOOD})
        engine = _engine(transport=transport)
        with pytest.raises(ConfigError):
            _fetch(engine, ["good"], GOOD_HASH, {"nonsense": True})
        assert transport.calls == []


class TestConfiguration:
    def test_call_site_timeout_wins(self):
        transport = FakeTransport({"slow": Delayed(0.3, GOOD), "good": GOOD})
        engine = _engine(transport=transport, settings=NeedSettings(timeout_ms=10_000))
        result = _fetch(engine, ["slow", "good"], GOOD_HASH, timeout_ms=20)
        assert result.source == "good"

    def test_invalid_call_site_timeout(self):
        engine = _engine({"good": GOOD})
        with pytest.raises(ConfigError):
            _fetch(engine, ["good"], GOOD_HASH, timeout_ms=0)

    def test_priming_window_rotates_first_request(self):
        routes = {"a": GOOD, "b": GOOD, "c": GOOD}
        firsts = set()
        for seed in range(30):
            transport = FakeTransport(routes)
            engine = _engine(
                transport=transport,
                settings=NeedSettings(priming_window=3, default_target="memory"),
                rng=random.Random(seed),
            )
            _fetch(engine, ["a", "b", "c"], GOOD_HASH)
            firsts.add(transport.calls[0])
        assert firsts == {"a", "b", "c"}


class TestConcurrency:
    def test_independent_fetches_share_one_engine(self):
        other = b"OTHER = 1\n"
        transport = FakeTransport(
            {"slow-good": Delayed(0.05, GOOD), "other": other, "missing-first": Delayed(0.01, EVIL)}
        )
        engine = _engine(transport=transport)

        async def scenario():
            return await asyncio.gather(
                engine.fetch(["slow-good"], GOOD_HASH),
                engine.fetch(["missing-first", "other"], hashlib.sha256(other).hexdigest()),
            )

        first, second = asyncio.run(scenario())
        assert first.value == GOOD
        assert second.value == other
        assert first.correlation_id != second.correlation_id
