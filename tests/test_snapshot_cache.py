import itertools

import pytest

from ici_api.errors import IndexNotReady
from ici_api.snapshot import SnapshotCache


def make_clock():
    counter = itertools.count(1)
    return lambda: f"2026-10-18T00:00:{next(counter):02d}Z"


def test_read_reports_not_ready_before_first_write():
    cache = SnapshotCache()
    assert cache.read() is None
    assert cache.ready is False
    with pytest.raises(IndexNotReady):
        cache.require()


def test_merge_markets_before_base_has_no_effect():
    cache = SnapshotCache()
    assert cache.merge_markets({"btc": {"price": 1.0, "marketCap": None}}) is False
    assert cache.read() is None


def test_write_base_replaces_whole_document():
    cache = SnapshotCache(clock=make_clock())
    cache.write_base({"score": 10, "drivers": ["a"], "dca": {"x": 1}})
    snapshot = cache.write_base({"score": 20})

    assert snapshot.document == {"score": 20}
    assert snapshot.base_updated_at == "2026-10-18T00:00:02Z"
    assert cache.read() is snapshot


def test_write_base_copies_input_document():
    cache = SnapshotCache()
    document = {"score": 10}
    cache.write_base(document)
    document["score"] = 99
    assert cache.read().score == 10


def test_write_base_rejects_non_object():
    cache = SnapshotCache()
    with pytest.raises(TypeError):
        cache.write_base(["not", "a", "document"])
    assert cache.read() is None


def test_merge_markets_only_touches_markets_and_timestamp():
    cache = SnapshotCache(clock=make_clock())
    base = cache.write_base({"score": 42, "history": [1, 2], "markets": None})
    markets = {"btc": {"price": 65000.0, "marketCap": 1.2e12}}

    assert cache.merge_markets(markets) is True
    merged = cache.read()

    assert merged.markets == markets
    assert merged.markets_updated_at == "2026-10-18T00:00:02Z"
    assert merged.base_updated_at == base.base_updated_at
    assert {k: v for k, v in merged.document.items() if k != "markets"} == {"score": 42, "history": [1, 2]}


def test_merge_markets_does_not_mutate_snapshot_held_by_a_reader():
    cache = SnapshotCache()
    cache.write_base({"score": 42})
    held = cache.read()

    cache.merge_markets({"gold": {"price": 2400.0, "marketCap": None, "marketCapEstimate": True}})

    assert "markets" not in held.document
    assert held.markets_updated_at is None


def test_base_refresh_keeps_last_merged_markets():
    cache = SnapshotCache(clock=make_clock())
    cache.write_base({"score": 1})
    markets = {"sp500": {"price": 5800.0, "marketCap": None, "marketCapProxy": "SPY"}}
    cache.merge_markets(markets)
    merged = cache.read()

    refreshed = cache.write_base({"score": 2, "markets": {"stale": True}})

    assert refreshed.score == 2
    assert refreshed.markets == markets
    assert refreshed.markets_updated_at == merged.markets_updated_at
    assert refreshed.base_updated_at == "2026-10-18T00:00:03Z"


def test_published_markets_kept_until_first_merge():
    cache = SnapshotCache()
    published = {"btc": {"price": 1.0, "marketCap": None}}
    cache.write_base({"score": 1, "markets": published})
    assert cache.read().markets == published
    assert cache.read().markets_updated_at is None

    cache.merge_markets({"btc": {"price": 2.0, "marketCap": None}})
    cache.write_base({"score": 2, "markets": published})
    assert cache.read().markets == {"btc": {"price": 2.0, "marketCap": None}}
