"""Tests for speechgate.cache.engine: LRU, TTL, integrity, events and stats."""

from __future__ import annotations

from typing import Any

import pytest

from speechgate.cache.engine import CacheEngine, CacheEvent, CacheEventType
from speechgate.cache.integrity import json_checksum
from speechgate.config.settings import CacheSettings
from tests.helpers import FakeClock


def _engine(
    clock: FakeClock,
    *,
    checksum: Any = None,
    **settings: Any,
) -> CacheEngine[Any]:
    return CacheEngine(CacheSettings(**settings), checksum=checksum, clock=clock, name="test")


class TestGetSet:
    def test_miss_on_empty_cache(self, clock: FakeClock) -> None:
        engine = _engine(clock)
        result = engine.get("missing")
        assert result.found is False
        assert result.data is None
        assert result.error is None

    def test_set_then_get_returns_data(self, clock: FakeClock) -> None:
        engine = _engine(clock)
        assert engine.set("k", {"a": 1}) is True
        result = engine.get("k")
        assert result.found is True
        assert result.data == {"a": 1}

    def test_overwrite_keeps_single_entry_and_byte_count(self, clock: FakeClock) -> None:
        engine = _engine(clock)
        engine.set("k", {"a": 1})
        first_bytes = engine.get_stats().bytes_used
        engine.set("k", {"a": 2})
        assert engine.size() == 1
        assert engine.get_stats().bytes_used == first_bytes
        assert engine.get("k").data == {"a": 2}

    def test_hit_updates_access_count(self, clock: FakeClock) -> None:
        engine = _engine(clock)
        engine.set("k", "v")
        clock.advance(5)
        engine.get("k")
        engine.get("k")
        entry = engine.peek("k")
        assert entry is not None
        assert entry.access_count == 2
        assert entry.last_access_time == clock()

    def test_default_metadata(self, clock: FakeClock) -> None:
        engine = _engine(clock)
        engine.set("k", "v", metadata={"tags": ["x"]})
        entry = engine.peek("k")
        assert entry is not None
        assert entry.metadata == {"tags": ["x"], "priority": 1, "size_category": "small"}

    def test_sizer_failure_returns_false(self, clock: FakeClock) -> None:
        def broken(_data: object) -> int:
            raise RuntimeError("boom")

        engine: CacheEngine[Any] = CacheEngine(CacheSettings(), sizer=broken, clock=clock)
        assert engine.set("k", "v") is False
        assert engine.size() == 0
        assert engine.get_stats().errors == 1

    def test_delete(self, clock: FakeClock) -> None:
        engine = _engine(clock)
        engine.set("k", "v")
        assert engine.delete("k") is True
        assert engine.delete("k") is False
        assert engine.get_stats().bytes_used == 0


class TestExpiry:
    def test_entry_expires_after_ttl(self, clock: FakeClock) -> None:
        engine = _engine(clock)
        engine.set("k", "v", ttl_s=10)
        clock.advance(10)
        assert engine.get("k").found is True
        clock.advance(0.001)
        result = engine.get("k")
        assert result.found is False
        assert result.error == "entry expired"
        assert engine.size() == 0
        assert engine.get_stats().expired == 1

    def test_default_ttl_from_settings(self, clock: FakeClock) -> None:
        engine = _engine(clock, default_ttl_s=5)
        engine.set("k", "v")
        clock.advance(6)
        assert engine.has("k") is False

    def test_keys_filters_expired_without_deleting(self, clock: FakeClock) -> None:
        engine = _engine(clock)
        engine.set("short", 1, ttl_s=1)
        engine.set("long", 2, ttl_s=100)
        clock.advance(2)
        assert engine.keys() == ["long"]
        assert engine.size() == 2

    def test_cleanup_purges_expired(self, clock: FakeClock) -> None:
        engine = _engine(clock)
        engine.set("a", 1, ttl_s=1)
        engine.set("b", 2, ttl_s=1)
        engine.set("c", 3, ttl_s=100)
        clock.advance(2)
        assert engine.cleanup() == 2
        assert engine.size() == 1


class TestEviction:
    def test_count_limit_evicts_least_recently_used(self, clock: FakeClock) -> None:
        engine = _engine(clock, max_entries=3)
        engine.set("a", 1)
        engine.set("b", 2)
        engine.set("c", 3)
        engine.get("a")
        engine.set("d", 4)
        assert engine.has("a") is True
        assert engine.has("b") is False
        assert engine.size() == 3
        assert engine.get_stats().evictions == 1

    def test_count_eviction_removes_ten_percent(self, clock: FakeClock) -> None:
        engine = _engine(clock, max_entries=20)
        for i in range(20):
            engine.set(f"k{i}", i)
        engine.set("new", 99)
        # ceil(20 * 0.1) = 2 evicted, then one inserted
        assert engine.size() == 19
        assert engine.has("k0") is False
        assert engine.has("k1") is False
        assert engine.has("k2") is True

    def test_byte_budget_evicts_down_to_eighty_percent(self, clock: FakeClock) -> None:
        engine: CacheEngine[str] = CacheEngine(
            CacheSettings(max_bytes=1024, max_entries=100),
            sizer=lambda _data: 256,
            clock=clock,
        )
        for i in range(4):
            engine.set(f"k{i}", "x")
        assert engine.get_stats().bytes_used == 1024
        engine.set("k4", "x")
        # 1024 -> 768 (<= 819.2) then one 256-byte insert
        stats = engine.get_stats()
        assert stats.bytes_used == 1024
        assert stats.evictions == 1
        assert engine.has("k0") is False

    def test_evict_lru_returns_entries_and_emits(self, clock: FakeClock) -> None:
        engine = _engine(clock)
        events: list[CacheEvent] = []
        engine.add_listener(CacheEventType.EVICT, events.append)
        engine.set("a", 1)
        engine.set("b", 2)
        evicted = engine.evict_lru(1)
        assert [e.key for e in evicted] == ["a"]
        assert len(events) == 1
        assert events[0].evicted_entry is not None
        assert events[0].evicted_entry.key == "a"

    def test_lru_order_ignores_clock_going_backwards(self, clock: FakeClock) -> None:
        engine = _engine(clock)
        engine.set("a", 1)
        clock.advance(-100)
        engine.set("b", 2)
        assert [e.key for e in engine.evict_lru(1)] == ["a"]


class TestIntegrity:
    def test_corrupted_entry_is_dropped(self, clock: FakeClock) -> None:
        engine = _engine(clock, checksum=json_checksum)
        payload = {"value": 1}
        engine.set("k", payload)
        payload["value"] = 2
        result = engine.get("k")
        assert result.found is False
        assert result.error == "integrity check failed"
        assert engine.size() == 0
        assert engine.get_stats().corrupted == 1

    def test_intact_entry_passes(self, clock: FakeClock) -> None:
        engine = _engine(clock, checksum=json_checksum)
        engine.set("k", {"value": 1})
        assert engine.get("k").found is True

    def test_integrity_disabled_by_settings(self, clock: FakeClock) -> None:
        engine = _engine(clock, checksum=json_checksum, enable_integrity_check=False)
        payload = {"value": 1}
        engine.set("k", payload)
        payload["value"] = 2
        assert engine.get("k").found is True
        assert engine.integrity_enabled is False


class TestEvents:
    def test_listener_receives_hit_and_miss(self, clock: FakeClock) -> None:
        engine = _engine(clock)
        seen: list[CacheEventType] = []
        engine.add_listener(CacheEventType.HIT, lambda e: seen.append(e.type))
        engine.add_listener(CacheEventType.MISS, lambda e: seen.append(e.type))
        engine.set("k", "v")
        engine.get("k")
        engine.get("nope")
        assert seen == [CacheEventType.HIT, CacheEventType.MISS]

    def test_failing_listener_does_not_break_operation(self, clock: FakeClock) -> None:
        engine = _engine(clock)

        def broken(_event: CacheEvent) -> None:
            raise RuntimeError("listener failure")

        engine.add_listener(CacheEventType.SET, broken)
        assert engine.set("k", "v") is True
        assert engine.get("k").found is True

    def test_remove_listener(self, clock: FakeClock) -> None:
        engine = _engine(clock)
        events: list[CacheEvent] = []
        engine.add_listener(CacheEventType.SET, events.append)
        engine.remove_listener(CacheEventType.SET, events.append)
        engine.set("k", "v")
        assert events == []

    def test_events_disabled(self, clock: FakeClock) -> None:
        engine = _engine(clock, enable_events=False)
        events: list[CacheEvent] = []
        engine.add_listener(CacheEventType.SET, events.append)
        engine.set("k", "v")
        assert events == []

    def test_clear_emits_wildcard_key(self, clock: FakeClock) -> None:
        engine = _engine(clock)
        events: list[CacheEvent] = []
        engine.add_listener(CacheEventType.CLEAR, events.append)
        engine.set("k", "v")
        engine.clear()
        assert engine.size() == 0
        assert events[0].key == "*"


class TestStats:
    def test_hit_ratio_is_fraction(self, clock: FakeClock) -> None:
        engine = _engine(clock)
        engine.set("k", "v")
        engine.get("k")
        engine.get("k")
        engine.get("k")
        engine.get("missing")
        stats = engine.get_stats()
        assert stats.hits == 3
        assert stats.misses == 1
        assert stats.total_requests == 4
        assert stats.hit_ratio == pytest.approx(0.75)

    def test_empty_hit_ratio_is_zero(self, clock: FakeClock) -> None:
        assert _engine(clock).hit_ratio() == 0.0

    def test_clear_keeps_counters(self, clock: FakeClock) -> None:
        engine = _engine(clock)
        engine.set("k", "v")
        engine.get("k")
        engine.clear()
        stats = engine.get_stats()
        assert stats.hits == 1
        assert stats.writes == 1
        assert stats.entry_count == 0

    def test_memory_usage(self, clock: FakeClock) -> None:
        engine: CacheEngine[str] = CacheEngine(
            CacheSettings(max_bytes=2048), sizer=lambda _data: 512, clock=clock
        )
        engine.set("a", "x")
        engine.set("b", "x")
        usage = engine.get_memory_usage()
        assert usage.used_bytes == 1024
        assert usage.utilization_percent == pytest.approx(50.0)
        assert usage.average_entry_size == pytest.approx(512.0)

    def test_to_dict(self, clock: FakeClock) -> None:
        data = _engine(clock).get_stats().to_dict()
        assert data["entry_count"] == 0
        assert "hit_ratio" in data
