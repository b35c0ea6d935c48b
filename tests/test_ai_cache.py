import asyncio

import pytest

from agrigrow.app.config import AICacheConfig
from agrigrow.app.core.ai_cache import (
    AIResponseCache,
    generate_cache_key,
    is_cacheable,
    normalize_query,
    with_cache,
)


def make_cache(clock, **overrides) -> AIResponseCache:
    config = AICacheConfig(**{"enabled": True, "max_size": 500, **overrides})
    return AIResponseCache(config, clock=clock)


class TestTTLExpiry:
    def test_entry_survives_until_ttl_then_expires(self, clock):
        cache = make_cache(clock)
        cache.set("chat:q1", "answer A", ttl_ms=60_000)

        clock.advance(60_000)
        assert cache.get("chat:q1") == "answer A"

        clock.advance(1_000)
        assert cache.get("chat:q1") is None

    def test_type_specific_ttl_applies_when_none_given(self, clock):
        cache = make_cache(clock, chat_ttl_ms=1_000, planning_ttl_ms=5_000)
        cache.set("chat:a", "x", cache_type="chat")
        cache.set("planning:a", "y", cache_type="planning")

        clock.advance(2_000)
        assert cache.get("chat:a") is None
        assert cache.get("planning:a") == "y"

    def test_has_removes_expired_entry(self, clock):
        cache = make_cache(clock)
        cache.set("k", 1, ttl_ms=10)
        clock.advance(11)
        assert cache.has("k") is False
        assert len(cache) == 0

    def test_purge_expired_counts_removed_entries(self, clock):
        cache = make_cache(clock)
        cache.set("short", 1, ttl_ms=100)
        cache.set("long", 2, ttl_ms=10_000)
        clock.advance(500)
        assert cache.purge_expired() == 1
        assert cache.get("long") == 2


class TestEviction:
    def test_oldest_inserted_entry_goes_first(self, clock):
        cache = make_cache(clock, max_size=3)
        for key in ("a", "b", "c"):
            cache.set(key, key.upper())
            clock.advance(1)

        # Reading "a" must not protect it; eviction is by insertion order
        assert cache.get("a") == "A"
        cache.set("d", "D")

        assert cache.get("a") is None
        assert [cache.get(k) for k in ("b", "c", "d")] == ["B", "C", "D"]

    def test_overwriting_a_key_does_not_evict(self, clock):
        cache = make_cache(clock, max_size=2)
        cache.set("a", 1)
        cache.set("b", 2)
        cache.set("a", 3)
        assert len(cache) == 2
        assert cache.get("a") == 3
        assert cache.get("b") == 2

    def test_shrinking_max_size_keeps_newest(self, clock):
        cache = make_cache(clock, max_size=5)
        for i in range(5):
            cache.set(f"k{i}", i)
        cache.update_config(max_size=2)
        assert len(cache) == 2
        assert cache.get("k4") == 4
        assert cache.get("k0") is None


class TestInvalidationAndStats:
    def test_invalidate_pattern_removes_matching_keys(self, clock):
        cache = make_cache(clock)
        cache.set("chat:1", "a", cache_type="chat")
        cache.set("chat:2", "b", cache_type="chat")
        cache.set("planning:1", "c", cache_type="planning")

        assert cache.invalidate_pattern("^chat:") == 2
        assert cache.get("planning:1") == "c"

    def test_delete_reports_presence(self, clock):
        cache = make_cache(clock)
        cache.set("k", "v")
        assert cache.delete("k") is True
        assert cache.delete("k") is False

    def test_stats_track_hits_misses_and_types(self, clock):
        cache = make_cache(clock)
        cache.set("chat:1", "a", cache_type="chat")
        cache.get("chat:1")
        cache.get("missing")
        clock.advance(2_000)

        stats = cache.get_stats()
        assert stats["hits"] == 1
        assert stats["misses"] == 1
        assert stats["hit_rate"] == 50
        assert stats["entries_by_type"]["chat"] == 1
        assert stats["average_age"] == 2
        assert stats["size"] == 1

    def test_disabled_cache_never_stores(self, clock):
        cache = AIResponseCache(AICacheConfig(enabled=False), clock=clock)
        cache.set("k", "v")
        assert cache.get("k") is None
        assert len(cache) == 0


class TestKeysAndCacheability:
    def test_reworded_questions_share_a_key(self):
        first = generate_cache_key("chat", "How to control aphids in mustard?", {"season": "Rabi"})
        second = generate_cache_key("chat", "aphids mustard control", {"season": "Rabi"})
        assert first == second
        assert first.startswith("chat:")
        assert len(first) == len("chat:") + 16

    def test_context_changes_the_key(self):
        rabi = generate_cache_key("chat", "aphids in mustard", {"season": "Rabi"})
        zaid = generate_cache_key("chat", "aphids in mustard", {"season": "Zaid"})
        assert rabi != zaid

    def test_irrelevant_context_is_ignored(self):
        base = generate_cache_key("chat", "aphids in mustard", {"season": "Rabi"})
        extra = generate_cache_key("chat", "aphids in mustard", {"season": "Rabi", "user": "x"})
        assert base == extra

    def test_normalize_drops_stop_words_and_sorts(self):
        assert normalize_query("What is the best wheat fertilizer?") == "best fertilizer wheat"

    @pytest.mark.parametrize(
        "query",
        [
            "short",
            "x" * 501,
            "What should I spray on my field right now?",
            "Leaves turned yellow yesterday, what to do?",
        ],
    )
    def test_not_cacheable(self, query):
        assert is_cacheable("chat", query) is False

    def test_diagnosis_is_never_cacheable(self):
        assert is_cacheable("diagnosis", "What causes leaf curl in chilli plants?") is False

    def test_general_question_is_cacheable(self):
        assert is_cacheable("chat", "What causes leaf curl in chilli plants?") is True


class TestWithCache:
    def test_second_call_is_served_from_cache(self, clock):
        cache = make_cache(clock)
        calls = []

        async def fetch():
            calls.append(1)
            return "use neem oil"

        async def run():
            first = await with_cache(cache, "chat", "How to control aphids in mustard?", {}, fetch)
            second = await with_cache(cache, "chat", "How to control aphids in mustard?", {}, fetch)
            return first, second

        first, second = asyncio.run(run())
        assert first == ("use neem oil", False)
        assert second == ("use neem oil", True)
        assert len(calls) == 1

    def test_fetch_errors_are_not_cached(self, clock):
        cache = make_cache(clock)

        async def failing():
            raise RuntimeError("upstream down")

        with pytest.raises(RuntimeError):
            asyncio.run(with_cache(cache, "chat", "How to control aphids in mustard?", {}, failing))
        assert len(cache) == 0

    def test_uncacheable_query_bypasses_cache(self, clock):
        cache = make_cache(clock)

        async def fetch():
            return "answer"

        result = asyncio.run(with_cache(cache, "chat", "what about my farm soil?", {}, fetch))
        assert result == ("answer", False)
        assert len(cache) == 0
