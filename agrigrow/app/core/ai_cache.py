"""
In-memory cache for AI responses and computed aggregates.

Entries expire after a per-type TTL and, once the cache is full, the
oldest inserted entry is evicted first. State lives only in this process;
a miss simply means the caller recomputes.
"""
import hashlib
import json
import re
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional, Pattern, Tuple, TypeVar, Union

from cachetools import FIFOCache
from loguru import logger

from agrigrow.app.config import AICacheConfig
from agrigrow.app.core.clock import Clock, now_ms

T = TypeVar("T")

CACHE_TYPES = ("chat", "diagnosis", "planning")

STOP_WORDS = frozenset(
    """
    a an the is are was were be been being have has had do does did will would
    could should may might must shall can need dare ought used to of in for on
    with at by from up about into over after beneath under above what which who
    whom this that these those am i my me we our you your he she it they them
    their its his her and but or not no yes so if then than please help tell
    explain how why when where
    """.split()
) | {"मुझे", "बताओ", "क्या", "है", "कैसे", "करें", "और", "या", "में", "के", "की", "का"}

PERSONAL_PATTERNS = [
    re.compile(p, re.IGNORECASE)
    for p in (
        r"my field",
        r"my farm",
        r"my crop",
        r"yesterday",
        r"today",
        r"tomorrow",
        r"last week",
        r"this week",
        r"मेरा खेत",
        r"मेरी फसल",
    )
]

MIN_CACHEABLE_LENGTH = 10
MAX_CACHEABLE_LENGTH = 500


@dataclass
class CacheEntry:
    data: Any
    timestamp: int
    expires_at: int
    cache_type: str = "default"
    hit_count: int = 0
    last_accessed_at: int = 0

    def is_expired(self, now: int) -> bool:
        return now > self.expires_at


class AIResponseCache:
    def __init__(self, config: AICacheConfig, clock: Clock = now_ms):
        self.config = config
        self._clock = clock
        self._entries: FIFOCache = FIFOCache(maxsize=config.max_size)
        self._hits = 0
        self._misses = 0
        self._last_cleanup = clock()
        logger.info(
            f"AIResponseCache initialized (enabled={config.enabled}, max_size={config.max_size})."
        )

    def _ttl_for(self, cache_type: str) -> int:
        return {
            "chat": self.config.chat_ttl_ms,
            "diagnosis": self.config.diagnosis_ttl_ms,
            "planning": self.config.planning_ttl_ms,
        }.get(cache_type, self.config.default_ttl_ms)

    def _maybe_cleanup(self, now: int):
        if now - self._last_cleanup >= self.config.cleanup_interval_ms:
            self._last_cleanup = now
            self.purge_expired()

    def get(self, key: str) -> Optional[Any]:
        if not self.config.enabled:
            return None

        now = self._clock()
        self._maybe_cleanup(now)

        entry: Optional[CacheEntry] = self._entries.get(key)
        if entry is None:
            self._misses += 1
            return None

        if entry.is_expired(now):
            del self._entries[key]
            self._misses += 1
            return None

        entry.hit_count += 1
        entry.last_accessed_at = now
        self._hits += 1
        return entry.data

    def set(
        self,
        key: str,
        value: Any,
        ttl_ms: Optional[int] = None,
        cache_type: str = "default",
    ) -> None:
        if not self.config.enabled:
            return

        now = self._clock()
        ttl = ttl_ms if ttl_ms is not None else self._ttl_for(cache_type)
        # FIFOCache drops the oldest inserted key when a new key arrives at capacity
        self._entries[key] = CacheEntry(
            data=value,
            timestamp=now,
            expires_at=now + ttl,
            cache_type=cache_type,
            last_accessed_at=now,
        )

    def has(self, key: str) -> bool:
        if not self.config.enabled:
            return False
        entry: Optional[CacheEntry] = self._entries.get(key)
        if entry is None:
            return False
        if entry.is_expired(self._clock()):
            del self._entries[key]
            return False
        return True

    def delete(self, key: str) -> bool:
        return self._entries.pop(key, None) is not None

    def invalidate_pattern(self, pattern: Union[str, Pattern[str]]) -> int:
        regex = re.compile(pattern) if isinstance(pattern, str) else pattern
        matching = [key for key in list(self._entries.keys()) if regex.search(key)]
        for key in matching:
            self._entries.pop(key, None)
        if matching:
            logger.info(
                f"AIResponseCache.invalidate_pattern: removed {len(matching)} entries matching '{regex.pattern}'."
            )
        return len(matching)

    def purge_expired(self) -> int:
        now = self._clock()
        expired = [
            key for key, entry in list(self._entries.items()) if entry.is_expired(now)
        ]
        for key in expired:
            self._entries.pop(key, None)
        if expired:
            logger.debug(
                f"AIResponseCache.purge_expired: cleaned up {len(expired)} expired entries."
            )
        return len(expired)

    def clear(self) -> None:
        self._entries.clear()
        self._hits = 0
        self._misses = 0

    def __len__(self) -> int:
        return len(self._entries)

    def get_stats(self) -> Dict[str, Any]:
        now = self._clock()
        entries_by_type = {cache_type: 0 for cache_type in CACHE_TYPES}
        total_age = 0
        memory_estimate = 0

        for entry in self._entries.values():
            entries_by_type[entry.cache_type] = entries_by_type.get(entry.cache_type, 0) + 1
            total_age += now - entry.timestamp
            memory_estimate += 1024 + len(json.dumps(entry.data, default=str))

        size = len(self._entries)
        total_requests = self._hits + self._misses
        return {
            "size": size,
            "max_size": self.config.max_size,
            "hits": self._hits,
            "misses": self._misses,
            "hit_rate": (self._hits / total_requests) * 100 if total_requests else 0,
            "entries_by_type": entries_by_type,
            "average_age": (total_age / size / 1000) if size else 0,
            "memory_estimate": memory_estimate,
        }

    def get_config(self) -> AICacheConfig:
        return self.config.model_copy()

    def update_config(self, **changes: Any) -> None:
        self.config = self.config.model_copy(update=changes)
        if "max_size" in changes:
            resized: FIFOCache = FIFOCache(maxsize=self.config.max_size)
            for key, entry in list(self._entries.items())[-self.config.max_size :]:
                resized[key] = entry
            self._entries = resized


def normalize_query(query: str) -> str:
    """Lowercase, strip punctuation and stop words, then sort the tokens so
    reworded questions land on the same key."""
    cleaned = re.sub(r"[^\w\s]", " ", query.lower())
    tokens = [
        word for word in cleaned.split() if len(word) > 2 and word not in STOP_WORDS
    ]
    return " ".join(sorted(tokens)).strip()


def generate_cache_key(
    cache_type: str, query: str, context: Optional[Dict[str, Any]] = None
) -> str:
    context_key = ""
    if context:
        relevant = {
            "season": context.get("season"),
            "state": context.get("state"),
            "crop": context.get("crop"),
        }
        context_key = json.dumps(relevant, sort_keys=True)

    full_key = f"{cache_type}:{normalize_query(query)}:{context_key}"
    digest = hashlib.sha256(full_key.encode("utf-8")).hexdigest()[:16]
    return f"{cache_type}:{digest}"


def is_cacheable(
    cache_type: str, query: str, context: Optional[Dict[str, Any]] = None
) -> bool:
    if len(query) < MIN_CACHEABLE_LENGTH or len(query) > MAX_CACHEABLE_LENGTH:
        return False

    if any(pattern.search(query) for pattern in PERSONAL_PATTERNS):
        return False

    # Image-based diagnoses are unique inputs
    if cache_type == "diagnosis":
        return False

    return True


async def with_cache(
    cache: AIResponseCache,
    cache_type: str,
    query: str,
    context: Optional[Dict[str, Any]],
    fetch: Callable[[], Awaitable[T]],
) -> Tuple[T, bool]:
    if not cache.config.enabled or not is_cacheable(cache_type, query, context):
        return await fetch(), False

    key = generate_cache_key(cache_type, query, context)
    cached = cache.get(key)
    if cached is not None:
        logger.debug(f"with_cache: cache HIT for {key}")
        return cached, True

    logger.debug(f"with_cache: cache MISS for {key}")
    data = await fetch()

    try:
        cache.set(key, data, cache_type=cache_type)
    except Exception as e:
        logger.error(f"with_cache: failed to store {key}: {e}", exc_info=True)

    return data, False
