"""
Per-identifier hourly and daily quotas for AI endpoints.

Windows are sliding logs of request timestamps kept in process memory.
A request is counted only once it succeeds: callers reserve a slot before
doing the expensive work, then either record it or release it.
"""
import math
import re
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Deque, Dict, Mapping, Optional

from loguru import logger
from pydantic import BaseModel

from agrigrow.app.config import RateLimitConfig
from agrigrow.app.core.clock import Clock, now_ms

USER_PHONE_HEADER = "x-user-phone"
MIN_PHONE_DIGITS = 10


class RateLimitResult(BaseModel):
    allowed: bool
    hourly_count: int
    daily_count: int
    hourly_limit: int
    daily_limit: int
    hourly_remaining: int
    daily_remaining: int
    hourly_reset_in: int
    daily_reset_in: int
    remaining: int
    reset_at: int
    limit_exceeded: Optional[str] = None
    error_message: Optional[str] = None

    @property
    def retry_after(self) -> int:
        if self.limit_exceeded == "hourly":
            return self.hourly_reset_in
        return self.daily_reset_in


@dataclass
class _Window:
    timestamps: Deque[int] = field(default_factory=deque)
    pending: int = 0
    updated_at: int = 0


def _plural(count: int, unit: str) -> str:
    return f"{count} {unit}" if count == 1 else f"{count} {unit}s"


class RateLimiter:
    def __init__(self, config: RateLimitConfig, clock: Clock = now_ms):
        self.config = config
        self._clock = clock
        self._windows: Dict[str, _Window] = {}
        self._last_cleanup = clock()
        logger.info(
            f"RateLimiter initialized (enabled={config.enabled}, "
            f"{config.requests_per_hour}/hour, {config.requests_per_day}/day)."
        )

    def _cleanup(self, now: int):
        if now - self._last_cleanup < self.config.cleanup_interval_ms:
            return
        self._last_cleanup = now

        stale = [
            identifier
            for identifier, window in self._windows.items()
            if window.pending == 0
            and now - window.updated_at > self.config.daily_window_ms
        ]
        for identifier in stale:
            del self._windows[identifier]
        if stale:
            logger.debug(f"RateLimiter._cleanup: dropped {len(stale)} idle identifiers.")

    def _window(self, identifier: str, now: int) -> _Window:
        window = self._windows.get(identifier)
        if window is None:
            window = _Window(updated_at=now)
            self._windows[identifier] = window

        daily_start = now - self.config.daily_window_ms
        while window.timestamps and window.timestamps[0] <= daily_start:
            window.timestamps.popleft()
        return window

    def _evaluate(self, window: _Window, now: int) -> RateLimitResult:
        cfg = self.config
        hourly_start = now - cfg.hourly_window_ms
        hourly = [ts for ts in window.timestamps if ts > hourly_start]

        # In-flight reservations count against both windows
        hourly_count = len(hourly) + window.pending
        daily_count = len(window.timestamps) + window.pending

        hourly_exceeded = hourly_count >= cfg.requests_per_hour
        daily_exceeded = daily_count >= cfg.requests_per_day

        oldest_hourly = hourly[0] if hourly else now
        oldest_daily = window.timestamps[0] if window.timestamps else now
        hourly_reset_in = max(
            0, math.ceil((oldest_hourly + cfg.hourly_window_ms - now) / 1000)
        )
        daily_reset_in = max(
            0, math.ceil((oldest_daily + cfg.daily_window_ms - now) / 1000)
        )

        limit_exceeded = None
        error_message = None
        if hourly_exceeded:
            limit_exceeded = "hourly"
            minutes = math.ceil(hourly_reset_in / 60)
            error_message = (
                f"You've reached the hourly limit of {cfg.requests_per_hour} AI requests. "
                f"Please try again in {_plural(minutes, 'minute')}."
            )
        elif daily_exceeded:
            limit_exceeded = "daily"
            hours = math.ceil(daily_reset_in / 3600)
            error_message = (
                f"You've reached the daily limit of {cfg.requests_per_day} AI requests. "
                f"Please try again in {_plural(hours, 'hour')}."
            )

        hourly_remaining = max(0, cfg.requests_per_hour - hourly_count)
        daily_remaining = max(0, cfg.requests_per_day - daily_count)
        reset_in = daily_reset_in if limit_exceeded == "daily" else hourly_reset_in

        return RateLimitResult(
            allowed=not hourly_exceeded and not daily_exceeded,
            hourly_count=hourly_count,
            daily_count=daily_count,
            hourly_limit=cfg.requests_per_hour,
            daily_limit=cfg.requests_per_day,
            hourly_remaining=hourly_remaining,
            daily_remaining=daily_remaining,
            hourly_reset_in=hourly_reset_in,
            daily_reset_in=daily_reset_in,
            remaining=min(hourly_remaining, daily_remaining),
            reset_at=now + reset_in * 1000,
            limit_exceeded=limit_exceeded,
            error_message=error_message,
        )

    def _unlimited(self, now: int) -> RateLimitResult:
        cfg = self.config
        return RateLimitResult(
            allowed=True,
            hourly_count=0,
            daily_count=0,
            hourly_limit=cfg.requests_per_hour,
            daily_limit=cfg.requests_per_day,
            hourly_remaining=cfg.requests_per_hour,
            daily_remaining=cfg.requests_per_day,
            hourly_reset_in=cfg.hourly_window_ms // 1000,
            daily_reset_in=cfg.daily_window_ms // 1000,
            remaining=min(cfg.requests_per_hour, cfg.requests_per_day),
            reset_at=now + cfg.hourly_window_ms,
        )

    def check_rate_limit(self, identifier: str) -> RateLimitResult:
        now = self._clock()
        if not self.config.enabled:
            return self._unlimited(now)

        self._cleanup(now)
        return self._evaluate(self._window(identifier, now), now)

    def reserve(self, identifier: str) -> RateLimitResult:
        """Check the quota and, when allowed, hold a slot until the request
        is recorded or released."""
        now = self._clock()
        if not self.config.enabled:
            return self._unlimited(now)

        self._cleanup(now)
        window = self._window(identifier, now)
        result = self._evaluate(window, now)
        if result.allowed:
            window.pending += 1
            window.updated_at = now
        else:
            logger.warning(
                f"RateLimiter.reserve: {result.limit_exceeded} limit exceeded for {identifier}."
            )
        return result

    def record_request(self, identifier: str) -> None:
        if not self.config.enabled:
            return

        now = self._clock()
        window = self._window(identifier, now)
        if window.pending > 0:
            window.pending -= 1
        window.timestamps.append(now)
        window.updated_at = now

    def release(self, identifier: str) -> None:
        window = self._windows.get(identifier)
        if window is not None and window.pending > 0:
            window.pending -= 1

    def get_stats(self) -> Dict[str, Any]:
        now = self._clock()
        hourly_start = now - self.config.hourly_window_ms
        daily_start = now - self.config.daily_window_ms

        active_hourly = 0
        active_daily = 0
        for window in self._windows.values():
            if any(ts > hourly_start for ts in window.timestamps):
                active_hourly += 1
            if any(ts > daily_start for ts in window.timestamps):
                active_daily += 1

        return {
            "total_entries": len(self._windows),
            "active_in_last_hour": active_hourly,
            "active_in_last_day": active_daily,
            "config": self.config.model_dump(),
        }

    def clear(self, identifier: str) -> None:
        self._windows.pop(identifier, None)

    def clear_all(self) -> None:
        self._windows.clear()


def get_identifier(headers: Mapping[str, str], client_host: Optional[str] = None) -> str:
    """Authenticated callers are keyed by phone, everyone else by network
    address; the two namespaces carry distinct prefixes."""
    user_phone = headers.get(USER_PHONE_HEADER)
    if user_phone:
        digits = re.sub(r"\D", "", user_phone)
        if len(digits) >= MIN_PHONE_DIGITS:
            return f"user:{digits}"

    forwarded_for = headers.get("x-forwarded-for")
    ip = forwarded_for.split(",")[0].strip() if forwarded_for else ""
    if not ip:
        ip = headers.get("x-real-ip") or client_host or "unknown"
    return f"ip:{ip}"


def rate_limit_headers(result: RateLimitResult) -> Dict[str, str]:
    headers = {
        "X-RateLimit-Limit-Hourly": str(result.hourly_limit),
        "X-RateLimit-Limit-Daily": str(result.daily_limit),
        "X-RateLimit-Remaining-Hourly": str(result.hourly_remaining),
        "X-RateLimit-Remaining-Daily": str(result.daily_remaining),
        "X-RateLimit-Reset-Hourly": str(result.hourly_reset_in),
        "X-RateLimit-Reset-Daily": str(result.daily_reset_in),
        "X-RateLimit-Remaining": str(result.remaining),
        "X-RateLimit-Reset": str(result.reset_at // 1000),
    }
    if not result.allowed:
        headers["Retry-After"] = str(result.retry_after)
    return headers
