"""
Fire-and-forget usage analytics for the AI endpoints.

Request handlers enqueue events without awaiting anything; a background
worker persists them. Persistence failures are logged and dropped so that
analytics can never fail or slow down the request that produced them.
"""
import asyncio
import math
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Iterable, List, Literal, Optional

from loguru import logger
from pydantic import BaseModel, Field
from starlette.concurrency import run_in_threadpool

from agrigrow.app.config import AnalyticsConfig
from agrigrow.app.core.clock import Clock, now_ms
from agrigrow.app.db import ai_analytics

OperationType = Literal["chat", "diagnosis", "planning"]


class AnalyticsEvent(BaseModel):
    operation_type: OperationType
    success: bool
    response_time_ms: int
    user_phone: Optional[str] = None
    cached: bool = False
    error_code: Optional[str] = None
    error_message: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)


class AggregatedStats(BaseModel):
    total_requests: int = 0
    success_count: int = 0
    error_count: int = 0
    cached_count: int = 0
    avg_response_time: int = 0
    min_response_time: int = 0
    max_response_time: int = 0
    p95_response_time: int = 0
    error_rate: float = 0.0
    cache_hit_rate: float = 0.0


def estimate_tokens(text: str) -> int:
    # Roughly four characters per token
    return math.ceil(len(text) / 4)


def percentile_95(samples: List[int]) -> int:
    if not samples:
        return 0
    ordered = sorted(samples)
    index = math.floor(len(ordered) * 0.95)
    return ordered[index] if index < len(ordered) else ordered[-1]


def aggregate_stats(samples: Iterable[Dict[str, Any]]) -> AggregatedStats:
    rows = list(samples)
    if not rows:
        return AggregatedStats()

    times = [int(row["response_time_ms"]) for row in rows]
    total = len(rows)
    success_count = sum(1 for row in rows if row["success"])
    error_count = total - success_count
    cached_count = sum(1 for row in rows if row.get("cached"))

    return AggregatedStats(
        total_requests=total,
        success_count=success_count,
        error_count=error_count,
        cached_count=cached_count,
        avg_response_time=round(sum(times) / total),
        min_response_time=min(times),
        max_response_time=max(times),
        p95_response_time=percentile_95(times),
        error_rate=(error_count / total) * 100,
        cache_hit_rate=(cached_count / total) * 100,
    )


class AnalyticsRecorder:
    def __init__(
        self,
        config: AnalyticsConfig,
        sink: Optional[Callable[[Dict[str, Any]], None]] = None,
        purge: Optional[Callable[[int], int]] = None,
    ):
        self.config = config
        self._sink = sink or ai_analytics.insert_analytics_event_db
        self._purge = purge or ai_analytics.purge_expired_events_db
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=config.queue_size)
        self._worker: Optional[asyncio.Task] = None
        self._purger: Optional[asyncio.Task] = None
        self.dropped = 0

    # --- recording ---

    def record(self, event: AnalyticsEvent) -> None:
        if not self.config.enabled:
            return
        try:
            self._queue.put_nowait(event)
        except asyncio.QueueFull:
            self.dropped += 1
            logger.warning(
                f"AnalyticsRecorder.record: queue full, dropping {event.operation_type} event."
            )

    def record_success(
        self,
        operation_type: OperationType,
        response_time_ms: int,
        user_phone: Optional[str] = None,
        cached: bool = False,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> None:
        self.record(
            AnalyticsEvent(
                operation_type=operation_type,
                success=True,
                response_time_ms=response_time_ms,
                user_phone=user_phone,
                cached=cached,
                metadata=metadata or {},
            )
        )

    def record_error(
        self,
        operation_type: OperationType,
        response_time_ms: int,
        error_code: str,
        error_message: Optional[str] = None,
        user_phone: Optional[str] = None,
    ) -> None:
        self.record(
            AnalyticsEvent(
                operation_type=operation_type,
                success=False,
                response_time_ms=response_time_ms,
                error_code=error_code,
                error_message=error_message,
                user_phone=user_phone,
            )
        )

    def pending(self) -> int:
        return self._queue.qsize()

    # --- background worker ---

    async def _persist(self, event: AnalyticsEvent):
        try:
            await run_in_threadpool(self._sink, event.model_dump())
        except Exception as e:
            logger.error(
                f"AnalyticsRecorder._persist: failed to record {event.operation_type} event: {e}",
                exc_info=True,
            )

    async def _run_worker(self):
        while True:
            event = await self._queue.get()
            try:
                await self._persist(event)
            finally:
                self._queue.task_done()

    async def _run_purger(self):
        while True:
            await asyncio.sleep(self.config.purge_interval_seconds)
            try:
                await run_in_threadpool(self._purge, self.config.retention_days)
            except Exception as e:
                logger.error(f"AnalyticsRecorder._run_purger: purge failed: {e}", exc_info=True)

    def start(self):
        if self._worker is None:
            self._worker = asyncio.create_task(self._run_worker())
            self._purger = asyncio.create_task(self._run_purger())
            logger.info("AnalyticsRecorder background worker started.")

    async def drain(self):
        """Persist everything queued so far."""
        if self._worker is not None:
            await self._queue.join()
            return
        while not self._queue.empty():
            event = self._queue.get_nowait()
            await self._persist(event)
            self._queue.task_done()

    async def stop(self):
        await self.drain()
        for task in (self._worker, self._purger):
            if task is not None:
                task.cancel()
        self._worker = None
        self._purger = None
        logger.info("AnalyticsRecorder stopped.")

    # --- reports ---

    def _since(self, delta: timedelta) -> datetime:
        return datetime.now(timezone.utc) - delta

    async def get_aggregated_stats(
        self,
        operation_type: Optional[OperationType] = None,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> AggregatedStats:
        samples = await run_in_threadpool(
            ai_analytics.fetch_event_samples_db,
            self.config.retention_days,
            operation_type,
            start,
            end,
        )
        return aggregate_stats(samples)

    async def get_daily_stats(
        self, days: int = 7, operation_type: Optional[OperationType] = None
    ) -> List[Dict[str, Any]]:
        return await run_in_threadpool(
            ai_analytics.daily_stats_db, self.config.retention_days, days, operation_type
        )

    async def get_top_errors(
        self, limit: int = 10, start: Optional[datetime] = None
    ) -> List[Dict[str, Any]]:
        return await run_in_threadpool(
            ai_analytics.top_errors_db, self.config.retention_days, limit, start
        )

    async def get_user_usage(
        self, limit: int = 20, start: Optional[datetime] = None
    ) -> List[Dict[str, Any]]:
        return await run_in_threadpool(
            ai_analytics.user_usage_db, self.config.retention_days, limit, start
        )

    async def get_realtime_stats(self) -> Dict[str, AggregatedStats]:
        last_5_minutes, last_hour = await asyncio.gather(
            self.get_aggregated_stats(start=self._since(timedelta(minutes=5))),
            self.get_aggregated_stats(start=self._since(timedelta(hours=1))),
        )
        return {"last_5_minutes": last_5_minutes, "last_hour": last_hour}


class PerformanceTracker:
    def __init__(self, recorder: AnalyticsRecorder, clock: Clock = now_ms):
        self._recorder = recorder
        self._clock = clock
        self._started = clock()

    def elapsed_ms(self) -> int:
        return self._clock() - self._started

    def record_success(
        self,
        operation_type: OperationType,
        user_phone: Optional[str] = None,
        cached: bool = False,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> int:
        elapsed = self.elapsed_ms()
        self._recorder.record_success(
            operation_type, elapsed, user_phone=user_phone, cached=cached, metadata=metadata
        )
        return elapsed

    def record_error(
        self,
        operation_type: OperationType,
        error_code: str,
        error_message: Optional[str] = None,
        user_phone: Optional[str] = None,
    ) -> int:
        elapsed = self.elapsed_ms()
        self._recorder.record_error(
            operation_type, elapsed, error_code, error_message=error_message, user_phone=user_phone
        )
        return elapsed
