"""
Cost meter

Records one CostEvent per billable operation. The event is appended to an
owned in-memory buffer and added to the realtime aggregate before record()
returns; persistence to the ledger happens in background flushes so callers
never wait on durable storage.

Delivery to the ledger is at-least-once: a failed batch is put back at the
head of the live buffer and retried on the next flush, so a write that
succeeded on the store but reported failure can leave duplicate rows.
"""

import asyncio
import logging
import time
from contextlib import asynccontextmanager
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set

from .models import TOTAL_FIELD, CostEvent, MoneyLike
from .realtime_aggregator import RealtimeAggregator

logger = logging.getLogger(__name__)

LedgerWriter = Callable[[List[CostEvent]], Awaitable[Any]]
RecordedHook = Callable[[str], Awaitable[Any]]


class CostMeter:
    """Buffered cost recorder with size-triggered and periodic ledger flushes"""

    def __init__(
        self,
        aggregator: RealtimeAggregator,
        ledger_writer: LedgerWriter,
        flush_threshold: int = 100,
        flush_interval_seconds: float = 60.0,
        retry_backoff_seconds: float = 5.0
    ):
        if flush_threshold < 1:
            raise ValueError("flush_threshold must be >= 1")

        self.aggregator = aggregator
        self.ledger_writer = ledger_writer
        self.flush_threshold = flush_threshold
        self.flush_interval_seconds = flush_interval_seconds
        self.retry_backoff_seconds = retry_backoff_seconds

        self._buffer: List[CostEvent] = []
        self._buffer_lock = asyncio.Lock()
        # Only one flush may be writing at a time
        self._flush_lock = asyncio.Lock()
        self._size_flush_pending = False
        self._retry_after = 0.0

        # Records in flight (buffered, aggregate add pending) and the rebuild gate
        self._records_cond = asyncio.Condition()
        self._records_in_flight = 0
        self._records_paused = False

        self._on_recorded: Optional[RecordedHook] = None

        self._background_tasks: Set[asyncio.Task] = set()
        self._flush_task: Optional[asyncio.Task] = None
        self._running = False

        self.stats = {
            "events_recorded": 0,
            "events_rejected": 0,
            "events_flushed": 0,
            "flush_count": 0,
            "flush_failures": 0,
            "events_requeued": 0,
            "aggregate_failures": 0,
            "background_errors": 0,
        }

    async def start(self):
        """Start the periodic flush timer"""
        if self._running:
            logger.warning("Cost meter already running")
            return

        self._running = True
        if self.flush_interval_seconds and self.flush_interval_seconds > 0:
            self._flush_task = asyncio.create_task(self._flush_loop())

        logger.info(
            f"Cost meter started (flush_threshold={self.flush_threshold}, "
            f"interval={self.flush_interval_seconds}s)"
        )

    async def stop(self):
        """Stop the timer, drain background work and flush what is left"""
        self._running = False

        if self._flush_task:
            self._flush_task.cancel()
            try:
                await self._flush_task
            except asyncio.CancelledError:
                pass
            self._flush_task = None

        await self.wait_for_background()
        await self.flush()

        if self._buffer:
            logger.error(f"Cost meter stopped with {len(self._buffer)} unflushed events")
        logger.info("Cost meter stopped")

    def on_recorded(self, callback: RecordedHook):
        """Set the post-record hook (budget threshold check), run in the background"""
        self._on_recorded = callback

    async def record(
        self,
        tenant_id: str,
        service: str,
        operation: str,
        amount: MoneyLike,
        units: Optional[MoneyLike] = None,
        metadata: Optional[Dict[str, Any]] = None
    ) -> Optional[CostEvent]:
        """
        Record a completed billable operation

        Never raises: metering must not fail the operation it measures.

        Returns:
            The recorded CostEvent, or None if the input was invalid
        """
        try:
            event = CostEvent.create(
                tenant_id=tenant_id,
                service=service,
                operation=operation,
                amount=amount,
                units=units,
                metadata=metadata
            )
        except ValueError as e:
            self.stats["events_rejected"] += 1
            logger.error(f"Rejected cost event for tenant {tenant_id} ({service}.{operation}): {e}")
            return None

        await self.record_event(event)
        return event

    async def record_event(self, event: CostEvent) -> bool:
        """Buffer a prebuilt event and update the realtime aggregate"""
        if event.provisional:
            self.stats["events_rejected"] += 1
            logger.warning(
                f"Provisional cost event {event.event_id} for tenant {event.tenant_id} "
                f"was passed to the meter and will not be recorded"
            )
            return False
        if event.service == TOTAL_FIELD:
            self.stats["events_rejected"] += 1
            logger.error(
                f"Cost event {event.event_id} for tenant {event.tenant_id} uses reserved "
                f"service name '{TOTAL_FIELD}' and will not be recorded"
            )
            return False

        await self._enter_record()
        try:
            async with self._buffer_lock:
                self._buffer.append(event)
                buffer_size = len(self._buffer)
            self.stats["events_recorded"] += 1

            # Same logical step as buffering so in-flight spend is visible to admission control
            try:
                await self.aggregator.add(event.tenant_id, event.service, event.amount, event.day)
            except Exception as e:
                self.stats["aggregate_failures"] += 1
                logger.warning(f"Realtime aggregate update failed for tenant {event.tenant_id}: {e}")
        finally:
            await self._exit_record()

        if (
            buffer_size >= self.flush_threshold
            and not self._size_flush_pending
            and time.monotonic() >= self._retry_after
        ):
            self._size_flush_pending = True
            self._spawn(self._flush_full_batches(), "size-triggered flush")

        if self._on_recorded:
            self._spawn(self._on_recorded(event.tenant_id), f"post-record hook for {event.tenant_id}")

        return True

    async def flush(self) -> int:
        """
        Write everything buffered at call time to the ledger

        Events are written in chunks of at most `flush_threshold`, one INSERT
        per chunk. Stops at the first failed chunk.

        Returns:
            Number of events persisted
        """
        flushed = 0
        async with self._flush_lock:
            remaining = len(self._buffer)
            while remaining > 0:
                async with self._buffer_lock:
                    batch = self._take_batch(min(remaining, self.flush_threshold))
                if not batch:
                    break
                if not await self._write_batch(batch):
                    break
                flushed += len(batch)
                remaining -= len(batch)

        return flushed

    @asynccontextmanager
    async def hold_flushes(self):
        """Block flushes so that ledger plus buffer is a consistent view of recorded spend"""
        async with self._flush_lock:
            yield

    @asynccontextmanager
    async def hold_records(self):
        """
        Pause new records and wait for in-flight ones

        Inside the block every buffered event has already reached the realtime
        aggregate and no aggregate add is pending, so the aggregate can be
        replaced without losing or double-counting an event.
        """
        async with self._records_cond:
            await self._records_cond.wait_for(lambda: not self._records_paused)
            self._records_paused = True
            await self._records_cond.wait_for(lambda: self._records_in_flight == 0)
        try:
            yield
        finally:
            async with self._records_cond:
                self._records_paused = False
                self._records_cond.notify_all()

    async def _enter_record(self):
        async with self._records_cond:
            await self._records_cond.wait_for(lambda: not self._records_paused)
            self._records_in_flight += 1

    async def _exit_record(self):
        async with self._records_cond:
            self._records_in_flight -= 1
            self._records_cond.notify_all()

    async def _flush_full_batches(self):
        """Size-triggered flush: write only full batches, leave the remainder buffered"""
        try:
            async with self._flush_lock:
                while True:
                    async with self._buffer_lock:
                        if len(self._buffer) < self.flush_threshold:
                            self._size_flush_pending = False
                            return
                        batch = self._take_batch(self.flush_threshold)
                    if not await self._write_batch(batch):
                        return
        finally:
            self._size_flush_pending = False

    def _take_batch(self, size: int) -> List[CostEvent]:
        """Swap the head of the buffer out; caller holds the buffer lock"""
        batch = self._buffer[:size]
        del self._buffer[:size]
        return batch

    async def _write_batch(self, batch: List[CostEvent]) -> bool:
        try:
            await self.ledger_writer(batch)

            self.stats["flush_count"] += 1
            self.stats["events_flushed"] += len(batch)
            logger.debug(f"Flushed {len(batch)} cost events to ledger")
            return True

        except Exception as e:
            # Requeue at the head of the live buffer for the next cycle
            async with self._buffer_lock:
                self._buffer[:0] = batch
            self._retry_after = time.monotonic() + self.retry_backoff_seconds

            self.stats["flush_failures"] += 1
            self.stats["events_requeued"] += len(batch)
            logger.error(f"Ledger flush of {len(batch)} events failed, requeued for retry: {e}")
            return False

    async def _flush_loop(self):
        """Periodic flush, independent of size-triggered flushes"""
        while self._running:
            try:
                await asyncio.sleep(self.flush_interval_seconds)
                if self._buffer:
                    await self.flush()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"Error in periodic cost flush: {e}")

    def _spawn(self, coro: Awaitable[Any], description: str):
        task = asyncio.create_task(coro)
        task.set_name(description)
        self._background_tasks.add(task)
        task.add_done_callback(self._on_background_done)

    def _on_background_done(self, task: asyncio.Task):
        self._background_tasks.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            self.stats["background_errors"] += 1
            logger.error(f"Background task '{task.get_name()}' failed: {error}")

    async def wait_for_background(self):
        """Wait until all fire-and-forget work scheduled so far has finished"""
        while self._background_tasks:
            await asyncio.gather(*list(self._background_tasks), return_exceptions=True)

    def buffered_events(self, tenant_id: Optional[str] = None, day: Optional[str] = None) -> List[CostEvent]:
        """Snapshot of unflushed events, optionally filtered"""
        return [
            event for event in list(self._buffer)
            if (tenant_id is None or event.tenant_id == tenant_id)
            and (day is None or event.day == day)
        ]

    @property
    def buffer_size(self) -> int:
        return len(self._buffer)

    @property
    def is_running(self) -> bool:
        return self._running

    def get_stats(self) -> Dict[str, Any]:
        return {
            **self.stats,
            "buffer_size": len(self._buffer),
            "pending_background_tasks": len(self._background_tasks),
            "running": self._running,
        }
