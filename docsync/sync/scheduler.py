"""
Periodic scheduler driving the sync engine.

Each tick runs one batch sync, forcing a full re-check once the force
interval has elapsed. Ticks never overlap: the next tick is scheduled from
the completion of the previous one, and ticks that would have fired while a
sync was still running are counted as skipped rather than queued. After a
failed tick the delay backs off exponentially up to `max_backoff_seconds`.
"""

import asyncio
import dataclasses
import inspect
import time
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Optional, Set

from .config import SchedulerConfig
from .engine import BatchResult, SyncEngine
from .logging_manager import LoggingManager
from .metadata_store import MetadataStore
from .resilience import RetryPolicy
from .state import utc_now

logger = LoggingManager.get_logger(__name__)


@dataclass
class SchedulerCallbacks:
    """Optional scheduler hooks; each may be a plain function or a coroutine function."""
    on_check_start: Optional[Callable[[], Any]] = None
    on_check_complete: Optional[Callable[[BatchResult], Any]] = None
    on_update_detected: Optional[Callable[[list], Any]] = None
    on_error: Optional[Callable[[BaseException], Any]] = None
    on_state_change: Optional[Callable[['SchedulerState'], Any]] = None


@dataclass
class SchedulerState:
    """Runtime state of the scheduler. Not persisted."""
    running: bool = False
    check_interval_seconds: float = 0.0
    force_interval_seconds: float = 0.0
    last_tick_time: Optional[datetime] = None
    last_check_time: Optional[datetime] = None
    last_update_time: Optional[datetime] = None
    last_forced_time: Optional[datetime] = None
    next_check_time: Optional[datetime] = None
    consecutive_failures: int = 0
    total_checks: int = 0
    total_updates: int = 0
    skipped_ticks: int = 0
    last_error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data = dataclasses.asdict(self)
        for key, value in data.items():
            if isinstance(value, datetime):
                data[key] = value.isoformat()
        return data


class SyncScheduler:
    """
    Runs `SyncEngine.sync_all` on a cooperative timer.

    `start` is idempotent; `stop` and `destroy` wake the pending sleep and
    wait for an in-flight tick to finish before returning.
    """

    def __init__(self, engine: SyncEngine, store: MetadataStore,
                 config: Optional[SchedulerConfig] = None,
                 callbacks: Optional[SchedulerCallbacks] = None,
                 clock: Callable[[], datetime] = utc_now):
        self.engine = engine
        self.store = store
        self.config = config or SchedulerConfig()
        self.callbacks = callbacks or SchedulerCallbacks()
        self._clock = clock
        self.state = SchedulerState(
            check_interval_seconds=self.config.check_interval_seconds,
            force_interval_seconds=self.config.force_interval_seconds,
        )
        self._task: Optional[asyncio.Task] = None
        self._callback_tasks: Set[asyncio.Task] = set()
        self._wake = asyncio.Event()
        self._reschedule = False
        self._force_baseline_seeded = False
        self._destroyed = False

    @property
    def running(self) -> bool:
        return self.state.running

    # --- Lifecycle ---

    def start(self, config: Optional[SchedulerConfig] = None,
              callbacks: Optional[SchedulerCallbacks] = None) -> bool:
        """
        Start the timer loop. The first check runs immediately.

        Returns False when the scheduler was already running.
        """
        if self._destroyed:
            raise RuntimeError("Scheduler has been destroyed")
        if self._task is not None and not self._task.done():
            logger.debug("Scheduler already running")
            return False

        if config is not None:
            self._apply_config(config)
        if callbacks is not None:
            self.callbacks = callbacks

        self.state.running = True
        self._wake.clear()
        self._task = asyncio.get_running_loop().create_task(self._run_loop())
        logger.info(f"Scheduler started (check every {self.config.check_interval_seconds}s, "
                    f"force every {self.config.force_interval_seconds}s)")
        self._notify_state_change()
        return True

    async def stop(self) -> None:
        """Cancel the pending timer and drain the in-flight tick."""
        task = self._task
        if not self.state.running and task is None:
            return
        self.state.running = False
        self.state.next_check_time = None
        self._wake.set()
        if task is not None and task is not asyncio.current_task():
            await task
        self._task = None
        logger.info("Scheduler stopped")
        self._notify_state_change()

    async def destroy(self) -> None:
        """Stop and release callbacks. The scheduler cannot be restarted afterwards."""
        await self.stop()
        if self._callback_tasks:
            await asyncio.gather(*list(self._callback_tasks), return_exceptions=True)
        self.callbacks = SchedulerCallbacks()
        self._destroyed = True

    # --- Configuration ---

    def _apply_config(self, config: SchedulerConfig) -> None:
        self.config = config
        self.state.check_interval_seconds = config.check_interval_seconds
        self.state.force_interval_seconds = config.force_interval_seconds

    def update_config(self, config: SchedulerConfig) -> None:
        """Apply a new configuration; a running scheduler re-plans its pending sleep."""
        self._apply_config(config)
        if self.state.running:
            self._reschedule = True
            self._wake.set()
        logger.info("Scheduler configuration updated",
                    extra={'details': config.model_dump(mode='json')})

    def update_callbacks(self, callbacks: SchedulerCallbacks) -> None:
        self.callbacks = callbacks

    # --- Queries ---

    def get_state(self) -> SchedulerState:
        return dataclasses.replace(self.state)

    def time_until_next_check(self) -> Optional[float]:
        if not self.state.running or self.state.next_check_time is None:
            return None
        return max(0.0, (self.state.next_check_time - self._clock()).total_seconds())

    # --- Checks ---

    async def check_now(self, force: bool = False) -> Optional[BatchResult]:
        """
        Run one check outside the timer. Shares the engine's per-source
        in-flight guard with scheduled ticks. Returns None when the check failed.
        """
        return await self._tick(force=force)

    def _should_force(self, now: datetime) -> bool:
        if not self._force_baseline_seeded:
            # a restart should not force a re-check when a recent check exists
            if self.state.last_forced_time is None:
                self.state.last_forced_time = self.store.last_check
            self._force_baseline_seeded = True
        baseline = self.state.last_forced_time
        if baseline is None:
            return True
        return (now - baseline).total_seconds() >= self.config.force_interval_seconds

    async def _tick(self, force: Optional[bool] = None) -> Optional[BatchResult]:
        now = self._clock()
        self.state.last_tick_time = now
        if force is None:
            force = self._should_force(now)

        await self._invoke('on_check_start')
        try:
            result = await self.engine.sync_all(force=force)
        except Exception as e:
            self.state.consecutive_failures += 1
            self.state.last_error = str(e) or type(e).__name__
            logger.error(f"Scheduled check failed ({self.state.consecutive_failures} consecutive): {e}",
                         extra={'details': {'exception': type(e).__name__}})
            await self._invoke('on_error', e)
            limit = self.config.max_consecutive_failures
            if limit is not None and self.state.consecutive_failures >= limit:
                logger.error(f"Stopping scheduler after {limit} consecutive failures")
                self.state.running = False
                self._wake.set()
            self._notify_state_change()
            return None

        self.state.consecutive_failures = 0
        self.state.last_error = None
        self.state.total_checks += 1
        self.state.last_check_time = self._clock()
        if force:
            self.state.last_forced_time = now
        if result.has_changes:
            self.state.last_update_time = self.state.last_check_time
            self.state.total_updates += len(result.records)
            await self._invoke('on_update_detected', list(result.records))
        await self._invoke('on_check_complete', result)
        self._notify_state_change()
        return result

    # --- Timer loop ---

    def _next_delay(self) -> float:
        failures = self.state.consecutive_failures
        if failures == 0:
            return self.config.check_interval_seconds
        policy = RetryPolicy(
            base_delay_seconds=self.config.check_interval_seconds,
            max_delay_seconds=self.config.max_backoff_seconds,
            multiplier=self.config.failure_backoff_multiplier,
            jitter=False,
        )
        return policy.compute_backoff(failures)

    async def _run_loop(self) -> None:
        while self.state.running:
            started = time.monotonic()
            await self._tick()
            if not self.state.running:
                break
            missed = int((time.monotonic() - started) // self.config.check_interval_seconds)
            if missed:
                self.state.skipped_ticks += missed
                logger.warning(f"Check took longer than the interval, skipped {missed} tick(s)")
            await self._sleep_until_next_check()

    async def _sleep_until_next_check(self) -> None:
        while self.state.running:
            delay = self._next_delay()
            self.state.next_check_time = self._clock() + timedelta(seconds=delay)
            self._reschedule = False
            self._wake.clear()
            try:
                await asyncio.wait_for(self._wake.wait(), timeout=delay)
            except asyncio.TimeoutError:
                return
            if not self._reschedule:
                return

    # --- Callbacks ---

    async def _invoke(self, name: str, *args: Any) -> None:
        callback = getattr(self.callbacks, name, None)
        if callback is None:
            return
        try:
            result = callback(*args)
            if inspect.isawaitable(result):
                await result
        except Exception as e:
            logger.warning(f"Scheduler callback {name} failed: {e}",
                           extra={'details': {'callback': name, 'exception': type(e).__name__}})

    def _notify_state_change(self) -> None:
        callback = self.callbacks.on_state_change
        if callback is None:
            return
        try:
            result = callback(self.get_state())
        except Exception as e:
            logger.warning(f"Scheduler callback on_state_change failed: {e}")
            return
        if inspect.isawaitable(result):
            task = asyncio.ensure_future(self._await_callback('on_state_change', result))
            self._callback_tasks.add(task)
            task.add_done_callback(self._callback_tasks.discard)

    async def _await_callback(self, name: str, awaitable) -> None:
        try:
            await awaitable
        except Exception as e:
            logger.warning(f"Scheduler callback {name} failed: {e}")
