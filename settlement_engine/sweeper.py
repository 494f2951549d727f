"""
Settlement Engine - Expiration Sweeper.

============================================================
PURPOSE
============================================================
Periodically closes swaps whose deadline has passed.

EACH TICK:
1. Query open swaps with deadline <= now
2. Expire each through the coordinator (same commit protocol
   as user actions, so it cannot clobber an acceptance)
3. Isolate failures per swap; a failed swap is retried on the
   next tick
4. Log and persist a summary

SWEEPER STATES:

    IDLE ──► RUNNING ──► IDLE

A tick that comes due while another is RUNNING is skipped.

============================================================
"""

import asyncio
import logging
import uuid
from datetime import datetime
from typing import Optional, Callable

from sqlalchemy.exc import SQLAlchemyError

from .types import (
    SweeperState,
    SweepResult,
    SweeperStatus,
    SettlementError,
    InvalidStateError,
    NotFoundError,
)
from .config import SweeperConfig
from .coordinator import SettlementCoordinator
from .repository import SettlementRepository
from .alerting import TelegramAlerter, create_sweep_failure_alert, create_sweep_skipped_alert


logger = logging.getLogger(__name__)


class ExpirationSweeper:
    """
    Background expiration of overdue swaps.

    Runs as a single periodic task and never overlaps itself.
    """

    def __init__(
        self,
        coordinator: SettlementCoordinator,
        config: Optional[SweeperConfig] = None,
        clock: Optional[Callable[[], datetime]] = None,
        alerter: Optional[TelegramAlerter] = None,
    ):
        """
        Initialize sweeper.

        Args:
            coordinator: Settlement coordinator
            config: Sweeper configuration
            clock: Time source (UTC); defaults to the coordinator's
            alerter: Operational alerter
        """
        self._coordinator = coordinator
        self._config = config or SweeperConfig()
        self._clock = clock or coordinator.now
        self._alerter = alerter

        self._state = SweeperState.IDLE
        self._running = False
        self._loop_task: Optional[asyncio.Task] = None
        self._tick_task: Optional[asyncio.Task] = None

        self._last_result: Optional[SweepResult] = None
        self._consecutive_skips = 0
        self._stats = {
            "total_runs": 0,
            "items_processed": 0,
            "items_expired": 0,
            "items_failed": 0,
            "skipped_ticks": 0,
        }

    @property
    def state(self) -> SweeperState:
        return self._state

    @property
    def is_running(self) -> bool:
        """Whether the background loop is active."""
        return self._running

    @property
    def last_result(self) -> Optional[SweepResult]:
        return self._last_result

    # --------------------------------------------------------
    # LIFECYCLE
    # --------------------------------------------------------

    async def start(self) -> None:
        """Start the periodic loop."""
        if self._running:
            return
        self._running = True
        self._loop_task = asyncio.create_task(self._sweep_loop())
        logger.info(
            f"Expiration sweeper started (interval={self._config.interval_seconds}s, "
            f"label={self._config.expired_status.value})"
        )

    async def stop(self) -> None:
        """Stop the loop and wait for an in-flight tick."""
        if not self._running:
            return
        self._running = False

        if self._loop_task:
            self._loop_task.cancel()
            try:
                await self._loop_task
            except asyncio.CancelledError:
                pass
            self._loop_task = None

        if self._tick_task and not self._tick_task.done():
            await asyncio.gather(self._tick_task, return_exceptions=True)
        self._tick_task = None
        logger.info("Expiration sweeper stopped")

    async def _sweep_loop(self) -> None:
        interval = self._config.interval_seconds

        while self._running:
            try:
                await asyncio.sleep(interval)
                if not self._running:
                    break

                if self._state == SweeperState.RUNNING:
                    await self._record_skipped_tick()
                    continue

                self._tick_task = asyncio.create_task(self.tick())
                self._tick_task.add_done_callback(self._on_tick_done)

            except asyncio.CancelledError:
                break

    # --------------------------------------------------------
    # TICK
    # --------------------------------------------------------

    async def tick(self) -> SweepResult:
        """
        Run one sweep.

        Returns:
            SweepResult (tick_skipped=True if a sweep was running)
        """
        now = self._clock()
        run_id = f"sweep-{uuid.uuid4().hex[:12]}"

        if self._state == SweeperState.RUNNING:
            await self._record_skipped_tick()
            return SweepResult(run_id=run_id, started_at=now, completed_at=now, tick_skipped=True)

        self._state = SweeperState.RUNNING
        self._consecutive_skips = 0
        result = SweepResult(run_id=run_id, started_at=now)
        try:
            await self._sweep(result, now)
        finally:
            result.completed_at = self._clock()
            self._state = SweeperState.IDLE
            self._finish(result)

        await self._persist(result)
        if result.failures and self._alerter:
            await self._alerter.send_alert(create_sweep_failure_alert(run_id, result.failures))
        return result

    async def _sweep(self, result: SweepResult, now: datetime) -> None:
        try:
            async with self._coordinator.database.transaction() as session:
                swap_ids = await SettlementRepository(session).list_due_swap_ids(
                    now, self._config.batch_limit
                )
        except SQLAlchemyError as e:
            logger.error(f"Sweep {result.run_id}: could not query due swaps: {e}")
            result.failures["*"] = f"query failed: {type(e).__name__}"
            return

        result.candidates = len(swap_ids)

        for swap_id in swap_ids:
            try:
                await asyncio.wait_for(
                    self._coordinator.expire(swap_id, now=now),
                    timeout=self._config.item_timeout_seconds,
                )
                result.expired += 1

            except (InvalidStateError, NotFoundError) as e:
                # Settled concurrently, or not due per the current row
                result.skipped += 1
                logger.info(f"Sweep {result.run_id}: swap {swap_id} skipped: {e.message}")

            except asyncio.TimeoutError:
                result.failed += 1
                result.failures[swap_id] = "timeout"
                logger.error(
                    f"Sweep {result.run_id}: swap {swap_id} exceeded "
                    f"{self._config.item_timeout_seconds}s"
                )

            except SettlementError as e:
                result.failed += 1
                result.failures[swap_id] = f"{e.code}: {e.message}"
                logger.error(f"Sweep {result.run_id}: swap {swap_id} failed: {e.message}")

            except Exception as e:
                result.failed += 1
                result.failures[swap_id] = f"{type(e).__name__}: {e}"
                logger.exception(f"Sweep {result.run_id}: swap {swap_id} failed unexpectedly")

    def _finish(self, result: SweepResult) -> None:
        self._last_result = result
        self._stats["total_runs"] += 1
        self._stats["items_processed"] += result.processed
        self._stats["items_expired"] += result.expired
        self._stats["items_failed"] += result.failed

        duration = (result.completed_at - result.started_at).total_seconds()
        log = logger.warning if result.failed else logger.info
        log(
            f"Sweep {result.run_id} complete: candidates={result.candidates} "
            f"expired={result.expired} skipped={result.skipped} failed={result.failed} "
            f"duration={duration:.3f}s"
        )

    async def _persist(self, result: SweepResult) -> None:
        if not self._config.persist_runs:
            return
        try:
            async with self._coordinator.database.transaction() as session:
                await SettlementRepository(session).save_sweep_run(result)
        except SQLAlchemyError as e:
            logger.error(f"Could not persist sweep run {result.run_id}: {e}")

    async def _record_skipped_tick(self) -> None:
        self._stats["skipped_ticks"] += 1
        self._consecutive_skips += 1
        logger.warning("Previous sweep still running, skipping tick")
        if self._alerter and self._consecutive_skips == self._config.skipped_ticks_alert_threshold:
            await self._alerter.send_alert(
                create_sweep_skipped_alert(self._consecutive_skips, self._config.interval_seconds)
            )

    @staticmethod
    def _on_tick_done(task: asyncio.Task) -> None:
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error(f"Background sweep tick failed: {error!r}", exc_info=error)

    # --------------------------------------------------------
    # STATUS
    # --------------------------------------------------------

    def status(self) -> SweeperStatus:
        """Health snapshot for monitoring."""
        last = self._last_result
        return SweeperStatus(
            state=self._state,
            last_run_at=last.started_at if last else None,
            last_run_id=last.run_id if last else None,
            items_processed=self._stats["items_processed"],
            items_failed=self._stats["items_failed"],
            total_runs=self._stats["total_runs"],
            skipped_ticks=self._stats["skipped_ticks"],
            interval_seconds=self._config.interval_seconds,
        )

    def get_stats(self) -> dict:
        return dict(self._stats)
