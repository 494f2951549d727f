"""
Settlement Engine - Ledger Recorder.

============================================================
PURPOSE
============================================================
Appends committed outcomes to the external ledger.

RESPONSIBILITIES:
- Submit an entry and wait for confirmation (time-bounded)
- Retry transient failures with exponential backoff
- Persist a pending_ledger_write marker when retries run out
- Mirror confirmed writes locally, unique on (subject, outcome)

A failed write is never dropped: it is either confirmed,
or it leaves a marker for reconciliation.

============================================================
"""

import asyncio
import logging
from datetime import datetime
from typing import Optional, Callable, Tuple

from sqlalchemy.exc import SQLAlchemyError

from .types import (
    LedgerEntry,
    LedgerReceipt,
    LedgerWriteDeferred,
    CollaboratorError,
)
from .config import LedgerConfig
from .database import Database
from .repository import SettlementRepository
from .adapters.base import LedgerClient
from .alerting import TelegramAlerter, create_ledger_deferred_alert


logger = logging.getLogger(__name__)


class LedgerRecorder:
    """
    Writes outcome entries to the ledger.

    Called only after the database transaction that produced
    the outcome has committed.
    """

    def __init__(
        self,
        client: LedgerClient,
        database: Database,
        config: Optional[LedgerConfig] = None,
        clock: Optional[Callable[[], datetime]] = None,
        alerter: Optional[TelegramAlerter] = None,
    ):
        """
        Initialize recorder.

        Args:
            client: Ledger client
            database: Database for the local mirror and markers
            config: Retry configuration
            clock: Time source
            alerter: Optional operational alerter
        """
        self._client = client
        self._database = database
        self._config = config or LedgerConfig()
        self._clock = clock or datetime.utcnow
        self._alerter = alerter

        self._stats = {
            "recorded": 0,
            "duplicates": 0,
            "deferred": 0,
            "retries": 0,
        }

    @property
    def client(self) -> LedgerClient:
        return self._client

    # --------------------------------------------------------
    # RECORD
    # --------------------------------------------------------

    async def record(
        self,
        entry: LedgerEntry,
        max_retries: Optional[int] = None,
    ) -> LedgerReceipt:
        """
        Record one outcome.

        Args:
            entry: Outcome entry
            max_retries: Override configured retries

        Returns:
            LedgerReceipt (recorded, duplicate or deferred)
        """
        existing = await self._find_existing(entry)
        if existing is not None:
            self._stats["duplicates"] += 1
            logger.info(
                f"Ledger record for {entry.subject_id}:{entry.outcome.value} already exists"
            )
            return LedgerReceipt(
                subject_id=entry.subject_id,
                outcome=entry.outcome,
                transaction_handle=existing,
                recorded=True,
                duplicate=True,
            )

        try:
            handle, attempts = await self._submit_with_retry(entry, max_retries)
        except LedgerWriteDeferred as e:
            attempts = e.details.get("attempts", 0)
            await self._defer(entry, attempts, e.message)
            return LedgerReceipt(
                subject_id=entry.subject_id,
                outcome=entry.outcome,
                deferred=True,
                attempts=attempts,
                error=e.message,
            )

        duplicate = not await self._mirror(entry, handle)
        if duplicate:
            self._stats["duplicates"] += 1
        else:
            self._stats["recorded"] += 1
        logger.info(
            f"Ledger record {entry.subject_type.value} {entry.subject_id} "
            f"-> {entry.outcome.value} ({handle}, attempts={attempts})"
        )
        return LedgerReceipt(
            subject_id=entry.subject_id,
            outcome=entry.outcome,
            transaction_handle=handle,
            recorded=True,
            duplicate=duplicate,
            attempts=attempts,
        )

    async def retry_pending(self, limit: int = 100) -> Tuple[int, int]:
        """
        Retry queued writes once each.

        Returns:
            Tuple of (recorded, still_pending)
        """
        async with self._database.transaction() as session:
            entries = await SettlementRepository(session).list_pending_ledger_writes(limit)

        recorded = 0
        pending = 0
        for entry in entries:
            receipt = await self.record(entry, max_retries=0)
            if receipt.recorded:
                recorded += 1
            else:
                pending += 1

        if entries:
            logger.info(f"Pending ledger writes retried: {recorded} recorded, {pending} still pending")
        return recorded, pending

    def get_stats(self) -> dict:
        return dict(self._stats)

    # --------------------------------------------------------
    # INTERNAL
    # --------------------------------------------------------

    async def _submit_with_retry(
        self,
        entry: LedgerEntry,
        max_retries: Optional[int],
    ) -> Tuple[str, int]:
        retries = self._config.max_retries if max_retries is None else max_retries
        delay = self._config.initial_delay_seconds
        last_error = "unknown"

        for attempt in range(retries + 1):
            try:
                handle = await asyncio.wait_for(
                    self._client.submit(entry),
                    timeout=self._config.confirmation_timeout_seconds,
                )
                return handle, attempt + 1

            except CollaboratorError as e:
                last_error = f"{e.code}: {e}"
                if not e.is_retryable:
                    logger.error(
                        f"Ledger write {entry.idempotency_key} failed permanently: {last_error}"
                    )
                    raise LedgerWriteDeferred(last_error, {"attempts": attempt + 1})

            except asyncio.TimeoutError:
                last_error = (
                    f"confirmation timed out after {self._config.confirmation_timeout_seconds}s"
                )

            if attempt < retries:
                self._stats["retries"] += 1
                logger.warning(
                    f"Ledger write {entry.idempotency_key} attempt {attempt + 1} failed "
                    f"({last_error}), retrying in {delay:.2f}s"
                )
                await asyncio.sleep(delay)
                delay = min(
                    delay * self._config.backoff_multiplier,
                    self._config.max_delay_seconds,
                )

        raise LedgerWriteDeferred(
            f"Ledger write {entry.idempotency_key} failed after {retries + 1} attempts: {last_error}",
            {"attempts": retries + 1},
        )

    async def _find_existing(self, entry: LedgerEntry) -> Optional[str]:
        async with self._database.transaction() as session:
            record = await SettlementRepository(session).get_ledger_record(
                entry.subject_id, entry.outcome
            )
            if record is None:
                return None
            return record.transaction_handle or ""

    async def _mirror(self, entry: LedgerEntry, handle: str) -> bool:
        now = self._clock()
        async with self._database.transaction() as session:
            repo = SettlementRepository(session)
            created = await repo.save_ledger_record(entry, handle, now)
            await repo.resolve_pending_ledger_write(entry.subject_id, entry.outcome, now)
        return created

    async def _defer(self, entry: LedgerEntry, attempts: int, error: str) -> None:
        self._stats["deferred"] += 1
        logger.warning(
            f"Ledger write deferred for {entry.subject_type.value} {entry.subject_id} "
            f"-> {entry.outcome.value}: {error}"
        )
        try:
            async with self._database.transaction() as session:
                await SettlementRepository(session).upsert_pending_ledger_write(
                    entry, attempts, error, self._clock()
                )
        except SQLAlchemyError as e:
            # Reconciliation still finds it as a terminal subject without a record
            logger.critical(
                f"Could not persist pending ledger write for {entry.idempotency_key}: {e}"
            )

        if self._alerter:
            await self._alerter.send_alert(
                create_ledger_deferred_alert(entry.subject_id, entry.outcome.value, error)
            )
