"""
Settlement Engine - Reconciliation.

============================================================
PURPOSE
============================================================
Reconciles the relational store with the ledger and escrow.

RESPONSIBILITIES:
- Retry pending_ledger_write markers
- Detect terminal proposals with no ledger record or marker
- Retry refunds of reverted holdings
- Detect escrow/proposal status disagreements
- Detect transfers whose settlement never committed
- Detect pending proposals left on closed swaps

CRITICAL INVARIANT:
    "The relational store is authoritative for current status;
     the ledger is authoritative for attestation."

Reconciliation never changes swap or proposal status.

============================================================
"""

import asyncio
import logging
import uuid
from datetime import datetime
from typing import Optional, List, Dict, Callable
from dataclasses import dataclass, field
from enum import Enum

from sqlalchemy.exc import SQLAlchemyError

from .types import (
    ProposalStatus,
    EscrowStatus,
    SubjectType,
    LedgerOutcome,
    LedgerEntry,
    CollaboratorError,
)
from .config import ReconciliationConfig
from .database import Database
from .repository import SettlementRepository
from .ledger_recorder import LedgerRecorder
from .escrow_executor import EscrowTransferExecutor
from .alerting import TelegramAlerter, create_reconciliation_alert


logger = logging.getLogger(__name__)


# ============================================================
# RECONCILIATION TYPES
# ============================================================

class MismatchType(Enum):
    """Types of reconciliation mismatches."""

    PENDING_LEDGER_WRITE = "PENDING_LEDGER_WRITE"
    """Ledger write queued after exhausting retries."""

    MISSING_LEDGER_RECORD = "MISSING_LEDGER_RECORD"
    """Terminal proposal with neither record nor marker."""

    REFUND_MISSING = "REFUND_MISSING"
    """Reverted holding that was never refunded."""

    RELEASED_WITHOUT_ACCEPTANCE = "RELEASED_WITHOUT_ACCEPTANCE"
    """Holding released but proposal not accepted."""

    ACCEPTED_WITHOUT_RELEASE = "ACCEPTED_WITHOUT_RELEASE"
    """Cash proposal accepted but holding not released."""

    UNCOMMITTED_TRANSFER = "UNCOMMITTED_TRANSFER"
    """Transfer confirmed but the settlement rolled back; holding still held."""

    ESCROW_STATE_MISMATCH = "ESCROW_STATE_MISMATCH"
    """Holding held on a terminal proposal, or settled on a pending one."""

    ORPHANED_PROPOSAL = "ORPHANED_PROPOSAL"
    """Pending proposal on a terminal swap."""


class MismatchSeverity(Enum):
    """Severity of mismatch."""

    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


@dataclass
class ReconciliationMismatch:
    """A detected mismatch."""

    mismatch_type: MismatchType
    severity: MismatchSeverity
    subject_id: str
    expected_value: Optional[str] = None
    actual_value: Optional[str] = None
    message: str = ""
    auto_resolved: bool = False
    resolution: Optional[str] = None
    detected_at: datetime = field(default_factory=datetime.utcnow)


@dataclass
class ReconciliationResult:
    """Result of a reconciliation run."""

    run_id: str
    started_at: datetime
    completed_at: datetime = field(default_factory=datetime.utcnow)
    items_checked: int = 0
    mismatches: List[ReconciliationMismatch] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return len(self.errors) == 0

    @property
    def has_critical(self) -> bool:
        return any(m.severity == MismatchSeverity.CRITICAL for m in self.mismatches)

    @property
    def repaired_count(self) -> int:
        return sum(1 for m in self.mismatches if m.auto_resolved)

    @property
    def unresolved_count(self) -> int:
        return sum(1 for m in self.mismatches if not m.auto_resolved)

    def summary(self) -> Dict[str, int]:
        counts: Dict[str, int] = {}
        for m in self.mismatches:
            counts[m.mismatch_type.value] = counts.get(m.mismatch_type.value, 0) + 1
        return counts


# ============================================================
# RECONCILIATION ENGINE
# ============================================================

class ReconciliationEngine:
    """
    Periodic consistency scan with safe repairs.

    SAFETY:
    - Only ledger writes and refunds are repaired automatically
    - Escrow/status disagreements are alerted, never rewritten
    """

    def __init__(
        self,
        database: Database,
        ledger_recorder: LedgerRecorder,
        escrow_executor: EscrowTransferExecutor,
        config: Optional[ReconciliationConfig] = None,
        alerter: Optional[TelegramAlerter] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self._database = database
        self._ledger = ledger_recorder
        self._escrow = escrow_executor
        self._config = config or ReconciliationConfig()
        self._alerter = alerter
        self._clock = clock or datetime.utcnow

        self._running = False
        self._task: Optional[asyncio.Task] = None
        self._last_result: Optional[ReconciliationResult] = None

    @property
    def last_result(self) -> Optional[ReconciliationResult]:
        return self._last_result

    # --------------------------------------------------------
    # LIFECYCLE
    # --------------------------------------------------------

    async def start(self) -> None:
        if self._running:
            return
        self._running = True
        self._task = asyncio.create_task(self._reconciliation_loop())
        logger.info(f"Reconciliation started (interval={self._config.interval_seconds}s)")

    async def stop(self) -> None:
        if not self._running:
            return
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

    async def _reconciliation_loop(self) -> None:
        while self._running:
            try:
                await asyncio.sleep(self._config.interval_seconds)
                if not self._running:
                    break
                await self.run()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error(f"Reconciliation error: {e}")

    # --------------------------------------------------------
    # RUN
    # --------------------------------------------------------

    async def run(self) -> ReconciliationResult:
        """Run one full reconciliation pass."""
        result = ReconciliationResult(
            run_id=f"recon-{uuid.uuid4().hex[:12]}",
            started_at=self._clock(),
        )
        limit = self._config.max_items_per_run

        checks = [
            self._check_pending_ledger_writes,
            self._check_missing_ledger_records,
            self._check_refunds,
            self._check_uncommitted_transfers,
            self._check_escrow,
            self._check_orphaned_proposals,
        ]
        for check in checks:
            try:
                await check(result, limit)
            except SQLAlchemyError as e:
                result.errors.append(f"{check.__name__}: {type(e).__name__}")
                logger.error(f"Reconciliation check {check.__name__} failed: {e}")

        result.completed_at = self._clock()
        self._last_result = result

        if result.mismatches:
            logger.warning(
                f"Reconciliation {result.run_id}: {len(result.mismatches)} mismatch(es), "
                f"{result.repaired_count} repaired, {result.unresolved_count} unresolved"
            )
        else:
            logger.info(f"Reconciliation {result.run_id}: {result.items_checked} item(s), no mismatches")

        await self._persist(result)

        if result.unresolved_count and self._alerter:
            critical = sum(1 for m in result.mismatches if m.severity == MismatchSeverity.CRITICAL)
            await self._alerter.send_alert(
                create_reconciliation_alert(result.unresolved_count, critical, result.summary())
            )
        return result

    # --------------------------------------------------------
    # CHECKS
    # --------------------------------------------------------

    async def _check_pending_ledger_writes(self, result: ReconciliationResult, limit: int) -> None:
        async with self._database.transaction() as session:
            entries = await SettlementRepository(session).list_pending_ledger_writes(limit)
        result.items_checked += len(entries)

        for entry in entries:
            mismatch = ReconciliationMismatch(
                mismatch_type=MismatchType.PENDING_LEDGER_WRITE,
                severity=MismatchSeverity.WARNING,
                subject_id=entry.subject_id,
                expected_value=entry.outcome.value,
                message=f"Ledger write {entry.idempotency_key} pending",
            )
            if self._config.retry_pending_ledger_writes:
                receipt = await self._ledger.record(entry, max_retries=0)
                if receipt.recorded:
                    mismatch.auto_resolved = True
                    mismatch.resolution = f"recorded as {receipt.transaction_handle}"
            result.mismatches.append(mismatch)

    async def _check_missing_ledger_records(self, result: ReconciliationResult, limit: int) -> None:
        async with self._database.transaction() as session:
            repo = SettlementRepository(session)
            proposals = await repo.list_terminal_proposals_without_ledger(limit)
            swaps = {}
            for proposal in proposals:
                if proposal.target_swap_id not in swaps:
                    swaps[proposal.target_swap_id] = await repo.get_swap(proposal.target_swap_id)
        result.items_checked += len(proposals)

        for proposal in proposals:
            swap = swaps.get(proposal.target_swap_id)
            outcome = LedgerOutcome(proposal.status.value)
            mismatch = ReconciliationMismatch(
                mismatch_type=MismatchType.MISSING_LEDGER_RECORD,
                severity=MismatchSeverity.ERROR,
                subject_id=proposal.proposal_id,
                expected_value=outcome.value,
                message=f"Proposal {proposal.proposal_id} is {outcome.value} but has no ledger record",
            )
            participants = [proposal.proposer_account or proposal.proposer_id]
            if swap is not None:
                participants.insert(0, swap.owner_account or swap.owner_id)

            receipt = await self._ledger.record(
                LedgerEntry(
                    subject_id=proposal.proposal_id,
                    subject_type=SubjectType.PROPOSAL,
                    outcome=outcome,
                    participants=participants,
                    occurred_at=proposal.responded_at or self._clock(),
                    details={"swap_id": proposal.target_swap_id, "reconciled": True},
                ),
                max_retries=0,
            )
            mismatch.auto_resolved = True
            mismatch.resolution = (
                f"recorded as {receipt.transaction_handle}" if receipt.recorded
                else "queued as pending ledger write"
            )
            result.mismatches.append(mismatch)

    async def _check_refunds(self, result: ReconciliationResult, limit: int) -> None:
        async with self._database.transaction() as session:
            repo = SettlementRepository(session)
            holdings = await repo.list_unrefunded_holdings(limit)
            proposals = {}
            for holding in holdings:
                proposals[holding.proposal_id] = await repo.get_proposal(holding.proposal_id)
        result.items_checked += len(holdings)

        for holding in holdings:
            mismatch = ReconciliationMismatch(
                mismatch_type=MismatchType.REFUND_MISSING,
                severity=MismatchSeverity.WARNING,
                subject_id=holding.holding_id,
                message=f"Reverted holding {holding.holding_id} has no refund",
            )
            proposal = proposals.get(holding.proposal_id)
            if self._config.retry_refunds and proposal is not None:
                try:
                    handle = await self._escrow.refund(
                        holding, proposal.proposer_account or proposal.proposer_id
                    )
                    async with self._database.transaction() as session:
                        await SettlementRepository(session).set_refund_handle(holding.holding_id, handle)
                    mismatch.auto_resolved = True
                    mismatch.resolution = f"refunded as {handle}"
                except CollaboratorError as e:
                    mismatch.resolution = f"refund retry failed: {e}"
            result.mismatches.append(mismatch)

    async def _check_uncommitted_transfers(self, result: ReconciliationResult, limit: int) -> None:
        async with self._database.transaction() as session:
            holdings = await SettlementRepository(session).list_uncommitted_transfers(limit)
        result.items_checked += len(holdings)

        for holding in holdings:
            result.mismatches.append(ReconciliationMismatch(
                mismatch_type=MismatchType.UNCOMMITTED_TRANSFER,
                severity=MismatchSeverity.CRITICAL,
                subject_id=holding.holding_id,
                expected_value=EscrowStatus.RELEASED.value,
                actual_value=holding.status.value,
                message=(
                    f"Holding {holding.holding_id} is held but transfer {holding.transfer_handle} "
                    f"already moved its funds"
                ),
            ))

    async def _check_escrow(self, result: ReconciliationResult, limit: int) -> None:
        async with self._database.transaction() as session:
            rows = await SettlementRepository(session).list_escrow_mismatches(limit)
        result.items_checked += len(rows)

        for holding, proposal_status in rows:
            if holding.status == EscrowStatus.RELEASED and proposal_status != ProposalStatus.ACCEPTED:
                mismatch_type = MismatchType.RELEASED_WITHOUT_ACCEPTANCE
                severity = MismatchSeverity.CRITICAL
            elif proposal_status == ProposalStatus.ACCEPTED:
                mismatch_type = MismatchType.ACCEPTED_WITHOUT_RELEASE
                severity = MismatchSeverity.CRITICAL
            else:
                mismatch_type = MismatchType.ESCROW_STATE_MISMATCH
                severity = MismatchSeverity.ERROR

            result.mismatches.append(ReconciliationMismatch(
                mismatch_type=mismatch_type,
                severity=severity,
                subject_id=holding.holding_id,
                expected_value=proposal_status.value,
                actual_value=holding.status.value,
                message=(
                    f"Holding {holding.holding_id} is {holding.status.value} "
                    f"but proposal {holding.proposal_id} is {proposal_status.value}"
                ),
            ))

    async def _check_orphaned_proposals(self, result: ReconciliationResult, limit: int) -> None:
        async with self._database.transaction() as session:
            proposals = await SettlementRepository(session).list_orphaned_proposals(limit)
        result.items_checked += len(proposals)

        for proposal in proposals:
            result.mismatches.append(ReconciliationMismatch(
                mismatch_type=MismatchType.ORPHANED_PROPOSAL,
                severity=MismatchSeverity.ERROR,
                subject_id=proposal.proposal_id,
                expected_value="terminal",
                actual_value=proposal.status.value,
                message=f"Proposal {proposal.proposal_id} is pending on closed swap {proposal.target_swap_id}",
            ))

    async def _persist(self, result: ReconciliationResult) -> None:
        try:
            async with self._database.transaction() as session:
                await SettlementRepository(session).save_reconciliation_log(
                    run_id=result.run_id,
                    started_at=result.started_at,
                    completed_at=result.completed_at,
                    items_checked=result.items_checked,
                    mismatches_found=len(result.mismatches),
                    repaired=result.repaired_count,
                    details={"summary": result.summary(), "errors": result.errors},
                )
        except SQLAlchemyError as e:
            logger.error(f"Could not persist reconciliation run {result.run_id}: {e}")
