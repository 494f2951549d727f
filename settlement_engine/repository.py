"""
Settlement Engine - Repository.

============================================================
PURPOSE
============================================================
Database operations for settlement persistence.

RESPONSIBILITIES:
- Load swaps, proposals and holdings (optionally row-locked)
- Compare-and-swap status updates
- Audit events, ledger mirror, pending ledger writes
- Sweeper and reconciliation queries

CRITICAL REQUIREMENTS:
- The repository never commits; the caller owns the transaction
- Status writes succeed only if (id, version, status) still match

============================================================
"""

import json
import logging
import uuid
from datetime import datetime
from typing import Optional, List, Dict, Any, Tuple

from sqlalchemy import select, update, func, and_, or_, exists
from sqlalchemy.exc import SQLAlchemyError, OperationalError, DBAPIError
from sqlalchemy.ext.asyncio import AsyncSession

from .types import (
    SwapStatus,
    ProposalStatus,
    EscrowStatus,
    SubjectType,
    LedgerOutcome,
    SettlementAction,
    SwapRecord,
    ProposalRecord,
    EscrowHoldingRecord,
    LedgerEntry,
    StatusChange,
    SweepResult,
    SettlementError,
    ConflictError,
)
from .models import (
    SwapModel,
    ProposalModel,
    EscrowHoldingModel,
    LedgerRecordModel,
    PendingLedgerWriteModel,
    SettlementEventModel,
    SweepRunModel,
    ReconciliationLogModel,
)


logger = logging.getLogger(__name__)


# ============================================================
# ERROR TRANSLATION
# ============================================================

_CONTENTION_MARKERS = (
    "database is locked",
    "database table is locked",
    "could not obtain lock",
    "could not serialize access",
    "deadlock detected",
    "lock timeout",
)


def translate_database_error(error: SQLAlchemyError) -> SettlementError:
    """
    Map a SQLAlchemy error to a settlement error.

    Lock contention means another settlement holds the rows:
    the caller lost the race.
    """
    message = str(error).lower()
    if isinstance(error, (OperationalError, DBAPIError)) and any(
        marker in message for marker in _CONTENTION_MARKERS
    ):
        return ConflictError(
            "Another settlement is in progress for this swap",
            {"database_error": type(error).__name__},
        )
    return SettlementError(
        f"Database error: {type(error).__name__}",
        {"database_error": str(error)[:500]},
        code="DATABASE_ERROR",
    )


# ============================================================
# SETTLEMENT REPOSITORY
# ============================================================

class SettlementRepository:
    """
    Repository for settlement data persistence.

    Bound to one session; reads inside a transaction see that
    transaction's writes.
    """

    def __init__(self, session: AsyncSession, lock_rows: bool = False):
        """
        Initialize repository.

        Args:
            session: SQLAlchemy async session
            lock_rows: Use SELECT ... FOR UPDATE on locked reads
        """
        self._session = session
        self._lock_rows = lock_rows

    @property
    def session(self) -> AsyncSession:
        return self._session

    def _locked(self, query, for_update: bool):
        if for_update and self._lock_rows:
            return query.with_for_update()
        return query

    # --------------------------------------------------------
    # SWAP OPERATIONS
    # --------------------------------------------------------

    async def get_swap(self, swap_id: str, for_update: bool = False) -> Optional[SwapRecord]:
        """Get a swap by ID."""
        query = self._locked(
            select(SwapModel).where(SwapModel.swap_id == swap_id), for_update
        ).execution_options(populate_existing=True)
        result = await self._session.execute(query)
        model = result.scalar_one_or_none()
        return self._model_to_swap(model) if model else None

    async def create_swap(self, swap: SwapRecord) -> None:
        """Insert a new swap."""
        self._session.add(SwapModel(
            swap_id=swap.swap_id,
            owner_id=swap.owner_id,
            owner_account=swap.owner_account,
            source_booking_id=swap.source_booking_id,
            status=swap.status.value,
            version=swap.version,
            expires_at=swap.expires_at,
            created_at=swap.created_at,
            updated_at=swap.created_at,
            closed_at=swap.closed_at,
        ))
        await self._session.flush()

    async def cas_swap_status(self, change: StatusChange, now: datetime) -> bool:
        """
        Compare-and-swap a swap status.

        Returns:
            True if exactly one row was updated
        """
        values: Dict[str, Any] = {
            "status": change.to_status,
            "version": SwapModel.version + 1,
            "updated_at": now,
        }
        if SwapStatus(change.to_status).is_terminal():
            values["closed_at"] = now

        result = await self._session.execute(
            update(SwapModel)
            .where(and_(
                SwapModel.swap_id == change.subject_id,
                SwapModel.version == change.expected_version,
                SwapModel.status == change.from_status,
            ))
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def list_due_swap_ids(self, now: datetime, limit: int) -> List[str]:
        """Open swaps whose deadline has passed, oldest first."""
        result = await self._session.execute(
            select(SwapModel.swap_id)
            .where(and_(
                SwapModel.status.in_([SwapStatus.ACTIVE.value, SwapStatus.PENDING.value]),
                SwapModel.expires_at <= now,
            ))
            .order_by(SwapModel.expires_at)
            .limit(limit)
        )
        return list(result.scalars())

    async def count_swaps_by_status(self) -> Dict[str, int]:
        result = await self._session.execute(
            select(SwapModel.status, func.count()).group_by(SwapModel.status)
        )
        return {status: count for status, count in result.all()}

    def _model_to_swap(self, model: SwapModel) -> SwapRecord:
        return SwapRecord(
            swap_id=model.swap_id,
            owner_id=model.owner_id,
            source_booking_id=model.source_booking_id,
            status=SwapStatus(model.status),
            expires_at=model.expires_at,
            created_at=model.created_at,
            owner_account=model.owner_account,
            version=model.version,
            closed_at=model.closed_at,
        )

    # --------------------------------------------------------
    # PROPOSAL OPERATIONS
    # --------------------------------------------------------

    async def get_proposal(
        self,
        proposal_id: str,
        for_update: bool = False,
    ) -> Optional[ProposalRecord]:
        """Get a proposal by ID."""
        query = self._locked(
            select(ProposalModel).where(ProposalModel.proposal_id == proposal_id),
            for_update,
        ).execution_options(populate_existing=True)
        result = await self._session.execute(query)
        model = result.scalar_one_or_none()
        return self._model_to_proposal(model) if model else None

    async def list_proposals_for_swap(
        self,
        swap_id: str,
        status: Optional[ProposalStatus] = None,
        for_update: bool = False,
    ) -> List[ProposalRecord]:
        """All proposals targeting a swap, oldest first."""
        query = select(ProposalModel).where(ProposalModel.target_swap_id == swap_id)
        if status is not None:
            query = query.where(ProposalModel.status == status.value)
        query = self._locked(
            query.order_by(ProposalModel.created_at, ProposalModel.proposal_id),
            for_update,
        ).execution_options(populate_existing=True)
        result = await self._session.execute(query)
        return [self._model_to_proposal(m) for m in result.scalars()]

    async def create_proposal(self, proposal: ProposalRecord) -> None:
        """Insert a new proposal."""
        self._session.add(ProposalModel(
            proposal_id=proposal.proposal_id,
            target_swap_id=proposal.target_swap_id,
            source_swap_id=proposal.source_swap_id,
            proposer_id=proposal.proposer_id,
            proposer_account=proposal.proposer_account,
            amount=proposal.amount,
            currency=proposal.currency,
            status=proposal.status.value,
            version=proposal.version,
            created_at=proposal.created_at,
            updated_at=proposal.created_at,
        ))
        await self._session.flush()

    async def cas_proposal_status(
        self,
        change: StatusChange,
        now: datetime,
        actor_id: Optional[str] = None,
    ) -> bool:
        """
        Compare-and-swap a proposal status.

        Returns:
            True if exactly one row was updated
        """
        result = await self._session.execute(
            update(ProposalModel)
            .where(and_(
                ProposalModel.proposal_id == change.subject_id,
                ProposalModel.version == change.expected_version,
                ProposalModel.status == change.from_status,
            ))
            .values(
                status=change.to_status,
                version=ProposalModel.version + 1,
                rejection_reason=change.reason,
                responded_at=now,
                responded_by=actor_id,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def list_orphaned_proposals(self, limit: int) -> List[ProposalRecord]:
        """Pending proposals whose swap is already terminal."""
        result = await self._session.execute(
            select(ProposalModel)
            .join(SwapModel, SwapModel.swap_id == ProposalModel.target_swap_id)
            .where(and_(
                ProposalModel.status == ProposalStatus.PENDING.value,
                SwapModel.status.not_in([SwapStatus.ACTIVE.value, SwapStatus.PENDING.value]),
            ))
            .limit(limit)
        )
        return [self._model_to_proposal(m) for m in result.scalars()]

    def _model_to_proposal(self, model: ProposalModel) -> ProposalRecord:
        return ProposalRecord(
            proposal_id=model.proposal_id,
            target_swap_id=model.target_swap_id,
            proposer_id=model.proposer_id,
            status=ProposalStatus(model.status),
            source_swap_id=model.source_swap_id,
            amount=model.amount,
            currency=model.currency,
            proposer_account=model.proposer_account,
            rejection_reason=model.rejection_reason,
            created_at=model.created_at,
            responded_at=model.responded_at,
            responded_by=model.responded_by,
            version=model.version,
        )

    # --------------------------------------------------------
    # ESCROW OPERATIONS
    # --------------------------------------------------------

    async def get_holding_for_proposal(
        self,
        proposal_id: str,
        for_update: bool = False,
    ) -> Optional[EscrowHoldingRecord]:
        """Get the escrow holding of a proposal."""
        query = self._locked(
            select(EscrowHoldingModel).where(EscrowHoldingModel.proposal_id == proposal_id),
            for_update,
        ).execution_options(populate_existing=True)
        result = await self._session.execute(query)
        model = result.scalar_one_or_none()
        return self._model_to_holding(model) if model else None

    async def create_holding(self, holding: EscrowHoldingRecord) -> None:
        """Insert a new escrow holding."""
        self._session.add(EscrowHoldingModel(
            holding_id=holding.holding_id,
            proposal_id=holding.proposal_id,
            amount=holding.amount,
            currency=holding.currency,
            escrow_account_id=holding.escrow_account_id,
            status=holding.status.value,
            version=holding.version,
        ))
        await self._session.flush()

    async def cas_holding_status(
        self,
        holding_id: str,
        from_status: EscrowStatus,
        to_status: EscrowStatus,
        expected_version: int,
        now: datetime,
        transfer_handle: Optional[str] = None,
    ) -> bool:
        """Compare-and-swap an escrow holding status."""
        values: Dict[str, Any] = {
            "status": to_status.value,
            "version": EscrowHoldingModel.version + 1,
        }
        if to_status == EscrowStatus.RELEASED:
            values["released_at"] = now
            values["transfer_handle"] = transfer_handle
        elif to_status == EscrowStatus.REVERTED:
            values["reverted_at"] = now
        elif to_status == EscrowStatus.HELD:
            values["released_at"] = None
            values["transfer_handle"] = None

        result = await self._session.execute(
            update(EscrowHoldingModel)
            .where(and_(
                EscrowHoldingModel.holding_id == holding_id,
                EscrowHoldingModel.version == expected_version,
                EscrowHoldingModel.status == from_status.value,
            ))
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def set_transfer_handle(self, holding_id: str, handle: str) -> None:
        await self._session.execute(
            update(EscrowHoldingModel)
            .where(EscrowHoldingModel.holding_id == holding_id)
            .values(transfer_handle=handle)
            .execution_options(synchronize_session=False)
        )

    async def set_refund_handle(self, holding_id: str, handle: str) -> None:
        await self._session.execute(
            update(EscrowHoldingModel)
            .where(EscrowHoldingModel.holding_id == holding_id)
            .values(refund_handle=handle)
            .execution_options(synchronize_session=False)
        )

    async def list_unrefunded_holdings(self, limit: int) -> List[EscrowHoldingRecord]:
        """Reverted holdings with no refund handle yet."""
        result = await self._session.execute(
            select(EscrowHoldingModel)
            .where(and_(
                EscrowHoldingModel.status == EscrowStatus.REVERTED.value,
                EscrowHoldingModel.refund_handle.is_(None),
            ))
            .order_by(EscrowHoldingModel.reverted_at)
            .limit(limit)
        )
        return [self._model_to_holding(m) for m in result.scalars()]

    async def list_uncommitted_transfers(self, limit: int) -> List[EscrowHoldingRecord]:
        """Held holdings carrying a transfer handle: funds moved, settlement rolled back."""
        result = await self._session.execute(
            select(EscrowHoldingModel)
            .where(and_(
                EscrowHoldingModel.status == EscrowStatus.HELD.value,
                EscrowHoldingModel.transfer_handle.is_not(None),
            ))
            .limit(limit)
        )
        return [self._model_to_holding(m) for m in result.scalars()]

    async def list_escrow_mismatches(
        self,
        limit: int,
    ) -> List[Tuple[EscrowHoldingRecord, ProposalStatus]]:
        """
        Holdings whose status disagrees with their proposal.

        released <=> accepted; held <=> pending.
        """
        holding_released = EscrowHoldingModel.status == EscrowStatus.RELEASED.value
        holding_held = EscrowHoldingModel.status == EscrowStatus.HELD.value
        proposal_accepted = ProposalModel.status == ProposalStatus.ACCEPTED.value
        proposal_pending = ProposalModel.status == ProposalStatus.PENDING.value

        result = await self._session.execute(
            select(EscrowHoldingModel, ProposalModel.status)
            .join(ProposalModel, ProposalModel.proposal_id == EscrowHoldingModel.proposal_id)
            .where(or_(
                and_(holding_released, ~proposal_accepted),
                and_(~holding_released, proposal_accepted),
                and_(holding_held, ~proposal_pending),
                and_(~holding_held, proposal_pending),
            ))
            .limit(limit)
        )
        return [
            (self._model_to_holding(holding_model), ProposalStatus(proposal_status))
            for holding_model, proposal_status in result.all()
        ]

    def _model_to_holding(self, model: EscrowHoldingModel) -> EscrowHoldingRecord:
        return EscrowHoldingRecord(
            holding_id=model.holding_id,
            proposal_id=model.proposal_id,
            amount=model.amount,
            status=EscrowStatus(model.status),
            currency=model.currency,
            escrow_account_id=model.escrow_account_id,
            transfer_handle=model.transfer_handle,
            refund_handle=model.refund_handle,
            released_at=model.released_at,
            reverted_at=model.reverted_at,
            version=model.version,
        )

    # --------------------------------------------------------
    # EVENT OPERATIONS
    # --------------------------------------------------------

    async def record_event(
        self,
        action: SettlementAction,
        swap_id: str,
        change: StatusChange,
        actor_id: Optional[str],
        now: datetime,
    ) -> None:
        """Append an audit event for one status change."""
        self._session.add(SettlementEventModel(
            event_id=str(uuid.uuid4()),
            action=action.value,
            swap_id=swap_id,
            subject_type=change.subject_type.value,
            subject_id=change.subject_id,
            from_status=change.from_status,
            to_status=change.to_status,
            actor_id=actor_id,
            reason=change.reason,
            created_at=now,
        ))

    async def get_events_for_swap(self, swap_id: str) -> List[SettlementEventModel]:
        result = await self._session.execute(
            select(SettlementEventModel)
            .where(SettlementEventModel.swap_id == swap_id)
            .order_by(SettlementEventModel.id)
        )
        return list(result.scalars())

    # --------------------------------------------------------
    # LEDGER OPERATIONS
    # --------------------------------------------------------

    async def get_ledger_record(
        self,
        subject_id: str,
        outcome: LedgerOutcome,
    ) -> Optional[LedgerRecordModel]:
        result = await self._session.execute(
            select(LedgerRecordModel).where(and_(
                LedgerRecordModel.subject_id == subject_id,
                LedgerRecordModel.outcome == outcome.value,
            ))
        )
        return result.scalar_one_or_none()

    async def list_ledger_records(self, subject_id: str) -> List[LedgerRecordModel]:
        result = await self._session.execute(
            select(LedgerRecordModel)
            .where(LedgerRecordModel.subject_id == subject_id)
            .order_by(LedgerRecordModel.id)
        )
        return list(result.scalars())

    async def save_ledger_record(
        self,
        entry: LedgerEntry,
        transaction_handle: Optional[str],
        now: datetime,
    ) -> bool:
        """
        Mirror a confirmed ledger write.

        Returns:
            False if the (subject_id, outcome) pair already exists
        """
        if await self.get_ledger_record(entry.subject_id, entry.outcome):
            return False
        self._session.add(LedgerRecordModel(
            subject_id=entry.subject_id,
            subject_type=entry.subject_type.value,
            outcome=entry.outcome.value,
            transaction_handle=transaction_handle,
            participants=json.dumps(entry.participants),
            occurred_at=entry.occurred_at,
            recorded_at=now,
        ))
        await self._session.flush()
        return True

    async def upsert_pending_ledger_write(
        self,
        entry: LedgerEntry,
        attempts: int,
        error: Optional[str],
        now: datetime,
    ) -> None:
        """Create or refresh the pending marker for an entry."""
        result = await self._session.execute(
            select(PendingLedgerWriteModel).where(and_(
                PendingLedgerWriteModel.subject_id == entry.subject_id,
                PendingLedgerWriteModel.outcome == entry.outcome.value,
            ))
        )
        marker = result.scalar_one_or_none()
        if marker:
            marker.attempts = marker.attempts + attempts
            marker.last_error = error
            marker.updated_at = now
            marker.resolved_at = None
        else:
            self._session.add(PendingLedgerWriteModel(
                subject_id=entry.subject_id,
                subject_type=entry.subject_type.value,
                outcome=entry.outcome.value,
                participants=json.dumps(entry.participants),
                occurred_at=entry.occurred_at,
                attempts=attempts,
                last_error=error,
                created_at=now,
                updated_at=now,
            ))
        await self._session.flush()

    async def resolve_pending_ledger_write(
        self,
        subject_id: str,
        outcome: LedgerOutcome,
        now: datetime,
    ) -> None:
        await self._session.execute(
            update(PendingLedgerWriteModel)
            .where(and_(
                PendingLedgerWriteModel.subject_id == subject_id,
                PendingLedgerWriteModel.outcome == outcome.value,
                PendingLedgerWriteModel.resolved_at.is_(None),
            ))
            .values(resolved_at=now, updated_at=now)
            .execution_options(synchronize_session=False)
        )

    async def list_pending_ledger_writes(self, limit: int) -> List[LedgerEntry]:
        """Unresolved pending markers, oldest first."""
        result = await self._session.execute(
            select(PendingLedgerWriteModel)
            .where(PendingLedgerWriteModel.resolved_at.is_(None))
            .order_by(PendingLedgerWriteModel.created_at)
            .limit(limit)
        )
        return [
            LedgerEntry(
                subject_id=m.subject_id,
                subject_type=SubjectType(m.subject_type),
                outcome=LedgerOutcome(m.outcome),
                participants=json.loads(m.participants) if m.participants else [],
                occurred_at=m.occurred_at,
            )
            for m in result.scalars()
        ]

    async def count_pending_ledger_writes(self) -> int:
        result = await self._session.execute(
            select(func.count())
            .select_from(PendingLedgerWriteModel)
            .where(PendingLedgerWriteModel.resolved_at.is_(None))
        )
        return result.scalar_one()

    async def list_terminal_proposals_without_ledger(self, limit: int) -> List[ProposalRecord]:
        """
        Terminal proposals with neither a ledger record nor a
        pending marker (a crash between commit and ledger write).
        """
        has_record = exists().where(and_(
            LedgerRecordModel.subject_id == ProposalModel.proposal_id,
            LedgerRecordModel.outcome == ProposalModel.status,
        ))
        has_marker = exists().where(and_(
            PendingLedgerWriteModel.subject_id == ProposalModel.proposal_id,
            PendingLedgerWriteModel.outcome == ProposalModel.status,
        ))
        result = await self._session.execute(
            select(ProposalModel)
            .where(and_(
                ProposalModel.status != ProposalStatus.PENDING.value,
                ~has_record,
                ~has_marker,
            ))
            .order_by(ProposalModel.responded_at)
            .limit(limit)
        )
        return [self._model_to_proposal(m) for m in result.scalars()]

    # --------------------------------------------------------
    # RUN LOGS
    # --------------------------------------------------------

    async def save_sweep_run(self, result: SweepResult) -> None:
        self._session.add(SweepRunModel(
            run_id=result.run_id,
            started_at=result.started_at,
            completed_at=result.completed_at,
            candidates=result.candidates,
            expired=result.expired,
            skipped=result.skipped,
            failed=result.failed,
            failures=json.dumps(result.failures) if result.failures else None,
        ))

    async def get_recent_sweep_runs(self, limit: int = 20) -> List[SweepRunModel]:
        result = await self._session.execute(
            select(SweepRunModel).order_by(SweepRunModel.started_at.desc()).limit(limit)
        )
        return list(result.scalars())

    async def save_reconciliation_log(
        self,
        run_id: str,
        started_at: datetime,
        completed_at: datetime,
        items_checked: int,
        mismatches_found: int,
        repaired: int,
        details: Dict[str, Any],
    ) -> None:
        self._session.add(ReconciliationLogModel(
            run_id=run_id,
            started_at=started_at,
            completed_at=completed_at,
            items_checked=items_checked,
            mismatches_found=mismatches_found,
            repaired=repaired,
            details=json.dumps(details, default=str),
        ))
