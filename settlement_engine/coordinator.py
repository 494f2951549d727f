"""
Settlement Engine - Settlement Coordinator.

============================================================
PURPOSE
============================================================
Single writer of terminal swap and proposal status.

COMMIT PROTOCOL:
1. Open a transaction; re-read swap and proposals (locked)
2. Plan the transition in memory (pure state machine)
3. Compare-and-swap every status change, write audit events
4. Financial acceptance: release escrow (transfer + verify);
   on failure the whole transaction rolls back
5. Commit
6. Record ledger outcomes (retried, deferred on exhaustion)
7. Refund reverted escrow, unlock bookings, emit event

Steps 1-5 run under the operation timeout. Nothing after
the commit can undo it.

CONCURRENCY:
- Lock order: swap, then its proposals, then holdings
- A lost compare-and-swap is reported as Conflict

============================================================
"""

import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Optional, Dict, List, Callable, Awaitable, Tuple, Set

from sqlalchemy.exc import SQLAlchemyError

from .types import (
    SwapStatus,
    ProposalStatus,
    EscrowStatus,
    SubjectType,
    SettlementAction,
    SettlementOutcome,
    SwapRecord,
    ProposalRecord,
    EscrowHoldingRecord,
    LedgerEntry,
    LedgerReceipt,
    StatusChange,
    SettlementEvent,
    SettlementResult,
    NotFoundError,
    ForbiddenError,
    ValidationError,
    ConflictError,
    TransferFailedError,
    SettlementTimeoutError,
    CollaboratorError,
)
from .config import SettlementEngineConfig
from .database import Database
from .repository import SettlementRepository, translate_database_error
from .state_machine import SettlementStateMachine, TransitionPlan
from .ledger_recorder import LedgerRecorder
from .escrow_executor import EscrowTransferExecutor
from .adapters.base import BookingGateway, SettlementNotifier
from .alerting import (
    TelegramAlerter,
    Alert,
    create_transfer_failed_alert,
    create_uncommitted_transfer_alert,
    create_refund_failed_alert,
)


logger = logging.getLogger(__name__)


SYSTEM_ACTOR = "system"

_CLOSED_SWAP_STATUSES = {
    SwapStatus.EXPIRED.value,
    SwapStatus.CANCELLED.value,
    SwapStatus.REJECTED.value,
}


# ============================================================
# SETTLEMENT CONTEXT
# ============================================================

@dataclass
class SettlementContext:
    """Rows read inside the transaction, needed after commit."""

    swap: SwapRecord
    proposal: Optional[ProposalRecord] = None
    proposals: Dict[str, ProposalRecord] = field(default_factory=dict)
    release_holding: Optional[EscrowHoldingRecord] = None
    reverted_holdings: List[EscrowHoldingRecord] = field(default_factory=list)
    transfer_handle: Optional[str] = None


Planner = Callable[[SettlementRepository, datetime], Awaitable[Tuple[TransitionPlan, SettlementContext]]]


# ============================================================
# SETTLEMENT COORDINATOR
# ============================================================

class SettlementCoordinator:
    """
    Orchestrates settlement transitions.

    Used by the service facade for user actions and by the
    expiration sweeper for automatic closure.
    """

    def __init__(
        self,
        database: Database,
        ledger_recorder: LedgerRecorder,
        escrow_executor: EscrowTransferExecutor,
        bookings: Optional[BookingGateway] = None,
        notifier: Optional[SettlementNotifier] = None,
        config: Optional[SettlementEngineConfig] = None,
        clock: Optional[Callable[[], datetime]] = None,
        alerter: Optional[TelegramAlerter] = None,
    ):
        """
        Initialize coordinator.

        Args:
            database: Database
            ledger_recorder: Ledger recorder
            escrow_executor: Escrow transfer executor
            bookings: Booking collaborator
            notifier: Settlement event receiver
            config: Engine configuration
            clock: Time source (UTC)
            alerter: Operational alerter
        """
        self._database = database
        self._ledger = ledger_recorder
        self._escrow = escrow_executor
        self._bookings = bookings
        self._notifier = notifier
        self._config = config or SettlementEngineConfig()
        self._clock = clock or datetime.utcnow
        self._alerter = alerter

        self._state_machine = SettlementStateMachine(
            sibling_rejection_reason=self._config.settlement.sibling_rejection_reason,
            manual_close_reason=self._config.settlement.manual_close_reason,
            expired_status=self._config.sweeper.expired_status,
        )

        self._background: Set[asyncio.Task] = set()

        self._stats = {
            "accepted": 0,
            "rejected": 0,
            "withdrawn": 0,
            "expired": 0,
            "manual_closed": 0,
            "submitted": 0,
            "conflicts": 0,
            "transfer_failures": 0,
            "timeouts": 0,
            "uncommitted_transfers": 0,
        }

    @property
    def state_machine(self) -> SettlementStateMachine:
        return self._state_machine

    @property
    def database(self) -> Database:
        return self._database

    def now(self) -> datetime:
        return self._clock()

    # --------------------------------------------------------
    # PUBLIC OPERATIONS
    # --------------------------------------------------------

    async def accept(self, proposal_id: str, actor_id: str) -> SettlementResult:
        """
        Accept a proposal as the swap owner.

        Raises:
            ForbiddenError, ExpiredError, ConflictError,
            InvalidStateError, TransferFailedError,
            SettlementTimeoutError
        """
        async def planner(repo: SettlementRepository, now: datetime):
            ctx = await self._load_for_proposal(repo, proposal_id)
            plan = self._state_machine.plan_accept(
                ctx.swap,
                ctx.proposal,
                list(ctx.proposals.values()),
                actor_id,
                now,
            )
            if plan.escrow_release:
                holding = await repo.get_holding_for_proposal(proposal_id, for_update=True)
                ctx.release_holding = self._escrow.validate_holding(holding, ctx.proposal)
            return plan, ctx

        plan, ctx, now = await self._commit(SettlementAction.ACCEPT, actor_id, planner)
        self._stats["accepted"] += 1
        logger.info(
            f"Proposal {proposal_id} accepted on swap {ctx.swap.swap_id} by {actor_id}"
            f" ({len(plan.cascaded_proposal_ids)} sibling(s) rejected)"
        )
        return await self._finish(plan, ctx, now, SettlementOutcome.ACCEPTED, actor_id)

    async def reject(
        self,
        proposal_id: str,
        actor_id: str,
        reason: Optional[str] = None,
    ) -> SettlementResult:
        """
        Reject a proposal.

        The swap owner rejects; the proposer withdraws.
        """
        async def planner(repo: SettlementRepository, now: datetime):
            ctx = await self._load_for_proposal(repo, proposal_id)
            if actor_id == ctx.swap.owner_id:
                plan = self._state_machine.plan_reject(ctx.swap, ctx.proposal, actor_id, reason)
            elif actor_id == ctx.proposal.proposer_id:
                plan = self._state_machine.plan_withdraw(ctx.swap, ctx.proposal, actor_id, reason)
            else:
                raise ForbiddenError(
                    "Only the swap owner or the proposer can reject this proposal",
                    {"proposal_id": proposal_id, "actor_id": actor_id},
                )
            return plan, ctx

        plan, ctx, now = await self._commit(SettlementAction.REJECT, actor_id, planner)
        if plan.action == SettlementAction.WITHDRAW:
            self._stats["withdrawn"] += 1
            outcome = SettlementOutcome.WITHDRAWN
        else:
            self._stats["rejected"] += 1
            outcome = SettlementOutcome.REJECTED
        logger.info(f"Proposal {proposal_id} {outcome.value} by {actor_id}")
        return await self._finish(plan, ctx, now, outcome, actor_id, reason)

    async def withdraw(
        self,
        proposal_id: str,
        actor_id: str,
        reason: Optional[str] = None,
    ) -> SettlementResult:
        """Withdraw a proposal as its proposer."""
        async def planner(repo: SettlementRepository, now: datetime):
            ctx = await self._load_for_proposal(repo, proposal_id)
            plan = self._state_machine.plan_withdraw(ctx.swap, ctx.proposal, actor_id, reason)
            return plan, ctx

        plan, ctx, now = await self._commit(SettlementAction.WITHDRAW, actor_id, planner)
        self._stats["withdrawn"] += 1
        logger.info(f"Proposal {proposal_id} withdrawn by {actor_id}")
        return await self._finish(plan, ctx, now, SettlementOutcome.WITHDRAWN, actor_id, reason)

    async def manual_reject_expired(self, swap_id: str, actor_id: str) -> SettlementResult:
        """
        Owner closes an expired swap as rejected.

        Idempotent: a second call returns ALREADY_CLOSED.
        """
        async def planner(repo: SettlementRepository, now: datetime):
            ctx = await self._load_for_swap(repo, swap_id)
            plan = self._state_machine.plan_manual_close(
                ctx.swap, list(ctx.proposals.values()), actor_id, now
            )
            return plan, ctx

        plan, ctx, now = await self._commit(SettlementAction.MANUAL_CLOSE, actor_id, planner)
        if plan.already_closed:
            logger.info(f"Swap {swap_id} already closed, manual close is a no-op")
            return SettlementResult(
                outcome=SettlementOutcome.ALREADY_CLOSED,
                swap_id=swap_id,
                swap_status=ctx.swap.status,
                completed_at=now,
            )

        self._stats["manual_closed"] += 1
        logger.info(
            f"Swap {swap_id} closed by owner {actor_id} "
            f"({len(plan.proposal_changes)} leftover proposal(s) rejected)"
        )
        return await self._finish(
            plan, ctx, now, SettlementOutcome.REJECTED, actor_id,
            self._config.settlement.manual_close_reason,
        )

    async def expire(self, swap_id: str, now: Optional[datetime] = None) -> SettlementResult:
        """
        Expire an overdue swap (sweeper path).

        Raises:
            ConflictError: Swap already finalized
            InvalidStateError: Deadline not reached
        """
        async def planner(repo: SettlementRepository, at: datetime):
            ctx = await self._load_for_swap(repo, swap_id)
            plan = self._state_machine.plan_expire(ctx.swap, list(ctx.proposals.values()), at)
            return plan, ctx

        plan, ctx, at = await self._commit(SettlementAction.EXPIRE, None, planner, now)
        self._stats["expired"] += 1
        label = self._state_machine.expired_status
        logger.info(
            f"Swap {swap_id} {label.value} "
            f"({len(plan.proposal_changes)} pending proposal(s) expired)"
        )
        return await self._finish(
            plan, ctx, at, SettlementOutcome(label.value), SYSTEM_ACTOR, "deadline passed"
        )

    # --------------------------------------------------------
    # SUBMISSION
    # --------------------------------------------------------

    async def create_swap(
        self,
        owner_id: str,
        source_booking_id: str,
        expires_at: datetime,
        owner_account: Optional[str] = None,
        swap_id: Optional[str] = None,
    ) -> SwapRecord:
        """List a booking as swappable."""
        now = self._clock()
        if expires_at <= now:
            raise ValidationError(
                "Swap deadline must be in the future",
                {"expires_at": expires_at.isoformat()},
            )

        swap = SwapRecord(
            swap_id=swap_id or f"swap-{uuid.uuid4().hex[:12]}",
            owner_id=owner_id,
            source_booking_id=source_booking_id,
            status=SwapStatus.ACTIVE,
            expires_at=expires_at,
            created_at=now,
            owner_account=owner_account,
        )

        async def create() -> None:
            async with self._database.transaction() as session:
                repo = SettlementRepository(session)
                await repo.create_swap(swap)
                await repo.record_event(
                    SettlementAction.SUBMIT,
                    swap.swap_id,
                    StatusChange(SubjectType.SWAP, swap.swap_id, None, SwapStatus.ACTIVE.value, 0, "listed"),
                    owner_id,
                    now,
                )

        await self._guarded(create())
        logger.info(f"Swap {swap.swap_id} listed by {owner_id}, expires {expires_at.isoformat()}")
        return swap

    async def submit_proposal(
        self,
        target_swap_id: str,
        proposer_id: str,
        source_swap_id: Optional[str] = None,
        amount: Optional[Decimal] = None,
        currency: str = "USD",
        proposer_account: Optional[str] = None,
        escrow_account_id: Optional[str] = None,
        proposal_id: Optional[str] = None,
    ) -> ProposalRecord:
        """
        Submit a proposal against a swap.

        Cash proposals get a held escrow holding. The swap moves
        active -> pending.
        """
        if amount is not None:
            amount = Decimal(str(amount))

        proposal = ProposalRecord(
            proposal_id=proposal_id or f"prop-{uuid.uuid4().hex[:12]}",
            target_swap_id=target_swap_id,
            proposer_id=proposer_id,
            status=ProposalStatus.PENDING,
            source_swap_id=source_swap_id,
            amount=amount,
            currency=currency,
            proposer_account=proposer_account,
        )

        async def submit() -> None:
            now = self._clock()
            proposal.created_at = now
            async with self._database.transaction() as session:
                repo = SettlementRepository(session, lock_rows=self._database.lock_rows)
                swap = await repo.get_swap(target_swap_id, for_update=True)
                if swap is None:
                    raise NotFoundError(f"Swap {target_swap_id} not found", {"swap_id": target_swap_id})

                source_swap = None
                if source_swap_id:
                    source_swap = await repo.get_swap(source_swap_id)
                    if source_swap is None:
                        raise NotFoundError(
                            f"Source swap {source_swap_id} not found",
                            {"swap_id": source_swap_id},
                        )

                plan = self._state_machine.plan_submit(
                    swap,
                    proposer_id,
                    now,
                    amount=amount,
                    source_swap=source_swap,
                    max_amount=self._config.escrow.max_transfer_amount,
                )

                if plan.swap_change:
                    if not await repo.cas_swap_status(plan.swap_change, now):
                        raise ConflictError(
                            f"Swap {target_swap_id} was modified concurrently",
                            {"swap_id": target_swap_id},
                        )
                    await repo.record_event(plan.action, swap.swap_id, plan.swap_change, proposer_id, now)

                await repo.create_proposal(proposal)
                await repo.record_event(
                    plan.action,
                    swap.swap_id,
                    StatusChange(
                        SubjectType.PROPOSAL, proposal.proposal_id, None,
                        ProposalStatus.PENDING.value, 0, "submitted",
                    ),
                    proposer_id,
                    now,
                )

                if proposal.is_financial:
                    holding = EscrowHoldingRecord(
                        holding_id=f"esc-{uuid.uuid4().hex[:12]}",
                        proposal_id=proposal.proposal_id,
                        amount=amount,
                        status=EscrowStatus.HELD,
                        currency=currency,
                        escrow_account_id=escrow_account_id,
                    )
                    await repo.create_holding(holding)

        await self._guarded(submit())
        self._stats["submitted"] += 1
        logger.info(
            f"Proposal {proposal.proposal_id} submitted on swap {target_swap_id} by {proposer_id}"
            + (f" with {amount} {currency}" if proposal.is_financial else "")
        )
        return proposal

    # --------------------------------------------------------
    # COMMIT PROTOCOL
    # --------------------------------------------------------

    async def _commit(
        self,
        action: SettlementAction,
        actor_id: Optional[str],
        planner: Planner,
        now: Optional[datetime] = None,
    ) -> Tuple[TransitionPlan, SettlementContext, datetime]:
        """Steps 1-5, bounded by the operation timeout."""
        at = now or self._clock()

        async def transact() -> Tuple[TransitionPlan, SettlementContext]:
            ctx: Optional[SettlementContext] = None
            try:
                async with self._database.transaction() as session:
                    repo = SettlementRepository(session, lock_rows=self._database.lock_rows)
                    plan, ctx = await planner(repo, at)
                    if not plan.already_closed and not plan.is_empty:
                        await self._apply(repo, plan, ctx, actor_id, at)
            except (Exception, asyncio.CancelledError) as e:
                if ctx is not None and ctx.transfer_handle:
                    await self._report_uncommitted_transfer(action, ctx, e)
                raise
            return plan, ctx

        try:
            plan, ctx = await self._guarded(transact())
        except ConflictError as e:
            self._stats["conflicts"] += 1
            logger.warning(f"{action.value} lost to a concurrent transition: {e.message}")
            raise
        except TransferFailedError as e:
            self._stats["transfer_failures"] += 1
            logger.error(f"{action.value} rolled back after transfer failure: {e.message}")
            await self._alert(create_transfer_failed_alert(
                e.details.get("swap_id", ""), e.details.get("proposal_id", ""), e.message
            ))
            raise
        return plan, ctx, at

    async def _guarded(self, coro: Awaitable):
        """Apply the operation timeout and translate database errors."""
        timeout = self._config.settlement.operation_timeout_seconds
        try:
            return await asyncio.wait_for(coro, timeout=timeout)
        except asyncio.TimeoutError:
            self._stats["timeouts"] += 1
            logger.error(f"Settlement operation exceeded {timeout}s and was rolled back")
            raise SettlementTimeoutError(f"Operation exceeded {timeout}s and was rolled back")
        except SQLAlchemyError as e:
            raise translate_database_error(e)

    async def _apply(
        self,
        repo: SettlementRepository,
        plan: TransitionPlan,
        ctx: SettlementContext,
        actor_id: Optional[str],
        now: datetime,
    ) -> None:
        """Steps 3-4: write the plan inside the open transaction."""
        actor = actor_id or SYSTEM_ACTOR

        if plan.swap_change:
            if not await repo.cas_swap_status(plan.swap_change, now):
                raise ConflictError(
                    f"Swap {plan.swap_id} was finalized by a concurrent transition",
                    {"swap_id": plan.swap_id},
                )
            await repo.record_event(plan.action, plan.swap_id, plan.swap_change, actor, now)

        for change in plan.proposal_changes:
            if not await repo.cas_proposal_status(change, now, actor):
                raise ConflictError(
                    f"Proposal {change.subject_id} was finalized by a concurrent transition",
                    {"proposal_id": change.subject_id},
                )
            await repo.record_event(plan.action, plan.swap_id, change, actor, now)

        for proposal_id in plan.escrow_reverts:
            holding = await repo.get_holding_for_proposal(proposal_id, for_update=True)
            if holding is None:
                logger.warning(f"Cash proposal {proposal_id} has no escrow holding to revert")
                continue
            if await self._escrow.revert(repo, holding, now):
                ctx.reverted_holdings.append(holding)
                await repo.record_event(
                    plan.action,
                    plan.swap_id,
                    self._escrow_change(holding, EscrowStatus.REVERTED),
                    actor,
                    now,
                )

        if plan.escrow_release:
            holding = ctx.release_holding
            try:
                ctx.transfer_handle = await self._escrow.transfer(
                    repo,
                    holding,
                    ctx.swap.owner_account or ctx.swap.owner_id,
                    holding.amount,
                    now,
                )
            except TransferFailedError as e:
                e.details.update({"swap_id": plan.swap_id, "proposal_id": plan.escrow_release})
                raise
            await repo.set_transfer_handle(holding.holding_id, ctx.transfer_handle)
            await repo.record_event(
                plan.action,
                plan.swap_id,
                self._escrow_change(holding, EscrowStatus.RELEASED),
                actor,
                now,
            )

    @staticmethod
    def _escrow_change(holding: EscrowHoldingRecord, to_status: EscrowStatus) -> StatusChange:
        return StatusChange(
            subject_type=SubjectType.ESCROW,
            subject_id=holding.holding_id,
            from_status=holding.status.value,
            to_status=to_status.value,
            expected_version=holding.version,
        )

    async def _report_uncommitted_transfer(
        self,
        action: SettlementAction,
        ctx: SettlementContext,
        error: BaseException,
    ) -> None:
        """
        Funds moved but the transaction did not commit.

        The transfer handle is written to the still-held holding in
        its own transaction so reconciliation can find it, and the
        holding refuses any further release or revert until an
        operator resolves it.
        """
        holding = ctx.release_holding
        handle = ctx.transfer_handle
        reason = str(error) or type(error).__name__
        self._stats["uncommitted_transfers"] += 1
        logger.critical(
            f"Escrow transfer {handle} for holding {holding.holding_id} confirmed but "
            f"{action.value} of swap {ctx.swap.swap_id} was not committed: {reason}. "
            f"Manual reconciliation required"
        )

        try:
            async with self._database.transaction() as session:
                await SettlementRepository(session).set_transfer_handle(holding.holding_id, handle)
        except SQLAlchemyError as e:
            logger.critical(
                f"Could not mark holding {holding.holding_id} with transfer {handle}: {e}"
            )

        await self._alert(create_uncommitted_transfer_alert(
            ctx.swap.swap_id, holding.proposal_id, holding.holding_id, handle, reason
        ))

    # --------------------------------------------------------
    # AFTER COMMIT
    # --------------------------------------------------------

    async def _finish(
        self,
        plan: TransitionPlan,
        ctx: SettlementContext,
        now: datetime,
        outcome: SettlementOutcome,
        actor_id: str,
        reason: Optional[str] = None,
    ) -> SettlementResult:
        """Steps 6-7. Failures here become warnings."""
        result = SettlementResult(
            outcome=outcome,
            swap_id=plan.swap_id,
            proposal_id=plan.proposal_id,
            swap_status=SwapStatus(plan.swap_change.to_status) if plan.swap_change else ctx.swap.status,
            proposal_status=self._target_status(plan),
            cascaded_proposal_ids=plan.cascaded_proposal_ids,
            transfer_handle=ctx.transfer_handle,
            completed_at=now,
        )

        entries = self._ledger_entries(plan, ctx, now, reason)
        if self._config.ledger.run_in_background:
            self._spawn(self._record_ledger(entries, result))
        else:
            await self._record_ledger(entries, result)

        if ctx.reverted_holdings and self._config.escrow.refund_reverted_holdings:
            await self._refund(ctx, result)

        if (
            plan.swap_change
            and plan.swap_change.to_status in _CLOSED_SWAP_STATUSES
            and self._config.settlement.unlock_bookings_on_close
        ):
            await self._unlock_booking(ctx.swap, plan.swap_change.to_status, result)

        self._spawn(self._notify(SettlementEvent(
            action=plan.action,
            outcome=outcome,
            swap_id=plan.swap_id,
            proposal_id=plan.proposal_id,
            parties=self._parties(ctx, ctx.proposal),
            reason=reason,
            amount=plan.transfer_amount,
            occurred_at=now,
        )))
        return result

    @staticmethod
    def _target_status(plan: TransitionPlan) -> Optional[ProposalStatus]:
        for change in plan.proposal_changes:
            if change.subject_id == plan.proposal_id:
                return ProposalStatus(change.to_status)
        return None

    @staticmethod
    def _parties(ctx: SettlementContext, proposal: Optional[ProposalRecord]) -> List[str]:
        parties = [ctx.swap.owner_account or ctx.swap.owner_id]
        if proposal is not None:
            parties.append(proposal.proposer_account or proposal.proposer_id)
        return parties

    def _ledger_entries(
        self,
        plan: TransitionPlan,
        ctx: SettlementContext,
        now: datetime,
        reason: Optional[str],
    ) -> List[LedgerEntry]:
        entries = []
        for subject_type, subject_id, outcome in plan.ledger_outcomes:
            proposal = ctx.proposals.get(subject_id) if subject_type == SubjectType.PROPOSAL else None
            details = {"swap_id": plan.swap_id, "action": plan.action.value}
            if reason:
                details["reason"] = reason
            if subject_id == plan.escrow_release and ctx.transfer_handle:
                details["transfer_handle"] = ctx.transfer_handle
                details["amount"] = str(plan.transfer_amount)
            entries.append(LedgerEntry(
                subject_id=subject_id,
                subject_type=subject_type,
                outcome=outcome,
                participants=self._parties(ctx, proposal),
                occurred_at=now,
                details=details,
            ))
        return entries

    async def _record_ledger(self, entries: List[LedgerEntry], result: SettlementResult) -> None:
        for entry in entries:
            try:
                receipt = await self._ledger.record(entry)
            except SQLAlchemyError as e:
                logger.error(f"Ledger mirror for {entry.idempotency_key} failed: {e}")
                receipt = LedgerReceipt(
                    subject_id=entry.subject_id,
                    outcome=entry.outcome,
                    deferred=True,
                    error=str(e),
                )
            result.ledger_receipts.append(receipt)
            if receipt.deferred:
                result.warnings.append(
                    f"ledger write deferred for {entry.subject_id} ({entry.outcome.value})"
                )

    async def _refund(self, ctx: SettlementContext, result: SettlementResult) -> None:
        for holding in ctx.reverted_holdings:
            proposal = ctx.proposals.get(holding.proposal_id)
            to_account = (proposal.proposer_account or proposal.proposer_id) if proposal else None
            if to_account is None:
                result.warnings.append(f"no refund account for holding {holding.holding_id}")
                continue
            try:
                handle = await self._escrow.refund(holding, to_account)
                async with self._database.transaction() as session:
                    await SettlementRepository(session).set_refund_handle(holding.holding_id, handle)
            except CollaboratorError as e:
                result.warnings.append(f"refund pending for holding {holding.holding_id}")
                await self._alert(create_refund_failed_alert(holding.holding_id, holding.proposal_id, str(e)))
            except SQLAlchemyError as e:
                logger.error(f"Could not store refund handle for {holding.holding_id}: {e}")
                result.warnings.append(f"refund handle not stored for holding {holding.holding_id}")

    async def _unlock_booking(self, swap: SwapRecord, status: str, result: SettlementResult) -> None:
        if self._bookings is None:
            return
        try:
            await asyncio.wait_for(
                self._bookings.unlock_booking(swap.source_booking_id, f"swap {status}"),
                timeout=self._config.settlement.collaborator_timeout_seconds,
            )
        except (CollaboratorError, asyncio.TimeoutError) as e:
            logger.warning(f"Could not unlock booking {swap.source_booking_id}: {e}")
            result.warnings.append(f"booking {swap.source_booking_id} not unlocked")

    async def _notify(self, event: SettlementEvent) -> None:
        if self._notifier is None:
            return
        try:
            await asyncio.wait_for(
                self._notifier.publish(event),
                timeout=self._config.settlement.collaborator_timeout_seconds,
            )
        except Exception as e:
            logger.warning(f"Settlement event for swap {event.swap_id} not delivered: {e}")

    async def _alert(self, alert: Alert) -> None:
        if self._alerter:
            await self._alerter.send_alert(alert)

    def _spawn(self, coro: Awaitable) -> None:
        task = asyncio.ensure_future(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def drain(self) -> None:
        """Wait for background ledger writes and notifications."""
        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    # --------------------------------------------------------
    # LOADING
    # --------------------------------------------------------

    async def _load_for_proposal(
        self,
        repo: SettlementRepository,
        proposal_id: str,
    ) -> SettlementContext:
        """Locked read of a proposal, its swap and siblings."""
        proposal = await repo.get_proposal(proposal_id)
        if proposal is None:
            raise NotFoundError(f"Proposal {proposal_id} not found", {"proposal_id": proposal_id})

        ctx = await self._load_for_swap(repo, proposal.target_swap_id, all_proposals=True)
        ctx.proposal = ctx.proposals.get(proposal_id)
        if ctx.proposal is None:
            raise NotFoundError(f"Proposal {proposal_id} not found", {"proposal_id": proposal_id})
        return ctx

    async def _load_for_swap(
        self,
        repo: SettlementRepository,
        swap_id: str,
        all_proposals: bool = False,
    ) -> SettlementContext:
        swap = await repo.get_swap(swap_id, for_update=True)
        if swap is None:
            raise NotFoundError(f"Swap {swap_id} not found", {"swap_id": swap_id})

        proposals = await repo.list_proposals_for_swap(
            swap_id,
            status=None if all_proposals else ProposalStatus.PENDING,
            for_update=True,
        )
        return SettlementContext(
            swap=swap,
            proposals={p.proposal_id: p for p in proposals},
        )

    def get_stats(self) -> dict:
        return dict(self._stats)
