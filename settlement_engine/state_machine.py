"""
Settlement Engine - Proposal State Machine.

============================================================
PURPOSE
============================================================
Pure transition rules for swaps and proposals. No I/O; the
coordinator and sweeper consult these functions and persist
the resulting plan inside one transaction.

SWAP STATES:

    ACTIVE ──► PENDING ──► ACCEPTED
       │          │
       │          ├──► REJECTED ◄────────┐
       │          ├──► CANCELLED ────────┤ manual close
       │          └──► EXPIRED ──────────┘
       └──────────► (any terminal)

PROPOSAL STATES:

    PENDING ──► ACCEPTED | REJECTED | WITHDRAWN | EXPIRED

INVARIANTS:
- Terminal proposals are final
- Acceptance cascades rejection to every pending sibling
- Acceptance is checked against the deadline, not only status
- Expired/cancelled swaps may still reject leftover proposals

============================================================
"""

import logging
from datetime import datetime
from typing import Optional, Set, Dict, List, Tuple
from dataclasses import dataclass, field
from decimal import Decimal

from .types import (
    SwapStatus,
    ProposalStatus,
    SubjectType,
    LedgerOutcome,
    SettlementAction,
    SwapRecord,
    ProposalRecord,
    StatusChange,
    ForbiddenError,
    InvalidStateError,
    ExpiredError,
    ConflictError,
    ValidationError,
)


logger = logging.getLogger(__name__)


# ============================================================
# STATE TRANSITION RULES
# ============================================================

VALID_SWAP_TRANSITIONS: Dict[SwapStatus, Set[SwapStatus]] = {
    SwapStatus.ACTIVE: {
        SwapStatus.PENDING,
        SwapStatus.ACCEPTED,
        SwapStatus.REJECTED,
        SwapStatus.CANCELLED,
        SwapStatus.EXPIRED,
    },
    SwapStatus.PENDING: {
        SwapStatus.ACCEPTED,
        SwapStatus.REJECTED,
        SwapStatus.CANCELLED,
        SwapStatus.EXPIRED,
    },
    # Owner closure of an automatically closed swap
    SwapStatus.EXPIRED: {SwapStatus.REJECTED},
    SwapStatus.CANCELLED: {SwapStatus.REJECTED},
    SwapStatus.ACCEPTED: set(),
    SwapStatus.REJECTED: set(),
}

VALID_PROPOSAL_TRANSITIONS: Dict[ProposalStatus, Set[ProposalStatus]] = {
    ProposalStatus.PENDING: {
        ProposalStatus.ACCEPTED,
        ProposalStatus.REJECTED,
        ProposalStatus.WITHDRAWN,
        ProposalStatus.EXPIRED,
    },
    ProposalStatus.ACCEPTED: set(),
    ProposalStatus.REJECTED: set(),
    ProposalStatus.WITHDRAWN: set(),
    ProposalStatus.EXPIRED: set(),
}

SWAP_LEDGER_OUTCOMES: Dict[SwapStatus, LedgerOutcome] = {
    SwapStatus.ACCEPTED: LedgerOutcome.ACCEPTED,
    SwapStatus.REJECTED: LedgerOutcome.REJECTED,
    SwapStatus.CANCELLED: LedgerOutcome.CANCELLED,
    SwapStatus.EXPIRED: LedgerOutcome.EXPIRED,
}

PROPOSAL_LEDGER_OUTCOMES: Dict[ProposalStatus, LedgerOutcome] = {
    ProposalStatus.ACCEPTED: LedgerOutcome.ACCEPTED,
    ProposalStatus.REJECTED: LedgerOutcome.REJECTED,
    ProposalStatus.WITHDRAWN: LedgerOutcome.WITHDRAWN,
    ProposalStatus.EXPIRED: LedgerOutcome.EXPIRED,
}


# ============================================================
# TRANSITION GUARD
# ============================================================

class TransitionGuard:
    """
    Guard for status transitions.

    Ensures transitions are valid and provides reason for denial.
    """

    @staticmethod
    def can_transition_swap(
        from_status: SwapStatus,
        to_status: SwapStatus,
    ) -> Tuple[bool, str]:
        """
        Check if a swap transition is allowed.

        Returns:
            Tuple of (allowed, reason)
        """
        if to_status in VALID_SWAP_TRANSITIONS.get(from_status, set()):
            return True, "Valid transition"

        if from_status.is_terminal():
            return False, f"Swap is already {from_status.value}"

        return False, f"Invalid transition: {from_status.value} -> {to_status.value}"

    @staticmethod
    def can_transition_proposal(
        from_status: ProposalStatus,
        to_status: ProposalStatus,
    ) -> Tuple[bool, str]:
        """
        Check if a proposal transition is allowed.

        Returns:
            Tuple of (allowed, reason)
        """
        if to_status in VALID_PROPOSAL_TRANSITIONS.get(from_status, set()):
            return True, "Valid transition"

        if from_status.is_terminal():
            return False, f"Proposal is already {from_status.value}"

        return False, f"Invalid transition: {from_status.value} -> {to_status.value}"


# ============================================================
# TRANSITION PLAN
# ============================================================

@dataclass
class TransitionPlan:
    """
    In-memory result of a transition.

    Everything in a plan is persisted in one transaction or
    not at all.
    """

    action: SettlementAction
    swap_id: str
    proposal_id: Optional[str] = None

    swap_change: Optional[StatusChange] = None
    """Swap status change, if any."""

    proposal_changes: List[StatusChange] = field(default_factory=list)
    """Target proposal first, then cascaded siblings."""

    escrow_release: Optional[str] = None
    """Proposal whose holding must be released to the swap owner."""

    escrow_reverts: List[str] = field(default_factory=list)
    """Proposals whose holdings must be reverted to the proposer."""

    ledger_outcomes: List[Tuple[SubjectType, str, LedgerOutcome]] = field(default_factory=list)
    """Outcomes to attest after commit."""

    already_closed: bool = False
    """Idempotent no-op (manual close of an already rejected swap)."""

    transfer_amount: Optional[Decimal] = None
    """Amount to move for a financial acceptance."""

    @property
    def cascaded_proposal_ids(self) -> List[str]:
        """Proposal ids changed besides the target."""
        return [
            c.subject_id for c in self.proposal_changes
            if c.subject_id != self.proposal_id
        ]

    @property
    def is_empty(self) -> bool:
        """Whether the plan changes nothing."""
        return self.swap_change is None and not self.proposal_changes


# ============================================================
# SETTLEMENT STATE MACHINE
# ============================================================

class SettlementStateMachine:
    """
    Pure transition functions for swaps and proposals.

    Each `plan_*` method either raises a domain error or
    returns a TransitionPlan. Nothing is mutated.
    """

    def __init__(
        self,
        sibling_rejection_reason: str = "swap accepted elsewhere",
        manual_close_reason: str = "swap closed by owner",
        expired_status: SwapStatus = SwapStatus.EXPIRED,
    ):
        self._sibling_reason = sibling_rejection_reason
        self._manual_close_reason = manual_close_reason
        self._expired_status = expired_status

    @property
    def expired_status(self) -> SwapStatus:
        """Terminal label used for automatic expiration."""
        return self._expired_status

    # --------------------------------------------------------
    # HELPERS
    # --------------------------------------------------------

    def _swap_change(
        self,
        swap: SwapRecord,
        to_status: SwapStatus,
        reason: Optional[str] = None,
    ) -> StatusChange:
        allowed, why = TransitionGuard.can_transition_swap(swap.status, to_status)
        if not allowed:
            raise InvalidStateError(why, {"swap_id": swap.swap_id})
        return StatusChange(
            subject_type=SubjectType.SWAP,
            subject_id=swap.swap_id,
            from_status=swap.status.value,
            to_status=to_status.value,
            expected_version=swap.version,
            reason=reason,
        )

    def _proposal_change(
        self,
        proposal: ProposalRecord,
        to_status: ProposalStatus,
        reason: Optional[str] = None,
    ) -> StatusChange:
        allowed, why = TransitionGuard.can_transition_proposal(proposal.status, to_status)
        if not allowed:
            raise ConflictError(why, {"proposal_id": proposal.proposal_id})
        return StatusChange(
            subject_type=SubjectType.PROPOSAL,
            subject_id=proposal.proposal_id,
            from_status=proposal.status.value,
            to_status=to_status.value,
            expected_version=proposal.version,
            reason=reason,
        )

    @staticmethod
    def _require_pending(proposal: ProposalRecord) -> None:
        if proposal.status.is_terminal():
            raise ConflictError(
                f"Proposal {proposal.proposal_id} was already {proposal.status.value}",
                {"proposal_id": proposal.proposal_id, "status": proposal.status.value},
            )

    @staticmethod
    def _require_target(swap: SwapRecord, proposal: ProposalRecord) -> None:
        if proposal.target_swap_id != swap.swap_id:
            raise InvalidStateError(
                f"Proposal {proposal.proposal_id} does not target swap {swap.swap_id}",
                {"proposal_id": proposal.proposal_id, "swap_id": swap.swap_id},
            )

    def _cascade(
        self,
        plan: TransitionPlan,
        proposals: List[ProposalRecord],
        to_status: ProposalStatus,
        reason: Optional[str],
        exclude: Optional[str] = None,
    ) -> None:
        outcome = PROPOSAL_LEDGER_OUTCOMES[to_status]
        for sibling in proposals:
            if sibling.proposal_id == exclude or sibling.status != ProposalStatus.PENDING:
                continue
            plan.proposal_changes.append(self._proposal_change(sibling, to_status, reason))
            if sibling.is_financial:
                plan.escrow_reverts.append(sibling.proposal_id)
            plan.ledger_outcomes.append(
                (SubjectType.PROPOSAL, sibling.proposal_id, outcome)
            )

    # --------------------------------------------------------
    # ACCEPT
    # --------------------------------------------------------

    def plan_accept(
        self,
        swap: SwapRecord,
        proposal: ProposalRecord,
        siblings: List[ProposalRecord],
        actor_id: str,
        now: datetime,
    ) -> TransitionPlan:
        """
        Accept a pending proposal.

        Swap -> accepted, proposal -> accepted, every other
        pending proposal on the swap -> rejected.
        """
        if actor_id != swap.owner_id:
            raise ForbiddenError(
                "Only the swap owner can accept proposals",
                {"swap_id": swap.swap_id, "actor_id": actor_id},
            )
        self._require_target(swap, proposal)

        if swap.status.is_auto_closed():
            raise ExpiredError(
                f"Swap {swap.swap_id} has expired",
                {"swap_id": swap.swap_id, "status": swap.status.value},
            )
        if swap.status.is_terminal():
            raise ConflictError(
                f"Swap {swap.swap_id} was already {swap.status.value}",
                {"swap_id": swap.swap_id, "status": swap.status.value},
            )
        # The sweeper may not have run yet
        if swap.is_past_deadline(now):
            raise ExpiredError(
                f"Swap {swap.swap_id} passed its deadline at {swap.expires_at.isoformat()}",
                {"swap_id": swap.swap_id, "expires_at": swap.expires_at.isoformat()},
            )
        self._require_pending(proposal)

        plan = TransitionPlan(
            action=SettlementAction.ACCEPT,
            swap_id=swap.swap_id,
            proposal_id=proposal.proposal_id,
        )
        plan.swap_change = self._swap_change(swap, SwapStatus.ACCEPTED, "proposal accepted")
        plan.proposal_changes.append(
            self._proposal_change(proposal, ProposalStatus.ACCEPTED)
        )
        plan.ledger_outcomes.append(
            (SubjectType.PROPOSAL, proposal.proposal_id, LedgerOutcome.ACCEPTED)
        )
        if proposal.is_financial:
            plan.escrow_release = proposal.proposal_id
            plan.transfer_amount = proposal.amount

        self._cascade(
            plan,
            siblings,
            ProposalStatus.REJECTED,
            self._sibling_reason,
            exclude=proposal.proposal_id,
        )
        return plan

    # --------------------------------------------------------
    # REJECT / WITHDRAW
    # --------------------------------------------------------

    def plan_reject(
        self,
        swap: SwapRecord,
        proposal: ProposalRecord,
        actor_id: str,
        reason: Optional[str] = None,
    ) -> TransitionPlan:
        """
        Reject a pending proposal as the swap owner.

        Allowed on expired/cancelled swaps for cleanup; refused
        once the swap is accepted.
        """
        if actor_id != swap.owner_id:
            raise ForbiddenError(
                "Only the swap owner can reject proposals",
                {"swap_id": swap.swap_id, "actor_id": actor_id},
            )
        self._require_target(swap, proposal)
        self._require_pending(proposal)

        if swap.status == SwapStatus.ACCEPTED:
            raise InvalidStateError(
                f"Swap {swap.swap_id} is already resolved",
                {"swap_id": swap.swap_id, "status": swap.status.value},
            )

        plan = TransitionPlan(
            action=SettlementAction.REJECT,
            swap_id=swap.swap_id,
            proposal_id=proposal.proposal_id,
        )
        plan.proposal_changes.append(
            self._proposal_change(proposal, ProposalStatus.REJECTED, reason)
        )
        if proposal.is_financial:
            plan.escrow_reverts.append(proposal.proposal_id)
        plan.ledger_outcomes.append(
            (SubjectType.PROPOSAL, proposal.proposal_id, LedgerOutcome.REJECTED)
        )
        return plan

    def plan_withdraw(
        self,
        swap: SwapRecord,
        proposal: ProposalRecord,
        actor_id: str,
        reason: Optional[str] = None,
    ) -> TransitionPlan:
        """Withdraw a pending proposal as its proposer."""
        if actor_id != proposal.proposer_id:
            raise ForbiddenError(
                "Only the proposer can withdraw a proposal",
                {"proposal_id": proposal.proposal_id, "actor_id": actor_id},
            )
        self._require_target(swap, proposal)
        self._require_pending(proposal)

        plan = TransitionPlan(
            action=SettlementAction.WITHDRAW,
            swap_id=swap.swap_id,
            proposal_id=proposal.proposal_id,
        )
        plan.proposal_changes.append(
            self._proposal_change(proposal, ProposalStatus.WITHDRAWN, reason)
        )
        if proposal.is_financial:
            plan.escrow_reverts.append(proposal.proposal_id)
        plan.ledger_outcomes.append(
            (SubjectType.PROPOSAL, proposal.proposal_id, LedgerOutcome.WITHDRAWN)
        )
        return plan

    # --------------------------------------------------------
    # EXPIRE
    # --------------------------------------------------------

    def plan_expire(
        self,
        swap: SwapRecord,
        proposals: List[ProposalRecord],
        now: datetime,
    ) -> TransitionPlan:
        """
        Close an overdue swap and expire its pending proposals.
        """
        if not swap.status.is_open():
            raise ConflictError(
                f"Swap {swap.swap_id} was already {swap.status.value}",
                {"swap_id": swap.swap_id, "status": swap.status.value},
            )
        if not swap.is_past_deadline(now):
            raise InvalidStateError(
                f"Swap {swap.swap_id} is not due until {swap.expires_at.isoformat()}",
                {"swap_id": swap.swap_id},
            )

        plan = TransitionPlan(action=SettlementAction.EXPIRE, swap_id=swap.swap_id)
        plan.swap_change = self._swap_change(swap, self._expired_status, "deadline passed")
        plan.ledger_outcomes.append(
            (SubjectType.SWAP, swap.swap_id, SWAP_LEDGER_OUTCOMES[self._expired_status])
        )
        self._cascade(plan, proposals, ProposalStatus.EXPIRED, "swap expired")
        return plan

    # --------------------------------------------------------
    # MANUAL CLOSE
    # --------------------------------------------------------

    def plan_manual_close(
        self,
        swap: SwapRecord,
        proposals: List[ProposalRecord],
        actor_id: str,
        now: datetime,
    ) -> TransitionPlan:
        """
        Owner closes an expired swap as rejected.

        Allowed when the swap is expired/cancelled, or still
        open but past its deadline. Idempotent once rejected.
        """
        if actor_id != swap.owner_id:
            raise ForbiddenError(
                "Only the swap owner can close this swap",
                {"swap_id": swap.swap_id, "actor_id": actor_id},
            )

        plan = TransitionPlan(action=SettlementAction.MANUAL_CLOSE, swap_id=swap.swap_id)

        if swap.status == SwapStatus.REJECTED:
            plan.already_closed = True
            return plan

        if swap.status == SwapStatus.ACCEPTED:
            raise InvalidStateError(
                f"Swap {swap.swap_id} was accepted and cannot be closed",
                {"swap_id": swap.swap_id},
            )

        if swap.status.is_open() and not swap.is_past_deadline(now):
            raise InvalidStateError(
                f"Swap {swap.swap_id} has not expired yet",
                {"swap_id": swap.swap_id, "expires_at": swap.expires_at.isoformat()},
            )

        plan.swap_change = self._swap_change(swap, SwapStatus.REJECTED, "closed by owner")
        plan.ledger_outcomes.append(
            (SubjectType.SWAP, swap.swap_id, LedgerOutcome.REJECTED)
        )
        self._cascade(plan, proposals, ProposalStatus.REJECTED, self._manual_close_reason)
        return plan

    # --------------------------------------------------------
    # SUBMIT
    # --------------------------------------------------------

    def plan_submit(
        self,
        swap: SwapRecord,
        proposer_id: str,
        now: datetime,
        amount: Optional[Decimal] = None,
        source_swap: Optional[SwapRecord] = None,
        max_amount: Optional[Decimal] = None,
    ) -> TransitionPlan:
        """
        Validate a new proposal against its target swap.

        Moves the swap active -> pending.
        """
        if proposer_id == swap.owner_id:
            raise ValidationError(
                "Cannot propose on your own swap",
                {"swap_id": swap.swap_id, "proposer_id": proposer_id},
            )
        if swap.status.is_auto_closed():
            raise ExpiredError(f"Swap {swap.swap_id} has expired", {"swap_id": swap.swap_id})
        if swap.status.is_terminal():
            raise InvalidStateError(
                f"Swap {swap.swap_id} is {swap.status.value} and no longer takes proposals",
                {"swap_id": swap.swap_id},
            )
        if swap.is_past_deadline(now):
            raise ExpiredError(f"Swap {swap.swap_id} has expired", {"swap_id": swap.swap_id})

        if amount is not None:
            if amount <= 0:
                raise ValidationError("Cash amount must be positive", {"amount": str(amount)})
            if max_amount is not None and amount > max_amount:
                raise ValidationError(
                    f"Cash amount exceeds the maximum of {max_amount}",
                    {"amount": str(amount)},
                )

        if source_swap is not None:
            if source_swap.swap_id == swap.swap_id:
                raise ValidationError("A swap cannot be offered against itself")
            if source_swap.owner_id != proposer_id:
                raise ForbiddenError(
                    "Source swap belongs to another party",
                    {"source_swap_id": source_swap.swap_id},
                )
            if not source_swap.status.is_open():
                raise InvalidStateError(
                    f"Source swap {source_swap.swap_id} is {source_swap.status.value}",
                    {"source_swap_id": source_swap.swap_id},
                )
        elif amount is None:
            raise ValidationError("A proposal needs a source swap or a cash amount")

        plan = TransitionPlan(action=SettlementAction.SUBMIT, swap_id=swap.swap_id)
        if swap.status == SwapStatus.ACTIVE:
            plan.swap_change = self._swap_change(swap, SwapStatus.PENDING, "proposal received")
        return plan
