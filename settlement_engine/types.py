"""
Settlement Engine - Types.

============================================================
PURPOSE
============================================================
All type definitions for the Settlement Engine.

CRITICAL PRINCIPLE:
    "The Settlement Coordinator is the single writer of
     terminal Swap and Proposal status."

============================================================
"""

from datetime import datetime
from typing import Optional, Dict, Any, List
from dataclasses import dataclass, field
from enum import Enum
from decimal import Decimal


# ============================================================
# SWAP LIFECYCLE STATES
# ============================================================

class SwapStatus(Enum):
    """
    Swap lifecycle state.

    State Machine:

        ACTIVE
          │
          ▼
        PENDING ───► ACCEPTED
          │
          ├──► REJECTED ◄──┐
          │                │ (manual close)
          ├──► CANCELLED ──┤
          │                │
          └──► EXPIRED ────┘

    ACTIVE may also move directly to any terminal state.
    """

    ACTIVE = "active"
    """Listed, no proposals yet."""

    PENDING = "pending"
    """At least one proposal has been submitted."""

    ACCEPTED = "accepted"
    """A proposal was accepted."""

    REJECTED = "rejected"
    """Closed by the owner."""

    CANCELLED = "cancelled"
    """Closed automatically (alternate label for expiration)."""

    EXPIRED = "expired"
    """Closed automatically after its deadline."""

    def is_terminal(self) -> bool:
        """Check if this is a terminal state."""
        return self not in {SwapStatus.ACTIVE, SwapStatus.PENDING}

    def is_open(self) -> bool:
        """Check if swap may still receive proposals."""
        return self in {SwapStatus.ACTIVE, SwapStatus.PENDING}

    def is_auto_closed(self) -> bool:
        """Check if swap was closed by the expiration sweeper."""
        return self in {SwapStatus.EXPIRED, SwapStatus.CANCELLED}


class ProposalStatus(Enum):
    """Proposal lifecycle state."""

    PENDING = "pending"
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    WITHDRAWN = "withdrawn"
    EXPIRED = "expired"

    def is_terminal(self) -> bool:
        """Check if this is a terminal state."""
        return self != ProposalStatus.PENDING


class EscrowStatus(Enum):
    """Escrow holding state."""

    HELD = "held"
    """Funds set aside, awaiting proposal resolution."""

    RELEASED = "released"
    """Funds moved to the swap owner."""

    REVERTED = "reverted"
    """Funds returned to the proposer."""


class SubjectType(Enum):
    """Kind of entity a ledger record or audit event refers to."""

    SWAP = "swap"
    PROPOSAL = "proposal"
    ESCROW = "escrow"


class LedgerOutcome(Enum):
    """Outcome codes written to the external ledger."""

    ACCEPTED = "accepted"
    REJECTED = "rejected"
    WITHDRAWN = "withdrawn"
    EXPIRED = "expired"
    CANCELLED = "cancelled"


class SettlementAction(Enum):
    """Actions that enter the Settlement Coordinator."""

    ACCEPT = "accept"
    REJECT = "reject"
    WITHDRAW = "withdraw"
    EXPIRE = "expire"
    MANUAL_CLOSE = "manual_close"
    SUBMIT = "submit"


class SettlementOutcome(Enum):
    """
    Outcome codes returned to collaborators.

    These are the `status` values of the exposed operations.
    """

    ACCEPTED = "accepted"
    REJECTED = "rejected"
    WITHDRAWN = "withdrawn"
    EXPIRED = "expired"
    CANCELLED = "cancelled"
    CONFLICT = "conflict"
    ALREADY_CLOSED = "already_closed"
    FORBIDDEN = "forbidden"
    INVALID_STATE = "invalid_state"
    NOT_FOUND = "not_found"
    TRANSFER_FAILED = "transfer_failed"
    TIMEOUT = "timeout"
    INVALID_REQUEST = "invalid_request"
    SKIPPED = "skipped"

    def is_success(self) -> bool:
        """Check if the operation changed state as requested."""
        return self in {
            SettlementOutcome.ACCEPTED,
            SettlementOutcome.REJECTED,
            SettlementOutcome.WITHDRAWN,
            SettlementOutcome.EXPIRED,
            SettlementOutcome.CANCELLED,
        }


class SweeperState(Enum):
    """Expiration sweeper state."""

    IDLE = "idle"
    RUNNING = "running"


# ============================================================
# RECORDS
# ============================================================

@dataclass
class SwapRecord:
    """
    A listing of one exchangeable booking.

    `expires_at` is immutable after creation.
    """

    swap_id: str
    """Unique swap identifier."""

    owner_id: str
    """Owning party."""

    source_booking_id: str
    """Booking offered by this swap."""

    status: SwapStatus
    """Current status."""

    expires_at: datetime
    """Expiration deadline."""

    created_at: datetime = field(default_factory=datetime.utcnow)
    """Creation time."""

    owner_account: Optional[str] = None
    """Payout account / ledger address of the owner."""

    version: int = 1
    """Optimistic concurrency version."""

    closed_at: Optional[datetime] = None
    """When the swap reached a terminal state."""

    def is_past_deadline(self, now: datetime) -> bool:
        """Check whether the deadline has passed at `now`."""
        return now >= self.expires_at


@dataclass
class ProposalRecord:
    """An offer against a target swap."""

    proposal_id: str
    target_swap_id: str
    proposer_id: str
    status: ProposalStatus
    source_swap_id: Optional[str] = None
    amount: Optional[Decimal] = None
    currency: str = "USD"
    proposer_account: Optional[str] = None
    rejection_reason: Optional[str] = None
    created_at: datetime = field(default_factory=datetime.utcnow)
    responded_at: Optional[datetime] = None
    responded_by: Optional[str] = None
    version: int = 1

    @property
    def is_financial(self) -> bool:
        """Whether the proposal carries a cash component."""
        return self.amount is not None and self.amount > 0


@dataclass
class EscrowHoldingRecord:
    """Funds set aside for a financial proposal."""

    holding_id: str
    proposal_id: str
    amount: Decimal
    status: EscrowStatus
    currency: str = "USD"
    escrow_account_id: Optional[str] = None
    transfer_handle: Optional[str] = None
    refund_handle: Optional[str] = None
    released_at: Optional[datetime] = None
    reverted_at: Optional[datetime] = None
    version: int = 1


@dataclass
class LedgerEntry:
    """
    Immutable outcome entry, as written to the external ledger.

    The pair (subject_id, outcome) is the idempotency key.
    """

    subject_id: str
    """Swap or proposal identifier."""

    subject_type: SubjectType
    """Kind of subject."""

    outcome: LedgerOutcome
    """Outcome code."""

    participants: List[str] = field(default_factory=list)
    """Participant addresses."""

    occurred_at: datetime = field(default_factory=datetime.utcnow)
    """When the outcome was committed."""

    details: Dict[str, Any] = field(default_factory=dict)
    """Additional payload."""

    @property
    def idempotency_key(self) -> str:
        """Key used to deduplicate retried writes."""
        return f"{self.subject_id}:{self.outcome.value}"


@dataclass
class LedgerReceipt:
    """Result of a ledger write."""

    subject_id: str
    outcome: LedgerOutcome
    transaction_handle: Optional[str] = None
    recorded: bool = False
    deferred: bool = False
    duplicate: bool = False
    attempts: int = 0
    error: Optional[str] = None


# ============================================================
# TRANSITIONS & RESULTS
# ============================================================

@dataclass
class StatusChange:
    """A single planned status change for one entity."""

    subject_type: SubjectType
    subject_id: str
    from_status: Optional[str]
    to_status: str
    expected_version: int
    reason: Optional[str] = None


@dataclass
class SettlementEvent:
    """
    Fire-and-forget settlement event for the notification collaborator.
    """

    action: SettlementAction
    outcome: SettlementOutcome
    swap_id: str
    proposal_id: Optional[str] = None
    parties: List[str] = field(default_factory=list)
    reason: Optional[str] = None
    amount: Optional[Decimal] = None
    occurred_at: datetime = field(default_factory=datetime.utcnow)

    def to_payload(self) -> Dict[str, Any]:
        """Serialize for transport."""
        return {
            "action": self.action.value,
            "outcome": self.outcome.value,
            "swap_id": self.swap_id,
            "proposal_id": self.proposal_id,
            "parties": list(self.parties),
            "reason": self.reason,
            "amount": str(self.amount) if self.amount is not None else None,
            "occurred_at": self.occurred_at.isoformat(),
        }


@dataclass
class SettlementResult:
    """Result of a successful coordinator operation."""

    outcome: SettlementOutcome
    """What happened."""

    swap_id: str
    """Affected swap."""

    proposal_id: Optional[str] = None
    """Affected proposal (None for swap-level operations)."""

    swap_status: Optional[SwapStatus] = None
    """Swap status after the operation."""

    proposal_status: Optional[ProposalStatus] = None
    """Proposal status after the operation."""

    cascaded_proposal_ids: List[str] = field(default_factory=list)
    """Sibling proposals driven terminal in the same transaction."""

    transfer_handle: Optional[str] = None
    """Escrow transfer handle, for financial acceptances."""

    ledger_receipts: List[LedgerReceipt] = field(default_factory=list)
    """Ledger writes performed after commit."""

    warnings: List[str] = field(default_factory=list)
    """Non-fatal problems (deferred ledger writes, notification failures)."""

    completed_at: datetime = field(default_factory=datetime.utcnow)

    @property
    def ledger_deferred(self) -> bool:
        """Whether any ledger write was queued for retry."""
        return any(r.deferred for r in self.ledger_receipts)


@dataclass
class SweepResult:
    """Summary of one sweeper tick."""

    run_id: str
    started_at: datetime
    completed_at: Optional[datetime] = None
    candidates: int = 0
    expired: int = 0
    skipped: int = 0
    failed: int = 0
    tick_skipped: bool = False
    failures: Dict[str, str] = field(default_factory=dict)

    @property
    def processed(self) -> int:
        """Number of swaps handled this tick (successfully or not)."""
        return self.expired + self.skipped + self.failed


@dataclass
class SweeperStatus:
    """Health snapshot of the expiration sweeper."""

    state: SweeperState
    last_run_at: Optional[datetime] = None
    last_run_id: Optional[str] = None
    items_processed: int = 0
    items_failed: int = 0
    total_runs: int = 0
    skipped_ticks: int = 0
    interval_seconds: float = 0.0


# ============================================================
# EXCEPTIONS
# ============================================================

class SettlementError(Exception):
    """Base exception for the Settlement Engine."""

    code: str = "SETTLEMENT_ERROR"

    def __init__(
        self,
        message: str,
        details: Optional[Dict[str, Any]] = None,
        code: Optional[str] = None,
    ):
        super().__init__(message)
        self.message = message
        self.details = details or {}
        if code:
            self.code = code


class NotFoundError(SettlementError):
    """Swap, proposal or holding does not exist."""
    code = "NOT_FOUND"


class ValidationError(SettlementError):
    """Request is malformed (bad amount, self-proposal, ...)."""
    code = "INVALID_REQUEST"


class ForbiddenError(SettlementError):
    """Actor is not authorized for this action."""
    code = "FORBIDDEN"


class InvalidStateError(SettlementError):
    """Transition is not valid from the current status."""
    code = "INVALID_STATE"


class ExpiredError(InvalidStateError):
    """Deadline has passed."""
    code = "EXPIRED"


class ConflictError(InvalidStateError):
    """Lost the race: the subject was finalized by another transition."""
    code = "CONFLICT"


class TransferFailedError(SettlementError):
    """Escrow transfer failed; the transaction was rolled back."""
    code = "TRANSFER_FAILED"


class SettlementTimeoutError(SettlementError):
    """Operation exceeded its time budget and was aborted."""
    code = "TIMEOUT"


class LedgerWriteDeferred(SettlementError):
    """
    Ledger write exhausted its retries and was queued.

    Never propagated to callers; surfaced as a warning.
    """
    code = "LEDGER_WRITE_DEFERRED"


class CollaboratorError(Exception):
    """External collaborator (ledger, escrow, booking) failure."""

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        is_retryable: bool = False,
    ):
        super().__init__(message)
        self.code = code
        self.is_retryable = is_retryable
