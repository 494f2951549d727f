"""
Settlement Engine - In-Memory Collaborators.

============================================================
PURPOSE
============================================================
In-memory collaborators for tests and local runs.

FEATURES:
- Configurable latency
- Error injection per call
- Full state tracking for assertions

============================================================
"""

import asyncio
import logging
import uuid
from typing import Optional, Dict, List
from dataclasses import dataclass

from ..types import LedgerEntry, SettlementEvent, CollaboratorError
from .base import (
    LedgerClient,
    EscrowProvider,
    BookingGateway,
    SettlementNotifier,
    TransferRequest,
    TransferStatus,
    BookingSnapshot,
)


logger = logging.getLogger(__name__)


# ============================================================
# IN-MEMORY LEDGER
# ============================================================

@dataclass
class LedgerWrite:
    """One accepted ledger write."""

    handle: str
    entry: LedgerEntry


class InMemoryLedgerClient(LedgerClient):
    """
    In-memory ledger.

    Deduplicates on the entry's idempotency key, like the
    real ledger gateway.
    """

    def __init__(self, latency_seconds: float = 0.0):
        self._latency = latency_seconds
        self._writes: Dict[str, LedgerWrite] = {}
        self._failures_remaining = 0
        self._error_code = "LEDGER_UNAVAILABLE"
        self._unavailable = False
        self.submit_calls = 0

    @property
    def ledger_id(self) -> str:
        return "in-memory"

    async def submit(self, entry: LedgerEntry) -> str:
        self.submit_calls += 1
        if self._latency:
            await asyncio.sleep(self._latency)

        if self._unavailable or self._failures_remaining > 0:
            if self._failures_remaining > 0:
                self._failures_remaining -= 1
            raise CollaboratorError(
                f"Injected ledger error: {self._error_code}",
                code=self._error_code,
                is_retryable=True,
            )

        existing = self._writes.get(entry.idempotency_key)
        if existing:
            return existing.handle

        handle = f"ledger-{uuid.uuid4().hex[:16]}"
        self._writes[entry.idempotency_key] = LedgerWrite(handle=handle, entry=entry)
        return handle

    # --------------------------------------------------------
    # TEST CONTROLS
    # --------------------------------------------------------

    def inject_error(self, count: int = 1, code: str = "LEDGER_UNAVAILABLE") -> None:
        """Fail the next `count` submissions."""
        self._failures_remaining = count
        self._error_code = code

    def set_unavailable(self, unavailable: bool = True) -> None:
        """Fail every submission until cleared."""
        self._unavailable = unavailable

    @property
    def writes(self) -> List[LedgerWrite]:
        return list(self._writes.values())

    def outcomes_for(self, subject_id: str) -> List[str]:
        return [
            w.entry.outcome.value for w in self._writes.values()
            if w.entry.subject_id == subject_id
        ]

    def reset(self) -> None:
        self._writes.clear()
        self._failures_remaining = 0
        self._unavailable = False
        self.submit_calls = 0


# ============================================================
# IN-MEMORY ESCROW
# ============================================================

class InMemoryEscrowProvider(EscrowProvider):
    """
    In-memory escrow provider.

    Transfers confirm after `confirm_after_polls` status
    queries unless stalled or failed by injection.
    """

    def __init__(
        self,
        latency_seconds: float = 0.0,
        confirm_after_polls: int = 0,
    ):
        self._latency = latency_seconds
        self._confirm_after_polls = confirm_after_polls
        self._transfers: Dict[str, TransferRequest] = {}
        self._by_key: Dict[str, str] = {}
        self._polls: Dict[str, int] = {}
        self._statuses: Dict[str, TransferStatus] = {}
        self._refunds: Dict[str, TransferRequest] = {}
        self._force_next_error: Optional[str] = None
        self._stalled = False

    async def initiate_transfer(self, request: TransferRequest) -> str:
        if self._latency:
            await asyncio.sleep(self._latency)

        if self._force_next_error == "transfer":
            self._force_next_error = None
            raise CollaboratorError("Injected transfer error", code="TRANSFER_REJECTED")

        if request.idempotency_key and request.idempotency_key in self._by_key:
            return self._by_key[request.idempotency_key]

        handle = f"xfer-{uuid.uuid4().hex[:16]}"
        self._transfers[handle] = request
        self._statuses[handle] = TransferStatus.PENDING
        self._polls[handle] = 0
        if request.idempotency_key:
            self._by_key[request.idempotency_key] = handle

        if self._force_next_error == "verify":
            self._force_next_error = None
            self._statuses[handle] = TransferStatus.FAILED
        return handle

    async def get_transfer_status(self, handle: str) -> TransferStatus:
        if handle not in self._statuses:
            raise CollaboratorError(f"Unknown transfer {handle}", code="UNKNOWN_TRANSFER")

        status = self._statuses[handle]
        if status != TransferStatus.PENDING or self._stalled:
            return status

        self._polls[handle] += 1
        if self._polls[handle] > self._confirm_after_polls:
            self._statuses[handle] = TransferStatus.CONFIRMED
        return self._statuses[handle]

    async def refund(self, request: TransferRequest) -> str:
        if self._latency:
            await asyncio.sleep(self._latency)

        if self._force_next_error == "refund":
            self._force_next_error = None
            raise CollaboratorError("Injected refund error", code="REFUND_REJECTED", is_retryable=True)

        handle = f"refund-{uuid.uuid4().hex[:16]}"
        self._refunds[handle] = request
        return handle

    # --------------------------------------------------------
    # TEST CONTROLS
    # --------------------------------------------------------

    def inject_error(self, stage: str) -> None:
        """
        Fail the next call at a stage.

        Args:
            stage: "transfer", "verify" or "refund"
        """
        self._force_next_error = stage

    def stall(self, stalled: bool = True) -> None:
        """Keep every transfer pending (verification times out)."""
        self._stalled = stalled

    @property
    def transfers(self) -> Dict[str, TransferRequest]:
        return dict(self._transfers)

    @property
    def confirmed_transfers(self) -> List[TransferRequest]:
        return [
            self._transfers[h] for h, s in self._statuses.items()
            if s == TransferStatus.CONFIRMED
        ]

    @property
    def refunds(self) -> List[TransferRequest]:
        return list(self._refunds.values())


# ============================================================
# IN-MEMORY BOOKINGS
# ============================================================

class InMemoryBookingGateway(BookingGateway):
    """In-memory booking collaborator."""

    def __init__(self):
        self._bookings: Dict[str, BookingSnapshot] = {}
        self.unlocked: List[str] = []
        self.fail_unlock = False

    def add_booking(self, booking_id: str, owner_id: str, locked: bool = True) -> None:
        self._bookings[booking_id] = BookingSnapshot(
            booking_id=booking_id,
            owner_id=owner_id,
            locked=locked,
        )

    async def get_booking(self, booking_id: str) -> Optional[BookingSnapshot]:
        return self._bookings.get(booking_id)

    async def unlock_booking(self, booking_id: str, reason: str) -> None:
        if self.fail_unlock:
            raise CollaboratorError(f"Injected unlock error for {booking_id}", code="BOOKING_UNAVAILABLE")
        booking = self._bookings.get(booking_id)
        if booking:
            booking.locked = False
        self.unlocked.append(booking_id)


# ============================================================
# RECORDING NOTIFIER
# ============================================================

class RecordingNotifier(SettlementNotifier):
    """Keeps published events in memory."""

    def __init__(self):
        self.events: List[SettlementEvent] = []
        self.fail = False

    async def publish(self, event: SettlementEvent) -> None:
        if self.fail:
            raise CollaboratorError("Injected notifier error", code="NOTIFIER_UNAVAILABLE")
        self.events.append(event)
