"""
Settlement Engine - Collaborator Interfaces.

============================================================
PURPOSE
============================================================
Abstract interfaces for the services the coordinator talks to.

COLLABORATORS:
- LedgerClient: append-only external ledger
- EscrowProvider: moves held funds
- BookingGateway: locks/unlocks the underlying bookings
- SettlementNotifier: fire-and-forget event delivery

DESIGN PRINCIPLES:
- Provider-agnostic interface
- Clean separation from settlement logic
- Fully testable with in-memory adapters

Failures are raised as CollaboratorError.

============================================================
"""

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Optional
from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum

from ..types import LedgerEntry, SettlementEvent


# ============================================================
# ESCROW TYPES
# ============================================================

class TransferStatus(Enum):
    """Escrow transfer status as reported by the provider."""

    PENDING = "pending"
    CONFIRMED = "confirmed"
    FAILED = "failed"


@dataclass
class TransferRequest:
    """Request to move held funds."""

    holding_id: str
    """Holding being released or refunded."""

    to_account: str
    """Receiving account."""

    amount: Decimal
    """Amount to move."""

    currency: str = "USD"

    from_account: Optional[str] = None
    """Escrow account the funds are held in."""

    idempotency_key: Optional[str] = None
    """Provider-side deduplication key."""


# ============================================================
# BOOKING TYPES
# ============================================================

@dataclass
class BookingSnapshot:
    """Read-only view of a booking."""

    booking_id: str
    owner_id: str
    locked: bool = False
    check_in: Optional[datetime] = None
    details: dict = field(default_factory=dict)


# ============================================================
# LEDGER CLIENT
# ============================================================

class LedgerClient(ABC):
    """Append-only ledger of settlement outcomes."""

    @property
    @abstractmethod
    def ledger_id(self) -> str:
        """Ledger identifier."""
        pass

    @abstractmethod
    async def submit(self, entry: LedgerEntry) -> str:
        """
        Append an entry.

        Args:
            entry: Outcome to record

        Returns:
            Transaction handle

        Raises:
            CollaboratorError: On failure
        """
        pass

    async def close(self) -> None:
        """Release resources."""
        pass


# ============================================================
# ESCROW PROVIDER
# ============================================================

class EscrowProvider(ABC):
    """Moves funds held for financial proposals."""

    @abstractmethod
    async def initiate_transfer(self, request: TransferRequest) -> str:
        """
        Start a transfer.

        Returns:
            Transfer handle

        Raises:
            CollaboratorError: On failure
        """
        pass

    @abstractmethod
    async def get_transfer_status(self, handle: str) -> TransferStatus:
        """Current status of a transfer."""
        pass

    @abstractmethod
    async def refund(self, request: TransferRequest) -> str:
        """
        Return held funds to the proposer.

        Returns:
            Refund handle
        """
        pass

    async def close(self) -> None:
        """Release resources."""
        pass


# ============================================================
# BOOKING GATEWAY
# ============================================================

class BookingGateway(ABC):
    """Booking collaborator."""

    @abstractmethod
    async def get_booking(self, booking_id: str) -> Optional[BookingSnapshot]:
        pass

    @abstractmethod
    async def unlock_booking(self, booking_id: str, reason: str) -> None:
        """Release a booking locked by an open swap."""
        pass

    async def close(self) -> None:
        pass


# ============================================================
# SETTLEMENT NOTIFIER
# ============================================================

class SettlementNotifier(ABC):
    """Receives settlement events. Delivery is best-effort."""

    @abstractmethod
    async def publish(self, event: SettlementEvent) -> None:
        pass

    async def close(self) -> None:
        pass
