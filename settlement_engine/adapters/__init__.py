"""
Settlement Engine - Collaborator Adapters.
"""

from .base import (
    LedgerClient,
    EscrowProvider,
    BookingGateway,
    SettlementNotifier,
    TransferRequest,
    TransferStatus,
    BookingSnapshot,
)
from .mock import (
    InMemoryLedgerClient,
    InMemoryEscrowProvider,
    InMemoryBookingGateway,
    RecordingNotifier,
    LedgerWrite,
)
from .http import (
    HttpLedgerClient,
    HttpEscrowProvider,
    HttpBookingGateway,
    WebhookNotifier,
    LoggingNotifier,
)


__all__ = [
    # Interfaces
    "LedgerClient",
    "EscrowProvider",
    "BookingGateway",
    "SettlementNotifier",
    "TransferRequest",
    "TransferStatus",
    "BookingSnapshot",
    # In-memory
    "InMemoryLedgerClient",
    "InMemoryEscrowProvider",
    "InMemoryBookingGateway",
    "RecordingNotifier",
    "LedgerWrite",
    # HTTP
    "HttpLedgerClient",
    "HttpEscrowProvider",
    "HttpBookingGateway",
    "WebhookNotifier",
    "LoggingNotifier",
]
