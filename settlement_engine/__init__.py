"""
Settlement Engine Package.

============================================================
PURPOSE
============================================================
Settles swap proposals: acceptance, rejection, withdrawal
and deadline expiration.

CRITICAL PRINCIPLE:
    "At most one proposal per swap is ever accepted."
    "No escrow is released without an accepted proposal."

AUTHORITY BOUNDARIES:
    CAN:
        - Finalize swap and proposal status
        - Release or revert escrowed funds
        - Record outcomes on the ledger
        - Ask the booking service to unlock a booking

    MUST NOT:
        - Authenticate users
        - Mutate booking records directly
        - Deliver user notifications

============================================================
MODULES
============================================================
- types: Statuses, records, results, exceptions
- config: Engine configuration
- errors: Error code registry
- state_machine: Transition rules and plans
- models: ORM models
- database: Engine and sessions
- repository: Database operations
- adapters: Ledger, escrow, booking and notification clients
- ledger_recorder: Ledger writes with retry
- escrow_executor: Escrow transfers, reverts, refunds
- coordinator: Commit protocol
- sweeper: Expiration sweeper
- reconciliation: Consistency scan and repair
- alerting: Telegram alerts
- schemas: Response models
- service: Service facade
- cli: Command line

============================================================
"""

# ============================================================
# TYPES
# ============================================================
from .types import (
    # Enums
    SwapStatus,
    ProposalStatus,
    EscrowStatus,
    SubjectType,
    LedgerOutcome,
    SettlementAction,
    SettlementOutcome,
    SweeperState,
    # Dataclasses
    SwapRecord,
    ProposalRecord,
    EscrowHoldingRecord,
    LedgerEntry,
    LedgerReceipt,
    StatusChange,
    SettlementEvent,
    SettlementResult,
    SweepResult,
    SweeperStatus,
    # Exceptions
    SettlementError,
    NotFoundError,
    ValidationError,
    ForbiddenError,
    InvalidStateError,
    ExpiredError,
    ConflictError,
    TransferFailedError,
    SettlementTimeoutError,
    LedgerWriteDeferred,
    CollaboratorError,
)

# ============================================================
# CONFIGURATION
# ============================================================
from .config import (
    DatabaseConfig,
    LedgerConfig,
    EscrowConfig,
    SettlementConfig,
    SweeperConfig,
    ReconciliationConfig,
    AlertingConfig,
    SettlementEngineConfig,
)

# ============================================================
# ERRORS
# ============================================================
from .errors import (
    ErrorCategory,
    ErrorSeverity,
    ErrorCodeInfo,
    ERROR_CODES,
    get_error_info,
    is_retryable,
    user_message,
    RETRYABLE_ERROR_CODES,
    CRITICAL_ERROR_CODES,
)

# ============================================================
# STATE MACHINE
# ============================================================
from .state_machine import (
    VALID_SWAP_TRANSITIONS,
    VALID_PROPOSAL_TRANSITIONS,
    TransitionGuard,
    TransitionPlan,
    SettlementStateMachine,
)

# ============================================================
# PERSISTENCE
# ============================================================
from .models import (
    Base,
    SwapModel,
    ProposalModel,
    EscrowHoldingModel,
    LedgerRecordModel,
    PendingLedgerWriteModel,
    SettlementEventModel,
    SweepRunModel,
    ReconciliationLogModel,
)
from .database import Database, get_database_url
from .repository import SettlementRepository

# ============================================================
# CORE COMPONENTS
# ============================================================
from .ledger_recorder import LedgerRecorder
from .escrow_executor import EscrowTransferExecutor
from .coordinator import SettlementCoordinator, SYSTEM_ACTOR
from .sweeper import ExpirationSweeper
from .reconciliation import (
    MismatchType,
    MismatchSeverity,
    ReconciliationMismatch,
    ReconciliationResult,
    ReconciliationEngine,
)
from .service import SettlementService

# ============================================================
# ALERTING
# ============================================================
from .alerting import (
    AlertSeverity,
    AlertType,
    Alert,
    TelegramAlerter,
)


# ============================================================
# VERSION
# ============================================================
__version__ = "1.0.0"


# ============================================================
# ALL EXPORTS
# ============================================================
__all__ = [
    # Types
    "SwapStatus",
    "ProposalStatus",
    "EscrowStatus",
    "SubjectType",
    "LedgerOutcome",
    "SettlementAction",
    "SettlementOutcome",
    "SweeperState",
    "SwapRecord",
    "ProposalRecord",
    "EscrowHoldingRecord",
    "LedgerEntry",
    "LedgerReceipt",
    "StatusChange",
    "SettlementEvent",
    "SettlementResult",
    "SweepResult",
    "SweeperStatus",
    "SettlementError",
    "NotFoundError",
    "ValidationError",
    "ForbiddenError",
    "InvalidStateError",
    "ExpiredError",
    "ConflictError",
    "TransferFailedError",
    "SettlementTimeoutError",
    "LedgerWriteDeferred",
    "CollaboratorError",
    # Config
    "DatabaseConfig",
    "LedgerConfig",
    "EscrowConfig",
    "SettlementConfig",
    "SweeperConfig",
    "ReconciliationConfig",
    "AlertingConfig",
    "SettlementEngineConfig",
    # Errors
    "ErrorCategory",
    "ErrorSeverity",
    "ErrorCodeInfo",
    "ERROR_CODES",
    "get_error_info",
    "is_retryable",
    "user_message",
    "RETRYABLE_ERROR_CODES",
    "CRITICAL_ERROR_CODES",
    # State Machine
    "VALID_SWAP_TRANSITIONS",
    "VALID_PROPOSAL_TRANSITIONS",
    "TransitionGuard",
    "TransitionPlan",
    "SettlementStateMachine",
    # Persistence
    "Base",
    "SwapModel",
    "ProposalModel",
    "EscrowHoldingModel",
    "LedgerRecordModel",
    "PendingLedgerWriteModel",
    "SettlementEventModel",
    "SweepRunModel",
    "ReconciliationLogModel",
    "Database",
    "get_database_url",
    "SettlementRepository",
    # Core
    "LedgerRecorder",
    "EscrowTransferExecutor",
    "SettlementCoordinator",
    "SYSTEM_ACTOR",
    "ExpirationSweeper",
    "MismatchType",
    "MismatchSeverity",
    "ReconciliationMismatch",
    "ReconciliationResult",
    "ReconciliationEngine",
    "SettlementService",
    # Alerting
    "AlertSeverity",
    "AlertType",
    "Alert",
    "TelegramAlerter",
]
