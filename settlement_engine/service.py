"""
Settlement Engine - Settlement Service.

============================================================
PURPOSE
============================================================
Main entry point for the Settlement Engine.

Wires the database, collaborators, coordinator, sweeper and
reconciliation together, and turns coordinator results and
domain errors into the response shapes exposed to callers.

============================================================
EXPOSED OPERATIONS
============================================================
accept(proposalId)              -> {status, proposalId}
reject(proposalId, reason?)     -> {status, proposalId}
manualRejectExpired(swapId)     -> {status}
health()                        -> sweeper + store snapshot

============================================================
"""

import logging
import os
from datetime import datetime
from decimal import Decimal
from typing import Optional, Callable, Dict, Any

from .types import (
    ProposalRecord,
    SwapRecord,
    SweepResult,
    SettlementResult,
    SettlementError,
)
from .errors import get_error_info, ErrorSeverity
from .config import SettlementEngineConfig
from .database import Database
from .repository import SettlementRepository
from .ledger_recorder import LedgerRecorder
from .escrow_executor import EscrowTransferExecutor
from .coordinator import SettlementCoordinator
from .sweeper import ExpirationSweeper
from .reconciliation import ReconciliationEngine, ReconciliationResult
from .alerting import TelegramAlerter
from .schemas import (
    SettlementStatusEnum,
    AcceptResponse,
    RejectResponse,
    ManualCloseResponse,
    SweeperHealth,
    SweeperStateEnum,
    HealthResponse,
)
from .adapters import (
    LedgerClient,
    EscrowProvider,
    BookingGateway,
    SettlementNotifier,
    InMemoryLedgerClient,
    InMemoryEscrowProvider,
    InMemoryBookingGateway,
    HttpLedgerClient,
    HttpEscrowProvider,
    HttpBookingGateway,
    WebhookNotifier,
    LoggingNotifier,
)


logger = logging.getLogger(__name__)


# ============================================================
# COLLABORATOR WIRING
# ============================================================

def create_ledger_client(config: SettlementEngineConfig) -> LedgerClient:
    """HTTP ledger when a URL is configured, in-memory otherwise."""
    ledger = config.ledger
    if ledger.api_url:
        return HttpLedgerClient(
            ledger.api_url,
            ledger.topic_id,
            api_key=os.environ.get(ledger.api_key_env),
            timeout_seconds=ledger.confirmation_timeout_seconds,
        )
    logger.warning("LEDGER_API_URL not set, using in-memory ledger")
    return InMemoryLedgerClient()


def create_escrow_provider(config: SettlementEngineConfig) -> EscrowProvider:
    escrow = config.escrow
    if escrow.api_url:
        return HttpEscrowProvider(
            escrow.api_url,
            api_key=os.environ.get(escrow.api_key_env),
            timeout_seconds=escrow.transfer_timeout_seconds,
        )
    logger.warning("ESCROW_API_URL not set, using in-memory escrow provider")
    return InMemoryEscrowProvider()


def create_booking_gateway(config: SettlementEngineConfig) -> BookingGateway:
    url = config.settlement.booking_api_url
    if url:
        return HttpBookingGateway(url, config.settlement.collaborator_timeout_seconds)
    return InMemoryBookingGateway()


def create_notifier(config: SettlementEngineConfig) -> SettlementNotifier:
    url = config.alerting.notification_webhook_url
    if url:
        return WebhookNotifier(url, config.settlement.collaborator_timeout_seconds)
    return LoggingNotifier()


# ============================================================
# SETTLEMENT SERVICE
# ============================================================

class SettlementService:
    """
    Settlement Engine facade.

    Collaborators not passed in are built from configuration.
    """

    def __init__(
        self,
        config: Optional[SettlementEngineConfig] = None,
        database: Optional[Database] = None,
        ledger_client: Optional[LedgerClient] = None,
        escrow_provider: Optional[EscrowProvider] = None,
        bookings: Optional[BookingGateway] = None,
        notifier: Optional[SettlementNotifier] = None,
        clock: Optional[Callable[[], datetime]] = None,
        alerter: Optional[TelegramAlerter] = None,
    ):
        self._config = config or SettlementEngineConfig()
        self._clock = clock or datetime.utcnow

        self._database = database or Database(self._config.database)
        self._ledger_client = ledger_client or create_ledger_client(self._config)
        self._escrow_provider = escrow_provider or create_escrow_provider(self._config)
        self._bookings = bookings or create_booking_gateway(self._config)
        self._notifier = notifier or create_notifier(self._config)

        if alerter is None and self._config.alerting.enabled:
            alerter = TelegramAlerter(self._config.alerting)
        self._alerter = alerter

        self._ledger_recorder = LedgerRecorder(
            self._ledger_client,
            self._database,
            self._config.ledger,
            clock=self._clock,
            alerter=self._alerter,
        )
        self._escrow_executor = EscrowTransferExecutor(self._escrow_provider, self._config.escrow)
        self._coordinator = SettlementCoordinator(
            self._database,
            self._ledger_recorder,
            self._escrow_executor,
            bookings=self._bookings,
            notifier=self._notifier,
            config=self._config,
            clock=self._clock,
            alerter=self._alerter,
        )
        self._sweeper = ExpirationSweeper(
            self._coordinator,
            self._config.sweeper,
            clock=self._clock,
            alerter=self._alerter,
        )
        self._reconciliation = ReconciliationEngine(
            self._database,
            self._ledger_recorder,
            self._escrow_executor,
            self._config.reconciliation,
            alerter=self._alerter,
            clock=self._clock,
        )

        self._running = False
        self._stats = {
            "requests": 0,
            "succeeded": 0,
            "refused": 0,
            "errors": 0,
        }

    # --------------------------------------------------------
    # COMPONENTS
    # --------------------------------------------------------

    @property
    def config(self) -> SettlementEngineConfig:
        return self._config

    @property
    def database(self) -> Database:
        return self._database

    @property
    def coordinator(self) -> SettlementCoordinator:
        return self._coordinator

    @property
    def sweeper(self) -> ExpirationSweeper:
        return self._sweeper

    @property
    def reconciliation(self) -> ReconciliationEngine:
        return self._reconciliation

    @property
    def ledger_recorder(self) -> LedgerRecorder:
        return self._ledger_recorder

    @property
    def is_running(self) -> bool:
        return self._running

    # --------------------------------------------------------
    # LIFECYCLE
    # --------------------------------------------------------

    async def start(self, init_schema: bool = False) -> None:
        """Connect and start background jobs."""
        if self._running:
            return

        logger.info("Starting Settlement Service...")
        self._database.connect()
        if init_schema:
            await self._database.init_schema()

        if self._config.sweeper.enabled:
            await self._sweeper.start()
        if self._config.reconciliation.enabled:
            await self._reconciliation.start()

        self._running = True
        logger.info("Settlement Service started")

    async def stop(self) -> None:
        """Stop background jobs, flush post-commit work and close clients."""
        if not self._running:
            return

        logger.info("Stopping Settlement Service...")
        self._running = False

        await self._sweeper.stop()
        await self._reconciliation.stop()
        await self._coordinator.drain()

        await self._ledger_client.close()
        await self._escrow_provider.close()
        await self._bookings.close()
        await self._notifier.close()
        if self._alerter:
            await self._alerter.close()

        await self._database.disconnect()
        logger.info("Settlement Service stopped")

    # --------------------------------------------------------
    # EXPOSED OPERATIONS
    # --------------------------------------------------------

    async def accept(self, proposal_id: str, actor_id: str) -> AcceptResponse:
        """Accept a proposal as the swap owner."""
        self._stats["requests"] += 1
        try:
            result = await self._coordinator.accept(proposal_id, actor_id)
        except SettlementError as e:
            status, message = self._refusal("accept", proposal_id, e)
            return AcceptResponse(status=status, proposal_id=proposal_id, message=message)

        self._stats["succeeded"] += 1
        return AcceptResponse(
            status=self._status(result),
            proposal_id=proposal_id,
            transfer_handle=result.transfer_handle,
            warnings=list(result.warnings),
        )

    async def reject(
        self,
        proposal_id: str,
        actor_id: str,
        reason: Optional[str] = None,
    ) -> RejectResponse:
        """Reject as the owner, or withdraw as the proposer."""
        self._stats["requests"] += 1
        try:
            result = await self._coordinator.reject(proposal_id, actor_id, reason)
        except SettlementError as e:
            status, message = self._refusal("reject", proposal_id, e)
            return RejectResponse(status=status, proposal_id=proposal_id, message=message)

        self._stats["succeeded"] += 1
        return RejectResponse(
            status=SettlementStatusEnum.REJECTED,
            proposal_id=proposal_id,
            proposal_status=result.outcome.value,
            warnings=list(result.warnings),
        )

    async def manual_reject_expired(self, swap_id: str, actor_id: str) -> ManualCloseResponse:
        """Owner closes an overdue swap; repeat calls report already_closed."""
        self._stats["requests"] += 1
        try:
            result = await self._coordinator.manual_reject_expired(swap_id, actor_id)
        except SettlementError as e:
            status, message = self._refusal("manual close", swap_id, e)
            return ManualCloseResponse(status=status, swap_id=swap_id, message=message)

        self._stats["succeeded"] += 1
        return ManualCloseResponse(
            status=self._status(result),
            swap_id=swap_id,
            warnings=list(result.warnings),
        )

    async def create_swap(
        self,
        owner_id: str,
        source_booking_id: str,
        expires_at: datetime,
        owner_account: Optional[str] = None,
    ) -> SwapRecord:
        return await self._coordinator.create_swap(
            owner_id, source_booking_id, expires_at, owner_account=owner_account
        )

    async def submit_proposal(
        self,
        target_swap_id: str,
        proposer_id: str,
        source_swap_id: Optional[str] = None,
        amount: Optional[Decimal] = None,
        currency: str = "USD",
        proposer_account: Optional[str] = None,
        escrow_account_id: Optional[str] = None,
    ) -> ProposalRecord:
        return await self._coordinator.submit_proposal(
            target_swap_id,
            proposer_id,
            source_swap_id=source_swap_id,
            amount=amount,
            currency=currency,
            proposer_account=proposer_account,
            escrow_account_id=escrow_account_id,
        )

    # --------------------------------------------------------
    # MAINTENANCE
    # --------------------------------------------------------

    async def sweep_once(self) -> SweepResult:
        return await self._sweeper.tick()

    async def reconcile(self) -> ReconciliationResult:
        return await self._reconciliation.run()

    # --------------------------------------------------------
    # HEALTH / STATISTICS
    # --------------------------------------------------------

    async def health(self) -> HealthResponse:
        """Sweeper status plus store counters."""
        database_ok = await self._database.health_check()

        pending = 0
        by_status: Dict[str, int] = {}
        if database_ok:
            async with self._database.session() as session:
                repo = SettlementRepository(session)
                pending = await repo.count_pending_ledger_writes()
                by_status = await repo.count_swaps_by_status()

        status = self._sweeper.status()
        return HealthResponse(
            healthy=database_ok,
            database=database_ok,
            sweeper=SweeperHealth(
                state=SweeperStateEnum(status.state.value),
                running=self._sweeper.is_running,
                last_run_at=status.last_run_at,
                last_run_id=status.last_run_id,
                items_processed=status.items_processed,
                items_failed=status.items_failed,
                total_runs=status.total_runs,
                skipped_ticks=status.skipped_ticks,
            ),
            pending_ledger_writes=pending,
            swaps_by_status=by_status,
            timestamp=self._clock(),
        )

    def get_statistics(self) -> Dict[str, Any]:
        return {
            "service": dict(self._stats),
            "coordinator": self._coordinator.get_stats(),
            "ledger": self._ledger_recorder.get_stats(),
            "escrow": self._escrow_executor.get_stats(),
            "sweeper": self._sweeper.get_stats(),
        }

    # --------------------------------------------------------
    # HELPERS
    # --------------------------------------------------------

    @staticmethod
    def _status(result: SettlementResult) -> SettlementStatusEnum:
        return SettlementStatusEnum(result.outcome.value)

    def _refusal(self, operation: str, subject_id: str, error: SettlementError):
        info = get_error_info(error.code)
        if info.severity in {ErrorSeverity.ERROR, ErrorSeverity.CRITICAL}:
            self._stats["errors"] += 1
            logger.error(f"{operation} {subject_id} failed: [{error.code}] {error.message}")
        else:
            self._stats["refused"] += 1
            logger.info(f"{operation} {subject_id} refused: [{error.code}] {error.message}")
        return SettlementStatusEnum(info.outcome.value), info.user_message
