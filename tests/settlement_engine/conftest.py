"""
Shared fixtures for Settlement Engine tests.

Every test gets its own on-disk SQLite database so that
concurrent transactions are genuinely serialized.
"""

from datetime import datetime, timedelta
from decimal import Decimal
from typing import List, Optional

import pytest
import pytest_asyncio
from sqlalchemy import select

from settlement_engine.types import (
    ProposalRecord,
    SwapRecord,
    EscrowHoldingRecord,
    LedgerEntry,
    SettlementAction,
)
from settlement_engine.config import SettlementEngineConfig
from settlement_engine.database import Database
from settlement_engine.repository import SettlementRepository
from settlement_engine.models import LedgerRecordModel
from settlement_engine.ledger_recorder import LedgerRecorder
from settlement_engine.escrow_executor import EscrowTransferExecutor
from settlement_engine.coordinator import SettlementCoordinator
from settlement_engine.sweeper import ExpirationSweeper
from settlement_engine.reconciliation import ReconciliationEngine
from settlement_engine.adapters import (
    InMemoryLedgerClient,
    InMemoryEscrowProvider,
    InMemoryBookingGateway,
    RecordingNotifier,
)


START = datetime(2026, 3, 1, 12, 0, 0)


class MutableClock:
    """Test clock; call it for the current time."""

    def __init__(self, now: datetime = START):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class Harness:
    """Wired engine plus helpers for seeding and inspecting state."""

    def __init__(self, config: SettlementEngineConfig, database: Database, clock: MutableClock, alerter=None):
        self.config = config
        self.database = database
        self.clock = clock
        self.alerter = alerter

        self.ledger = InMemoryLedgerClient()
        self.escrow = InMemoryEscrowProvider()
        self.bookings = InMemoryBookingGateway()
        self.notifier = RecordingNotifier()

        self.ledger_recorder = LedgerRecorder(
            self.ledger, database, config.ledger, clock=clock, alerter=alerter
        )
        self.escrow_executor = EscrowTransferExecutor(self.escrow, config.escrow)
        self.coordinator = SettlementCoordinator(
            database,
            self.ledger_recorder,
            self.escrow_executor,
            bookings=self.bookings,
            notifier=self.notifier,
            config=config,
            clock=clock,
            alerter=alerter,
        )
        self.sweeper = ExpirationSweeper(self.coordinator, config.sweeper, clock=clock, alerter=alerter)
        self.reconciliation = ReconciliationEngine(
            database,
            self.ledger_recorder,
            self.escrow_executor,
            config.reconciliation,
            alerter=alerter,
            clock=clock,
        )

    # --------------------------------------------------------
    # SEEDING
    # --------------------------------------------------------

    async def list_swap(
        self,
        owner_id: str = "owner",
        hours: float = 24,
        swap_id: Optional[str] = None,
    ) -> SwapRecord:
        booking_id = f"booking-{owner_id}-{swap_id or 'x'}"
        self.bookings.add_booking(booking_id, owner_id)
        return await self.coordinator.create_swap(
            owner_id,
            booking_id,
            self.clock() + timedelta(hours=hours),
            owner_account=f"acct-{owner_id}",
            swap_id=swap_id,
        )

    async def propose_cash(self, swap_id: str, proposer_id: str, amount: str) -> ProposalRecord:
        return await self.coordinator.submit_proposal(
            swap_id,
            proposer_id,
            amount=Decimal(amount),
            proposer_account=f"acct-{proposer_id}",
            escrow_account_id="escrow-main",
        )

    async def propose_swap(self, swap_id: str, proposer_id: str) -> ProposalRecord:
        source = await self.list_swap(owner_id=proposer_id, swap_id=f"src-{proposer_id}-{swap_id}")
        return await self.coordinator.submit_proposal(
            swap_id,
            proposer_id,
            source_swap_id=source.swap_id,
        )

    # --------------------------------------------------------
    # INSPECTION
    # --------------------------------------------------------

    async def swap(self, swap_id: str) -> SwapRecord:
        async with self.database.session() as session:
            return await SettlementRepository(session).get_swap(swap_id)

    async def proposal(self, proposal_id: str) -> ProposalRecord:
        async with self.database.session() as session:
            return await SettlementRepository(session).get_proposal(proposal_id)

    async def holding(self, proposal_id: str) -> Optional[EscrowHoldingRecord]:
        async with self.database.session() as session:
            return await SettlementRepository(session).get_holding_for_proposal(proposal_id)

    async def ledger_outcomes(self, subject_id: str) -> List[str]:
        async with self.database.session() as session:
            records = await SettlementRepository(session).list_ledger_records(subject_id)
            return [r.outcome for r in records]

    async def all_ledger_records(self) -> List[LedgerRecordModel]:
        async with self.database.session() as session:
            result = await session.execute(select(LedgerRecordModel))
            return list(result.scalars())

    async def pending_ledger_writes(self) -> List[LedgerEntry]:
        async with self.database.session() as session:
            return await SettlementRepository(session).list_pending_ledger_writes(100)

    async def events(self, swap_id: str, action: Optional[SettlementAction] = None):
        async with self.database.session() as session:
            rows = await SettlementRepository(session).get_events_for_swap(swap_id)
        return [
            (row.subject_type, row.subject_id, row.from_status, row.to_status)
            for row in rows
            if action is None or row.action == action.value
        ]

    async def escrow_mismatches(self):
        async with self.database.session() as session:
            return await SettlementRepository(session).list_escrow_mismatches(100)


# ============================================================
# FIXTURES
# ============================================================

@pytest.fixture
def clock():
    return MutableClock()


@pytest.fixture
def config(tmp_path):
    return SettlementEngineConfig.for_testing(f"sqlite+aiosqlite:///{tmp_path}/settlement.db")


@pytest_asyncio.fixture
async def database(config):
    db = Database(config.database)
    await db.init_schema()
    yield db
    await db.disconnect()


@pytest_asyncio.fixture
async def make_harness(config, database, clock):
    """Build extra harnesses (e.g. with an alerter) on the shared store."""
    created = []

    def factory(alerter=None) -> Harness:
        h = Harness(config, database, clock, alerter=alerter)
        created.append(h)
        return h

    yield factory
    for h in created:
        await h.coordinator.drain()


@pytest_asyncio.fixture
async def harness(make_harness):
    return make_harness()
