"""
Reconciliation Tests.

============================================================
PURPOSE
============================================================
Detection and repair of drift between the store, the ledger
and escrow.

TEST CATEGORIES:
- Pending ledger write retry
- Missing ledger record repair
- Refund retry
- Escrow/proposal disagreements
- Orphaned proposals
- Run persistence and alerting

============================================================
"""

import asyncio
from itertools import product
from unittest.mock import AsyncMock

import pytest
from sqlalchemy import delete, select, update

from settlement_engine.types import EscrowStatus, ProposalStatus, SwapStatus
from settlement_engine.models import (
    EscrowHoldingModel,
    LedgerRecordModel,
    ProposalModel,
    ReconciliationLogModel,
    SwapModel,
)
from settlement_engine.reconciliation import MismatchType, MismatchSeverity
from settlement_engine.alerting import AlertType, AlertSeverity


ALLOWED_PAIRS = {
    (EscrowStatus.HELD, ProposalStatus.PENDING),
    (EscrowStatus.RELEASED, ProposalStatus.ACCEPTED),
    (EscrowStatus.REVERTED, ProposalStatus.REJECTED),
    (EscrowStatus.REVERTED, ProposalStatus.WITHDRAWN),
    (EscrowStatus.REVERTED, ProposalStatus.EXPIRED),
}


async def force_holding_status(database, proposal_id: str, status: EscrowStatus) -> None:
    async with database.transaction() as session:
        await session.execute(
            update(EscrowHoldingModel)
            .where(EscrowHoldingModel.proposal_id == proposal_id)
            .values(status=status.value)
        )


async def force_proposal_status(database, proposal_id: str, status: ProposalStatus) -> None:
    async with database.transaction() as session:
        await session.execute(
            update(ProposalModel)
            .where(ProposalModel.proposal_id == proposal_id)
            .values(status=status.value)
        )


def of_type(result, mismatch_type):
    return [m for m in result.mismatches if m.mismatch_type == mismatch_type]


# ============================================================
# LEDGER REPAIRS
# ============================================================

class TestLedgerRepairs:
    """Ledger writes lost after commit are recovered."""

    @pytest.mark.asyncio
    async def test_pending_write_is_retried(self, harness):
        swap = await harness.list_swap()
        proposal = await harness.propose_swap(swap.swap_id, "alice")
        harness.ledger.set_unavailable()
        await harness.coordinator.accept(proposal.proposal_id, "owner")
        harness.ledger.set_unavailable(False)

        result = await harness.reconciliation.run()

        [mismatch] = of_type(result, MismatchType.PENDING_LEDGER_WRITE)
        assert mismatch.subject_id == proposal.proposal_id
        assert mismatch.auto_resolved
        assert await harness.ledger_outcomes(proposal.proposal_id) == ["accepted"]
        assert await harness.pending_ledger_writes() == []
        assert of_type(result, MismatchType.MISSING_LEDGER_RECORD) == []

    @pytest.mark.asyncio
    async def test_pending_write_stays_queued_while_ledger_down(self, harness):
        swap = await harness.list_swap()
        proposal = await harness.propose_swap(swap.swap_id, "alice")
        harness.ledger.set_unavailable()
        await harness.coordinator.accept(proposal.proposal_id, "owner")

        result = await harness.reconciliation.run()

        [mismatch] = of_type(result, MismatchType.PENDING_LEDGER_WRITE)
        assert not mismatch.auto_resolved
        assert len(await harness.pending_ledger_writes()) == 1

    @pytest.mark.asyncio
    async def test_missing_record_is_rewritten(self, harness, database):
        swap = await harness.list_swap()
        proposal = await harness.propose_swap(swap.swap_id, "alice")
        await harness.coordinator.reject(proposal.proposal_id, "owner")
        async with database.transaction() as session:
            await session.execute(delete(LedgerRecordModel))

        result = await harness.reconciliation.run()

        [mismatch] = of_type(result, MismatchType.MISSING_LEDGER_RECORD)
        assert mismatch.subject_id == proposal.proposal_id
        assert mismatch.expected_value == "rejected"
        assert mismatch.auto_resolved
        assert await harness.ledger_outcomes(proposal.proposal_id) == ["rejected"]


# ============================================================
# ESCROW
# ============================================================

class TestEscrowChecks:
    """Refund retry and escrow/status disagreement detection."""

    @pytest.mark.asyncio
    async def test_failed_refund_is_retried(self, harness):
        swap = await harness.list_swap()
        proposal = await harness.propose_cash(swap.swap_id, "alice", "35")
        harness.escrow.inject_error("refund")
        await harness.coordinator.reject(proposal.proposal_id, "owner")

        result = await harness.reconciliation.run()

        [mismatch] = of_type(result, MismatchType.REFUND_MISSING)
        assert mismatch.auto_resolved
        holding = await harness.holding(proposal.proposal_id)
        assert holding.refund_handle is not None
        [refund] = harness.escrow.refunds
        assert refund.to_account == "acct-alice"

    @pytest.mark.asyncio
    async def test_accepted_without_release_is_critical(self, make_harness, database):
        alerter = AsyncMock()
        harness = make_harness(alerter=alerter)
        swap = await harness.list_swap()
        proposal = await harness.propose_cash(swap.swap_id, "alice", "35")
        await harness.coordinator.accept(proposal.proposal_id, "owner")
        await force_holding_status(database, proposal.proposal_id, EscrowStatus.HELD)

        result = await harness.reconciliation.run()

        [mismatch] = of_type(result, MismatchType.ACCEPTED_WITHOUT_RELEASE)
        assert mismatch.severity == MismatchSeverity.CRITICAL
        assert not mismatch.auto_resolved
        assert result.has_critical

        alert = alerter.send_alert.await_args.args[0]
        assert alert.alert_type == AlertType.RECONCILIATION_MISMATCH
        assert alert.severity == AlertSeverity.CRITICAL

    @pytest.mark.asyncio
    async def test_released_without_acceptance_is_critical(self, harness, database):
        swap = await harness.list_swap()
        proposal = await harness.propose_cash(swap.swap_id, "alice", "35")
        await force_holding_status(database, proposal.proposal_id, EscrowStatus.RELEASED)

        result = await harness.reconciliation.run()

        [mismatch] = of_type(result, MismatchType.RELEASED_WITHOUT_ACCEPTANCE)
        assert mismatch.severity == MismatchSeverity.CRITICAL
        assert mismatch.actual_value == "released"
        assert mismatch.expected_value == "pending"

    @pytest.mark.asyncio
    async def test_status_pairs(self, harness, database):
        swap = await harness.list_swap()
        pairs = list(product(EscrowStatus, ProposalStatus))
        by_proposal = {}
        for index, (escrow_status, proposal_status) in enumerate(pairs):
            proposal = await harness.propose_cash(swap.swap_id, f"party-{index}", "5")
            await force_holding_status(database, proposal.proposal_id, escrow_status)
            await force_proposal_status(database, proposal.proposal_id, proposal_status)
            by_proposal[proposal.proposal_id] = (escrow_status, proposal_status)

        rows = await harness.escrow_mismatches()

        flagged = {holding.proposal_id for holding, _ in rows}
        expected = {pid for pid, pair in by_proposal.items() if pair not in ALLOWED_PAIRS}
        assert flagged == expected
        assert len(expected) == len(pairs) - len(ALLOWED_PAIRS)


# ============================================================
# ORPHANS AND BOOKKEEPING
# ============================================================

class TestReconciliationRun:
    """Whole-run behavior."""

    @pytest.mark.asyncio
    async def test_orphaned_proposal_is_reported(self, harness, database):
        swap = await harness.list_swap()
        proposal = await harness.propose_swap(swap.swap_id, "alice")
        async with database.transaction() as session:
            await session.execute(
                update(SwapModel)
                .where(SwapModel.swap_id == swap.swap_id)
                .values(status=SwapStatus.EXPIRED.value)
            )

        result = await harness.reconciliation.run()

        [mismatch] = of_type(result, MismatchType.ORPHANED_PROPOSAL)
        assert mismatch.subject_id == proposal.proposal_id
        assert mismatch.severity == MismatchSeverity.ERROR
        assert (await harness.proposal(proposal.proposal_id)).status == ProposalStatus.PENDING

    @pytest.mark.asyncio
    async def test_clean_store_has_no_mismatches(self, harness, database):
        swap = await harness.list_swap()
        winner = await harness.propose_cash(swap.swap_id, "alice", "90")
        await harness.propose_cash(swap.swap_id, "bob", "70")
        await harness.coordinator.accept(winner.proposal_id, "owner")

        result = await harness.reconciliation.run()

        assert result.success
        assert result.mismatches == []
        assert result.items_checked == 0

        async with database.session() as session:
            logs = list((await session.execute(select(ReconciliationLogModel))).scalars())
        assert [log.run_id for log in logs] == [result.run_id]
        assert logs[0].mismatches_found == 0

    @pytest.mark.asyncio
    async def test_loop_runs_until_stopped(self, harness, config):
        config.reconciliation.interval_seconds = 0.05

        await harness.reconciliation.start()
        try:
            for _ in range(100):
                await asyncio.sleep(0.05)
                if harness.reconciliation.last_result is not None:
                    break
        finally:
            await harness.reconciliation.stop()

        assert harness.reconciliation.last_result is not None
