"""
Settlement Service Tests.

============================================================
PURPOSE
============================================================
Response shapes and status codes returned to callers.

TEST CATEGORIES:
- accept / reject / manualRejectExpired payloads
- Refusals mapped to status + user message
- Health snapshot
- Collaborator wiring from configuration

============================================================
"""

from datetime import timedelta
from decimal import Decimal

import pytest
import pytest_asyncio

from settlement_engine.config import SettlementEngineConfig
from settlement_engine.service import (
    SettlementService,
    create_ledger_client,
    create_escrow_provider,
    create_booking_gateway,
    create_notifier,
)
from settlement_engine.schemas import SettlementStatusEnum
from settlement_engine.adapters import (
    InMemoryLedgerClient,
    InMemoryEscrowProvider,
    InMemoryBookingGateway,
    RecordingNotifier,
    HttpLedgerClient,
    HttpEscrowProvider,
    HttpBookingGateway,
    WebhookNotifier,
    LoggingNotifier,
)


@pytest_asyncio.fixture
async def service(config, database, clock):
    config.sweeper.enabled = False
    svc = SettlementService(
        config=config,
        database=database,
        ledger_client=InMemoryLedgerClient(),
        escrow_provider=InMemoryEscrowProvider(),
        bookings=InMemoryBookingGateway(),
        notifier=RecordingNotifier(),
        clock=clock,
    )
    await svc.start()
    yield svc
    await svc.stop()


async def listed_swap_with_offer(service, clock, hours=24, amount="60"):
    swap = await service.create_swap(
        "owner", "booking-1", clock() + timedelta(hours=hours), owner_account="acct-owner"
    )
    proposal = await service.submit_proposal(
        swap.swap_id,
        "alice",
        amount=Decimal(amount),
        proposer_account="acct-alice",
    )
    return swap, proposal


# ============================================================
# OPERATIONS
# ============================================================

class TestOperations:
    """Successful operations."""

    @pytest.mark.asyncio
    async def test_accept_payload(self, service, clock):
        _, proposal = await listed_swap_with_offer(service, clock)

        response = await service.accept(proposal.proposal_id, "owner")

        assert response.ok
        payload = response.to_payload()
        assert payload["status"] == "accepted"
        assert payload["proposalId"] == proposal.proposal_id
        assert payload["transferHandle"]
        assert "message" not in payload

    @pytest.mark.asyncio
    async def test_reject_payload(self, service, clock):
        _, proposal = await listed_swap_with_offer(service, clock)

        response = await service.reject(proposal.proposal_id, "owner", "no thanks")

        assert response.to_payload() == {
            "status": "rejected",
            "proposalId": proposal.proposal_id,
            "proposalStatus": "rejected",
            "warnings": [],
        }

    @pytest.mark.asyncio
    async def test_proposer_reject_is_rejected_with_withdrawn_proposal(self, service, clock):
        _, proposal = await listed_swap_with_offer(service, clock)

        response = await service.reject(proposal.proposal_id, "alice")

        assert response.status == SettlementStatusEnum.REJECTED
        assert response.to_payload()["proposalStatus"] == "withdrawn"
        assert response.ok

    @pytest.mark.asyncio
    async def test_manual_close_twice(self, service, clock):
        swap, _ = await listed_swap_with_offer(service, clock, hours=1)
        clock.advance(hours=2)

        first = await service.manual_reject_expired(swap.swap_id, "owner")
        second = await service.manual_reject_expired(swap.swap_id, "owner")

        assert first.to_payload()["status"] == "rejected"
        assert second.to_payload() == {
            "status": "already_closed",
            "swapId": swap.swap_id,
            "warnings": [],
        }
        assert second.ok


# ============================================================
# REFUSALS
# ============================================================

class TestRefusals:
    """Domain errors become a status and a user message."""

    @pytest.mark.asyncio
    async def test_expired(self, service, clock):
        _, proposal = await listed_swap_with_offer(service, clock, hours=1)
        clock.advance(hours=2)

        response = await service.accept(proposal.proposal_id, "owner")

        assert response.status == SettlementStatusEnum.EXPIRED
        assert response.message == "This swap has expired and can no longer be accepted."
        assert not response.ok

    @pytest.mark.asyncio
    async def test_expired_after_sweep(self, service, clock):
        _, proposal = await listed_swap_with_offer(service, clock, hours=1)
        clock.advance(hours=2)
        await service.sweep_once()

        response = await service.accept(proposal.proposal_id, "owner")

        assert response.status == SettlementStatusEnum.EXPIRED
        assert response.message == "This swap has expired and can no longer be accepted."

    @pytest.mark.asyncio
    async def test_conflict(self, service, clock):
        _, proposal = await listed_swap_with_offer(service, clock)
        await service.accept(proposal.proposal_id, "owner")

        response = await service.reject(proposal.proposal_id, "alice")

        assert response.status == SettlementStatusEnum.CONFLICT
        assert response.message == "Someone else already decided this proposal."

    @pytest.mark.asyncio
    async def test_forbidden(self, service, clock):
        _, proposal = await listed_swap_with_offer(service, clock)

        response = await service.accept(proposal.proposal_id, "alice")

        assert response.status == SettlementStatusEnum.FORBIDDEN
        assert response.message == "You are not allowed to perform this action on this swap."

    @pytest.mark.asyncio
    async def test_not_found(self, service):
        response = await service.manual_reject_expired("swap-missing", "owner")
        assert response.to_payload()["status"] == "not_found"

    @pytest.mark.asyncio
    async def test_refusals_are_counted(self, service, clock):
        _, proposal = await listed_swap_with_offer(service, clock)
        await service.accept(proposal.proposal_id, "alice")

        stats = service.get_statistics()["service"]
        assert stats["requests"] == 1
        assert stats["refused"] == 1
        assert stats["succeeded"] == 0


# ============================================================
# HEALTH
# ============================================================

class TestHealth:
    """Health snapshot for monitoring."""

    @pytest.mark.asyncio
    async def test_health_payload(self, service, clock):
        await listed_swap_with_offer(service, clock)

        health = await service.health()
        payload = health.to_payload()

        assert health.healthy
        assert payload["sweeper"]["state"] == "idle"
        assert payload["sweeper"]["running"] is False
        assert payload["sweeper"]["lastRunAt"] is None
        assert payload["pendingLedgerWrites"] == 0
        assert payload["swapsByStatus"] == {"pending": 1}

    @pytest.mark.asyncio
    async def test_health_after_sweep(self, service, clock):
        await listed_swap_with_offer(service, clock, hours=1)
        clock.advance(hours=2)

        result = await service.sweep_once()
        payload = (await service.health()).to_payload()

        assert payload["sweeper"]["lastRunId"] == result.run_id
        assert payload["sweeper"]["itemsProcessed"] == 1
        assert payload["swapsByStatus"] == {"expired": 1}


# ============================================================
# WIRING
# ============================================================

class TestCollaboratorWiring:
    """Collaborators are chosen from configuration."""

    def test_in_memory_defaults(self):
        config = SettlementEngineConfig.for_testing()

        assert isinstance(create_ledger_client(config), InMemoryLedgerClient)
        assert isinstance(create_escrow_provider(config), InMemoryEscrowProvider)
        assert isinstance(create_booking_gateway(config), InMemoryBookingGateway)
        assert isinstance(create_notifier(config), LoggingNotifier)

    def test_http_clients_when_urls_set(self):
        config = SettlementEngineConfig.for_testing()
        config.ledger.api_url = "http://ledger.local"
        config.escrow.api_url = "http://escrow.local"
        config.settlement.booking_api_url = "http://bookings.local"
        config.alerting.notification_webhook_url = "http://hooks.local/settlement"

        assert isinstance(create_ledger_client(config), HttpLedgerClient)
        assert isinstance(create_escrow_provider(config), HttpEscrowProvider)
        assert isinstance(create_booking_gateway(config), HttpBookingGateway)
        assert isinstance(create_notifier(config), WebhookNotifier)
