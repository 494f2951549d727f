"""
Settlement State Machine Tests.

============================================================
PURPOSE
============================================================
Pure transition rules: no database, no collaborators.

TEST CATEGORIES:
- Transition guard tables
- Accept / reject / withdraw planning
- Expire and manual close planning
- Submission validation

============================================================
"""

from datetime import datetime, timedelta
from decimal import Decimal

import pytest

from settlement_engine.types import (
    SwapStatus,
    ProposalStatus,
    SubjectType,
    LedgerOutcome,
    SettlementAction,
    SwapRecord,
    ProposalRecord,
    ForbiddenError,
    InvalidStateError,
    ExpiredError,
    ConflictError,
    ValidationError,
)
from settlement_engine.state_machine import (
    VALID_SWAP_TRANSITIONS,
    VALID_PROPOSAL_TRANSITIONS,
    TransitionGuard,
    SettlementStateMachine,
)


NOW = datetime(2026, 3, 1, 12, 0, 0)


def make_swap(status=SwapStatus.PENDING, expires_in=timedelta(hours=1), swap_id="swap-1", owner="owner"):
    return SwapRecord(
        swap_id=swap_id,
        owner_id=owner,
        source_booking_id=f"booking-{swap_id}",
        status=status,
        expires_at=NOW + expires_in,
        version=3,
    )


def make_proposal(proposal_id, status=ProposalStatus.PENDING, amount=None, proposer="bob", swap_id="swap-1"):
    return ProposalRecord(
        proposal_id=proposal_id,
        target_swap_id=swap_id,
        proposer_id=proposer,
        status=status,
        amount=Decimal(amount) if amount is not None else None,
        source_swap_id=None if amount is not None else f"src-{proposal_id}",
    )


@pytest.fixture
def machine():
    return SettlementStateMachine()


# ============================================================
# TRANSITION GUARD
# ============================================================

class TestTransitionGuard:
    """Tests for the transition tables."""

    def test_terminal_proposals_have_no_exits(self):
        for status in ProposalStatus:
            if status.is_terminal():
                assert VALID_PROPOSAL_TRANSITIONS[status] == set()

    def test_accepted_and_rejected_swaps_are_final(self):
        assert VALID_SWAP_TRANSITIONS[SwapStatus.ACCEPTED] == set()
        assert VALID_SWAP_TRANSITIONS[SwapStatus.REJECTED] == set()

    def test_auto_closed_swap_may_only_become_rejected(self):
        for status in (SwapStatus.EXPIRED, SwapStatus.CANCELLED):
            assert VALID_SWAP_TRANSITIONS[status] == {SwapStatus.REJECTED}

    def test_swap_never_returns_to_active(self):
        for from_status, targets in VALID_SWAP_TRANSITIONS.items():
            assert SwapStatus.ACTIVE not in targets

    def test_denial_reason_for_terminal_state(self):
        allowed, reason = TransitionGuard.can_transition_proposal(
            ProposalStatus.ACCEPTED, ProposalStatus.REJECTED
        )
        assert allowed is False
        assert "already accepted" in reason

    def test_valid_swap_transition(self):
        allowed, _ = TransitionGuard.can_transition_swap(SwapStatus.PENDING, SwapStatus.ACCEPTED)
        assert allowed is True


# ============================================================
# ACCEPT
# ============================================================

class TestPlanAccept:
    """Tests for acceptance planning."""

    def test_accept_cascades_to_pending_siblings(self, machine):
        swap = make_swap()
        target = make_proposal("p-a", amount="100")
        sibling_swap = make_proposal("p-b")
        sibling_cash = make_proposal("p-c", amount="50")
        withdrawn = make_proposal("p-d", status=ProposalStatus.WITHDRAWN)

        plan = machine.plan_accept(
            swap, target, [target, sibling_swap, sibling_cash, withdrawn], "owner", NOW
        )

        assert plan.swap_change.to_status == SwapStatus.ACCEPTED.value
        assert plan.swap_change.expected_version == 3
        assert plan.proposal_changes[0].subject_id == "p-a"
        assert plan.proposal_changes[0].to_status == ProposalStatus.ACCEPTED.value
        assert plan.cascaded_proposal_ids == ["p-b", "p-c"]
        assert all(
            c.to_status == ProposalStatus.REJECTED.value and c.reason == "swap accepted elsewhere"
            for c in plan.proposal_changes[1:]
        )
        assert plan.escrow_release == "p-a"
        assert plan.transfer_amount == Decimal("100")
        assert plan.escrow_reverts == ["p-c"]
        assert (SubjectType.PROPOSAL, "p-a", LedgerOutcome.ACCEPTED) in plan.ledger_outcomes
        assert (SubjectType.PROPOSAL, "p-b", LedgerOutcome.REJECTED) in plan.ledger_outcomes

    def test_non_financial_accept_has_no_release(self, machine):
        swap = make_swap()
        target = make_proposal("p-a")
        plan = machine.plan_accept(swap, target, [target], "owner", NOW)
        assert plan.escrow_release is None
        assert plan.transfer_amount is None

    def test_only_owner_may_accept(self, machine):
        swap = make_swap()
        target = make_proposal("p-a")
        with pytest.raises(ForbiddenError):
            machine.plan_accept(swap, target, [target], "bob", NOW)

    def test_accept_terminal_proposal_is_conflict(self, machine):
        swap = make_swap()
        target = make_proposal("p-a", status=ProposalStatus.REJECTED)
        with pytest.raises(ConflictError):
            machine.plan_accept(swap, target, [target], "owner", NOW)

    @pytest.mark.parametrize("status", [SwapStatus.EXPIRED, SwapStatus.CANCELLED])
    def test_accept_on_auto_closed_swap_is_expired(self, machine, status):
        swap = make_swap(status=status)
        target = make_proposal("p-a")
        with pytest.raises(ExpiredError):
            machine.plan_accept(swap, target, [target], "owner", NOW)

    def test_accept_after_sweep_is_expired_not_conflict(self, machine):
        swap = make_swap(status=SwapStatus.EXPIRED, expires_in=timedelta(hours=-1))
        target = make_proposal("p-a", status=ProposalStatus.EXPIRED)
        with pytest.raises(ExpiredError):
            machine.plan_accept(swap, target, [target], "owner", NOW)

    def test_accept_on_accepted_swap_is_conflict(self, machine):
        swap = make_swap(status=SwapStatus.ACCEPTED)
        target = make_proposal("p-a")
        with pytest.raises(ConflictError):
            machine.plan_accept(swap, target, [target], "owner", NOW)

    def test_accept_past_deadline_before_sweep_is_expired(self, machine):
        swap = make_swap(expires_in=timedelta(seconds=-1))
        target = make_proposal("p-a")
        with pytest.raises(ExpiredError):
            machine.plan_accept(swap, target, [target], "owner", NOW)

    def test_accept_at_exact_deadline_is_expired(self, machine):
        swap = make_swap(expires_in=timedelta(0))
        target = make_proposal("p-a")
        with pytest.raises(ExpiredError):
            machine.plan_accept(swap, target, [target], "owner", NOW)

    def test_expired_and_conflict_are_invalid_state(self):
        assert issubclass(ExpiredError, InvalidStateError)
        assert issubclass(ConflictError, InvalidStateError)


# ============================================================
# REJECT / WITHDRAW
# ============================================================

class TestPlanReject:
    """Tests for rejection and withdrawal planning."""

    def test_reject_leaves_swap_untouched(self, machine):
        swap = make_swap()
        proposal = make_proposal("p-a", amount="20")
        plan = machine.plan_reject(swap, proposal, "owner", "too low")

        assert plan.swap_change is None
        assert plan.proposal_changes[0].to_status == ProposalStatus.REJECTED.value
        assert plan.proposal_changes[0].reason == "too low"
        assert plan.escrow_reverts == ["p-a"]
        assert plan.ledger_outcomes == [(SubjectType.PROPOSAL, "p-a", LedgerOutcome.REJECTED)]

    def test_reject_by_proposer_is_forbidden(self, machine):
        with pytest.raises(ForbiddenError):
            machine.plan_reject(make_swap(), make_proposal("p-a"), "bob")

    def test_reject_on_accepted_swap_is_invalid_state(self, machine):
        swap = make_swap(status=SwapStatus.ACCEPTED)
        with pytest.raises(InvalidStateError):
            machine.plan_reject(swap, make_proposal("p-a"), "owner")

    def test_reject_allowed_on_expired_swap(self, machine):
        swap = make_swap(status=SwapStatus.EXPIRED)
        plan = machine.plan_reject(swap, make_proposal("p-a"), "owner")
        assert plan.proposal_changes[0].to_status == ProposalStatus.REJECTED.value

    def test_withdraw_by_proposer(self, machine):
        plan = machine.plan_withdraw(make_swap(), make_proposal("p-a", amount="5"), "bob")
        assert plan.action == SettlementAction.WITHDRAW
        assert plan.proposal_changes[0].to_status == ProposalStatus.WITHDRAWN.value
        assert plan.escrow_reverts == ["p-a"]

    def test_withdraw_by_owner_is_forbidden(self, machine):
        with pytest.raises(ForbiddenError):
            machine.plan_withdraw(make_swap(), make_proposal("p-a"), "owner")

    def test_withdraw_twice_is_conflict(self, machine):
        proposal = make_proposal("p-a", status=ProposalStatus.WITHDRAWN)
        with pytest.raises(ConflictError):
            machine.plan_withdraw(make_swap(), proposal, "bob")


# ============================================================
# EXPIRE / MANUAL CLOSE
# ============================================================

class TestPlanExpire:
    """Tests for deadline expiration planning."""

    def test_expire_overdue_swap(self, machine):
        swap = make_swap(expires_in=timedelta(minutes=-5))
        proposals = [make_proposal("p-a"), make_proposal("p-b", amount="10")]
        plan = machine.plan_expire(swap, proposals, NOW)

        assert plan.swap_change.to_status == SwapStatus.EXPIRED.value
        assert [c.to_status for c in plan.proposal_changes] == ["expired", "expired"]
        assert plan.escrow_reverts == ["p-b"]
        assert plan.ledger_outcomes[0] == (SubjectType.SWAP, "swap-1", LedgerOutcome.EXPIRED)

    def test_expire_with_cancelled_label(self):
        machine = SettlementStateMachine(expired_status=SwapStatus.CANCELLED)
        swap = make_swap(expires_in=timedelta(minutes=-5))
        plan = machine.plan_expire(swap, [make_proposal("p-a")], NOW)

        assert plan.swap_change.to_status == SwapStatus.CANCELLED.value
        assert plan.proposal_changes[0].to_status == ProposalStatus.EXPIRED.value
        assert plan.ledger_outcomes[0][2] == LedgerOutcome.CANCELLED

    def test_expire_not_yet_due(self, machine):
        with pytest.raises(InvalidStateError):
            machine.plan_expire(make_swap(), [], NOW)

    def test_expire_settled_swap_is_conflict(self, machine):
        swap = make_swap(status=SwapStatus.ACCEPTED, expires_in=timedelta(minutes=-5))
        with pytest.raises(ConflictError):
            machine.plan_expire(swap, [], NOW)


class TestPlanManualClose:
    """Tests for owner closure of expired swaps."""

    def test_close_expired_swap(self, machine):
        swap = make_swap(status=SwapStatus.EXPIRED, expires_in=timedelta(hours=-1))
        plan = machine.plan_manual_close(swap, [], "owner", NOW)
        assert plan.swap_change.from_status == "expired"
        assert plan.swap_change.to_status == "rejected"
        assert plan.already_closed is False

    def test_close_open_overdue_swap_rejects_leftovers(self, machine):
        swap = make_swap(expires_in=timedelta(hours=-1))
        plan = machine.plan_manual_close(swap, [make_proposal("p-a")], "owner", NOW)
        assert plan.proposal_changes[0].to_status == "rejected"
        assert plan.proposal_changes[0].reason == "swap closed by owner"

    def test_close_rejected_swap_is_noop(self, machine):
        swap = make_swap(status=SwapStatus.REJECTED, expires_in=timedelta(hours=-1))
        plan = machine.plan_manual_close(swap, [], "owner", NOW)
        assert plan.already_closed is True
        assert plan.is_empty

    def test_close_before_deadline(self, machine):
        with pytest.raises(InvalidStateError):
            machine.plan_manual_close(make_swap(), [], "owner", NOW)

    def test_close_accepted_swap(self, machine):
        swap = make_swap(status=SwapStatus.ACCEPTED, expires_in=timedelta(hours=-1))
        with pytest.raises(InvalidStateError):
            machine.plan_manual_close(swap, [], "owner", NOW)

    def test_close_by_stranger(self, machine):
        swap = make_swap(status=SwapStatus.EXPIRED, expires_in=timedelta(hours=-1))
        with pytest.raises(ForbiddenError):
            machine.plan_manual_close(swap, [], "mallory", NOW)


# ============================================================
# SUBMIT
# ============================================================

class TestPlanSubmit:
    """Tests for proposal submission validation."""

    def test_first_proposal_moves_swap_to_pending(self, machine):
        swap = make_swap(status=SwapStatus.ACTIVE)
        plan = machine.plan_submit(swap, "bob", NOW, amount=Decimal("10"))
        assert plan.swap_change.to_status == SwapStatus.PENDING.value

    def test_later_proposal_keeps_swap_pending(self, machine):
        plan = machine.plan_submit(make_swap(), "bob", NOW, amount=Decimal("10"))
        assert plan.swap_change is None

    def test_self_proposal(self, machine):
        with pytest.raises(ValidationError):
            machine.plan_submit(make_swap(), "owner", NOW, amount=Decimal("10"))

    @pytest.mark.parametrize("amount", ["0", "-5"])
    def test_non_positive_amount(self, machine, amount):
        with pytest.raises(ValidationError):
            machine.plan_submit(make_swap(), "bob", NOW, amount=Decimal(amount))

    def test_amount_above_maximum(self, machine):
        with pytest.raises(ValidationError):
            machine.plan_submit(
                make_swap(), "bob", NOW, amount=Decimal("501"), max_amount=Decimal("500")
            )

    def test_source_swap_of_another_party(self, machine):
        source = make_swap(swap_id="swap-2", owner="carol")
        with pytest.raises(ForbiddenError):
            machine.plan_submit(make_swap(), "bob", NOW, source_swap=source)

    def test_source_swap_must_be_open(self, machine):
        source = make_swap(swap_id="swap-2", owner="bob", status=SwapStatus.ACCEPTED)
        with pytest.raises(InvalidStateError):
            machine.plan_submit(make_swap(), "bob", NOW, source_swap=source)

    def test_source_swap_cannot_be_target(self, machine):
        swap = make_swap(owner="owner")
        with pytest.raises(ValidationError):
            machine.plan_submit(swap, "bob", NOW, source_swap=swap)

    def test_empty_proposal(self, machine):
        with pytest.raises(ValidationError):
            machine.plan_submit(make_swap(), "bob", NOW)

    def test_proposal_on_overdue_swap(self, machine):
        swap = make_swap(expires_in=timedelta(seconds=-1))
        with pytest.raises(ExpiredError):
            machine.plan_submit(swap, "bob", NOW, amount=Decimal("10"))
