"""
Settlement Engine - ORM Models.

============================================================
PURPOSE
============================================================
SQLAlchemy ORM models for settlement persistence.

TABLES:
- swaps: Swap listings
- proposals: Offers against swaps
- escrow_holdings: Funds held for financial proposals
- ledger_records: Local mirror of external ledger writes
- pending_ledger_writes: Ledger writes awaiting retry
- settlement_events: Status change audit trail
- sweep_runs: Expiration sweeper tick log
- reconciliation_logs: Reconciliation run log

CONCURRENCY:
- Every mutable row carries a `version` column
- Status updates are compare-and-swap on (id, version)

============================================================
"""

from datetime import datetime
from decimal import Decimal
from typing import Optional

from sqlalchemy import (
    String,
    Integer,
    Numeric,
    DateTime,
    Text,
    ForeignKey,
    Index,
    UniqueConstraint,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


# ============================================================
# BASE
# ============================================================

class Base(DeclarativeBase):
    """Base class for ORM models."""
    pass


# ============================================================
# SWAP MODEL
# ============================================================

class SwapModel(Base):
    """
    Persisted swap listing.

    `expires_at` is written once at creation.
    """

    __tablename__ = "swaps"

    swap_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    owner_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    owner_account: Mapped[Optional[str]] = mapped_column(String(128))
    source_booking_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)

    # State
    status: Mapped[str] = mapped_column(String(16), nullable=False, index=True)
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    # Timestamps
    expires_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    closed_at: Mapped[Optional[datetime]] = mapped_column(DateTime)

    __table_args__ = (
        Index("ix_swaps_status_expires_at", "status", "expires_at"),
    )

    def __repr__(self) -> str:
        return f"<Swap {self.swap_id} {self.status} v{self.version}>"


# ============================================================
# PROPOSAL MODEL
# ============================================================

class ProposalModel(Base):
    """Persisted proposal."""

    __tablename__ = "proposals"

    proposal_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    target_swap_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("swaps.swap_id"), nullable=False, index=True
    )
    source_swap_id: Mapped[Optional[str]] = mapped_column(String(64), index=True)
    proposer_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    proposer_account: Mapped[Optional[str]] = mapped_column(String(128))

    # Cash component
    amount: Mapped[Optional[Decimal]] = mapped_column(Numeric(18, 2))
    currency: Mapped[str] = mapped_column(String(8), default="USD")

    # State
    status: Mapped[str] = mapped_column(String(16), nullable=False, index=True)
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    rejection_reason: Mapped[Optional[str]] = mapped_column(Text)
    responded_by: Mapped[Optional[str]] = mapped_column(String(64))

    # Timestamps
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    responded_at: Mapped[Optional[datetime]] = mapped_column(DateTime)

    __table_args__ = (
        Index("ix_proposals_target_status", "target_swap_id", "status"),
    )

    def __repr__(self) -> str:
        return f"<Proposal {self.proposal_id} {self.status} v{self.version}>"


# ============================================================
# ESCROW HOLDING MODEL
# ============================================================

class EscrowHoldingModel(Base):
    """Funds held for a financial proposal."""

    __tablename__ = "escrow_holdings"

    holding_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    proposal_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("proposals.proposal_id"), unique=True, nullable=False
    )
    amount: Mapped[Decimal] = mapped_column(Numeric(18, 2), nullable=False)
    currency: Mapped[str] = mapped_column(String(8), default="USD")
    escrow_account_id: Mapped[Optional[str]] = mapped_column(String(128))

    # State
    status: Mapped[str] = mapped_column(String(16), nullable=False, index=True)
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    # Provider handles
    transfer_handle: Mapped[Optional[str]] = mapped_column(String(128))
    refund_handle: Mapped[Optional[str]] = mapped_column(String(128))

    # Timestamps
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    released_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    reverted_at: Mapped[Optional[datetime]] = mapped_column(DateTime)


# ============================================================
# LEDGER MODELS
# ============================================================

class LedgerRecordModel(Base):
    """
    Local mirror of a confirmed ledger write.

    Unique on (subject_id, outcome); a second write of the same
    outcome is a duplicate, never a new record.
    """

    __tablename__ = "ledger_records"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    subject_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    subject_type: Mapped[str] = mapped_column(String(16), nullable=False)
    outcome: Mapped[str] = mapped_column(String(16), nullable=False)
    transaction_handle: Mapped[Optional[str]] = mapped_column(String(128))
    participants: Mapped[Optional[str]] = mapped_column(Text)
    occurred_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    recorded_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)

    __table_args__ = (
        UniqueConstraint("subject_id", "outcome", name="uq_ledger_subject_outcome"),
    )


class PendingLedgerWriteModel(Base):
    """Ledger write that exhausted its retries."""

    __tablename__ = "pending_ledger_writes"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    subject_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    subject_type: Mapped[str] = mapped_column(String(16), nullable=False)
    outcome: Mapped[str] = mapped_column(String(16), nullable=False)
    participants: Mapped[Optional[str]] = mapped_column(Text)
    occurred_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    attempts: Mapped[int] = mapped_column(Integer, default=0)
    last_error: Mapped[Optional[str]] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    resolved_at: Mapped[Optional[datetime]] = mapped_column(DateTime, index=True)

    __table_args__ = (
        UniqueConstraint("subject_id", "outcome", name="uq_pending_ledger_subject_outcome"),
    )


# ============================================================
# AUDIT MODELS
# ============================================================

class SettlementEventModel(Base):
    """
    Status change audit trail.

    One row per entity transition, written in the same
    transaction as the transition itself.
    """

    __tablename__ = "settlement_events"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    event_id: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    action: Mapped[str] = mapped_column(String(16), nullable=False, index=True)
    swap_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    subject_type: Mapped[str] = mapped_column(String(16), nullable=False)
    subject_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    from_status: Mapped[Optional[str]] = mapped_column(String(16))
    to_status: Mapped[str] = mapped_column(String(16), nullable=False)
    actor_id: Mapped[Optional[str]] = mapped_column(String(64))
    reason: Mapped[Optional[str]] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, index=True)


class SweepRunModel(Base):
    """Summary of one expiration sweeper tick."""

    __tablename__ = "sweep_runs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    run_id: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    started_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, index=True)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    candidates: Mapped[int] = mapped_column(Integer, default=0)
    expired: Mapped[int] = mapped_column(Integer, default=0)
    skipped: Mapped[int] = mapped_column(Integer, default=0)
    failed: Mapped[int] = mapped_column(Integer, default=0)
    failures: Mapped[Optional[str]] = mapped_column(Text)


class ReconciliationLogModel(Base):
    """Summary of one reconciliation run."""

    __tablename__ = "reconciliation_logs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    run_id: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    started_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, index=True)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    items_checked: Mapped[int] = mapped_column(Integer, default=0)
    mismatches_found: Mapped[int] = mapped_column(Integer, default=0)
    repaired: Mapped[int] = mapped_column(Integer, default=0)
    details: Mapped[Optional[str]] = mapped_column(Text)
