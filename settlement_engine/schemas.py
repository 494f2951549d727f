"""
Pydantic Schemas for Settlement Engine Responses.
"""

from datetime import datetime
from typing import Dict, List, Optional
from pydantic import BaseModel, ConfigDict, Field
from enum import Enum


# =============================================================
# ENUMS
# =============================================================

class SettlementStatusEnum(str, Enum):
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    EXPIRED = "expired"
    CANCELLED = "cancelled"
    CONFLICT = "conflict"
    ALREADY_CLOSED = "already_closed"
    FORBIDDEN = "forbidden"
    INVALID_STATE = "invalid_state"
    NOT_FOUND = "not_found"
    TRANSFER_FAILED = "transfer_failed"
    TIMEOUT = "timeout"
    INVALID_REQUEST = "invalid_request"


class SweeperStateEnum(str, Enum):
    IDLE = "idle"
    RUNNING = "running"


# =============================================================
# OPERATION RESPONSES
# =============================================================

class SettlementResponse(BaseModel):
    """Common shape of every settlement response."""
    model_config = ConfigDict(populate_by_name=True)

    status: SettlementStatusEnum
    message: Optional[str] = None
    warnings: List[str] = Field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.status in {
            SettlementStatusEnum.ACCEPTED,
            SettlementStatusEnum.REJECTED,
            SettlementStatusEnum.ALREADY_CLOSED,
        }

    def to_payload(self) -> Dict:
        return self.model_dump(by_alias=True, mode="json", exclude_none=True)


class AcceptResponse(SettlementResponse):
    """accept(proposalId) -> {status, proposalId}."""
    proposal_id: str = Field(alias="proposalId")
    transfer_handle: Optional[str] = Field(default=None, alias="transferHandle")


class RejectResponse(SettlementResponse):
    """
    reject(proposalId, reason?) -> {status, proposalId}.

    status is rejected for owner rejections and proposer withdrawals
    alike; proposalStatus tells them apart.
    """
    proposal_id: str = Field(alias="proposalId")
    proposal_status: Optional[str] = Field(default=None, alias="proposalStatus")


class ManualCloseResponse(SettlementResponse):
    """manualRejectExpired(swapId) -> {status}."""
    swap_id: str = Field(alias="swapId")


# =============================================================
# HEALTH
# =============================================================

class SweeperHealth(BaseModel):
    """Sweeper status for the monitoring collaborator."""
    model_config = ConfigDict(populate_by_name=True)

    state: SweeperStateEnum
    running: bool
    last_run_at: Optional[datetime] = Field(default=None, alias="lastRunAt")
    last_run_id: Optional[str] = Field(default=None, alias="lastRunId")
    items_processed: int = Field(default=0, alias="itemsProcessed")
    items_failed: int = Field(default=0, alias="itemsFailed")
    total_runs: int = Field(default=0, alias="totalRuns")
    skipped_ticks: int = Field(default=0, alias="skippedTicks")


class HealthResponse(BaseModel):
    """Service health snapshot."""
    model_config = ConfigDict(populate_by_name=True)

    healthy: bool
    database: bool
    sweeper: SweeperHealth
    pending_ledger_writes: int = Field(default=0, alias="pendingLedgerWrites")
    swaps_by_status: Dict[str, int] = Field(default_factory=dict, alias="swapsByStatus")
    timestamp: datetime = Field(default_factory=datetime.utcnow)

    def to_payload(self) -> Dict:
        return self.model_dump(by_alias=True, mode="json")
