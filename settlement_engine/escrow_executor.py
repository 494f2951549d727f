"""
Settlement Engine - Escrow Transfer Executor.

============================================================
PURPOSE
============================================================
Sole writer of escrow holding status.

OPERATIONS:
- release: held -> released, initiate + verify transfer
- revert:  held -> reverted (proposal rejected/withdrawn/expired)
- refund:  return reverted funds to the proposer (after commit)

On transfer failure or timeout the holding is marked back
to held, never reverted, and TransferFailedError is raised
so the caller's transaction rolls back.

============================================================
"""

import asyncio
import logging
from datetime import datetime
from decimal import Decimal
from typing import Optional

from .types import (
    EscrowStatus,
    EscrowHoldingRecord,
    ProposalRecord,
    CollaboratorError,
    TransferFailedError,
    ConflictError,
    InvalidStateError,
    ValidationError,
)
from .config import EscrowConfig
from .repository import SettlementRepository
from .adapters.base import EscrowProvider, TransferRequest, TransferStatus


logger = logging.getLogger(__name__)


class EscrowTransferExecutor:
    """
    Moves escrowed funds under coordinator direction.
    """

    def __init__(self, provider: EscrowProvider, config: Optional[EscrowConfig] = None):
        self._provider = provider
        self._config = config or EscrowConfig()

        self._stats = {
            "transfers_confirmed": 0,
            "transfers_failed": 0,
            "reverts": 0,
            "refunds": 0,
            "refunds_failed": 0,
        }

    @property
    def provider(self) -> EscrowProvider:
        return self._provider

    # --------------------------------------------------------
    # VALIDATION
    # --------------------------------------------------------

    def validate_amount(self, amount: Optional[Decimal]) -> Decimal:
        """Transfer amount must be positive and within the limit."""
        if amount is None or amount <= 0:
            raise ValidationError("Transfer amount must be positive", {"amount": str(amount)})
        if amount > self._config.max_transfer_amount:
            raise ValidationError(
                f"Transfer amount exceeds maximum of {self._config.max_transfer_amount}",
                {"amount": str(amount)},
            )
        return amount

    def validate_holding(
        self,
        holding: Optional[EscrowHoldingRecord],
        proposal: ProposalRecord,
    ) -> EscrowHoldingRecord:
        """Holding must exist, be held, and match the proposal amount."""
        if holding is None:
            raise InvalidStateError(
                f"No escrow holding for proposal {proposal.proposal_id}",
                {"proposal_id": proposal.proposal_id},
            )
        if holding.status != EscrowStatus.HELD:
            raise InvalidStateError(
                f"Escrow holding {holding.holding_id} is {holding.status.value}",
                {"holding_id": holding.holding_id, "status": holding.status.value},
            )
        if holding.transfer_handle is not None:
            raise InvalidStateError(
                f"Escrow holding {holding.holding_id} has an unreconciled transfer {holding.transfer_handle}",
                {"holding_id": holding.holding_id, "transfer_handle": holding.transfer_handle},
            )
        if holding.amount != proposal.amount:
            raise InvalidStateError(
                f"Escrow amount {holding.amount} does not match proposal amount {proposal.amount}",
                {"holding_id": holding.holding_id},
            )
        self.validate_amount(holding.amount)
        return holding

    # --------------------------------------------------------
    # TRANSFER
    # --------------------------------------------------------

    async def transfer(
        self,
        repo: SettlementRepository,
        holding: EscrowHoldingRecord,
        to_account: str,
        amount: Decimal,
        now: datetime,
    ) -> str:
        """
        Mark a holding released and move its funds.

        Runs inside the caller's transaction.

        Returns:
            Confirmed transfer handle, persisted by the caller

        Raises:
            TransferFailedError: Transfer failed or timed out
        """
        if not await repo.cas_holding_status(
            holding.holding_id,
            EscrowStatus.HELD,
            EscrowStatus.RELEASED,
            holding.version,
            now,
        ):
            raise ConflictError(
                f"Escrow holding {holding.holding_id} changed concurrently",
                {"holding_id": holding.holding_id},
            )

        request = TransferRequest(
            holding_id=holding.holding_id,
            to_account=to_account,
            amount=amount,
            currency=holding.currency,
            from_account=holding.escrow_account_id,
            idempotency_key=f"{holding.holding_id}:release",
        )

        handle = None
        try:
            handle = await asyncio.wait_for(
                self._provider.initiate_transfer(request),
                timeout=self._config.transfer_timeout_seconds,
            )
            await self.verify(handle)
        except (CollaboratorError, asyncio.TimeoutError, TransferFailedError) as e:
            self._stats["transfers_failed"] += 1
            reason = str(e) or type(e).__name__
            logger.error(
                f"Escrow transfer for holding {holding.holding_id} failed "
                f"(handle={handle}): {reason}"
            )
            await repo.cas_holding_status(
                holding.holding_id,
                EscrowStatus.RELEASED,
                EscrowStatus.HELD,
                holding.version + 1,
                now,
            )
            raise TransferFailedError(
                f"Escrow transfer failed: {reason}",
                {"holding_id": holding.holding_id, "transfer_handle": handle},
            )

        self._stats["transfers_confirmed"] += 1
        logger.info(
            f"Escrow holding {holding.holding_id} released to {to_account}: "
            f"{amount} {holding.currency} ({handle})"
        )
        return handle

    async def verify(self, handle: str) -> bool:
        """
        Poll until the transfer is confirmed.

        Raises:
            TransferFailedError: Explicit failure or timeout
        """
        async def _poll() -> TransferStatus:
            while True:
                status = await self._provider.get_transfer_status(handle)
                if status != TransferStatus.PENDING:
                    return status
                await asyncio.sleep(self._config.verify_poll_interval_seconds)

        try:
            status = await asyncio.wait_for(
                _poll(), timeout=self._config.verify_timeout_seconds
            )
        except asyncio.TimeoutError:
            raise TransferFailedError(
                f"Transfer {handle} not confirmed within {self._config.verify_timeout_seconds}s",
                {"transfer_handle": handle},
            )

        if status == TransferStatus.FAILED:
            raise TransferFailedError(
                f"Transfer {handle} was rejected by the provider",
                {"transfer_handle": handle},
            )
        return True

    # --------------------------------------------------------
    # REVERT / REFUND
    # --------------------------------------------------------

    async def revert(
        self,
        repo: SettlementRepository,
        holding: EscrowHoldingRecord,
        now: datetime,
    ) -> bool:
        """
        Mark a holding reverted inside the caller's transaction.

        Returns:
            False if the holding was not held
        """
        if holding.status != EscrowStatus.HELD:
            logger.warning(
                f"Escrow holding {holding.holding_id} is {holding.status.value}, not reverting"
            )
            return False
        # Funds already left escrow once; reverting would pay twice
        if holding.transfer_handle is not None:
            raise InvalidStateError(
                f"Escrow holding {holding.holding_id} has an unreconciled transfer {holding.transfer_handle}",
                {"holding_id": holding.holding_id, "transfer_handle": holding.transfer_handle},
            )

        if not await repo.cas_holding_status(
            holding.holding_id,
            EscrowStatus.HELD,
            EscrowStatus.REVERTED,
            holding.version,
            now,
        ):
            raise ConflictError(
                f"Escrow holding {holding.holding_id} changed concurrently",
                {"holding_id": holding.holding_id},
            )
        self._stats["reverts"] += 1
        return True

    async def refund(self, holding: EscrowHoldingRecord, to_account: str) -> str:
        """
        Return reverted funds to the proposer.

        Raises:
            CollaboratorError: Provider failure (retried by reconciliation)
        """
        request = TransferRequest(
            holding_id=holding.holding_id,
            to_account=to_account,
            amount=holding.amount,
            currency=holding.currency,
            from_account=holding.escrow_account_id,
            idempotency_key=f"{holding.holding_id}:refund",
        )
        try:
            handle = await asyncio.wait_for(
                self._provider.refund(request),
                timeout=self._config.transfer_timeout_seconds,
            )
        except asyncio.TimeoutError:
            self._stats["refunds_failed"] += 1
            raise CollaboratorError(
                f"Refund of holding {holding.holding_id} timed out",
                code="TIMEOUT",
                is_retryable=True,
            )
        except CollaboratorError:
            self._stats["refunds_failed"] += 1
            raise

        self._stats["refunds"] += 1
        logger.info(f"Escrow holding {holding.holding_id} refunded to {to_account} ({handle})")
        return handle

    def get_stats(self) -> dict:
        return dict(self._stats)
