"""
Settlement Engine - HTTP Collaborators.

============================================================
PURPOSE
============================================================
aiohttp implementations of the collaborator interfaces.

ERROR MAPPING:
- 2xx          -> success
- 409          -> success for idempotent ledger writes
- 429 / 5xx    -> retryable CollaboratorError
- other 4xx    -> non-retryable CollaboratorError
- network      -> retryable CollaboratorError

============================================================
"""

import asyncio
import logging
from typing import Optional, Dict, Any

import aiohttp

from ..types import LedgerEntry, SettlementEvent, CollaboratorError
from .base import (
    LedgerClient,
    EscrowProvider,
    BookingGateway,
    SettlementNotifier,
    TransferRequest,
    TransferStatus,
    BookingSnapshot,
)


logger = logging.getLogger(__name__)


# ============================================================
# HTTP CLIENT
# ============================================================

class _JsonApi:
    """Small JSON-over-HTTP helper shared by the clients."""

    def __init__(
        self,
        base_url: str,
        api_key: Optional[str] = None,
        timeout_seconds: float = 10.0,
    ):
        self._base_url = base_url.rstrip("/")
        self._api_key = api_key
        self._timeout = aiohttp.ClientTimeout(total=timeout_seconds)
        self._session: Optional[aiohttp.ClientSession] = None

    def _headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self._api_key:
            headers["Authorization"] = f"Bearer {self._api_key}"
        return headers

    async def request(
        self,
        method: str,
        path: str,
        payload: Optional[Dict[str, Any]] = None,
        accept_conflict: bool = False,
    ) -> Dict[str, Any]:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=self._timeout)

        url = f"{self._base_url}{path}"
        try:
            async with self._session.request(
                method, url, json=payload, headers=self._headers()
            ) as response:
                if response.status == 409 and accept_conflict:
                    return await response.json(content_type=None) or {}
                if 200 <= response.status < 300:
                    if response.content_length == 0:
                        return {}
                    return await response.json(content_type=None) or {}

                body = await response.text()
                retryable = response.status == 429 or response.status >= 500
                raise CollaboratorError(
                    f"{method} {url} returned {response.status}: {body[:200]}",
                    code=f"HTTP_{response.status}",
                    is_retryable=retryable,
                )
        except aiohttp.ClientError as e:
            raise CollaboratorError(f"{method} {url} failed: {e}", code="NETWORK", is_retryable=True)
        except asyncio.TimeoutError:
            raise CollaboratorError(f"{method} {url} timed out", code="TIMEOUT", is_retryable=True)

    async def close(self) -> None:
        if self._session and not self._session.closed:
            await self._session.close()
        self._session = None


# ============================================================
# LEDGER
# ============================================================

class HttpLedgerClient(LedgerClient):
    """Ledger gateway client. Writes are keyed by idempotency key."""

    def __init__(
        self,
        api_url: str,
        topic_id: str,
        api_key: Optional[str] = None,
        timeout_seconds: float = 30.0,
    ):
        self._api = _JsonApi(api_url, api_key, timeout_seconds)
        self._topic_id = topic_id

    @property
    def ledger_id(self) -> str:
        return self._topic_id

    async def submit(self, entry: LedgerEntry) -> str:
        body = await self._api.request(
            "POST",
            f"/topics/{self._topic_id}/messages",
            {
                "idempotency_key": entry.idempotency_key,
                "subject_id": entry.subject_id,
                "subject_type": entry.subject_type.value,
                "outcome": entry.outcome.value,
                "participants": entry.participants,
                "occurred_at": entry.occurred_at.isoformat(),
                "details": entry.details,
            },
            accept_conflict=True,
        )
        handle = body.get("transaction_id") or body.get("id")
        if not handle:
            raise CollaboratorError("Ledger response carried no transaction id", code="BAD_RESPONSE")
        return str(handle)

    async def close(self) -> None:
        await self._api.close()


# ============================================================
# ESCROW
# ============================================================

class HttpEscrowProvider(EscrowProvider):
    """Escrow provider client."""

    _STATUS_MAP = {
        "pending": TransferStatus.PENDING,
        "processing": TransferStatus.PENDING,
        "confirmed": TransferStatus.CONFIRMED,
        "completed": TransferStatus.CONFIRMED,
        "failed": TransferStatus.FAILED,
        "rejected": TransferStatus.FAILED,
    }

    def __init__(
        self,
        api_url: str,
        api_key: Optional[str] = None,
        timeout_seconds: float = 10.0,
    ):
        self._api = _JsonApi(api_url, api_key, timeout_seconds)

    @staticmethod
    def _payload(request: TransferRequest) -> Dict[str, Any]:
        return {
            "holding_id": request.holding_id,
            "from_account": request.from_account,
            "to_account": request.to_account,
            "amount": str(request.amount),
            "currency": request.currency,
            "idempotency_key": request.idempotency_key,
        }

    async def initiate_transfer(self, request: TransferRequest) -> str:
        body = await self._api.request("POST", "/transfers", self._payload(request))
        return str(body["transfer_id"])

    async def get_transfer_status(self, handle: str) -> TransferStatus:
        body = await self._api.request("GET", f"/transfers/{handle}")
        status = str(body.get("status", "pending")).lower()
        return self._STATUS_MAP.get(status, TransferStatus.PENDING)

    async def refund(self, request: TransferRequest) -> str:
        body = await self._api.request("POST", "/refunds", self._payload(request))
        return str(body["refund_id"])

    async def close(self) -> None:
        await self._api.close()


# ============================================================
# BOOKINGS
# ============================================================

class HttpBookingGateway(BookingGateway):
    """Booking service client."""

    def __init__(self, api_url: str, timeout_seconds: float = 10.0):
        self._api = _JsonApi(api_url, timeout_seconds=timeout_seconds)

    async def get_booking(self, booking_id: str) -> Optional[BookingSnapshot]:
        try:
            body = await self._api.request("GET", f"/bookings/{booking_id}")
        except CollaboratorError as e:
            if e.code == "HTTP_404":
                return None
            raise
        return BookingSnapshot(
            booking_id=booking_id,
            owner_id=str(body.get("owner_id", "")),
            locked=bool(body.get("locked", False)),
            details=body,
        )

    async def unlock_booking(self, booking_id: str, reason: str) -> None:
        await self._api.request("POST", f"/bookings/{booking_id}/unlock", {"reason": reason})

    async def close(self) -> None:
        await self._api.close()


# ============================================================
# NOTIFIERS
# ============================================================

class WebhookNotifier(SettlementNotifier):
    """POSTs settlement events to a webhook."""

    def __init__(self, url: str, timeout_seconds: float = 10.0):
        self._api = _JsonApi(url, timeout_seconds=timeout_seconds)

    async def publish(self, event: SettlementEvent) -> None:
        await self._api.request("POST", "", event.to_payload())

    async def close(self) -> None:
        await self._api.close()


class LoggingNotifier(SettlementNotifier):
    """Writes settlement events to the log."""

    async def publish(self, event: SettlementEvent) -> None:
        logger.info(
            f"Settlement event: {event.action.value} -> {event.outcome.value} "
            f"swap={event.swap_id} proposal={event.proposal_id}"
        )
