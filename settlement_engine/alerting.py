"""
Settlement Engine - Alerting.

============================================================
PURPOSE
============================================================
Sends operational alerts for settlement events via Telegram.

ALERT TYPES:
- Escrow transfer failures
- Deferred ledger writes
- Sweep item failures and skipped ticks
- Refund failures
- Reconciliation mismatches

SAFETY REQUIREMENTS:
- Alerting never fails a settlement
- Rate limiting to prevent spam

============================================================
"""

import logging
import os
from datetime import datetime, timedelta
from typing import Optional, Dict, Any, List
from dataclasses import dataclass, field
from enum import Enum

import aiohttp

from .config import AlertingConfig


logger = logging.getLogger(__name__)


# ============================================================
# ALERT TYPES
# ============================================================

class AlertSeverity(Enum):
    """Alert severity levels."""

    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


class AlertType(Enum):
    """Types of alerts."""

    TRANSFER_FAILED = "TRANSFER_FAILED"
    """Escrow transfer failed; settlement rolled back."""

    LEDGER_WRITE_DEFERRED = "LEDGER_WRITE_DEFERRED"
    """Ledger write queued for retry."""

    REFUND_FAILED = "REFUND_FAILED"
    """Reverted holding could not be refunded."""

    SWEEP_ITEM_FAILED = "SWEEP_ITEM_FAILED"
    """A swap could not be expired this tick."""

    SWEEP_TICK_SKIPPED = "SWEEP_TICK_SKIPPED"
    """Previous sweep still running."""

    RECONCILIATION_MISMATCH = "RECONCILIATION_MISMATCH"
    """Inconsistency between stores detected."""

    UNCOMMITTED_TRANSFER = "UNCOMMITTED_TRANSFER"
    """Funds moved but the settlement was rolled back."""


@dataclass
class Alert:
    """An alert to be sent."""

    alert_type: AlertType
    severity: AlertSeverity
    message: str
    details: Dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=datetime.utcnow)
    swap_id: Optional[str] = None
    proposal_id: Optional[str] = None


# ============================================================
# TELEGRAM ALERTER
# ============================================================

class TelegramAlerter:
    """
    Sends alerts via Telegram.

    Falls back to logging when no bot token is configured.
    """

    _SEVERITY_ORDER = {
        AlertSeverity.INFO: 0,
        AlertSeverity.WARNING: 1,
        AlertSeverity.ERROR: 2,
        AlertSeverity.CRITICAL: 3,
    }

    def __init__(self, config: Optional[AlertingConfig] = None):
        self._config = config or AlertingConfig()

        self._bot_token = os.environ.get(self._config.telegram_bot_token_env, "")
        self._chat_id = os.environ.get(self._config.telegram_chat_id_env, "")

        # Rate limiting
        self._last_alert_time: Optional[datetime] = None
        self._alerts_this_minute: List[datetime] = []

        self._session: Optional[aiohttp.ClientSession] = None

        self._history: List[Alert] = []
        self._max_history = 100

    @property
    def is_configured(self) -> bool:
        """Check if Telegram is configured."""
        return bool(self._bot_token and self._chat_id)

    async def send_alert(self, alert: Alert) -> bool:
        """
        Send an alert.

        Returns:
            Whether alert was delivered to Telegram
        """
        self._history.append(alert)
        if len(self._history) > self._max_history:
            self._history.pop(0)

        log = logger.error if self._SEVERITY_ORDER[alert.severity] >= 2 else logger.warning
        log(f"[{alert.alert_type.value}] {alert.message}")

        if not self._config.enabled:
            return False

        if not self._can_send():
            logger.warning(f"Alert rate limited: {alert.message}")
            return False

        return await self._send_telegram(alert)

    async def _send_telegram(self, alert: Alert) -> bool:
        if not self.is_configured:
            logger.debug(f"Telegram not configured, logged alert only: {alert.message}")
            return False

        try:
            if self._session is None:
                self._session = aiohttp.ClientSession(
                    timeout=aiohttp.ClientTimeout(total=10)
                )

            url = f"https://api.telegram.org/bot{self._bot_token}/sendMessage"
            payload = {
                "chat_id": self._chat_id,
                "text": self._format_message(alert),
                "parse_mode": "HTML",
            }

            async with self._session.post(url, json=payload) as response:
                if response.status == 200:
                    self._record_sent()
                    logger.info(f"Alert sent: {alert.alert_type.value}")
                    return True
                body = await response.text()
                logger.error(f"Telegram API error {response.status}: {body}")
                return False

        except Exception as e:
            logger.error(f"Failed to send Telegram alert: {e}")
            return False

    def _format_message(self, alert: Alert) -> str:
        emoji = {
            AlertSeverity.INFO: "ℹ️",
            AlertSeverity.WARNING: "⚠️",
            AlertSeverity.ERROR: "❌",
            AlertSeverity.CRITICAL: "🚨",
        }.get(alert.severity, "📢")

        lines = [
            f"{emoji} <b>{alert.alert_type.value}</b>",
            f"<b>Severity:</b> {alert.severity.value}",
            f"<b>Time:</b> {alert.timestamp.strftime('%Y-%m-%d %H:%M:%S')} UTC",
            "",
            alert.message,
        ]
        if alert.swap_id:
            lines.append(f"\n<b>Swap:</b> <code>{alert.swap_id}</code>")
        if alert.proposal_id:
            lines.append(f"<b>Proposal:</b> <code>{alert.proposal_id}</code>")
        if alert.details:
            lines.append("\n<b>Details:</b>")
            for key, value in alert.details.items():
                lines.append(f"  • {key}: {value}")
        return "\n".join(lines)

    def _can_send(self) -> bool:
        now = datetime.utcnow()

        if self._last_alert_time:
            elapsed = (now - self._last_alert_time).total_seconds()
            if elapsed < self._config.min_interval_seconds:
                return False

        minute_ago = now - timedelta(minutes=1)
        self._alerts_this_minute = [t for t in self._alerts_this_minute if t > minute_ago]
        return len(self._alerts_this_minute) < self._config.max_alerts_per_minute

    def _record_sent(self) -> None:
        now = datetime.utcnow()
        self._last_alert_time = now
        self._alerts_this_minute.append(now)

    def get_history(self, limit: int = 10) -> List[Alert]:
        """Get alert history."""
        return self._history[-limit:]

    async def close(self) -> None:
        """Close HTTP session."""
        if self._session:
            await self._session.close()
            self._session = None


# ============================================================
# ALERT HELPER FUNCTIONS
# ============================================================

def create_transfer_failed_alert(
    swap_id: str,
    proposal_id: str,
    error_message: str,
) -> Alert:
    """Create a transfer failed alert."""
    return Alert(
        alert_type=AlertType.TRANSFER_FAILED,
        severity=AlertSeverity.ERROR,
        message=f"Escrow transfer failed, acceptance rolled back: {error_message}",
        swap_id=swap_id,
        proposal_id=proposal_id,
    )


def create_uncommitted_transfer_alert(
    swap_id: str,
    proposal_id: str,
    holding_id: str,
    transfer_handle: str,
    error_message: str,
) -> Alert:
    """Create an alert for a confirmed transfer whose settlement did not commit."""
    return Alert(
        alert_type=AlertType.UNCOMMITTED_TRANSFER,
        severity=AlertSeverity.CRITICAL,
        message=(
            f"Escrow transfer {transfer_handle} confirmed but acceptance was not committed. "
            f"Manual reconciliation required"
        ),
        swap_id=swap_id,
        proposal_id=proposal_id,
        details={"holding_id": holding_id, "transfer_handle": transfer_handle, "error": error_message},
    )


def create_ledger_deferred_alert(subject_id: str, outcome: str, error_message: str) -> Alert:
    """Create a deferred ledger write alert."""
    return Alert(
        alert_type=AlertType.LEDGER_WRITE_DEFERRED,
        severity=AlertSeverity.WARNING,
        message=f"Ledger write for {subject_id} ({outcome}) queued for retry",
        details={"error": error_message},
    )


def create_refund_failed_alert(holding_id: str, proposal_id: str, error_message: str) -> Alert:
    return Alert(
        alert_type=AlertType.REFUND_FAILED,
        severity=AlertSeverity.ERROR,
        message=f"Refund of holding {holding_id} failed: {error_message}",
        proposal_id=proposal_id,
    )


def create_sweep_failure_alert(run_id: str, failures: Dict[str, str]) -> Alert:
    """Create a sweep failure alert."""
    return Alert(
        alert_type=AlertType.SWEEP_ITEM_FAILED,
        severity=AlertSeverity.ERROR,
        message=f"Sweep {run_id}: {len(failures)} swap(s) failed to expire",
        details=dict(list(failures.items())[:10]),
    )


def create_sweep_skipped_alert(consecutive_skips: int, interval_seconds: float) -> Alert:
    return Alert(
        alert_type=AlertType.SWEEP_TICK_SKIPPED,
        severity=AlertSeverity.WARNING,
        message=(
            f"Sweep tick skipped {consecutive_skips} time(s) in a row; "
            f"previous run still in progress (interval={interval_seconds}s)"
        ),
        details={"consecutive_skips": consecutive_skips},
    )


def create_reconciliation_alert(
    mismatch_count: int,
    critical_count: int,
    summary: Dict[str, int],
) -> Alert:
    """Create a reconciliation mismatch alert."""
    return Alert(
        alert_type=AlertType.RECONCILIATION_MISMATCH,
        severity=AlertSeverity.CRITICAL if critical_count else AlertSeverity.WARNING,
        message=f"Reconciliation found {mismatch_count} mismatch(es), {critical_count} critical",
        details=summary,
    )
