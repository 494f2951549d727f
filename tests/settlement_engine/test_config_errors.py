"""
Configuration, Error Registry, Alerting and CLI Tests.
"""

from decimal import Decimal

import pytest

from settlement_engine.types import (
    SwapStatus,
    SettlementOutcome,
    ConflictError,
    ExpiredError,
    ForbiddenError,
    TransferFailedError,
)
from settlement_engine.config import SettlementEngineConfig, SweeperConfig, AlertingConfig
from settlement_engine.errors import (
    ERROR_CODES,
    ErrorSeverity,
    get_error_info,
    is_retryable,
    user_message,
    RETRYABLE_ERROR_CODES,
    CRITICAL_ERROR_CODES,
)
from settlement_engine.database import get_database_url, is_sqlite_url, Database
from settlement_engine.alerting import (
    TelegramAlerter,
    AlertSeverity,
    create_refund_failed_alert,
)
from settlement_engine.cli import create_parser, validate_args, build_config, main


ENV_VARS = [
    "SETTLEMENT_DATABASE_URL",
    "DATABASE_URL",
    "SWEEP_INTERVAL_SECONDS",
    "SWEEP_ITEM_TIMEOUT_SECONDS",
    "SWEEP_BATCH_LIMIT",
    "EXPIRED_SWAP_STATUS",
    "LEDGER_API_URL",
    "LEDGER_MAX_RETRIES",
    "ESCROW_API_URL",
    "ESCROW_MAX_TRANSFER_AMOUNT",
    "BOOKING_API_URL",
    "NOTIFICATION_WEBHOOK_URL",
]


@pytest.fixture
def clean_env(monkeypatch):
    for name in ENV_VARS:
        monkeypatch.setenv(name, "")
        monkeypatch.delenv(name)
    return monkeypatch


# =============================================================
# CONFIGURATION
# =============================================================

class TestConfiguration:
    """Tests for configuration profiles."""

    def test_testing_profile(self):
        config = SettlementEngineConfig.for_testing()

        assert config.database.url.startswith("sqlite+aiosqlite")
        assert config.ledger.initial_delay_seconds == 0.0
        assert config.reconciliation.enabled is False
        assert config.alerting.enabled is False
        assert config.sweeper.expired_status == SwapStatus.EXPIRED

    def test_production_profile_locks_rows(self):
        config = SettlementEngineConfig.for_production()
        assert config.database.lock_rows is True
        assert config.reconciliation.enabled is True

    def test_sqlite_never_locks_rows(self):
        config = SettlementEngineConfig.for_testing()
        config.database.lock_rows = True
        assert Database(config.database).lock_rows is False

    @pytest.mark.parametrize("label", [SwapStatus.ACTIVE, SwapStatus.ACCEPTED, SwapStatus.REJECTED])
    def test_invalid_expiration_label(self, label):
        with pytest.raises(ValueError):
            SweeperConfig(expired_status=label)

    def test_from_env(self, clean_env):
        clean_env.setenv("SETTLEMENT_DATABASE_URL", "sqlite+aiosqlite:///env.db")
        clean_env.setenv("SWEEP_INTERVAL_SECONDS", "42")
        clean_env.setenv("EXPIRED_SWAP_STATUS", "CANCELLED")
        clean_env.setenv("LEDGER_MAX_RETRIES", "5")
        clean_env.setenv("ESCROW_MAX_TRANSFER_AMOUNT", "1200.50")
        clean_env.setenv("BOOKING_API_URL", "http://bookings.local")

        config = SettlementEngineConfig.from_env()

        assert config.database.url == "sqlite+aiosqlite:///env.db"
        assert config.sweeper.interval_seconds == 42.0
        assert config.sweeper.expired_status == SwapStatus.CANCELLED
        assert config.ledger.max_retries == 5
        assert config.escrow.max_transfer_amount == Decimal("1200.50")
        assert config.settlement.booking_api_url == "http://bookings.local"

    def test_database_url_gets_async_driver(self, clean_env):
        clean_env.setenv("DATABASE_URL", "postgresql://user:pw@db:5432/settlement")
        assert get_database_url() == "postgresql+asyncpg://user:pw@db:5432/settlement"

    def test_sqlite_url_detection(self):
        assert is_sqlite_url("sqlite+aiosqlite:///x.db")
        assert not is_sqlite_url("postgresql+asyncpg://localhost/x")


# =============================================================
# ERROR REGISTRY
# =============================================================

class TestErrorRegistry:
    """Tests for the error code registry."""

    def test_exception_codes_are_registered(self):
        for error in (ConflictError, ExpiredError, ForbiddenError, TransferFailedError):
            assert error.code in ERROR_CODES

    def test_distinct_user_messages(self):
        messages = {user_message(code) for code in ("CONFLICT", "EXPIRED", "FORBIDDEN")}
        assert len(messages) == 3

    def test_outcomes(self):
        assert get_error_info("CONFLICT").outcome == SettlementOutcome.CONFLICT
        assert get_error_info("EXPIRED").outcome == SettlementOutcome.EXPIRED
        assert get_error_info("TRANSFER_FAILED").outcome == SettlementOutcome.TRANSFER_FAILED

    def test_retryable(self):
        assert is_retryable("TRANSFER_FAILED")
        assert is_retryable("TIMEOUT")
        assert not is_retryable("CONFLICT")
        assert "TIMEOUT" in RETRYABLE_ERROR_CODES
        assert "DATABASE_ERROR" in CRITICAL_ERROR_CODES

    def test_unknown_code(self):
        info = get_error_info("SOMETHING_NEW")
        assert info.severity == ErrorSeverity.ERROR
        assert "SOMETHING_NEW" in info.user_message

    def test_error_details(self):
        error = ConflictError("lost", {"proposal_id": "p-1"})
        assert error.code == "CONFLICT"
        assert error.details == {"proposal_id": "p-1"}
        assert str(error) == "lost"


# =============================================================
# ALERTING
# =============================================================

class TestAlerting:
    """Tests for the Telegram alerter without credentials."""

    @pytest.mark.asyncio
    async def test_disabled_alerter_keeps_history(self):
        alerter = TelegramAlerter(AlertingConfig(enabled=False))
        alert = create_refund_failed_alert("esc-1", "prop-1", "provider down")

        delivered = await alerter.send_alert(alert)

        assert delivered is False
        assert alerter.get_history() == [alert]
        assert alert.severity == AlertSeverity.ERROR

    @pytest.mark.asyncio
    async def test_unconfigured_alerter_does_not_send(self, monkeypatch):
        monkeypatch.delenv("TELEGRAM_BOT_TOKEN", raising=False)
        monkeypatch.delenv("TELEGRAM_CHAT_ID", raising=False)
        alerter = TelegramAlerter(AlertingConfig(min_interval_seconds=0))

        assert not alerter.is_configured
        assert await alerter.send_alert(create_refund_failed_alert("esc-1", "prop-1", "x")) is False
        await alerter.close()


# =============================================================
# CLI
# =============================================================

class TestCli:
    """Tests for argument parsing and configuration overrides."""

    def test_overrides(self, clean_env):
        parser = create_parser()
        args = parser.parse_args([
            "sweep-once",
            "--database-url", "sqlite+aiosqlite:///cli.db",
            "--sweep-interval", "30",
            "--expired-status", "cancelled",
            "--no-reconciliation",
        ])

        assert validate_args(args) == []
        config = build_config(args)

        assert config.database.url == "sqlite+aiosqlite:///cli.db"
        assert config.sweeper.interval_seconds == 30.0
        assert config.sweeper.expired_status == SwapStatus.CANCELLED
        assert config.reconciliation.enabled is False

    def test_unknown_command(self):
        with pytest.raises(SystemExit):
            create_parser().parse_args(["explode"])

    def test_invalid_interval(self, clean_env):
        assert main(["status", "--sweep-interval", "-1"]) == 1

    def test_init_db_then_status(self, clean_env, tmp_path, capsys):
        url = f"sqlite+aiosqlite:///{tmp_path}/cli.db"

        assert main(["init-db", "--database-url", url]) == 0
        assert main(["status", "--database-url", url]) == 0

        output = capsys.readouterr().out
        assert "Schema created" in output
        assert '"healthy": true' in output
