"""
Settlement Engine - CLI.

============================================================
RESPONSIBILITY
============================================================
Command-line interface for operating the Settlement Engine.

- Creates the schema
- Runs the sweeper/reconciliation daemon
- Runs a single sweep or reconciliation pass
- Prints health for monitoring

============================================================
USAGE
============================================================
settlement-engine init-db
settlement-engine run --log-level DEBUG
settlement-engine sweep-once --expired-status cancelled
settlement-engine status

============================================================
"""

import argparse
import asyncio
import json
import logging
import os
import signal
import sys
from typing import List, Optional

from .types import SwapStatus
from .config import SettlementEngineConfig, SweeperConfig
from .service import SettlementService


COMMANDS = ["init-db", "run", "sweep-once", "reconcile", "status"]


# ============================================================
# CLI ARGUMENT PARSER
# ============================================================

def create_parser() -> argparse.ArgumentParser:
    """Create the argument parser."""
    parser = argparse.ArgumentParser(
        prog="settlement-engine",
        description="Swap proposal settlement engine",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Commands:
  init-db     - Create database tables
  run         - Run the expiration sweeper and reconciliation until stopped
  sweep-once  - Run a single expiration sweep and exit
  reconcile   - Run a single reconciliation pass and exit
  status      - Print sweeper and store health as JSON

Examples:
  %(prog)s init-db
  %(prog)s run --sweep-interval 60
  %(prog)s sweep-once --expired-status cancelled
        """
    )

    parser.add_argument(
        "command",
        choices=COMMANDS,
        help="Command to run",
    )

    # --------------------------------------------------------
    # Configuration Options
    # --------------------------------------------------------
    config_group = parser.add_argument_group("Configuration Options")

    config_group.add_argument(
        "--env-file",
        type=str,
        metavar="PATH",
        help="Load environment variables from this file",
    )

    config_group.add_argument(
        "--database-url",
        type=str,
        metavar="URL",
        help="Override SETTLEMENT_DATABASE_URL",
    )

    config_group.add_argument(
        "--sweep-interval",
        type=float,
        metavar="SECONDS",
        help="Override SWEEP_INTERVAL_SECONDS",
    )

    config_group.add_argument(
        "--expired-status",
        type=str,
        choices=[SwapStatus.EXPIRED.value, SwapStatus.CANCELLED.value],
        help="Label for automatically closed swaps",
    )

    config_group.add_argument(
        "--no-reconciliation",
        action="store_true",
        help="Do not run reconciliation alongside the sweeper",
    )

    # --------------------------------------------------------
    # Logging Options
    # --------------------------------------------------------
    logging_group = parser.add_argument_group("Logging Options")

    logging_group.add_argument(
        "--log-level",
        type=str,
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        default=os.getenv("LOG_LEVEL", "INFO").upper(),
        help="Logging level (default: $LOG_LEVEL or INFO)",
    )

    parser.add_argument(
        "--version", "-v",
        action="version",
        version="%(prog)s 1.0.0",
    )

    return parser


# ============================================================
# CLI CONFIGURATION BUILDER
# ============================================================

def validate_args(args: argparse.Namespace) -> List[str]:
    """Validate CLI arguments."""
    errors = []
    if args.sweep_interval is not None and args.sweep_interval <= 0:
        errors.append("--sweep-interval must be positive")
    return errors


def build_config(args: argparse.Namespace) -> SettlementEngineConfig:
    """Environment configuration with CLI overrides applied."""
    config = SettlementEngineConfig.from_env(args.env_file)

    if args.database_url:
        config.database.url = args.database_url
    if args.sweep_interval is not None or args.expired_status:
        config.sweeper = SweeperConfig(
            interval_seconds=args.sweep_interval or config.sweeper.interval_seconds,
            item_timeout_seconds=config.sweeper.item_timeout_seconds,
            batch_limit=config.sweeper.batch_limit,
            expired_status=(
                SwapStatus(args.expired_status) if args.expired_status
                else config.sweeper.expired_status
            ),
        )
    if args.no_reconciliation:
        config.reconciliation.enabled = False
    return config


def setup_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level),
        format="%(asctime)s %(levelname)-8s %(name)s: %(message)s",
    )


# ============================================================
# COMMANDS
# ============================================================

async def _run_forever(service: SettlementService) -> None:
    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop.set)
        except NotImplementedError:
            # Windows event loops; KeyboardInterrupt still stops asyncio.run
            pass

    await service.start()
    await stop.wait()
    logging.info("Shutdown requested")


async def async_main(args: argparse.Namespace) -> int:
    """
    Async main entry point.

    Returns:
        Exit code
    """
    config = build_config(args)
    if args.command != "run":
        config.sweeper.enabled = False
        config.reconciliation.enabled = False

    service = SettlementService(config=config)
    try:
        if args.command == "init-db":
            await service.database.init_schema()
            print("Schema created")
            return 0

        if args.command == "run":
            await _run_forever(service)
            return 0

        await service.start()

        if args.command == "sweep-once":
            result = await service.sweep_once()
            print(
                f"Sweep {result.run_id}: candidates={result.candidates} "
                f"expired={result.expired} skipped={result.skipped} failed={result.failed}"
            )
            return 0 if result.failed == 0 else 1

        if args.command == "reconcile":
            result = await service.reconcile()
            print(
                f"Reconciliation {result.run_id}: checked={result.items_checked} "
                f"mismatches={len(result.mismatches)} repaired={result.repaired_count}"
            )
            for mismatch in result.mismatches:
                if not mismatch.auto_resolved:
                    print(f"  [{mismatch.severity.value}] {mismatch.mismatch_type.value}: {mismatch.message}")
            return 0 if result.success and not result.has_critical else 1

        health = await service.health()
        print(json.dumps(health.to_payload(), indent=2))
        return 0 if health.healthy else 1

    except Exception as e:
        logging.error(f"Fatal error: {e}", exc_info=True)
        return 1
    finally:
        if service.is_running:
            await service.stop()
        else:
            await service.database.disconnect()


def main(argv: Optional[List[str]] = None) -> int:
    """
    Main CLI entry point.

    Args:
        argv: Command line arguments (default: sys.argv[1:])

    Returns:
        Exit code
    """
    parser = create_parser()
    args = parser.parse_args(argv)

    errors = validate_args(args)
    if errors:
        for error in errors:
            print(f"Error: {error}", file=sys.stderr)
        return 1

    setup_logging(args.log_level)
    return asyncio.run(async_main(args))


# ============================================================
# MODULE EXECUTION
# ============================================================

if __name__ == "__main__":
    sys.exit(main())
