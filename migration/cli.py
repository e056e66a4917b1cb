"""
Command line entry point.

    migrate <extract|transform|validate|import|verify|all> [--config path]
            [--dry-run] [--input-dir dir]

Exit status is 0 when every requested phase succeeded and 1 otherwise
(130 when interrupted with Ctrl-C).
"""

import argparse
import asyncio
import logging
import signal
import sys
from typing import List, Optional

from core.config import load_settings
from core.exceptions import ConfigurationError
from core.logging import setup_logging
from core.recovery import RecoveryStore
from migration.runner import COMMAND_PHASES, MigrationRunner

logger = logging.getLogger(__name__)

EXIT_SUCCESS = 0
EXIT_FAILURE = 1
EXIT_INTERRUPTED = 130


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="migrate",
        description="Migrate legacy recipe data: extract, transform, validate, import, verify."
    )
    parser.add_argument(
        "command",
        choices=list(COMMAND_PHASES),
        help="phase to run, or 'all' for extract through import"
    )
    parser.add_argument("--config", metavar="PATH", help="JSON config file (overrides environment)")
    parser.add_argument(
        "--dry-run",
        action="store_true",
        default=None,
        help="validate import payloads without sending them"
    )
    parser.add_argument(
        "--input-dir",
        metavar="DIR",
        help="input directory for the first phase (default: latest run of the previous phase)"
    )
    parser.add_argument("--env-file", default=".env.migration", help=argparse.SUPPRESS)
    return parser


async def run_command(args: argparse.Namespace) -> int:
    settings = load_settings(
        config_path=args.config,
        env_file=args.env_file,
        MIGRATION_DRY_RUN=args.dry_run
    )
    setup_logging(settings.log_level, verbose=settings.MIGRATION_VERBOSE)
    logger.info(f"Running '{args.command}' (dry run: {settings.MIGRATION_DRY_RUN})")
    logger.debug(f"Settings: {settings.safe_dict()}")

    runner = MigrationRunner(
        settings,
        recovery_store=RecoveryStore(settings.output_dir),
        input_dir=args.input_dir
    )
    summary = await runner.run(COMMAND_PHASES[args.command])

    for phase in summary["phases"]:
        status = "OK" if phase["success"] else "FAILED"
        logger.info(f"  {phase['phase']:<10} {status:<7} {phase['duration'] / 1000:.1f}s")
    logger.info(f"Migration {'succeeded' if summary['overallSuccess'] else 'failed'}")
    return EXIT_SUCCESS if summary["overallSuccess"] else EXIT_FAILURE


async def _main(args: argparse.Namespace) -> int:
    """Run the command, cancelling it on SIGINT or SIGTERM."""
    loop = asyncio.get_running_loop()
    task = asyncio.ensure_future(run_command(args))
    received: List[int] = []

    def on_signal(signum: int) -> None:
        received.append(signum)
        logger.warning(f"Received {signal.Signals(signum).name}, cancelling migration")
        task.cancel()

    installed = []
    for signum in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(signum, on_signal, signum)
            installed.append(signum)
        except (NotImplementedError, RuntimeError):
            logger.debug(f"Signal handler for {signal.Signals(signum).name} not supported here")

    try:
        return await task
    except asyncio.CancelledError:
        if received and received[0] == signal.SIGINT:
            return EXIT_INTERRUPTED
        return EXIT_FAILURE
    finally:
        for signum in installed:
            loop.remove_signal_handler(signum)


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    setup_logging()

    try:
        return asyncio.run(_main(args))
    except ConfigurationError as e:
        logger.error(str(e))
        for detail in e.metadata.get("errors", []):
            logger.error(f"  {detail}")
        return EXIT_FAILURE
    except KeyboardInterrupt:
        return EXIT_INTERRUPTED


if __name__ == "__main__":
    sys.exit(main())
