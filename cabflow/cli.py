"""Command line entry point for a single CAB workflow run."""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from pathlib import Path
from typing import Optional, Sequence

from dotenv import load_dotenv

from .config import CABConfig
from .errors import CABError, ConfigurationError, ReceiptTimeoutError
from .gating import BackoffTrigger, IntervalTrigger, TriggerSource
from .workflow import CABWorkflow

LOGGER = logging.getLogger("cabflow.cli")

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_CONFIG = 2
EXIT_TIMEOUT = 3


def configure_logging(verbose: bool) -> None:
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(level=level, format="%(asctime)s %(levelname)s %(name)s: %(message)s")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Run the cross-chain balance gas-abstraction flow once.")
    parser.add_argument("--env-file", type=Path, default=None, help="Load environment variables from this file")
    parser.add_argument("--verbose", action="store_true", help="Enable debug logging")
    parser.add_argument(
        "--poll-interval",
        type=float,
        default=None,
        help="Poll every N seconds instead of waiting for Enter",
    )
    parser.add_argument(
        "--backoff",
        action="store_true",
        help="With --poll-interval, grow the delay exponentially between polls",
    )
    parser.add_argument(
        "--max-attempts",
        type=int,
        default=None,
        help="Give up a wait loop after this many polls",
    )
    return parser


def _trigger(args: argparse.Namespace) -> Optional[TriggerSource]:
    if args.poll_interval is None:
        return None
    if args.backoff:
        return BackoffTrigger(args.poll_interval)
    return IntervalTrigger(args.poll_interval)


def run(args: argparse.Namespace) -> int:
    if args.env_file is not None:
        load_dotenv(args.env_file)
    else:
        load_dotenv()
    try:
        config = CABConfig.from_env()
        workflow = CABWorkflow(
            config,
            chain_trigger=_trigger(args),
            balance_trigger=_trigger(args),
            max_attempts=args.max_attempts,
        )
    except ConfigurationError as exc:
        LOGGER.error("%s", exc)
        return EXIT_CONFIG

    try:
        result = asyncio.run(workflow.run())
    except ReceiptTimeoutError as exc:
        LOGGER.error("%s; check the operation on-chain before retrying", exc)
        return EXIT_TIMEOUT
    except ConfigurationError as exc:
        LOGGER.error("%s", exc)
        return EXIT_CONFIG
    except CABError as exc:
        LOGGER.error("CAB workflow failed: %s", exc)
        return EXIT_FAILED

    if not result.receipt.success:
        LOGGER.error("UserOperation %s reverted in %s", result.user_op_hash, result.receipt.transaction_hash)
        return EXIT_FAILED
    return EXIT_OK


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    configure_logging(args.verbose)
    try:
        return run(args)
    except KeyboardInterrupt:
        LOGGER.warning("Interrupted")
        return 130


if __name__ == "__main__":  # pragma: no cover - CLI entry
    sys.exit(main())
