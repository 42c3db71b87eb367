# progression/workers/validation_expiry_bot.py
"""
Validation Expiry Bot: moves stale pending peer validations to 'expired'.

Worker that:
- Finds pending validations older than the expiry age
- Marks them expired (no XP moves, rows are kept)
- Logs each sweep under its own run id
- Shuts down gracefully on SIGINT/SIGTERM

Usage: python -m progression.workers.validation_expiry_bot [--once]
"""

from __future__ import annotations

import argparse
import asyncio
import signal
from datetime import timedelta
from typing import Dict, Optional

from progression.core.config import get_settings, require_database_url
from progression.core.logging import configure_logging, get_logger, level_from_name
from progression.core.request_id import with_run_id
from progression.services.peer_validation_service import PeerValidationService
from progression.services.pg_ledger_store import PostgresLedgerStore
from progression.services.xp_service import XPService

configure_logging(service_name="worker", level=level_from_name(get_settings().LOG_LEVEL))
logger = get_logger()
logger = logger.bind(worker="validation_expiry_bot")

# Global flag for graceful shutdown
_shutdown_requested = False


def _signal_handler(signum, frame):
    global _shutdown_requested
    logger.info("shutdown_signal_received", signal=signum)
    _shutdown_requested = True


def build_service(store: PostgresLedgerStore) -> PeerValidationService:
    settings = get_settings()
    xp_service = XPService(
        store,
        level_xp_unit=settings.LEVEL_XP_UNIT,
        strict_catalog=settings.strict_catalog,
    )
    return PeerValidationService(
        store,
        xp_service,
        default_required_validations=settings.DEFAULT_REQUIRED_VALIDATIONS,
        default_expiry=timedelta(days=settings.VALIDATION_EXPIRY_DAYS),
    )


async def run_expiry_once(service: PeerValidationService, max_age_days: Optional[int] = None) -> Dict[str, int]:
    """
    Run one sweep.

    Returns:
        Dictionary with the number of expired validations
    """
    older_than = timedelta(days=max_age_days) if max_age_days else None
    with with_run_id():
        expired = await service.expire_stale(older_than)
        logger.info("validation_expiry_sweep_complete", expired=len(expired))
    return {"expired": len(expired)}


async def run_expiry_loop(
    service: PeerValidationService,
    max_age_days: Optional[int] = None,
    sleep_interval: int = 3600,
    max_iterations: Optional[int] = None,
) -> int:
    """
    Main loop. Errors of a single sweep are logged and the loop carries on.

    Returns:
        Number of iterations run
    """
    global _shutdown_requested

    signal.signal(signal.SIGINT, _signal_handler)
    signal.signal(signal.SIGTERM, _signal_handler)

    logger.info(
        "validation_expiry_bot_started",
        max_age_days=max_age_days,
        sleep_interval=sleep_interval,
    )

    iteration = 0
    try:
        while not _shutdown_requested:
            if max_iterations and iteration >= max_iterations:
                logger.info("validation_expiry_bot_max_iterations_reached", iterations=iteration)
                break

            iteration += 1
            try:
                await run_expiry_once(service, max_age_days)
            except Exception as e:
                logger.error(
                    "validation_expiry_bot_iteration_error",
                    iteration=iteration,
                    error=str(e),
                    exc_info=True,
                )

            if not _shutdown_requested and not (max_iterations and iteration >= max_iterations):
                logger.debug("validation_expiry_bot_sleeping", seconds=sleep_interval)
                await asyncio.sleep(sleep_interval)
    finally:
        logger.info("validation_expiry_bot_shutdown", iterations=iteration)
    return iteration


async def _main_async(args: argparse.Namespace) -> None:
    store = await PostgresLedgerStore.connect(require_database_url())
    try:
        await store.ensure_schema()
        service = build_service(store)
        if args.once:
            result = await run_expiry_once(service, args.max_age_days)
            logger.info("validation_expiry_bot_complete", **result)
        else:
            await run_expiry_loop(
                service,
                max_age_days=args.max_age_days,
                sleep_interval=args.sleep_interval,
                max_iterations=args.max_iterations,
            )
    finally:
        await store.close()


def main():
    parser = argparse.ArgumentParser(
        description="Validation Expiry Bot - expire stale pending peer validations"
    )
    parser.add_argument(
        "--max-age-days",
        type=int,
        default=None,
        help="Expire pending validations older than this (default: PROGRESSION_VALIDATION_EXPIRY_DAYS)",
    )
    parser.add_argument(
        "--sleep-interval",
        type=int,
        default=3600,
        help="Seconds between sweeps (default: 3600)",
    )
    parser.add_argument(
        "--max-iterations",
        type=int,
        default=None,
        help="Maximum number of sweeps (default: infinite)",
    )
    parser.add_argument(
        "--once",
        action="store_true",
        help="Run a single sweep and exit",
    )
    args = parser.parse_args()
    asyncio.run(_main_async(args))


if __name__ == "__main__":
    main()
