"""Worker process entry point for the marketplace core.

The worker runs as a separate process next to the API. Each poll cycle it:
    - drains the task event outbox (signed webhook deliveries)
    - processes stored settlement provider events (order reconciliation)
    - times out overdue tasks and auto-approves expired reviews nobody has read
    - every hour, purges stale quota buckets and finished idempotency records

Architecture Pattern:
    - Separate Process: independent of the API, safe to run several copies
    - Short Transactions: claim → close session → deliver → reopen → mark
    - Claims are conditional UPDATEs, so concurrent workers never process the
      same row at the same time
    - Graceful Shutdown: Listens for SIGTERM, finishes the current cycle, exits

Usage:
    python -m app.worker
"""

import asyncio
import signal
import sys
import time
from dataclasses import asdict, dataclass
from datetime import timedelta

from sqlalchemy import and_, delete
from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

import app.database as database
from app.config import get_database_url, get_fernet_key, get_outbox_poll_interval_seconds
from app.models import IdempotencyRecord, QuotaMinuteUsage, utcnow
from app.services.outbox import drain_outbox
from app.services.task_service import sweep_overdue_tasks
from app.services.webhook_dispatcher import dispatch_outbox_event
from app.services.webhook_handler import process_pending_settlement_events
from app.utils.logging import configure_logging, get_logger

log = get_logger(__name__)

# Checked once per cycle; set by signal_handler
shutdown_requested = False

HYGIENE_INTERVAL_SECONDS = 3600
MINUTE_BUCKET_RETENTION = timedelta(days=1)
IDEMPOTENCY_RETENTION = timedelta(days=7)


@dataclass
class CycleResult:
    """Counts from one poll cycle."""

    events_dispatched: int = 0
    settlement_events_processed: int = 0
    tasks_timed_out: int = 0
    tasks_auto_approved: int = 0


def signal_handler(signum: int, frame: object) -> None:
    """Ask the poll loop to stop after the current cycle (SIGTERM, SIGINT)."""
    global shutdown_requested
    log.info(
        "shutdown_signal_received",
        signal=signum,
        signal_name=signal.Signals(signum).name,
    )
    shutdown_requested = True


async def purge_expired_records(session: AsyncSession) -> tuple[int, int]:
    """Delete minute buckets older than a day and finished idempotency rows older than a week.

    Pending idempotency placeholders are kept; they are taken over or
    released by the request path.

    Returns:
        Tuple of (minute buckets deleted, idempotency records deleted).
    """
    now = utcnow()
    buckets = await session.execute(
        delete(QuotaMinuteUsage).where(
            QuotaMinuteUsage.created_at < now - MINUTE_BUCKET_RETENTION
        )
    )
    records = await session.execute(
        delete(IdempotencyRecord).where(
            and_(
                IdempotencyRecord.status_code.is_not(None),
                IdempotencyRecord.updated_at < now - IDEMPOTENCY_RETENTION,
            )
        )
    )
    await session.commit()

    log.info(
        "expired_records_purged",
        minute_buckets=buckets.rowcount,
        idempotency_records=records.rowcount,
    )
    return buckets.rowcount, records.rowcount


async def run_cycle(session_factory: async_sessionmaker[AsyncSession]) -> CycleResult:
    """Run one poll cycle. A failing stage is logged and does not skip the others."""
    result = CycleResult()
    try:
        result.events_dispatched = await drain_outbox(session_factory, dispatch_outbox_event)
    except Exception as e:
        log.error("outbox_cycle_failed", error=str(e), error_type=type(e).__name__)

    try:
        result.settlement_events_processed = await process_pending_settlement_events(
            session_factory
        )
    except Exception as e:
        log.error("settlement_cycle_failed", error=str(e), error_type=type(e).__name__)

    try:
        async with session_factory() as session:
            result.tasks_timed_out, result.tasks_auto_approved = await sweep_overdue_tasks(
                session
            )
    except Exception as e:
        log.error("task_sweep_failed", error=str(e), error_type=type(e).__name__)

    return result


async def worker_main_loop(session_factory: async_sessionmaker[AsyncSession]) -> None:
    """Poll until a shutdown signal arrives.

    Error Handling:
        - Stage failures are logged inside run_cycle and retried next cycle
        - Hygiene failures are logged and retried at the next interval
    """
    log.info("worker_started", poll_interval=get_outbox_poll_interval_seconds())
    last_hygiene: float | None = None

    try:
        while not shutdown_requested:
            cycle = await run_cycle(session_factory)
            if any(asdict(cycle).values()):
                log.info("worker_cycle_completed", **asdict(cycle))

            if (
                last_hygiene is None
                or time.monotonic() - last_hygiene >= HYGIENE_INTERVAL_SECONDS
            ):
                try:
                    async with session_factory() as session:
                        await purge_expired_records(session)
                except Exception as e:
                    log.error("hygiene_failed", error=str(e), error_type=type(e).__name__)
                last_hygiene = time.monotonic()

            await asyncio.sleep(get_outbox_poll_interval_seconds())
    except asyncio.CancelledError:
        log.info("worker_cancelled")
        raise
    finally:
        log.info("worker_shutdown")


async def shutdown_worker() -> None:
    """Dispose the SQLAlchemy engine so no connections leak on exit."""
    log.info("closing_database_connections")
    if database.engine is not None:
        await database.engine.dispose()
        log.info("sqlalchemy_engine_closed")


@dataclass
class WorkerConfig:
    """Required settings, checked before the loop starts."""

    database_url: str
    fernet_key: str


def get_config() -> WorkerConfig:
    """Read the settings the worker cannot start without.

    Raises:
        ValueError: If DATABASE_URL or FERNET_KEY is missing.
    """
    return WorkerConfig(
        database_url=get_database_url(),
        fernet_key=get_fernet_key(),
    )


async def _run() -> None:
    try:
        if database.async_session_factory is None:
            raise RuntimeError("Database not configured. Set DATABASE_URL environment variable.")
        await worker_main_loop(database.async_session_factory)
    finally:
        await shutdown_worker()


def main() -> None:
    """Worker process entry point.

    Exit Codes:
        0: stopped by SIGTERM or SIGINT
        1: missing configuration or an unrecoverable error
    """
    configure_logging()

    try:
        config = get_config()
        log.info(
            "worker_configuration_loaded",
            database=make_url(config.database_url).render_as_string(hide_password=True),
        )
    except Exception as e:
        log.error("configuration_load_failed", error=str(e), exc_info=True)
        sys.exit(1)

    for signum in (signal.SIGTERM, signal.SIGINT):
        signal.signal(signum, signal_handler)

    try:
        asyncio.run(_run())
    except KeyboardInterrupt:
        log.info("worker_interrupted_by_user")
    except Exception as e:
        log.error("worker_fatal_error", error=str(e), exc_info=True)
        sys.exit(1)

    log.info("worker_exited_successfully")
    sys.exit(0)


if __name__ == "__main__":
    main()
