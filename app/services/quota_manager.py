"""Dual-window API quota gate for agent accounts.

Every agent-authenticated request consumes one unit from a per-minute burst
window and one from a monthly window. Counters are fixed windows keyed by
period ("YYYYMMDDHHMM" and "YYYY-MM"), so they reset implicitly when the key
changes.

Architecture Pattern:
    - Counter rows ensured with INSERT ... ON CONFLICT DO NOTHING
    - Increment with UPDATE ... WHERE request_count < limit (atomic, no locks)
    - Minute window first; month window only after minute succeeds
    - Month failure compensates the minute increment (floored at zero)
    - One warning marker per (account, month, threshold); a newly recorded
      marker triggers a single operator alert

References:
    - Alert delivery: app.utils.alerts.send_alert
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone

from sqlalchemy import and_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import get_limit_bypass_ids, get_quota_defaults, get_warn_thresholds
from app.constants import (
    RATE_LIMIT_BYPASS_HEADER,
    RATE_LIMIT_HEADER_PREFIX,
    USAGE_WARN_HEADER,
    USAGE_WARN_THRESHOLD_HEADER,
)
from app.database import insert_for
from app.exceptions import QuotaExceeded
from app.models import AiAccount, QuotaMinuteUsage, QuotaMonthlyUsage, QuotaWarning, utcnow
from app.utils.alerts import send_alert
from app.utils.logging import get_logger

log = get_logger(__name__)

CounterModel = type[QuotaMonthlyUsage] | type[QuotaMinuteUsage]


@dataclass(frozen=True)
class QuotaDecision:
    """Result of a successful pass through the quota gate.

    Attributes:
        headers: X-AI-RateLimit-* headers to attach to the response.
        warning_threshold: Highest warning threshold crossed this month.
        new_warning_threshold: Threshold whose marker was recorded by this
            request (operator alert pending), else None.
        bypassed: Whether the account is exempt from accounting.
    """

    headers: dict[str, str] = field(default_factory=dict)
    warning_threshold: int | None = None
    new_warning_threshold: int | None = None
    bypassed: bool = False


def month_period_key(now: datetime) -> str:
    return now.strftime("%Y-%m")


def minute_period_key(now: datetime) -> str:
    return now.strftime("%Y%m%d%H%M")


def month_reset_at(now: datetime) -> datetime:
    """First instant of the next UTC month."""
    if now.month == 12:
        return datetime(now.year + 1, 1, 1, tzinfo=timezone.utc)
    return datetime(now.year, now.month + 1, 1, tzinfo=timezone.utc)


def minute_reset_at(now: datetime) -> datetime:
    return now.replace(second=0, microsecond=0) + timedelta(minutes=1)


def resolve_limits(account: AiAccount) -> tuple[int, int]:
    """Return (monthly_limit, burst_per_minute), falling back to defaults."""
    default_monthly, default_burst = get_quota_defaults()
    monthly = account.monthly_limit if account.monthly_limit and account.monthly_limit > 0 else None
    burst = (
        account.burst_per_minute
        if account.burst_per_minute and account.burst_per_minute > 0
        else None
    )
    return monthly or default_monthly, burst or default_burst


def highest_threshold_crossed(used: int, limit: int, thresholds: tuple[int, ...]) -> int | None:
    """Highest threshold percentage reached by ``used`` out of ``limit``."""
    crossed = [t for t in thresholds if used * 100 >= t * limit]
    return max(crossed) if crossed else None


def _window_headers(window: str, limit: int, used: int, reset_at: datetime) -> dict[str, str]:
    return {
        f"{RATE_LIMIT_HEADER_PREFIX}-Limit-{window}": str(limit),
        f"{RATE_LIMIT_HEADER_PREFIX}-Remaining-{window}": str(max(limit - used, 0)),
        f"{RATE_LIMIT_HEADER_PREFIX}-Reset-{window}": str(int(reset_at.timestamp())),
    }


def _counter_filter(model: CounterModel, account_id: str, period_key: str):
    return and_(model.ai_account_id == account_id, model.period_key == period_key)


async def _ensure_counter(
    session: AsyncSession, model: CounterModel, account_id: str, period_key: str
) -> None:
    values = {"ai_account_id": account_id, "period_key": period_key, "request_count": 0}
    if model is QuotaMinuteUsage:
        values["created_at"] = utcnow()
    else:
        values["updated_at"] = utcnow()
    await session.execute(
        insert_for(session, model)
        .values(**values)
        .on_conflict_do_nothing(index_elements=["ai_account_id", "period_key"])
    )


async def _try_increment(
    session: AsyncSession, model: CounterModel, account_id: str, period_key: str, limit: int
) -> bool:
    result = await session.execute(
        update(model)
        .where(_counter_filter(model, account_id, period_key), model.request_count < limit)
        .values(request_count=model.request_count + 1)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


async def _decrement(
    session: AsyncSession, model: CounterModel, account_id: str, period_key: str
) -> None:
    await session.execute(
        update(model)
        .where(_counter_filter(model, account_id, period_key), model.request_count > 0)
        .values(request_count=model.request_count - 1)
        .execution_options(synchronize_session=False)
    )


async def _read_count(
    session: AsyncSession, model: CounterModel, account_id: str, period_key: str
) -> int:
    result = await session.execute(
        select(model.request_count).where(_counter_filter(model, account_id, period_key))
    )
    return result.scalar_one_or_none() or 0


async def _record_warning(
    session: AsyncSession, account_id: str, period_key: str, threshold: int
) -> bool:
    result = await session.execute(
        insert_for(session, QuotaWarning)
        .values(
            ai_account_id=account_id,
            period_key=period_key,
            threshold_percent=threshold,
            created_at=utcnow(),
        )
        .on_conflict_do_nothing(
            index_elements=["ai_account_id", "period_key", "threshold_percent"]
        )
    )
    return result.rowcount == 1


async def consume_quota(
    session: AsyncSession, account: AiAccount, now: datetime | None = None
) -> QuotaDecision:
    """Consume one request from both quota windows.

    Commits its own writes so counters are visible to concurrent requests
    regardless of how the rest of the request ends.

    Args:
        session: Database session.
        account: Authenticated agent account.
        now: Clock override (tests).

    Returns:
        QuotaDecision with rate-limit headers and warning state.

    Raises:
        QuotaExceeded: minute_limit_exceeded or monthly_limit_exceeded, with
            headers for the exhausted window.
    """
    if account.id in get_limit_bypass_ids():
        log.debug("quota_bypassed", ai_account_id=account.id)
        return QuotaDecision(headers={RATE_LIMIT_BYPASS_HEADER: "true"}, bypassed=True)

    now = now or utcnow()
    monthly_limit, burst_limit = resolve_limits(account)
    month_key = month_period_key(now)
    minute_key = minute_period_key(now)
    month_reset = month_reset_at(now)
    minute_reset = minute_reset_at(now)

    await _ensure_counter(session, QuotaMinuteUsage, account.id, minute_key)
    await _ensure_counter(session, QuotaMonthlyUsage, account.id, month_key)

    if not await _try_increment(session, QuotaMinuteUsage, account.id, minute_key, burst_limit):
        used = await _read_count(session, QuotaMinuteUsage, account.id, minute_key)
        await session.commit()
        log.info(
            "quota_minute_limit_exceeded",
            ai_account_id=account.id,
            limit=burst_limit,
            used=used,
        )
        raise QuotaExceeded(
            "minute_limit_exceeded",
            detail={"limit": burst_limit, "used": used, "reset_at": minute_reset.isoformat()},
            headers=_window_headers("Minute", burst_limit, used, minute_reset),
        )

    if not await _try_increment(session, QuotaMonthlyUsage, account.id, month_key, monthly_limit):
        await _decrement(session, QuotaMinuteUsage, account.id, minute_key)
        used = await _read_count(session, QuotaMonthlyUsage, account.id, month_key)
        await session.commit()
        log.warning(
            "quota_monthly_limit_exceeded",
            ai_account_id=account.id,
            limit=monthly_limit,
            used=used,
            period=month_key,
        )
        raise QuotaExceeded(
            "monthly_limit_exceeded",
            detail={
                "limit": monthly_limit,
                "used": used,
                "period": month_key,
                "reset_at": month_reset.isoformat(),
            },
            headers=_window_headers("Month", monthly_limit, used, month_reset),
        )

    month_used = await _read_count(session, QuotaMonthlyUsage, account.id, month_key)
    minute_used = await _read_count(session, QuotaMinuteUsage, account.id, minute_key)

    headers = {
        **_window_headers("Month", monthly_limit, month_used, month_reset),
        **_window_headers("Minute", burst_limit, minute_used, minute_reset),
    }

    thresholds = get_warn_thresholds()
    warning_threshold = highest_threshold_crossed(month_used, monthly_limit, thresholds)
    new_warning_threshold = None
    if warning_threshold is not None:
        headers[USAGE_WARN_HEADER] = "true"
        headers[USAGE_WARN_THRESHOLD_HEADER] = str(warning_threshold)
        for threshold in thresholds:
            if threshold > warning_threshold:
                break
            if await _record_warning(session, account.id, month_key, threshold):
                new_warning_threshold = threshold

    await session.commit()

    if new_warning_threshold is not None:
        log.warning(
            "quota_warning_threshold_crossed",
            ai_account_id=account.id,
            threshold=new_warning_threshold,
            used=month_used,
            limit=monthly_limit,
        )

    return QuotaDecision(
        headers=headers,
        warning_threshold=warning_threshold,
        new_warning_threshold=new_warning_threshold,
    )


async def notify_quota_warning(
    ai_account_id: str, threshold: int, period_key: str | None = None
) -> None:
    """Send the one-time operator alert for a newly crossed threshold."""
    level = "CRITICAL" if threshold >= 95 else "WARNING"
    await send_alert(
        level=level,
        message=f"Agent account {ai_account_id} reached {threshold}% of its monthly API quota",
        details={
            "ai_account_id": ai_account_id,
            "threshold_percent": str(threshold),
            "period": period_key or month_period_key(utcnow()),
        },
    )
