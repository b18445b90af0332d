"""Database interactions for per-user credit usage."""

from datetime import datetime
from datetime import timedelta
from datetime import timezone

from sqlalchemy import func
from sqlalchemy import select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.orm import Session

from craft.configs import CREDIT_PERIOD
from craft.configs import CreditPeriod
from craft.db.models import UsageTurnRecord
from craft.db.models import UserCreditUsage
from craft.usage.models import UsageTurn
from craft.utils.logger import setup_logger

logger = setup_logger()


def _as_utc(value: datetime) -> datetime:
    # sqlite drops tzinfo on the way back out
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def get_current_period_start(
    now: datetime | None = None,
    period: CreditPeriod = CREDIT_PERIOD,
) -> datetime:
    """
    Calculate the start of the current credit period.

    Daily periods start at 00:00 UTC, monthly periods on the first of the
    month at 00:00 UTC.
    """
    now = _as_utc(now) if now else datetime.now(timezone.utc)
    day_start = now.astimezone(timezone.utc).replace(
        hour=0, minute=0, second=0, microsecond=0
    )
    if period == CreditPeriod.MONTHLY:
        return day_start.replace(day=1)
    return day_start


def get_next_period_start(
    period_start: datetime,
    period: CreditPeriod = CREDIT_PERIOD,
) -> datetime:
    if period == CreditPeriod.MONTHLY:
        if period_start.month == 12:
            return period_start.replace(year=period_start.year + 1, month=1)
        return period_start.replace(month=period_start.month + 1)
    return period_start + timedelta(days=1)


def get_user_credit_usage(
    db_session: Session,
    user_id: str,
) -> UserCreditUsage | None:
    """Read-only lookup, no lock."""
    return db_session.execute(
        select(UserCreditUsage).where(UserCreditUsage.user_id == user_id)
    ).scalar_one_or_none()


def get_effective_credits_used(
    usage: UserCreditUsage | None,
    period_start: datetime,
) -> float:
    """Credits used in the period starting at period_start.

    A record last reset before the period started belongs to an earlier
    period and counts as zero.
    """
    if usage is None:
        return 0.0
    if _as_utc(usage.last_reset_at) < period_start:
        return 0.0
    return usage.credits_used


def get_or_create_user_credit_usage(
    db_session: Session,
    user_id: str,
    now: datetime | None = None,
) -> UserCreditUsage:
    """
    Get the user's usage row, creating it if missing, and lock it for update.

    On postgres the insert uses ON CONFLICT DO NOTHING so two concurrent
    first writes for the same user can't both insert.
    """
    now = now or datetime.now(timezone.utc)

    if db_session.get_bind().dialect.name == "postgresql":
        db_session.execute(
            pg_insert(UserCreditUsage)
            .values(user_id=user_id, credits_used=0.0, last_reset_at=now)
            .on_conflict_do_nothing(index_elements=["user_id"])
        )
    elif get_user_credit_usage(db_session, user_id) is None:
        db_session.add(
            UserCreditUsage(user_id=user_id, credits_used=0.0, last_reset_at=now)
        )
        db_session.flush()

    usage = db_session.execute(
        select(UserCreditUsage)
        .where(UserCreditUsage.user_id == user_id)
        .with_for_update()
    ).scalar_one()
    return usage


def increment_credits_used(
    db_session: Session,
    user_id: str,
    amount: float,
    now: datetime | None = None,
    period: CreditPeriod = CREDIT_PERIOD,
) -> UserCreditUsage:
    """
    Add credits to the user's counter, resetting it first if the stored value
    belongs to a previous period.

    The caller should handle the transaction commit.
    """
    now = now or datetime.now(timezone.utc)
    period_start = get_current_period_start(now, period)

    usage = get_or_create_user_credit_usage(db_session, user_id, now)
    if _as_utc(usage.last_reset_at) < period_start:
        logger.debug(f"Resetting credit usage for user {user_id} (new period)")
        usage.credits_used = 0.0
        usage.last_reset_at = now

    usage.credits_used += amount
    db_session.flush()

    return usage


def set_user_credit_limit(
    db_session: Session,
    user_id: str,
    credit_limit: float | None,
) -> UserCreditUsage:
    """Store a per-user allowance. None reverts to the configured default."""
    usage = get_or_create_user_credit_usage(db_session, user_id)
    usage.credit_limit = credit_limit
    db_session.flush()
    return usage


def insert_usage_turn(
    db_session: Session,
    turn: UsageTurn,
) -> UsageTurnRecord:
    record = UsageTurnRecord(
        user_id=turn.user_id,
        project_id=turn.project_id,
        model=turn.model,
        input_tokens=turn.input_tokens,
        output_tokens=turn.output_tokens,
        total_tokens=turn.total_tokens,
        model_multiplier=turn.model_multiplier,
        credits_charged=turn.credits_charged,
        cost_usd=turn.cost_usd,
        call_type=turn.call_type.value,
        endpoint=turn.endpoint,
        created_at=turn.created_at,
    )
    db_session.add(record)
    db_session.flush()
    return record


def get_usage_turns(
    db_session: Session,
    user_id: str,
    page: int,
    page_size: int,
) -> tuple[list[UsageTurnRecord], int]:
    """Newest-first page of a user's usage turns plus the total count."""
    total = db_session.execute(
        select(func.count())
        .select_from(UsageTurnRecord)
        .where(UsageTurnRecord.user_id == user_id)
    ).scalar_one()

    records = (
        db_session.execute(
            select(UsageTurnRecord)
            .where(UsageTurnRecord.user_id == user_id)
            .order_by(UsageTurnRecord.created_at.desc(), UsageTurnRecord.id.desc())
            .offset((page - 1) * page_size)
            .limit(page_size)
        )
        .scalars()
        .all()
    )

    return list(records), total
