"""Per-user credit accounting for model turns.

The pre-flight check reads the user's current usage and never writes. Actual
consumption is recorded after a turn's model stream has finished, using the
token counts the provider reported. A check can therefore pass for a turn
that ends up pushing the user over their limit; the next check denies.
"""

import asyncio
import math
import threading
from collections.abc import Callable
from contextlib import AbstractContextManager
from datetime import datetime
from datetime import timezone

from sqlalchemy.orm import Session

from craft.configs import CRAFT_USER_CREDIT_LIMIT_OVERRIDES
from craft.configs import CREDIT_PERIOD
from craft.configs import CreditPeriod
from craft.configs import DEFAULT_CREDIT_LIMIT
from craft.db.engine import get_session_with_default
from craft.db.models import UserCreditUsage
from craft.db.usage import get_current_period_start
from craft.db.usage import get_effective_credits_used
from craft.db.usage import get_next_period_start
from craft.db.usage import get_usage_turns
from craft.db.usage import get_user_credit_usage
from craft.db.usage import increment_credits_used
from craft.db.usage import insert_usage_turn
from craft.db.usage import set_user_credit_limit
from craft.errors import MeteringPersistenceError
from craft.llm.cost import calculate_llm_cost_usd
from craft.usage.credits import get_model_multiplier
from craft.usage.credits import tokens_to_credits
from craft.usage.models import CallType
from craft.usage.models import CreditAvailability
from craft.usage.models import CreditBalance
from craft.usage.models import NO_LIMIT
from craft.usage.models import UsageHistoryPage
from craft.usage.models import UsageTurn
from craft.usage.models import UsageTurnSnapshot
from craft.utils.logger import setup_logger

logger = setup_logger()

MAX_HISTORY_PAGE_SIZE = 100

SessionFactory = Callable[[], AbstractContextManager[Session]]


def resolve_credit_limit(user_id: str, usage: UserCreditUsage | None) -> float:
    """
    Credits the user may spend per period.

    Returns:
        - The env override for the user, if any
        - Otherwise the limit stored on the user's usage row, if set
        - Otherwise DEFAULT_CREDIT_LIMIT
        NO_LIMIT (-1) means unlimited.
    """
    if user_id in CRAFT_USER_CREDIT_LIMIT_OVERRIDES:
        return float(CRAFT_USER_CREDIT_LIMIT_OVERRIDES[user_id])
    if usage is not None and usage.credit_limit is not None:
        return usage.credit_limit
    return DEFAULT_CREDIT_LIMIT


def _build_availability(used: float, limit: float) -> CreditAvailability:
    if limit == NO_LIMIT:
        return CreditAvailability(
            allowed=True, used=used, limit=NO_LIMIT, remaining=NO_LIMIT
        )

    remaining = max(round(limit - used, 2), 0.0)
    if used < limit:
        return CreditAvailability(
            allowed=True, used=used, limit=limit, remaining=remaining
        )

    return CreditAvailability(
        allowed=False,
        reason=(
            f"Credit limit reached: {used:.2f} of {limit:.2f} credits used "
            "in the current period"
        ),
        used=used,
        limit=limit,
        remaining=remaining,
    )


class UsageMeter:
    """Checks and records credit usage.

    All database work happens on a worker thread so the event loop is never
    blocked by the synchronous SQLAlchemy session.
    """

    def __init__(
        self,
        session_factory: SessionFactory = get_session_with_default,
        period: CreditPeriod = CREDIT_PERIOD,
    ) -> None:
        self._session_factory = session_factory
        self._period = period

    def _check_availability_sync(
        self, user_id: str, now: datetime | None
    ) -> CreditAvailability:
        period_start = get_current_period_start(now, self._period)
        with self._session_factory() as db_session:
            usage = get_user_credit_usage(db_session, user_id)
            used = get_effective_credits_used(usage, period_start)
            limit = resolve_credit_limit(user_id, usage)
        return _build_availability(used, limit)

    async def check_availability(
        self, user_id: str, now: datetime | None = None
    ) -> CreditAvailability:
        """Whether the user may start a new turn. Read-only.

        A usage row from a previous period counts as zero without being
        rewritten; the reset is persisted by the next commit.
        """
        availability = await asyncio.to_thread(
            self._check_availability_sync, user_id, now
        )
        if not availability.allowed:
            logger.info(
                f"Usage denied for user {user_id}: "
                f"{availability.used}/{availability.limit} credits used"
            )
        return availability

    def _commit_sync(self, turn: UsageTurn) -> None:
        with self._session_factory() as db_session:
            insert_usage_turn(db_session, turn)
            increment_credits_used(
                db_session,
                turn.user_id,
                turn.credits_charged,
                now=turn.created_at,
                period=self._period,
            )
            db_session.commit()

    async def commit(
        self,
        user_id: str,
        project_id: str,
        model: str,
        input_tokens: int,
        output_tokens: int,
        call_type: CallType = CallType.AGENT,
        endpoint: str | None = None,
    ) -> UsageTurn | None:
        """Record a finished turn and charge its credits.

        Never raises. Returns None if the turn could not be persisted; the
        user has already received the response so the failure is only logged.
        """
        try:
            multiplier = get_model_multiplier(model)
            turn = UsageTurn(
                user_id=user_id,
                project_id=project_id,
                model=model,
                input_tokens=input_tokens,
                output_tokens=output_tokens,
                model_multiplier=multiplier,
                credits_charged=tokens_to_credits(
                    input_tokens + output_tokens, multiplier
                ),
                cost_usd=calculate_llm_cost_usd(model, input_tokens, output_tokens),
                call_type=call_type,
                endpoint=endpoint,
            )
            await asyncio.to_thread(self._commit_sync, turn)
        except Exception as e:
            error = MeteringPersistenceError(
                f"Failed to record usage for user {user_id} "
                f"({input_tokens} in / {output_tokens} out, model {model}): {e}"
            )
            logger.exception(str(error))
            return None

        logger.debug(
            f"Recorded {turn.credits_charged} credits for user {user_id} "
            f"({turn.total_tokens} tokens, x{multiplier})"
        )
        return turn

    def _get_balance_sync(self, user_id: str, now: datetime) -> CreditBalance:
        period_start = get_current_period_start(now, self._period)
        reset_at = get_next_period_start(period_start, self._period)
        with self._session_factory() as db_session:
            usage = get_user_credit_usage(db_session, user_id)
            used = get_effective_credits_used(usage, period_start)
            limit = resolve_credit_limit(user_id, usage)

        availability = _build_availability(used, limit)
        seconds_until_reset = max((reset_at - now).total_seconds(), 0.0)
        return CreditBalance(
            used=used,
            limit=availability.limit,
            remaining=availability.remaining,
            period_start=period_start,
            reset_at=reset_at,
            hours_until_reset=math.ceil(seconds_until_reset / 3600),
        )

    def _set_credit_limit_sync(self, user_id: str, credit_limit: float | None) -> None:
        with self._session_factory() as db_session:
            set_user_credit_limit(db_session, user_id, credit_limit)
            db_session.commit()

    async def set_credit_limit(
        self, user_id: str, credit_limit: float | None
    ) -> CreditBalance:
        """Store the user's per-period allowance and return the new balance.

        None reverts to DEFAULT_CREDIT_LIMIT. An env override for the user
        still takes precedence over the stored value.
        """
        await asyncio.to_thread(self._set_credit_limit_sync, user_id, credit_limit)
        logger.notice(f"Credit limit for user {user_id} set to {credit_limit}")
        return await self.get_balance(user_id)

    async def get_balance(
        self, user_id: str, now: datetime | None = None
    ) -> CreditBalance:
        now = now or datetime.now(timezone.utc)
        return await asyncio.to_thread(self._get_balance_sync, user_id, now)

    def _list_usage_sync(
        self, user_id: str, page: int, page_size: int
    ) -> UsageHistoryPage:
        with self._session_factory() as db_session:
            records, total = get_usage_turns(db_session, user_id, page, page_size)
            snapshots = [
                UsageTurnSnapshot(
                    id=record.id,
                    project_id=record.project_id,
                    model=record.model,
                    input_tokens=record.input_tokens,
                    output_tokens=record.output_tokens,
                    total_tokens=record.total_tokens,
                    model_multiplier=record.model_multiplier,
                    credits_charged=record.credits_charged,
                    cost_usd=record.cost_usd,
                    call_type=record.call_type,
                    endpoint=record.endpoint,
                    created_at=record.created_at,
                )
                for record in records
            ]

        return UsageHistoryPage(
            records=snapshots,
            page=page,
            page_size=page_size,
            total_count=total,
            total_pages=math.ceil(total / page_size) if total else 0,
        )

    async def list_usage(
        self, user_id: str, page: int = 1, page_size: int = 20
    ) -> UsageHistoryPage:
        """Newest-first page of the user's recorded turns."""
        page = max(page, 1)
        page_size = min(max(page_size, 1), MAX_HISTORY_PAGE_SIZE)
        return await asyncio.to_thread(
            self._list_usage_sync, user_id, page, page_size
        )


_usage_meter_instance: UsageMeter | None = None
_usage_meter_lock = threading.Lock()


def get_usage_meter() -> UsageMeter:
    global _usage_meter_instance

    if _usage_meter_instance is None:
        with _usage_meter_lock:
            if _usage_meter_instance is None:
                _usage_meter_instance = UsageMeter()

    return _usage_meter_instance
