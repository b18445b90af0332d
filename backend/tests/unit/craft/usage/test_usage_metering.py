"""Unit tests for UsageMeter against an in-memory sqlite database."""

from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime
from datetime import timedelta
from datetime import timezone
from unittest.mock import patch

import pytest
from sqlalchemy import select
from sqlalchemy.orm import Session
from sqlalchemy.orm import sessionmaker

from craft.configs import CreditPeriod
from craft.db.models import UsageTurnRecord
from craft.db.models import UserCreditUsage
from craft.usage.metering import resolve_credit_limit
from craft.usage.metering import UsageMeter
from craft.usage.models import CallType
from craft.usage.models import NO_LIMIT

HAIKU = "anthropic/claude-haiku-4-5"
SONNET = "anthropic/claude-sonnet-4-5"


@pytest.fixture(autouse=True)
def no_litellm_pricing() -> Iterator[None]:
    with patch("craft.usage.metering.calculate_llm_cost_usd", return_value=0.01):
        yield


def _usage_row(
    db_sessionmaker: sessionmaker[Session], user_id: str
) -> UserCreditUsage | None:
    with db_sessionmaker() as db_session:
        return db_session.execute(
            select(UserCreditUsage).where(UserCreditUsage.user_id == user_id)
        ).scalar_one_or_none()


class TestResolveCreditLimit:
    def test_default(self) -> None:
        with patch("craft.usage.metering.DEFAULT_CREDIT_LIMIT", 5.0):
            assert resolve_credit_limit("user-1", None) == 5.0

    def test_stored_limit(self) -> None:
        usage = UserCreditUsage(
            user_id="user-1",
            credits_used=0.0,
            credit_limit=20.0,
            last_reset_at=datetime.now(timezone.utc),
        )
        assert resolve_credit_limit("user-1", usage) == 20.0

    def test_env_override_wins(self) -> None:
        usage = UserCreditUsage(
            user_id="user-1",
            credits_used=0.0,
            credit_limit=20.0,
            last_reset_at=datetime.now(timezone.utc),
        )
        with patch(
            "craft.usage.metering.CRAFT_USER_CREDIT_LIMIT_OVERRIDES",
            {"user-1": NO_LIMIT},
        ):
            assert resolve_credit_limit("user-1", usage) == NO_LIMIT


class TestCheckAvailability:
    @pytest.mark.asyncio
    async def test_new_user_is_allowed(self, usage_meter: UsageMeter) -> None:
        with patch("craft.usage.metering.DEFAULT_CREDIT_LIMIT", 1.0):
            availability = await usage_meter.check_availability("user-1")

        assert availability.allowed
        assert availability.used == 0.0
        assert availability.remaining == 1.0

    @pytest.mark.asyncio
    async def test_check_is_read_only(
        self, usage_meter: UsageMeter, db_sessionmaker: sessionmaker[Session]
    ) -> None:
        await usage_meter.check_availability("user-1")
        await usage_meter.check_availability("user-1")

        assert _usage_row(db_sessionmaker, "user-1") is None

    @pytest.mark.asyncio
    async def test_used_equal_to_limit_is_denied(
        self, usage_meter: UsageMeter
    ) -> None:
        with patch("craft.usage.metering.DEFAULT_CREDIT_LIMIT", 2.0):
            # 20k haiku tokens -> 2.0 credits
            await usage_meter.commit("user-1", "project-1", HAIKU, 12_000, 8_000)
            availability = await usage_meter.check_availability("user-1")

        assert not availability.allowed
        assert availability.used == 2.0
        assert availability.remaining == 0.0
        assert availability.reason is not None

    @pytest.mark.asyncio
    async def test_one_credit_below_limit_is_allowed(
        self, usage_meter: UsageMeter
    ) -> None:
        with patch("craft.usage.metering.DEFAULT_CREDIT_LIMIT", 2.0):
            await usage_meter.commit("user-1", "project-1", HAIKU, 6_000, 4_000)
            availability = await usage_meter.check_availability("user-1")

        assert availability.allowed
        assert availability.used == 1.0
        assert availability.remaining == 1.0

    @pytest.mark.asyncio
    async def test_unlimited_user(self, usage_meter: UsageMeter) -> None:
        with patch("craft.usage.metering.DEFAULT_CREDIT_LIMIT", float(NO_LIMIT)):
            await usage_meter.commit("user-1", "project-1", SONNET, 500_000, 500_000)
            availability = await usage_meter.check_availability("user-1")

        assert availability.allowed
        assert availability.limit == NO_LIMIT

    @pytest.mark.asyncio
    async def test_previous_period_usage_reads_as_zero(
        self, usage_meter: UsageMeter, db_sessionmaker: sessionmaker[Session]
    ) -> None:
        with db_sessionmaker() as db_session:
            db_session.add(
                UserCreditUsage(
                    user_id="user-1",
                    credits_used=50.0,
                    last_reset_at=datetime.now(timezone.utc) - timedelta(days=2),
                )
            )
            db_session.commit()

        with patch("craft.usage.metering.DEFAULT_CREDIT_LIMIT", 1.0):
            availability = await usage_meter.check_availability("user-1")

        assert availability.allowed
        assert availability.used == 0.0

        # The stale value is still stored until the next commit resets it
        row = _usage_row(db_sessionmaker, "user-1")
        assert row is not None
        assert row.credits_used == 50.0


class TestCommit:
    @pytest.mark.asyncio
    async def test_records_turn_and_charges_credits(
        self, usage_meter: UsageMeter, db_sessionmaker: sessionmaker[Session]
    ) -> None:
        turn = await usage_meter.commit(
            "user-1",
            "project-1",
            SONNET,
            input_tokens=3_000,
            output_tokens=2_000,
            call_type=CallType.AGENT,
            endpoint="/build/projects/project-1/messages",
        )

        assert turn is not None
        assert turn.total_tokens == 5_000
        assert turn.model_multiplier == 3.0
        assert turn.credits_charged == 1.5
        assert turn.cost_usd == 0.01

        row = _usage_row(db_sessionmaker, "user-1")
        assert row is not None
        assert row.credits_used == 1.5

        with db_sessionmaker() as db_session:
            records = db_session.execute(select(UsageTurnRecord)).scalars().all()
        assert len(records) == 1
        assert records[0].call_type == "agent"
        assert records[0].project_id == "project-1"

    @pytest.mark.asyncio
    async def test_commits_accumulate(
        self, usage_meter: UsageMeter, db_sessionmaker: sessionmaker[Session]
    ) -> None:
        await usage_meter.commit("user-1", "project-1", HAIKU, 1_000, 1_000)
        await usage_meter.commit("user-1", "project-2", HAIKU, 2_000, 1_000)

        row = _usage_row(db_sessionmaker, "user-1")
        assert row is not None
        assert row.credits_used == pytest.approx(0.5)

    @pytest.mark.asyncio
    async def test_commit_resets_stale_period(
        self, usage_meter: UsageMeter, db_sessionmaker: sessionmaker[Session]
    ) -> None:
        stale = datetime.now(timezone.utc) - timedelta(days=2)
        with db_sessionmaker() as db_session:
            db_session.add(
                UserCreditUsage(user_id="user-1", credits_used=50.0, last_reset_at=stale)
            )
            db_session.commit()

        await usage_meter.commit("user-1", "project-1", HAIKU, 5_000, 5_000)

        row = _usage_row(db_sessionmaker, "user-1")
        assert row is not None
        assert row.credits_used == 1.0
        assert row.last_reset_at.replace(tzinfo=timezone.utc) > stale

    @pytest.mark.asyncio
    async def test_zero_token_turn_is_still_recorded(
        self, usage_meter: UsageMeter, db_sessionmaker: sessionmaker[Session]
    ) -> None:
        turn = await usage_meter.commit("user-1", "project-1", HAIKU, 0, 0)

        assert turn is not None
        assert turn.credits_charged == 0.0
        with db_sessionmaker() as db_session:
            assert len(db_session.execute(select(UsageTurnRecord)).all()) == 1

    @pytest.mark.asyncio
    async def test_persistence_failure_returns_none(self) -> None:
        @contextmanager
        def _broken_session() -> Iterator[Session]:
            raise RuntimeError("database is down")
            yield  # pragma: no cover

        meter = UsageMeter(session_factory=_broken_session, period=CreditPeriod.DAILY)

        turn = await meter.commit("user-1", "project-1", HAIKU, 100, 100)

        assert turn is None


class TestBalanceAndHistory:
    @pytest.mark.asyncio
    async def test_balance(self, usage_meter: UsageMeter) -> None:
        now = datetime(2025, 3, 10, 18, 30, tzinfo=timezone.utc)
        with patch("craft.usage.metering.DEFAULT_CREDIT_LIMIT", 10.0):
            await usage_meter.commit("user-1", "project-1", HAIKU, 20_000, 10_000)
            balance = await usage_meter.get_balance("user-1", now=now)

        assert balance.period_start == datetime(2025, 3, 10, tzinfo=timezone.utc)
        assert balance.reset_at == datetime(2025, 3, 11, tzinfo=timezone.utc)
        assert balance.hours_until_reset == 6
        assert balance.limit == 10.0

    @pytest.mark.asyncio
    async def test_history_is_newest_first_and_paginated(
        self, usage_meter: UsageMeter
    ) -> None:
        for index in range(5):
            await usage_meter.commit(
                "user-1", f"project-{index}", HAIKU, 100 * (index + 1), 0
            )
        await usage_meter.commit("user-2", "other", HAIKU, 100, 0)

        first_page = await usage_meter.list_usage("user-1", page=1, page_size=2)
        last_page = await usage_meter.list_usage("user-1", page=3, page_size=2)

        assert first_page.total_count == 5
        assert first_page.total_pages == 3
        assert [record.project_id for record in first_page.records] == [
            "project-4",
            "project-3",
        ]
        assert [record.project_id for record in last_page.records] == ["project-0"]

    @pytest.mark.asyncio
    async def test_history_page_size_is_capped(self, usage_meter: UsageMeter) -> None:
        page = await usage_meter.list_usage("user-1", page=0, page_size=10_000)

        assert page.page == 1
        assert page.page_size == 100
        assert page.records == []
        assert page.total_pages == 0
