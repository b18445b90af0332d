import datetime

from sqlalchemy import DateTime
from sqlalchemy import Float
from sqlalchemy import func
from sqlalchemy import Index
from sqlalchemy import Integer
from sqlalchemy import String
from sqlalchemy.orm import DeclarativeBase
from sqlalchemy.orm import Mapped
from sqlalchemy.orm import mapped_column


class Base(DeclarativeBase):
    pass


class UserCreditUsage(Base):
    """Running credit counter for a user in the current period.

    The counter is not reset by a background job. A row whose last_reset_at
    is before the start of the current period is read as zero usage and is
    reset on the next write.
    """

    __tablename__ = "user_credit_usage"

    user_id: Mapped[str] = mapped_column(String, primary_key=True)
    credits_used: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    # Per-period allowance for this user. NULL falls back to the configured default.
    credit_limit: Mapped[float | None] = mapped_column(Float, nullable=True)
    last_reset_at: Mapped[datetime.datetime] = mapped_column(
        DateTime(timezone=True), nullable=False
    )
    updated_at: Mapped[datetime.datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )


class UsageTurnRecord(Base):
    """Append-only record of one metered model turn."""

    __tablename__ = "usage_turn"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(String, nullable=False)
    project_id: Mapped[str] = mapped_column(String, nullable=False)
    model: Mapped[str] = mapped_column(String, nullable=False)
    input_tokens: Mapped[int] = mapped_column(Integer, nullable=False)
    output_tokens: Mapped[int] = mapped_column(Integer, nullable=False)
    total_tokens: Mapped[int] = mapped_column(Integer, nullable=False)
    model_multiplier: Mapped[float] = mapped_column(Float, nullable=False)
    credits_charged: Mapped[float] = mapped_column(Float, nullable=False)
    cost_usd: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    call_type: Mapped[str] = mapped_column(String, nullable=False)
    endpoint: Mapped[str | None] = mapped_column(String, nullable=True)
    created_at: Mapped[datetime.datetime] = mapped_column(
        DateTime(timezone=True), nullable=False
    )

    __table_args__ = (
        Index("ix_usage_turn_user_id_created_at", "user_id", "created_at"),
    )
