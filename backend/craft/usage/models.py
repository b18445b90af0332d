from datetime import datetime
from datetime import timezone
from enum import Enum

from pydantic import BaseModel
from pydantic import ConfigDict
from pydantic import Field

# Limit value meaning "no limit"
NO_LIMIT = -1


class CallType(str, Enum):
    AGENT = "agent"


class CreditAvailability(BaseModel):
    """Result of the pre-flight credit check."""

    allowed: bool
    reason: str | None = None
    used: float
    limit: float
    remaining: float


class UsageTurn(BaseModel):
    """One accounted unit of model consumption. Immutable once created."""

    model_config = ConfigDict(frozen=True, protected_namespaces=())

    user_id: str
    project_id: str
    model: str
    input_tokens: int
    output_tokens: int
    model_multiplier: float
    credits_charged: float
    call_type: CallType
    cost_usd: float = 0.0
    endpoint: str | None = None
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens


class CreditBalance(BaseModel):
    used: float
    limit: float
    remaining: float
    period_start: datetime
    reset_at: datetime
    hours_until_reset: int


class UsageTurnSnapshot(BaseModel):
    model_config = ConfigDict(protected_namespaces=())

    id: int
    project_id: str
    model: str
    input_tokens: int
    output_tokens: int
    total_tokens: int
    model_multiplier: float
    credits_charged: float
    cost_usd: float
    call_type: str
    endpoint: str | None
    created_at: datetime


class UsageHistoryPage(BaseModel):
    records: list[UsageTurnSnapshot]
    page: int
    page_size: int
    total_count: int
    total_pages: int
