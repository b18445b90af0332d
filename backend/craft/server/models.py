from typing import Annotated
from typing import Literal

from pydantic import BaseModel
from pydantic import Field
from pydantic import field_validator

from craft.configs import ModelTier
from craft.llm.models import AssistantMessage
from craft.llm.models import ChatCompletionMessage
from craft.llm.models import UserMessage
from craft.usage.models import NO_LIMIT


class ChatMessageRequest(BaseModel):
    """A prior conversation message as the client sends it."""

    role: Literal["user", "assistant"]
    content: str

    def to_llm_message(self) -> ChatCompletionMessage:
        if self.role == "assistant":
            return AssistantMessage(content=self.content)
        return UserMessage(content=self.content)


class ChatRequest(BaseModel):
    messages: Annotated[list[ChatMessageRequest], Field(min_length=1)]
    project_id: str | None = None
    user_id: str
    tier: ModelTier = ModelTier.FAST


class UsageDeniedDetail(BaseModel):
    reason: str
    used: float
    limit: float
    remaining: float


class HeartbeatResponse(BaseModel):
    # Always true; a failed extension is reported through `extended`
    success: bool = True
    extended: bool
    message: str
    sandbox_id: str | None
    next_heartbeat_in_ms: int


class InstallRequest(BaseModel):
    packages: list[str]


class InstallResponse(BaseModel):
    installed: list[str]
    rejected: list[str]
    output: str


class SandboxHealthResponse(BaseModel):
    healthy: bool
    sandbox_id: str | None
    message: str


class SandboxTeardownResponse(BaseModel):
    project_id: str
    released: bool


class DevServerResponse(BaseModel):
    project_id: str
    sandbox_id: str
    process_id: int


class CreditLimitRequest(BaseModel):
    # None reverts to the default allowance, -1 means unlimited
    credit_limit: float | None

    @field_validator("credit_limit")
    @classmethod
    def _check_credit_limit(cls, value: float | None) -> float | None:
        if value is not None and value != NO_LIMIT and value < 0:
            raise ValueError(f"credit_limit must be >= 0 or {NO_LIMIT}")
        return value
