"""Packet types streamed to the client during an agent turn.

All packets are sent as SSE with `event: message` and carry a `type` field:
- text_delta: A fragment of the model's reply
- tool_call_start: The agent started a tool call
- tool_call_result: A tool call reached a terminal status
- done: The turn finished; carries the token totals
- error: The turn was aborted (e.g. the model stream failed)
"""

from datetime import datetime
from datetime import timezone
from typing import Any
from typing import Literal

from pydantic import BaseModel
from pydantic import ConfigDict
from pydantic import Field

from craft.tools.models import ToolCall
from craft.tools.models import ToolCallStatus
from craft.tools.models import ToolErrorKind


class BasePacket(BaseModel):
    """Base packet with common fields for all packet types."""

    type: str
    timestamp: str = Field(
        default_factory=lambda: datetime.now(tz=timezone.utc).isoformat()
    )


class TextDeltaPacket(BasePacket):
    type: Literal["text_delta"] = "text_delta"
    content: str


class ToolCallStartPacket(BasePacket):
    type: Literal["tool_call_start"] = "tool_call_start"
    tool_call_id: str
    tool_name: str
    args: dict[str, Any]


class ToolCallResultPacket(BasePacket):
    type: Literal["tool_call_result"] = "tool_call_result"
    tool_call_id: str
    tool_name: str
    status: ToolCallStatus
    result: str | None = None
    error: str | None = None
    error_kind: ToolErrorKind | None = None
    details: dict[str, Any] | None = None

    @classmethod
    def from_tool_call(cls, tool_call: ToolCall) -> "ToolCallResultPacket":
        return cls(
            tool_call_id=tool_call.id,
            tool_name=tool_call.name,
            status=tool_call.status,
            result=tool_call.result,
            error=tool_call.error,
            error_kind=tool_call.error_kind,
            details=tool_call.details,
        )


class DonePacket(BasePacket):
    model_config = ConfigDict(protected_namespaces=())

    type: Literal["done"] = "done"
    model: str
    input_tokens: int
    output_tokens: int
    steps: int


class ErrorPacket(BasePacket):
    """The turn failed and no further packets will follow."""

    type: Literal["error"] = "error"
    message: str
    code: int | None = None
    details: dict[str, Any] | None = None


AgentPacket = (
    TextDeltaPacket
    | ToolCallStartPacket
    | ToolCallResultPacket
    | DonePacket
    | ErrorPacket
)


def format_sse_event(packet: BasePacket) -> str:
    return f"event: message\ndata: {packet.model_dump_json()}\n\n"
