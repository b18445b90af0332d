from typing import Literal

from pydantic import BaseModel
from pydantic import Field


# Tool call structures
# These mirror the OpenAI Chat Completions message types, which litellm accepts
# for every provider.
class FunctionCall(BaseModel):
    name: str
    arguments: str


class ToolCall(BaseModel):
    type: Literal["function"] = "function"
    id: str
    function: FunctionCall


# Message types
class SystemMessage(BaseModel):
    role: Literal["system"] = "system"
    content: str


class UserMessage(BaseModel):
    role: Literal["user"] = "user"
    content: str


class AssistantMessage(BaseModel):
    role: Literal["assistant"] = "assistant"
    content: str | None = None
    tool_calls: list[ToolCall] | None = None


class ToolMessage(BaseModel):
    role: Literal["tool"] = "tool"
    content: str
    tool_call_id: str


ChatCompletionMessage = SystemMessage | UserMessage | AssistantMessage | ToolMessage
# Allows for passing in a string directly, wrapped as a UserMessage
LanguageModelInput = list[ChatCompletionMessage] | str


# Streaming structures
class FunctionCallDelta(BaseModel):
    name: str | None = None
    arguments: str | None = None


class ToolCallDelta(BaseModel):
    """A fragment of a tool call. Fragments sharing an index belong together."""

    index: int
    id: str | None = None
    function: FunctionCallDelta | None = None


class Delta(BaseModel):
    content: str | None = None
    tool_calls: list[ToolCallDelta] = Field(default_factory=list)


class Usage(BaseModel):
    prompt_tokens: int = 0
    completion_tokens: int = 0

    @property
    def total_tokens(self) -> int:
        return self.prompt_tokens + self.completion_tokens


class StreamChunk(BaseModel):
    delta: Delta = Field(default_factory=Delta)
    # Only set on the chunk carrying the provider's usage report
    usage: Usage | None = None
