"""Unit tests for the litellm adapter. No network calls are made."""

from types import SimpleNamespace
from typing import Any
from unittest.mock import AsyncMock
from unittest.mock import patch

import pytest
from litellm.exceptions import Timeout

from craft.llm.litellm_llm import from_litellm_stream_chunk
from craft.llm.litellm_llm import LitellmLLM
from craft.llm.litellm_llm import LLMTimeoutError
from craft.llm.litellm_llm import split_model_name
from craft.llm.models import SystemMessage
from craft.llm.models import UserMessage


def _chunk(
    content: str | None = None,
    tool_calls: list[Any] | None = None,
    usage: Any = None,
) -> SimpleNamespace:
    delta = SimpleNamespace(content=content, tool_calls=tool_calls)
    return SimpleNamespace(choices=[SimpleNamespace(delta=delta)], usage=usage)


def _tool_call_delta(
    index: int,
    call_id: str | None = None,
    name: str | None = None,
    arguments: str | None = None,
) -> SimpleNamespace:
    return SimpleNamespace(
        index=index,
        id=call_id,
        function=SimpleNamespace(name=name, arguments=arguments),
    )


class _FakeStream:
    def __init__(self, chunks: list[Any]) -> None:
        self._chunks = chunks
        self.closed = False

    def __aiter__(self) -> "_FakeStream":
        return self

    async def __anext__(self) -> Any:
        if not self._chunks:
            raise StopAsyncIteration
        return self._chunks.pop(0)

    async def aclose(self) -> None:
        self.closed = True


def test_split_model_name() -> None:
    assert split_model_name("anthropic/claude-sonnet-4-5") == (
        "anthropic",
        "claude-sonnet-4-5",
    )
    assert split_model_name("gpt-5") == ("openai", "gpt-5")


class TestFromLitellmStreamChunk:
    def test_text_delta(self) -> None:
        chunk = from_litellm_stream_chunk(_chunk(content="Hello"))

        assert chunk.delta.content == "Hello"
        assert chunk.delta.tool_calls == []
        assert chunk.usage is None

    def test_tool_call_delta(self) -> None:
        chunk = from_litellm_stream_chunk(
            _chunk(
                tool_calls=[
                    _tool_call_delta(0, "call_1", "write_file", '{"path": "a'),
                    _tool_call_delta(1, "call_2", "run_command", ""),
                ]
            )
        )

        assert [delta.index for delta in chunk.delta.tool_calls] == [0, 1]
        first = chunk.delta.tool_calls[0]
        assert first.id == "call_1"
        assert first.function is not None
        assert first.function.name == "write_file"
        assert first.function.arguments == '{"path": "a'

    def test_usage_only_chunk(self) -> None:
        raw = SimpleNamespace(
            choices=[],
            usage=SimpleNamespace(prompt_tokens=120, completion_tokens=30),
        )

        chunk = from_litellm_stream_chunk(raw)

        assert chunk.delta.content is None
        assert chunk.usage is not None
        assert chunk.usage.prompt_tokens == 120
        assert chunk.usage.total_tokens == 150

    def test_missing_token_counts_default_to_zero(self) -> None:
        raw = SimpleNamespace(
            choices=[],
            usage=SimpleNamespace(prompt_tokens=None, completion_tokens=7),
        )

        chunk = from_litellm_stream_chunk(raw)

        assert chunk.usage is not None
        assert chunk.usage.prompt_tokens == 0
        assert chunk.usage.completion_tokens == 7


class TestLitellmLLM:
    def test_config(self) -> None:
        llm = LitellmLLM(model="anthropic/claude-haiku-4-5", max_steps=7)

        assert llm.config.model_provider == "anthropic"
        assert llm.config.model_name == "claude-haiku-4-5"
        assert llm.config.model == "anthropic/claude-haiku-4-5"
        assert llm.config.max_steps == 7

    @pytest.mark.asyncio
    async def test_stream_converts_chunks_and_requests_usage(self) -> None:
        stream = _FakeStream(
            [
                _chunk(content="Hi"),
                _chunk(content=" there"),
                SimpleNamespace(
                    choices=[],
                    usage=SimpleNamespace(prompt_tokens=10, completion_tokens=2),
                ),
            ]
        )
        llm = LitellmLLM(model="anthropic/claude-haiku-4-5")

        with patch(
            "craft.llm.litellm_llm.litellm.acompletion",
            new=AsyncMock(return_value=stream),
        ) as mock_acompletion:
            chunks = [
                chunk
                async for chunk in llm.stream(
                    [SystemMessage(content="sys"), UserMessage(content="hi")],
                    tools=[{"type": "function"}],
                )
            ]

        assert [chunk.delta.content for chunk in chunks[:2]] == ["Hi", " there"]
        assert chunks[-1].usage is not None
        assert chunks[-1].usage.completion_tokens == 2
        assert stream.closed

        kwargs = mock_acompletion.call_args.kwargs
        assert kwargs["stream"] is True
        assert kwargs["stream_options"] == {"include_usage": True}
        assert kwargs["tools"] == [{"type": "function"}]
        assert kwargs["messages"] == [
            {"role": "system", "content": "sys"},
            {"role": "user", "content": "hi"},
        ]

    @pytest.mark.asyncio
    async def test_timeout_is_translated(self) -> None:
        llm = LitellmLLM(model="anthropic/claude-haiku-4-5")

        with patch(
            "craft.llm.litellm_llm.litellm.acompletion",
            new=AsyncMock(
                side_effect=Timeout(
                    message="timed out",
                    model="claude-haiku-4-5",
                    llm_provider="anthropic",
                )
            ),
        ):
            with pytest.raises(LLMTimeoutError):
                async for _ in llm.stream("hi"):
                    pass
