from collections.abc import AsyncGenerator
from typing import Any

import litellm
from litellm.exceptions import RateLimitError
from litellm.exceptions import Timeout

from craft.configs import AGENT_MAX_STEPS
from craft.configs import GEN_AI_TEMPERATURE
from craft.configs import LLM_MAX_OUTPUT_TOKENS
from craft.configs import LLM_TIMEOUT_SECONDS
from craft.llm.interfaces import LLM
from craft.llm.interfaces import LLMConfig
from craft.llm.models import Delta
from craft.llm.models import FunctionCallDelta
from craft.llm.models import LanguageModelInput
from craft.llm.models import StreamChunk
from craft.llm.models import ToolCallDelta
from craft.llm.models import Usage
from craft.utils.logger import setup_logger

logger = setup_logger()


class LLMTimeoutError(Exception):
    """
    Exception raised when an LLM call times out.
    """


class LLMRateLimitError(Exception):
    """
    Exception raised when an LLM call is rate limited.
    """


def _prompt_to_dicts(prompt: LanguageModelInput) -> list[dict[str, Any]]:
    """Convert pydantic message models to the dicts litellm expects."""
    if isinstance(prompt, str):
        return [{"role": "user", "content": prompt}]
    return [msg.model_dump(exclude_none=True) for msg in prompt]


def split_model_name(model: str) -> tuple[str, str]:
    """'anthropic/claude-sonnet-4-5' -> ('anthropic', 'claude-sonnet-4-5')"""
    if "/" not in model:
        return "openai", model
    provider, name = model.split("/", 1)
    return provider, name


def from_litellm_stream_chunk(chunk: Any) -> StreamChunk:
    usage: Usage | None = None
    raw_usage = getattr(chunk, "usage", None)
    if raw_usage:
        usage = Usage(
            prompt_tokens=raw_usage.prompt_tokens or 0,
            completion_tokens=raw_usage.completion_tokens or 0,
        )

    choices = getattr(chunk, "choices", None)
    if not choices:
        # The usage-only chunk at the end of the stream has no choices
        return StreamChunk(usage=usage)

    raw_delta = choices[0].delta
    tool_call_deltas: list[ToolCallDelta] = []
    for raw_tool_call in getattr(raw_delta, "tool_calls", None) or []:
        function = raw_tool_call.function
        tool_call_deltas.append(
            ToolCallDelta(
                index=raw_tool_call.index or 0,
                id=raw_tool_call.id,
                function=(
                    FunctionCallDelta(name=function.name, arguments=function.arguments)
                    if function
                    else None
                ),
            )
        )

    return StreamChunk(
        delta=Delta(
            content=getattr(raw_delta, "content", None),
            tool_calls=tool_call_deltas,
        ),
        usage=usage,
    )


class LitellmLLM(LLM):
    """Streams chat completions from any provider litellm supports."""

    def __init__(
        self,
        model: str,
        api_key: str | None = None,
        api_base: str | None = None,
        temperature: float = GEN_AI_TEMPERATURE,
        timeout: int = LLM_TIMEOUT_SECONDS,
        max_output_tokens: int = LLM_MAX_OUTPUT_TOKENS,
        max_steps: int = AGENT_MAX_STEPS,
    ):
        self._model = model
        self._api_key = api_key
        self._api_base = api_base
        self._temperature = temperature
        self._timeout = timeout
        self._max_output_tokens = max_output_tokens
        self._max_steps = max_steps

    @property
    def config(self) -> LLMConfig:
        model_provider, model_name = split_model_name(self._model)
        return LLMConfig(
            model_provider=model_provider,
            model_name=model_name,
            temperature=self._temperature,
            timeout=self._timeout,
            max_output_tokens=self._max_output_tokens,
            max_steps=self._max_steps,
        )

    async def stream(
        self,
        prompt: LanguageModelInput,
        tools: list[dict] | None = None,
        max_tokens: int | None = None,
    ) -> AsyncGenerator[StreamChunk, None]:
        optional_kwargs: dict[str, Any] = {}
        if tools:
            optional_kwargs["tools"] = tools
            optional_kwargs["parallel_tool_calls"] = True

        try:
            # NOTE: must pass in None instead of empty strings
            response = await litellm.acompletion(
                model=self._model,
                api_key=self._api_key or None,
                base_url=self._api_base or None,
                messages=_prompt_to_dicts(prompt),
                stream=True,
                stream_options={"include_usage": True},
                temperature=self._temperature,
                timeout=self._timeout,
                max_tokens=max_tokens or self._max_output_tokens,
                **optional_kwargs,
            )
        except Timeout as e:
            raise LLMTimeoutError(e) from e
        except RateLimitError as e:
            raise LLMRateLimitError(e) from e

        try:
            async for chunk in response:
                yield from_litellm_stream_chunk(chunk)
        except Timeout as e:
            raise LLMTimeoutError(e) from e
        except RateLimitError as e:
            raise LLMRateLimitError(e) from e
        finally:
            close = getattr(response, "aclose", None)
            if close is not None:
                try:
                    await close()
                except Exception as e:
                    logger.debug(f"Error closing model stream: {e}")


def get_llm(model: str) -> LLM:
    return LitellmLLM(model=model)
