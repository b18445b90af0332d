"""The agent turn: stream the model, run the tools it asks for, repeat.

A turn is a sequence of model steps. Each step streams text and tool-call
fragments. When the step ends, its tool calls are executed concurrently
against the project's sandbox and their results are appended to the
conversation for the next step. The turn ends at the first step without tool
calls, on a model error, or when the model's step limit is reached.

Usage for the whole turn is committed exactly once when the packet stream
ends, however it ends.
"""

import asyncio
import json
from collections.abc import AsyncGenerator
from collections.abc import Callable
from collections.abc import Sequence
from typing import Any
from uuid import uuid4

from craft.agent.packets import AgentPacket
from craft.agent.packets import DonePacket
from craft.agent.packets import ErrorPacket
from craft.agent.packets import TextDeltaPacket
from craft.agent.packets import ToolCallResultPacket
from craft.agent.packets import ToolCallStartPacket
from craft.agent.prompts import CODING_AGENT_SYSTEM_PROMPT
from craft.configs import ModelTier
from craft.errors import UsageDeniedError
from craft.llm.interfaces import LLM
from craft.llm.litellm_llm import get_llm
from craft.llm.litellm_llm import LLMRateLimitError
from craft.llm.litellm_llm import LLMTimeoutError
from craft.llm.models import AssistantMessage
from craft.llm.models import ChatCompletionMessage
from craft.llm.models import FunctionCall
from craft.llm.models import SystemMessage
from craft.llm.models import ToolCall as LLMToolCall
from craft.llm.models import ToolCallDelta
from craft.llm.models import ToolMessage
from craft.llm.models import Usage
from craft.llm.routing import ModelRoutingPolicy
from craft.llm.routing import tier_routing_policy
from craft.tools.definitions import get_sandbox_tool_definitions
from craft.tools.executor import ToolExecutor
from craft.tools.models import ToolCall
from craft.usage.metering import UsageMeter
from craft.usage.models import CallType
from craft.utils.logger import CURRENT_PROJECT_ID_CONTEXTVAR
from craft.utils.logger import setup_logger

logger = setup_logger()

CHAT_ENDPOINT = "/chat"


def _parse_tool_args_to_dict(raw_args: Any) -> dict[str, Any]:
    """Parse tool arguments into a dict.

    Normal case:
    - raw_args == '{"path": "src/App.tsx", ...}' -> dict via json.loads

    Defensive case (JSON string literal of an object):
    - raw_args == '"{\\"path\\": ...}"' -> json.loads -> str -> json.loads -> dict

    Anything else returns {}, which the executor rejects as invalid arguments.
    """
    if raw_args is None:
        return {}

    if isinstance(raw_args, dict):
        return raw_args

    if not isinstance(raw_args, str):
        return {}

    try:
        parsed1: Any = json.loads(raw_args)
    except json.JSONDecodeError:
        return {}

    if isinstance(parsed1, dict):
        return parsed1

    if isinstance(parsed1, str):
        try:
            parsed2: Any = json.loads(parsed1)
        except json.JSONDecodeError:
            return {}
        return parsed2 if isinstance(parsed2, dict) else {}

    return {}


def _update_tool_call_with_delta(
    tool_calls_in_progress: dict[int, dict[str, Any]],
    tool_call_delta: ToolCallDelta,
) -> None:
    index = tool_call_delta.index

    if index not in tool_calls_in_progress:
        tool_calls_in_progress[index] = {
            "id": None,
            "name": None,
            "arguments": "",
        }

    if tool_call_delta.id:
        tool_calls_in_progress[index]["id"] = tool_call_delta.id

    if tool_call_delta.function:
        if tool_call_delta.function.name:
            tool_calls_in_progress[index]["name"] = tool_call_delta.function.name

        if tool_call_delta.function.arguments:
            tool_calls_in_progress[index][
                "arguments"
            ] += tool_call_delta.function.arguments


def _extract_tool_calls(
    tool_calls_in_progress: dict[int, dict[str, Any]],
) -> list[ToolCall]:
    """Turn the accumulated fragments into ToolCalls, in index order.

    Fragments that never received a tool name are dropped.
    """
    tool_calls: list[ToolCall] = []
    for index in sorted(tool_calls_in_progress):
        tool_call_data = tool_calls_in_progress[index]
        if not tool_call_data.get("name"):
            logger.warning(f"Dropping tool call without a name at index {index}")
            continue

        tool_calls.append(
            ToolCall(
                id=tool_call_data.get("id") or f"call_{uuid4().hex[:24]}",
                name=tool_call_data["name"],
                args=_parse_tool_args_to_dict(tool_call_data.get("arguments")),
            )
        )
    return tool_calls


def _describe_model_error(e: Exception) -> str:
    if isinstance(e, LLMTimeoutError):
        return "The model took too long to respond. Please try again."
    if isinstance(e, LLMRateLimitError):
        return "The model provider is rate limiting requests. Please try again shortly."
    return f"The model stream failed: {e}"


class AgentStreamingLoop:
    def __init__(
        self,
        tool_executor: ToolExecutor,
        usage_meter: UsageMeter,
        llm_factory: Callable[[str], LLM] = get_llm,
        routing_policy: ModelRoutingPolicy = tier_routing_policy,
        system_prompt: str = CODING_AGENT_SYSTEM_PROMPT,
        tool_definitions: list[dict] | None = None,
    ) -> None:
        self._tool_executor = tool_executor
        self._usage_meter = usage_meter
        self._llm_factory = llm_factory
        self._routing_policy = routing_policy
        self._system_prompt = system_prompt
        self._tool_definitions = (
            tool_definitions
            if tool_definitions is not None
            else get_sandbox_tool_definitions()
        )

    async def run(
        self,
        messages: Sequence[ChatCompletionMessage],
        project_id: str,
        user_id: str,
        tier: ModelTier = ModelTier.FAST,
    ) -> AsyncGenerator[AgentPacket, None]:
        """Start a turn and return its packet stream.

        The credit check happens here, before the stream is returned, so a
        denied user gets an exception instead of a stream and the model is
        never contacted.

        Raises:
            UsageDeniedError: If the user has no credits left this period
        """
        availability = await self._usage_meter.check_availability(user_id)
        if not availability.allowed:
            raise UsageDeniedError(
                reason=availability.reason or "Credit limit reached",
                used=availability.used,
                limit=availability.limit,
                remaining=availability.remaining,
            )

        model = self._routing_policy(tier, messages)
        llm = self._llm_factory(model)
        logger.info(f"Starting agent turn for user {user_id} with {model}")
        return self._stream_turn(llm, list(messages), project_id, user_id)

    def _build_history(
        self, messages: list[ChatCompletionMessage]
    ) -> list[ChatCompletionMessage]:
        if messages and isinstance(messages[0], SystemMessage):
            return messages
        return [SystemMessage(content=self._system_prompt), *messages]

    async def _stream_turn(
        self,
        llm: LLM,
        messages: list[ChatCompletionMessage],
        project_id: str,
        user_id: str,
    ) -> AsyncGenerator[AgentPacket, None]:
        CURRENT_PROJECT_ID_CONTEXTVAR.set(project_id)

        history = self._build_history(messages)
        model = llm.config.model
        max_steps = llm.config.max_steps
        input_tokens = 0
        output_tokens = 0
        steps = 0

        try:
            while steps < max_steps:
                steps += 1
                tool_calls_in_progress: dict[int, dict[str, Any]] = {}
                accumulated_text = ""
                step_usage: Usage | None = None

                model_stream = llm.stream(history, tools=self._tool_definitions)
                try:
                    async for chunk in model_stream:
                        # Providers may report running totals on several chunks
                        if chunk.usage:
                            step_usage = chunk.usage

                        if chunk.delta.content:
                            accumulated_text += chunk.delta.content
                            yield TextDeltaPacket(content=chunk.delta.content)

                        for tool_call_delta in chunk.delta.tool_calls:
                            _update_tool_call_with_delta(
                                tool_calls_in_progress, tool_call_delta
                            )
                except Exception as e:
                    logger.exception(f"Model stream failed on step {steps}")
                    yield ErrorPacket(message=_describe_model_error(e))
                    return
                finally:
                    await model_stream.aclose()
                    if step_usage is not None:
                        input_tokens += step_usage.prompt_tokens
                        output_tokens += step_usage.completion_tokens

                tool_calls = _extract_tool_calls(tool_calls_in_progress)
                if not tool_calls:
                    break

                history.append(
                    AssistantMessage(
                        content=accumulated_text or None,
                        tool_calls=[
                            LLMToolCall(
                                id=tool_call.id,
                                function=FunctionCall(
                                    name=tool_call.name,
                                    arguments=json.dumps(tool_call.args),
                                ),
                            )
                            for tool_call in tool_calls
                        ],
                    )
                )

                for tool_call in tool_calls:
                    yield ToolCallStartPacket(
                        tool_call_id=tool_call.id,
                        tool_name=tool_call.name,
                        args=tool_call.args,
                    )

                completed_tool_calls = await self._execute_tool_calls(
                    project_id, tool_calls
                )

                for tool_call in completed_tool_calls:
                    yield ToolCallResultPacket.from_tool_call(tool_call)
                    history.append(
                        ToolMessage(
                            content=tool_call.llm_facing_response(),
                            tool_call_id=tool_call.id,
                        )
                    )
            else:
                logger.notice(f"Agent turn stopped at the step limit ({max_steps})")

            yield DonePacket(
                model=model,
                input_tokens=input_tokens,
                output_tokens=output_tokens,
                steps=steps,
            )
        finally:
            # Runs on success, model error, and client disconnect alike.
            # Shielded so a cancelled request still records its usage.
            await asyncio.shield(
                self._usage_meter.commit(
                    user_id=user_id,
                    project_id=project_id,
                    model=model,
                    input_tokens=input_tokens,
                    output_tokens=output_tokens,
                    call_type=CallType.AGENT,
                    endpoint=CHAT_ENDPOINT,
                )
            )

    async def _execute_tool_calls(
        self, project_id: str, tool_calls: list[ToolCall]
    ) -> list[ToolCall]:
        """Run one step's tool calls concurrently.

        Each call runs in its own task behind a shield: if the request is
        cancelled, the tools still run to completion in the sandbox.
        """
        tasks = [
            asyncio.ensure_future(self._tool_executor.execute(project_id, tool_call))
            for tool_call in tool_calls
        ]
        return list(await asyncio.gather(*(asyncio.shield(task) for task in tasks)))
