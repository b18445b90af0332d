"""Choosing which model serves a turn.

The default policy maps the requested tier straight to a configured model and
ignores the conversation. complexity_routing_policy is an experimental
alternative that looks at the latest user message. A policy only picks the
model name; credits are always charged for the model actually used.
"""

import re
from collections.abc import Callable
from collections.abc import Sequence

from craft.configs import EXPERT_MODEL
from craft.configs import FAST_MODEL
from craft.configs import ModelTier
from craft.llm.models import ChatCompletionMessage
from craft.llm.models import UserMessage
from craft.utils.logger import setup_logger

logger = setup_logger()

ModelRoutingPolicy = Callable[[ModelTier, Sequence[ChatCompletionMessage]], str]

TIER_TO_MODEL: dict[ModelTier, str] = {
    ModelTier.FAST: FAST_MODEL,
    ModelTier.EXPERT: EXPERT_MODEL,
}


def get_model_for_tier(tier: ModelTier) -> str:
    return TIER_TO_MODEL[tier]


def tier_routing_policy(
    tier: ModelTier,
    messages: Sequence[ChatCompletionMessage],
) -> str:
    return get_model_for_tier(tier)


_COMPLEX_PATTERNS = [
    re.compile(pattern, re.IGNORECASE)
    for pattern in [
        r"architect|design pattern|system design|scalab",
        r"refactor|restructure|reorganize",
        r"microservice|api design|database schema",
        r"authentication|authorization|security",
        r"websocket|real-time|streaming",
        r"state management|redux|context api",
        r"optimization|performance|caching",
        r"algorithm|complex logic|advanced",
        r"integration|third-party|external api",
        r"testing|unit test|e2e test",
        r"deployment|ci/cd|docker|kubernetes",
        r"create.*components?.*and.*pages?",
        r"build.*full.*app|complete.*application",
        r"multiple.*files?",
    ]
]

_SIMPLE_PATTERNS = [
    re.compile(pattern, re.IGNORECASE)
    for pattern in [
        r"change.*color|update.*style|modify.*css",
        r"fix.*typo|correct.*spelling",
        r"add.*button|create.*link",
        r"update.*text|change.*wording",
        r"make.*bigger|make.*smaller",
        r"center|align|padding|margin",
        r"show|hide|toggle|display",
        r"what.*is|explain.*this|how.*does",
    ]
]

_LONG_MESSAGE_CHARS = 500
_CODE_SNIPPET_PATTERN = re.compile(r"```|`.*`")
_CONJUNCTION_PATTERN = re.compile(r"\b(and|also|additionally)\b", re.IGNORECASE)


def is_complex_request(message: str) -> bool:
    """Keyword heuristic for whether a request needs the stronger model."""
    if any(pattern.search(message) for pattern in _COMPLEX_PATTERNS):
        return True
    if any(pattern.search(message) for pattern in _SIMPLE_PATTERNS):
        return False

    return (
        len(message) > _LONG_MESSAGE_CHARS
        or bool(_CODE_SNIPPET_PATTERN.search(message))
        or len(_CONJUNCTION_PATTERN.findall(message)) > 2
    )


def complexity_routing_policy(
    tier: ModelTier,
    messages: Sequence[ChatCompletionMessage],
) -> str:
    """Experimental. Upgrades fast-tier turns that look complex.

    An explicit expert request is never downgraded.
    """
    if tier == ModelTier.EXPERT:
        return EXPERT_MODEL

    last_user_message = next(
        (
            msg.content
            for msg in reversed(messages)
            if isinstance(msg, UserMessage) and msg.content
        ),
        "",
    )
    if is_complex_request(last_user_message):
        logger.debug("Complexity heuristic upgraded turn to the expert model")
        return EXPERT_MODEL
    return FAST_MODEL
