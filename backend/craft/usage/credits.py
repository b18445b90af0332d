"""Conversion from model tokens to credits."""

from craft.configs import DEFAULT_MODEL_MULTIPLIER
from craft.configs import MODEL_CREDIT_MULTIPLIER_OVERRIDES
from craft.configs import TOKENS_PER_CREDIT

# Relative credit cost per token, roughly tracking provider list prices.
# Keys are matched against the model name without its provider prefix.
MODEL_CREDIT_MULTIPLIERS: dict[str, float] = {
    "claude-haiku-4-5": 1.0,
    "claude-sonnet-4-5": 3.0,
    "claude-opus-4-1": 15.0,
    "gpt-5-mini": 0.5,
    "gpt-5": 2.0,
    "gemini-2.5-flash": 0.5,
    "gemini-2.5-pro": 2.5,
}


def _strip_provider(model: str) -> str:
    return model.split("/", 1)[1] if "/" in model else model


def get_model_multiplier(model: str) -> float:
    """Credit multiplier for a model id like 'anthropic/claude-sonnet-4-5'.

    Overrides from CRAFT_MODEL_CREDIT_MULTIPLIERS win, then an exact match on
    the bare model name, then the longest known prefix (so dated snapshots
    like 'claude-sonnet-4-5-20250929' resolve), then the default.
    """
    if model in MODEL_CREDIT_MULTIPLIER_OVERRIDES:
        return float(MODEL_CREDIT_MULTIPLIER_OVERRIDES[model])

    bare_model = _strip_provider(model)
    if bare_model in MODEL_CREDIT_MULTIPLIER_OVERRIDES:
        return float(MODEL_CREDIT_MULTIPLIER_OVERRIDES[bare_model])
    if bare_model in MODEL_CREDIT_MULTIPLIERS:
        return MODEL_CREDIT_MULTIPLIERS[bare_model]

    prefix_matches = [
        known for known in MODEL_CREDIT_MULTIPLIERS if bare_model.startswith(known)
    ]
    if prefix_matches:
        return MODEL_CREDIT_MULTIPLIERS[max(prefix_matches, key=len)]

    return DEFAULT_MODEL_MULTIPLIER


def tokens_to_credits(total_tokens: int, multiplier: float = 1.0) -> float:
    """Credits for a token count, rounded to 2 decimal places (half up)."""
    raw_credits = total_tokens * multiplier / TOKENS_PER_CREDIT
    # Nudge before rounding so x.xx5 rounds up despite float representation
    return round(raw_credits + 1e-9, 2)
