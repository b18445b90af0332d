import json
import os
from enum import Enum


class SandboxBackend(str, Enum):
    """Backend used to run project sandboxes.

    E2B: Production mode - remote microVMs via the e2b API
    LOCAL: Development mode - subprocesses in per-sandbox directories
    """

    E2B = "e2b"
    LOCAL = "local"


class ModelTier(str, Enum):
    FAST = "fast"
    EXPERT = "expert"


class CreditPeriod(str, Enum):
    """Length of the window after which used credits roll over to zero."""

    DAILY = "daily"
    MONTHLY = "monthly"


SANDBOX_BACKEND = SandboxBackend(os.environ.get("SANDBOX_BACKEND", "e2b"))

# ============================================================================
# Sandbox Lifecycle Configuration
# ============================================================================

# Provider-side idle timeout applied when a sandbox is created (10 minutes)
SANDBOX_TIMEOUT_MS = int(os.environ.get("SANDBOX_TIMEOUT_MS", "600000"))

# How far each heartbeat pushes back the provider timeout
HEARTBEAT_EXTENSION_MS = int(os.environ.get("HEARTBEAT_EXTENSION_MS", "600000"))

# Cadence the client is told to heartbeat at. Must stay below half of
# SANDBOX_TIMEOUT_MS so a single missed heartbeat is tolerated.
HEARTBEAT_INTERVAL_MS = int(os.environ.get("HEARTBEAT_INTERVAL_MS", "240000"))

# Idle time after which the reaper pauses a sandbox (5 minutes). Paused
# sandboxes stop billing and keep their filesystem. Must sit between
# HEARTBEAT_INTERVAL_MS and SANDBOX_TIMEOUT_MS.
SANDBOX_PAUSE_AFTER_IDLE_MS = int(
    os.environ.get("SANDBOX_PAUSE_AFTER_IDLE_MS", "300000")
)

# Paused sandboxes older than this are destroyed (30 minutes)
SANDBOX_PAUSED_TTL_SECONDS = int(
    os.environ.get("SANDBOX_PAUSED_TTL_SECONDS", "1800")
)

# Background sweep that pauses idle sandboxes and destroys stale ones
SANDBOX_CLEANUP_INTERVAL_SECONDS = int(
    os.environ.get("SANDBOX_CLEANUP_INTERVAL_SECONDS", "60")
)

# e2b template with node + pnpm preinstalled
E2B_TEMPLATE = os.environ.get("E2B_TEMPLATE") or None
E2B_API_KEY = os.environ.get("E2B_API_KEY") or None

# Root directory for local sandboxes (only used when SANDBOX_BACKEND = "local")
SANDBOX_BASE_PATH = os.environ.get("SANDBOX_BASE_PATH", "/tmp/craft-sandboxes")

# Working directory of the project inside every sandbox
SANDBOX_PROJECT_DIR = os.environ.get("SANDBOX_PROJECT_DIR", "/home/user/project")

DEV_SERVER_COMMAND = os.environ.get("DEV_SERVER_COMMAND", "pnpm dev")

# ============================================================================
# Tool Execution Timeouts
# ============================================================================

COMMAND_TIMEOUT_MS = int(os.environ.get("COMMAND_TIMEOUT_MS", "30000"))
INSTALL_TIMEOUT_MS = int(os.environ.get("INSTALL_TIMEOUT_MS", "120000"))
FILE_WRITE_TIMEOUT_MS = int(os.environ.get("FILE_WRITE_TIMEOUT_MS", "10000"))
HEALTH_CHECK_TIMEOUT_MS = int(os.environ.get("HEALTH_CHECK_TIMEOUT_MS", "5000"))

# Upper bound on tool output returned to the model
MAX_TOOL_OUTPUT_CHARS = int(os.environ.get("MAX_TOOL_OUTPUT_CHARS", "20000"))

# ============================================================================
# Model Configuration
# ============================================================================

FAST_MODEL = os.environ.get("FAST_MODEL", "anthropic/claude-haiku-4-5")
EXPERT_MODEL = os.environ.get("EXPERT_MODEL", "anthropic/claude-sonnet-4-5")

GEN_AI_TEMPERATURE = float(os.environ.get("GEN_AI_TEMPERATURE", "0.2"))
LLM_TIMEOUT_SECONDS = int(os.environ.get("LLM_TIMEOUT_SECONDS", "120"))
LLM_MAX_OUTPUT_TOKENS = int(os.environ.get("LLM_MAX_OUTPUT_TOKENS", "8192"))

# Maximum number of model steps (stream -> tools -> stream) in one turn
AGENT_MAX_STEPS = int(os.environ.get("AGENT_MAX_STEPS", "20"))

# Credit multiplier per model. Models not listed use DEFAULT_MODEL_MULTIPLIER.
_model_multipliers_str = os.environ.get("CRAFT_MODEL_CREDIT_MULTIPLIERS", "")
try:
    MODEL_CREDIT_MULTIPLIER_OVERRIDES: dict[str, float] = (
        json.loads(_model_multipliers_str) if _model_multipliers_str else {}
    )
except json.JSONDecodeError:
    MODEL_CREDIT_MULTIPLIER_OVERRIDES = {}

DEFAULT_MODEL_MULTIPLIER = float(os.environ.get("DEFAULT_MODEL_MULTIPLIER", "1.0"))

# ============================================================================
# Credit Configuration
# ============================================================================

TOKENS_PER_CREDIT = 10000

CREDIT_PERIOD = CreditPeriod(os.environ.get("CREDIT_PERIOD", "daily"))

# Credits available per period for users without a stored limit.
# -1 disables the limit.
DEFAULT_CREDIT_LIMIT = float(os.environ.get("DEFAULT_CREDIT_LIMIT", "1"))

# Per-user credit limit overrides (JSON map of user id -> credits per period)
# Example: {"user_123": 50, "user_456": -1}
_user_limit_overrides_str = os.environ.get("CRAFT_USER_CREDIT_LIMIT_OVERRIDES", "{}")
try:
    CRAFT_USER_CREDIT_LIMIT_OVERRIDES: dict[str, float] = json.loads(
        _user_limit_overrides_str
    )
except json.JSONDecodeError:
    CRAFT_USER_CREDIT_LIMIT_OVERRIDES = {}

# ============================================================================
# Database Configuration
# ============================================================================

POSTGRES_USER = os.environ.get("POSTGRES_USER", "postgres")
POSTGRES_PASSWORD = os.environ.get("POSTGRES_PASSWORD", "password")
POSTGRES_HOST = os.environ.get("POSTGRES_HOST", "localhost")
POSTGRES_PORT = os.environ.get("POSTGRES_PORT", "5432")
POSTGRES_DB = os.environ.get("POSTGRES_DB", "craft")

# Full URL override, e.g. "sqlite:///./craft.db" for local development
CRAFT_DATABASE_URL = os.environ.get("CRAFT_DATABASE_URL") or None

# Create tables on startup instead of relying on alembic (development only)
CREATE_TABLES_ON_STARTUP = (
    os.environ.get("CREATE_TABLES_ON_STARTUP", "false").lower() == "true"
)

# ============================================================================
# Server Configuration
# ============================================================================

APP_HOST = os.environ.get("APP_HOST", "0.0.0.0")
APP_PORT = int(os.environ.get("APP_PORT", "8080"))
