"""Function-calling definitions of the sandbox tools offered to the model."""

from craft.tools.models import SandboxToolName

PATH_FIELD = "path"
CONTENT_FIELD = "content"
COMMAND_FIELD = "command"
PACKAGES_FIELD = "packages"


def _function(name: SandboxToolName, description: str, parameters: dict) -> dict:
    return {
        "type": "function",
        "function": {
            "name": name.value,
            "description": description,
            "parameters": parameters,
        },
    }


WRITE_FILE_TOOL = _function(
    SandboxToolName.WRITE_FILE,
    "Create or overwrite a file in the project. Always send the complete file content.",
    {
        "type": "object",
        "properties": {
            PATH_FIELD: {
                "type": "string",
                "description": "File path relative to the project root (e.g. 'src/app/page.tsx')",
            },
            CONTENT_FIELD: {
                "type": "string",
                "description": "The complete file content",
            },
        },
        "required": [PATH_FIELD, CONTENT_FIELD],
    },
)

READ_FILE_TOOL = _function(
    SandboxToolName.READ_FILE,
    "Read the current content of a file in the project.",
    {
        "type": "object",
        "properties": {
            PATH_FIELD: {
                "type": "string",
                "description": "File path relative to the project root",
            },
        },
        "required": [PATH_FIELD],
    },
)

RUN_COMMAND_TOOL = _function(
    SandboxToolName.RUN_COMMAND,
    (
        "Run a shell command from the project root in the sandbox. "
        "Use install_dependency to add packages. Long-running commands "
        "such as dev servers will time out."
    ),
    {
        "type": "object",
        "properties": {
            COMMAND_FIELD: {
                "type": "string",
                "description": "The shell command to execute (e.g. 'pnpm lint')",
            },
        },
        "required": [COMMAND_FIELD],
    },
)

INSTALL_DEPENDENCY_TOOL = _function(
    SandboxToolName.INSTALL_DEPENDENCY,
    (
        "Install npm packages into the project with pnpm. Invalid package "
        "names are skipped and reported back."
    ),
    {
        "type": "object",
        "properties": {
            PACKAGES_FIELD: {
                "type": "array",
                "items": {"type": "string"},
                "description": "Package names, optionally scoped (e.g. ['zod', '@tanstack/react-query'])",
            },
        },
        "required": [PACKAGES_FIELD],
    },
)


def get_sandbox_tool_definitions() -> list[dict]:
    return [
        WRITE_FILE_TOOL,
        READ_FILE_TOOL,
        RUN_COMMAND_TOOL,
        INSTALL_DEPENDENCY_TOOL,
    ]
