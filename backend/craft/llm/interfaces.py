import abc
from collections.abc import AsyncGenerator

from pydantic import BaseModel

from craft.llm.models import LanguageModelInput
from craft.llm.models import StreamChunk


class LLMConfig(BaseModel):
    model_provider: str
    model_name: str
    temperature: float
    timeout: int
    max_output_tokens: int
    # Most model steps (stream -> tools -> stream) a single turn may take
    max_steps: int
    # This disables the "model_" protected namespace for pydantic
    model_config = {"protected_namespaces": ()}

    @property
    def model(self) -> str:
        """Fully qualified name, as litellm and the credit table expect it."""
        return f"{self.model_provider}/{self.model_name}"


class LLM(abc.ABC):
    @property
    @abc.abstractmethod
    def config(self) -> LLMConfig:
        raise NotImplementedError

    @abc.abstractmethod
    def stream(
        self,
        prompt: LanguageModelInput,
        tools: list[dict] | None = None,
        max_tokens: int | None = None,
    ) -> AsyncGenerator[StreamChunk, None]:
        """Stream one model response.

        The last chunk carries the provider's usage report when the provider
        sends one. Closing the iterator early closes the underlying request.
        """
        raise NotImplementedError
