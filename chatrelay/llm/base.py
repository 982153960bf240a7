from abc import ABC, abstractmethod
from typing import Optional

from pydantic import BaseModel

from chatrelay.llm.errors import ProviderError, classify_exception

SYSTEM_PROMPT = (
    "You are a helpful AI assistant. Provide clear, accurate, and helpful responses."
)


class LLMResponse(BaseModel):
    content: str
    provider: str
    model: str
    input_tokens: int = 0
    output_tokens: int = 0
    total_tokens: int = 0
    usage_reported: bool = False  # False = token counts are a len/4 estimate


class LLMProvider(ABC):
    """One external AI backend. ``call`` performs exactly one request."""

    name: str = "base"
    # Search-style providers answer standalone queries and never receive context.
    conversational: bool = True

    @abstractmethod
    async def call(
        self,
        prompt: str,
        context: Optional[str] = None,
        history: Optional[list[dict]] = None,
    ) -> LLMResponse:
        pass

    @abstractmethod
    def is_available(self) -> bool:
        pass

    def classify_error(self, exc: BaseException) -> ProviderError:
        return classify_exception(exc, provider=self.name)


def with_context(prompt: str, context: Optional[str]) -> str:
    """Prefix carried-over conversation context to the user's message."""
    if not context:
        return prompt
    return f"{context}\n\nCurrent user message: {prompt}"
