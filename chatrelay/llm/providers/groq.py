"""
Groq LLM Provider: fast inference over the OpenAI-compatible API at api.groq.com.
Reports exact token usage with every completion.
"""
from typing import Optional

from openai import AsyncOpenAI

from chatrelay.config import settings
from chatrelay.llm.base import SYSTEM_PROMPT, LLMProvider, LLMResponse, with_context
from chatrelay.llm.errors import ErrorKind, ProviderError
from chatrelay.observability.logger import get_logger
from chatrelay.quota.ledger import GROQ, estimate_tokens

log = get_logger("llm.groq")

GROQ_BASE_URL = "https://api.groq.com/openai/v1"
MAX_HISTORY_MESSAGES = 10


class GroqProvider(LLMProvider):
    name = GROQ

    def __init__(self, api_key: str = None, model: str = None):
        self._api_key = api_key or settings.groq_api_key
        self.model = model or settings.groq_model
        self._client = None

    def _get_client(self) -> AsyncOpenAI | None:
        if self._client is None and self._api_key:
            self._client = AsyncOpenAI(
                api_key=self._api_key,
                base_url=GROQ_BASE_URL,
                max_retries=0,  # retries belong to the failover loop
            )
        return self._client

    def is_available(self) -> bool:
        return bool(self._api_key)

    def build_messages(
        self,
        prompt: str,
        context: Optional[str] = None,
        history: Optional[list[dict]] = None,
    ) -> list[dict]:
        messages = [{"role": "system", "content": SYSTEM_PROMPT}]
        for msg in (history or [])[-MAX_HISTORY_MESSAGES:]:
            messages.append({"role": msg["role"], "content": msg["content"]})
        messages.append({"role": "user", "content": with_context(prompt, context)})
        return messages

    async def call(
        self,
        prompt: str,
        context: Optional[str] = None,
        history: Optional[list[dict]] = None,
    ) -> LLMResponse:
        client = self._get_client()
        if not client:
            raise ProviderError(ErrorKind.PERMANENT, "Groq API key not configured", self.name)

        try:
            response = await client.chat.completions.create(
                model=self.model,
                messages=self.build_messages(prompt, context, history),
                temperature=0.7,
                max_tokens=2048,
                stream=False,
            )
        except Exception as e:
            err = self.classify_error(e)
            log.error("groq_error", error=str(e), kind=err.kind.value, model=self.model)
            raise err from e

        content = response.choices[0].message.content if response.choices else None
        if not content:
            raise ProviderError(ErrorKind.TRANSIENT, "Invalid response from Groq API", self.name)

        usage = response.usage
        if usage:
            input_tokens = usage.prompt_tokens or 0
            output_tokens = usage.completion_tokens or 0
            total = usage.total_tokens or input_tokens + output_tokens
        else:
            input_tokens = estimate_tokens(with_context(prompt, context))
            output_tokens = estimate_tokens(content)
            total = input_tokens + output_tokens
        return LLMResponse(
            content=content,
            provider=self.name,
            model=self.model,
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            total_tokens=total,
            usage_reported=usage is not None,
        )
