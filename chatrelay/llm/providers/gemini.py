"""
Gemini LLM Provider: Google Generative Language REST API (generateContent).
The endpoint is single-shot, so recent turns are folded into a text prefix.
Token usage is estimated from character length (len / 4).
"""
from typing import Optional

import httpx

from chatrelay.config import settings
from chatrelay.llm.base import LLMProvider, LLMResponse, with_context
from chatrelay.llm.errors import ErrorKind, ProviderError
from chatrelay.observability.logger import get_logger
from chatrelay.quota.ledger import GEMINI, estimate_tokens

log = get_logger("llm.gemini")

GEMINI_BASE_URL = "https://generativelanguage.googleapis.com/v1beta"
MAX_HISTORY_MESSAGES = 8

GENERATION_CONFIG = {
    "temperature": 0.7,
    "topP": 0.8,
    "topK": 40,
    "maxOutputTokens": 2048,
}


class GeminiProvider(LLMProvider):
    name = GEMINI

    def __init__(self, api_key: str = None, model: str = None, transport: httpx.AsyncBaseTransport = None):
        self._api_key = api_key or settings.gemini_api_key
        self.model = model or settings.gemini_model
        self._transport = transport

    def is_available(self) -> bool:
        return bool(self._api_key)

    def build_prompt(
        self,
        prompt: str,
        context: Optional[str] = None,
        history: Optional[list[dict]] = None,
    ) -> str:
        prefix = ""
        recent = (history or [])[-MAX_HISTORY_MESSAGES:]
        if recent:
            prefix = "Previous conversation context:\n"
            for msg in recent:
                speaker = "Human" if msg["role"] == "user" else "Assistant"
                prefix += f"{speaker}: {msg['content']}\n"
            prefix += "\nPlease respond to the following:\n"
        return prefix + f"Human: {with_context(prompt, context)}"

    async def call(
        self,
        prompt: str,
        context: Optional[str] = None,
        history: Optional[list[dict]] = None,
    ) -> LLMResponse:
        if not self._api_key:
            raise ProviderError(ErrorKind.PERMANENT, "Gemini API key not configured", self.name)

        full_prompt = self.build_prompt(prompt, context, history)
        url = f"{GEMINI_BASE_URL}/models/{self.model}:generateContent"

        async with httpx.AsyncClient(timeout=None, transport=self._transport) as client:
            try:
                response = await client.post(
                    url,
                    params={"key": self._api_key},
                    json={
                        "contents": [{"role": "user", "parts": [{"text": full_prompt}]}],
                        "generationConfig": GENERATION_CONFIG,
                    },
                )
                if response.status_code >= 400:
                    raise httpx.HTTPStatusError(
                        f"Gemini API Error: {response.status_code} - {response.text}",
                        request=response.request,
                        response=response,
                    )
                data = response.json()
            except Exception as e:
                err = self.classify_error(e)
                log.error("gemini_error", error=str(e), kind=err.kind.value, model=self.model)
                raise err from e

        text = _extract_text(data)
        if not text:
            raise ProviderError(ErrorKind.TRANSIENT, "Empty response from Gemini API", self.name)

        input_tokens = estimate_tokens(full_prompt)
        output_tokens = estimate_tokens(text)
        return LLMResponse(
            content=text,
            provider=self.name,
            model=self.model,
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            total_tokens=input_tokens + output_tokens,
            usage_reported=False,
        )


def _extract_text(data: dict) -> str:
    candidates = data.get("candidates") or []
    if not candidates:
        return ""
    parts = (candidates[0].get("content") or {}).get("parts") or []
    return "".join(part.get("text", "") for part in parts).strip()
