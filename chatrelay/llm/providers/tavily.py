"""
Tavily web search, exposed as a provider so it can take part in failover.
Each call is a standalone query: no conversation context, no history.
"""
from typing import Optional

from tavily import AsyncTavilyClient
from tavily.errors import InvalidAPIKeyError, MissingAPIKeyError, UsageLimitExceededError

from chatrelay.config import settings
from chatrelay.llm.base import LLMProvider, LLMResponse
from chatrelay.llm.errors import ErrorKind, ProviderError, classify_exception
from chatrelay.observability.logger import get_logger
from chatrelay.quota.ledger import TAVILY_SEARCH

log = get_logger("llm.tavily")

MAX_RESULTS = 5
RESULTS_IN_REPLY = 3


class TavilySearchProvider(LLMProvider):
    name = TAVILY_SEARCH
    conversational = False

    def __init__(self, api_key: str = None):
        self._api_key = api_key or settings.tavily_api_key
        self.model = "tavily-basic"
        self._client = None

    def _get_client(self) -> AsyncTavilyClient | None:
        if self._client is None and self._api_key:
            self._client = AsyncTavilyClient(api_key=self._api_key)
        return self._client

    def is_available(self) -> bool:
        return bool(self._api_key)

    def classify_error(self, exc: BaseException) -> ProviderError:
        if isinstance(exc, UsageLimitExceededError):
            return ProviderError(ErrorKind.QUOTA, str(exc) or "Tavily usage limit exceeded", self.name)
        if isinstance(exc, (InvalidAPIKeyError, MissingAPIKeyError)):
            return ProviderError(ErrorKind.PERMANENT, str(exc) or "Invalid Tavily API key", self.name)
        return classify_exception(exc, provider=self.name)

    async def call(
        self,
        prompt: str,
        context: Optional[str] = None,
        history: Optional[list[dict]] = None,
    ) -> LLMResponse:
        client = self._get_client()
        if not client:
            raise ProviderError(ErrorKind.PERMANENT, "Tavily API key not configured", self.name)

        try:
            data = await client.search(
                query=prompt,
                search_depth="basic",
                include_answer=True,
                include_raw_content=False,
                max_results=MAX_RESULTS,
            )
        except Exception as e:
            err = self.classify_error(e)
            log.error("tavily_error", error=str(e), kind=err.kind.value)
            raise err from e

        content = format_search_reply(data)
        if not content:
            raise ProviderError(ErrorKind.TRANSIENT, "No relevant search results found", self.name)

        return LLMResponse(content=content, provider=self.name, model=self.model)


def format_search_reply(data: dict) -> str:
    answer = (data or {}).get("answer")
    if answer:
        return f"Based on my search: {answer}"

    results = (data or {}).get("results") or []
    if not results:
        return ""
    reply = "Here's what I found:\n\n"
    for index, result in enumerate(results[:RESULTS_IN_REPLY], start=1):
        reply += f"{index}. {result.get('title', 'No title')}\n{result.get('content', '')}\n\n"
    return reply.rstrip() + "\n"
