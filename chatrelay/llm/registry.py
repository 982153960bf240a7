from chatrelay.llm.base import LLMProvider
from chatrelay.llm.providers.gemini import GeminiProvider
from chatrelay.llm.providers.groq import GroqProvider
from chatrelay.llm.providers.tavily import TavilySearchProvider
from chatrelay.observability.logger import get_logger

log = get_logger("llm_registry")


def build_providers() -> dict[str, LLMProvider]:
    """Instantiate every provider adapter, keyed by provider id.

    Providers without credentials are still registered: calling them raises a
    permanent error, which keeps the rotation order fixed and visible in status.
    """
    providers: dict[str, LLMProvider] = {}
    for p in (GroqProvider(), GeminiProvider(), TavilySearchProvider()):
        providers[p.name] = p
        if p.is_available():
            log.info("provider_available", provider=p.name)
        else:
            log.warning("provider_unavailable", provider=p.name)
    return providers
