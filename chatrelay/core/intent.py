from typing import Callable

# Over- and under-triggers on purpose: plain substring match, no tokenizing.
SEARCH_KEYWORDS = (
    "search",
    "latest",
    "current",
    "news",
    "recent",
    "what happened",
    "find",
    "weather",
    "price",
    "stock",
)

IntentPolicy = Callable[[str], bool]


def keyword_search_intent(prompt: str) -> bool:
    """True when the prompt looks like it needs live web results."""
    text = prompt.lower()
    return any(keyword in text for keyword in SEARCH_KEYWORDS)
