"""Context carry-over between providers.

When a conversation moves to a different provider (or the process restarts),
the new provider has seen none of it. ``ContextAssembler`` renders a bounded
text block from the stored summaries and the most recent turns. ``SummaryGenerator``
keeps the rolling summary fresh in the background.
"""
import asyncio
from typing import Optional

from chatrelay.conversation.store import ConversationStore, Turn
from chatrelay.llm.base import LLMProvider
from chatrelay.llm.errors import ErrorKind
from chatrelay.observability.logger import get_logger
from chatrelay.quota.ledger import QuotaLedger

log = get_logger("context")

DEFAULT_CHAR_BUDGET = 4000
DEFAULT_RECENT_TURNS = 6

SUMMARY_MIN_TURNS = 4
SUMMARY_MAX_LENGTH = 500
SUMMARY_TOPIC_COUNT = 3
SUMMARY_TOPIC_LENGTH = 50

SUMMARY_PROMPT = (
    "Please provide a concise summary of this conversation in 2-3 sentences. "
    "Focus on the main topics discussed and any important context that should be maintained:"
    "\n\n{conversation}\n\nSummary:"
)


def render_turn(turn: Turn) -> str:
    speaker = "User" if turn.role == "user" else "Assistant"
    return f"{speaker}: {turn.content}"


class ContextAssembler:
    def __init__(
        self,
        store: ConversationStore,
        char_budget: int = DEFAULT_CHAR_BUDGET,
        recent_turns: int = DEFAULT_RECENT_TURNS,
    ):
        self.store = store
        self.char_budget = char_budget
        self.recent_turns = recent_turns

    async def assemble(self, session_id: str, user_id: str) -> str:
        inherited = await self.store.get_inherited_summary(session_id, user_id)
        summary = await self.store.get_summary(session_id, user_id)
        turns = await self.store.get_recent_turns(session_id, user_id, self.recent_turns)

        context = self.fit(inherited, summary, [render_turn(t) for t in turns])
        if context:
            log.info("context_assembled", session_id=session_id, chars=len(context),
                     turns=len(turns), has_summary=bool(summary), has_inherited=bool(inherited))
        return context

    def fit(self, inherited: str, summary: str, lines: list[str]) -> str:
        """Render within ``char_budget``, giving up the oldest material first."""
        budget = self.char_budget
        lines = list(lines)

        while len(lines) > 1 and len(self.render(inherited, summary, lines)) > budget:
            lines.pop(0)

        over = len(self.render(inherited, summary, lines)) - budget
        if over > 0 and inherited:
            inherited = inherited[:max(0, len(inherited) - over)]
            over = len(self.render(inherited, summary, lines)) - budget
        if over > 0 and summary:
            summary = summary[:max(0, len(summary) - over)]
            over = len(self.render(inherited, summary, lines)) - budget
        if over > 0 and lines:
            # Keep the end of the newest turn
            clipped = lines[-1][over:]
            lines = [clipped] if clipped else []

        text = self.render(inherited, summary, lines)
        if len(text) > budget:
            text = text[len(text) - budget:] if budget > 0 else ""
        return text

    @staticmethod
    def render(inherited: str, summary: str, lines: list[str]) -> str:
        context = ""
        if inherited:
            context += f"Previous conversation context: {inherited}\n\n"
        if summary:
            context += f"Current conversation summary: {summary}\n\n"
        if lines:
            context += "Recent conversation:\n" + "\n".join(lines) + "\n"
        return context


class SummaryGenerator:
    """Best-effort rolling summaries. Never raises into the caller's turn."""

    def __init__(
        self,
        ledger: QuotaLedger,
        providers: dict[str, LLMProvider],
        store: ConversationStore,
        interval: int = 10,
        window: int = 10,
        timeout_seconds: float = 30.0,
    ):
        self.ledger = ledger
        self.providers = providers
        self.store = store
        self.interval = interval
        self.window = window
        self.timeout_seconds = timeout_seconds
        # (session_id, user_id) -> in-flight refresh
        self._tasks: dict[tuple[str, str], asyncio.Task] = {}

    def should_summarize(self, total_turns: int, summary_turn_count: int) -> bool:
        return total_turns > 0 and total_turns - summary_turn_count >= self.interval

    def _pick_provider(self) -> Optional[LLMProvider]:
        candidates = [self.ledger.current_provider] + [p for p in self.ledger.order
                                                       if p != self.ledger.current_provider]
        for name in candidates:
            provider = self.providers.get(name)
            if (provider and provider.conversational and provider.is_available()
                    and self.ledger.is_usable(name)):
                return provider
        return None

    async def generate(self, turns: list[Turn]) -> str:
        if len(turns) < SUMMARY_MIN_TURNS:
            return ""
        recent = turns[-self.window:]
        prompt = SUMMARY_PROMPT.format(conversation="\n".join(render_turn(t) for t in recent))

        provider = self._pick_provider()
        if provider is None:
            log.warning("summary_no_provider")
            return synthetic_summary(recent)

        try:
            response = await asyncio.wait_for(provider.call(prompt), timeout=self.timeout_seconds)
        except Exception as e:
            err = provider.classify_error(e)
            if err.kind == ErrorKind.QUOTA:
                self.ledger.mark_exceeded(provider.name)
            log.warning("summary_generation_failed", provider=provider.name,
                        kind=err.kind.value, error=err.message)
            return synthetic_summary(recent)

        self.ledger.record_usage(provider.name, response.total_tokens)
        summary = response.content.strip()
        if not summary:
            return synthetic_summary(recent)
        log.info("summary_generated", provider=provider.name, chars=len(summary))
        return summary[:SUMMARY_MAX_LENGTH]

    async def refresh(self, session_id: str, user_id: str):
        try:
            info = await self.store.get_conversation(session_id, user_id)
            if info is None:
                return
            turns = await self.store.get_recent_turns(session_id, user_id, self.window)
            summary = await self.generate(turns)
            if summary:
                await self.store.set_summary(session_id, user_id, summary, turn_count=info.total_turns)
        except Exception as e:
            log.warning("summary_refresh_failed", session_id=session_id, error=str(e))

    def schedule(self, session_id: str, user_id: str) -> asyncio.Task:
        """Start a background refresh unless one is already running for this conversation."""
        key = (session_id, user_id)
        running = self._tasks.get(key)
        if running is not None and not running.done():
            return running
        task = asyncio.create_task(self.refresh(session_id, user_id))
        self._tasks[key] = task
        task.add_done_callback(lambda t: self._forget(key, t))
        return task

    def _forget(self, key: tuple[str, str], task: asyncio.Task):
        if self._tasks.get(key) is task:
            del self._tasks[key]

    async def drain(self):
        """Wait for scheduled refreshes to finish."""
        if self._tasks:
            await asyncio.gather(*list(self._tasks.values()), return_exceptions=True)


def synthetic_summary(turns: list[Turn]) -> str:
    topics = [
        t.content[:SUMMARY_TOPIC_LENGTH]
        for t in turns if t.role == "user"
    ][-SUMMARY_TOPIC_COUNT:]
    return f"Recent discussion topics: {', '.join(topics)}"[:SUMMARY_MAX_LENGTH]
