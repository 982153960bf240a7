"""
Failover orchestration for a single chat turn.

SELECT_PROVIDER -> CALL -> SUCCESS | QUOTA_ERROR | TRANSIENT_ERROR
                          -> [SWITCH -> CALL again, bounded] -> DONE | ALL_EXHAUSTED

Quota failures are never retried on the same provider within a turn. Transient
failures rotate to the next provider and only retry the same one when it is the
last candidate left. Exhaustion degrades to a fixed apology instead of an error.
"""
import asyncio
import time
import uuid
from collections import OrderedDict
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import AsyncIterator, Optional

from pydantic import BaseModel

from chatrelay.conversation.context import ContextAssembler, SummaryGenerator
from chatrelay.conversation.store import ConversationStore, Turn
from chatrelay.core.intent import IntentPolicy, keyword_search_intent
from chatrelay.llm.base import LLMProvider, LLMResponse
from chatrelay.llm.errors import (
    AllProvidersExhaustedError,
    ErrorKind,
    ProviderError,
    TurnFailedError,
)
from chatrelay.observability.logger import get_logger
from chatrelay.quota.ledger import TAVILY_SEARCH, QuotaLedger

log = get_logger("orchestrator")

FALLBACK_PROVIDER = "fallback"
FALLBACK_MESSAGE = (
    "I apologize, but I'm currently experiencing technical difficulties with my AI models. "
    "Please try again in a moment, or contact support if the issue persists."
)
PERMANENT_FAILURE_MESSAGE = "The AI service rejected this request. Please try again later."
PROBE_PROMPT = "Hello, please respond with just 'Working' to test this API."

HISTORY_WINDOW = 10
MAX_TRACKED_SESSIONS = 10_000


class TurnResult(BaseModel):
    text: str
    provider_used: str
    switched: bool = False
    switched_from: Optional[str] = None
    session_id: str
    interrupted: bool = False


@dataclass
class _Outcome:
    text: str
    provider: str
    switched_from: Optional[str] = None


def new_session_id(user_id: str) -> str:
    return f"{user_id}-{int(time.time() * 1000)}-{uuid.uuid4().hex[:9]}"


class FailoverOrchestrator:
    def __init__(
        self,
        ledger: QuotaLedger,
        providers: dict[str, LLMProvider],
        store: ConversationStore,
        context: ContextAssembler,
        summaries: SummaryGenerator = None,
        intent_policy: IntentPolicy = keyword_search_intent,
        search_provider: str = TAVILY_SEARCH,
        max_attempts: int = 3,
        timeout_seconds: float = 30.0,
    ):
        unknown = [name for name in providers if name not in ledger.policies]
        if unknown:
            raise ValueError(f"Providers without quota policy: {unknown}")
        self.ledger = ledger
        self.providers = providers
        self.store = store
        self.context = context
        self.summaries = summaries
        self.intent_policy = intent_policy
        self.search_provider = search_provider
        self.max_attempts = max_attempts
        self.timeout_seconds = timeout_seconds
        # (user_id, session_id) -> provider that produced the last reply in this process
        self._last_provider: OrderedDict[tuple[str, str], str] = OrderedDict()
        self.test_results: dict[str, dict] = {
            name: {"working": None, "lastTested": None, "error": None} for name in ledger.order
        }

    # ── Public entry points ────────────────────────────────────────────

    async def run_turn(self, user_id: str, session_id: Optional[str], prompt: str) -> TurnResult:
        prompt = _clean_prompt(prompt)
        session_id = session_id or new_session_id(user_id)

        outcome = await self._resolve(user_id, session_id, prompt)
        await self._persist(user_id, session_id, prompt, outcome, outcome.text)
        return _result(outcome, session_id)

    async def stream_turn(self, user_id: str, session_id: Optional[str], prompt: str,
                          chunk_size: int = 3, delay_seconds: float = 0.05) -> "TurnStream":
        """Resolve a provider reply, then hand back a stream that emits it in chunks.

        The assistant turn is persisted when the stream finishes or is cancelled.
        """
        prompt = _clean_prompt(prompt)
        session_id = session_id or new_session_id(user_id)
        outcome = await self._resolve(user_id, session_id, prompt)
        return TurnStream(self, user_id, session_id, prompt, outcome, chunk_size, delay_seconds)

    def switch_model(self, target: str):
        if target not in self.providers:
            raise ValueError(f"Invalid model specified: {target}")
        if not self._configured(target):
            raise ValueError(f"{target} has no API key configured")
        self.ledger.tick(target)
        if self.ledger.is_flagged(target):
            raise ValueError(f"{target} is currently unavailable due to quota limits")
        self.ledger.set_current(target)

    async def test_provider(self, name: str) -> dict:
        provider = self.providers.get(name)
        if provider is None:
            raise ValueError(f"Invalid model specified: {name}")
        try:
            response = await asyncio.wait_for(provider.call(PROBE_PROMPT), timeout=self.timeout_seconds)
        except Exception as e:
            err = provider.classify_error(e)
            if err.kind == ErrorKind.QUOTA:
                self.ledger.mark_exceeded(name)
            self._note_result(name, False, err.message)
            return {"status": "failed", "kind": err.kind.value, "error": err.message}
        self.ledger.record_usage(name, response.total_tokens)
        self._note_result(name, True)
        return {"status": "working", "response": response.content[:100]}

    async def test_all(self) -> dict:
        results = {}
        for name in self.ledger.order:
            if name in self.providers:
                results[name] = await self.test_provider(name)
        return results

    def status(self) -> dict:
        snapshot = self.ledger.snapshot()
        # Unconfigured providers are never switched to
        snapshot["predictedNextSwitch"] = self.ledger.predict_next_switch(
            snapshot["currentProvider"], eligible=self._configured
        )
        snapshot["testResults"] = {k: dict(v) for k, v in self.test_results.items()}
        return snapshot

    # ── Provider resolution ────────────────────────────────────────────

    async def _resolve(self, user_id: str, session_id: str, prompt: str) -> _Outcome:
        try:
            return await self._failover(user_id, session_id, prompt)
        except AllProvidersExhaustedError as e:
            log.error("all_providers_exhausted", user_id=user_id, session_id=session_id, reason=str(e))
            return _Outcome(text=FALLBACK_MESSAGE, provider=FALLBACK_PROVIDER)

    async def _failover(self, user_id: str, session_id: str, prompt: str) -> _Outcome:
        self.ledger.refresh()
        key = (user_id, session_id)
        last_used = self._last_provider.get(key)

        provider = self.ledger.current_provider
        if (
            self._configured(self.search_provider)
            and self.intent_policy(prompt)
            and not self.ledger.is_flagged(self.search_provider)
        ):
            provider = self.search_provider
            log.info("search_intent_detected", provider=provider)

        switched_from: Optional[str] = None
        last_error: Optional[ProviderError] = None
        attempts = 0

        while attempts < self.max_attempts:
            usable, preflight_from = self._preflight(provider)
            if preflight_from:
                switched_from = preflight_from
            provider = usable

            if self.ledger.is_near_ceiling(provider):
                nxt = self.ledger.predict_next_switch(provider, eligible=self._configured)
                if nxt:
                    log.warning("provider_switched", from_provider=provider, to_provider=nxt,
                                reason="near_ceiling")
                    switched_from = provider
                    provider = nxt

            client = self.providers[provider]
            context = None
            history = None
            if client.conversational:
                if switched_from or last_used != provider:
                    context = await self.context.assemble(session_id, user_id) or None
                else:
                    recent = await self.store.get_recent_turns(session_id, user_id, HISTORY_WINDOW)
                    history = [{"role": t.role, "content": t.content} for t in recent]

            attempts += 1
            log.info("provider_attempt", provider=provider, attempt=attempts,
                     user_id=user_id, with_context=context is not None)
            try:
                response = await self._call(client, prompt, context, history)
            except ProviderError as err:
                last_error = err
                self._note_result(provider, False, err.message)
                log.warning("provider_failed", provider=provider, kind=err.kind.value,
                            error=err.message, attempt=attempts)

                if err.kind == ErrorKind.PERMANENT:
                    raise TurnFailedError(PERMANENT_FAILURE_MESSAGE, err.kind, provider) from err

                if err.kind == ErrorKind.QUOTA:
                    self.ledger.mark_exceeded(provider)
                    nxt = self.ledger.next_available(provider, eligible=self._configured)
                    if nxt is None:
                        raise AllProvidersExhaustedError("every provider is over quota") from err
                else:
                    nxt = self.ledger.next_available(provider, exclude_current=True,
                                                     eligible=self._configured) or provider

                if nxt != provider:
                    log.warning("provider_switched", from_provider=provider, to_provider=nxt,
                                reason=err.kind.value)
                    switched_from = provider
                provider = nxt
                continue

            self.ledger.record_usage(provider, response.total_tokens)
            self._note_result(provider, True)
            log.info("provider_succeeded", provider=provider, tokens=response.total_tokens,
                     switched_from=switched_from)
            return _Outcome(text=response.content, provider=provider, switched_from=switched_from)

        raise AllProvidersExhaustedError(
            f"attempts exhausted after {last_error.kind.value if last_error else 'no'} error"
        )

    def _preflight(self, provider: str) -> tuple[str, Optional[str]]:
        """Walk the rotation until a configured provider passes the quota check."""
        switched_from = None
        while True:
            if self._configured(provider):
                self.ledger.tick(provider)
                if not self.ledger.is_flagged(provider) and not self.ledger.is_exceeded(provider):
                    return provider, switched_from
                self.ledger.mark_exceeded(provider)
                reason = "exceeded"
            else:
                reason = "not_configured"
            nxt = self.ledger.next_available(provider, eligible=self._configured)
            if nxt is None or nxt == provider:
                raise AllProvidersExhaustedError("no configured provider has quota left")
            log.warning("provider_switched", from_provider=provider, to_provider=nxt, reason=reason)
            switched_from = provider
            provider = nxt

    def _configured(self, provider: str) -> bool:
        client = self.providers.get(provider)
        return client is not None and client.is_available()

    async def _call(self, client: LLMProvider, prompt: str, context: Optional[str],
                    history: Optional[list[dict]]) -> LLMResponse:
        try:
            response = await asyncio.wait_for(
                client.call(prompt, context=context, history=history),
                timeout=self.timeout_seconds,
            )
        except Exception as e:
            raise client.classify_error(e) from e
        if not response.content or not response.content.strip():
            raise ProviderError(ErrorKind.TRANSIENT, "Empty response", client.name)
        return response

    # ── Persistence ────────────────────────────────────────────────────

    async def _persist(self, user_id: str, session_id: str, prompt: str, outcome: _Outcome,
                       reply: str, interrupted: bool = False):
        turns = [Turn(role="user", content=prompt)]
        if reply:
            turns.append(Turn(role="assistant", content=reply, provider_used=outcome.provider,
                              interrupted=interrupted))
        try:
            total = await self.store.append_many(session_id, user_id, turns)
        except Exception as e:
            log.error("conversation_persist_failed", session_id=session_id, error=str(e))
            return

        if outcome.provider == FALLBACK_PROVIDER:
            return
        self.ledger.set_current(outcome.provider)
        self._remember(user_id, session_id, outcome.provider)
        await self._maybe_summarize(user_id, session_id, total)

    async def _maybe_summarize(self, user_id: str, session_id: str, total_turns: int):
        if self.summaries is None:
            return
        try:
            info = await self.store.get_conversation(session_id, user_id)
        except Exception as e:
            log.warning("summary_check_failed", session_id=session_id, error=str(e))
            return
        if info and self.summaries.should_summarize(total_turns, info.summary_turn_count):
            self.summaries.schedule(session_id, user_id)

    def _remember(self, user_id: str, session_id: str, provider: str):
        key = (user_id, session_id)
        self._last_provider[key] = provider
        self._last_provider.move_to_end(key)
        while len(self._last_provider) > MAX_TRACKED_SESSIONS:
            self._last_provider.popitem(last=False)

    def _note_result(self, provider: str, working: bool, error: str = None):
        self.test_results[provider] = {
            "working": working,
            "lastTested": datetime.now(timezone.utc).isoformat(),
            "error": None if working else error,
        }


class TurnStream:
    """Chunked delivery of a resolved reply.

    Cancelling the consumer stops emission; whatever was already emitted is
    stored as the assistant turn, flagged ``interrupted``. Usage recorded for the
    provider call stays recorded.
    """

    def __init__(self, orchestrator: FailoverOrchestrator, user_id: str, session_id: str,
                 prompt: str, outcome: _Outcome, chunk_size: int, delay_seconds: float):
        self._orchestrator = orchestrator
        self._user_id = user_id
        self._prompt = prompt
        self._outcome = outcome
        self._chunk_size = max(1, chunk_size)
        self._delay = delay_seconds
        self.result = _result(outcome, session_id)

    async def chunks(self) -> AsyncIterator[str]:
        text = self._outcome.text
        emitted = 0
        completed = False
        try:
            for start in range(0, len(text), self._chunk_size):
                chunk = text[start:start + self._chunk_size]
                emitted = start + len(chunk)
                yield chunk
                if self._delay:
                    await asyncio.sleep(self._delay)
            completed = True
        finally:
            self.result.interrupted = not completed
            if not completed:
                log.info("stream_interrupted", session_id=self.result.session_id,
                         emitted=emitted, total=len(text))
            await asyncio.shield(self._orchestrator._persist(
                self._user_id, self.result.session_id, self._prompt, self._outcome,
                text[:emitted], interrupted=not completed,
            ))


def _clean_prompt(prompt: str) -> str:
    if not isinstance(prompt, str) or not prompt.strip():
        raise ValueError("Valid prompt is required")
    return prompt.strip()


def _result(outcome: _Outcome, session_id: str) -> TurnResult:
    return TurnResult(
        text=outcome.text,
        provider_used=outcome.provider,
        switched=outcome.switched_from is not None,
        switched_from=outcome.switched_from,
        session_id=session_id,
    )
