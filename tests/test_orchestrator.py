import asyncio

import httpx
import pytest
import pytest_asyncio

from chatrelay.config import settings
from chatrelay.conversation.context import ContextAssembler
from chatrelay.core.orchestrator import (
    FALLBACK_MESSAGE,
    FALLBACK_PROVIDER,
    FailoverOrchestrator,
    new_session_id,
)
from chatrelay.llm.errors import ErrorKind, ProviderError, TurnFailedError
from chatrelay.llm.providers.groq import GroqProvider
from chatrelay.quota.ledger import GEMINI, GROQ, TAVILY_SEARCH, QuotaLedger
from chatrelay.quota.models import QuotaPolicy

POLICIES = {
    GROQ: QuotaPolicy(max_tokens=1000, max_requests=100),
    GEMINI: QuotaPolicy(max_requests=100),
    TAVILY_SEARCH: QuotaPolicy(max_requests=100),
}

USER = "user-1"
SESSION = "user-1-session"


@pytest.fixture
def ledger(clock):
    return QuotaLedger(policies=POLICIES, clock=clock)


@pytest.fixture
def providers(provider_factory):
    return {
        GROQ: provider_factory(GROQ),
        GEMINI: provider_factory(GEMINI),
        TAVILY_SEARCH: provider_factory(TAVILY_SEARCH, reply="Based on my search: sunny", conversational=False),
    }


@pytest_asyncio.fixture
async def orchestrator(ledger, providers, store):
    return FailoverOrchestrator(ledger, providers, store, ContextAssembler(store))


def _quota_error(provider):
    return ProviderError(ErrorKind.QUOTA, "Rate limit exceeded", provider, 429)


class TestSuccessPath:
    @pytest.mark.asyncio
    async def test_sticky_provider_answers(self, orchestrator, ledger, providers, store):
        result = await orchestrator.run_turn(USER, SESSION, "  Explain recursion  ")

        assert result.text == "reply from groq"
        assert result.provider_used == GROQ
        assert result.switched is False
        assert result.session_id == SESSION
        providers[GROQ].call.assert_awaited_once()

        turns = await store.get_turns(SESSION, USER)
        assert [(t.role, t.content) for t in turns] == [
            ("user", "Explain recursion"),
            ("assistant", "reply from groq"),
        ]
        assert turns[1].provider_used == GROQ
        assert ledger.get_usage(GROQ).tokens_used == 100
        assert ledger.get_usage(GROQ).requests_made == 1

    @pytest.mark.asyncio
    async def test_missing_session_id_is_minted(self, orchestrator):
        result = await orchestrator.run_turn(USER, None, "Hi")
        assert result.session_id.startswith(f"{USER}-")

    @pytest.mark.asyncio
    async def test_blank_prompt_rejected(self, orchestrator, providers):
        with pytest.raises(ValueError):
            await orchestrator.run_turn(USER, SESSION, "   ")
        providers[GROQ].call.assert_not_awaited()

    def test_session_ids_are_unique(self):
        assert new_session_id(USER) != new_session_id(USER)

    @pytest.mark.asyncio
    async def test_provider_without_policy_rejected(self, ledger, providers, store, provider_factory):
        providers["openai"] = provider_factory("openai")
        with pytest.raises(ValueError):
            FailoverOrchestrator(ledger, providers, store, ContextAssembler(store))


class TestQuotaFailover:
    @pytest.mark.asyncio
    async def test_quota_error_switches_provider(self, orchestrator, ledger, providers):
        providers[GROQ].call.side_effect = _quota_error(GROQ)

        result = await orchestrator.run_turn(USER, SESSION, "Explain recursion")

        assert result.provider_used == GEMINI
        assert result.switched is True
        assert result.switched_from == GROQ
        assert ledger.is_flagged(GROQ)
        assert ledger.current_provider == GEMINI
        providers[GROQ].call.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_quota_text_from_plain_exception(self, orchestrator, ledger, providers):
        providers[GROQ].call.side_effect = RuntimeError("You exceeded your current quota")

        result = await orchestrator.run_turn(USER, SESSION, "Explain recursion")

        assert result.provider_used == GEMINI
        assert ledger.is_flagged(GROQ)

    @pytest.mark.asyncio
    async def test_exceeded_provider_never_called(self, orchestrator, ledger, providers):
        ledger.mark_exceeded(GROQ)

        result = await orchestrator.run_turn(USER, SESSION, "Explain recursion")

        assert result.provider_used == GEMINI
        assert result.switched_from == GROQ
        providers[GROQ].call.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_all_exceeded_returns_fallback(self, orchestrator, ledger, providers, store):
        for name in (GROQ, GEMINI, TAVILY_SEARCH):
            ledger.mark_exceeded(name)

        result = await orchestrator.run_turn(USER, SESSION, "Explain recursion")

        assert result.text == FALLBACK_MESSAGE
        assert result.provider_used == FALLBACK_PROVIDER
        for provider in providers.values():
            provider.call.assert_not_awaited()
        turns = await store.get_turns(SESSION, USER)
        assert [t.role for t in turns] == ["user", "assistant"]
        assert turns[1].content == FALLBACK_MESSAGE
        assert ledger.current_provider == GROQ

    @pytest.mark.asyncio
    async def test_quota_on_every_provider_returns_fallback(self, orchestrator, ledger, providers):
        for name, provider in providers.items():
            provider.call.side_effect = _quota_error(name)

        result = await orchestrator.run_turn(USER, SESSION, "Explain recursion")

        assert result.provider_used == FALLBACK_PROVIDER
        assert all(ledger.is_flagged(name) for name in providers)
        for provider in providers.values():
            assert provider.call.await_count == 1

    @pytest.mark.asyncio
    async def test_provider_usable_again_after_reset(self, orchestrator, ledger, providers, clock):
        ledger.mark_exceeded(GROQ)
        ledger.mark_exceeded(GEMINI)
        ledger.mark_exceeded(TAVILY_SEARCH)
        clock.advance(hours=24, seconds=1)

        result = await orchestrator.run_turn(USER, SESSION, "Explain recursion")

        assert result.provider_used == GROQ


class TestTransientFailover:
    @pytest.mark.asyncio
    async def test_transient_rotates_without_flagging(self, orchestrator, ledger, providers):
        providers[GROQ].call.side_effect = httpx.ConnectError("connection refused")

        result = await orchestrator.run_turn(USER, SESSION, "Explain recursion")

        assert result.provider_used == GEMINI
        assert result.switched_from == GROQ
        assert not ledger.is_flagged(GROQ)

    @pytest.mark.asyncio
    async def test_transient_retries_last_candidate(self, orchestrator, ledger, providers, response_factory):
        ledger.mark_exceeded(GEMINI)
        ledger.mark_exceeded(TAVILY_SEARCH)
        providers[GROQ].call.side_effect = [
            httpx.ReadError("reset"),
            response_factory("second try", GROQ),
        ]

        result = await orchestrator.run_turn(USER, SESSION, "Explain recursion")

        assert result.text == "second try"
        assert result.provider_used == GROQ
        assert result.switched is False
        assert providers[GROQ].call.await_count == 2

    @pytest.mark.asyncio
    async def test_attempts_are_bounded(self, orchestrator, providers, store):
        for provider in providers.values():
            provider.call.side_effect = httpx.ConnectError("down")

        result = await orchestrator.run_turn(USER, SESSION, "Explain recursion")

        assert result.provider_used == FALLBACK_PROVIDER
        assert sum(p.call.await_count for p in providers.values()) == 3
        turns = await store.get_turns(SESSION, USER)
        assert turns[-1].content == FALLBACK_MESSAGE

    @pytest.mark.asyncio
    async def test_empty_reply_is_transient(self, orchestrator, providers, response_factory):
        providers[GROQ].call.return_value = response_factory("   ", GROQ)

        result = await orchestrator.run_turn(USER, SESSION, "Explain recursion")

        assert result.provider_used == GEMINI

    @pytest.mark.asyncio
    async def test_timeout_is_transient(self, ledger, providers, store):
        async def slow(*args, **kwargs):
            await asyncio.sleep(1)

        providers[GROQ].call.side_effect = slow
        orchestrator = FailoverOrchestrator(ledger, providers, store, ContextAssembler(store),
                                            timeout_seconds=0.05)

        result = await orchestrator.run_turn(USER, SESSION, "Explain recursion")

        assert result.provider_used == GEMINI
        assert not ledger.is_flagged(GROQ)


class TestPermanentErrors:
    @pytest.mark.asyncio
    async def test_permanent_error_fails_turn(self, orchestrator, ledger, providers, store):
        providers[GROQ].call.side_effect = ProviderError(ErrorKind.PERMANENT, "Invalid API Key", GROQ, 401)

        with pytest.raises(TurnFailedError) as exc_info:
            await orchestrator.run_turn(USER, SESSION, "Explain recursion")

        assert exc_info.value.kind == ErrorKind.PERMANENT
        assert exc_info.value.provider == GROQ
        assert "Invalid API Key" not in str(exc_info.value)
        assert not ledger.is_flagged(GROQ)
        providers[GEMINI].call.assert_not_awaited()
        assert await store.get_conversation(SESSION, USER) is None


class TestSearchIntent:
    @pytest.mark.asyncio
    async def test_weather_goes_to_search_without_context(self, orchestrator, ledger, providers):
        await orchestrator.run_turn(USER, SESSION, "Explain recursion")

        result = await orchestrator.run_turn(USER, SESSION, "What's the weather in Paris?")

        assert result.provider_used == TAVILY_SEARCH
        assert result.text == "Based on my search: sunny"
        providers[TAVILY_SEARCH].call.assert_awaited_once_with(
            "What's the weather in Paris?", context=None, history=None
        )
        assert ledger.current_provider == TAVILY_SEARCH

    @pytest.mark.asyncio
    async def test_search_skipped_when_exceeded(self, orchestrator, ledger, providers):
        ledger.mark_exceeded(TAVILY_SEARCH)

        result = await orchestrator.run_turn(USER, SESSION, "latest news on rust")

        assert result.provider_used == GROQ
        providers[TAVILY_SEARCH].call.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_custom_intent_policy(self, ledger, providers, store):
        orchestrator = FailoverOrchestrator(
            ledger, providers, store, ContextAssembler(store),
            intent_policy=lambda prompt: False,
        )

        result = await orchestrator.run_turn(USER, SESSION, "What's the weather in Paris?")

        assert result.provider_used == GROQ


class TestProactiveSwitch:
    @pytest.mark.asyncio
    async def test_near_ceiling_switches_before_calling(self, orchestrator, ledger, providers):
        ledger.record_usage(GROQ, 910)

        result = await orchestrator.run_turn(USER, SESSION, "Explain recursion")

        assert result.provider_used == GEMINI
        assert result.switched_from == GROQ
        providers[GROQ].call.assert_not_awaited()
        usage = ledger.get_usage(GROQ)
        assert usage.tokens_used == 910
        assert usage.requests_made == 1
        assert not ledger.is_flagged(GROQ)

    @pytest.mark.asyncio
    async def test_near_ceiling_stays_when_nothing_else(self, orchestrator, ledger, providers):
        ledger.record_usage(GROQ, 910)
        ledger.mark_exceeded(GEMINI)
        ledger.mark_exceeded(TAVILY_SEARCH)

        result = await orchestrator.run_turn(USER, SESSION, "Explain recursion")

        assert result.provider_used == GROQ

    @pytest.mark.asyncio
    async def test_near_request_ceiling_switches_to_first_in_order(self, orchestrator, ledger, providers):
        ledger.set_current(GEMINI)
        ledger.record_usage(GEMINI, 0, requests=91)
        predicted = orchestrator.status()["predictedNextSwitch"]

        result = await orchestrator.run_turn(USER, SESSION, "Explain recursion")

        assert result.provider_used == GROQ
        assert result.provider_used == predicted
        assert result.switched_from == GEMINI
        providers[GEMINI].call.assert_not_awaited()
        providers[TAVILY_SEARCH].call.assert_not_awaited()


class TestUnconfiguredProviders:
    @pytest.mark.asyncio
    async def test_keyless_sticky_provider_is_skipped(self, ledger, providers, store, monkeypatch):
        monkeypatch.setattr(settings, "groq_api_key", "")
        providers[GROQ] = GroqProvider(api_key="")
        orchestrator = FailoverOrchestrator(ledger, providers, store, ContextAssembler(store))

        first = await orchestrator.run_turn(USER, SESSION, "Explain recursion")
        second = await orchestrator.run_turn(USER, SESSION, "And iteration?")

        assert first.provider_used == GEMINI
        assert first.switched_from == GROQ
        assert second.provider_used == GEMINI
        assert second.switched is False
        assert providers[GEMINI].call.await_count == 2
        assert ledger.current_provider == GEMINI
        assert not ledger.is_flagged(GROQ)

    @pytest.mark.asyncio
    async def test_rotation_skips_unconfigured(self, orchestrator, providers):
        providers[GEMINI].is_available.return_value = False
        providers[GROQ].call.side_effect = _quota_error(GROQ)

        result = await orchestrator.run_turn(USER, SESSION, "Explain recursion")

        assert result.provider_used == TAVILY_SEARCH
        providers[GEMINI].call.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_nothing_configured_returns_fallback(self, orchestrator, providers):
        for provider in providers.values():
            provider.is_available.return_value = False

        result = await orchestrator.run_turn(USER, SESSION, "Explain recursion")

        assert result.provider_used == FALLBACK_PROVIDER
        for provider in providers.values():
            provider.call.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_prediction_and_manual_switch_ignore_unconfigured(self, orchestrator, providers):
        providers[GEMINI].is_available.return_value = False

        assert orchestrator.status()["predictedNextSwitch"] == TAVILY_SEARCH
        with pytest.raises(ValueError):
            orchestrator.switch_model(GEMINI)


class TestContextCarryOver:
    @pytest.mark.asyncio
    async def test_switch_sends_context_to_new_provider(self, orchestrator, ledger, providers):
        await orchestrator.run_turn(USER, SESSION, "My name is Ada")
        ledger.mark_exceeded(GROQ)

        result = await orchestrator.run_turn(USER, SESSION, "What is my name?")

        assert result.provider_used == GEMINI
        context = providers[GEMINI].call.call_args.kwargs["context"]
        assert "User: My name is Ada" in context
        assert "Assistant: reply from groq" in context
        assert providers[GEMINI].call.call_args.kwargs["history"] is None

    @pytest.mark.asyncio
    async def test_same_provider_gets_history(self, orchestrator, providers):
        await orchestrator.run_turn(USER, SESSION, "My name is Ada")
        await orchestrator.run_turn(USER, SESSION, "What is my name?")

        kwargs = providers[GROQ].call.call_args.kwargs
        assert kwargs["context"] is None
        assert kwargs["history"] == [
            {"role": "user", "content": "My name is Ada"},
            {"role": "assistant", "content": "reply from groq"},
        ]

    @pytest.mark.asyncio
    async def test_first_turn_has_no_context(self, orchestrator, providers):
        await orchestrator.run_turn(USER, SESSION, "Hello")
        assert providers[GROQ].call.call_args.kwargs["context"] is None

    @pytest.mark.asyncio
    async def test_unseen_session_gets_stored_context(self, ledger, providers, store, orchestrator):
        await orchestrator.run_turn(USER, SESSION, "My name is Ada")
        # A new process has no memory of which provider served this session
        restarted = FailoverOrchestrator(ledger, providers, store, ContextAssembler(store))

        await restarted.run_turn(USER, SESSION, "What is my name?")

        context = providers[GROQ].call.call_args.kwargs["context"]
        assert "My name is Ada" in context


class TestConcurrency:
    @pytest.mark.asyncio
    async def test_concurrent_turns_add_up(self, ledger, providers, memory_store, response_factory):
        ledger.record_usage(GROQ, 0, requests=91)
        ledger.mark_exceeded(GEMINI)
        ledger.mark_exceeded(TAVILY_SEARCH)

        async def interleaving_call(*args, **kwargs):
            await asyncio.sleep(0)
            return response_factory("reply from groq", GROQ)

        providers[GROQ].call.side_effect = interleaving_call
        orchestrator = FailoverOrchestrator(ledger, providers, memory_store, ContextAssembler(memory_store))

        results = await asyncio.gather(
            orchestrator.run_turn(USER, "s-1", "Explain recursion"),
            orchestrator.run_turn("user-2", "s-2", "Explain iteration"),
        )

        assert {r.provider_used for r in results} == {GROQ}
        usage = ledger.get_usage(GROQ)
        assert usage.requests_made == 93
        assert usage.tokens_used == 200
        assert len(await memory_store.get_turns("s-1", USER)) == 2
        assert len(await memory_store.get_turns("s-2", "user-2")) == 2


class TestStreaming:
    @pytest.mark.asyncio
    async def test_stream_emits_whole_reply(self, orchestrator, store):
        turn = await orchestrator.stream_turn(USER, SESSION, "Explain recursion",
                                              chunk_size=4, delay_seconds=0)

        chunks = [chunk async for chunk in turn.chunks()]

        assert "".join(chunks) == "reply from groq"
        assert turn.result.interrupted is False
        turns = await store.get_turns(SESSION, USER)
        assert turns[-1].content == "reply from groq"
        assert turns[-1].interrupted is False

    @pytest.mark.asyncio
    async def test_cancelled_stream_keeps_partial_reply(self, orchestrator, ledger, store):
        turn = await orchestrator.stream_turn(USER, SESSION, "Explain recursion",
                                              chunk_size=5, delay_seconds=0)
        stream = turn.chunks()

        first = await stream.__anext__()
        await stream.aclose()

        assert first == "reply"
        assert turn.result.interrupted is True
        turns = await store.get_turns(SESSION, USER)
        assert [(t.role, t.content) for t in turns] == [
            ("user", "Explain recursion"),
            ("assistant", "reply"),
        ]
        assert turns[-1].interrupted is True
        assert ledger.get_usage(GROQ).requests_made == 1


class TestControls:
    @pytest.mark.asyncio
    async def test_switch_model(self, orchestrator, ledger):
        orchestrator.switch_model(GEMINI)
        assert ledger.current_provider == GEMINI

    @pytest.mark.asyncio
    async def test_switch_to_unknown_model(self, orchestrator):
        with pytest.raises(ValueError):
            orchestrator.switch_model("gpt-4")

    @pytest.mark.asyncio
    async def test_switch_to_exceeded_model(self, orchestrator, ledger):
        ledger.mark_exceeded(GEMINI)
        with pytest.raises(ValueError):
            orchestrator.switch_model(GEMINI)
        assert ledger.current_provider == GROQ

    @pytest.mark.asyncio
    async def test_probe_records_results(self, orchestrator, ledger, providers):
        providers[GEMINI].call.side_effect = _quota_error(GEMINI)

        results = await orchestrator.test_all()

        assert results[GROQ]["status"] == "working"
        assert results[GEMINI] == {"status": "failed", "kind": "quota", "error": "Rate limit exceeded"}
        assert ledger.is_flagged(GEMINI)
        status = orchestrator.status()
        assert status["testResults"][GROQ]["working"] is True
        assert status["testResults"][GEMINI]["working"] is False

    @pytest.mark.asyncio
    async def test_probe_unknown_model(self, orchestrator):
        with pytest.raises(ValueError):
            await orchestrator.test_provider("gpt-4")
