import os
import tempfile

# Must be set before any chatrelay imports that use settings.data_dir
os.environ["DATA_DIR"] = tempfile.mkdtemp()
os.environ.setdefault("JWT_SECRET", "test-secret-that-is-long-enough-for-hs256")

from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

import chatrelay.models  # noqa: F401
from chatrelay.conversation.store import (
    ConversationInfo,
    ConversationStore,
    SqlConversationStore,
    Turn,
    make_title,
)
from chatrelay.database import Base
from chatrelay.llm.base import LLMResponse
from chatrelay.llm.errors import classify_exception


@pytest_asyncio.fixture
async def session_factory():
    """Fresh in-memory SQLite database for each test."""
    engine = create_async_engine("sqlite+aiosqlite:///:memory:", echo=False)
    factory = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield factory
    await engine.dispose()


@pytest_asyncio.fixture
async def store(session_factory):
    return SqlConversationStore(session_factory)


class MemoryConversationStore(ConversationStore):
    """Dict-backed store for tests that run turns concurrently."""

    def __init__(self):
        self.turns: dict[tuple[str, str], list[Turn]] = {}
        self.infos: dict[tuple[str, str], ConversationInfo] = {}
        self.pending_inherited: dict[tuple[str, str], str] = {}

    async def append_many(self, session_id, user_id, turns):
        key = (session_id, user_id)
        if key not in self.infos:
            self.infos[key] = ConversationInfo(
                session_id=session_id,
                user_id=user_id,
                title=make_title(turns[0].content),
                inherited_summary=self.pending_inherited.pop(key, ""),
            )
        self.turns.setdefault(key, []).extend(turns)
        self.infos[key].total_turns = len(self.turns[key])
        return self.infos[key].total_turns

    async def get_turns(self, session_id, user_id):
        return list(self.turns.get((session_id, user_id), []))

    async def get_conversation(self, session_id, user_id):
        return self.infos.get((session_id, user_id))

    async def set_summary(self, session_id, user_id, text, turn_count=None):
        info = self.infos[(session_id, user_id)]
        info.summary = text
        info.summary_turn_count = info.total_turns if turn_count is None else turn_count

    async def set_inherited_summary(self, session_id, user_id, text):
        info = self.infos.get((session_id, user_id))
        if info is None:
            self.pending_inherited[(session_id, user_id)] = text
        else:
            info.inherited_summary = text

    async def get_inherited_summary(self, session_id, user_id):
        info = self.infos.get((session_id, user_id))
        if info is None:
            return self.pending_inherited.get((session_id, user_id), "")
        return info.inherited_summary

    async def list_conversations(self, user_id, limit=20):
        return [i for (_, uid), i in self.infos.items() if uid == user_id][:limit]


@pytest.fixture
def memory_store():
    return MemoryConversationStore()


class FakeClock:
    """Settable UTC clock for the quota ledger."""

    def __init__(self, start: datetime = None):
        self.now = start or datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)


@pytest.fixture
def clock():
    return FakeClock()


def make_response(content: str, provider: str, tokens: int = 100) -> LLMResponse:
    return LLMResponse(
        content=content,
        provider=provider,
        model=f"{provider}-model",
        input_tokens=tokens // 2,
        output_tokens=tokens - tokens // 2,
        total_tokens=tokens,
        usage_reported=True,
    )


def make_provider(name: str, reply: str = None, conversational: bool = True, tokens: int = 100):
    """Mock provider with a real error classifier. ``call`` answers ``reply`` unless reconfigured."""
    provider = MagicMock()
    provider.name = name
    provider.conversational = conversational
    provider.is_available.return_value = True
    provider.call = AsyncMock(return_value=make_response(reply or f"reply from {name}", name, tokens))
    provider.classify_error.side_effect = lambda exc: classify_exception(exc, provider=name)
    return provider


@pytest.fixture
def provider_factory():
    return make_provider


@pytest.fixture
def response_factory():
    return make_response


@pytest.fixture
def data_dir():
    """Return a temporary data directory."""
    return os.environ["DATA_DIR"]
