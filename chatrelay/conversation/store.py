"""Conversation persistence: the only I/O boundary the failover core writes to."""
from abc import ABC, abstractmethod
from collections import OrderedDict
from datetime import datetime, timezone
from typing import Literal, Optional

from pydantic import BaseModel, Field
from sqlalchemy import select

from chatrelay.models import Conversation, ConversationTurn
from chatrelay.observability.logger import get_logger
from chatrelay.quota.ledger import estimate_tokens

log = get_logger("conversation_store")

GENERIC_OPENERS = {"hi", "hello", "hey", "good morning", "good afternoon", "good evening", "test"}
TITLE_MAX_LENGTH = 50
MAX_PENDING_INHERITED = 10_000


class Turn(BaseModel):
    role: Literal["user", "assistant"]
    content: str
    provider_used: Optional[str] = None
    interrupted: bool = False
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class ConversationInfo(BaseModel):
    session_id: str
    user_id: str
    title: str
    summary: str = ""
    inherited_summary: str = ""
    summary_turn_count: int = 0
    total_turns: int = 0
    created_at: Optional[datetime] = None
    last_activity: Optional[datetime] = None


def make_title(first_message: str) -> str:
    text = first_message.strip()
    if not text or text.lower() in GENERIC_OPENERS:
        return "New Conversation"
    if len(text) > TITLE_MAX_LENGTH:
        text = text[:TITLE_MAX_LENGTH - 3].rstrip() + "..."
    return text[0].upper() + text[1:]


class ConversationStore(ABC):
    """Turns for one ``(session_id, user_id)`` read back in append order.

    A conversation only exists once its first turn is appended; nothing here
    creates an empty conversation.
    """

    async def append(self, session_id: str, user_id: str, turn: Turn) -> int:
        return await self.append_many(session_id, user_id, [turn])

    @abstractmethod
    async def append_many(self, session_id: str, user_id: str, turns: list[Turn]) -> int:
        """Append turns atomically. Returns the conversation's total turn count."""

    @abstractmethod
    async def get_turns(self, session_id: str, user_id: str) -> list[Turn]:
        pass

    async def get_recent_turns(self, session_id: str, user_id: str, limit: int) -> list[Turn]:
        turns = await self.get_turns(session_id, user_id)
        return turns[-limit:] if limit > 0 else []

    @abstractmethod
    async def get_conversation(self, session_id: str, user_id: str) -> Optional[ConversationInfo]:
        pass

    async def get_summary(self, session_id: str, user_id: str) -> str:
        info = await self.get_conversation(session_id, user_id)
        return info.summary if info else ""

    @abstractmethod
    async def set_summary(self, session_id: str, user_id: str, text: str, turn_count: int = None):
        pass

    async def get_inherited_summary(self, session_id: str, user_id: str) -> str:
        info = await self.get_conversation(session_id, user_id)
        return info.inherited_summary if info else ""

    @abstractmethod
    async def set_inherited_summary(self, session_id: str, user_id: str, text: str):
        pass

    @abstractmethod
    async def list_conversations(self, user_id: str, limit: int = 20) -> list[ConversationInfo]:
        pass


class SqlConversationStore(ConversationStore):
    def __init__(self, session_factory):
        self.session_factory = session_factory
        # Inherited summaries for conversations that have no turns yet
        self._pending_inherited: OrderedDict[tuple[str, str], str] = OrderedDict()

    async def append_many(self, session_id: str, user_id: str, turns: list[Turn]) -> int:
        if not turns:
            raise ValueError("No turns to append")
        for turn in turns:
            if not turn.content or not turn.content.strip():
                raise ValueError("Turn content must not be empty")

        async with self.session_factory() as session:
            conv = await self._find(session, session_id, user_id)
            if conv is None:
                first_user = next((t.content for t in turns if t.role == "user"), turns[0].content)
                conv = Conversation(
                    session_id=session_id,
                    user_id=user_id,
                    title=make_title(first_user),
                    summary="",
                    inherited_summary=self._pending_inherited.pop((session_id, user_id), ""),
                    summary_turn_count=0,
                    total_turns=0,
                )
                session.add(conv)
                await session.flush()
                log.info("conversation_created", session_id=session_id, user_id=user_id, title=conv.title)

            for turn in turns:
                session.add(ConversationTurn(
                    conversation_id=conv.id,
                    position=conv.total_turns,
                    role=turn.role,
                    content=turn.content,
                    provider_used=turn.provider_used,
                    tokens=estimate_tokens(turn.content),
                    interrupted=turn.interrupted,
                    created_at=turn.created_at,
                ))
                conv.total_turns += 1
            conv.last_activity = datetime.now(timezone.utc)
            await session.commit()
            return conv.total_turns

    async def get_turns(self, session_id: str, user_id: str) -> list[Turn]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(ConversationTurn)
                .join(Conversation, ConversationTurn.conversation_id == Conversation.id)
                .where(Conversation.session_id == session_id, Conversation.user_id == user_id)
                .order_by(ConversationTurn.position)
            )
            return [_to_turn(row) for row in result.scalars().all()]

    async def get_recent_turns(self, session_id: str, user_id: str, limit: int) -> list[Turn]:
        if limit <= 0:
            return []
        async with self.session_factory() as session:
            result = await session.execute(
                select(ConversationTurn)
                .join(Conversation, ConversationTurn.conversation_id == Conversation.id)
                .where(Conversation.session_id == session_id, Conversation.user_id == user_id)
                .order_by(ConversationTurn.position.desc())
                .limit(limit)
            )
            rows = list(result.scalars().all())
        rows.reverse()
        return [_to_turn(row) for row in rows]

    async def get_conversation(self, session_id: str, user_id: str) -> Optional[ConversationInfo]:
        async with self.session_factory() as session:
            conv = await self._find(session, session_id, user_id)
            if conv is None:
                return None
            return _to_info(conv)

    async def set_summary(self, session_id: str, user_id: str, text: str, turn_count: int = None):
        async with self.session_factory() as session:
            conv = await self._find(session, session_id, user_id)
            if conv is None:
                log.warning("summary_for_unknown_conversation", session_id=session_id)
                return
            conv.summary = text
            conv.summary_turn_count = conv.total_turns if turn_count is None else turn_count
            await session.commit()

    async def set_inherited_summary(self, session_id: str, user_id: str, text: str):
        async with self.session_factory() as session:
            conv = await self._find(session, session_id, user_id)
            if conv is None:
                self._hold_inherited(session_id, user_id, text)
                return
            conv.inherited_summary = text
            await session.commit()

    async def get_inherited_summary(self, session_id: str, user_id: str) -> str:
        info = await self.get_conversation(session_id, user_id)
        if info is None:
            return self._pending_inherited.get((session_id, user_id), "")
        return info.inherited_summary

    async def list_conversations(self, user_id: str, limit: int = 20) -> list[ConversationInfo]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(Conversation)
                .where(
                    Conversation.user_id == user_id,
                    Conversation.is_active.is_(True),
                    Conversation.is_archived.is_(False),
                    Conversation.total_turns > 0,
                )
                .order_by(Conversation.last_activity.desc(), Conversation.id.desc())
                .limit(limit)
            )
            return [_to_info(c) for c in result.scalars().all()]

    def _hold_inherited(self, session_id: str, user_id: str, text: str):
        key = (session_id, user_id)
        self._pending_inherited[key] = text
        self._pending_inherited.move_to_end(key)
        while len(self._pending_inherited) > MAX_PENDING_INHERITED:
            dropped, _ = self._pending_inherited.popitem(last=False)
            log.info("pending_inherited_summary_dropped", session_id=dropped[0])

    @staticmethod
    async def _find(session, session_id: str, user_id: str) -> Optional[Conversation]:
        result = await session.execute(
            select(Conversation).where(
                Conversation.session_id == session_id,
                Conversation.user_id == user_id,
            )
        )
        return result.scalar_one_or_none()


def _to_turn(row: ConversationTurn) -> Turn:
    return Turn(
        role=row.role,
        content=row.content,
        provider_used=row.provider_used,
        interrupted=bool(row.interrupted),
        created_at=row.created_at or datetime.now(timezone.utc),
    )


def _to_info(conv: Conversation) -> ConversationInfo:
    return ConversationInfo(
        session_id=conv.session_id,
        user_id=conv.user_id,
        title=conv.title,
        summary=conv.summary or "",
        inherited_summary=conv.inherited_summary or "",
        summary_turn_count=conv.summary_turn_count or 0,
        total_turns=conv.total_turns or 0,
        created_at=conv.created_at,
        last_activity=conv.last_activity,
    )
