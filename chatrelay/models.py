from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.orm import relationship

from chatrelay.database import Base


class Conversation(Base):
    __tablename__ = "conversations"
    __table_args__ = (UniqueConstraint("session_id", "user_id", name="uq_conversation_session_user"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    session_id = Column(String(200), nullable=False, index=True)
    user_id = Column(String(100), nullable=False, index=True)
    title = Column(String(200), nullable=False, default="New Conversation")
    summary = Column(Text, nullable=False, default="")
    inherited_summary = Column(Text, nullable=False, default="")
    summary_turn_count = Column(Integer, nullable=False, default=0)  # total_turns when summary was written
    total_turns = Column(Integer, nullable=False, default=0)
    is_active = Column(Boolean, default=True)
    is_archived = Column(Boolean, default=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    last_activity = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    turns = relationship(
        "ConversationTurn",
        back_populates="conversation",
        order_by="ConversationTurn.position",
        cascade="all, delete-orphan",
    )


class ConversationTurn(Base):
    __tablename__ = "conversation_turns"

    id = Column(Integer, primary_key=True, autoincrement=True)
    conversation_id = Column(Integer, ForeignKey("conversations.id", ondelete="CASCADE"), nullable=False, index=True)
    position = Column(Integer, nullable=False)
    role = Column(String(20), nullable=False)  # "user" or "assistant"
    content = Column(Text, nullable=False)
    provider_used = Column(String(50), nullable=True)
    tokens = Column(Integer, default=0)  # len/4 estimate
    interrupted = Column(Boolean, default=False)  # stream cancelled before completion
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    conversation = relationship("Conversation", back_populates="turns")
