"""Database models for chat history."""
from sqlalchemy import Column, DateTime, ForeignKey, Index, String, Text

from chatmeter.billing.billing_period import utc_now
from chatmeter.database import Base


class Conversation(Base):
    """A chat thread owned by one user."""
    __tablename__ = "conversations"

    conversation_id = Column(String(36), primary_key=True)
    user_id = Column(String(64), nullable=False, index=True)
    title = Column(String(255), nullable=False)
    created_at = Column(DateTime(timezone=True), default=utc_now, nullable=False)


class Message(Base):
    """A single user or assistant turn."""
    __tablename__ = "messages"

    message_id = Column(String(36), primary_key=True)
    conversation_id = Column(
        String(36),
        ForeignKey("conversations.conversation_id", ondelete="CASCADE"),
        nullable=False,
    )
    user_id = Column(String(64), nullable=False)
    role = Column(String(20), nullable=False)  # user | assistant
    content = Column(Text, nullable=False, default="")
    created_at = Column(DateTime(timezone=True), default=utc_now, nullable=False)

    __table_args__ = (
        Index("ix_messages_conversation_created", "conversation_id", "created_at"),
    )
