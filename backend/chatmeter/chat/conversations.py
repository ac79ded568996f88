"""Conversation and message persistence."""
import uuid

from sqlalchemy.orm import Session

from chatmeter.chat.models import Conversation, Message

DEFAULT_TITLE = "New Conversation"
TITLE_LENGTH = 40


class ConversationNotFoundError(Exception):
    """Raised when a conversation does not exist or belongs to another user."""
    pass


def title_from_message(content: str) -> str:
    """Derive a conversation title from its opening message."""
    return content.strip()[:TITLE_LENGTH] or DEFAULT_TITLE


def create_conversation(db: Session, user_id: str, first_message: str) -> Conversation:
    """Create a conversation titled after its first message.

    Note:
        This function does NOT commit the transaction.
    """
    conversation = Conversation(
        conversation_id=str(uuid.uuid4()),
        user_id=user_id,
        title=title_from_message(first_message),
    )
    db.add(conversation)
    db.flush()
    return conversation


def get_conversation(db: Session, user_id: str, conversation_id: str) -> Conversation:
    """Get a conversation owned by ``user_id``.

    Args:
        db: Database session.
        user_id: The internal user ID.
        conversation_id: The conversation ID.

    Returns:
        The Conversation.

    Raises:
        ConversationNotFoundError: If it does not exist for this user.
    """
    conversation = db.query(Conversation).filter(
        Conversation.conversation_id == conversation_id,
        Conversation.user_id == user_id,
    ).first()
    if conversation is None:
        raise ConversationNotFoundError(f"Conversation not found: {conversation_id}")
    return conversation


def save_message(db: Session, conversation_id: str, user_id: str, role: str, content: str) -> Message:
    """Append a message to a conversation.

    Note:
        This function does NOT commit the transaction.
    """
    message = Message(
        message_id=str(uuid.uuid4()),
        conversation_id=conversation_id,
        user_id=user_id,
        role=role,
        content=content,
    )
    db.add(message)
    db.flush()
    return message


def list_messages(db: Session, conversation_id: str) -> list[Message]:
    return db.query(Message).filter(
        Message.conversation_id == conversation_id,
    ).order_by(Message.created_at).all()
