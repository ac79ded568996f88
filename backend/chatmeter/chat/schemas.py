"""Pydantic schemas for the chat API."""
from pydantic import BaseModel, Field, field_validator


class ChatMessage(BaseModel):
    role: str = Field(..., pattern="^(user|assistant)$")
    content: str = Field(default="", max_length=32000)


class ChatRequest(BaseModel):
    """Prior turns in order; the last one is the new user message."""
    messages: list[ChatMessage] = Field(..., min_length=1)
    conversation_id: str | None = Field(None, max_length=36)

    @field_validator("messages")
    @classmethod
    def last_message_from_user(cls, value: list[ChatMessage]) -> list[ChatMessage]:
        if value[-1].role != "user" or not value[-1].content.strip():
            raise ValueError("The last message must be a non-empty user message")
        return value


class QuotaExceededResponse(BaseModel):
    error: str = "Usage limit reached"
    reason: str = "quota_exceeded"
    limit: int
    count: int
    upgrade_url: str
