import uuid
from datetime import datetime, timezone
from typing import List, Optional

from sqlalchemy import Text, UniqueConstraint
from sqlmodel import JSON, Column, Field, Relationship, SQLModel


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


# Chat History Models

class ConversationBase(SQLModel):
    """Base model for conversations/chat sessions"""
    title: str | None = Field(default=None, max_length=255)
    api_key_hash: str | None = Field(default=None, max_length=255, index=True)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class Conversation(ConversationBase, table=True):
    """Database model for storing conversations"""
    id: str = Field(default_factory=new_id, primary_key=True, max_length=64)
    messages: List["ChatMessage"] = Relationship(back_populates="conversation", cascade_delete=True)


class ConversationPublic(ConversationBase):
    """Public model for conversations"""
    id: str
    message_count: int = 0


class ChatMessageBase(SQLModel):
    """Base model for chat messages"""
    role: str = Field(max_length=50)  # "user", "assistant", "system"
    content: str = Field(sa_column=Column(Text))  # Using Text for unlimited length
    provider: str | None = Field(default=None, max_length=100)
    model: str | None = Field(default=None, max_length=100)
    created_at: datetime = Field(default_factory=utcnow)

    # Lifecycle outcome: completed, error, cancelled
    state: str = Field(default="completed", max_length=20)
    error: str | None = Field(default=None, sa_column=Column(Text))

    # Response metadata
    input_tokens: int | None = Field(default=None)
    output_tokens: int | None = Field(default=None)
    total_tokens: int | None = Field(default=None)
    elapsed_ms: int | None = Field(default=None)


class ChatMessage(ChatMessageBase, table=True):
    """Database model for storing individual chat messages. Ids are client generated."""
    id: str = Field(primary_key=True, max_length=64)
    conversation_id: str = Field(foreign_key="conversation.id", index=True)
    conversation: Conversation = Relationship(back_populates="messages")
    variations: List["MessageVariation"] = Relationship(back_populates="message", cascade_delete=True)


class ChatMessagePublic(ChatMessageBase):
    """Public model for chat messages"""
    id: str
    conversation_id: str


class MessageVariationBase(SQLModel):
    content: str = Field(sa_column=Column(Text))
    provider: str | None = Field(default=None, max_length=100)
    model: str | None = Field(default=None, max_length=100)
    created_at: datetime = Field(default_factory=utcnow)


class MessageVariation(MessageVariationBase, table=True):
    """Alternate generated body for one assistant message (rewrites)."""
    id: str = Field(primary_key=True, max_length=64)
    message_id: str = Field(foreign_key="chatmessage.id", index=True)
    message: ChatMessage = Relationship(back_populates="variations")


class MessageVariationPublic(MessageVariationBase):
    id: str
    message_id: str


class ChatHistoryPublic(SQLModel):
    """Response model for chat history with messages"""
    conversation: ConversationPublic
    messages: List[ChatMessagePublic]


# Stored provider credentials

class ProviderApiKey(SQLModel, table=True):
    __table_args__ = (UniqueConstraint("api_key_hash", "provider"),)

    id: uuid.UUID = Field(default_factory=uuid.uuid4, primary_key=True)
    api_key_hash: str = Field(max_length=255, index=True)
    provider: str = Field(max_length=100)
    api_key: str = Field(max_length=512)
    params: dict = Field(default_factory=dict, sa_column=Column(JSON))
    created_at: datetime = Field(default_factory=utcnow)


# Delivery queue (lives in its own local database)

class QueuedDeliveryRecord(SQLModel, table=True):
    seq: Optional[int] = Field(default=None, primary_key=True)
    entry_id: str = Field(max_length=64, unique=True, index=True)
    message_id: str = Field(max_length=64, index=True)
    payload: dict = Field(sa_column=Column(JSON))
    enqueued_at: float
    retry_count: int = 0
    max_retries: int
    # Bumped whenever a newer payload replaces the pending one
    revision: int = 0
