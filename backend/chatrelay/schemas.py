from datetime import datetime
from typing import Dict, List, Optional

from pydantic import BaseModel, Field

from chatrelay.providers.base import ChatMessage, ProviderCredential
from chatrelay.streaming.events import Usage


# Record handed to the conversation store and, on failure, to the delivery queue
class StoredMessage(BaseModel):
    id: str
    conversation_id: str
    role: str
    content: str
    created_at: datetime
    provider: Optional[str] = None
    model: Optional[str] = None
    state: str = "completed"
    error: Optional[str] = None
    usage: Optional[Usage] = None
    elapsed_ms: Optional[int] = None
    # Set when this record is a rewrite variation of another message
    parent_id: Optional[str] = None


# Guest credential, never stored
class GuestCredential(BaseModel):
    api_key: str
    params: Dict[str, str] = Field(default_factory=dict)

    def to_credential(self) -> ProviderCredential:
        return ProviderCredential.of(self.api_key, **self.params)


# Canonical gateway call
class MessagesRequest(BaseModel):
    provider: str
    model: Optional[str] = None
    messages: List[ChatMessage]
    temperature: Optional[float] = None
    max_tokens: Optional[int] = None
    stream: bool = False
    guest: Optional[GuestCredential] = None


class MessagesResponse(BaseModel):
    content: str
    usage: Usage
    model: str
    provider: str


# UI-facing operations
class SubmitRequest(BaseModel):
    content: str
    provider: str
    model: Optional[str] = None
    temperature: Optional[float] = None
    max_tokens: Optional[int] = None
    stream: bool = True
    guest: Optional[GuestCredential] = None


class GenerationAccepted(BaseModel):
    conversation_id: str
    message_id: str
    user_message_id: Optional[str] = None
    parent_id: Optional[str] = None
    state: str


class RegenerateRequest(BaseModel):
    provider: Optional[str] = None
    model: Optional[str] = None
    guest: Optional[GuestCredential] = None


class MessageStatePublic(BaseModel):
    message_id: str
    conversation_id: str
    state: str
    content: str
    error: Optional[str] = None
    retryable: Optional[bool] = None
    usage: Optional[Usage] = None


class RewriteStatusPublic(BaseModel):
    conversation_id: str
    message_id: Optional[str] = None
    generation_id: Optional[str] = None
    is_rewriting: bool = False
    timed_out: bool = False
    can_cancel: bool = False
    error: Optional[str] = None


class QueueStatusPublic(BaseModel):
    size: int
    is_processing: bool
    online: bool
    oldest_enqueued_at: Optional[float] = None


class ConnectivityUpdate(BaseModel):
    online: bool


class DeadLetterPublic(BaseModel):
    entry_id: str
    message_id: str
    reason: str
    retry_count: int
    dropped_at: float
