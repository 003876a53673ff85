from typing import Any, List, Optional

from sqlmodel import Session, func, select

from chatrelay.models import (
    ChatMessage,
    Conversation,
    MessageVariation,
    ProviderApiKey,
    QueuedDeliveryRecord,
    utcnow,
)
from chatrelay.schemas import StoredMessage


# Chat History CRUD Operations

def create_conversation(
    *,
    session: Session,
    conversation_id: Optional[str] = None,
    title: Optional[str] = None,
    api_key_hash: Optional[str] = None
) -> Conversation:
    """Create a new conversation"""
    db_conversation = Conversation(
        title=title,
        api_key_hash=api_key_hash,
        created_at=utcnow(),
        updated_at=utcnow()
    )
    if conversation_id:
        db_conversation.id = conversation_id
    session.add(db_conversation)
    session.commit()
    session.refresh(db_conversation)
    return db_conversation


def get_conversation(
    *,
    session: Session,
    conversation_id: str
) -> Optional[Conversation]:
    """Get a conversation by ID"""
    return session.get(Conversation, conversation_id)


def get_conversations(
    *,
    session: Session,
    api_key_hash: Optional[str] = None,
    skip: int = 0,
    limit: int = 100
) -> List[Conversation]:
    """Get conversations, optionally filtered by API key hash"""
    query = select(Conversation)
    if api_key_hash:
        query = query.where(Conversation.api_key_hash == api_key_hash)
    query = query.order_by(Conversation.updated_at.desc())
    query = query.offset(skip).limit(limit)
    return list(session.exec(query).all())


def update_conversation(
    *,
    session: Session,
    conversation_id: str,
    title: Optional[str] = None
) -> Optional[Conversation]:
    """Update a conversation's title and updated_at timestamp"""
    conversation = session.get(Conversation, conversation_id)
    if not conversation:
        return None
    if title is not None:
        conversation.title = title
    conversation.updated_at = utcnow()
    session.add(conversation)
    session.commit()
    session.refresh(conversation)
    return conversation


def delete_conversation(
    *,
    session: Session,
    conversation_id: str
) -> bool:
    """Delete a conversation and all its messages"""
    conversation = session.get(Conversation, conversation_id)
    if not conversation:
        return False
    session.delete(conversation)
    session.commit()
    return True


def _apply_message(db_message: ChatMessage, message: StoredMessage) -> None:
    db_message.role = message.role
    db_message.content = message.content
    db_message.provider = message.provider
    db_message.model = message.model
    db_message.state = message.state
    db_message.error = message.error
    db_message.elapsed_ms = message.elapsed_ms
    if message.usage:
        db_message.input_tokens = message.usage.input_tokens
        db_message.output_tokens = message.usage.output_tokens
        db_message.total_tokens = message.usage.total_tokens


def upsert_chat_message(
    *,
    session: Session,
    message: StoredMessage,
    api_key_hash: Optional[str] = None
) -> ChatMessage:
    """
    Create a chat message, or update it when the id already exists.
    Message ids are client generated, so a replayed write lands on the same row.
    """
    conversation = session.get(Conversation, message.conversation_id)
    if conversation is None:
        title = message.content[:100] + "..." if len(message.content) > 100 else message.content
        conversation = Conversation(
            id=message.conversation_id,
            title=title if message.role == "user" else None,
            api_key_hash=api_key_hash,
        )
    db_message = session.get(ChatMessage, message.id)
    if db_message is None:
        db_message = ChatMessage(
            id=message.id,
            conversation_id=message.conversation_id,
            role=message.role,
            content=message.content,
            created_at=message.created_at,
        )
    _apply_message(db_message, message)
    session.add(db_message)

    # Update conversation's updated_at timestamp
    conversation.updated_at = utcnow()
    session.add(conversation)

    session.commit()
    session.refresh(db_message)
    return db_message


def update_chat_message(
    *,
    session: Session,
    message_id: str,
    **fields: Any
) -> Optional[ChatMessage]:
    db_message = session.get(ChatMessage, message_id)
    if db_message is None:
        return None
    for key, value in fields.items():
        if value is not None:
            setattr(db_message, key, value)
    session.add(db_message)
    session.commit()
    session.refresh(db_message)
    return db_message


def get_chat_message(*, session: Session, message_id: str) -> Optional[ChatMessage]:
    return session.get(ChatMessage, message_id)


def get_chat_messages(
    *,
    session: Session,
    conversation_id: str,
    skip: int = 0,
    limit: int = 1000
) -> List[ChatMessage]:
    """Get messages for a conversation"""
    query = select(ChatMessage).where(
        ChatMessage.conversation_id == conversation_id
    ).order_by(ChatMessage.created_at).offset(skip).limit(limit)
    return list(session.exec(query).all())


def count_messages_in_conversation(
    *,
    session: Session,
    conversation_id: str
) -> int:
    """Count the number of messages in a conversation"""
    query = select(func.count(ChatMessage.id)).where(
        ChatMessage.conversation_id == conversation_id
    )
    return session.exec(query).one()


# Variations

def create_message_variation(
    *,
    session: Session,
    variation_id: str,
    message_id: str,
    content: str,
    provider: Optional[str] = None,
    model: Optional[str] = None
) -> MessageVariation:
    """Idempotent on variation id."""
    existing = session.get(MessageVariation, variation_id)
    if existing is not None:
        return existing
    variation = MessageVariation(
        id=variation_id,
        message_id=message_id,
        content=content,
        provider=provider,
        model=model,
        created_at=utcnow(),
    )
    session.add(variation)
    session.commit()
    session.refresh(variation)
    return variation


def get_message_variations(*, session: Session, message_id: str) -> List[MessageVariation]:
    query = select(MessageVariation).where(
        MessageVariation.message_id == message_id
    ).order_by(MessageVariation.created_at)
    return list(session.exec(query).all())


# Provider credentials

def get_provider_api_key(
    *,
    session: Session,
    api_key_hash: str,
    provider: str
) -> Optional[ProviderApiKey]:
    query = select(ProviderApiKey).where(
        ProviderApiKey.api_key_hash == api_key_hash,
        ProviderApiKey.provider == provider,
    )
    return session.exec(query).first()


# Delivery queue

def add_queued_delivery(*, session: Session, record: QueuedDeliveryRecord) -> QueuedDeliveryRecord:
    session.add(record)
    session.commit()
    session.refresh(record)
    return record


def get_queued_delivery(*, session: Session, entry_id: str) -> Optional[QueuedDeliveryRecord]:
    query = select(QueuedDeliveryRecord).where(QueuedDeliveryRecord.entry_id == entry_id)
    return session.exec(query).first()


def get_queue_head(*, session: Session) -> Optional[QueuedDeliveryRecord]:
    query = select(QueuedDeliveryRecord).order_by(QueuedDeliveryRecord.seq).limit(1)
    return session.exec(query).first()


def list_queued_deliveries(*, session: Session) -> List[QueuedDeliveryRecord]:
    query = select(QueuedDeliveryRecord).order_by(QueuedDeliveryRecord.seq)
    return list(session.exec(query).all())


def find_queued_delivery_by_message(*, session: Session, message_id: str) -> Optional[QueuedDeliveryRecord]:
    query = select(QueuedDeliveryRecord).where(QueuedDeliveryRecord.message_id == message_id)
    return session.exec(query).first()


def delete_queued_delivery(*, session: Session, entry_id: str) -> bool:
    record = get_queued_delivery(session=session, entry_id=entry_id)
    if record is None:
        return False
    session.delete(record)
    session.commit()
    return True


def count_queued_deliveries(*, session: Session) -> int:
    return session.exec(select(func.count(QueuedDeliveryRecord.seq))).one()
