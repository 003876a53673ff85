from datetime import datetime, timedelta, timezone
from typing import Optional

from chatrelay.models import new_id
from chatrelay.schemas import StoredMessage
from chatrelay.tests.utils.utils import random_lower_string

EPOCH = datetime(2024, 1, 1, tzinfo=timezone.utc)


def stored_message(
    conversation_id: str,
    role: str = "user",
    content: Optional[str] = None,
    *,
    minutes: int = 0,
    message_id: Optional[str] = None,
    provider: Optional[str] = None,
    model: Optional[str] = None,
    state: str = "completed",
) -> StoredMessage:
    return StoredMessage(
        id=message_id or new_id(),
        conversation_id=conversation_id,
        role=role,
        content=content if content is not None else random_lower_string(),
        created_at=EPOCH + timedelta(minutes=minutes),
        provider=provider,
        model=model,
        state=state,
    )
