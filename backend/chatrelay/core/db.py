from sqlalchemy.engine import Engine
from sqlmodel import SQLModel, create_engine

from chatrelay.core.config import settings
from chatrelay.models import (
    ChatMessage,
    Conversation,
    MessageVariation,
    ProviderApiKey,
    QueuedDeliveryRecord,
)


def make_engine(url: str) -> Engine:
    connect_args = {"check_same_thread": False} if url.startswith("sqlite") else {}
    return create_engine(url, connect_args=connect_args)


engine = make_engine(settings.SQLALCHEMY_DATABASE_URI)
queue_engine = make_engine(settings.DELIVERY_QUEUE_DATABASE_URI)

STORE_TABLES = [
    Conversation.__table__,
    ChatMessage.__table__,
    MessageVariation.__table__,
    ProviderApiKey.__table__,
]


def init_db(db_engine: Engine = engine) -> None:
    SQLModel.metadata.create_all(db_engine, tables=STORE_TABLES)


def init_queue_db(db_engine: Engine = queue_engine) -> None:
    SQLModel.metadata.create_all(db_engine, tables=[QueuedDeliveryRecord.__table__])
