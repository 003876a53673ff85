from dataclasses import dataclass
from typing import Optional

import httpx

from chatrelay.core.db import engine, queue_engine
from chatrelay.services.chat import ChatService
from chatrelay.services.credentials import CredentialStore, SqlCredentialStore
from chatrelay.services.delivery_queue import DeliveryQueue, QueueStore, SqlQueueStore
from chatrelay.services.gateway import ChatGateway
from chatrelay.services.rewrite import RewriteCoordinator
from chatrelay.services.router import ProviderRegistry, build_http_client, build_registry
from chatrelay.services.state_machine import MessageStateMachine
from chatrelay.services.store import ConversationStore, SqlConversationStore


@dataclass
class AppServices:
    http_client: httpx.AsyncClient
    registry: ProviderRegistry
    gateway: ChatGateway
    machine: MessageStateMachine
    store: ConversationStore
    queue: DeliveryQueue
    chat: ChatService
    rewrites: RewriteCoordinator


def build_services(
    *,
    client: Optional[httpx.AsyncClient] = None,
    store: Optional[ConversationStore] = None,
    credentials: Optional[CredentialStore] = None,
    queue_store: Optional[QueueStore] = None,
    online: bool = True,
) -> AppServices:
    """Wire the chat core. Defaults are the SQLite-backed stores."""
    client = client or build_http_client()
    registry = build_registry(client)
    gateway = ChatGateway(registry, credentials or SqlCredentialStore(engine))
    machine = MessageStateMachine()
    store = store or SqlConversationStore(engine)
    queue = DeliveryQueue(queue_store or SqlQueueStore(queue_engine), online=online)
    chat = ChatService(gateway, machine, store, queue)
    rewrites = RewriteCoordinator(chat)
    return AppServices(
        http_client=client,
        registry=registry,
        gateway=gateway,
        machine=machine,
        store=store,
        queue=queue,
        chat=chat,
        rewrites=rewrites,
    )
