from contextlib import contextmanager
from typing import Iterator, Optional

from fastapi.testclient import TestClient
from sqlalchemy.engine import Engine
from sqlmodel import Session

from chatrelay.api.deps import get_db
from chatrelay.main import create_app
from chatrelay.providers.base import ProviderCredential
from chatrelay.services.container import AppServices, build_services
from chatrelay.services.credentials import CredentialContext, InMemoryCredentialStore, identity_for
from chatrelay.services.delivery_queue import InMemoryQueueStore, QueueStore
from chatrelay.services.store import ConversationStore, InMemoryConversationStore
from chatrelay.tests.utils.upstream import FakeUpstream

API_KEY = "relay-test-key"
IDENTITY = identity_for(API_KEY)
AUTH_HEADERS = {"X-API-Key": API_KEY}
STORED_KEY = "sk-stored"


def stored_credentials() -> InMemoryCredentialStore:
    credentials = InMemoryCredentialStore()
    credentials.put(IDENTITY, "OpenAI", ProviderCredential.of(STORED_KEY))
    credentials.put(IDENTITY, "Anthropic", ProviderCredential.of(STORED_KEY))
    return credentials


def signed_in() -> CredentialContext:
    return CredentialContext(identity=IDENTITY)


def wire(
    upstream: FakeUpstream,
    *,
    store: Optional[ConversationStore] = None,
    queue_store: Optional[QueueStore] = None,
    online: bool = True,
) -> AppServices:
    return build_services(
        client=upstream.client(),
        store=store or InMemoryConversationStore(),
        credentials=stored_credentials(),
        queue_store=queue_store or InMemoryQueueStore(),
        online=online,
    )


@contextmanager
def api_client(services: AppServices, engine: Optional[Engine] = None) -> Iterator[TestClient]:
    """App wired to ``services``; database routes use ``engine`` when given."""
    app = create_app(services)
    if engine is not None:
        def override_db():
            with Session(engine) as session:
                yield session

        app.dependency_overrides[get_db] = override_db
    with TestClient(app) as client:
        yield client
