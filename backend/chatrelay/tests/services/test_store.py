import asyncio

from sqlmodel import Session

from chatrelay import crud
from chatrelay.models import Conversation, ProviderApiKey
from chatrelay.services.credentials import SqlCredentialStore
from chatrelay.services.store import SqlConversationStore
from chatrelay.streaming.events import Usage
from chatrelay.tests.utils.messages import stored_message


def test_messages_are_listed_in_creation_order(db_engine):
    store = SqlConversationStore(db_engine, api_key_hash="owner")

    async def run():
        await store.create_message(stored_message("c1", "assistant", "second", minutes=1, message_id="m2"))
        await store.create_message(stored_message("c1", "user", "first", minutes=0, message_id="m1"))
        return await store.list_messages("c1")

    messages = asyncio.run(run())

    assert [m.id for m in messages] == ["m1", "m2"]
    assert messages[0].created_at.tzinfo is not None
    with Session(db_engine) as session:
        assert session.get(Conversation, "c1").api_key_hash == "owner"


def test_replayed_create_updates_the_same_row(db_engine):
    store = SqlConversationStore(db_engine)
    partial = stored_message("c1", "assistant", "Hel", message_id="m1", state="error")
    final = partial.model_copy(update={"content": "Hello", "state": "completed", "usage": Usage.of(3, 2)})

    async def run():
        await store.create_message(partial)
        await store.create_message(final)
        return await store.list_messages("c1")

    messages = asyncio.run(run())

    assert len(messages) == 1
    assert (messages[0].content, messages[0].state) == ("Hello", "completed")
    assert messages[0].usage.total_tokens == 5


def test_update_message_changes_only_given_fields(db_engine):
    store = SqlConversationStore(db_engine)

    async def run():
        await store.create_message(stored_message("c1", "assistant", "Hello", message_id="m1"))
        await store.update_message("m1", state="error", error="could not be saved")
        return await store.list_messages("c1")

    message = asyncio.run(run())[0]

    assert message.content == "Hello"
    assert (message.state, message.error) == ("error", "could not be saved")


def test_variations_are_idempotent_on_id(db_engine):
    store = SqlConversationStore(db_engine)
    parent = stored_message("c1", "assistant", "Hello", message_id="m1")
    variation = stored_message("c1", "assistant", "Howdy", message_id="v1", provider="OpenAI")

    async def run():
        await store.create_message(parent)
        await store.create_variation("m1", variation)
        await store.create_variation("m1", variation)

    asyncio.run(run())

    with Session(db_engine) as session:
        rows = crud.get_message_variations(session=session, message_id="m1")
    assert [(v.id, v.content, v.provider) for v in rows] == [("v1", "Howdy", "OpenAI")]


def test_sql_credential_store_resolves_stored_key(db_engine):
    with Session(db_engine) as session:
        session.add(ProviderApiKey(
            api_key_hash="owner",
            provider="Azure OpenAI",
            api_key="sk-azure",
            params={"endpoint_url": "https://acme.openai.azure.com", "deployment_id": "chat"},
        ))
        session.commit()
    credentials = SqlCredentialStore(db_engine)

    found = asyncio.run(credentials.resolve("owner", "Azure OpenAI"))
    missing = asyncio.run(credentials.resolve("owner", "OpenAI"))

    assert found.api_key.get_secret_value() == "sk-azure"
    assert found.params["deployment_id"] == "chat"
    assert missing is None
