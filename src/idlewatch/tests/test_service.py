import pytest
import pytest_asyncio
from datetime import timedelta

from idlewatch.database.store import SQLiteConversationStore
from idlewatch.errors import (
    AlreadyResolved,
    AlreadyWarned,
    InvalidState,
    NotFound,
    StoreUnavailable,
)
from idlewatch.integrations.notifier import DeliveryResult
from idlewatch.lifecycle.service import CHAT_UPDATE_EVENT
from idlewatch.schemas.interaction import InteractionStatus, TransitionGuard
from idlewatch.tests.utils import (
    NOW,
    RecordingEventSink,
    StubNotifier,
    build_service,
    create_test_store,
    seed_conversation,
)


@pytest_asyncio.fixture
async def store():
    db_pool, store = await create_test_store()
    yield store
    await db_pool.close()


@pytest.mark.asyncio
async def test_resolve_publishes_chat_update(store):
    chat, interaction = await seed_conversation(store)
    events = RecordingEventSink()
    service = build_service(store, events=events)

    assert await service.resolve_interaction(interaction.id, "Customer left", now=NOW)

    assert len(events.events) == 1
    scope_id, event_name, payload = events.events[0]
    assert scope_id == chat.workspace_id
    assert event_name == CHAT_UPDATE_EVENT
    assert payload.chat.un_read_count == 1
    assert payload.latest_interaction.status == InteractionStatus.RESOLVED
    assert payload.latest_message.text == "Customer left"

    # Dashboards receive camelCase keys
    dumped = payload.model_dump(mode="json", by_alias=True)
    assert dumped["latestMessage"]["text"] == "Customer left"
    assert dumped["chat"]["unReadCount"] == 1


@pytest.mark.asyncio
async def test_resolve_uses_default_resolution_text(store):
    chat, interaction = await seed_conversation(store)
    service = build_service(store)

    await service.resolve_interaction(interaction.id, now=NOW)

    projection = await store.latest_interaction_with_messages(chat.id)
    assert [m.text for m in projection.messages] == ["Conversation closed"]


@pytest.mark.asyncio
async def test_resolve_is_idempotent(store):
    chat, interaction = await seed_conversation(store)
    events = RecordingEventSink()
    service = build_service(store, events=events)

    await service.resolve_interaction(interaction.id, now=NOW)
    with pytest.raises(AlreadyResolved):
        await service.resolve_interaction(interaction.id, now=NOW + timedelta(minutes=1))

    # No second audit message, unread increment or event
    assert len(events.events) == 1
    assert (await store.get_chat(chat.id)).un_read_count == 1
    projection = await store.latest_interaction_with_messages(chat.id)
    assert len(projection.messages) == 1
    assert projection.resolved_at == NOW


@pytest.mark.asyncio
async def test_resolve_unknown_interaction(store):
    service = build_service(store)

    with pytest.raises(NotFound) as exc_info:
        await service.resolve_interaction("missing")

    assert exc_info.value.identifier == "missing"


@pytest.mark.asyncio
async def test_resolve_returns_false_when_guard_no_longer_holds(store):
    chat, interaction = await seed_conversation(store, idle_minutes=1)
    events = RecordingEventSink()
    service = build_service(store, events=events)

    guard = TransitionGuard(
        expected_status=InteractionStatus.RUNNING,
        chat_idle_before=NOW - timedelta(minutes=10),
    )
    assert not await service.resolve_interaction(interaction.id, now=NOW, guard=guard)

    assert (await store.get_interaction(interaction.id)).status == InteractionStatus.RUNNING
    assert events.events == []


@pytest.mark.asyncio
async def test_warn_delivers_and_keeps_interaction_running(store):
    chat, interaction = await seed_conversation(store)
    notifier = StubNotifier()
    events = RecordingEventSink()
    service = build_service(store, notifier=notifier, events=events)

    assert await service.warn_before_closing(interaction.id, "Still there?", now=NOW)

    assert notifier.calls == [(chat.whatsapp_phone, "Still there?")]

    warned = await store.get_interaction(interaction.id)
    assert warned.status == InteractionStatus.RUNNING
    assert warned.warned_at == NOW

    updated_chat = await store.get_chat(chat.id)
    assert not updated_chat.read
    assert updated_chat.un_read_count == 1

    projection = await store.latest_interaction_with_messages(chat.id)
    (message,) = projection.messages
    assert message.role == "assistant"
    assert message.sent_to_channel
    assert message.sent_at == NOW

    assert [e[1] for e in events.events] == [CHAT_UPDATE_EVENT]


@pytest.mark.asyncio
async def test_warn_uses_generic_text_without_message(store):
    _, interaction = await seed_conversation(store)
    notifier = StubNotifier()
    service = build_service(store, notifier=notifier)

    await service.warn_before_closing(interaction.id, now=NOW)

    assert notifier.calls[0][1] == "This conversation will be closed soon."


@pytest.mark.asyncio
async def test_warn_records_failed_delivery(store):
    chat, interaction = await seed_conversation(store)
    notifier = StubNotifier(result=DeliveryResult(success=False, error="HTTP 500"))
    service = build_service(store, notifier=notifier)

    assert await service.warn_before_closing(interaction.id, now=NOW)

    # The warning counts as issued even though delivery failed
    assert (await store.get_interaction(interaction.id)).warned_at == NOW
    projection = await store.latest_interaction_with_messages(chat.id)
    (message,) = projection.messages
    assert not message.sent_to_channel
    assert message.failed_at == NOW
    assert message.fail_reason == "HTTP 500"


@pytest.mark.asyncio
async def test_warn_records_timed_out_delivery(store):
    chat, interaction = await seed_conversation(store)
    notifier = StubNotifier(delay=1.0)
    service = build_service(store, notifier=notifier, delivery_timeout=0.05)

    assert await service.warn_before_closing(interaction.id, now=NOW)

    projection = await store.latest_interaction_with_messages(chat.id)
    assert projection.messages[0].fail_reason == "timeout"


@pytest.mark.asyncio
async def test_warn_records_notifier_exception(store):
    chat, interaction = await seed_conversation(store)
    notifier = StubNotifier(error=ConnectionError("gateway down"))
    service = build_service(store, notifier=notifier)

    assert await service.warn_before_closing(interaction.id, now=NOW)

    projection = await store.latest_interaction_with_messages(chat.id)
    assert projection.messages[0].fail_reason == "gateway down"


@pytest.mark.asyncio
async def test_warn_without_delivery_address_keeps_message_internal(store):
    chat, interaction = await seed_conversation(store, phone=None)
    notifier = StubNotifier()
    service = build_service(store, notifier=notifier)

    assert await service.warn_before_closing(interaction.id, now=NOW)

    assert notifier.calls == []
    projection = await store.latest_interaction_with_messages(chat.id)
    (message,) = projection.messages
    assert not message.sent_to_channel
    assert message.failed_at is None


@pytest.mark.asyncio
async def test_warn_twice_is_rejected(store):
    _, interaction = await seed_conversation(store)
    notifier = StubNotifier()
    service = build_service(store, notifier=notifier)

    await service.warn_before_closing(interaction.id, now=NOW)
    with pytest.raises(AlreadyWarned):
        await service.warn_before_closing(interaction.id, now=NOW + timedelta(minutes=1))

    assert len(notifier.calls) == 1


@pytest.mark.parametrize("status", [InteractionStatus.WAITING, InteractionStatus.RESOLVED])
@pytest.mark.asyncio
async def test_warn_requires_running_interaction(store, status):
    _, interaction = await seed_conversation(store, status=status)
    notifier = StubNotifier()
    service = build_service(store, notifier=notifier)

    with pytest.raises(InvalidState) as exc_info:
        await service.warn_before_closing(interaction.id, now=NOW)

    assert exc_info.value.status == status.value
    assert notifier.calls == []


@pytest.mark.asyncio
async def test_warn_returns_false_when_chat_became_active(store):
    chat, interaction = await seed_conversation(store, idle_minutes=35)
    notifier = StubNotifier()
    service = build_service(store, notifier=notifier)

    guard = TransitionGuard(
        expected_status=InteractionStatus.RUNNING,
        chat_idle_before=NOW - timedelta(minutes=30),
    )
    await store.record_activity(chat.id, NOW - timedelta(minutes=2))

    assert not await service.warn_before_closing(interaction.id, now=NOW, guard=guard)
    assert notifier.calls == []
    assert (await store.get_interaction(interaction.id)).warned_at is None


@pytest.mark.asyncio
async def test_warn_unknown_interaction(store):
    service = build_service(store)

    with pytest.raises(NotFound):
        await service.warn_before_closing("missing")


@pytest.mark.asyncio
async def test_unread_marker_survives_failure_after_claim(store):
    chat, interaction = await seed_conversation(store)

    class FailingMessageStore(SQLiteConversationStore):
        async def create_message(self, chat_id, interaction_id, role, text, now):
            raise StoreUnavailable("disk I/O error")

    failing = FailingMessageStore(store.db_pool)
    service = build_service(failing)

    with pytest.raises(StoreUnavailable):
        await service.warn_before_closing(interaction.id, now=NOW)

    # The claim and the unread marker were committed together
    assert (await store.get_interaction(interaction.id)).warned_at == NOW
    updated_chat = await store.get_chat(chat.id)
    assert not updated_chat.read
    assert updated_chat.un_read_count == 1
