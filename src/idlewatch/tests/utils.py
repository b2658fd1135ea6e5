"""Test utilities and shared fakes."""

from datetime import datetime, timedelta, timezone
from typing import Any, List, Optional, Tuple
import asyncio
import uuid

import aiosqlite
from aiosqlitepool import SQLiteConnectionPool

from idlewatch.database.manager import init_database
from idlewatch.database.store import SQLiteConversationStore
from idlewatch.integrations.notifier import DeliveryResult
from idlewatch.lifecycle.composer import TemplateComposer
from idlewatch.lifecycle.engine import LifecycleEngine
from idlewatch.lifecycle.policy import IdlePolicy
from idlewatch.lifecycle.service import InteractionService
from idlewatch.schemas.interaction import (
    AgentReminderSettings,
    Chat,
    Interaction,
    InteractionStatus,
)


NOW = datetime(2026, 3, 2, 12, 0, tzinfo=timezone.utc)


class MockLogger:
    """Logger implementing the Litestar Logger protocol that keeps what it was told."""

    def __init__(self) -> None:
        self.records: List[Tuple[str, str]] = []

    def _record(self, level: str, msg: Any, *args: Any) -> None:
        text = str(msg) % args if args else str(msg)
        self.records.append((level, text))

    def debug(self, msg, *args, **kwargs): self._record("debug", msg, *args)
    def info(self, msg, *args, **kwargs): self._record("info", msg, *args)
    def warning(self, msg, *args, **kwargs): self._record("warning", msg, *args)
    def warn(self, msg, *args, **kwargs): self._record("warning", msg, *args)
    def error(self, msg, *args, **kwargs): self._record("error", msg, *args)
    def exception(self, msg, *args, **kwargs): self._record("error", msg, *args)
    def critical(self, msg, *args, **kwargs): self._record("critical", msg, *args)
    def fatal(self, msg, *args, **kwargs): self._record("critical", msg, *args)
    def setLevel(self, *args, **kwargs): pass

    def messages(self, level: str) -> List[str]:
        return [text for lvl, text in self.records if lvl == level]


class FixedClock:
    def __init__(self, now: datetime = NOW) -> None:
        self.current = now

    def now(self) -> datetime:
        return self.current

    def advance(self, minutes: float) -> datetime:
        self.current = self.current + timedelta(minutes=minutes)
        return self.current


class RecordingEventSink:
    def __init__(self) -> None:
        self.events: List[Tuple[str, str, Any]] = []

    def publish(self, scope_id: str, event_name: str, payload: Any) -> None:
        self.events.append((scope_id, event_name, payload))


class StubNotifier:
    """Notifier returning a canned result, optionally slowly or by raising."""

    def __init__(
        self,
        result: Optional[DeliveryResult] = None,
        delay: float = 0.0,
        error: Optional[Exception] = None,
    ) -> None:
        self.result = result or DeliveryResult(success=True, provider_message_id="wamid-1")
        self.delay = delay
        self.error = error
        self.calls: List[Tuple[str, str]] = []

    async def send(self, address: str, text: str) -> DeliveryResult:
        self.calls.append((address, text))
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return self.result


TEST_COMPOSER = TemplateComposer(
    warning_template="Idle for {idle_minutes} minutes, closing in {close_minutes} minutes.",
    generic_warning="This conversation will be closed soon.",
    closure_text="This conversation was closed due to inactivity.",
    resolution_text="Conversation closed",
)


def create_test_pool() -> SQLiteConnectionPool:
    # A uniquely named shared-cache database lives as long as the pool keeps a connection
    uri = f"file:idlewatch-{uuid.uuid4().hex}?mode=memory&cache=shared"
    return SQLiteConnectionPool(lambda: aiosqlite.connect(uri, uri=True))


async def create_test_store() -> Tuple[SQLiteConnectionPool, SQLiteConversationStore]:
    db_pool = create_test_pool()
    await init_database(db_pool)
    return db_pool, SQLiteConversationStore(db_pool)


async def seed_conversation(
    store: SQLiteConversationStore,
    *,
    status: InteractionStatus = InteractionStatus.RUNNING,
    idle_minutes: float = 35,
    warned_minutes_ago: Optional[float] = None,
    human_talk: bool = False,
    reminder_interval: Optional[int] = 30,
    enabled_reminder: bool = True,
    phone: Optional[str] = "+15550001111",
    agent_id: Optional[str] = None,
    now: datetime = NOW,
) -> Tuple[Chat, Interaction]:
    agent_id = agent_id or f"agent-{uuid.uuid4().hex[:8]}"
    chat = Chat(
        id=str(uuid.uuid4()),
        agent_id=agent_id,
        workspace_id="workspace-1",
        updated_at=now - timedelta(minutes=idle_minutes),
        human_talk=human_talk,
        whatsapp_phone=phone,
    )
    interaction = Interaction(
        id=str(uuid.uuid4()),
        chat_id=chat.id,
        agent_id=agent_id,
        workspace_id=chat.workspace_id,
        status=status,
        start_at=now - timedelta(hours=3),
        warned_at=(
            now - timedelta(minutes=warned_minutes_ago)
            if warned_minutes_ago is not None
            else None
        ),
        transfer_at=now - timedelta(hours=2) if status == InteractionStatus.WAITING else None,
    )

    await store.create_chat(chat)
    await store.create_interaction(interaction)
    await store.save_reminder_settings(
        AgentReminderSettings(
            agent_id=agent_id,
            enabled_reminder=enabled_reminder,
            reminder_interval_minutes=reminder_interval,
        )
    )
    return chat, interaction


def build_service(
    store: Any,
    notifier: Optional[StubNotifier] = None,
    events: Optional[RecordingEventSink] = None,
    clock: Optional[FixedClock] = None,
    logger: Optional[MockLogger] = None,
    delivery_timeout: float = 1.0,
) -> InteractionService:
    return InteractionService(
        store=store,
        notifier=notifier or StubNotifier(),
        events=events or RecordingEventSink(),
        composer=TEST_COMPOSER,
        clock=clock or FixedClock(),
        logger=logger or MockLogger(),
        delivery_timeout=delivery_timeout,
    )


def build_engine(
    store: Any,
    service: InteractionService,
    policy: Optional[IdlePolicy] = None,
    logger: Optional[MockLogger] = None,
    candidate_timeout: float = 5.0,
    notify_on_close: bool = True,
) -> LifecycleEngine:
    return LifecycleEngine(
        store=store,
        service=service,
        policy=policy or IdlePolicy(close_after_warn_minutes=1, waiting_resolve_after_minutes=120),
        composer=TEST_COMPOSER,
        logger=logger or MockLogger(),
        candidate_timeout=candidate_timeout,
        notify_on_close=notify_on_close,
    )
