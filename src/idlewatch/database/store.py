"""
Conversation store used by the lifecycle engine.

Every state change is a conditional update: the WHERE clause carries the
state the caller observed, so a write based on a stale read affects no rows
instead of clobbering a concurrent transition.
"""

from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, List, Optional, Protocol, Tuple, TypeVar, cast
from aiosqlitepool import SQLiteConnectionPool
import functools
import sqlite3
import uuid

from idlewatch.errors import StoreUnavailable
from idlewatch.schemas.interaction import (
    AgentReminderSettings,
    Chat,
    Interaction,
    InteractionSnapshot,
    InteractionStatus,
    InteractionWithMessages,
    Message,
    MessageView,
    TransitionGuard,
)


F = TypeVar("F", bound=Callable[..., Awaitable[Any]])


class ConversationStore(Protocol):
    async def find_running_candidates(self) -> List[InteractionSnapshot]: ...

    async def find_waiting_candidates(self) -> List[InteractionSnapshot]: ...

    async def transition_to_warned(
        self,
        interaction_id: str,
        now: datetime,
        guard: Optional[TransitionGuard] = None,
    ) -> bool: ...

    async def transition_to_resolved(
        self,
        interaction_id: str,
        now: datetime,
        reason: str,
        guard: Optional[TransitionGuard] = None,
    ) -> Optional[Message]: ...

    async def get_interaction(self, interaction_id: str) -> Optional[Interaction]: ...

    async def get_chat(self, chat_id: str) -> Optional[Chat]: ...

    async def create_message(
        self,
        chat_id: str,
        interaction_id: Optional[str],
        role: str,
        text: str,
        now: datetime,
    ) -> Message: ...

    async def mark_message_sent(
        self, message_id: str, sent_at: datetime, provider_message_id: Optional[str]
    ) -> None: ...

    async def mark_message_failed(
        self, message_id: str, failed_at: datetime, reason: str
    ) -> None: ...

    async def latest_interaction_with_messages(
        self, chat_id: str
    ) -> Optional[InteractionWithMessages]: ...


def store_operation(func: F) -> F:
    """Report database failures as StoreUnavailable."""

    @functools.wraps(func)
    async def wrapper(*args: Any, **kwargs: Any) -> Any:
        try:
            return await func(*args, **kwargs)
        except (sqlite3.Error, OSError) as e:
            raise StoreUnavailable(f"{func.__name__} failed: {e}") from e

    return cast(F, wrapper)


def to_db_time(value: Optional[datetime]) -> Optional[str]:
    # Fixed-width UTC strings compare correctly as text
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def from_db_time(value: Optional[str]) -> Optional[datetime]:
    if value is None:
        return None
    parsed = datetime.fromisoformat(value)
    # Rows written by other tools may hold naive SQLite timestamps, which are UTC
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def guard_clauses(guard: Optional[TransitionGuard]) -> Tuple[str, List[Any]]:
    if guard is None:
        return "", []

    clauses: List[str] = []
    params: List[Any] = []

    if guard.expected_status is not None:
        clauses.append("status = ?")
        params.append(guard.expected_status.value)

    if guard.warned_before is not None:
        clauses.append("warned_at IS NOT NULL AND julianday(warned_at) < julianday(?)")
        params.append(to_db_time(guard.warned_before))

    chat_conditions: List[str] = []
    if guard.chat_idle_before is not None:
        chat_conditions.append("julianday(c.updated_at) < julianday(?)")
        params.append(to_db_time(guard.chat_idle_before))
    if guard.require_no_human_talk:
        chat_conditions.append("c.human_talk = 0")

    if chat_conditions:
        clauses.append(
            "EXISTS (SELECT 1 FROM chats c WHERE c.id = interactions.chat_id AND "
            + " AND ".join(chat_conditions)
            + ")"
        )

    return "".join(f" AND {clause}" for clause in clauses), params


INTERACTION_COLUMNS = (
    "id, chat_id, agent_id, workspace_id, status, start_at, "
    "warned_at, transfer_at, resolved_at, user_id"
)
CHAT_COLUMNS = (
    "id, agent_id, workspace_id, updated_at, human_talk, whatsapp_phone, "
    "read, un_read_count"
)
MESSAGE_COLUMNS = (
    "id, chat_id, role, text, created_at, interaction_id, type, "
    "sent_to_channel, sent_at, failed_at, fail_reason, provider_message_id"
)


def interaction_from_row(row: Any) -> Interaction:
    return Interaction(
        id=row[0],
        chat_id=row[1],
        agent_id=row[2],
        workspace_id=row[3],
        status=InteractionStatus(row[4]),
        start_at=cast(datetime, from_db_time(row[5])),
        warned_at=from_db_time(row[6]),
        transfer_at=from_db_time(row[7]),
        resolved_at=from_db_time(row[8]),
        user_id=row[9],
    )


def chat_from_row(row: Any) -> Chat:
    return Chat(
        id=row[0],
        agent_id=row[1],
        workspace_id=row[2],
        updated_at=cast(datetime, from_db_time(row[3])),
        human_talk=bool(row[4]),
        whatsapp_phone=row[5],
        read=bool(row[6]),
        un_read_count=row[7],
    )


def message_from_row(row: Any) -> Message:
    return Message(
        id=row[0],
        chat_id=row[1],
        role=row[2],
        text=row[3],
        created_at=cast(datetime, from_db_time(row[4])),
        interaction_id=row[5],
        type=row[6],
        sent_to_channel=bool(row[7]),
        sent_at=from_db_time(row[8]),
        failed_at=from_db_time(row[9]),
        fail_reason=row[10],
        provider_message_id=row[11],
    )


def snapshot_from_row(row: Any) -> InteractionSnapshot:
    reminder = None
    if row[11] is not None:
        reminder = AgentReminderSettings(
            agent_id=row[11],
            enabled_reminder=bool(row[12]),
            reminder_interval_minutes=row[13],
        )

    return InteractionSnapshot(
        id=row[0],
        chat_id=row[1],
        agent_id=row[2],
        workspace_id=row[3],
        status=InteractionStatus(row[4]),
        start_at=cast(datetime, from_db_time(row[5])),
        warned_at=from_db_time(row[6]),
        transfer_at=from_db_time(row[7]),
        chat_updated_at=cast(datetime, from_db_time(row[8])),
        human_talk=bool(row[9]),
        delivery_address=row[10],
        reminder=reminder,
    )


class SQLiteConversationStore:
    def __init__(self, db_pool: SQLiteConnectionPool) -> None:
        self.db_pool = db_pool

    async def _find_candidates(self, status: InteractionStatus) -> List[InteractionSnapshot]:
        async with self.db_pool.connection() as db:
            cursor = await db.execute(
                """
                SELECT i.id, i.chat_id, i.agent_id, i.workspace_id, i.status, i.start_at,
                       i.warned_at, i.transfer_at, c.updated_at, c.human_talk, c.whatsapp_phone,
                       s.agent_id, s.enabled_reminder, s.reminder_interval_minutes
                FROM interactions i
                JOIN chats c ON c.id = i.chat_id
                LEFT JOIN agent_settings s ON s.agent_id = i.agent_id
                WHERE i.status = ?
                ORDER BY i.start_at ASC
                """,
                (status.value,),
            )
            rows = await cursor.fetchall()

        return [snapshot_from_row(row) for row in rows]

    @store_operation
    async def find_running_candidates(self) -> List[InteractionSnapshot]:
        return await self._find_candidates(InteractionStatus.RUNNING)

    @store_operation
    async def find_waiting_candidates(self) -> List[InteractionSnapshot]:
        return await self._find_candidates(InteractionStatus.WAITING)

    @store_operation
    async def transition_to_warned(
        self,
        interaction_id: str,
        now: datetime,
        guard: Optional[TransitionGuard] = None,
    ) -> bool:
        """Claim the warning and mark the chat unread in one transaction."""
        guard_sql, guard_params = guard_clauses(guard)
        async with self.db_pool.connection() as db:
            try:
                cursor = await db.execute(
                    "UPDATE interactions SET warned_at = ? "
                    "WHERE id = ? AND status = 'RUNNING' AND warned_at IS NULL" + guard_sql,
                    [to_db_time(now), interaction_id] + guard_params,
                )
                if cursor.rowcount != 1:
                    await db.rollback()  # type: ignore
                    return False

                await db.execute(
                    "UPDATE chats SET read = 0, un_read_count = un_read_count + 1 "
                    "WHERE id = (SELECT chat_id FROM interactions WHERE id = ?)",
                    (interaction_id,),
                )
                await db.commit()  # type: ignore
            except Exception:
                await db.rollback()  # type: ignore
                raise

        return True

    @store_operation
    async def transition_to_resolved(
        self,
        interaction_id: str,
        now: datetime,
        reason: str,
        guard: Optional[TransitionGuard] = None,
    ) -> Optional[Message]:
        """Resolve the interaction, write the audit message and mark the chat unread in one transaction."""
        guard_sql, guard_params = guard_clauses(guard)
        async with self.db_pool.connection() as db:
            try:
                cursor = await db.execute(
                    "UPDATE interactions SET status = 'RESOLVED', resolved_at = ? "
                    "WHERE id = ? AND status != 'RESOLVED'" + guard_sql,
                    [to_db_time(now), interaction_id] + guard_params,
                )
                if cursor.rowcount != 1:
                    await db.rollback()  # type: ignore
                    return None

                cursor = await db.execute(
                    "SELECT chat_id FROM interactions WHERE id = ?", (interaction_id,)
                )
                row = (await cursor.fetchall())[0]
                chat_id = row[0]

                audit = Message(
                    id=str(uuid.uuid4()),
                    chat_id=chat_id,
                    role="system",
                    text=reason,
                    created_at=now,
                    interaction_id=interaction_id,
                )
                await db.execute(
                    "INSERT INTO messages (id, chat_id, interaction_id, role, type, text, created_at) "
                    "VALUES (?, ?, ?, ?, ?, ?, ?)",
                    (
                        audit.id,
                        audit.chat_id,
                        audit.interaction_id,
                        audit.role,
                        audit.type,
                        audit.text,
                        to_db_time(audit.created_at),
                    ),
                )
                await db.execute(
                    "UPDATE chats SET read = 0, un_read_count = un_read_count + 1 WHERE id = ?",
                    (chat_id,),
                )
                await db.commit()  # type: ignore
            except Exception:
                await db.rollback()  # type: ignore
                raise

        return audit

    @store_operation
    async def get_interaction(self, interaction_id: str) -> Optional[Interaction]:
        async with self.db_pool.connection() as db:
            cursor = await db.execute(
                f"SELECT {INTERACTION_COLUMNS} FROM interactions WHERE id = ?",
                (interaction_id,),
            )
            rows = await cursor.fetchall()
            row = rows[0] if rows else None

        return interaction_from_row(row) if row else None

    @store_operation
    async def get_chat(self, chat_id: str) -> Optional[Chat]:
        async with self.db_pool.connection() as db:
            cursor = await db.execute(
                f"SELECT {CHAT_COLUMNS} FROM chats WHERE id = ?", (chat_id,)
            )
            rows = await cursor.fetchall()
            row = rows[0] if rows else None

        return chat_from_row(row) if row else None

    @store_operation
    async def create_message(
        self,
        chat_id: str,
        interaction_id: Optional[str],
        role: str,
        text: str,
        now: datetime,
    ) -> Message:
        message = Message(
            id=str(uuid.uuid4()),
            chat_id=chat_id,
            role=role,
            text=text,
            created_at=now,
            interaction_id=interaction_id,
        )
        async with self.db_pool.connection() as db:
            await db.execute(
                "INSERT INTO messages (id, chat_id, interaction_id, role, type, text, created_at) "
                "VALUES (?, ?, ?, ?, ?, ?, ?)",
                (
                    message.id,
                    message.chat_id,
                    message.interaction_id,
                    message.role,
                    message.type,
                    message.text,
                    to_db_time(message.created_at),
                ),
            )
            await db.commit()  # type: ignore

        return message

    @store_operation
    async def mark_message_sent(
        self, message_id: str, sent_at: datetime, provider_message_id: Optional[str]
    ) -> None:
        async with self.db_pool.connection() as db:
            await db.execute(
                "UPDATE messages SET sent_to_channel = 1, sent_at = ?, provider_message_id = ? "
                "WHERE id = ?",
                (to_db_time(sent_at), provider_message_id, message_id),
            )
            await db.commit()  # type: ignore

    @store_operation
    async def mark_message_failed(
        self, message_id: str, failed_at: datetime, reason: str
    ) -> None:
        async with self.db_pool.connection() as db:
            await db.execute(
                "UPDATE messages SET failed_at = ?, fail_reason = ? WHERE id = ?",
                (to_db_time(failed_at), reason, message_id),
            )
            await db.commit()  # type: ignore

    @store_operation
    async def latest_interaction_with_messages(
        self, chat_id: str
    ) -> Optional[InteractionWithMessages]:
        async with self.db_pool.connection() as db:
            cursor = await db.execute(
                f"SELECT {INTERACTION_COLUMNS} FROM interactions "
                "WHERE chat_id = ? ORDER BY start_at DESC LIMIT 1",
                (chat_id,),
            )
            rows = await cursor.fetchall()
            row = rows[0] if rows else None
            if row is None:
                return None
            interaction = interaction_from_row(row)

            cursor = await db.execute(
                f"SELECT {MESSAGE_COLUMNS} FROM messages "
                "WHERE interaction_id = ? ORDER BY created_at ASC, rowid ASC",
                (interaction.id,),
            )
            message_rows = await cursor.fetchall()

        projection = InteractionWithMessages.model_validate(interaction)
        projection.messages = [
            MessageView.model_validate(message_from_row(r)) for r in message_rows
        ]
        return projection

    # Writes owned by conversation handling outside the idle engine

    @store_operation
    async def create_chat(self, chat: Chat) -> None:
        async with self.db_pool.connection() as db:
            await db.execute(
                f"INSERT INTO chats ({CHAT_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
                (
                    chat.id,
                    chat.agent_id,
                    chat.workspace_id,
                    to_db_time(chat.updated_at),
                    int(chat.human_talk),
                    chat.whatsapp_phone,
                    int(chat.read),
                    chat.un_read_count,
                ),
            )
            await db.commit()  # type: ignore

    @store_operation
    async def create_interaction(self, interaction: Interaction) -> None:
        async with self.db_pool.connection() as db:
            await db.execute(
                f"INSERT INTO interactions ({INTERACTION_COLUMNS}) "
                "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                (
                    interaction.id,
                    interaction.chat_id,
                    interaction.agent_id,
                    interaction.workspace_id,
                    interaction.status.value,
                    to_db_time(interaction.start_at),
                    to_db_time(interaction.warned_at),
                    to_db_time(interaction.transfer_at),
                    to_db_time(interaction.resolved_at),
                    interaction.user_id,
                ),
            )
            await db.commit()  # type: ignore

    @store_operation
    async def save_reminder_settings(self, reminder: AgentReminderSettings) -> None:
        async with self.db_pool.connection() as db:
            await db.execute(
                """
                INSERT INTO agent_settings (agent_id, enabled_reminder, reminder_interval_minutes)
                VALUES (?, ?, ?)
                ON CONFLICT(agent_id) DO UPDATE SET
                    enabled_reminder = excluded.enabled_reminder,
                    reminder_interval_minutes = excluded.reminder_interval_minutes
                """,
                (
                    reminder.agent_id,
                    int(reminder.enabled_reminder),
                    reminder.reminder_interval_minutes,
                ),
            )
            await db.commit()  # type: ignore

    @store_operation
    async def record_activity(self, chat_id: str, at: datetime) -> None:
        """Bump the chat's last activity, as every new message does."""
        async with self.db_pool.connection() as db:
            await db.execute(
                "UPDATE chats SET updated_at = ? WHERE id = ?",
                (to_db_time(at), chat_id),
            )
            await db.commit()  # type: ignore

    @store_operation
    async def transfer_to_human(
        self, interaction_id: str, now: datetime, user_id: Optional[str] = None
    ) -> bool:
        async with self.db_pool.connection() as db:
            cursor = await db.execute(
                "UPDATE interactions SET status = 'WAITING', transfer_at = ?, user_id = ? "
                "WHERE id = ? AND status = 'RUNNING'",
                (to_db_time(now), user_id, interaction_id),
            )
            if cursor.rowcount != 1:
                await db.rollback()  # type: ignore
                return False

            await db.execute(
                "UPDATE chats SET human_talk = 1, updated_at = ? "
                "WHERE id = (SELECT chat_id FROM interactions WHERE id = ?)",
                (to_db_time(now), interaction_id),
            )
            await db.commit()  # type: ignore

        return True

    @store_operation
    async def set_human_talk(self, chat_id: str, human_talk: bool, now: datetime) -> None:
        async with self.db_pool.connection() as db:
            await db.execute(
                "UPDATE chats SET human_talk = ?, updated_at = ? WHERE id = ?",
                (int(human_talk), to_db_time(now), chat_id),
            )
            await db.commit()  # type: ignore
