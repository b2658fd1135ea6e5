import aiosqlite
from aiosqlitepool import SQLiteConnectionPool
import os
from litestar.types.protocols import Logger
from idlewatch.config import settings


SCHEMA = [
    """
    CREATE TABLE IF NOT EXISTS chats (
        id TEXT PRIMARY KEY,
        agent_id TEXT NOT NULL,
        workspace_id TEXT NOT NULL,
        whatsapp_phone TEXT,
        human_talk INTEGER NOT NULL DEFAULT 0,
        read INTEGER NOT NULL DEFAULT 1,
        un_read_count INTEGER NOT NULL DEFAULT 0,
        updated_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS agent_settings (
        agent_id TEXT PRIMARY KEY,
        enabled_reminder INTEGER NOT NULL DEFAULT 1,
        reminder_interval_minutes INTEGER
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS interactions (
        id TEXT PRIMARY KEY,
        chat_id TEXT NOT NULL REFERENCES chats(id),
        agent_id TEXT NOT NULL,
        workspace_id TEXT NOT NULL,
        status TEXT NOT NULL DEFAULT 'RUNNING',
        start_at TEXT NOT NULL,
        warned_at TEXT,
        transfer_at TEXT,
        resolved_at TEXT,
        user_id TEXT
    )
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_interactions_status
    ON interactions(status)
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_interactions_chat_id
    ON interactions(chat_id, start_at)
    """,
    """
    CREATE TABLE IF NOT EXISTS messages (
        id TEXT PRIMARY KEY,
        chat_id TEXT NOT NULL REFERENCES chats(id),
        interaction_id TEXT REFERENCES interactions(id),
        role TEXT NOT NULL,
        type TEXT NOT NULL DEFAULT 'text',
        text TEXT NOT NULL,
        created_at TEXT NOT NULL,
        sent_to_channel INTEGER NOT NULL DEFAULT 0,
        sent_at TEXT,
        failed_at TEXT,
        fail_reason TEXT,
        provider_message_id TEXT
    )
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_messages_interaction_id
    ON messages(interaction_id, created_at)
    """,
]


async def init_database(db_pool: SQLiteConnectionPool) -> None:
    async with db_pool.connection() as db:
        for statement in SCHEMA:
            await db.execute(statement)
        await db.commit()  # type: ignore


async def create_db_pool(db_path: str, logger: Logger) -> SQLiteConnectionPool:
    def sqlite_connection() -> aiosqlite.Connection:
        if settings.ring == "local":
            logger.info("Creating in-memory database connection")
            return aiosqlite.connect("file::memory:?cache=shared", uri=True)

        logger.info("Creating connection to database at %s", db_path)
        os.makedirs(os.path.dirname(db_path), exist_ok=True)
        return aiosqlite.connect(db_path)

    db_pool = SQLiteConnectionPool(connection_factory=sqlite_connection)  # type: ignore
    await init_database(db_pool)
    logger.info("Database initialized")
    return db_pool
