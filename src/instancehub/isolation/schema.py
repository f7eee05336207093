"""Minimal schema bootstrapped into every isolated database.

Declared with SQLAlchemy Core so each dialect picks its own column types
(BLOB/DATETIME on SQLite, BYTEA/TIMESTAMP on PostgreSQL).
"""

from sqlalchemy import Column, DateTime, Index, LargeBinary, MetaData, String, Table, func
from sqlalchemy.ext.asyncio import AsyncEngine


def _timestamp(name: str) -> Column:
    return Column(name, DateTime, server_default=func.current_timestamp())


# Primary database
primary_metadata = MetaData()

instance_info = Table(
    "instance_info",
    primary_metadata,
    Column("id", String(255), primary_key=True),
    Column("name", String(255), nullable=False),
    Column("phone", String(50)),
    _timestamp("created_at"),
    _timestamp("updated_at"),
)

sessions = Table(
    "sessions",
    primary_metadata,
    Column("id", String(255), primary_key=True),
    Column("data", LargeBinary),
    _timestamp("created_at"),
    _timestamp("updated_at"),
)

messages = Table(
    "messages",
    primary_metadata,
    Column("id", String(255), primary_key=True),
    Column("chat_id", String(255)),
    Column("message_data", LargeBinary),
    _timestamp("timestamp"),
    Index("idx_messages_chat_id", "chat_id"),
    Index("idx_messages_timestamp", "timestamp"),
)

contacts = Table(
    "contacts",
    primary_metadata,
    Column("id", String(255), primary_key=True),
    Column("name", String(255)),
    Column("phone", String(50)),
    Column("data", LargeBinary),
    _timestamp("created_at"),
    _timestamp("updated_at"),
)

# Key-material database
keys_metadata = MetaData()

encryption_keys = Table(
    "encryption_keys",
    keys_metadata,
    Column("id", String(255), primary_key=True),
    Column("key_data", LargeBinary),
    _timestamp("created_at"),
)

session_keys = Table(
    "session_keys",
    keys_metadata,
    Column("session_id", String(255), primary_key=True),
    Column("key_data", LargeBinary),
    _timestamp("created_at"),
    _timestamp("updated_at"),
)


async def bootstrap_schema(primary: AsyncEngine, keys: AsyncEngine) -> None:
    """Create missing tables and indexes in both databases."""
    async with primary.begin() as conn:
        await conn.run_sync(primary_metadata.create_all, checkfirst=True)
    async with keys.begin() as conn:
        await conn.run_sync(keys_metadata.create_all, checkfirst=True)
