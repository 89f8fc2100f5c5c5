"""Dialect-aware row creation and key-scoped locks.

Point operations serialise on a (guild) or (guild, user) key inside the
database, never in process memory, so several worker processes can share
one store. PostgreSQL gets transaction-scoped advisory locks. On SQLite every
transaction starts with BEGIN IMMEDIATE (see DatabaseManager), so the database
write lock is held from the first read and the key locks are no-ops there.
"""

import hashlib
import logging
from collections.abc import Iterable, Mapping
from typing import Any

from sqlalchemy import text
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.ext.asyncio import AsyncSession

logger = logging.getLogger(__name__)


def dialect_of(session: AsyncSession) -> str:
    return session.bind.dialect.name


def lock_key(namespace: str, *parts: int) -> int:
    """Map a namespaced key onto the signed 64-bit space used by pg advisory locks."""
    raw = ":".join([namespace, *(str(part) for part in parts)]).encode()
    digest = hashlib.blake2b(raw, digest_size=8).digest()
    return int.from_bytes(digest, "big", signed=True)


async def advisory_lock(session: AsyncSession, namespace: str, *parts: int) -> None:
    """Hold an exclusive lock on the key until the surrounding transaction ends."""
    if dialect_of(session) != "postgresql":
        return

    key = lock_key(namespace, *parts)
    await session.execute(text("SELECT pg_advisory_xact_lock(:key)"), {"key": key})
    logger.debug(f"Acquired advisory lock {namespace}{parts}")


async def insert_ignore(
    session: AsyncSession,
    model: Any,
    values: Mapping[str, Any],
    index_elements: Iterable[str],
) -> bool:
    """INSERT a row unless one with the same key exists (ON CONFLICT DO NOTHING). True if inserted."""
    dialect = dialect_of(session)
    if dialect == "postgresql":
        stmt = postgresql.insert(model).values(**values)
    elif dialect == "sqlite":
        stmt = sqlite.insert(model).values(**values)
    else:
        raise RuntimeError(f"Unsupported dialect: {dialect}")

    result = await session.execute(stmt.on_conflict_do_nothing(index_elements=list(index_elements)))
    return result.rowcount > 0
