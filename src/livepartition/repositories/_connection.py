"""
Connection handling helper for the state repositories.

Repositories accept either an AsyncEngine or an AsyncConnection. With an
engine they open their own connection (and transaction for writes); with a
connection they run inside whatever transaction the caller manages, which
lets a caller save migration state atomically with its own statements.
"""

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine


@asynccontextmanager
async def execute_with_connection(
    conn: AsyncConnection | AsyncEngine,
    transactional: bool = True,
) -> AsyncIterator[AsyncConnection]:
    """
    Yield a connection ready for execute() calls.

    Args:
        conn: Database connection or engine
        transactional: With an engine, wrap the block in a transaction
            (engine.begin()) instead of a bare connection (engine.connect()).
            Ignored for connections; the caller owns the transaction.

    Example:
        >>> async with execute_with_connection(self._conn) as conn:
        ...     await conn.execute(query, params)
    """
    if isinstance(conn, AsyncEngine):
        if transactional:
            async with conn.begin() as connection:
                yield connection
        else:
            async with conn.connect() as connection:
                yield connection
    else:
        yield conn
