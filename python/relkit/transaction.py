"""Transaction boundaries and deadlock retry."""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager
from typing import TypeVar

from relkit.connection import Connection, ConnectionPool
from relkit.errors import DeadlockOrSerializationConflict, TransactionError

logger = logging.getLogger(__name__)

R = TypeVar("R")


class TransactionCoordinator:
    """Owns at most one open transaction and the connection it runs on.

    Statements issued while a transaction is open run on its connection, in
    issue order. Outside a transaction every statement checks out its own
    pool slot.
    """

    def __init__(self, pool: ConnectionPool, *, attempts: int = 3) -> None:
        self._pool = pool
        self._conn: Connection | None = None
        self._default_attempts = attempts

    @property
    def active(self) -> bool:
        """Whether a transaction is currently open."""
        return self._conn is not None

    @asynccontextmanager
    async def connection(self) -> AsyncIterator[Connection]:
        """Yield the open transaction's connection, or a pooled one."""
        if self._conn is not None:
            yield self._conn
            return
        async with self._pool.acquire() as conn:
            yield conn

    async def begin(self) -> None:
        """Open a transaction. Raises ``TransactionError`` if one is already open."""
        if self._conn is not None:
            raise TransactionError("A transaction is already open on this session")
        conn = await self._pool.checkout()
        try:
            await conn.begin()
        except BaseException:
            self._pool.release(conn)
            raise
        self._conn = conn

    async def commit(self) -> None:
        """Commit the open transaction and release its connection."""
        conn = self._require()
        try:
            await conn.commit()
        except BaseException:
            await self._rollback_after_failed_commit(conn)
            raise
        finally:
            self._conn = None
            self._pool.release(conn)

    async def rollback(self) -> None:
        """Roll back the open transaction and release its connection."""
        conn = self._require()
        try:
            await conn.rollback()
        finally:
            self._conn = None
            self._pool.release(conn)

    async def _rollback_after_failed_commit(self, conn: Connection) -> None:
        try:
            await conn.rollback()
        except Exception:
            # the failed COMMIT already ended the transaction on most drivers
            logger.debug("rollback after failed commit did not apply", exc_info=True)

    def _require(self) -> Connection:
        if self._conn is None:
            raise TransactionError("No transaction is open on this session")
        return self._conn

    @asynccontextmanager
    async def scope(self) -> AsyncIterator[None]:
        """Begin, then commit on success or roll back on any error or cancellation."""
        await self.begin()
        try:
            yield
        except BaseException:
            logger.debug("rolling back transaction after error", exc_info=True)
            await self.rollback()
            raise
        await self.commit()

    @asynccontextmanager
    async def atomic(self) -> AsyncIterator[None]:
        """Join the open transaction, or run the block in a new one."""
        if self._conn is not None:
            yield
            return
        async with self.scope():
            yield

    async def run(self, work: Callable[[], Awaitable[R]], attempts: int | None = None) -> R:
        """Run ``work`` inside a transaction, retrying on deadlock.

        ``work`` is re-run from the start after each rollback caused by a
        ``DeadlockOrSerializationConflict`` until ``attempts`` is exhausted, so
        it must be idempotent up to commit. Any other error rolls back and
        propagates immediately.
        """
        attempts = self._default_attempts if attempts is None else attempts
        if attempts < 1:
            raise ValueError("attempts must be at least 1")

        for attempt in range(1, attempts + 1):
            await self.begin()
            try:
                result = await work()
            except DeadlockOrSerializationConflict:
                await self.rollback()
                if attempt >= attempts:
                    raise
                logger.warning("transaction conflict on attempt %d of %d, retrying", attempt, attempts)
                continue
            except BaseException:
                await self.rollback()
                raise

            try:
                await self.commit()
            except DeadlockOrSerializationConflict:
                if attempt >= attempts:
                    raise
                logger.warning("commit conflict on attempt %d of %d, retrying", attempt, attempts)
                continue
            return result

        raise AssertionError("unreachable")
