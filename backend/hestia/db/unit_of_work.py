"""
Unit of work
============
``UnitOfWork.transaction()`` opens one session and one database
transaction. Everything written inside the ``async with`` block commits
together or not at all. Callbacks registered with ``Transaction.after_commit``
run only once the commit has succeeded; they are how notifications and
storage cleanup stay out of the atomic section.

Race detection: unique-constraint violations and optimistic row-version
mismatches are converted to ``StateConflict``. Any other integrity error
(NOT NULL, foreign key) is an ``InvariantViolation``.
"""
from __future__ import annotations

import logging
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm.exc import StaleDataError

from hestia.core.errors import InvariantViolation, StateConflict
from hestia.db.repository import PolicyRepository

logger = logging.getLogger(__name__)

PostCommitHook = Callable[[], Awaitable[None]]


def is_unique_violation(err: IntegrityError) -> bool:
    """SQLSTATE 23505 on PostgreSQL, "UNIQUE constraint failed" on SQLite."""
    orig = err.orig
    if getattr(orig, "sqlstate", None) == "23505" or getattr(orig, "pgcode", None) == "23505":
        return True
    return "unique" in str(orig).lower()


class Transaction:
    def __init__(self, session: AsyncSession) -> None:
        self.session = session
        self.repo = PolicyRepository(session)
        self._after_commit: list[PostCommitHook] = []

    def after_commit(self, hook: PostCommitHook) -> None:
        self._after_commit.append(hook)

    async def _run_after_commit(self) -> None:
        # the data is already committed; one failing hook must not stop the others
        for hook in self._after_commit:
            try:
                await hook()
            except Exception:
                logger.exception(f"Post-commit hook {getattr(hook, '__qualname__', hook)} failed")


class UnitOfWork:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[Transaction]:
        async with self._session_factory() as session:
            tx = Transaction(session)
            try:
                async with session.begin():
                    yield tx
            except IntegrityError as err:
                if not is_unique_violation(err):
                    logger.error(f"Transaction rolled back on integrity error: {err.orig}")
                    raise InvariantViolation("Integrity constraint violated", constraint=str(err.orig)) from err
                logger.warning(f"Transaction rolled back on constraint violation: {err.orig}")
                raise StateConflict(
                    "Concurrent modification detected (unique constraint)",
                    constraint=str(err.orig),
                ) from err
            except StaleDataError as err:
                logger.warning(f"Transaction rolled back on stale row version: {err}")
                raise StateConflict("Policy was modified concurrently; reload and retry") from err
        await tx._run_after_commit()
