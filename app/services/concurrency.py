"""
app/services/concurrency.py

Serialização por chave e transações com compare-and-set.

- `KeyedLock`: um asyncio.Lock por chave (ex: "like:<actor>|<status>")
- `retrying_transaction()`: executa `fn(session)` numa transação; conflitos de
  versão (StaleDataError) ou de unicidade (IntegrityError) relêem e tentam de novo
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Awaitable, Callable, TypeVar

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm.exc import StaleDataError

from app.errors import ConsistencyConflict

log = logging.getLogger(__name__)

T = TypeVar("T")

MAX_CONFLICT_RETRIES = 3


class KeyedLock:
    def __init__(self):
        self._locks: dict[str, asyncio.Lock] = {}
        self._holders: dict[str, int] = {}

    @asynccontextmanager
    async def hold(self, key: str):
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._holders[key] = self._holders.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._holders[key] -= 1
            if not self._holders[key]:
                del self._holders[key]
                self._locks.pop(key, None)

    def __len__(self) -> int:
        return len(self._locks)


async def retrying_transaction(
    session_factory: async_sessionmaker,
    fn: Callable[[AsyncSession], Awaitable[T]],
    retries: int = MAX_CONFLICT_RETRIES,
) -> T:
    last_error = None
    for attempt in range(1, retries + 1):
        try:
            async with session_factory() as session:
                async with session.begin():
                    return await fn(session)
        except (StaleDataError, IntegrityError) as e:
            log.warning(f"Conflito de concorrência (tentativa {attempt}/{retries}): {e}")
            last_error = e
    raise ConsistencyConflict(f"Conflito persistente após {retries} tentativas") from last_error
