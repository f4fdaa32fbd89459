from __future__ import annotations

import asyncio
import zlib
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

import structlog
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from Attributable.metrics import inc_counter, observe_histogram

log = structlog.get_logger()

# Advisory lock namespace (first int of the two-int variant)
_ADVISORY_CLASS = 2001


def advisory_key(key: str) -> int:
    """Stable signed 32-bit key for pg_try_advisory_xact_lock."""
    value = zlib.crc32(key.encode("utf-8"))
    return value - (1 << 32) if value >= (1 << 31) else value


def _is_postgres(s: AsyncSession) -> bool:
    bind = getattr(s, "bind", None)
    dialect = getattr(bind, "dialect", None)
    return bool(dialect is not None and (dialect.name or "").lower().startswith("postgres"))


class KeyLocks:
    """Per natural-key serialization for import writes.

    ``hold`` takes an in-process ``asyncio.Lock`` for the key and should wrap
    the whole transaction. ``advisory`` additionally takes a Postgres
    transaction-scoped advisory lock on the session, released by commit or
    rollback; on other databases it is a no-op.
    """

    def __init__(self, *, timeout_seconds: float = 3.0):
        self.timeout_seconds = timeout_seconds
        self._locks: dict[str, asyncio.Lock] = {}

    def _local_lock(self, key: str) -> asyncio.Lock:
        lk = self._locks.get(key)
        if lk is None:
            lk = asyncio.Lock()
            self._locks[key] = lk
        return lk

    @asynccontextmanager
    async def hold(self, key: str) -> AsyncIterator[None]:
        async with self._local_lock(key):
            yield None

    async def advisory(self, s: AsyncSession, key: str) -> str:
        """Take the database lock for ``key``; returns the lock mode used."""
        if not _is_postgres(s):
            inc_counter("locks.mode.inproc")
            return "inproc_only"
        waited_ms = 0
        step_ms = 50
        max_ms = int(self.timeout_seconds * 1000)
        while True:
            q = await s.execute(
                text("SELECT pg_try_advisory_xact_lock(:c, :k)"),
                {"c": _ADVISORY_CLASS, "k": advisory_key(key)},
            )
            if bool(q.scalar_one()):
                break
            if waited_ms >= max_ms:
                inc_counter("locks.acquire.timeout")
                observe_histogram("locks.wait_ms", waited_ms)
                log.warning("locks.acquire.timeout", key=key, waited_ms=waited_ms)
                raise TimeoutError(f"advisory lock timeout for {key!r}")
            await asyncio.sleep(step_ms / 1000)
            waited_ms += step_ms
        inc_counter("locks.acquire.success")
        inc_counter("locks.mode.pg")
        observe_histogram("locks.wait_ms", waited_ms)
        return "pg+inproc"
