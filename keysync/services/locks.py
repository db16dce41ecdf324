from __future__ import annotations

from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
import logging
from typing import AsyncIterator
from uuid import uuid4

from sqlalchemy import or_, update
from sqlalchemy.exc import IntegrityError

from keysync.core.config import get_settings
from keysync.core.errors import LockHeldError, LockUnavailableError
from keysync.domain.models import LockState
from keysync.persistence.db import SessionLocal
from keysync.services.resilience import get_resilience_redis


logger = logging.getLogger(__name__)

REDIS_LOCK_PREFIX = "keysync:lock:"


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(slots=True)
class RunLock:
    name: str
    token: str
    held_until: datetime


class DatabaseLockRepository:
    """Run-level locks stored as rows of run_locks."""

    async def acquire(self, name: str, *, ttl_seconds: int) -> RunLock | None:
        # One conditional update claims an absent-or-expired lock; losers see rowcount 0.
        now = _utc_now()
        held_until = now + timedelta(seconds=max(1, int(ttl_seconds)))
        token = uuid4().hex
        async with SessionLocal() as session:
            result = await session.execute(
                update(LockState)
                .where(
                    LockState.name == name,
                    or_(LockState.held_until.is_(None), LockState.held_until <= now),
                )
                .values(holder_token=token, held_until=held_until)
            )
            if int(result.rowcount or 0) == 1:
                await session.commit()
                return RunLock(name=name, token=token, held_until=held_until)
            existing = await session.get(LockState, name)
            if existing is not None:
                await session.rollback()
                return None
            session.add(LockState(name=name, holder_token=token, held_until=held_until))
            try:
                await session.commit()
            except IntegrityError:
                # Another invocation created the row first.
                await session.rollback()
                return None
        return RunLock(name=name, token=token, held_until=held_until)

    async def release(self, lock: RunLock) -> None:
        # Release only while still the holder so a newer owner is never clobbered.
        async with SessionLocal() as session:
            await session.execute(
                update(LockState)
                .where(LockState.name == lock.name, LockState.holder_token == lock.token)
                .values(holder_token=None, held_until=None)
            )
            await session.commit()

    async def clear(self, name: str) -> bool:
        async with SessionLocal() as session:
            result = await session.execute(
                update(LockState).where(LockState.name == name).values(holder_token=None, held_until=None)
            )
            await session.commit()
            return int(result.rowcount or 0) > 0

    async def held_until(self, name: str) -> datetime | None:
        async with SessionLocal() as session:
            row = await session.get(LockState, name)
            if row is None or row.held_until is None or row.held_until <= _utc_now():
                return None
            return row.held_until


class RedisLockRepository:
    """Run-level locks stored as expiring Redis keys."""

    async def _redis(self):  # noqa: ANN202
        redis = await get_resilience_redis()
        if redis is None:
            raise LockUnavailableError("redis lock backend unavailable")
        return redis

    async def acquire(self, name: str, *, ttl_seconds: int) -> RunLock | None:
        redis = await self._redis()
        ttl = max(1, int(ttl_seconds))
        token = uuid4().hex
        acquired = await redis.set(f"{REDIS_LOCK_PREFIX}{name}", token, nx=True, ex=ttl)
        if not acquired:
            return None
        return RunLock(name=name, token=token, held_until=_utc_now() + timedelta(seconds=ttl))

    async def release(self, lock: RunLock) -> None:
        redis = await self._redis()
        key = f"{REDIS_LOCK_PREFIX}{lock.name}"
        current = await redis.get(key)
        value = current.decode("utf-8") if isinstance(current, (bytes, bytearray)) else str(current or "")
        if value == lock.token:
            await redis.delete(key)

    async def clear(self, name: str) -> bool:
        redis = await self._redis()
        return bool(await redis.delete(f"{REDIS_LOCK_PREFIX}{name}"))

    async def held_until(self, name: str) -> datetime | None:
        redis = await self._redis()
        ttl = await redis.ttl(f"{REDIS_LOCK_PREFIX}{name}")
        if ttl is None or int(ttl) <= 0:
            return None
        return _utc_now() + timedelta(seconds=int(ttl))


def get_lock_repository() -> DatabaseLockRepository | RedisLockRepository:
    backend = get_settings().lock_backend.strip().lower()
    if backend == "redis":
        return RedisLockRepository()
    return DatabaseLockRepository()


async def acquire_run_lock(name: str, *, ttl_seconds: int) -> RunLock | None:
    lock = await get_lock_repository().acquire(name, ttl_seconds=ttl_seconds)
    if lock is None:
        logger.info("run_lock_busy name=%s", name)
    return lock


async def release_run_lock(lock: RunLock) -> None:
    await get_lock_repository().release(lock)


async def clear_run_lock(name: str) -> bool:
    # Administrative override; normal operation relies on expiry.
    cleared = await get_lock_repository().clear(name)
    logger.warning("run_lock_cleared name=%s cleared=%s", name, cleared)
    return cleared


async def lock_held_until(name: str) -> datetime | None:
    return await get_lock_repository().held_until(name)


@asynccontextmanager
async def hold_run_lock(name: str, *, ttl_seconds: int) -> AsyncIterator[RunLock]:
    lock = await acquire_run_lock(name, ttl_seconds=ttl_seconds)
    if lock is None:
        raise LockHeldError(f"run lock {name} is held")
    try:
        yield lock
    finally:
        await release_run_lock(lock)
