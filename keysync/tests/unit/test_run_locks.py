from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import update

from keysync.core.config import get_settings
from keysync.core.errors import LockHeldError, LockUnavailableError
from keysync.domain.models import LockState
from keysync.persistence.db import SessionLocal
from keysync.services import locks as locks_module
from keysync.services.locks import (
    acquire_run_lock,
    clear_run_lock,
    hold_run_lock,
    lock_held_until,
    release_run_lock,
)


class _FakeRedis:
    def __init__(self) -> None:
        self._values: dict[str, tuple[str, int | None]] = {}
        self.now = 0

    def advance(self, seconds: int) -> None:
        self.now += int(seconds)

    def _expired(self, key: str) -> bool:
        item = self._values.get(key)
        if item is None:
            return True
        _value, expiry = item
        return expiry is not None and self.now >= expiry

    async def set(self, key: str, value: str, nx: bool = False, ex: int | None = None):  # noqa: ANN001
        if nx and not self._expired(key):
            return False
        expiry = self.now + int(ex) if ex is not None else None
        self._values[key] = (str(value), expiry)
        return True

    async def get(self, key: str):  # noqa: ANN001
        if self._expired(key):
            self._values.pop(key, None)
            return None
        return self._values[key][0]

    async def delete(self, key: str) -> int:
        existed = not self._expired(key)
        self._values.pop(key, None)
        return 1 if existed else 0

    async def ttl(self, key: str) -> int:
        if self._expired(key):
            return -2
        _value, expiry = self._values[key]
        return -1 if expiry is None else expiry - self.now


@pytest.mark.asyncio
async def test_db_lock_has_a_single_owner_until_released() -> None:
    first = await acquire_run_lock("reconciliation", ttl_seconds=60)
    assert first is not None
    assert await acquire_run_lock("reconciliation", ttl_seconds=60) is None
    assert await lock_held_until("reconciliation") is not None

    await release_run_lock(first)
    second = await acquire_run_lock("reconciliation", ttl_seconds=60)
    assert second is not None
    assert second.token != first.token
    # A stale holder releasing late must not free the new owner's lock.
    await release_run_lock(first)
    assert await acquire_run_lock("reconciliation", ttl_seconds=60) is None


@pytest.mark.asyncio
async def test_db_lock_self_heals_after_expiry() -> None:
    assert await acquire_run_lock("worker:purge", ttl_seconds=60) is not None
    async with SessionLocal() as session:
        await session.execute(
            update(LockState)
            .where(LockState.name == "worker:purge")
            .values(held_until=datetime.now(timezone.utc) - timedelta(seconds=1))
        )
        await session.commit()
    assert await lock_held_until("worker:purge") is None
    assert await acquire_run_lock("worker:purge", ttl_seconds=60) is not None


@pytest.mark.asyncio
async def test_db_lock_concurrent_acquirers_yield_one_winner() -> None:
    results = await asyncio.gather(*(acquire_run_lock("worker:provision", ttl_seconds=60) for _ in range(5)))
    assert len([lock for lock in results if lock is not None]) == 1


@pytest.mark.asyncio
async def test_clear_and_hold_run_lock() -> None:
    await acquire_run_lock("reconciliation", ttl_seconds=600)
    with pytest.raises(LockHeldError):
        async with hold_run_lock("reconciliation", ttl_seconds=60):
            pass
    assert await clear_run_lock("reconciliation") is True
    async with hold_run_lock("reconciliation", ttl_seconds=60) as lock:
        assert lock.name == "reconciliation"
    assert await lock_held_until("reconciliation") is None


@pytest.mark.asyncio
async def test_redis_lock_backend(monkeypatch) -> None:
    fake = _FakeRedis()

    async def _fake_redis():
        return fake

    monkeypatch.setenv("LOCK_BACKEND", "redis")
    monkeypatch.setattr(locks_module, "get_resilience_redis", _fake_redis)
    get_settings.cache_clear()

    first = await acquire_run_lock("reconciliation", ttl_seconds=30)
    assert first is not None
    assert await acquire_run_lock("reconciliation", ttl_seconds=30) is None
    held = await lock_held_until("reconciliation")
    assert held is not None and held > datetime.now(timezone.utc)

    fake.advance(31)
    second = await acquire_run_lock("reconciliation", ttl_seconds=30)
    assert second is not None
    await release_run_lock(first)
    assert await acquire_run_lock("reconciliation", ttl_seconds=30) is None
    await release_run_lock(second)
    assert await lock_held_until("reconciliation") is None


@pytest.mark.asyncio
async def test_redis_backend_unavailable_raises(monkeypatch) -> None:
    async def _no_redis():
        return None

    monkeypatch.setenv("LOCK_BACKEND", "redis")
    monkeypatch.setattr(locks_module, "get_resilience_redis", _no_redis)
    get_settings.cache_clear()
    with pytest.raises(LockUnavailableError):
        await acquire_run_lock("reconciliation", ttl_seconds=30)
