from __future__ import annotations

from keysync.core.config import get_settings
from keysync.services.jobs.queue import backoff_seconds


def test_backoff_doubles_from_base_and_caps() -> None:
    delays = [backoff_seconds(attempt) for attempt in range(1, 9)]
    assert delays == [60, 120, 240, 480, 960, 1920, 3600, 3600]


def test_backoff_handles_large_and_zero_attempts() -> None:
    assert backoff_seconds(0) == 60
    assert backoff_seconds(500) == 3600


def test_backoff_respects_configured_base(monkeypatch) -> None:
    monkeypatch.setenv("JOB_BACKOFF_BASE_S", "5")
    monkeypatch.setenv("JOB_BACKOFF_CAP_S", "30")
    get_settings.cache_clear()
    assert [backoff_seconds(attempt) for attempt in range(1, 6)] == [5, 10, 20, 30, 30]
