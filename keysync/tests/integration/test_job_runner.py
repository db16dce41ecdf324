from __future__ import annotations

import pytest

from keysync.core.config import JOB_PROVISION, JOB_PURGE, JOB_RECONCILIATION, get_settings
from keysync.services.locks import acquire_run_lock
from keysync.services.operability import alerts as alerts_module
from keysync.services.operability import runner as runner_module
from keysync.services.operability.runner import clear_job_lock, get_job_status, run_job
from keysync.tests.utils.remote import SNAPSHOT_PATH, FakeRemote, snapshot_item


@pytest.mark.asyncio
async def test_successful_run_is_recorded() -> None:
    remote = FakeRemote()
    remote.snapshot([[snapshot_item(remote_id=10, owner_id="7", subscription_id="sub-a")]])
    outcome = await run_job(JOB_RECONCILIATION, client=remote.client())

    assert outcome["status"] == "ok"
    assert outcome["processed"] == 1
    status = await get_job_status(JOB_RECONCILIATION)
    assert status["last_status"] == "ok"
    assert status["last_processed"] == 1
    assert status["consecutive_failures"] == 0
    assert status["details"]["stable_streak"] == 1
    assert status["lock_held_until"] is None


@pytest.mark.asyncio
async def test_failures_feed_the_alert_state_machine(monkeypatch) -> None:
    monkeypatch.setenv("ALERTS_ENABLED", "true")
    monkeypatch.setenv("ALERT_THRESHOLD", "2")
    get_settings.cache_clear()
    sent: list[tuple[str, str]] = []

    async def _sender(subject: str, message: str) -> dict[str, bool]:
        sent.append((subject, message))
        return {"email": True}

    monkeypatch.setattr(alerts_module, "dispatch_alert", _sender)
    remote = FakeRemote()
    remote.reply(SNAPSHOT_PATH, 500, {"error": "export_failed"})

    first = await run_job(JOB_RECONCILIATION, client=remote.client())
    second = await run_job(JOB_RECONCILIATION, client=remote.client())
    assert first["status"] == "error"
    assert "alert" not in first
    assert second["alert"] == {"alert_sent": True, "recovery_sent": False}
    assert len(sent) == 1
    assert "HTTP 500" in sent[0][1]

    status = await get_job_status(JOB_RECONCILIATION)
    assert status["consecutive_failures"] == 2
    assert status["alerted"] is True
    assert status["details"]["http_code"] == 500

    remote.snapshot([[snapshot_item(remote_id=10, owner_id="7", subscription_id="sub-a")]])
    recovered = await run_job(JOB_RECONCILIATION, client=remote.client())
    assert recovered["alert"] == {"alert_sent": False, "recovery_sent": True}
    assert len(sent) == 2


@pytest.mark.asyncio
async def test_skipped_runs_do_not_touch_failure_state() -> None:
    await acquire_run_lock("worker:purge", ttl_seconds=600)
    outcome = await run_job(JOB_PURGE, client=FakeRemote().client())
    assert outcome["status"] == "skipped_locked"

    status = await get_job_status(JOB_PURGE)
    assert status["last_status"] is None
    assert status["lock_held_until"] is not None
    assert status["queue"] == {}

    cleared = await clear_job_lock(JOB_PURGE)
    assert cleared == {"status": "ok", "job_kind": JOB_PURGE, "cleared": True}
    rerun = await run_job(JOB_PURGE, client=FakeRemote().client())
    assert rerun["status"] == "ok"


@pytest.mark.asyncio
async def test_unexpected_exceptions_become_error_status(monkeypatch) -> None:
    async def _explode(*, client=None):  # noqa: ANN001, ANN202
        raise RuntimeError("worker exploded")

    monkeypatch.setattr(runner_module, "run_provision_worker", _explode)
    outcome = await run_job(JOB_PROVISION)
    assert outcome["status"] == "error"
    assert outcome["error"] == "RuntimeError: worker exploded"
    status = await get_job_status(JOB_PROVISION)
    assert status["consecutive_failures"] == 1


@pytest.mark.asyncio
async def test_unknown_job_kind_is_rejected() -> None:
    with pytest.raises(ValueError):
        await run_job("mystery")
