from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
import logging
from typing import Any, Awaitable, Callable

from sqlalchemy.ext.asyncio import AsyncSession

from keysync.core.config import (
    DEFAULT_ALERT_TEMPLATE,
    DEFAULT_RECOVERY_TEMPLATE,
    JOB_PROVISION,
    JOB_PURGE,
    JOB_RECONCILIATION,
    get_settings,
    split_csv,
)
from keysync.domain.results import AlertDecision
from keysync.services.operability.channels import dispatch_alert
from keysync.services.operability.state import get_job_state


logger = logging.getLogger(__name__)

FAILURE_STATUSES = {"error", "failed", "failure", "warning"}
# Outcomes where the job did not actually run; they leave failure state untouched.
NEUTRAL_STATUSES = {"locked", "skipped_locked", "skipped_disabled"}
JOB_LABELS = {
    JOB_RECONCILIATION: "Snapshot Reconciliation",
    JOB_PURGE: "Purge Worker",
    JOB_PROVISION: "Provision Worker",
}
ERROR_EXCERPT_CHARS = 300
MESSAGE_MAX_CHARS = 1000
SUBJECT_MAX_CHARS = 150

AlertSender = Callable[[str, str], Awaitable[dict[str, bool]]]


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class AlertConfig:
    enabled: bool
    threshold: int
    cooldown: timedelta
    alert_jobs: frozenset[str]
    recovery_jobs: frozenset[str]
    alert_template: str
    recovery_template: str
    site_name: str
    site_url: str


def alert_config_from_settings() -> AlertConfig:
    settings = get_settings()
    return AlertConfig(
        enabled=settings.alerts_enabled,
        threshold=max(1, int(settings.alert_threshold)),
        cooldown=timedelta(minutes=max(0, int(settings.alert_cooldown_minutes))),
        alert_jobs=frozenset(split_csv(settings.alert_jobs_enabled)),
        recovery_jobs=frozenset(split_csv(settings.alert_recovery_jobs)),
        alert_template=settings.alert_template or DEFAULT_ALERT_TEMPLATE,
        recovery_template=settings.recovery_template or DEFAULT_RECOVERY_TEMPLATE,
        site_name=settings.alert_site_name,
        site_url=settings.alert_site_url,
    )


def excerpt(text: str | None, limit: int = ERROR_EXCERPT_CHARS) -> str:
    value = " ".join(str(text or "").split())
    if len(value) <= limit:
        return value
    return value[:limit] + "…"


def _cap(text: str, limit: int) -> str:
    return text if len(text) <= limit else text[: limit - 1] + "…"


class _SafeFormat(dict):
    def __missing__(self, key: str) -> str:
        return "{" + key + "}"


def render_template(template: str, context: dict[str, Any], *, limit: int = MESSAGE_MAX_CHARS) -> str:
    # Substitute known placeholders; unknown ones are left verbatim.
    try:
        rendered = template.format_map(_SafeFormat({key: str(value) for key, value in context.items()}))
    except (ValueError, IndexError):
        # Malformed braces in an operator template; fall back to plain replacement.
        rendered = template
        for key, value in context.items():
            rendered = rendered.replace("{" + key + "}", str(value))
    return _cap(rendered, limit)


def _iso(value: datetime | None) -> str:
    return value.strftime("%Y-%m-%d %H:%M:%S UTC") if value else "n/a"


def _template_context(
    *,
    job_kind: str,
    status: str,
    error_excerpt: str,
    failures: int,
    last_run: datetime | None,
    next_run: datetime | None,
    now: datetime,
    config: AlertConfig,
) -> dict[str, Any]:
    return {
        "job_name": JOB_LABELS.get(job_kind, job_kind),
        "status": status,
        "error_excerpt": error_excerpt or "n/a",
        "failures": failures,
        "last_run": _iso(last_run),
        "next_run": _iso(next_run),
        "site": config.site_name,
        "site_url": config.site_url,
        "time": _iso(now),
    }


async def handle_job_result(
    *,
    session: AsyncSession,
    job_kind: str,
    status: str,
    error_text: str = "",
    config: AlertConfig | None = None,
    sender: AlertSender | None = None,
    next_run: datetime | None = None,
) -> AlertDecision:
    """Advance the per-job failure state machine for one run outcome.

    Failures increment a consecutive counter; once it reaches the threshold
    (and the cooldown since the last alert has elapsed) an alert is sent.
    The first success after an alert sends one recovery notice and resets.
    """
    config = config or alert_config_from_settings()
    sender = sender or dispatch_alert
    now = _utc_now()
    normalized = (status or "").strip().lower()
    state = await get_job_state(session=session, job_kind=job_kind)

    if normalized in NEUTRAL_STATUSES:
        return AlertDecision(job_kind=job_kind, failures=state.consecutive_failures, suppressed_reason="neutral_status")

    if normalized not in FAILURE_STATUSES:
        recovery_sent = False
        if state.alerted and config.enabled and job_kind in config.recovery_jobs:
            context = _template_context(
                job_kind=job_kind,
                status=normalized,
                error_excerpt="",
                failures=state.consecutive_failures,
                last_run=state.last_run_at,
                next_run=next_run,
                now=now,
                config=config,
            )
            message = render_template(config.recovery_template, context)
            subject = _cap(f"[{config.site_name}] {context['job_name']} recovered", SUBJECT_MAX_CHARS)
            delivered = await sender(subject, message)
            recovery_sent = any(delivered.values())
            logger.info("job_recovery_notice job_kind=%s sent=%s", job_kind, recovery_sent)
        state.consecutive_failures = 0
        state.alerted = False
        state.alert_sent_at = None
        state.last_error = ""
        await session.commit()
        return AlertDecision(job_kind=job_kind, failures=0, recovery_sent=recovery_sent)

    state.consecutive_failures = int(state.consecutive_failures or 0) + 1
    state.last_failure_at = now
    state.last_error = excerpt(error_text)
    failures = state.consecutive_failures
    await session.commit()

    suppressed: str | None = None
    if not config.enabled or job_kind not in config.alert_jobs:
        suppressed = "disabled"
    elif failures < config.threshold:
        suppressed = "below_threshold"
    elif state.alert_sent_at is not None and now - state.alert_sent_at < config.cooldown:
        suppressed = "cooldown"
    if suppressed:
        return AlertDecision(job_kind=job_kind, failures=failures, suppressed_reason=suppressed)

    context = _template_context(
        job_kind=job_kind,
        status=normalized,
        error_excerpt=state.last_error,
        failures=failures,
        last_run=state.last_run_at,
        next_run=next_run,
        now=now,
        config=config,
    )
    message = render_template(config.alert_template, context)
    subject = _cap(f"[{config.site_name}] {context['job_name']} failing ({failures}x)", SUBJECT_MAX_CHARS)
    delivered = await sender(subject, message)
    if not any(delivered.values()):
        logger.warning("job_alert_undelivered job_kind=%s failures=%s channels=%s", job_kind, failures, delivered)
        return AlertDecision(job_kind=job_kind, failures=failures, suppressed_reason="undelivered")
    state.alerted = True
    state.alert_sent_at = now
    await session.commit()
    logger.warning("job_alert_sent job_kind=%s failures=%s", job_kind, failures)
    return AlertDecision(job_kind=job_kind, failures=failures, alert_sent=True)
