from __future__ import annotations

import asyncio
from email.message import EmailMessage
import logging
import smtplib

import httpx

from keysync.core.config import get_settings, split_csv


logger = logging.getLogger(__name__)

TELEGRAM_API_BASE = "https://api.telegram.org"


def _send_email_sync(subject: str, message: str) -> bool:
    settings = get_settings()
    recipients = split_csv(settings.smtp_to)
    if not settings.smtp_host or not recipients:
        return False
    email = EmailMessage()
    email["Subject"] = subject
    email["From"] = settings.smtp_from or settings.smtp_user or f"{settings.app_name}@localhost"
    email["To"] = ", ".join(recipients)
    email.set_content(message)
    with smtplib.SMTP(settings.smtp_host, settings.smtp_port, timeout=15) as server:
        if settings.smtp_starttls:
            server.starttls()
        if settings.smtp_user:
            server.login(settings.smtp_user, settings.smtp_password)
        server.send_message(email)
    return True


async def send_email(subject: str, message: str) -> bool:
    # smtplib is blocking; keep it off the event loop.
    try:
        return await asyncio.to_thread(_send_email_sync, subject, message)
    except (smtplib.SMTPException, OSError) as exc:
        logger.warning("alert_email_failed error=%s", type(exc).__name__)
        return False


async def send_telegram(message: str, *, transport: httpx.AsyncBaseTransport | None = None) -> bool:
    settings = get_settings()
    chat_ids = split_csv(settings.telegram_chat_ids)
    if not settings.telegram_bot_token or not chat_ids:
        return False
    url = f"{TELEGRAM_API_BASE}/bot{settings.telegram_bot_token}/sendMessage"
    delivered = False
    async with httpx.AsyncClient(timeout=10.0, transport=transport) as client:
        for chat_id in chat_ids:
            try:
                response = await client.post(url, data={"chat_id": chat_id, "text": message})
            except httpx.HTTPError as exc:
                logger.warning("alert_telegram_failed chat_id=%s error=%s", chat_id, type(exc).__name__)
                continue
            if 200 <= response.status_code < 300:
                delivered = True
            else:
                logger.warning("alert_telegram_rejected chat_id=%s http_code=%s", chat_id, response.status_code)
    return delivered


async def dispatch_alert(subject: str, message: str) -> dict[str, bool]:
    """Send one notification to every configured channel.

    Returns per-channel delivery flags; the alert counts as sent when any
    channel delivered.
    """
    results: dict[str, bool] = {}
    for channel in split_csv(get_settings().alert_channels):
        if channel == "email":
            results["email"] = await send_email(subject, message)
        elif channel == "telegram":
            results["telegram"] = await send_telegram(message)
        else:
            logger.warning("alert_channel_unknown channel=%s", channel)
    return results
