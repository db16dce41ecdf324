from __future__ import annotations

import ipaddress
import logging
from typing import Any
from urllib.parse import urlsplit

import httpx

from keysync.core.config import get_settings
from keysync.core.logging import redact
from keysync.domain.results import DeliveryResult, FetchResult
from keysync.services.resilience import RetryPolicy, remote_retry_policy, retry_async


logger = logging.getLogger(__name__)

SNAPSHOT_PATH = "/internal/admin/keys/export"
EVENT_PATH = "/internal/subscription/event"
PURGE_PATH = "/internal/user/purge"

BODY_EXCERPT_CHARS = 500
EVENT_OK_STATUSES = {"ok", "active", "disabled"}
ACTIVE_EVENTS = {"activated", "active", "renewed", "reactivated"}


def _decode_error(body: Any) -> str:
    # Pull the most specific human-readable error the remote returned.
    if not isinstance(body, dict):
        return ""
    for field_name in ("error", "message", "status", "code"):
        value = body.get(field_name)
        if isinstance(value, (str, int)) and str(value).strip():
            return str(value).strip()
    return ""


def _is_public_https(url: str) -> bool:
    parts = urlsplit(url)
    if parts.scheme != "https" or not parts.hostname:
        return False
    host = parts.hostname.lower()
    if host == "localhost" or host.endswith(".localhost") or host.endswith(".local"):
        return False
    try:
        address = ipaddress.ip_address(host)
    except ValueError:
        return True
    return not (address.is_private or address.is_loopback or address.is_link_local or address.is_reserved)


def _response_api_key_id(body: dict[str, Any]) -> str:
    nested = body.get("key") if isinstance(body.get("key"), dict) else {}
    value = body.get("api_key_id") or nested.get("api_key_id") or nested.get("id")
    return str(value).strip() if value not in (None, "", 0, "0") else ""


def _response_has_key_material(body: dict[str, Any]) -> bool:
    key_value = body.get("key")
    if isinstance(key_value, str) and key_value:
        return True
    nested = key_value if isinstance(key_value, dict) else {}
    prefix = body.get("key_prefix") or nested.get("prefix") or nested.get("key_prefix")
    last4 = body.get("key_last4") or nested.get("last4") or nested.get("key_last4")
    return bool(prefix and last4)


def validate_event_response(event: str, body: Any) -> str:
    # Return an error code when a delivery response cannot be trusted, "" when it can.
    if not isinstance(body, dict):
        return "invalid_json"
    status = str(body.get("status") or "").lower()
    if status not in EVENT_OK_STATUSES:
        return "unexpected_status"
    if not body.get("subscription_id") and not _response_api_key_id(body):
        return "missing_identifiers"
    if (event or "").lower() in ACTIVE_EVENTS:
        if not _response_api_key_id(body):
            return "missing_api_key_id"
        if not _response_has_key_material(body):
            return "missing_key_material"
    return ""


class RemoteClient:
    """HTTP client for the remote system of record.

    Every public call returns a result object; transport failures, timeouts
    and non-2xx responses never raise past this class.
    """

    def __init__(
        self,
        *,
        base_url: str | None = None,
        token: str | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        policy: RetryPolicy | None = None,
    ) -> None:
        settings = get_settings()
        self._base_url = (base_url if base_url is not None else settings.remote_base_url).rstrip("/")
        self._token = token if token is not None else settings.remote_token
        self._transport = transport
        self._policy = policy or remote_retry_policy()

    def _config_error(self) -> str:
        settings = get_settings()
        if not self._base_url or not self._token:
            return "remote_not_configured"
        if settings.remote_require_https and not _is_public_https(self._base_url):
            return "remote_url_rejected"
        return ""

    def _headers(self) -> dict[str, str]:
        return {
            get_settings().remote_token_header: self._token,
            "Accept": "application/json",
        }

    async def _request(
        self,
        method: str,
        path: str,
        *,
        params: dict[str, Any] | None = None,
        json_body: dict[str, Any] | None = None,
    ) -> FetchResult:
        url = f"{self._base_url}{path}"
        config_error = self._config_error()
        if config_error:
            return FetchResult(ok=False, error=config_error, url=url)

        async def _call() -> httpx.Response:
            timeout_s = max(0.2, self._policy.timeout_ms / 1000.0)
            async with httpx.AsyncClient(timeout=timeout_s, transport=self._transport) as client:
                response = await client.request(method, url, params=params, json=json_body, headers=self._headers())
            # Server-side failures are transient; raise so the retry loop sees them.
            if response.status_code >= 500:
                response.raise_for_status()
            return response

        try:
            response = await retry_async(_call, policy=self._policy)
        except httpx.HTTPStatusError as exc:
            response = exc.response
        except Exception as exc:  # noqa: BLE001 - transport faults become failure results
            logger.warning("remote_call_failed method=%s url=%s error=%s", method, url, type(exc).__name__)
            return FetchResult(ok=False, error=f"transport_error: {type(exc).__name__}: {exc}", url=url)

        excerpt = (response.text or "")[:BODY_EXCERPT_CHARS]
        try:
            body = response.json()
        except ValueError:
            body = None
        decoded = _decode_error(body)
        if not 200 <= response.status_code < 300:
            error = f"HTTP {response.status_code} {response.reason_phrase}".strip()
            logger.warning(
                "remote_call_rejected method=%s context=%s",
                method,
                redact({"url": url, "http_code": response.status_code, "body_excerpt": excerpt[:200]}),
            )
            return FetchResult(
                ok=False,
                http_code=response.status_code,
                body=body,
                error=error,
                url=url,
                body_excerpt=excerpt,
                decoded_error=decoded,
            )
        return FetchResult(
            ok=True,
            http_code=response.status_code,
            body=body,
            url=url,
            body_excerpt=excerpt,
            decoded_error=decoded,
        )

    async def fetch_snapshot_page(self, *, page: int, per_page: int) -> FetchResult:
        per_page = max(1, min(500, int(per_page)))
        return await self._request("GET", SNAPSHOT_PATH, params={"page": max(1, int(page)), "per_page": per_page})

    async def send_event(self, payload: dict[str, Any]) -> DeliveryResult:
        result = await self._request("POST", EVENT_PATH, json_body=payload)
        body = result.body if isinstance(result.body, dict) else {}
        if not result.ok:
            return DeliveryResult(
                ok=False,
                status=str(body.get("status") or "error"),
                error=result.error if not result.decoded_error else f"{result.error}: {result.decoded_error}",
                http_code=result.http_code,
                response=body,
            )
        validation_error = validate_event_response(str(payload.get("event") or ""), result.body)
        if validation_error:
            return DeliveryResult(
                ok=False,
                status=str(body.get("status") or "invalid"),
                error=validation_error,
                http_code=result.http_code,
                response=body,
            )
        return DeliveryResult(ok=True, status=str(body.get("status")), http_code=result.http_code, response=body)

    async def purge_identity(self, payload: dict[str, Any]) -> DeliveryResult:
        result = await self._request("POST", PURGE_PATH, json_body=payload)
        body = result.body if isinstance(result.body, dict) else {}
        status = str(body.get("status") or "").lower()
        if result.ok and status in ("", "ok"):
            return DeliveryResult(ok=True, status="ok", http_code=result.http_code, response=body)
        error = result.decoded_error or (result.error if not result.ok else "") or "unexpected_response"
        return DeliveryResult(
            ok=False,
            status=status or "error",
            error=error,
            http_code=result.http_code,
            response=body,
        )
