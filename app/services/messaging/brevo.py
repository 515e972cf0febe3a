"""Brevo transactional SMS client.

Wraps the Brevo REST API v3 with httpx.
"""

import logging
from typing import Optional

import httpx

from app.services.messaging.results import (
    MessageSendResult,
    MessageSendRetryableFailure,
    MessageSendSuccess,
    MessageSendTerminalFailure,
    SmsProviderType,
)

logger = logging.getLogger(__name__)

BREVO_API_URL = "https://api.brevo.com/v3/transactionalSMS/sms"
DEFAULT_SENDER = "Dittofeed"

RETRYABLE_STATUS_CODES = frozenset({408, 429, 500, 502, 503, 504})


def _error_details(resp: httpx.Response) -> tuple[str, str]:
    try:
        data = resp.json()
    except ValueError:
        data = {}
    if not isinstance(data, dict):
        data = {}
    code = data.get("code") or f"HTTP_{resp.status_code}"
    message = data.get("message") or resp.text[:200] or "Unknown error"
    return str(code), str(message)


async def send_sms(
    api_key: str,
    to: str,
    body: str,
    sender: Optional[str] = None,
    tags: Optional[dict[str, str]] = None,
    client: Optional[httpx.AsyncClient] = None,
) -> MessageSendResult:
    """Send one SMS via Brevo.

    tags["messageId"], when present, is forwarded as the Brevo tag.
    """
    payload = {
        "sender": sender or DEFAULT_SENDER,
        "recipient": to,
        "content": body,
    }
    if tags and tags.get("messageId"):
        payload["tag"] = tags["messageId"]
    headers = {"api-key": api_key, "Content-Type": "application/json"}

    owns_client = client is None
    if owns_client:
        client = httpx.AsyncClient(timeout=15.0)
    try:
        resp = await client.post(BREVO_API_URL, json=payload, headers=headers)
    except httpx.HTTPError as e:
        logger.warning("Brevo SMS network error: %s", e)
        return MessageSendRetryableFailure(
            provider=SmsProviderType.BREVO,
            error_code=type(e).__name__,
            error_message=str(e) or "Network error",
        )
    finally:
        if owns_client:
            await client.aclose()

    if resp.is_success:
        data = resp.json()
        message_id = data.get("messageId") or data.get("reference")
        logger.debug("Brevo SMS sent: %s tags=%s", message_id, tags)
        return MessageSendSuccess(provider=SmsProviderType.BREVO, message_id=str(message_id))

    error_code, error_message = _error_details(resp)
    logger.error("Brevo SMS send failed (%s): %s %s", resp.status_code, error_code, error_message)
    if resp.status_code in RETRYABLE_STATUS_CODES:
        return MessageSendRetryableFailure(
            provider=SmsProviderType.BREVO,
            error_code=error_code,
            error_message=error_message,
            status_code=resp.status_code,
        )
    return MessageSendTerminalFailure(
        provider=SmsProviderType.BREVO,
        error_code=error_code,
        error_message=error_message,
    )
