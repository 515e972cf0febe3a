"""WhatsApp Cloud API text message client."""

import logging
import re
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

WHATSAPP_API_VERSION = "v21.0"
GRAPH_API_URL = "https://graph.facebook.com"

# Graph API error codes that indicate throttling or transient trouble
RETRYABLE_ERROR_CODES = frozenset({4, 17, 32, 368, 80007, 131031})
RETRYABLE_STATUS_CODES = frozenset({408, 429, 500, 502, 503, 504})


def normalize_phone_number(phone: str) -> str:
    return re.sub(r"\D", "", phone)


def messages_url(phone_number_id: str) -> str:
    return f"{GRAPH_API_URL}/{WHATSAPP_API_VERSION}/{phone_number_id}/messages"


async def send_sms(
    access_token: str,
    phone_number_id: str,
    to: str,
    body: str,
    tags: Optional[dict[str, str]] = None,
    client: Optional[httpx.AsyncClient] = None,
) -> MessageSendResult:
    """Send a WhatsApp text message. The recipient is reduced to digits."""
    normalized_to = normalize_phone_number(to)
    payload = {
        "messaging_product": "whatsapp",
        "to": normalized_to,
        "type": "text",
        "text": {"body": body},
    }
    headers = {
        "Authorization": f"Bearer {access_token}",
        "Content-Type": "application/json",
    }

    owns_client = client is None
    if owns_client:
        client = httpx.AsyncClient(timeout=15.0)
    try:
        resp = await client.post(messages_url(phone_number_id), json=payload, headers=headers)
    except httpx.HTTPError as e:
        logger.warning("WhatsApp Cloud network error: %s", e)
        return MessageSendRetryableFailure(
            provider=SmsProviderType.WHATSAPP_CLOUD,
            error_code=type(e).__name__,
            error_message=str(e) or "Network error",
        )
    finally:
        if owns_client:
            await client.aclose()

    try:
        data = resp.json()
    except ValueError:
        data = {}
    if not isinstance(data, dict):
        data = {}

    if resp.is_success:
        messages = data.get("messages")
        first = messages[0] if isinstance(messages, list) and messages else None
        message_id = first.get("id") if isinstance(first, dict) else None
        if not message_id:
            # Accepted but unacknowledged; the send may be retried
            logger.error("WhatsApp Cloud response missing message id: %s", data)
            return MessageSendRetryableFailure(
                provider=SmsProviderType.WHATSAPP_CLOUD,
                error_code="MISSING_MESSAGE_ID",
                error_message="WhatsApp Cloud API response missing message ID",
                status_code=resp.status_code,
            )
        logger.debug("WhatsApp Cloud message sent: %s to %s tags=%s", message_id, normalized_to, tags)
        return MessageSendSuccess(provider=SmsProviderType.WHATSAPP_CLOUD, message_id=message_id)

    error = data.get("error")
    if not isinstance(error, dict):
        error = {}
    error_code = error.get("code")
    error_type = error.get("type") or "Unknown"
    error_message = error.get("message") or resp.text[:200] or "Unknown error"
    logger.error(
        "WhatsApp Cloud send failed (%s): code=%s type=%s fbtrace_id=%s",
        resp.status_code, error_code, error_type, error.get("fbtrace_id"),
    )

    if resp.status_code in RETRYABLE_STATUS_CODES or error_code in RETRYABLE_ERROR_CODES:
        return MessageSendRetryableFailure(
            provider=SmsProviderType.WHATSAPP_CLOUD,
            error_code=str(error_code or f"HTTP_{resp.status_code}"),
            error_message=error_message,
            status_code=resp.status_code,
        )
    return MessageSendTerminalFailure(
        provider=SmsProviderType.WHATSAPP_CLOUD,
        error_code=str(error_code or f"HTTP_{resp.status_code}"),
        error_message=f"{error_type}: {error_message}",
    )
