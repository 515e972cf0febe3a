"""
Outbound message send results.

Providers never raise for a failed send. They return one of three results so
the caller's retry loop can tell transient failures from terminal ones.
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable, Optional, Union

from tenacity import AsyncRetrying, RetryCallState, retry_if_result, stop_after_attempt, wait_exponential

logger = logging.getLogger(__name__)


class SmsProviderType(str, Enum):
    BREVO = "Brevo"
    WHATSAPP_CLOUD = "WhatsAppCloud"


@dataclass(frozen=True)
class MessageSendSuccess:
    provider: SmsProviderType
    message_id: str


@dataclass(frozen=True)
class MessageSendTerminalFailure:
    provider: SmsProviderType
    error_code: str
    error_message: str


@dataclass(frozen=True)
class MessageSendRetryableFailure:
    """Timeouts, rate limits, 5xx and network errors."""
    provider: SmsProviderType
    error_code: str
    error_message: str
    status_code: Optional[int] = None


MessageSendResult = Union[MessageSendSuccess, MessageSendTerminalFailure, MessageSendRetryableFailure]


def _is_retryable(result: MessageSendResult) -> bool:
    return isinstance(result, MessageSendRetryableFailure)


def _log_retry(retry_state: RetryCallState) -> None:
    result = retry_state.outcome.result()
    logger.warning(
        "Retryable %s send failure (attempt %d), retrying in %.1fs: %s %s",
        result.provider.value, retry_state.attempt_number, retry_state.next_action.sleep,
        result.error_code, result.error_message,
    )


def _give_up(retry_state: RetryCallState) -> MessageSendResult:
    result = retry_state.outcome.result()
    logger.warning(
        "Giving up on %s send after %d attempts: %s %s",
        result.provider.value, retry_state.attempt_number, result.error_code, result.error_message,
    )
    return result


async def send_with_retries(
    send: Callable[[], Awaitable[MessageSendResult]],
    max_attempts: int = 3,
    backoff_seconds: float = 1.0,
) -> MessageSendResult:
    """Call send until it succeeds, fails terminally, or attempts run out.

    Backoff doubles after each retryable failure. The last retryable failure
    is returned when attempts are exhausted. Exceptions raised by send are
    not retried.
    """
    if max_attempts < 1:
        raise ValueError("max_attempts must be at least 1")

    retrying = AsyncRetrying(
        retry=retry_if_result(_is_retryable),
        stop=stop_after_attempt(max_attempts),
        wait=wait_exponential(multiplier=backoff_seconds),
        before_sleep=_log_retry,
        retry_error_callback=_give_up,
    )
    return await retrying(send)
