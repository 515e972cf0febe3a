"""
Message provider clients.

Every client returns a MessageSendResult; none of them raise on a failed send.
"""

from app.services.messaging.results import (
    MessageSendResult,
    MessageSendRetryableFailure,
    MessageSendSuccess,
    MessageSendTerminalFailure,
    SmsProviderType,
    send_with_retries,
)

__all__ = [
    "MessageSendResult",
    "MessageSendRetryableFailure",
    "MessageSendSuccess",
    "MessageSendTerminalFailure",
    "SmsProviderType",
    "send_with_retries",
]
