"""Errors raised by outbound messaging providers (SMS, email, voice)."""

from __future__ import annotations

RETRYABLE_STATUSES = {408, 429, 500, 502, 503, 504}


class SendError(Exception):
    """A provider did not accept the message."""

    retryable = False

    def __init__(self, message: str, *, channel: str, status_code: int | None = None) -> None:
        self.channel = channel
        self.status_code = status_code
        super().__init__(message)


class RetryableSendError(SendError):
    """Transient failure: timeout, network error, rate limit, provider 5xx."""

    retryable = True


class FatalSendError(SendError):
    """Permanent failure: bad recipient, rejected content, bad credentials."""

    retryable = False


def error_for_status(channel: str, status_code: int, detail: str | None = None) -> SendError:
    message = f"{channel} provider error: {status_code}"
    if detail:
        message = f"{message} ({detail})"
    if status_code in RETRYABLE_STATUSES or status_code >= 500:
        return RetryableSendError(message, channel=channel, status_code=status_code)
    return FatalSendError(message, channel=channel, status_code=status_code)
