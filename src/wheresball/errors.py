"""Exception types shared across the game service."""

from __future__ import annotations

import re
from typing import Optional

NON_RETRYABLE_PATTERNS = (
    "quota exceeded",
    "rate limit",
    "too many requests",
    "429",
    "bad request",
    "unauthorized",
    "forbidden",
    "not found",
    "method not allowed",
    "not acceptable",
    "conflict",
    "gone",
    "length required",
    "precondition failed",
    "request entity too large",
    "request uri too long",
    "unsupported media type",
    "requested range not satisfiable",
    "expectation failed",
)

_STATUS_IN_TEXT = re.compile(r"\b(4\d{2}|5\d{2})\b")


class WheresBallError(Exception):
    """Base class for errors raised by the game."""


class RoomNotFoundError(WheresBallError):
    def __init__(self, pin: str) -> None:
        super().__init__("Room not found")
        self.pin = pin


class GameAlreadyStartedError(WheresBallError):
    def __init__(self, pin: str) -> None:
        super().__init__(
            "Game has already started. Please wait for the next game "
            "or create a new room."
        )
        self.pin = pin


class NotHostError(WheresBallError):
    def __init__(self, action: str) -> None:
        super().__init__(f"Only the host can {action}")
        self.action = action


class StoreError(WheresBallError):
    """The room store rejected or failed an operation."""


class ServiceError(WheresBallError):
    """A call to an external generation, detection or speech API failed."""

    def __init__(self, message: str, status: Optional[int] = None) -> None:
        super().__init__(message)
        self.status = status

    @property
    def retryable(self) -> bool:
        return is_retryable(self)


class MalformedResponseError(ServiceError):
    """The API answered but without the success flag or payload."""

    @property
    def retryable(self) -> bool:
        return False


def is_retryable(error: BaseException) -> bool:
    """Classify a failed call: 5xx may be retried, 4xx and quota errors not."""

    status = getattr(error, "status", None)
    if isinstance(status, int):
        if 400 <= status < 500:
            return False
        return status >= 500

    message = str(error)
    match = _STATUS_IN_TEXT.search(message)
    if match:
        code = int(match.group(1))
        if 400 <= code < 500:
            return False
        return code >= 500

    lowered = message.lower()
    return not any(pattern in lowered for pattern in NON_RETRYABLE_PATTERNS)
