"""Error taxonomy for teleecho.

Every error knows which user-facing operation it belongs to, so the CLI can
report "error while <operation>: <reason>" without inspecting types.
"""

from __future__ import annotations

from typing import Optional


class TeleechoError(Exception):
    """Base class for all expected teleecho failures."""

    operation = "running teleecho"


class StoreError(TeleechoError):
    operation = "accessing the connection store"


class DuplicateName(StoreError):
    operation = "creating connection"


class NotFound(StoreError):
    operation = "retrieving connection"


class AmbiguousConnection(StoreError):
    operation = "retrieving connection"


class InvalidName(StoreError):
    operation = "creating connection"


class PairingError(TeleechoError):
    operation = "pairing connection"


class PairingTimedOut(PairingError):
    """No matching code arrived before the session deadline."""


class PairingFailed(PairingError):
    """The transport never answered successfully during the session."""


class ConnectionNotPaired(TeleechoError):
    operation = "starting relay"


class TransportError(TeleechoError):
    """A call to the remote chat API failed."""

    operation = "talking to the Telegram Bot API"

    def __init__(
        self,
        message: str,
        *,
        status: Optional[int] = None,
        retry_after: Optional[float] = None,
    ) -> None:
        super().__init__(message)
        self.status = status
        self.retry_after = retry_after


class DeliveryFailed(TeleechoError):
    """A batch could not be delivered within the retry budget."""

    operation = "relaying input"

    def __init__(self, message: str, *, batch_number: int, attempts: int) -> None:
        super().__init__(message)
        self.batch_number = batch_number
        self.attempts = attempts
