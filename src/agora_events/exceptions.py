"""Error taxonomy for agora-events and its retry classification."""

from __future__ import annotations

import enum
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .envelope import Envelope


class ErrorDisposition(str, enum.Enum):
    """How the consumer reacts to a failure."""

    PERMANENT = "permanent"
    TRANSIENT = "transient"
    FATAL = "fatal"


class AgoraEventsError(Exception):
    """Root exception for the entire agora-events runtime."""

    disposition: ErrorDisposition = ErrorDisposition.TRANSIENT


class MalformedMessageError(AgoraEventsError):
    """Raised when message bytes cannot be decoded into an envelope.

    Always permanent: a malformed byte stream never becomes well-formed
    by waiting.
    """

    disposition = ErrorDisposition.PERMANENT


class ValidationError(AgoraEventsError):
    """Raised when an envelope is well-formed but semantically invalid.

    Carries structured errors: ``{field: [messages]}`` and, when decoding
    got far enough, the offending envelope.
    """

    disposition = ErrorDisposition.PERMANENT

    def __init__(
        self,
        errors: dict[str, list[str]] | str | None = None,
        *,
        envelope: Envelope | None = None,
    ) -> None:
        if isinstance(errors, str):
            self.errors: dict[str, list[str]] = {"__root__": [errors]}
        elif errors is None:
            self.errors = {}
        else:
            self.errors = errors
        self.envelope = envelope
        super().__init__(str(self.errors))


class HandlerError(AgoraEventsError):
    """Raised by handlers to signal a processing failure.

    Transient by default. Pass ``permanent=True`` for business-rule
    violations that reprocessing cannot fix.
    """

    def __init__(self, message: str = "", *, permanent: bool = False) -> None:
        self.permanent = permanent
        super().__init__(message)

    @property
    def disposition(self) -> ErrorDisposition:  # type: ignore[override]
        if self.permanent:
            return ErrorDisposition.PERMANENT
        return ErrorDisposition.TRANSIENT


class PermanentHandlerError(HandlerError):
    """Shortcut for ``HandlerError(..., permanent=True)``."""

    def __init__(self, message: str = "") -> None:
        super().__init__(message, permanent=True)


class TransportError(AgoraEventsError):
    """Raised when connectivity to the message broker fails."""


class PublishError(TransportError):
    """Raised when a publish is not confirmed by the broker."""


class DeadLetterPublishFailure(AgoraEventsError):
    """Raised when a dead-letter envelope could not be published.

    Fatal: the message has exhausted its retries and would otherwise be
    lost.
    """

    disposition = ErrorDisposition.FATAL

    def __init__(self, message: str, event_id: str | None = None) -> None:
        self.event_id = event_id
        super().__init__(message)


def classify_error(exc: BaseException) -> ErrorDisposition:
    """Return the disposition for *exc*.

    Anything that is not an ``AgoraEventsError`` is a handler failure and
    therefore transient.
    """
    if isinstance(exc, AgoraEventsError):
        return exc.disposition
    return ErrorDisposition.TRANSIENT


def error_kind(exc: BaseException) -> str:
    """Classification name recorded on dead-letter and retry metadata."""
    return type(exc).__name__
