"""Error taxonomy for payload decoding and connection sessions."""

from typing import Optional


class MeterError(Exception):
    """Base class for all meterble errors."""


class DecodeError(MeterError):
    """A payload could not be decoded into a reading.

    Decode errors are local to one payload; callers discard the payload and
    keep scanning or waiting.
    """


class UnrecognizedLength(DecodeError):
    """Payload length is not one of the known variants."""

    def __init__(self, length: int):
        self.length = length
        super().__init__(f"Unrecognized payload length: {length} bytes")


class TruncatedPayload(DecodeError):
    """A field offset declared by the variant lies outside the buffer."""

    def __init__(self, field: str, offset: int, length: int):
        self.field = field
        self.offset = offset
        self.length = length
        super().__init__(
            f"Payload truncated: {field} needs byte {offset}, "
            f"buffer has {length} bytes"
        )


class SessionError(MeterError):
    """A connection session failed. Only the affected session is destroyed."""

    def __init__(self, handle: str, reason: Optional[str] = None):
        self.handle = handle
        self.reason = reason
        message = f"{self.__class__.__name__} for {handle}"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(message)


class ConnectFailed(SessionError):
    """The connect request completed with an error."""


class ServiceNotFound(SessionError):
    """The communication service is missing from the peripheral."""


class DisconnectedUnexpectedly(SessionError):
    """The peripheral dropped the link before the reading completed."""
