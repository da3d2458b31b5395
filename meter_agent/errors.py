"""Exceptions raised while acquiring and decoding IEC 62056-21 telegrams.

Line-level errors (``MalformedObisCode``, ``MalformedValue``) never leave
the parser/decoder: the offending line is recorded as skipped.  Telegram
and session level errors are reported to the caller as
``AcquisitionResult`` values, except ``PortIOError`` which propagates.
"""

from __future__ import annotations


class MeterAgentError(Exception):
    """Base exception for meter_agent."""


class FramingError(MeterAgentError):
    """Missing start/terminator line or telegram budget exceeded."""

    def __init__(self, message: str, *, line: str | None = None) -> None:
        self.line = line
        super().__init__(message)


class ChecksumError(MeterAgentError):
    """Terminator checksum does not match the received block."""

    def __init__(self, expected: str, actual: str) -> None:
        self.expected = expected
        self.actual = actual
        super().__init__(f"Checksum mismatch: expected {expected}, got {actual}")


class MalformedObisCode(MeterAgentError):
    """A data line's OBIS code does not match the code grammar."""

    def __init__(self, code: str, message: str | None = None) -> None:
        self.code = code
        super().__init__(message or f"Malformed OBIS code: {code!r}")


class MalformedValue(MeterAgentError):
    """A bracketed value group does not match the value grammar."""

    def __init__(self, value: str, message: str | None = None) -> None:
        self.value = value
        super().__init__(message or f"Malformed value: {value!r}")


class BaudNegotiationError(MeterAgentError):
    """Mode C handshake could not agree on a baud rate."""


class BaudNegotiationTimeout(BaudNegotiationError):
    """No identification reply arrived within the identification timeout."""

    def __init__(self, timeout: float) -> None:
        self.timeout = timeout
        super().__init__(f"No identification reply within {timeout:.1f}s")


class PhaseTimeout(MeterAgentError):
    """A receive phase did not complete within its configured timeout."""

    def __init__(self, phase: str, timeout: float) -> None:
        self.phase = phase
        self.timeout = timeout
        super().__init__(f"Phase {phase} timed out after {timeout:.1f}s")


class PortIOError(MeterAgentError):
    """The underlying serial/optical transport failed."""

    def __init__(
        self,
        message: str,
        *,
        port: str | None = None,
        cause: BaseException | None = None,
    ) -> None:
        self.port = port
        self.cause = cause
        super().__init__(message)
