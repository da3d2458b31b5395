"""Abstract base class for serial/optical meter transports."""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Union

from meter_agent.checksum import ETX

_LINE_ENDS = (b"\n", bytes([ETX]))


def find_line_end(buffer: Union[bytes, bytearray]) -> int:
    """Index of the first LF or ETX in *buffer*, or ``-1``.

    A block that reaches ETX without its terminator line has no LF to end
    the last read on, so ETX ends a line as well.
    """
    found = [index for index in (buffer.find(end) for end in _LINE_ENDS) if index >= 0]
    return min(found) if found else -1


class MeterTransport(ABC):
    """Byte/line stream to one physical meter port.

    Implementations raise ``PortIOError`` for any transport failure.
    Read methods block (asynchronously) until data arrives; callers bound
    them with ``asyncio.wait_for``.
    """

    @property
    @abstractmethod
    def port(self) -> str:
        """Name of the underlying port."""

    @property
    @abstractmethod
    def baudrate(self) -> int:
        """Current line speed."""

    @abstractmethod
    async def open(self) -> None:
        """Open the port at its configured initial speed."""

    @abstractmethod
    async def close(self) -> None:
        """Close the port."""

    @abstractmethod
    def is_open(self) -> bool:
        """Return ``True`` if the port is open."""

    @abstractmethod
    async def set_baudrate(self, baudrate: int, *, flush_input: bool = False) -> None:
        """Change the local line speed.

        With *flush_input* the receive buffer is discarded in the same
        step.  No read runs between the speed change and the flush, and
        a read still in flight completes before the speed changes.
        """

    @abstractmethod
    async def write(self, data: bytes) -> None:
        """Write *data* and wait until it has left the output buffer."""

    @abstractmethod
    async def read_line(self) -> bytes:
        """Return the next line terminated by LF or ETX, terminator included."""

    @abstractmethod
    async def read_exactly(self, size: int) -> bytes:
        """Return exactly *size* bytes."""

    @abstractmethod
    async def reset_input_buffer(self) -> None:
        """Discard everything received but not yet read."""
