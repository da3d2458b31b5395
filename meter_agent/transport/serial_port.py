"""SerialTransport -- pyserial wrapper for optical heads and RS-485 ports.

``pyserial`` is imported lazily so simulation mode works without it.
All blocking I/O is offloaded to a thread via ``asyncio.to_thread``; the
port's read timeout is kept short so a cancelled read returns promptly
and bytes of a partial line are kept for the next call.

Cancelling the awaiting coroutine does not stop a worker thread that is
already inside ``conn.read``.  Every port access therefore runs under one
``threading.Lock``: a speed change or flush waits for that read to
finish, and the bytes it returns land in the pending buffer.
"""

from __future__ import annotations

import asyncio
import threading
from typing import Any, Callable, Optional, TypeVar

import structlog

from meter_agent.errors import PortIOError
from meter_agent.transport.base import MeterTransport, find_line_end

logger = structlog.get_logger(__name__)

T = TypeVar("T")


class SerialTransport(MeterTransport):
    """IEC 62056-21 serial line, 7E1 by default."""

    def __init__(
        self,
        port: str,
        baudrate: int = 300,
        *,
        bytesize: int = 7,
        parity: str = "E",
        stopbits: int = 1,
        poll_interval: float = 0.2,
    ) -> None:
        self._port = port
        self._baudrate = baudrate
        self._bytesize = bytesize
        self._parity = parity
        self._stopbits = stopbits
        self._poll_interval = poll_interval
        self._serial: Any = None  # serial.Serial instance (lazy)
        self._pending = bytearray()
        self._io_lock = threading.Lock()

    @property
    def port(self) -> str:
        return self._port

    @property
    def baudrate(self) -> int:
        return self._baudrate

    # -- lifecycle ----------------------------------------------------------

    async def open(self) -> None:
        serial = _import_serial()
        try:
            # serial_for_url also accepts rfc2217://, socket:// and loop:// ports.
            self._serial = await asyncio.to_thread(
                serial.serial_for_url,
                self._port,
                baudrate=self._baudrate,
                bytesize=self._bytesize,
                parity=self._parity,
                stopbits=self._stopbits,
                timeout=self._poll_interval,
            )
        except (serial.SerialException, OSError, ValueError) as exc:
            raise PortIOError(
                f"Cannot open serial port {self._port}", port=self._port, cause=exc
            ) from exc
        self._pending.clear()
        logger.info("serial_port_opened", port=self._port, baudrate=self._baudrate)

    async def close(self) -> None:
        if self._serial is not None:
            conn, self._serial = self._serial, None

            def _close() -> None:
                conn.close()
                self._pending.clear()

            await asyncio.to_thread(self._locked, _close)
            logger.info("serial_port_closed", port=self._port)

    def is_open(self) -> bool:
        return self._serial is not None and bool(self._serial.is_open)

    # -- I/O ----------------------------------------------------------------

    async def set_baudrate(self, baudrate: int, *, flush_input: bool = False) -> None:
        conn = self._check_open()

        def _apply() -> None:
            conn.baudrate = baudrate
            if flush_input:
                conn.reset_input_buffer()
                self._pending.clear()

        await self._call(_apply)
        self._baudrate = baudrate
        logger.debug("serial_baud_changed", port=self._port, baudrate=baudrate, flushed=flush_input)

    async def write(self, data: bytes) -> None:
        conn = self._check_open()

        def _write() -> None:
            conn.write(data)
            conn.flush()

        await self._call(_write)

    async def read_line(self) -> bytes:
        conn = self._check_open()

        def _step() -> Optional[bytes]:
            index = find_line_end(self._pending)
            if index < 0:
                self._pending.extend(conn.read(conn.in_waiting or 1))
                index = find_line_end(self._pending)
                if index < 0:
                    return None
            line = bytes(self._pending[:index + 1])
            del self._pending[:index + 1]
            return line

        while True:
            line = await self._call(_step)
            if line is not None:
                return line

    async def read_exactly(self, size: int) -> bytes:
        conn = self._check_open()

        def _step() -> Optional[bytes]:
            missing = size - len(self._pending)
            if missing > 0:
                self._pending.extend(conn.read(missing))
                if len(self._pending) < size:
                    return None
            data = bytes(self._pending[:size])
            del self._pending[:size]
            return data

        while True:
            data = await self._call(_step)
            if data is not None:
                return data

    async def reset_input_buffer(self) -> None:
        conn = self._check_open()

        def _reset() -> None:
            conn.reset_input_buffer()
            self._pending.clear()

        await self._call(_reset)

    # -- internal -----------------------------------------------------------

    def _check_open(self) -> Any:
        if self._serial is None:
            raise PortIOError(f"Serial port {self._port} is not open", port=self._port)
        return self._serial

    def _locked(self, func: Callable[[], T]) -> T:
        with self._io_lock:
            return func()

    async def _call(self, func: Callable[[], T]) -> T:
        serial = _import_serial()
        try:
            return await asyncio.to_thread(self._locked, func)
        except (serial.SerialException, OSError) as exc:
            raise PortIOError(
                f"I/O error on serial port {self._port}: {exc}",
                port=self._port,
                cause=exc,
            ) from exc


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _import_serial() -> Any:
    """Lazy-import pyserial so it's only needed for real ports."""
    try:
        import serial  # type: ignore[import-untyped]
        return serial
    except ImportError as exc:
        raise ImportError(
            "pyserial is required for serial ports. "
            "Install it with: pip install pyserial"
        ) from exc
