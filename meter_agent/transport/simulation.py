"""Scripted meter simulation (no hardware required).

Loads scenarios from ``fixtures/simulation_telegrams.json``.  The
simulated meter answers the request line with its identification line,
answers the Mode C acknowledgement with an ``STX ... ETX BCC`` data block
(released only once the local port runs at the acknowledged speed), and
in Mode D pushes telegrams unprompted.  Every write and baud change is
recorded so tests can assert on the handshake.
"""

from __future__ import annotations

import asyncio
import json
from pathlib import Path
from typing import Any, Dict, List, Optional

from meter_agent.checksum import ETX, STX, block_check_character, crc16_token
from meter_agent.errors import PortIOError
from meter_agent.profiles import MODE_B_BAUD_TABLE, MODE_C_BAUD_TABLE
from meter_agent.transport.base import MeterTransport, find_line_end

_FIXTURES_DIR = Path(__file__).resolve().parent.parent / "fixtures"

ACK = 0x06


class SimulationTransport(MeterTransport):
    """In-memory meter that replays one fixture scenario."""

    def __init__(
        self,
        scenario: str = "ebz_dd3",
        *,
        baudrate: int = 300,
        port: str = "sim",
        scenario_data: Optional[Dict[str, Any]] = None,
    ) -> None:
        self._scenario_name = scenario
        self._scenario: Dict[str, Any] = dict(scenario_data) if scenario_data else {}
        self._initial_baudrate = baudrate
        self._baudrate = baudrate
        self._port = port
        self._open = False
        self._rx = bytearray()
        self._data_event = asyncio.Event()
        self._pending_block: Optional[bytes] = None
        self._block_baudrate: Optional[int] = None
        self._pushed = 0

        self.written: List[bytes] = []
        self.baud_history: List[int] = [baudrate]
        self.open_count = 0

    @property
    def port(self) -> str:
        return self._port

    @property
    def baudrate(self) -> int:
        return self._baudrate

    # -- lifecycle ----------------------------------------------------------

    async def open(self) -> None:
        if not self._scenario:
            scenarios = _load_scenarios()
            if self._scenario_name not in scenarios:
                available = ", ".join(sorted(scenarios))
                raise ValueError(
                    f"Unknown simulation scenario '{self._scenario_name}'. "
                    f"Available: {available}"
                )
            self._scenario = scenarios[self._scenario_name]
        self._rx.clear()
        self._pending_block = None
        self._open = True
        self.open_count += 1

    async def close(self) -> None:
        self._open = False
        self._data_event.set()

    def is_open(self) -> bool:
        return self._open

    # -- I/O ----------------------------------------------------------------

    async def set_baudrate(self, baudrate: int, *, flush_input: bool = False) -> None:
        self._check_open()
        self._baudrate = baudrate
        self.baud_history.append(baudrate)
        if flush_input:
            self._rx.clear()

    async def write(self, data: bytes) -> None:
        self._check_open()
        self.written.append(data)
        if self._scenario.get("silent"):
            return
        if data.startswith(b"/?") and data.endswith(b"!\r\n"):
            self._feed(f"{self._scenario['identification']}\r\n".encode("ascii"))
            if self._scenario.get("mode", "C") in ("A", "B"):
                self._pending_block = self._data_block()
                self._block_baudrate = self._baudrate
        elif data and data[0] == ACK and len(data) >= 3:
            table = MODE_B_BAUD_TABLE if self._scenario.get("mode") == "B" else MODE_C_BAUD_TABLE
            self._pending_block = self._data_block()
            self._block_baudrate = table.get(chr(data[2]), self._baudrate)

    async def read_line(self) -> bytes:
        while True:
            self._check_open()
            index = find_line_end(self._rx)
            if index >= 0:
                line = bytes(self._rx[:index + 1])
                del self._rx[:index + 1]
                return line
            await self._wait_for_data()

    async def read_exactly(self, size: int) -> bytes:
        while True:
            self._check_open()
            if len(self._rx) >= size:
                data = bytes(self._rx[:size])
                del self._rx[:size]
                return data
            await self._wait_for_data()

    async def reset_input_buffer(self) -> None:
        self._check_open()
        self._rx.clear()

    # -- internal -----------------------------------------------------------

    def _check_open(self) -> None:
        if not self._open:
            raise PortIOError(f"Simulated port {self._port} is not open", port=self._port)
        if self._scenario.get("io_error"):
            raise PortIOError(f"Simulated I/O failure on {self._port}", port=self._port)

    def _feed(self, data: bytes) -> None:
        self._rx.extend(data)
        self._data_event.set()

    async def _wait_for_data(self) -> None:
        if self._pending_block is not None and self._baudrate == self._block_baudrate:
            block, self._pending_block = self._pending_block, None
            self._feed(block)
            return
        if self._scenario.get("mode") == "D" and not self._scenario.get("silent"):
            self._feed(self._push_telegram())
            return
        self._data_event.clear()
        await self._data_event.wait()

    def _data_block(self) -> bytes:
        body = "".join(f"{line}\r\n" for line in self._scenario.get("lines", []))
        if not self._scenario.get("omit_terminator"):
            body += "!\r\n"
        block = bytes([STX]) + body.encode("ascii") + bytes([ETX])
        bcc = block_check_character(block[1:])
        if self._scenario.get("corrupt_checksum"):
            bcc ^= 0xFF
        return block + bytes([bcc])

    def _push_telegram(self) -> bytes:
        lines = "".join(f"{line}\r\n" for line in self._scenario.get("lines", []))
        self._pushed += 1
        if self._scenario.get("omit_terminator"):
            if self._pushed == 1:
                return f"{self._scenario['identification']}\r\n{lines}".encode("ascii")
            return lines.encode("ascii")

        body = f"{self._scenario['identification']}\r\n{lines}!".encode("ascii")
        token = ""
        if self._scenario.get("checksum") == "crc16":
            token = crc16_token(body)
            if self._scenario.get("corrupt_checksum"):
                token = f"{int(token, 16) ^ 0x00FF:04X}"
        return body + f"{token}\r\n".encode("ascii")


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

_scenarios_cache: Optional[Dict[str, Any]] = None


def _load_scenarios() -> Dict[str, Any]:
    global _scenarios_cache
    if _scenarios_cache is None:
        path = _FIXTURES_DIR / "simulation_telegrams.json"
        with open(path, encoding="utf-8") as fh:
            _scenarios_cache = json.load(fh)
    return _scenarios_cache
