"""Pluggable checksum strategies for framed telegrams.

IEC 62056-21 Mode C readouts frame the data block as ``STX ... ETX BCC``
where BCC is the XOR of every byte after STX up to and including ETX.
Push telegrams (DSMR-style Mode D) instead append four hex digits of
CRC-16/ARC computed over ``/`` .. ``!`` inclusive.  Which applies is
selected per device profile; ``auto`` picks by the shape of the block.
"""

from __future__ import annotations

import re
from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, Dict, Optional

import crcmod.predefined

from meter_agent.errors import ChecksumError
from meter_agent.schemas import ChecksumStatus

if TYPE_CHECKING:
    from meter_agent.telegram import Telegram

STX = 0x02
ETX = 0x03

_CRC_TOKEN_RE = re.compile(rb"^[0-9A-Fa-f]{4}")


class ChecksumStrategy(ABC):
    """Verify the checksum block of a framed telegram."""

    name: str = ""

    @abstractmethod
    def verify(self, telegram: "Telegram") -> ChecksumStatus:
        """Return ``VALID`` or ``ABSENT``; raise ``ChecksumError`` on mismatch."""


class NoChecksum(ChecksumStrategy):
    name = "none"

    def verify(self, telegram: "Telegram") -> ChecksumStatus:
        return ChecksumStatus.ABSENT


class BccChecksum(ChecksumStrategy):
    name = "bcc"

    def verify(self, telegram: "Telegram") -> ChecksumStatus:
        raw = telegram.raw
        start = raw.find(bytes([STX]))
        # The BCC byte may itself equal ETX, so prefer the trailer position.
        end = len(raw) - 2 if len(raw) >= 2 and raw[-2] == ETX else raw.rfind(bytes([ETX]))
        if start < 0 or end <= start or end + 1 >= len(raw):
            return ChecksumStatus.ABSENT
        expected = raw[end + 1]
        actual = block_check_character(raw[start + 1:end + 1])
        if actual != expected:
            raise ChecksumError(f"{expected:02X}", f"{actual:02X}")
        return ChecksumStatus.VALID


class Crc16Checksum(ChecksumStrategy):
    name = "crc16"

    def __init__(self) -> None:
        self._crc = crcmod.predefined.mkPredefinedCrcFun("crc-16")

    def verify(self, telegram: "Telegram") -> ChecksumStatus:
        raw = telegram.raw
        start = raw.find(b"/")
        bang = raw.rfind(b"!")
        if start < 0 or bang < start:
            return ChecksumStatus.ABSENT
        token = _CRC_TOKEN_RE.match(raw[bang + 1:bang + 5])
        if token is None:
            return ChecksumStatus.ABSENT
        expected = int(token.group(0), 16)
        actual = self._crc(raw[start:bang + 1])
        if actual != expected:
            raise ChecksumError(f"{expected:04X}", f"{actual:04X}")
        return ChecksumStatus.VALID


class AutoChecksum(ChecksumStrategy):
    """BCC for STX/ETX blocks, CRC-16 for a hex token after ``!``."""

    name = "auto"

    def __init__(self) -> None:
        self._bcc = BccChecksum()
        self._crc = Crc16Checksum()

    def verify(self, telegram: "Telegram") -> ChecksumStatus:
        if telegram.block_framed:
            return self._bcc.verify(telegram)
        return self._crc.verify(telegram)


def block_check_character(data: bytes) -> int:
    """XOR of all bytes in *data*."""
    bcc = 0
    for byte in data:
        bcc ^= byte
    return bcc


def crc16_token(data: bytes) -> str:
    """Four upper-case hex digits of CRC-16/ARC over *data*."""
    crc = crcmod.predefined.mkPredefinedCrcFun("crc-16")
    return f"{crc(data):04X}"


_STRATEGIES: Dict[str, type] = {
    "none": NoChecksum,
    "bcc": BccChecksum,
    "crc16": Crc16Checksum,
    "auto": AutoChecksum,
}


def get_checksum_strategy(name: Optional[str]) -> ChecksumStrategy:
    """Return a strategy instance for *name* (``None`` means ``auto``)."""
    key = (name or "auto").lower()
    try:
        return _STRATEGIES[key]()
    except KeyError:
        raise ValueError(
            f"Unknown checksum strategy '{name}'. "
            f"Available: {', '.join(sorted(_STRATEGIES))}"
        ) from None
