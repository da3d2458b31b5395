"""Framing and parsing of IEC 62056-21 ASCII telegrams.

A telegram looks like::

    /ESY5Q3D\\@V5.3
    0-0:1.0.0(210101120000W)
    1-0:1.8.0(000123.456*kWh)
    !

``TelegramFramer`` accumulates raw lines handed over by the session until
the ``!`` terminator (plus the ``ETX BCC`` trailer for STX-framed Mode C
blocks) and enforces the per-telegram byte/line budget.
``TelegramParser`` splits a framed ``Telegram`` into its identification
record and data lines.  Lines that fail the grammar are skipped and
recorded; they never abort the telegram.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import List, Optional

import structlog

from meter_agent.checksum import ETX, STX, ChecksumStrategy, NoChecksum
from meter_agent.errors import ChecksumError, FramingError, MalformedObisCode, MalformedValue
from meter_agent.obis import ObisCode
from meter_agent.schemas import (
    ChecksumStatus,
    DataLine,
    IdentificationLine,
    ProtocolMode,
    SkippedLine,
    ValueGroup,
)

logger = structlog.get_logger(__name__)

# Baud identifiers of the identification line, per grammar.
MODE_C_BAUD_IDS = "0123456789"
MODE_B_BAUD_IDS = "ABCDEFGHI"

_MANUFACTURER_RE = re.compile(r"^[A-Z]{2}[A-Za-z]$")
_DATA_LINE_RE = re.compile(r"^([^()\s]+)\s*((?:\([^()]*\)\s*)+)$")
_GROUP_RE = re.compile(r"\(([^()]*)\)")


@dataclass
class Telegram:
    """One framed telegram as received, before parsing."""

    identification: str
    lines: List[str]
    terminator: str
    raw: bytes
    received_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    block_framed: bool = False

    @property
    def byte_length(self) -> int:
        return len(self.raw)

    @property
    def checksum_token(self) -> Optional[str]:
        """Whatever followed ``!`` on the terminator line, if anything."""
        token = self.terminator[1:].strip()
        return token or None


@dataclass
class ParsedTelegram:
    """Result of ``TelegramParser.parse``."""

    telegram: Telegram
    identification: IdentificationLine
    data_lines: List[DataLine]
    skipped: List[SkippedLine]
    checksum: ChecksumStatus
    checksum_error: Optional[ChecksumError] = None

    @property
    def valid(self) -> bool:
        return self.checksum is not ChecksumStatus.INVALID


# ---------------------------------------------------------------------------
# Framing
# ---------------------------------------------------------------------------

class TelegramFramer:
    """Incrementally assemble a ``Telegram`` from raw received lines."""

    def __init__(
        self,
        *,
        max_bytes: int = 8192,
        max_lines: int = 256,
        encoding: str = "ascii",
    ) -> None:
        self.max_bytes = max_bytes
        self.max_lines = max_lines
        self.encoding = encoding
        self.reset()

    def reset(self) -> None:
        self._raw = bytearray()
        self._identification: Optional[str] = None
        self._lines: List[str] = []
        self._terminator: Optional[str] = None
        self._block_framed = False
        self._received_at: Optional[datetime] = None

    @property
    def started(self) -> bool:
        return self._identification is not None

    @property
    def awaiting_trailer(self) -> bool:
        """``True`` once ``!`` was seen in an STX block but ETX/BCC is pending."""
        return self._terminator is not None and self._block_framed

    @property
    def byte_count(self) -> int:
        return len(self._raw)

    def feed(self, chunk: bytes) -> Optional[Telegram]:
        """Feed one raw line; return the telegram once it is complete.

        Raises ``FramingError`` (after resetting) when the budget is
        exceeded.
        """
        text = self._decode(chunk).rstrip("\r\n")
        stripped = text.strip().lstrip(chr(STX)).strip()

        if stripped.startswith("/") and not stripped.startswith("/?"):
            if self.started:
                logger.warning(
                    "framer_resync",
                    discarded_bytes=len(self._raw),
                    discarded_lines=len(self._lines),
                )
            self.reset()
            self._identification = stripped
            self._received_at = datetime.now(timezone.utc)
            self._append(chunk)
            return None

        if not self.started:
            if stripped:
                logger.debug("framer_skipping", line=stripped[:80])
            return None

        if chr(ETX) in text and self._terminator is None:
            self.reset()
            raise FramingError("Missing terminator line before ETX", line=text)

        self._append(chunk)
        if text.lstrip().startswith(chr(STX)):
            self._block_framed = True

        if stripped.startswith("!"):
            self._terminator = stripped
            if self._block_framed:
                return None
            return self._finish()
        if stripped:
            self._lines.append(stripped)
            self._check_budget()
        return None

    def feed_trailer(self, trailer: bytes) -> Telegram:
        """Feed the ``ETX BCC`` bytes that follow the terminator line."""
        if not self.awaiting_trailer:
            raise FramingError("No terminator awaiting a trailer")
        self._append(trailer)
        if ETX not in trailer:
            logger.warning("framer_trailer_without_etx", trailer=trailer.hex())
        return self._finish()

    # -- internal -----------------------------------------------------------

    def _append(self, chunk: bytes) -> None:
        self._raw.extend(chunk)
        self._check_budget()

    def _check_budget(self) -> None:
        if len(self._raw) > self.max_bytes or len(self._lines) > self.max_lines:
            used_bytes, used_lines = len(self._raw), len(self._lines)
            self.reset()
            raise FramingError(
                f"Telegram budget exceeded ({used_bytes} bytes, {used_lines} lines; "
                f"limits {self.max_bytes} bytes, {self.max_lines} lines)"
            )

    def _finish(self) -> Telegram:
        assert self._identification is not None and self._terminator is not None
        telegram = Telegram(
            identification=self._identification,
            lines=list(self._lines),
            terminator=self._terminator,
            raw=bytes(self._raw),
            received_at=self._received_at or datetime.now(timezone.utc),
            block_framed=self._block_framed,
        )
        self.reset()
        return telegram

    def _decode(self, chunk: bytes) -> str:
        return chunk.decode(self.encoding, errors="replace")


def frame_bytes(
    data: bytes,
    *,
    max_bytes: int = 8192,
    max_lines: int = 256,
    encoding: str = "ascii",
) -> Telegram:
    """Frame the first complete telegram found in a whole buffer.

    Raises ``FramingError`` if *data* holds no identification line or ends
    before the terminator.
    """
    framer = TelegramFramer(max_bytes=max_bytes, max_lines=max_lines, encoding=encoding)
    for chunk in data.splitlines(keepends=True):
        if framer.awaiting_trailer:
            return framer.feed_trailer(chunk[:2])
        telegram = framer.feed(chunk)
        if telegram is not None:
            return telegram
    if framer.awaiting_trailer:
        raise FramingError("Missing ETX/BCC trailer after terminator")
    if not framer.started:
        raise FramingError("Missing identification line")
    raise FramingError("Missing terminator line")


# ---------------------------------------------------------------------------
# Parsing
# ---------------------------------------------------------------------------

class TelegramParser:
    """Split a framed telegram into identification and data lines.

    *mode* selects the identification grammar: Mode B uses the letter
    baud identifiers ``A``..``I``, every other mode the digits.
    """

    def __init__(self, mode: ProtocolMode = ProtocolMode.C) -> None:
        self.mode = mode

    @property
    def baud_ids(self) -> str:
        return MODE_B_BAUD_IDS if self.mode is ProtocolMode.B else MODE_C_BAUD_IDS

    def parse_identification(self, line: str) -> IdentificationLine:
        """Parse ``/XXXZ<model>`` using its fixed field boundaries."""
        text = line.strip().lstrip(chr(STX))
        if not text.startswith("/"):
            raise FramingError("Identification line must start with '/'", line=line)
        content = text[1:]
        if len(content) < 4:
            raise FramingError("Identification line too short", line=line)

        manufacturer = content[:3]
        if not _MANUFACTURER_RE.match(manufacturer):
            raise FramingError(
                f"Invalid manufacturer code {manufacturer!r}", line=line
            )
        baud_id = content[3]
        if baud_id not in self.baud_ids:
            raise FramingError(
                f"Baud identifier {baud_id!r} not valid in mode {self.mode.value}",
                line=line,
            )

        model = content[4:]
        enhanced_id: Optional[str] = None
        if model.startswith("\\") and len(model) >= 2:
            enhanced_id = model[1]
            model = model[2:]

        return IdentificationLine(
            manufacturer=manufacturer.upper(),
            baud_id=baud_id,
            model=model.strip(),
            enhanced_id=enhanced_id,
            fast_reaction=manufacturer[2].islower(),
            raw=text,
        )

    def parse_data_line(self, line: str) -> DataLine:
        """Parse ``<OBIS>(<value>[*<unit>])[(...)...]``."""
        text = line.strip()
        m = _DATA_LINE_RE.match(text)
        if not m:
            code_part = text.split("(", 1)[0].strip()
            # Distinguish a bad code from bad/truncated bracket groups.
            ObisCode.parse(code_part)
            raise MalformedValue(text[len(code_part):], f"Malformed value groups in {text!r}")

        code = ObisCode.parse(m.group(1))
        groups = []
        for content in _GROUP_RE.findall(m.group(2)):
            value, star, unit = content.partition("*")
            if star and not unit.strip():
                raise MalformedValue(content, f"Empty unit in group {content!r}")
            groups.append(ValueGroup(value=value.strip(), unit=unit.strip() or None))
        return DataLine(code=code, groups=groups, raw=text)

    def parse(
        self,
        telegram: Telegram,
        checksum: Optional[ChecksumStrategy] = None,
    ) -> ParsedTelegram:
        """Parse *telegram*; bad data lines are skipped, not fatal.

        A checksum mismatch marks the result invalid but keeps every line
        that parsed.
        """
        identification = self.parse_identification(telegram.identification)
        strategy = checksum or NoChecksum()

        data_lines: List[DataLine] = []
        skipped: List[SkippedLine] = []
        for line in _join_continuations(telegram.lines):
            try:
                data_lines.append(self.parse_data_line(line))
            except (MalformedObisCode, MalformedValue) as exc:
                logger.warning("data_line_skipped", line=line[:120], reason=str(exc))
                skipped.append(SkippedLine(line=line, reason=str(exc)))

        checksum_error: Optional[ChecksumError] = None
        try:
            status = strategy.verify(telegram)
        except ChecksumError as exc:
            status = ChecksumStatus.INVALID
            checksum_error = exc
            logger.warning(
                "checksum_mismatch",
                strategy=strategy.name,
                manufacturer=identification.manufacturer,
                expected=exc.expected,
                actual=exc.actual,
            )

        return ParsedTelegram(
            telegram=telegram,
            identification=identification,
            data_lines=data_lines,
            skipped=skipped,
            checksum=status,
            checksum_error=checksum_error,
        )


def _join_continuations(lines: List[str]) -> List[str]:
    """Append lines starting with ``(`` to the preceding data line."""
    joined: List[str] = []
    for line in lines:
        if line.startswith("(") and joined:
            joined[-1] += line
            continue
        joined.append(line)
    return joined
