"""Pydantic v2 models for identification lines, data lines and the
measurement batches handed to the emitter.

Decimal values serialise to JSON strings, so the exact digits a meter
sent survive the trip to the messaging collaborator.
"""

from __future__ import annotations

import re
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_serializer, field_validator

from meter_agent.obis import ObisCode


class ProtocolMode(str, Enum):
    """IEC 62056-21 communication modes."""

    A = "A"
    B = "B"
    C = "C"
    D = "D"


class ChecksumStatus(str, Enum):
    VALID = "valid"
    INVALID = "invalid"
    ABSENT = "absent"


# ---------------------------------------------------------------------------
# Telegram structure
# ---------------------------------------------------------------------------

_MANUFACTURER_RE = re.compile(r"^[A-Z]{3}$")


class IdentificationLine(BaseModel):
    """``/XXXZ<model>`` -- manufacturer, baud identifier and model string."""

    model_config = ConfigDict(frozen=True)

    manufacturer: str = Field(..., description="3-letter manufacturer code")
    baud_id: str = Field(..., min_length=1, max_length=1)
    model: str = Field(default="", description="Model / version string")
    enhanced_id: Optional[str] = Field(
        default=None, description="Character following a leading backslash"
    )
    fast_reaction: bool = Field(
        default=False,
        description="Third manufacturer letter was lowercase (20 ms reaction)",
    )
    raw: str = ""

    @field_validator("manufacturer")
    @classmethod
    def validate_manufacturer(cls, v: str) -> str:
        if not _MANUFACTURER_RE.match(v):
            raise ValueError(
                f"manufacturer must be 3 uppercase letters, got '{v}'"
            )
        return v


class ValueGroup(BaseModel):
    """One ``(value*unit)`` bracket group of a data line."""

    model_config = ConfigDict(frozen=True)

    value: str
    unit: Optional[str] = None


class DataLine(BaseModel):
    """An OBIS code with one or more bracketed value groups."""

    model_config = ConfigDict(frozen=True)

    code: ObisCode
    groups: List[ValueGroup] = Field(..., min_length=1)
    raw: str = ""

    @field_serializer("code")
    def _serialize_code(self, code: ObisCode) -> str:
        return str(code)


class SkippedLine(BaseModel):
    """A data line that failed its grammar and was left out."""

    line: str
    reason: str


# ---------------------------------------------------------------------------
# Emitter contract
# ---------------------------------------------------------------------------

class MeasurementRecord(BaseModel):
    """One decoded data line."""

    obis: ObisCode
    value: Optional[Decimal] = Field(
        default=None, description="Exact decimal value, scaled per registry"
    )
    additional_values: List[Decimal] = Field(default_factory=list)
    text: Optional[str] = Field(default=None, description="Non-numeric value")
    observed_at: Optional[datetime] = Field(
        default=None, description="Timestamp carried by the data line"
    )
    season: Optional[Literal["summer", "winter"]] = None
    unit: Optional[str] = None
    label: str
    received_at: datetime = Field(
        ..., description="Arrival time of the telegram this record came from"
    )
    device_id: str
    raw_value: str = ""

    @field_serializer("obis")
    def _serialize_obis(self, obis: ObisCode) -> str:
        return str(obis)


class TelegramBatch(BaseModel):
    """All records of one framed telegram, delivered as a single unit."""

    device_id: str
    manufacturer: str
    model: str
    profile: str
    mode: ProtocolMode
    received_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
    )
    valid: bool = True
    checksum: ChecksumStatus = ChecksumStatus.ABSENT
    records: List[MeasurementRecord] = Field(default_factory=list)
    skipped: List[SkippedLine] = Field(default_factory=list)
