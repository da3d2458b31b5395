"""OBIS code model, decimal value grammar and the static OBIS registry.

The registry is built once at startup (``build_default_registry``) and is
shared read-only by every session; nothing mutates it afterwards.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from types import MappingProxyType
from typing import Dict, Iterable, Mapping, Optional, Tuple

from meter_agent.errors import MalformedObisCode, MalformedValue

# A-B:C.D.E with optional *F / &F storage group.
_FULL_CODE_RE = re.compile(
    r"^(\d{1,3})-(\d{1,3}):(\w{1,3})\.(\w{1,3})\.(\w{1,3})(?:[*&](\d{1,3}))?$"
)
# Reduced IEC 62056-21 form used in Mode C readouts: C.D.E or C.D
_REDUCED_CODE_RE = re.compile(r"^(\w{1,3})\.(\w{1,3})(?:\.(\w{1,3}))?(?:[*&](\d{1,3}))?$")

# Letter groups defined by IEC 62056-61.
_LETTER_GROUPS: Dict[str, int] = {"C": 96, "F": 97, "L": 98, "P": 99}

_DECIMAL_RE = re.compile(r"^[+-]?\d+(?:\.\d+)?$")

# YYMMDDhhmmss plus optional DST flag (S = summer, W = winter).
TIMESTAMP_RE = re.compile(r"^(\d{2})(\d{2})(\d{2})(\d{2})(\d{2})(\d{2})([SW])?$")

UNMAPPED_LABEL = "unmapped"


@dataclass(frozen=True)
class ObisCode:
    """Structured OBIS code ``A-B:C.D.E[*F]``."""

    medium: int
    channel: int
    indicator: int
    mode: int
    tariff: int
    storage: Optional[int] = None

    def __post_init__(self) -> None:
        for name in ("medium", "channel", "indicator", "mode", "tariff"):
            if getattr(self, name) < 0:
                raise ValueError(f"{name} must be >= 0")
        if self.storage is not None and self.storage < 0:
            raise ValueError("storage must be >= 0")

    @classmethod
    def parse(cls, text: str) -> "ObisCode":
        """Parse the full or reduced textual form of an OBIS code.

        Raises ``MalformedObisCode`` when *text* does not match either form.
        """
        raw = text.strip()
        m = _FULL_CODE_RE.match(raw)
        if m:
            a, b, c, d, e, f = m.groups()
        else:
            m = _REDUCED_CODE_RE.match(raw)
            if not m:
                raise MalformedObisCode(text)
            a, b = "1", "0"
            c, d, e, f = m.groups()
        try:
            return cls(
                medium=int(a),
                channel=int(b),
                indicator=_group_value(c),
                mode=_group_value(d),
                tariff=_group_value(e) if e is not None else 0,
                storage=int(f) if f is not None else None,
            )
        except ValueError as exc:
            raise MalformedObisCode(text, f"Malformed OBIS code {text!r}: {exc}") from exc

    def without_storage(self) -> "ObisCode":
        return ObisCode(self.medium, self.channel, self.indicator, self.mode, self.tariff)

    def with_channel(self, channel: int) -> "ObisCode":
        return ObisCode(
            self.medium, channel, self.indicator, self.mode, self.tariff, self.storage
        )

    def __str__(self) -> str:
        base = f"{self.medium}-{self.channel}:{self.indicator}.{self.mode}.{self.tariff}"
        if self.storage is not None:
            return f"{base}*{self.storage}"
        return base


def _group_value(group: str) -> int:
    upper = group.upper()
    if upper in _LETTER_GROUPS:
        return _LETTER_GROUPS[upper]
    if not upper.isdigit():
        raise ValueError(f"group {group!r} is not numeric")
    return int(upper)


def parse_decimal(text: str) -> Decimal:
    """Parse a meter value string into an exact ``Decimal``.

    Only plain decimal notation is accepted; the digits are never routed
    through a binary float.
    """
    stripped = text.strip()
    if not _DECIMAL_RE.match(stripped):
        raise MalformedValue(text)
    try:
        return Decimal(stripped)
    except InvalidOperation as exc:
        raise MalformedValue(text) from exc


def format_decimal(value: Decimal, integer_width: int = 0) -> str:
    """Render *value* in plain notation, zero-padding the integer part.

    ``format_decimal(parse_decimal("000123.456"), 6) == "000123.456"``
    """
    sign = "-" if value.is_signed() else ""
    text = format(value.copy_abs(), "f")
    integer, dot, fraction = text.partition(".")
    return f"{sign}{integer.zfill(integer_width)}{dot}{fraction}"


def integer_width(text: str) -> int:
    """Number of integer digits (including padding) in a decimal string."""
    return len(text.strip().lstrip("+-").partition(".")[0])


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class RegistryEntry:
    """Semantic meaning of one OBIS code."""

    label: str
    unit: Optional[str]
    scale: Decimal = Decimal(1)
    kind: str = "numeric"  # numeric | timestamp | text
    description: str = ""


class ObisRegistry:
    """Immutable lookup from ``ObisCode`` to ``RegistryEntry``."""

    def __init__(self, entries: Iterable[Tuple[ObisCode, RegistryEntry]]) -> None:
        self._entries: Mapping[ObisCode, RegistryEntry] = MappingProxyType(dict(entries))

    def lookup(self, code: ObisCode) -> Optional[RegistryEntry]:
        """Return the entry for *code*.

        The storage group is ignored, and an unmapped channel falls back to
        channel 0 (``1-1:32.7.0`` resolves like ``1-0:32.7.0``).
        """
        base = code.without_storage()
        entry = self._entries.get(base)
        if entry is None and base.channel != 0:
            entry = self._entries.get(base.with_channel(0))
        return entry

    def __contains__(self, code: object) -> bool:
        return isinstance(code, ObisCode) and self.lookup(code) is not None

    def __len__(self) -> int:
        return len(self._entries)


_TARIFF_NAMES = {0: "", 1: "_t1", 2: "_t2", 3: "_t3", 4: "_t4"}

# (indicator, mode, label stem, unit, description stem)
_ENERGY_REGISTERS = [
    (1, 8, "active_energy_import", "kWh", "Active energy +"),
    (2, 8, "active_energy_export", "kWh", "Active energy -"),
    (3, 8, "reactive_energy_import", "kvarh", "Reactive energy +"),
    (4, 8, "reactive_energy_export", "kvarh", "Reactive energy -"),
]

# (indicator, mode, tariff, label, unit, description)
_INSTANT_VALUES = [
    (1, 7, 0, "active_power_import", "kW", "Active power + (total)"),
    (2, 7, 0, "active_power_export", "kW", "Active power - (total)"),
    (3, 7, 0, "reactive_power_import", "kvar", "Reactive power + (total)"),
    (4, 7, 0, "reactive_power_export", "kvar", "Reactive power - (total)"),
    (15, 7, 0, "instantaneous_power", "kW", "Absolute active instantaneous power"),
    (16, 7, 0, "active_power_sum", "kW", "Sum active instantaneous power"),
    (36, 7, 0, "reactive_power_sum", "kvar", "Sum reactive instantaneous power"),
    (15, 8, 0, "absolute_active_energy", "kWh", "Absolute active energy total"),
    (21, 7, 0, "active_power_l1", "kW", "Active power + (L1)"),
    (41, 7, 0, "active_power_l2", "kW", "Active power + (L2)"),
    (61, 7, 0, "active_power_l3", "kW", "Active power + (L3)"),
    (22, 7, 0, "active_power_export_l1", "kW", "Active power - (L1)"),
    (42, 7, 0, "active_power_export_l2", "kW", "Active power - (L2)"),
    (62, 7, 0, "active_power_export_l3", "kW", "Active power - (L3)"),
    (32, 7, 0, "voltage_l1", "V", "Voltage (L1)"),
    (52, 7, 0, "voltage_l2", "V", "Voltage (L2)"),
    (72, 7, 0, "voltage_l3", "V", "Voltage (L3)"),
    (31, 7, 0, "current_l1", "A", "Current (L1)"),
    (51, 7, 0, "current_l2", "A", "Current (L2)"),
    (71, 7, 0, "current_l3", "A", "Current (L3)"),
    (13, 7, 0, "power_factor", None, "Power factor"),
    (33, 7, 0, "power_factor_l1", None, "Power factor (L1)"),
    (53, 7, 0, "power_factor_l2", None, "Power factor (L2)"),
    (73, 7, 0, "power_factor_l3", None, "Power factor (L3)"),
    (14, 7, 0, "frequency", "Hz", "Supply frequency"),
]


def build_default_registry() -> ObisRegistry:
    """Build the process-wide registry of well-known electricity codes."""
    entries: list[Tuple[ObisCode, RegistryEntry]] = []

    for indicator, mode, stem, unit, desc in _ENERGY_REGISTERS:
        for tariff, suffix in _TARIFF_NAMES.items():
            tariff_desc = "(total)" if tariff == 0 else f"(tariff {tariff})"
            entries.append((
                ObisCode(1, 0, indicator, mode, tariff),
                RegistryEntry(f"{stem}{suffix}", unit, description=f"{desc} {tariff_desc}"),
            ))

    for indicator, mode, tariff, label, unit, desc in _INSTANT_VALUES:
        entries.append((
            ObisCode(1, 0, indicator, mode, tariff),
            RegistryEntry(label, unit, description=desc),
        ))

    entries.extend([
        (ObisCode(0, 0, 1, 0, 0), RegistryEntry("timestamp", None, kind="timestamp", description="Date and time")),
        (ObisCode(1, 0, 0, 9, 1), RegistryEntry("meter_time", None, kind="text", description="Time")),
        (ObisCode(1, 0, 0, 9, 2), RegistryEntry("meter_date", None, kind="text", description="Date")),
        (ObisCode(0, 0, 0, 0, 0), RegistryEntry("device_id", None, kind="text", description="Device ID")),
        (ObisCode(0, 0, 0, 0, 1), RegistryEntry("device_id_1", None, kind="text", description="Device ID 1")),
        (ObisCode(0, 0, 0, 2, 0), RegistryEntry("firmware_version", None, kind="text", description="Firmware version")),
        (ObisCode(1, 0, 0, 0, 0), RegistryEntry("equipment_identifier", None, kind="text", description="Equipment identifier")),
        (ObisCode(0, 0, 96, 1, 0), RegistryEntry("serial_number", None, kind="text", description="Meter serial number")),
        (ObisCode(1, 0, 96, 1, 0), RegistryEntry("serial_number", None, kind="text", description="Meter serial number")),
        (ObisCode(1, 0, 97, 97, 0), RegistryEntry("error_register", None, kind="text", description="Error register")),
        (ObisCode(1, 0, 32, 32, 0), RegistryEntry("voltage_sags_l1", None, description="Number of voltage sags (L1)")),
        (ObisCode(1, 0, 52, 32, 0), RegistryEntry("voltage_sags_l2", None, description="Number of voltage sags (L2)")),
        (ObisCode(1, 0, 72, 32, 0), RegistryEntry("voltage_sags_l3", None, description="Number of voltage sags (L3)")),
    ])
    return ObisRegistry(entries)
