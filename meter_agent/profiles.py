"""Device profiles keyed by the 3-letter manufacturer code.

A profile describes which communication modes a meter supports, which
baud table variant applies during Mode C negotiation, how the byte stream
is encoded, which checksum strategy verifies its telegrams, and a small
override table the decoder consults for vendor quirks.

Unknown manufacturers resolve to ``GENERIC_PROFILE``; resolution never
fails.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal
from types import MappingProxyType
from typing import Dict, FrozenSet, Iterable, Mapping, Optional, Tuple

import structlog

from meter_agent.obis import ObisCode
from meter_agent.schemas import ProtocolMode

logger = structlog.get_logger(__name__)

# Baud identifier -> baud rate.
MODE_C_BAUD_TABLE: Mapping[str, int] = MappingProxyType({
    "0": 300,
    "1": 600,
    "2": 1200,
    "3": 2400,
    "4": 4800,
    "5": 9600,
    "6": 19200,
})

MODE_B_BAUD_TABLE: Mapping[str, int] = MappingProxyType({
    "A": 600,
    "B": 1200,
    "C": 2400,
    "D": 4800,
    "E": 9600,
    "F": 19200,
})

INITIAL_BAUDRATE = 300


@dataclass(frozen=True)
class ObisOverride:
    """Vendor-specific treatment of one OBIS code.

    ``variant`` routes the value to a different decoder: ``hex`` for
    status words sent as hexadecimal, ``text`` for identifiers that look
    numeric but must stay verbatim.  ``models`` restricts the override to
    identification model strings starting with one of the prefixes.
    """

    label: Optional[str] = None
    scale: Optional[Decimal] = None
    unit: Optional[str] = None
    variant: Optional[str] = None
    models: Tuple[str, ...] = ()

    def applies_to(self, model: str) -> bool:
        return not self.models or any(model.startswith(prefix) for prefix in self.models)


@dataclass(frozen=True)
class DeviceProfile:
    """Static description of one meter family."""

    name: str
    manufacturers: FrozenSet[str]
    supported_modes: FrozenSet[ProtocolMode]
    max_baudrate: Optional[int] = None
    encoding: str = "ascii"
    checksum: str = "auto"
    overrides: Mapping[ObisCode, ObisOverride] = field(
        default_factory=lambda: MappingProxyType({})
    )

    def override_for(self, code: ObisCode, model: str = "") -> Optional[ObisOverride]:
        override = self.overrides.get(code.without_storage())
        if override is not None and override.applies_to(model):
            return override
        return None

    def select_baud(self, baud_id: str, mode: ProtocolMode = ProtocolMode.C) -> Tuple[str, int]:
        """Pick the baud identifier/rate to acknowledge for *baud_id*.

        The meter's advertised rate is capped at ``max_baudrate``; the
        highest table rate not above the cap is chosen instead.  Raises
        ``KeyError`` when *baud_id* is not in the table.
        """
        table = MODE_B_BAUD_TABLE if mode is ProtocolMode.B else MODE_C_BAUD_TABLE
        advertised = table[baud_id]
        if self.max_baudrate is None or advertised <= self.max_baudrate:
            return baud_id, advertised
        allowed = [(rate, ident) for ident, rate in table.items() if rate <= self.max_baudrate]
        rate, ident = max(allowed)
        return ident, rate


def _overrides(items: Iterable[Tuple[str, ObisOverride]]) -> Mapping[ObisCode, ObisOverride]:
    return MappingProxyType({ObisCode.parse(code): ov for code, ov in items})


EASYMETER_PROFILE = DeviceProfile(
    name="easymeter",
    manufacturers=frozenset({"ESY", "EAS"}),
    supported_modes=frozenset({ProtocolMode.C, ProtocolMode.D}),
    max_baudrate=9600,
    checksum="auto",
    overrides=_overrides([
        ("1-0:0.0.0", ObisOverride(label="equipment_identifier", variant="text")),
        ("1-0:96.5.5", ObisOverride(label="status_word", variant="hex", models=("Q3",))),
        ("0-0:96.1.255", ObisOverride(label="serial_number", variant="text")),
    ]),
)

EBZ_PROFILE = DeviceProfile(
    name="ebz",
    manufacturers=frozenset({"EBZ"}),
    supported_modes=frozenset({ProtocolMode.C, ProtocolMode.D}),
    checksum="auto",
    overrides=_overrides([
        ("1-0:16.7.0", ObisOverride(label="sum_active_power")),
        ("1-0:36.7.0", ObisOverride(label="sum_reactive_power", unit="kvar")),
        ("1-0:96.1.0", ObisOverride(label="serial_number", variant="text")),
        ("1-0:96.5.0", ObisOverride(label="status_word", variant="hex")),
        # DD3 reports power factor in per-mille without a unit.
        ("1-0:13.7.0", ObisOverride(scale=Decimal("0.001"), models=("DD3BZ06",))),
    ]),
)

GENERIC_PROFILE = DeviceProfile(
    name="generic",
    manufacturers=frozenset(),
    supported_modes=frozenset({ProtocolMode.C, ProtocolMode.D}),
    checksum="auto",
)

DEFAULT_PROFILES: Tuple[DeviceProfile, ...] = (EASYMETER_PROFILE, EBZ_PROFILE)


class DeviceProfileResolver:
    """Map manufacturer codes to profiles; unknown codes get the fallback."""

    def __init__(
        self,
        profiles: Iterable[DeviceProfile] = DEFAULT_PROFILES,
        fallback: DeviceProfile = GENERIC_PROFILE,
    ) -> None:
        table: Dict[str, DeviceProfile] = {}
        for profile in profiles:
            for code in profile.manufacturers:
                table[code.upper()] = profile
        self._table: Mapping[str, DeviceProfile] = MappingProxyType(table)
        self._fallback = fallback

    @property
    def fallback(self) -> DeviceProfile:
        return self._fallback

    def resolve(self, manufacturer: str) -> DeviceProfile:
        profile = self._table.get(manufacturer.strip().upper())
        if profile is None:
            logger.info(
                "profile_fallback",
                manufacturer=manufacturer,
                profile=self._fallback.name,
            )
            return self._fallback
        return profile

    def is_known(self, manufacturer: str) -> bool:
        return manufacturer.strip().upper() in self._table
