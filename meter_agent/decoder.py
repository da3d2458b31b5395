"""Turn parsed data lines into typed, labelled ``MeasurementRecord`` batches."""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import List, Optional, Tuple

import structlog

from meter_agent.errors import MalformedValue
from meter_agent.obis import (
    TIMESTAMP_RE,
    UNMAPPED_LABEL,
    ObisCode,
    ObisRegistry,
    RegistryEntry,
    parse_decimal,
)
from meter_agent.profiles import DeviceProfile, ObisOverride
from meter_agent.schemas import (
    DataLine,
    MeasurementRecord,
    ProtocolMode,
    SkippedLine,
    TelegramBatch,
    ValueGroup,
)
from meter_agent.telegram import ParsedTelegram

logger = structlog.get_logger(__name__)

_ONE = Decimal(1)
_IDENTIFIER_LABELS = ("equipment_identifier", "device_id", "serial_number")
_SEASONS = {"S": "summer", "W": "winter"}


class ObisDecoder:
    """Decode data lines using the shared registry and a device profile."""

    def __init__(self, registry: ObisRegistry) -> None:
        self._registry = registry

    @property
    def registry(self) -> ObisRegistry:
        return self._registry

    def decode(
        self,
        parsed: ParsedTelegram,
        profile: DeviceProfile,
        *,
        mode: ProtocolMode = ProtocolMode.D,
        device_id: Optional[str] = None,
    ) -> TelegramBatch:
        """Decode every data line of *parsed* into one ordered batch.

        Lines whose values fail the grammar are skipped and listed in
        ``batch.skipped``; the remaining records are still returned.
        """
        ident = parsed.identification
        received_at = parsed.telegram.received_at
        resolved_id = device_id or self._device_id_from(parsed, profile)

        records: List[MeasurementRecord] = []
        skipped: List[SkippedLine] = list(parsed.skipped)
        for line in parsed.data_lines:
            try:
                records.append(
                    self.decode_line(
                        line,
                        profile,
                        model=ident.model,
                        received_at=received_at,
                        device_id=resolved_id,
                    )
                )
            except MalformedValue as exc:
                logger.warning("data_line_skipped", line=line.raw[:120], reason=str(exc))
                skipped.append(SkippedLine(line=line.raw, reason=str(exc)))

        batch = TelegramBatch(
            device_id=resolved_id,
            manufacturer=ident.manufacturer,
            model=ident.model,
            profile=profile.name,
            mode=mode,
            received_at=received_at,
            valid=parsed.valid,
            checksum=parsed.checksum,
            records=records,
            skipped=skipped,
        )
        logger.info(
            "telegram_decoded",
            device_id=resolved_id,
            profile=profile.name,
            records=len(records),
            skipped=len(skipped),
            valid=batch.valid,
        )
        return batch

    def decode_line(
        self,
        line: DataLine,
        profile: DeviceProfile,
        *,
        model: str = "",
        received_at: datetime,
        device_id: str,
    ) -> MeasurementRecord:
        """Decode one data line; raises ``MalformedValue`` on bad values."""
        code = line.code
        entry = self._registry.lookup(code)
        override = profile.override_for(code, model)
        label = _label(entry, override)
        kind = entry.kind if entry is not None else None
        variant = override.variant if override is not None else None

        stamps, others = _split_timestamps(line.groups, code, kind, variant)
        observed_at, season = _decode_timestamp(stamps[0].value) if stamps else (None, None)

        record = dict(
            obis=code,
            label=label,
            observed_at=observed_at,
            season=season,
            received_at=received_at,
            device_id=device_id,
            raw_value=line.groups[-1].value,
        )

        if kind == "timestamp":
            if not stamps:
                raise MalformedValue(line.groups[0].value, f"Expected timestamp in {line.raw!r}")
            return MeasurementRecord(**record)

        if variant == "hex":
            text = others[-1].value if others else ""
            try:
                value = Decimal(int(text, 16))
            except ValueError as exc:
                raise MalformedValue(text, f"Expected hexadecimal value, got {text!r}") from exc
            return MeasurementRecord(value=value, text=text, unit=None, **record)

        if variant == "text" or kind == "text":
            text = others[-1].value if others else ""
            return MeasurementRecord(text=text, unit=None, **record)

        if not others:
            # Timestamp-only line of an unmapped code.
            return MeasurementRecord(**record)

        try:
            values = [parse_decimal(group.value) for group in others]
        except MalformedValue:
            if entry is not None:
                raise
            return MeasurementRecord(
                text=others[0].value, unit=others[0].unit, **record
            )

        scale = (entry.scale if entry is not None else _ONE) * (
            override.scale if override is not None and override.scale is not None else _ONE
        )
        if scale != _ONE:
            values = [value * scale for value in values]

        return MeasurementRecord(
            value=values[0],
            additional_values=values[1:],
            unit=_unit(code, entry, override, others[0].unit),
            **record,
        )

    def _device_id_from(self, parsed: ParsedTelegram, profile: DeviceProfile) -> str:
        ident = parsed.identification
        for line in parsed.data_lines:
            entry = self._registry.lookup(line.code)
            label = _label(entry, profile.override_for(line.code, ident.model))
            if label in _IDENTIFIER_LABELS and line.groups[0].value:
                return line.groups[0].value
        return f"{ident.manufacturer}-{ident.model}" if ident.model else ident.manufacturer


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _label(entry: Optional[RegistryEntry], override: Optional[ObisOverride]) -> str:
    if override is not None and override.label:
        return override.label
    if entry is not None:
        return entry.label
    return UNMAPPED_LABEL


def _unit(
    code: ObisCode,
    entry: Optional[RegistryEntry],
    override: Optional[ObisOverride],
    embedded: Optional[str],
) -> Optional[str]:
    if override is not None and override.unit:
        return override.unit
    if entry is None or entry.unit is None:
        return embedded
    if embedded is not None and embedded != entry.unit:
        # No unit conversion: the unit the meter sent describes the digits.
        logger.debug("unit_mismatch", obis=str(code), registry=entry.unit, embedded=embedded)
        return embedded
    return entry.unit


def _split_timestamps(
    groups: List[ValueGroup],
    code: ObisCode,
    kind: Optional[str],
    variant: Optional[str],
) -> Tuple[List[ValueGroup], List[ValueGroup]]:
    if kind == "text" or variant is not None:
        return [], list(groups)
    stamps: List[ValueGroup] = []
    others: List[ValueGroup] = []
    for group in groups:
        m = TIMESTAMP_RE.match(group.value)
        # A bare 12-digit value is a timestamp only on a timestamp register
        # or when it carries the S/W season flag.
        is_stamp = (
            m is not None
            and group.unit is None
            and (m.group(7) is not None or kind == "timestamp")
        )
        (stamps if is_stamp else others).append(group)
    return stamps, others


def _decode_timestamp(text: str) -> Tuple[datetime, Optional[str]]:
    """``YYMMDDhhmmss[S|W]`` -> (naive local datetime, season)."""
    m = TIMESTAMP_RE.match(text)
    if m is None:
        raise MalformedValue(text, f"Malformed timestamp {text!r}")
    yy, mo, dd, hh, mi, ss, flag = m.groups()
    try:
        stamp = datetime(2000 + int(yy), int(mo), int(dd), int(hh), int(mi), int(ss))
    except ValueError as exc:
        raise MalformedValue(text, f"Malformed timestamp {text!r}: {exc}") from exc
    return stamp, _SEASONS.get(flag) if flag else None
