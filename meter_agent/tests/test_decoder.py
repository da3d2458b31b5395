"""Tests for meter_agent.decoder -- records, labels and vendor overrides."""

from __future__ import annotations

import json
from datetime import datetime
from decimal import Decimal

from meter_agent.checksum import get_checksum_strategy
from meter_agent.decoder import ObisDecoder
from meter_agent.obis import ObisRegistry
from meter_agent.profiles import DeviceProfileResolver
from meter_agent.schemas import ProtocolMode, TelegramBatch
from meter_agent.telegram import TelegramParser, frame_bytes


def _decode(
    data: bytes,
    registry: ObisRegistry,
    resolver: DeviceProfileResolver,
    mode: ProtocolMode = ProtocolMode.D,
    **kwargs,
) -> TelegramBatch:
    parser = TelegramParser(mode)
    telegram = frame_bytes(data)
    ident = parser.parse_identification(telegram.identification)
    profile = resolver.resolve(ident.manufacturer)
    parsed = parser.parse(telegram, get_checksum_strategy(profile.checksum))
    return ObisDecoder(registry).decode(parsed, profile, mode=mode, **kwargs)


def test_example_telegram(example_telegram, registry, resolver) -> None:
    batch = _decode(example_telegram, registry, resolver)

    assert batch.profile == "easymeter"
    assert batch.manufacturer == "ESY"
    assert batch.valid is True
    assert len(batch.records) == 3
    assert batch.skipped == []

    stamp, energy, power = batch.records
    assert str(stamp.obis) == "0-0:1.0.0"
    assert stamp.observed_at == datetime(2021, 1, 1, 12, 0, 0)
    assert stamp.season == "winter"
    assert stamp.value is None

    assert str(energy.obis) == "1-0:1.8.0"
    assert energy.label == "active_energy_import"
    assert energy.value == Decimal("123.456")
    assert energy.unit == "kWh"

    assert str(power.obis) == "1-0:15.7.0"
    assert power.label == "instantaneous_power"
    assert power.value == Decimal("1.234")
    assert power.unit == "kW"


def test_records_share_telegram_arrival_time(example_telegram, registry, resolver) -> None:
    batch = _decode(example_telegram, registry, resolver)
    assert {r.received_at for r in batch.records} == {batch.received_at}


def test_device_id_defaults_to_manufacturer_and_model(
    example_telegram, registry, resolver
) -> None:
    batch = _decode(example_telegram, registry, resolver)
    assert batch.device_id == "ESY-Q3D\\@V5.3"
    assert all(r.device_id == batch.device_id for r in batch.records)


def test_configured_device_id_wins(example_telegram, registry, resolver) -> None:
    batch = _decode(example_telegram, registry, resolver, device_id="meter-7")
    assert batch.device_id == "meter-7"


def test_easymeter_overrides(extended_telegram, registry, resolver) -> None:
    batch = _decode(extended_telegram, registry, resolver)
    by_label = {r.label: r for r in batch.records}

    assert batch.device_id == "1ESY1160123456"
    assert by_label["equipment_identifier"].text == "1ESY1160123456"
    assert by_label["equipment_identifier"].value is None
    assert by_label["status_word"].value == Decimal(0x82)
    assert by_label["status_word"].text == "82"
    assert by_label["serial_number"].text == "1ESY1160123456"
    assert by_label["active_energy_import"].value == Decimal("1234.5678")
    assert str(by_label["active_energy_import"].obis) == "1-0:1.8.0*255"

    unmapped = by_label["unmapped"]
    assert str(unmapped.obis) == "1-0:21.7.255*255"
    assert unmapped.value == Decimal("123.45")
    assert unmapped.unit == "W"


def test_unknown_manufacturer_uses_generic_profile(registry, resolver) -> None:
    data = (
        b"/XYZ5GENERIC-100\r\n"
        b"1-0:1.8.0(000042.000*kWh)\r\n"
        b"1-0:1.7.0(0.350*kW)\r\n"
        b"1-0:99.99.9(ABCDEF)\r\n"
        b"!\r\n"
    )
    batch = _decode(data, registry, resolver, mode=ProtocolMode.C)

    assert batch.profile == "generic"
    assert batch.device_id == "XYZ-GENERIC-100"
    assert [r.label for r in batch.records] == [
        "active_energy_import",
        "active_power_import",
        "unmapped",
    ]
    assert batch.records[0].value == Decimal("42.000")
    assert batch.records[2].text == "ABCDEF"
    assert batch.records[2].value is None


def test_ebz_scaling_and_labels(registry, resolver) -> None:
    data = (
        b"/EBZ5DD3BZ06ETA_107\r\n"
        b"1-0:96.1.0(1EBZ0100123456)\r\n"
        b"1-0:16.7.0(001.500*kW)\r\n"
        b"1-0:13.7.0(950)\r\n"
        b"1-0:96.5.0(001C0104)\r\n"
        b"!\r\n"
    )
    batch = _decode(data, registry, resolver, mode=ProtocolMode.C)
    by_label = {r.label: r for r in batch.records}

    assert batch.device_id == "1EBZ0100123456"
    assert by_label["sum_active_power"].value == Decimal("1.500")
    assert by_label["power_factor"].value == Decimal("0.950")
    assert by_label["power_factor"].unit is None
    assert by_label["status_word"].value == Decimal(0x001C0104)


def test_multi_group_line(registry, resolver) -> None:
    data = (
        b"/ESY5Q3D\r\n"
        b"1-0:1.8.0(000100.000*kWh)(000099.000*kWh)\r\n"
        b"!\r\n"
    )
    record = _decode(data, registry, resolver).records[0]
    assert record.value == Decimal("100.000")
    assert record.additional_values == [Decimal("99.000")]


def test_timestamped_register(registry, resolver) -> None:
    data = b"/ESY5Q3D\r\n1-0:1.8.0(210615083000S)(000100.000*kWh)\r\n!\r\n"
    record = _decode(data, registry, resolver).records[0]
    assert record.observed_at == datetime(2021, 6, 15, 8, 30, 0)
    assert record.season == "summer"
    assert record.value == Decimal("100.000")


def test_bad_value_is_skipped_not_fatal(registry, resolver) -> None:
    data = (
        b"/ESY5Q3D\r\n"
        b"1-0:1.8.0(12,5*kWh)\r\n"
        b"1-0:2.8.0(000001.000*kWh)\r\n"
        b"0-0:1.0.0(211332250000W)\r\n"
        b"!\r\n"
    )
    batch = _decode(data, registry, resolver)
    assert [r.label for r in batch.records] == ["active_energy_export"]
    assert len(batch.skipped) == 2


def test_unit_mismatch_keeps_embedded_unit(registry, resolver) -> None:
    data = b"/ESY5Q3D\r\n1-0:1.8.0(001234567*Wh)\r\n!\r\n"
    record = _decode(data, registry, resolver).records[0]
    assert record.unit == "Wh"
    assert record.value == Decimal("1234567")


def test_batch_serialises_exact_decimals(example_telegram, registry, resolver) -> None:
    payload = json.loads(_decode(example_telegram, registry, resolver).model_dump_json())
    energy = payload["records"][1]
    assert energy["obis"] == "1-0:1.8.0"
    assert energy["value"] == "123.456"
    assert payload["mode"] == "D"


def test_twelve_digit_values_on_unmapped_abstract_codes(registry, resolver) -> None:
    data = (
        b"/XYZ5GENERIC-100\r\n"
        b"0-0:96.13.1(303132333435)\r\n"
        b"0-0:96.7.21(000000000004)\r\n"
        b"!\r\n"
    )
    batch = _decode(data, registry, resolver, mode=ProtocolMode.C)

    assert batch.skipped == []
    assert [r.label for r in batch.records] == ["unmapped", "unmapped"]
    message, failures = batch.records
    assert message.value == Decimal("303132333435")
    assert message.observed_at is None
    assert failures.value == Decimal("4")
    assert failures.observed_at is None
