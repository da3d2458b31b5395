"""Tests for meter_agent.__main__ -- meter specs and flag precedence."""

from __future__ import annotations

import argparse

import pytest

from meter_agent.__main__ import _build_parser, _build_settings, _parse_meter
from meter_agent.schemas import ProtocolMode


class TestParseMeter:
    def test_port_only(self) -> None:
        meter = _parse_meter("/dev/ttyUSB0")
        assert meter.port == "/dev/ttyUSB0"
        assert meter.mode is ProtocolMode.C
        assert meter.baudrate == 300

    def test_port_and_mode(self) -> None:
        meter = _parse_meter("sim:d")
        assert meter.port == "sim"
        assert meter.mode is ProtocolMode.D
        assert meter.baudrate == 9600

    def test_port_mode_and_baud(self) -> None:
        meter = _parse_meter("/dev/ttyUSB1:D:2400")
        assert (meter.port, meter.mode, meter.baudrate) == ("/dev/ttyUSB1", ProtocolMode.D, 2400)

    def test_url_port_keeps_its_colons(self) -> None:
        assert _parse_meter("socket://10.0.0.5:2000").port == "socket://10.0.0.5:2000"
        meter = _parse_meter("socket://10.0.0.5:2000:A")
        assert meter.port == "socket://10.0.0.5:2000"
        assert meter.mode is ProtocolMode.A

    def test_invalid_mode_d_speed(self) -> None:
        with pytest.raises(argparse.ArgumentTypeError, match="2400 or 9600"):
            _parse_meter("/dev/ttyUSB1:D:300")


class TestBuildSettings:
    def test_flags_override_environment(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("LOG_FORMAT", "console")
        monkeypatch.setenv("DRY_RUN", "false")
        args = _build_parser().parse_args(
            ["--meter", "sim", "--meter", "/dev/ttyUSB1:D", "--dry-run", "--log-format", "json"]
        )
        settings = _build_settings(args)

        assert [(m.port, m.mode) for m in settings.meters] == [
            ("sim", ProtocolMode.C),
            ("/dev/ttyUSB1", ProtocolMode.D),
        ]
        assert settings.dry_run is True
        assert settings.log_format == "json"

    def test_without_flags_environment_is_kept(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("SIM_SCENARIO", "silent")
        settings = _build_settings(_build_parser().parse_args([]))
        assert settings.sim_scenario == "silent"
        assert len(settings.meters) == 1
        assert settings.dry_run is False

    def test_bad_meter_exits(self) -> None:
        with pytest.raises(SystemExit):
            _build_parser().parse_args(["--meter", "sim:D:1200"])
