"""Shared pytest fixtures for meter agent tests."""

from __future__ import annotations

from typing import Generator

import pytest

from meter_agent.obis import ObisRegistry, build_default_registry
from meter_agent.profiles import DeviceProfileResolver

EXAMPLE_TELEGRAM = (
    b"/ESY5Q3D\\@V5.3\r\n"
    b"0-0:1.0.0(210101120000W)\r\n"
    b"1-0:1.8.0(000123.456*kWh)\r\n"
    b"1-0:15.7.0(001.234*kW)\r\n"
    b"!\r\n"
)

# EasyMeter Q3D push telegram with storage groups, a hex status word and
# identifier lines.
EASYMETER_EXTENDED_TELEGRAM = (
    b"/ESY5Q3DA1004 V3.04\r\n"
    b"1-0:0.0.0*255(1ESY1160123456)\r\n"
    b"1-0:1.8.0*255(00001234.5678*kWh)\r\n"
    b"1-0:21.7.255*255(000123.45*W)\r\n"
    b"1-0:96.5.5*255(82)\r\n"
    b"0-0:96.1.255*255(1ESY1160123456)\r\n"
    b"!\r\n"
)


@pytest.fixture(autouse=True)
def _reset_scenario_cache() -> Generator[None, None, None]:
    """Clear the simulation scenario cache between tests."""
    from meter_agent.transport import simulation

    simulation._scenarios_cache = None
    yield
    simulation._scenarios_cache = None


@pytest.fixture()
def registry() -> ObisRegistry:
    return build_default_registry()


@pytest.fixture()
def resolver() -> DeviceProfileResolver:
    return DeviceProfileResolver()


@pytest.fixture()
def example_telegram() -> bytes:
    return EXAMPLE_TELEGRAM


@pytest.fixture()
def extended_telegram() -> bytes:
    return EASYMETER_EXTENDED_TELEGRAM
