"""Tests for meter_agent.session -- the per-port acquisition state machine."""

from __future__ import annotations

from decimal import Decimal
from typing import List, Tuple

import pytest

from meter_agent.errors import (
    BaudNegotiationTimeout,
    FramingError,
    PortIOError,
)
from meter_agent.obis import ObisRegistry
from meter_agent.profiles import DeviceProfileResolver
from meter_agent.schemas import ChecksumStatus, ProtocolMode
from meter_agent.session import (
    ModeController,
    Phase,
    SessionState,
    acknowledgement,
    request_message,
)
from meter_agent.transport.simulation import SimulationTransport


def _make_controller(
    transport: SimulationTransport,
    registry: ObisRegistry,
    resolver: DeviceProfileResolver,
    mode: ProtocolMode = ProtocolMode.C,
    **overrides,
) -> ModeController:
    defaults = dict(
        identification_timeout=0.2,
        data_timeout=0.5,
    )
    defaults.update(overrides)
    return ModeController(
        transport, mode=mode, registry=registry, resolver=resolver, **defaults
    )


def test_request_and_acknowledgement_messages() -> None:
    assert request_message() == b"/?!\r\n"
    assert request_message("12345678") == b"/?12345678!\r\n"
    assert acknowledgement("5") == b"\x06050\r\n"


# ---------------------------------------------------------------------------
# Mode C
# ---------------------------------------------------------------------------

class TestModeC:
    @pytest.mark.asyncio
    async def test_switches_baud_before_receiving_data(self, registry, resolver) -> None:
        transport = SimulationTransport(scenario="ebz_dd3")
        seen: List[Tuple[Phase, int]] = []

        def _record(phase: Phase, state: SessionState) -> None:
            seen.append((phase, transport.baudrate))

        controller = _make_controller(transport, registry, resolver, on_phase=_record)
        async with controller:
            result = await controller.acquire()

        assert result.ok
        speeds = dict(seen)
        assert speeds[Phase.AWAITING_IDENTIFICATION] == 300
        assert speeds[Phase.NEGOTIATING_BAUD] == 300
        assert speeds[Phase.RECEIVING_DATA] == 9600
        assert transport.written == [b"/?!\r\n", b"\x06050\r\n"]
        assert transport.baud_history == [300, 9600, 300]
        assert [phase for phase, _ in seen][-2:] == [Phase.TELEGRAM_COMPLETE, Phase.IDLE]

    @pytest.mark.asyncio
    async def test_ebz_readout_decodes(self, registry, resolver) -> None:
        transport = SimulationTransport(scenario="ebz_dd3")
        async with _make_controller(transport, registry, resolver) as controller:
            result = await controller.acquire()

        batch = result.batch
        assert batch is not None
        assert batch.checksum is ChecksumStatus.VALID
        assert batch.valid is True
        assert batch.profile == "ebz"
        assert batch.device_id == "1EBZ0100123456"
        assert len(batch.records) == 20
        labels = {r.label: r for r in batch.records}
        assert labels["power_factor"].value == Decimal("0.950")

    @pytest.mark.asyncio
    async def test_unknown_vendor(self, registry, resolver) -> None:
        transport = SimulationTransport(scenario="unknown_vendor")
        async with _make_controller(transport, registry, resolver) as controller:
            result = await controller.acquire()

        assert result.ok
        assert result.batch.profile == "generic"
        assert len(result.batch.records) == 3

    @pytest.mark.asyncio
    async def test_corrupt_checksum_flags_invalid_but_keeps_records(
        self, registry, resolver
    ) -> None:
        transport = SimulationTransport(scenario="corrupt_checksum")
        async with _make_controller(transport, registry, resolver) as controller:
            result = await controller.acquire()

        batch = result.batch
        assert batch is not None
        assert batch.valid is False
        assert batch.checksum is ChecksumStatus.INVALID
        assert [r.label for r in batch.records] == [
            "active_energy_import_t1",
            "sum_active_power",
        ]

    @pytest.mark.asyncio
    async def test_silent_meter_times_out(self, registry, resolver) -> None:
        transport = SimulationTransport(scenario="silent")
        controller = _make_controller(
            transport, registry, resolver, identification_timeout=0.05
        )
        async with controller:
            result = await controller.acquire()

            assert not result.ok
            assert isinstance(result.error, BaudNegotiationTimeout)
            assert controller.state.phase is Phase.IDLE
            assert controller.state.retry_count == 1

            await controller.acquire()
            assert controller.state.retry_count == 2

    @pytest.mark.asyncio
    async def test_retry_count_resets_on_success(self, registry, resolver) -> None:
        transport = SimulationTransport(scenario="ebz_dd3")
        async with _make_controller(transport, registry, resolver) as controller:
            controller.state.retry_count = 3
            result = await controller.acquire()
            assert result.ok
            assert controller.state.retry_count == 0

    @pytest.mark.asyncio
    async def test_block_without_terminator_is_framing_error(
        self, registry, resolver
    ) -> None:
        transport = SimulationTransport(
            scenario_data={
                "mode": "C",
                "identification": "/EBZ5DD3BZ06ETA_107",
                "omit_terminator": True,
                "lines": ["1-0:1.8.0(000042.000*kWh)"],
            },
        )
        # The data deadline is long so a framing error cannot be a timeout.
        controller = _make_controller(transport, registry, resolver, data_timeout=5.0)
        async with controller:
            result = await controller.acquire()

            assert result.batch is None
            assert isinstance(result.error, FramingError)
            assert "terminator" in str(result.error)
            assert controller.state.phase is Phase.IDLE
            assert transport.baudrate == 300

    @pytest.mark.asyncio
    async def test_stale_bytes_flushed_before_request(self, registry, resolver) -> None:
        transport = SimulationTransport(scenario="ebz_dd3")
        async with _make_controller(transport, registry, resolver) as controller:
            transport._feed(b"/XYZ5STALE\r\n")
            result = await controller.acquire()

        assert result.ok
        assert result.batch.manufacturer == "EBZ"

    @pytest.mark.asyncio
    async def test_port_failure_propagates(self, registry, resolver) -> None:
        transport = SimulationTransport(
            scenario_data={
                "mode": "C",
                "identification": "/EBZ5DD3BZ06ETA_107",
                "io_error": True,
                "lines": [],
            },
        )
        async with _make_controller(transport, registry, resolver) as controller:
            with pytest.raises(PortIOError):
                await controller.acquire()
            assert controller.state.phase is Phase.IDLE


# ---------------------------------------------------------------------------
# Modes A, B and D
# ---------------------------------------------------------------------------

class TestOtherModes:
    @pytest.mark.asyncio
    async def test_mode_b_reads_without_acknowledgement(self, registry, resolver) -> None:
        transport = SimulationTransport(
            scenario_data={
                "mode": "B",
                "identification": "/EBZEDD3BZ06ETA_107",
                "lines": ["1-0:1.8.0(000042.000*kWh)"],
            },
        )
        async with _make_controller(
            transport, registry, resolver, mode=ProtocolMode.B
        ) as controller:
            result = await controller.acquire()

        assert result.ok
        assert transport.written == [b"/?!\r\n"]
        assert transport.baud_history == [300]
        assert result.batch.records[0].value == Decimal("42.000")

    @pytest.mark.asyncio
    async def test_mode_d_push(self, registry, resolver) -> None:
        transport = SimulationTransport(scenario="easymeter_q3d", baudrate=9600)
        async with _make_controller(
            transport, registry, resolver, mode=ProtocolMode.D
        ) as controller:
            result = await controller.acquire()

        assert result.ok
        assert transport.written == []
        assert transport.baud_history == [9600]
        batch = result.batch
        assert batch.profile == "easymeter"
        assert batch.checksum is ChecksumStatus.ABSENT
        assert len(batch.records) == 11

    @pytest.mark.asyncio
    async def test_mode_d_crc_checked(self, registry, resolver) -> None:
        transport = SimulationTransport(
            baudrate=9600,
            scenario_data={
                "mode": "D",
                "identification": "/ESY5Q3D",
                "checksum": "crc16",
                "lines": ["1-0:1.8.0(000123.456*kWh)"],
            },
        )
        async with _make_controller(
            transport, registry, resolver, mode=ProtocolMode.D
        ) as controller:
            result = await controller.acquire()

        assert result.batch.checksum is ChecksumStatus.VALID

    @pytest.mark.asyncio
    async def test_missing_terminator_is_framing_error(self, registry, resolver) -> None:
        transport = SimulationTransport(scenario="no_terminator", baudrate=9600)
        async with _make_controller(
            transport,
            registry,
            resolver,
            mode=ProtocolMode.D,
            max_telegram_lines=16,
        ) as controller:
            result = await controller.acquire()

            assert result.batch is None
            assert isinstance(result.error, FramingError)
            assert controller.state.phase is Phase.IDLE
            assert not controller.state.framer.started


# ---------------------------------------------------------------------------
# Lifecycle
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_release_restores_initial_baud(registry, resolver) -> None:
    transport = SimulationTransport(scenario="ebz_dd3")
    async with _make_controller(transport, registry, resolver):
        await transport.set_baudrate(9600)

    assert transport.baudrate == 300
    assert not transport.is_open()


@pytest.mark.asyncio
async def test_release_when_block_raises(registry, resolver) -> None:
    transport = SimulationTransport(scenario="ebz_dd3")
    with pytest.raises(RuntimeError):
        async with _make_controller(transport, registry, resolver):
            await transport.set_baudrate(9600)
            raise RuntimeError("boom")

    assert transport.baudrate == 300
    assert not transport.is_open()
