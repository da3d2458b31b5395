"""Per-port IEC 62056-21 session: the protocol state machine.

One ``ModeController`` owns one transport.  Its ``acquire`` coroutine
drives a single readout through::

    Idle -> AwaitingIdentification -> NegotiatingBaud (Mode C only)
         -> ReceivingData -> TelegramComplete -> Idle

with ``Error`` reachable from every phase.  Waiting for bytes is always an
``await`` bounded by the phase's timeout.  Errors come back as an
``AcquisitionResult``; the caller owns retry and backoff.  Only
``PortIOError`` propagates.

Use the controller as an async context manager: leaving the block (also
by cancellation or error) restores the initial baud rate before the port
is closed.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from enum import Enum
from typing import Awaitable, Callable, Optional

import structlog

from meter_agent.checksum import get_checksum_strategy
from meter_agent.decoder import ObisDecoder
from meter_agent.errors import (
    BaudNegotiationError,
    BaudNegotiationTimeout,
    FramingError,
    MeterAgentError,
    PhaseTimeout,
    PortIOError,
)
from meter_agent.obis import ObisRegistry
from meter_agent.profiles import INITIAL_BAUDRATE, DeviceProfile, DeviceProfileResolver
from meter_agent.schemas import IdentificationLine, ProtocolMode, TelegramBatch
from meter_agent.telegram import Telegram, TelegramFramer, TelegramParser
from meter_agent.transport.base import MeterTransport

logger = structlog.get_logger(__name__)

ACK = b"\x06"
# Protocol control character: 0 = normal protocol procedure.
PROTOCOL_NORMAL = b"0"
# Mode control character: 0 = data readout.
MODE_DATA_READOUT = b"0"


class Phase(str, Enum):
    IDLE = "Idle"
    AWAITING_IDENTIFICATION = "AwaitingIdentification"
    NEGOTIATING_BAUD = "NegotiatingBaud"
    RECEIVING_DATA = "ReceivingData"
    TELEGRAM_COMPLETE = "TelegramComplete"
    ERROR = "Error"


@dataclass
class SessionState:
    """Mutable state of one physical line; never shared across sessions."""

    mode: ProtocolMode
    baudrate: int
    framer: TelegramFramer
    phase: Phase = Phase.IDLE
    retry_count: int = 0
    identification: Optional[IdentificationLine] = None
    profile: Optional[DeviceProfile] = None
    last_error: Optional[str] = field(default=None, repr=False)

    def reset(self) -> None:
        """Back to ``Idle`` with an empty receive buffer."""
        self.phase = Phase.IDLE
        self.framer.reset()
        self.identification = None
        self.profile = None


@dataclass
class AcquisitionResult:
    """Outcome of one ``ModeController.acquire`` call."""

    batch: Optional[TelegramBatch] = None
    error: Optional[MeterAgentError] = None

    @property
    def ok(self) -> bool:
        return self.error is None and self.batch is not None


PhaseListener = Callable[[Phase, SessionState], None]


def request_message(address: str = "") -> bytes:
    """``/?<address>!<CR><LF>``"""
    return f"/?{address}!\r\n".encode("ascii")


def acknowledgement(baud_id: str) -> bytes:
    """``ACK`` + protocol control + baud identifier + mode control, then CR LF."""
    return ACK + PROTOCOL_NORMAL + baud_id.encode("ascii") + MODE_DATA_READOUT + b"\r\n"


class ModeController:
    """Drive acquisition on one port in a fixed communication mode."""

    def __init__(
        self,
        transport: MeterTransport,
        *,
        mode: ProtocolMode,
        registry: ObisRegistry,
        resolver: DeviceProfileResolver,
        default_baudrate: Optional[int] = None,
        identification_timeout: float = 5.0,
        data_timeout: float = 30.0,
        max_telegram_bytes: int = 8192,
        max_telegram_lines: int = 256,
        device_id: Optional[str] = None,
        address: str = "",
        on_phase: Optional[PhaseListener] = None,
    ) -> None:
        self._transport = transport
        self._mode = mode
        self._resolver = resolver
        self._decoder = ObisDecoder(registry)
        self._parser = TelegramParser(mode)
        self._default_baudrate = default_baudrate or (
            transport.baudrate if mode is ProtocolMode.D else INITIAL_BAUDRATE
        )
        self._identification_timeout = identification_timeout
        self._data_timeout = data_timeout
        self._device_id = device_id
        self._address = address
        self._on_phase = on_phase
        self._state = SessionState(
            mode=mode,
            baudrate=self._default_baudrate,
            framer=TelegramFramer(
                max_bytes=max_telegram_bytes, max_lines=max_telegram_lines
            ),
        )
        self._log = logger.bind(port=transport.port, mode=mode.value)

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def transport(self) -> MeterTransport:
        return self._transport

    # -- lifecycle ----------------------------------------------------------

    async def __aenter__(self) -> "ModeController":
        await self.open()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.release()

    async def open(self) -> None:
        await self._transport.open()
        if self._transport.baudrate != self._default_baudrate:
            await self._switch_baud(self._default_baudrate)
        self._state.baudrate = self._default_baudrate
        self._log.info("session_opened", baudrate=self._default_baudrate)

    async def release(self) -> None:
        """Restore the initial baud rate (if changed) and close the port."""
        try:
            await self._restore_baud()
        finally:
            await self._transport.close()
            self._state.reset()
            self._log.info("session_released")

    # -- acquisition --------------------------------------------------------

    async def acquire(self) -> AcquisitionResult:
        """Run one complete readout and decode it into a batch.

        Raises ``PortIOError`` on transport failure; every other error is
        returned in the result.
        """
        state = self._state
        if state.phase is not Phase.IDLE:
            state.reset()
        try:
            if self._mode is ProtocolMode.D:
                telegram = await self._receive_push()
            else:
                telegram = await self._request_readout()
            batch = self._decode(telegram)
            self._transition(Phase.TELEGRAM_COMPLETE)
            state.retry_count = 0
            state.last_error = None
            return AcquisitionResult(batch=batch)
        except (FramingError, BaudNegotiationError, PhaseTimeout) as exc:
            state.retry_count += 1
            state.last_error = str(exc)
            self._transition(Phase.ERROR)
            self._log.warning(
                "acquisition_failed",
                error=type(exc).__name__,
                detail=str(exc),
                retry_count=state.retry_count,
            )
            return AcquisitionResult(error=exc)
        except PortIOError:
            state.last_error = "port_io_error"
            self._transition(Phase.ERROR)
            raise
        finally:
            await self._restore_baud()
            state.reset()
            self._transition(Phase.IDLE)

    # -- phases -------------------------------------------------------------

    async def _request_readout(self) -> Telegram:
        self._transition(Phase.AWAITING_IDENTIFICATION)
        # Leftovers of an aborted block must not pass for the reply.
        await self._transport.reset_input_buffer()
        await self._transport.write(request_message(self._address))
        raw, identification = await self._await_identification()

        profile = self._use_profile(identification)
        self._state.framer.feed(raw)

        if self._mode is ProtocolMode.C:
            self._transition(Phase.NEGOTIATING_BAUD)
            await self._negotiate(identification, profile)

        self._transition(Phase.RECEIVING_DATA)
        return await self._receive_data()

    async def _receive_push(self) -> Telegram:
        self._transition(Phase.AWAITING_IDENTIFICATION)
        framer = self._state.framer
        deadline = self._deadline(self._identification_timeout)
        line = b""
        while not framer.started:
            line = await self._read(self._transport.read_line, deadline, Phase.AWAITING_IDENTIFICATION)
            framer.feed(line)
        identification = self._parser.parse_identification(
            line.decode(framer.encoding, errors="replace")
        )
        self._use_profile(identification)
        self._transition(Phase.RECEIVING_DATA)
        return await self._receive_data()

    async def _await_identification(self) -> tuple[bytes, IdentificationLine]:
        deadline = self._deadline(self._identification_timeout)
        while True:
            raw = await self._read(self._transport.read_line, deadline, Phase.AWAITING_IDENTIFICATION)
            text = raw.decode("ascii", errors="replace").strip()
            if text.startswith("/?"):
                # Echo of our own request on half-duplex optical heads.
                continue
            if text.startswith("/"):
                return raw, self._parser.parse_identification(text)
            if text:
                self._log.debug("identification_skipping", line=text[:80])

    async def _negotiate(self, identification: IdentificationLine, profile: DeviceProfile) -> None:
        try:
            baud_id, baudrate = profile.select_baud(identification.baud_id, self._mode)
        except KeyError:
            raise BaudNegotiationError(
                f"Baud identifier {identification.baud_id!r} has no baud rate"
            ) from None
        await self._transport.write(acknowledgement(baud_id))
        await self._switch_baud(baudrate)
        self._log.info(
            "baud_negotiated",
            advertised=identification.baud_id,
            selected=baud_id,
            baudrate=baudrate,
        )

    async def _receive_data(self) -> Telegram:
        framer = self._state.framer
        deadline = self._deadline(self._data_timeout)
        while True:
            line = await self._read(self._transport.read_line, deadline, Phase.RECEIVING_DATA)
            telegram = framer.feed(line)
            if telegram is not None:
                return telegram
            if framer.awaiting_trailer:
                trailer = await self._read(
                    lambda: self._transport.read_exactly(2), deadline, Phase.RECEIVING_DATA
                )
                return framer.feed_trailer(trailer)

    def _decode(self, telegram: Telegram) -> TelegramBatch:
        profile = self._state.profile or self._resolver.fallback
        parsed = self._parser.parse(telegram, get_checksum_strategy(profile.checksum))
        return self._decoder.decode(
            parsed, profile, mode=self._mode, device_id=self._device_id
        )

    # -- helpers ------------------------------------------------------------

    def _use_profile(self, identification: IdentificationLine) -> DeviceProfile:
        profile = self._resolver.resolve(identification.manufacturer)
        if self._mode not in profile.supported_modes:
            self._log.warning(
                "mode_not_in_profile", profile=profile.name, manufacturer=identification.manufacturer
            )
        self._state.identification = identification
        self._state.profile = profile
        self._state.framer.encoding = profile.encoding
        return profile

    async def _switch_baud(self, baudrate: int) -> None:
        await self._transport.set_baudrate(baudrate, flush_input=True)
        self._state.baudrate = baudrate

    async def _restore_baud(self) -> None:
        if not self._transport.is_open() or self._transport.baudrate == self._default_baudrate:
            return
        try:
            await self._switch_baud(self._default_baudrate)
            self._log.info("baud_restored", baudrate=self._default_baudrate)
        except PortIOError:
            self._log.exception("baud_restore_failed", baudrate=self._default_baudrate)

    def _transition(self, phase: Phase) -> None:
        self._state.phase = phase
        self._log.debug("session_phase", phase=phase.value, baudrate=self._transport.baudrate)
        if self._on_phase is not None:
            self._on_phase(phase, self._state)

    def _deadline(self, timeout: float) -> float:
        return asyncio.get_running_loop().time() + timeout

    async def _read(
        self,
        read: Callable[[], Awaitable[bytes]],
        deadline: float,
        phase: Phase,
    ) -> bytes:
        remaining = deadline - asyncio.get_running_loop().time()
        try:
            if remaining <= 0:
                raise asyncio.TimeoutError
            return await asyncio.wait_for(read(), timeout=remaining)
        except asyncio.TimeoutError:
            if phase is Phase.AWAITING_IDENTIFICATION:
                if self._mode is ProtocolMode.C:
                    raise BaudNegotiationTimeout(self._identification_timeout) from None
                raise PhaseTimeout(phase.value, self._identification_timeout) from None
            raise PhaseTimeout(phase.value, self._data_timeout) from None
