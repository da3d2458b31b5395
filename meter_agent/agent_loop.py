"""Main asyncio loop: one session task per meter plus the batch consumer."""

from __future__ import annotations

import asyncio
import signal
import sys
from typing import Callable, List

import structlog

from meter_agent.batch_poster import BatchPoster
from meter_agent.config import AgentSettings, MeterPortSettings
from meter_agent.emitter import ChannelEmitter, MeasurementEmitter
from meter_agent.errors import PortIOError
from meter_agent.obis import ObisRegistry, build_default_registry
from meter_agent.profiles import DeviceProfileResolver
from meter_agent.session import ModeController
from meter_agent.transport.base import MeterTransport

logger = structlog.get_logger(__name__)


def create_transport(meter: MeterPortSettings, settings: AgentSettings) -> MeterTransport:
    """Factory: return the right transport for one configured meter.

    ``SerialTransport`` is imported lazily so simulation mode works
    without pyserial installed.
    """
    if meter.is_simulation:
        from meter_agent.transport.simulation import SimulationTransport

        return SimulationTransport(
            scenario=meter.sim_scenario or settings.sim_scenario,
            baudrate=meter.baudrate or 300,
        )

    from meter_agent.transport.serial_port import SerialTransport

    return SerialTransport(
        meter.port,
        baudrate=meter.baudrate or 300,
        bytesize=meter.bytesize,
        parity=meter.parity,
        stopbits=meter.stopbits,
    )


def create_controller(
    meter: MeterPortSettings,
    settings: AgentSettings,
    registry: ObisRegistry,
    resolver: DeviceProfileResolver,
) -> ModeController:
    return ModeController(
        create_transport(meter, settings),
        mode=meter.mode,
        registry=registry,
        resolver=resolver,
        default_baudrate=meter.baudrate,
        identification_timeout=settings.identification_timeout_seconds,
        data_timeout=settings.data_timeout_seconds,
        max_telegram_bytes=settings.max_telegram_bytes,
        max_telegram_lines=settings.max_telegram_lines,
        device_id=meter.device_id,
        address=meter.address,
    )


async def run_agent(
    settings: AgentSettings,
    *,
    once: bool = False,
) -> None:
    """Run the meter agent.

    Parameters
    ----------
    settings:
        Fully-resolved agent configuration.
    once:
        If ``True``, take a single readout per meter then exit.
    """
    shutdown_event = asyncio.Event()

    # --- signal handling ---------------------------------------------------
    def _request_shutdown() -> None:
        logger.info("shutdown_requested")
        shutdown_event.set()

    loop = asyncio.get_running_loop()
    if sys.platform != "win32":
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, _request_shutdown)

    # Built once, shared read-only by every session.
    registry = build_default_registry()
    resolver = DeviceProfileResolver()

    channel = ChannelEmitter(maxsize=settings.emit_queue_size)
    poster = BatchPoster(settings)
    await poster.start()
    consumer = asyncio.create_task(poster.consume(channel), name="batch-consumer")

    sessions: List[asyncio.Task[None]] = [
        asyncio.create_task(
            run_session(
                create_controller(meter, settings, registry, resolver),
                channel,
                settings,
                shutdown_event,
                once=once,
            ),
            name=f"session-{meter.port}",
        )
        for meter in settings.meters
    ]
    for task in sessions:
        task.add_done_callback(_failure_reporter("session_failed"))
    consumer.add_done_callback(_failure_reporter("consumer_failed"))

    # The run also ends as soon as the consumer stops.
    waiter = (
        asyncio.gather(*sessions, return_exceptions=True)
        if once
        else asyncio.ensure_future(shutdown_event.wait())
    )
    try:
        await asyncio.wait({consumer, waiter}, return_when=asyncio.FIRST_COMPLETED)
    finally:
        waiter.cancel()
        for task in sessions:
            task.cancel()
        await asyncio.gather(waiter, *sessions, return_exceptions=True)
        try:
            if consumer.done():
                consumer.result()
            else:
                await channel.close()
                await consumer
        finally:
            await poster.close()
            if sys.platform != "win32":
                for sig in (signal.SIGINT, signal.SIGTERM):
                    loop.remove_signal_handler(sig)


async def run_session(
    controller: ModeController,
    emitter: MeasurementEmitter,
    settings: AgentSettings,
    shutdown_event: asyncio.Event,
    *,
    once: bool = False,
) -> None:
    """Acquire-emit-sleep loop for one port with caller-side backoff."""
    port = controller.transport.port

    while not shutdown_event.is_set():
        # --- open (or reopen) the port -------------------------------------
        try:
            await controller.open()
        except PortIOError:
            logger.exception("session_open_failed", port=port)
            # The port may be open at the wrong speed.
            await controller.release()
            if once:
                return
            await _interruptible_sleep(settings.retry_backoff_max_seconds, shutdown_event)
            continue

        try:
            while not shutdown_event.is_set():
                result = await controller.acquire()
                if result.batch is not None:
                    # Blocks while the consumer is congested.
                    await emitter.emit(result.batch)
                if once:
                    return
                delay = (
                    settings.poll_interval_seconds
                    if result.ok
                    else settings.backoff_seconds(controller.state.retry_count)
                )
                await _interruptible_sleep(delay, shutdown_event)
        except PortIOError:
            logger.exception("session_port_failed", port=port)
            if once:
                return
            await _interruptible_sleep(settings.retry_backoff_max_seconds, shutdown_event)
        finally:
            await controller.release()


def _failure_reporter(event: str) -> Callable[["asyncio.Task[None]"], None]:
    """Done-callback that logs a task which ended with an exception."""

    def _report(task: "asyncio.Task[None]") -> None:
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error(
                event,
                task=task.get_name(),
                error=type(exc).__name__,
                detail=str(exc),
                exc_info=exc,
            )

    return _report


async def _interruptible_sleep(
    seconds: float, event: asyncio.Event
) -> None:
    """Sleep for *seconds* but wake early if *event* is set."""
    try:
        await asyncio.wait_for(event.wait(), timeout=seconds)
    except asyncio.TimeoutError:
        pass
