"""CLI entry point.

``python -m meter_agent [--meter PORT[:MODE[:BAUD]]]... [--once] [--dry-run]``

Settings come from the environment / ``.env`` first; flags given on the
command line win.  Each ``--meter`` replaces the configured meter list,
e.g. ``--meter /dev/ttyUSB0:C --meter /dev/ttyUSB1:D:2400 --meter sim``.
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from typing import List, Optional, Sequence

import structlog
from pydantic import ValidationError

from meter_agent.config import AgentSettings, MeterPortSettings


_MODES = ("A", "B", "C", "D")


def _parse_meter(spec: str) -> MeterPortSettings:
    """``PORT[:MODE[:BAUD]]`` -> ``MeterPortSettings``.

    The port itself may contain colons (``socket://host:2000``), so the
    optional fields are taken from the right.
    """
    fields: dict = {"port": spec}
    head, sep, tail = spec.rpartition(":")
    if sep and tail.isdigit():
        port, sep, mode = head.rpartition(":")
        if sep and mode.upper() in _MODES:
            fields = {"port": port, "mode": mode.upper(), "baudrate": int(tail)}
    elif sep and tail.upper() in _MODES:
        fields = {"port": head, "mode": tail.upper()}
    try:
        return MeterPortSettings(**fields)
    except ValidationError as exc:
        message = "; ".join(err["msg"] for err in exc.errors())
        raise argparse.ArgumentTypeError(f"invalid meter {spec!r}: {message}") from None


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="meter_agent",
        description="IEC 62056-21 meter reading agent",
    )
    parser.add_argument(
        "--meter",
        dest="meters",
        action="append",
        type=_parse_meter,
        metavar="PORT[:MODE[:BAUD]]",
        help="Meter to read (repeatable); 'sim' selects the simulator",
    )
    parser.add_argument(
        "--once",
        action="store_true",
        default=False,
        help="Take a single readout per meter then exit",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        default=None,
        help="Log decoded batches locally; never POST",
    )
    parser.add_argument(
        "--scenario",
        default=None,
        help="Simulation scenario for meters on the 'sim' port",
    )
    parser.add_argument("--log-level", choices=["DEBUG", "INFO", "WARNING", "ERROR"])
    parser.add_argument("--log-format", choices=["console", "json"])
    return parser


def _build_settings(args: argparse.Namespace) -> AgentSettings:
    settings = AgentSettings()
    if args.meters:
        settings.meters = list(args.meters)
    if args.dry_run is True:
        settings.dry_run = True
    if args.scenario:
        settings.sim_scenario = args.scenario
    if args.log_level:
        settings.log_level = args.log_level
    if args.log_format:
        settings.log_format = args.log_format
    return settings


def _configure_logging(level: str, fmt: str) -> None:
    """structlog on top of stdlib logging, console or JSON lines on stderr."""
    logging.basicConfig(
        format="%(message)s",
        level=getattr(logging, level.upper(), logging.INFO),
        stream=sys.stderr,
    )

    processors: List = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.JSONRenderer() if fmt == "json" else structlog.dev.ConsoleRenderer(),
    ]

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def main(argv: Optional[Sequence[str]] = None) -> None:
    args = _build_parser().parse_args(argv)
    settings = _build_settings(args)
    _configure_logging(settings.log_level, settings.log_format)

    from meter_agent import __version__
    from meter_agent.agent_loop import run_agent

    logger = structlog.get_logger("meter_agent")
    logger.info(
        "agent_starting",
        version=__version__,
        meters=[f"{m.port}:{m.mode.value}:{m.baudrate}" for m in settings.meters],
        dry_run=settings.dry_run,
        once=args.once,
        endpoint=settings.emitter_base_url,
    )

    try:
        asyncio.run(run_agent(settings, once=args.once))
    except KeyboardInterrupt:
        logger.info("agent_interrupted")
        sys.exit(0)


if __name__ == "__main__":
    main()
