"""Agent configuration via environment variables.

Uses pydantic-settings so every field can be overridden with an env var.
A single simulated meter is the zero-hardware default.  Several meters are
configured as a JSON list in ``METERS``, e.g.::

    METERS='[{"port": "/dev/ttyUSB0", "mode": "C"},
             {"port": "/dev/ttyUSB1", "mode": "D", "baudrate": 9600}]'
"""

from __future__ import annotations

from typing import List, Optional

from pydantic import BaseModel, Field, model_validator
from pydantic_settings import BaseSettings

from meter_agent.schemas import ProtocolMode


class MeterPortSettings(BaseModel):
    """One physical line and the meter behind it."""

    port: str = Field(
        default="sim",
        description="Serial device path, or 'sim' for simulation mode",
    )
    mode: ProtocolMode = Field(default=ProtocolMode.C, description="IEC 62056-21 mode")
    baudrate: Optional[int] = Field(
        default=None,
        description="Initial speed; 300 for modes A-C, 2400/9600 for mode D",
    )
    device_id: Optional[str] = Field(
        default=None,
        description="Fixed device identifier; derived from the telegram if unset",
    )
    address: str = Field(default="", description="Device address for '/?<addr>!'")
    bytesize: int = 7
    parity: str = "E"
    stopbits: int = 1
    sim_scenario: Optional[str] = Field(
        default=None,
        description="Simulation scenario; falls back to AgentSettings.sim_scenario",
    )

    @model_validator(mode="after")
    def _check_baudrate(self) -> "MeterPortSettings":
        if self.mode is ProtocolMode.D:
            if self.baudrate is None:
                self.baudrate = 9600
            elif self.baudrate not in (2400, 9600):
                raise ValueError(
                    f"Mode D runs at 2400 or 9600 baud, got {self.baudrate}"
                )
        elif self.baudrate is None:
            self.baudrate = 300
        return self

    @property
    def is_simulation(self) -> bool:
        """Return ``True`` when this port is simulated."""
        return self.port.strip().lower() == "sim"


class AgentSettings(BaseSettings):
    """Meter agent runtime settings."""

    model_config = {"env_prefix": "", "env_file": ".env", "extra": "ignore"}

    # -- meters -------------------------------------------------------------
    meters: List[MeterPortSettings] = Field(
        default_factory=lambda: [MeterPortSettings()],
        description="Meters to read, one session each",
    )

    # -- protocol -----------------------------------------------------------
    identification_timeout_seconds: float = Field(
        default=5.0, description="Max wait for the identification line"
    )
    data_timeout_seconds: float = Field(
        default=30.0, description="Max wait for the complete data block"
    )
    max_telegram_bytes: int = Field(default=8192, description="Per-telegram byte budget")
    max_telegram_lines: int = Field(default=256, description="Per-telegram line budget")

    # -- scheduling ---------------------------------------------------------
    poll_interval_seconds: float = Field(
        default=10.0, description="Seconds between readouts per meter"
    )
    retry_backoff_base_seconds: float = Field(default=1.0)
    retry_backoff_max_seconds: float = Field(default=60.0)

    # -- simulation ---------------------------------------------------------
    sim_scenario: str = Field(
        default="ebz_dd3",
        description="Simulation scenario name (from simulation_telegrams.json)",
    )

    # -- emitter ------------------------------------------------------------
    emit_queue_size: int = Field(
        default=16, description="Batches buffered before sessions are paused"
    )
    emitter_base_url: str = Field(
        default="http://127.0.0.1:8000",
        description="Base URL of the telemetry service",
    )
    max_retry_attempts: int = Field(
        default=3,
        ge=1,
        description="Max HTTP retry attempts before buffering",
    )
    offline_buffer_max: int = Field(
        default=100,
        ge=1,
        description="Max batches to buffer when the service is unreachable",
    )

    # -- behaviour ----------------------------------------------------------
    dry_run: bool = Field(
        default=False,
        description="Log batches locally; never POST",
    )
    log_level: str = Field(default="INFO", description="Logging level")
    log_format: str = Field(
        default="console",
        description="Log output format: 'console' or 'json'",
    )

    def backoff_seconds(self, retry_count: int) -> float:
        """Caller-side backoff after *retry_count* consecutive failures."""
        if retry_count <= 0:
            return 0.0
        return min(
            self.retry_backoff_base_seconds * 2 ** (retry_count - 1),
            self.retry_backoff_max_seconds,
        )
