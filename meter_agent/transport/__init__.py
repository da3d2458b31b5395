"""Meter transport abstraction layer.

Provides ``MeterTransport`` ABC with two concrete implementations:

* ``SimulationTransport`` -- scripted meter replay, no hardware required.
* ``SerialTransport``     -- wraps pyserial (lazy-imported).
"""

from meter_agent.transport.base import MeterTransport

__all__ = ["MeterTransport"]
