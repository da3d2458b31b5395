"""Meter Agent -- IEC 62056-21 electricity meter reader.

Reads telegrams from optical/serial meter ports (or simulation), decodes
OBIS data lines into typed measurements and hands one batch per telegram
to the telemetry service.
"""

__version__ = "0.1.0"
