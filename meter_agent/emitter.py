"""Hand-off of decoded telegram batches to the messaging collaborator.

Sessions never talk to the messaging layer directly: each completed
batch goes into a bounded channel.  When the consumer falls behind the
channel fills up and ``emit`` suspends the session task, which pauses
acquisition on that port instead of buffering history without bound.
"""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from typing import Optional

import structlog

from meter_agent.schemas import TelegramBatch

logger = structlog.get_logger(__name__)


class MeasurementEmitter(ABC):
    """Receives one ordered batch per completed telegram."""

    @abstractmethod
    async def emit(self, batch: TelegramBatch) -> None:
        """Deliver *batch*; may suspend to apply back-pressure."""


class ChannelEmitter(MeasurementEmitter):
    """Bounded ``asyncio.Queue`` between session tasks and a consumer."""

    def __init__(self, maxsize: int = 16) -> None:
        self._queue: asyncio.Queue[Optional[TelegramBatch]] = asyncio.Queue(maxsize=maxsize)
        self._closing = asyncio.Event()

    @property
    def congested(self) -> bool:
        return self._queue.full()

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    @property
    def closing(self) -> asyncio.Event:
        """Set as soon as ``close`` is called, before the marker is queued."""
        return self._closing

    async def emit(self, batch: TelegramBatch) -> None:
        if self._queue.full():
            logger.warning(
                "emitter_backpressure",
                device_id=batch.device_id,
                pending=self._queue.qsize(),
            )
        await self._queue.put(batch)

    async def get(self) -> Optional[TelegramBatch]:
        """Next batch, or ``None`` once ``close`` was called."""
        batch = await self._queue.get()
        self._queue.task_done()
        return batch

    async def close(self) -> None:
        """Wake the consumer with an end-of-stream marker."""
        self._closing.set()
        await self._queue.put(None)
