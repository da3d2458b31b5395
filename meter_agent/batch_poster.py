"""Delivery of ``TelegramBatch`` JSON to the telemetry service.

One batch is one POST to ``/v1/telemetry/meter_batch``.  Delivery policy:

* Every request carries an ``Idempotency-Key`` derived from the device id
  and the telegram's arrival time, so a batch sent again from the offline
  buffer is stored once.
* Valid batches are retried with exponential backoff on 5xx and network
  errors, then parked in a bounded offline buffer (oldest dropped first).
* Batches that failed their checksum (``valid=False``) are sent once.  They
  are never retried and never take buffer space.
* 404/501 mean the endpoint is not deployed yet and count as delivered;
  any other 4xx rejects the batch.
* While the offline buffer is full, ``consume`` stops taking batches from
  the channel.  The channel then fills and sessions wait in ``emit``.
"""

from __future__ import annotations

import asyncio
import hashlib
from collections import deque
from dataclasses import dataclass
from enum import Enum
from typing import Deque

import httpx
import structlog

from meter_agent.config import AgentSettings
from meter_agent.emitter import ChannelEmitter
from meter_agent.schemas import TelegramBatch

logger = structlog.get_logger(__name__)

_ENDPOINT_PATH = "/v1/telemetry/meter_batch"
_TOLERATED_STATUS = (404, 501)


class Delivery(str, Enum):
    """Outcome of handing one batch to the poster."""

    SENT = "sent"
    NOT_READY = "not_ready"
    DRY_RUN = "dry_run"
    REJECTED = "rejected"
    BUFFERED = "buffered"
    DROPPED = "dropped"

    @property
    def delivered(self) -> bool:
        return self in (Delivery.SENT, Delivery.NOT_READY, Delivery.DRY_RUN)


@dataclass(frozen=True)
class _Parked:
    key: str
    device_id: str
    payload: str


def idempotency_key(batch: TelegramBatch) -> str:
    """Stable key for *batch*: SHA-256 of device id and arrival time."""
    source = f"{batch.device_id}:{batch.received_at.isoformat()}"
    return hashlib.sha256(source.encode("utf-8")).hexdigest()


class BatchPoster:
    """Sends meter batches to the telemetry API."""

    def __init__(self, settings: AgentSettings) -> None:
        self._url = f"{settings.emitter_base_url.rstrip('/')}{_ENDPOINT_PATH}"
        self._max_attempts = settings.max_retry_attempts
        self._dry_run = settings.dry_run
        self._backoff = settings.backoff_seconds
        self._buffer: Deque[_Parked] = deque()
        self._buffer_max = settings.offline_buffer_max
        self._client: httpx.AsyncClient | None = None

    # -- lifecycle ----------------------------------------------------------

    async def start(self) -> None:
        if not self._dry_run:
            self._client = httpx.AsyncClient(timeout=30.0)

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    @property
    def buffer_size(self) -> int:
        return len(self._buffer)

    @property
    def buffer_full(self) -> bool:
        return len(self._buffer) >= self._buffer_max

    # -- public API ---------------------------------------------------------

    async def post_batch(self, batch: TelegramBatch) -> Delivery:
        """Deliver *batch* according to the module's policy.

        Buffered batches go out first, oldest first.  In dry-run mode the
        batch is serialised and logged but never sent.
        """
        payload = batch.model_dump_json()
        log = logger.bind(
            device_id=batch.device_id, records=len(batch.records), valid=batch.valid
        )

        if self._dry_run:
            log.info("dry_run_batch", payload_bytes=len(payload))
            return Delivery.DRY_RUN

        await self._drain_buffer()

        key = idempotency_key(batch)
        attempts = self._max_attempts if batch.valid else 1
        delivery = await self._send_with_retry(payload, key, attempts)
        if delivery is not Delivery.BUFFERED:
            return delivery

        if not batch.valid:
            log.warning("invalid_batch_dropped")
            return Delivery.DROPPED

        self._park(_Parked(key=key, device_id=batch.device_id, payload=payload))
        log.warning("batch_buffered", buffer_size=len(self._buffer))
        return Delivery.BUFFERED

    async def consume(self, channel: ChannelEmitter) -> None:
        """Post every batch from *channel* until it is closed.

        Delivery failures are handled by the policy above; anything else
        ends the consumer and propagates to the caller.
        """
        while True:
            await self._wait_for_room(channel)
            batch = await channel.get()
            if batch is None:
                return
            await self.post_batch(batch)

    # -- internal -----------------------------------------------------------

    def _park(self, parked: _Parked) -> None:
        if self.buffer_full:
            dropped = self._buffer.popleft()
            logger.warning(
                "offline_buffer_overflow",
                dropped_device_id=dropped.device_id,
                buffer_max=self._buffer_max,
            )
        self._buffer.append(parked)

    async def _wait_for_room(self, channel: ChannelEmitter) -> None:
        """Hold off the channel while the offline buffer is full."""
        failures = 0
        while self.buffer_full and not channel.closing.is_set():
            failures += 1
            delay = self._backoff(failures)
            logger.warning(
                "offline_buffer_full",
                buffer_size=len(self._buffer),
                channel_pending=channel.pending,
                retry_in=delay,
            )
            try:
                await asyncio.wait_for(channel.closing.wait(), timeout=delay)
            except asyncio.TimeoutError:
                pass
            await self._drain_buffer()

    async def _drain_buffer(self) -> None:
        """Send buffered batches oldest first; stop at the first failure."""
        sent = 0
        while self._buffer:
            parked = self._buffer[0]
            delivery = await self._send_with_retry(parked.payload, parked.key, 1)
            if delivery is Delivery.BUFFERED:
                break
            self._buffer.popleft()
            if delivery.delivered:
                sent += 1
        if sent:
            logger.info("buffer_drained", sent=sent, remaining=len(self._buffer))

    async def _send_with_retry(self, payload: str, key: str, attempts: int) -> Delivery:
        """POST with exponential backoff; ``BUFFERED`` means every attempt failed."""
        for attempt in range(1, attempts + 1):
            try:
                return await self._send(payload, key)
            except (httpx.HTTPStatusError, httpx.RequestError) as exc:
                wait = min(2 ** (attempt - 1), 30)
                detail = (
                    {"status": exc.response.status_code}
                    if isinstance(exc, httpx.HTTPStatusError)
                    else {"error": str(exc)}
                )
                logger.warning(
                    "post_failed",
                    attempt=attempt,
                    max_attempts=attempts,
                    retry_in=wait if attempt < attempts else None,
                    **detail,
                )
                if attempt < attempts:
                    await asyncio.sleep(wait)
        return Delivery.BUFFERED

    async def _send(self, payload: str, key: str) -> Delivery:
        if self._client is None:
            raise RuntimeError("BatchPoster.start() must be called before sending")
        response = await self._client.post(
            self._url,
            content=payload,
            headers={"Content-Type": "application/json", "Idempotency-Key": key},
        )
        status = response.status_code
        if status in _TOLERATED_STATUS:
            logger.info("endpoint_not_ready", status=status, url=self._url)
            return Delivery.NOT_READY
        if 400 <= status < 500:
            logger.error("batch_rejected", status=status, body=response.text[:500])
            return Delivery.REJECTED
        response.raise_for_status()
        logger.info("batch_posted", status=status)
        return Delivery.SENT
