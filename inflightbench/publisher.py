"""
Publisher driver: one logical publisher emitting ``messages_per_pub``
fingerprinted messages at a fixed pace.

Pacing is measured publish-call to publish-call; acknowledgements are
awaited concurrently, so broker round-trip does not slow the sequence.
A failed publish is counted and the sequence moves on.
"""

import asyncio
import logging
import random
import time
from dataclasses import dataclass, field
from typing import Iterator

from inflightbench.client import ClientFactory, ConnectOptions, ProtocolClient
from inflightbench.errors import BarrierTimeout, PublishFailed
from inflightbench.fingerprint import make_payload
from inflightbench.stats import RunCounters

log = logging.getLogger("inflightbench.publisher")


@dataclass
class PublisherIdentity:
    """Client id plus a strictly increasing, never reused sequence counter."""

    client_id: str
    quota:     int
    last_sequence: int = field(default=0, init=False)

    @property
    def remaining(self) -> int:
        return self.quota - self.last_sequence

    def next_sequence(self) -> int:
        if self.last_sequence >= self.quota:
            raise ValueError(f"{self.client_id} exhausted its quota of {self.quota}")
        self.last_sequence += 1
        return self.last_sequence


@dataclass
class PublisherStats:
    published: int = 0
    acked:     int = 0
    failed:    int = 0

    def as_dict(self) -> dict:
        return {"published": self.published, "acked": self.acked, "failed": self.failed}


class PublisherDriver:
    def __init__(self, identity: PublisherIdentity, client_factory: ClientFactory,
                 topic: str, counters: RunCounters, *, qos: int = 1,
                 interval: float = 0.0, jitter: float = 0.0, payload_size: int = 0,
                 message_expiry: int | None = None, connect_timeout: float = 10.0,
                 ack_timeout: float = 10.0):
        self.identity = identity
        self.client_factory = client_factory
        self.topic = topic
        self.counters = counters
        self.qos = qos
        self.interval = interval
        self.jitter = jitter
        self.payload_size = payload_size
        self.message_expiry = message_expiry
        self.connect_timeout = connect_timeout
        self.ack_timeout = ack_timeout

        self.client: ProtocolClient | None = None
        self.stats = PublisherStats()
        self.ready = asyncio.Event()
        self.done = asyncio.Event()
        self._inflight: set[asyncio.Task] = set()

    @property
    def client_id(self) -> str:
        return self.identity.client_id

    def __repr__(self):
        return f"<PublisherDriver {self.client_id} {self.stats.as_dict()}>"

    async def connect(self):
        if self.ready.is_set():
            return
        client = self.client_factory(self.client_id)
        try:
            await asyncio.wait_for(client.connect(ConnectOptions(clean_start=True)),
                                   timeout=self.connect_timeout)
        except asyncio.TimeoutError:
            raise BarrierTimeout(self.client_id,
                                 f"no CONNACK within {self.connect_timeout:.1f}s") from None
        self.client = client
        log.info("Publisher %s CONNECTED", self.client_id)
        self.ready.set()

    def messages(self) -> Iterator[tuple[int, bytes]]:
        """Lazy ``(sequence, payload)`` stream; exhausted once the quota is used."""
        while self.identity.remaining > 0:
            seq = self.identity.next_sequence()
            yield seq, make_payload(self.client_id, seq, self.payload_size)

    def _pause(self) -> float:
        if not self.jitter:
            return self.interval
        spread = self.interval * self.jitter
        return random.uniform(self.interval - spread, self.interval + spread)

    async def run(self):
        """Publish the whole sequence; ``done`` fires once every attempt settled."""
        if self.client is None:
            raise RuntimeError(f"publisher {self.client_id} is not connected")
        loop = asyncio.get_running_loop()
        try:
            for seq, payload in self.messages():
                started = loop.time()
                task = asyncio.create_task(self._publish_one(seq, payload))
                self._inflight.add(task)
                task.add_done_callback(self._inflight.discard)
                self.stats.published += 1
                self.counters.record_attempt()
                if seq < self.identity.quota:
                    await asyncio.sleep(max(0.0, self._pause() - (loop.time() - started)))
            if self._inflight:
                await asyncio.gather(*self._inflight)
        finally:
            self.done.set()

    async def _publish_one(self, seq: int, payload: bytes):
        sent_at = time.perf_counter()
        try:
            await asyncio.wait_for(
                self.client.publish(self.topic, payload, self.qos, self.message_expiry),
                timeout=self.ack_timeout)
        except (PublishFailed, asyncio.TimeoutError) as e:
            self.stats.failed += 1
            self.counters.record_failure()
            log.error("Publish error for %s #%d: %s", self.client_id, seq,
                      str(e) or f"no ack within {self.ack_timeout:.1f}s")
            return
        self.stats.acked += 1
        self.counters.record_ack((time.perf_counter() - sent_at) * 1000.0)
        log.debug("Publisher %s SENT #%d", self.client_id, seq)

    async def close(self):
        for task in list(self._inflight):
            task.cancel()
        client, self.client = self.client, None
        self.ready.clear()
        if client is not None:
            await client.disconnect()
