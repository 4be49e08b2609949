"""
Shared fixtures: an in-memory MQTT v5 broker and clients bound to it.

The broker keeps persistent sessions keyed by client id (with expiry),
queues QoS>0 messages for offline sessions, load-balances ``$share``
subscriptions round-robin over online members, and can be told to refuse
connects, hang connects or subscribes, delay acks and reject publishes.
"""

import asyncio
import itertools
import logging
from dataclasses import dataclass, field

import pytest

from inflightbench.client import ConnectOptions, ProtocolClient
from inflightbench.config import load_config
from inflightbench.errors import ConnectFailed, PublishFailed
from inflightbench.fingerprint import ledger_key
from inflightbench.ledger import DeliveryLedger
from inflightbench.stats import RunCounters


@dataclass
class MockSession:
    client_id:       str
    expiry:          int = 0
    subscriptions:   dict = field(default_factory=dict)
    queue:           list = field(default_factory=list)
    disconnected_at: float | None = None


class MockMQTTBroker:
    def __init__(self):
        self.sessions: dict[str, MockSession] = {}
        self.online: dict[str, "MockClient"] = {}
        self.clients: list["MockClient"] = []
        self.events: list[tuple] = []
        self.published: list[tuple[str, bytes]] = []

        self.refuse: set[str] = set()
        self.hang_connect: set[str] = set()
        self.hang_subscribe: set[str] = set()
        self.reject_keys: set[str] = set()
        self.ack_delay: float = 0.0
        self._rr: dict[str, itertools.count] = {}

    # -- helpers ---
    @staticmethod
    def now() -> float:
        return asyncio.get_running_loop().time()

    def factory(self, client_id: str) -> "MockClient":
        client = MockClient(client_id, self)
        self.clients.append(client)
        return client

    def clients_for(self, client_id: str) -> list["MockClient"]:
        return [c for c in self.clients if c.client_id == client_id]

    def events_of(self, kind: str, client_id: str | None = None) -> list[tuple]:
        return [e for e in self.events
                if e[0] == kind and (client_id is None or e[1] == client_id)]

    def _live_session(self, client_id: str) -> MockSession | None:
        sess = self.sessions.get(client_id)
        if sess is None or sess.disconnected_at is None:
            return sess
        if self.now() - sess.disconnected_at > sess.expiry:
            del self.sessions[client_id]
            return None
        return sess

    # -- connection lifecycle ---
    async def connect(self, client: "MockClient", options: ConnectOptions) -> bool:
        cid = client.client_id
        if cid in self.refuse:
            raise ConnectFailed(cid, "connection refused: Not authorized", 135)
        if cid in self.hang_connect:
            await asyncio.Event().wait()
        await asyncio.sleep(0)
        return self._attach(client, options.clean_start, options.session_expiry)

    def _attach(self, client: "MockClient", clean_start: bool, expiry: int) -> bool:
        cid = client.client_id
        sess = None if clean_start else self._live_session(cid)
        present = sess is not None
        if sess is None:
            sess = MockSession(cid)
            self.sessions[cid] = sess
        sess.expiry = expiry
        sess.disconnected_at = None
        self.online[cid] = client
        self.events.append(("connect", cid, clean_start, present))

        queued, sess.queue = sess.queue, []
        loop = asyncio.get_running_loop()
        for topic, payload in queued:
            loop.call_soon(client.deliver, topic, payload)
        return present

    def disconnect(self, client: "MockClient"):
        cid = client.client_id
        if self.online.get(cid) is not client:
            return
        del self.online[cid]
        sess = self.sessions.get(cid)
        if sess is not None:
            sess.disconnected_at = self.now()
        self.events.append(("disconnect", cid))

    def drop(self, client_id: str):
        """Cut the network under a client without a DISCONNECT."""
        client = self.online[client_id]
        self.disconnect(client)
        if client.on_connection_lost is not None:
            client.on_connection_lost(128, "Unspecified error")

    def resume(self, client_id: str):
        """The dropped client re-establishes its own connection."""
        client = self.clients_for(client_id)[-1]
        sess = self.sessions.get(client_id)
        present = self._attach(client, False, sess.expiry if sess else 0)
        if client.on_reconnected is not None:
            client.on_reconnected(present)

    # -- subscribe / publish ---
    async def subscribe(self, client: "MockClient", topic_filter: str, qos: int) -> int:
        cid = client.client_id
        if cid in self.hang_subscribe:
            await asyncio.Event().wait()
        await asyncio.sleep(0)
        self.sessions[cid].subscriptions[topic_filter] = qos
        self.events.append(("subscribe", cid, topic_filter))
        return qos

    async def publish(self, client: "MockClient", topic: str, payload: bytes, qos: int):
        key, _ = ledger_key(payload)
        if key in self.reject_keys:
            raise PublishFailed(client.client_id, f"publish refused: Not authorized ({key})")
        if self.ack_delay:
            await asyncio.sleep(self.ack_delay)
        else:
            await asyncio.sleep(0)
        self.published.append((topic, payload))
        self._route(topic, payload, qos)

    def _route(self, topic: str, payload: bytes, qos: int):
        shared: dict[str, list[MockSession]] = {}
        for cid in list(self.sessions):
            sess = self._live_session(cid)
            if sess is None:
                continue
            for flt, sub_qos in sess.subscriptions.items():
                if flt == topic:
                    self._deliver(sess, topic, payload, min(qos, sub_qos))
                elif flt.startswith("$share/") and flt.split("/", 2)[2] == topic:
                    shared.setdefault(flt, []).append(sess)
        for flt, members in shared.items():
            online = [s for s in members if s.client_id in self.online] or members
            rr = self._rr.setdefault(flt, itertools.count())
            target = online[next(rr) % len(online)]
            self._deliver(target, topic, payload, min(qos, target.subscriptions[flt]))

    def _deliver(self, sess: MockSession, topic: str, payload: bytes, qos: int):
        client = self.online.get(sess.client_id)
        if client is not None:
            asyncio.get_running_loop().call_soon(client.deliver, topic, payload)
        elif qos > 0:
            sess.queue.append((topic, payload))


class ForgetfulBroker(MockMQTTBroker):
    """Discards a session as soon as its client disconnects, whatever the expiry."""

    def __init__(self, forget: set[str] | None = None):
        super().__init__()
        self.forget = forget

    def disconnect(self, client: "MockClient"):
        super().disconnect(client)
        cid = client.client_id
        if cid not in self.online and (self.forget is None or cid in self.forget):
            self.sessions.pop(cid, None)


class DuplicatingBroker(MockMQTTBroker):
    """Hands the listed fingerprints to every online subscriber of a shared filter."""

    def __init__(self, duplicate: set[str]):
        super().__init__()
        self.duplicate = duplicate

    def _route(self, topic: str, payload: bytes, qos: int):
        key, _ = ledger_key(payload)
        if key not in self.duplicate:
            return super()._route(topic, payload, qos)
        for cid, client in list(self.online.items()):
            sess = self.sessions[cid]
            for flt, sub_qos in sess.subscriptions.items():
                if flt.startswith("$share/") and flt.split("/", 2)[2] == topic:
                    self._deliver(sess, topic, payload, min(qos, sub_qos))


class MockClient(ProtocolClient):
    def __init__(self, client_id: str, broker: MockMQTTBroker):
        super().__init__(client_id)
        self.broker = broker
        self.options: ConnectOptions | None = None

    async def connect(self, options: ConnectOptions) -> bool:
        self.options = options
        return await self.broker.connect(self, options)

    async def subscribe(self, topic_filter: str, qos: int) -> int:
        return await self.broker.subscribe(self, topic_filter, qos)

    async def publish(self, topic: str, payload: bytes, qos: int,
                      message_expiry: int | None = None):
        await self.broker.publish(self, topic, payload, qos)

    async def disconnect(self):
        self.broker.disconnect(self)

    def deliver(self, topic: str, payload: bytes):
        if self.on_message is not None:
            self.on_message(topic, payload)

    def inject(self, payload: bytes, topic: str = "testtopic/test"):
        """Deliver an arbitrary payload as if the broker had routed it."""
        self.deliver(topic, payload)


# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture
def mock_broker():
    return MockMQTTBroker()


@pytest.fixture
def forgetful_broker():
    return ForgetfulBroker()


@pytest.fixture
def duplicating_broker():
    return DuplicatingBroker({"pub-0:1"})


@pytest.fixture
def ledger():
    return DeliveryLedger()


@pytest.fixture
def counters():
    return RunCounters()


def fast_config(mode: str = "inflight", **overrides):
    """Scenario config with every wait scaled down for tests."""
    values = dict(
        publish_interval=0.01,
        registration_delay=0,
        drain_window=0.2,
        reconnect_delay=0.1,
        stagger_delay=0.05,
        connect_timeout=1.0,
        subscribe_timeout=1.0,
        ack_timeout=1.0,
        ready_timeout=5.0,
        connect_attempts=1,
        batch_delay=0,
        stats_interval=0,
    )
    values.update(overrides)
    values = {k: v for k, v in values.items() if v is not None}
    return load_config(mode, **values)


@pytest.fixture
def make_config():
    return fast_config


@pytest.fixture(autouse=True)
def reset_logging():
    yield
    logger = logging.getLogger("inflightbench")
    for h in list(logger.handlers):
        logger.removeHandler(h)
        h.close()
    logger.propagate = True
    logger.setLevel(logging.NOTSET)
