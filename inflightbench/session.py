"""
Session controller: one logical subscriber identity across its physical
connections.

The identity (client id) is what the broker resumes a persistent session
by, so a reconnect always reuses it with clean-start off.  Connecting and
reconnecting share one routine, ``_establish``, which ends with an
acknowledged subscription.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from enum import Enum

from inflightbench.client import ClientFactory, ConnectOptions, ProtocolClient
from inflightbench.console import log_fail, log_warn
from inflightbench.errors import BarrierTimeout, ConnectFailed, SessionError
from inflightbench.fingerprint import ledger_key
from inflightbench.ledger import DeliveryLedger
from inflightbench.stats import RunCounters

log = logging.getLogger("inflightbench.session")


class SessionState(str, Enum):
    DISCONNECTED    = "disconnected"
    CONNECTING      = "connecting"
    SUBSCRIBING     = "subscribing"
    ACTIVE          = "active"
    DISCONNECTING   = "disconnecting"
    CONNECTION_LOST = "connection_lost"
    RECONNECTING    = "reconnecting"


@dataclass(frozen=True)
class SubscriberIdentity:
    client_id:       str
    topic:           str
    qos:             int = 1
    session_expiry:  int = 0
    group:           str | None = None
    receive_maximum: int | None = None

    @property
    def topic_filter(self) -> str:
        if self.group:
            return f"$share/{self.group}/{self.topic}"
        return self.topic


class SessionController:
    """
    Owns one ``SubscriberIdentity`` and, at most, one bound connection.

    ``connect``, ``disconnect`` and ``reconnect_same_identity`` are
    idempotent and serialised; inbound messages are recorded whatever state
    the controller is in.
    """

    def __init__(self, identity: SubscriberIdentity, client_factory: ClientFactory,
                 ledger: DeliveryLedger, counters: RunCounters | None = None, *,
                 connect_timeout: float = 10.0, subscribe_timeout: float = 10.0,
                 connect_attempts: int = 1):
        self.identity = identity
        self.client_factory = client_factory
        self.ledger = ledger
        self.counters = counters
        self.connect_timeout = connect_timeout
        self.subscribe_timeout = subscribe_timeout
        self.connect_attempts = max(1, connect_attempts)

        self.state = SessionState.DISCONNECTED
        self.client: ProtocolClient | None = None
        self.active = asyncio.Event()
        self.granted_qos: int | None = None

        self.connects = 0
        self.reconnects = 0
        self.subscribed_filters: list[str] = []
        self.offline_gaps: list[float] = []
        self.session_lapsed = False
        self.session_lost = False
        self._offline_since: float | None = None
        self._transition = asyncio.Lock()
        self._resubscribe_task: asyncio.Task | None = None

        ledger.register(identity.client_id, identity.group)

    @property
    def client_id(self) -> str:
        return self.identity.client_id

    def __repr__(self):
        return f"<SessionController {self.client_id} {self.state.value}>"

    def _set_state(self, state: SessionState):
        if state is not self.state:
            log.debug("[%s] %s -> %s", self.client_id, self.state.value, state.value)
        self.state = state
        if state is SessionState.ACTIVE:
            self.active.set()
        else:
            self.active.clear()

    # ── inbound ─────────────────────────────────────────────────────── #
    def on_message(self, topic: str, payload: bytes):
        key, parsed = ledger_key(payload)
        self.ledger.record(self.client_id, key, self.identity.group)
        if not parsed:
            self.ledger.record_anomaly(self.client_id, key)
            log.warning("Subscriber %s RECEIVED unexpected format: %r", self.client_id, key)
        else:
            log.debug("Subscriber %s RECEIVED %s", self.client_id, key)
        if self.counters is not None:
            self.counters.record_delivery(parsed)

    # ── public operations ───────────────────────────────────────────── #
    async def connect(self):
        """Connect, subscribe and wait for SUBACK; no-op when already active."""
        async with self._transition:
            if self.state is SessionState.ACTIVE:
                return
            await self._establish(resuming=False)

    async def disconnect(self):
        """Graceful close that leaves the broker-side session in place."""
        async with self._transition:
            await self._close()

    async def reconnect_same_identity(self):
        """New physical connection for the same identity, then resubscribe."""
        async with self._transition:
            if self.state is SessionState.ACTIVE:
                return
            await self._close()
            await self._establish(resuming=True)

    async def teardown(self):
        self._cancel_resubscribe()
        async with self._transition:
            await self._close()

    # ── internals ───────────────────────────────────────────────────── #
    async def _establish(self, resuming: bool):
        ident = self.identity
        self._set_state(SessionState.RECONNECTING if resuming else SessionState.CONNECTING)
        options = ConnectOptions(clean_start=False,
                                 session_expiry=ident.session_expiry,
                                 receive_maximum=ident.receive_maximum)

        last_error: SessionError | None = None
        for attempt in range(1, self.connect_attempts + 1):
            client = self._bind(self.client_factory(ident.client_id))
            try:
                session_present = await asyncio.wait_for(
                    client.connect(options), timeout=self.connect_timeout)
                break
            except asyncio.TimeoutError:
                last_error = BarrierTimeout(ident.client_id,
                                            f"no CONNACK within {self.connect_timeout:.1f}s")
            except ConnectFailed as e:
                last_error = e
            self._unbind(client)
            log.warning("[%s] connect attempt %d/%d failed: %s",
                        ident.client_id, attempt, self.connect_attempts, last_error)
        else:
            self._set_state(SessionState.DISCONNECTED)
            raise last_error

        self.connects += 1
        if resuming:
            self.reconnects += 1
            self._note_resume(session_present)
        log.info("Subscriber %s %s, subscribing to %s",
                 ident.client_id, "reconnected" if resuming else "connected", ident.topic_filter)
        await self._subscribe()

    async def _subscribe(self):
        ident = self.identity
        client = self.client
        self._set_state(SessionState.SUBSCRIBING)
        try:
            self.granted_qos = await asyncio.wait_for(
                client.subscribe(ident.topic_filter, ident.qos),
                timeout=self.subscribe_timeout)
        except asyncio.TimeoutError:
            raise BarrierTimeout(ident.client_id,
                                 f"no SUBACK for {ident.topic_filter} within "
                                 f"{self.subscribe_timeout:.1f}s") from None
        self.subscribed_filters.append(ident.topic_filter)
        if self.granted_qos < ident.qos:
            log_warn(f"Subscriber {ident.client_id} granted QoS {self.granted_qos} "
                     f"(requested {ident.qos})")
        self._set_state(SessionState.ACTIVE)

    async def _close(self):
        client = self.client
        if client is None:
            self._set_state(SessionState.DISCONNECTED)
            return
        self._set_state(SessionState.DISCONNECTING)
        try:
            await client.disconnect()
        finally:
            self._unbind(client)
            if self._offline_since is None:
                self._offline_since = time.monotonic()
            self._set_state(SessionState.DISCONNECTED)
            log.info("Subscriber %s disconnected", self.client_id)

    def _bind(self, client: ProtocolClient) -> ProtocolClient:
        client.on_message = self.on_message
        client.on_connection_lost = self._on_connection_lost
        client.on_reconnected = self._on_reconnected
        self.client = client
        return client

    def _unbind(self, client: ProtocolClient):
        client.on_connection_lost = None
        client.on_reconnected = None
        if self.client is client:
            self.client = None

    def _note_resume(self, session_present: bool):
        gap = None
        if self._offline_since is not None:
            gap = time.monotonic() - self._offline_since
            self.offline_gaps.append(gap)
            self._offline_since = None
        expiry = self.identity.session_expiry
        gap_txt = f"{gap:.1f}s" if gap is not None else "unknown gap"
        if gap is not None and gap > expiry:
            self.session_lapsed = True
            log_warn(f"Subscriber {self.client_id} was offline {gap_txt}, longer than its "
                     f"{expiry}s session expiry; gaps are a test-configuration hazard")
        elif not session_present:
            # inside the expiry window the broker must still hold the session
            self.session_lost = True
            log_fail(f"Subscriber {self.client_id} reconnected after {gap_txt} "
                     f"(session expiry {expiry}s) but the broker reported no session")

    # ── connection-loss path (client reconnects by itself) ──────────── #
    def _on_connection_lost(self, reason_code: int, reason: str):
        log.warning("Subscriber %s connection lost: code=%s, reason=%s",
                    self.client_id, reason_code, reason)
        if self._offline_since is None:
            self._offline_since = time.monotonic()
        self._cancel_resubscribe()
        self._set_state(SessionState.CONNECTION_LOST)

    def _on_reconnected(self, session_present: bool):
        self._set_state(SessionState.RECONNECTING)
        self.reconnects += 1
        self._note_resume(session_present)
        self._cancel_resubscribe()
        self._resubscribe_task = asyncio.ensure_future(self._resubscribe())

    async def _resubscribe(self):
        async with self._transition:
            if self.state is not SessionState.RECONNECTING or self.client is None:
                return
            log.info("Subscriber %s reconnected, resubscribing to %s",
                     self.client_id, self.identity.topic_filter)
            try:
                await self._subscribe()
            except SessionError as e:
                log.error("Re-subscribe error for %s: %s", self.client_id, e)
                self._set_state(SessionState.CONNECTION_LOST)

    def _cancel_resubscribe(self):
        task = self._resubscribe_task
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()
        self._resubscribe_task = None
