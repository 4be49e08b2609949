"""
Protocol-client seam.

``ProtocolClient`` is the only surface the session controllers and publisher
drivers touch: awaitable connect / subscribe / publish / disconnect plus three
event hooks.  ``PahoClient`` implements it over paho-mqtt (MQTT v5), running
paho's network loop in its own thread and handing results back to the asyncio
loop with ``call_soon_threadsafe``.
"""

import abc
import asyncio
import logging
import threading
from dataclasses import dataclass
from functools import partial
from typing import Callable

import paho.mqtt.client as mqtt
from paho.mqtt.client import CallbackAPIVersion
from paho.mqtt.packettypes import PacketTypes
from paho.mqtt.properties import Properties

from inflightbench.config import BrokerSettings
from inflightbench.errors import ConnectFailed, PublishFailed, SubscribeFailed

log = logging.getLogger("inflightbench.client")

MessageHandler = Callable[[str, bytes], None]


@dataclass(frozen=True)
class ConnectOptions:
    clean_start:     bool = False
    session_expiry:  int = 0
    receive_maximum: int | None = None


class ProtocolClient(abc.ABC):
    """
    One physical connection for one client identity.

    Event hooks are plain attributes set by the owner:

    * ``on_message(topic, payload)`` may be called from any thread
    * ``on_connection_lost(reason_code, reason)`` runs on the event loop
    * ``on_reconnected(session_present)`` runs on the event loop after the
      client re-established the same connection by itself
    """

    def __init__(self, client_id: str):
        self.client_id = client_id
        self.on_message: MessageHandler | None = None
        self.on_connection_lost: Callable[[int, str], None] | None = None
        self.on_reconnected: Callable[[bool], None] | None = None

    @abc.abstractmethod
    async def connect(self, options: ConnectOptions) -> bool:
        """Open the connection; returns the CONNACK session-present flag."""

    @abc.abstractmethod
    async def subscribe(self, topic_filter: str, qos: int) -> int:
        """Subscribe and return the granted QoS."""

    @abc.abstractmethod
    async def publish(self, topic: str, payload: bytes, qos: int,
                      message_expiry: int | None = None):
        """Publish and wait for the broker acknowledgement (or socket write at QoS 0)."""

    @abc.abstractmethod
    async def disconnect(self):
        """Graceful DISCONNECT; the broker keeps the session."""


ClientFactory = Callable[[str], ProtocolClient]


# --------------------------------------------------------------------------- #
# paho-mqtt implementation
# --------------------------------------------------------------------------- #
class PahoClient(ProtocolClient):
    """Wraps a paho MQTT v5 client; callbacks settle asyncio futures."""

    def __init__(self, client_id: str, settings: BrokerSettings):
        super().__init__(client_id)
        self.settings = settings
        self.client = mqtt.Client(
            callback_api_version=CallbackAPIVersion.VERSION2,
            client_id=client_id,
            transport=settings.transport,
            protocol=mqtt.MQTTv5,
        )
        if settings.transport == "websockets":
            self.client.ws_set_options(path=settings.ws_path,
                                       headers={"Sec-WebSocket-Protocol": "mqtt"})
        if settings.tls:
            self.client.tls_set()
        if settings.username:
            self.client.username_pw_set(settings.username, settings.password)
        self.client.reconnect_delay_set(settings.reconnect_min_delay,
                                        settings.reconnect_max_delay)

        self._loop: asyncio.AbstractEventLoop | None = None
        self._lock = threading.Lock()
        self._connect_future: asyncio.Future | None = None
        self._disconnect_future: asyncio.Future | None = None
        self._pending_sub: dict[int, asyncio.Future] = {}
        self._pending_pub: dict[int, asyncio.Future] = {}
        # acks that beat the future registration (callback thread raced us)
        self._early_sub: dict[int, list] = {}
        self._early_pub: dict[int, object] = {}
        self._closing = False
        self._started = False

        self.client.on_connect      = self._on_connect
        self.client.on_connect_fail = self._on_connect_fail
        self.client.on_disconnect   = self._on_disconnect
        self.client.on_subscribe    = self._on_subscribe
        self.client.on_publish      = self._on_publish
        self.client.on_message      = self._on_message

    # -- helpers ---
    def _call(self, fn, *args):
        """Run *fn* on the owning event loop from any thread."""
        loop = self._loop
        if loop is None or loop.is_closed():
            return
        try:
            loop.call_soon_threadsafe(fn, *args)
        except RuntimeError:
            pass

    @staticmethod
    def _settle(fut: asyncio.Future, result=None, exc: BaseException | None = None):
        if fut.done():
            return
        if exc is not None:
            fut.set_exception(exc)
        else:
            fut.set_result(result)

    async def _in_thread(self, fn, *args):
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, partial(fn, *args))

    # -- callbacks (paho network thread) ---
    def _on_connect(self, client, userdata, flags, reason_code, properties=None):
        fut = self._connect_future
        if reason_code.is_failure:
            exc = ConnectFailed(self.client_id,
                                f"connection refused: {reason_code}",
                                reason_code.value)
            if fut is not None:
                self._call(self._settle, fut, None, exc)
            return
        session_present = bool(getattr(flags, "session_present", False))
        if fut is not None and not fut.done():
            self._call(self._settle, fut, session_present)
        elif not self._closing:
            log.debug("[%s] reconnected (session_present=%s)",
                      self.client_id, session_present)
            self._call(self._fire_reconnected, session_present)

    def _on_connect_fail(self, client, userdata):
        fut = self._connect_future
        if fut is not None:
            exc = ConnectFailed(self.client_id,
                                f"broker unreachable at {self.settings.host}:{self.settings.port}")
            self._call(self._settle, fut, None, exc)

    def _on_disconnect(self, client, userdata, flags, reason_code, properties=None):
        if self._disconnect_future is not None:
            self._call(self._settle, self._disconnect_future, None)
        if self._closing:
            return
        reason = getattr(properties, "ReasonString", None) or str(reason_code)
        code = getattr(reason_code, "value", reason_code)
        self._call(self._fire_lost, code, reason)

    def _on_subscribe(self, client, userdata, mid, reason_code_list, properties=None):
        with self._lock:
            fut = self._pending_sub.pop(mid, None)
            if fut is None:
                self._early_sub[mid] = list(reason_code_list)
                return
        self._call(self._settle_subscribe, fut, list(reason_code_list))

    def _on_publish(self, client, userdata, mid, reason_code, properties=None):
        with self._lock:
            fut = self._pending_pub.pop(mid, None)
            if fut is None:
                self._early_pub[mid] = reason_code
                return
        self._call(self._settle_publish, fut, reason_code)

    def _on_message(self, client, userdata, msg):
        handler = self.on_message
        if handler is not None:
            handler(msg.topic, msg.payload)

    # -- loop-side settlement ---
    def _fire_lost(self, code: int, reason: str):
        if self.on_connection_lost is not None:
            self.on_connection_lost(code, reason)

    def _fire_reconnected(self, session_present: bool):
        if self.on_reconnected is not None:
            self.on_reconnected(session_present)

    def _settle_subscribe(self, fut: asyncio.Future, reason_codes: list):
        rc = reason_codes[0] if reason_codes else None
        if rc is None or rc.is_failure:
            self._settle(fut, exc=SubscribeFailed(self.client_id, f"SUBACK refused: {rc}"))
        else:
            self._settle(fut, rc.value)

    def _settle_publish(self, fut: asyncio.Future, reason_code):
        if reason_code is not None and getattr(reason_code, "is_failure", False):
            self._settle(fut, exc=PublishFailed(self.client_id, f"publish refused: {reason_code}"))
        else:
            self._settle(fut, None)

    # -- ProtocolClient ---
    async def connect(self, options: ConnectOptions) -> bool:
        self._loop = asyncio.get_running_loop()
        self._closing = False
        self._connect_future = self._loop.create_future()

        props = Properties(PacketTypes.CONNECT)
        if options.session_expiry:
            props.SessionExpiryInterval = options.session_expiry
        if options.receive_maximum:
            props.ReceiveMaximum = options.receive_maximum

        self.client.connect_async(
            self.settings.host, self.settings.port,
            keepalive=self.settings.keepalive,
            clean_start=options.clean_start,
            properties=props,
        )
        self.client.loop_start()
        self._started = True
        try:
            return await self._connect_future
        except BaseException:
            await self._stop()
            raise
        finally:
            self._connect_future = None

    async def subscribe(self, topic_filter: str, qos: int) -> int:
        fut = asyncio.get_running_loop().create_future()
        result, mid = self.client.subscribe(topic_filter, qos=qos)
        if result != mqtt.MQTT_ERR_SUCCESS:
            raise SubscribeFailed(self.client_id, f"subscribe not sent: {mqtt.error_string(result)}")
        with self._lock:
            early = self._early_sub.pop(mid, None)
            if early is None:
                self._pending_sub[mid] = fut
        if early is not None:
            self._settle_subscribe(fut, early)
        try:
            return await fut
        finally:
            with self._lock:
                if self._pending_sub.get(mid) is fut:
                    del self._pending_sub[mid]

    async def publish(self, topic: str, payload: bytes, qos: int,
                      message_expiry: int | None = None):
        props = None
        if message_expiry:
            props = Properties(PacketTypes.PUBLISH)
            props.MessageExpiryInterval = message_expiry

        fut = asyncio.get_running_loop().create_future()
        info = self.client.publish(topic, payload, qos=qos, retain=False, properties=props)
        # QoS>0 messages stay queued by paho while offline; QoS 0 ones are lost
        if info.rc != mqtt.MQTT_ERR_SUCCESS and (qos == 0 or info.rc != mqtt.MQTT_ERR_NO_CONN):
            with self._lock:
                self._early_pub.pop(info.mid, None)
            raise PublishFailed(self.client_id, f"publish not sent: {mqtt.error_string(info.rc)}")
        with self._lock:
            early = self._early_pub.pop(info.mid, _MISSING)
            if early is _MISSING:
                self._pending_pub[info.mid] = fut
        if early is not _MISSING:
            self._settle_publish(fut, early)
        try:
            await fut
        finally:
            with self._lock:
                if self._pending_pub.get(info.mid) is fut:
                    del self._pending_pub[info.mid]

    async def disconnect(self):
        if not self._started:
            return
        self._closing = True
        if not self.client.is_connected():
            await self._stop()
            return
        self._loop = asyncio.get_running_loop()
        self._disconnect_future = self._loop.create_future()
        self.client.disconnect()
        try:
            await asyncio.wait_for(self._disconnect_future, timeout=5.0)
        except asyncio.TimeoutError:
            log.warning("[%s] no DISCONNECT confirmation, closing anyway", self.client_id)
        finally:
            self._disconnect_future = None
            await self._stop()

    async def _stop(self):
        self._closing = True
        if not self._started:
            return
        self._started = False
        self.client.disconnect()
        await self._in_thread(self.client.loop_stop)


_MISSING = object()


def paho_client_factory(settings: BrokerSettings) -> ClientFactory:
    """``client_id -> PahoClient`` bound to one broker."""
    return partial(PahoClient, settings=settings)
