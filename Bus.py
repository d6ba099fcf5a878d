# Bus.py
# Thin asyncio adapter over an MQTT broker acting as the pub/sub bus.
#
# Surface used by the rest of the app:
#   Engine(url).create_client(access_key, secret_key) -> BusClient
#   BusClient.publish(topic, receivers, payload)      -> message id
#   BusClient.subscribe(topic, auto_ack=...)          -> Subscription
#   Subscription.on(handler) / .ack(message_id, block) / .unsubscribe()
#
# Every publish is wrapped in a JSON envelope (see MSG.Envelope). Inbound
# messages are decoded on paho's network thread and handed to the asyncio
# loop; handlers always run on the loop.
#
# subscribe() returns only once the broker has granted the topic in its
# SUBACK. Delivery is at-most-once: with auto_ack off, a message the handlers
# did not ack is released to the broker once they return.

import asyncio
import inspect
import itertools
import json
import logging
import threading
import uuid
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple, Union
from urllib.parse import urlparse

import paho.mqtt.client as mqtt

from MSG import Envelope, message_id, now_ms

logger = logging.getLogger(__name__)

Handler = Callable[[Any], Union[None, Awaitable[None]]]

QOS = 1
CONNECT_TIMEOUT_S = 10.0
PUBLISH_TIMEOUT_S = 5.0
SUBSCRIBE_TIMEOUT_S = 5.0


class BusError(Exception):
    pass


def parse_engine_url(url: str) -> Tuple[str, int, bool]:
    """Return (host, port, use_tls) for an engine URL.

    mqtt://   -> plaintext, default port 1883
    mqtts://  -> TLS, default port 8883
    https://localhost... -> TLS disabled (local engine with a dev cert)
    https:// / wss://    -> TLS
    http:// / ws://      -> plaintext
    """
    parsed = urlparse(url if "://" in url else f"mqtt://{url}")
    scheme = (parsed.scheme or "mqtt").lower()
    host = parsed.hostname
    if not host:
        raise BusError(f"Engine URL has no host: {url!r}")

    if scheme in ("mqtts", "https", "wss", "ssl"):
        use_tls = True
    elif scheme in ("mqtt", "http", "ws", "tcp"):
        use_tls = False
    else:
        raise BusError(f"Unsupported engine URL scheme: {scheme!r}")

    if scheme == "https" and host in ("localhost", "127.0.0.1"):
        use_tls = False

    port = parsed.port or (8883 if use_tls else 1883)
    return host, port, use_tls


def _refused(reason_codes: List[Any]) -> bool:
    return not reason_codes or any(getattr(rc, "is_failure", False) for rc in reason_codes)


def _resolve(fut: asyncio.Future, codes: List[Any]) -> None:
    if not fut.done():
        fut.set_result(codes)


class Subscription:
    def __init__(self, client: "BusClient", topic: str, auto_ack: bool):
        self.client = client
        self.topic = topic
        self.auto_ack = auto_ack
        self._handlers: List[Handler] = []
        # message id -> (mqtt mid, qos, block) for messages awaiting ack
        self._pending: Dict[str, Tuple[int, int, Optional[int]]] = {}
        self._pending_lock = threading.Lock()

    def on(self, handler: Handler) -> None:
        self._handlers.append(handler)

    def _track(self, mid: str, mqtt_mid: int, qos: int, block: Optional[int]) -> None:
        with self._pending_lock:
            self._pending[mid] = (mqtt_mid, qos, block)

    async def _dispatch(self, event: Any) -> None:
        for handler in list(self._handlers):
            try:
                result = handler(event)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.exception("[BUS] handler error on %s", self.topic)
        mid = message_id(event)
        if mid is None:
            return
        if self.auto_ack:
            try:
                await self.ack(mid, event.get("block"))
            except BusError as e:
                logger.warning("[BUS] auto-ack failed on %s: %s", self.topic, e)
        else:
            self._release(mid)

    def _release(self, msg_id: str) -> None:
        # At-most-once: a message still pending after its handlers ran is
        # acked anyway so it cannot hold a slot in the broker's in-flight window
        with self._pending_lock:
            entry = self._pending.pop(msg_id, None)
        if entry is None:
            return
        logger.warning("[BUS] message %s on %s was not acknowledged by its handler; releasing", msg_id, self.topic)
        try:
            self.client._ack(entry[0], entry[1])
        except BusError as e:
            logger.warning("[BUS] release of %s failed: %s", msg_id, e)

    async def ack(self, msg_id: str, block: Optional[int] = None) -> None:
        with self._pending_lock:
            entry = self._pending.pop(str(msg_id), None)
        if entry is None:
            raise BusError(f"Unknown or already acknowledged message id {msg_id!r} on {self.topic}")
        mqtt_mid, qos, expected_block = entry
        if block is not None and expected_block is not None and block != expected_block:
            logger.debug("[BUS] ack block mismatch for %s: got %s expected %s", msg_id, block, expected_block)
        self.client._ack(mqtt_mid, qos)

    async def unsubscribe(self) -> None:
        await self.client._unsubscribe(self)


class BusClient:
    def __init__(self, mqtt_client: mqtt.Client, access_key: str, loop: asyncio.AbstractEventLoop):
        self._mqtt = mqtt_client
        self.access_key = access_key
        self._loop = loop
        self._subs: Dict[str, List[Subscription]] = {}
        self._subs_lock = threading.Lock()
        self._blocks = itertools.count(1)
        self._connected = asyncio.Event()
        self._closed = False
        # SUBACK bookkeeping, keyed by paho message id
        self._suback_lock = threading.Lock()
        self._subacks: Dict[int, asyncio.Future] = {}
        self._early_subacks: Dict[int, list] = {}
        self._resubscribes: Dict[int, str] = {}

        mqtt_client.on_connect = self._on_connect
        mqtt_client.on_disconnect = self._on_disconnect
        mqtt_client.on_message = self._on_message
        mqtt_client.on_subscribe = self._on_subscribe

    # ---- paho callbacks (network thread) ----

    def _on_connect(self, client, userdata, flags, reason_code, properties=None) -> None:
        if reason_code.is_failure:
            logger.warning("[BUS] connect refused: %s", reason_code)
            return
        logger.info("[BUS] connected as %s", self.access_key)
        # Broker may have dropped our subscriptions on reconnect
        with self._subs_lock:
            topics = list(self._subs)
        for topic in topics:
            result, mid = client.subscribe(topic, qos=QOS)
            if result == mqtt.MQTT_ERR_SUCCESS:
                with self._suback_lock:
                    self._resubscribes[mid] = topic
        self._loop.call_soon_threadsafe(self._connected.set)

    def _on_disconnect(self, client, userdata, flags, reason_code, properties=None) -> None:
        if not self._closed:
            logger.warning("[BUS] disconnected: %s", reason_code)
        self._loop.call_soon_threadsafe(self._connected.clear)

    def _on_subscribe(self, client, userdata, mid, reason_code_list, properties=None) -> None:
        with self._suback_lock:
            topic = self._resubscribes.pop(mid, None)
            fut = None if topic is not None else self._subacks.pop(mid, None)
            if topic is None and fut is None:
                # SUBACK beat subscribe() to registering its future
                self._early_subacks[mid] = list(reason_code_list)
                return
        if topic is not None:
            if _refused(reason_code_list):
                logger.warning("[BUS] resubscribe to %s refused: %s", topic, reason_code_list)
            return
        self._loop.call_soon_threadsafe(_resolve, fut, list(reason_code_list))

    def _on_message(self, client, userdata, msg) -> None:
        try:
            event = json.loads(msg.payload.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            logger.warning("[BUS] undecodable message on %s: %s", msg.topic, e)
            client.ack(msg.mid, msg.qos)
            return
        with self._subs_lock:
            subs = list(self._subs.get(msg.topic, []))
        if not subs:
            client.ack(msg.mid, msg.qos)
            return

        mid = message_id(event)
        if mid is None:
            # Not one of ours; nothing to ack against later
            client.ack(msg.mid, msg.qos)
        for sub in subs:
            if mid is not None:
                sub._track(mid, msg.mid, msg.qos, event.get("block"))
            asyncio.run_coroutine_threadsafe(sub._dispatch(event), self._loop)

    # ---- public API ----

    async def wait_connected(self, timeout: float = CONNECT_TIMEOUT_S) -> None:
        try:
            await asyncio.wait_for(self._connected.wait(), timeout)
        except asyncio.TimeoutError:
            raise BusError(f"Timed out after {timeout:.0f}s waiting for the bus connection") from None

    async def publish(self, topic: str, receivers: List[str], payload: Any) -> str:
        envelope = Envelope(
            id=uuid.uuid4().hex,
            block=next(self._blocks),
            sender=self.access_key,
            receivers=list(receivers),
            timestamp=now_ms(),
            payload=payload,
        )
        body = json.dumps(envelope.model_dump(), separators=(",", ":"), ensure_ascii=False)
        info = self._mqtt.publish(topic, body, qos=QOS)
        if info.rc != mqtt.MQTT_ERR_SUCCESS:
            raise BusError(f"publish to {topic} rejected: {mqtt.error_string(info.rc)}")
        await self._loop.run_in_executor(None, info.wait_for_publish, PUBLISH_TIMEOUT_S)
        if not info.is_published():
            raise BusError(f"publish to {topic} not confirmed within {PUBLISH_TIMEOUT_S:.0f}s")
        return envelope.id

    async def subscribe(self, topic: str, auto_ack: bool = True) -> Subscription:
        sub = Subscription(self, topic, auto_ack)
        with self._subs_lock:
            first = topic not in self._subs
            self._subs.setdefault(topic, []).append(sub)
        if first:
            try:
                await self._subscribe_confirmed(topic)
            except BusError:
                self._forget(sub)
                raise
        return sub

    async def _subscribe_confirmed(self, topic: str) -> None:
        result, mid = self._mqtt.subscribe(topic, qos=QOS)
        if result != mqtt.MQTT_ERR_SUCCESS:
            raise BusError(f"subscribe to {topic} failed: {mqtt.error_string(result)}")

        fut = self._loop.create_future()
        with self._suback_lock:
            codes = self._early_subacks.pop(mid, None)
            if codes is None:
                self._subacks[mid] = fut
        if codes is None:
            try:
                codes = await asyncio.wait_for(fut, SUBSCRIBE_TIMEOUT_S)
            except asyncio.TimeoutError:
                with self._suback_lock:
                    self._subacks.pop(mid, None)
                raise BusError(f"subscribe to {topic} not confirmed within {SUBSCRIBE_TIMEOUT_S:.0f}s") from None
        if _refused(codes):
            raise BusError(f"subscribe to {topic} refused by broker: {', '.join(str(c) for c in codes)}")

    def _forget(self, sub: Subscription) -> bool:
        """Drop sub from its topic; True when it was the topic's last subscriber."""
        with self._subs_lock:
            subs = self._subs.get(sub.topic, [])
            if sub in subs:
                subs.remove(sub)
            if not subs:
                self._subs.pop(sub.topic, None)
                return True
            return False

    def _ack(self, mqtt_mid: int, qos: int) -> None:
        rc = self._mqtt.ack(mqtt_mid, qos)
        if rc != mqtt.MQTT_ERR_SUCCESS:
            raise BusError(f"ack failed: {mqtt.error_string(rc)}")

    async def _unsubscribe(self, sub: Subscription) -> None:
        if self._forget(sub):
            self._mqtt.unsubscribe(sub.topic)

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._mqtt.disconnect()
        self._mqtt.loop_stop()
        logger.info("[BUS] client %s closed", self.access_key)


class Engine:
    def __init__(self, engine_url: str):
        self.engine_url = engine_url
        self.host, self.port, self.use_tls = parse_engine_url(engine_url)

    async def create_client(self, access_key: str, secret_key: Optional[str] = None) -> BusClient:
        loop = asyncio.get_running_loop()
        client_id = f"{access_key}-{uuid.uuid4().hex[:8]}"
        mq = mqtt.Client(
            callback_api_version=mqtt.CallbackAPIVersion.VERSION2,
            client_id=client_id,
            protocol=mqtt.MQTTv311,
            manual_ack=True,
        )
        mq.username_pw_set(access_key, secret_key)
        if self.use_tls:
            mq.tls_set()

        bus = BusClient(mq, access_key, loop)
        mq.enable_logger(logging.getLogger("paho"))

        logger.info("[BUS] connecting to %s:%s tls=%s", self.host, self.port, self.use_tls)
        try:
            await loop.run_in_executor(None, mq.connect, self.host, self.port, 60)
        except OSError as e:
            raise BusError(f"cannot reach engine at {self.host}:{self.port}: {e}") from e
        mq.loop_start()
        try:
            await bus.wait_connected()
        except BusError:
            mq.loop_stop()
            raise
        return bus
