# Relay.py
# Subscribe to plant topics on the bus and fan each message out to the
# dashboard: always on the passthrough channel, and on the mapped display
# channel when the topic has a binding.

import logging
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence

from Broadcaster import Broadcaster
from MSG import MetricKind, extract_payload, message_id, topic_for

logger = logging.getLogger(__name__)

PASSTHROUGH_CHANNEL = "ensync_event"

CHANNELS: Dict[MetricKind, str] = {
    MetricKind.WATER_LEVEL: "plant_water",
    MetricKind.SOIL_MOISTURE: "plant_soil",
    MetricKind.TEMPERATURE: "plant_temp",
    MetricKind.LIGHT: "plant_light",
}


def default_bindings(workspace: str) -> Dict[str, str]:
    """Topic -> display channel, e.g. progo/plant/soil -> plant_soil."""
    return {topic_for(workspace, kind): channel for kind, channel in CHANNELS.items()}


def kind_for_channel(channel: str) -> Optional[MetricKind]:
    for kind, name in CHANNELS.items():
        if name == channel:
            return kind
    return None


class RelayState(str, Enum):
    UNINITIALIZED = "uninitialized"
    SUBSCRIBING = "subscribing"
    ACTIVE = "active"


class TopicRelay:
    def __init__(self, engine: Any, broadcaster: Broadcaster, bindings: Dict[str, str],
                 access_key: Optional[str], secret_key: Optional[str],
                 topics_override: Optional[Sequence[str]] = None, ack: bool = True):
        self.engine = engine
        self.broadcaster = broadcaster
        self.bindings = dict(bindings)
        self.access_key = access_key
        self.secret_key = secret_key
        self.topics_override = [t for t in (topics_override or []) if t]
        # ack=True: explicit ack once handled; False: transport auto-ack
        self.ack = ack
        self.state = RelayState.UNINITIALIZED
        self.client: Optional[Any] = None
        self.subscriptions: List[Any] = []

    def select_topics(self) -> List[str]:
        topics = self.topics_override or list(self.bindings)
        return list(dict.fromkeys(topics))

    async def start(self) -> RelayState:
        if not self.access_key or not self.secret_key:
            logger.warning("[RELAY] missing bus credentials (ENSYNC_CLIENT_ID/CLIENT_ACCESS_KEY or SECRET_KEY); relay disabled")
            return self.state

        self.state = RelayState.SUBSCRIBING
        try:
            self.client = await self.engine.create_client(self.access_key, self.secret_key)
        except Exception as e:
            logger.error("[RELAY] subscriber initialization failed: %s", e)
            self.client = None
            self.state = RelayState.UNINITIALIZED
            return self.state

        for topic in self.select_topics():
            try:
                sub = await self.client.subscribe(topic, auto_ack=not self.ack)
            except Exception as e:
                logger.warning("[RELAY] failed to subscribe to %s: %s", topic, e)
                continue
            sub.on(self._handler_for(topic, sub))
            self.subscriptions.append(sub)
            logger.info("[RELAY] subscribed to %s", topic)

        if not self.subscriptions:
            logger.warning("[RELAY] no topic could be subscribed; relay is active but will receive nothing")
        self.state = RelayState.ACTIVE
        return self.state

    def _handler_for(self, topic: str, sub: Any):
        async def on_event(event: Any) -> None:
            await self.handle_message(topic, event, sub)
        return on_event

    async def handle_message(self, topic: str, event: Any, sub: Optional[Any] = None) -> bool:
        """Relay one bus message. Returns True when it was broadcast.

        The message is acked either way (at-most-once); a failed broadcast is
        logged and not retried.
        """
        ok = True
        try:
            payload = extract_payload(event)
            self.broadcaster.emit_to_all(PASSTHROUGH_CHANNEL, {
                "topic": topic,
                "payload": payload,
                "raw": event,
            })
            channel = self.bindings.get(topic)
            if channel:
                self.broadcaster.emit_to_all(channel, payload)
        except Exception:
            logger.exception("[RELAY] handler exception on %s", topic)
            ok = False

        if self.ack and sub is not None:
            await self._ack(topic, event, sub)
        return ok

    async def _ack(self, topic: str, event: Any, sub: Any) -> None:
        mid = message_id(event)
        if mid is None:
            return
        block = event.get("block") if isinstance(event, dict) else None
        try:
            await sub.ack(mid, block)
        except Exception as e:
            logger.warning("[RELAY] ack failed for %s on %s: %s", mid, topic, e)

    async def stop(self) -> None:
        for sub in self.subscriptions:
            try:
                await sub.unsubscribe()
            except Exception as e:
                logger.warning("[RELAY] unsubscribe from %s failed: %s", getattr(sub, "topic", "?"), e)
        self.subscriptions = []
        if self.client is not None:
            await self.client.close()
            self.client = None
        self.state = RelayState.UNINITIALIZED
