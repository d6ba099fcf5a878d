import pytest

from Bus import BusError


class FakeSubscription:
    def __init__(self, topic, auto_ack=True):
        self.topic = topic
        self.auto_ack = auto_ack
        self.handlers = []
        self.acks = []
        self.unsubscribed = False
        self.fail_ack = False

    def on(self, handler):
        self.handlers.append(handler)

    async def ack(self, message_id, block=None):
        if self.fail_ack:
            raise BusError("ack rejected")
        self.acks.append((message_id, block))

    async def unsubscribe(self):
        self.unsubscribed = True

    async def deliver(self, event):
        for handler in self.handlers:
            await handler(event)


class FakeBusClient:
    def __init__(self, access_key="key"):
        self.access_key = access_key
        self.published = []
        self.subscriptions = {}
        self.fail_publish = set()
        self.fail_subscribe = set()
        self.closed = False

    async def publish(self, topic, receivers, payload):
        if topic in self.fail_publish:
            raise BusError(f"publish to {topic} rejected")
        self.published.append((topic, list(receivers), payload))
        return f"msg-{len(self.published)}"

    async def subscribe(self, topic, auto_ack=True):
        if topic in self.fail_subscribe:
            raise BusError(f"subscribe to {topic} failed")
        sub = FakeSubscription(topic, auto_ack)
        self.subscriptions[topic] = sub
        return sub

    async def close(self):
        self.closed = True


class FakeEngine:
    def __init__(self, fail=False, fail_subscribe=()):
        self.fail = fail
        self.fail_subscribe = set(fail_subscribe)
        self.clients = []

    async def create_client(self, access_key, secret_key=None):
        if self.fail:
            raise BusError("engine unreachable")
        client = FakeBusClient(access_key)
        client.fail_subscribe = set(self.fail_subscribe)
        self.clients.append(client)
        return client


class RecordingServer:
    """Stands in for the push server: records every emit."""

    def __init__(self, fail_on=None):
        self.emitted = []
        self.fail_on = fail_on

    def emit(self, channel, payload):
        if channel == self.fail_on:
            raise RuntimeError(f"cannot emit {channel}")
        self.emitted.append((channel, payload))


class FakeWebSocket:
    def __init__(self, broken=False):
        self.sent = []
        self.broken = broken
        self.accepted = False
        self.closed = False

    async def accept(self):
        self.accepted = True

    async def send_text(self, text):
        if self.broken:
            raise RuntimeError("socket closed")
        self.sent.append(text)

    async def close(self):
        self.closed = True


@pytest.fixture
def fake_engine():
    return FakeEngine()


@pytest.fixture
def fake_client():
    return FakeBusClient()


@pytest.fixture
def recording_server():
    return RecordingServer()
