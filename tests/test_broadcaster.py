import asyncio
import json
import logging

from Broadcaster import Broadcaster, PushServer, frame
from conftest import FakeWebSocket


def test_emit_before_init_warns_and_does_not_raise(caplog):
    b = Broadcaster()
    assert not b.ready
    with caplog.at_level(logging.WARNING, logger="Broadcaster"):
        b.emit_to_all("plant_water", {"level": 10})
    assert "not initialized" in caplog.text


def test_emit_after_attach_reaches_server(recording_server):
    b = Broadcaster()
    b.attach(recording_server)
    b.emit_to_all("plant_soil", {"moisture": 44})
    assert recording_server.emitted == [("plant_soil", {"moisture": 44})]

    b.detach()
    b.emit_to_all("plant_soil", {"moisture": 45})
    assert len(recording_server.emitted) == 1


def test_frame_shape():
    assert json.loads(frame("plant_temp", {"celsius": 23.1})) == {"event": "plant_temp", "data": {"celsius": 23.1}}


def test_broadcast_fans_out_and_drops_dead_clients():
    server = PushServer()
    good, other, dead = FakeWebSocket(), FakeWebSocket(), FakeWebSocket(broken=True)

    async def scenario():
        for ws in (good, other, dead):
            await server.connect(ws)
        return await server.broadcast("plant_light", {"lux": 900})

    delivered = asyncio.run(scenario())
    assert delivered == 2
    assert server.client_count() == 2
    expected = frame("plant_light", {"lux": 900})
    assert good.sent == [expected]
    assert other.sent == [expected]


def test_new_client_receives_latest_per_channel():
    server = PushServer()
    late = FakeWebSocket()

    async def scenario():
        await server.broadcast("plant_water", {"level": 40})
        await server.broadcast("plant_water", {"level": 41})
        await server.broadcast("plant_soil", {"moisture": 30})
        await server.connect(late)

    asyncio.run(scenario())
    assert late.accepted
    assert late.sent == [
        frame("plant_water", {"level": 41}),
        frame("plant_soil", {"moisture": 30}),
    ]
    assert server.latest() == {"plant_water": {"level": 41}, "plant_soil": {"moisture": 30}}


def test_emit_schedules_delivery_on_running_loop():
    server = PushServer()
    ws = FakeWebSocket()

    async def scenario():
        await server.connect(ws)
        b = Broadcaster(server)
        b.emit_to_all("plant_water", {"level": 12})
        # emit only schedules; nothing sent yet
        assert ws.sent == []
        await asyncio.sleep(0)
        await asyncio.sleep(0)

    asyncio.run(scenario())
    assert ws.sent == [frame("plant_water", {"level": 12})]


def test_emit_without_loop_warns(caplog):
    server = PushServer()
    with caplog.at_level(logging.WARNING, logger="Broadcaster"):
        server.emit("plant_water", {"level": 1})
    assert "no event loop" in caplog.text


def test_disconnect_and_close():
    server = PushServer()
    a, b = FakeWebSocket(), FakeWebSocket()

    async def scenario():
        await server.connect(a)
        await server.connect(b)
        server.disconnect(a)
        server.disconnect(a)
        await server.close()

    asyncio.run(scenario())
    assert server.client_count() == 0
    assert b.closed and not a.closed
