import asyncio

from Config import Settings
from Context import AppContext
from conftest import FakeEngine
from Relay import RelayState


def test_start_and_stop_with_simulator():
    engine = FakeEngine()
    settings = Settings(access_key="key", secret_key="secret", receivers=["r1"],
                        workspace="workspace", simulator_enabled=True)

    async def scenario():
        ctx = AppContext(settings, engine=engine)
        await ctx.start()
        assert ctx.broadcaster.ready
        assert ctx.relay.state is RelayState.ACTIVE
        await asyncio.sleep(0.05)
        publisher = ctx.publisher
        task = ctx._generator_task
        await ctx.stop()
        return ctx, publisher, task

    ctx, publisher, task = asyncio.run(scenario())
    assert publisher.published[0][0] == "workspace/plant/water"
    assert publisher.published[0][1] == ["r1"]
    assert task.done()
    assert publisher.closed
    assert ctx.publisher is None
    assert not ctx.broadcaster.ready
    assert ctx.relay.state is RelayState.UNINITIALIZED


def test_start_without_credentials_keeps_host_running():
    engine = FakeEngine()

    async def scenario():
        ctx = AppContext(Settings(), engine=engine)
        await ctx.start()
        state = ctx.relay.state
        await ctx.stop()
        return ctx, state

    ctx, state = asyncio.run(scenario())
    assert state is RelayState.UNINITIALIZED
    assert engine.clients == []
    assert ctx.publisher is None


def test_publisher_failure_does_not_block_startup():
    async def scenario():
        ctx = AppContext(Settings(access_key="key", secret_key="secret"), engine=FakeEngine(fail=True))
        await ctx.start()
        state = ctx.relay.state
        await ctx.stop()
        return ctx, state

    ctx, state = asyncio.run(scenario())
    assert ctx.publisher is None
    assert state is RelayState.UNINITIALIZED
