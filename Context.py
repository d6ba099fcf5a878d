# Context.py
# Everything the host needs at runtime, built once by the entry point and
# passed to whoever needs it. start()/stop() own the lifecycle of the bus
# clients, the relay and the optional in-process generator.

import asyncio
import logging
from typing import Any, Optional

from Broadcaster import Broadcaster, PushServer
from Bus import Engine
from Config import Settings
from Mock_Bus_Transmission import run_generator
from Mock_Sensor_Generation import RandomWalkGenerator
from Relay import TopicRelay, default_bindings

logger = logging.getLogger(__name__)


class AppContext:
    def __init__(self, settings: Settings, engine: Optional[Any] = None,
                 push_server: Optional[PushServer] = None,
                 generator: Optional[RandomWalkGenerator] = None):
        self.settings = settings
        self.engine = engine if engine is not None else Engine(settings.engine_url)
        self.push_server = push_server or PushServer()
        self.broadcaster = Broadcaster()
        self.bindings = default_bindings(settings.workspace)
        self.relay = TopicRelay(
            engine=self.engine,
            broadcaster=self.broadcaster,
            bindings=self.bindings,
            access_key=settings.access_key,
            secret_key=settings.secret_key,
            topics_override=settings.topics_override,
            ack=settings.relay_ack,
        )
        self.generator = generator or RandomWalkGenerator()
        # Used for client-originated readings and the in-process generator
        self.publisher: Optional[Any] = None
        self._stop = asyncio.Event()
        self._generator_task: Optional[asyncio.Task] = None

    async def start(self) -> None:
        self.push_server.bind_loop(asyncio.get_running_loop())
        self.broadcaster.attach(self.push_server)

        if self.settings.access_key:
            try:
                self.publisher = await self.engine.create_client(self.settings.access_key, self.settings.secret_key)
            except Exception as e:
                logger.error("[HOST] publisher client unavailable: %s", e)
                self.publisher = None
        else:
            logger.warning("[HOST] no access key configured; publishing disabled")

        await self.relay.start()

        if self.settings.simulator_enabled:
            self._stop.clear()
            self._generator_task = asyncio.create_task(run_generator(
                self.publisher, self.generator, self.settings.workspace,
                self.settings.receivers, self._stop,
            ))

    async def stop(self) -> None:
        self._stop.set()
        if self._generator_task is not None:
            self._generator_task.cancel()
            try:
                await self._generator_task
            except asyncio.CancelledError:
                pass
            self._generator_task = None

        await self.relay.stop()
        if self.publisher is not None:
            await self.publisher.close()
            self.publisher = None

        self.broadcaster.detach()
        await self.push_server.close()
