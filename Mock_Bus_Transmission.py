#The Mock Bus Transmission script plays the part of a plant sensor board.
#It drifts the simulated readings with the random-walk generator and
#publishes one message per metric onto the bus, paced so consumers see
#water -> soil -> temperature -> light, then a longer pause.

# Mock_Bus_Transmission.py
import asyncio
import logging
import random
import sys
from typing import Any, Optional, Sequence, Tuple

import Publisher
from Bus import BusError, Engine
from Config import Settings, configure_logging, load_settings
from MSG import topic_for
from Mock_Sensor_Generation import RandomWalkGenerator

logger = logging.getLogger(__name__)

METRIC_GAP_S = (0.12, 0.5)   # between metrics within a tick
CYCLE_GAP_S = (3.5, 7.5)     # between ticks


async def sleep_or_stop(stop: asyncio.Event, seconds: float) -> bool:
    """Sleep up to `seconds`; return True if `stop` was set meanwhile."""
    try:
        await asyncio.wait_for(stop.wait(), timeout=seconds)
    except asyncio.TimeoutError:
        return False
    return True


async def publish_tick(client: Optional[Any], generator: RandomWalkGenerator, workspace: str,
                       receivers: Sequence[str], stop: Optional[asyncio.Event] = None,
                       metric_gap_s: Tuple[float, float] = METRIC_GAP_S,
                       rng: Optional[random.Random] = None) -> int:
    """Advance every metric once and publish each one. Returns how many were accepted."""
    rng = rng or generator.rng
    samples = generator.tick()
    sent = 0
    for i, sample in enumerate(samples):
        if i > 0 and stop is not None:
            if await sleep_or_stop(stop, rng.uniform(*metric_gap_s)):
                break
        topic = topic_for(workspace, sample.kind)
        if await Publisher.publish(client, topic, receivers, sample.to_payload()):
            sent += 1
    return sent


async def run_generator(client: Optional[Any], generator: RandomWalkGenerator, workspace: str,
                        receivers: Sequence[str], stop: asyncio.Event,
                        metric_gap_s: Tuple[float, float] = METRIC_GAP_S,
                        cycle_gap_s: Tuple[float, float] = CYCLE_GAP_S) -> None:
    """Publish ticks until `stop` is set (or the task is cancelled)."""
    if not receivers:
        logger.warning("[SIM] no receivers configured; readings will not be published")
    logger.info("[SIM] publishing to %s/plant/* for receiver(s) %s", workspace, list(receivers))

    while not stop.is_set():
        sent = await publish_tick(client, generator, workspace, receivers, stop, metric_gap_s)
        logger.debug("[SIM] tick %d sent=%d state=%s", generator.sequence, sent, generator.snapshot())
        if await sleep_or_stop(stop, generator.rng.uniform(*cycle_gap_s)):
            break

    logger.info("[SIM] generator stopped after %d ticks", generator.sequence)


async def amain(settings: Settings) -> int:
    if not settings.access_key:
        logger.error("[SIM] missing ENSYNC_CLIENT_ID / CLIENT_ACCESS_KEY")
        return 2

    engine = Engine(settings.engine_url)
    try:
        client = await engine.create_client(settings.access_key, settings.secret_key)
    except BusError as e:
        logger.error("[SIM] could not connect to %s: %s", settings.engine_url, e)
        return 1

    stop = asyncio.Event()
    try:
        await run_generator(client, RandomWalkGenerator(), settings.workspace, settings.receivers, stop)
    finally:
        await client.close()
    return 0


def main() -> None:
    settings = load_settings()
    configure_logging(settings.log_level)
    try:
        code = asyncio.run(amain(settings))
    except KeyboardInterrupt:
        logger.info("[SIM] stopping simulator...")
        code = 0
    sys.exit(code)


if __name__ == "__main__":
    main()
