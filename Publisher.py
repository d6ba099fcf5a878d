# Publisher.py
# Best-effort publish of one payload to one bus topic.
# At most once: no retries, failures are logged and swallowed.

import logging
from typing import Any, Optional, Sequence

logger = logging.getLogger(__name__)


async def publish(client: Optional[Any], topic: str, receivers: Sequence[str], payload: Any) -> bool:
    """Publish `payload` on `topic` to `receivers`.

    Returns True when the bus accepted the message. An empty receiver list
    is a silent no-op (nobody to deliver to). Errors never reach the caller.
    """
    if not receivers:
        return False
    if client is None:
        logger.warning("[PUBLISH] no bus client; dropping %s", topic)
        return False

    try:
        await client.publish(topic, list(receivers), payload)
    except Exception as e:
        logger.error("[PUBLISH] failed to publish %s: %s", topic, e)
        return False

    logger.debug("[PUBLISH] %s %s", topic, payload)
    return True
