"""
appointments/services/events.py

Event emitter: pushes notifications to the Redis queue consumed by the
notification workers.

Emitted types:
- booking_created / booking_rescheduled / booking_cancelled
- calendar_reauth_required
"""

import json
import logging
import time

from redis.exceptions import RedisError

from ..redis_client import redis_client

logger = logging.getLogger(__name__)

EVENTS_QUEUE = "events:p2p"


def emit_event(event_type: str, payload: dict, client=None) -> None:
    """
    Emit an event (fire-and-forget).

    Pushed to Redis list `events:p2p`. Failures are logged and never
    propagate to the caller.
    """
    event = {
        "type": event_type,
        **payload,
        "ts": int(time.time()),
    }
    client = client if client is not None else redis_client
    try:
        client.rpush(EVENTS_QUEUE, json.dumps(event, default=str))
        logger.info(f"Event emitted: {event_type} → {EVENTS_QUEUE}")
    except (RedisError, OSError) as e:
        logger.error(f"Failed to emit event {event_type}: {e}")
