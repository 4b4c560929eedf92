"""
Ride status-change event sinks.

Delivery is fire-and-forget: a failing or slow sink is logged and never fails
the transition that produced the event.
"""
import asyncio
import logging

import redis.asyncio as aioredis

from app.schemas.domain import RideEvent

logger = logging.getLogger(__name__)


class EventSink:
    async def emit(self, event: RideEvent) -> None:
        raise NotImplementedError


class LoggingEventSink(EventSink):
    async def emit(self, event: RideEvent) -> None:
        logger.info(
            "%s ride=%s %s -> %s",
            event.type,
            event.ride_id,
            event.from_status.value if event.from_status else None,
            event.to_status.value,
        )


class InMemoryEventSink(EventSink):
    def __init__(self) -> None:
        self.events: list[RideEvent] = []

    async def emit(self, event: RideEvent) -> None:
        self.events.append(event)


class RedisEventSink(EventSink):
    """Publishes events as JSON on a Redis pub/sub channel."""

    def __init__(self, redis: aioredis.Redis, channel: str):
        self.redis = redis
        self.channel = channel

    async def emit(self, event: RideEvent) -> None:
        await self.redis.publish(self.channel, event.model_dump_json())


async def emit_safely(sink: EventSink, event: RideEvent, timeout: float = 2.0) -> None:
    try:
        await asyncio.wait_for(sink.emit(event), timeout=timeout)
    except Exception as exc:
        logger.warning("Event sink failed for ride=%s (%s): %s", event.ride_id, event.type, exc)
