import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional

import aiomqtt
import redis.asyncio as redis

from printfarm.schemas.events import EventTopic, FleetEvent

logger = logging.getLogger("EventBus")

Subscriber = Callable[[FleetEvent], Awaitable[None]]


class EventBus:
    """
    In-process fan-out of fleet events. Subscribers are awaited in order;
    a failing subscriber is logged and skipped so one broken consumer
    cannot stall the publisher.
    """

    def __init__(self):
        self._subscribers: List[Subscriber] = []
        self._sinks: List["EventSink"] = []

    def subscribe(self, callback: Subscriber) -> None:
        if callback not in self._subscribers:
            self._subscribers.append(callback)

    def unsubscribe(self, callback: Subscriber) -> None:
        if callback in self._subscribers:
            self._subscribers.remove(callback)

    def add_sink(self, sink: "EventSink") -> None:
        self._sinks.append(sink)
        self.subscribe(sink.handle)

    async def publish(self, topic: EventTopic, payload: Optional[Dict[str, Any]] = None) -> FleetEvent:
        event = FleetEvent(topic=topic, payload=payload or {})
        for callback in list(self._subscribers):
            try:
                await callback(event)
            except Exception as e:
                logger.warning(f"Subscriber {getattr(callback, '__qualname__', callback)} failed on {topic.value}: {e}")
        return event

    async def close(self) -> None:
        for sink in self._sinks:
            try:
                await sink.close()
            except Exception as e:
                logger.warning(f"Failed to close sink {type(sink).__name__}: {e}")
        self._sinks.clear()
        self._subscribers.clear()


class EventSink:
    async def handle(self, event: FleetEvent) -> None:
        raise NotImplementedError

    async def close(self) -> None:
        return None


class RedisEventSink(EventSink):
    """Publishes every event as JSON on a Redis pub/sub channel."""

    def __init__(self, redis_url: str, channel: str):
        self.channel = channel
        self._client: redis.Redis = redis.from_url(
            redis_url,
            decode_responses=True,
            encoding="utf-8"
        )

    async def handle(self, event: FleetEvent) -> None:
        await self._client.publish(self.channel, event.model_dump_json())

    async def close(self) -> None:
        await self._client.aclose()


class MqttEventSink(EventSink):
    """
    Mirrors fleet events onto the factory MQTT bus.

    Topic: printfarm/events/{topic}
    QoS: 0 (events are advisory)
    """

    def __init__(self, broker_host: str, broker_port: int = 1883):
        self.broker_host = broker_host
        self.broker_port = broker_port

    async def handle(self, event: FleetEvent) -> None:
        topic = f"printfarm/events/{event.topic.value}"
        try:
            async with aiomqtt.Client(hostname=self.broker_host, port=self.broker_port) as client:
                await client.publish(topic, payload=event.model_dump_json(), qos=0)
        except aiomqtt.MqttError as e:
            logger.warning(f"MQTT publish to {topic} on {self.broker_host}:{self.broker_port} failed: {e}")
