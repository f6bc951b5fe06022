"""
Broker adapter over Redis Streams.

Each topic is a stream; subscribers read it through consumer groups. Topics
are registered in a Redis set so publishing to a topic nobody created is an
error instead of silently creating an unread stream.
"""

from typing import Any

import redis.asyncio as redis
from redis.exceptions import RedisError, ResponseError

from relayjobs.config.logging import get_logger
from relayjobs.config.settings import Settings
from relayjobs.core.exceptions import BrokerError, TopicNotFoundError
from relayjobs.jobs.envelope import decode_envelope, encode_envelope
from relayjobs.jobs.schemas import JobEnvelope

logger = get_logger(__name__)

TOPICS_KEY = "relayjobs:topics"
DATA_FIELD = "data"


def _text(value: Any) -> str:
    return value.decode("utf-8") if isinstance(value, bytes) else str(value)


class Broker:
    """Publish envelopes to topics and manage subscriptions."""

    def __init__(self, client: redis.Redis, settings: Settings):
        self.client = client
        self.auto_create_topics = settings.broker_auto_create_topics

    async def topic_exists(self, topic: str) -> bool:
        return bool(await self.client.sismember(TOPICS_KEY, topic))

    async def create_topic(self, topic: str) -> None:
        """Register a topic so it can be published to."""
        await self.client.sadd(TOPICS_KEY, topic)
        logger.info("Topic created", topic=topic)

    async def subscribe(self, topic: str, group: str) -> None:
        """Create the topic and a consumer group reading it from the start."""
        await self.create_topic(topic)
        try:
            await self.client.xgroup_create(topic, group, id="0", mkstream=True)
        except ResponseError as e:
            # Group already exists
            if "BUSYGROUP" not in str(e):
                raise

    async def publish(self, topic: str, envelope: JobEnvelope) -> str:
        """
        Publish an envelope to a topic.

        Returns:
            The message id assigned by the broker

        Raises:
            TopicNotFoundError: topic missing and auto-creation disabled
            BrokerError: the broker rejected the message
        """
        try:
            if not await self.topic_exists(topic):
                if not self.auto_create_topics:
                    raise TopicNotFoundError(topic)
                await self.create_topic(topic)

            message_id = await self.client.xadd(
                topic, {DATA_FIELD: encode_envelope(envelope)}
            )
        except RedisError as e:
            raise BrokerError(f"Publish to {topic} failed: {e}") from e

        message_id = _text(message_id)
        logger.debug(
            "Message published",
            topic=topic,
            message_id=message_id,
            name=envelope.name,
            key=envelope.key,
        )
        return message_id

    @staticmethod
    def decode(raw: Any) -> JobEnvelope:
        """Decode a delivered message into its envelope."""
        return decode_envelope(raw)

    async def read(
        self,
        topic: str,
        group: str,
        consumer: str,
        count: int,
        block_ms: int,
    ) -> list[tuple[str, dict[str, Any]]]:
        """Read new messages for a consumer; returns ``(message_id, fields)``."""
        response = await self.client.xreadgroup(
            group, consumer, {topic: ">"}, count=count, block=block_ms
        )
        messages = []
        for _stream, entries in response or []:
            for message_id, fields in entries:
                decoded = {_text(name): value for name, value in fields.items()}
                messages.append((_text(message_id), decoded))
        return messages

    async def ack(self, topic: str, group: str, message_id: str) -> None:
        await self.client.xack(topic, group, message_id)

    async def ping(self) -> None:
        """Round-trip to the broker; raises on failure."""
        await self.client.ping()
