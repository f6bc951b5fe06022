import base64
import json
from unittest.mock import AsyncMock

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import ResponseError

from relayjobs.config.settings import Settings
from relayjobs.core.exceptions import BrokerError, TopicNotFoundError
from relayjobs.jobs.broker import DATA_FIELD, TOPICS_KEY, Broker
from relayjobs.jobs.schemas import JobEnvelope


@pytest.fixture
def redis_client():
    client = AsyncMock()
    client.sismember.return_value = 1
    client.xadd.return_value = b"1700000000000-0"
    return client


def make_broker(client, auto_create: bool = False) -> Broker:
    return Broker(client, Settings(broker_auto_create_topics=auto_create))


async def test_publish_adds_stream_entry(redis_client):
    """Publishing appends the encoded envelope to the topic stream."""
    broker = make_broker(redis_client)

    message_id = await broker.publish("myTask", JobEnvelope(name="myTask", key="k1"))

    assert message_id == "1700000000000-0"
    redis_client.sismember.assert_awaited_once_with(TOPICS_KEY, "myTask")
    topic, fields = redis_client.xadd.await_args.args
    assert topic == "myTask"
    decoded = json.loads(base64.b64decode(fields[DATA_FIELD]))
    assert decoded == {"name": "myTask", "key": "k1"}


async def test_publish_missing_topic(redis_client):
    redis_client.sismember.return_value = 0
    broker = make_broker(redis_client)

    with pytest.raises(TopicNotFoundError):
        await broker.publish("missing", JobEnvelope(name="missing", key="k1"))
    redis_client.xadd.assert_not_awaited()


async def test_publish_auto_creates_topic(redis_client):
    redis_client.sismember.return_value = 0
    broker = make_broker(redis_client, auto_create=True)

    await broker.publish("fresh", JobEnvelope(name="fresh", key="k1"))

    redis_client.sadd.assert_awaited_once_with(TOPICS_KEY, "fresh")
    redis_client.xadd.assert_awaited_once()


async def test_publish_wraps_redis_errors(redis_client):
    redis_client.xadd.side_effect = RedisConnectionError("connection refused")
    broker = make_broker(redis_client)

    with pytest.raises(BrokerError, match="connection refused"):
        await broker.publish("myTask", JobEnvelope(name="myTask", key="k1"))


async def test_subscribe_creates_group(redis_client):
    broker = make_broker(redis_client)

    await broker.subscribe("myTask", "myTask")

    redis_client.xgroup_create.assert_awaited_once_with(
        "myTask", "myTask", id="0", mkstream=True
    )


async def test_subscribe_existing_group(redis_client):
    redis_client.xgroup_create.side_effect = ResponseError(
        "BUSYGROUP Consumer Group name already exists"
    )
    broker = make_broker(redis_client)

    await broker.subscribe("myTask", "myTask")


async def test_subscribe_other_errors_propagate(redis_client):
    redis_client.xgroup_create.side_effect = ResponseError("WRONGTYPE")
    broker = make_broker(redis_client)

    with pytest.raises(ResponseError):
        await broker.subscribe("myTask", "myTask")


async def test_read_decodes_entries(redis_client):
    redis_client.xreadgroup.return_value = [
        [b"myTask", [(b"1-0", {b"data": b"abc"}), (b"2-0", {b"data": b"def"})]]
    ]
    broker = make_broker(redis_client)

    messages = await broker.read("myTask", "myTask", "consumer-1", count=10, block_ms=5)

    assert messages == [("1-0", {"data": b"abc"}), ("2-0", {"data": b"def"})]
    redis_client.xreadgroup.assert_awaited_once_with(
        "myTask", "consumer-1", {"myTask": ">"}, count=10, block=5
    )


async def test_read_timeout_returns_nothing(redis_client):
    redis_client.xreadgroup.return_value = None
    broker = make_broker(redis_client)

    assert await broker.read("myTask", "myTask", "c", count=1, block_ms=1) == []


def test_decode_stream_fields():
    payload = base64.b64encode(b'{"name":"myTask","key":"k1"}')

    envelope = Broker.decode({"data": payload})

    assert envelope.key == "k1"
