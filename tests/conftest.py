import asyncio
from collections.abc import AsyncGenerator
from datetime import timedelta
from typing import Any

import pytest
from httpx import ASGITransport, AsyncClient

from relayjobs.config.settings import Settings
from relayjobs.core.exceptions import TopicNotFoundError
from relayjobs.infra.database import Database
from relayjobs.jobs.controller import JobController
from relayjobs.jobs.envelope import decode_envelope, encode_envelope
from relayjobs.jobs.hooks import JobHooks, JobType
from relayjobs.jobs.schemas import JobEnvelope, JobRecord
from relayjobs.jobs.store import RecordStore, utcnow


class FakeBroker:
    """In-memory broker recording every publish."""

    def __init__(self, auto_create_topics: bool = True):
        self.auto_create_topics = auto_create_topics
        self.topics: set[str] = set()
        self.published: list[tuple[str, JobEnvelope, str]] = []
        self.acked: list[tuple[str, str, str]] = []
        self.pending: dict[str, list[tuple[str, dict[str, Any]]]] = {}
        self.fail_publish: Exception | None = None

    async def topic_exists(self, topic: str) -> bool:
        return topic in self.topics

    async def create_topic(self, topic: str) -> None:
        self.topics.add(topic)

    async def subscribe(self, topic: str, group: str) -> None:
        self.topics.add(topic)

    async def publish(self, topic: str, envelope: JobEnvelope) -> str:
        if self.fail_publish is not None:
            raise self.fail_publish
        if topic not in self.topics:
            if not self.auto_create_topics:
                raise TopicNotFoundError(topic)
            self.topics.add(topic)

        message_id = f"{len(self.published) + 1}-0"
        self.published.append((topic, envelope, message_id))
        self.pending.setdefault(topic, []).append(
            (message_id, {"data": encode_envelope(envelope).encode()})
        )
        return message_id

    @staticmethod
    def decode(raw: Any) -> JobEnvelope:
        return decode_envelope(raw)

    async def read(self, topic, group, consumer, count, block_ms):
        await asyncio.sleep(0)
        batch = self.pending.get(topic, [])[:count]
        self.pending[topic] = self.pending.get(topic, [])[count:]
        return batch

    async def ack(self, topic: str, group: str, message_id: str) -> None:
        self.acked.append((topic, group, message_id))

    async def ping(self) -> None:
        return None

    def message_for(self, index: int = -1) -> dict[str, str]:
        """The wire message of a published envelope."""
        _topic, envelope, _message_id = self.published[index]
        return {"data": encode_envelope(envelope)}


@pytest.fixture
def settings(tmp_path) -> Settings:
    """Settings pointing at a throwaway SQLite database."""
    return Settings(
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'jobs.db'}",
        store_retry_base_delay_ms=0,
        broker_auto_create_topics=True,
        auth_token=None,
        cors_hosts=[],
    )


@pytest.fixture
async def database(settings) -> AsyncGenerator[Database, None]:
    database = Database(settings)
    await database.create_all()
    yield database
    await database.close()


@pytest.fixture
def store(database, settings) -> RecordStore:
    return RecordStore(database, settings)


@pytest.fixture
def broker() -> FakeBroker:
    return FakeBroker()


@pytest.fixture
def make_controller(store, broker, settings):
    """Build a controller for a job type with option overrides."""

    def _make(job_type: JobType | None = None, **options: Any) -> JobController:
        job_type = job_type or JobType(name="myTask", hooks=JobHooks())
        return JobController(
            job_type,
            store,
            broker,
            settings,
            options=job_type.resolve_options(settings, **options),
        )

    return _make


@pytest.fixture
def seed_record(store):
    """Save a record created ``age`` ago, then apply lifecycle fields."""

    async def _seed(
        kind: str = "myTask",
        age: timedelta = timedelta(0),
        payload: dict[str, Any] | None = None,
        **fields: Any,
    ) -> JobRecord:
        data = dict(payload or {"value": 1})
        created_at = utcnow() - age
        data["createdAt"] = created_at.isoformat()
        record = await store.save(
            kind, data, run_at=fields.pop("next_attempt", created_at)
        )
        if fields:
            await store.update(record.key, fields)
        return await store.get(record.key)

    return _seed


@pytest.fixture
async def client_for():
    """Open an AsyncClient against an app."""
    clients: list[AsyncClient] = []

    def _client(app) -> AsyncClient:
        client = AsyncClient(transport=ASGITransport(app=app), base_url="http://test")
        clients.append(client)
        return client

    yield _client
    for client in clients:
        await client.aclose()
