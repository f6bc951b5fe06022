from datetime import UTC, datetime

from fastapi import APIRouter, Request
from pydantic import BaseModel

from relayjobs.config.settings import Settings

router = APIRouter()


class ServiceHealth(BaseModel):
    """Connectivity status of a backing service."""

    connected: bool
    response_time_ms: float | None = None
    error: str | None = None


class HealthResponse(BaseModel):
    """Health response with store, broker and controller status."""

    ok: bool
    version: str
    environment: str
    timestamp: str
    store: ServiceHealth
    broker: ServiceHealth
    controllers: list[str]


@router.get("/healthz", response_model=HealthResponse)
async def health_check(request: Request) -> HealthResponse:
    """Health check endpoint with store and broker connectivity."""
    state = request.app.state
    settings: Settings = state.settings

    store_health = await _check(state.store.ping)
    broker_health = await _check(state.broker.ping)

    return HealthResponse(
        ok=store_health.connected and broker_health.connected,
        version=settings.version,
        environment=settings.environment,
        timestamp=datetime.now(UTC).isoformat(),
        store=store_health,
        broker=broker_health,
        controllers=state.controllers.list(),
    )


async def _check(ping) -> ServiceHealth:
    """Time a ping; failures are reported, not raised."""
    start_time = datetime.now(UTC)

    try:
        await ping()

        end_time = datetime.now(UTC)
        response_time_ms = (end_time - start_time).total_seconds() * 1000

        return ServiceHealth(connected=True, response_time_ms=round(response_time_ms, 2))

    except Exception as e:
        return ServiceHealth(connected=False, error=str(e))
