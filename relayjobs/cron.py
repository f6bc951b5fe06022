"""
Cron engine.

A tiny app meant to be hit by an external scheduler. ``GET /retry`` fans out
one request per configured target, typically the ``/{name}Retry`` route of
each job.
"""

import asyncio
from contextlib import asynccontextmanager
from typing import Any

import httpx
from fastapi import FastAPI

from relayjobs.config.logging import get_logger
from relayjobs.config.settings import Settings, settings as default_settings

logger = get_logger(__name__)

ENGINE_NAME = "Relay Jobs Cron Engine"

# A target is a URL or a mapping with url, method and headers
CronTarget = str | dict[str, Any]


def build_request(target: CronTarget, settings: Settings) -> dict[str, Any]:
    """Resolve a target into ``httpx`` request arguments."""
    options = {"url": target} if isinstance(target, str) else dict(target)
    if "url" not in options:
        raise ValueError(f"Cron target has no url: {target!r}")

    headers = {"User-Agent": f"Relay Jobs Cron Retry {settings.version}"}
    if settings.auth_token:
        headers["Authorization"] = f"Bearer {settings.auth_token}"
    headers.update(options.get("headers") or {})

    return {
        "method": options.get("method", "POST").upper(),
        "url": options["url"],
        "headers": headers,
    }


async def run_retries(
    client: httpx.AsyncClient, targets: list[CronTarget], settings: Settings
) -> list[int | None]:
    """
    Call every target concurrently.

    Returns:
        The status code per target, None where the request failed
    """

    async def _call(target: CronTarget) -> int | None:
        try:
            response = await client.request(**build_request(target, settings))
        except (httpx.HTTPError, ValueError) as e:
            logger.error("Retry trigger failed", target=str(target), error=str(e))
            return None

        if response.is_error:
            logger.error(
                "Retry trigger rejected",
                target=str(target),
                status_code=response.status_code,
            )
        return response.status_code

    return list(await asyncio.gather(*(_call(target) for target in targets)))


def create_cron_app(
    targets: list[CronTarget] | None = None,
    client: httpx.AsyncClient | None = None,
    settings: Settings | None = None,
) -> FastAPI:
    """Create the cron engine app for ``targets`` (defaults to settings)."""
    settings = settings or default_settings
    targets = list(settings.cron_targets if targets is None else targets)
    http_client = client or httpx.AsyncClient(timeout=30)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        yield
        # Injected clients belong to the caller
        if client is None:
            await http_client.aclose()

    app = FastAPI(
        title=ENGINE_NAME, version=settings.version, openapi_url=None, lifespan=lifespan
    )

    @app.get("/")
    async def index() -> dict[str, str]:
        return {"name": ENGINE_NAME}

    @app.get("/retry")
    async def retry() -> dict[str, str]:
        logger.info("Running retries", targets=len(targets))
        await run_retries(http_client, targets, settings)
        return {"status": "ok"}

    @app.get("/_ah/start")
    @app.get("/_ah/warmup")
    async def health() -> dict[str, str]:
        return {"status": "ok"}

    return app
