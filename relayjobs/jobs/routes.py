"""
HTTP routes for job controllers.

Each controller gets four routes under its name:

- ``POST /{name}``: submit a payload
- ``OPTIONS /{name}``: CORS preflight
- ``POST /{name}Retry``: run one retry scan
- ``POST /{name}Process``: push delivery of a broker message
"""

import json
from typing import Any

from fastapi import APIRouter, Request, Response
from fastapi.responses import JSONResponse

from relayjobs.config.logging import get_logger
from relayjobs.core.exceptions import ForbiddenError, ValidationError
from relayjobs.core.security import CORS_HEADERS, authenticate, check_cors
from relayjobs.jobs.controller import JobController
from relayjobs.jobs.schemas import HandlerResult

logger = get_logger(__name__)


async def read_json(request: Request) -> Any:
    """Parse the request body; an empty body is None."""
    raw = await request.body()
    if not raw:
        return None
    try:
        return json.loads(raw)
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        raise ValidationError("Request body is not valid JSON", detail=str(e)) from e


def origin_headers(request: Request, cors_hosts: list[str]) -> dict[str, str]:
    """Allow-Origin headers for a simple request; empty when not allowed."""
    try:
        return check_cors(request.headers.get("Origin"), cors_hosts)
    except ForbiddenError:
        return {}


def create_controller_router(controller: JobController) -> APIRouter:
    """Build the routes serving one controller."""
    router = APIRouter(tags=[controller.name])
    options = controller.options

    def to_response(result: HandlerResult, request: Request) -> JSONResponse:
        return JSONResponse(
            status_code=result.status,
            content=result.body,
            headers=origin_headers(request, options.cors_hosts),
        )

    @router.post(f"/{controller.name}", name=f"{controller.name}:submit")
    async def submit(request: Request) -> JSONResponse:
        await authenticate(request.headers.get("Authorization"), options.authenticate)
        body = await read_json(request)
        result = await controller.submit(body)
        return to_response(result, request)

    @router.options(f"/{controller.name}", name=f"{controller.name}:preflight")
    async def preflight(request: Request) -> Response:
        headers = check_cors(request.headers.get("Origin"), options.cors_hosts)
        return Response(status_code=200, headers={**CORS_HEADERS, **headers})

    @router.post(f"/{controller.name}Retry", name=f"{controller.name}:retry")
    async def retry(request: Request) -> JSONResponse:
        await authenticate(request.headers.get("Authorization"), options.authenticate)
        scan = await controller.retry()
        logger.debug("Retry requested over HTTP", job=controller.name, **scan.model_dump())
        return to_response(HandlerResult(status=200, body={"status": "ok"}), request)

    @router.post(f"/{controller.name}Process", name=f"{controller.name}:process")
    async def process(request: Request) -> Response:
        await authenticate(request.headers.get("Authorization"), options.authenticate)
        message = await read_json(request)
        if message is None:
            raise ValidationError("Empty message")
        await controller.receive(message)
        return Response(status_code=204)

    return router
