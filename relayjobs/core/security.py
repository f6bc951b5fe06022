import inspect
import secrets
from collections.abc import Awaitable, Callable
from urllib.parse import urlparse

from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware

from relayjobs.core.exceptions import ForbiddenError, UnauthorizedError

# Shared-secret string or a predicate receiving the presented token
Authenticator = str | Callable[[str], bool | Awaitable[bool]]

CORS_HEADERS = {
    "Access-Control-Allow-Methods": "GET,HEAD,POST,PUT",
    "Access-Control-Allow-Headers": (
        "Access-Control-Allow-Headers, Origin, Accept, X-Requested-With, "
        "Content-Type, Access-Control-Request-Method, Access-Control-Request-Headers, "
        "Authorization"
    ),
}


def extract_token(authorization: str | None) -> str | None:
    """Return the token from a ``Bearer <token>`` Authorization header."""
    if not authorization:
        return None
    scheme, _, credentials = authorization.partition(" ")
    if scheme.lower() != "bearer" or not credentials.strip():
        return None
    return credentials.strip()


async def authenticate(
    authorization: str | None, authenticator: Authenticator | None
) -> None:
    """
    Check a request's Authorization header.

    Behavior based on the authenticator:
    - None: authentication disabled
    - str: token must equal the shared secret
    - callable: token is passed to the predicate, which may be async

    Raises:
        UnauthorizedError: header missing or rejected
    """
    if authenticator is None:
        return

    token = extract_token(authorization)
    if token is None:
        raise UnauthorizedError()

    if isinstance(authenticator, str):
        if not secrets.compare_digest(token.encode(), authenticator.encode()):
            raise UnauthorizedError()
        return

    allowed = authenticator(token)
    if inspect.isawaitable(allowed):
        allowed = await allowed
    if not allowed:
        raise UnauthorizedError()


def check_cors(origin: str | None, cors_hosts: list[str]) -> dict[str, str]:
    """
    Resolve the CORS headers for a preflight request.

    Returns:
        Headers to add to the response (empty when no Origin was sent)

    Raises:
        ForbiddenError: the origin's host is not in the allow-list
    """
    if not origin:
        return {}

    host = urlparse(origin).hostname or origin
    if host not in cors_hosts:
        raise ForbiddenError(
            f"Cross origin requests not allowed from this host: {host}",
            code="cors",
        )

    return {"Access-Control-Allow-Origin": origin, "Vary": "Origin"}


class CORSHeadersMiddleware(BaseHTTPMiddleware):
    """Add the allowed methods and headers to every response."""

    async def dispatch(self, request: Request, call_next):
        response = await call_next(request)
        for header, value in CORS_HEADERS.items():
            response.headers.setdefault(header, value)
        return response
