"""
bridge_auth.py — Bearer token gatekeeping for protected endpoints.

Extracts the bearer token from the Authorization header, verifies it as one
of our own access tokens, and enforces the scopes a protected endpoint
requires. Failures follow RFC 6750: 401 ``invalid_token`` or 403
``insufficient_scope`` with a ``WWW-Authenticate`` challenge.

The verified identity is attached to ``request.state.auth`` and to the
``current_auth`` context variable for the duration of the handler.
"""

import functools
import logging
from contextvars import ContextVar
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Iterable

from starlette.requests import Request
from starlette.responses import JSONResponse, Response

from bridge_jwt import JWTVerifier, TokenVerificationError

logger = logging.getLogger("idbridge-auth")


@dataclass(frozen=True)
class AuthContext:
    token: str
    claims: dict[str, Any]
    subject: str
    scopes: list[str]
    client_id: str | None


current_auth: ContextVar[AuthContext | None] = ContextVar("current_auth", default=None)


class BearerAuthError(Exception):
    def __init__(self, error: str, description: str, status_code: int = 401,
                 required_scopes: Iterable[str] = ()):
        super().__init__(description)
        self.error = error
        self.description = description
        self.status_code = status_code
        self.required_scopes = list(required_scopes)

    def www_authenticate(self, resource_metadata_url: str | None = None) -> str:
        parts = [f'error="{self.error}"', f'error_description="{self.description}"']
        if self.required_scopes:
            parts.append(f'scope="{" ".join(self.required_scopes)}"')
        if resource_metadata_url:
            parts.append(f'resource_metadata="{resource_metadata_url}"')
        return "Bearer " + ", ".join(parts)

    def to_response(self, resource_metadata_url: str | None = None) -> JSONResponse:
        return JSONResponse(
            {"error": self.error, "error_description": self.description},
            status_code=self.status_code,
            headers={"WWW-Authenticate": self.www_authenticate(resource_metadata_url)},
        )


def authenticate(authorization: str | None, verifier: JWTVerifier,
                 required_scopes: Iterable[str] = ()) -> AuthContext:
    """Verify a bearer Authorization header and check required scopes."""
    required = list(required_scopes)

    if not authorization or not authorization.startswith("Bearer "):
        raise BearerAuthError("invalid_token", "Missing or invalid Authorization header")

    token = authorization[7:].strip()
    try:
        verified = verifier.verify(token)
    except TokenVerificationError as e:
        logger.info("bearer rejected: %s", e)
        raise BearerAuthError("invalid_token", str(e)) from e

    if required:
        missing = [s for s in required if s not in verified.scopes]
        if missing:
            raise BearerAuthError(
                "insufficient_scope",
                f"Token is missing required scope(s): {' '.join(missing)}",
                status_code=403,
                required_scopes=required,
            )

    return AuthContext(
        token=verified.token,
        claims=verified.claims,
        subject=verified.subject,
        scopes=verified.scopes,
        client_id=verified.client_id,
    )


Endpoint = Callable[[Request], Awaitable[Response]]


def requires_scopes(verifier: JWTVerifier, scopes: Iterable[str] = (),
                    resource_metadata_url: str | None = None) -> Callable[[Endpoint], Endpoint]:
    """Decorate a Starlette endpoint so it only runs for authorized bearers."""
    required = list(scopes)

    def decorator(endpoint: Endpoint) -> Endpoint:
        @functools.wraps(endpoint)
        async def wrapper(request: Request) -> Response:
            try:
                auth = authenticate(request.headers.get("authorization"), verifier, required)
            except BearerAuthError as e:
                return e.to_response(resource_metadata_url)

            request.state.auth = auth
            reset = current_auth.set(auth)
            try:
                return await endpoint(request)
            finally:
                current_auth.reset(reset)

        return wrapper

    return decorator
