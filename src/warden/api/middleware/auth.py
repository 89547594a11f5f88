"""Bearer API key check for the ingestion and case endpoints."""

import secrets
from collections.abc import Callable

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware

from warden.api.middleware.errors import error_response
from warden.api.schemas.errors import ErrorCode
from warden.config.settings import Settings, get_settings

# Health checks, scrapes and API docs are open.
SKIP_AUTH_PATHS = frozenset({"/health", "/metrics", "/openapi.json"})
SKIP_AUTH_PREFIXES = ("/docs", "/redoc")


class AuthenticationMiddleware(BaseHTTPMiddleware):
    """Rejects requests without ``Authorization: Bearer <API_SECRET_KEY>``.

    Sets ``request.state.authenticated``. With no key configured, any
    non-empty token passes in DEBUG and nothing passes otherwise.
    """

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        path = request.url.path
        if path in SKIP_AUTH_PATHS or path.startswith(SKIP_AUTH_PREFIXES):
            request.state.authenticated = False
            return await call_next(request)

        scheme, _, token = request.headers.get("Authorization", "").partition(" ")
        token = token.strip()
        if scheme.lower() != "bearer" or not token:
            return self._reject(request, "Expected 'Authorization: Bearer <api key>'")
        if not self._accepts(token, self._settings(request)):
            return self._reject(request, "Invalid API key")

        request.state.authenticated = True
        return await call_next(request)

    def _settings(self, request: Request) -> Settings:
        settings = getattr(request.app.state, "settings", None)
        return settings if settings is not None else get_settings()

    def _accepts(self, token: str, settings: Settings) -> bool:
        if settings.API_SECRET_KEY is None:
            return settings.DEBUG
        return secrets.compare_digest(
            token.encode(), settings.API_SECRET_KEY.get_secret_value().encode()
        )

    def _reject(self, request: Request, message: str) -> Response:
        response = error_response(request, 401, ErrorCode.UNAUTHORIZED.value, message)
        response.headers["WWW-Authenticate"] = "Bearer"
        return response
