"""Supabase Auth (GoTrue) client: signup, password login and token checks.

Credential storage and JWT validation stay with the identity provider;
bearer tokens are verified by asking the provider who they belong to.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

import httpx
import structlog

from custody_gateway.api.metrics import UPSTREAM_CALLS
from custody_gateway.errors import BadRequestError, UnauthorizedError, UpstreamError

log = structlog.get_logger()


@dataclass(frozen=True)
class AuthenticatedUser:
    user_id: str
    email: str


@dataclass(frozen=True)
class AuthSession:
    user: AuthenticatedUser
    access_token: str
    token_type: str = "Bearer"

    def to_dict(self) -> dict[str, Any]:
        return {
            "user": {"id": self.user.user_id, "email": self.user.email},
            "session": {"access_token": self.access_token, "token_type": self.token_type},
        }


def _provider_message(resp: httpx.Response) -> str:
    try:
        body = resp.json()
    except ValueError:
        return f"HTTP {resp.status_code}"
    if not isinstance(body, dict):
        return f"HTTP {resp.status_code}"
    for key in ("error_description", "msg", "message", "error"):
        if body.get(key):
            return str(body[key])
    return f"HTTP {resp.status_code}"


def _user_from(data: Any) -> AuthenticatedUser | None:
    if not isinstance(data, dict) or not data.get("id"):
        return None
    return AuthenticatedUser(user_id=str(data["id"]), email=str(data.get("email") or ""))


class IdentityClient:
    """Async client for the Supabase Auth REST API (``/auth/v1``)."""

    def __init__(
        self,
        base_url: str,
        anon_key: str,
        timeout: float = 30.0,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/") + "/auth/v1"
        self._anon_key = anon_key
        self._client = http_client or httpx.AsyncClient(timeout=timeout)
        self._owns_client = http_client is None

    async def close(self) -> None:
        """Close the HTTP client if we own it."""
        if self._owns_client:
            await self._client.aclose()

    async def __aenter__(self) -> IdentityClient:
        return self

    async def __aexit__(self, *args: object) -> None:
        await self.close()

    def _headers(self, bearer: str | None = None) -> dict[str, str]:
        return {
            "apikey": self._anon_key,
            "Authorization": f"Bearer {bearer or self._anon_key}",
            "Content-Type": "application/json",
        }

    async def _send(
        self,
        method: str,
        path: str,
        operation: str,
        *,
        json: dict[str, Any] | None = None,
        params: dict[str, str] | None = None,
        bearer: str | None = None,
    ) -> httpx.Response:
        try:
            resp = await self._client.request(
                method,
                f"{self._base_url}{path}",
                json=json,
                params=params,
                headers=self._headers(bearer),
            )
        except httpx.RequestError as e:
            UPSTREAM_CALLS.labels(service="identity", outcome="error").inc()
            log.warning("identity_request_error", operation=operation, error=str(e))
            raise UpstreamError("identity", f"{operation} failed: {e}") from e
        if resp.status_code >= 500:
            UPSTREAM_CALLS.labels(service="identity", outcome="error").inc()
            raise UpstreamError("identity", f"{operation} failed: {_provider_message(resp)}")
        UPSTREAM_CALLS.labels(service="identity", outcome="ok").inc()
        return resp

    @staticmethod
    def _session_from(resp: httpx.Response, operation: str) -> AuthSession:
        try:
            body = resp.json()
        except ValueError:
            raise UpstreamError("identity", f"{operation} returned a non-JSON body")
        user = _user_from(body.get("user")) if isinstance(body, dict) else None
        token = body.get("access_token") if isinstance(body, dict) else None
        if user is None or not token:
            raise UpstreamError("identity", f"{operation} returned no user or session")
        return AuthSession(
            user=user,
            access_token=str(token),
            token_type="Bearer",
        )

    async def signup(self, email: str, password: str) -> AuthSession:
        """Create an identity and return its first session."""
        resp = await self._send(
            "POST", "/signup", "signup", json={"email": email, "password": password}
        )
        if resp.is_error:
            raise BadRequestError(f"Signup rejected: {_provider_message(resp)}")
        session = self._session_from(resp, "signup")
        log.info("identity_created", user_id=session.user.user_id)
        return session

    async def login(self, email: str, password: str) -> AuthSession:
        resp = await self._send(
            "POST",
            "/token",
            "login",
            json={"email": email, "password": password},
            params={"grant_type": "password"},
        )
        if resp.is_error:
            log.info("login_rejected", status=resp.status_code)
            raise UnauthorizedError("Invalid email or password")
        return self._session_from(resp, "login")

    async def verify_token(self, token: str) -> AuthenticatedUser:
        """Resolve a bearer token to its user, or raise UnauthorizedError."""
        resp = await self._send("GET", "/user", "verify_token", bearer=token)
        if resp.is_error:
            raise UnauthorizedError("Invalid or expired token")
        try:
            user = _user_from(resp.json())
        except ValueError:
            user = None
        if user is None:
            raise UnauthorizedError("Invalid or expired token")
        return user
