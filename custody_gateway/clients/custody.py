"""Para wallet-custody API client.

Wallet keys are generated and held by the provider's MPC service; this
client only creates wallets, reads their state, polls until key generation
finishes and asks the provider to sign 32-byte digests. No private key
material ever passes through here.
"""

from __future__ import annotations

import asyncio
import enum
from dataclasses import dataclass
from typing import Any

import httpx
import structlog

from custody_gateway.api.metrics import UPSTREAM_CALLS, WALLET_POLLS
from custody_gateway.errors import (
    ConflictError,
    NotFoundError,
    PollTimeoutError,
    UpstreamError,
)

log = structlog.get_logger()


class WalletStatus(str, enum.Enum):
    CREATING = "creating"
    READY = "ready"


@dataclass(frozen=True)
class RemoteWallet:
    """Wallet state as reported by the custody provider."""

    id: str
    status: WalletStatus
    type: str = "EVM"
    address: str | None = None
    public_key: str | None = None
    created_at: str | None = None

    @property
    def is_ready(self) -> bool:
        return self.status == WalletStatus.READY and bool(self.address)

    @classmethod
    def from_api(cls, payload: dict[str, Any]) -> RemoteWallet:
        data = payload.get("wallet", payload)
        if not isinstance(data, dict) or not data.get("id"):
            raise UpstreamError("custody", "wallet response is missing an id")
        raw_status = str(data.get("status", "creating")).lower()
        try:
            status = WalletStatus(raw_status)
        except ValueError:
            raise UpstreamError("custody", f"unknown wallet status {raw_status!r}")
        return cls(
            id=str(data["id"]),
            status=status,
            type=data.get("type") or "EVM",
            address=data.get("address") or None,
            public_key=data.get("publicKey") or None,
            created_at=data.get("createdAt"),
        )


def _error_message(resp: httpx.Response) -> str:
    try:
        body = resp.json()
    except ValueError:
        return resp.text[:200] or f"HTTP {resp.status_code}"
    if isinstance(body, dict):
        return str(body.get("message") or body.get("error") or f"HTTP {resp.status_code}")
    return f"HTTP {resp.status_code}"


def _json_body(resp: httpx.Response, operation: str) -> dict[str, Any]:
    try:
        body = resp.json()
    except ValueError:
        raise UpstreamError("custody", f"{operation} returned a non-JSON body")
    if not isinstance(body, dict):
        raise UpstreamError("custody", f"{operation} returned an unexpected body")
    return body


class CustodyClient:
    """Async client for the Para REST API (``/v1/wallets``)."""

    def __init__(
        self,
        api_key: str,
        base_url: str = "https://api.getpara.com",
        timeout: float = 30.0,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._headers = {"X-API-Key": api_key, "Content-Type": "application/json"}
        self._client = http_client or httpx.AsyncClient(timeout=timeout)
        self._owns_client = http_client is None

    async def close(self) -> None:
        """Close the HTTP client if we own it."""
        if self._owns_client:
            await self._client.aclose()

    async def __aenter__(self) -> CustodyClient:
        return self

    async def __aexit__(self, *args: object) -> None:
        await self.close()

    async def _request(
        self,
        method: str,
        path: str,
        operation: str,
        json: dict[str, Any] | None = None,
    ) -> httpx.Response:
        try:
            resp = await self._client.request(
                method, f"{self._base_url}{path}", json=json, headers=self._headers
            )
        except httpx.RequestError as e:
            UPSTREAM_CALLS.labels(service="custody", outcome="error").inc()
            log.warning("custody_request_error", operation=operation, error=str(e))
            raise UpstreamError("custody", f"{operation} failed: {e}") from e
        UPSTREAM_CALLS.labels(
            service="custody",
            outcome="ok" if resp.status_code < 400 else "error",
        ).inc()
        return resp

    async def create_wallet(self, user_id: str) -> RemoteWallet:
        """Create the single EVM wallet keyed by ``user_id`` (custom identifier)."""
        resp = await self._request(
            "POST",
            "/v1/wallets",
            "create_wallet",
            json={
                "type": "EVM",
                "userIdentifier": user_id,
                "userIdentifierType": "CUSTOM_ID",
            },
        )
        if resp.status_code == 409:
            raise ConflictError(
                f"Wallet already exists for user {user_id}. "
                "One wallet per (type, scheme, userIdentifier) is allowed."
            )
        if resp.is_error:
            raise UpstreamError("custody", f"create_wallet failed: {_error_message(resp)}")
        wallet = RemoteWallet.from_api(_json_body(resp, "create_wallet"))
        log.info("wallet_created", wallet_id=wallet.id, status=wallet.status.value)
        return wallet

    async def get_wallet(self, wallet_id: str) -> RemoteWallet:
        resp = await self._request("GET", f"/v1/wallets/{wallet_id}", "get_wallet")
        if resp.status_code == 404:
            raise NotFoundError(f"Wallet {wallet_id} not found at custody provider")
        if resp.is_error:
            raise UpstreamError(
                "custody", f"get_wallet {wallet_id} failed: {_error_message(resp)}"
            )
        return RemoteWallet.from_api(_json_body(resp, "get_wallet"))

    async def poll_until_ready(
        self,
        wallet_id: str,
        max_attempts: int = 30,
        interval: float = 1.0,
    ) -> RemoteWallet:
        """Fetch the wallet up to ``max_attempts`` times until it is ready.

        Sleeps ``interval`` seconds between attempts (never after the last
        one), so the call is bounded by roughly ``max_attempts * interval``
        plus request latency. Raises PollTimeoutError when attempts run out.
        """
        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        for attempt in range(1, max_attempts + 1):
            wallet = await self.get_wallet(wallet_id)
            if wallet.status == WalletStatus.READY:
                WALLET_POLLS.labels(outcome="ready").inc()
                log.info("wallet_ready", wallet_id=wallet_id, attempts=attempt)
                return wallet
            if attempt < max_attempts:
                await asyncio.sleep(interval)
        WALLET_POLLS.labels(outcome="timeout").inc()
        log.warning("wallet_poll_timeout", wallet_id=wallet_id, attempts=max_attempts)
        raise PollTimeoutError(wallet_id, max_attempts)

    async def sign_raw(self, wallet_id: str, data: str) -> str:
        """Ask the MPC service to sign ``data`` (hex). Returns the signature hex."""
        hex_data = data if data.startswith("0x") else f"0x{data}"
        resp = await self._request(
            "POST",
            f"/v1/wallets/{wallet_id}/sign-raw",
            "sign_raw",
            json={"data": hex_data},
        )
        if resp.is_error:
            raise UpstreamError("custody", f"sign_raw failed: {_error_message(resp)}")
        signature = _json_body(resp, "sign_raw").get("signature")
        if not isinstance(signature, str) or not signature:
            raise UpstreamError("custody", "sign_raw response has no signature")
        return signature
