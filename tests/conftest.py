"""Shared fixtures: provider stubs, a mock chain client and a wired app."""

from __future__ import annotations

import json
import os
import uuid
from unittest.mock import AsyncMock, MagicMock

# Tests must not depend on a developer .env file.
os.environ.setdefault("SUPABASE_URL", "https://identity.test")
os.environ.setdefault("SUPABASE_ANON_KEY", "anon-key")
os.environ.setdefault("PARA_API_KEY", "para-key")
os.environ.setdefault("SEPOLIA_RPC_URL", "https://rpc.test")
os.environ["APP_ENV"] = "test"

import httpx
import pytest
from eth_keys import keys
from eth_utils import keccak
from fastapi.testclient import TestClient

from custody_gateway.api.server import create_app
from custody_gateway.chain.client import FeeEstimate
from custody_gateway.clients.custody import CustodyClient
from custody_gateway.clients.identity import IdentityClient
from custody_gateway.core.address_book import AddressBook
from custody_gateway.core.transfers import TransferOrchestrator
from custody_gateway.core.wallets import WalletService

CHAIN_ID = 11155111
SIGNER_KEY = keys.PrivateKey(b"\x11" * 32)
WALLET_ADDRESS = SIGNER_KEY.public_key.to_checksum_address()
RECIPIENT = "0x8ba1f109551bd432803012645ac136ddd64dba72"


class CustodyStub:
    """In-memory stand-in for the Para wallets API.

    Wallets start ``creating`` and flip to ``ready`` on the
    ``ready_after``-th GET (0 means ready at creation). sign-raw signs the
    submitted digest with ``key``.
    """

    def __init__(self, ready_after: int = 0, key: keys.PrivateKey = SIGNER_KEY) -> None:
        self.ready_after = ready_after
        self.key = key
        self.wallets: dict[str, dict] = {}
        self.gets: dict[str, int] = {}
        self.requests: list[httpx.Request] = []
        self.signed_payloads: list[str] = []
        self.signature_override: str | None = None
        self.outage = False

    def add_wallet(self, wallet_id: str, user_id: str, ready: bool = True) -> None:
        self.wallets[wallet_id] = self._wallet(wallet_id, user_id, ready)

    def _wallet(self, wallet_id: str, user_id: str, ready: bool) -> dict:
        return {
            "id": wallet_id,
            "type": "EVM",
            "scheme": "DKLS",
            "status": "ready" if ready else "creating",
            "address": self.key.public_key.to_checksum_address() if ready else None,
            "publicKey": self.key.public_key.to_hex() if ready else None,
            "userIdentifier": user_id,
            "userIdentifierType": "CUSTOM_ID",
            "createdAt": "2026-01-01T00:00:00Z",
        }

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.outage:
            return httpx.Response(502, json={"message": "custody unavailable"})
        if request.headers.get("x-api-key") != "para-key":
            return httpx.Response(401, json={"message": "bad api key"})
        parts = request.url.path.strip("/").split("/")  # v1, wallets, [id], [sign-raw]
        if request.method == "POST" and parts == ["v1", "wallets"]:
            body = json.loads(request.content)
            user_id = body["userIdentifier"]
            if any(w["userIdentifier"] == user_id for w in self.wallets.values()):
                return httpx.Response(409, json={"message": "wallet exists"})
            wallet_id = f"wallet-{len(self.wallets) + 1}"
            self.wallets[wallet_id] = self._wallet(wallet_id, user_id, self.ready_after == 0)
            return httpx.Response(201, json={"wallet": self.wallets[wallet_id]})
        if len(parts) < 3 or parts[2] not in self.wallets:
            return httpx.Response(404, json={"message": "wallet not found"})
        wallet = self.wallets[parts[2]]
        if request.method == "GET" and len(parts) == 3:
            self.gets[wallet["id"]] = self.gets.get(wallet["id"], 0) + 1
            if wallet["status"] == "creating" and self.gets[wallet["id"]] >= self.ready_after:
                wallet.update(self._wallet(wallet["id"], wallet["userIdentifier"], True))
            return httpx.Response(200, json=wallet)
        if request.method == "POST" and parts[3:] == ["sign-raw"]:
            data = json.loads(request.content)["data"]
            self.signed_payloads.append(data)
            if self.signature_override is not None:
                return httpx.Response(200, json={"signature": self.signature_override})
            sig = self.key.sign_msg_hash(bytes.fromhex(data[2:]))
            return httpx.Response(200, json={"signature": sig.to_bytes().hex()})
        return httpx.Response(405, json={"message": "unsupported"})

    def client(self) -> CustodyClient:
        return CustodyClient(
            api_key="para-key",
            base_url="https://para.test",
            http_client=httpx.AsyncClient(transport=httpx.MockTransport(self.handler)),
        )


class IdentityStub:
    """In-memory stand-in for Supabase Auth (``/auth/v1``)."""

    def __init__(self) -> None:
        self.users: dict[str, dict] = {}  # email -> {id, email, password}
        self.tokens: dict[str, str] = {}  # token -> email

    def add_user(self, email: str, password: str = "pw") -> tuple[str, str]:
        user_id = str(uuid.uuid4())
        token = f"token-{user_id}"
        self.users[email] = {"id": user_id, "email": email, "password": password}
        self.tokens[token] = email
        return user_id, token

    def _session(self, email: str) -> dict:
        user = self.users[email]
        token = next(t for t, e in self.tokens.items() if e == email)
        return {
            "access_token": token,
            "token_type": "bearer",
            "user": {"id": user["id"], "email": email},
        }

    def handler(self, request: httpx.Request) -> httpx.Response:
        if request.headers.get("apikey") != "anon-key":
            return httpx.Response(401, json={"msg": "No API key found in request"})
        path = request.url.path
        if request.method == "POST" and path == "/auth/v1/signup":
            body = json.loads(request.content)
            if body["email"] in self.users:
                return httpx.Response(422, json={"msg": "User already registered"})
            self.add_user(body["email"], body["password"])
            return httpx.Response(200, json=self._session(body["email"]))
        if request.method == "POST" and path == "/auth/v1/token":
            body = json.loads(request.content)
            user = self.users.get(body["email"])
            if (
                request.url.params.get("grant_type") != "password"
                or user is None
                or user["password"] != body["password"]
            ):
                return httpx.Response(
                    400,
                    json={"error": "invalid_grant", "error_description": "Invalid login credentials"},
                )
            return httpx.Response(200, json=self._session(body["email"]))
        if request.method == "GET" and path == "/auth/v1/user":
            token = request.headers.get("authorization", "").removeprefix("Bearer ")
            email = self.tokens.get(token)
            if email is None:
                return httpx.Response(401, json={"msg": "invalid JWT"})
            return httpx.Response(200, json={"id": self.users[email]["id"], "email": email})
        return httpx.Response(404, json={"msg": "not found"})

    def client(self) -> IdentityClient:
        return IdentityClient(
            base_url="https://identity.test",
            anon_key="anon-key",
            http_client=httpx.AsyncClient(transport=httpx.MockTransport(self.handler)),
        )


def make_chain(nonce: int = 7, balance: int = 10**18) -> MagicMock:
    """Mock ChainClient; ``broadcast`` returns the keccak hash of the raw bytes."""
    chain = MagicMock()
    chain.chain_id = CHAIN_ID
    chain.get_nonce = AsyncMock(return_value=nonce)
    chain.get_balance = AsyncMock(return_value=balance)
    chain.get_fee_estimate = AsyncMock(
        return_value=FeeEstimate(max_fee_per_gas=40 * 10**9, max_priority_fee_per_gas=2 * 10**9)
    )
    chain.broadcast = AsyncMock(side_effect=lambda raw: "0x" + keccak(raw).hex())
    chain.get_transfer_status = AsyncMock(return_value=None)
    chain.is_known_transaction = AsyncMock(return_value=False)
    chain.is_connected = AsyncMock(return_value=True)
    return chain


@pytest.fixture
def custody_stub() -> CustodyStub:
    return CustodyStub()


@pytest.fixture
def identity_stub() -> IdentityStub:
    return IdentityStub()


@pytest.fixture
def chain() -> MagicMock:
    return make_chain()


@pytest.fixture
def address_book() -> AddressBook:
    book = AddressBook()
    yield book
    book.close()


@pytest.fixture
def gateway(
    custody_stub: CustodyStub,
    identity_stub: IdentityStub,
    chain: MagicMock,
    address_book: AddressBook,
) -> TestClient:
    """The full app wired to stubs; polling is instant and bounded."""
    custody = custody_stub.client()
    wallets = WalletService(address_book, custody, chain, poll_attempts=3, poll_interval=0)
    transfers = TransferOrchestrator(address_book, custody, chain, chain_id=CHAIN_ID)
    app = create_app(
        identity=identity_stub.client(),
        wallets=wallets,
        transfers=transfers,
        chain=chain,
        address_book=address_book,
    )
    return TestClient(app)
