"""Transfer orchestration: build, sign remotely, verify, broadcast.

``send`` turns ``(user, to, amount)`` into a broadcast transaction hash:

1. resolve the user's wallet id from the address book;
2. require the custody wallet to be ready (before any chain call);
3. build the unsigned EIP-1559 transfer from the pending nonce and either
   the caller's gas overrides or the live fee estimate;
4. have the custody provider sign the digest of the canonical encoding;
5. attach the signature to the orchestrator's own copy of the fields and
   check it recovers to the wallet address;
6. broadcast exactly once.

Sends for the same wallet are serialized with a per-wallet asyncio lock
held from the nonce read through broadcast.
"""

from __future__ import annotations

import asyncio
import contextlib
import time
from collections.abc import AsyncIterator
from dataclasses import dataclass
from typing import TYPE_CHECKING

import structlog

from custody_gateway.api.metrics import TRANSFERS
from custody_gateway.chain.transaction import (
    Signature,
    SignedTransfer,
    UnsignedTransfer,
    format_units,
    normalize_address,
    parse_amount,
    parse_uint,
)
from custody_gateway.errors import (
    BadRequestError,
    GatewayError,
    UpstreamError,
    WalletNotReadyError,
)

if TYPE_CHECKING:
    from custody_gateway.chain.client import ChainClient
    from custody_gateway.clients.custody import CustodyClient
    from custody_gateway.core.address_book import AddressBook

log = structlog.get_logger()

MIN_GAS_LIMIT = 21000


@dataclass(frozen=True)
class GasOverrides:
    gas_limit: int | None = None
    max_fee_per_gas: int | None = None
    max_priority_fee_per_gas: int | None = None

    @classmethod
    def parse(
        cls,
        gas_limit: str | int | None = None,
        max_fee_per_gas: str | int | None = None,
        max_priority_fee_per_gas: str | int | None = None,
    ) -> GasOverrides:
        overrides = cls(
            gas_limit=parse_uint(gas_limit, "gasLimit"),
            max_fee_per_gas=parse_uint(max_fee_per_gas, "maxFeePerGas"),
            max_priority_fee_per_gas=parse_uint(max_priority_fee_per_gas, "maxPriorityFeePerGas"),
        )
        if overrides.gas_limit is not None and overrides.gas_limit < MIN_GAS_LIMIT:
            raise BadRequestError(f"'gasLimit' must be at least {MIN_GAS_LIMIT}")
        if overrides.max_fee_per_gas == 0:
            raise BadRequestError("'maxFeePerGas' must be greater than zero")
        if (
            overrides.max_fee_per_gas is not None
            and overrides.max_priority_fee_per_gas is not None
            and overrides.max_priority_fee_per_gas > overrides.max_fee_per_gas
        ):
            raise BadRequestError("'maxPriorityFeePerGas' cannot exceed 'maxFeePerGas'")
        return overrides


@dataclass(frozen=True)
class TransferReceipt:
    transaction_hash: str
    from_address: str
    to: str
    value_wei: int
    nonce: int
    status: str = "pending"

    @property
    def value(self) -> str:
        return format_units(self.value_wei)


class TransferOrchestrator:
    """Composes the address book, custody signer and chain client into ``send``."""

    def __init__(
        self,
        address_book: AddressBook,
        custody: CustodyClient,
        chain: ChainClient,
        chain_id: int,
        default_gas_limit: int = MIN_GAS_LIMIT,
    ) -> None:
        self._book = address_book
        self._custody = custody
        self._chain = chain
        self._chain_id = chain_id
        self._default_gas_limit = default_gas_limit
        self._wallet_locks: dict[str, asyncio.Lock] = {}
        self._lock_holders: dict[str, int] = {}

    @contextlib.asynccontextmanager
    async def _serialized(self, wallet_id: str) -> AsyncIterator[None]:
        """Hold the wallet's lock; drop it once no send holds or awaits it."""
        lock = self._wallet_locks.get(wallet_id)
        if lock is None:
            lock = self._wallet_locks[wallet_id] = asyncio.Lock()
        self._lock_holders[wallet_id] = self._lock_holders.get(wallet_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._lock_holders[wallet_id] -= 1
            if self._lock_holders[wallet_id] == 0:
                del self._lock_holders[wallet_id]
                del self._wallet_locks[wallet_id]

    async def send(
        self,
        user_id: str,
        to: str,
        amount: str,
        overrides: GasOverrides | None = None,
    ) -> TransferReceipt:
        """Send ``amount`` (decimal ether string) from the user's wallet to ``to``."""
        to_address = normalize_address(to, "to")
        value = parse_amount(amount)
        overrides = overrides or GasOverrides()

        mapping = self._book.require(user_id)
        wallet = await self._custody.get_wallet(mapping.wallet_id)
        if not wallet.is_ready:
            TRANSFERS.labels(result="rejected").inc()
            raise WalletNotReadyError(wallet.id)
        try:
            from_address = normalize_address(wallet.address, "from")  # type: ignore[arg-type]
        except BadRequestError as e:
            raise UpstreamError("custody", f"wallet {wallet.id} has a malformed address") from e

        start = time.perf_counter()
        async with self._serialized(wallet.id):
            try:
                transfer = await self._build(from_address, to_address, value, overrides)
                signed = await self._sign(wallet.id, transfer)
                tx_hash = await self._chain.broadcast(signed.serialize())
            except GatewayError as e:
                TRANSFERS.labels(result="failed").inc()
                log.warning(
                    "transfer_failed",
                    wallet_id=wallet.id,
                    kind=e.kind,
                    err=e.message,
                )
                raise

        if tx_hash.lower() != signed.tx_hash:
            log.warning(
                "broadcast_hash_mismatch",
                wallet_id=wallet.id,
                node_hash=tx_hash,
                local_hash=signed.tx_hash,
            )
        TRANSFERS.labels(result="broadcast").inc()
        log.info(
            "transfer_broadcast",
            wallet_id=wallet.id,
            tx_hash=tx_hash,
            nonce=transfer.nonce,
            value_wei=value,
            time_ms=round((time.perf_counter() - start) * 1000, 1),
        )
        return TransferReceipt(
            transaction_hash=tx_hash,
            from_address=from_address,
            to=to_address,
            value_wei=value,
            nonce=transfer.nonce,
        )

    async def _build(
        self,
        from_address: str,
        to_address: str,
        value: int,
        overrides: GasOverrides,
    ) -> UnsignedTransfer:
        nonce = await self._chain.get_nonce(from_address)
        max_fee = overrides.max_fee_per_gas
        priority = overrides.max_priority_fee_per_gas
        if max_fee is None or priority is None:
            estimate = await self._chain.get_fee_estimate()
            if max_fee is None:
                max_fee = estimate.max_fee_per_gas
            if priority is None:
                priority = min(estimate.max_priority_fee_per_gas, max_fee)
        if priority > max_fee:
            raise BadRequestError("'maxPriorityFeePerGas' cannot exceed 'maxFeePerGas'")
        return UnsignedTransfer(
            from_address=from_address,
            to=to_address,
            value=value,
            nonce=nonce,
            gas_limit=overrides.gas_limit or self._default_gas_limit,
            max_fee_per_gas=max_fee,
            max_priority_fee_per_gas=priority,
            chain_id=self._chain_id,
        )

    async def _sign(self, wallet_id: str, transfer: UnsignedTransfer) -> SignedTransfer:
        digest = transfer.signing_digest()
        raw_signature = await self._custody.sign_raw(wallet_id, "0x" + digest.hex())
        try:
            signature = Signature.from_hex(raw_signature)
            signer = signature.recover_address(digest)
        except ValueError as e:
            raise UpstreamError("custody", f"sign_raw returned an unusable signature: {e}") from e
        if signer != transfer.from_address:
            raise UpstreamError(
                "custody",
                f"signature recovers to {signer}, expected wallet address {transfer.from_address}",
            )
        return transfer.with_signature(signature)
