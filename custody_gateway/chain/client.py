"""Read/broadcast layer over the chain's JSON-RPC endpoint.

Stateless apart from the underlying ``AsyncWeb3`` provider session: balance,
pending nonce, EIP-1559 fee estimate, receipt lookup and raw-transaction
broadcast. Every RPC failure surfaces as ``UpstreamError("chain", ...)``.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable
from dataclasses import dataclass
from typing import Any, TypeVar

import structlog
from web3 import AsyncWeb3
from web3.exceptions import TransactionNotFound

from custody_gateway.api.metrics import UPSTREAM_CALLS
from custody_gateway.errors import UpstreamError

log = structlog.get_logger()

T = TypeVar("T")


@dataclass(frozen=True)
class FeeEstimate:
    max_fee_per_gas: int
    max_priority_fee_per_gas: int


@dataclass(frozen=True)
class TransferStatus:
    """Mined outcome of a transaction, assembled from its receipt."""

    transaction_hash: str
    block_number: int
    block_hash: str
    status: str  # "success" | "failed"
    gas_used: int
    gas_price: int | None
    from_address: str
    to: str | None
    value: int


class ChainClient:
    """Async JSON-RPC client for balance, nonce, fee, receipt and broadcast calls."""

    def __init__(self, rpc_url: str, chain_id: int, timeout: int = 30) -> None:
        self._chain_id = chain_id
        self._w3 = AsyncWeb3(
            AsyncWeb3.AsyncHTTPProvider(
                rpc_url,
                request_kwargs={"timeout": timeout},
            )
        )

    @property
    def chain_id(self) -> int:
        return self._chain_id

    async def _call(self, operation: str, call: Awaitable[T]) -> T:
        try:
            result = await call
        except Exception as e:
            UPSTREAM_CALLS.labels(service="chain", outcome="error").inc()
            log.warning("rpc_call_failed", operation=operation, err=str(e), error_type=type(e).__name__)
            raise UpstreamError("chain", f"{operation} failed: {e}") from e
        UPSTREAM_CALLS.labels(service="chain", outcome="ok").inc()
        return result

    async def get_balance(self, address: str) -> int:
        """Balance in wei."""
        return int(await self._call("get_balance", self._w3.eth.get_balance(address)))

    async def get_nonce(self, address: str) -> int:
        """Next nonce for ``address``, counting transactions still in the mempool."""
        return int(
            await self._call(
                "get_transaction_count",
                self._w3.eth.get_transaction_count(address, "pending"),
            )
        )

    async def get_fee_estimate(self) -> FeeEstimate:
        """Live EIP-1559 fee estimate: ``maxFee = 2 * baseFee + priorityFee``."""
        block, priority = await self._call(
            "get_fee_data",
            asyncio.gather(self._w3.eth.get_block("latest"), self._w3.eth.max_priority_fee),
        )
        base_fee = block.get("baseFeePerGas")
        if base_fee is None:
            raise UpstreamError("chain", "latest block has no baseFeePerGas, EIP-1559 fees unavailable")
        priority = int(priority)
        return FeeEstimate(
            max_fee_per_gas=int(base_fee) * 2 + priority,
            max_priority_fee_per_gas=priority,
        )

    async def broadcast(self, raw_transaction: bytes) -> str:
        """Submit signed transaction bytes once. Returns the 0x-prefixed hash."""
        tx_hash = await self._call(
            "send_raw_transaction",
            self._w3.eth.send_raw_transaction(raw_transaction),
        )
        return AsyncWeb3.to_hex(tx_hash)

    async def get_transfer_status(self, tx_hash: str) -> TransferStatus | None:
        """Receipt-derived status, or None while the transaction is not mined."""
        try:
            receipt = await self._w3.eth.get_transaction_receipt(tx_hash)
        except TransactionNotFound:
            UPSTREAM_CALLS.labels(service="chain", outcome="ok").inc()
            return None
        except Exception as e:
            UPSTREAM_CALLS.labels(service="chain", outcome="error").inc()
            log.warning("rpc_call_failed", operation="get_transaction_receipt", err=str(e))
            raise UpstreamError("chain", f"get_transaction_receipt failed: {e}") from e
        UPSTREAM_CALLS.labels(service="chain", outcome="ok").inc()

        tx = await self._call("get_transaction", self._w3.eth.get_transaction(tx_hash))
        gas_price = receipt.get("effectiveGasPrice", tx.get("gasPrice"))
        return TransferStatus(
            transaction_hash=_hex(receipt["transactionHash"]),
            block_number=int(receipt["blockNumber"]),
            block_hash=_hex(receipt["blockHash"]),
            status="success" if receipt["status"] == 1 else "failed",
            gas_used=int(receipt["gasUsed"]),
            gas_price=int(gas_price) if gas_price is not None else None,
            from_address=receipt["from"],
            to=receipt.get("to"),
            value=int(tx.get("value", 0)),
        )

    async def is_known_transaction(self, tx_hash: str) -> bool:
        """Whether the node has the transaction at all (mined or pending)."""
        try:
            await self._w3.eth.get_transaction(tx_hash)
            return True
        except TransactionNotFound:
            return False
        except Exception as e:
            log.warning("rpc_call_failed", operation="get_transaction", err=str(e))
            raise UpstreamError("chain", f"get_transaction failed: {e}") from e

    async def is_connected(self) -> bool:
        try:
            await self._w3.eth.block_number
            return True
        except Exception as e:
            log.warning("rpc_connection_failed", err=str(e))
            return False

    async def close(self) -> None:
        """Close the underlying HTTP provider session."""
        provider = self._w3.provider
        disconnect = getattr(provider, "disconnect", None)
        if disconnect is None:
            return
        try:
            await asyncio.wait_for(disconnect(), timeout=5.0)
        except TimeoutError:
            log.warning("chain_client_close_timeout")
        except Exception as e:
            log.warning("chain_client_close_error", err=str(e))


def _hex(value: Any) -> str:
    if isinstance(value, str):
        return value
    return AsyncWeb3.to_hex(value)
