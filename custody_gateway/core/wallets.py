"""Wallet provisioning at signup and wallet state views for a user."""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING

import structlog

from custody_gateway.api.metrics import WALLET_POLLS, WALLETS_PROVISIONED
from custody_gateway.chain.transaction import format_units
from custody_gateway.clients.custody import WalletStatus
from custody_gateway.errors import GatewayError

if TYPE_CHECKING:
    from custody_gateway.chain.client import ChainClient
    from custody_gateway.clients.custody import CustodyClient, RemoteWallet
    from custody_gateway.core.address_book import AddressBook

log = structlog.get_logger()


@dataclass(frozen=True)
class Balance:
    wei: int

    @property
    def eth(self) -> str:
        return format_units(self.wei)


@dataclass(frozen=True)
class WalletView:
    wallet: RemoteWallet
    balance: Balance | None


class WalletService:
    """Binds the address book, the custody client and the chain client per user."""

    def __init__(
        self,
        address_book: AddressBook,
        custody: CustodyClient,
        chain: ChainClient,
        poll_attempts: int = 30,
        poll_interval: float = 1.0,
    ) -> None:
        self._book = address_book
        self._custody = custody
        self._chain = chain
        self._poll_attempts = poll_attempts
        self._poll_interval = poll_interval

    async def provision(self, user_id: str) -> RemoteWallet:
        """Create the user's remote wallet, then persist the mapping.

        Not transactional across providers: a failure here leaves the
        identity in place, and a failed mapping insert after a successful
        create leaves the remote wallet reachable only at the provider.
        """
        wallet = await self._custody.create_wallet(user_id)
        try:
            self._book.save(user_id, wallet.id, wallet.address if wallet.is_ready else None)
        except GatewayError:
            log.error("wallet_mapping_orphaned", user_id=user_id, wallet_id=wallet.id)
            raise
        WALLETS_PROVISIONED.inc()
        return wallet

    def _remember_address(self, user_id: str, cached: str | None, wallet: RemoteWallet) -> None:
        if wallet.is_ready and wallet.address != cached:
            self._book.update_address(user_id, wallet.address)  # type: ignore[arg-type]

    async def get_status(self, user_id: str) -> RemoteWallet:
        """Wallet state without any chain read."""
        mapping = self._book.require(user_id)
        wallet = await self._custody.get_wallet(mapping.wallet_id)
        self._remember_address(user_id, mapping.cached_address, wallet)
        return wallet

    async def get_wallet(self, user_id: str) -> WalletView:
        """Wallet state plus its balance once the wallet is ready."""
        mapping = self._book.require(user_id)
        wallet = await self._custody.get_wallet(mapping.wallet_id)
        self._remember_address(user_id, mapping.cached_address, wallet)
        balance = None
        if wallet.is_ready:
            balance = Balance(wei=await self._chain.get_balance(wallet.address))  # type: ignore[arg-type]
        return WalletView(wallet=wallet, balance=balance)

    async def watch_until_ready(self, user_id: str, wallet_id: str) -> RemoteWallet | None:
        """Poll a freshly created wallet and cache its address once ready.

        Runs after the signup response has been sent, so failures are logged
        and swallowed here rather than raised.
        """
        try:
            wallet = await self._custody.poll_until_ready(
                wallet_id, max_attempts=self._poll_attempts, interval=self._poll_interval
            )
            if wallet.status == WalletStatus.READY and wallet.address:
                self._book.update_address(user_id, wallet.address)
            return wallet
        except GatewayError as e:
            if e.kind != "Timeout":
                WALLET_POLLS.labels(outcome="error").inc()
            log.warning("wallet_watch_failed", user_id=user_id, wallet_id=wallet_id, err=e.message)
            return None
