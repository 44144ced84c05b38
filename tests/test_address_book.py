"""Tests for the SQLite user -> wallet address book."""

from __future__ import annotations

from pathlib import Path

import pytest

from custody_gateway.core.address_book import AddressBook
from custody_gateway.errors import ConflictError, NotFoundError


class TestSaveAndGet:
    def test_roundtrip(self, address_book: AddressBook) -> None:
        saved = address_book.save("user-1", "wallet-1")
        fetched = address_book.get("user-1")
        assert fetched == saved
        assert fetched.cached_address is None

    def test_missing_user(self, address_book: AddressBook) -> None:
        assert address_book.get("nobody") is None

    def test_require_missing(self, address_book: AddressBook) -> None:
        with pytest.raises(NotFoundError, match="Wallet not found for this user"):
            address_book.require("nobody")

    def test_one_wallet_per_user(self, address_book: AddressBook) -> None:
        address_book.save("user-1", "wallet-1")
        with pytest.raises(ConflictError):
            address_book.save("user-1", "wallet-2")
        assert address_book.require("user-1").wallet_id == "wallet-1"

    def test_wallet_not_shared(self, address_book: AddressBook) -> None:
        address_book.save("user-1", "wallet-1")
        with pytest.raises(ConflictError):
            address_book.save("user-2", "wallet-1")
        assert address_book.get("user-2") is None


class TestUpdateAddress:
    def test_caches_address(self, address_book: AddressBook) -> None:
        address_book.save("user-1", "wallet-1")
        updated = address_book.update_address("user-1", "0xabc")
        assert updated.cached_address == "0xabc"
        assert updated.wallet_id == "wallet-1"
        assert address_book.require("user-1").cached_address == "0xabc"

    def test_unknown_user(self, address_book: AddressBook) -> None:
        with pytest.raises(NotFoundError):
            address_book.update_address("nobody", "0xabc")


class TestPersistence:
    def test_survives_reopen(self, tmp_path: Path) -> None:
        db = tmp_path / "nested" / "book.db"
        book = AddressBook(db)
        book.save("user-1", "wallet-1", "0xabc")
        book.close()

        reopened = AddressBook(db)
        try:
            mapping = reopened.require("user-1")
            assert mapping.wallet_id == "wallet-1"
            assert mapping.cached_address == "0xabc"
        finally:
            reopened.close()

    def test_ping(self, address_book: AddressBook) -> None:
        assert address_book.ping() is True

    def test_ping_after_close(self) -> None:
        book = AddressBook(":memory:")
        book.close()
        assert book.ping() is False
