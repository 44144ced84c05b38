"""EIP-1559 transfer construction, canonical encoding and input parsing.

The unsigned payload is ``0x02 || rlp([chainId, nonce, maxPriorityFeePerGas,
maxFeePerGas, gasLimit, to, value, data, accessList])``. Its keccak digest is
what the custody provider signs; the signed payload appends
``[yParity, r, s]`` to the same list.
"""

from __future__ import annotations

import re
from dataclasses import dataclass

import rlp
from eth_keys import keys
from eth_keys.exceptions import BadSignature, ValidationError
from eth_utils import keccak, to_checksum_address

from custody_gateway.errors import BadRequestError

EIP1559_TX_TYPE = 2
ETHER_DECIMALS = 18

_ADDRESS_RE = re.compile(r"0x[0-9a-fA-F]{40}")
_TX_HASH_RE = re.compile(r"0x[0-9a-fA-F]{64}")
_AMOUNT_RE = re.compile(r"(?P<whole>[0-9]*)(?:\.(?P<frac>[0-9]*))?")
_UINT_RE = re.compile(r"[0-9]+")


def normalize_address(value: str, field_name: str = "address") -> str:
    """Return the EIP-55 checksum form of ``value``.

    All-lowercase and all-uppercase hex are accepted as unchecksummed input;
    mixed case must already carry a valid checksum.
    """
    if not isinstance(value, str) or not _ADDRESS_RE.fullmatch(value):
        raise BadRequestError(f"Invalid Ethereum address for '{field_name}' field")
    checksummed = to_checksum_address(value)
    body = value[2:]
    if body != body.lower() and body != body.upper() and value != checksummed:
        raise BadRequestError(f"Bad address checksum for '{field_name}' field")
    return checksummed


def normalize_tx_hash(value: str) -> str:
    if not isinstance(value, str) or not _TX_HASH_RE.fullmatch(value):
        raise BadRequestError("Invalid transaction hash format")
    return value.lower()


def parse_amount(amount: str, decimals: int = ETHER_DECIMALS) -> int:
    """Convert a positive decimal string into integer base units, exactly.

    ``"0.001"`` -> ``1000000000000000``. Fractions finer than the unit are
    rejected rather than rounded.
    """
    if not isinstance(amount, str):
        raise BadRequestError("Amount must be a decimal string")
    match = _AMOUNT_RE.fullmatch(amount.strip())
    if match is None:
        raise BadRequestError(f"Invalid amount: {amount!r}")
    whole = match.group("whole") or ""
    frac = match.group("frac") or ""
    if not whole and not frac:
        raise BadRequestError(f"Invalid amount: {amount!r}")
    if len(frac.rstrip("0")) > decimals:
        raise BadRequestError(f"Amount has more than {decimals} decimal places: {amount!r}")
    frac = frac.rstrip("0").ljust(decimals, "0")
    value = int(whole or "0") * 10**decimals + int(frac or "0")
    if value <= 0:
        raise BadRequestError("Amount must be greater than zero")
    return value


def format_units(value: int, decimals: int = ETHER_DECIMALS) -> str:
    """Exact decimal rendering of an integer base-unit amount."""
    sign = "-" if value < 0 else ""
    whole, frac = divmod(abs(value), 10**decimals)
    frac_str = str(frac).rjust(decimals, "0").rstrip("0")
    return f"{sign}{whole}.{frac_str}" if frac_str else f"{sign}{whole}"


def parse_uint(value: str | int | None, field_name: str) -> int | None:
    """Parse an optional non-negative integer given as a decimal string."""
    if value is None or value == "":
        return None
    if isinstance(value, bool):
        raise BadRequestError(f"'{field_name}' must be a non-negative integer")
    if isinstance(value, int):
        parsed = value
    elif isinstance(value, str) and _UINT_RE.fullmatch(value.strip()):
        parsed = int(value.strip())
    else:
        raise BadRequestError(f"'{field_name}' must be a non-negative integer")
    if parsed < 0:
        raise BadRequestError(f"'{field_name}' must be a non-negative integer")
    return parsed


@dataclass(frozen=True)
class UnsignedTransfer:
    """A native-token EIP-1559 transfer built for one send request."""

    from_address: str
    to: str
    value: int
    nonce: int
    gas_limit: int
    max_fee_per_gas: int
    max_priority_fee_per_gas: int
    chain_id: int
    data: bytes = b""

    def _fields(self) -> list:
        return [
            self.chain_id,
            self.nonce,
            self.max_priority_fee_per_gas,
            self.max_fee_per_gas,
            self.gas_limit,
            bytes.fromhex(self.to[2:]),
            self.value,
            self.data,
            [],
        ]

    def serialize(self) -> bytes:
        """Canonical unsigned encoding (the bytes covered by the signature)."""
        return bytes([EIP1559_TX_TYPE]) + rlp.encode(self._fields())

    def signing_digest(self) -> bytes:
        return keccak(self.serialize())

    def with_signature(self, signature: Signature) -> SignedTransfer:
        return SignedTransfer(transfer=self, signature=signature)


@dataclass(frozen=True)
class Signature:
    y_parity: int
    r: int
    s: int

    @classmethod
    def from_hex(cls, value: str) -> Signature:
        """Parse a 65-byte ``r || s || v`` signature, v in {0, 1, 27, 28}."""
        raw = value[2:] if value.startswith(("0x", "0X")) else value
        try:
            sig = bytes.fromhex(raw)
        except ValueError:
            raise ValueError("signature is not valid hex")
        if len(sig) != 65:
            raise ValueError(f"signature must be 65 bytes, got {len(sig)}")
        v = sig[64]
        if v in (27, 28):
            v -= 27
        if v not in (0, 1):
            raise ValueError(f"unsupported signature recovery id {sig[64]}")
        return cls(
            y_parity=v,
            r=int.from_bytes(sig[:32], "big"),
            s=int.from_bytes(sig[32:64], "big"),
        )

    def recover_address(self, digest: bytes) -> str:
        try:
            sig = keys.Signature(vrs=(self.y_parity, self.r, self.s))
            return sig.recover_public_key_from_msg_hash(digest).to_checksum_address()
        except (BadSignature, ValidationError, ValueError) as e:
            raise ValueError(f"signature recovery failed: {e}")


@dataclass(frozen=True)
class SignedTransfer:
    transfer: UnsignedTransfer
    signature: Signature

    def serialize(self) -> bytes:
        fields = self.transfer._fields() + [
            self.signature.y_parity,
            self.signature.r,
            self.signature.s,
        ]
        return bytes([EIP1559_TX_TYPE]) + rlp.encode(fields)

    @property
    def tx_hash(self) -> str:
        return "0x" + keccak(self.serialize()).hex()


def _decode_int(raw: bytes) -> int:
    return int.from_bytes(raw, "big")


def decode_transfer(payload: bytes) -> tuple[dict, Signature | None]:
    """Parse an encoded EIP-1559 transaction back into its fields.

    Returns the field dict and the signature when the payload is signed.
    """
    if not payload or payload[0] != EIP1559_TX_TYPE:
        raise ValueError("not an EIP-1559 transaction payload")
    items = rlp.decode(payload[1:])
    if len(items) not in (9, 12):
        raise ValueError(f"unexpected field count {len(items)}")
    to_raw = items[5]
    fields = {
        "chainId": _decode_int(items[0]),
        "nonce": _decode_int(items[1]),
        "maxPriorityFeePerGas": _decode_int(items[2]),
        "maxFeePerGas": _decode_int(items[3]),
        "gasLimit": _decode_int(items[4]),
        "to": to_checksum_address("0x" + bytes(to_raw).hex()) if to_raw else None,
        "value": _decode_int(items[6]),
        "data": bytes(items[7]),
    }
    signature = None
    if len(items) == 12:
        signature = Signature(
            y_parity=_decode_int(items[9]),
            r=_decode_int(items[10]),
            s=_decode_int(items[11]),
        )
    return fields, signature
