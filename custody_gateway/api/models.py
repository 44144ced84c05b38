"""Pydantic request/response models for the gateway REST API."""

from __future__ import annotations

import re

from pydantic import BaseModel, ConfigDict, Field, field_validator

_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


class Credentials(BaseModel):
    """POST /api/auth/signup and /api/auth/login."""

    email: str = Field(min_length=3, max_length=320)
    password: str = Field(min_length=1, max_length=256)

    @field_validator("email")
    @classmethod
    def validate_email(cls, v: str) -> str:
        v = v.strip()
        if not _EMAIL_RE.match(v):
            raise ValueError("email must be a valid email address")
        return v


class UserOut(BaseModel):
    id: str
    email: str


class SessionOut(BaseModel):
    access_token: str
    token_type: str = "Bearer"


class AuthResponse(BaseModel):
    user: UserOut
    session: SessionOut


class SignupWallet(BaseModel):
    id: str
    status: str
    address: str | None = None
    message: str = ""


class SignupResponse(AuthResponse):
    wallet: SignupWallet


class BalanceOut(BaseModel):
    wei: str
    eth: str


class WalletResponse(BaseModel):
    """GET /api/wallet. ``balance`` is null while the wallet is being created."""

    id: str
    type: str
    status: str
    address: str | None = None
    publicKey: str | None = None
    balance: BalanceOut | None = None
    createdAt: str | None = None
    message: str = ""


class WalletStatusResponse(BaseModel):
    status: str
    address: str | None = None


class SendTransactionRequest(BaseModel):
    """POST /api/transaction/send.

    ``amount`` is a decimal ether string; gas fields are base-unit integers,
    given as decimal strings or JSON integers.
    """

    to: str = Field(min_length=1, max_length=128)
    amount: str = Field(min_length=1, max_length=80)
    gasLimit: str | int | None = None
    maxFeePerGas: str | int | None = None
    maxPriorityFeePerGas: str | int | None = None


class SendTransactionResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    transactionHash: str
    status: str
    from_: str = Field(alias="from")
    to: str
    value: str
    valueWei: str
    nonce: int


class TransactionStatusResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    transactionHash: str
    blockNumber: int
    blockHash: str
    status: str
    gasUsed: str
    gasPrice: str | None = None
    from_: str = Field(alias="from")
    to: str | None = None
    value: str


class HealthResponse(BaseModel):
    status: str
    timestamp: str
    version: str = ""


class ReadinessResponse(BaseModel):
    """GET /health/ready."""

    ready: bool
    checks: dict[str, bool] = Field(default_factory=dict)


class ErrorResponse(BaseModel):
    error: str
    message: str
