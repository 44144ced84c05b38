"""FastAPI application for the custody gateway."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import TYPE_CHECKING

import structlog
from fastapi import BackgroundTasks, Depends, FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import Response
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.responses import JSONResponse

from custody_gateway.api.metrics import metrics_response
from custody_gateway.api.middleware import RequestIdMiddleware, parse_bearer
from custody_gateway.api.models import (
    AuthResponse,
    BalanceOut,
    Credentials,
    ErrorResponse,
    HealthResponse,
    ReadinessResponse,
    SendTransactionRequest,
    SendTransactionResponse,
    SignupResponse,
    SignupWallet,
    TransactionStatusResponse,
    WalletResponse,
    WalletStatusResponse,
)
from custody_gateway.chain.transaction import normalize_tx_hash
from custody_gateway.clients.custody import WalletStatus
from custody_gateway.clients.identity import AuthenticatedUser
from custody_gateway.core.transfers import GasOverrides
from custody_gateway.errors import GatewayError, NotFoundError

if TYPE_CHECKING:
    from custody_gateway.chain.client import ChainClient
    from custody_gateway.clients.identity import IdentityClient
    from custody_gateway.core.address_book import AddressBook
    from custody_gateway.core.transfers import TransferOrchestrator
    from custody_gateway.core.wallets import WalletService

log = structlog.get_logger()

_CREATING_MESSAGE = "Wallet is being created. Poll the /api/wallet/status endpoint to check status."
_READY_MESSAGE = "Wallet is ready!"


def _error_response(status_code: int, kind: str, message: str) -> JSONResponse:
    body = ErrorResponse(error=kind, message=message)
    return JSONResponse(status_code=status_code, content=body.model_dump())


def _validation_message(exc: RequestValidationError) -> str:
    parts = []
    for err in exc.errors():
        loc = ".".join(str(p) for p in err.get("loc", ()) if p != "body")
        parts.append(f"{loc}: {err.get('msg', 'invalid')}" if loc else str(err.get("msg", "invalid")))
    return "; ".join(parts) or "Invalid request"


def create_app(
    identity: IdentityClient,
    wallets: WalletService,
    transfers: TransferOrchestrator,
    chain: ChainClient,
    address_book: AddressBook,
    watch_new_wallets: bool = True,
) -> FastAPI:
    """Build the FastAPI application with all routes wired."""

    from custody_gateway import __version__

    app = FastAPI(
        title="Custody Gateway",
        version=__version__,
        responses={code: {"model": ErrorResponse} for code in (400, 401, 404, 409, 500)},
    )

    @app.exception_handler(GatewayError)
    async def _gateway_error(request: Request, exc: GatewayError) -> JSONResponse:
        level = "error" if exc.status_code >= 500 else "info"
        getattr(log, level)(
            "request_failed",
            kind=exc.kind,
            status=exc.status_code,
            error=exc.message,
            path=request.url.path,
        )
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

    @app.exception_handler(RequestValidationError)
    async def _validation_error(request: Request, exc: RequestValidationError) -> JSONResponse:
        return _error_response(400, "BadRequest", _validation_message(exc))

    @app.exception_handler(StarletteHTTPException)
    async def _http_error(request: Request, exc: StarletteHTTPException) -> JSONResponse:
        if exc.status_code == 404:
            return _error_response(404, "NotFound", f"Route {request.method} {request.url.path} not found")
        return _error_response(exc.status_code, "HTTPError", str(exc.detail))

    # Unhandled exceptions never leak stack traces to clients
    @app.exception_handler(Exception)
    async def _unhandled_error(request: Request, exc: Exception) -> JSONResponse:
        log.error(
            "unhandled_exception",
            error=str(exc),
            path=request.url.path,
            method=request.method,
            exc_info=True,
        )
        return _error_response(500, "InternalError", "Internal server error")

    # Request ID tracing (outermost, added last)
    app.add_middleware(RequestIdMiddleware)

    async def current_user(request: Request) -> AuthenticatedUser:
        token = parse_bearer(request.headers.get("authorization"))
        user = await identity.verify_token(token)
        structlog.contextvars.bind_contextvars(user_id=user.user_id)
        return user

    # -- auth ---------------------------------------------------------------

    @app.post("/api/auth/signup", response_model=SignupResponse, status_code=201)
    async def signup(body: Credentials, background: BackgroundTasks) -> SignupResponse:
        """Create the identity, then provision its custody wallet.

        The wallet is usually still ``creating``; when enabled, a background
        poll caches its address once key generation completes.
        """
        session = await identity.signup(body.email, body.password)
        wallet = await wallets.provision(session.user.user_id)
        if watch_new_wallets and wallet.status != WalletStatus.READY:
            background.add_task(wallets.watch_until_ready, session.user.user_id, wallet.id)
        return SignupResponse(
            **session.to_dict(),
            wallet=SignupWallet(
                id=wallet.id,
                status=wallet.status.value,
                address=wallet.address,
                message=_READY_MESSAGE if wallet.status == WalletStatus.READY else _CREATING_MESSAGE,
            ),
        )

    @app.post("/api/auth/login", response_model=AuthResponse)
    async def login(body: Credentials) -> AuthResponse:
        session = await identity.login(body.email, body.password)
        return AuthResponse(**session.to_dict())

    # -- wallet -------------------------------------------------------------

    @app.get("/api/wallet", response_model=WalletResponse)
    async def get_wallet(user: AuthenticatedUser = Depends(current_user)) -> WalletResponse:
        view = await wallets.get_wallet(user.user_id)
        wallet = view.wallet
        balance = None
        if view.balance is not None:
            balance = BalanceOut(wei=str(view.balance.wei), eth=view.balance.eth)
        return WalletResponse(
            id=wallet.id,
            type=wallet.type,
            status=wallet.status.value,
            address=wallet.address,
            publicKey=wallet.public_key,
            balance=balance,
            createdAt=wallet.created_at,
            message=(
                "Wallet is ready for transactions!"
                if wallet.is_ready
                else "Wallet is still being created. MPC key generation in progress."
            ),
        )

    @app.get("/api/wallet/status", response_model=WalletStatusResponse)
    async def wallet_status(user: AuthenticatedUser = Depends(current_user)) -> WalletStatusResponse:
        wallet = await wallets.get_status(user.user_id)
        return WalletStatusResponse(status=wallet.status.value, address=wallet.address)

    # -- transactions -------------------------------------------------------

    @app.post("/api/transaction/send", response_model=SendTransactionResponse, status_code=201)
    async def send_transaction(
        body: SendTransactionRequest,
        user: AuthenticatedUser = Depends(current_user),
    ) -> SendTransactionResponse:
        overrides = GasOverrides.parse(
            gas_limit=body.gasLimit,
            max_fee_per_gas=body.maxFeePerGas,
            max_priority_fee_per_gas=body.maxPriorityFeePerGas,
        )
        receipt = await transfers.send(user.user_id, body.to, body.amount, overrides)
        return SendTransactionResponse(
            transactionHash=receipt.transaction_hash,
            status=receipt.status,
            from_=receipt.from_address,
            to=receipt.to,
            value=receipt.value,
            valueWei=str(receipt.value_wei),
            nonce=receipt.nonce,
        )

    @app.get("/api/transaction/{tx_hash}", response_model=TransactionStatusResponse)
    async def transaction_status(tx_hash: str) -> TransactionStatusResponse:
        """Receipt-derived status. 404 until the transaction is mined."""
        tx_hash = normalize_tx_hash(tx_hash)
        status = await chain.get_transfer_status(tx_hash)
        if status is None:
            if await chain.is_known_transaction(tx_hash):
                raise NotFoundError("Transaction pending, not yet mined")
            raise NotFoundError("Transaction not found")
        return TransactionStatusResponse(
            transactionHash=status.transaction_hash,
            blockNumber=status.block_number,
            blockHash=status.block_hash,
            status=status.status,
            gasUsed=str(status.gas_used),
            gasPrice=str(status.gas_price) if status.gas_price is not None else None,
            from_=status.from_address,
            to=status.to,
            value=str(status.value),
        )

    # -- operations ---------------------------------------------------------

    @app.get("/health", response_model=HealthResponse)
    async def health() -> HealthResponse:
        """Liveness only; touches no upstream."""
        return HealthResponse(
            status="ok",
            timestamp=datetime.now(timezone.utc).isoformat(),
            version=__version__,
        )

    @app.get("/health/ready", response_model=ReadinessResponse)
    async def readiness() -> JSONResponse:
        """Deep readiness probe: chain RPC and address book."""
        checks = {
            "chain_rpc": await chain.is_connected(),
            "address_book": address_book.ping(),
        }
        ready = all(checks.values())
        return JSONResponse(
            status_code=200 if ready else 503,
            content=ReadinessResponse(ready=ready, checks=checks).model_dump(),
        )

    @app.get("/metrics")
    async def metrics() -> Response:
        """Prometheus metrics endpoint."""
        return Response(
            content=metrics_response(),
            media_type="text/plain; version=0.0.4; charset=utf-8",
        )

    return app
