"""Error taxonomy shared by every layer.

Each error carries the ``kind`` string and HTTP status rendered in the
``{"error": kind, "message": message}`` envelope by the API layer.
"""

from __future__ import annotations


class GatewayError(Exception):
    kind = "InternalError"
    status_code = 500

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    def to_dict(self) -> dict[str, str]:
        return {"error": self.kind, "message": self.message}


class BadRequestError(GatewayError):
    kind = "BadRequest"
    status_code = 400


class UnauthorizedError(GatewayError):
    kind = "Unauthorized"
    status_code = 401


class NotFoundError(GatewayError):
    kind = "NotFound"
    status_code = 404


class ConflictError(GatewayError):
    kind = "Conflict"
    status_code = 409


class UpstreamError(GatewayError):
    """A call to the identity, custody, chain or database backend failed."""

    kind = "UpstreamFailure"
    status_code = 500

    def __init__(self, service: str, message: str) -> None:
        super().__init__(f"{service}: {message}")
        self.service = service


class WalletNotReadyError(UpstreamError):
    kind = "WalletNotReady"
    status_code = 400

    def __init__(self, wallet_id: str) -> None:
        super().__init__(
            "custody",
            f"wallet {wallet_id} is still being created, try again later",
        )
        self.wallet_id = wallet_id


class PollTimeoutError(UpstreamError):
    kind = "Timeout"
    status_code = 504

    def __init__(self, wallet_id: str, attempts: int) -> None:
        super().__init__(
            "custody",
            f"wallet {wallet_id} did not become ready after {attempts} attempts",
        )
        self.wallet_id = wallet_id
        self.attempts = attempts
