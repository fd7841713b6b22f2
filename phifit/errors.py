from __future__ import annotations
from typing import Any


class DomainError(Exception):
    """Expected, caller-recoverable failure. Raised before any mutation."""
    status_code = 400

    def __init__(self, detail: str, **context: Any) -> None:
        super().__init__(detail)
        self.detail = detail
        self.context = context

    def to_dict(self) -> dict[str, Any]:
        return {"detail": self.detail, **self.context}


class ValidationFailed(DomainError):
    status_code = 400


class NotAuthorized(DomainError):
    status_code = 403


class NotFound(DomainError):
    status_code = 404


class StateConflict(DomainError):
    status_code = 409


class InsufficientBalance(DomainError):
    status_code = 402

    def __init__(self, *, required: int, available: int, staked: int) -> None:
        super().__init__(
            f"Insufficient tokens. You have {available} available ({staked} staked in other challenges)",
            required=required,
            available=available,
            staked=staked,
        )
