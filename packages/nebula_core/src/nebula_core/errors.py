"""
Error kinds raised by the engines.

Every engine operation fails with exactly one of these. Callers translate the
`kind` into their own presentation (HTTP status, CLI exit code, ...). The
`context` always names the player and the entity involved so a failure can be
logged without inspecting the stack.
"""

from typing import Any


class NebulaError(Exception):
    """Base class for all engine errors."""

    kind = "internal"
    code = "CORE_000"

    def __init__(self, message: str, **context: Any):
        super().__init__(message)
        self.message = message
        self.context = {key: value for key, value in context.items() if value is not None}

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind,
            "code": self.code,
            "message": self.message,
            "context": {key: str(value) for key, value in self.context.items()},
        }

    def __str__(self) -> str:
        if not self.context:
            return self.message
        details = ", ".join(f"{key}={value}" for key, value in self.context.items())
        return f"{self.message} ({details})"


class NotFound(NebulaError):
    """Missing template or player row."""

    kind = "not_found"
    code = "CORE_404"


class AlreadyCompleted(NebulaError):
    """Progress operation on a finished upgrade node."""

    kind = "already_completed"
    code = "UPG_002"


class Conflict(NebulaError):
    """Offer or event is no longer in the state the operation requires."""

    kind = "conflict"
    code = "CORE_409"


class InsufficientFunds(NebulaError):
    """Ledger debit would take a balance below zero."""

    kind = "insufficient_funds"
    code = "MKT_003"


class InvalidArgument(NebulaError):
    """Non-positive amount or delta, malformed catalog configuration."""

    kind = "invalid_argument"
    code = "VAL_001"


class Internal(NebulaError):
    """Unexpected persistence failure."""

    kind = "internal"
    code = "CORE_500"
