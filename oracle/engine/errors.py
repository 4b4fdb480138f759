"""
TrustFi Claim Oracle — Error Taxonomy
=====================================
Every failure the engine can surface is one of a closed set of kinds. Errors
are constructed where the failure happens; callers branch on ``kind`` (or the
exception class), never on message text.
"""

from __future__ import annotations

from enum import Enum
from typing import Optional


class ErrorKind(str, Enum):
    NOT_FOUND          = "NOT_FOUND"
    INELIGIBLE         = "INELIGIBLE"
    ORACLE_UNAVAILABLE = "ORACLE_UNAVAILABLE"
    CONFIGURATION      = "CONFIGURATION"
    SIGNING_FAILURE    = "SIGNING_FAILURE"
    RENDER_FAILURE     = "RENDER_FAILURE"
    INVALID_REQUEST    = "INVALID_REQUEST"


class IneligibleReason(str, Enum):
    """Ordered: when several hold at once, the first listed is reported."""
    TEMPLATE_NOT_FOUND  = "template not found"
    PAUSED              = "paused"
    OUTSIDE_TIME_WINDOW = "outside time window"
    SUPPLY_EXHAUSTED    = "supply exhausted"
    ALREADY_CLAIMED     = "already claimed"


class ClaimEngineError(Exception):
    kind: ErrorKind = ErrorKind.INVALID_REQUEST

    def __init__(self, message: str, cause: Optional[BaseException] = None):
        super().__init__(message)
        self.message = message
        self.cause   = cause

    def to_dict(self) -> dict:
        d = {"kind": self.kind.value, "message": self.message}
        if self.cause is not None:
            d["cause"] = f"{type(self.cause).__name__}: {self.cause}"
        return d


class NotFound(ClaimEngineError):
    kind = ErrorKind.NOT_FOUND


class Ineligible(ClaimEngineError):
    kind = ErrorKind.INELIGIBLE

    def __init__(self, reason: IneligibleReason):
        super().__init__(reason.value)
        self.reason = reason


class OracleUnavailable(ClaimEngineError):
    """Transient ledger/network failure. Retryable by the caller."""
    kind = ErrorKind.ORACLE_UNAVAILABLE


class ConfigurationError(ClaimEngineError):
    kind = ErrorKind.CONFIGURATION


class SigningFailure(ClaimEngineError):
    kind = ErrorKind.SIGNING_FAILURE


class RenderFailure(ClaimEngineError):
    kind = ErrorKind.RENDER_FAILURE


class InvalidRequest(ClaimEngineError):
    kind = ErrorKind.INVALID_REQUEST
