"""
Custom exception classes for the application.
Provides structured error handling across ingestion, payouts and the API.
"""

from decimal import Decimal
from typing import Any, Optional, Dict


class DegenBackendException(Exception):
    """Base exception class for the Flappy Degen backend."""

    def __init__(
        self,
        message: str,
        code: str = "UNKNOWN_ERROR",
        details: Optional[Dict[str, Any]] = None
    ):
        self.message = message
        self.code = code
        self.details = details or {}
        super().__init__(self.message)


class ConfigurationError(DegenBackendException):
    """Raised when there's a configuration error."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, "CONFIGURATION_ERROR", details)


class DatabaseError(DegenBackendException):
    """Raised when there's a database error."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, "DATABASE_ERROR", details)


class TransientNetworkError(DegenBackendException):
    """Raised when the ledger or the price oracle cannot be reached."""

    def __init__(
        self,
        message: str,
        details: Optional[Dict[str, Any]] = None,
        code: str = "TRANSIENT_NETWORK_ERROR"
    ):
        super().__init__(message, code, details)


class SolanaRPCError(TransientNetworkError):
    """Raised when a Solana RPC call fails or times out."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, details, code="SOLANA_RPC_ERROR")


class PriceUnavailable(TransientNetworkError):
    """Raised when no usable exchange rate can be produced."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, details, code="PRICE_UNAVAILABLE")


class ValidationError(DegenBackendException):
    """Raised when data validation fails."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, "VALIDATION_ERROR", details)


class NotFoundError(DegenBackendException):
    """Raised when a requested resource is not found."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, "NOT_FOUND", details)


class AuthenticationError(DegenBackendException):
    """Raised when authentication fails."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, "AUTHENTICATION_ERROR", details)


class DuplicateIgnored(DegenBackendException):
    """A deposit for this transaction was already recorded. Not an error."""

    def __init__(self, chain_tx_id: str):
        super().__init__(
            f"Deposit already recorded: {chain_tx_id}",
            "DUPLICATE_IGNORED",
            {"chain_tx_id": chain_tx_id}
        )


class SettlementFailure(DegenBackendException):
    """Raised when a payout transfer could not be signed, sent or confirmed."""

    def __init__(self, payout_id: int, reason: str, attempt_count: int = 0):
        super().__init__(
            f"Settlement failed for payout {payout_id}: {reason}",
            "SETTLEMENT_FAILURE",
            {"payout_id": payout_id, "reason": reason, "attempt_count": attempt_count}
        )
        self.payout_id = payout_id
        self.attempt_count = attempt_count


class InsufficientPool(DegenBackendException):
    """Raised when a payout cycle has nothing to distribute."""

    def __init__(self, reason: str, cumulative_usd: Optional[Decimal] = None):
        super().__init__(
            f"Payout cycle skipped: {reason}",
            "INSUFFICIENT_POOL",
            {"reason": reason, "cumulative_usd": str(cumulative_usd) if cumulative_usd is not None else None}
        )
        self.reason = reason


class PayoutNotFoundError(NotFoundError):
    """Raised when a payout is not found."""

    def __init__(self, payout_id: int):
        super().__init__(
            f"Payout not found: {payout_id}",
            {"payout_id": payout_id}
        )
