"""
Input validation utilities for wallet addresses and score submissions.
"""

from typing import Optional

from solders.pubkey import Pubkey

from degen_backend.core.exceptions import ValidationError


class SolanaValidator:
    """Validator for Solana blockchain data."""

    @staticmethod
    def is_valid_pubkey(address: str) -> bool:
        """
        Validate if a string is a valid Solana public key.

        Args:
            address: String to validate

        Returns:
            True if valid, False otherwise
        """
        if not address or len(address) < 32 or len(address) > 44:
            return False
        try:
            Pubkey.from_string(address)
            return True
        except ValueError:
            return False


def validate_wallet_address(address: Optional[str], field: str = "player_wallet") -> str:
    """Return the stripped address or raise ValidationError."""
    address = (address or "").strip()
    if not address:
        raise ValidationError(f"{field} is required", {"field": field})
    if not SolanaValidator.is_valid_pubkey(address):
        raise ValidationError(f"Invalid wallet address: {address}", {"field": field})
    return address


def validate_score_value(score) -> int:
    """Scores must be positive integers; bools and floats are rejected."""
    if isinstance(score, bool) or not isinstance(score, int) or score <= 0:
        raise ValidationError("Score must be a positive integer", {"field": "score", "value": score})
    return score
