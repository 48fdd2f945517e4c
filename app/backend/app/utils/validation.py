"""
Blockchain data validation utilities.
Provides validation functions for Solana addresses, signatures, and race data.
"""

from decimal import Decimal, InvalidOperation
from typing import List, Optional

import base58
from solders.pubkey import Pubkey
from solders.signature import Signature

import structlog
from app.core.exceptions import ValidationError


logger = structlog.get_logger(__name__)


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
        try:
            if not address or len(address) < 32 or len(address) > 44:
                return False
            Pubkey.from_string(address)
            return True
        except Exception:
            return False

    @staticmethod
    def is_valid_signature(signature: str) -> bool:
        """
        Validate if a string is a valid Solana transaction signature.

        Args:
            signature: String to validate

        Returns:
            True if valid, False otherwise
        """
        try:
            if not signature or len(signature) < 80 or len(signature) > 88:
                return False
            Signature.from_string(signature)
            return True
        except Exception:
            return False

    @staticmethod
    def is_valid_base58(data: str) -> bool:
        """Validate if a string is valid base58 encoding."""
        try:
            base58.b58decode(data)
            return True
        except ValueError:
            return False


class RaceDataValidator:
    """Validator for race configuration submitted by operators."""

    MAX_TOTAL_ROUNDS = 365
    MAX_TOKEN_DECIMALS = 18

    @staticmethod
    def parse_amount(value, field: str) -> Decimal:
        """Parse a non-negative token amount."""
        try:
            amount = Decimal(str(value))
        except (InvalidOperation, TypeError, ValueError):
            raise ValidationError(f"{field} is not a number", {"field": field, "value": value})

        if not amount.is_finite() or amount < 0:
            raise ValidationError(f"{field} must be a non-negative amount", {"field": field, "value": str(value)})
        return amount

    @staticmethod
    def validate_race_config(
        contract_address: Optional[str],
        total_rounds: int,
        token_decimals: int,
        prize_pool: Decimal,
        daily_reward_amount: Optional[Decimal]
    ) -> List[str]:
        """Return a list of problems with a new race's configuration."""
        errors = []

        if contract_address and not SolanaValidator.is_valid_pubkey(contract_address):
            errors.append(f"Invalid token contract address: {contract_address}")

        if not 1 <= total_rounds <= RaceDataValidator.MAX_TOTAL_ROUNDS:
            errors.append(f"total_rounds must be between 1 and {RaceDataValidator.MAX_TOTAL_ROUNDS}")

        if not 0 <= token_decimals <= RaceDataValidator.MAX_TOKEN_DECIMALS:
            errors.append(f"token_decimals must be between 0 and {RaceDataValidator.MAX_TOKEN_DECIMALS}")

        if prize_pool <= 0 and not daily_reward_amount:
            errors.append("Either prize_pool or daily_reward_amount must be positive")

        if errors:
            logger.warning("Race configuration rejected", errors=errors)
        return errors


def validate_wallet_address(wallet: str) -> bool:
    """Validate a wallet address."""
    return SolanaValidator.is_valid_pubkey(wallet)


def validate_transaction_signature(signature: str) -> bool:
    """Validate a payout transaction signature."""
    return SolanaValidator.is_valid_signature(signature)
