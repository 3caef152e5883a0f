"""
ENS input validation and normalization module.

Provides name and address normalization to canonical form and shape
validation for every lookup the gateway accepts.
"""

import re
from dataclasses import dataclass
from typing import Optional

from eth_utils import is_address

from ens_gateway.enums import ErrorCode
from ens_gateway.exceptions import ValidationError


# Only single-label, ASCII .eth names are served
ENS_NAME_PATTERN = re.compile(r"^[a-z0-9-]+\.eth$")

MIN_SEARCH_QUERY_LENGTH = 3


@dataclass
class InputValidationError:
    """Structured error information for validation failures."""

    code: ErrorCode
    message: str
    details: dict


@dataclass
class InputValidationResult:
    """Result of a validation operation."""

    valid: bool
    canonical: Optional[str]
    error: Optional[InputValidationError]

    def raise_for_error(self) -> str:
        """Return the canonical value or raise the carried ValidationError."""
        if self.valid:
            return self.canonical
        raise ValidationError(
            code=self.error.code.value,
            message=self.error.message,
            details=self.error.details,
        )


def sanitize_input(raw: Optional[str]) -> str:
    """Trim surrounding whitespace and case-fold."""
    return (raw or "").strip().lower()


class EnsInputValidator:
    """
    Validates and normalizes ENS lookup inputs.

    Handles:
    - Conversion to trimmed, lowercase canonical form
    - ENS name shape (``label.eth``)
    - Ethereum address shape (20 bytes, hex, ``0x``-prefixed canonical form)
    - Minimum length of search queries
    """

    def validate_name(self, raw_name: Optional[str]) -> InputValidationResult:
        """
        Validate and normalize an ENS name.

        Args:
            raw_name: The raw name as received from the caller

        Returns:
            InputValidationResult with the canonical name or an error
        """
        if not raw_name or not raw_name.strip():
            return self._invalid(ErrorCode.EMPTY_INPUT, "ENS name is empty", raw_name)

        name = sanitize_input(raw_name)
        if not ENS_NAME_PATTERN.match(name):
            return self._invalid(ErrorCode.INVALID_NAME, "Invalid ENS name format", raw_name)

        return InputValidationResult(valid=True, canonical=name, error=None)

    def validate_address(self, raw_address: Optional[str]) -> InputValidationResult:
        """
        Validate and normalize an Ethereum address.

        The canonical form is lowercase and ``0x``-prefixed.
        """
        if not raw_address or not raw_address.strip():
            return self._invalid(ErrorCode.EMPTY_INPUT, "Ethereum address is empty", raw_address)

        address = sanitize_input(raw_address)
        if not is_address(address):
            return self._invalid(ErrorCode.INVALID_ADDRESS, "Invalid Ethereum address", raw_address)

        if not address.startswith("0x"):
            address = "0x" + address

        return InputValidationResult(valid=True, canonical=address, error=None)

    def validate_search_query(self, raw_query: Optional[str]) -> InputValidationResult:
        query = sanitize_input(raw_query)
        if len(query) < MIN_SEARCH_QUERY_LENGTH:
            return self._invalid(
                ErrorCode.INVALID_QUERY,
                f"Query must be at least {MIN_SEARCH_QUERY_LENGTH} characters",
                raw_query,
            )
        return InputValidationResult(valid=True, canonical=query, error=None)

    def _invalid(
        self, code: ErrorCode, message: str, raw_input: Optional[str]
    ) -> InputValidationResult:
        return InputValidationResult(
            valid=False,
            canonical=None,
            error=InputValidationError(
                code=code,
                message=message,
                details={"raw_input": raw_input},
            ),
        )
