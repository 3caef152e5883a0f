"""
Property-based tests for ENS input validation.

Uses Hypothesis to check canonicalization and rejection of names,
addresses and search queries.
"""

import string

import pytest
from hypothesis import given, settings, assume
from hypothesis import strategies as st

from ens_gateway.enums import ErrorCode
from ens_gateway.exceptions import ValidationError
from ens_gateway.validators import ENS_NAME_PATTERN, EnsInputValidator, sanitize_input


LABEL_ALPHABET = string.ascii_lowercase + string.digits + "-"


def valid_label() -> st.SearchStrategy[str]:
    """Generate labels made only of the characters ENS names may use here."""
    return st.text(alphabet=LABEL_ALPHABET, min_size=1, max_size=40)


def mixed_case(text: str, flips: list[bool]) -> str:
    return "".join(c.upper() if flip else c for c, flip in zip(text, flips + [False] * len(text)))


@st.composite
def decorated_name(draw) -> tuple[str, str]:
    """A canonical name and a variant with mixed case and padding."""
    label = draw(valid_label())
    canonical = f"{label}.eth"
    flips = draw(st.lists(st.booleans(), min_size=len(canonical), max_size=len(canonical)))
    padding = draw(st.sampled_from(["", " ", "  ", "\t", "\n "]))
    return canonical, f"{padding}{mixed_case(canonical, flips)}{padding}"


class TestNameValidation:
    """Names normalize to lowercase ``label.eth``."""

    @given(pair=decorated_name())
    @settings(max_examples=200)
    def test_valid_names_normalize(self, pair: tuple[str, str]) -> None:
        canonical, raw = pair
        result = EnsInputValidator().validate_name(raw)

        assert result.valid
        assert result.canonical == canonical
        assert result.raise_for_error() == canonical

    @given(raw=st.text(max_size=40))
    @settings(max_examples=200)
    def test_anything_not_matching_is_rejected(self, raw: str) -> None:
        assume(not ENS_NAME_PATTERN.match(sanitize_input(raw)))

        result = EnsInputValidator().validate_name(raw)

        assert not result.valid
        assert result.error.code in (ErrorCode.EMPTY_INPUT, ErrorCode.INVALID_NAME)
        with pytest.raises(ValidationError):
            result.raise_for_error()

    @pytest.mark.parametrize("raw", ["vitalik.xyz", "sub.vitalik.eth", "vit alik.eth", ".eth", "vitalik.eth."])
    def test_known_bad_names(self, raw: str) -> None:
        result = EnsInputValidator().validate_name(raw)

        assert result.error.code is ErrorCode.INVALID_NAME
        assert result.error.message == "Invalid ENS name format"
        assert result.error.details == {"raw_input": raw}

    @pytest.mark.parametrize("raw", [None, "", "   "])
    def test_empty_names(self, raw) -> None:
        assert EnsInputValidator().validate_name(raw).error.code is ErrorCode.EMPTY_INPUT


class TestAddressValidation:
    """Addresses normalize to lowercase, 0x-prefixed hex."""

    @given(raw_bytes=st.binary(min_size=20, max_size=20), upper=st.booleans(), prefix=st.booleans())
    @settings(max_examples=200)
    def test_valid_addresses_normalize(self, raw_bytes: bytes, upper: bool, prefix: bool) -> None:
        hex_part = raw_bytes.hex()
        raw = ("0x" if prefix else "") + (hex_part.upper() if upper else hex_part)

        result = EnsInputValidator().validate_address(raw)

        assert result.valid
        assert result.canonical == "0x" + hex_part

    @given(length=st.integers(min_value=1, max_value=60))
    @settings(max_examples=60)
    def test_wrong_length_is_rejected(self, length: int) -> None:
        assume(length != 40)

        result = EnsInputValidator().validate_address("0x" + "a" * length)

        assert result.error.code is ErrorCode.INVALID_ADDRESS
        assert result.error.message == "Invalid Ethereum address"

    def test_non_hex_is_rejected(self) -> None:
        result = EnsInputValidator().validate_address("0x" + "z" * 40)

        assert result.error.code is ErrorCode.INVALID_ADDRESS


class TestSearchQueryValidation:
    """Search queries need three characters after trimming."""

    @given(query=st.text(alphabet=string.ascii_letters, min_size=3, max_size=20))
    @settings(max_examples=100)
    def test_long_enough_queries_are_lowercased(self, query: str) -> None:
        result = EnsInputValidator().validate_search_query(f" {query} ")

        assert result.canonical == query.lower()

    @given(query=st.text(alphabet=string.ascii_letters, max_size=2))
    @settings(max_examples=50)
    def test_short_queries_are_rejected(self, query: str) -> None:
        result = EnsInputValidator().validate_search_query(query)

        assert result.error.code is ErrorCode.INVALID_QUERY
        assert result.error.message == "Query must be at least 3 characters"
