"""Tests for PKCE and state generation."""

from __future__ import annotations

import base64
import hashlib

import pytest

from gateway_oauth.oauth.pkce import (
    CODE_CHALLENGE_METHOD,
    PKCEPair,
    create_pkce_pair,
    generate_code_challenge,
    generate_code_verifier,
    generate_state,
    validate_code_verifier,
)

URL_SAFE = set("ABCDEFGHIJKLMNOPQRSTUVWXYZabcdefghijklmnopqrstuvwxyz0123456789-_")
UNRESERVED = URL_SAFE | set(".~")


class TestGenerateCodeVerifier:
    """Tests for generate_code_verifier function."""

    def test_length_within_rfc_bounds(self) -> None:
        """Test that verifiers are 43-128 characters."""
        assert 43 <= len(generate_code_verifier()) <= 128
        assert len(generate_code_verifier(nbytes=96)) <= 128

    def test_unique_values(self) -> None:
        """Test that verifiers are unique."""
        verifiers = {generate_code_verifier() for _ in range(100)}
        assert len(verifiers) == 100

    def test_unreserved_characters(self) -> None:
        """Test that verifier only uses RFC 7636 unreserved characters."""
        verifier = generate_code_verifier()
        assert set(verifier) <= UNRESERVED

    def test_rejects_low_entropy(self) -> None:
        """Test that low entropy values are rejected."""
        with pytest.raises(ValueError, match="at least 32"):
            generate_code_verifier(nbytes=16)

    def test_rejects_oversized(self) -> None:
        """Test that verifiers longer than 128 characters are refused."""
        with pytest.raises(ValueError, match="at most 96"):
            generate_code_verifier(nbytes=100)


class TestGenerateCodeChallenge:
    """Tests for generate_code_challenge function."""

    def test_rfc7636_appendix_b_vector(self) -> None:
        """Test the worked example from RFC 7636 Appendix B."""
        verifier = "dBjftJeZ4CVP-mB92K27uhbUJU1p1r_wW1gFWFOEjXk"
        assert generate_code_challenge(verifier) == "E9Melhoa2OwvFrEMTJguCHaoeK1t8URWbuGJSstw-cM"

    def test_matches_manual_computation(self) -> None:
        """Test S256 against a manual computation."""
        verifier = generate_code_verifier()
        digest = hashlib.sha256(verifier.encode("ascii")).digest()
        expected = base64.urlsafe_b64encode(digest).rstrip(b"=").decode("ascii")
        assert generate_code_challenge(verifier) == expected

    def test_no_padding(self) -> None:
        """Test that challenge carries no base64 padding."""
        assert "=" not in generate_code_challenge(generate_code_verifier())

    def test_deterministic(self) -> None:
        """Test that same verifier produces same challenge."""
        verifier = generate_code_verifier()
        assert generate_code_challenge(verifier) == generate_code_challenge(verifier)


class TestValidateCodeVerifier:
    """Tests for validate_code_verifier function."""

    @pytest.mark.parametrize("verifier", ["a" * 42, "a" * 129])
    def test_rejects_bad_length(self, verifier: str) -> None:
        with pytest.raises(ValueError, match="43-128 characters"):
            validate_code_verifier(verifier)

    def test_rejects_reserved_characters(self) -> None:
        """Test that characters outside the unreserved set are refused."""
        with pytest.raises(ValueError, match="unreserved"):
            validate_code_verifier("a" * 42 + "/")

    def test_accepts_all_unreserved(self) -> None:
        verifier = "Az09-._~" * 6
        assert validate_code_verifier(verifier) == verifier

    def test_challenge_requires_valid_verifier(self) -> None:
        """Test that a challenge is never derived from a malformed verifier."""
        with pytest.raises(ValueError):
            generate_code_challenge("too-short")


class TestCreatePKCEPair:
    """Tests for create_pkce_pair function."""

    def test_pair_is_consistent(self) -> None:
        """Test that the challenge is derived from the verifier."""
        pair = create_pkce_pair()
        assert isinstance(pair, PKCEPair)
        assert pair.code_challenge == generate_code_challenge(pair.code_verifier)
        assert pair.method == CODE_CHALLENGE_METHOD == "S256"

    def test_pairs_differ(self) -> None:
        """Test that each call creates a fresh verifier."""
        assert create_pkce_pair().code_verifier != create_pkce_pair().code_verifier


class TestGenerateState:
    """Tests for generate_state function."""

    def test_url_safe_and_long(self) -> None:
        """Test that state is URL-safe with at least 256 bits of entropy."""
        state = generate_state()
        assert set(state) <= URL_SAFE
        assert len(state) >= 43

    def test_unique_values(self) -> None:
        """Test that states are unique."""
        assert len({generate_state() for _ in range(200)}) == 200
