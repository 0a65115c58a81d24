"""Tests for PKCE (Proof Key for Code Exchange) implementation."""

import base64
import hashlib
import re

import pytest

from tiktok_streamkey.oauth.pkce import (
    VERIFIER_BYTES,
    PKCEPair,
    generate_code_challenge,
    generate_code_verifier,
    generate_pkce_pair,
)


class TestGenerateCodeVerifier:
    """Tests for code verifier generation."""

    def test_length_is_128_hex_characters(self):
        """Test that the verifier hex-encodes 64 random bytes."""
        verifier = generate_code_verifier()
        assert len(verifier) == VERIFIER_BYTES * 2 == 128

    def test_is_lowercase_hex(self):
        """Test that the verifier only uses lowercase hex digits."""
        assert re.fullmatch(r"[0-9a-f]+", generate_code_verifier())

    def test_within_rfc_length_window(self):
        """Test that the verifier is 43-128 characters per RFC 7636."""
        assert 43 <= len(generate_code_verifier()) <= 128

    def test_no_collisions(self):
        """Test that 1000 verifiers are all distinct."""
        verifiers = {generate_code_verifier() for _ in range(1000)}
        assert len(verifiers) == 1000


class TestGenerateCodeChallenge:
    """Tests for code challenge generation."""

    def test_rfc_7636_test_vector(self):
        """Test against the example in RFC 7636 Appendix B."""
        verifier = "dBjftJeZ4CVP-mJ92c0ZCe4J3kKmgsl5ZXQnxlHCQsg"
        assert generate_code_challenge(verifier) == "E9Melhoa2OwvFrEMTJguCHaoeK1t8URWbuGJSstw-cM"

    def test_matches_sha256_of_verifier_bytes(self):
        """Test that the challenge hashes the verifier string itself."""
        verifier = generate_code_verifier()
        expected = (
            base64.urlsafe_b64encode(hashlib.sha256(verifier.encode("ascii")).digest())
            .decode("ascii")
            .rstrip("=")
        )
        assert generate_code_challenge(verifier) == expected

    @pytest.mark.parametrize("verifier", ["", "a", "x" * 128])
    def test_always_43_characters_without_padding(self, verifier: str):
        """Test challenge length and absence of padding."""
        challenge = generate_code_challenge(verifier)
        assert len(challenge) == 43
        assert "=" not in challenge

    def test_uses_url_safe_alphabet(self):
        """Test that the challenge never contains + or /."""
        for _ in range(100):
            challenge = generate_code_challenge(generate_code_verifier())
            assert re.fullmatch(r"[A-Za-z0-9_-]{43}", challenge)

    def test_deterministic(self):
        """Test that the same verifier always yields the same challenge."""
        assert generate_code_challenge("abc") == generate_code_challenge("abc")


class TestGeneratePKCEPair:
    """Tests for PKCE pair generation."""

    def test_pair_is_consistent(self):
        """Test that the pair's challenge is derived from its verifier."""
        pair = generate_pkce_pair()
        assert isinstance(pair, PKCEPair)
        assert pair.challenge == generate_code_challenge(pair.verifier)
        assert pair.method == "S256"

    def test_each_pair_is_fresh(self):
        """Test that every call generates a new verifier."""
        assert generate_pkce_pair().verifier != generate_pkce_pair().verifier

    def test_pair_is_immutable(self):
        """Test that a pair cannot be modified after creation."""
        pair = generate_pkce_pair()
        with pytest.raises(AttributeError):
            pair.verifier = "other"  # type: ignore[misc]
