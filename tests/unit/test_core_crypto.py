"""
Unit tests for styxauth.core.crypto module.

Tests key derivation, MACs, signatures and key agreement used by the
p9sk and inferno handlers.
"""

import pytest

from styxauth.core.crypto import (
    constant_time_compare,
    derive_key_from_password,
    derive_session_secret,
    exchange_shared_secret,
    generate_challenge,
    generate_exchange_key,
    generate_signing_key,
    hmac_sha256,
    public_key_for,
    sign,
    verify_hmac,
    verify_signature,
)
from styxauth.core.exceptions import CryptoError


class TestKeyDerivation:
    """Tests for key derivation functions."""

    def test_derive_key_from_password(self):
        key = derive_key_from_password("wonderland", b"p9sk1:styx:alice")
        assert len(key) == 32
        assert key == derive_key_from_password("wonderland", b"p9sk1:styx:alice")

    def test_salt_binds_protocol(self):
        """Test the same password yields different keys per protocol."""
        assert derive_key_from_password("wonderland", b"p9sk1:styx:alice") != derive_key_from_password(
            "wonderland", b"p9sk2:styx:alice"
        )

    def test_session_secret(self):
        secret = derive_session_secret(b"k" * 32, b"info")
        assert len(secret) == 32
        assert secret != derive_session_secret(b"k" * 32, b"other info")

    def test_challenges_are_random(self):
        assert len(generate_challenge()) == 8
        assert generate_challenge(16) != generate_challenge(16)


class TestMessageAuthentication:
    def test_hmac_verify(self):
        tag = hmac_sha256(b"key", b"data")
        assert verify_hmac(b"key", b"data", tag)
        assert not verify_hmac(b"key", b"tampered", tag)
        assert not verify_hmac(b"other", b"data", tag)

    def test_constant_time_compare(self):
        assert constant_time_compare(b"abc", b"abc")
        assert not constant_time_compare(b"abc", b"abd")


class TestSignatures:
    def test_sign_and_verify(self):
        private_key, public_key = generate_signing_key()
        signature = sign(private_key, b"certificate")
        assert verify_signature(public_key, b"certificate", signature)
        assert not verify_signature(public_key, b"forged", signature)

    def test_public_key_for(self):
        private_key, public_key = generate_signing_key()
        assert public_key_for(private_key) == public_key

    def test_malformed_public_key_does_not_verify(self):
        assert not verify_signature(b"short", b"data", b"\x00" * 64)

    def test_invalid_private_key(self):
        with pytest.raises(CryptoError):
            sign(b"short", b"data")


class TestKeyAgreement:
    def test_both_sides_agree(self):
        a_key, a_public = generate_exchange_key()
        b_key, b_public = generate_exchange_key()
        assert exchange_shared_secret(a_key, b_public) == exchange_shared_secret(b_key, a_public)

    def test_malformed_peer_key(self):
        key, _ = generate_exchange_key()
        with pytest.raises(CryptoError, match="Key agreement failed"):
            exchange_shared_secret(key, b"short")
