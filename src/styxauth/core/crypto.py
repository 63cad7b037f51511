"""
styxauth Cryptographic Operations

Wrapper around the cryptography library for the handshake schemes.
Uses established libraries - NO custom cryptographic implementations.

Security:
- Constant-time comparisons for MACs
- Keys derived with PBKDF2 / HKDF, never used raw
"""

from __future__ import annotations

import hashlib
import hmac
import secrets
from typing import Tuple

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric.ed25519 import (
    Ed25519PrivateKey,
    Ed25519PublicKey,
)
from cryptography.hazmat.primitives.asymmetric.x25519 import (
    X25519PrivateKey,
    X25519PublicKey,
)
from cryptography.hazmat.primitives.kdf.hkdf import HKDF
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from styxauth.core.exceptions import CryptoError


KEY_LENGTH = 32
PBKDF2_ITERATIONS = 4096


# =============================================================================
# KEY DERIVATION
# =============================================================================


def derive_key_from_password(
    password: str,
    salt: bytes,
    length: int = KEY_LENGTH,
    iterations: int = PBKDF2_ITERATIONS,
) -> bytes:
    """
    Derive a shared key from a password using PBKDF2-SHA256.

    Args:
        password: Password of the principal
        salt: Salt binding the key to protocol, domain and principal
        length: Key length in bytes
        iterations: PBKDF2 iteration count

    Returns:
        Derived key material
    """
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=length,
        salt=salt,
        iterations=iterations,
    )
    return kdf.derive(password.encode("utf-8"))


def derive_session_secret(key_material: bytes, info: bytes, length: int = KEY_LENGTH) -> bytes:
    """Expand handshake key material into a session secret (HKDF-SHA256)."""
    hkdf = HKDF(
        algorithm=hashes.SHA256(),
        length=length,
        salt=None,
        info=info,
    )
    return hkdf.derive(key_material)


def generate_challenge(length: int = 8) -> bytes:
    """Generate a random challenge."""
    return secrets.token_bytes(length)


# =============================================================================
# MESSAGE AUTHENTICATION
# =============================================================================


def hmac_sha256(key: bytes, data: bytes) -> bytes:
    """Compute HMAC-SHA256."""
    return hmac.new(key, data, hashlib.sha256).digest()


def verify_hmac(key: bytes, data: bytes, expected_tag: bytes) -> bool:
    """Verify an HMAC-SHA256 tag in constant time."""
    return hmac.compare_digest(hmac_sha256(key, data), expected_tag)


def constant_time_compare(a: bytes, b: bytes) -> bool:
    return hmac.compare_digest(a, b)


# =============================================================================
# SIGNATURES (Ed25519)
# =============================================================================


def generate_signing_key() -> Tuple[bytes, bytes]:
    """
    Generate an Ed25519 key pair.

    Returns:
        (private_key_raw, public_key_raw), 32 bytes each
    """
    private_key = Ed25519PrivateKey.generate()
    return _private_raw(private_key), _public_raw(private_key.public_key())


def public_key_for(private_key_raw: bytes) -> bytes:
    """Return the raw Ed25519 public key for a raw private key."""
    return _public_raw(_load_signing_key(private_key_raw).public_key())


def sign(private_key_raw: bytes, data: bytes) -> bytes:
    return _load_signing_key(private_key_raw).sign(data)


def verify_signature(public_key_raw: bytes, data: bytes, signature: bytes) -> bool:
    """Return True if ``signature`` over ``data`` verifies with the public key."""
    try:
        Ed25519PublicKey.from_public_bytes(public_key_raw).verify(signature, data)
    except (InvalidSignature, ValueError):
        return False
    return True


# =============================================================================
# KEY AGREEMENT (X25519)
# =============================================================================


def generate_exchange_key() -> Tuple[X25519PrivateKey, bytes]:
    """Generate an ephemeral X25519 key; returns (private_key, public_raw)."""
    private_key = X25519PrivateKey.generate()
    public_raw = private_key.public_key().public_bytes(
        encoding=serialization.Encoding.Raw,
        format=serialization.PublicFormat.Raw,
    )
    return private_key, public_raw


def exchange_shared_secret(private_key: X25519PrivateKey, peer_public_raw: bytes) -> bytes:
    """Compute the X25519 shared secret with a peer's raw public key."""
    try:
        peer = X25519PublicKey.from_public_bytes(peer_public_raw)
        return private_key.exchange(peer)
    except ValueError as e:
        raise CryptoError(f"Key agreement failed: {e}") from e


def _load_signing_key(private_key_raw: bytes) -> Ed25519PrivateKey:
    try:
        return Ed25519PrivateKey.from_private_bytes(private_key_raw)
    except ValueError as e:
        raise CryptoError(f"Invalid signing key: {e}") from e


def _private_raw(private_key: Ed25519PrivateKey) -> bytes:
    return private_key.private_bytes(
        encoding=serialization.Encoding.Raw,
        format=serialization.PrivateFormat.Raw,
        encryption_algorithm=serialization.NoEncryption(),
    )


def _public_raw(public_key: Ed25519PublicKey) -> bytes:
    return public_key.public_bytes(
        encoding=serialization.Encoding.Raw,
        format=serialization.PublicFormat.Raw,
    )
