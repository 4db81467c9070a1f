# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.
#
# Source Code: https://github.com/CoReason-AI/coreason_oidc

"""
Random token and PKCE (RFC 7636, S256) generation.
"""

import base64
import binascii
import hashlib
import hmac

from coreason_oidc.adapters import RandomBytes

DEFAULT_VERIFIER_LENGTH = 32


def base64url_encode(data: bytes) -> str:
    """Base64url-encodes `data` without padding."""
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode("ascii")


def base64url_decode(value: str) -> bytes:
    """
    Decodes an unpadded base64url string.

    Raises:
        ValueError: If the value is not valid base64url.
    """
    padded = value + "=" * (-len(value) % 4)
    try:
        return base64.urlsafe_b64decode(padded.encode("ascii"))
    except (binascii.Error, UnicodeEncodeError) as e:
        raise ValueError(f"Invalid base64url value: {e}") from e


def sha256(value: str) -> bytes:
    return hashlib.sha256(value.encode("ascii")).digest()


def create_nonce(random_bytes: RandomBytes, length: int) -> str:
    """
    Creates a URL-safe random token from `length` random bytes.

    Used for the `state` parameter, the nonce and the PKCE verifier.
    """
    data = random_bytes(length)
    if len(data) != length:
        raise ValueError(f"Random source returned {len(data)} bytes, expected {length}")
    return base64url_encode(data)


def create_verifier_challenge_pair(
    random_bytes: RandomBytes, length: int = DEFAULT_VERIFIER_LENGTH
) -> tuple[str, str]:
    """
    Creates a verifier and its S256 challenge.

    Args:
        random_bytes: The random byte source.
        length: Number of random bytes behind the verifier.

    Returns:
        tuple[str, str]: `(verifier, base64url(SHA-256(verifier)))`.
    """
    verifier = create_nonce(random_bytes, length)
    challenge = base64url_encode(sha256(verifier))
    return verifier, challenge


def verify_challenge(verifier: str, challenge: str) -> bool:
    """
    Checks that `challenge` is the S256 challenge of `verifier`.

    The challenge string is compared with the canonical encoding of the digest, in constant time.
    Decoding it instead would ignore the unused low bits of its last character.
    """
    try:
        expected = base64url_encode(sha256(verifier))
    except UnicodeEncodeError:
        return False
    return hmac.compare_digest(expected.encode("ascii"), challenge.encode("utf-8"))
