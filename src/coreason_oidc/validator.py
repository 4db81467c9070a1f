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
IdTokenValidator component for validating ID token signatures, claims and hash bindings.
"""

import hashlib
import hmac
import json
import time
from collections.abc import Callable
from typing import Any

from authlib.jose import JsonWebSignature
from authlib.jose.errors import BadSignatureError, JoseError
from opentelemetry import trace
from opentelemetry.trace import Status, StatusCode

from coreason_oidc.config import OIDCClientConfig
from coreason_oidc.discovery import DiscoveryManager
from coreason_oidc.exceptions import (
    AtHashMismatchError,
    AudienceMismatchError,
    AuthTimeMissingError,
    AzpMismatchError,
    AzpMissingError,
    CHashMismatchError,
    HashBindingError,
    IssuerMismatchError,
    KeyNotFoundError,
    MalformedTokenError,
    MaxAgeExceededError,
    MaxAgeMissingError,
    NonceMismatchError,
    NonceMissingError,
    SignatureVerificationError,
    TokenExpiredError,
    TokenNotYetValidError,
    TokenValidationError,
    UnsupportedAlgorithmError,
)
from coreason_oidc.models import JsonWebKeyModel, JsonWebKeySet
from coreason_oidc.pkce import base64url_decode, base64url_encode, verify_challenge
from coreason_oidc.urls import trim_trailing_slash
from coreason_oidc.utils.logger import logger

tracer = trace.get_tracer(__name__)

SUPPORTED_ALGORITHM = "RS256"
MAC_ALGORITHMS = frozenset({"HS256", "HS384", "HS512"})


def decode_jwt(token: str) -> tuple[dict[str, Any], dict[str, Any]]:
    """
    Decodes header and payload of a compact JWS without verifying it.

    Raises:
        MalformedTokenError: If the token is not three base64url segments with JSON objects.
    """
    parts = token.strip().split(".")
    if len(parts) != 3 or not all(parts):
        raise MalformedTokenError("Token must consist of three dot-separated base64url segments")

    try:
        header = json.loads(base64url_decode(parts[0]))
        payload = json.loads(base64url_decode(parts[1]))
    except (ValueError, UnicodeDecodeError) as e:
        raise MalformedTokenError(f"Token is not a valid JWT, could not decode it: {e}") from e

    if not isinstance(header, dict) or not isinstance(payload, dict):
        raise MalformedTokenError("Token header and payload must be JSON objects")

    return header, payload


def _numeric_claim(payload: dict[str, Any], name: str) -> float:
    value = payload.get(name)
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise MalformedTokenError(f"Claim '{name}' is missing or not numeric")
    return float(value)


def _audiences(aud: Any) -> list[str]:
    # The claim may be a space-delimited string or a JSON array
    if isinstance(aud, str):
        return aud.split()
    if isinstance(aud, list):
        return [str(item) for item in aud]
    return []


def _select_key(header: dict[str, Any], jwks: JsonWebKeySet) -> JsonWebKeyModel:
    kid = header.get("kid")
    if kid:
        jwk = jwks.find_by_kid(kid)
        if jwk is None:
            raise KeyNotFoundError(f"No signing key with kid '{kid}'")
        return jwk

    jwk = jwks.find_by_alg(header["alg"])
    if jwk is None:
        raise KeyNotFoundError("Token has no kid and no key with a matching alg was found")
    return jwk


def _verify_signature(token: str, header: dict[str, Any], jwks: JsonWebKeySet) -> None:
    alg = header.get("alg")
    if alg in MAC_ALGORITHMS:
        raise UnsupportedAlgorithmError(f"MAC algorithm '{alg}' is not supported: public clients hold no shared secret")
    if alg != SUPPORTED_ALGORITHM:
        raise UnsupportedAlgorithmError(f"Invalid algorithm '{alg}', only {SUPPORTED_ALGORITHM} is supported")

    jwk = _select_key(header, jwks)

    try:
        JsonWebSignature(algorithms=[SUPPORTED_ALGORITHM]).deserialize_compact(
            token.strip(), jwk.model_dump(exclude_none=True)
        )
    except BadSignatureError as e:
        raise SignatureVerificationError(f"Invalid signature: {e}") from e
    except (JoseError, ValueError) as e:
        # Authlib raises ValueError for key material it cannot import
        raise SignatureVerificationError(f"Unable to verify signature: {e}") from e


def validate_id_token(
    token: str,
    *,
    issuer: str,
    client_id: str,
    jwks: JsonWebKeySet,
    nonce: str | None = None,
    max_age: int | None = None,
    clock_skew: int = 0,
    now: float | None = None,
) -> dict[str, Any]:
    """
    Validates an ID token per OpenID Connect Core 3.1.3.7.

    Args:
        token: The compact ID token.
        issuer: The configured issuer.
        client_id: The client id that must be among the audiences.
        jwks: The signing keys.
        nonce: The nonce sent with the request; its hash must be the token's `nonce` claim.
        max_age: The max_age sent with the request, if any.
        clock_skew: Tolerance in seconds for time-based checks.
        now: Current epoch seconds (defaults to the system clock).

    Returns:
        dict[str, Any]: The validated claims.

    Raises:
        TokenValidationError: A subclass naming the first check that failed.
    """
    current = time.time() if now is None else now
    header, payload = decode_jwt(token)

    # Issuer
    iss = payload.get("iss")
    if not isinstance(iss, str) or trim_trailing_slash(iss) != trim_trailing_slash(issuer):
        raise IssuerMismatchError(f"Invalid issuer, expected {issuer} but got {iss}")

    # Audience and authorized party
    audiences = _audiences(payload.get("aud"))
    if client_id not in audiences:
        raise AudienceMismatchError(f"Invalid audience, expected {client_id} but got {audiences}")
    if len(audiences) > 1:
        azp = payload.get("azp")
        if not azp:
            raise AzpMissingError("azp claim is required when the token has multiple audiences")
        if azp != client_id:
            raise AzpMismatchError(f"Invalid azp claim, expected {client_id} but got {azp}")

    _verify_signature(token, header, jwks)

    exp = _numeric_claim(payload, "exp")
    if exp + clock_skew < current:
        raise TokenExpiredError("Token has expired")

    iat = _numeric_claim(payload, "iat")
    if iat > current + clock_skew:
        raise TokenNotYetValidError("Token is not yet valid")

    if nonce is not None:
        claim = payload.get("nonce")
        if not claim:
            raise NonceMissingError("Nonce is required")
        if not isinstance(claim, str) or not verify_challenge(nonce, claim):
            raise NonceMismatchError("Invalid nonce")

    auth_time = payload.get("auth_time")
    if max_age is not None and auth_time is None:
        raise AuthTimeMissingError("auth_time is required when max_age was requested")
    if max_age is None and auth_time is not None:
        raise MaxAgeMissingError("auth_time was returned although max_age was not requested")
    if max_age is not None:
        if _numeric_claim(payload, "auth_time") + max_age + clock_skew < current:
            raise MaxAgeExceededError("Max age was reached")

    return payload


def left_half_hash(value: str) -> str:
    """base64url of the left-most half of SHA-256(value), as used by `at_hash` and `c_hash`."""
    digest = hashlib.sha256(value.encode("ascii")).digest()
    return base64url_encode(digest[: len(digest) // 2])


def _validate_hash_claim(id_token: str, claim: str, value: str, error_cls: type[HashBindingError]) -> None:
    _, payload = decode_jwt(id_token)
    expected = payload.get(claim)
    # Absent claim: the binding is optional
    if not expected:
        return
    if not isinstance(expected, str) or not hmac.compare_digest(expected, left_half_hash(value)):
        raise error_cls(f"Invalid {claim}")


def validate_at_hash(id_token: str, access_token: str) -> None:
    _validate_hash_claim(id_token, "at_hash", access_token, AtHashMismatchError)


def validate_c_hash(id_token: str, code: str) -> None:
    _validate_hash_claim(id_token, "c_hash", code, CHashMismatchError)


class IdTokenValidator:
    """
    Validates ID tokens against the issuer's current keys.

    Attributes:
        discovery (DiscoveryManager): Source of the key set.
        config (OIDCClientConfig): Issuer, client id and clock skew.
    """

    def __init__(
        self,
        discovery: DiscoveryManager,
        config: OIDCClientConfig,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.discovery = discovery
        self.config = config
        self.clock = clock

    def _anonymize(self, value: str) -> str:
        """
        Anonymizes a value using HMAC-SHA256 with the configured salt.
        """
        return hmac.new(
            self.config.pii_salt.get_secret_value().encode("utf-8"),
            value.encode("utf-8"),
            hashlib.sha256,
        ).hexdigest()

    def _validate(self, token: str, jwks: JsonWebKeySet, nonce: str | None, max_age: int | None) -> dict[str, Any]:
        return validate_id_token(
            token,
            issuer=self.config.issuer,
            client_id=self.config.client_id,
            jwks=jwks,
            nonce=nonce,
            max_age=max_age,
            clock_skew=self.config.clock_skew_seconds,
            now=self.clock(),
        )

    async def validate(self, token: str, nonce: str | None = None, max_age: int | None = None) -> dict[str, Any]:
        """
        Validates the ID token and returns its claims.

        Emits an OpenTelemetry span `validate_id_token`.
        If the signing key is unknown the key set is refreshed once (key rotation).

        Raises:
            TokenValidationError: A subclass naming the failed check.
            KeySetError: If the key set cannot be loaded.
        """
        with tracer.start_as_current_span("validate_id_token") as span:
            try:
                jwks = await self.discovery.get_jwks()
                try:
                    claims = self._validate(token, jwks, nonce, max_age)
                except KeyNotFoundError:
                    logger.info("Signing key not found in current keys, refreshing JWKS and retrying...")
                    span.add_event("refreshing_jwks")
                    jwks = await self.discovery.refresh_jwks()
                    claims = self._validate(token, jwks, nonce, max_age)
            except TokenValidationError as e:
                logger.warning(f"ID token validation failed: {type(e).__name__}: {e}")
                span.record_exception(e)
                span.set_status(Status(StatusCode.ERROR, str(e)))
                raise

            user_hash = self._anonymize(str(claims.get("sub", "unknown")))
            logger.debug(f"ID token validated for user {user_hash}")
            span.set_attribute("enduser.id", user_hash)
            span.set_status(Status(StatusCode.OK))
            return claims
