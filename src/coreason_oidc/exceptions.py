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
Custom exceptions for the coreason-oidc package.
"""


class CoreasonOIDCError(Exception):
    """Base exception for all coreason-oidc errors."""


# Discovery


class DiscoveryError(CoreasonOIDCError):
    """Raised when the discovery document cannot be obtained or trusted."""


class DiscoveryFetchError(DiscoveryError):
    """Raised when fetching the discovery document fails."""


class DiscoveryIssuerMismatchError(DiscoveryError):
    """Raised when the discovery document's issuer differs from the configured issuer."""


class DiscoveryNotLoadedError(DiscoveryError):
    """Raised when an operation needs resolved endpoints before discovery has been loaded."""


# Keys


class KeySetError(CoreasonOIDCError):
    """Raised when the JSON Web Key Set cannot be obtained or searched."""


class JWKSFetchError(KeySetError):
    """Raised when fetching the JWKS fails."""


# ID token validation


class TokenValidationError(CoreasonOIDCError):
    """Base class for every ID token validation failure."""


class MalformedTokenError(TokenValidationError):
    """Raised when the token is not three base64url segments with JSON header and payload."""


class IssuerMismatchError(TokenValidationError):
    """Raised when the token's `iss` claim does not match the configured issuer."""


class AudienceMismatchError(TokenValidationError):
    """Raised when the token's audience does not contain the client id."""


class AzpMissingError(TokenValidationError):
    """Raised when a multi-audience token has no `azp` claim."""


class AzpMismatchError(TokenValidationError):
    """Raised when the `azp` claim is not the client id."""


class UnsupportedAlgorithmError(TokenValidationError):
    """Raised when the token is signed with anything but RS256."""


class KeyNotFoundError(TokenValidationError, KeySetError):
    """Raised when no key in the key set matches the token's `kid` or `alg`."""


class SignatureVerificationError(TokenValidationError):
    """Raised when the token's signature cannot be verified."""


class TokenExpiredError(TokenValidationError):
    """Raised when the provided token has expired."""


class TokenNotYetValidError(TokenValidationError):
    """Raised when the token's `iat` lies in the future."""


class NonceMissingError(TokenValidationError):
    """Raised when a nonce was expected but the token has none."""


class NonceMismatchError(TokenValidationError):
    """Raised when the token's nonce does not match the one sent with the request."""


class AuthTimeMissingError(TokenValidationError):
    """Raised when max_age was requested but the token has no `auth_time`."""


class MaxAgeMissingError(TokenValidationError):
    """Raised when the token carries `auth_time` although no max_age was requested."""


class MaxAgeExceededError(TokenValidationError):
    """Raised when `auth_time + max_age` lies in the past."""


class HashBindingError(TokenValidationError):
    """Raised when a hash claim does not bind the ID token to its companion value."""


class AtHashMismatchError(HashBindingError):
    """Raised when `at_hash` does not match the access token."""


class CHashMismatchError(HashBindingError):
    """Raised when `c_hash` does not match the authorization code."""


# Flow state


class FlowStateError(CoreasonOIDCError):
    """Raised when the authorization response cannot be tied to a pending sign-in."""


class NoFlowStateError(FlowStateError):
    """Raised when a callback arrives without a matching sign-in."""


class FlowStateExpiredError(FlowStateError):
    """Raised when the pending sign-in is older than the configured TTL."""


class MissingStateError(FlowStateError):
    """Raised when the callback URL has no `state` parameter."""


class StateMismatchError(FlowStateError):
    """Raised when the returned `state` differs from the stored one."""


class MissingCodeError(FlowStateError):
    """Raised when the callback URL has no `code` parameter."""


class AuthorizationServerError(FlowStateError):
    """
    Raised when the authorization server reports an error in the callback.

    Attributes:
        error (str): The OAuth error code (e.g. `access_denied`).
        error_description (str | None): Human-readable description, if sent.
        error_uri (str | None): Link to error documentation, if sent.
    """

    def __init__(self, error: str, error_description: str | None = None, error_uri: str | None = None) -> None:
        self.error = error
        self.error_description = error_description
        self.error_uri = error_uri
        message = f"Authorization server returned error '{error}'"
        if error_description:
            message = f"{message}: {error_description}"
        super().__init__(message)


# Session


class SessionError(CoreasonOIDCError):
    """Raised when a session operation cannot proceed."""


class NoSessionError(SessionError):
    """Raised when an operation requires a stored session and there is none."""


class NoRefreshTokenError(SessionError):
    """Raised when refreshing is requested but the session has no refresh token."""


# Configuration


class ConfigurationError(CoreasonOIDCError):
    """Raised when the configuration does not support the requested operation."""


class EndSessionNotSupportedError(ConfigurationError):
    """Raised when logout at the IdP is requested without an end-session endpoint."""


# Capabilities


class StorageError(CoreasonOIDCError):
    """Raised when the storage capability fails or returns unusable data."""


class StorageCorruptedError(StorageError):
    """Raised when a stored value cannot be parsed back into its model."""


class HttpRequestError(CoreasonOIDCError):
    """
    Raised when an HTTP request made through the HTTP capability fails.

    Attributes:
        status_code (int | None): The response status, if a response was received.
        error (str | None): OAuth `error` field from the response body, if present.
        error_description (str | None): OAuth `error_description` field, if present.
    """

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        error: str | None = None,
        error_description: str | None = None,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.error = error
        self.error_description = error_description


class OversizedResponseError(HttpRequestError):
    """Raised when an HTTP response is too large."""
