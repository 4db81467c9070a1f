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
Data models for the coreason-oidc package.
"""

import time
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class AuthenticationState(StrEnum):
    UNAUTHENTICATED = "unauthenticated"
    AUTHENTICATING = "authenticating"
    AUTHENTICATED = "authenticated"


class DiscoveryDocument(BaseModel):
    """
    OIDC Configuration from .well-known/openid-configuration.
    """

    model_config = ConfigDict(frozen=True, extra="ignore")

    issuer: str = Field(..., description="The OIDC issuer URL.")
    authorization_endpoint: str = Field(..., description="The authorization endpoint URL.")
    token_endpoint: str = Field(..., description="The token endpoint URL.")
    jwks_uri: str = Field(..., description="The URL to the JWKS.")
    end_session_endpoint: str | None = Field(default=None, description="The RP-initiated logout endpoint URL.")
    userinfo_endpoint: str | None = Field(default=None, description="The UserInfo endpoint URL.")


class JsonWebKeyModel(BaseModel):
    """A single JWK. Unknown members are preserved so they reach the key importer untouched."""

    model_config = ConfigDict(frozen=True, extra="allow")

    kty: str
    use: str | None = None
    alg: str | None = None
    kid: str | None = None
    n: str | None = None
    e: str | None = None
    x5c: list[str] | None = None
    x5t: str | None = None


class JsonWebKeySet(BaseModel):
    model_config = ConfigDict(frozen=True, extra="ignore")

    keys: list[JsonWebKeyModel] = Field(default_factory=list)

    def find_by_kid(self, kid: str) -> JsonWebKeyModel | None:
        return next((key for key in self.keys if key.kid == kid), None)

    def find_by_alg(self, alg: str) -> JsonWebKeyModel | None:
        return next((key for key in self.keys if key.alg == alg), None)


class TokenResponse(BaseModel):
    """
    Response from the token endpoint.

    Attributes:
        access_token (str): The access token issued by the authorization server.
        refresh_token (str | None): The refresh token, if issued.
        id_token (str | None): The ID token, if issued.
        token_type (str): The type of the token (e.g. "Bearer").
        expires_in (int | None): The lifetime in seconds of the access token.
        scope (str | None): The granted scope, if the server reports it.
    """

    model_config = ConfigDict(extra="ignore")

    access_token: str
    refresh_token: str | None = None
    id_token: str | None = None
    token_type: str = "Bearer"
    expires_in: int | None = None
    scope: str | None = None


class FlowState(BaseModel):
    """
    The transient data of one in-flight authorization request.

    Created by sign-in, consumed exactly once by the callback.
    """

    model_config = ConfigDict(frozen=True)

    state: str
    nonce: str
    code_verifier: str
    send_user_back_to: str | None = None
    max_age: int | None = None
    created_at: float = Field(default_factory=time.time)

    def is_expired(self, ttl: float, now: float | None = None) -> bool:
        current = time.time() if now is None else now
        return current - self.created_at > ttl


class Session(BaseModel):
    """
    The authenticated result of a successful callback or refresh.

    Tokens are redacted from `repr()` so a session can be logged safely.
    """

    model_config = ConfigDict(frozen=True)

    access_token: str
    id_token: str
    refresh_token: str | None = None
    expires_in: int | None = None
    expires_at: float | None = None
    scope: str | None = None
    token_type: str = "Bearer"
    user: dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def from_token_response(
        cls,
        response: TokenResponse,
        claims: dict[str, Any],
        refresh_token: str | None = None,
        now: float | None = None,
    ) -> "Session":
        issued_at = time.time() if now is None else now
        return cls(
            access_token=response.access_token,
            id_token=response.id_token,
            refresh_token=response.refresh_token or refresh_token,
            expires_in=response.expires_in,
            expires_at=issued_at + response.expires_in if response.expires_in is not None else None,
            scope=response.scope,
            token_type=response.token_type,
            user=claims,
        )

    def __repr__(self) -> str:
        return (
            f"Session(access_token='<REDACTED>', "
            f"id_token='<REDACTED>', "
            f"refresh_token={'<REDACTED>' if self.refresh_token else None!r}, "
            f"expires_at={self.expires_at!r}, "
            f"scope={self.scope!r}, "
            f"token_type={self.token_type!r})"
        )

    def __str__(self) -> str:
        return self.__repr__()


class SessionRecord(BaseModel):
    """
    Persisted envelope around a Session.

    Keeps the nonce and max_age the session was issued against so its ID token can be
    re-validated after the flow state has been discarded.
    """

    model_config = ConfigDict(frozen=True)

    session: Session
    nonce: str | None = None
    max_age: int | None = None
