# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.
#
# Source Code: https://github.com/CoReason-AI/coreason_oidc

import time
from typing import Any, Callable, Dict
from unittest.mock import AsyncMock

import pytest
from authlib.jose import JsonWebKey, jwt

from coreason_oidc.config import OIDCClientConfig
from coreason_oidc.exceptions import HttpRequestError
from coreason_oidc.models import JsonWebKeySet
from coreason_oidc.storage import MemoryStorage
from coreason_oidc.validator import left_half_hash

ISSUER = "https://idp.test"
CLIENT_ID = "c1"
REDIRECT_URI = "https://app/cb"
JWKS_URI = f"{ISSUER}/.well-known/jwks.json"
TOKEN_ENDPOINT = f"{ISSUER}/oauth/token"
AUTHORIZATION_ENDPOINT = f"{ISSUER}/authorize"
END_SESSION_ENDPOINT = f"{ISSUER}/logout"

TokenFactory = Callable[..., str]


@pytest.fixture(scope="session")
def rsa_key() -> Any:
    return JsonWebKey.generate_key("RSA", 2048, is_private=True)


@pytest.fixture(scope="session")
def other_rsa_key() -> Any:
    return JsonWebKey.generate_key("RSA", 2048, is_private=True)


@pytest.fixture
def public_jwk(rsa_key: Any) -> Dict[str, Any]:
    return {**rsa_key.as_dict(is_private=False), "use": "sig", "alg": "RS256"}


@pytest.fixture
def jwks(public_jwk: Dict[str, Any]) -> JsonWebKeySet:
    return JsonWebKeySet.model_validate({"keys": [public_jwk]})


@pytest.fixture
def discovery_document() -> Dict[str, Any]:
    return {
        "issuer": ISSUER,
        "authorization_endpoint": AUTHORIZATION_ENDPOINT,
        "token_endpoint": TOKEN_ENDPOINT,
        "jwks_uri": JWKS_URI,
        "end_session_endpoint": END_SESSION_ENDPOINT,
        "userinfo_endpoint": f"{ISSUER}/userinfo",
        "scopes_supported": ["openid", "profile", "email", "offline_access"],
    }


@pytest.fixture
def config() -> OIDCClientConfig:
    return OIDCClientConfig(
        client_id=CLIENT_ID,
        redirect_uri=REDIRECT_URI,
        issuer=ISSUER,
        scope="openid profile",
    )


@pytest.fixture
def storage() -> MemoryStorage:
    return MemoryStorage()


@pytest.fixture
def token_factory(rsa_key: Any) -> TokenFactory:
    """
    Returns a function issuing RS256 ID tokens with sensible default claims.

    Keyword arguments override claims; a value of None removes the claim.
    `key` and `headers` select the signing key and the JOSE header.
    """

    def issue(key: Any = None, headers: Dict[str, Any] | None = None, **overrides: Any) -> str:
        signing_key = key if key is not None else rsa_key
        if headers is None:
            headers = {"alg": "RS256", "kid": signing_key.as_dict()["kid"]}
        now = int(time.time())
        claims: Dict[str, Any] = {
            "iss": ISSUER,
            "aud": CLIENT_ID,
            "sub": "user123",
            "exp": now + 3600,
            "iat": now,
        }
        claims.update(overrides)
        claims = {name: value for name, value in claims.items() if value is not None}
        token = jwt.encode(headers, claims, signing_key)
        return token.decode("utf-8")

    return issue


class FakeIdP:
    """
    In-memory HttpService standing in for an identity provider.

    Serves the discovery document and JWKS on GET and `token_response` on POST.
    `get` and `post` are AsyncMocks so tests can assert on calls.
    """

    def __init__(self, document: Dict[str, Any], jwks: Dict[str, Any]) -> None:
        self.document = document
        self.jwks = jwks
        self.token_response: Any = None
        self.get = AsyncMock(side_effect=self._get)
        self.post = AsyncMock(side_effect=self._post)

    def _get(self, url: str, headers: Dict[str, str] | None = None) -> Any:
        if url == f"{ISSUER}/.well-known/openid-configuration":
            return self.document
        if url == self.document["jwks_uri"]:
            return self.jwks
        raise HttpRequestError(f"GET {url} returned status 404", status_code=404)

    def _post(self, url: str, body: str, headers: Dict[str, str] | None = None) -> Any:
        if isinstance(self.token_response, Exception):
            raise self.token_response
        return self.token_response

    @property
    def token_calls(self) -> int:
        return self.post.await_count


@pytest.fixture
def idp(discovery_document: Dict[str, Any], public_jwk: Dict[str, Any]) -> FakeIdP:
    return FakeIdP(discovery_document, {"keys": [public_jwk]})


@pytest.fixture
def token_response_factory(token_factory: TokenFactory) -> Callable[..., Dict[str, Any]]:
    """Builds a token endpoint response whose ID token is bound to its access token."""

    def build(
        nonce: str | None,
        access_token: str = "access-1",
        refresh_token: str | None = "refresh-1",
        **claims: Any,
    ) -> Dict[str, Any]:
        id_token = token_factory(nonce=nonce, at_hash=left_half_hash(access_token), **claims)
        response: Dict[str, Any] = {
            "access_token": access_token,
            "id_token": id_token,
            "token_type": "Bearer",
            "expires_in": 3600,
            "scope": "openid profile",
        }
        if refresh_token is not None:
            response["refresh_token"] = refresh_token
        return response

    return build
