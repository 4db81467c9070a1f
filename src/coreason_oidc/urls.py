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
Construction of the URLs and request bodies of the authorization code flow.
"""

from collections.abc import Mapping
from typing import TYPE_CHECKING
from urllib.parse import urlencode

from coreason_oidc.exceptions import EndSessionNotSupportedError

if TYPE_CHECKING:
    from coreason_oidc.config import OIDCClientConfig

QueryParams = Mapping[str, str | int | bool]

DISCOVERY_PATH = "/.well-known/openid-configuration"
CODE_CHALLENGE_METHOD = "S256"


def trim_trailing_slash(value: str) -> str:
    return value[:-1] if value.endswith("/") else value


def build_discovery_url(issuer: str) -> str:
    return f"{trim_trailing_slash(issuer)}{DISCOVERY_PATH}"


def _stringify(value: str | int | bool) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def _append_query(url: str, params: QueryParams) -> str:
    if not params:
        return url
    query = urlencode([(key, _stringify(value)) for key, value in params.items()])
    separator = "&" if "?" in url else "?"
    return f"{url}{separator}{query}"


def build_auth_params(config: "OIDCClientConfig", extra_params: QueryParams | None = None) -> dict[str, str]:
    """
    Base authorization parameters from the configuration.

    Precedence (later wins): configuration, `config.query_params`, `extra_params`.
    """
    params: dict[str, str] = {
        "response_type": config.response_type,
        "client_id": config.client_id,
        "redirect_uri": config.redirect_uri,
        "scope": config.scope,
    }
    if config.max_age is not None:
        params["max_age"] = str(config.max_age)
    params.update(config.query_params)
    if extra_params:
        params.update({key: _stringify(value) for key, value in extra_params.items()})
    return params


def build_authorization_url(
    config: "OIDCClientConfig",
    authorization_endpoint: str,
    params: QueryParams,
    code_challenge: str | None = None,
) -> str:
    """
    Builds the authorization request URL.

    Args:
        config: The client configuration.
        authorization_endpoint: The resolved authorization endpoint.
        params: Authorization parameters, including `state` and the hashed `nonce`.
        code_challenge: The PKCE S256 challenge, if any.

    Returns:
        str: The URL to send the user agent to.
    """
    query: dict[str, str | int | bool] = dict(params)

    if code_challenge:
        query["code_challenge"] = code_challenge
        query["code_challenge_method"] = CODE_CHALLENGE_METHOD

    # Most providers only issue a refresh token after an explicit consent screen.
    scopes = str(query.get("scope", "")).split()
    if not config.disable_refresh_token_consent and "offline_access" in scopes and "prompt" not in query:
        query["prompt"] = "consent"

    return _append_query(authorization_endpoint, query)


def build_logout_url(end_session_endpoint: str | None, params: QueryParams | None = None) -> str:
    """
    Builds the RP-initiated logout URL.

    Raises:
        EndSessionNotSupportedError: If the IdP has no end-session endpoint.
    """
    if not end_session_endpoint:
        raise EndSessionNotSupportedError("End session endpoint is not set; logout at the IdP is unsupported.")
    return _append_query(end_session_endpoint, params or {})


def build_token_request_body(config: "OIDCClientConfig", code: str, code_verifier: str) -> str:
    return urlencode(
        {
            "grant_type": "authorization_code",
            "code": code,
            "code_verifier": code_verifier,
            "redirect_uri": config.redirect_uri,
            "client_id": config.client_id,
        }
    )


def build_refresh_token_request_body(config: "OIDCClientConfig", refresh_token: str) -> str:
    return urlencode(
        {
            "grant_type": "refresh_token",
            "refresh_token": refresh_token,
            "client_id": config.client_id,
            "scope": config.scope,
        }
    )
