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
Auth0 preset: audience-scoped access tokens and the non-standard `/v2/logout` endpoint.
"""

from coreason_oidc.client import OIDCClient
from coreason_oidc.config import AutoDiscovery, OIDCClientConfig
from coreason_oidc.urls import QueryParams, trim_trailing_slash

AUTH0_LOGOUT_PATH = "/v2/logout"


def auth0_config(
    client_id: str,
    issuer: str,
    redirect_uri: str,
    post_logout_redirect_uri: str,
    audience: str,
    scope: str = "openid profile email",
    **overrides: object,
) -> OIDCClientConfig:
    """
    Builds an OIDCClientConfig for an Auth0 tenant.

    Args:
        client_id: The Auth0 application's client id.
        issuer: The tenant URL (e.g. https://tenant.eu.auth0.com/).
        redirect_uri: The callback URL registered with Auth0.
        post_logout_redirect_uri: Allowed logout URL registered with Auth0.
        audience: The API identifier the access token is issued for.
        scope: Requested scopes.
        **overrides: Any further OIDCClientConfig fields.

    Returns:
        OIDCClientConfig: Configuration with auto-discovery, preloading and the Auth0 logout endpoint.
    """
    return OIDCClientConfig(
        client_id=client_id,
        issuer=issuer,
        redirect_uri=redirect_uri,
        post_logout_redirect_uri=post_logout_redirect_uri,
        scope=scope,
        discovery=AutoDiscovery(),
        preload_discovery_document=True,
        query_params={"audience": audience},
        end_session_endpoint=f"{trim_trailing_slash(issuer)}{AUTH0_LOGOUT_PATH}",
        **overrides,
    )


class Auth0OIDCClient(OIDCClient):
    """OIDCClient whose logout request carries the `client_id` and `returnTo` parameters Auth0 expects."""

    async def sign_out(self, extra_params: QueryParams | None = None) -> str | None:
        params: dict[str, str | int | bool] = {"client_id": self.config.client_id}
        if self.config.post_logout_redirect_uri:
            params["returnTo"] = self.config.post_logout_redirect_uri
        if extra_params:
            params.update(extra_params)
        return await super().sign_out(params)
