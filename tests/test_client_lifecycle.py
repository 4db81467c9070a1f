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
Resource handling of OIDCClient: the async context manager and the default httpx transport.
"""

from typing import Any, Dict

import httpx
import pytest

from coreason_oidc.client import OIDCClient
from coreason_oidc.config import OIDCClientConfig
from coreason_oidc.models import AuthenticationState
from coreason_oidc.transport import HttpxHttpService


@pytest.mark.asyncio
async def test_context_manager_preloads_discovery(config: OIDCClientConfig, storage: Any, idp: Any) -> None:
    async with OIDCClient(config, storage=storage, http=idp) as client:
        assert client.discovery.is_loaded
        assert client.auth_state is AuthenticationState.UNAUTHENTICATED
    assert idp.get.await_count == 2


@pytest.mark.asyncio
async def test_context_manager_without_preload(config: OIDCClientConfig, storage: Any, idp: Any) -> None:
    lazy = config.model_copy(update={"preload_discovery_document": False})
    async with OIDCClient(lazy, storage=storage, http=idp) as client:
        assert not client.discovery.is_loaded
    idp.get.assert_not_awaited()


@pytest.mark.asyncio
async def test_internal_client_is_closed(config: OIDCClientConfig) -> None:
    lazy = config.model_copy(update={"preload_discovery_document": False, "http_timeout": 3.0})
    client = OIDCClient(lazy)

    assert isinstance(client.http, HttpxHttpService)
    assert client._client is not None
    assert client._client.timeout.read == 3.0

    async with client:
        pass

    assert client._client.is_closed


@pytest.mark.asyncio
async def test_external_client_is_used_and_left_open(
    config: OIDCClientConfig, discovery_document: Dict[str, Any], public_jwk: Dict[str, Any]
) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path == "/.well-known/openid-configuration":
            return httpx.Response(200, json=discovery_document)
        if request.url.path == "/.well-known/jwks.json":
            return httpx.Response(200, json={"keys": [public_jwk]})
        return httpx.Response(404, json={"error": "not_found"})

    external = httpx.AsyncClient(transport=httpx.MockTransport(handler))

    async with OIDCClient(config, client=external) as client:
        assert client.discovery.token_endpoint == "https://idp.test/oauth/token"

    assert not external.is_closed
    await external.aclose()


@pytest.mark.asyncio
async def test_injected_http_service_skips_httpx(config: OIDCClientConfig, idp: Any) -> None:
    client = OIDCClient(config, http=idp)
    assert client.http is idp
    assert client._client is None
    async with client:
        pass
