# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.
#
# Source Code: https://github.com/CoReason-AI/coreason_oidc

from typing import Any, Dict
import anyio
import pytest

from coreason_oidc.config import OIDCClientConfig, StaticDiscovery
from coreason_oidc.discovery import DiscoveryManager, DiscoveryStatus
from coreason_oidc.exceptions import (
    DiscoveryFetchError,
    DiscoveryIssuerMismatchError,
    DiscoveryNotLoadedError,
    HttpRequestError,
    JWKSFetchError,
)
from coreason_oidc.models import DiscoveryDocument, JsonWebKeySet
from coreason_oidc.storage import KEY_PREFIX, MemoryStorage, SessionStore, StorageKey

WELL_KNOWN = "https://idp.test/.well-known/openid-configuration"


def make_manager(config: OIDCClientConfig, storage: MemoryStorage, idp: Any, **kwargs: Any) -> DiscoveryManager:
    return DiscoveryManager(config, SessionStore(storage), idp, **kwargs)


@pytest.mark.asyncio
async def test_load_fetches_and_caches(config: OIDCClientConfig, storage: MemoryStorage, idp: Any) -> None:
    manager = make_manager(config, storage, idp)
    assert manager.status is DiscoveryStatus.NOT_LOADED

    document = await manager.load()

    assert manager.status is DiscoveryStatus.LOADED
    assert document.token_endpoint == "https://idp.test/oauth/token"
    assert manager.authorization_endpoint == "https://idp.test/authorize"
    assert manager.end_session_endpoint == "https://idp.test/logout"
    assert len(manager.jwks.keys) == 1
    assert [call.args[0] for call in idp.get.await_args_list] == [WELL_KNOWN, "https://idp.test/.well-known/jwks.json"]
    assert sorted(storage.keys()) == [f"{KEY_PREFIX}discovery_document", f"{KEY_PREFIX}jwks"]


@pytest.mark.asyncio
async def test_load_is_idempotent(config: OIDCClientConfig, storage: MemoryStorage, idp: Any) -> None:
    manager = make_manager(config, storage, idp)
    await manager.load()
    await manager.load()
    assert idp.get.await_count == 2


@pytest.mark.asyncio
async def test_concurrent_loads_fetch_once(config: OIDCClientConfig, storage: MemoryStorage, idp: Any) -> None:
    manager = make_manager(config, storage, idp)

    async with anyio.create_task_group() as tg:
        for _ in range(5):
            tg.start_soon(manager.load)

    assert idp.get.await_count == 2


@pytest.mark.asyncio
async def test_load_uses_cache(
    config: OIDCClientConfig, storage: MemoryStorage, idp: Any, discovery_document: Dict[str, Any]
) -> None:
    store = SessionStore(storage)
    await store.set(StorageKey.DISCOVERY_DOCUMENT, DiscoveryDocument.model_validate(discovery_document))
    await store.set(StorageKey.JWKS, JsonWebKeySet.model_validate(idp.jwks))

    manager = DiscoveryManager(config, store, idp)
    await manager.load()

    idp.get.assert_not_awaited()
    assert manager.is_loaded


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "configured, reported",
    [("https://idp.test", "https://idp.test/"), ("https://idp.test/", "https://idp.test")],
)
async def test_issuer_trailing_slash_is_equivalent(
    storage: MemoryStorage, idp: Any, configured: str, reported: str
) -> None:
    idp.document["issuer"] = reported
    config = OIDCClientConfig(client_id="c1", redirect_uri="https://app/cb", issuer=configured)
    document = await make_manager(config, storage, idp).load()
    assert document.issuer == reported


@pytest.mark.asyncio
@pytest.mark.parametrize("reported", ["https://evil.test", "https://idp.test/tenant", "http://idp.test"])
async def test_issuer_mismatch_is_not_cached(
    config: OIDCClientConfig, storage: MemoryStorage, idp: Any, reported: str
) -> None:
    idp.document["issuer"] = reported
    manager = make_manager(config, storage, idp)

    with pytest.raises(DiscoveryIssuerMismatchError, match="Invalid issuer"):
        await manager.load()

    assert manager.status is DiscoveryStatus.NOT_LOADED
    assert storage.keys() == []


@pytest.mark.asyncio
async def test_cached_document_is_revalidated(
    config: OIDCClientConfig, storage: MemoryStorage, idp: Any, discovery_document: Dict[str, Any]
) -> None:
    store = SessionStore(storage)
    poisoned = DiscoveryDocument.model_validate({**discovery_document, "issuer": "https://evil.test"})
    await store.set(StorageKey.DISCOVERY_DOCUMENT, poisoned)

    with pytest.raises(DiscoveryIssuerMismatchError):
        await DiscoveryManager(config, store, idp).load()

    assert await store.get(StorageKey.DISCOVERY_DOCUMENT, DiscoveryDocument) is None
    idp.get.assert_not_awaited()


@pytest.mark.asyncio
async def test_fetched_document_discards_cached_keys(
    config: OIDCClientConfig, storage: MemoryStorage, idp: Any, discovery_document: Dict[str, Any], other_rsa_key: Any
) -> None:
    store = SessionStore(storage)
    poisoned = DiscoveryDocument.model_validate({**discovery_document, "issuer": "https://evil.test"})
    await store.set(StorageKey.DISCOVERY_DOCUMENT, poisoned)
    stale = JsonWebKeySet.model_validate({"keys": [{**other_rsa_key.as_dict(is_private=False), "alg": "RS256"}]})
    await store.set(StorageKey.JWKS, stale)
    manager = DiscoveryManager(config, store, idp)

    with pytest.raises(DiscoveryIssuerMismatchError):
        await manager.load()
    await manager.load()

    assert [call.args[0] for call in idp.get.await_args_list] == [WELL_KNOWN, "https://idp.test/.well-known/jwks.json"]
    assert manager.jwks == JsonWebKeySet.model_validate(idp.jwks)
    assert await store.get(StorageKey.JWKS, JsonWebKeySet) == manager.jwks


@pytest.mark.asyncio
async def test_corrupted_cache_is_refetched(config: OIDCClientConfig, idp: Any) -> None:
    storage = MemoryStorage({f"{KEY_PREFIX}discovery_document": "garbage"})
    manager = make_manager(config, storage, idp)

    await manager.load()

    assert manager.is_loaded
    assert idp.get.await_args_list[0].args[0] == WELL_KNOWN


@pytest.mark.asyncio
async def test_fetch_failure(config: OIDCClientConfig, storage: MemoryStorage, idp: Any) -> None:
    idp.get.side_effect = HttpRequestError("GET failed", status_code=500)
    manager = make_manager(config, storage, idp)

    with pytest.raises(DiscoveryFetchError, match="Failed to fetch") as exc_info:
        await manager.load()

    assert isinstance(exc_info.value.__cause__, HttpRequestError)
    assert manager.status is DiscoveryStatus.NOT_LOADED
    assert idp.get.await_count == 1


@pytest.mark.asyncio
async def test_invalid_document(config: OIDCClientConfig, storage: MemoryStorage, idp: Any) -> None:
    del idp.document["token_endpoint"]
    with pytest.raises(DiscoveryFetchError, match="Invalid"):
        await make_manager(config, storage, idp).load()


@pytest.mark.asyncio
async def test_jwks_fetch_failure(config: OIDCClientConfig, storage: MemoryStorage, idp: Any) -> None:
    idp.document["jwks_uri"] = "https://idp.test/missing"
    manager = make_manager(config, storage, idp)

    with pytest.raises(JWKSFetchError):
        await manager.load()
    assert manager.status is DiscoveryStatus.NOT_LOADED


@pytest.mark.asyncio
async def test_empty_jwks_rejected(config: OIDCClientConfig, storage: MemoryStorage, idp: Any) -> None:
    idp.jwks = {"keys": []}
    with pytest.raises(JWKSFetchError, match="does not contain any keys"):
        await make_manager(config, storage, idp).load()
    assert f"{KEY_PREFIX}jwks" not in storage.keys()


@pytest.mark.asyncio
async def test_static_discovery_and_jwks(
    storage: MemoryStorage, idp: Any, discovery_document: Dict[str, Any], jwks: JsonWebKeySet
) -> None:
    config = OIDCClientConfig(
        client_id="c1",
        redirect_uri="https://app/cb",
        issuer="https://idp.test",
        discovery=StaticDiscovery(document=DiscoveryDocument.model_validate(discovery_document)),
        jwks=jwks,
    )
    manager = make_manager(config, storage, idp)

    await manager.load()

    assert manager.token_endpoint == "https://idp.test/oauth/token"
    assert manager.jwks == jwks
    assert await manager.refresh_jwks() == jwks
    idp.get.assert_not_awaited()


@pytest.mark.asyncio
async def test_end_session_override(config: OIDCClientConfig, storage: MemoryStorage, idp: Any) -> None:
    config = config.model_copy(update={"end_session_endpoint": "https://idp.test/v2/logout"})
    manager = make_manager(config, storage, idp)
    await manager.load()
    assert manager.end_session_endpoint == "https://idp.test/v2/logout"


def test_properties_require_load(config: OIDCClientConfig, storage: MemoryStorage, idp: Any) -> None:
    manager = make_manager(config, storage, idp)
    with pytest.raises(DiscoveryNotLoadedError):
        _ = manager.document
    with pytest.raises(DiscoveryNotLoadedError):
        _ = manager.jwks


@pytest.mark.asyncio
async def test_refresh_jwks_refetches_after_cooldown(
    config: OIDCClientConfig, storage: MemoryStorage, idp: Any, other_rsa_key: Any
) -> None:
    manager = make_manager(config, storage, idp, refresh_cooldown=0.0)
    await manager.load()

    rotated = {**other_rsa_key.as_dict(is_private=False), "use": "sig", "alg": "RS256"}
    idp.jwks = {"keys": [rotated]}

    refreshed = await manager.refresh_jwks()

    assert refreshed.keys[0].kid == rotated["kid"]
    assert manager.jwks.keys[0].kid == rotated["kid"]


@pytest.mark.asyncio
async def test_refresh_jwks_respects_cooldown(config: OIDCClientConfig, storage: MemoryStorage, idp: Any) -> None:
    manager = make_manager(config, storage, idp, refresh_cooldown=30.0)
    await manager.load()
    calls = idp.get.await_count

    refreshed = await manager.refresh_jwks()

    assert refreshed is manager.jwks
    assert idp.get.await_count == calls
