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
Discovery component for fetching, validating and caching the issuer metadata and JWKS.
"""

import time
from collections.abc import Callable
from enum import StrEnum
from typing import TypeVar

import anyio
from opentelemetry import trace
from opentelemetry.trace import Status, StatusCode
from pydantic import BaseModel, ValidationError

from coreason_oidc.config import OIDCClientConfig, StaticDiscovery
from coreason_oidc.exceptions import (
    CoreasonOIDCError,
    DiscoveryFetchError,
    DiscoveryIssuerMismatchError,
    DiscoveryNotLoadedError,
    JWKSFetchError,
    StorageCorruptedError,
)
from coreason_oidc.models import DiscoveryDocument, JsonWebKeySet
from coreason_oidc.storage import SessionStore, StorageKey
from coreason_oidc.transport import HttpService
from coreason_oidc.urls import build_discovery_url, trim_trailing_slash
from coreason_oidc.utils.logger import logger

tracer = trace.get_tracer(__name__)

M = TypeVar("M", bound=BaseModel)


class DiscoveryStatus(StrEnum):
    NOT_LOADED = "not_loaded"
    LOADING = "loading"
    LOADED = "loaded"


class DiscoveryManager:
    """
    Resolves the issuer's endpoints and signing keys for one client instance.

    Attributes:
        config (OIDCClientConfig): The client configuration.
        store (SessionStore): Cache for the discovery document and the key set.
        http (HttpService): Transport for well-known and JWKS requests.
        refresh_cooldown (float): Minimum seconds between forced key set refreshes.
    """

    def __init__(
        self,
        config: OIDCClientConfig,
        store: SessionStore,
        http: HttpService,
        refresh_cooldown: float = 30.0,
    ) -> None:
        self.config = config
        self.store = store
        self.http = http
        self.refresh_cooldown = refresh_cooldown
        self._status = DiscoveryStatus.NOT_LOADED
        self._document: DiscoveryDocument | None = None
        self._jwks: JsonWebKeySet | None = None
        self._last_jwks_fetch: float = 0.0
        self._lock: anyio.Lock | None = None

    @property
    def status(self) -> DiscoveryStatus:
        return self._status

    @property
    def is_loaded(self) -> bool:
        return self._status is DiscoveryStatus.LOADED

    @property
    def document(self) -> DiscoveryDocument:
        if self._document is None or not self.is_loaded:
            raise DiscoveryNotLoadedError("Discovery document has not been loaded")
        return self._document

    @property
    def jwks(self) -> JsonWebKeySet:
        if self._jwks is None or not self.is_loaded:
            raise DiscoveryNotLoadedError("Key set has not been loaded")
        return self._jwks

    @property
    def authorization_endpoint(self) -> str:
        return self.document.authorization_endpoint

    @property
    def token_endpoint(self) -> str:
        return self.document.token_endpoint

    @property
    def end_session_endpoint(self) -> str | None:
        return self.config.end_session_endpoint or self.document.end_session_endpoint

    def _get_lock(self) -> anyio.Lock:
        if self._lock is None:
            self._lock = anyio.Lock()
        return self._lock

    def _validate_issuer(self, document: DiscoveryDocument) -> None:
        if trim_trailing_slash(document.issuer) != trim_trailing_slash(self.config.issuer):
            raise DiscoveryIssuerMismatchError(
                f"Invalid issuer in discovery document: expected {self.config.issuer} but got {document.issuer}"
            )

    @staticmethod
    def _validate_jwks(jwks: JsonWebKeySet) -> None:
        if not jwks.keys:
            raise JWKSFetchError("JWKS does not contain any keys")

    async def _cache_or_fetch(
        self,
        key: StorageKey,
        model: type[M],
        url: str,
        validate: Callable[[M], None],
        error_cls: type[CoreasonOIDCError],
    ) -> tuple[M, bool]:
        """
        Returns the cached value for `key`, or fetches, validates and caches it.

        Cached values are validated again on every load; a cached value that fails is evicted.
        A fetched value that fails validation is never cached.

        Returns:
            tuple[M, bool]: The value and whether it came from the network.
        """
        try:
            cached = await self.store.get(key, model)
        except StorageCorruptedError:
            logger.warning(f"Discarding corrupted cached '{key}'")
            await self.store.remove(key)
            cached = None

        if cached is not None:
            try:
                validate(cached)
            except CoreasonOIDCError:
                await self.store.remove(key)
                raise
            return cached, False

        try:
            data = await self.http.get(url)
            fetched = model.model_validate(data)
        except ValidationError as e:
            logger.error(f"Invalid {key} received from {url}")
            raise error_cls(f"Invalid {key} from {url}: {e}") from e
        except Exception as e:
            logger.error(f"Failed to fetch {key} from {url}: {e}")
            raise error_cls(f"Failed to fetch {key} from {url}: {e}") from e

        validate(fetched)
        await self.store.set(key, fetched)
        return fetched, True

    async def _load_document(self) -> DiscoveryDocument:
        if isinstance(self.config.discovery, StaticDiscovery):
            return self.config.discovery.document

        document, fetched = await self._cache_or_fetch(
            StorageKey.DISCOVERY_DOCUMENT,
            DiscoveryDocument,
            build_discovery_url(self.config.issuer),
            self._validate_issuer,
            DiscoveryFetchError,
        )
        if fetched:
            # Cached keys belong to whichever document was cached before
            await self.store.remove(StorageKey.JWKS)
        return document

    async def _load_jwks(self, document: DiscoveryDocument) -> JsonWebKeySet:
        if self.config.jwks is not None:
            return self.config.jwks

        jwks, fetched = await self._cache_or_fetch(
            StorageKey.JWKS, JsonWebKeySet, document.jwks_uri, self._validate_jwks, JWKSFetchError
        )
        if fetched:
            self._last_jwks_fetch = time.time()
        return jwks

    async def load(self) -> DiscoveryDocument:
        """
        Loads the discovery document and key set. A no-op once loaded.

        Returns:
            DiscoveryDocument: The validated discovery document.

        Raises:
            DiscoveryFetchError: If the document cannot be fetched or parsed.
            DiscoveryIssuerMismatchError: If the document names a different issuer.
            JWKSFetchError: If the key set cannot be fetched or is empty.
        """
        if self._status is DiscoveryStatus.LOADED and self._document is not None:
            return self._document

        async with self._get_lock():
            # Double check: another task may have finished loading while we waited
            if self._status is DiscoveryStatus.LOADED and self._document is not None:
                return self._document

            with tracer.start_as_current_span("oidc.discovery.load") as span:
                span.set_attribute("oidc.issuer", self.config.issuer)
                self._status = DiscoveryStatus.LOADING
                try:
                    document = await self._load_document()
                    jwks = await self._load_jwks(document)
                except Exception as e:
                    self._status = DiscoveryStatus.NOT_LOADED
                    span.record_exception(e)
                    span.set_status(Status(StatusCode.ERROR, str(e)))
                    raise

                self._document = document
                self._jwks = jwks
                self._status = DiscoveryStatus.LOADED
                span.set_status(Status(StatusCode.OK))
                logger.info(f"Discovery loaded for issuer {document.issuer}")
                return document

    async def get_jwks(self) -> JsonWebKeySet:
        """Returns the key set, loading discovery first if needed."""
        await self.load()
        return self.jwks

    async def refresh_jwks(self) -> JsonWebKeySet:
        """
        Re-fetches the key set from `jwks_uri`, e.g. after the IdP rotated its keys.

        A static key set is returned unchanged. Within `refresh_cooldown` of the last network
        fetch the current keys are returned instead of hitting the IdP again.

        Raises:
            JWKSFetchError: If the key set cannot be fetched.
        """
        if self.config.jwks is not None:
            return self.config.jwks

        document = await self.load()

        async with self._get_lock():
            if time.time() - self._last_jwks_fetch < self.refresh_cooldown and self._jwks is not None:
                logger.warning("JWKS refresh cooldown active. Returning current keys.")
                return self._jwks

            with tracer.start_as_current_span("oidc.jwks.refresh") as span:
                await self.store.remove(StorageKey.JWKS)
                try:
                    jwks = await self._load_jwks(document)
                except Exception as e:
                    span.record_exception(e)
                    span.set_status(Status(StatusCode.ERROR, str(e)))
                    raise
                span.set_status(Status(StatusCode.OK))

            self._jwks = jwks
            logger.info("JWKS refreshed")
            return jwks
