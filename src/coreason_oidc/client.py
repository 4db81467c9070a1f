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
OIDCClient component orchestrating the Authorization Code + PKCE flow and the session lifecycle.
"""

import hmac
from typing import Any
from urllib.parse import parse_qsl, urlsplit

import anyio
import httpx
from opentelemetry.instrumentation.httpx import HTTPXClientInstrumentor
from pydantic import ValidationError

from coreason_oidc.adapters import RandomBytes, RedirectHandler, UrlStateAdapter, default_random_bytes
from coreason_oidc.config import OIDCClientConfig, StaticDiscovery
from coreason_oidc.discovery import DiscoveryManager
from coreason_oidc.events import AuthStateCallback, AuthStateNotifier
from coreason_oidc.exceptions import (
    AuthorizationServerError,
    ConfigurationError,
    DiscoveryError,
    DiscoveryNotLoadedError,
    EndSessionNotSupportedError,
    FlowStateExpiredError,
    HttpRequestError,
    KeySetError,
    MalformedTokenError,
    MissingCodeError,
    MissingStateError,
    NoFlowStateError,
    NoRefreshTokenError,
    NoSessionError,
    StateMismatchError,
    StorageCorruptedError,
    TokenValidationError,
)
from coreason_oidc.models import AuthenticationState, FlowState, Session, SessionRecord, TokenResponse
from coreason_oidc.pkce import create_nonce, create_verifier_challenge_pair
from coreason_oidc.storage import MemoryStorage, SessionStore, StorageKey, StorageService
from coreason_oidc.transport import HttpService, HttpxHttpService
from coreason_oidc.urls import (
    QueryParams,
    build_auth_params,
    build_authorization_url,
    build_logout_url,
    build_refresh_token_request_body,
    build_token_request_body,
)
from coreason_oidc.utils.logger import logger
from coreason_oidc.validator import IdTokenValidator, validate_at_hash, validate_c_hash


class OIDCClient:
    """
    Async OIDC relying-party client (The Engine).
    Handles resources via async context manager.

    Every instance owns its configuration, discovery state and storage handles.
    `auth_callback`, `refresh_tokens`, the flow-state replacement in `sign_in` and
    `sign_out_local` are serialised by a per-instance lock.
    """

    def __init__(
        self,
        config: OIDCClientConfig,
        *,
        storage: StorageService | None = None,
        secure_storage: StorageService | None = None,
        http: HttpService | None = None,
        redirect: RedirectHandler | None = None,
        url_state: UrlStateAdapter | None = None,
        random_bytes: RandomBytes | None = None,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        """
        Initialize the OIDCClient.

        Args:
            config: The client configuration.
            storage: General storage (discovery cache). Defaults to `MemoryStorage`.
            secure_storage: Storage for session and flow secrets. Defaults to `storage`.
            http: HTTP capability. If not provided, an instrumented `httpx.AsyncClient` is used.
            redirect: Capability that sends the user agent to a URL.
            url_state: Capability exposing the current URL and rewriting it after the callback.
            random_bytes: Random byte source. Defaults to `secrets.token_bytes`.
            client: External async client for the default HTTP capability (optional).
        """
        self.config = config
        self._client: httpx.AsyncClient | None = None
        self._internal_client = False

        if http is None:
            self._internal_client = client is None
            self._client = client if client is not None else httpx.AsyncClient(timeout=config.http_timeout)
            # Instrument the client for distributed tracing
            HTTPXClientInstrumentor().instrument_client(self._client)
            http = HttpxHttpService(self._client)

        self.http = http
        self.store = SessionStore(storage if storage is not None else MemoryStorage(), secure_storage)
        self.discovery = DiscoveryManager(config, self.store, http)
        self.validator = IdTokenValidator(self.discovery, config)
        self.redirect = redirect
        self.url_state = url_state
        self.random_bytes = random_bytes or default_random_bytes
        self._events = AuthStateNotifier()
        self._guard: anyio.Lock | None = None

    async def __aenter__(self) -> "OIDCClient":
        if self.config.preload_discovery_document:
            await self.load_discovery()
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        if self._internal_client and self._client is not None:
            await self._client.aclose()

    @property
    def auth_state(self) -> AuthenticationState:
        return self._events.state

    def on_auth_state_change(self, callback: AuthStateCallback | None) -> None:
        """
        Registers the single auth-state subscriber; the last registration wins.

        The callback is called synchronously with the new Session, or None when not authenticated.
        """
        self._events.subscribe(callback)

    def _get_guard(self) -> anyio.Lock:
        if self._guard is None:
            self._guard = anyio.Lock()
        return self._guard

    async def load_discovery(self) -> None:
        """Loads the discovery document and key set ahead of the first flow."""
        await self.discovery.load()

    async def _resolve_authorization_endpoint(self) -> str:
        if self.discovery.is_loaded:
            return self.discovery.authorization_endpoint
        if isinstance(self.config.discovery, StaticDiscovery):
            return self.config.discovery.document.authorization_endpoint
        if self.config.preload_discovery_document:
            await self.discovery.load()
            return self.discovery.authorization_endpoint
        raise DiscoveryNotLoadedError(
            "Discovery document is not loaded; call load_discovery() or enable preload_discovery_document"
        )

    @staticmethod
    def _requested_max_age(params: dict[str, str]) -> int | None:
        if "max_age" not in params:
            return None
        try:
            max_age = int(params["max_age"])
        except ValueError as e:
            raise ConfigurationError(f"max_age must be a non-negative integer, got {params['max_age']!r}") from e
        if max_age < 0:
            raise ConfigurationError(f"max_age must be a non-negative integer, got {max_age}")
        return max_age

    async def sign_in(self, extra_params: QueryParams | None = None, return_to: str | None = None) -> str:
        """
        Starts the authorization code flow.

        Persists a fresh FlowState before the authorization URL is handed to the redirect
        capability. If that capability hands back a callback URL, it is processed right away.

        Args:
            extra_params: Additional authorization request parameters (override configured ones).
            return_to: URL to restore after the callback. Defaults to the current URL, if known.

        Returns:
            str: The authorization URL.

        Raises:
            DiscoveryNotLoadedError: If discovery is neither static, loaded nor preloadable.
            ConfigurationError: If the requested max_age is not a non-negative integer.
        """
        authorization_endpoint = await self._resolve_authorization_endpoint()

        params = build_auth_params(self.config, extra_params)
        max_age = self._requested_max_age(params)

        async with self._get_guard():
            await self.store.remove(StorageKey.FLOW_STATE)

            state = create_nonce(self.random_bytes, self.config.state_length)
            nonce, hashed_nonce = create_verifier_challenge_pair(self.random_bytes, self.config.nonce_length)
            code_verifier, code_challenge = create_verifier_challenge_pair(
                self.random_bytes, self.config.code_verifier_length
            )

            if return_to is None and self.url_state is not None:
                return_to = await self.url_state.current_url()

            params["state"] = state
            params["nonce"] = hashed_nonce

            flow = FlowState(
                state=state,
                nonce=nonce,
                code_verifier=code_verifier,
                send_user_back_to=return_to,
                max_age=max_age,
            )
            await self.store.set(StorageKey.FLOW_STATE, flow)

        url = build_authorization_url(self.config, authorization_endpoint, params, code_challenge)
        logger.info("Sign-in started")

        if self.redirect is not None:
            callback_url = await self.redirect.redirect(url)
            if callback_url:
                await self.auth_callback(callback_url)

        return url

    @staticmethod
    def _parse_token_response(data: Any) -> TokenResponse:
        try:
            tokens = TokenResponse.model_validate(data)
        except ValidationError as e:
            raise HttpRequestError(f"Invalid token response: {e}") from e
        if not tokens.id_token:
            raise MalformedTokenError("Token response does not contain an id_token")
        return tokens

    async def _handle_callback(self, callback_url: str | None) -> tuple[SessionRecord, FlowState]:
        await self.discovery.load()

        flow = await self.store.get(StorageKey.FLOW_STATE, FlowState)
        if flow is None:
            raise NoFlowStateError("No flow state found; auth_callback requires a prior sign_in")
        if flow.is_expired(self.config.flow_state_ttl):
            raise FlowStateExpiredError("Flow state has expired; start a new sign-in")

        if callback_url is None and self.url_state is not None:
            callback_url = await self.url_state.current_url()
        query = dict(parse_qsl(urlsplit(callback_url or "").query))

        if "error" in query:
            raise AuthorizationServerError(query["error"], query.get("error_description"), query.get("error_uri"))

        returned_state = query.get("state")
        if not returned_state:
            raise MissingStateError("Callback URL does not contain a state parameter")
        if not hmac.compare_digest(returned_state.encode("utf-8"), flow.state.encode("utf-8")):
            raise StateMismatchError("State parameter does not match the stored state")

        code = query.get("code")
        if not code:
            raise MissingCodeError("Callback URL does not contain an authorization code")

        data = await self.http.post(
            self.discovery.token_endpoint,
            build_token_request_body(self.config, code, flow.code_verifier),
        )
        tokens = self._parse_token_response(data)
        id_token = str(tokens.id_token)

        validate_c_hash(id_token, code)
        validate_at_hash(id_token, tokens.access_token)
        claims = await self.validator.validate(id_token, nonce=flow.nonce, max_age=flow.max_age)

        record = SessionRecord(
            session=Session.from_token_response(tokens, claims),
            nonce=flow.nonce,
            max_age=flow.max_age,
        )
        await self.store.set(StorageKey.SESSION, record)
        return record, flow

    async def auth_callback(self, callback_url: str | None = None) -> Session:
        """
        Completes the flow from the redirect back to `redirect_uri`.

        Args:
            callback_url: The callback URL. Defaults to the current URL of the url-state capability.

        Returns:
            Session: The validated session, also persisted.

        Raises:
            NoFlowStateError: If no sign-in is outstanding.
            FlowStateExpiredError: If the sign-in is older than `flow_state_ttl`.
            AuthorizationServerError: If the IdP returned an `error` parameter.
            MissingStateError / StateMismatchError: CSRF check failed; no token request is made.
            MissingCodeError: If the callback carries no code.
            HttpRequestError: If the token exchange fails.
            TokenValidationError: If the issued tokens fail validation.
        """
        async with self._get_guard():
            self._events.set_state(AuthenticationState.AUTHENTICATING)
            try:
                record, flow = await self._handle_callback(callback_url)
            except Exception as e:
                logger.warning(f"Authorization callback failed: {type(e).__name__}: {e}")
                await self.store.remove(StorageKey.FLOW_STATE)
                self._events.set_state(AuthenticationState.UNAUTHENTICATED)
                raise

            await self.store.remove(StorageKey.FLOW_STATE)
            logger.info("Authorization callback completed")
            # The session is persisted: settle the state before touching the host URL
            self._events.set_state(AuthenticationState.AUTHENTICATED, record.session)

            if self.url_state is not None:
                target = flow.send_user_back_to if self.config.preserve_route else None
                await self.url_state.replace_url_state(target or self.config.redirect_uri)

            return record.session

    async def get_session(self) -> Session | None:
        """
        Returns the stored session after re-validating its ID token.

        Returns:
            Session | None: The session, or None if nobody is signed in.

        Raises:
            TokenValidationError: If a session is stored but its ID token no longer validates.
                The stored session is kept so `refresh_tokens` can still recover it.
            StorageCorruptedError: If the stored session cannot be parsed.
        """
        try:
            record = await self.store.get(StorageKey.SESSION, SessionRecord)
        except StorageCorruptedError:
            self._events.set_state(AuthenticationState.UNAUTHENTICATED)
            raise

        if record is None:
            if self._events.state is AuthenticationState.AUTHENTICATED:
                self._events.set_state(AuthenticationState.UNAUTHENTICATED)
            return None

        await self.discovery.load()

        try:
            await self.validator.validate(record.session.id_token, nonce=record.nonce, max_age=record.max_age)
        except TokenValidationError:
            self._events.set_state(AuthenticationState.UNAUTHENTICATED)
            raise

        self._events.set_state(AuthenticationState.AUTHENTICATED, record.session)
        return record.session

    async def get_access_token(self) -> str | None:
        session = await self.get_session()
        return session.access_token if session else None

    async def get_id_token(self) -> str | None:
        session = await self.get_session()
        return session.id_token if session else None

    async def refresh_tokens(self) -> Session:
        """
        Exchanges the stored refresh token for new tokens and replaces the stored session.

        The previous refresh token is kept when the IdP does not rotate it. On failure the
        stored session is left untouched and the client becomes UNAUTHENTICATED.

        Raises:
            NoSessionError: If nobody is signed in.
            NoRefreshTokenError: If the session has no refresh token.
            HttpRequestError: If the refresh request fails.
            TokenValidationError: If the new ID token fails validation.
        """
        async with self._get_guard():
            try:
                record = await self.store.get(StorageKey.SESSION, SessionRecord)
                if record is None:
                    raise NoSessionError("No session to refresh")
                if not record.session.refresh_token:
                    raise NoRefreshTokenError("Session has no refresh token")

                await self.discovery.load()
                data = await self.http.post(
                    self.discovery.token_endpoint,
                    build_refresh_token_request_body(self.config, record.session.refresh_token),
                )
                tokens = self._parse_token_response(data)
                id_token = str(tokens.id_token)

                validate_at_hash(id_token, tokens.access_token)
                claims = await self.validator.validate(id_token, nonce=record.nonce, max_age=record.max_age)

                session = Session.from_token_response(tokens, claims, refresh_token=record.session.refresh_token)
                await self.store.set(
                    StorageKey.SESSION,
                    SessionRecord(session=session, nonce=record.nonce, max_age=record.max_age),
                )
            except Exception as e:
                logger.warning(f"Token refresh failed: {type(e).__name__}: {e}")
                await self.store.remove(StorageKey.FLOW_STATE)
                self._events.set_state(AuthenticationState.UNAUTHENTICATED)
                raise

            logger.info("Tokens refreshed")
            self._events.set_state(AuthenticationState.AUTHENTICATED, session)
            return session

    async def sign_out_local(self) -> None:
        """Clears all engine-owned storage. Never fails on empty storage."""
        async with self._get_guard():
            await self.store.clear()
            self._events.set_state(AuthenticationState.UNAUTHENTICATED)
            logger.info("Signed out locally")

    async def _build_logout_url(self, extra_params: QueryParams | None) -> str:
        end_session_endpoint = self.config.end_session_endpoint
        if end_session_endpoint is None:
            await self.discovery.load()
            end_session_endpoint = self.discovery.end_session_endpoint

        # The stored id_token_hint and the configured redirect win over caller parameters
        params: dict[str, str | int | bool] = dict(extra_params or {})
        try:
            record = await self.store.get(StorageKey.SESSION, SessionRecord)
        except StorageCorruptedError:
            record = None
        if record is not None:
            params["id_token_hint"] = record.session.id_token
        if self.config.post_logout_redirect_uri:
            params["post_logout_redirect_uri"] = self.config.post_logout_redirect_uri

        return build_logout_url(end_session_endpoint, params)

    async def sign_out(self, extra_params: QueryParams | None = None) -> str | None:
        """
        Signs out locally and at the IdP when it supports RP-initiated logout.

        The logout URL is built before local state is cleared so the ID token can be sent as
        `id_token_hint`.

        Returns:
            str | None: The logout URL, or None when logout at the IdP is unavailable.
        """
        logout_url: str | None = None
        try:
            logout_url = await self._build_logout_url(extra_params)
        except (EndSessionNotSupportedError, DiscoveryError, KeySetError) as e:
            logger.warning(f"Logout at the IdP is unavailable, signing out locally only: {e}")

        await self.sign_out_local()

        if logout_url and self.redirect is not None:
            await self.redirect.redirect(logout_url)

        return logout_url
