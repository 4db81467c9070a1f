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
Configuration for the coreason-oidc package.
"""

from typing import Annotated, Literal

from pydantic import BaseModel, ConfigDict, Field, SecretStr, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from coreason_oidc.models import DiscoveryDocument, JsonWebKeySet
from coreason_oidc.urls import trim_trailing_slash


class AutoDiscovery(BaseModel):
    """Fetch the discovery document from the issuer's well-known URL."""

    model_config = ConfigDict(frozen=True)

    mode: Literal["auto"] = "auto"


class StaticDiscovery(BaseModel):
    """Use a discovery document supplied up front; nothing is fetched."""

    model_config = ConfigDict(frozen=True)

    mode: Literal["static"] = "static"
    document: DiscoveryDocument


DiscoveryMode = Annotated[AutoDiscovery | StaticDiscovery, Field(discriminator="mode")]


class OIDCClientConfig(BaseSettings):
    """
    Configuration settings for an OIDC client.

    Attributes:
        client_id (str): The OIDC Client ID (public client, no secret).
        redirect_uri (str): Where the IdP sends the authorization response.
        post_logout_redirect_uri (str | None): Where the IdP sends the user after logout.
        issuer (str): The expected issuer URL.
        scope (str): Space-delimited scopes to request.
        discovery (AutoDiscovery | StaticDiscovery): How the discovery document is obtained.
        jwks (JsonWebKeySet | None): Static signing keys; fetched from `jwks_uri` when absent.
        clock_skew_seconds (int): Tolerance applied to `exp`, `iat` and `auth_time` checks.
    """

    model_config = SettingsConfigDict(
        env_prefix="COREASON_OIDC_",
        case_sensitive=False,
    )

    client_id: str
    redirect_uri: str
    issuer: str
    post_logout_redirect_uri: str | None = None
    scope: str = "openid profile email"
    response_type: Literal["code"] = "code"
    discovery: DiscoveryMode = Field(default_factory=AutoDiscovery)
    jwks: JsonWebKeySet | None = None
    end_session_endpoint: str | None = Field(
        default=None, description="Overrides the end_session_endpoint of the discovery document."
    )
    query_params: dict[str, str] = Field(
        default_factory=dict, description="Extra parameters sent with every authorization request."
    )
    clock_skew_seconds: int = Field(default=0, ge=0)
    max_age: int | None = Field(default=None, ge=0)
    disable_refresh_token_consent: bool = False
    preserve_route: bool = True
    preload_discovery_document: bool = True
    flow_state_ttl: float = Field(default=600.0, gt=0, description="Seconds a pending sign-in stays valid.")
    state_length: int = Field(default=32, ge=16)
    nonce_length: int = Field(default=32, ge=16)
    code_verifier_length: int = Field(default=32, ge=32, le=96)
    http_timeout: float = Field(default=10.0, gt=0, description="Timeout in seconds for all IdP network operations.")
    unsafe_local_dev: bool = False
    pii_salt: SecretStr = SecretStr("coreason-unsafe-default-salt")

    @field_validator("client_id", "redirect_uri")
    @classmethod
    def validate_not_blank(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("must not be empty")
        return v

    @field_validator("scope")
    @classmethod
    def validate_openid_scope(cls, v: str) -> str:
        """
        Ensures the `openid` scope is requested; without it no ID token is issued.
        """
        scopes = v.split()
        if "openid" not in scopes:
            raise ValueError("scope must include 'openid'")
        return " ".join(scopes)

    @field_validator("issuer")
    @classmethod
    def validate_issuer_url(cls, v: str) -> str:
        v = v.strip()
        if not v.startswith(("https://", "http://")):
            raise ValueError("issuer must be an absolute URL")
        return v

    @model_validator(mode="after")
    def validate_https(self) -> "OIDCClientConfig":
        """
        Ensures that issuer uses HTTPS, unless strictly opted out for local dev.
        """
        if self.issuer.startswith("http://") and not self.unsafe_local_dev:
            raise ValueError("HTTPS is required for production. Set 'unsafe_local_dev=True' only for local testing.")
        return self

    @model_validator(mode="after")
    def validate_static_discovery(self) -> "OIDCClientConfig":
        """
        A static discovery document must describe the configured issuer.
        """
        if isinstance(self.discovery, StaticDiscovery):
            if trim_trailing_slash(self.discovery.document.issuer) != trim_trailing_slash(self.issuer):
                raise ValueError(
                    f"Static discovery document issuer '{self.discovery.document.issuer}' "
                    f"does not match configured issuer '{self.issuer}'"
                )
        return self
