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
OpenID Connect Authorization Code + PKCE client engine: discovery, ID token validation and session lifecycle.
"""

__version__ = "0.1.0"
__author__ = "Gowtham A Rao"
__email__ = "gowtham.rao@coreason.ai"

from .client import OIDCClient
from .config import AutoDiscovery, OIDCClientConfig, StaticDiscovery
from .exceptions import CoreasonOIDCError, TokenValidationError
from .models import AuthenticationState, DiscoveryDocument, JsonWebKeySet, Session, TokenResponse
from .providers import Auth0OIDCClient, auth0_config
from .storage import MemoryStorage, StorageService
from .transport import HttpService, HttpxHttpService
from .validator import IdTokenValidator, validate_at_hash, validate_c_hash, validate_id_token

__all__ = [
    "Auth0OIDCClient",
    "AuthenticationState",
    "AutoDiscovery",
    "CoreasonOIDCError",
    "DiscoveryDocument",
    "HttpService",
    "HttpxHttpService",
    "IdTokenValidator",
    "JsonWebKeySet",
    "MemoryStorage",
    "OIDCClient",
    "OIDCClientConfig",
    "Session",
    "StaticDiscovery",
    "StorageService",
    "TokenResponse",
    "TokenValidationError",
    "auth0_config",
    "validate_at_hash",
    "validate_c_hash",
    "validate_id_token",
]
