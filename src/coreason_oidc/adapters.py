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
Platform capabilities consumed by the OIDC client.

Hosts implement these to plug the client into a browser, a native shell or a test harness.
"""

import secrets
from collections.abc import Callable
from typing import Protocol

RandomBytes = Callable[[int], bytes]


def default_random_bytes(size: int) -> bytes:
    """Cryptographically secure random bytes from the OS."""
    return secrets.token_bytes(size)


class RedirectHandler(Protocol):
    """Sends the user agent to a URL."""

    async def redirect(self, url: str) -> str | None:
        """
        Navigates to `url`.

        Platforms that run the authorization in an in-app browser return the resulting
        callback URL; platforms that navigate away return None and re-enter later.
        """
        ...


class UrlStateAdapter(Protocol):
    """Reads and rewrites the address the user currently sees."""

    async def current_url(self) -> str | None:
        ...

    async def replace_url_state(self, url: str) -> None:
        """Replaces the visible URL without navigating (e.g. to strip `code` and `state`)."""
        ...
