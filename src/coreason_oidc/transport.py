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
HTTP capability used for discovery, JWKS and token endpoint calls.
"""

import json
from typing import Any, Protocol

import httpx

from coreason_oidc.exceptions import HttpRequestError, OversizedResponseError
from coreason_oidc.utils.logger import logger

MAX_RESPONSE_BYTES = 1_000_000

FORM_HEADERS = {"Content-Type": "application/x-www-form-urlencoded", "Accept": "application/json"}


class HttpService(Protocol):
    """JSON-over-HTTP capability. Implementations own timeouts and connection reuse."""

    async def get(self, url: str, headers: dict[str, str] | None = None) -> Any:
        ...

    async def post(self, url: str, body: str, headers: dict[str, str] | None = None) -> Any:
        ...


class HttpxHttpService:
    """
    HttpService backed by an `httpx.AsyncClient`.

    Bodies are read in chunks and capped at `max_response_bytes` so a hostile or broken
    endpoint cannot exhaust memory.
    """

    def __init__(self, client: httpx.AsyncClient, max_response_bytes: int = MAX_RESPONSE_BYTES) -> None:
        self.client = client
        self.max_response_bytes = max_response_bytes

    async def get(self, url: str, headers: dict[str, str] | None = None) -> Any:
        return await self._request("GET", url, headers=headers)

    async def post(self, url: str, body: str, headers: dict[str, str] | None = None) -> Any:
        return await self._request("POST", url, content=body, headers=headers or FORM_HEADERS)

    async def _read_limited(self, response: httpx.Response) -> bytes:
        content_length = response.headers.get("Content-Length")
        if content_length:
            try:
                if int(content_length) > self.max_response_bytes:
                    raise OversizedResponseError("Response too large", status_code=response.status_code)
            except ValueError:
                pass

        content = bytearray()
        async for chunk in response.aiter_bytes():
            content.extend(chunk)
            if len(content) > self.max_response_bytes:
                raise OversizedResponseError("Response too large", status_code=response.status_code)
        return bytes(content)

    async def _request(
        self, method: str, url: str, content: str | None = None, headers: dict[str, str] | None = None
    ) -> Any:
        """
        Performs the request and decodes the JSON body.

        Raises:
            HttpRequestError: On transport failure, non-2xx status or a non-JSON body.
                For 4xx/5xx the OAuth `error` and `error_description` are attached when present.
            OversizedResponseError: If the body exceeds the size limit.
        """
        try:
            async with self.client.stream(method, url, content=content, headers=headers) as response:
                body = await self._read_limited(response)
                status_code = response.status_code
        except httpx.HTTPError as e:
            logger.error(f"{method} {url} failed: {e}")
            raise HttpRequestError(f"{method} {url} failed: {e}") from e

        try:
            data = json.loads(body) if body else None
        except json.JSONDecodeError as e:
            if status_code >= 400:
                raise HttpRequestError(f"{method} {url} returned status {status_code}", status_code=status_code) from e
            raise HttpRequestError(f"{method} {url} returned invalid JSON: {e}", status_code=status_code) from e

        if status_code >= 400:
            error = data.get("error") if isinstance(data, dict) else None
            description = data.get("error_description") if isinstance(data, dict) else None
            logger.warning(f"{method} {url} returned status {status_code} (error={error})")
            raise HttpRequestError(
                f"{method} {url} returned status {status_code}" + (f": {error}" if error else ""),
                status_code=status_code,
                error=error,
                error_description=description,
            )

        return data
