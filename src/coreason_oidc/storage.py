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
Typed persistence of discovery material, flow state and sessions over injected key-value storage.
"""

from enum import StrEnum
from typing import Protocol, TypeVar

from pydantic import BaseModel, ValidationError

from coreason_oidc.exceptions import StorageCorruptedError, StorageError
from coreason_oidc.utils.logger import logger

M = TypeVar("M", bound=BaseModel)

KEY_PREFIX = "coreason_oidc."


class StorageService(Protocol):
    """Plain string key-value storage supplied by the host platform."""

    async def get(self, key: str) -> str | None:
        ...

    async def set(self, key: str, value: str) -> None:
        ...

    async def remove(self, key: str) -> None:
        ...


class MemoryStorage:
    """
    In-memory implementation of StorageService.
    State is lost with the process; suitable for tests and short-lived CLIs.
    """

    def __init__(self, initial: dict[str, str] | None = None) -> None:
        self._data: dict[str, str] = dict(initial or {})

    async def get(self, key: str) -> str | None:
        return self._data.get(key)

    async def set(self, key: str, value: str) -> None:
        self._data[key] = value

    async def remove(self, key: str) -> None:
        self._data.pop(key, None)

    async def clear(self) -> None:
        self._data.clear()

    def keys(self) -> list[str]:
        return list(self._data)


class StorageKey(StrEnum):
    DISCOVERY_DOCUMENT = "discovery_document"
    JWKS = "jwks"
    SESSION = "session"
    FLOW_STATE = "flow_state"


# Secrets live in the secure storage when the host provides one.
SECURE_KEYS = frozenset({StorageKey.SESSION, StorageKey.FLOW_STATE})


class SessionStore:
    """
    Reads and writes the engine's values, one JSON document per logical key.

    Attributes:
        storage (StorageService): General storage for public material (discovery, keys).
        secure_storage (StorageService): Higher-trust storage for session and flow state.
    """

    def __init__(self, storage: StorageService, secure_storage: StorageService | None = None) -> None:
        self.storage = storage
        self.secure_storage = secure_storage or storage

    def _backend(self, key: StorageKey) -> StorageService:
        return self.secure_storage if key in SECURE_KEYS else self.storage

    @staticmethod
    def _physical_key(key: StorageKey) -> str:
        return f"{KEY_PREFIX}{key.value}"

    async def get(self, key: StorageKey, model: type[M]) -> M | None:
        """
        Loads and parses the value stored under `key`.

        Returns:
            The parsed model, or None if nothing is stored.

        Raises:
            StorageCorruptedError: If the stored value does not parse into `model`.
            StorageError: If the storage capability fails.
        """
        try:
            raw = await self._backend(key).get(self._physical_key(key))
        except Exception as e:
            logger.error(f"Storage read failed for key '{key}': {e}")
            raise StorageError(f"Failed to read '{key}' from storage: {e}") from e

        if raw is None or raw == "":
            return None

        try:
            return model.model_validate_json(raw)
        except ValidationError as e:
            logger.warning(f"Stored value for key '{key}' is corrupted")
            raise StorageCorruptedError(f"Stored value for '{key}' is not a valid {model.__name__}") from e

    async def set(self, key: StorageKey, value: BaseModel) -> None:
        try:
            await self._backend(key).set(self._physical_key(key), value.model_dump_json())
        except Exception as e:
            logger.error(f"Storage write failed for key '{key}': {e}")
            raise StorageError(f"Failed to write '{key}' to storage: {e}") from e

    async def remove(self, key: StorageKey) -> None:
        try:
            await self._backend(key).remove(self._physical_key(key))
        except Exception as e:
            logger.error(f"Storage remove failed for key '{key}': {e}")
            raise StorageError(f"Failed to remove '{key}' from storage: {e}") from e

    async def clear(self) -> None:
        """
        Removes every key this engine owns, and nothing else.
        """
        for key in StorageKey:
            await self.remove(key)
