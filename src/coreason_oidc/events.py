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
Authentication state tracking and change notification.
"""

from collections.abc import Callable

from coreason_oidc.models import AuthenticationState, Session
from coreason_oidc.utils.logger import logger

AuthStateCallback = Callable[[Session | None], None]


class AuthStateNotifier:
    """
    Owns the current AuthenticationState and the single subscriber.

    The subscriber receives the session when the state becomes AUTHENTICATED and None otherwise.
    It is called on every transition, and again while AUTHENTICATED when the session changes
    (e.g. after a refresh). Setting the same state with the same session is not re-emitted.
    """

    def __init__(self) -> None:
        self._state = AuthenticationState.UNAUTHENTICATED
        self._session: Session | None = None
        self._callback: AuthStateCallback | None = None

    @property
    def state(self) -> AuthenticationState:
        return self._state

    def subscribe(self, callback: AuthStateCallback | None) -> None:
        """Registers the subscriber, replacing any previous one. None unsubscribes."""
        self._callback = callback

    def set_state(self, state: AuthenticationState, session: Session | None = None) -> None:
        if state is not AuthenticationState.AUTHENTICATED:
            session = None

        if state == self._state and session == self._session:
            return

        logger.debug(f"Auth state {self._state} -> {state}")
        self._state = state
        self._session = session

        if self._callback is not None:
            self._callback(session)
