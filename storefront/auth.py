"""
auth.py: Admin authentication

Server side, authenticate_admin() checks the configured admin credentials and
issues a bearer token. Client side, AuthSessionManager keeps the current admin
session and lets interested parties subscribe to sign-in/sign-out events; each
subscription returns a handle whose unsubscribe() must be called on teardown.
"""

import logging
from datetime import datetime, timedelta
from typing import Awaitable, Callable, List, Optional

from pydantic import BaseModel

from shared.utils import (
    settings, verify_password, create_access_token, UnauthorizedException
)
from .schemas import Token

log = logging.getLogger(__name__)

SIGNED_IN = "SIGNED_IN"
SIGNED_OUT = "SIGNED_OUT"


def authenticate_admin(email: str, password: str) -> Token:
    """
    Issues an admin token for the configured admin account.

    Raises:
        UnauthorizedException: If the email or password does not match.
    """
    if email.strip().lower() != settings.ADMIN_EMAIL.lower() or not verify_password(password, settings.ADMIN_PASSWORD_HASH):
        log.warning(f"Failed admin login for {email}")
        raise UnauthorizedException("Incorrect email or password")

    expires = timedelta(minutes=settings.ACCESS_TOKEN_EXPIRE_MINUTES)
    access_token = create_access_token(
        data={"sub": settings.ADMIN_EMAIL, "role": "admin"},
        expires_delta=expires
    )
    log.info(f"Admin {email} signed in")
    return Token(access_token=access_token, expires_in=int(expires.total_seconds()))


class AuthSession(BaseModel):
    email: str
    access_token: str
    expires_at: datetime

    @property
    def is_expired(self) -> bool:
        return datetime.utcnow() >= self.expires_at


AuthListener = Callable[[str, Optional[AuthSession]], None]


class Subscription:
    """Handle returned by on_auth_state_change(); unsubscribe() is idempotent."""

    def __init__(self, manager: "AuthSessionManager", callback: AuthListener):
        self._manager = manager
        self.callback = callback
        self.active = True

    def unsubscribe(self):
        if self.active:
            self.active = False
            self._manager._remove(self)


class AuthSessionManager:
    """
    Holds the admin session for a client and broadcasts its changes.

    Args:
        login: coroutine (email, password) -> Token, typically the HTTP call
            to POST /admin/login.
    """

    def __init__(self, login: Callable[[str, str], Awaitable[Token]]):
        self._login = login
        self._session: Optional[AuthSession] = None
        self._subscriptions: List[Subscription] = []

    def get_session(self) -> Optional[AuthSession]:
        if self._session is not None and self._session.is_expired:
            self._session = None
        return self._session

    async def sign_in(self, email: str, password: str) -> AuthSession:
        token = await self._login(email, password)
        self._session = AuthSession(
            email=email,
            access_token=token.access_token,
            expires_at=datetime.utcnow() + timedelta(seconds=token.expires_in),
        )
        self._emit(SIGNED_IN, self._session)
        return self._session

    def sign_out(self):
        had_session = self._session is not None
        self._session = None
        if had_session:
            self._emit(SIGNED_OUT, None)

    def on_auth_state_change(self, callback: AuthListener) -> Subscription:
        subscription = Subscription(self, callback)
        self._subscriptions.append(subscription)
        return subscription

    def _remove(self, subscription: Subscription):
        if subscription in self._subscriptions:
            self._subscriptions.remove(subscription)

    def _emit(self, event: str, session: Optional[AuthSession]):
        # Copy: a listener may unsubscribe while being notified
        for subscription in list(self._subscriptions):
            if not subscription.active:
                continue
            try:
                subscription.callback(event, session)
            except Exception as e:
                log.error(f"Auth listener failed on {event}: {e}", exc_info=True)
