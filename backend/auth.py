"""
Sign-in with Google and session handling.

The browser runs the Google pop-up flow and sends us the resulting ID token.
We verify it, remember the user, and hand back an opaque session token that
every other request carries as `Authorization: Bearer <token>`.
"""
import logging
import threading
from typing import Callable, Optional

from fastapi import Depends, Header
from google.auth.exceptions import GoogleAuthError
from google.auth.transport import requests as google_requests
from google.oauth2 import id_token as google_id_token

from database import TaskStore
from errors import AuthError
from models import User

logger = logging.getLogger(__name__)

AuthCallback = Callable[[Optional[User]], None]
GOOGLE_ISSUERS = ("accounts.google.com", "https://accounts.google.com")


def verify_google_token(token: str, client_id: str) -> dict:
    """Verify a Google ID token and return its claims."""
    claims = google_id_token.verify_oauth2_token(token, google_requests.Request(), client_id)
    if claims.get("iss") not in GOOGLE_ISSUERS:
        raise ValueError(f"Wrong issuer: {claims.get('iss')}")
    return claims


class IdentityProvider:
    def __init__(self, store: TaskStore, client_id: str):
        self.store = store
        self.client_id = client_id
        self._listeners: dict[str, list[AuthCallback]] = {}
        self._lock = threading.Lock()

    def sign_in(self, id_token: str) -> tuple[str, User]:
        """Verify the provider's ID token. Returns (session token, user)."""
        try:
            claims = verify_google_token(id_token, self.client_id)
        except (ValueError, GoogleAuthError) as e:
            logger.error("Error signing in with Google: %s", e)
            raise AuthError("Sign-in failed. Please try again.") from e

        user = User(id=claims["sub"], display_name=claims.get("name"), email=claims.get("email"))
        self.store.upsert_user(user)
        token = self.store.create_session(user.id)
        logger.info("User %s signed in", user.id)
        return token, user

    def sign_out(self, token: str):
        if not self.store.delete_session(token):
            raise AuthError("Not signed in.")
        logger.info("Session signed out")
        self._fire(token, None)

    def current_user(self, token: Optional[str]) -> Optional[User]:
        if not token:
            return None
        return self.store.get_session_user(token)

    def on_auth_state_changed(self, token: str, callback: AuthCallback) -> Callable[[], None]:
        """
        Call back with the session's current user now, and with None once it signs out.
        Returns the function that removes the listener.
        """
        with self._lock:
            self._listeners.setdefault(token, []).append(callback)
        callback(self.current_user(token))

        def unsubscribe():
            with self._lock:
                listeners = self._listeners.get(token, [])
                if callback in listeners:
                    listeners.remove(callback)
                if not listeners:
                    self._listeners.pop(token, None)

        return unsubscribe

    def _fire(self, token: str, user: Optional[User]):
        with self._lock:
            listeners = list(self._listeners.get(token, []))
        for callback in listeners:
            callback(user)


_identity: Optional[IdentityProvider] = None


def init_identity(store: TaskStore, client_id: str) -> IdentityProvider:
    global _identity
    _identity = IdentityProvider(store, client_id)
    return _identity


def get_identity() -> IdentityProvider:
    if _identity is None:
        raise AuthError("Sign-in is not available. Check the server configuration.")
    return _identity


def close_identity():
    global _identity
    _identity = None


def bearer_token(authorization: Optional[str] = Header(default=None)) -> str:
    if not authorization or not authorization.lower().startswith("bearer "):
        raise AuthError("Not signed in.")
    return authorization[7:].strip()


def get_current_user(
    token: str = Depends(bearer_token),
    identity: IdentityProvider = Depends(get_identity),
) -> User:
    user = identity.current_user(token)
    if user is None:
        raise AuthError("Your session has expired. Please sign in again.")
    return user
