import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, List, Optional

from fastapi import HTTPException, status
from jose import ExpiredSignatureError, JWTError, jwt

from core.cache import TTLCache
from core.config import (
    AUTH_JWT_ALGORITHM,
    AUTH_JWT_AUDIENCE,
    AUTH_JWT_LEEWAY,
    AUTH_JWT_SECRET,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AuthSession:
    """The acting user, as asserted by the hosted identity provider."""

    user_id: str
    email: Optional[str] = None
    access_token: Optional[str] = None
    expires_at: Optional[int] = None


class AuthEvent(str, Enum):
    SIGNED_IN = "SIGNED_IN"
    SIGNED_OUT = "SIGNED_OUT"
    TOKEN_REFRESHED = "TOKEN_REFRESHED"


def decode_access_token(token: str) -> AuthSession:
    """
    Validate a hosted-auth access token and return the session it describes.

    Raises:
        HTTPException: 401 if the token is expired, malformed or missing a subject
    """
    if not AUTH_JWT_SECRET:
        logger.error("AUTH_JWT_SECRET is not configured; rejecting token")
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Authentication is not configured")
    try:
        claims = jwt.decode(
            token,
            AUTH_JWT_SECRET,
            algorithms=[AUTH_JWT_ALGORITHM],
            audience=AUTH_JWT_AUDIENCE or None,
            options={"verify_aud": bool(AUTH_JWT_AUDIENCE), "leeway": AUTH_JWT_LEEWAY},
        )
    except ExpiredSignatureError:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Token expired")
    except JWTError as e:
        logger.debug(f"Access token rejected: {e}")
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token")

    user_id = claims.get("sub")
    if not user_id:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Token has no subject")
    return AuthSession(
        user_id=str(user_id),
        email=claims.get("email"),
        access_token=token,
        expires_at=claims.get("exp"),
    )


SessionListener = Callable[[AuthEvent, Optional[AuthSession]], object]


@dataclass
class SessionBroker:
    """
    In-process auth collaborator: holds the current session and fans out changes.

    In the API process every authenticated request is passed to `observe`, so
    listeners (the entitlement gate) hear SIGNED_IN the first time a user shows
    up and TOKEN_REFRESHED when the provider has issued them a new token.
    """

    _session: Optional[AuthSession] = None
    _listeners: List[SessionListener] = field(default_factory=list)
    _seen_tokens: TTLCache = field(default_factory=TTLCache)
    seen_ttl_seconds: float = 12 * 3600

    def get_current_session(self) -> Optional[AuthSession]:
        return self._session

    def on_session_change(self, callback: SessionListener) -> Callable[[], None]:
        self._listeners.append(callback)

        def unsubscribe() -> None:
            if callback in self._listeners:
                self._listeners.remove(callback)

        return unsubscribe

    def sign_in(self, session: AuthSession) -> None:
        self._session = session
        self._emit(AuthEvent.SIGNED_IN, session)

    def refresh(self, session: AuthSession) -> None:
        self._session = session
        self._emit(AuthEvent.TOKEN_REFRESHED, session)

    def observe(self, session: AuthSession) -> None:
        """Record a session seen on a request. Emits only for a new user or a new token."""
        previous = self._seen_tokens.get(session.user_id)
        token = session.access_token or ""
        if previous == token:
            return
        self._seen_tokens.set(session.user_id, token, ttl_seconds=self.seen_ttl_seconds)
        if previous is None:
            self.sign_in(session)
        else:
            self.refresh(session)

    def sign_out(self) -> None:
        previous = self._session
        self._session = None
        if previous is not None:
            self._seen_tokens.delete(previous.user_id)
        self._emit(AuthEvent.SIGNED_OUT, previous)

    def _emit(self, event: AuthEvent, session: Optional[AuthSession]) -> None:
        for listener in list(self._listeners):
            try:
                listener(event, session)
            except Exception:
                logger.exception(f"Session listener failed for {event.value}")
