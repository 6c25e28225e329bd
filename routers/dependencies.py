import logging
from typing import Optional

from fastapi import HTTPException, Query, Request, status

from auth import AuthSession, SessionBroker, decode_access_token

logger = logging.getLogger(__name__)


def _bearer_token(request: Request) -> Optional[str]:
    auth_header = request.headers.get("Authorization") or request.headers.get("authorization")
    if not auth_header or not auth_header.lower().startswith("bearer "):
        return None
    return auth_header.split(" ", 1)[1].strip() or None


_session_broker = SessionBroker()


def get_session_broker() -> SessionBroker:
    return _session_broker


async def get_current_session(request: Request) -> AuthSession:
    """
    Validates the hosted-auth bearer token and returns the acting session.
    """
    token = _bearer_token(request)
    if not token:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Authorization token missing.")
    session = decode_access_token(token)
    _session_broker.observe(session)
    return session


async def get_stream_session(request: Request, token: Optional[str] = Query(default=None)) -> AuthSession:
    """Session for SSE endpoints; EventSource clients cannot set headers, so ?token= is accepted."""
    bearer = _bearer_token(request) or token
    if not bearer:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Missing token")
    session = decode_access_token(bearer)
    _session_broker.observe(session)
    return session


def get_change_feed():
    from utils.change_feed import get_change_feed as _get_change_feed

    return _get_change_feed()


_billing = None
_gate = None


def get_billing():
    global _billing
    if _billing is None:
        from utils.stripe_billing import StripeBilling

        _billing = StripeBilling()
    return _billing


def get_entitlement_gate():
    """Process-wide entitlement gate shared by messaging, live streams and billing."""
    global _gate
    if _gate is None:
        from routers.billing.gate import EntitlementGate

        _gate = EntitlementGate(get_billing())
    return _gate


def get_storage():
    from utils.storage import get_storage as _get_storage

    return _get_storage()


def get_session_factory():
    """Session factory for work that outlives the request session (background tasks, SSE)."""
    from core.db import SessionLocal

    return SessionLocal
