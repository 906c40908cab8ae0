"""
Authorization Collaborator

The ledger performs no identity logic of its own: it asks an Authorizer
whether a caller session may act on an account and trusts the answer.
Sessions are explicit objects handed to each call, never looked up from
global state inside the engine.
"""

from abc import ABC, abstractmethod
from datetime import datetime, timezone, timedelta
from dataclasses import dataclass
from typing import Dict, Optional
import secrets
import threading

from .ledger import LedgerStore


@dataclass(frozen=True)
class Session:
    """Authenticated caller session"""
    session_id: str
    user_id: str
    created_at: datetime
    expires_at: Optional[datetime] = None

    def is_valid(self, now: Optional[datetime] = None) -> bool:
        """Check if session has not expired"""
        if self.expires_at is None:
            return True
        return (now or datetime.now(timezone.utc)) < self.expires_at


class SessionRegistry:
    """Token to Session mapping owned by the front end, not the engine"""

    def __init__(self, timeout_minutes: Optional[int] = 30):
        self.timeout_minutes = timeout_minutes
        self._sessions: Dict[str, Session] = {}
        self._lock = threading.Lock()

    def open(self, user_id: str) -> Session:
        """Open a session for an already-authenticated user"""
        now = datetime.now(timezone.utc)
        expires_at = None
        if self.timeout_minutes:
            expires_at = now + timedelta(minutes=self.timeout_minutes)
        session = Session(
            session_id=secrets.token_urlsafe(24),
            user_id=user_id,
            created_at=now,
            expires_at=expires_at
        )
        with self._lock:
            self._sessions[session.session_id] = session
        return session

    def get(self, session_id: Optional[str]) -> Optional[Session]:
        """Resolve a token; expired sessions are dropped"""
        if not session_id:
            return None
        with self._lock:
            session = self._sessions.get(session_id)
            if session and not session.is_valid():
                del self._sessions[session_id]
                return None
            return session

    def close(self, session_id: str) -> bool:
        """End a session"""
        with self._lock:
            return self._sessions.pop(session_id, None) is not None


class Authorizer(ABC):
    """Capability check consumed by the ledger engine"""

    @abstractmethod
    def is_authorized(self, session: Optional[Session], account_ref: str) -> bool:
        """Whether the session may act on the referenced account"""
        pass


class AllowAllAuthorizer(Authorizer):
    """Grants every request (single-user simulator, tests)"""

    def is_authorized(self, session: Optional[Session], account_ref: str) -> bool:
        return True


class OwnershipAuthorizer(Authorizer):
    """Grants access when the session's user owns the account"""

    def __init__(self, store: LedgerStore):
        self.store = store

    def is_authorized(self, session: Optional[Session], account_ref: str) -> bool:
        if session is None or not session.is_valid():
            return False
        account = self.store.resolve(account_ref)
        # Unknown accounts are reported as AccountNotFound by the engine
        if account is None:
            return True
        return account.owner_id == session.user_id
