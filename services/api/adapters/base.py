"""
Session store interface for guest viewing sessions.
Defines the contract that every persistence backend must implement.
"""

from datetime import datetime
from typing import Optional, Protocol

from models.guest_session import GuestViewSession


class SessionStore(Protocol):
    """
    Protocol for `pdfSessions` storage.

    Two implementations exist: the in-memory map used for local development
    (no Firebase credentials) and the Firestore-backed store.
    """

    def create_session(self, session: GuestViewSession) -> None:
        """
        Persist a new session record keyed by `session.session_id`.

        Raises:
            PersistenceError: the write did not succeed.
        """
        ...

    def get_session(self, session_id: str) -> Optional[GuestViewSession]:
        """
        Plain read, no policy checks and no side effects.

        Returns:
            The stored session, or None if no record exists.

        Raises:
            PersistenceError: the read did not succeed.
        """
        ...

    def redeem_session(self, session_id: str, now: datetime) -> GuestViewSession:
        """
        Atomically check and consume one view.

        Expiry is checked first, then the access ceiling; only when both pass
        is `accessCount` incremented.

        Returns:
            The session as stored after the increment.

        Raises:
            SessionNotFound, SessionExpired, SessionAccessExhausted
            PersistenceError: the read or the write did not succeed.
        """
        ...
