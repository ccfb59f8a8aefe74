# services/api/adapters/memory/__init__.py
"""
In-memory session store for local development and tests.
Used when no Firebase credentials are configured. Records live in a plain
dict for the lifetime of the process.
"""
from __future__ import annotations

import logging
import threading
from datetime import datetime
from typing import Any, Dict, Optional

from core.errors import PersistenceError, SessionNotFound
from models.guest_session import GuestViewSession

from ..base import SessionStore

logger = logging.getLogger(__name__)


class InMemorySessionStore(SessionStore):
    def __init__(self) -> None:
        # session_id -> stored record (camelCase keys, as in Firestore)
        self._records: Dict[str, Dict[str, Any]] = {}
        self._lock = threading.Lock()

    def __len__(self) -> int:
        return len(self._records)

    def create_session(self, session: GuestViewSession) -> None:
        record = session.to_record()
        with self._lock:
            if session.session_id in self._records:
                raise PersistenceError(f"Session {session.session_id} already exists")
            self._records[session.session_id] = record
        logger.info(f"[memory-store] Created session {session.session_id}")

    def get_session(self, session_id: str) -> Optional[GuestViewSession]:
        with self._lock:
            record = self._records.get(session_id)
        if record is None:
            return None
        return GuestViewSession.from_record(record)

    def redeem_session(self, session_id: str, now: datetime) -> GuestViewSession:
        with self._lock:
            record = self._records.get(session_id)
            if record is None:
                raise SessionNotFound(session_id)

            session = GuestViewSession.from_record(record)
            session.check_redeemable(now)

            session.access_count += 1
            self._records[session_id] = session.to_record()
        return session

    def put_record(self, record: Dict[str, Any]) -> None:
        """Store a raw record as-is (seeding fixtures and local demos)."""
        with self._lock:
            self._records[record["sessionId"]] = dict(record)
