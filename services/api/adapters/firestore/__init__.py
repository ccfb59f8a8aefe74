# services/api/adapters/firestore/__init__.py
from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Dict, Optional

from google.api_core import exceptions as gcp_exceptions
from google.cloud import firestore
from google.oauth2 import service_account
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from core.errors import PersistenceError, SessionNotFound
from models.guest_session import GuestViewSession

from ..base import SessionStore

logger = logging.getLogger(__name__)

COLLECTION = "pdfSessions"

TRANSIENT_ERRORS = (
    gcp_exceptions.ServiceUnavailable,
    gcp_exceptions.DeadlineExceeded,
    gcp_exceptions.TooManyRequests,
)


def retry_firestore_api(func):
    """Decorator to retry Firestore calls with exponential backoff on transient errors."""
    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=1, max=10),
        retry=retry_if_exception_type(TRANSIENT_ERRORS),
        reraise=True,
    )
    def wrapper(*args, **kwargs):
        return func(*args, **kwargs)

    return wrapper


def _client_from_settings(
    credentials_path: str,
    service_account_info: Optional[Dict[str, Any]],
    project_id: str,
) -> firestore.Client:
    if credentials_path:
        creds = service_account.Credentials.from_service_account_file(credentials_path)
    elif service_account_info:
        creds = service_account.Credentials.from_service_account_info(service_account_info)
    else:
        raise ValueError("FirestoreSessionStore requires Firebase service-account credentials")
    return firestore.Client(project=project_id or creds.project_id, credentials=creds)


@firestore.transactional
def _redeem_in_transaction(transaction, ref, now: datetime) -> GuestViewSession:
    snapshot = ref.get(transaction=transaction)
    if not snapshot.exists:
        raise SessionNotFound(ref.id)

    session = GuestViewSession.from_record(snapshot.to_dict())
    session.check_redeemable(now)

    transaction.update(ref, {"accessCount": firestore.Increment(1)})
    session.access_count += 1
    return session


class FirestoreSessionStore(SessionStore):
    """
    Firestore-backed `pdfSessions` collection, document id = sessionId.
    Redemption runs inside a transaction so concurrent redeemers cannot push
    accessCount past maxAccessCount.
    """

    def __init__(
        self,
        client: Optional[firestore.Client] = None,
        *,
        credentials_path: str = "",
        service_account_info: Optional[Dict[str, Any]] = None,
        project_id: str = "",
    ) -> None:
        self.client = client or _client_from_settings(credentials_path, service_account_info, project_id)
        self.collection = self.client.collection(COLLECTION)

    @classmethod
    def from_settings(cls, settings) -> "FirestoreSessionStore":
        return cls(
            credentials_path=settings.resolved_firebase_credentials_path(),
            service_account_info=settings.firebase_service_account_info(),
            project_id=settings.firebase_project_id,
        )

    @retry_firestore_api
    def _create(self, session_id: str, record: Dict[str, Any]) -> None:
        self.collection.document(session_id).create(record)

    @retry_firestore_api
    def _get(self, session_id: str):
        return self.collection.document(session_id).get()

    def create_session(self, session: GuestViewSession) -> None:
        try:
            self._create(session.session_id, session.to_record())
        except gcp_exceptions.GoogleAPICallError as e:
            logger.error(f"[firestore] ✗ Failed to create session {session.session_id}: {e}")
            raise PersistenceError(f"Failed to store guest session: {e}") from e
        logger.info(f"[firestore] ✓ Created session {session.session_id}")

    def get_session(self, session_id: str) -> Optional[GuestViewSession]:
        try:
            snapshot = self._get(session_id)
        except gcp_exceptions.GoogleAPICallError as e:
            raise PersistenceError(f"Failed to read guest session: {e}") from e
        if not snapshot.exists:
            return None
        return GuestViewSession.from_record(snapshot.to_dict())

    def redeem_session(self, session_id: str, now: datetime) -> GuestViewSession:
        ref = self.collection.document(session_id)
        try:
            return _redeem_in_transaction(self.client.transaction(), ref, now)
        except gcp_exceptions.GoogleAPICallError as e:
            logger.error(f"[firestore] ✗ Redemption of {session_id} failed: {e}")
            raise PersistenceError(f"Failed to redeem guest session: {e}") from e
