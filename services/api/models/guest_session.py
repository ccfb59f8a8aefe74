from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List

from pydantic import BaseModel, ConfigDict, Field

from core.errors import SessionAccessExhausted, SessionExpired


class GuestViewSession(BaseModel):
    """
    Domain model for a `pdfSessions` record: a time- and count-limited grant
    to view a fixed subset of pages of one document.

    Field aliases are the stored record keys.
    """
    model_config = ConfigDict(populate_by_name=True)

    session_id: str = Field(..., alias="sessionId")
    source_document_url: str = Field(..., alias="sourceDocumentUrl")
    document_name: str = Field("", alias="documentName")

    # Physical page numbers, in the order the sender chose them
    selected_pages: List[int] = Field(..., alias="selectedPages")
    recipient_email: str = Field(..., alias="recipientEmail")

    created_at: datetime = Field(..., alias="createdAt")
    expires_at: datetime = Field(..., alias="expiresAt")

    access_count: int = Field(0, ge=0, alias="accessCount")
    max_access_count: int = Field(..., gt=0, alias="maxAccessCount")

    def to_record(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True)

    @classmethod
    def from_record(cls, record: Dict[str, Any]) -> "GuestViewSession":
        return cls.model_validate(record)

    def is_expired(self, now: datetime) -> bool:
        return now > self.expires_at

    def is_exhausted(self) -> bool:
        return self.access_count >= self.max_access_count

    @property
    def remaining_views(self) -> int:
        return max(0, self.max_access_count - self.access_count)

    @property
    def page_count(self) -> int:
        return len(self.selected_pages)

    def check_redeemable(self, now: datetime) -> None:
        """Expiry wins over the access ceiling when both apply."""
        if self.is_expired(now):
            raise SessionExpired(self.session_id, f"Guest session {self.session_id} expired at {self.expires_at.isoformat()}")
        if self.is_exhausted():
            raise SessionAccessExhausted(
                self.session_id,
                f"Guest session {self.session_id} used {self.access_count}/{self.max_access_count} views",
            )
