from __future__ import annotations

from .guest_session import GuestViewSession

__all__ = ["GuestViewSession"]
