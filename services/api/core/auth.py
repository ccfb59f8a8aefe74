# services/api/core/auth.py
"""
Caller identity.

Authentication itself is handled upstream (the storefront's auth provider);
by the time a request reaches this service the authenticated user's email
is forwarded in the X-User-Email header.
"""
from typing import Optional

from fastapi import Depends, Header, HTTPException, status


def get_caller_email(x_user_email: Optional[str] = Header(None)) -> Optional[str]:
    value = (x_user_email or "").strip().lower()
    return value or None


def require_user(caller: Optional[str] = Depends(get_caller_email)) -> str:
    if not caller:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="AUTHENTICATION_REQUIRED")
    return caller
