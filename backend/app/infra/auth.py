"""Authentication helpers for FastAPI endpoints.

Identity is established upstream by the gateway, which forwards the verified
user id in ``X-User-Id``. Role membership is not trusted from the request; the
moderation services resolve it through their injected role store.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from fastapi import Header, HTTPException, status


@dataclass(slots=True)
class AuthenticatedUser:
	id: str
	session_id: Optional[str] = None


async def get_current_user(
	x_user_id: Optional[str] = Header(default=None, alias="X-User-Id"),
	x_session_id: Optional[str] = Header(default=None, alias="X-Session-Id"),
) -> AuthenticatedUser:
	"""Resolve the authenticated user forwarded by the gateway."""
	user_id = (x_user_id or "").strip()
	if not user_id:
		raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="authentication_required")
	return AuthenticatedUser(id=user_id, session_id=x_session_id)
