"""Identity boundary for FastAPI endpoints.

Authentication happens upstream: the gateway resolves credentials to a user,
the organization the request acts for, and the organization roles, and
forwards them as headers. This module trusts that resolution and only turns
it into an `AuthenticatedUser`.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Tuple

from fastapi import Header, HTTPException, status


@dataclass(slots=True)
class AuthenticatedUser:
	id: str
	organization_id: str
	roles: Tuple[str, ...] = ()

	def has_role(self, role: str) -> bool:
		return role in self.roles


def _split_roles(raw: Optional[str]) -> Tuple[str, ...]:
	if not raw:
		return ()
	return tuple(part.strip() for part in raw.split(",") if part.strip())


async def get_current_user(
	x_user_id: Optional[str] = Header(default=None, alias="X-User-Id"),
	x_organization_id: Optional[str] = Header(default=None, alias="X-Organization-Id"),
	x_user_roles: Optional[str] = Header(default=None, alias="X-User-Roles"),
) -> AuthenticatedUser:
	"""Resolve the caller from the identity headers set by the gateway."""
	user_id = (x_user_id or "").strip()
	organization_id = (x_organization_id or "").strip()
	if not user_id or not organization_id:
		raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="unauthenticated")
	return AuthenticatedUser(id=user_id, organization_id=organization_id, roles=_split_roles(x_user_roles))
