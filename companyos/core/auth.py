from __future__ import annotations

import logging
from dataclasses import dataclass, field

from jose import JWTError, jwt
from sqlalchemy import select
from sqlalchemy.orm import Session
from starlette.requests import Request

from companyos.context import get_correlation_id, set_auth_user_id
from companyos.core.config import get_settings
from companyos.directory.models import Profile
from companyos.platform.security.context import AuthContext, Role


logger = logging.getLogger("companyos.auth")


@dataclass
class AuthUser:
    sub: str
    permissions: list[str] = field(default_factory=list)


def get_current_user(request: Request) -> AuthUser | None:
    auth_header = request.headers.get("authorization", "")
    token = auth_header[len("Bearer ") :] if auth_header.startswith("Bearer ") else ""
    if not token:
        return None

    settings = get_settings()
    try:
        payload = jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])
    except JWTError:
        logger.info("auth.invalid_token", extra={"path": request.url.path})
        return None

    subject = payload.get("sub")
    if not subject:
        return None
    permissions = payload.get("permissions", [])
    if not isinstance(permissions, list):
        permissions = []
    return AuthUser(sub=str(subject), permissions=[str(item) for item in permissions])


class ProfileAuthResolver:
    """Resolve the caller's AuthContext from their active profile, once per request."""

    def __init__(self, session: Session, auth_user: AuthUser | None) -> None:
        self.session = session
        self.auth_user = auth_user
        self._resolved = False
        self._context: AuthContext | None = None

    def __call__(self) -> AuthContext | None:
        if not self._resolved:
            self._context = self._load()
            self._resolved = True
        return self._context

    def _load(self) -> AuthContext | None:
        if self.auth_user is None:
            return None
        profile = self.session.scalar(
            select(Profile).where(Profile.user_id == self.auth_user.sub, Profile.deleted_at.is_(None))
        )
        if profile is None:
            logger.info("auth.profile_missing", extra={"reason": "profile_missing"})
            return None
        role = Role.parse(profile.role)
        if role is None:
            logger.warning("auth.unknown_role", extra={"profile_id": str(profile.id), "role": profile.role})
            return None
        set_auth_user_id(self.auth_user.sub)
        return AuthContext(
            user_id=self.auth_user.sub,
            profile_id=profile.id,
            role=role,
            department_id=profile.department_id,
            permissions=frozenset(self.auth_user.permissions),
            correlation_id=get_correlation_id(),
        )
