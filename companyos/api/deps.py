from __future__ import annotations

from fastapi import Depends
from sqlalchemy.orm import Session

from companyos.core.auth import AuthUser, ProfileAuthResolver, get_current_user
from companyos.core.database import get_db
from companyos.entities import get_gateway
from companyos.platform.data.gateway import CrudGateway


def get_auth_resolver(
    db: Session = Depends(get_db),
    user: AuthUser | None = Depends(get_current_user),
) -> ProfileAuthResolver:
    return ProfileAuthResolver(db, user)


def get_request_gateway(
    db: Session = Depends(get_db),
    resolver: ProfileAuthResolver = Depends(get_auth_resolver),
) -> CrudGateway:
    return get_gateway(db, resolver)
