from __future__ import annotations

from uuid import UUID

from pydantic import BaseModel, ConfigDict


class ProfileSummary(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    user_id: str
    first_name: str | None
    last_name: str | None
    email: str | None
    avatar_url: str | None


class ContactSummary(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    name: str
    email: str | None
    phone: str | None


class CompanySummary(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    name: str
    website: str | None
    industry: str | None
