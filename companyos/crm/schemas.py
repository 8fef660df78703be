from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from typing import Any, Literal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, model_validator

from companyos.directory.schemas import CompanySummary, ContactSummary, ProfileSummary


LeadStatus = Literal["new", "contacted", "qualified", "proposal", "negotiation", "won", "lost"]
InteractionType = Literal["call", "email", "meeting", "note", "task"]
LeadSortField = Literal["created_at", "updated_at", "value", "status", "expected_close_date"]


class LeadCreate(BaseModel):
    contact_id: UUID | None = None
    company_id: UUID | None = None
    owner_id: UUID | None = None
    status: LeadStatus = "new"
    source: str | None = None
    value: Decimal | None = Field(default=None, ge=0, max_digits=12, decimal_places=2)
    probability: int | None = Field(default=None, ge=0, le=100)
    expected_close_date: date | None = None
    notes: str | None = None
    tags: list[str] = Field(default_factory=list)
    meta: dict[str, Any] = Field(default_factory=dict)


class LeadUpdate(BaseModel):
    contact_id: UUID | None = None
    company_id: UUID | None = None
    owner_id: UUID | None = None
    status: LeadStatus | None = None
    source: str | None = None
    value: Decimal | None = Field(default=None, ge=0, max_digits=12, decimal_places=2)
    probability: int | None = Field(default=None, ge=0, le=100)
    expected_close_date: date | None = None
    notes: str | None = None
    tags: list[str] | None = None
    meta: dict[str, Any] | None = None

    @model_validator(mode="after")
    def reject_null_required_fields(self) -> "LeadUpdate":
        if "status" in self.model_fields_set and self.status is None:
            raise ValueError("status cannot be null")
        return self


class LeadStatusUpdate(BaseModel):
    status: LeadStatus
    notes: str | None = None


class LeadListFilters(BaseModel):
    status: list[LeadStatus] = Field(default_factory=list)
    owner_id: list[UUID] = Field(default_factory=list)
    source: list[str] = Field(default_factory=list)
    date_from: datetime | None = None
    date_to: datetime | None = None
    value_min: Decimal | None = None
    value_max: Decimal | None = None
    tags: list[str] = Field(default_factory=list)
    search: str | None = None


class LeadSort(BaseModel):
    field: LeadSortField = "created_at"
    direction: Literal["asc", "desc"] = "desc"


class LeadRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    contact_id: UUID | None
    company_id: UUID | None
    owner_id: UUID | None
    department_id: UUID | None
    status: str
    source: str | None
    value: Decimal | None
    probability: int | None
    expected_close_date: date | None
    notes: str | None
    meta: dict[str, Any] | None
    created_by: UUID | None
    created_at: datetime
    updated_at: datetime
    tags: list[str] = Field(default_factory=list)


class LeadFull(LeadRead):
    contact: ContactSummary | None = None
    company: CompanySummary | None = None
    owner: ProfileSummary | None = None
    interactions_count: int = 0
    last_interaction_at: datetime | None = None


class LeadPage(BaseModel):
    leads: list[LeadFull]
    total: int
    page: int
    page_size: int
    total_pages: int


class InteractionCreate(BaseModel):
    type: InteractionType
    subject: str | None = None
    notes: str | None = None
    scheduled_at: datetime | None = None
    duration_minutes: int | None = Field(default=None, ge=0)
    outcome: str | None = None


class InteractionRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    entity_type: str
    entity_id: UUID
    type: str
    subject: str | None
    notes: str | None
    scheduled_at: datetime | None
    duration_minutes: int | None
    outcome: str | None
    created_by: UUID | None
    created_at: datetime
    created_by_profile: ProfileSummary | None = None


class LeadStatusHistoryRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    lead_id: UUID
    status: str
    previous_status: str | None
    notes: str | None
    created_by: UUID | None
    created_at: datetime
    created_by_profile: ProfileSummary | None = None
