from __future__ import annotations

from datetime import date, datetime
from typing import Any, Literal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, EmailStr, Field, model_validator

from companyos.directory.schemas import ContactSummary, ProfileSummary


TicketStatus = Literal["new", "open", "in_progress", "waiting", "resolved", "closed"]
TicketPriority = Literal["low", "medium", "high", "urgent"]


class TicketCreate(BaseModel):
    title: str = Field(min_length=1)
    description: str | None = None
    client_id: UUID | None = None
    client_email: EmailStr | None = None
    client_name: str | None = None
    status: TicketStatus = "new"
    priority: TicketPriority = "medium"
    category: str | None = None
    assignee_id: UUID | None = None
    due_date: date | None = None
    meta: dict[str, Any] = Field(default_factory=dict)


class TicketUpdate(BaseModel):
    title: str | None = Field(default=None, min_length=1)
    description: str | None = None
    client_id: UUID | None = None
    client_email: EmailStr | None = None
    client_name: str | None = None
    status: TicketStatus | None = None
    priority: TicketPriority | None = None
    category: str | None = None
    assignee_id: UUID | None = None
    due_date: date | None = None
    resolution: str | None = None
    meta: dict[str, Any] | None = None

    @model_validator(mode="after")
    def reject_null_required_fields(self) -> "TicketUpdate":
        for name in ("title", "status", "priority"):
            if name in self.model_fields_set and getattr(self, name) is None:
                raise ValueError(f"{name} cannot be null")
        return self


class TicketListFilters(BaseModel):
    status: list[TicketStatus] = Field(default_factory=list)
    priority: list[TicketPriority] = Field(default_factory=list)
    assignee_id: UUID | None = None
    client_id: UUID | None = None
    search: str | None = None
    limit: int = Field(default=50, ge=1, le=200)
    offset: int = Field(default=0, ge=0)


class TicketRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    ticket_number: str
    title: str
    description: str | None
    client_id: UUID | None
    client_email: str | None
    client_name: str | None
    status: str
    priority: str
    category: str | None
    assignee_id: UUID | None
    department_id: UUID | None
    due_date: date | None
    resolution: str | None
    resolved_at: datetime | None
    resolved_by: UUID | None
    meta: dict[str, Any] | None
    created_by: UUID | None
    created_at: datetime
    updated_at: datetime


class TicketFull(TicketRead):
    client: ContactSummary | None = None
    assignee: ProfileSummary | None = None
