from __future__ import annotations

import uuid
from datetime import datetime
from decimal import Decimal

from fastapi import APIRouter, Depends, Query, Request, status
from fastapi.responses import JSONResponse, Response

from companyos.api.deps import get_request_gateway
from companyos.api.errors import data_access_error_response
from companyos.crm.schemas import (
    InteractionCreate,
    InteractionRead,
    LeadCreate,
    LeadFull,
    LeadListFilters,
    LeadPage,
    LeadRead,
    LeadSort,
    LeadSortField,
    LeadStatus,
    LeadStatusHistoryRead,
    LeadStatusUpdate,
    LeadUpdate,
)
from companyos.crm.service import LeadService
from companyos.platform.data.gateway import CrudGateway
from companyos.platform.security.errors import DataAccessError, NotFoundOrDeniedError


leads_router = APIRouter(prefix="/api/crm", tags=["crm.leads"])


def get_lead_service(gateway: CrudGateway = Depends(get_request_gateway)) -> LeadService:
    return LeadService(gateway)


@leads_router.get("/leads", response_model=LeadPage)
def list_leads(
    request: Request,
    status_filter: list[LeadStatus] | None = Query(default=None, alias="status"),
    owner_id: list[uuid.UUID] | None = Query(default=None),
    source: list[str] | None = Query(default=None),
    date_from: datetime | None = Query(default=None),
    date_to: datetime | None = Query(default=None),
    value_min: Decimal | None = Query(default=None),
    value_max: Decimal | None = Query(default=None),
    tags: list[str] | None = Query(default=None),
    search: str | None = Query(default=None),
    sort_by: LeadSortField = Query(default="created_at"),
    sort_order: str = Query(default="desc", pattern="^(asc|desc)$"),
    page: int = Query(default=1, ge=1),
    page_size: int = Query(default=20, ge=1, le=100),
    lead_service: LeadService = Depends(get_lead_service),
) -> LeadPage | JSONResponse:
    filters = LeadListFilters(
        status=status_filter or [],
        owner_id=owner_id or [],
        source=source or [],
        date_from=date_from,
        date_to=date_to,
        value_min=value_min,
        value_max=value_max,
        tags=tags or [],
        search=search,
    )
    try:
        return lead_service.list_leads(
            filters,
            LeadSort(field=sort_by, direction=sort_order),
            page=page,
            page_size=page_size,
        )
    except DataAccessError as exc:
        return data_access_error_response(request, exc)


@leads_router.post("/leads", response_model=LeadRead, status_code=status.HTTP_201_CREATED)
def create_lead(
    request: Request,
    dto: LeadCreate,
    lead_service: LeadService = Depends(get_lead_service),
) -> LeadRead | JSONResponse:
    try:
        return lead_service.create_lead(dto)
    except DataAccessError as exc:
        return data_access_error_response(request, exc)


@leads_router.get("/leads/{lead_id}", response_model=LeadFull)
def get_lead(
    request: Request,
    lead_id: uuid.UUID,
    lead_service: LeadService = Depends(get_lead_service),
) -> LeadFull | JSONResponse:
    try:
        lead = lead_service.get_lead(lead_id)
        if lead is None:
            raise NotFoundOrDeniedError("leads")
        return lead
    except DataAccessError as exc:
        return data_access_error_response(request, exc)


@leads_router.patch("/leads/{lead_id}", response_model=LeadRead)
def patch_lead(
    request: Request,
    lead_id: uuid.UUID,
    dto: LeadUpdate,
    lead_service: LeadService = Depends(get_lead_service),
) -> LeadRead | JSONResponse:
    try:
        return lead_service.update_lead(lead_id, dto)
    except DataAccessError as exc:
        return data_access_error_response(request, exc)


@leads_router.post("/leads/{lead_id}/status", response_model=LeadRead)
def update_lead_status(
    request: Request,
    lead_id: uuid.UUID,
    dto: LeadStatusUpdate,
    lead_service: LeadService = Depends(get_lead_service),
) -> LeadRead | JSONResponse:
    try:
        return lead_service.update_lead_status(lead_id, dto.status, dto.notes)
    except DataAccessError as exc:
        return data_access_error_response(request, exc)


@leads_router.delete("/leads/{lead_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_lead(
    request: Request,
    lead_id: uuid.UUID,
    lead_service: LeadService = Depends(get_lead_service),
) -> Response:
    try:
        if not lead_service.delete_lead(lead_id):
            raise NotFoundOrDeniedError("leads")
    except DataAccessError as exc:
        return data_access_error_response(request, exc)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@leads_router.get("/leads/{lead_id}/interactions", response_model=list[InteractionRead])
def list_interactions(
    request: Request,
    lead_id: uuid.UUID,
    lead_service: LeadService = Depends(get_lead_service),
) -> list[InteractionRead] | JSONResponse:
    try:
        return lead_service.list_interactions(lead_id)
    except DataAccessError as exc:
        return data_access_error_response(request, exc)


@leads_router.post(
    "/leads/{lead_id}/interactions",
    response_model=InteractionRead,
    status_code=status.HTTP_201_CREATED,
)
def add_interaction(
    request: Request,
    lead_id: uuid.UUID,
    dto: InteractionCreate,
    lead_service: LeadService = Depends(get_lead_service),
) -> InteractionRead | JSONResponse:
    try:
        return lead_service.add_interaction(lead_id, dto)
    except DataAccessError as exc:
        return data_access_error_response(request, exc)


@leads_router.get("/leads/{lead_id}/status-history", response_model=list[LeadStatusHistoryRead])
def list_status_history(
    request: Request,
    lead_id: uuid.UUID,
    lead_service: LeadService = Depends(get_lead_service),
) -> list[LeadStatusHistoryRead] | JSONResponse:
    try:
        return lead_service.list_status_history(lead_id)
    except DataAccessError as exc:
        return data_access_error_response(request, exc)
