from __future__ import annotations

import uuid

from fastapi import APIRouter, Depends, Query, Request, status
from fastapi.responses import JSONResponse, Response

from companyos.api.deps import get_request_gateway
from companyos.api.errors import data_access_error_response
from companyos.ops.schemas import (
    TicketCreate,
    TicketFull,
    TicketListFilters,
    TicketPriority,
    TicketRead,
    TicketStatus,
    TicketUpdate,
)
from companyos.ops.service import TicketService
from companyos.platform.data.gateway import CrudGateway
from companyos.platform.security.errors import DataAccessError, NotFoundOrDeniedError


tickets_router = APIRouter(prefix="/api/ops", tags=["ops.tickets"])


def get_ticket_service(gateway: CrudGateway = Depends(get_request_gateway)) -> TicketService:
    return TicketService(gateway)


@tickets_router.get("/tickets", response_model=list[TicketFull])
def list_tickets(
    request: Request,
    status_filter: list[TicketStatus] | None = Query(default=None, alias="status"),
    priority: list[TicketPriority] | None = Query(default=None),
    assignee_id: uuid.UUID | None = Query(default=None),
    client_id: uuid.UUID | None = Query(default=None),
    search: str | None = Query(default=None),
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    ticket_service: TicketService = Depends(get_ticket_service),
) -> list[TicketFull] | JSONResponse:
    filters = TicketListFilters(
        status=status_filter or [],
        priority=priority or [],
        assignee_id=assignee_id,
        client_id=client_id,
        search=search,
        limit=limit,
        offset=offset,
    )
    try:
        return ticket_service.list_tickets(filters)
    except DataAccessError as exc:
        return data_access_error_response(request, exc)


@tickets_router.post("/tickets", response_model=TicketRead, status_code=status.HTTP_201_CREATED)
def create_ticket(
    request: Request,
    dto: TicketCreate,
    ticket_service: TicketService = Depends(get_ticket_service),
) -> TicketRead | JSONResponse:
    try:
        return ticket_service.create_ticket(dto)
    except DataAccessError as exc:
        return data_access_error_response(request, exc)


@tickets_router.get("/tickets/{ticket_id}", response_model=TicketFull)
def get_ticket(
    request: Request,
    ticket_id: uuid.UUID,
    ticket_service: TicketService = Depends(get_ticket_service),
) -> TicketFull | JSONResponse:
    try:
        ticket = ticket_service.get_ticket(ticket_id)
        if ticket is None:
            raise NotFoundOrDeniedError("tickets")
        return ticket
    except DataAccessError as exc:
        return data_access_error_response(request, exc)


@tickets_router.patch("/tickets/{ticket_id}", response_model=TicketRead)
def patch_ticket(
    request: Request,
    ticket_id: uuid.UUID,
    dto: TicketUpdate,
    ticket_service: TicketService = Depends(get_ticket_service),
) -> TicketRead | JSONResponse:
    try:
        return ticket_service.update_ticket(ticket_id, dto)
    except DataAccessError as exc:
        return data_access_error_response(request, exc)


@tickets_router.delete("/tickets/{ticket_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_ticket(
    request: Request,
    ticket_id: uuid.UUID,
    ticket_service: TicketService = Depends(get_ticket_service),
) -> Response:
    try:
        if not ticket_service.delete_ticket(ticket_id):
            raise NotFoundOrDeniedError("tickets")
    except DataAccessError as exc:
        return data_access_error_response(request, exc)
    return Response(status_code=status.HTTP_204_NO_CONTENT)
