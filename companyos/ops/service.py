from __future__ import annotations

import logging
import uuid
from collections.abc import Iterator, Sequence
from contextlib import contextmanager
from datetime import datetime, timezone

from sqlalchemy import or_
from sqlalchemy.sql.elements import ColumnElement

from companyos.core.config import Settings, get_settings
from companyos.directory.models import Contact, Profile
from companyos.directory.schemas import ContactSummary, ProfileSummary
from companyos.notifications.dispatcher import NotificationTrigger, enqueue_notification
from companyos.ops.models import Ticket
from companyos.ops.schemas import TicketCreate, TicketFull, TicketListFilters, TicketRead, TicketUpdate
from companyos.platform.data.gateway import CrudGateway
from companyos.platform.data.stitch import RelationSpec, fetch_lookup, stitch
from companyos.platform.security.context import AuthContext
from companyos.platform.security.errors import NotFoundOrDeniedError
from companyos.platform.security.rls import ScopeOptions


logger = logging.getLogger("companyos.ops.tickets")

TICKET_SCOPE = ScopeOptions(admin_bypass=True)
TERMINAL_STATUSES = {"resolved", "closed"}

TICKET_RELATIONS = (
    RelationSpec("client", Contact, "client_id"),
    RelationSpec("assignee", Profile, "assignee_id"),
)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def generate_ticket_number(now: datetime | None = None) -> str:
    now = now or utcnow()
    return f"TCK-{now:%Y%m%d}-{uuid.uuid4().hex[:6].upper()}"


class TicketService:
    entity = "tickets"

    def __init__(self, gateway: CrudGateway, settings: Settings | None = None) -> None:
        self.gateway = gateway
        self.session = gateway.session
        self.settings = settings or get_settings()

    def list_tickets(self, filters: TicketListFilters | None = None) -> list[TicketFull]:
        filters = filters or TicketListFilters()
        rows = self.gateway.list(
            self.entity,
            scope=TICKET_SCOPE,
            filters={"assignee_id": filters.assignee_id, "client_id": filters.client_id},
            conditions=self._filter_conditions(filters),
            order_by="created_at",
            descending=True,
            limit=filters.limit,
            offset=filters.offset,
        )
        return self._enrich(rows)

    def get_ticket(self, ticket_id: uuid.UUID) -> TicketFull | None:
        ticket = self.gateway.find_one(self.entity, ticket_id, scope=TICKET_SCOPE)
        if ticket is None:
            return None
        return self._enrich([ticket])[0]

    def create_ticket(self, dto: TicketCreate) -> TicketRead:
        values = dto.model_dump(exclude={"assignee_id", "client_email"})
        values["client_email"] = str(dto.client_email) if dto.client_email is not None else None
        values["ticket_number"] = generate_ticket_number()
        if dto.assignee_id is not None:
            values["assignee_id"] = dto.assignee_id

        with self._transaction():
            ticket = self.gateway.create(
                self.entity,
                values,
                set_owner=dto.assignee_id is None,
                set_department=True,
            )
            ctx = self.gateway.guard.resolve()
            self._write_history(ticket.id, ticket.status, None, "Ticket created")
            if ticket.assignee_id is not None:
                self._notify_assigned(ctx, ticket.id, ticket.assignee_id)

        logger.info("ticket.created", extra={"entity_id": str(ticket.id), "profile_id": str(ctx.profile_id)})
        return TicketRead.model_validate(ticket)

    def update_ticket(self, ticket_id: uuid.UUID, dto: TicketUpdate) -> TicketRead:
        values = dto.model_dump(exclude_unset=True)
        if values.get("client_email") is not None:
            values["client_email"] = str(values["client_email"])

        with self._transaction():
            current = self._require_visible(ticket_id)
            previous_status = current.status
            previous_assignee = current.assignee_id
            ctx = self.gateway.guard.resolve()

            new_status = values.get("status")
            if new_status in TERMINAL_STATUSES and previous_status not in TERMINAL_STATUSES:
                values.setdefault("resolved_at", utcnow())
                values.setdefault("resolved_by", ctx.profile_id)

            ticket = self.gateway.update(self.entity, ticket_id, values, scope=TICKET_SCOPE) if values else current

            if ticket.status != previous_status:
                self._write_history(ticket_id, ticket.status, previous_status, None)
                enqueue_notification(
                    self.session,
                    NotificationTrigger(
                        entity_type="ticket",
                        entity_id=str(ticket_id),
                        action="status_changed",
                        notification_type="ticket_status_changed",
                        actor_id=ctx.user_id,
                        metadata={"previous_status": previous_status, "new_status": ticket.status},
                    ),
                    self.settings,
                )
            if ticket.assignee_id is not None and ticket.assignee_id != previous_assignee:
                self._notify_assigned(ctx, ticket_id, ticket.assignee_id)

        return TicketRead.model_validate(ticket)

    def delete_ticket(self, ticket_id: uuid.UUID) -> bool:
        with self._transaction():
            return self.gateway.delete(self.entity, ticket_id, scope=TICKET_SCOPE)

    def _require_visible(self, ticket_id: uuid.UUID) -> Ticket:
        ticket = self.gateway.find_one(self.entity, ticket_id, scope=TICKET_SCOPE)
        if ticket is None:
            raise NotFoundOrDeniedError(self.entity)
        return ticket

    @staticmethod
    def _filter_conditions(filters: TicketListFilters) -> list[ColumnElement[bool]]:
        conditions: list[ColumnElement[bool]] = []
        if filters.status:
            conditions.append(Ticket.status.in_(filters.status))
        if filters.priority:
            conditions.append(Ticket.priority.in_(filters.priority))
        if filters.search and filters.search.strip():
            pattern = f"%{filters.search.strip()}%"
            conditions.append(
                or_(
                    Ticket.ticket_number.ilike(pattern),
                    Ticket.title.ilike(pattern),
                    Ticket.description.ilike(pattern),
                    Ticket.client_name.ilike(pattern),
                )
            )
        return conditions

    def _enrich(self, tickets: Sequence[Ticket]) -> list[TicketFull]:
        enriched: list[TicketFull] = []
        for item in stitch(self.session, tickets, TICKET_RELATIONS):
            base = TicketRead.model_validate(item.row)
            enriched.append(
                TicketFull(
                    **base.model_dump(),
                    client=ContactSummary.model_validate(item["client"]) if item["client"] else None,
                    assignee=ProfileSummary.model_validate(item["assignee"]) if item["assignee"] else None,
                )
            )
        return enriched

    def _write_history(self, ticket_id: uuid.UUID, status: str, previous_status: str | None, notes: str | None) -> None:
        self.gateway.create(
            "ticket_status_history",
            {"ticket_id": ticket_id, "status": status, "previous_status": previous_status, "notes": notes},
        )

    def _notify_assigned(self, ctx: AuthContext, ticket_id: uuid.UUID, assignee_id: uuid.UUID) -> None:
        assignee = fetch_lookup(self.session, Profile, [assignee_id], relation="ticket_assignee").get(assignee_id)
        if assignee is None:
            logger.warning("ticket.assignee_missing", extra={"entity_id": str(ticket_id)})
            return
        enqueue_notification(
            self.session,
            NotificationTrigger(
                entity_type="ticket",
                entity_id=str(ticket_id),
                action="assigned",
                notification_type="ticket_assigned",
                actor_id=ctx.user_id,
                recipients=[assignee.user_id],
            ),
            self.settings,
        )

    @contextmanager
    def _transaction(self) -> Iterator[None]:
        try:
            yield
            self.session.commit()
        except Exception:
            self.session.rollback()
            raise
