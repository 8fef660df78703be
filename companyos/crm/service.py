from __future__ import annotations

import logging
import math
import uuid
from collections.abc import Iterator, Sequence
from contextlib import contextmanager
from datetime import datetime
from typing import Any

from sqlalchemy import func, or_, select
from sqlalchemy.sql.elements import ColumnElement

from companyos.core.config import Settings, get_settings
from companyos.crm.models import CRMInteraction, CRMLead, CRMLeadStatusHistory, CRMLeadTag
from companyos.crm.schemas import (
    InteractionCreate,
    InteractionRead,
    LeadCreate,
    LeadFull,
    LeadListFilters,
    LeadPage,
    LeadRead,
    LeadSort,
    LeadStatusHistoryRead,
    LeadUpdate,
)
from companyos.directory.models import Company, Contact, Profile
from companyos.directory.schemas import CompanySummary, ContactSummary, ProfileSummary
from companyos.notifications.dispatcher import NotificationTrigger, enqueue_notification
from companyos.platform.data.gateway import CrudGateway
from companyos.platform.data.stitch import RelationSpec, fetch_lookup, stitch
from companyos.platform.security.context import AuthContext
from companyos.platform.security.errors import NotFoundOrDeniedError
from companyos.platform.security.guard import AccessRequirement, PermissionRequirement
from companyos.platform.security.rls import ScopeOptions


logger = logging.getLogger("companyos.crm.leads")

LEAD_SCOPE = ScopeOptions(admin_bypass=True)
CHILD_SCOPE = ScopeOptions(admin_bypass=True, owner=False, department=False)
MAX_PAGE_SIZE = 100

LEAD_RELATIONS = (
    RelationSpec("contact", Contact, "contact_id"),
    RelationSpec("company", Company, "company_id"),
    RelationSpec("owner", Profile, "owner_id"),
)
CREATED_BY_RELATION = (RelationSpec("created_by_profile", Profile, "created_by"),)


class LeadService:
    entity = "leads"

    def __init__(self, gateway: CrudGateway, settings: Settings | None = None) -> None:
        self.gateway = gateway
        self.session = gateway.session
        self.settings = settings or get_settings()

    def list_leads(
        self,
        filters: LeadListFilters | None = None,
        sort: LeadSort | None = None,
        page: int = 1,
        page_size: int = 20,
    ) -> LeadPage:
        filters = filters or LeadListFilters()
        sort = sort or LeadSort()
        page = max(page, 1)
        page_size = min(max(page_size, 1), MAX_PAGE_SIZE)

        conditions = self._filter_conditions(filters)
        total = self.gateway.count(self.entity, scope=LEAD_SCOPE, conditions=conditions)
        leads = self.gateway.list(
            self.entity,
            scope=LEAD_SCOPE,
            conditions=conditions,
            order_by=sort.field,
            descending=sort.direction == "desc",
            limit=page_size,
            offset=(page - 1) * page_size,
        )
        return LeadPage(
            leads=self._enrich(leads),
            total=total,
            page=page,
            page_size=page_size,
            total_pages=math.ceil(total / page_size) if total else 0,
        )

    def get_lead(self, lead_id: uuid.UUID) -> LeadFull | None:
        lead = self.gateway.find_one(self.entity, lead_id, scope=LEAD_SCOPE)
        if lead is None:
            return None
        return self._enrich([lead])[0]

    def create_lead(self, dto: LeadCreate) -> LeadRead:
        values = dto.model_dump(exclude={"tags", "owner_id"})
        if dto.owner_id is not None:
            values["owner_id"] = dto.owner_id

        with self._transaction():
            lead = self.gateway.create(
                self.entity,
                values,
                set_owner=dto.owner_id is None,
                set_department=True,
            )
            ctx = self.gateway.guard.resolve()
            tags = self._sync_tags(lead.id, dto.tags)
            self._write_history(lead.id, lead.status, None, "Lead created")
            if lead.owner_id is not None:
                self._notify_assigned(ctx, lead.id, lead.owner_id)

        logger.info("lead.created", extra={"entity_id": str(lead.id), "profile_id": str(ctx.profile_id)})
        return self._to_read(lead, tags)

    def update_lead(self, lead_id: uuid.UUID, dto: LeadUpdate) -> LeadRead:
        values = dto.model_dump(exclude_unset=True, exclude={"tags"})

        with self._transaction():
            current = self._require_visible(lead_id)
            previous_status = current.status
            previous_owner = current.owner_id

            # Tag-only changes still pass the leads:update check.
            if values or dto.tags is not None:
                lead = self.gateway.update(self.entity, lead_id, values, scope=LEAD_SCOPE)
            else:
                lead = current
            ctx = self.gateway.guard.resolve()
            if dto.tags is not None:
                tags = self._sync_tags(lead_id, dto.tags)
            else:
                tags = self._tags_for([lead_id]).get(lead_id, [])

            if lead.owner_id is not None and lead.owner_id != previous_owner:
                self._notify_assigned(ctx, lead_id, lead.owner_id)
            if lead.status != previous_status:
                self._write_history(lead_id, lead.status, previous_status, None)
                self._notify_status_changed(ctx, lead_id, previous_status, lead.status)

        return self._to_read(lead, tags)

    def update_lead_status(self, lead_id: uuid.UUID, status: str, notes: str | None = None) -> LeadRead:
        with self._transaction():
            current = self._require_visible(lead_id)
            previous_status = current.status
            lead = self.gateway.update(self.entity, lead_id, {"status": status}, scope=LEAD_SCOPE)
            ctx = self.gateway.guard.resolve()
            self._write_history(lead_id, status, previous_status, notes)
            if previous_status != status:
                self._notify_status_changed(ctx, lead_id, previous_status, status)
            tags = self._tags_for([lead_id]).get(lead_id, [])

        return self._to_read(lead, tags)

    def delete_lead(self, lead_id: uuid.UUID) -> bool:
        with self._transaction():
            return self.gateway.delete(self.entity, lead_id, scope=LEAD_SCOPE)

    def list_interactions(self, lead_id: uuid.UUID) -> list[InteractionRead]:
        self._require_visible(lead_id)
        rows = self.gateway.list(
            "interactions",
            scope=CHILD_SCOPE,
            filters={"entity_type": "lead", "entity_id": lead_id},
            order_by="created_at",
            descending=True,
        )
        return [
            InteractionRead.model_validate(item.row).model_copy(
                update={"created_by_profile": _profile_summary(item["created_by_profile"])}
            )
            for item in stitch(self.session, rows, CREATED_BY_RELATION)
        ]

    def add_interaction(self, lead_id: uuid.UUID, dto: InteractionCreate) -> InteractionRead:
        with self._transaction():
            self._require_visible(lead_id)
            interaction = self.gateway.create(
                "interactions",
                {**dto.model_dump(), "entity_type": "lead", "entity_id": lead_id},
            )

        item = stitch(self.session, [interaction], CREATED_BY_RELATION)[0]
        return InteractionRead.model_validate(interaction).model_copy(
            update={"created_by_profile": _profile_summary(item["created_by_profile"])}
        )

    def list_status_history(self, lead_id: uuid.UUID) -> list[LeadStatusHistoryRead]:
        self._require_visible(lead_id)
        rows = self.gateway.list(
            "lead_status_history",
            scope=CHILD_SCOPE,
            filters={"lead_id": lead_id},
            order_by="created_at",
            descending=True,
        )
        return [
            LeadStatusHistoryRead.model_validate(item.row).model_copy(
                update={"created_by_profile": _profile_summary(item["created_by_profile"])}
            )
            for item in stitch(self.session, rows, CREATED_BY_RELATION)
        ]

    def _require_visible(self, lead_id: uuid.UUID) -> CRMLead:
        lead = self.gateway.find_one(self.entity, lead_id, scope=LEAD_SCOPE)
        if lead is None:
            raise NotFoundOrDeniedError(self.entity)
        return lead

    def _filter_conditions(self, filters: LeadListFilters) -> list[ColumnElement[bool]]:
        conditions: list[ColumnElement[bool]] = []
        if filters.status:
            conditions.append(CRMLead.status.in_(filters.status))
        if filters.owner_id:
            conditions.append(CRMLead.owner_id.in_(filters.owner_id))
        if filters.source:
            conditions.append(CRMLead.source.in_(filters.source))
        if filters.date_from is not None:
            conditions.append(CRMLead.created_at >= filters.date_from)
        if filters.date_to is not None:
            conditions.append(CRMLead.created_at <= filters.date_to)
        if filters.value_min is not None:
            conditions.append(CRMLead.value >= filters.value_min)
        if filters.value_max is not None:
            conditions.append(CRMLead.value <= filters.value_max)
        if filters.tags:
            conditions.append(CRMLead.id.in_(select(CRMLeadTag.lead_id).where(CRMLeadTag.tag.in_(filters.tags))))
        if filters.search and filters.search.strip():
            conditions.append(self._search_condition(filters.search.strip()))
        return conditions

    def _search_condition(self, term: str) -> ColumnElement[bool]:
        pattern = f"%{term}%"

        # contacts and companies live in another namespace, so their ids are
        # resolved first under the same read requirement as the lead list
        def resolve(ctx: AuthContext) -> tuple[list[uuid.UUID], list[uuid.UUID]]:
            contact_ids = self.session.scalars(
                select(Contact.id).where(
                    Contact.deleted_at.is_(None),
                    or_(Contact.name.ilike(pattern), Contact.email.ilike(pattern)),
                )
            ).all()
            company_ids = self.session.scalars(
                select(Company.id).where(Company.deleted_at.is_(None), Company.name.ilike(pattern))
            ).all()
            return list(contact_ids), list(company_ids)

        contact_ids, company_ids = self.gateway.guard.run(
            AccessRequirement(permission=PermissionRequirement(self.entity, "read")),
            resolve,
        )
        matches: list[ColumnElement[bool]] = [CRMLead.notes.ilike(pattern)]
        if contact_ids:
            matches.append(CRMLead.contact_id.in_(contact_ids))
        if company_ids:
            matches.append(CRMLead.company_id.in_(company_ids))
        return or_(*matches)

    def _enrich(self, leads: Sequence[CRMLead]) -> list[LeadFull]:
        if not leads:
            return []
        lead_ids = [lead.id for lead in leads]
        tags = self._tags_for(lead_ids)
        aggregates = self._interaction_aggregates(lead_ids)

        enriched: list[LeadFull] = []
        for item in stitch(self.session, leads, LEAD_RELATIONS):
            lead = item.row
            count, last_at = aggregates.get(lead.id, (0, None))
            base = self._to_read(lead, tags.get(lead.id, []))
            enriched.append(
                LeadFull(
                    **base.model_dump(),
                    contact=ContactSummary.model_validate(item["contact"]) if item["contact"] else None,
                    company=CompanySummary.model_validate(item["company"]) if item["company"] else None,
                    owner=_profile_summary(item["owner"]),
                    interactions_count=count,
                    last_interaction_at=last_at,
                )
            )
        return enriched

    def _interaction_aggregates(self, lead_ids: Sequence[uuid.UUID]) -> dict[uuid.UUID, tuple[int, datetime | None]]:
        rows = self.session.execute(
            select(
                CRMInteraction.entity_id,
                func.count(CRMInteraction.id),
                func.max(CRMInteraction.created_at),
            )
            .where(
                CRMInteraction.entity_type == "lead",
                CRMInteraction.entity_id.in_(lead_ids),
                CRMInteraction.deleted_at.is_(None),
            )
            .group_by(CRMInteraction.entity_id)
        ).all()
        return {entity_id: (int(count), last_at) for entity_id, count, last_at in rows}

    def _tags_for(self, lead_ids: Sequence[uuid.UUID]) -> dict[uuid.UUID, list[str]]:
        tags: dict[uuid.UUID, list[str]] = {}
        rows = self.session.execute(
            select(CRMLeadTag.lead_id, CRMLeadTag.tag)
            .where(CRMLeadTag.lead_id.in_(lead_ids))
            .order_by(CRMLeadTag.tag.asc())
        ).all()
        for lead_id, tag in rows:
            tags.setdefault(lead_id, []).append(tag)
        return tags

    def _sync_tags(self, lead_id: uuid.UUID, tags: Sequence[str]) -> list[str]:
        wanted = sorted({tag.strip() for tag in tags if tag and tag.strip()})
        existing = {row.tag: row for row in self.session.scalars(select(CRMLeadTag).where(CRMLeadTag.lead_id == lead_id))}
        for tag, row in existing.items():
            if tag not in wanted:
                self.session.delete(row)
        for tag in wanted:
            if tag not in existing:
                self.session.add(CRMLeadTag(lead_id=lead_id, tag=tag))
        self.session.flush()
        return wanted

    def _write_history(self, lead_id: uuid.UUID, status: str, previous_status: str | None, notes: str | None) -> None:
        self.gateway.create(
            "lead_status_history",
            {"lead_id": lead_id, "status": status, "previous_status": previous_status, "notes": notes},
            permission=PermissionRequirement(self.entity, "update" if previous_status else "create"),
        )

    def _notify_assigned(self, ctx: AuthContext, lead_id: uuid.UUID, owner_id: uuid.UUID) -> None:
        owner = fetch_lookup(self.session, Profile, [owner_id], relation="lead_owner").get(owner_id)
        if owner is None:
            logger.warning("lead.owner_missing", extra={"entity_id": str(lead_id)})
            return
        enqueue_notification(
            self.session,
            NotificationTrigger(
                entity_type="lead",
                entity_id=str(lead_id),
                action="assigned",
                notification_type="lead_assigned",
                actor_id=ctx.user_id,
                recipients=[owner.user_id],
            ),
            self.settings,
        )

    def _notify_status_changed(
        self,
        ctx: AuthContext,
        lead_id: uuid.UUID,
        previous_status: str | None,
        new_status: str,
    ) -> None:
        enqueue_notification(
            self.session,
            NotificationTrigger(
                entity_type="lead",
                entity_id=str(lead_id),
                action="status_changed",
                notification_type="lead_status_changed",
                actor_id=ctx.user_id,
                metadata={"previous_status": previous_status, "new_status": new_status},
            ),
            self.settings,
        )

    def _to_read(self, lead: CRMLead, tags: list[str]) -> LeadRead:
        return LeadRead.model_validate(lead).model_copy(update={"tags": list(tags)})

    @contextmanager
    def _transaction(self) -> Iterator[None]:
        try:
            yield
            self.session.commit()
        except Exception:
            self.session.rollback()
            raise


def _profile_summary(profile: Any) -> ProfileSummary | None:
    return ProfileSummary.model_validate(profile) if profile is not None else None
