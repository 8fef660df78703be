from __future__ import annotations

from sqlalchemy.orm import Session

from companyos.crm.models import CRMInteraction, CRMLead, CRMLeadStatusHistory
from companyos.directory.models import Company, Contact, Profile
from companyos.ops.models import Task, Ticket, TicketStatusHistory
from companyos.platform.data.gateway import CrudGateway
from companyos.platform.data.registry import EntityDescriptor, EntityRegistry
from companyos.platform.security.context import AuthContextResolver, get_auth_context
from companyos.platform.security.guard import AuthGuard
from companyos.platform.security.policies import PermissionEvaluator


CORE = "core"
CRM = "crm"
COMMON_UTIL = "common_util"

ENTITY_REGISTRY = EntityRegistry(
    [
        EntityDescriptor(
            name="profiles",
            model=Profile,
            namespace=CORE,
            resource="users",
            created_by_column=None,
        ),
        EntityDescriptor(name="contacts", model=Contact, namespace=CORE, resource="contacts"),
        EntityDescriptor(name="companies", model=Company, namespace=CORE, resource="companies"),
        EntityDescriptor(
            name="leads",
            model=CRMLead,
            namespace=CRM,
            resource="leads",
            owner_column="owner_id",
            department_column="department_id",
        ),
        EntityDescriptor(name="interactions", model=CRMInteraction, namespace=CRM, resource="leads"),
        EntityDescriptor(
            name="lead_status_history",
            model=CRMLeadStatusHistory,
            namespace=CRM,
            resource="leads",
            soft_delete_column=None,
            updated_at_column=None,
        ),
        EntityDescriptor(
            name="tasks",
            model=Task,
            namespace=COMMON_UTIL,
            resource="tasks",
            owner_column="created_by",
            department_column="department_id",
        ),
        EntityDescriptor(
            name="tickets",
            model=Ticket,
            namespace=COMMON_UTIL,
            resource="tickets",
            owner_column="assignee_id",
            department_column="department_id",
        ),
        EntityDescriptor(
            name="ticket_status_history",
            model=TicketStatusHistory,
            namespace=COMMON_UTIL,
            resource="tickets",
            soft_delete_column=None,
            updated_at_column=None,
        ),
    ]
)


def get_gateway(
    session: Session,
    resolver: AuthContextResolver = get_auth_context,
    evaluator: PermissionEvaluator | None = None,
) -> CrudGateway:
    return CrudGateway(session, ENTITY_REGISTRY, AuthGuard(resolver, evaluator))
