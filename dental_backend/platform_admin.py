"""
Platform administration: organizations across every tenant.
Only reachable by super admins (see api_main.require_super_admin).
"""
from __future__ import annotations

import logging
from decimal import Decimal
from typing import Any

from sqlalchemy import func, select

from .auth_models import Organization, OrganizationType, User, UserRole
from .auth_service import register_clinic
from .db import db_session
from .models import Appointment, Invoice, InvoiceStatus, Patient
from .seed import seed_catalog

logger = logging.getLogger(__name__)


def list_organizations(include_inactive: bool = True) -> list[dict[str, Any]]:
    """Organizations with their user and patient counts."""
    with db_session() as s:
        q = select(Organization)
        if not include_inactive:
            q = q.where(Organization.is_active.is_(True))
        orgs = list(s.scalars(q.order_by(Organization.created_at.desc())))

        users = dict(s.execute(select(User.organization_id, func.count(User.id)).group_by(User.organization_id)).all())
        patients = dict(
            s.execute(select(Patient.organization_id, func.count(Patient.id)).group_by(Patient.organization_id)).all()
        )

    return [
        {
            "organization": org,
            "user_count": int(users.get(org.id, 0)),
            "patient_count": int(patients.get(org.id, 0)),
        }
        for org in orgs
    ]


def get_organization(organization_id: str) -> Organization | None:
    with db_session() as s:
        return s.get(Organization, organization_id)


def create_organization(
    name: str,
    admin_username: str,
    admin_password: str,
    admin_first_name: str,
    admin_last_name: str,
    email: str | None = None,
    org_type: OrganizationType = OrganizationType.CLINIC,
) -> tuple[Organization, User]:
    org, admin = register_clinic(
        clinic_name=name,
        username=admin_username,
        password=admin_password,
        first_name=admin_first_name,
        last_name=admin_last_name,
        email=email,
        org_type=org_type,
    )
    seed_catalog(org.id)
    logger.info("Platform created organization %s", org.slug)
    return org, admin


def organization_users(organization_id: str) -> list[User]:
    with db_session() as s:
        q = select(User).where(User.organization_id == organization_id).order_by(User.last_name, User.first_name)
        return list(s.scalars(q))


def set_organization_active(organization_id: str, active: bool) -> Organization | None:
    """Suspend or reactivate a tenant; members of a suspended one cannot log in."""
    with db_session() as s:
        org = s.get(Organization, organization_id)
        if not org:
            return None
        org.is_active = active
        logger.warning("Organization %s %s", org.slug, "reactivated" if active else "suspended")
        return org


def platform_metrics() -> dict[str, Any]:
    with db_session() as s:
        orgs_total = s.scalar(select(func.count(Organization.id))) or 0
        orgs_active = s.scalar(select(func.count(Organization.id)).where(Organization.is_active.is_(True))) or 0
        users_total = s.scalar(select(func.count(User.id))) or 0
        pending = s.scalar(select(func.count(User.id)).where(User.role == UserRole.PENDING)) or 0
        patients_total = s.scalar(select(func.count(Patient.id))) or 0
        appointments_total = s.scalar(select(func.count(Appointment.id))) or 0
        invoiced = s.scalar(
            select(func.coalesce(func.sum(Invoice.final_amount), 0)).where(Invoice.status != InvoiceStatus.CANCELED)
        )
        by_type = dict(s.execute(select(Organization.type, func.count(Organization.id)).group_by(Organization.type)).all())

    return {
        "organizations": int(orgs_total),
        "active_organizations": int(orgs_active),
        "organizations_by_type": {t.value: int(n) for t, n in by_type.items()},
        "users": int(users_total),
        "pending_users": int(pending),
        "patients": int(patients_total),
        "appointments": int(appointments_total),
        "total_invoiced": Decimal(str(invoiced or 0)),
    }
