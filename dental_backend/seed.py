from __future__ import annotations

import logging
from decimal import Decimal

from sqlalchemy import select

from .auth_security import hash_password
from .config import settings
from .db import db_session
from .models import ClinicSettings, Organization, ServiceCategory, Treatment, User, UserRole

logger = logging.getLogger(__name__)

# code, name, category, default price, minutes
STARTER_CATALOG = [
    ("D0150", "Comprehensive oral evaluation", ServiceCategory.DIAGNOSTICS, "80.00", 30),
    ("D0210", "Full mouth X-rays", ServiceCategory.DIAGNOSTICS, "120.00", 20),
    ("D1110", "Adult cleaning", ServiceCategory.PREVENTATIVE, "95.00", 45),
    ("D1208", "Fluoride treatment", ServiceCategory.PREVENTATIVE, "35.00", 15),
    ("D2391", "Composite filling, one surface", ServiceCategory.RESTORATIVE, "150.00", 45),
    ("D2740", "Porcelain crown", ServiceCategory.FIXED_PROSTHODONTICS, "1100.00", 90),
    ("D3330", "Root canal, molar", ServiceCategory.ENDODONTICS, "1050.00", 90),
    ("D4341", "Scaling and root planing", ServiceCategory.PERIODONTICS, "220.00", 60),
    ("D5110", "Complete upper denture", ServiceCategory.REMOVABLE_PROSTHODONTICS, "1500.00", 60),
    ("D7140", "Simple extraction", ServiceCategory.SURGERY, "180.00", 30),
    ("D8080", "Comprehensive orthodontic treatment", ServiceCategory.ORTHODONTICS, "5200.00", 60),
    ("D9972", "Teeth whitening", ServiceCategory.COSMETIC, "400.00", 60),
]


def _seed_catalog(s, organization_id: str) -> int:
    added = 0
    for code, name, category, price, minutes in STARTER_CATALOG:
        exists = s.execute(
            select(Treatment).where(Treatment.organization_id == organization_id, Treatment.code == code)
        ).scalar_one_or_none()
        if exists is None:
            s.add(
                Treatment(
                    organization_id=organization_id,
                    code=code,
                    name=name,
                    category=category,
                    default_price=Decimal(price),
                    duration_minutes=minutes,
                )
            )
            added += 1
    return added


def seed_catalog(organization_id: str) -> int:
    """Starter services catalog for an organization (idempotent). Returns the rows added."""
    with db_session() as s:
        added = _seed_catalog(s, organization_id)
    if added:
        logger.info("Seeded %d catalog entries for organization %s", added, organization_id)
    return added


def seed_base() -> None:
    """
    Minimal data (idempotent):
    - default organization with its settings and catalog
    - super admin account, when SUPERADMIN_USERNAME / SUPERADMIN_PASSWORD are set
    """
    with db_session() as s:
        org = s.execute(
            select(Organization).where(Organization.slug == settings.DEFAULT_CLINIC_SLUG)
        ).scalar_one_or_none()
        if org is None:
            org = Organization(name=settings.DEFAULT_CLINIC_NAME, slug=settings.DEFAULT_CLINIC_SLUG)
            s.add(org)
            s.flush()
            logger.info("Created default organization %s", org.slug)

        if s.execute(
            select(ClinicSettings).where(ClinicSettings.organization_id == org.id)
        ).scalar_one_or_none() is None:
            s.add(ClinicSettings(organization_id=org.id, clinic_name=org.name))

        _seed_catalog(s, org.id)

        if settings.SUPERADMIN_USERNAME and settings.SUPERADMIN_PASSWORD:
            username = settings.SUPERADMIN_USERNAME.strip().lower()
            if s.execute(select(User).where(User.username == username)).scalar_one_or_none() is None:
                s.add(
                    User(
                        username=username,
                        password_hash=hash_password(settings.SUPERADMIN_PASSWORD),
                        first_name="Platform",
                        last_name="Admin",
                        role=UserRole.SUPER_ADMIN,
                        organization_id=None,
                        is_active=True,
                    )
                )
                logger.info("Created super admin %s", username)
