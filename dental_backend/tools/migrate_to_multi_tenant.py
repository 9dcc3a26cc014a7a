"""
Backfill organization_id on rows created before tenants existed.

Every legacy row (and every user without a clinic, super admins excepted)
is attached to the default organization; its owner becomes the first admin.

Usage: python -m dental_backend.tools.migrate_to_multi_tenant [--dry-run]
"""
from __future__ import annotations

import argparse
import logging

from sqlalchemy import and_, func, select, update

from dental_backend import db
from dental_backend.auth_models import Organization, User, UserRole
from dental_backend.config import settings
from dental_backend.logging_setup import setup_logging
from dental_backend.models import TENANT_MODELS
from dental_backend.seed import seed_base

logger = logging.getLogger(__name__)


def migrate(dry_run: bool = False) -> dict[str, int]:
    """
    Returns the number of rows touched per table.
    A dry run only reads: no tables are created and nothing is seeded.
    """
    if not dry_run:
        db.init_db()
        seed_base()

    touched: dict[str, int] = {}
    with (db.engine.connect() if dry_run else db.engine.begin()) as conn:
        org_id = conn.execute(
            select(Organization.id).where(Organization.slug == settings.DEFAULT_CLINIC_SLUG)
        ).scalar_one_or_none()

        for model in TENANT_MODELS:
            table = model.__table__
            missing = conn.execute(
                select(func.count()).select_from(table).where(table.c.organization_id.is_(None))
            ).scalar_one()
            if missing and not dry_run:
                conn.execute(update(table).where(table.c.organization_id.is_(None)).values(organization_id=org_id))
            touched[table.name] = missing

        users = User.__table__
        orphan_users = and_(users.c.organization_id.is_(None), users.c.role != UserRole.SUPER_ADMIN)
        touched[users.name] = conn.execute(select(func.count()).select_from(users).where(orphan_users)).scalar_one()
        if touched[users.name] and not dry_run:
            conn.execute(update(users).where(orphan_users).values(organization_id=org_id))

        owner = conn.execute(select(Organization.owner_id).where(Organization.id == org_id)).scalar_one_or_none()
        if org_id is not None and owner is None:
            first_admin = conn.execute(
                select(users.c.id)
                .where(
                    and_(
                        users.c.organization_id == org_id,
                        users.c.role.in_([UserRole.CLINIC_ADMIN, UserRole.ADMIN]),
                    )
                )
                .order_by(users.c.created_at)
                .limit(1)
            ).scalar_one_or_none()
            if first_admin and not dry_run:
                conn.execute(
                    update(Organization.__table__).where(Organization.id == org_id).values(owner_id=first_admin)
                )
                logger.info("Default organization owner set to %s", first_admin)

    return touched


def main() -> None:
    parser = argparse.ArgumentParser(description="Attach legacy rows to the default organization")
    parser.add_argument("--dry-run", action="store_true", help="Only count the rows to fix")
    args = parser.parse_args()

    setup_logging(settings.LOG_LEVEL, settings.LOG_FILE)
    print("DB:", db.engine.url.render_as_string(hide_password=True))

    touched = migrate(dry_run=args.dry_run)
    for table, count in touched.items():
        if count:
            print(f"{table}: {count} row(s) {'to update' if args.dry_run else 'updated'}")
    print("Nothing to migrate." if not any(touched.values()) else "Done.")


if __name__ == "__main__":
    main()
