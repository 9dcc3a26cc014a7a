from __future__ import annotations

import argparse
import json
from datetime import date

from dental_backend import db, platform_admin, reports, services
from dental_backend.auth_models import OrganizationType, UserRole
from dental_backend.auth_service import create_user
from dental_backend.config import settings
from dental_backend.logging_setup import setup_logging
from dental_backend.scope import Scope
from dental_backend.seed import seed_base, seed_catalog


def _org_scope(args: argparse.Namespace) -> Scope:
    # the CLI acts as the platform operator, optionally pinned to one clinic
    if args.org:
        return Scope(clinic_id=args.org, is_super_admin=True, explicit=True)
    return Scope.platform()


def _day(value: str) -> date:
    return date.fromisoformat(value)


def cmd_init(args: argparse.Namespace) -> None:
    seed_base()
    print("Database initialized and base data seeded.")


def cmd_create_org(args: argparse.Namespace) -> None:
    org, admin = platform_admin.create_organization(
        name=args.name,
        admin_username=args.admin_username,
        admin_password=args.admin_password,
        admin_first_name=args.admin_first_name,
        admin_last_name=args.admin_last_name,
        email=args.email,
        org_type=OrganizationType(args.type),
    )
    print(f"Organization created: {org.id} ({org.slug}), admin {admin.username}")


def cmd_create_user(args: argparse.Namespace) -> None:
    u = create_user(
        args.username,
        args.password,
        args.first_name,
        args.last_name,
        role=UserRole(args.role),
        organization_id=args.org,
        email=args.email,
    )
    print(f"User created: {u.id} | {u.username} | {u.role.value}")


def cmd_list(args: argparse.Namespace) -> None:
    scope = _org_scope(args)
    if args.entity == "orgs":
        for row in platform_admin.list_organizations():
            o = row["organization"]
            state = "active" if o.is_active else "suspended"
            print(f"{o.id} | {o.slug} | {o.type.value} | {state} | users={row['user_count']} patients={row['patient_count']}")
    elif args.entity == "users":
        for u in services.list_users(scope):
            print(f"{u.id} | {u.username} | {u.full_name} | {u.role.value} | org={u.organization_id or '-'}")
    elif args.entity == "doctors":
        for u in services.list_doctors(scope):
            print(f"{u.id} | Dr. {u.full_name} | {u.specialty.value if u.specialty else '-'}")
    elif args.entity == "patients":
        for p in services.list_patients(scope, search=args.search):
            print(f"{p.id} | {p.last_name} {p.first_name} | {p.phone} | {p.email or '-'}")


def cmd_report(args: argparse.Namespace) -> None:
    scope = _org_scope(args)
    today = date.today()
    start = args.start or today.replace(month=1, day=1)
    end = args.end or today

    if args.kind == "revenue":
        result = reports.revenue_report(scope, start, end)
    elif args.kind == "ar-aging":
        result = reports.ar_aging_report(scope, as_of=end)
    elif args.kind == "production":
        result = reports.production_by_doctor_report(scope, start, end)
    elif args.kind == "expenses":
        result = reports.expense_report(scope, start, end)
    else:
        result = reports.net_profit_report(scope, start, end)

    print(json.dumps(result, indent=2, default=str))


def cmd_seed_catalog(args: argparse.Namespace) -> None:
    added = seed_catalog(args.org)
    print(f"{added} catalog entries added.")


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="dental-cli", description="Dental practice administration CLI")
    p.add_argument("--database-url", default=None, help="Override DATABASE_URL")
    sub = p.add_subparsers(required=True)

    p_init = sub.add_parser("init", help="Create tables and seed base data")
    p_init.set_defaults(func=cmd_init)

    p_org = sub.add_parser("create-org", help="Create an organization with its admin")
    p_org.add_argument("--name", required=True)
    p_org.add_argument("--type", choices=[t.value for t in OrganizationType], default=OrganizationType.CLINIC.value)
    p_org.add_argument("--email", default=None)
    p_org.add_argument("--admin-username", required=True)
    p_org.add_argument("--admin-password", required=True)
    p_org.add_argument("--admin-first-name", required=True)
    p_org.add_argument("--admin-last-name", required=True)
    p_org.set_defaults(func=cmd_create_org)

    p_user = sub.add_parser("create-user", help="Create a user")
    p_user.add_argument("--username", required=True)
    p_user.add_argument("--password", required=True)
    p_user.add_argument("--first-name", required=True)
    p_user.add_argument("--last-name", required=True)
    p_user.add_argument("--role", choices=[r.value for r in UserRole], default=UserRole.STAFF.value)
    p_user.add_argument("--org", default=None, help="Organization id (omit only for super_admin)")
    p_user.add_argument("--email", default=None)
    p_user.set_defaults(func=cmd_create_user)

    p_list = sub.add_parser("list", help="List entities")
    p_list.add_argument("entity", choices=["orgs", "users", "doctors", "patients"])
    p_list.add_argument("--org", default=None, help="Restrict to one organization")
    p_list.add_argument("--search", default=None)
    p_list.set_defaults(func=cmd_list)

    p_rep = sub.add_parser("report", help="Print a financial report as JSON")
    p_rep.add_argument("kind", choices=["revenue", "ar-aging", "production", "expenses", "net-profit"])
    p_rep.add_argument("--org", default=None, help="Restrict to one organization")
    p_rep.add_argument("--start", type=_day, default=None, help="ISO date, e.g. 2026-01-01")
    p_rep.add_argument("--end", type=_day, default=None, help="ISO date (as-of date for ar-aging)")
    p_rep.set_defaults(func=cmd_report)

    p_cat = sub.add_parser("seed-catalog", help="Add the starter services catalog to an organization")
    p_cat.add_argument("--org", required=True)
    p_cat.set_defaults(func=cmd_seed_catalog)

    return p


def main() -> None:
    parser = build_parser()
    args = parser.parse_args()
    setup_logging(settings.LOG_LEVEL, settings.LOG_FILE)
    if args.database_url:
        db.configure(args.database_url)
    db.init_db()  # make sure the tables exist
    args.func(args)


if __name__ == "__main__":
    main()
