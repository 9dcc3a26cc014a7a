import json
import logging
import sys
from decimal import Decimal

from sqlalchemy import func, select

from dental_backend import cli, db
from dental_backend.auth_models import Organization, User, UserRole
from dental_backend.auth_security import hash_password
from dental_backend.config import settings
from dental_backend.logging_setup import setup_logging
from dental_backend.models import Treatment
from dental_backend.seed import STARTER_CATALOG, seed_base, seed_catalog
from dental_backend.tools.migrate_to_multi_tenant import migrate


def _count(model, *where):
    with db.db_session() as s:
        return s.scalar(select(func.count()).select_from(model).where(*where))


def _default_org():
    with db.db_session() as s:
        return s.execute(
            select(Organization).where(Organization.slug == settings.DEFAULT_CLINIC_SLUG)
        ).scalar_one()


def test_seed_base_is_idempotent():
    seed_base()
    seed_base()
    assert _count(Organization) == 1
    assert _count(User, User.role == UserRole.SUPER_ADMIN) == 1
    assert _count(Treatment) == len(STARTER_CATALOG)


def test_seed_catalog_only_adds_missing(clinic):
    org, _ = clinic
    assert seed_catalog(org.id) == len(STARTER_CATALOG)
    assert seed_catalog(org.id) == 0
    assert _count(Treatment, Treatment.organization_id == org.id) == len(STARTER_CATALOG)


def test_migrate_attaches_legacy_users():
    with db.db_session() as s:
        s.add(User(username="legacy", password_hash=hash_password("x"), first_name="Old", last_name="Timer",
                   role=UserRole.ADMIN, organization_id=None))

    touched = migrate(dry_run=True)
    assert touched["users"] == 1
    assert _count(User, User.organization_id.is_(None), User.role != UserRole.SUPER_ADMIN) == 1

    touched = migrate()
    assert touched["users"] == 1
    org = _default_org()
    with db.db_session() as s:
        legacy = s.execute(select(User).where(User.username == "legacy")).scalar_one()
    assert legacy.organization_id == org.id
    assert org.owner_id == legacy.id

    # the super admin stays outside every clinic
    assert _count(User, User.role == UserRole.SUPER_ADMIN, User.organization_id.is_(None)) == 1
    assert migrate()["users"] == 0


def test_migrate_dry_run_writes_nothing():
    with db.db_session() as s:
        s.add(User(username="legacy", password_hash=hash_password("x"), first_name="Old", last_name="Timer",
                   role=UserRole.STAFF, organization_id=None))

    touched = migrate(dry_run=True)
    assert touched["users"] == 1
    assert touched["patients"] == 0
    # nothing seeded: no default clinic, no super admin
    assert _count(Organization) == 0
    assert _count(User, User.role == UserRole.SUPER_ADMIN) == 0
    assert _count(User, User.organization_id.is_(None)) == 1


def _run_cli(monkeypatch, capsys, *argv):
    monkeypatch.setattr(sys, "argv", ["dental-cli", *argv])
    cli.main()
    return capsys.readouterr().out


def test_cli_create_org_and_list(monkeypatch, capsys):
    out = _run_cli(
        monkeypatch, capsys, "create-org", "--name", "North Dental", "--admin-username", "nora",
        "--admin-password", "secret123", "--admin-first-name", "Nora", "--admin-last-name", "North",
    )
    assert "north-dental" in out
    assert "admin nora" in out

    out = _run_cli(monkeypatch, capsys, "list", "orgs")
    assert "north-dental" in out
    assert "active" in out


def test_cli_report_prints_json(monkeypatch, capsys, clinic):
    org, _ = clinic
    out = _run_cli(
        monkeypatch, capsys, "report", "revenue", "--org", org.id, "--start", "2030-01-01", "--end", "2030-01-31"
    )
    data = json.loads(out)
    assert Decimal(data["total_revenue"]) == 0
    assert data["by_month"] == []


def test_log_file_receives_debug(tmp_path):
    log_file = tmp_path / "logs" / "dental.log"
    setup_logging("INFO", log_file)
    root = logging.getLogger()
    logging.getLogger("dental_backend.test").debug("details for the file")
    for handler in root.handlers:
        handler.flush()

    assert "details for the file" in log_file.read_text()
    console = [h for h in root.handlers if not isinstance(h, logging.FileHandler)]
    assert console[0].level == logging.INFO

    for handler in root.handlers:
        handler.close()
    root.handlers.clear()
