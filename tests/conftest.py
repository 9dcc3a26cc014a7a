import os

# must be set before dental_backend.config is imported
os.environ["BCRYPT_ROUNDS"] = "4"
os.environ["SUPERADMIN_USERNAME"] = "root"
os.environ["SUPERADMIN_PASSWORD"] = "rootpass"
os.environ.setdefault("JWT_SECRET", "test-secret")

from decimal import Decimal

import pytest
from fastapi.testclient import TestClient

from dental_backend import db, services
from dental_backend.auth_models import UserRole
from dental_backend.auth_service import create_user, register_clinic
from dental_backend.models import ServiceCategory
from dental_backend.scope import Scope

PASSWORD = "secret123"


@pytest.fixture(autouse=True)
def database(tmp_path):
    db.configure(f"sqlite:///{tmp_path / 'test.sqlite'}")
    db.init_db()
    yield
    db.engine.dispose()


@pytest.fixture
def clinic():
    org, admin = register_clinic("Smile Clinic", "alice", PASSWORD, "Alice", "Owner")
    return org, admin


@pytest.fixture
def other_clinic():
    org, admin = register_clinic("Other Dental", "olga", PASSWORD, "Olga", "Other")
    return org, admin


@pytest.fixture
def doctor(clinic):
    org, _ = clinic
    return create_user("drbob", PASSWORD, "Bob", "Molar", role=UserRole.DOCTOR, organization_id=org.id)


@pytest.fixture
def second_doctor(clinic):
    org, _ = clinic
    return create_user("drcarol", PASSWORD, "Carol", "Canine", role=UserRole.DOCTOR, organization_id=org.id)


@pytest.fixture
def office_admin(clinic):
    org, _ = clinic
    return create_user("adam", PASSWORD, "Adam", "Office", role=UserRole.ADMIN, organization_id=org.id)


@pytest.fixture
def staff(clinic):
    org, _ = clinic
    return create_user("sam", PASSWORD, "Sam", "Desk", role=UserRole.STAFF, organization_id=org.id)


@pytest.fixture
def student(clinic):
    org, _ = clinic
    return create_user("stu", PASSWORD, "Stu", "Dent", role=UserRole.STUDENT, organization_id=org.id)


@pytest.fixture
def scope(clinic):
    org, admin = clinic
    return Scope.clinic(org.id, admin.id)


@pytest.fixture
def other_scope(other_clinic):
    org, admin = other_clinic
    return Scope.clinic(org.id, admin.id)


@pytest.fixture
def patient(scope):
    return services.create_patient(scope, "Jane", "Doe", "555-0100", email="jane@example.com")


@pytest.fixture
def treatment(scope):
    return services.create_treatment(scope, "Composite filling", ServiceCategory.RESTORATIVE, Decimal("150.00"))


@pytest.fixture
def client():
    from dental_backend.api_main import app

    with TestClient(app) as c:
        yield c


@pytest.fixture
def login(client):
    """Bearer headers for a user."""

    def _login(username, password=PASSWORD):
        r = client.post("/api/auth/login", data={"username": username, "password": password})
        assert r.status_code == 200, r.text
        return {"Authorization": f"Bearer {r.json()['access_token']}"}

    return _login
