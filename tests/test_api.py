from datetime import date
from decimal import Decimal

import pytest

from dental_backend import billing, db, services
from dental_backend.auth_models import User
from dental_backend.auth_security import create_access_token, issue_token, read_claims, user_claims
from dental_backend.auth_service import join_clinic
from dental_backend.billing import ItemIn
from dental_backend.models import DoctorPaymentType, PaymentMethod, TreatmentStatus
from dental_backend.seed import STARTER_CATALOG

PASSWORD = "secret123"


def test_health(client):
    r = client.get("/api/health")
    assert r.status_code == 200
    assert r.json()["ok"] is True
    assert r.json()["time"].endswith("+00:00")


# =========================
# Auth
# =========================
def test_register_clinic_and_login(client, login):
    r = client.post(
        "/api/auth/register-clinic",
        json={
            "clinic_name": "Bright Smiles",
            "username": "bella",
            "password": PASSWORD,
            "first_name": "Bella",
            "last_name": "Bright",
        },
    )
    assert r.status_code == 201, r.text
    assert r.json()["slug"] == "bright-smiles"

    headers = login("bella")
    me = client.get("/api/me", headers=headers).json()
    assert me["role"] == "clinic_admin"
    assert me["organization_id"] == r.json()["organization_id"]

    # a new clinic starts with the catalog
    catalog = client.get("/api/treatments", headers=headers).json()
    assert len(catalog) == len(STARTER_CATALOG)


def test_login_failures(client, clinic):
    r = client.post("/api/auth/login", data={"username": "alice", "password": "wrong"})
    assert r.status_code == 401

    join_clinic("smile-clinic", "newbie", PASSWORD, "New", "Bie")
    r = client.post("/api/auth/login", data={"username": "newbie", "password": PASSWORD})
    assert r.status_code == 401
    assert "pending approval" in r.json()["detail"]


def test_invalid_token(client):
    r = client.get("/api/me", headers={"Authorization": "Bearer not-a-token"})
    assert r.status_code == 401
    assert client.get("/api/me").status_code == 401


def test_token_claims(client, clinic, other_clinic):
    org, admin = clinic
    claims = read_claims(issue_token(admin))
    assert (claims["sub"], claims["org"], claims["role"]) == (admin.id, org.id, "clinic_admin")
    assert read_claims("garbage") is None

    expired = create_access_token(admin.id, extra=user_claims(admin), expires_minutes=-1)
    assert read_claims(expired) is None
    assert client.get("/api/me", headers={"Authorization": f"Bearer {expired}"}).status_code == 401

    # moving the user to another clinic retires the old token
    token = issue_token(admin)
    with db.db_session() as s:
        s.get(User, admin.id).organization_id = other_clinic[0].id
    r = client.get("/api/me", headers={"Authorization": f"Bearer {token}"})
    assert r.status_code == 401
    assert "log in again" in r.json()["detail"]


def test_join_and_approve(client, clinic, login):
    r = client.post(
        "/api/auth/join-clinic",
        json={"clinic_slug": "smile-clinic", "username": "newbie", "password": PASSWORD,
              "first_name": "New", "last_name": "Bie"},
    )
    assert r.status_code == 201
    user_id = r.json()["user_id"]

    admin = login("alice")
    pending = client.get("/api/users/pending", headers=admin).json()
    assert [u["id"] for u in pending] == [user_id]

    r = client.post(f"/api/users/{user_id}/approve", json={"role": "doctor"}, headers=admin)
    assert r.status_code == 200
    assert r.json()["role"] == "doctor"
    assert login("newbie")


def test_change_password(client, staff, login):
    headers = login("sam")
    r = client.post("/api/me/password", json={"old_password": "wrong", "new_password": "another1"}, headers=headers)
    assert r.status_code == 400
    r = client.post("/api/me/password", json={"old_password": PASSWORD, "new_password": "another1"}, headers=headers)
    assert r.status_code == 200
    assert login("sam", "another1")


# =========================
# Tenancy and roles
# =========================
def test_patients_are_isolated_between_clinics(client, clinic, other_clinic, login):
    alice, olga = login("alice"), login("olga")
    r = client.post("/api/patients", json={"first_name": "Jane", "last_name": "Doe", "phone": "555"}, headers=alice)
    assert r.status_code == 201
    patient_id = r.json()["id"]

    assert client.get(f"/api/patients/{patient_id}", headers=alice).status_code == 200
    assert client.get(f"/api/patients/{patient_id}", headers=olga).status_code == 404
    assert client.get("/api/patients", headers=olga).json() == []
    assert client.patch(f"/api/patients/{patient_id}", json={"notes": "x"}, headers=olga).status_code == 404


def test_super_admin_cross_clinic(client, clinic, other_clinic, scope, other_scope, login):
    services.create_patient(scope, "Ann", "Mine", "1")
    services.create_patient(other_scope, "Otto", "Theirs", "2")
    root = login("root", "rootpass")

    assert len(client.get("/api/patients", headers=root).json()) == 2
    narrowed = client.get("/api/patients", params={"clinic_id": clinic[0].id}, headers=root).json()
    assert [p["last_name"] for p in narrowed] == ["Mine"]

    # writing needs a clinic
    body = {"first_name": "New", "last_name": "Kid", "phone": "3"}
    assert client.post("/api/patients", json=body, headers=root).status_code == 403
    r = client.post("/api/patients", json=body, params={"clinic_id": other_clinic[0].id}, headers=root)
    assert r.status_code == 201
    assert r.json()["organization_id"] == other_clinic[0].id


def test_clinic_users_ignore_clinic_id_param(client, clinic, other_clinic, other_scope, login):
    services.create_patient(other_scope, "Otto", "Theirs", "2")
    r = client.get("/api/patients", params={"clinic_id": other_clinic[0].id}, headers=login("alice"))
    assert r.json() == []


@pytest.mark.parametrize(
    "path, allowed",
    [
        ("/api/invoices", {"alice", "adam", "drbob", "sam"}),
        ("/api/lab-cases", {"alice", "adam", "drbob"}),
        ("/api/audit-logs", {"alice", "adam"}),
        ("/api/users", {"alice", "adam"}),
        ("/api/users/pending", {"alice", "adam"}),
        ("/api/platform/metrics", set()),
    ],
)
def test_role_gates(client, clinic, office_admin, doctor, staff, student, login, path, allowed):
    for username in ("alice", "adam", "drbob", "sam", "stu"):
        r = client.get(path, headers=login(username))
        assert r.status_code == (200 if username in allowed else 403), (username, r.text)
    assert client.get(path, headers=login("root", "rootpass")).status_code == 200


# =========================
# Clinical endpoints
# =========================
def test_appointment_validation_maps_to_400(client, clinic, patient, login):
    r = client.post(
        "/api/appointments",
        json={
            "patient_id": patient.id,
            "title": "Backwards",
            "start_time": "2030-01-01T10:00:00",
            "end_time": "2030-01-01T09:00:00",
        },
        headers=login("alice"),
    )
    assert r.status_code == 400
    assert "end after" in r.json()["detail"]


def test_inventory_low_stock_notification(client, clinic, login):
    admin = login("alice")
    r = client.post(
        "/api/inventory",
        json={"name": "Gloves", "category": "consumables", "unit": "box", "current_quantity": 10, "minimum_quantity": 3},
        headers=admin,
    )
    assert r.status_code == 201
    item_id = r.json()["id"]
    assert r.json()["status"] == "available"

    r = client.post(f"/api/inventory/{item_id}/adjust", json={"delta": -9}, headers=admin)
    assert r.json()["status"] == "low_stock"

    assert client.get("/api/notifications/unread-count", headers=admin).json() == {"count": 1}
    [n] = client.get("/api/notifications", headers=admin).json()
    assert n["type"] == "low_stock"
    assert n["metadata"] == {"current_quantity": 1, "minimum_quantity": 3}

    assert client.post(f"/api/notifications/{n['id']}/read", headers=admin).status_code == 200
    assert client.get("/api/notifications/unread-count", headers=admin).json() == {"count": 0}


def test_clinic_settings_endpoint(client, clinic, staff, login):
    admin = login("alice")
    assert client.get("/api/settings/clinic", headers=admin).json()["invoice_due_days"] == 30
    r = client.put("/api/settings/clinic", json={"invoice_due_days": 15}, headers=admin)
    assert r.json()["invoice_due_days"] == 15
    assert client.put("/api/settings/clinic", json={"invoice_due_days": 5}, headers=login("sam")).status_code == 403


# =========================
# Billing endpoints
# =========================
def test_invoice_payment_refund_flow(client, clinic, patient, login):
    admin = login("alice")
    r = client.post(
        "/api/invoices",
        json={
            "patient_id": patient.id,
            "items": [{"description": "Cleaning", "unit_price": "100.00"}, {"description": "X-ray", "unit_price": 50, "quantity": 2}],
        },
        headers=admin,
    )
    assert r.status_code == 201, r.text
    inv = r.json()
    assert inv["total_amount"] == 200.0
    assert inv["status"] == "sent"
    assert len(inv["items"]) == 2

    r = client.post(
        "/api/payments", json={"invoice_id": inv["id"], "amount": 50, "payment_method": "card"}, headers=admin
    )
    assert r.status_code == 201
    payment_id = r.json()["id"]

    inv = client.get(f"/api/invoices/{inv['id']}", headers=admin).json()
    assert (inv["status"], inv["balance"]) == ("partial", 150.0)

    r = client.post(f"/api/payments/{payment_id}/refund", json={"reason": "Duplicate"}, headers=admin)
    assert r.status_code == 200
    assert r.json()["is_refunded"] is True
    assert client.post(f"/api/payments/{payment_id}/refund", json={"reason": "Again"}, headers=admin).status_code == 400

    r = client.post(
        "/api/adjustments",
        json={"invoice_id": inv["id"], "type": "discount", "amount": 25, "reason": "Loyalty"},
        headers=admin,
    )
    assert r.status_code == 201
    inv = client.get(f"/api/invoices/{inv['id']}", headers=admin).json()
    assert (inv["status"], inv["final_amount"]) == ("sent", 175.0)


def test_invoice_requires_items(client, clinic, patient, login):
    r = client.post("/api/invoices", json={"patient_id": patient.id, "items": []}, headers=login("alice"))
    assert r.status_code == 422


def test_overpayment_is_400(client, clinic, scope, patient, login):
    inv = billing.create_invoice(scope, patient.id, [ItemIn("Exam", Decimal("10"))])
    r = client.post(
        "/api/payments", json={"invoice_id": inv.id, "amount": 11, "payment_method": "cash"}, headers=login("alice")
    )
    assert r.status_code == 400


def test_payment_plan_endpoint(client, clinic, scope, patient, login):
    inv = billing.create_invoice(scope, patient.id, [ItemIn("Braces", Decimal("1000"))])
    r = client.post(
        "/api/payment-plans",
        json={"invoice_id": inv.id, "number_of_installments": 3, "frequency": "monthly", "start_date": "2030-01-31"},
        headers=login("alice"),
    )
    assert r.status_code == 201, r.text
    plan = r.json()
    assert [i["amount"] for i in plan["installments"]] == [333.33, 333.33, 333.34]
    assert [i["due_date"] for i in plan["installments"]] == ["2030-01-31", "2030-02-28", "2030-03-31"]


def test_doctor_sees_only_own_compensation(client, clinic, scope, doctor, second_doctor, login):
    for d in (doctor, second_doctor):
        billing.create_doctor_payment(
            scope, d.id, Decimal("100"), DoctorPaymentType.SALARY, PaymentMethod.CASH, date(2030, 1, 31)
        )
    rows = client.get("/api/doctor-payments", headers=login("drbob")).json()
    assert {r["doctor_id"] for r in rows} == {doctor.id}
    assert len(client.get("/api/doctor-payments", headers=login("alice")).json()) == 2


# =========================
# Reports
# =========================
def test_report_endpoints(client, clinic, scope, patient, treatment, doctor, second_doctor, login):
    pt = services.create_patient_treatment(
        scope, patient.id, treatment.id, doctor_id=doctor.id, price=Decimal("200"),
        status=TreatmentStatus.COMPLETED, completion_date=date(2030, 1, 10),
    )
    inv = billing.create_invoice(
        scope, patient.id, [ItemIn("Filling", Decimal("200"), patient_treatment_id=pt.id)], issued_date=date(2030, 1, 10)
    )
    billing.record_payment(scope, inv.id, Decimal("50"), PaymentMethod.CASH, payment_date=date(2030, 1, 12))

    admin = login("alice")
    period = {"start_date": "2030-01-01", "end_date": "2030-01-31"}

    revenue = client.get("/api/reports/revenue", params=period, headers=admin).json()
    assert (revenue["total_revenue"], revenue["total_collections"]) == (200, 50)

    aging = client.get("/api/reports/ar-aging", params={"as_of": "2030-04-15"}, headers=admin).json()
    assert aging["sixty_days"] == 150
    assert aging["invoice_count"] == 1

    production = client.get("/api/reports/production-by-doctor", params=period, headers=admin).json()
    assert production[0]["doctor_id"] == doctor.id

    bob = login("drbob")
    mine = client.get("/api/reports/my-production", params=period, headers=bob).json()
    assert mine["total_production"] == 200
    assert mine["total_collected"] == 50
    assert client.get(f"/api/reports/doctor/{second_doctor.id}", params=period, headers=bob).status_code == 403

    net = client.get("/api/reports/net-profit", params=period, headers=admin).json()
    assert net["net_profit"] == 50

    bad = client.get("/api/reports/revenue", params={"start_date": "2030-02-01", "end_date": "2030-01-01"}, headers=admin)
    assert bad.status_code == 400


# =========================
# Platform
# =========================
def test_platform_organizations(client, clinic, login):
    root = login("root", "rootpass")
    orgs = client.get("/api/platform/organizations", headers=root).json()
    slugs = {o["organization"]["slug"] for o in orgs}
    assert {"smile-clinic", "default-clinic"} <= slugs

    r = client.patch(f"/api/platform/organizations/{clinic[0].id}/status", json={"is_active": False}, headers=root)
    assert r.json()["is_active"] is False

    r = client.post("/api/auth/login", data={"username": "alice", "password": PASSWORD})
    assert r.status_code == 401
    assert "suspended" in r.json()["detail"]


def test_platform_create_organization_and_metrics(client, login):
    root = login("root", "rootpass")
    r = client.post(
        "/api/platform/organizations",
        json={"name": "Solo Practice", "type": "doctor", "admin_username": "solo", "admin_password": PASSWORD,
              "admin_first_name": "Sol", "admin_last_name": "O"},
        headers=root,
    )
    assert r.status_code == 201, r.text
    assert r.json()["organization"]["type"] == "doctor"

    metrics = client.get("/api/platform/metrics", headers=root).json()
    assert metrics["organizations"] >= 2
    assert metrics["organizations_by_type"]["doctor"] == 1
