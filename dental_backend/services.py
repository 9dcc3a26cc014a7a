from __future__ import annotations

import logging
import uuid
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal
from typing import Any

from sqlalchemy import and_, func, or_, select

from .db import db_session
from .models import (
    OPEN_INVOICE_STATUSES,
    ActivityLog,
    Appointment,
    AppointmentStatus,
    ClinicSettings,
    Document,
    Gender,
    InsuranceClaim,
    InventoryCategory,
    InventoryItem,
    InventoryStatus,
    Invoice,
    LabCase,
    LabCaseStatus,
    Patient,
    PatientTreatment,
    Payment,
    Treatment,
    TreatmentStatus,
    User,
    UserRole,
)
from .notifications import notify_low_stock
from .scope import Scope, get_scoped, owner_id, scoped

logger = logging.getLogger(__name__)

# never written through the generic update helpers
_PROTECTED_FIELDS = frozenset({"id", "organization_id", "created_at", "created_by_id", "password_hash"})


def _apply(obj: Any, fields: dict[str, Any]) -> Any:
    for key, value in fields.items():
        if key in _PROTECTED_FIELDS:
            continue
        if not hasattr(obj, key):
            raise ValueError(f"Unknown field: {key}")
        setattr(obj, key, value)
    return obj


_STAFF_REFS = {"doctor_id": "Doctor", "assigned_doctor_id": "Doctor", "assigned_student_id": "Student"}


def _check_staff_refs(s, row: Any) -> None:
    """Users a clinic row points at must belong to the row's own clinic."""
    with s.no_autoflush:
        for attr, what in _STAFF_REFS.items():
            user_id = getattr(row, attr, None)
            if not user_id:
                continue
            u = s.get(User, user_id)
            if u is None or u.organization_id != row.organization_id:
                raise ValueError(f"{what} not found.")


def _day_bounds(day: date) -> tuple[datetime, datetime]:
    start = datetime.combine(day, datetime.min.time())
    return start, start + timedelta(days=1)


# =========================
# Users
# =========================
def list_users(scope: Scope, role: UserRole | None = None) -> list[User]:
    with db_session() as s:
        q = scoped(select(User), User, scope)
        if role is not None:
            q = q.where(User.role == role)
        return list(s.scalars(q.order_by(User.last_name, User.first_name)))


def get_user(scope: Scope, user_id: str) -> User | None:
    with db_session() as s:
        return get_scoped(s, User, user_id, scope)


def list_doctors(scope: Scope) -> list[User]:
    with db_session() as s:
        q = scoped(select(User), User, scope).where(
            and_(User.role == UserRole.DOCTOR, User.is_active.is_(True))
        )
        return list(s.scalars(q.order_by(User.last_name, User.first_name)))


def list_pending_users(scope: Scope) -> list[User]:
    return list_users(scope, role=UserRole.PENDING)


def update_user(scope: Scope, user_id: str, **fields) -> User | None:
    role = fields.get("role")
    if role is UserRole.SUPER_ADMIN and scope.filters:
        raise ValueError("Only platform administrators can grant the super_admin role.")

    with db_session() as s:
        u = get_scoped(s, User, user_id, scope)
        if not u:
            return None
        fields.pop("username", None)
        _apply(u, fields)
        logger.info("Updated user %s", u.username)
        return u


def approve_user(scope: Scope, user_id: str, role: UserRole) -> User | None:
    """A clinic admin turns a `pending` join request into a working account."""
    if role in (UserRole.PENDING, UserRole.SUPER_ADMIN):
        raise ValueError(f"Cannot approve a user as {role.value}.")

    with db_session() as s:
        u = get_scoped(s, User, user_id, scope)
        if not u:
            return None
        if u.role is not UserRole.PENDING:
            raise ValueError("User is not pending approval.")
        u.role = role
        u.is_active = True
        logger.info("Approved user %s as %s", u.username, role.value)
        return u


def deactivate_user(scope: Scope, user_id: str) -> bool:
    with db_session() as s:
        u = get_scoped(s, User, user_id, scope)
        if not u:
            return False
        if u.id == scope.user_id:
            raise ValueError("You cannot deactivate your own account.")
        u.is_active = False
        logger.info("Deactivated user %s", u.username)
        return True


# =========================
# Patients
# =========================
def get_patient(scope: Scope, patient_id: str) -> Patient | None:
    with db_session() as s:
        return get_scoped(s, Patient, patient_id, scope)


def list_patients(
    scope: Scope,
    search: str | None = None,
    gender: Gender | None = None,
    assigned_doctor_id: str | None = None,
    assigned_student_id: str | None = None,
) -> list[Patient]:
    with db_session() as s:
        q = scoped(select(Patient), Patient, scope)
        if search:
            pattern = f"%{search.strip().lower()}%"
            q = q.where(
                or_(
                    func.lower(Patient.first_name).like(pattern),
                    func.lower(Patient.last_name).like(pattern),
                    func.lower(Patient.phone).like(pattern),
                    func.lower(func.coalesce(Patient.email, "")).like(pattern),
                )
            )
        if gender is not None:
            q = q.where(Patient.gender == gender)
        if assigned_doctor_id:
            q = q.where(Patient.assigned_doctor_id == assigned_doctor_id)
        if assigned_student_id:
            q = q.where(Patient.assigned_student_id == assigned_student_id)
        return list(s.scalars(q.order_by(Patient.created_at.desc())))


def create_patient(scope: Scope, first_name: str, last_name: str, phone: str, **fields) -> Patient:
    if not first_name.strip() or not last_name.strip():
        raise ValueError("First and last name are required.")

    with db_session() as s:
        p = Patient(
            organization_id=owner_id(scope, fields.pop("organization_id", None)),
            first_name=first_name.strip(),
            last_name=last_name.strip(),
            phone=phone.strip(),
            created_by_id=scope.user_id,
        )
        _apply(p, fields)
        _check_staff_refs(s, p)
        s.add(p)
        s.flush()
        _log(s, scope, p.organization_id, "created", "patient", p.id, f"Added patient {p.full_name}")
        logger.info("Created patient %s in %s", p.id, p.organization_id)
        return p


def update_patient(scope: Scope, patient_id: str, **fields) -> Patient | None:
    with db_session() as s:
        p = get_scoped(s, Patient, patient_id, scope)
        if not p:
            return None
        _apply(p, fields)
        _check_staff_refs(s, p)
        _log(s, scope, p.organization_id, "updated", "patient", p.id, f"Updated patient {p.full_name}")
        return p


def delete_patient(scope: Scope, patient_id: str) -> bool:
    with db_session() as s:
        p = get_scoped(s, Patient, patient_id, scope)
        if not p:
            return False
        # financial records keep the patient
        for model, what in ((Invoice, "invoices"), (InsuranceClaim, "insurance claims")):
            if s.execute(select(model.id).where(model.patient_id == p.id).limit(1)).first() is not None:
                raise ValueError(f"Patient has {what} and cannot be deleted.")

        for model in (Document, PatientTreatment, Appointment, LabCase):
            for row in s.scalars(select(model).where(model.patient_id == p.id)):
                s.delete(row)
        s.delete(p)
        _log(s, scope, p.organization_id, "deleted", "patient", patient_id, f"Deleted patient {p.full_name}")
        logger.info("Deleted patient %s", patient_id)
        return True


# =========================
# Treatment catalog
# =========================
def _new_service_code() -> str:
    return f"SVC-{uuid.uuid4().hex[:8].upper()}"


def get_treatment(scope: Scope, treatment_id: str) -> Treatment | None:
    with db_session() as s:
        return get_scoped(s, Treatment, treatment_id, scope)


def list_treatments(scope: Scope, include_inactive: bool = False) -> list[Treatment]:
    with db_session() as s:
        q = scoped(select(Treatment), Treatment, scope)
        if not include_inactive:
            q = q.where(Treatment.is_active.is_(True))
        return list(s.scalars(q.order_by(Treatment.category, Treatment.name)))


def create_treatment(scope: Scope, name: str, category, default_price: Decimal, **fields) -> Treatment:
    if Decimal(default_price) < 0:
        raise ValueError("Price cannot be negative.")

    with db_session() as s:
        t = Treatment(
            organization_id=owner_id(scope, fields.pop("organization_id", None)),
            code=fields.pop("code", None) or _new_service_code(),
            name=name.strip(),
            category=category,
            default_price=Decimal(default_price),
        )
        _apply(t, fields)
        s.add(t)
        s.flush()
        return t


def update_treatment(scope: Scope, treatment_id: str, **fields) -> Treatment | None:
    with db_session() as s:
        t = get_scoped(s, Treatment, treatment_id, scope)
        if not t:
            return None
        return _apply(t, fields)


# =========================
# Patient treatments
# =========================
def list_patient_treatments(scope: Scope, patient_id: str) -> list[PatientTreatment]:
    with db_session() as s:
        q = scoped(select(PatientTreatment), PatientTreatment, scope).where(
            PatientTreatment.patient_id == patient_id
        )
        return list(s.scalars(q.order_by(PatientTreatment.created_at.desc())).unique())


def create_patient_treatment(
    scope: Scope,
    patient_id: str,
    treatment_id: str,
    doctor_id: str | None = None,
    price: Decimal | None = None,
    **fields,
) -> PatientTreatment:
    with db_session() as s:
        patient = get_scoped(s, Patient, patient_id, scope)
        treatment = get_scoped(s, Treatment, treatment_id, scope)
        if not patient or not treatment:
            raise ValueError("Patient or treatment not found.")
        if treatment.organization_id != patient.organization_id:
            raise ValueError("Treatment belongs to another organization.")
        pt = PatientTreatment(
            organization_id=patient.organization_id,
            patient_id=patient.id,
            treatment=treatment,
            doctor_id=doctor_id,
            price=Decimal(price) if price is not None else treatment.default_price,
        )
        _apply(pt, fields)
        _check_staff_refs(s, pt)
        if pt.status is TreatmentStatus.COMPLETED and pt.completion_date is None:
            pt.completion_date = date.today()
        s.add(pt)
        s.flush()
        _log(s, scope, pt.organization_id, "created", "treatment", pt.id, f"{treatment.name} for {patient.full_name}")
        return pt


def update_patient_treatment(scope: Scope, patient_treatment_id: str, **fields) -> PatientTreatment | None:
    with db_session() as s:
        pt = get_scoped(s, PatientTreatment, patient_treatment_id, scope)
        if not pt:
            return None
        _apply(pt, fields)
        _check_staff_refs(s, pt)
        if pt.status is TreatmentStatus.COMPLETED and pt.completion_date is None:
            pt.completion_date = date.today()
        return pt


# =========================
# Appointments
# =========================
def _doctor_free(s, doctor_id: str, start: datetime, end: datetime, ignore_id: str | None = None) -> bool:
    """No overlap [start, end) with the doctor's non-canceled appointments."""
    q = select(Appointment.id).where(
        and_(
            Appointment.doctor_id == doctor_id,
            Appointment.status != AppointmentStatus.CANCELED,
            Appointment.start_time < end,
            Appointment.end_time > start,
        )
    )
    if ignore_id:
        q = q.where(Appointment.id != ignore_id)
    return s.execute(q.limit(1)).first() is None


def _check_slot(s, appt: Appointment) -> None:
    if appt.end_time <= appt.start_time:
        raise ValueError("Appointment must end after it starts.")
    if (
        appt.doctor_id
        and appt.status is not AppointmentStatus.CANCELED
        and not _doctor_free(s, appt.doctor_id, appt.start_time, appt.end_time, ignore_id=appt.id)
    ):
        raise ValueError("The doctor already has an appointment in this time slot.")


def get_appointment(scope: Scope, appointment_id: str) -> Appointment | None:
    with db_session() as s:
        return get_scoped(s, Appointment, appointment_id, scope)


def list_appointments(
    scope: Scope,
    start: datetime | None = None,
    end: datetime | None = None,
    status: AppointmentStatus | None = None,
    doctor_id: str | None = None,
    patient_id: str | None = None,
) -> list[Appointment]:
    with db_session() as s:
        q = scoped(select(Appointment), Appointment, scope)
        if start is not None:
            q = q.where(Appointment.start_time >= start)
        if end is not None:
            q = q.where(Appointment.start_time < end)
        if status is not None:
            q = q.where(Appointment.status == status)
        if doctor_id:
            q = q.where(Appointment.doctor_id == doctor_id)
        if patient_id:
            q = q.where(Appointment.patient_id == patient_id)
        return list(s.scalars(q.order_by(Appointment.start_time.asc())))


def today_appointments(scope: Scope, day: date | None = None) -> list[Appointment]:
    start, end = _day_bounds(day or date.today())
    return list_appointments(scope, start=start, end=end)


def create_appointment(
    scope: Scope,
    patient_id: str,
    title: str,
    start_time: datetime,
    end_time: datetime,
    doctor_id: str | None = None,
    **fields,
) -> Appointment:
    with db_session() as s:
        patient = get_scoped(s, Patient, patient_id, scope)
        if not patient:
            raise ValueError("Patient not found.")

        appt = Appointment(
            organization_id=patient.organization_id,
            patient_id=patient.id,
            doctor_id=doctor_id,
            title=title.strip(),
            start_time=start_time,
            end_time=end_time,
            status=fields.pop("status", None) or AppointmentStatus.PENDING,
            created_by_id=scope.user_id,
        )
        _apply(appt, fields)
        _check_staff_refs(s, appt)
        _check_slot(s, appt)
        s.add(appt)
        s.flush()
        _log(s, scope, appt.organization_id, "created", "appointment", appt.id, f"{appt.title} for {patient.full_name}")
        logger.info("Booked appointment %s at %s", appt.id, start_time.isoformat())
        return appt


def update_appointment(scope: Scope, appointment_id: str, **fields) -> Appointment | None:
    with db_session() as s:
        appt = get_scoped(s, Appointment, appointment_id, scope)
        if not appt:
            return None
        fields.pop("patient_id", None)
        _apply(appt, fields)
        _check_staff_refs(s, appt)
        _check_slot(s, appt)
        return appt


def delete_appointment(scope: Scope, appointment_id: str) -> bool:
    with db_session() as s:
        appt = get_scoped(s, Appointment, appointment_id, scope)
        if not appt:
            return False
        s.delete(appt)
        return True


# =========================
# Inventory
# =========================
def _after_stock_change(s, item: InventoryItem, previous: InventoryStatus) -> None:
    if previous is InventoryStatus.AVAILABLE and item.status is not InventoryStatus.AVAILABLE:
        notify_low_stock(s, item)


def list_inventory(
    scope: Scope,
    category: InventoryCategory | None = None,
    status: InventoryStatus | None = None,
) -> list[InventoryItem]:
    with db_session() as s:
        q = scoped(select(InventoryItem), InventoryItem, scope)
        if category is not None:
            q = q.where(InventoryItem.category == category)
        items = list(s.scalars(q.order_by(InventoryItem.name)))
    if status is not None:
        items = [i for i in items if i.status is status]
    return items


def get_inventory_item(scope: Scope, item_id: str) -> InventoryItem | None:
    with db_session() as s:
        return get_scoped(s, InventoryItem, item_id, scope)


def low_stock_items(scope: Scope) -> list[InventoryItem]:
    with db_session() as s:
        q = scoped(select(InventoryItem), InventoryItem, scope).where(
            InventoryItem.current_quantity <= InventoryItem.minimum_quantity
        )
        return list(s.scalars(q.order_by(InventoryItem.current_quantity.asc(), InventoryItem.name)))


def create_inventory_item(scope: Scope, name: str, category: InventoryCategory, unit: str, **fields) -> InventoryItem:
    with db_session() as s:
        item = InventoryItem(
            organization_id=owner_id(scope, fields.pop("organization_id", None)),
            name=name.strip(),
            category=category,
            unit=unit,
        )
        _apply(item, fields)
        if item.current_quantity is None:
            item.current_quantity = 0
        if item.minimum_quantity is None:
            item.minimum_quantity = 5
        if item.current_quantity < 0:
            raise ValueError("Quantity cannot be negative.")
        s.add(item)
        s.flush()
        return item


def update_inventory_item(scope: Scope, item_id: str, **fields) -> InventoryItem | None:
    with db_session() as s:
        item = get_scoped(s, InventoryItem, item_id, scope)
        if not item:
            return None
        previous = item.status
        _apply(item, fields)
        if item.current_quantity < 0:
            raise ValueError("Quantity cannot be negative.")
        _after_stock_change(s, item, previous)
        return item


def adjust_stock(scope: Scope, item_id: str, delta: int) -> InventoryItem | None:
    """Add (delta > 0, a restock) or consume (delta < 0) units."""
    with db_session() as s:
        item = get_scoped(s, InventoryItem, item_id, scope)
        if not item:
            return None
        if item.current_quantity + delta < 0:
            raise ValueError(f"Only {item.current_quantity} {item.unit} of {item.name} in stock.")

        previous = item.status
        item.current_quantity += delta
        if delta > 0:
            item.last_restocked = date.today()
        _after_stock_change(s, item, previous)
        logger.info("Stock of %s changed by %d (now %d)", item.name, delta, item.current_quantity)
        return item


def delete_inventory_item(scope: Scope, item_id: str) -> bool:
    with db_session() as s:
        item = get_scoped(s, InventoryItem, item_id, scope)
        if not item:
            return False
        s.delete(item)
        return True


# =========================
# Lab cases
# =========================
def _stamp_return(case: LabCase) -> None:
    if case.status in (LabCaseStatus.COMPLETED, LabCaseStatus.DELIVERED) and case.actual_return_date is None:
        case.actual_return_date = date.today()


def get_lab_case(scope: Scope, case_id: str) -> LabCase | None:
    with db_session() as s:
        return get_scoped(s, LabCase, case_id, scope)


def list_lab_cases(
    scope: Scope,
    status: LabCaseStatus | None = None,
    patient_id: str | None = None,
) -> list[LabCase]:
    with db_session() as s:
        q = scoped(select(LabCase), LabCase, scope)
        if status is not None:
            q = q.where(LabCase.status == status)
        if patient_id:
            q = q.where(LabCase.patient_id == patient_id)
        return list(s.scalars(q.order_by(LabCase.sent_date.desc())))


def create_lab_case(
    scope: Scope,
    patient_id: str,
    case_type: str,
    lab_name: str,
    sent_date: date,
    **fields,
) -> LabCase:
    with db_session() as s:
        patient = get_scoped(s, Patient, patient_id, scope)
        if not patient:
            raise ValueError("Patient not found.")
        case = LabCase(
            organization_id=patient.organization_id,
            patient_id=patient.id,
            case_type=case_type,
            lab_name=lab_name,
            sent_date=sent_date,
        )
        _apply(case, fields)
        _check_staff_refs(s, case)
        if case.cost is not None and Decimal(case.cost) < 0:
            raise ValueError("Cost cannot be negative.")
        _stamp_return(case)
        s.add(case)
        s.flush()
        _log(s, scope, case.organization_id, "created", "lab_case", case.id, f"{case_type} sent to {lab_name}")
        return case


def update_lab_case(scope: Scope, case_id: str, **fields) -> LabCase | None:
    with db_session() as s:
        case = get_scoped(s, LabCase, case_id, scope)
        if not case:
            return None
        fields.pop("patient_id", None)
        _apply(case, fields)
        _check_staff_refs(s, case)
        _stamp_return(case)
        return case


def delete_lab_case(scope: Scope, case_id: str) -> bool:
    with db_session() as s:
        case = get_scoped(s, LabCase, case_id, scope)
        if not case:
            return False
        s.delete(case)
        return True


# =========================
# Documents
# =========================
def list_patient_documents(scope: Scope, patient_id: str) -> list[Document]:
    with db_session() as s:
        q = scoped(select(Document), Document, scope).where(Document.patient_id == patient_id)
        return list(s.scalars(q.order_by(Document.created_at.desc())))


def create_document(
    scope: Scope,
    patient_id: str,
    file_name: str,
    file_type: str,
    file_url: str,
    **fields,
) -> Document:
    with db_session() as s:
        patient = get_scoped(s, Patient, patient_id, scope)
        if not patient:
            raise ValueError("Patient not found.")
        doc = Document(
            organization_id=patient.organization_id,
            patient_id=patient.id,
            file_name=file_name,
            file_type=file_type,
            file_url=file_url,
            uploaded_by_id=scope.user_id,
        )
        _apply(doc, fields)
        s.add(doc)
        s.flush()
        return doc


def delete_document(scope: Scope, document_id: str) -> bool:
    with db_session() as s:
        doc = get_scoped(s, Document, document_id, scope)
        if not doc:
            return False
        s.delete(doc)
        return True


# =========================
# Activity log
# =========================
def _log(
    s,
    scope: Scope,
    organization_id: str | None,
    action: str,
    entity_type: str,
    entity_id: str | None,
    details: str | None = None,
) -> None:
    s.add(
        ActivityLog(
            organization_id=organization_id,
            user_id=scope.user_id,
            action=action,
            entity_type=entity_type,
            entity_id=entity_id,
            details=details,
        )
    )


def log_activity(
    scope: Scope,
    action: str,
    entity_type: str,
    entity_id: str | None = None,
    details: str | None = None,
) -> None:
    with db_session() as s:
        _log(s, scope, scope.clinic_id, action, entity_type, entity_id, details)


def recent_activity(scope: Scope, limit: int = 20) -> list[ActivityLog]:
    with db_session() as s:
        q = scoped(select(ActivityLog), ActivityLog, scope)
        return list(s.scalars(q.order_by(ActivityLog.created_at.desc()).limit(limit)))


# =========================
# Clinic settings
# =========================
def get_clinic_settings(scope: Scope, clinic_id: str | None = None) -> ClinicSettings:
    """Settings row of the caller's clinic, created with defaults on first read."""
    org_id = owner_id(scope, clinic_id)
    with db_session() as s:
        row = s.execute(
            select(ClinicSettings).where(ClinicSettings.organization_id == org_id)
        ).scalar_one_or_none()
        if row is None:
            row = ClinicSettings(organization_id=org_id)
            s.add(row)
            s.flush()
        return row


def update_clinic_settings(scope: Scope, clinic_id: str | None = None, **fields) -> ClinicSettings:
    org_id = owner_id(scope, clinic_id)
    if "invoice_due_days" in fields and fields["invoice_due_days"] is not None and fields["invoice_due_days"] < 0:
        raise ValueError("invoice_due_days cannot be negative.")

    with db_session() as s:
        row = s.execute(
            select(ClinicSettings).where(ClinicSettings.organization_id == org_id)
        ).scalar_one_or_none()
        if row is None:
            row = ClinicSettings(organization_id=org_id)
            s.add(row)
        _apply(row, fields)
        row.updated_at = datetime.now(timezone.utc)
        s.flush()
        return row


# =========================
# Dashboard
# =========================
def dashboard_stats(scope: Scope, today: date | None = None) -> dict[str, Any]:
    today = today or date.today()
    day_start, day_end = _day_bounds(today)
    month_start = today.replace(day=1)

    with db_session() as s:
        total_patients = s.scalar(scoped(select(func.count(Patient.id)), Patient, scope)) or 0
        todays = s.scalar(
            scoped(select(func.count(Appointment.id)), Appointment, scope).where(
                and_(
                    Appointment.start_time >= day_start,
                    Appointment.start_time < day_end,
                    Appointment.status != AppointmentStatus.CANCELED,
                )
            )
        ) or 0
        collected = s.scalar(
            scoped(select(func.coalesce(func.sum(Payment.amount), 0)), Payment, scope).where(
                and_(
                    Payment.payment_date >= month_start,
                    Payment.payment_date <= today,
                    Payment.is_refunded.is_(False),
                )
            )
        )
        open_invoices = s.scalars(
            scoped(select(Invoice), Invoice, scope).where(Invoice.status.in_(OPEN_INVOICE_STATUSES))
        ).all()
        pending = sum((max(inv.balance, Decimal("0")) for inv in open_invoices), Decimal("0"))

    return {
        "total_patients": int(total_patients),
        "today_appointments": int(todays),
        "monthly_revenue": Decimal(collected or 0).quantize(Decimal("0.01")),
        "pending_payments": pending.quantize(Decimal("0.01")),
    }
