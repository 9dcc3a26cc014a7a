from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from datetime import date, datetime, timezone
from typing import Any, Callable

from fastapi import Depends, FastAPI, HTTPException, Query, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.security import OAuth2PasswordBearer, OAuth2PasswordRequestForm

from dental_backend import billing, notifications, platform_admin, reports, services
from dental_backend.auth_models import User, UserRole
from dental_backend.auth_security import issue_token, read_claims
from dental_backend.auth_service import (
    AccountNotActive,
    authenticate,
    change_password,
    create_user,
    get_user,
    join_clinic,
    register_clinic,
)
from dental_backend.config import settings
from dental_backend.db import init_db
from dental_backend.logging_setup import setup_logging
from dental_backend.models import (
    AppointmentStatus,
    ExpenseCategory,
    DoctorPaymentType,
    Gender,
    InsuranceClaimStatus,
    InventoryCategory,
    InventoryStatus,
    InvoiceStatus,
    LabCaseStatus,
    PaymentPlanStatus,
)
from dental_backend.schemas import (
    ActivityOut,
    AdjustmentIn,
    AdjustmentOut,
    AppointmentIn,
    AppointmentOut,
    AppointmentUpdate,
    ApproveUserIn,
    AuditLogOut,
    ChangePasswordIn,
    ClaimIn,
    ClaimOut,
    ClaimUpdate,
    ClinicSettingsIn,
    ClinicSettingsOut,
    DocumentIn,
    DocumentOut,
    DoctorPaymentIn,
    DoctorPaymentOut,
    DoctorPaymentUpdate,
    ExpenseIn,
    ExpenseOut,
    ExpenseUpdate,
    InventoryIn,
    InventoryOut,
    InventoryUpdate,
    InvoiceIn,
    InvoiceItemOut,
    InvoiceOut,
    InvoiceUpdate,
    JoinClinicIn,
    LabCaseIn,
    LabCaseOut,
    LabCaseUpdate,
    NotificationOut,
    OrganizationCreateIn,
    OrganizationOut,
    OrganizationStatusIn,
    OrganizationSummaryOut,
    PatientIn,
    PatientOut,
    PatientTreatmentIn,
    PatientTreatmentOut,
    PatientTreatmentUpdate,
    PatientUpdate,
    PaymentIn,
    PaymentOut,
    PaymentPlanIn,
    PaymentPlanOut,
    PreferencesIn,
    PreferencesOut,
    RefundIn,
    RegisterClinicIn,
    StockAdjustIn,
    TokenOut,
    TreatmentIn,
    TreatmentOut,
    TreatmentUpdate,
    UserCreateIn,
    UserOut,
    UserUpdate,
)
from dental_backend.scope import Scope, ScopeError, owner_id
from dental_backend.seed import seed_base, seed_catalog

logger = logging.getLogger(__name__)

# OAuth2 Bearer (Authorization: Bearer <token>)
oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/api/auth/login")


@asynccontextmanager
async def lifespan(app: FastAPI):
    # tables and base data (idempotent)
    setup_logging(settings.LOG_LEVEL, settings.LOG_FILE)
    init_db()
    seed_base()
    logger.info("API ready")
    yield


app = FastAPI(title="Dental Practice API", version="1.0.0", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# Error mapping

@app.exception_handler(ValueError)
async def value_error_handler(request: Request, exc: ValueError) -> JSONResponse:
    return JSONResponse(status_code=status.HTTP_400_BAD_REQUEST, content={"detail": str(exc)})


@app.exception_handler(ScopeError)
async def scope_error_handler(request: Request, exc: ScopeError) -> JSONResponse:
    return JSONResponse(status_code=status.HTTP_403_FORBIDDEN, content={"detail": str(exc)})


@app.exception_handler(Exception)
async def unexpected_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.error("Unhandled error on %s %s", request.method, request.url.path, exc_info=exc)
    return JSONResponse(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, content={"detail": "Internal server error"})


def _found(obj: Any, what: str) -> Any:
    if obj is None or obj is False:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"{what} not found")
    return obj


def _period(start_date: date | None, end_date: date | None) -> tuple[date, date]:
    """Report period; defaults to the current year up to today."""
    today = date.today()
    return start_date or today.replace(month=1, day=1), end_date or today


# Auth dependencies

def get_current_user(token: str = Depends(oauth2_scheme)) -> User:
    # strip stray spaces / quotes pasted with the token
    token = token.strip().strip('"').strip("'")

    claims = read_claims(token)
    if not claims:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token")

    u = get_user(claims["sub"])
    if not u or not u.is_active:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid user")
    # issued before the user moved to another clinic
    if claims.get("org") != u.organization_id:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Token is out of date, log in again")
    if u.role is UserRole.PENDING:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Account pending approval")
    return u


require_auth = get_current_user


def require_clinic_scope(user: User = Depends(get_current_user)) -> Scope:
    """Clinic users are pinned to their organization; super admins see everything."""
    if user.role is UserRole.SUPER_ADMIN:
        return Scope.platform(user.id)
    if not user.organization_id:
        logger.warning("User %s has no clinic", user.username)
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="User is not associated with any clinic")
    return Scope.clinic(user.organization_id, user.id)


def require_clinic_scope_cross_clinic(
    clinic_id: str | None = Query(None, description="Super admins only: restrict to one clinic"),
    user: User = Depends(get_current_user),
) -> Scope:
    if user.role is UserRole.SUPER_ADMIN:
        if clinic_id:
            return Scope(clinic_id=clinic_id, is_super_admin=True, explicit=True, user_id=user.id)
        return Scope.platform(user.id)
    return require_clinic_scope(user)


def require_role(*roles: UserRole) -> Callable[..., User]:
    """Super admins always pass."""
    allowed = frozenset(roles)

    def checker(user: User = Depends(get_current_user)) -> User:
        if user.role is UserRole.SUPER_ADMIN or user.role in allowed:
            return user
        logger.warning("Role %s refused (needs %s)", user.role.value, ", ".join(sorted(r.value for r in allowed)))
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Insufficient permissions")

    return checker


require_clinic_admin = require_role(UserRole.CLINIC_ADMIN, UserRole.ADMIN)


def require_super_admin(user: User = Depends(get_current_user)) -> User:
    if user.role is not UserRole.SUPER_ADMIN:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Super admin access required")
    return user


FINANCE = require_role(UserRole.CLINIC_ADMIN, UserRole.ADMIN, UserRole.DOCTOR, UserRole.STAFF)
LAB = require_role(UserRole.CLINIC_ADMIN, UserRole.ADMIN, UserRole.DOCTOR)
MANAGERS = require_role(UserRole.CLINIC_ADMIN, UserRole.ADMIN)


# Health

@app.get("/api/health")
def health() -> dict[str, Any]:
    return {"ok": True, "time": datetime.now(timezone.utc).isoformat()}


# AUTH endpoints

@app.post("/api/auth/register-clinic", status_code=status.HTTP_201_CREATED)
def api_register_clinic(payload: RegisterClinicIn) -> dict[str, Any]:
    org, admin = register_clinic(
        clinic_name=payload.clinic_name,
        username=payload.username,
        password=payload.password,
        first_name=payload.first_name,
        last_name=payload.last_name,
        email=payload.email,
        org_type=payload.organization_type,
    )
    seed_catalog(org.id)
    return {"ok": True, "organization_id": org.id, "slug": org.slug, "user_id": admin.id}


@app.post("/api/auth/join-clinic", status_code=status.HTTP_201_CREATED)
def api_join_clinic(payload: JoinClinicIn) -> dict[str, Any]:
    u = join_clinic(
        clinic_slug=payload.clinic_slug,
        username=payload.username,
        password=payload.password,
        first_name=payload.first_name,
        last_name=payload.last_name,
        email=payload.email,
    )
    return {"ok": True, "user_id": u.id, "status": "pending"}


@app.post("/api/auth/login", response_model=TokenOut)
def login(form: OAuth2PasswordRequestForm = Depends()) -> TokenOut:
    try:
        u = authenticate(form.username, form.password)
    except AccountNotActive as e:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=str(e))
    if not u:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid username or password")

    return TokenOut(access_token=issue_token(u))


@app.get("/api/me", response_model=UserOut)
def me(user: User = Depends(require_auth)) -> User:
    return user


@app.post("/api/me/password")
def api_change_password(payload: ChangePasswordIn, user: User = Depends(require_auth)) -> dict[str, Any]:
    if not change_password(user.id, payload.old_password, payload.new_password):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Current password is wrong")
    return {"ok": True}


# Users (clinic admin)

@app.get("/api/users", response_model=list[UserOut])
def api_users(
    role: UserRole | None = None,
    scope: Scope = Depends(require_clinic_scope),
    _: User = Depends(require_clinic_admin),
) -> list:
    return services.list_users(scope, role=role)


@app.post("/api/users", response_model=UserOut, status_code=status.HTTP_201_CREATED)
def api_create_user(
    payload: UserCreateIn,
    scope: Scope = Depends(require_clinic_scope),
    _: User = Depends(require_clinic_admin),
):
    if payload.role in (UserRole.SUPER_ADMIN, UserRole.PENDING):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=f"Cannot create a {payload.role.value} user")
    data = payload.model_dump()
    return create_user(organization_id=owner_id(scope), **data)


@app.get("/api/users/pending", response_model=list[UserOut])
def api_pending_users(scope: Scope = Depends(require_clinic_scope), _: User = Depends(require_clinic_admin)) -> list:
    return services.list_pending_users(scope)


@app.patch("/api/users/{user_id}", response_model=UserOut)
def api_update_user(
    user_id: str,
    payload: UserUpdate,
    scope: Scope = Depends(require_clinic_scope),
    _: User = Depends(require_clinic_admin),
):
    return _found(services.update_user(scope, user_id, **payload.model_dump(exclude_unset=True)), "User")


@app.post("/api/users/{user_id}/approve", response_model=UserOut)
def api_approve_user(
    user_id: str,
    payload: ApproveUserIn,
    scope: Scope = Depends(require_clinic_scope),
    _: User = Depends(require_clinic_admin),
):
    return _found(services.approve_user(scope, user_id, payload.role), "User")


@app.delete("/api/users/{user_id}")
def api_deactivate_user(
    user_id: str,
    scope: Scope = Depends(require_clinic_scope),
    _: User = Depends(require_clinic_admin),
) -> dict[str, Any]:
    _found(services.deactivate_user(scope, user_id), "User")
    return {"ok": True}


@app.get("/api/doctors", response_model=list[UserOut])
def api_doctors(scope: Scope = Depends(require_clinic_scope_cross_clinic)) -> list:
    return services.list_doctors(scope)


# Patients

@app.get("/api/patients", response_model=list[PatientOut])
def api_patients(
    search: str | None = None,
    gender: Gender | None = None,
    assigned_doctor_id: str | None = None,
    assigned_student_id: str | None = None,
    scope: Scope = Depends(require_clinic_scope_cross_clinic),
) -> list:
    return services.list_patients(
        scope,
        search=search,
        gender=gender,
        assigned_doctor_id=assigned_doctor_id,
        assigned_student_id=assigned_student_id,
    )


@app.post("/api/patients", response_model=PatientOut, status_code=status.HTTP_201_CREATED)
def api_create_patient(payload: PatientIn, scope: Scope = Depends(require_clinic_scope_cross_clinic)):
    data = payload.model_dump()
    return services.create_patient(scope, data.pop("first_name"), data.pop("last_name"), data.pop("phone"), **data)


@app.get("/api/patients/{patient_id}", response_model=PatientOut)
def api_patient(patient_id: str, scope: Scope = Depends(require_clinic_scope_cross_clinic)):
    return _found(services.get_patient(scope, patient_id), "Patient")


@app.patch("/api/patients/{patient_id}", response_model=PatientOut)
def api_update_patient(patient_id: str, payload: PatientUpdate, scope: Scope = Depends(require_clinic_scope)):
    return _found(services.update_patient(scope, patient_id, **payload.model_dump(exclude_unset=True)), "Patient")


@app.delete("/api/patients/{patient_id}")
def api_delete_patient(
    patient_id: str,
    scope: Scope = Depends(require_clinic_scope),
    _: User = Depends(MANAGERS),
) -> dict[str, Any]:
    _found(services.delete_patient(scope, patient_id), "Patient")
    return {"ok": True}


@app.get("/api/patients/{patient_id}/treatments", response_model=list[PatientTreatmentOut])
def api_patient_treatments(patient_id: str, scope: Scope = Depends(require_clinic_scope_cross_clinic)) -> list:
    _found(services.get_patient(scope, patient_id), "Patient")
    return services.list_patient_treatments(scope, patient_id)


@app.post(
    "/api/patients/{patient_id}/treatments",
    response_model=PatientTreatmentOut,
    status_code=status.HTTP_201_CREATED,
)
def api_create_patient_treatment(
    patient_id: str,
    payload: PatientTreatmentIn,
    scope: Scope = Depends(require_clinic_scope),
):
    data = payload.model_dump()
    return services.create_patient_treatment(
        scope,
        patient_id,
        data.pop("treatment_id"),
        doctor_id=data.pop("doctor_id"),
        price=data.pop("price"),
        **data,
    )


@app.patch("/api/patient-treatments/{patient_treatment_id}", response_model=PatientTreatmentOut)
def api_update_patient_treatment(
    patient_treatment_id: str,
    payload: PatientTreatmentUpdate,
    scope: Scope = Depends(require_clinic_scope),
):
    updated = services.update_patient_treatment(scope, patient_treatment_id, **payload.model_dump(exclude_unset=True))
    return _found(updated, "Treatment")


@app.get("/api/patients/{patient_id}/documents", response_model=list[DocumentOut])
def api_documents(patient_id: str, scope: Scope = Depends(require_clinic_scope_cross_clinic)) -> list:
    _found(services.get_patient(scope, patient_id), "Patient")
    return services.list_patient_documents(scope, patient_id)


@app.post("/api/patients/{patient_id}/documents", response_model=DocumentOut, status_code=status.HTTP_201_CREATED)
def api_create_document(patient_id: str, payload: DocumentIn, scope: Scope = Depends(require_clinic_scope)):
    data = payload.model_dump()
    return services.create_document(
        scope, patient_id, data.pop("file_name"), data.pop("file_type"), data.pop("file_url"), **data
    )


@app.delete("/api/documents/{document_id}")
def api_delete_document(document_id: str, scope: Scope = Depends(require_clinic_scope)) -> dict[str, Any]:
    _found(services.delete_document(scope, document_id), "Document")
    return {"ok": True}


# Treatment catalog

@app.get("/api/treatments", response_model=list[TreatmentOut])
def api_treatments(
    include_inactive: bool = False,
    scope: Scope = Depends(require_clinic_scope_cross_clinic),
) -> list:
    return services.list_treatments(scope, include_inactive=include_inactive)


@app.post("/api/treatments", response_model=TreatmentOut, status_code=status.HTTP_201_CREATED)
def api_create_treatment(
    payload: TreatmentIn,
    scope: Scope = Depends(require_clinic_scope),
    _: User = Depends(MANAGERS),
):
    data = payload.model_dump()
    return services.create_treatment(scope, data.pop("name"), data.pop("category"), data.pop("default_price"), **data)


@app.patch("/api/treatments/{treatment_id}", response_model=TreatmentOut)
def api_update_treatment(
    treatment_id: str,
    payload: TreatmentUpdate,
    scope: Scope = Depends(require_clinic_scope),
    _: User = Depends(MANAGERS),
):
    return _found(services.update_treatment(scope, treatment_id, **payload.model_dump(exclude_unset=True)), "Treatment")


# Appointments

@app.get("/api/appointments", response_model=list[AppointmentOut])
def api_appointments(
    start: datetime | None = None,
    end: datetime | None = None,
    status_: AppointmentStatus | None = Query(None, alias="status"),
    doctor_id: str | None = None,
    patient_id: str | None = None,
    scope: Scope = Depends(require_clinic_scope_cross_clinic),
) -> list:
    return services.list_appointments(
        scope, start=start, end=end, status=status_, doctor_id=doctor_id, patient_id=patient_id
    )


@app.get("/api/appointments/today", response_model=list[AppointmentOut])
def api_today_appointments(scope: Scope = Depends(require_clinic_scope_cross_clinic)) -> list:
    return services.today_appointments(scope)


@app.post("/api/appointments", response_model=AppointmentOut, status_code=status.HTTP_201_CREATED)
def api_create_appointment(payload: AppointmentIn, scope: Scope = Depends(require_clinic_scope)):
    data = payload.model_dump()
    return services.create_appointment(
        scope,
        data.pop("patient_id"),
        data.pop("title"),
        data.pop("start_time"),
        data.pop("end_time"),
        doctor_id=data.pop("doctor_id"),
        **data,
    )


@app.get("/api/appointments/{appointment_id}", response_model=AppointmentOut)
def api_appointment(appointment_id: str, scope: Scope = Depends(require_clinic_scope_cross_clinic)):
    return _found(services.get_appointment(scope, appointment_id), "Appointment")


@app.patch("/api/appointments/{appointment_id}", response_model=AppointmentOut)
def api_update_appointment(
    appointment_id: str,
    payload: AppointmentUpdate,
    scope: Scope = Depends(require_clinic_scope),
):
    updated = services.update_appointment(scope, appointment_id, **payload.model_dump(exclude_unset=True))
    return _found(updated, "Appointment")


@app.delete("/api/appointments/{appointment_id}")
def api_delete_appointment(appointment_id: str, scope: Scope = Depends(require_clinic_scope)) -> dict[str, Any]:
    _found(services.delete_appointment(scope, appointment_id), "Appointment")
    return {"ok": True}


# Inventory

@app.get("/api/inventory", response_model=list[InventoryOut])
def api_inventory(
    category: InventoryCategory | None = None,
    status_: InventoryStatus | None = Query(None, alias="status"),
    scope: Scope = Depends(require_clinic_scope_cross_clinic),
) -> list:
    return services.list_inventory(scope, category=category, status=status_)


@app.get("/api/inventory/low-stock", response_model=list[InventoryOut])
def api_low_stock(scope: Scope = Depends(require_clinic_scope_cross_clinic)) -> list:
    return services.low_stock_items(scope)


@app.post("/api/inventory", response_model=InventoryOut, status_code=status.HTTP_201_CREATED)
def api_create_inventory_item(payload: InventoryIn, scope: Scope = Depends(require_clinic_scope)):
    data = payload.model_dump()
    return services.create_inventory_item(scope, data.pop("name"), data.pop("category"), data.pop("unit"), **data)


@app.patch("/api/inventory/{item_id}", response_model=InventoryOut)
def api_update_inventory_item(item_id: str, payload: InventoryUpdate, scope: Scope = Depends(require_clinic_scope)):
    updated = services.update_inventory_item(scope, item_id, **payload.model_dump(exclude_unset=True))
    return _found(updated, "Inventory item")


@app.post("/api/inventory/{item_id}/adjust", response_model=InventoryOut)
def api_adjust_stock(item_id: str, payload: StockAdjustIn, scope: Scope = Depends(require_clinic_scope)):
    return _found(services.adjust_stock(scope, item_id, payload.delta), "Inventory item")


@app.delete("/api/inventory/{item_id}")
def api_delete_inventory_item(
    item_id: str,
    scope: Scope = Depends(require_clinic_scope),
    _: User = Depends(MANAGERS),
) -> dict[str, Any]:
    _found(services.delete_inventory_item(scope, item_id), "Inventory item")
    return {"ok": True}


# Lab cases

@app.get("/api/lab-cases", response_model=list[LabCaseOut])
def api_lab_cases(
    status_: LabCaseStatus | None = Query(None, alias="status"),
    patient_id: str | None = None,
    scope: Scope = Depends(require_clinic_scope_cross_clinic),
    _: User = Depends(LAB),
) -> list:
    return services.list_lab_cases(scope, status=status_, patient_id=patient_id)


@app.post("/api/lab-cases", response_model=LabCaseOut, status_code=status.HTTP_201_CREATED)
def api_create_lab_case(payload: LabCaseIn, scope: Scope = Depends(require_clinic_scope), _: User = Depends(LAB)):
    data = payload.model_dump()
    return services.create_lab_case(
        scope, data.pop("patient_id"), data.pop("case_type"), data.pop("lab_name"), data.pop("sent_date"), **data
    )


@app.get("/api/lab-cases/{case_id}", response_model=LabCaseOut)
def api_lab_case(case_id: str, scope: Scope = Depends(require_clinic_scope_cross_clinic), _: User = Depends(LAB)):
    return _found(services.get_lab_case(scope, case_id), "Lab case")


@app.patch("/api/lab-cases/{case_id}", response_model=LabCaseOut)
def api_update_lab_case(
    case_id: str,
    payload: LabCaseUpdate,
    scope: Scope = Depends(require_clinic_scope),
    _: User = Depends(LAB),
):
    return _found(services.update_lab_case(scope, case_id, **payload.model_dump(exclude_unset=True)), "Lab case")


@app.delete("/api/lab-cases/{case_id}")
def api_delete_lab_case(
    case_id: str,
    scope: Scope = Depends(require_clinic_scope),
    _: User = Depends(LAB),
) -> dict[str, Any]:
    _found(services.delete_lab_case(scope, case_id), "Lab case")
    return {"ok": True}


# Dashboard, activity, settings

@app.get("/api/dashboard/stats")
def api_dashboard_stats(scope: Scope = Depends(require_clinic_scope_cross_clinic)) -> dict[str, Any]:
    return services.dashboard_stats(scope)


@app.get("/api/activity", response_model=list[ActivityOut])
def api_activity(
    limit: int = Query(20, ge=1, le=200),
    scope: Scope = Depends(require_clinic_scope_cross_clinic),
) -> list:
    return services.recent_activity(scope, limit=limit)


@app.get("/api/settings/clinic", response_model=ClinicSettingsOut)
def api_clinic_settings(scope: Scope = Depends(require_clinic_scope_cross_clinic)):
    return services.get_clinic_settings(scope)


@app.put("/api/settings/clinic", response_model=ClinicSettingsOut)
def api_update_clinic_settings(
    payload: ClinicSettingsIn,
    scope: Scope = Depends(require_clinic_scope_cross_clinic),
    _: User = Depends(MANAGERS),
):
    return services.update_clinic_settings(scope, **payload.model_dump(exclude_unset=True))


# Invoices

@app.get("/api/invoices", response_model=list[InvoiceOut])
def api_invoices(
    patient_id: str | None = None,
    status_: InvoiceStatus | None = Query(None, alias="status"),
    scope: Scope = Depends(require_clinic_scope_cross_clinic),
    _: User = Depends(FINANCE),
) -> list:
    return billing.list_invoices(scope, patient_id=patient_id, status=status_)


@app.post("/api/invoices", response_model=InvoiceOut, status_code=status.HTTP_201_CREATED)
def api_create_invoice(payload: InvoiceIn, scope: Scope = Depends(require_clinic_scope), _: User = Depends(FINANCE)):
    data = payload.model_dump()
    return billing.create_invoice(scope, data.pop("patient_id"), data.pop("items"), **data)


@app.get("/api/invoices/{invoice_id}", response_model=InvoiceOut)
def api_invoice(
    invoice_id: str,
    scope: Scope = Depends(require_clinic_scope_cross_clinic),
    _: User = Depends(FINANCE),
):
    return _found(billing.get_invoice(scope, invoice_id), "Invoice")


@app.patch("/api/invoices/{invoice_id}", response_model=InvoiceOut)
def api_update_invoice(
    invoice_id: str,
    payload: InvoiceUpdate,
    scope: Scope = Depends(require_clinic_scope),
    _: User = Depends(FINANCE),
):
    return _found(billing.update_invoice(scope, invoice_id, **payload.model_dump(exclude_unset=True)), "Invoice")


@app.get("/api/invoices/{invoice_id}/items", response_model=list[InvoiceItemOut])
def api_invoice_items(
    invoice_id: str,
    scope: Scope = Depends(require_clinic_scope_cross_clinic),
    _: User = Depends(FINANCE),
) -> list:
    _found(billing.get_invoice(scope, invoice_id), "Invoice")
    return billing.invoice_items(scope, invoice_id)


@app.get("/api/invoices/{invoice_id}/adjustments", response_model=list[AdjustmentOut])
def api_invoice_adjustments(
    invoice_id: str,
    scope: Scope = Depends(require_clinic_scope_cross_clinic),
    _: User = Depends(FINANCE),
) -> list:
    _found(billing.get_invoice(scope, invoice_id), "Invoice")
    return billing.list_adjustments(scope, invoice_id)


@app.post("/api/invoices/mark-overdue")
def api_mark_overdue(scope: Scope = Depends(require_clinic_scope), _: User = Depends(FINANCE)) -> dict[str, Any]:
    return {"ok": True, "updated": billing.mark_overdue_invoices(scope)}


# Payments, plans, adjustments

@app.get("/api/payments", response_model=list[PaymentOut])
def api_payments(
    invoice_id: str | None = None,
    scope: Scope = Depends(require_clinic_scope_cross_clinic),
    _: User = Depends(FINANCE),
) -> list:
    return billing.list_payments(scope, invoice_id=invoice_id)


@app.post("/api/payments", response_model=PaymentOut, status_code=status.HTTP_201_CREATED)
def api_record_payment(payload: PaymentIn, scope: Scope = Depends(require_clinic_scope), _: User = Depends(FINANCE)):
    data = payload.model_dump()
    return billing.record_payment(scope, data.pop("invoice_id"), data.pop("amount"), data.pop("payment_method"), **data)


@app.post("/api/payments/{payment_id}/refund", response_model=PaymentOut)
def api_refund_payment(
    payment_id: str,
    payload: RefundIn,
    scope: Scope = Depends(require_clinic_scope),
    _: User = Depends(MANAGERS),
):
    return _found(billing.refund_payment(scope, payment_id, payload.reason), "Payment")


@app.get("/api/payment-plans", response_model=list[PaymentPlanOut])
def api_payment_plans(
    invoice_id: str | None = None,
    patient_id: str | None = None,
    status_: PaymentPlanStatus | None = Query(None, alias="status"),
    scope: Scope = Depends(require_clinic_scope_cross_clinic),
    _: User = Depends(FINANCE),
) -> list:
    return billing.list_payment_plans(scope, invoice_id=invoice_id, patient_id=patient_id, status=status_)


@app.post("/api/payment-plans", response_model=PaymentPlanOut, status_code=status.HTTP_201_CREATED)
def api_create_payment_plan(
    payload: PaymentPlanIn,
    scope: Scope = Depends(require_clinic_scope),
    _: User = Depends(FINANCE),
):
    data = payload.model_dump()
    return billing.create_payment_plan(
        scope,
        data.pop("invoice_id"),
        data.pop("number_of_installments"),
        data.pop("frequency"),
        data.pop("start_date"),
        **data,
    )


@app.get("/api/payment-plans/{plan_id}", response_model=PaymentPlanOut)
def api_payment_plan(
    plan_id: str,
    scope: Scope = Depends(require_clinic_scope_cross_clinic),
    _: User = Depends(FINANCE),
):
    return _found(billing.get_payment_plan(scope, plan_id), "Payment plan")


@app.post("/api/payment-plans/{plan_id}/cancel", response_model=PaymentPlanOut)
def api_cancel_payment_plan(
    plan_id: str,
    scope: Scope = Depends(require_clinic_scope),
    _: User = Depends(MANAGERS),
):
    return _found(billing.cancel_payment_plan(scope, plan_id), "Payment plan")


@app.post("/api/adjustments", response_model=AdjustmentOut, status_code=status.HTTP_201_CREATED)
def api_create_adjustment(
    payload: AdjustmentIn,
    scope: Scope = Depends(require_clinic_scope),
    _: User = Depends(MANAGERS),
):
    return billing.create_adjustment(
        scope,
        payload.invoice_id,
        payload.type,
        payload.amount,
        payload.reason,
        applied_date=payload.applied_date,
    )


# Expenses

@app.get("/api/expenses", response_model=list[ExpenseOut])
def api_expenses(
    category: ExpenseCategory | None = None,
    start_date: date | None = None,
    end_date: date | None = None,
    scope: Scope = Depends(require_clinic_scope_cross_clinic),
    _: User = Depends(FINANCE),
) -> list:
    return billing.list_expenses(scope, category=category, start=start_date, end=end_date)


@app.post("/api/expenses", response_model=ExpenseOut, status_code=status.HTTP_201_CREATED)
def api_create_expense(payload: ExpenseIn, scope: Scope = Depends(require_clinic_scope), _: User = Depends(FINANCE)):
    data = payload.model_dump()
    return billing.create_expense(
        scope, data.pop("description"), data.pop("category"), data.pop("amount"), data.pop("expense_date"), **data
    )


@app.get("/api/expenses/{expense_id}", response_model=ExpenseOut)
def api_expense(
    expense_id: str,
    scope: Scope = Depends(require_clinic_scope_cross_clinic),
    _: User = Depends(FINANCE),
):
    return _found(billing.get_expense(scope, expense_id), "Expense")


@app.patch("/api/expenses/{expense_id}", response_model=ExpenseOut)
def api_update_expense(
    expense_id: str,
    payload: ExpenseUpdate,
    scope: Scope = Depends(require_clinic_scope),
    _: User = Depends(FINANCE),
):
    return _found(billing.update_expense(scope, expense_id, **payload.model_dump(exclude_unset=True)), "Expense")


@app.delete("/api/expenses/{expense_id}")
def api_delete_expense(
    expense_id: str,
    scope: Scope = Depends(require_clinic_scope),
    _: User = Depends(MANAGERS),
) -> dict[str, Any]:
    _found(billing.delete_expense(scope, expense_id), "Expense")
    return {"ok": True}


# Doctor payments

@app.get("/api/doctor-payments", response_model=list[DoctorPaymentOut])
def api_doctor_payments(
    doctor_id: str | None = None,
    payment_type: DoctorPaymentType | None = None,
    start_date: date | None = None,
    end_date: date | None = None,
    scope: Scope = Depends(require_clinic_scope_cross_clinic),
    user: User = Depends(FINANCE),
) -> list:
    # doctors only see their own compensation
    if user.role is UserRole.DOCTOR:
        doctor_id = user.id
    return billing.list_doctor_payments(
        scope, doctor_id=doctor_id, payment_type=payment_type, start=start_date, end=end_date
    )


@app.post("/api/doctor-payments", response_model=DoctorPaymentOut, status_code=status.HTTP_201_CREATED)
def api_create_doctor_payment(
    payload: DoctorPaymentIn,
    scope: Scope = Depends(require_clinic_scope),
    _: User = Depends(MANAGERS),
):
    data = payload.model_dump()
    return billing.create_doctor_payment(
        scope,
        data.pop("doctor_id"),
        data.pop("amount"),
        data.pop("payment_type"),
        data.pop("payment_method"),
        data.pop("payment_date"),
        **data,
    )


@app.patch("/api/doctor-payments/{payment_id}", response_model=DoctorPaymentOut)
def api_update_doctor_payment(
    payment_id: str,
    payload: DoctorPaymentUpdate,
    scope: Scope = Depends(require_clinic_scope),
    _: User = Depends(MANAGERS),
):
    updated = billing.update_doctor_payment(scope, payment_id, **payload.model_dump(exclude_unset=True))
    return _found(updated, "Doctor payment")


@app.delete("/api/doctor-payments/{payment_id}")
def api_delete_doctor_payment(
    payment_id: str,
    scope: Scope = Depends(require_clinic_scope),
    _: User = Depends(MANAGERS),
) -> dict[str, Any]:
    _found(billing.delete_doctor_payment(scope, payment_id), "Doctor payment")
    return {"ok": True}


# Insurance claims

@app.get("/api/insurance-claims", response_model=list[ClaimOut])
def api_claims(
    status_: InsuranceClaimStatus | None = Query(None, alias="status"),
    patient_id: str | None = None,
    scope: Scope = Depends(require_clinic_scope_cross_clinic),
    _: User = Depends(FINANCE),
) -> list:
    return billing.list_insurance_claims(scope, status=status_, patient_id=patient_id)


@app.get("/api/insurance-claims/next-number")
def api_next_claim_number(scope: Scope = Depends(require_clinic_scope), _: User = Depends(FINANCE)) -> dict[str, str]:
    return {"claim_number": billing.generate_claim_number(scope)}


@app.post("/api/insurance-claims", response_model=ClaimOut, status_code=status.HTTP_201_CREATED)
def api_create_claim(payload: ClaimIn, scope: Scope = Depends(require_clinic_scope), _: User = Depends(FINANCE)):
    data = payload.model_dump()
    return billing.create_insurance_claim(
        scope,
        data.pop("patient_id"),
        data.pop("insurance_provider"),
        data.pop("policy_number"),
        data.pop("claim_amount"),
        invoice_id=data.pop("invoice_id"),
        **data,
    )


@app.get("/api/insurance-claims/{claim_id}", response_model=ClaimOut)
def api_claim(
    claim_id: str,
    scope: Scope = Depends(require_clinic_scope_cross_clinic),
    _: User = Depends(FINANCE),
):
    return _found(billing.get_insurance_claim(scope, claim_id), "Insurance claim")


@app.patch("/api/insurance-claims/{claim_id}", response_model=ClaimOut)
def api_update_claim(
    claim_id: str,
    payload: ClaimUpdate,
    scope: Scope = Depends(require_clinic_scope),
    _: User = Depends(FINANCE),
):
    updated = billing.update_insurance_claim(scope, claim_id, **payload.model_dump(exclude_unset=True))
    return _found(updated, "Insurance claim")


@app.delete("/api/insurance-claims/{claim_id}")
def api_delete_claim(
    claim_id: str,
    scope: Scope = Depends(require_clinic_scope),
    _: User = Depends(MANAGERS),
) -> dict[str, Any]:
    _found(billing.delete_insurance_claim(scope, claim_id), "Insurance claim")
    return {"ok": True}


# Reports

@app.get("/api/reports/revenue")
def api_revenue_report(
    start_date: date | None = None,
    end_date: date | None = None,
    scope: Scope = Depends(require_clinic_scope_cross_clinic),
    _: User = Depends(FINANCE),
) -> dict[str, Any]:
    return reports.revenue_report(scope, *_period(start_date, end_date))


@app.get("/api/reports/ar-aging")
def api_ar_aging(
    as_of: date | None = None,
    scope: Scope = Depends(require_clinic_scope_cross_clinic),
    _: User = Depends(FINANCE),
) -> dict[str, Any]:
    return reports.ar_aging_report(scope, as_of=as_of)


@app.get("/api/reports/production-by-doctor")
def api_production_by_doctor(
    start_date: date | None = None,
    end_date: date | None = None,
    scope: Scope = Depends(require_clinic_scope_cross_clinic),
    _: User = Depends(MANAGERS),
) -> list[dict[str, Any]]:
    return reports.production_by_doctor_report(scope, *_period(start_date, end_date))


@app.get("/api/reports/my-production")
def api_my_production(
    start_date: date | None = None,
    end_date: date | None = None,
    scope: Scope = Depends(require_clinic_scope),
    user: User = Depends(require_role(UserRole.DOCTOR)),
) -> dict[str, Any]:
    return _found(reports.doctor_report(scope, user.id, *_period(start_date, end_date)), "Doctor")


@app.get("/api/reports/doctor/{doctor_id}")
def api_doctor_report(
    doctor_id: str,
    start_date: date | None = None,
    end_date: date | None = None,
    scope: Scope = Depends(require_clinic_scope_cross_clinic),
    user: User = Depends(FINANCE),
) -> dict[str, Any]:
    if user.role is UserRole.DOCTOR and doctor_id != user.id:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Doctors can only view their own report")
    return _found(reports.doctor_report(scope, doctor_id, *_period(start_date, end_date)), "Doctor")


@app.get("/api/reports/expenses")
def api_expense_report(
    start_date: date | None = None,
    end_date: date | None = None,
    scope: Scope = Depends(require_clinic_scope_cross_clinic),
    _: User = Depends(FINANCE),
) -> dict[str, Any]:
    return reports.expense_report(scope, *_period(start_date, end_date))


@app.get("/api/reports/net-profit")
def api_net_profit(
    start_date: date | None = None,
    end_date: date | None = None,
    scope: Scope = Depends(require_clinic_scope_cross_clinic),
    _: User = Depends(MANAGERS),
) -> dict[str, Any]:
    return reports.net_profit_report(scope, *_period(start_date, end_date))


# Audit log (clinic admin)

@app.get("/api/audit-logs", response_model=list[AuditLogOut])
def api_audit_logs(
    entity_type: str | None = None,
    entity_id: str | None = None,
    user_id: str | None = None,
    limit: int = Query(100, ge=1, le=1000),
    scope: Scope = Depends(require_clinic_scope_cross_clinic),
    _: User = Depends(require_clinic_admin),
) -> list:
    return billing.list_audit_logs(scope, entity_type=entity_type, entity_id=entity_id, user_id=user_id, limit=limit)


# Notifications (per user)

@app.get("/api/notifications", response_model=list[NotificationOut])
def api_notifications(
    unread_only: bool = False,
    limit: int = Query(50, ge=1, le=200),
    user: User = Depends(require_auth),
) -> list:
    return notifications.list_notifications(user.id, unread_only=unread_only, limit=limit)


@app.get("/api/notifications/unread-count")
def api_unread_count(user: User = Depends(require_auth)) -> dict[str, int]:
    return {"count": notifications.unread_count(user.id)}


@app.post("/api/notifications/read-all")
def api_mark_all_read(user: User = Depends(require_auth)) -> dict[str, Any]:
    return {"ok": True, "updated": notifications.mark_all_read(user.id)}


@app.get("/api/notifications/preferences", response_model=PreferencesOut)
def api_notification_preferences(user: User = Depends(require_auth)):
    return notifications.get_preferences(user.id)


@app.put("/api/notifications/preferences", response_model=PreferencesOut)
def api_update_notification_preferences(payload: PreferencesIn, user: User = Depends(require_auth)):
    return notifications.update_preferences(user.id, **payload.model_dump(exclude_unset=True))


@app.post("/api/notifications/{notification_id}/read")
def api_mark_read(notification_id: int, user: User = Depends(require_auth)) -> dict[str, Any]:
    _found(notifications.mark_read(user.id, notification_id), "Notification")
    return {"ok": True}


@app.delete("/api/notifications/{notification_id}")
def api_delete_notification(notification_id: int, user: User = Depends(require_auth)) -> dict[str, Any]:
    _found(notifications.delete_notification(user.id, notification_id), "Notification")
    return {"ok": True}


# Platform (super admin)

@app.get("/api/platform/organizations", response_model=list[OrganizationSummaryOut])
def api_organizations(include_inactive: bool = True, _: User = Depends(require_super_admin)) -> list:
    return platform_admin.list_organizations(include_inactive=include_inactive)


@app.post("/api/platform/organizations", status_code=status.HTTP_201_CREATED)
def api_create_organization(payload: OrganizationCreateIn, _: User = Depends(require_super_admin)) -> dict[str, Any]:
    org, admin = platform_admin.create_organization(
        name=payload.name,
        admin_username=payload.admin_username,
        admin_password=payload.admin_password,
        admin_first_name=payload.admin_first_name,
        admin_last_name=payload.admin_last_name,
        email=payload.email,
        org_type=payload.type,
    )
    return {"ok": True, "organization": OrganizationOut.model_validate(org).model_dump(mode="json"), "admin_id": admin.id}


@app.get("/api/platform/organizations/{organization_id}", response_model=OrganizationOut)
def api_organization(organization_id: str, _: User = Depends(require_super_admin)):
    return _found(platform_admin.get_organization(organization_id), "Organization")


@app.get("/api/platform/organizations/{organization_id}/users", response_model=list[UserOut])
def api_organization_users(organization_id: str, _: User = Depends(require_super_admin)) -> list:
    _found(platform_admin.get_organization(organization_id), "Organization")
    return platform_admin.organization_users(organization_id)


@app.patch("/api/platform/organizations/{organization_id}/status", response_model=OrganizationOut)
def api_organization_status(
    organization_id: str,
    payload: OrganizationStatusIn,
    _: User = Depends(require_super_admin),
):
    return _found(platform_admin.set_organization_active(organization_id, payload.is_active), "Organization")


@app.get("/api/platform/metrics")
def api_platform_metrics(_: User = Depends(require_super_admin)) -> dict[str, Any]:
    return platform_admin.platform_metrics()
