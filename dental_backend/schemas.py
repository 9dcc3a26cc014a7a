"""
Request / response models of the HTTP API.
*In models validate bodies, *Update models are partial (exclude_unset), *Out models read ORM rows.
"""
from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from typing import Annotated, Any

from pydantic import BaseModel, ConfigDict, Field, PlainSerializer

from .models import (
    AdjustmentType,
    AppointmentCategory,
    AppointmentStatus,
    DiscountType,
    DoctorPaymentType,
    DoctorSpecialty,
    ExpenseCategory,
    Gender,
    InsuranceClaimStatus,
    InventoryCategory,
    InventoryStatus,
    InvoiceStatus,
    LabCaseStatus,
    NotificationPriority,
    NotificationType,
    OrganizationType,
    PaymentMethod,
    PaymentPlanStatus,
    ServiceCategory,
    TreatmentStatus,
    UserRole,
)

# amounts travel as JSON numbers
Money = Annotated[Decimal, PlainSerializer(float, return_type=float, when_used="json")]


class ORMModel(BaseModel):
    model_config = ConfigDict(from_attributes=True)


# =========================
# Auth
# =========================
class TokenOut(BaseModel):
    access_token: str
    token_type: str = "bearer"


class RegisterClinicIn(BaseModel):
    clinic_name: str = Field(..., min_length=1)
    organization_type: OrganizationType = OrganizationType.CLINIC
    username: str = Field(..., min_length=3)
    password: str = Field(..., min_length=6)
    first_name: str = Field(..., min_length=1)
    last_name: str = Field(..., min_length=1)
    email: str | None = None


class JoinClinicIn(BaseModel):
    clinic_slug: str = Field(..., min_length=1)
    username: str = Field(..., min_length=3)
    password: str = Field(..., min_length=6)
    first_name: str = Field(..., min_length=1)
    last_name: str = Field(..., min_length=1)
    email: str | None = None


class ChangePasswordIn(BaseModel):
    old_password: str
    new_password: str = Field(..., min_length=6)


# =========================
# Users / organizations
# =========================
class UserOut(ORMModel):
    id: str
    organization_id: str | None
    username: str
    first_name: str
    last_name: str
    email: str | None
    phone: str | None
    role: UserRole
    specialty: DoctorSpecialty | None
    license_number: str | None
    commission_rate: int | None
    is_active: bool
    created_at: datetime


class UserCreateIn(BaseModel):
    username: str = Field(..., min_length=3)
    password: str = Field(..., min_length=6)
    first_name: str = Field(..., min_length=1)
    last_name: str = Field(..., min_length=1)
    role: UserRole = UserRole.STAFF
    email: str | None = None
    phone: str | None = None
    specialty: DoctorSpecialty | None = None
    license_number: str | None = None
    commission_rate: int | None = Field(None, ge=0, le=100)


class UserUpdate(BaseModel):
    first_name: str | None = None
    last_name: str | None = None
    email: str | None = None
    phone: str | None = None
    role: UserRole | None = None
    specialty: DoctorSpecialty | None = None
    license_number: str | None = None
    bio: str | None = None
    commission_rate: int | None = Field(None, ge=0, le=100)
    is_active: bool | None = None


class ApproveUserIn(BaseModel):
    role: UserRole


class OrganizationOut(ORMModel):
    id: str
    name: str
    slug: str
    type: OrganizationType
    email: str | None
    phone: str | None
    owner_id: str | None
    is_active: bool
    created_at: datetime


class OrganizationSummaryOut(BaseModel):
    organization: OrganizationOut
    user_count: int
    patient_count: int


class OrganizationCreateIn(BaseModel):
    name: str = Field(..., min_length=1)
    type: OrganizationType = OrganizationType.CLINIC
    email: str | None = None
    admin_username: str = Field(..., min_length=3)
    admin_password: str = Field(..., min_length=6)
    admin_first_name: str = Field(..., min_length=1)
    admin_last_name: str = Field(..., min_length=1)


class OrganizationStatusIn(BaseModel):
    is_active: bool


# =========================
# Patients
# =========================
class PatientIn(BaseModel):
    first_name: str = Field(..., min_length=1)
    last_name: str = Field(..., min_length=1)
    phone: str = Field(..., min_length=1)
    email: str | None = None
    date_of_birth: date | None = None
    gender: Gender | None = None
    address: str | None = None
    emergency_contact: str | None = None
    emergency_phone: str | None = None
    allergies: list[str] | None = None
    chronic_conditions: list[str] | None = None
    current_medications: list[str] | None = None
    medical_notes: str | None = None
    dental_history: str | None = None
    insurance_provider: str | None = None
    insurance_policy_number: str | None = None
    assigned_doctor_id: str | None = None
    assigned_student_id: str | None = None
    notes: str | None = None


class PatientUpdate(BaseModel):
    first_name: str | None = None
    last_name: str | None = None
    phone: str | None = None
    email: str | None = None
    date_of_birth: date | None = None
    gender: Gender | None = None
    address: str | None = None
    emergency_contact: str | None = None
    emergency_phone: str | None = None
    allergies: list[str] | None = None
    chronic_conditions: list[str] | None = None
    current_medications: list[str] | None = None
    medical_notes: str | None = None
    dental_history: str | None = None
    insurance_provider: str | None = None
    insurance_policy_number: str | None = None
    last_visit: date | None = None
    assigned_doctor_id: str | None = None
    assigned_student_id: str | None = None
    notes: str | None = None


class PatientOut(ORMModel):
    id: str
    organization_id: str
    first_name: str
    last_name: str
    phone: str
    email: str | None
    date_of_birth: date | None
    gender: Gender | None
    address: str | None
    allergies: list[str] | None
    chronic_conditions: list[str] | None
    current_medications: list[str] | None
    medical_notes: str | None
    insurance_provider: str | None
    insurance_policy_number: str | None
    last_visit: date | None
    assigned_doctor_id: str | None
    assigned_student_id: str | None
    notes: str | None
    created_at: datetime


# =========================
# Treatments
# =========================
class TreatmentIn(BaseModel):
    name: str = Field(..., min_length=1)
    category: ServiceCategory
    default_price: Decimal = Field(..., ge=0)
    code: str | None = None
    description: str | None = None
    duration_minutes: int = Field(30, gt=0)


class TreatmentUpdate(BaseModel):
    name: str | None = None
    category: ServiceCategory | None = None
    default_price: Decimal | None = Field(None, ge=0)
    description: str | None = None
    duration_minutes: int | None = Field(None, gt=0)
    is_active: bool | None = None


class TreatmentOut(ORMModel):
    id: str
    organization_id: str
    code: str
    name: str
    category: ServiceCategory
    description: str | None
    default_price: Money
    duration_minutes: int
    is_active: bool


class PatientTreatmentIn(BaseModel):
    treatment_id: str
    doctor_id: str | None = None
    appointment_id: str | None = None
    price: Decimal | None = Field(None, ge=0)
    status: TreatmentStatus = TreatmentStatus.PLANNED
    tooth_number: int | None = None
    discount_type: DiscountType | None = None
    discount_value: Decimal | None = Field(None, ge=0)
    scheduled_date: date | None = None
    completion_date: date | None = None
    notes: str | None = None


class PatientTreatmentUpdate(BaseModel):
    doctor_id: str | None = None
    price: Decimal | None = Field(None, ge=0)
    status: TreatmentStatus | None = None
    tooth_number: int | None = None
    discount_type: DiscountType | None = None
    discount_value: Decimal | None = Field(None, ge=0)
    scheduled_date: date | None = None
    completion_date: date | None = None
    notes: str | None = None


class PatientTreatmentOut(ORMModel):
    id: str
    patient_id: str
    treatment_id: str
    doctor_id: str | None
    status: TreatmentStatus
    tooth_number: int | None
    price: Money
    discount_type: DiscountType | None
    discount_value: Money | None
    scheduled_date: date | None
    completion_date: date | None
    notes: str | None
    treatment: TreatmentOut | None = None


# =========================
# Appointments
# =========================
class AppointmentIn(BaseModel):
    patient_id: str
    title: str = Field(..., min_length=1)
    start_time: datetime
    end_time: datetime
    doctor_id: str | None = None
    status: AppointmentStatus = AppointmentStatus.PENDING
    category: AppointmentCategory = AppointmentCategory.CHECKUP
    room: str | None = None
    notes: str | None = None


class AppointmentUpdate(BaseModel):
    title: str | None = None
    start_time: datetime | None = None
    end_time: datetime | None = None
    doctor_id: str | None = None
    status: AppointmentStatus | None = None
    category: AppointmentCategory | None = None
    room: str | None = None
    notes: str | None = None


class AppointmentOut(ORMModel):
    id: str
    organization_id: str
    patient_id: str
    doctor_id: str | None
    title: str
    start_time: datetime
    end_time: datetime
    status: AppointmentStatus
    category: AppointmentCategory
    room: str | None
    notes: str | None


# =========================
# Inventory / lab / documents
# =========================
class InventoryIn(BaseModel):
    name: str = Field(..., min_length=1)
    category: InventoryCategory
    unit: str = Field(..., min_length=1)
    current_quantity: int = Field(0, ge=0)
    minimum_quantity: int = Field(5, ge=0)
    unit_cost: Decimal | None = Field(None, ge=0)
    supplier: str | None = None
    location: str | None = None
    description: str | None = None
    expiry_date: date | None = None


class InventoryUpdate(BaseModel):
    name: str | None = None
    category: InventoryCategory | None = None
    unit: str | None = None
    current_quantity: int | None = Field(None, ge=0)
    minimum_quantity: int | None = Field(None, ge=0)
    unit_cost: Decimal | None = Field(None, ge=0)
    supplier: str | None = None
    location: str | None = None
    description: str | None = None
    expiry_date: date | None = None


class StockAdjustIn(BaseModel):
    delta: int


class InventoryOut(ORMModel):
    id: str
    name: str
    category: InventoryCategory
    current_quantity: int
    minimum_quantity: int
    unit: str
    unit_cost: Money | None
    supplier: str | None
    location: str | None
    expiry_date: date | None
    last_restocked: date | None
    status: InventoryStatus


class LabCaseIn(BaseModel):
    patient_id: str
    case_type: str = Field(..., min_length=1)
    lab_name: str = Field(..., min_length=1)
    sent_date: date
    doctor_id: str | None = None
    tooth_numbers: list[int] | None = None
    expected_return_date: date | None = None
    status: LabCaseStatus = LabCaseStatus.PENDING
    cost: Decimal | None = Field(None, ge=0)
    description: str | None = None
    notes: str | None = None


class LabCaseUpdate(BaseModel):
    case_type: str | None = None
    lab_name: str | None = None
    doctor_id: str | None = None
    tooth_numbers: list[int] | None = None
    sent_date: date | None = None
    expected_return_date: date | None = None
    actual_return_date: date | None = None
    status: LabCaseStatus | None = None
    cost: Decimal | None = Field(None, ge=0)
    is_paid: bool | None = None
    description: str | None = None
    notes: str | None = None


class LabCaseOut(ORMModel):
    id: str
    patient_id: str
    doctor_id: str | None
    case_type: str
    lab_name: str
    tooth_numbers: list[int] | None
    sent_date: date
    expected_return_date: date | None
    actual_return_date: date | None
    status: LabCaseStatus
    cost: Money | None
    is_paid: bool
    notes: str | None


class DocumentIn(BaseModel):
    file_name: str = Field(..., min_length=1)
    file_type: str = Field(..., min_length=1)
    file_url: str = Field(..., min_length=1)
    file_size: int | None = Field(None, ge=0)
    category: str | None = None
    description: str | None = None


class DocumentOut(ORMModel):
    id: str
    patient_id: str
    file_name: str
    file_type: str
    file_url: str
    file_size: int | None
    category: str | None
    description: str | None
    uploaded_by_id: str | None
    created_at: datetime


class ActivityOut(ORMModel):
    id: str
    user_id: str | None
    action: str
    entity_type: str
    entity_id: str | None
    details: str | None
    created_at: datetime


class ClinicSettingsIn(BaseModel):
    clinic_name: str | None = None
    address: str | None = None
    phone: str | None = None
    email: str | None = None
    currency: str | None = Field(None, min_length=3, max_length=3)
    tax_rate: Decimal | None = Field(None, ge=0, le=100)
    invoice_due_days: int | None = Field(None, ge=0)
    working_hours_start: str | None = Field(None, pattern=r"^\d{2}:\d{2}$")
    working_hours_end: str | None = Field(None, pattern=r"^\d{2}:\d{2}$")


class ClinicSettingsOut(ORMModel):
    organization_id: str
    clinic_name: str | None
    address: str | None
    phone: str | None
    email: str | None
    currency: str
    tax_rate: Money
    invoice_due_days: int
    working_hours_start: str
    working_hours_end: str


# =========================
# Billing
# =========================
class InvoiceItemIn(BaseModel):
    description: str = Field(..., min_length=1)
    unit_price: Decimal = Field(..., ge=0)
    quantity: int = Field(1, ge=1)
    patient_treatment_id: str | None = None


class InvoiceIn(BaseModel):
    patient_id: str
    items: list[InvoiceItemIn] = Field(..., min_length=1)
    discount_type: DiscountType | None = None
    discount_value: Decimal | None = Field(None, ge=0)
    issued_date: date | None = None
    due_date: date | None = None
    status: InvoiceStatus = InvoiceStatus.SENT
    notes: str | None = None


class InvoiceUpdate(BaseModel):
    status: InvoiceStatus | None = None
    issued_date: date | None = None
    due_date: date | None = None
    notes: str | None = None


class InvoiceItemOut(ORMModel):
    id: str
    patient_treatment_id: str | None
    description: str
    quantity: int
    unit_price: Money
    total_price: Money


class InvoiceOut(ORMModel):
    id: str
    organization_id: str
    invoice_number: str
    patient_id: str
    total_amount: Money
    discount_type: DiscountType | None
    discount_value: Money | None
    final_amount: Money
    paid_amount: Money
    balance: Money
    status: InvoiceStatus
    issued_date: date
    due_date: date | None
    notes: str | None
    items: list[InvoiceItemOut] = []


class PaymentIn(BaseModel):
    invoice_id: str
    amount: Decimal = Field(..., gt=0)
    payment_method: PaymentMethod
    payment_date: date | None = None
    reference_number: str | None = None
    notes: str | None = None
    payment_plan_installment_id: str | None = None


class RefundIn(BaseModel):
    reason: str = Field(..., min_length=1)


class PaymentOut(ORMModel):
    id: str
    invoice_id: str
    payment_plan_installment_id: str | None
    amount: Money
    payment_date: date
    payment_method: PaymentMethod
    reference_number: str | None
    notes: str | None
    is_refunded: bool
    refunded_at: datetime | None
    refund_reason: str | None


class PaymentPlanIn(BaseModel):
    invoice_id: str
    number_of_installments: int = Field(..., ge=1, le=120)
    frequency: str = Field(..., pattern="^(weekly|biweekly|monthly)$")
    start_date: date
    down_payment: Decimal = Field(Decimal("0"), ge=0)
    notes: str | None = None


class InstallmentOut(ORMModel):
    id: str
    installment_number: int
    due_date: date
    amount: Money
    paid_amount: Money
    is_paid: bool
    paid_date: date | None


class PaymentPlanOut(ORMModel):
    id: str
    invoice_id: str
    patient_id: str
    total_amount: Money
    down_payment: Money
    number_of_installments: int
    installment_amount: Money
    frequency: str
    start_date: date
    status: PaymentPlanStatus
    notes: str | None
    installments: list[InstallmentOut] = []


class AdjustmentIn(BaseModel):
    invoice_id: str
    type: AdjustmentType
    amount: Decimal
    reason: str = Field(..., min_length=1)
    applied_date: date | None = None


class AdjustmentOut(ORMModel):
    id: str
    invoice_id: str
    type: AdjustmentType
    amount: Money
    reason: str
    applied_date: date
    created_by_id: str | None


class ExpenseIn(BaseModel):
    description: str = Field(..., min_length=1)
    category: ExpenseCategory
    amount: Decimal = Field(..., gt=0)
    expense_date: date
    vendor: str | None = None
    reference_number: str | None = None
    notes: str | None = None
    receipt_url: str | None = None
    is_recurring: bool = False
    recurring_frequency: str | None = None


class ExpenseUpdate(BaseModel):
    description: str | None = None
    category: ExpenseCategory | None = None
    amount: Decimal | None = Field(None, gt=0)
    expense_date: date | None = None
    vendor: str | None = None
    reference_number: str | None = None
    notes: str | None = None
    receipt_url: str | None = None
    is_recurring: bool | None = None
    recurring_frequency: str | None = None


class ExpenseOut(ORMModel):
    id: str
    description: str
    category: ExpenseCategory
    amount: Money
    expense_date: date
    vendor: str | None
    reference_number: str | None
    notes: str | None
    is_recurring: bool
    recurring_frequency: str | None


class DoctorPaymentIn(BaseModel):
    doctor_id: str
    amount: Decimal = Field(..., gt=0)
    payment_type: DoctorPaymentType
    payment_method: PaymentMethod
    payment_date: date
    payment_period_start: date | None = None
    payment_period_end: date | None = None
    reference_number: str | None = None
    notes: str | None = None


class DoctorPaymentUpdate(BaseModel):
    amount: Decimal | None = Field(None, gt=0)
    payment_type: DoctorPaymentType | None = None
    payment_method: PaymentMethod | None = None
    payment_date: date | None = None
    payment_period_start: date | None = None
    payment_period_end: date | None = None
    reference_number: str | None = None
    notes: str | None = None


class DoctorPaymentOut(ORMModel):
    id: str
    doctor_id: str
    amount: Money
    payment_type: DoctorPaymentType
    payment_method: PaymentMethod
    payment_date: date
    payment_period_start: date | None
    payment_period_end: date | None
    reference_number: str | None
    notes: str | None


class ClaimIn(BaseModel):
    patient_id: str
    insurance_provider: str = Field(..., min_length=1)
    policy_number: str = Field(..., min_length=1)
    claim_amount: Decimal = Field(..., gt=0)
    invoice_id: str | None = None
    subscriber_name: str | None = None
    subscriber_dob: date | None = None
    subscriber_relation: str | None = None
    status: InsuranceClaimStatus = InsuranceClaimStatus.DRAFT
    notes: str | None = None


class ClaimUpdate(BaseModel):
    insurance_provider: str | None = None
    policy_number: str | None = None
    status: InsuranceClaimStatus | None = None
    claim_amount: Decimal | None = Field(None, gt=0)
    approved_amount: Decimal | None = Field(None, ge=0)
    paid_amount: Decimal | None = Field(None, ge=0)
    denial_reason: str | None = None
    submitted_date: date | None = None
    processed_date: date | None = None
    notes: str | None = None


class ClaimOut(ORMModel):
    id: str
    claim_number: str
    patient_id: str
    invoice_id: str | None
    insurance_provider: str
    policy_number: str
    status: InsuranceClaimStatus
    claim_amount: Money
    approved_amount: Money | None
    paid_amount: Money | None
    denial_reason: str | None
    submitted_date: date | None
    processed_date: date | None
    notes: str | None


class AuditLogOut(ORMModel):
    id: str
    organization_id: str | None
    user_id: str | None
    action: str
    entity_type: str
    entity_id: str | None
    old_values: dict[str, Any] | None
    new_values: dict[str, Any] | None
    timestamp: datetime


# =========================
# Notifications
# =========================
class NotificationOut(ORMModel):
    id: int
    type: NotificationType
    priority: NotificationPriority
    title: str
    message: str
    related_entity_type: str | None
    related_entity_id: str | None
    extra: dict[str, Any] | None = Field(None, serialization_alias="metadata")
    created_at: datetime
    read_at: datetime | None


class PreferencesIn(BaseModel):
    password_reset_in_app: bool | None = None
    low_stock_in_app: bool | None = None
    appointment_reminder_in_app: bool | None = None
    security_alert_in_app: bool | None = None


class PreferencesOut(ORMModel):
    password_reset_in_app: bool
    low_stock_in_app: bool
    appointment_reminder_in_app: bool
    security_alert_in_app: bool
