from __future__ import annotations

import enum
from datetime import date, datetime
from decimal import Decimal

from sqlalchemy import (
    JSON,
    Boolean,
    Date,
    DateTime,
    Enum,
    ForeignKey,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from .auth_models import DoctorSpecialty, Organization, OrganizationType, User, UserRole, new_uuid  # noqa: F401
from .db import Base, now_utc

Money = Numeric(10, 2)


class Gender(enum.Enum):
    MALE = "male"
    FEMALE = "female"
    OTHER = "other"


class AppointmentStatus(enum.Enum):
    CONFIRMED = "confirmed"
    PENDING = "pending"
    CANCELED = "canceled"
    COMPLETED = "completed"


class AppointmentCategory(enum.Enum):
    NEW_VISIT = "new_visit"
    FOLLOW_UP = "follow_up"
    DISCUSSION = "discussion"
    SURGERY = "surgery"
    CHECKUP = "checkup"
    CLEANING = "cleaning"


class InvoiceStatus(enum.Enum):
    DRAFT = "draft"
    SENT = "sent"
    PAID = "paid"
    PARTIAL = "partial"
    OVERDUE = "overdue"
    CANCELED = "canceled"


OPEN_INVOICE_STATUSES = (InvoiceStatus.SENT, InvoiceStatus.PARTIAL, InvoiceStatus.OVERDUE)


class PaymentMethod(enum.Enum):
    CASH = "cash"
    CARD = "card"
    BANK_TRANSFER = "bank_transfer"
    INSURANCE = "insurance"
    OTHER = "other"


class PaymentPlanStatus(enum.Enum):
    ACTIVE = "active"
    COMPLETED = "completed"
    CANCELED = "canceled"
    DEFAULTED = "defaulted"


class AdjustmentType(enum.Enum):
    DISCOUNT = "discount"
    WRITE_OFF = "write_off"
    REFUND = "refund"
    FEE = "fee"
    CORRECTION = "correction"


class DiscountType(enum.Enum):
    PERCENTAGE = "percentage"
    VALUE = "value"


class ExpenseCategory(enum.Enum):
    SUPPLIES = "supplies"
    EQUIPMENT = "equipment"
    LAB_FEES = "lab_fees"
    UTILITIES = "utilities"
    RENT = "rent"
    SALARIES = "salaries"
    MARKETING = "marketing"
    INSURANCE = "insurance"
    MAINTENANCE = "maintenance"
    SOFTWARE = "software"
    TRAINING = "training"
    OTHER = "other"


class DoctorPaymentType(enum.Enum):
    SALARY = "salary"
    BONUS = "bonus"
    COMMISSION = "commission"
    DEDUCTION = "deduction"
    REIMBURSEMENT = "reimbursement"
    OTHER = "other"


class InsuranceClaimStatus(enum.Enum):
    DRAFT = "draft"
    SUBMITTED = "submitted"
    PENDING = "pending"
    APPROVED = "approved"
    DENIED = "denied"
    PAID = "paid"
    APPEALED = "appealed"


class InventoryCategory(enum.Enum):
    CONSUMABLES = "consumables"
    EQUIPMENT = "equipment"
    INSTRUMENTS = "instruments"
    MEDICATIONS = "medications"
    OFFICE_SUPPLIES = "office_supplies"


class InventoryStatus(enum.Enum):
    AVAILABLE = "available"
    LOW_STOCK = "low_stock"
    OUT_OF_STOCK = "out_of_stock"


class LabCaseStatus(enum.Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    DELIVERED = "delivered"


class TreatmentStatus(enum.Enum):
    PLANNED = "planned"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CANCELED = "canceled"


class ServiceCategory(enum.Enum):
    ENDODONTICS = "endodontics"
    RESTORATIVE = "restorative"
    PREVENTATIVE = "preventative"
    FIXED_PROSTHODONTICS = "fixed_prosthodontics"
    REMOVABLE_PROSTHODONTICS = "removable_prosthodontics"
    SURGERY = "surgery"
    ORTHODONTICS = "orthodontics"
    PERIODONTICS = "periodontics"
    COSMETIC = "cosmetic"
    DIAGNOSTICS = "diagnostics"
    PEDIATRIC = "pediatric"


class NotificationType(enum.Enum):
    PASSWORD_RESET = "password_reset"
    LOW_STOCK = "low_stock"
    APPOINTMENT_REMINDER = "appointment_reminder"
    SECURITY_ALERT = "security_alert"


class NotificationPriority(enum.Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    URGENT = "urgent"


def _org_fk() -> Mapped[str]:
    return mapped_column(ForeignKey("organizations.id"), nullable=False, index=True)


# =========================
# Clinical records
# =========================
class Patient(Base):
    __tablename__ = "patients"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_uuid)
    organization_id: Mapped[str] = _org_fk()
    first_name: Mapped[str] = mapped_column(String(80), nullable=False)
    last_name: Mapped[str] = mapped_column(String(80), nullable=False)
    email: Mapped[str | None] = mapped_column(String(120), nullable=True)
    phone: Mapped[str] = mapped_column(String(30), nullable=False)
    date_of_birth: Mapped[date | None] = mapped_column(Date, nullable=True)
    gender: Mapped[Gender | None] = mapped_column(Enum(Gender), nullable=True)
    address: Mapped[str | None] = mapped_column(Text, nullable=True)
    emergency_contact: Mapped[str | None] = mapped_column(String(120), nullable=True)
    emergency_phone: Mapped[str | None] = mapped_column(String(30), nullable=True)

    allergies: Mapped[list | None] = mapped_column(JSON, nullable=True)
    chronic_conditions: Mapped[list | None] = mapped_column(JSON, nullable=True)
    current_medications: Mapped[list | None] = mapped_column(JSON, nullable=True)
    medical_notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    dental_history: Mapped[str | None] = mapped_column(Text, nullable=True)

    insurance_provider: Mapped[str | None] = mapped_column(String(120), nullable=True)
    insurance_policy_number: Mapped[str | None] = mapped_column(String(60), nullable=True)

    last_visit: Mapped[date | None] = mapped_column(Date, nullable=True)
    assigned_doctor_id: Mapped[str | None] = mapped_column(ForeignKey("users.id"), nullable=True)
    assigned_student_id: Mapped[str | None] = mapped_column(ForeignKey("users.id"), nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=now_utc, nullable=False)
    created_by_id: Mapped[str | None] = mapped_column(String(36), nullable=True)

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}"

    def __repr__(self) -> str:
        return f"Patient({self.first_name} {self.last_name})"


class Treatment(Base):
    """Services catalog entry."""
    __tablename__ = "treatments"
    __table_args__ = (UniqueConstraint("organization_id", "code", name="uq_treatment_org_code"),)

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_uuid)
    organization_id: Mapped[str] = _org_fk()
    code: Mapped[str] = mapped_column(String(40), nullable=False)
    name: Mapped[str] = mapped_column(String(160), nullable=False)
    category: Mapped[ServiceCategory] = mapped_column(Enum(ServiceCategory), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    default_price: Mapped[Decimal] = mapped_column(Money, nullable=False)
    duration_minutes: Mapped[int] = mapped_column(Integer, default=30, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=now_utc, nullable=False)


class PatientTreatment(Base):
    __tablename__ = "patient_treatments"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_uuid)
    organization_id: Mapped[str] = _org_fk()
    patient_id: Mapped[str] = mapped_column(ForeignKey("patients.id"), nullable=False, index=True)
    treatment_id: Mapped[str] = mapped_column(ForeignKey("treatments.id"), nullable=False)
    appointment_id: Mapped[str | None] = mapped_column(String(36), nullable=True)
    doctor_id: Mapped[str | None] = mapped_column(ForeignKey("users.id"), nullable=True, index=True)

    status: Mapped[TreatmentStatus] = mapped_column(
        Enum(TreatmentStatus), default=TreatmentStatus.PLANNED, nullable=False
    )
    tooth_number: Mapped[int | None] = mapped_column(Integer, nullable=True)
    price: Mapped[Decimal] = mapped_column(Money, nullable=False)
    discount_type: Mapped[DiscountType | None] = mapped_column(Enum(DiscountType), nullable=True)
    discount_value: Mapped[Decimal | None] = mapped_column(Money, nullable=True)
    scheduled_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    completion_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=now_utc, nullable=False)

    treatment: Mapped["Treatment"] = relationship(lazy="joined")


class Appointment(Base):
    __tablename__ = "appointments"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_uuid)
    organization_id: Mapped[str] = _org_fk()
    patient_id: Mapped[str] = mapped_column(ForeignKey("patients.id"), nullable=False, index=True)
    doctor_id: Mapped[str | None] = mapped_column(ForeignKey("users.id"), nullable=True)
    title: Mapped[str] = mapped_column(String(160), nullable=False)
    start_time: Mapped[datetime] = mapped_column(DateTime, nullable=False, index=True)
    end_time: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    status: Mapped[AppointmentStatus] = mapped_column(
        Enum(AppointmentStatus), default=AppointmentStatus.PENDING, nullable=False
    )
    category: Mapped[AppointmentCategory] = mapped_column(
        Enum(AppointmentCategory), default=AppointmentCategory.CHECKUP, nullable=False
    )
    room: Mapped[str | None] = mapped_column(String(60), nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=now_utc, nullable=False)
    created_by_id: Mapped[str | None] = mapped_column(String(36), nullable=True)


# =========================
# Billing
# =========================
class Invoice(Base):
    __tablename__ = "invoices"
    __table_args__ = (UniqueConstraint("organization_id", "invoice_number", name="uq_invoice_org_number"),)

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_uuid)
    organization_id: Mapped[str] = _org_fk()
    invoice_number: Mapped[str] = mapped_column(String(40), nullable=False)
    patient_id: Mapped[str] = mapped_column(ForeignKey("patients.id"), nullable=False, index=True)
    total_amount: Mapped[Decimal] = mapped_column(Money, nullable=False)
    discount_type: Mapped[DiscountType | None] = mapped_column(Enum(DiscountType), nullable=True)
    discount_value: Mapped[Decimal | None] = mapped_column(Money, nullable=True)
    final_amount: Mapped[Decimal] = mapped_column(Money, nullable=False)
    paid_amount: Mapped[Decimal] = mapped_column(Money, default=Decimal("0"), nullable=False)
    status: Mapped[InvoiceStatus] = mapped_column(Enum(InvoiceStatus), default=InvoiceStatus.DRAFT, nullable=False)
    issued_date: Mapped[date] = mapped_column(Date, nullable=False, index=True)
    due_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=now_utc, nullable=False)
    created_by_id: Mapped[str | None] = mapped_column(String(36), nullable=True)

    items: Mapped[list["InvoiceItem"]] = relationship(
        back_populates="invoice", cascade="all, delete-orphan", lazy="selectin"
    )

    @property
    def balance(self) -> Decimal:
        return Decimal(self.final_amount) - Decimal(self.paid_amount or 0)


class InvoiceItem(Base):
    __tablename__ = "invoice_items"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_uuid)
    organization_id: Mapped[str] = _org_fk()
    invoice_id: Mapped[str] = mapped_column(ForeignKey("invoices.id"), nullable=False, index=True)
    patient_treatment_id: Mapped[str | None] = mapped_column(ForeignKey("patient_treatments.id"), nullable=True)
    description: Mapped[str] = mapped_column(String(255), nullable=False)
    quantity: Mapped[int] = mapped_column(Integer, default=1, nullable=False)
    unit_price: Mapped[Decimal] = mapped_column(Money, nullable=False)
    total_price: Mapped[Decimal] = mapped_column(Money, nullable=False)

    invoice: Mapped["Invoice"] = relationship(back_populates="items")


class Payment(Base):
    __tablename__ = "payments"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_uuid)
    organization_id: Mapped[str] = _org_fk()
    invoice_id: Mapped[str] = mapped_column(ForeignKey("invoices.id"), nullable=False, index=True)
    payment_plan_installment_id: Mapped[str | None] = mapped_column(
        ForeignKey("payment_plan_installments.id"), nullable=True
    )
    amount: Mapped[Decimal] = mapped_column(Money, nullable=False)
    payment_date: Mapped[date] = mapped_column(Date, nullable=False, index=True)
    payment_method: Mapped[PaymentMethod] = mapped_column(Enum(PaymentMethod), nullable=False)
    reference_number: Mapped[str | None] = mapped_column(String(80), nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    is_refunded: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    refunded_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    refund_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=now_utc, nullable=False)
    created_by_id: Mapped[str | None] = mapped_column(String(36), nullable=True)


class PaymentPlan(Base):
    __tablename__ = "payment_plans"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_uuid)
    organization_id: Mapped[str] = _org_fk()
    invoice_id: Mapped[str] = mapped_column(ForeignKey("invoices.id"), nullable=False, index=True)
    patient_id: Mapped[str] = mapped_column(ForeignKey("patients.id"), nullable=False)
    total_amount: Mapped[Decimal] = mapped_column(Money, nullable=False)
    down_payment: Mapped[Decimal] = mapped_column(Money, default=Decimal("0"), nullable=False)
    number_of_installments: Mapped[int] = mapped_column(Integer, nullable=False)
    installment_amount: Mapped[Decimal] = mapped_column(Money, nullable=False)
    frequency: Mapped[str] = mapped_column(String(20), nullable=False)
    start_date: Mapped[date] = mapped_column(Date, nullable=False)
    status: Mapped[PaymentPlanStatus] = mapped_column(
        Enum(PaymentPlanStatus), default=PaymentPlanStatus.ACTIVE, nullable=False
    )
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=now_utc, nullable=False)
    created_by_id: Mapped[str | None] = mapped_column(String(36), nullable=True)

    installments: Mapped[list["PaymentPlanInstallment"]] = relationship(
        back_populates="plan",
        cascade="all, delete-orphan",
        lazy="selectin",
        order_by="PaymentPlanInstallment.installment_number",
    )


class PaymentPlanInstallment(Base):
    __tablename__ = "payment_plan_installments"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_uuid)
    organization_id: Mapped[str] = _org_fk()
    payment_plan_id: Mapped[str] = mapped_column(ForeignKey("payment_plans.id"), nullable=False, index=True)
    installment_number: Mapped[int] = mapped_column(Integer, nullable=False)
    due_date: Mapped[date] = mapped_column(Date, nullable=False)
    amount: Mapped[Decimal] = mapped_column(Money, nullable=False)
    paid_amount: Mapped[Decimal] = mapped_column(Money, default=Decimal("0"), nullable=False)
    is_paid: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    paid_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    plan: Mapped["PaymentPlan"] = relationship(back_populates="installments")


class InvoiceAdjustment(Base):
    __tablename__ = "invoice_adjustments"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_uuid)
    organization_id: Mapped[str] = _org_fk()
    invoice_id: Mapped[str] = mapped_column(ForeignKey("invoices.id"), nullable=False, index=True)
    type: Mapped[AdjustmentType] = mapped_column(Enum(AdjustmentType), nullable=False)
    # signed only for corrections
    amount: Mapped[Decimal] = mapped_column(Money, nullable=False)
    reason: Mapped[str] = mapped_column(Text, nullable=False)
    applied_date: Mapped[date] = mapped_column(Date, nullable=False, index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=now_utc, nullable=False)
    created_by_id: Mapped[str | None] = mapped_column(String(36), nullable=True)


class Expense(Base):
    __tablename__ = "expenses"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_uuid)
    organization_id: Mapped[str] = _org_fk()
    description: Mapped[str] = mapped_column(String(255), nullable=False)
    category: Mapped[ExpenseCategory] = mapped_column(Enum(ExpenseCategory), nullable=False)
    amount: Mapped[Decimal] = mapped_column(Money, nullable=False)
    expense_date: Mapped[date] = mapped_column(Date, nullable=False, index=True)
    vendor: Mapped[str | None] = mapped_column(String(120), nullable=True)
    reference_number: Mapped[str | None] = mapped_column(String(80), nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    receipt_url: Mapped[str | None] = mapped_column(String(500), nullable=True)
    is_recurring: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    recurring_frequency: Mapped[str | None] = mapped_column(String(20), nullable=True)
    created_by_id: Mapped[str | None] = mapped_column(String(36), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=now_utc, nullable=False)


class DoctorPayment(Base):
    """Compensation paid to (or deducted from) a doctor."""
    __tablename__ = "doctor_payments"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_uuid)
    organization_id: Mapped[str] = _org_fk()
    doctor_id: Mapped[str] = mapped_column(ForeignKey("users.id"), nullable=False, index=True)
    amount: Mapped[Decimal] = mapped_column(Money, nullable=False)
    payment_type: Mapped[DoctorPaymentType] = mapped_column(Enum(DoctorPaymentType), nullable=False)
    payment_method: Mapped[PaymentMethod] = mapped_column(Enum(PaymentMethod), nullable=False)
    payment_date: Mapped[date] = mapped_column(Date, nullable=False, index=True)
    payment_period_start: Mapped[date | None] = mapped_column(Date, nullable=True)
    payment_period_end: Mapped[date | None] = mapped_column(Date, nullable=True)
    reference_number: Mapped[str | None] = mapped_column(String(80), nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_by_id: Mapped[str | None] = mapped_column(String(36), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=now_utc, nullable=False)


class InsuranceClaim(Base):
    __tablename__ = "insurance_claims"
    __table_args__ = (UniqueConstraint("organization_id", "claim_number", name="uq_claim_org_number"),)

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_uuid)
    organization_id: Mapped[str] = _org_fk()
    claim_number: Mapped[str] = mapped_column(String(40), nullable=False)
    patient_id: Mapped[str] = mapped_column(ForeignKey("patients.id"), nullable=False, index=True)
    invoice_id: Mapped[str | None] = mapped_column(ForeignKey("invoices.id"), nullable=True)
    insurance_provider: Mapped[str] = mapped_column(String(120), nullable=False)
    policy_number: Mapped[str] = mapped_column(String(60), nullable=False)
    subscriber_name: Mapped[str | None] = mapped_column(String(120), nullable=True)
    subscriber_dob: Mapped[date | None] = mapped_column(Date, nullable=True)
    subscriber_relation: Mapped[str | None] = mapped_column(String(40), nullable=True)
    status: Mapped[InsuranceClaimStatus] = mapped_column(
        Enum(InsuranceClaimStatus), default=InsuranceClaimStatus.DRAFT, nullable=False
    )
    claim_amount: Mapped[Decimal] = mapped_column(Money, nullable=False)
    approved_amount: Mapped[Decimal | None] = mapped_column(Money, nullable=True)
    paid_amount: Mapped[Decimal | None] = mapped_column(Money, nullable=True)
    denial_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    submitted_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    processed_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_by_id: Mapped[str | None] = mapped_column(String(36), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=now_utc, nullable=False)


# =========================
# Practice operations
# =========================
class InventoryItem(Base):
    __tablename__ = "inventory_items"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_uuid)
    organization_id: Mapped[str] = _org_fk()
    name: Mapped[str] = mapped_column(String(160), nullable=False)
    category: Mapped[InventoryCategory] = mapped_column(Enum(InventoryCategory), nullable=False)
    current_quantity: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    minimum_quantity: Mapped[int] = mapped_column(Integer, default=5, nullable=False)
    unit: Mapped[str] = mapped_column(String(30), nullable=False)
    unit_cost: Mapped[Decimal | None] = mapped_column(Money, nullable=True)
    supplier: Mapped[str | None] = mapped_column(String(120), nullable=True)
    location: Mapped[str | None] = mapped_column(String(120), nullable=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    expiry_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    last_restocked: Mapped[date | None] = mapped_column(Date, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=now_utc, nullable=False)

    @property
    def status(self) -> InventoryStatus:
        if self.current_quantity <= 0:
            return InventoryStatus.OUT_OF_STOCK
        if self.current_quantity <= self.minimum_quantity:
            return InventoryStatus.LOW_STOCK
        return InventoryStatus.AVAILABLE


class LabCase(Base):
    __tablename__ = "lab_cases"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_uuid)
    organization_id: Mapped[str] = _org_fk()
    patient_id: Mapped[str] = mapped_column(ForeignKey("patients.id"), nullable=False, index=True)
    doctor_id: Mapped[str | None] = mapped_column(ForeignKey("users.id"), nullable=True)
    case_type: Mapped[str] = mapped_column(String(80), nullable=False)
    lab_name: Mapped[str] = mapped_column(String(120), nullable=False)
    tooth_numbers: Mapped[list | None] = mapped_column(JSON, nullable=True)
    sent_date: Mapped[date] = mapped_column(Date, nullable=False, index=True)
    expected_return_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    actual_return_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    status: Mapped[LabCaseStatus] = mapped_column(Enum(LabCaseStatus), default=LabCaseStatus.PENDING, nullable=False)
    cost: Mapped[Decimal | None] = mapped_column(Money, nullable=True)
    is_paid: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=now_utc, nullable=False)


class Document(Base):
    """Metadata of an uploaded file; the bytes live in external storage."""
    __tablename__ = "documents"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_uuid)
    organization_id: Mapped[str] = _org_fk()
    patient_id: Mapped[str] = mapped_column(ForeignKey("patients.id"), nullable=False, index=True)
    file_name: Mapped[str] = mapped_column(String(255), nullable=False)
    file_type: Mapped[str] = mapped_column(String(80), nullable=False)
    file_url: Mapped[str] = mapped_column(String(500), nullable=False)
    file_size: Mapped[int | None] = mapped_column(Integer, nullable=True)
    category: Mapped[str | None] = mapped_column(String(40), nullable=True)  # xray, photo, document, orthodontic
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    uploaded_by_id: Mapped[str | None] = mapped_column(String(36), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=now_utc, nullable=False)


class ActivityLog(Base):
    __tablename__ = "activity_log"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_uuid)
    organization_id: Mapped[str | None] = mapped_column(ForeignKey("organizations.id"), nullable=True, index=True)
    user_id: Mapped[str | None] = mapped_column(ForeignKey("users.id"), nullable=True)
    action: Mapped[str] = mapped_column(String(40), nullable=False)
    entity_type: Mapped[str] = mapped_column(String(40), nullable=False)
    entity_id: Mapped[str | None] = mapped_column(String(36), nullable=True)
    details: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=now_utc, nullable=False, index=True)


class AuditLog(Base):
    """Immutable trail of financial mutations (no update/delete path exists)."""
    __tablename__ = "audit_logs"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_uuid)
    organization_id: Mapped[str | None] = mapped_column(ForeignKey("organizations.id"), nullable=True, index=True)
    user_id: Mapped[str | None] = mapped_column(String(36), nullable=True, index=True)
    action: Mapped[str] = mapped_column(String(40), nullable=False)
    entity_type: Mapped[str] = mapped_column(String(40), nullable=False, index=True)
    entity_id: Mapped[str | None] = mapped_column(String(36), nullable=True, index=True)
    old_values: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    new_values: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    timestamp: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=now_utc, nullable=False, index=True)


class ClinicSettings(Base):
    __tablename__ = "clinic_settings"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    organization_id: Mapped[str] = mapped_column(ForeignKey("organizations.id"), nullable=False, unique=True)
    clinic_name: Mapped[str | None] = mapped_column(String(160), nullable=True)
    address: Mapped[str | None] = mapped_column(Text, nullable=True)
    phone: Mapped[str | None] = mapped_column(String(30), nullable=True)
    email: Mapped[str | None] = mapped_column(String(120), nullable=True)
    currency: Mapped[str] = mapped_column(String(3), default="USD", nullable=False)
    tax_rate: Mapped[Decimal] = mapped_column(Money, default=Decimal("0"), nullable=False)
    invoice_due_days: Mapped[int] = mapped_column(Integer, default=30, nullable=False)
    working_hours_start: Mapped[str] = mapped_column(String(5), default="09:00", nullable=False)
    working_hours_end: Mapped[str] = mapped_column(String(5), default="17:00", nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=now_utc, nullable=False)


class Notification(Base):
    __tablename__ = "notifications"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    organization_id: Mapped[str | None] = mapped_column(ForeignKey("organizations.id"), nullable=True, index=True)
    user_id: Mapped[str] = mapped_column(ForeignKey("users.id"), nullable=False, index=True)
    type: Mapped[NotificationType] = mapped_column(Enum(NotificationType), nullable=False)
    priority: Mapped[NotificationPriority] = mapped_column(
        Enum(NotificationPriority), default=NotificationPriority.MEDIUM, nullable=False
    )
    title: Mapped[str] = mapped_column(String(160), nullable=False)
    message: Mapped[str] = mapped_column(Text, nullable=False)
    related_entity_type: Mapped[str | None] = mapped_column(String(40), nullable=True)
    related_entity_id: Mapped[str | None] = mapped_column(String(36), nullable=True)
    extra: Mapped[dict | None] = mapped_column("metadata", JSON, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=now_utc, nullable=False)
    read_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class NotificationPreference(Base):
    __tablename__ = "notification_preferences"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(ForeignKey("users.id"), nullable=False, unique=True)
    password_reset_in_app: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    low_stock_in_app: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    appointment_reminder_in_app: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    security_alert_in_app: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)


TENANT_MODELS = (
    Patient,
    Treatment,
    PatientTreatment,
    Appointment,
    Invoice,
    InvoiceItem,
    Payment,
    PaymentPlan,
    PaymentPlanInstallment,
    InvoiceAdjustment,
    Expense,
    DoctorPayment,
    InsuranceClaim,
    InventoryItem,
    LabCase,
    Document,
    ActivityLog,
    AuditLog,
    ClinicSettings,
    Notification,
)

