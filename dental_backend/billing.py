from __future__ import annotations

import calendar
import enum
import logging
from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone
from decimal import ROUND_DOWN, Decimal
from typing import Any, Iterable

from sqlalchemy import and_, func, select

from .db import db_session
from .models import (
    AdjustmentType,
    AuditLog,
    ClinicSettings,
    DiscountType,
    DoctorPayment,
    DoctorPaymentType,
    Expense,
    ExpenseCategory,
    InsuranceClaim,
    InsuranceClaimStatus,
    Invoice,
    InvoiceAdjustment,
    InvoiceItem,
    InvoiceStatus,
    Patient,
    PatientTreatment,
    Payment,
    PaymentMethod,
    PaymentPlan,
    PaymentPlanInstallment,
    PaymentPlanStatus,
    User,
    UserRole,
)
from .scope import Scope, get_scoped, owner_id, scoped

logger = logging.getLogger(__name__)

CENT = Decimal("0.01")
ZERO = Decimal("0")

PLAN_FREQUENCIES = ("weekly", "biweekly", "monthly")

# adjustments lowering what the patient owes
_REDUCING_ADJUSTMENTS = (AdjustmentType.DISCOUNT, AdjustmentType.WRITE_OFF, AdjustmentType.REFUND)


def money(value: Any) -> Decimal:
    return Decimal(str(value if value is not None else 0)).quantize(CENT)


def _jsonable(value: Any) -> Any:
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, (date, datetime)):
        return value.isoformat()
    if isinstance(value, enum.Enum):
        return value.value
    return value


def _snapshot(obj: Any, fields: Iterable[str]) -> dict[str, Any]:
    return {f: _jsonable(getattr(obj, f)) for f in fields}


def _audit(
    s,
    scope: Scope,
    organization_id: str | None,
    action: str,
    entity_type: str,
    entity_id: str | None,
    old_values: dict[str, Any] | None = None,
    new_values: dict[str, Any] | None = None,
) -> None:
    s.add(
        AuditLog(
            organization_id=organization_id,
            user_id=scope.user_id,
            action=action,
            entity_type=entity_type,
            entity_id=entity_id,
            old_values=old_values,
            new_values=new_values,
        )
    )


def _next_number(s, model, column, organization_id: str, prefix: str, year: int) -> str:
    """
    Next free ``PREFIX-YYYY-NNNNN`` of an organization.
    Counts the year's rows, then skips forward past numbers already taken.
    """
    stem = f"{prefix}-{year}-"
    n = s.scalar(
        select(func.count()).select_from(model).where(
            and_(model.organization_id == organization_id, column.like(f"{stem}%"))
        )
    ) or 0
    while True:
        n += 1
        candidate = f"{stem}{n:05d}"
        taken = s.execute(
            select(model.id).where(and_(model.organization_id == organization_id, column == candidate))
        ).first()
        if taken is None:
            return candidate


def _settle_status(inv: Invoice) -> None:
    """Re-derive paid/partial/sent from the amounts; canceled invoices keep their status."""
    if inv.status is InvoiceStatus.CANCELED:
        return
    paid = money(inv.paid_amount)
    if paid >= money(inv.final_amount):
        inv.status = InvoiceStatus.PAID
    elif paid > 0:
        inv.status = InvoiceStatus.PARTIAL
    elif inv.status in (InvoiceStatus.PAID, InvoiceStatus.PARTIAL):
        inv.status = InvoiceStatus.SENT


def apply_discount(total: Decimal, discount_type: DiscountType | None, discount_value: Decimal | None) -> Decimal:
    """Amount after a percentage or fixed-value discount, never below zero."""
    total = money(total)
    if not discount_type or not discount_value:
        return total
    value = money(discount_value)
    if value < 0:
        raise ValueError("Discount cannot be negative.")
    if discount_type is DiscountType.PERCENTAGE:
        if value > 100:
            raise ValueError("Percentage discount cannot exceed 100.")
        return money(total - total * value / 100)
    return max(money(total - value), ZERO)


# =========================
# Invoices
# =========================
@dataclass(frozen=True)
class ItemIn:
    description: str
    unit_price: Decimal
    quantity: int = 1
    patient_treatment_id: str | None = None


_INVOICE_AUDIT_FIELDS = ("invoice_number", "status", "total_amount", "final_amount", "paid_amount", "due_date")


def get_invoice(scope: Scope, invoice_id: str) -> Invoice | None:
    with db_session() as s:
        return get_scoped(s, Invoice, invoice_id, scope)


def list_invoices(
    scope: Scope,
    patient_id: str | None = None,
    status: InvoiceStatus | None = None,
) -> list[Invoice]:
    with db_session() as s:
        q = scoped(select(Invoice), Invoice, scope)
        if patient_id:
            q = q.where(Invoice.patient_id == patient_id)
        if status is not None:
            q = q.where(Invoice.status == status)
        return list(s.scalars(q.order_by(Invoice.issued_date.desc(), Invoice.created_at.desc())))


def invoice_items(scope: Scope, invoice_id: str) -> list[InvoiceItem]:
    with db_session() as s:
        q = scoped(select(InvoiceItem), InvoiceItem, scope).where(InvoiceItem.invoice_id == invoice_id)
        return list(s.scalars(q))


def create_invoice(
    scope: Scope,
    patient_id: str,
    items: Iterable[ItemIn | dict[str, Any]],
    discount_type: DiscountType | None = None,
    discount_value: Decimal | None = None,
    issued_date: date | None = None,
    due_date: date | None = None,
    status: InvoiceStatus = InvoiceStatus.SENT,
    notes: str | None = None,
) -> Invoice:
    """
    Invoice from line items:
    - total_amount = sum of quantity * unit_price
    - final_amount = total after the invoice-level discount
    - number INV-YYYY-NNNNN, sequential inside the organization
    - due date defaults to the clinic's invoice_due_days
    """
    lines = [it if isinstance(it, ItemIn) else ItemIn(**it) for it in items]
    if not lines:
        raise ValueError("An invoice needs at least one item.")
    if status in (InvoiceStatus.PAID, InvoiceStatus.PARTIAL):
        raise ValueError("Payment status is set by recording payments.")

    issued_date = issued_date or date.today()
    with db_session() as s:
        patient = get_scoped(s, Patient, patient_id, scope)
        if not patient:
            raise ValueError("Patient not found.")
        org_id = patient.organization_id

        inv = Invoice(
            organization_id=org_id,
            invoice_number=_next_number(s, Invoice, Invoice.invoice_number, org_id, "INV", issued_date.year),
            patient_id=patient.id,
            total_amount=ZERO,
            final_amount=ZERO,
            paid_amount=ZERO,
            discount_type=discount_type,
            discount_value=money(discount_value) if discount_value is not None else None,
            status=status,
            issued_date=issued_date,
            due_date=due_date,
            notes=notes,
            created_by_id=scope.user_id,
        )

        total = ZERO
        for line in lines:
            if line.quantity < 1:
                raise ValueError("Item quantity must be at least 1.")
            if money(line.unit_price) < 0:
                raise ValueError("Item price cannot be negative.")
            if line.patient_treatment_id:
                pt = get_scoped(s, PatientTreatment, line.patient_treatment_id, scope)
                if not pt or pt.patient_id != patient.id:
                    raise ValueError("Treatment does not belong to this patient.")
            line_total = money(money(line.unit_price) * line.quantity)
            total += line_total
            inv.items.append(
                InvoiceItem(
                    organization_id=org_id,
                    patient_treatment_id=line.patient_treatment_id,
                    description=line.description,
                    quantity=line.quantity,
                    unit_price=money(line.unit_price),
                    total_price=line_total,
                )
            )

        inv.total_amount = money(total)
        inv.final_amount = apply_discount(total, discount_type, discount_value)

        if inv.due_date is None:
            cs = s.execute(
                select(ClinicSettings).where(ClinicSettings.organization_id == org_id)
            ).scalar_one_or_none()
            inv.due_date = issued_date + timedelta(days=cs.invoice_due_days if cs else 30)

        s.add(inv)
        s.flush()
        _audit(s, scope, org_id, "create", "invoice", inv.id, new_values=_snapshot(inv, _INVOICE_AUDIT_FIELDS))
        logger.info("Invoice %s issued for %s (%s)", inv.invoice_number, patient.full_name, inv.final_amount)
        return inv


def update_invoice(scope: Scope, invoice_id: str, **fields) -> Invoice | None:
    """Only the bookkeeping fields change here; amounts move through payments and adjustments."""
    allowed = {"status", "issued_date", "due_date", "notes"}
    unknown = set(fields) - allowed
    if unknown:
        raise ValueError(f"Cannot update: {', '.join(sorted(unknown))}")

    with db_session() as s:
        inv = get_scoped(s, Invoice, invoice_id, scope)
        if not inv:
            return None
        before = _snapshot(inv, _INVOICE_AUDIT_FIELDS)

        new_status = fields.pop("status", None)
        for key, value in fields.items():
            setattr(inv, key, value)

        if new_status is not None and new_status is not inv.status:
            if new_status in (InvoiceStatus.PAID, InvoiceStatus.PARTIAL):
                raise ValueError("Payment status is set by recording payments.")
            if new_status is InvoiceStatus.CANCELED and money(inv.paid_amount) > 0:
                raise ValueError("Refund the payments before canceling the invoice.")
            if inv.status is InvoiceStatus.CANCELED:
                raise ValueError("A canceled invoice cannot be reopened.")
            inv.status = new_status

        _audit(s, scope, inv.organization_id, "update", "invoice", inv.id, before, _snapshot(inv, _INVOICE_AUDIT_FIELDS))
        return inv


def mark_overdue_invoices(scope: Scope, as_of: date | None = None) -> int:
    """Flag sent/partial invoices past their due date."""
    as_of = as_of or date.today()
    with db_session() as s:
        q = scoped(select(Invoice), Invoice, scope).where(
            and_(
                Invoice.status.in_((InvoiceStatus.SENT, InvoiceStatus.PARTIAL)),
                Invoice.due_date.is_not(None),
                Invoice.due_date < as_of,
            )
        )
        n = 0
        for inv in s.scalars(q):
            inv.status = InvoiceStatus.OVERDUE
            n += 1
        if n:
            logger.info("Marked %d invoice(s) overdue", n)
        return n


# =========================
# Payments
# =========================
_PAYMENT_AUDIT_FIELDS = ("invoice_id", "amount", "payment_date", "payment_method", "is_refunded")


def get_payment(scope: Scope, payment_id: str) -> Payment | None:
    with db_session() as s:
        return get_scoped(s, Payment, payment_id, scope)


def list_payments(scope: Scope, invoice_id: str | None = None) -> list[Payment]:
    with db_session() as s:
        q = scoped(select(Payment), Payment, scope)
        if invoice_id:
            q = q.where(Payment.invoice_id == invoice_id)
        return list(s.scalars(q.order_by(Payment.payment_date.desc(), Payment.created_at.desc())))


def _complete_plan_if_paid(plan: PaymentPlan) -> None:
    if plan.status is PaymentPlanStatus.ACTIVE and plan.installments and all(i.is_paid for i in plan.installments):
        plan.status = PaymentPlanStatus.COMPLETED
        logger.info("Payment plan %s completed", plan.id)


def record_payment(
    scope: Scope,
    invoice_id: str,
    amount: Decimal,
    payment_method: PaymentMethod,
    payment_date: date | None = None,
    reference_number: str | None = None,
    notes: str | None = None,
    payment_plan_installment_id: str | None = None,
) -> Payment:
    amount = money(amount)
    if amount <= 0:
        raise ValueError("Payment amount must be positive.")

    with db_session() as s:
        inv = get_scoped(s, Invoice, invoice_id, scope)
        if not inv:
            raise ValueError("Invoice not found.")
        if inv.status is InvoiceStatus.CANCELED:
            raise ValueError("Cannot record a payment on a canceled invoice.")
        if amount > money(inv.balance):
            raise ValueError(f"Payment exceeds the outstanding balance of {money(inv.balance)}.")

        inst = None
        if payment_plan_installment_id:
            inst = get_scoped(s, PaymentPlanInstallment, payment_plan_installment_id, scope)
            if not inst or inst.plan.invoice_id != inv.id:
                raise ValueError("Installment does not belong to this invoice.")
            if inst.plan.status is not PaymentPlanStatus.ACTIVE:
                raise ValueError("Payment plan is not active.")

        p = Payment(
            organization_id=inv.organization_id,
            invoice_id=inv.id,
            payment_plan_installment_id=payment_plan_installment_id,
            amount=amount,
            payment_date=payment_date or date.today(),
            payment_method=payment_method,
            reference_number=reference_number,
            notes=notes,
            created_by_id=scope.user_id,
        )
        s.add(p)

        before = _snapshot(inv, _INVOICE_AUDIT_FIELDS)
        inv.paid_amount = money(inv.paid_amount) + amount
        _settle_status(inv)

        if inst is not None:
            inst.paid_amount = money(inst.paid_amount) + amount
            inst.is_paid = inst.paid_amount >= money(inst.amount)
            inst.paid_date = p.payment_date if inst.is_paid else None
            _complete_plan_if_paid(inst.plan)

        s.flush()
        _audit(s, scope, inv.organization_id, "create", "payment", p.id, new_values=_snapshot(p, _PAYMENT_AUDIT_FIELDS))
        _audit(s, scope, inv.organization_id, "update", "invoice", inv.id, before, _snapshot(inv, _INVOICE_AUDIT_FIELDS))
        logger.info("Payment of %s on %s (%s)", amount, inv.invoice_number, inv.status.value)
        return p


def refund_payment(scope: Scope, payment_id: str, reason: str) -> Payment | None:
    """
    Refund a whole payment, once.
    The invoice's paid amount drops (never below zero) and its status is re-derived;
    a linked installment is reopened.
    """
    if not reason or not reason.strip():
        raise ValueError("A refund reason is required.")

    with db_session() as s:
        p = get_scoped(s, Payment, payment_id, scope)
        if not p:
            return None
        if p.is_refunded:
            raise ValueError("Payment was already refunded.")

        p.is_refunded = True
        p.refunded_at = datetime.now(timezone.utc)
        p.refund_reason = reason.strip()

        inv = s.get(Invoice, p.invoice_id)
        before = _snapshot(inv, _INVOICE_AUDIT_FIELDS)
        inv.paid_amount = max(money(inv.paid_amount) - money(p.amount), ZERO)
        _settle_status(inv)

        if p.payment_plan_installment_id:
            inst = s.get(PaymentPlanInstallment, p.payment_plan_installment_id)
            if inst is not None:
                inst.paid_amount = max(money(inst.paid_amount) - money(p.amount), ZERO)
                inst.is_paid = inst.paid_amount >= money(inst.amount)
                if not inst.is_paid:
                    inst.paid_date = None
                    if inst.plan.status is PaymentPlanStatus.COMPLETED:
                        inst.plan.status = PaymentPlanStatus.ACTIVE

        _audit(
            s, scope, p.organization_id, "refund", "payment", p.id,
            {"is_refunded": False}, {"is_refunded": True, "refund_reason": p.refund_reason},
        )
        _audit(s, scope, inv.organization_id, "update", "invoice", inv.id, before, _snapshot(inv, _INVOICE_AUDIT_FIELDS))
        logger.info("Refunded payment %s (%s) on %s", p.id, p.amount, inv.invoice_number)
        return p


# =========================
# Payment plans
# =========================
def _add_months(d: date, months: int) -> date:
    month_index = d.month - 1 + months
    year, month = d.year + month_index // 12, month_index % 12 + 1
    return date(year, month, min(d.day, calendar.monthrange(year, month)[1]))


def installment_due_date(start: date, frequency: str, index: int) -> date:
    if frequency == "weekly":
        return start + timedelta(weeks=index)
    if frequency == "biweekly":
        return start + timedelta(weeks=2 * index)
    if frequency == "monthly":
        return _add_months(start, index)
    raise ValueError(f"Unknown frequency: {frequency}")


def split_installments(financed: Decimal, count: int) -> list[Decimal]:
    """Equal cents-rounded installments; the last one absorbs the remainder."""
    financed = money(financed)
    if financed < CENT * count:
        raise ValueError(f"{financed} cannot be split into {count} installments of at least {CENT}.")
    base = (financed / count).quantize(CENT, rounding=ROUND_DOWN)
    return [base] * (count - 1) + [financed - base * (count - 1)]


def get_payment_plan(scope: Scope, plan_id: str) -> PaymentPlan | None:
    with db_session() as s:
        return get_scoped(s, PaymentPlan, plan_id, scope)


def list_payment_plans(
    scope: Scope,
    invoice_id: str | None = None,
    patient_id: str | None = None,
    status: PaymentPlanStatus | None = None,
) -> list[PaymentPlan]:
    with db_session() as s:
        q = scoped(select(PaymentPlan), PaymentPlan, scope)
        if invoice_id:
            q = q.where(PaymentPlan.invoice_id == invoice_id)
        if patient_id:
            q = q.where(PaymentPlan.patient_id == patient_id)
        if status is not None:
            q = q.where(PaymentPlan.status == status)
        return list(s.scalars(q.order_by(PaymentPlan.created_at.desc())))


def create_payment_plan(
    scope: Scope,
    invoice_id: str,
    number_of_installments: int,
    frequency: str,
    start_date: date,
    down_payment: Decimal = ZERO,
    notes: str | None = None,
) -> PaymentPlan:
    """
    Spread an invoice's open balance over installments.
    The down payment is paid outside the plan; installments cover the rest.
    """
    if number_of_installments < 1:
        raise ValueError("A plan needs at least one installment.")
    if frequency not in PLAN_FREQUENCIES:
        raise ValueError(f"Frequency must be one of: {', '.join(PLAN_FREQUENCIES)}")
    down_payment = money(down_payment)
    if down_payment < 0:
        raise ValueError("Down payment cannot be negative.")

    with db_session() as s:
        inv = get_scoped(s, Invoice, invoice_id, scope)
        if not inv:
            raise ValueError("Invoice not found.")
        if inv.status is InvoiceStatus.CANCELED:
            raise ValueError("Cannot finance a canceled invoice.")
        active = s.execute(
            select(PaymentPlan.id).where(
                and_(PaymentPlan.invoice_id == inv.id, PaymentPlan.status == PaymentPlanStatus.ACTIVE)
            )
        ).first()
        if active is not None:
            raise ValueError("Invoice already has an active payment plan.")

        total = money(inv.balance)
        financed = total - down_payment
        if financed <= 0:
            raise ValueError("Nothing left to finance after the down payment.")

        amounts = split_installments(financed, number_of_installments)
        plan = PaymentPlan(
            organization_id=inv.organization_id,
            invoice_id=inv.id,
            patient_id=inv.patient_id,
            total_amount=total,
            down_payment=down_payment,
            number_of_installments=number_of_installments,
            installment_amount=amounts[0],
            frequency=frequency,
            start_date=start_date,
            notes=notes,
            created_by_id=scope.user_id,
        )
        for i, amount in enumerate(amounts):
            plan.installments.append(
                PaymentPlanInstallment(
                    organization_id=inv.organization_id,
                    installment_number=i + 1,
                    due_date=installment_due_date(start_date, frequency, i),
                    amount=amount,
                    paid_amount=ZERO,
                )
            )
        s.add(plan)
        s.flush()
        _audit(
            s, scope, plan.organization_id, "create", "payment_plan", plan.id,
            new_values={"invoice_id": inv.id, "financed": str(financed), "installments": number_of_installments},
        )
        logger.info("Payment plan %s: %d x %s %s", plan.id, number_of_installments, amounts[0], frequency)
        return plan


def cancel_payment_plan(scope: Scope, plan_id: str) -> PaymentPlan | None:
    with db_session() as s:
        plan = get_scoped(s, PaymentPlan, plan_id, scope)
        if not plan:
            return None
        if plan.status is not PaymentPlanStatus.ACTIVE:
            raise ValueError(f"Plan is {plan.status.value}.")
        plan.status = PaymentPlanStatus.CANCELED
        _audit(s, scope, plan.organization_id, "cancel", "payment_plan", plan.id, {"status": "active"}, {"status": "canceled"})
        return plan


# =========================
# Adjustments
# =========================
def list_adjustments(scope: Scope, invoice_id: str) -> list[InvoiceAdjustment]:
    with db_session() as s:
        q = scoped(select(InvoiceAdjustment), InvoiceAdjustment, scope).where(
            InvoiceAdjustment.invoice_id == invoice_id
        )
        return list(s.scalars(q.order_by(InvoiceAdjustment.applied_date.desc())))


def create_adjustment(
    scope: Scope,
    invoice_id: str,
    adjustment_type: AdjustmentType,
    amount: Decimal,
    reason: str,
    applied_date: date | None = None,
) -> InvoiceAdjustment:
    """
    discount / write_off / refund: lower the final amount (not below zero)
    fee: raise it
    correction: add the signed amount
    """
    amount = money(amount)
    if adjustment_type is AdjustmentType.CORRECTION:
        if amount == 0:
            raise ValueError("Correction amount cannot be zero.")
    elif amount <= 0:
        raise ValueError("Adjustment amount must be positive.")
    if not reason or not reason.strip():
        raise ValueError("A reason is required.")

    with db_session() as s:
        inv = get_scoped(s, Invoice, invoice_id, scope)
        if not inv:
            raise ValueError("Invoice not found.")
        if inv.status is InvoiceStatus.CANCELED:
            raise ValueError("Cannot adjust a canceled invoice.")

        before = _snapshot(inv, _INVOICE_AUDIT_FIELDS)
        current = money(inv.final_amount)
        if adjustment_type in _REDUCING_ADJUSTMENTS:
            new_final = max(current - amount, ZERO)
        else:
            new_final = current + amount
        if new_final < 0:
            raise ValueError("Correction would make the invoice negative.")

        adj = InvoiceAdjustment(
            organization_id=inv.organization_id,
            invoice_id=inv.id,
            type=adjustment_type,
            amount=amount,
            reason=reason.strip(),
            applied_date=applied_date or date.today(),
            created_by_id=scope.user_id,
        )
        s.add(adj)
        inv.final_amount = new_final
        _settle_status(inv)
        s.flush()

        _audit(
            s, scope, inv.organization_id, "create", "invoice_adjustment", adj.id,
            new_values={"type": adjustment_type.value, "amount": str(amount), "reason": adj.reason},
        )
        _audit(s, scope, inv.organization_id, "update", "invoice", inv.id, before, _snapshot(inv, _INVOICE_AUDIT_FIELDS))
        logger.info("%s of %s on %s (final %s)", adjustment_type.value, amount, inv.invoice_number, new_final)
        return adj


# =========================
# Expenses
# =========================
_EXPENSE_AUDIT_FIELDS = ("description", "category", "amount", "expense_date", "vendor")


def get_expense(scope: Scope, expense_id: str) -> Expense | None:
    with db_session() as s:
        return get_scoped(s, Expense, expense_id, scope)


def list_expenses(
    scope: Scope,
    category: ExpenseCategory | None = None,
    start: date | None = None,
    end: date | None = None,
) -> list[Expense]:
    with db_session() as s:
        q = scoped(select(Expense), Expense, scope)
        if category is not None:
            q = q.where(Expense.category == category)
        if start is not None:
            q = q.where(Expense.expense_date >= start)
        if end is not None:
            q = q.where(Expense.expense_date <= end)
        return list(s.scalars(q.order_by(Expense.expense_date.desc())))


def create_expense(
    scope: Scope,
    description: str,
    category: ExpenseCategory,
    amount: Decimal,
    expense_date: date,
    organization_id: str | None = None,
    **fields,
) -> Expense:
    if money(amount) <= 0:
        raise ValueError("Expense amount must be positive.")

    with db_session() as s:
        e = Expense(
            organization_id=owner_id(scope, organization_id),
            description=description.strip(),
            category=category,
            amount=money(amount),
            expense_date=expense_date,
            created_by_id=scope.user_id,
            **fields,
        )
        s.add(e)
        s.flush()
        _audit(s, scope, e.organization_id, "create", "expense", e.id, new_values=_snapshot(e, _EXPENSE_AUDIT_FIELDS))
        return e


def update_expense(scope: Scope, expense_id: str, **fields) -> Expense | None:
    if "amount" in fields and fields["amount"] is not None and money(fields["amount"]) <= 0:
        raise ValueError("Expense amount must be positive.")

    with db_session() as s:
        e = get_scoped(s, Expense, expense_id, scope)
        if not e:
            return None
        before = _snapshot(e, _EXPENSE_AUDIT_FIELDS)
        for key, value in fields.items():
            if key in ("id", "organization_id", "created_by_id"):
                continue
            setattr(e, key, value)
        _audit(s, scope, e.organization_id, "update", "expense", e.id, before, _snapshot(e, _EXPENSE_AUDIT_FIELDS))
        return e


def delete_expense(scope: Scope, expense_id: str) -> bool:
    with db_session() as s:
        e = get_scoped(s, Expense, expense_id, scope)
        if not e:
            return False
        _audit(s, scope, e.organization_id, "delete", "expense", e.id, old_values=_snapshot(e, _EXPENSE_AUDIT_FIELDS))
        s.delete(e)
        return True


# =========================
# Doctor payments
# =========================
_DOCTOR_PAYMENT_AUDIT_FIELDS = ("doctor_id", "amount", "payment_type", "payment_date")


def signed_amount(dp: DoctorPayment) -> Decimal:
    """Deductions reduce what the clinic paid out."""
    amount = money(dp.amount)
    return -amount if dp.payment_type is DoctorPaymentType.DEDUCTION else amount


def get_doctor_payment(scope: Scope, payment_id: str) -> DoctorPayment | None:
    with db_session() as s:
        return get_scoped(s, DoctorPayment, payment_id, scope)


def list_doctor_payments(
    scope: Scope,
    doctor_id: str | None = None,
    payment_type: DoctorPaymentType | None = None,
    start: date | None = None,
    end: date | None = None,
) -> list[DoctorPayment]:
    with db_session() as s:
        q = scoped(select(DoctorPayment), DoctorPayment, scope)
        if doctor_id:
            q = q.where(DoctorPayment.doctor_id == doctor_id)
        if payment_type is not None:
            q = q.where(DoctorPayment.payment_type == payment_type)
        if start is not None:
            q = q.where(DoctorPayment.payment_date >= start)
        if end is not None:
            q = q.where(DoctorPayment.payment_date <= end)
        return list(s.scalars(q.order_by(DoctorPayment.payment_date.desc())))


def create_doctor_payment(
    scope: Scope,
    doctor_id: str,
    amount: Decimal,
    payment_type: DoctorPaymentType,
    payment_method: PaymentMethod,
    payment_date: date,
    **fields,
) -> DoctorPayment:
    if money(amount) <= 0:
        raise ValueError("Amount must be positive; use a deduction to subtract.")

    with db_session() as s:
        doctor = get_scoped(s, User, doctor_id, scope)
        if not doctor or doctor.role is not UserRole.DOCTOR:
            raise ValueError("Doctor not found.")
        start, end = fields.get("payment_period_start"), fields.get("payment_period_end")
        if start and end and end < start:
            raise ValueError("Payment period ends before it starts.")

        dp = DoctorPayment(
            organization_id=doctor.organization_id,
            doctor_id=doctor.id,
            amount=money(amount),
            payment_type=payment_type,
            payment_method=payment_method,
            payment_date=payment_date,
            created_by_id=scope.user_id,
            **fields,
        )
        s.add(dp)
        s.flush()
        _audit(
            s, scope, dp.organization_id, "create", "doctor_payment", dp.id,
            new_values=_snapshot(dp, _DOCTOR_PAYMENT_AUDIT_FIELDS),
        )
        logger.info("%s of %s to %s", payment_type.value, dp.amount, doctor.full_name)
        return dp


def update_doctor_payment(scope: Scope, payment_id: str, **fields) -> DoctorPayment | None:
    if "amount" in fields and fields["amount"] is not None and money(fields["amount"]) <= 0:
        raise ValueError("Amount must be positive; use a deduction to subtract.")

    with db_session() as s:
        dp = get_scoped(s, DoctorPayment, payment_id, scope)
        if not dp:
            return None
        before = _snapshot(dp, _DOCTOR_PAYMENT_AUDIT_FIELDS)
        for key, value in fields.items():
            if key in ("id", "organization_id", "doctor_id", "created_by_id"):
                continue
            setattr(dp, key, value)
        _audit(
            s, scope, dp.organization_id, "update", "doctor_payment", dp.id,
            before, _snapshot(dp, _DOCTOR_PAYMENT_AUDIT_FIELDS),
        )
        return dp


def delete_doctor_payment(scope: Scope, payment_id: str) -> bool:
    with db_session() as s:
        dp = get_scoped(s, DoctorPayment, payment_id, scope)
        if not dp:
            return False
        _audit(
            s, scope, dp.organization_id, "delete", "doctor_payment", dp.id,
            old_values=_snapshot(dp, _DOCTOR_PAYMENT_AUDIT_FIELDS),
        )
        s.delete(dp)
        return True


# =========================
# Insurance claims
# =========================
_CLAIM_AUDIT_FIELDS = ("claim_number", "status", "claim_amount", "approved_amount", "paid_amount")


def generate_claim_number(scope: Scope, year: int | None = None, organization_id: str | None = None) -> str:
    org_id = owner_id(scope, organization_id)
    with db_session() as s:
        return _next_number(s, InsuranceClaim, InsuranceClaim.claim_number, org_id, "CLM", year or date.today().year)


def get_insurance_claim(scope: Scope, claim_id: str) -> InsuranceClaim | None:
    with db_session() as s:
        return get_scoped(s, InsuranceClaim, claim_id, scope)


def list_insurance_claims(
    scope: Scope,
    status: InsuranceClaimStatus | None = None,
    patient_id: str | None = None,
) -> list[InsuranceClaim]:
    with db_session() as s:
        q = scoped(select(InsuranceClaim), InsuranceClaim, scope)
        if status is not None:
            q = q.where(InsuranceClaim.status == status)
        if patient_id:
            q = q.where(InsuranceClaim.patient_id == patient_id)
        return list(s.scalars(q.order_by(InsuranceClaim.created_at.desc())))


def _stamp_claim_dates(claim: InsuranceClaim) -> None:
    today = date.today()
    if claim.status is InsuranceClaimStatus.SUBMITTED and claim.submitted_date is None:
        claim.submitted_date = today
    if claim.status in (
        InsuranceClaimStatus.APPROVED, InsuranceClaimStatus.DENIED, InsuranceClaimStatus.PAID
    ) and claim.processed_date is None:
        claim.processed_date = today


def create_insurance_claim(
    scope: Scope,
    patient_id: str,
    insurance_provider: str,
    policy_number: str,
    claim_amount: Decimal,
    invoice_id: str | None = None,
    **fields,
) -> InsuranceClaim:
    if money(claim_amount) <= 0:
        raise ValueError("Claim amount must be positive.")

    with db_session() as s:
        patient = get_scoped(s, Patient, patient_id, scope)
        if not patient:
            raise ValueError("Patient not found.")
        if invoice_id:
            inv = get_scoped(s, Invoice, invoice_id, scope)
            if not inv or inv.patient_id != patient.id:
                raise ValueError("Invoice does not belong to this patient.")

        org_id = patient.organization_id
        claim = InsuranceClaim(
            organization_id=org_id,
            claim_number=_next_number(s, InsuranceClaim, InsuranceClaim.claim_number, org_id, "CLM", date.today().year),
            patient_id=patient.id,
            invoice_id=invoice_id,
            insurance_provider=insurance_provider,
            policy_number=policy_number,
            claim_amount=money(claim_amount),
            created_by_id=scope.user_id,
            **fields,
        )
        if claim.status is None:
            claim.status = InsuranceClaimStatus.DRAFT
        _stamp_claim_dates(claim)
        s.add(claim)
        s.flush()
        _audit(s, scope, org_id, "create", "insurance_claim", claim.id, new_values=_snapshot(claim, _CLAIM_AUDIT_FIELDS))
        logger.info("Claim %s filed with %s", claim.claim_number, insurance_provider)
        return claim


def update_insurance_claim(scope: Scope, claim_id: str, **fields) -> InsuranceClaim | None:
    with db_session() as s:
        claim = get_scoped(s, InsuranceClaim, claim_id, scope)
        if not claim:
            return None
        before = _snapshot(claim, _CLAIM_AUDIT_FIELDS)
        for key, value in fields.items():
            if key in ("id", "organization_id", "claim_number", "patient_id", "created_by_id"):
                continue
            setattr(claim, key, value)
        if claim.status is InsuranceClaimStatus.DENIED and not claim.denial_reason:
            raise ValueError("A denied claim needs a denial reason.")
        _stamp_claim_dates(claim)
        _audit(s, scope, claim.organization_id, "update", "insurance_claim", claim.id, before, _snapshot(claim, _CLAIM_AUDIT_FIELDS))
        return claim


def delete_insurance_claim(scope: Scope, claim_id: str) -> bool:
    with db_session() as s:
        claim = get_scoped(s, InsuranceClaim, claim_id, scope)
        if not claim:
            return False
        _audit(s, scope, claim.organization_id, "delete", "insurance_claim", claim.id, old_values=_snapshot(claim, _CLAIM_AUDIT_FIELDS))
        s.delete(claim)
        return True


# =========================
# Audit log
# =========================
def list_audit_logs(
    scope: Scope,
    entity_type: str | None = None,
    entity_id: str | None = None,
    user_id: str | None = None,
    limit: int = 100,
) -> list[AuditLog]:
    with db_session() as s:
        q = scoped(select(AuditLog), AuditLog, scope)
        if entity_type:
            q = q.where(AuditLog.entity_type == entity_type)
        if entity_id:
            q = q.where(AuditLog.entity_id == entity_id)
        if user_id:
            q = q.where(AuditLog.user_id == user_id)
        return list(s.scalars(q.order_by(AuditLog.timestamp.desc()).limit(limit)))
