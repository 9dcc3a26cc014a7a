"""
Financial reports.

Accrual figures come from invoices (issued date), cash figures from
non-refunded payments (payment date). Rows are fetched scoped to the
caller's clinic and aggregated in Python so month bucketing behaves the
same on SQLite and PostgreSQL. Date ranges are inclusive.
"""
from __future__ import annotations

import logging
from collections import defaultdict
from datetime import date
from decimal import Decimal
from typing import Any

from sqlalchemy import and_, select

from .billing import ZERO, apply_discount, money, signed_amount
from .db import db_session
from .models import (
    OPEN_INVOICE_STATUSES,
    DoctorPayment,
    Expense,
    Invoice,
    InvoiceAdjustment,
    InvoiceItem,
    InvoiceStatus,
    LabCase,
    Patient,
    PatientTreatment,
    Payment,
    TreatmentStatus,
    User,
)
from .scope import Scope, get_scoped, scoped

logger = logging.getLogger(__name__)

AGING_BUCKETS = ("current", "thirty_days", "sixty_days", "ninety_days", "over_ninety")


def _month(d: date) -> str:
    return d.strftime("%Y-%m")


def _check_range(start: date, end: date) -> None:
    if start > end:
        raise ValueError("Start date must not be after end date.")


def _pct(part: Decimal, whole: Decimal) -> Decimal:
    if whole == 0:
        return Decimal("0.00")
    return money(part / whole * 100)


# =========================
# Row loaders
# =========================
def _invoices_issued(s, scope: Scope, start: date, end: date) -> list[Invoice]:
    q = scoped(select(Invoice), Invoice, scope).where(
        and_(
            Invoice.issued_date >= start,
            Invoice.issued_date <= end,
            Invoice.status != InvoiceStatus.CANCELED,
        )
    )
    return list(s.scalars(q))


def _collections(s, scope: Scope, start: date, end: date) -> list[tuple[date, Decimal]]:
    q = scoped(select(Payment.payment_date, Payment.amount), Payment, scope).where(
        and_(
            Payment.payment_date >= start,
            Payment.payment_date <= end,
            Payment.is_refunded.is_(False),
        )
    )
    return [(r.payment_date, money(r.amount)) for r in s.execute(q)]


def _expenses(s, scope: Scope, start: date, end: date) -> list[Expense]:
    q = scoped(select(Expense), Expense, scope).where(
        and_(Expense.expense_date >= start, Expense.expense_date <= end)
    )
    return list(s.scalars(q))


def _completed_treatments(s, scope: Scope, start: date, end: date, doctor_id: str | None = None):
    """Completed treatments in range with a doctor, joined with the patient name."""
    q = (
        scoped(select(PatientTreatment, Patient.first_name, Patient.last_name), PatientTreatment, scope)
        .join(Patient, Patient.id == PatientTreatment.patient_id)
        .where(
            and_(
                PatientTreatment.status == TreatmentStatus.COMPLETED,
                PatientTreatment.completion_date >= start,
                PatientTreatment.completion_date <= end,
                PatientTreatment.doctor_id.is_not(None),
            )
        )
    )
    if doctor_id:
        q = q.where(PatientTreatment.doctor_id == doctor_id)
    return s.execute(q).unique().all()


def net_production(pt: PatientTreatment) -> Decimal:
    """Treatment price after its own discount."""
    return apply_discount(pt.price, pt.discount_type, pt.discount_value)


# =========================
# Revenue (accrual vs cash)
# =========================
def revenue_report(scope: Scope, start: date, end: date) -> dict[str, Any]:
    _check_range(start, end)
    months: dict[str, dict[str, Decimal]] = defaultdict(lambda: {"revenue": ZERO, "collections": ZERO})

    with db_session() as s:
        total_revenue = ZERO
        for inv in _invoices_issued(s, scope, start, end):
            amount = money(inv.final_amount)
            total_revenue += amount
            months[_month(inv.issued_date)]["revenue"] += amount

        total_collections = ZERO
        for paid_on, amount in _collections(s, scope, start, end):
            total_collections += amount
            months[_month(paid_on)]["collections"] += amount

        adj_q = scoped(select(InvoiceAdjustment.amount), InvoiceAdjustment, scope).where(
            and_(InvoiceAdjustment.applied_date >= start, InvoiceAdjustment.applied_date <= end)
        )
        total_adjustments = sum((money(a) for a in s.scalars(adj_q)), ZERO)

    return {
        "start": start,
        "end": end,
        "total_revenue": total_revenue,
        "total_collections": total_collections,
        "total_adjustments": total_adjustments,
        "by_month": [{"month": m, **months[m]} for m in sorted(months)],
    }


# =========================
# Accounts receivable aging
# =========================
def aging_bucket(days_past_due: int) -> str:
    if days_past_due <= 30:
        return "current"
    if days_past_due <= 60:
        return "thirty_days"
    if days_past_due <= 90:
        return "sixty_days"
    # ninety_days is never filled; anything past 90 days is over_ninety
    return "over_ninety"


def ar_aging_report(scope: Scope, as_of: date | None = None) -> dict[str, Any]:
    """
    Open balances (sent, partial, overdue invoices) by days past due.
    Invoices without a due date age from their issue date.
    """
    as_of = as_of or date.today()
    buckets = {name: ZERO for name in AGING_BUCKETS}
    count = 0

    with db_session() as s:
        q = scoped(select(Invoice), Invoice, scope).where(Invoice.status.in_(OPEN_INVOICE_STATUSES))
        for inv in s.scalars(q):
            balance = money(inv.balance)
            if balance <= 0:
                continue
            reference = inv.due_date or inv.issued_date
            buckets[aging_bucket((as_of - reference).days)] += balance
            count += 1

    return {
        "as_of": as_of,
        **buckets,
        "total": sum(buckets.values(), ZERO),
        "invoice_count": count,
    }


# =========================
# Production
# =========================
def _production_summary(rows) -> dict[str, Any]:
    total = ZERO
    patients: set[str] = set()
    breakdown: dict[str, dict[str, Any]] = {}
    for pt, _first, _last in rows:
        value = net_production(pt)
        total += value
        patients.add(pt.patient_id)
        name = pt.treatment.name if pt.treatment else "Unknown"
        entry = breakdown.setdefault(name, {"treatment_name": name, "count": 0, "production": ZERO})
        entry["count"] += 1
        entry["production"] += value

    return {
        "total_production": total,
        "treatment_count": len(rows),
        "patient_count": len(patients),
        "avg_production_per_patient": money(total / len(patients)) if patients else ZERO,
        "treatment_breakdown": sorted(breakdown.values(), key=lambda e: e["production"], reverse=True),
    }


def production_by_doctor_report(scope: Scope, start: date, end: date) -> list[dict[str, Any]]:
    """Production of completed treatments per doctor, highest first."""
    _check_range(start, end)
    with db_session() as s:
        by_doctor: dict[str, list] = defaultdict(list)
        for row in _completed_treatments(s, scope, start, end):
            by_doctor[row[0].doctor_id].append(row)

        names = {}
        if by_doctor:
            for u in s.scalars(scoped(select(User), User, scope).where(User.id.in_(list(by_doctor)))):
                names[u.id] = u.full_name

    report = [
        {"doctor_id": doctor_id, "doctor_name": names.get(doctor_id, "Unknown"), **_production_summary(rows)}
        for doctor_id, rows in by_doctor.items()
    ]
    return sorted(report, key=lambda r: r["total_production"], reverse=True)


def doctor_report(scope: Scope, doctor_id: str, start: date, end: date) -> dict[str, Any] | None:
    """
    One doctor's production and what was collected for it.
    An invoice line linked to one of the doctor's treatments counts as collected
    in the proportion its invoice has been paid.
    """
    _check_range(start, end)
    with db_session() as s:
        doctor = get_scoped(s, User, doctor_id, scope)
        if not doctor:
            return None

        rows = _completed_treatments(s, scope, start, end, doctor_id=doctor.id)
        summary = _production_summary(rows)

        per_patient: dict[str, dict[str, Any]] = {}
        per_month: dict[str, dict[str, Any]] = defaultdict(lambda: {"production": ZERO, "treatment_count": 0})
        for pt, first, last in rows:
            value = net_production(pt)
            entry = per_patient.setdefault(
                pt.patient_id,
                {"patient_id": pt.patient_id, "patient_name": f"{first} {last}", "treatment_count": 0, "production": ZERO},
            )
            entry["treatment_count"] += 1
            entry["production"] += value
            per_month[_month(pt.completion_date)]["production"] += value
            per_month[_month(pt.completion_date)]["treatment_count"] += 1

        collected = ZERO
        treatment_ids = [pt.id for pt, _f, _l in rows]
        if treatment_ids:
            q = (
                select(InvoiceItem.total_price, Invoice.paid_amount, Invoice.final_amount)
                .join(Invoice, Invoice.id == InvoiceItem.invoice_id)
                .where(
                    and_(
                        InvoiceItem.patient_treatment_id.in_(treatment_ids),
                        Invoice.status != InvoiceStatus.CANCELED,
                    )
                )
            )
            for line_total, paid, final in s.execute(q):
                final = money(final)
                if final > 0:
                    collected += money(line_total) * min(money(paid) / final, Decimal("1"))
        doctor_name = doctor.full_name

    return {
        "doctor_id": doctor_id,
        "doctor_name": doctor_name,
        "start": start,
        "end": end,
        **summary,
        "total_collected": money(collected),
        "patients": sorted(per_patient.values(), key=lambda e: e["production"], reverse=True),
        "by_month": [{"month": m, **per_month[m]} for m in sorted(per_month)],
    }


# =========================
# Expenses and profit
# =========================
def expense_report(scope: Scope, start: date, end: date) -> dict[str, Any]:
    _check_range(start, end)
    by_category: dict[str, Decimal] = defaultdict(lambda: ZERO)
    by_month: dict[str, Decimal] = defaultdict(lambda: ZERO)

    with db_session() as s:
        for e in _expenses(s, scope, start, end):
            amount = money(e.amount)
            by_category[e.category.value] += amount
            by_month[_month(e.expense_date)] += amount

    return {
        "start": start,
        "end": end,
        "total": sum(by_category.values(), ZERO),
        "by_category": [
            {"category": c, "amount": a} for c, a in sorted(by_category.items(), key=lambda kv: kv[1], reverse=True)
        ],
        "by_month": [{"month": m, "amount": by_month[m]} for m in sorted(by_month)],
    }


def net_profit_report(scope: Scope, start: date, end: date) -> dict[str, Any]:
    """
    gross_profit = collections - service costs (lab work sent in the period)
    net_profit   = gross_profit - operating expenses (expenses + doctor compensation)
    The margin is a percentage of collections.
    """
    _check_range(start, end)
    months: dict[str, dict[str, Decimal]] = defaultdict(
        lambda: {"revenue": ZERO, "collections": ZERO, "service_costs": ZERO, "operating_expenses": ZERO}
    )

    with db_session() as s:
        gross_revenue = ZERO
        for inv in _invoices_issued(s, scope, start, end):
            gross_revenue += money(inv.final_amount)
            months[_month(inv.issued_date)]["revenue"] += money(inv.final_amount)

        total_collections = ZERO
        for paid_on, amount in _collections(s, scope, start, end):
            total_collections += amount
            months[_month(paid_on)]["collections"] += amount

        service_costs = ZERO
        lab_q = scoped(select(LabCase.sent_date, LabCase.cost), LabCase, scope).where(
            and_(LabCase.sent_date >= start, LabCase.sent_date <= end, LabCase.cost.is_not(None))
        )
        for sent, cost in s.execute(lab_q):
            service_costs += money(cost)
            months[_month(sent)]["service_costs"] += money(cost)

        expenses_total = ZERO
        for e in _expenses(s, scope, start, end):
            expenses_total += money(e.amount)
            months[_month(e.expense_date)]["operating_expenses"] += money(e.amount)

        compensation = ZERO
        dp_q = scoped(select(DoctorPayment), DoctorPayment, scope).where(
            and_(DoctorPayment.payment_date >= start, DoctorPayment.payment_date <= end)
        )
        for dp in s.scalars(dp_q):
            compensation += signed_amount(dp)
            months[_month(dp.payment_date)]["operating_expenses"] += signed_amount(dp)

    operating_expenses = expenses_total + compensation
    gross_profit = total_collections - service_costs
    net_profit = gross_profit - operating_expenses

    by_month = []
    for m in sorted(months):
        row = months[m]
        by_month.append(
            {
                "month": m,
                **row,
                "net_profit": row["collections"] - row["service_costs"] - row["operating_expenses"],
            }
        )

    logger.debug("Net profit %s..%s: %s", start, end, net_profit)
    return {
        "start": start,
        "end": end,
        "gross_revenue": gross_revenue,
        "total_collections": total_collections,
        "service_costs": service_costs,
        "expenses": expenses_total,
        "doctor_compensation": compensation,
        "operating_expenses": operating_expenses,
        "total_expenses": service_costs + operating_expenses,
        "gross_profit": gross_profit,
        "net_profit": net_profit,
        "profit_margin": _pct(net_profit, total_collections),
        "by_month": by_month,
    }
