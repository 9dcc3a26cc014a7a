from datetime import date
from decimal import Decimal

import pytest

from dental_backend import billing, reports, services
from dental_backend.billing import ItemIn
from dental_backend.models import (
    AdjustmentType,
    DiscountType,
    DoctorPaymentType,
    ExpenseCategory,
    InvoiceStatus,
    PaymentMethod,
    TreatmentStatus,
)

JAN_1 = date(2030, 1, 1)
FEB_28 = date(2030, 2, 28)


def _completed(scope, patient, treatment, doctor, price, on, **fields):
    return services.create_patient_treatment(
        scope,
        patient.id,
        treatment.id,
        doctor_id=doctor.id if doctor else None,
        price=Decimal(price),
        status=TreatmentStatus.COMPLETED,
        completion_date=on,
        **fields,
    )


@pytest.fixture
def books(scope, patient, treatment, doctor, second_doctor):
    """Two months of activity for one clinic."""
    pt1 = _completed(
        scope, patient, treatment, doctor, "200", date(2030, 1, 10),
        discount_type=DiscountType.PERCENTAGE, discount_value=Decimal("10"),
    )
    pt2 = _completed(scope, patient, treatment, doctor, "100", date(2030, 2, 5))
    _completed(scope, patient, treatment, second_doctor, "500", date(2030, 1, 20))
    # not counted: planned, no doctor, outside the period
    services.create_patient_treatment(scope, patient.id, treatment.id, doctor_id=doctor.id, price=Decimal("999"))
    _completed(scope, patient, treatment, None, "999", date(2030, 1, 11))
    _completed(scope, patient, treatment, doctor, "999", date(2030, 3, 1))

    inv1 = billing.create_invoice(
        scope, patient.id, [ItemIn("Filling", Decimal("180"), patient_treatment_id=pt1.id)], issued_date=date(2030, 1, 10)
    )
    billing.record_payment(scope, inv1.id, Decimal("90"), PaymentMethod.CARD, payment_date=date(2030, 1, 15))
    bounced = billing.record_payment(scope, inv1.id, Decimal("30"), PaymentMethod.CARD, payment_date=date(2030, 2, 1))
    billing.refund_payment(scope, bounced.id, "Card declined")

    inv2 = billing.create_invoice(
        scope, patient.id, [ItemIn("Filling", Decimal("100"), patient_treatment_id=pt2.id)], issued_date=date(2030, 2, 5)
    )
    billing.update_invoice(scope, inv2.id, status=InvoiceStatus.CANCELED)

    inv3 = billing.create_invoice(scope, patient.id, [ItemIn("Exam", Decimal("50"))], issued_date=date(2030, 2, 15))
    billing.create_adjustment(
        scope, inv3.id, AdjustmentType.DISCOUNT, Decimal("10"), "Loyalty", applied_date=date(2030, 2, 16)
    )

    billing.create_expense(scope, "Rent", ExpenseCategory.RENT, Decimal("1000"), date(2030, 1, 5))
    billing.create_expense(scope, "Gloves", ExpenseCategory.SUPPLIES, Decimal("100"), date(2030, 1, 20))
    billing.create_expense(scope, "Masks", ExpenseCategory.SUPPLIES, Decimal("200"), date(2030, 2, 5))

    services.create_lab_case(scope, patient.id, "Crown", "Acme Lab", date(2030, 1, 12), cost=Decimal("40"))
    services.create_lab_case(scope, patient.id, "Bridge", "Acme Lab", date(2030, 1, 13))

    billing.create_doctor_payment(
        scope, doctor.id, Decimal("500"), DoctorPaymentType.SALARY, PaymentMethod.BANK_TRANSFER, date(2030, 1, 31)
    )
    billing.create_doctor_payment(
        scope, doctor.id, Decimal("50"), DoctorPaymentType.DEDUCTION, PaymentMethod.BANK_TRANSFER, date(2030, 2, 28)
    )
    return {"inv1": inv1, "inv2": inv2, "inv3": inv3}


def test_revenue_report(scope, books):
    r = reports.revenue_report(scope, JAN_1, FEB_28)
    # canceled invoice excluded, refunded payment excluded
    assert r["total_revenue"] == Decimal("220.00")
    assert r["total_collections"] == Decimal("90.00")
    assert r["total_adjustments"] == Decimal("10.00")
    assert r["by_month"] == [
        {"month": "2030-01", "revenue": Decimal("180.00"), "collections": Decimal("90.00")},
        {"month": "2030-02", "revenue": Decimal("40.00"), "collections": Decimal("0")},
    ]


def test_reports_reject_inverted_range(scope):
    with pytest.raises(ValueError):
        reports.revenue_report(scope, FEB_28, JAN_1)
    with pytest.raises(ValueError):
        reports.net_profit_report(scope, FEB_28, JAN_1)


def test_reports_are_tenant_isolated(other_scope, books):
    r = reports.revenue_report(other_scope, JAN_1, FEB_28)
    assert r["total_revenue"] == 0
    assert r["by_month"] == []
    assert reports.ar_aging_report(other_scope, as_of=date(2030, 3, 31))["invoice_count"] == 0


@pytest.mark.parametrize(
    "days, bucket",
    [
        (-5, "current"),
        (0, "current"),
        (30, "current"),
        (31, "thirty_days"),
        (60, "thirty_days"),
        (61, "sixty_days"),
        (90, "sixty_days"),
        (91, "over_ninety"),
        (120, "over_ninety"),
        (400, "over_ninety"),
    ],
)
def test_aging_bucket(days, bucket):
    assert reports.aging_bucket(days) == bucket


def test_ar_aging_report(scope, books):
    r = reports.ar_aging_report(scope, as_of=date(2030, 3, 31))
    # inv1: 90 open, due 2030-02-09 (50 days); inv3: 40 open, due 2030-03-17 (14 days)
    assert r["current"] == Decimal("40.00")
    assert r["thirty_days"] == Decimal("90.00")
    assert r["sixty_days"] == r["ninety_days"] == r["over_ninety"] == 0
    assert r["total"] == Decimal("130.00")
    assert r["invoice_count"] == 2
    assert r["as_of"] == date(2030, 3, 31)


def test_ar_aging_past_ninety_days(scope, patient):
    inv = billing.create_invoice(
        scope, patient.id, [ItemIn("Crown", Decimal("100"))], issued_date=date(2030, 1, 1), due_date=date(2030, 1, 31)
    )
    r = reports.ar_aging_report(scope, as_of=date(2030, 5, 11))
    assert (r["over_ninety"], r["ninety_days"]) == (Decimal("100.00"), 0)
    assert r["total"] == inv.final_amount


def test_production_by_doctor(scope, books, doctor, second_doctor):
    rows = reports.production_by_doctor_report(scope, JAN_1, FEB_28)
    assert [r["doctor_id"] for r in rows] == [second_doctor.id, doctor.id]

    mine = rows[1]
    assert mine["doctor_name"] == "Bob Molar"
    assert mine["total_production"] == Decimal("280.00")
    assert mine["treatment_count"] == 2
    assert mine["patient_count"] == 1
    assert mine["avg_production_per_patient"] == Decimal("280.00")
    assert mine["treatment_breakdown"] == [
        {"treatment_name": "Composite filling", "count": 2, "production": Decimal("280.00")}
    ]


def test_doctor_report(scope, books, doctor):
    r = reports.doctor_report(scope, doctor.id, JAN_1, FEB_28)
    assert r["total_production"] == Decimal("280.00")
    # half of the 180 line is paid; the canceled invoice's line does not count
    assert r["total_collected"] == Decimal("90.00")
    assert r["patients"][0]["patient_name"] == "Jane Doe"
    assert r["by_month"] == [
        {"month": "2030-01", "production": Decimal("180.00"), "treatment_count": 1},
        {"month": "2030-02", "production": Decimal("100.00"), "treatment_count": 1},
    ]


def test_doctor_report_out_of_scope(other_scope, doctor):
    assert reports.doctor_report(other_scope, doctor.id, JAN_1, FEB_28) is None


def test_expense_report(scope, books):
    r = reports.expense_report(scope, JAN_1, FEB_28)
    assert r["total"] == Decimal("1300.00")
    assert r["by_category"] == [
        {"category": "rent", "amount": Decimal("1000.00")},
        {"category": "supplies", "amount": Decimal("300.00")},
    ]
    assert r["by_month"] == [
        {"month": "2030-01", "amount": Decimal("1100.00")},
        {"month": "2030-02", "amount": Decimal("200.00")},
    ]


def test_net_profit_report(scope, books):
    r = reports.net_profit_report(scope, JAN_1, FEB_28)
    assert r["gross_revenue"] == Decimal("220.00")
    assert r["total_collections"] == Decimal("90.00")
    assert r["service_costs"] == Decimal("40.00")
    assert r["expenses"] == Decimal("1300.00")
    # salary minus deduction
    assert r["doctor_compensation"] == Decimal("450.00")
    assert r["operating_expenses"] == Decimal("1750.00")
    assert r["total_expenses"] == Decimal("1790.00")
    assert r["gross_profit"] == Decimal("50.00")
    assert r["net_profit"] == Decimal("-1700.00")
    assert r["profit_margin"] == Decimal("-1888.89")

    jan, feb = r["by_month"]
    assert jan["month"] == "2030-01"
    assert jan["net_profit"] == Decimal("90") - Decimal("40") - Decimal("1600")
    assert feb["operating_expenses"] == Decimal("150.00")


def test_net_profit_margin_without_collections(scope):
    r = reports.net_profit_report(scope, JAN_1, FEB_28)
    assert r["net_profit"] == 0
    assert r["profit_margin"] == Decimal("0.00")
