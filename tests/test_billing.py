from datetime import date, timedelta
from decimal import Decimal

import pytest

from dental_backend import billing, services
from dental_backend.billing import ItemIn, apply_discount, installment_due_date, split_installments
from dental_backend.models import (
    AdjustmentType,
    DiscountType,
    DoctorPaymentType,
    ExpenseCategory,
    InsuranceClaimStatus,
    InvoiceStatus,
    PaymentMethod,
    PaymentPlanStatus,
)


@pytest.fixture
def invoice(scope, patient):
    return billing.create_invoice(
        scope,
        patient.id,
        [ItemIn("Cleaning", Decimal("100.00")), ItemIn("X-ray", Decimal("50.00"), quantity=2)],
    )


# =========================
# Invoices
# =========================
def test_invoice_totals_and_defaults(invoice):
    assert invoice.total_amount == Decimal("200.00")
    assert invoice.final_amount == Decimal("200.00")
    assert invoice.status is InvoiceStatus.SENT
    assert invoice.invoice_number == f"INV-{date.today().year}-00001"
    assert invoice.due_date == date.today() + timedelta(days=30)
    assert [i.total_price for i in invoice.items] == [Decimal("100.00"), Decimal("100.00")]


def test_invoice_numbers_are_per_organization(scope, other_scope, patient, invoice):
    second = billing.create_invoice(scope, patient.id, [ItemIn("Exam", Decimal("10"))])
    theirs_patient = services.create_patient(other_scope, "Otto", "Theirs", "2")
    theirs = billing.create_invoice(other_scope, theirs_patient.id, [ItemIn("Exam", Decimal("10"))])

    year = date.today().year
    assert second.invoice_number == f"INV-{year}-00002"
    assert theirs.invoice_number == f"INV-{year}-00001"


def test_invoice_due_date_from_clinic_settings(scope, patient):
    services.update_clinic_settings(scope, invoice_due_days=10)
    inv = billing.create_invoice(scope, patient.id, [ItemIn("Exam", Decimal("10"))], issued_date=date(2030, 3, 1))
    assert inv.due_date == date(2030, 3, 11)


def test_invoice_discounts(scope, patient):
    pct = billing.create_invoice(
        scope, patient.id, [ItemIn("Crown", Decimal("1000"))],
        discount_type=DiscountType.PERCENTAGE, discount_value=Decimal("10"),
    )
    assert pct.final_amount == Decimal("900.00")

    fixed = billing.create_invoice(
        scope, patient.id, [ItemIn("Exam", Decimal("50"))],
        discount_type=DiscountType.VALUE, discount_value=Decimal("80"),
    )
    assert fixed.final_amount == Decimal("0.00")


def test_apply_discount_limits():
    assert apply_discount(Decimal("100"), None, None) == Decimal("100.00")
    with pytest.raises(ValueError):
        apply_discount(Decimal("100"), DiscountType.PERCENTAGE, Decimal("101"))


def test_invoice_needs_items(scope, patient):
    with pytest.raises(ValueError):
        billing.create_invoice(scope, patient.id, [])


def test_invoice_for_foreign_patient_rejected(other_scope, patient):
    with pytest.raises(ValueError, match="Patient not found"):
        billing.create_invoice(other_scope, patient.id, [ItemIn("Exam", Decimal("10"))])


def test_invoice_item_must_reference_patients_treatment(scope, patient, treatment):
    other = services.create_patient(scope, "Bob", "Other", "3")
    pt = services.create_patient_treatment(scope, other.id, treatment.id)
    with pytest.raises(ValueError):
        billing.create_invoice(scope, patient.id, [ItemIn("Filling", Decimal("150"), patient_treatment_id=pt.id)])


def test_update_invoice_guards(scope, invoice):
    with pytest.raises(ValueError):
        billing.update_invoice(scope, invoice.id, status=InvoiceStatus.PAID)
    with pytest.raises(ValueError):
        billing.update_invoice(scope, invoice.id, final_amount=Decimal("1"))

    updated = billing.update_invoice(scope, invoice.id, notes="call first", due_date=date(2031, 1, 1))
    assert updated.notes == "call first"

    billing.record_payment(scope, invoice.id, Decimal("10"), PaymentMethod.CASH)
    with pytest.raises(ValueError, match="Refund"):
        billing.update_invoice(scope, invoice.id, status=InvoiceStatus.CANCELED)


def test_canceled_invoice_stays_canceled(scope, invoice):
    billing.update_invoice(scope, invoice.id, status=InvoiceStatus.CANCELED)
    with pytest.raises(ValueError):
        billing.update_invoice(scope, invoice.id, status=InvoiceStatus.SENT)
    with pytest.raises(ValueError):
        billing.record_payment(scope, invoice.id, Decimal("10"), PaymentMethod.CASH)


def test_mark_overdue(scope, patient):
    inv = billing.create_invoice(
        scope, patient.id, [ItemIn("Exam", Decimal("10"))], issued_date=date(2030, 1, 1), due_date=date(2030, 1, 31)
    )
    assert billing.mark_overdue_invoices(scope, as_of=date(2030, 1, 31)) == 0
    assert billing.mark_overdue_invoices(scope, as_of=date(2030, 2, 1)) == 1
    assert billing.get_invoice(scope, inv.id).status is InvoiceStatus.OVERDUE


# =========================
# Payments and refunds
# =========================
def test_partial_then_full_payment(scope, invoice):
    billing.record_payment(scope, invoice.id, Decimal("50"), PaymentMethod.CARD)
    inv = billing.get_invoice(scope, invoice.id)
    assert inv.status is InvoiceStatus.PARTIAL
    assert inv.balance == Decimal("150.00")

    billing.record_payment(scope, invoice.id, Decimal("150"), PaymentMethod.CASH)
    inv = billing.get_invoice(scope, invoice.id)
    assert inv.status is InvoiceStatus.PAID
    assert inv.balance == Decimal("0.00")


def test_payment_validation(scope, invoice):
    with pytest.raises(ValueError):
        billing.record_payment(scope, invoice.id, Decimal("0"), PaymentMethod.CASH)
    with pytest.raises(ValueError, match="exceeds"):
        billing.record_payment(scope, invoice.id, Decimal("200.01"), PaymentMethod.CASH)


def test_refund_reopens_invoice(scope, invoice):
    p = billing.record_payment(scope, invoice.id, Decimal("200"), PaymentMethod.CARD)
    assert billing.get_invoice(scope, invoice.id).status is InvoiceStatus.PAID

    refunded = billing.refund_payment(scope, p.id, "Charged twice")
    assert refunded.is_refunded
    assert refunded.refund_reason == "Charged twice"
    assert refunded.refunded_at.utcoffset() == timedelta(0)

    inv = billing.get_invoice(scope, invoice.id)
    assert inv.paid_amount == Decimal("0.00")
    assert inv.status is InvoiceStatus.SENT


def test_refund_only_once_and_needs_reason(scope, invoice):
    p = billing.record_payment(scope, invoice.id, Decimal("20"), PaymentMethod.CARD)
    with pytest.raises(ValueError):
        billing.refund_payment(scope, p.id, "  ")
    billing.refund_payment(scope, p.id, "Mistake")
    with pytest.raises(ValueError, match="already"):
        billing.refund_payment(scope, p.id, "Again")


def test_refund_of_foreign_payment_is_missing(scope, other_scope, invoice):
    p = billing.record_payment(scope, invoice.id, Decimal("20"), PaymentMethod.CARD)
    assert billing.refund_payment(other_scope, p.id, "nope") is None


def test_payments_are_audited(scope, invoice):
    p = billing.record_payment(scope, invoice.id, Decimal("20"), PaymentMethod.CARD)
    entries = billing.list_audit_logs(scope, entity_type="payment", entity_id=p.id)
    assert [e.action for e in entries] == ["create"]
    assert entries[0].new_values["amount"] == "20.00"

    invoice_entries = billing.list_audit_logs(scope, entity_type="invoice", entity_id=invoice.id)
    assert {e.action for e in invoice_entries} == {"create", "update"}


# =========================
# Payment plans
# =========================
def test_split_installments_last_absorbs_remainder():
    assert split_installments(Decimal("100"), 3) == [Decimal("33.33"), Decimal("33.33"), Decimal("33.34")]
    assert sum(split_installments(Decimal("1000.01"), 7)) == Decimal("1000.01")


def test_plan_needs_a_cent_per_installment(scope, patient):
    assert split_installments(Decimal("0.10"), 10) == [Decimal("0.01")] * 10
    with pytest.raises(ValueError):
        split_installments(Decimal("0.05"), 10)

    inv = billing.create_invoice(scope, patient.id, [ItemIn("Floss", Decimal("0.05"))])
    with pytest.raises(ValueError):
        billing.create_payment_plan(scope, inv.id, 10, "weekly", date(2030, 1, 1))
    assert billing.list_payment_plans(scope, invoice_id=inv.id) == []


def test_installment_due_dates():
    start = date(2030, 1, 31)
    assert installment_due_date(start, "weekly", 2) == date(2030, 2, 14)
    assert installment_due_date(start, "biweekly", 1) == date(2030, 2, 14)
    assert installment_due_date(start, "monthly", 1) == date(2030, 2, 28)
    assert installment_due_date(start, "monthly", 12) == date(2031, 1, 31)
    with pytest.raises(ValueError):
        installment_due_date(start, "yearly", 1)


def test_payment_plan_lifecycle(scope, invoice):
    plan = billing.create_payment_plan(
        scope, invoice.id, 2, "monthly", date(2030, 1, 15), down_payment=Decimal("50")
    )
    assert plan.total_amount == Decimal("200.00")
    assert [i.amount for i in plan.installments] == [Decimal("75.00"), Decimal("75.00")]
    assert [i.due_date for i in plan.installments] == [date(2030, 1, 15), date(2030, 2, 15)]

    with pytest.raises(ValueError, match="active payment plan"):
        billing.create_payment_plan(scope, invoice.id, 3, "weekly", date(2030, 1, 15))

    first, second = plan.installments
    billing.record_payment(scope, invoice.id, Decimal("75"), PaymentMethod.CARD, payment_plan_installment_id=first.id)
    last = billing.record_payment(
        scope, invoice.id, Decimal("75"), PaymentMethod.CARD, payment_plan_installment_id=second.id
    )
    plan = billing.get_payment_plan(scope, plan.id)
    assert plan.status is PaymentPlanStatus.COMPLETED
    assert all(i.is_paid for i in plan.installments)

    billing.refund_payment(scope, last.id, "Card dispute")
    plan = billing.get_payment_plan(scope, plan.id)
    assert plan.status is PaymentPlanStatus.ACTIVE
    assert [i.is_paid for i in plan.installments] == [True, False]


def test_payment_plan_validation(scope, invoice):
    with pytest.raises(ValueError):
        billing.create_payment_plan(scope, invoice.id, 0, "monthly", date(2030, 1, 1))
    with pytest.raises(ValueError):
        billing.create_payment_plan(scope, invoice.id, 2, "daily", date(2030, 1, 1))
    with pytest.raises(ValueError, match="Nothing left"):
        billing.create_payment_plan(scope, invoice.id, 2, "monthly", date(2030, 1, 1), down_payment=Decimal("200"))


def test_cancel_payment_plan(scope, invoice):
    plan = billing.create_payment_plan(scope, invoice.id, 2, "weekly", date(2030, 1, 1))
    assert billing.cancel_payment_plan(scope, plan.id).status is PaymentPlanStatus.CANCELED
    with pytest.raises(ValueError):
        billing.cancel_payment_plan(scope, plan.id)
    # a new plan is allowed once the old one is canceled
    billing.create_payment_plan(scope, invoice.id, 4, "weekly", date(2030, 1, 1))


# =========================
# Adjustments
# =========================
def test_adjustments_move_final_amount(scope, invoice):
    billing.create_adjustment(scope, invoice.id, AdjustmentType.DISCOUNT, Decimal("20"), "Loyalty")
    billing.create_adjustment(scope, invoice.id, AdjustmentType.FEE, Decimal("5"), "Late fee")
    billing.create_adjustment(scope, invoice.id, AdjustmentType.CORRECTION, Decimal("-15"), "Typo")
    assert billing.get_invoice(scope, invoice.id).final_amount == Decimal("170.00")
    assert len(billing.list_adjustments(scope, invoice.id)) == 3


def test_write_off_settles_invoice(scope, invoice):
    billing.record_payment(scope, invoice.id, Decimal("150"), PaymentMethod.CASH)
    billing.create_adjustment(scope, invoice.id, AdjustmentType.WRITE_OFF, Decimal("50"), "Hardship")
    inv = billing.get_invoice(scope, invoice.id)
    assert inv.status is InvoiceStatus.PAID
    assert inv.balance == Decimal("0.00")


def test_adjustment_floors_at_zero(scope, invoice):
    billing.create_adjustment(scope, invoice.id, AdjustmentType.DISCOUNT, Decimal("500"), "Goodwill")
    assert billing.get_invoice(scope, invoice.id).final_amount == Decimal("0.00")


def test_adjustment_validation(scope, invoice):
    with pytest.raises(ValueError):
        billing.create_adjustment(scope, invoice.id, AdjustmentType.DISCOUNT, Decimal("-5"), "Nope")
    with pytest.raises(ValueError):
        billing.create_adjustment(scope, invoice.id, AdjustmentType.CORRECTION, Decimal("0"), "Nope")
    with pytest.raises(ValueError):
        billing.create_adjustment(scope, invoice.id, AdjustmentType.FEE, Decimal("5"), "")
    with pytest.raises(ValueError, match="negative"):
        billing.create_adjustment(scope, invoice.id, AdjustmentType.CORRECTION, Decimal("-500"), "Too much")


# =========================
# Expenses, doctor payments, claims
# =========================
def test_expenses_crud_and_filters(scope, other_scope):
    rent = billing.create_expense(scope, "Rent", ExpenseCategory.RENT, Decimal("2000"), date(2030, 1, 1))
    billing.create_expense(scope, "Gloves", ExpenseCategory.SUPPLIES, Decimal("80"), date(2030, 2, 1))
    billing.create_expense(other_scope, "Their rent", ExpenseCategory.RENT, Decimal("999"), date(2030, 1, 1))

    assert len(billing.list_expenses(scope)) == 2
    assert [e.id for e in billing.list_expenses(scope, category=ExpenseCategory.RENT)] == [rent.id]
    assert len(billing.list_expenses(scope, start=date(2030, 1, 15), end=date(2030, 2, 28))) == 1

    assert billing.update_expense(scope, rent.id, amount=Decimal("2100")).amount == Decimal("2100.00")
    with pytest.raises(ValueError):
        billing.update_expense(scope, rent.id, amount=Decimal("0"))
    assert billing.delete_expense(scope, rent.id) is True
    assert billing.get_expense(scope, rent.id) is None


def test_doctor_payment_requires_doctor(scope, staff, doctor):
    with pytest.raises(ValueError, match="Doctor not found"):
        billing.create_doctor_payment(
            scope, staff.id, Decimal("100"), DoctorPaymentType.SALARY, PaymentMethod.BANK_TRANSFER, date(2030, 1, 1)
        )
    dp = billing.create_doctor_payment(
        scope, doctor.id, Decimal("100"), DoctorPaymentType.DEDUCTION, PaymentMethod.BANK_TRANSFER, date(2030, 1, 1)
    )
    assert billing.signed_amount(dp) == Decimal("-100.00")
    assert [p.id for p in billing.list_doctor_payments(scope, doctor_id=doctor.id)] == [dp.id]


def test_doctor_payment_period_order(scope, doctor):
    with pytest.raises(ValueError):
        billing.create_doctor_payment(
            scope, doctor.id, Decimal("100"), DoctorPaymentType.SALARY, PaymentMethod.CASH, date(2030, 1, 31),
            payment_period_start=date(2030, 1, 31), payment_period_end=date(2030, 1, 1),
        )


def test_claim_numbers_and_status_dates(scope, patient, invoice):
    year = date.today().year
    assert billing.generate_claim_number(scope) == f"CLM-{year}-00001"

    claim = billing.create_insurance_claim(
        scope, patient.id, "Delta", "POL-1", Decimal("150"), invoice_id=invoice.id
    )
    assert claim.claim_number == f"CLM-{year}-00001"
    assert claim.status is InsuranceClaimStatus.DRAFT
    assert billing.generate_claim_number(scope) == f"CLM-{year}-00002"

    claim = billing.update_insurance_claim(scope, claim.id, status=InsuranceClaimStatus.SUBMITTED)
    assert claim.submitted_date == date.today()

    with pytest.raises(ValueError, match="denial reason"):
        billing.update_insurance_claim(scope, claim.id, status=InsuranceClaimStatus.DENIED)

    claim = billing.update_insurance_claim(
        scope, claim.id, status=InsuranceClaimStatus.DENIED, denial_reason="Not covered"
    )
    assert claim.processed_date == date.today()


def test_claim_invoice_must_match_patient(scope, invoice):
    other = services.create_patient(scope, "Bob", "Other", "3")
    with pytest.raises(ValueError):
        billing.create_insurance_claim(scope, other.id, "Delta", "POL-1", Decimal("150"), invoice_id=invoice.id)
