"""Reversa de pagos conciliados: recálculo desde allocations y saldo a favor."""

from decimal import Decimal

import pytest

from app.models import AuditLog, Due, Payment, PaymentLog, ReconciliationLog
from app.services.errors import LedgerValidationError
from app.services.reconciliation import apply_advance_to_due, reconcile_payment
from app.services.reversal import reverse_payment
from app.services.waiver import waive_due


def test_reverse_restores_state_before_reconcile(db, make, member, category):
    jan = make.due(member, category, "2025-01", 300)
    feb = make.due(member, category, "2025-02", 300, paid=0)
    payment = make.payment(member, 800)
    reconcile_payment(db, payment.id)
    assert make.balance(member) == Decimal("200.00")

    result = reverse_payment(db, payment.id, new_status="refunded", reason="Chargeback")

    assert result["status"] == "refunded"
    assert result["advance_reversed"] == 200.0
    assert result["advance_shortfall"] == 0.0
    assert {d["due_id"] for d in result["dues_reversed"]} == {jan.id, feb.id}

    db.expire_all()
    for due_id in (jan.id, feb.id):
        due = db.get(Due, due_id)
        assert due.paid_amount == Decimal("0.00")
        assert due.status == "unpaid"
    assert make.balance(member) == Decimal("0.00")
    payment = db.get(Payment, payment.id)
    assert payment.status == "refunded"
    assert payment.reversed_at is not None


def test_reverse_keeps_other_payments(db, make, member, category):
    due = make.due(member, category, "2025-01", 300)
    first = make.payment(member, 100)
    second = make.payment(member, 100)
    reconcile_payment(db, first.id)
    reconcile_payment(db, second.id)

    reverse_payment(db, first.id)

    db.expire_all()
    due = db.get(Due, due.id)
    assert due.paid_amount == Decimal("100.00")
    assert due.status == "partial"


def test_reverse_keeps_advance_and_waiver_portions(db, make, member, category):
    make.advance(member, 50)
    due = make.due(member, category, "2025-01", 300)
    apply_advance_to_due(db, due.id)
    payment = make.payment(member, 100)
    reconcile_payment(db, payment.id)
    waive_due(db, due.id, "Hardship approved by committee")

    reverse_payment(db, payment.id)

    db.expire_all()
    due = db.get(Due, due.id)
    # 50 de saldo a favor + 150 condonado; los 100 del pago salen
    assert due.paid_amount == Decimal("200.00")
    assert due.status == "partial"


def test_reverse_with_consumed_advance_floors_at_zero(db, make, member, category):
    make.due(member, category, "2025-01", 100)
    payment = make.payment(member, 150)
    reconcile_payment(db, payment.id)
    later = make.due(member, category, "2025-02", 100)
    apply_advance_to_due(db, later.id)
    assert make.balance(member) == Decimal("0.00")

    result = reverse_payment(db, payment.id)

    assert result["advance_reversed"] == 0.0
    assert result["advance_shortfall"] == 50.0
    assert make.balance(member) == Decimal("0.00")
    entry = db.query(ReconciliationLog).filter_by(action="PAYMENT_REVERSED").one()
    assert entry.details["anomaly"] == "debit_exceeds_balance"
    assert entry.details["shortfall"] == 50.0


def test_second_reverse_is_noop(db, make, member, category):
    make.due(member, category, "2025-01", 100)
    payment = make.payment(member, 100)
    reconcile_payment(db, payment.id)
    reverse_payment(db, payment.id)

    result = reverse_payment(db, payment.id)

    assert result["already_reversed"] is True
    assert db.query(ReconciliationLog).filter_by(action="PAYMENT_REVERSED").count() == 1


def test_reverse_writes_payment_log_and_audit(db, make, member, category):
    make.due(member, category, "2025-01", 100)
    payment = make.payment(member, 100)
    reconcile_payment(db, payment.id)

    reverse_payment(db, payment.id, user_id=9, reason="Duplicate entry")

    event = db.query(PaymentLog).filter_by(payment_id=payment.id, action="PAYMENT_REVERSED").one()
    assert event.previous_status == "paid"
    assert event.new_status == "cancelled"
    audit = db.query(AuditLog).filter_by(action="PAYMENT_REVERSED").one()
    assert audit.user_id == 9
    assert audit.details["reason"] == "Duplicate entry"


def test_unsettled_payment_cannot_be_reversed(db, make, member):
    payment = make.payment(member, 100)

    with pytest.raises(LedgerValidationError):
        reverse_payment(db, payment.id)


def test_invalid_reversal_status(db, make, member):
    payment = make.payment(member, 100)

    with pytest.raises(LedgerValidationError):
        reverse_payment(db, payment.id, new_status="pending")


def test_reverse_notifies_member(db, make, member, category, notifications):
    make.due(member, category, "2025-01", 100)
    payment = make.payment(member, 100)
    reconcile_payment(db, payment.id)

    reverse_payment(db, payment.id)

    assert notifications.kinds() == ["payment_reconciled", "payment_reversed"]
