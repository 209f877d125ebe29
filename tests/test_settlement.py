"""Imputación pura de montos a cuotas (sin base de datos)."""

from decimal import Decimal

import pytest

from app.services.settlement import DueSnapshot, money, settle, status_for


def snap(due_id, amount, paid=0, period="2025-01"):
    return DueSnapshot(id=due_id, amount=money(amount), paid_amount=money(paid), period=period)


def test_money_rounds_half_up():
    assert money("10.005") == Decimal("10.01")
    assert money(0.1 + 0.2) == Decimal("0.30")
    assert money(None) == Decimal("0.00")


@pytest.mark.parametrize("paid, amount, expected", [
    (0, 100, "unpaid"),
    (40, 100, "partial"),
    (100, 100, "paid"),
    (120, 100, "paid"),
])
def test_status_for(paid, amount, expected):
    assert status_for(paid, amount) == expected


def test_single_due_overpayment_leaves_remainder():
    result = settle(700, [snap(1, 500)])

    applied = result.applications[0]
    assert applied.amount_applied == Decimal("500.00")
    assert applied.new_status == "paid"
    assert result.remainder == Decimal("200.00")


def test_oldest_first_across_two_dues():
    result = settle(400, [snap(1, 300, period="2025-01"), snap(2, 300, period="2025-02")])

    jan, feb = result.applications
    assert jan.amount_applied == Decimal("300.00") and jan.new_status == "paid"
    assert feb.amount_applied == Decimal("100.00") and feb.new_status == "partial"
    assert result.remainder == Decimal("0.00")
    assert result.total_applied == Decimal("400.00")


def test_paid_due_is_skipped():
    result = settle(50, [snap(1, 100, paid=100), snap(2, 100)])

    assert result.applications[0].amount_applied == 0
    assert result.applications[1].amount_applied == Decimal("50.00")
    assert [a.due.id for a in result.touched] == [2]


def test_zero_amount_is_noop():
    dues = [snap(1, 100), snap(2, 100, paid=30)]
    result = settle(0, dues)

    assert [a.amount_applied for a in result.applications] == [0, 0]
    assert [a.due for a in result.applications] == dues
    assert result.remainder == 0


def test_stops_when_amount_runs_out():
    result = settle(100, [snap(1, 100), snap(2, 100), snap(3, 100)])

    assert [a.amount_applied for a in result.applications] == [Decimal("100.00"), 0, 0]
    assert result.applications[2].previous_paid == 0


def test_partial_due_only_takes_outstanding():
    result = settle(100, [snap(1, 100, paid=70)])

    assert result.applications[0].amount_applied == Decimal("30.00")
    assert result.applications[0].previous_paid == Decimal("70.00")
    assert result.remainder == Decimal("70.00")


def test_negative_amount_rejected():
    with pytest.raises(ValueError):
        settle(-1, [snap(1, 100)])
