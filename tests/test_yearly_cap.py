"""Tope anual: resumen del miembro y validación de pagos / generación."""

from datetime import date

import pytest

from app.models import AuditLog, CategoryKind
from app.services.errors import LedgerNotFound, LedgerValidationError
from app.services.yearly_cap import validate_yearly_cap, yearly_summary


@pytest.fixture
def monthly_setup(make, org, category):
    make.monthly_setting(org, category, fixed_amount=100)
    return category


def test_payment_over_remaining_allowance_is_denied(db, make, org, member, monthly_setup):
    make.payment(member, 1100, payment_date=date(2025, 6, 1))

    result = validate_yearly_cap(db, org.id, member.id, 150, kind="payment", year=2025, user_id=4)

    assert result["allowed"] is False
    assert result["remaining_allowance"] == 100.0
    assert result["summary"]["yearly_cap"] == 1200.0
    assert result["summary"]["total_paid"] == 1100.0

    db.commit()
    audit = db.query(AuditLog).filter_by(action="YEARLY_CAP_PAYMENT_REJECTED").one()
    assert audit.entity_id == member.id
    assert audit.user_id == 4


def test_payment_within_allowance(db, make, org, member, monthly_setup):
    make.payment(member, 1100, payment_date=date(2025, 6, 1))

    result = validate_yearly_cap(db, org.id, member.id, 100, year=2025)

    assert result["allowed"] is True
    assert result["remaining_allowance"] == 100.0


def test_thirteenth_monthly_due_is_denied(db, make, org, member, monthly_setup):
    for month in range(1, 13):
        make.due(member, monthly_setup, f"2025-{month:02d}", 100)

    result = validate_yearly_cap(db, org.id, member.id, 100, kind="due_generation", year=2025)

    assert result["allowed"] is False
    assert "12 monthly dues" in result["message"]
    db.commit()
    assert db.query(AuditLog).filter_by(action="YEARLY_CAP_DUE_SKIPPED").count() == 1


def test_fund_raise_raises_the_cap(db, make, org, member, monthly_setup):
    fund = make.category(org, name="Mosque Repair", kind=CategoryKind.FUND_RAISE.value, default_amount=None)
    make.due(member, fund, "2025-04", 500)

    summary = yearly_summary(db, org.id, member.id, 2025)

    assert summary.fund_raise_total == 500
    assert summary.yearly_cap == 1700
    assert summary.outstanding_balance == 500


def test_unpaid_previous_year_carries_forward(db, make, org, member, monthly_setup):
    make.due(member, monthly_setup, "2024-12", 100, paid=40)

    summary = yearly_summary(db, org.id, member.id, 2025)

    assert summary.carry_forward_unpaid == 60
    assert summary.yearly_cap == 1260


def test_payments_without_date_not_counted(db, make, org, member, monthly_setup):
    make.payment(member, 300, payment_date=date(2025, 2, 1))
    make.payment(member, 500, payment_date=None)
    make.payment(member, 700, status="pending", payment_date=date(2025, 2, 1))

    summary = yearly_summary(db, org.id, member.id, 2025)

    assert summary.total_paid == 300
    assert summary.remaining_allowance == 900
    assert summary.cap_usage_percent == 25.0
    assert summary.is_near_limit is False


def test_near_and_at_limit_flags(db, make, org, member, monthly_setup):
    make.payment(member, 1200, payment_date=date(2025, 3, 1))

    data = yearly_summary(db, org.id, member.id, 2025).to_dict()

    assert data["is_at_limit"] is True
    assert data["is_near_limit"] is True
    assert data["remaining_allowance"] == 0.0


def test_override_replaces_computed_cap(db, make, member, monthly_setup):
    org = member.organization
    org.config = {"yearly_cap_override": 5000}
    db.commit()

    summary = yearly_summary(db, org.id, member.id, 2025)

    assert summary.yearly_cap == 5000


def test_no_cap_configured_allows(db, make, org, member):
    result = validate_yearly_cap(db, org.id, member.id, 10000, year=2025)

    assert result["allowed"] is True
    assert result["message"] == "No yearly cap configured"
    assert result["remaining_allowance"] is None


def test_member_of_other_tenant(db, make, other_org, member):
    with pytest.raises(LedgerNotFound):
        yearly_summary(db, other_org.id, member.id, 2025)


def test_invalid_kind(db, org, member):
    with pytest.raises(LedgerValidationError):
        validate_yearly_cap(db, org.id, member.id, 100, kind="refund")
