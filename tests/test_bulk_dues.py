"""Generación masiva de cuotas: duplicados, saldo a favor, lotes y tope anual."""

from decimal import Decimal

import pytest
from sqlalchemy.exc import OperationalError

from app.models import AuditLog, Due, LogAction, MemberBalance, ReconciliationLog
from app.services.balance_tracker import BalanceTracker
from app.services.batch import BatchResult
from app.services.bulk_dues import (
    REASON_EXISTS, REASON_NOT_IN_TENANT, create_dues_for_members, generate_bulk_dues,
)
from app.services.errors import LedgerNotFound, LedgerValidationError


@pytest.fixture
def members(make, org):
    return [make.member(org, name=f"Member {i}") for i in range(1, 4)]


def test_generates_one_due_per_active_member(db, make, org, category, members):
    make.member(org, name="Gone", status="inactive")

    result = generate_bulk_dues(db, org.id, category.id, "2025-03", 100, user_id=1)

    assert result["created"] == 3
    assert result["skipped"] == 0
    assert result["failed"] == 0
    assert result["message"] == "Successfully created 3 dues"
    assert len(result["details"]["created_ids"]) == 3
    dues = db.query(Due).filter_by(period="2025-03").all()
    assert sorted(d.member_id for d in dues) == [m.id for m in members]
    assert all(d.status == "unpaid" for d in dues)


def test_second_run_skips_existing(db, org, category, members):
    generate_bulk_dues(db, org.id, category.id, "2025-03", 100)

    result = generate_bulk_dues(db, org.id, category.id, "2025-03", 100)

    assert result["created"] == 0
    assert result["skipped"] == 3
    assert set(result["per_member_reasons"].values()) == {REASON_EXISTS}
    assert db.query(Due).count() == 3


def test_advance_applied_on_creation(db, make, org, category, members):
    rich, _, _ = members
    make.advance(rich, 150)

    generate_bulk_dues(db, org.id, category.id, "2025-03", 100)

    due = db.query(Due).filter_by(member_id=rich.id).one()
    assert due.status == "paid"
    assert due.paid_amount == Decimal("100.00")
    assert due.advance_applied_total == Decimal("100.00")
    assert make.balance(rich) == Decimal("50.00")

    entry = db.query(ReconciliationLog).filter_by(
        action=LogAction.ADVANCE_AUTO_APPLIED_BULK.value,
    ).one()
    assert entry.subject_type == "due"
    assert entry.details["due_id"] == due.id
    assert entry.details["due_month"] == "2025-03"
    assert entry.details["advance_applied"] == 100.0


def test_advance_spent_after_read_is_not_applied(db, make, org, category, members, monkeypatch):
    rich = members[0]
    make.advance(rich, 100)
    original = BalanceTracker.balances_for

    def balances_for(self, member_ids):
        saldos = original(self, member_ids)
        # Otro escritor gasta el saldo entre la lectura y el débito
        db.query(MemberBalance).filter_by(member_id=rich.id).update(
            {"advance_balance": Decimal("0.00")}, synchronize_session=False,
        )
        return saldos

    monkeypatch.setattr(BalanceTracker, "balances_for", balances_for)

    generate_bulk_dues(db, org.id, category.id, "2025-03", 100)

    db.expire_all()
    due = db.query(Due).filter_by(member_id=rich.id).one()
    assert due.status == "unpaid"
    assert due.paid_amount == Decimal("0.00")
    assert due.advance_applied_total == Decimal("0.00")
    assert make.balance(rich) == Decimal("0.00")

    entry = db.query(ReconciliationLog).filter_by(
        action=LogAction.ADVANCE_AUTO_APPLIED_BULK.value,
    ).one()
    assert entry.details["advance_delta"] == 0.0
    assert entry.details["shortfall"] == 100.0


def test_explicit_targets_skip_foreign_members(db, make, org, other_org, category, members):
    outsider = make.member(other_org, name="Outsider")

    result = generate_bulk_dues(
        db, org.id, category.id, "2025-03", 100,
        targets=[members[0].id, outsider.id],
    )

    assert result["created"] == 1
    assert result["per_member_reasons"] == {outsider.id: REASON_NOT_IN_TENANT}


def test_audit_entry(db, org, category, members):
    generate_bulk_dues(db, org.id, category.id, "2025-03", 100, user_id=7)

    audit = db.query(AuditLog).filter_by(action="BULK_DUES_GENERATED").one()
    assert audit.user_id == 7
    assert audit.details["created"] == 3
    assert audit.details["period"] == "2025-03"


@pytest.mark.parametrize("period, amount", [("2025-13", 100), ("march", 100), ("2025-03", 0)])
def test_invalid_input_rejected_before_writes(db, org, category, members, period, amount):
    with pytest.raises(LedgerValidationError):
        generate_bulk_dues(db, org.id, category.id, period, amount)
    assert db.query(Due).count() == 0


def test_inactive_category(db, make, org, members):
    closed = make.category(org, name="Old fee", is_active=False)

    with pytest.raises(LedgerValidationError, match="not active"):
        generate_bulk_dues(db, org.id, closed.id, "2025-03", 100)


def test_category_of_other_tenant(db, make, other_org, org, members):
    foreign = make.category(other_org)

    with pytest.raises(LedgerNotFound):
        generate_bulk_dues(db, org.id, foreign.id, "2025-03", 100)


def test_no_active_members(db, org, category):
    with pytest.raises(LedgerValidationError, match="No active members"):
        generate_bulk_dues(db, org.id, category.id, "2025-03", 100)


def test_failed_batch_does_not_undo_other_batches(db, org, category, members, monkeypatch):
    victim = members[1].id
    original = BalanceTracker.balances_for

    def balances_for(self, member_ids):
        if victim in member_ids:
            raise OperationalError("SELECT member_balances", {}, Exception("database is locked"))
        return original(self, member_ids)

    monkeypatch.setattr(BalanceTracker, "balances_for", balances_for)
    result = BatchResult()

    create_dues_for_members(
        db, org.id, category, "2025-03", Decimal("100.00"),
        [m.id for m in members], result, batch_size=1,
    )

    assert [c["member_id"] for c in result.created] == [members[0].id, members[2].id]
    assert [f["member_id"] for f in result.failed] == [victim]
    assert result.failed[0]["error"].startswith("OperationalError")
    assert sorted(d.member_id for d in db.query(Due).all()) == [members[0].id, members[2].id]


def test_yearly_cap_skips_thirteenth_monthly_due(db, make, org, category, members):
    org.config = {"enforce_yearly_cap": True}
    db.commit()
    full = members[0]
    for month in range(1, 13):
        make.due(full, category, f"2025-{month:02d}", 100)
    extra = make.category(org, name="Monthly (new scheme)")

    result = generate_bulk_dues(db, org.id, extra.id, "2025-06", 100)

    assert result["created"] == 2
    assert result["skipped"] == 1
    assert "12 monthly dues" in result["per_member_reasons"][full.id]
    assert db.query(AuditLog).filter_by(action="YEARLY_CAP_DUE_SKIPPED").count() == 1


def test_members_processed_in_batches(db, org, category, members, monkeypatch):
    calls = []
    original = BalanceTracker.balances_for

    def balances_for(self, member_ids):
        calls.append(list(member_ids))
        return original(self, member_ids)

    monkeypatch.setattr(BalanceTracker, "balances_for", balances_for)
    result = BatchResult()
    create_dues_for_members(db, org.id, category, "2025-03", Decimal("100.00"),
                            [m.id for m in members], result, batch_size=2)

    assert [len(c) for c in calls] == [2, 1]
