from decimal import Decimal

from app.models import ReconciliationLog
from app.services.advance_migration import migrate_advance_balances


def test_migrates_overpayment_into_advance(db, make, org, member, category):
    make.due(member, category, "2024-11", 100)
    make.due(member, category, "2024-12", 200)
    make.payment(member, 350)
    make.payment(member, 150)
    make.payment(member, 999, status="failed")

    result = migrate_advance_balances(db, user_id=1)

    assert result["results"] == [{
        "organization_id": org.id,
        "organization_name": org.name,
        "members_processed": 1,
        "advance_balances_updated": 1,
    }]
    assert make.balance(member) == Decimal("200.00")
    entry = db.query(ReconciliationLog).filter_by(action="ADVANCE_MIGRATED").one()
    assert entry.subject_type == "member"
    assert entry.details["computed_balance"] == 200.0


def test_rerun_changes_nothing(db, make, org, member, category):
    make.due(member, category, "2024-12", 100)
    make.payment(member, 300)
    migrate_advance_balances(db)

    result = migrate_advance_balances(db)

    assert result["results"][0]["advance_balances_updated"] == 0
    assert make.balance(member) == Decimal("200.00")
    assert db.query(ReconciliationLog).filter_by(action="ADVANCE_MIGRATED").count() == 1


def test_never_lowers_existing_balance(db, make, org, member, category):
    make.advance(member, 500)
    make.payment(member, 100)

    migrate_advance_balances(db)

    assert make.balance(member) == Decimal("500.00")


def test_tops_up_lower_balance(db, make, org, member, category):
    make.advance(member, 50)
    make.payment(member, 120)

    migrate_advance_balances(db)

    assert make.balance(member) == Decimal("120.00")
    entry = db.query(ReconciliationLog).filter_by(action="ADVANCE_MIGRATED").one()
    assert entry.details["advance_delta"] == 70.0


def test_scoped_to_tenant(db, make, org, other_org, member):
    outsider = make.member(other_org, name="Outsider")
    make.payment(outsider, 100)

    result = migrate_advance_balances(db, organization_id=org.id)

    assert [r["organization_id"] for r in result["results"]] == [org.id]
    assert make.balance(outsider) == Decimal("0.00")
