"""
Consultas compartidas del ledger
app/services/ledger_queries.py

Validaciones de entrada (categoría, miembro, cuota, pago) que lanzan
LedgerNotFound / LedgerValidationError ANTES de cualquier mutación.
"""

from typing import Iterable, List, Set

from sqlalchemy.orm import Session

from app.models import ContributionType, Due, DueStatus, Member, Payment
from app.services.errors import LedgerNotFound, LedgerValidationError

OPEN_STATUSES = (DueStatus.UNPAID.value, DueStatus.PARTIAL.value)


def get_active_category(db: Session, organization_id: int, category_id: int) -> ContributionType:
    category = db.query(ContributionType).filter(
        ContributionType.id == category_id,
        ContributionType.organization_id == organization_id,
    ).first()
    if not category:
        raise LedgerNotFound("Contribution type not found or does not belong to this tenant")
    if not category.is_active:
        raise LedgerValidationError("Contribution type is not active")
    return category


def tenant_member_ids(db: Session, organization_id: int, member_ids: Iterable[int]) -> Set[int]:
    """De los ids recibidos, los que pertenecen a la organización."""
    ids = list(set(member_ids))
    if not ids:
        return set()
    rows = db.query(Member.id).filter(
        Member.organization_id == organization_id,
        Member.id.in_(ids),
    ).all()
    return {r[0] for r in rows}


def active_member_ids(db: Session, organization_id: int) -> List[int]:
    rows = db.query(Member.id).filter(
        Member.organization_id == organization_id,
        Member.status == "active",
    ).order_by(Member.id).all()
    return [r[0] for r in rows]


def get_due(db: Session, due_id: int, organization_id: int = None, lock: bool = False) -> Due:
    query = db.query(Due).filter(Due.id == due_id)
    if organization_id is not None:
        query = query.filter(Due.organization_id == organization_id)
    if lock:
        query = query.with_for_update().populate_existing()
    due = query.first()
    if not due:
        raise LedgerNotFound("Due not found")
    return due


def get_payment(db: Session, payment_id: int, organization_id: int = None, lock: bool = False) -> Payment:
    query = db.query(Payment).filter(Payment.id == payment_id)
    if organization_id is not None:
        query = query.filter(Payment.organization_id == organization_id)
    if lock:
        query = query.with_for_update().populate_existing()
    payment = query.first()
    if not payment:
        raise LedgerNotFound("Payment not found")
    return payment


def open_dues_oldest_first(db: Session, organization_id: int, member_id: int,
                           category_id: int = None, lock: bool = True) -> List[Due]:
    """Cuotas unpaid/partial del miembro, periodo ascendente (más antigua primero)."""
    query = db.query(Due).filter(
        Due.organization_id == organization_id,
        Due.member_id == member_id,
        Due.status.in_(OPEN_STATUSES),
    )
    if category_id is not None:
        query = query.filter(Due.contribution_type_id == category_id)
    query = query.order_by(Due.period.asc(), Due.created_at.asc(), Due.id.asc())
    if lock:
        query = query.with_for_update().populate_existing()
    return query.all()
