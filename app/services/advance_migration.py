"""
Migración de saldos a favor históricos
app/services/advance_migration.py

Para datos cargados antes del tracker:
    saldo_calculado = max(0, Σ pagos paid - Σ cuotas)
Solo sube un saldo existente si el calculado es mayor; nunca lo baja.
La diferencia entra como crédito con log ADVANCE_MIGRATED.
"""

import logging
from typing import Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

from app.models import Due, LogAction, Member, Organization, Payment, PaymentStatus
from app.services.balance_tracker import BalanceTracker
from app.services.locks import member_lock
from app.services.settlement import ZERO, money, as_float

logger = logging.getLogger(__name__)


def _totals_by_member(db: Session, column, model, organization_id: int, *filters) -> dict:
    rows = db.query(model.member_id, func.coalesce(func.sum(column), 0)).filter(
        model.organization_id == organization_id, *filters,
    ).group_by(model.member_id).all()
    return {member_id: money(total) for member_id, total in rows}


def migrate_advance_balances(db: Session, organization_id: Optional[int] = None,
                             user_id: Optional[int] = None) -> dict:
    query = db.query(Organization).filter(Organization.status == "active")
    if organization_id is not None:
        query = query.filter(Organization.id == organization_id)
    organizations = query.order_by(Organization.id).all()

    logger.info(f"[migrate_advance] iniciando para {len(organizations)} organizaciones")
    results = []

    for org in organizations:
        member_ids = [m[0] for m in db.query(Member.id).filter(Member.organization_id == org.id).all()]
        cuotas = _totals_by_member(db, Due.amount, Due, org.id)
        pagos = _totals_by_member(db, Payment.amount, Payment, org.id,
                                  Payment.status == PaymentStatus.PAID.value)
        tracker = BalanceTracker(db, org.id)
        actualizados = 0

        for member_id in member_ids:
            calculado = max(ZERO, pagos.get(member_id, ZERO) - cuotas.get(member_id, ZERO))
            if calculado <= 0:
                continue
            with member_lock(org.id, member_id):
                actual = tracker.balance_of(member_id)
                if calculado <= actual:
                    continue
                tracker.credit(member_id, calculado - actual, LogAction.ADVANCE_MIGRATED.value,
                               subject_id=member_id, subject_type="member", details={
                                   "total_paid": as_float(pagos.get(member_id, ZERO)),
                                   "total_dues": as_float(cuotas.get(member_id, ZERO)),
                                   "computed_balance": as_float(calculado),
                                   "migrated_by": user_id,
                               })
                db.commit()
                actualizados += 1

        results.append({
            "organization_id": org.id,
            "organization_name": org.name,
            "members_processed": len(member_ids),
            "advance_balances_updated": actualizados,
        })
        logger.info(f"[migrate_advance] {org.name}: {actualizados} saldos actualizados de {len(member_ids)} miembros")

    return {"success": True, "results": results}
