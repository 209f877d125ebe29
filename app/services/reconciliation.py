"""
Conciliación de un pago confirmado
app/services/reconciliation.py

Usada por:
  1. Webhook / verificación de pasarela (pending → paid)
  2. Admin: POST /api/payments/{id}/reconcile
  3. Admin: POST /api/dues/{id}/apply-advance (apply_advance_to_due)

Un pago `paid` se reparte entre TODAS las cuotas abiertas del miembro,
de la más antigua a la más nueva. El sobrante va a saldo a favor y queda
en Payment.advance_applied_amount para que la reversa lo deshaga exacto.

Idempotente: con settled_at ya puesto se devuelve el efecto registrado
en el log PAYMENT_RECONCILED, sin tocar nada.
"""

import logging
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy.orm import Session

from app.config import APP_TZ
from app.models import (
    DueStatus, LogAction, Payment, PaymentAllocation, PaymentStatus, ReconciliationLog,
)
from app.services.balance_tracker import BalanceTracker, write_log
from app.services.ledger_queries import get_due, get_payment, open_dues_oldest_first
from app.services.locks import member_lock, retry_on_conflict
from app.services.notifications import get_dispatcher
from app.services.settlement import DueSnapshot, money, as_float, settle, status_for

logger = logging.getLogger(__name__)


def _cached_effect(db: Session, payment: Payment) -> dict:
    """Reconstruye el resultado desde el log PAYMENT_RECONCILED del pago."""
    entry = db.query(ReconciliationLog).filter(
        ReconciliationLog.subject_type == "payment",
        ReconciliationLog.subject_id == payment.id,
        ReconciliationLog.action == LogAction.PAYMENT_RECONCILED.value,
    ).order_by(ReconciliationLog.id.asc()).first()
    details = (entry.details if entry else None) or {}
    balance = BalanceTracker(db, payment.organization_id).balance_of(payment.member_id)

    return {
        "success": True,
        "cached": True,
        "payment_id": payment.id,
        "dues_settled": details.get("dues_settled", []),
        "advance_added": details.get("advance_added", as_float(payment.advance_applied_amount)),
        "advance_balance": as_float(balance),
        "total_applied": details.get("total_applied", 0.0),
    }


@retry_on_conflict
def reconcile_payment(db: Session, payment_id: int, organization_id: Optional[int] = None,
                      notify: bool = True) -> dict:
    """
    Imputa un pago `paid` a las cuotas abiertas del miembro (FIFO por periodo).

    Returns:
        dict con: dues_settled[], advance_balance, total_applied, advance_added
    """
    payment = get_payment(db, payment_id, organization_id)

    if payment.status != PaymentStatus.PAID.value:
        logger.info(f"[reconcile] pago #{payment.id} en estado '{payment.status}', nada que conciliar")
        return {
            "success": True,
            "skipped": True,
            "status": payment.status,
            "payment_id": payment.id,
            "dues_settled": [],
            "advance_balance": as_float(
                BalanceTracker(db, payment.organization_id).balance_of(payment.member_id)
            ),
            "total_applied": 0.0,
        }

    if payment.settled_at is not None:
        return _cached_effect(db, payment)

    org_id, member_id = payment.organization_id, payment.member_id

    with member_lock(org_id, member_id):
        # Relectura bajo lock: otro hilo pudo conciliarlo mientras esperábamos
        payment = get_payment(db, payment_id, lock=True)
        if payment.settled_at is not None:
            return _cached_effect(db, payment)

        # ── Imputar FIFO ──────────────────────────────────────────────────────
        dues = open_dues_oldest_first(db, org_id, member_id)
        por_id = {d.id: d for d in dues}
        resultado = settle(payment.amount, [DueSnapshot.of(d) for d in dues])

        dues_settled = []
        for aplicacion in resultado.touched:
            due = por_id[aplicacion.due.id]
            due.paid_amount = aplicacion.due.paid_amount
            due.status = aplicacion.new_status
            db.add(PaymentAllocation(payment_id=payment.id, due_id=due.id, amount=aplicacion.amount_applied))
            dues_settled.append({
                "due_id": due.id,
                "period": due.period,
                "amount_applied": as_float(aplicacion.amount_applied),
                "previous_paid": as_float(aplicacion.previous_paid),
                "new_status": aplicacion.new_status,
            })

        if payment.linked_due_id is None and dues_settled:
            payment.linked_due_id = dues_settled[0]["due_id"]

        # ── Sobrante → saldo a favor (un solo log para todo el efecto) ───────
        tracker = BalanceTracker(db, org_id)
        sobrante = resultado.remainder
        resumen = {
            "payment_amount": as_float(payment.amount),
            "dues_settled": dues_settled,
            "total_applied": as_float(resultado.total_applied),
            "advance_added": as_float(sobrante),
        }
        if sobrante > 0:
            saldo = tracker.credit(member_id, sobrante, LogAction.PAYMENT_RECONCILED.value,
                                   subject_id=payment.id, details=resumen)
        else:
            saldo = tracker.balance_of(member_id)
            write_log(db, org_id, member_id, LogAction.PAYMENT_RECONCILED.value,
                      subject_id=payment.id, details={**resumen, "total_advance_balance": as_float(saldo)})

        payment.advance_applied_amount = sobrante
        payment.settled_at = datetime.now(timezone.utc)
        if payment.payment_date is None:
            payment.payment_date = datetime.now(APP_TZ).date()
        db.commit()

    logger.info(
        f"[reconcile] pago #{payment_id}: {len(dues_settled)} cuotas, "
        f"aplicado {resultado.total_applied}, a favor +{sobrante} (saldo {saldo})"
    )

    if notify:
        get_dispatcher().dispatch(
            org_id, "payment_reconciled", "Payment applied",
            f"Your payment of {money(resultado.total_applied + sobrante)} was applied "
            f"to {len(dues_settled)} due(s).",
            member_id=member_id,
            data={"payment_id": payment_id, "advance_balance": as_float(saldo)},
        )

    return {
        "success": True,
        "payment_id": payment_id,
        "dues_settled": dues_settled,
        "advance_added": as_float(sobrante),
        "advance_balance": as_float(saldo),
        "total_applied": as_float(resultado.total_applied),
    }


@retry_on_conflict
def apply_advance_to_due(db: Session, due_id: int, organization_id: Optional[int] = None) -> dict:
    """
    Usa el saldo a favor del miembro para cubrir una cuota puntual.

    Returns:
        dict con: advance_applied, remaining_advance, new_status
    """
    due = get_due(db, due_id, organization_id)
    org_id, member_id = due.organization_id, due.member_id
    tracker = BalanceTracker(db, org_id)

    with member_lock(org_id, member_id):
        due = get_due(db, due_id, lock=True)
        saldo = tracker.balance_of(member_id)

        if due.status == DueStatus.PAID.value:
            return {
                "success": True,
                "advance_applied": 0.0,
                "remaining_advance": as_float(saldo),
                "new_status": due.status,
                "message": "Due is already paid",
            }
        if saldo <= 0:
            return {
                "success": True,
                "advance_applied": 0.0,
                "remaining_advance": 0.0,
                "new_status": due.status,
                "message": "No advance balance available",
            }

        aplicacion = settle(saldo, [DueSnapshot.of(due)]).applications[0]
        debitado = tracker.debit(
            member_id, aplicacion.amount_applied, LogAction.ADVANCE_APPLIED_TO_DUE.value,
            subject_id=due.id, subject_type="due",
            details={
                "due_id": due.id,
                "due_month": due.period,
                "due_amount": as_float(due.amount),
                "previous_paid": as_float(due.paid_amount),
                "new_status": aplicacion.new_status,
            },
        )
        due.paid_amount = money(due.paid_amount) + debitado
        due.advance_applied_total = money(due.advance_applied_total) + debitado
        due.status = status_for(due.paid_amount, due.amount)
        restante = saldo - debitado
        new_status = due.status
        db.commit()

    logger.info(f"[advance] cuota #{due_id}: aplicado {debitado}, saldo restante {restante}")
    return {
        "success": True,
        "advance_applied": as_float(debitado),
        "remaining_advance": as_float(restante),
        "new_status": new_status,
    }
