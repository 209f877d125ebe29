"""
Reversa de un pago ya conciliado
app/services/reversal.py

Cuando un pago conciliado se cancela / falla / reembolsa:

1. Cada cuota que el pago tocó (allocations + linked_due_id) se RECALCULA
   desde la fuente, no se resta:
       paid = Σ allocations de otros pagos aún `paid`
            + advance_applied_total + waived_amount       (tope: amount)
2. Se debita Payment.advance_applied_amount del saldo a favor (piso 0).
3. Un log PAYMENT_REVERSED, reversed_at, audit.

Con reversed_at ya puesto la llamada es un no-op exitoso.
"""

import logging
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

from app.models import Due, LogAction, Payment, PaymentAllocation, PaymentStatus
from app.services.audit import log_admin_action, log_payment_event
from app.services.balance_tracker import BalanceTracker, write_log
from app.services.errors import LedgerValidationError
from app.services.ledger_queries import get_payment
from app.services.locks import member_lock, retry_on_conflict
from app.services.notifications import get_dispatcher
from app.services.settlement import ZERO, money, as_float, status_for

logger = logging.getLogger(__name__)

REVERSAL_STATUSES = (
    PaymentStatus.CANCELLED.value,
    PaymentStatus.FAILED.value,
    PaymentStatus.REFUNDED.value,
)


def _paid_from_source(db: Session, due: Due, excluded_payment_id: int) -> tuple:
    """(monto recalculado, monto sin tope) para la cuota, excluyendo un pago."""
    otros = db.query(func.coalesce(func.sum(PaymentAllocation.amount), 0)).join(
        Payment, Payment.id == PaymentAllocation.payment_id,
    ).filter(
        PaymentAllocation.due_id == due.id,
        Payment.id != excluded_payment_id,
        Payment.status == PaymentStatus.PAID.value,
        Payment.reversed_at.is_(None),
    ).scalar()
    bruto = money(otros) + money(due.advance_applied_total) + money(due.waived_amount)
    return min(bruto, money(due.amount)), bruto


@retry_on_conflict
def reverse_payment(
    db: Session,
    payment_id: int,
    organization_id: Optional[int] = None,
    new_status: str = PaymentStatus.CANCELLED.value,
    user_id: Optional[int] = None,
    reason: Optional[str] = None,
    notify: bool = True,
) -> dict:
    if new_status not in REVERSAL_STATUSES:
        raise LedgerValidationError(f"Invalid reversal status '{new_status}'")

    payment = get_payment(db, payment_id, organization_id)
    if payment.reversed_at is not None:
        return {"success": True, "already_reversed": True, "payment_id": payment.id, "status": payment.status}
    if payment.settled_at is None:
        raise LedgerValidationError("Payment has not been reconciled; nothing to reverse")

    org_id, member_id = payment.organization_id, payment.member_id

    with member_lock(org_id, member_id):
        payment = get_payment(db, payment_id, lock=True)
        if payment.reversed_at is not None:
            return {"success": True, "already_reversed": True, "payment_id": payment.id, "status": payment.status}

        estado_anterior = payment.status
        if payment.status == PaymentStatus.PAID.value:
            payment.status = new_status
        db.flush()

        # ── 1. Recalcular cada cuota tocada ───────────────────────────────────
        due_ids = {a.due_id for a in payment.allocations}
        if payment.linked_due_id:
            due_ids.add(payment.linked_due_id)

        dues = db.query(Due).filter(Due.id.in_(due_ids)).order_by(Due.id).with_for_update() \
            .populate_existing().all() if due_ids else []

        dues_reversed = []
        for due in dues:
            anterior = money(due.paid_amount)
            recalculado, bruto = _paid_from_source(db, due, payment.id)
            if bruto > recalculado:
                write_log(db, org_id, member_id, LogAction.BALANCE_ANOMALY.value,
                          subject_id=due.id, subject_type="due", details={
                              "anomaly": "source_exceeds_due_amount",
                              "due_amount": as_float(due.amount),
                              "source_total": as_float(bruto),
                              "payment_id": payment.id,
                          })
                logger.warning(f"[reversal] cuota #{due.id}: fuente {bruto} excede monto {due.amount}, recortado")
            due.paid_amount = recalculado
            due.status = status_for(recalculado, due.amount)
            dues_reversed.append({
                "due_id": due.id,
                "period": due.period,
                "previous_paid": as_float(anterior),
                "new_paid": as_float(recalculado),
                "amount_reversed": as_float(anterior - recalculado),
                "new_status": due.status,
            })

        # ── 2. Deshacer el crédito a favor ────────────────────────────────────
        tracker = BalanceTracker(db, org_id)
        a_revertir = money(payment.advance_applied_amount)
        resumen = {
            "payment_amount": as_float(payment.amount),
            "previous_status": estado_anterior,
            "new_status": payment.status,
            "dues_reversed": dues_reversed,
            "advance_to_reverse": as_float(a_revertir),
            "reason": reason,
        }
        if a_revertir > 0:
            debitado = tracker.debit(member_id, a_revertir, LogAction.PAYMENT_REVERSED.value,
                                     subject_id=payment.id, details=resumen)
        else:
            debitado = ZERO
            write_log(db, org_id, member_id, LogAction.PAYMENT_REVERSED.value,
                      subject_id=payment.id, details=resumen)

        # ── 3. Marcar y auditar ───────────────────────────────────────────────
        payment.reversed_at = datetime.now(timezone.utc)
        log_payment_event(db, payment, "PAYMENT_REVERSED", previous_status=estado_anterior, details={
            "advance_reversed": as_float(debitado),
            "dues_reversed": [d["due_id"] for d in dues_reversed],
        })
        log_admin_action(
            db, org_id, user_id, "PAYMENT_REVERSED",
            entity_type="payment", entity_id=payment.id,
            before_state={"status": estado_anterior},
            after_state={"status": payment.status},
            details={"reason": reason, "advance_reversed": as_float(debitado)},
        )
        estado_final = payment.status
        db.commit()

    logger.info(
        f"[reversal] pago #{payment_id} ({estado_anterior} → {estado_final}): "
        f"{len(dues_reversed)} cuotas recalculadas, a favor -{debitado}"
    )

    if notify:
        get_dispatcher().dispatch(
            org_id, "payment_reversed", "Payment reversed",
            f"Your payment {payment.reference} was {estado_final}; its effect on your dues was reversed.",
            member_id=member_id, data={"payment_id": payment_id},
        )

    return {
        "success": True,
        "payment_id": payment_id,
        "status": estado_final,
        "dues_reversed": dues_reversed,
        "advance_reversed": as_float(debitado),
        "advance_shortfall": as_float(a_revertir - debitado),
    }
