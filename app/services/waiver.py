"""
Condonación de cuotas
app/services/waiver.py

Solo administradores. Cierra una cuota unpaid/partial sin pago:
    waived_amount += amount - paid_amount
    paid_amount    = amount
    status         = paid
"""

import logging
from typing import Optional

from sqlalchemy.orm import Session

from app.config import WAIVER_MIN_REASON
from app.models import DueStatus, LogAction
from app.services.audit import log_admin_action
from app.services.balance_tracker import write_log
from app.services.errors import LedgerValidationError
from app.services.ledger_queries import get_due
from app.services.locks import member_lock, retry_on_conflict
from app.services.settlement import money, as_float

logger = logging.getLogger(__name__)


@retry_on_conflict
def waive_due(db: Session, due_id: int, reason: str, organization_id: Optional[int] = None,
              user_id: Optional[int] = None) -> dict:
    reason = (reason or "").strip()
    if len(reason) < WAIVER_MIN_REASON:
        raise LedgerValidationError(f"Reason must be at least {WAIVER_MIN_REASON} characters")

    due = get_due(db, due_id, organization_id)

    with member_lock(due.organization_id, due.member_id):
        due = get_due(db, due_id, lock=True)
        if due.status == DueStatus.PAID.value:
            raise LedgerValidationError("Cannot waive a paid due")

        antes = {
            "status": due.status,
            "paid_amount": as_float(due.paid_amount),
            "waived_amount": as_float(due.waived_amount),
        }
        condonado = money(due.amount) - money(due.paid_amount)

        due.waived_amount = money(due.waived_amount) + condonado
        due.paid_amount = money(due.amount)
        due.status = DueStatus.PAID.value

        write_log(db, due.organization_id, due.member_id, LogAction.DUE_WAIVED.value,
                  subject_id=due.id, subject_type="due", details={
                      "original_amount": as_float(due.amount),
                      "paid_before_waiver": antes["paid_amount"],
                      "waived_amount": as_float(condonado),
                      "reason": reason,
                      "waived_by": user_id,
                  })
        log_admin_action(
            db, due.organization_id, user_id, "DUE_WAIVED",
            entity_type="due", entity_id=due.id,
            before_state=antes,
            after_state={
                "status": due.status,
                "paid_amount": as_float(due.paid_amount),
                "waived_amount": as_float(due.waived_amount),
            },
            details={"reason": reason},
        )
        db.commit()

    logger.info(f"[waiver] cuota #{due_id} condonada: {condonado} (usuario {user_id})")
    return {"success": True, "due_id": due_id, "waived_amount": as_float(condonado)}
