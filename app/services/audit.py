"""
Auditoría administrativa
app/services/audit.py

Registra acciones de administradores (bulk, condonaciones, reversas,
rechazos por tope anual) y transiciones de estado de pagos.
No hace commit: viaja en la transacción de quien llama.
"""

import logging
from typing import Optional

from sqlalchemy.orm import Session

from app.models import AuditLog, PaymentLog

logger = logging.getLogger(__name__)


def log_admin_action(
    db: Session,
    organization_id: Optional[int],
    user_id: Optional[int],
    action: str,
    entity_type: str = "payment",
    entity_id: Optional[int] = None,
    before_state: Optional[dict] = None,
    after_state: Optional[dict] = None,
    details: Optional[dict] = None,
) -> AuditLog:
    entry = AuditLog(
        organization_id=organization_id,
        user_id=user_id,
        action=action,
        entity_type=entity_type,
        entity_id=entity_id,
        before_state=before_state,
        after_state=after_state,
        details=details,
    )
    db.add(entry)
    logger.info(f"[audit] {action} org={organization_id} user={user_id} {entity_type}#{entity_id}")
    return entry


def log_payment_event(
    db: Session,
    payment,
    action: str,
    previous_status: Optional[str] = None,
    details: Optional[dict] = None,
) -> PaymentLog:
    entry = PaymentLog(
        payment_id=payment.id,
        organization_id=payment.organization_id,
        action=action,
        previous_status=previous_status,
        new_status=payment.status,
        details=details or {},
    )
    db.add(entry)
    return entry
