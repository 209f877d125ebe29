"""
Transiciones de estado reportadas por la pasarela
app/services/payment_status.py

Usada por:
  1. POST /api/webhooks/gateway   (WEBHOOK_RECEIVED)
  2. POST /api/payments/verify    (PAYMENT_VERIFIED)

Reglas:
  - paid/refunded con verified_at → ya procesado, no se toca.
  - pending → X: se aplica X. Si X es paid, se concilia.
  - cualquier estado → paid: se aplica y se concilia.
  - el resto se registra en payment_logs sin cambiar el estado.

Un pago que la pasarela ya confirmó no se revierte por aquí: la reversa
va por POST /api/payments/{id}/reverse (reverse_payment).
"""

import hmac
import logging
from datetime import datetime, timezone
from decimal import InvalidOperation

from sqlalchemy.orm import Session

from app.config import APP_TZ
from app.models import Payment, PaymentStatus
from app.services.audit import log_payment_event
from app.services.errors import (
    LedgerError, LedgerForbidden, LedgerGatewayError, LedgerUnauthorized, LedgerValidationError,
)
from app.services.gateway import get_gateway, map_method, map_status
from app.services.ledger_queries import get_payment
from app.services.reconciliation import reconcile_payment
from app.services.settlement import money

logger = logging.getLogger(__name__)

FINAL_STATUSES = (PaymentStatus.PAID.value, PaymentStatus.REFUNDED.value)


def _as_money(value):
    try:
        return money(value) if value not in (None, "") else None
    except (InvalidOperation, TypeError, ValueError):
        return None


def apply_gateway_result(db: Session, payment: Payment, data: dict, action: str) -> dict:
    """Aplica el estado informado por la pasarela y concilia si pasó a paid."""
    previous = payment.status

    if previous in FINAL_STATUSES and payment.verified_at is not None:
        logger.info(f"[gateway] pago #{payment.id} ya en estado final, se ignora {action}")
        return {"payment_id": payment.id, "status": "already_processed"}

    gateway_status = (data.get("status") or "").lower()
    new_status = map_status(gateway_status)

    conciliar = new_status == PaymentStatus.PAID.value and previous != PaymentStatus.PAID.value

    payment.verified_at = datetime.now(timezone.utc)
    clave = "webhook_payload" if action == "WEBHOOK_RECEIVED" else "gateway_response"
    payment.gateway_metadata = {**(payment.gateway_metadata or {}), clave: data}

    if conciliar:
        payment.status = new_status
        payment.payment_date = datetime.now(APP_TZ).date()
        payment.channel = map_method(data.get("payment_method"))
        payment.transaction_id = data.get("transaction_id")
        payment.fee = _as_money(data.get("fee"))
    elif previous == PaymentStatus.PENDING.value:
        payment.status = new_status

    log_payment_event(db, payment, action, previous_status=previous, details={
        "gateway_status": gateway_status,
        "transaction_id": data.get("transaction_id"),
        "payment_method": data.get("payment_method"),
        "sender_number": data.get("sender_number"),
        "amount": data.get("amount"),
        "fee": data.get("fee"),
    })
    db.commit()

    logger.info(f"[gateway] pago #{payment.id}: {previous} → {new_status} ({action})")

    efecto = reconcile_payment(db, payment.id) if conciliar else None

    return {"payment_id": payment.id, "status": payment.status, "previous_status": previous, "effect": efecto}


def handle_gateway_webhook(db: Session, api_key: str, payload: dict) -> dict:
    gateway = get_gateway()
    if not gateway.configured:
        logger.error("[webhook] GATEWAY_API_KEY no configurado")
        raise LedgerError("Configuration error", status_code=500)
    if not api_key or not hmac.compare_digest(api_key, gateway.api_key):
        logger.warning("[webhook] API key inválida")
        raise LedgerUnauthorized("Unauthorized")

    invoice_id = (payload or {}).get("invoice_id")
    if not invoice_id:
        raise LedgerValidationError("Invalid payload")

    payment = db.query(Payment).filter(Payment.invoice_id == invoice_id).first()
    if not payment:
        # 200 igual: la pasarela no debe reintentar algo que nunca vamos a encontrar
        logger.warning(f"[webhook] pago no encontrado para invoice {invoice_id}")
        return {"received": True, "warning": "Payment not found"}

    return {"received": True, **apply_gateway_result(db, payment, payload, "WEBHOOK_RECEIVED")}


def verify_payment(db: Session, organization_id: int, payment_id: int = None,
                   reference: str = None, member_id: int = None) -> dict:
    """Consulta a la pasarela el estado de un pago online y lo aplica."""
    if payment_id:
        payment = get_payment(db, payment_id, organization_id)
    elif reference:
        payment = db.query(Payment).filter(
            Payment.organization_id == organization_id,
            Payment.reference == reference,
        ).first()
        if not payment:
            raise LedgerValidationError("Payment not found for reference")
    else:
        raise LedgerValidationError("payment_id or reference is required")

    if member_id is not None and payment.member_id != member_id:
        raise LedgerForbidden("You are not authorized to verify this payment")

    if not payment.invoice_id:
        raise LedgerValidationError("Payment was not properly initiated")

    if payment.status in FINAL_STATUSES and payment.verified_at is not None:
        return {"payment_id": payment.id, "status": "already_processed"}

    result = get_gateway().verify(payment.invoice_id)
    if not result["success"]:
        raise LedgerGatewayError(f"Failed to verify payment: {result.get('error')}")

    return apply_gateway_result(db, payment, result["data"], "PAYMENT_VERIFIED")
