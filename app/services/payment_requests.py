"""
Solicitudes de pago del miembro y aprobación del administrador
app/services/payment_requests.py

Flujo:
  1. Miembro: POST /api/payments/request → pago `pending` online con
     approval = Requested
  2. Admin:   POST /api/payments/{id}/approve → checkout en la pasarela,
     approval = Approved, se notifica el link al miembro
  3. Pasarela: webhook `completed` → conciliación (payment_status.py)
"""

import logging
import secrets
import time
from datetime import datetime, timezone
from typing import Optional
from urllib.parse import urlparse

from sqlalchemy.orm import Session

from app.config import PUBLIC_BASE_URL
from app.models import Payment, PaymentStatus, PaymentType
from app.services.audit import log_admin_action, log_payment_event
from app.services.errors import LedgerForbidden, LedgerGatewayError, LedgerValidationError
from app.services.gateway import get_gateway
from app.services.ledger_queries import get_due, get_payment
from app.services.notifications import get_dispatcher
from app.services.payment_approval import (
    Approved, NoApproval, Requested, approve, dump_approval, parse_approval,
)
from app.services.settlement import money, as_float

logger = logging.getLogger(__name__)


def request_reference() -> str:
    return f"MREQ-{int(time.time() * 1000)}-{secrets.token_hex(3).upper()}"


def request_member_payment(db: Session, organization_id: int, member_id: int, due_id: int,
                           amount, user_id: Optional[int] = None) -> dict:
    amount = money(amount)
    if amount <= 0:
        raise LedgerValidationError("Amount must be greater than zero")

    due = get_due(db, due_id, organization_id)
    if due.member_id != member_id:
        raise LedgerForbidden("You are not authorized to request payment for this due")

    restante = money(due.amount) - money(due.paid_amount)
    if amount > restante:
        raise LedgerValidationError(f"Amount cannot exceed remaining due: {restante}")

    ligados = db.query(Payment).filter(
        Payment.linked_due_id == due.id,
        Payment.status.in_([PaymentStatus.PAID.value, PaymentStatus.PENDING.value]),
    ).all()
    if any(p.status == PaymentStatus.PAID.value for p in ligados):
        raise LedgerValidationError("This due has already been paid")
    if any(isinstance(parse_approval(p.approval), Requested) for p in ligados):
        raise LedgerValidationError("A payment request is already pending approval")

    pago = Payment(
        organization_id=organization_id,
        member_id=member_id,
        contribution_type_id=due.contribution_type_id,
        amount=amount,
        status=PaymentStatus.PENDING.value,
        payment_type=PaymentType.ONLINE.value,
        channel="other",
        linked_due_id=due.id,
        reference=request_reference(),
        approval=dump_approval(Requested(at=datetime.now(timezone.utc), by=user_id)),
    )
    db.add(pago)
    db.flush()
    log_payment_event(db, pago, "PAYMENT_REQUESTED", details={"due_id": due.id, "amount": as_float(amount)})
    db.commit()

    logger.info(f"[request] miembro {member_id} solicita {amount} para cuota #{due.id} (pago #{pago.id})")
    get_dispatcher().dispatch(
        organization_id, "payment_request", "New payment request",
        f"A member requested to pay {amount} for {due.period}.",
        data={"payment_id": pago.id, "due_id": due.id},
    )

    return {
        "success": True,
        "payment_id": pago.id,
        "reference": pago.reference,
        "amount": as_float(amount),
        "status": pago.status,
        "message": "Payment request submitted and awaiting approval",
    }


def approve_payment_request(db: Session, organization_id: int, payment_id: int,
                            user_id: Optional[int] = None, origin: Optional[str] = None) -> dict:
    payment = get_payment(db, payment_id, organization_id)

    estado = parse_approval(payment.approval)
    if isinstance(estado, NoApproval):
        raise LedgerValidationError("This payment was not requested by a member")
    if isinstance(estado, Approved):
        raise LedgerValidationError("Payment has already been approved")
    if payment.status != PaymentStatus.PENDING.value:
        raise LedgerValidationError(f"Cannot approve payment with status: {payment.status}")

    member = payment.member
    origin = (origin or PUBLIC_BASE_URL).rstrip("/")
    dominio = urlparse(PUBLIC_BASE_URL).hostname or "localhost"

    checkout = get_gateway().create_checkout(
        full_name=member.name,
        email=member.email or f"{member.id}@{dominio}",
        amount=money(payment.amount),
        metadata={
            "payment_id": payment.id,
            "tenant_id": organization_id,
            "member_id": member.id,
            "reference": payment.reference,
        },
        redirect_url=f"{origin}/member/payments?status=success&ref={payment.reference}",
        cancel_url=f"{origin}/member/payments?status=cancelled&ref={payment.reference}",
        webhook_url=f"{PUBLIC_BASE_URL.rstrip('/')}/api/webhooks/gateway",
    )

    if not checkout["success"]:
        log_payment_event(db, payment, "PAYMENT_FAILED", previous_status=payment.status, details={
            "gateway_error": checkout.get("error"),
            "approval_failed": True,
        })
        db.commit()
        logger.error(f"[approve] pasarela rechazó el pago #{payment.id}: {checkout.get('error')}")
        raise LedgerGatewayError(checkout.get("error") or "Failed to create payment link")

    payment.invoice_id = checkout["invoice_id"]
    payment.payment_url = checkout["payment_url"]
    payment.approval = dump_approval(approve(estado, datetime.now(timezone.utc), user_id))

    log_payment_event(db, payment, "PAYMENT_APPROVED", previous_status=payment.status, details={
        "invoice_id": payment.invoice_id,
        "member_id": member.id,
    })
    log_admin_action(
        db, organization_id, user_id, "PAYMENT_APPROVED",
        entity_type="payment", entity_id=payment.id,
        before_state={"approval": Requested.kind},
        after_state={"approval": Approved.kind, "invoice_id": payment.invoice_id},
    )
    db.commit()

    get_dispatcher().dispatch(
        organization_id, "payment_approved", "Payment Approved",
        f"Your payment request of {money(payment.amount)} has been approved. Click to pay now.",
        member_id=member.id,
        data={"payment_id": payment.id, "payment_url": payment.payment_url, "amount": as_float(payment.amount)},
    )
    logger.info(f"[approve] pago #{payment.id} aprobado, invoice {payment.invoice_id}")

    return {
        "success": True,
        "payment_id": payment.id,
        "invoice_id": payment.invoice_id,
        "payment_url": payment.payment_url,
    }
