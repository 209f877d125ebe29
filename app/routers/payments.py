"""
Router: Pagos
app/routers/payments.py

Endpoints:
  ADMIN:
    POST /api/payments/bulk                      → Registro masivo offline (admin, manager)
    POST /api/payments/{payment_id}/reconcile    → Conciliar pago paid (admin, manager)
    POST /api/payments/{payment_id}/reverse      → Revertir pago conciliado (admin, manager)
    POST /api/payments/{payment_id}/approve      → Aprobar solicitud del miembro (admin, manager)

  MIEMBRO:
    POST /api/payments/request                   → Solicitar pago online de una cuota

  PASARELA:
    POST /api/payments/verify                    → Consultar estado en la pasarela
"""

import logging
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Request
from pydantic import BaseModel
from sqlalchemy.orm import Session

from app.database import get_db
from app.middleware.authorization import Caller, get_caller, rate_limited, require_role
from app.services.bulk_payments import record_bulk_payments
from app.services.errors import LedgerError
from app.services.payment_requests import approve_payment_request, request_member_payment
from app.services.payment_status import verify_payment
from app.services.reconciliation import reconcile_payment
from app.services.reversal import reverse_payment

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/payments", tags=["payments"])


# ══════════════════════════════════════════════════════════
# SCHEMAS
# ══════════════════════════════════════════════════════════

class BulkPaymentEntry(BaseModel):
    member_id: Optional[int] = None
    amount: float
    notes: Optional[str] = None


class BulkPaymentsRequest(BaseModel):
    category_id: int
    payment_date: Optional[str] = None           # 'YYYY-MM-DD', default hoy
    channel: str = "cash"                        # cash, bank, bkash, nagad, ...
    reference: Optional[str] = None
    notes: Optional[str] = None
    entries: List[BulkPaymentEntry]


class ReverseRequest(BaseModel):
    new_status: str = "cancelled"                # cancelled | failed | refunded
    reason: Optional[str] = None


class MemberPaymentRequest(BaseModel):
    due_id: int
    amount: float


class VerifyRequest(BaseModel):
    payment_id: Optional[int] = None
    reference: Optional[str] = None


# ══════════════════════════════════════════════════════════
# ADMIN
# ══════════════════════════════════════════════════════════

@router.post("/bulk")
def registrar_pagos_masivos(
    data: BulkPaymentsRequest,
    caller: Caller = Depends(require_role("admin", "manager")),
    _: None = Depends(rate_limited("payment")),
    db: Session = Depends(get_db),
):
    try:
        return record_bulk_payments(
            db, caller.organization_id, data.category_id,
            entries=[{"member_id": e.member_id, "amount": e.amount, "notes": e.notes} for e in data.entries],
            payment_date=data.payment_date,
            channel=data.channel,
            reference=data.reference,
            notes=data.notes,
            user_id=caller.user_id,
        )
    except LedgerError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)


@router.post("/{payment_id}/reconcile")
def conciliar_pago(
    payment_id: int,
    caller: Caller = Depends(require_role("admin", "manager")),
    _: None = Depends(rate_limited("api")),
    db: Session = Depends(get_db),
):
    try:
        return reconcile_payment(db, payment_id, organization_id=caller.organization_id)
    except LedgerError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)


@router.post("/{payment_id}/reverse")
def revertir_pago(
    payment_id: int,
    data: Optional[ReverseRequest] = None,
    caller: Caller = Depends(require_role("admin", "manager")),
    _: None = Depends(rate_limited("api")),
    db: Session = Depends(get_db),
):
    data = data or ReverseRequest()
    try:
        return reverse_payment(
            db, payment_id, organization_id=caller.organization_id,
            new_status=data.new_status, user_id=caller.user_id, reason=data.reason,
        )
    except LedgerError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)


@router.post("/{payment_id}/approve")
def aprobar_solicitud(
    payment_id: int,
    request: Request,
    caller: Caller = Depends(require_role("admin", "manager")),
    _: None = Depends(rate_limited("payment")),
    db: Session = Depends(get_db),
):
    try:
        return approve_payment_request(
            db, caller.organization_id, payment_id,
            user_id=caller.user_id, origin=request.headers.get("origin"),
        )
    except LedgerError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)


# ══════════════════════════════════════════════════════════
# MIEMBRO
# ══════════════════════════════════════════════════════════

@router.post("/request")
def solicitar_pago(
    data: MemberPaymentRequest,
    caller: Caller = Depends(require_role("member")),
    _: None = Depends(rate_limited("payment")),
    db: Session = Depends(get_db),
):
    if not caller.member_id:
        raise HTTPException(status_code=403, detail="Token is not linked to a member")
    try:
        return request_member_payment(
            db, caller.organization_id, caller.member_id, data.due_id, data.amount,
            user_id=caller.user_id,
        )
    except LedgerError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)


# ══════════════════════════════════════════════════════════
# PASARELA
# ══════════════════════════════════════════════════════════

@router.post("/verify")
def verificar_pago(
    data: VerifyRequest,
    caller: Caller = Depends(get_caller),
    _: None = Depends(rate_limited("payment")),
    db: Session = Depends(get_db),
):
    try:
        return verify_payment(
            db, caller.organization_id, payment_id=data.payment_id, reference=data.reference,
            member_id=caller.member_id if caller.role == "member" else None,
        )
    except LedgerError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)
