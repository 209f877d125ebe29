"""
Router: Cuotas
app/routers/dues.py

Endpoints:
  CUOTAS:
    POST /api/dues/bulk                         → Generación masiva (admin)
    POST /api/dues/{due_id}/apply-advance       → Aplicar saldo a favor (admin, manager)
    POST /api/dues/{due_id}/waive               → Condonar (admin)

  TOPE ANUAL:
    GET  /api/members/{member_id}/yearly-summary → Resumen anual
    POST /api/yearly-cap/validate                → ¿Cabe el monto en el tope?
"""

import logging
from typing import List, Optional, Union

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel
from sqlalchemy.orm import Session

from app.database import get_db
from app.middleware.authorization import Caller, get_caller, rate_limited, require_role
from app.services.bulk_dues import ALL_ACTIVE, generate_bulk_dues
from app.services.errors import LedgerError
from app.services.reconciliation import apply_advance_to_due
from app.services.waiver import waive_due
from app.services.yearly_cap import validate_yearly_cap, yearly_summary

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["dues"])


# ══════════════════════════════════════════════════════════
# SCHEMAS
# ══════════════════════════════════════════════════════════

class BulkDuesRequest(BaseModel):
    category_id: int
    period: str                                  # 'YYYY-MM'
    amount: float
    targets: Union[str, List[int]] = ALL_ACTIVE  # "all_active" o lista de member_id
    notes: Optional[str] = None


class WaiveRequest(BaseModel):
    reason: str


class YearlyCapRequest(BaseModel):
    member_id: int
    amount: float
    kind: str = "payment"                        # payment | due_generation
    year: Optional[int] = None


# ══════════════════════════════════════════════════════════
# CUOTAS
# ══════════════════════════════════════════════════════════

@router.post("/dues/bulk")
def crear_cuotas_masivas(
    data: BulkDuesRequest,
    caller: Caller = Depends(require_role("admin")),
    _: None = Depends(rate_limited("api")),
    db: Session = Depends(get_db),
):
    try:
        return generate_bulk_dues(
            db, caller.organization_id, data.category_id, data.period, data.amount,
            targets=data.targets, notes=data.notes, user_id=caller.user_id,
        )
    except LedgerError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)


@router.post("/dues/{due_id}/apply-advance")
def aplicar_saldo_a_cuota(
    due_id: int,
    caller: Caller = Depends(require_role("admin", "manager")),
    _: None = Depends(rate_limited("api")),
    db: Session = Depends(get_db),
):
    try:
        return apply_advance_to_due(db, due_id, organization_id=caller.organization_id)
    except LedgerError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)


@router.post("/dues/{due_id}/waive")
def condonar_cuota(
    due_id: int,
    data: WaiveRequest,
    caller: Caller = Depends(require_role("admin")),
    _: None = Depends(rate_limited("api")),
    db: Session = Depends(get_db),
):
    try:
        return waive_due(db, due_id, data.reason, organization_id=caller.organization_id,
                         user_id=caller.user_id)
    except LedgerError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)


# ══════════════════════════════════════════════════════════
# TOPE ANUAL
# ══════════════════════════════════════════════════════════

@router.get("/members/{member_id}/yearly-summary")
def resumen_anual(
    member_id: int,
    year: Optional[int] = Query(None),
    caller: Caller = Depends(get_caller),
    _: None = Depends(rate_limited("api")),
    db: Session = Depends(get_db),
):
    """Admin y manager ven cualquier miembro; un miembro solo el suyo."""
    if caller.role == "member" and caller.member_id != member_id:
        raise HTTPException(status_code=403, detail="You can only view your own summary")
    try:
        return yearly_summary(db, caller.organization_id, member_id, year).to_dict()
    except LedgerError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)


@router.post("/yearly-cap/validate")
def validar_tope_anual(
    data: YearlyCapRequest,
    caller: Caller = Depends(require_role("admin", "manager")),
    _: None = Depends(rate_limited("api")),
    db: Session = Depends(get_db),
):
    try:
        result = validate_yearly_cap(
            db, caller.organization_id, data.member_id, data.amount,
            kind=data.kind, year=data.year, user_id=caller.user_id,
        )
        # El rechazo deja audit
        db.commit()
        return result
    except LedgerError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)
