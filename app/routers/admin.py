"""
Router: Tareas administrativas del ledger
app/routers/admin.py

Endpoints:
    POST /api/admin/monthly-dues/run            → Ejecutar la generación mensual de hoy
    POST /api/admin/advance-balances/migrate    → Recalcular saldos a favor históricos

Ambos operan solo sobre la organización del token.
"""

import logging
from typing import Optional

from dateutil.parser import isoparse
from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel
from sqlalchemy.orm import Session

from app.database import get_db
from app.middleware.authorization import Caller, rate_limited, require_role
from app.services.advance_migration import migrate_advance_balances
from app.services.monthly_dues import generate_monthly_dues

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/admin", tags=["admin"])


class MonthlyRunRequest(BaseModel):
    date: Optional[str] = None          # 'YYYY-MM-DD', default hoy (zona del negocio)


@router.post("/monthly-dues/run")
def ejecutar_cuotas_mensuales(
    data: Optional[MonthlyRunRequest] = None,
    caller: Caller = Depends(require_role("admin")),
    _: None = Depends(rate_limited("api")),
    db: Session = Depends(get_db),
):
    today = None
    if data and data.date:
        try:
            today = isoparse(data.date).date()
        except ValueError:
            raise HTTPException(status_code=400, detail=f"Invalid date '{data.date}'")

    return generate_monthly_dues(db, today=today, organization_id=caller.organization_id)


@router.post("/advance-balances/migrate")
def migrar_saldos(
    caller: Caller = Depends(require_role("admin")),
    _: None = Depends(rate_limited("api")),
    db: Session = Depends(get_db),
):
    return migrate_advance_balances(db, organization_id=caller.organization_id, user_id=caller.user_id)
