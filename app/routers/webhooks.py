"""
Router: Webhooks de la pasarela
app/routers/webhooks.py

    POST /api/webhooks/gateway   → Notificación de estado (header RT-UDDOKTAPAY-API-KEY)

Sin JWT: la autenticación es el API key compartido con la pasarela.
Un invoice desconocido responde 200 para que la pasarela no reintente.
"""

import logging

from fastapi import APIRouter, Body, Depends, Header, HTTPException
from sqlalchemy.orm import Session

from app.database import get_db
from app.middleware.authorization import rate_limited
from app.services.errors import LedgerError
from app.services.payment_status import handle_gateway_webhook

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/webhooks", tags=["webhooks"])


@router.post("/gateway")
def webhook_pasarela(
    payload: dict = Body(...),
    api_key: str = Header(None, alias="RT-UDDOKTAPAY-API-KEY"),
    _: None = Depends(rate_limited("api")),
    db: Session = Depends(get_db),
):
    logger.info(f"[webhook] invoice {payload.get('invoice_id')} status {payload.get('status')}")
    try:
        return handle_gateway_webhook(db, api_key, payload)
    except LedgerError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)
