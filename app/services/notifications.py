"""
Despachador de notificaciones (fire-and-forget)
app/services/notifications.py

Se llama DESPUÉS del commit del ledger. Un fallo aquí jamás revierte
cuotas, pagos ni saldos: se loguea como warning y se sigue.
"""

import logging
from typing import Optional

import httpx

from app.config import NOTIFY_WEBHOOK_URL, NOTIFY_TIMEOUT_SECONDS

logger = logging.getLogger(__name__)


class NotificationDispatcher:

    def __init__(self, webhook_url: str = None, client: Optional[httpx.Client] = None):
        self.webhook_url = NOTIFY_WEBHOOK_URL if webhook_url is None else webhook_url
        self.client = client

    def dispatch(
        self,
        organization_id: int,
        kind: str,
        title: str,
        message: str,
        member_id: Optional[int] = None,
        data: Optional[dict] = None,
    ) -> bool:
        payload = {
            "organization_id": organization_id,
            "member_id": member_id,
            "notification_type": kind,
            "title": title,
            "message": message,
            "data": data or {},
        }

        if not self.webhook_url:
            logger.info(f"[notify] {kind} → miembro {member_id}: {title}")
            return False

        try:
            if self.client is not None:
                resp = self.client.post(self.webhook_url, json=payload)
            else:
                with httpx.Client(timeout=NOTIFY_TIMEOUT_SECONDS) as client:
                    resp = client.post(self.webhook_url, json=payload)
            resp.raise_for_status()
            return True
        except Exception as e:
            logger.warning(f"[notify] No se pudo enviar '{kind}' a miembro {member_id}: {e}")
            return False


_dispatcher = NotificationDispatcher()


def get_dispatcher() -> NotificationDispatcher:
    return _dispatcher


def set_dispatcher(dispatcher: NotificationDispatcher) -> None:
    global _dispatcher
    _dispatcher = dispatcher
