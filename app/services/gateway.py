"""
Cliente de pasarela de pagos (UddoktaPay)
app/services/gateway.py

  POST {base}/checkout-v2      → {invoice_id, payment_url}
  POST {base}/verify-payment   → {status, transaction_id, payment_method, amount, fee, ...}

Autenticación por header RT-UDDOKTAPAY-API-KEY (el mismo que firma los webhooks).
"""

import logging
from typing import Optional

import httpx

from app.config import GATEWAY_API_KEY, GATEWAY_BASE_URL
from app.models import PaymentStatus

logger = logging.getLogger(__name__)

API_KEY_HEADER = "RT-UDDOKTAPAY-API-KEY"

STATUS_MAP = {
    "completed": PaymentStatus.PAID.value,
    "pending":   PaymentStatus.PENDING.value,
    "cancelled": PaymentStatus.CANCELLED.value,
}

METHOD_MAP = {
    "bkash":    "bkash",
    "nagad":    "nagad",
    "rocket":   "rocket",
    "card":     "card",
    "upay":     "other",
    "tap":      "other",
    "okwallet": "other",
}


def map_status(raw: Optional[str]) -> str:
    """completed→paid, pending, cancelled; cualquier otro → failed."""
    return STATUS_MAP.get((raw or "").lower(), PaymentStatus.FAILED.value)


def map_method(raw: Optional[str]) -> str:
    return METHOD_MAP.get((raw or "").lower(), "other")


class PaymentGateway:

    def __init__(self, api_key: str = None, base_url: str = None,
                 client: Optional[httpx.Client] = None, timeout: float = 30.0):
        self.api_key = GATEWAY_API_KEY if api_key is None else api_key
        self.base_url = (base_url or GATEWAY_BASE_URL).rstrip("/")
        self.client = client
        self.timeout = timeout

    @property
    def configured(self) -> bool:
        return bool(self.api_key)

    def _post(self, path: str, payload: dict) -> dict:
        headers = {"Content-Type": "application/json", API_KEY_HEADER: self.api_key}
        url = f"{self.base_url}/{path}"
        try:
            if self.client is not None:
                response = self.client.post(url, json=payload, headers=headers)
            else:
                with httpx.Client(timeout=self.timeout) as client:
                    response = client.post(url, json=payload, headers=headers)
        except httpx.TimeoutException:
            return {"success": False, "error": "Timeout connecting to payment gateway"}
        except httpx.RequestError as e:
            return {"success": False, "error": f"Connection error: {e}"}

        try:
            data = response.json()
        except ValueError:
            data = {"message": response.text}

        if response.status_code >= 400:
            logger.error(f"[gateway] {path} → HTTP {response.status_code}: {data}")
            return {"success": False, "error": data.get("message", "Gateway error"), "response": data}
        return {"success": True, "data": data}

    def create_checkout(self, full_name: str, email: str, amount,
                        metadata: dict, redirect_url: str, cancel_url: str,
                        webhook_url: str) -> dict:
        if not self.configured:
            return {"success": False, "error": "Payment gateway is not configured"}

        result = self._post("checkout-v2", {
            "full_name": full_name,
            "email": email,
            "amount": str(amount),
            "metadata": metadata,
            "redirect_url": redirect_url,
            "cancel_url": cancel_url,
            "webhook_url": webhook_url,
        })
        if not result["success"]:
            return result

        data = result["data"]
        if not data.get("payment_url"):
            return {"success": False, "error": data.get("message", "Failed to create payment link"), "response": data}
        return {"success": True, "invoice_id": data.get("invoice_id"), "payment_url": data["payment_url"]}

    def verify(self, invoice_id: str) -> dict:
        if not self.configured:
            return {"success": False, "error": "Payment gateway is not configured"}
        return self._post("verify-payment", {"invoice_id": invoice_id})


_gateway = PaymentGateway()


def get_gateway() -> PaymentGateway:
    return _gateway


def set_gateway(gateway: PaymentGateway) -> None:
    global _gateway
    _gateway = gateway
