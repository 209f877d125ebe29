"""
Configuración del servicio
app/config.py

Valores leídos del entorno. Todo lo que el motor de conciliación
necesita ajustar por despliegue vive aquí como constante de módulo.
"""

import os
import logging
from datetime import timezone, timedelta

import redis

logger = logging.getLogger(__name__)

# --- BASE DE DATOS ---
DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./ledger.db")

# --- SEGURIDAD (JWT emitido por la capa de identidad) ---
SECRET_KEY = os.getenv("SECRET_KEY", "change-me")
ALGORITHM = os.getenv("JWT_ALGORITHM", "HS256")

# --- ZONA HORARIA DEL NEGOCIO (Dhaka, UTC+6) ---
APP_TZ = timezone(timedelta(hours=int(os.getenv("APP_TZ_OFFSET_HOURS", "6"))))

# --- PASARELA DE PAGOS ---
GATEWAY_API_KEY = os.getenv("GATEWAY_API_KEY", "")
GATEWAY_BASE_URL = os.getenv("GATEWAY_BASE_URL", "https://pay.uddoktapay.com/api")
PUBLIC_BASE_URL = os.getenv("PUBLIC_BASE_URL", "https://somiti.app")

# --- NOTIFICACIONES (fire-and-forget) ---
NOTIFY_WEBHOOK_URL = os.getenv("NOTIFY_WEBHOOK_URL", "")
NOTIFY_TIMEOUT_SECONDS = float(os.getenv("NOTIFY_TIMEOUT_SECONDS", "5"))

# --- MOTOR DE CONCILIACIÓN ---
BULK_DUES_BATCH_SIZE = int(os.getenv("BULK_DUES_BATCH_SIZE", "50"))
BULK_PAYMENTS_BATCH_SIZE = int(os.getenv("BULK_PAYMENTS_BATCH_SIZE", "25"))
MONTHLY_DUES_BATCH_SIZE = int(os.getenv("MONTHLY_DUES_BATCH_SIZE", "100"))
WAIVER_MIN_REASON = int(os.getenv("WAIVER_MIN_REASON", "5"))
CAP_NEAR_LIMIT_PCT = int(os.getenv("CAP_NEAR_LIMIT_PCT", "80"))
LOCK_RETRIES = int(os.getenv("LOCK_RETRIES", "3"))

# --- RATE LIMITS (ventana en segundos, máximo de requests) ---
RATE_LIMITS = {
    "login":   {"window": 60, "max": 5},
    "otp":     {"window": 60, "max": 3},
    "payment": {"window": 60, "max": 10},
    "api":     {"window": 60, "max": 100},
}

# --- REDIS (opcional) ---
# Sin REDIS_URL los contadores viven en memoria del proceso.
REDIS_URL = os.getenv("REDIS_URL", "")
redis_client = None
if REDIS_URL:
    redis_client = redis.Redis.from_url(REDIS_URL, decode_responses=True)
    logger.info("Redis configurado para rate limiting")
