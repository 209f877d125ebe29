"""
Aplicación FastAPI del motor de conciliación
app/main.py

Arranque: uvicorn app.main:app
"""

import logging
import os

from fastapi import FastAPI

from app.database import Base, engine
from app.routers import admin, dues, payments, webhooks

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO"),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

# Crear tablas si no existen (las migraciones reales van por fuera)
Base.metadata.create_all(bind=engine)

app = FastAPI(title="Dues Ledger - Reconciliation Engine")

app.include_router(dues.router)
app.include_router(payments.router)
app.include_router(webhooks.router)
app.include_router(admin.router)


@app.get("/health")
def health():
    return {"status": "ok"}
