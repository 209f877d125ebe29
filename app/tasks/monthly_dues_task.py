"""
Task: Generación diaria de cuotas mensuales
app/tasks/monthly_dues_task.py

Se ejecuta una vez al día (cron, Celery beat o APScheduler). Solo las
configuraciones cuyo generation_day coincide con hoy generan cuotas;
reintentar el mismo día es seguro porque las cuotas existentes se omiten.

Cron:
    5 0 * * *  python -c "from app.tasks.monthly_dues_task import generar_cuotas_mensuales; generar_cuotas_mensuales()"
"""

import logging

logger = logging.getLogger(__name__)


def generar_cuotas_mensuales(today=None):
    """Task principal: abre su propia sesión y la cierra siempre."""
    from app.database import SessionLocal
    from app.services.monthly_dues import generate_monthly_dues

    db = SessionLocal()

    try:
        result = generate_monthly_dues(db, today=today)
        summary = result["summary"]
        if summary["total_dues_created"] or summary["tenants_with_errors"]:
            logger.info(f"Cuotas mensuales: {summary}")
        return result

    except Exception as e:
        db.rollback()
        logger.error(f"Error en generación de cuotas mensuales: {e}", exc_info=True)
        return {"success": False, "error": str(e)}

    finally:
        db.close()
