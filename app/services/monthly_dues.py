"""
Generación programada de cuotas mensuales
app/services/monthly_dues.py

Para cada configuración habilitada cuyo generation_day es hoy:
  - organización activa, categoría activa, mes actual >= start_month
  - miembros activos (los que ingresaron después del día de generación
    solo si include_members_joined_after_generation)
  - mismo núcleo que la generación masiva, en lotes de 100, con
    ADVANCE_AUTO_APPLIED

Ejecutada por app/tasks/monthly_dues_task.py o POST /api/admin/monthly-dues/run.
"""

import logging
from datetime import date, datetime, timezone
from typing import Optional

from sqlalchemy.orm import Session

from app.config import APP_TZ, MONTHLY_DUES_BATCH_SIZE
from app.models import LogAction, Member, MonthlyDueSetting
from app.services.batch import BatchResult
from app.services.bulk_dues import create_dues_for_members
from app.services.periods import parse_period, period_of
from app.services.settlement import money

logger = logging.getLogger(__name__)


def _joined_by(joined_at: Optional[datetime], limite: datetime) -> bool:
    if joined_at is None:
        return True
    if joined_at.tzinfo is None:
        # SQLite devuelve naive en UTC
        joined_at = joined_at.replace(tzinfo=timezone.utc)
    return joined_at <= limite


def _members_for(db: Session, setting: MonthlyDueSetting, hoy: date) -> list:
    miembros = db.query(Member.id, Member.joined_at).filter(
        Member.organization_id == setting.organization_id,
        Member.status == "active",
    ).order_by(Member.id).all()

    if setting.include_members_joined_after_generation:
        return [m.id for m in miembros]

    limite = datetime(hoy.year, hoy.month, setting.generation_day, tzinfo=APP_TZ)
    return [m.id for m in miembros if _joined_by(m.joined_at, limite)]


def generate_monthly_dues(db: Session, today: Optional[date] = None,
                          organization_id: Optional[int] = None) -> dict:
    hoy = today or datetime.now(APP_TZ).date()
    periodo = period_of(hoy)

    query = db.query(MonthlyDueSetting).filter(
        MonthlyDueSetting.is_enabled == True,
        MonthlyDueSetting.generation_day == hoy.day,
    )
    if organization_id is not None:
        query = query.filter(MonthlyDueSetting.organization_id == organization_id)
    settings = query.order_by(MonthlyDueSetting.id).all()

    logger.info(f"[monthly_dues] {hoy.isoformat()}: {len(settings)} configuraciones para el día {hoy.day}")

    results = []
    for setting in settings:
        org = setting.organization
        category = setting.contribution_type
        item = {
            "organization_id": setting.organization_id,
            "organization_name": org.name if org else "Unknown",
            "category_id": setting.contribution_type_id,
            "period": periodo,
            "dues_created": 0,
            "dues_skipped": 0,
            "dues_failed": 0,
            "errors": [],
        }
        results.append(item)

        if not org or org.status != "active":
            item["errors"].append("Tenant is not active")
            continue
        if not category or not category.is_active:
            item["errors"].append("Contribution type is not active")
            continue
        inicio = parse_period(setting.start_month)
        if not inicio:
            item["errors"].append(f"Invalid start month '{setting.start_month}'")
            continue
        if periodo < inicio:
            item["errors"].append("Current month is before start month")
            continue

        member_ids = _members_for(db, setting, hoy)
        if not member_ids:
            item["errors"].append("No active members found")
            continue

        result = create_dues_for_members(
            db, setting.organization_id, category, periodo, money(setting.fixed_amount),
            member_ids, BatchResult(),
            notes="Auto-generated monthly due",
            advance_action=LogAction.ADVANCE_AUTO_APPLIED.value,
            batch_size=MONTHLY_DUES_BATCH_SIZE,
        )
        item["dues_created"] = len(result.created)
        item["dues_skipped"] = len(result.skipped)
        item["dues_failed"] = len(result.failed)
        item["errors"].extend(f"Member {f['member_id']}: {f['error']}" for f in result.failed)

        logger.info(
            f"[monthly_dues] org {setting.organization_id} {periodo}: "
            f"{item['dues_created']} creadas, {item['dues_skipped']} omitidas, {item['dues_failed']} fallidas"
        )

    return {
        "success": True,
        "date": hoy.isoformat(),
        "summary": {
            "tenants_processed": len(results),
            "total_dues_created": sum(r["dues_created"] for r in results),
            "total_dues_skipped": sum(r["dues_skipped"] for r in results),
            "tenants_with_errors": sum(1 for r in results if r["errors"]),
        },
        "results": results,
    }
