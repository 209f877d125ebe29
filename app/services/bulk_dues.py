"""
Generación masiva de cuotas
app/services/bulk_dues.py

Crea una cuota por miembro para (categoría, periodo) y aplica de inmediato
el saldo a favor disponible. Usado por:
  1. Admin: POST /api/dues/bulk
  2. Generación programada mensual (app/services/monthly_dues.py)

La operación NO es atómica: cada lote es su propia transacción. Un lote
que falla se revierte y sus miembros quedan en `failed`; los lotes
anteriores ya confirmados permanecen.
"""

import logging
from decimal import Decimal
from typing import Iterable, List, Optional, Union

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.config import BULK_DUES_BATCH_SIZE
from app.models import ContributionType, Due, LogAction, Organization
from app.services.audit import log_admin_action
from app.services.balance_tracker import BalanceTracker
from app.services.batch import BatchResult, chunked, error_text
from app.services.errors import LedgerValidationError
from app.services.ledger_queries import (
    active_member_ids, get_active_category, tenant_member_ids,
)
from app.services.locks import members_lock
from app.services.periods import require_period
from app.services.settlement import ZERO, money, as_float, status_for
from app.services.yearly_cap import validate_yearly_cap

logger = logging.getLogger(__name__)

ALL_ACTIVE = "all_active"

REASON_EXISTS = "Due already exists for this month and category"
REASON_NOT_IN_TENANT = "Member not found or does not belong to this tenant"


def _resolve_targets(db: Session, organization_id: int,
                     targets: Union[str, Iterable[int]], result: BatchResult) -> List[int]:
    if targets == ALL_ACTIVE:
        return active_member_ids(db, organization_id)

    if isinstance(targets, str) or targets is None:
        raise LedgerValidationError(f"targets must be '{ALL_ACTIVE}' or a list of member ids")

    solicitados = list(dict.fromkeys(targets))     # sin duplicados, orden estable
    validos = tenant_member_ids(db, organization_id, solicitados)
    member_ids = []
    for member_id in solicitados:
        if member_id in validos:
            member_ids.append(member_id)
        else:
            result.add_skipped(member_id, REASON_NOT_IN_TENANT)
    return member_ids


def _existing_members(db: Session, organization_id: int, category_id: int,
                      period: str, member_ids: List[int]) -> set:
    existentes = set()
    for lote in chunked(member_ids, 500):
        rows = db.query(Due.member_id).filter(
            Due.organization_id == organization_id,
            Due.contribution_type_id == category_id,
            Due.period == period,
            Due.member_id.in_(list(lote)),
        ).all()
        existentes.update(r[0] for r in rows)
    return existentes


def create_dues_for_members(
    db: Session,
    organization_id: int,
    category: ContributionType,
    period: str,
    amount: Decimal,
    member_ids: List[int],
    result: BatchResult,
    notes: Optional[str] = None,
    advance_action: str = LogAction.ADVANCE_AUTO_APPLIED_BULK.value,
    batch_size: int = BULK_DUES_BATCH_SIZE,
    user_id: Optional[int] = None,
) -> BatchResult:
    """
    Núcleo compartido por la generación masiva y la programada.
    `member_ids` ya viene validado contra la organización.
    """
    # ── 1. Existentes → skipped ───────────────────────────────────────────────
    existentes = _existing_members(db, organization_id, category.id, period, member_ids)
    pendientes = []
    for member_id in member_ids:
        if member_id in existentes:
            result.add_skipped(member_id, REASON_EXISTS)
        else:
            pendientes.append(member_id)

    # ── 2. Tope anual (opcional por organización) ─────────────────────────────
    org = db.query(Organization).filter(Organization.id == organization_id).first()
    if org and (org.config or {}).get("enforce_yearly_cap"):
        permitidos = []
        for member_id in pendientes:
            check = validate_yearly_cap(
                db, organization_id, member_id, amount,
                kind="due_generation", year=int(period[:4]), user_id=user_id,
            )
            if check["allowed"]:
                permitidos.append(member_id)
            else:
                result.add_skipped(member_id, check["message"])
        pendientes = permitidos
        # Los audit de rechazo se confirman aunque no se cree ninguna cuota
        db.commit()

    tracker = BalanceTracker(db, organization_id)

    # ── 3. Inserción por lotes, cada uno en su transacción ────────────────────
    for numero, lote in enumerate(chunked(pendientes, batch_size), start=1):
        lote = list(lote)
        try:
            with members_lock(organization_id, lote):
                # Lectura sin lock: solo decide a quién intentar debitar
                saldos = tracker.balances_for(lote)
                cuotas = []
                for member_id in lote:
                    adelanto = min(saldos.get(member_id, ZERO), amount)
                    cuotas.append((member_id, adelanto, Due(
                        organization_id=organization_id,
                        member_id=member_id,
                        contribution_type_id=category.id,
                        period=period,
                        amount=amount,
                        paid_amount=ZERO,
                        advance_applied_total=ZERO,
                        status=status_for(ZERO, amount),
                        notes=notes,
                    )))
                db.add_all([c for _, _, c in cuotas])
                db.flush()

                # La cuota refleja lo debitado con la fila bloqueada, no la lectura previa
                for member_id, adelanto, cuota in cuotas:
                    if adelanto <= 0:
                        continue
                    debitado = tracker.debit(
                        member_id, adelanto, advance_action,
                        subject_id=cuota.id, subject_type="due",
                        details={
                            "due_id": cuota.id,
                            "due_month": period,
                            "advance_applied": as_float(adelanto),
                        },
                    )
                    if debitado > 0:
                        cuota.paid_amount = debitado
                        cuota.advance_applied_total = debitado
                        cuota.status = status_for(debitado, amount)
                creados = [(member_id, cuota.id) for member_id, _, cuota in cuotas]
                db.commit()

            for member_id, due_id in creados:
                result.add_created(member_id, due_id)
            logger.info(f"[bulk_dues] lote {numero}: {len(creados)} cuotas {period} creadas")

        except SQLAlchemyError as e:
            db.rollback()
            logger.error(f"[bulk_dues] lote {numero} falló ({len(lote)} miembros): {e}", exc_info=True)
            for member_id in lote:
                result.add_failed(member_id, error_text(e))

    return result


def generate_bulk_dues(
    db: Session,
    organization_id: int,
    category_id: int,
    period: str,
    amount,
    targets: Union[str, Iterable[int]] = ALL_ACTIVE,
    notes: Optional[str] = None,
    user_id: Optional[int] = None,
) -> dict:
    """
    Genera cuotas para muchos miembros a la vez.

    Returns:
        dict con: created, skipped, failed, details, per_member_reasons, message
    """
    # ── Validación (antes de cualquier mutación) ──────────────────────────────
    amount = money(amount)
    if amount <= 0:
        raise LedgerValidationError("Amount must be greater than zero")
    period = require_period(period)
    category = get_active_category(db, organization_id, category_id)

    result = BatchResult()
    member_ids = _resolve_targets(db, organization_id, targets, result)
    if not member_ids and not result.skipped:
        raise LedgerValidationError("No active members found for this tenant")

    create_dues_for_members(
        db, organization_id, category, period, amount, member_ids, result,
        notes=notes, user_id=user_id,
    )

    log_admin_action(
        db, organization_id, user_id, "BULK_DUES_GENERATED",
        entity_type="due",
        details={
            "category_id": category.id,
            "period": period,
            "amount": as_float(amount),
            "created": len(result.created),
            "skipped": len(result.skipped),
            "failed": len(result.failed),
        },
    )
    db.commit()

    message = f"Successfully created {len(result.created)} dues"
    if result.skipped:
        message += f", skipped {len(result.skipped)}"
    if result.failed:
        message += f", failed {len(result.failed)}"
    logger.info(f"[bulk_dues] org {organization_id} {category.name} {period}: {message}")

    return {
        **result.to_dict(),
        "per_member_reasons": result.per_member_reasons,
        "message": message,
    }
