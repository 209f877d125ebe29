"""
Registro masivo de pagos offline
app/services/bulk_payments.py

Para pagos ya cobrados (caja, banco): cada pago nace `paid` y se imputa
a UNA sola cuota, la más antigua abierta del miembro en la categoría.
Lo que sobra va a saldo a favor.

A diferencia de reconcile_payment (que reparte entre todas las cuotas
abiertas), aquí el objetivo es siempre una cuota por pago.

Cada entrada lleva una referencia determinista (`{base}-{member_id}-{n}`).
Reenviar la misma llamada tras un corte omite las entradas cuyo pago ya
existe y registra solo las que faltan.
"""

import hashlib
import logging
from collections import defaultdict
from dataclasses import dataclass
from datetime import date, datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Iterable, List, Optional

from dateutil.parser import isoparse
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.config import APP_TZ, BULK_PAYMENTS_BATCH_SIZE
from app.models import (
    Due, LogAction, Payment, PaymentAllocation, PaymentStatus, PaymentType,
)
from app.services.audit import log_admin_action
from app.services.balance_tracker import BalanceTracker, write_log
from app.services.batch import BatchResult, chunked, error_text
from app.services.errors import LedgerValidationError
from app.services.ledger_queries import (
    OPEN_STATUSES, get_active_category, get_due, tenant_member_ids,
)
from app.services.locks import members_lock
from app.services.notifications import get_dispatcher
from app.services.settlement import DueSnapshot, ZERO, money, as_float, settle

logger = logging.getLogger(__name__)

REASON_NOT_IN_TENANT = "Member not found or does not belong to this tenant"
REASON_ALREADY_RECORDED = "Payment already recorded"

MAX_REFERENCE = 40


@dataclass
class PaymentEntry:
    member_id: int
    amount: Decimal
    notes: Optional[str] = None


def bulk_reference(organization_id: int, category_id: int, payment_date: date, channel: str,
                   entries: List[PaymentEntry]) -> str:
    """
    Referencia base por defecto. Sale del contenido de la llamada, así que
    reenviar el mismo lote produce las mismas referencias.
    """
    contenido = "|".join(
        [str(organization_id), str(category_id), payment_date.isoformat(), channel]
        + [f"{e.member_id}:{e.amount}" for e in entries]
    )
    digest = hashlib.sha1(contenido.encode("utf-8")).hexdigest()[:10].upper()
    return f"BULK-{payment_date:%Y%m%d}-{digest}"


def entry_references(base: str, entries: List[PaymentEntry]) -> List[str]:
    """`{base}-{member_id}-{n}`, con n = ocurrencia del miembro dentro de la llamada."""
    vistos = defaultdict(int)
    refs = []
    for entry in entries:
        vistos[entry.member_id] += 1
        refs.append(f"{base}-{entry.member_id}-{vistos[entry.member_id]}")
    return refs


def _recorded_references(db: Session, organization_id: int, refs: List[str]) -> set:
    existentes = set()
    for lote in chunked(refs, 500):
        rows = db.query(Payment.reference).filter(
            Payment.organization_id == organization_id,
            Payment.reference.in_(list(lote)),
        ).all()
        existentes.update(r[0] for r in rows)
    return existentes


def _parse_entries(entries: Iterable) -> List[PaymentEntry]:
    """Una sola entrada inválida rechaza toda la llamada."""
    parsed = []
    for i, entry in enumerate(entries or []):
        if isinstance(entry, PaymentEntry):
            member_id, amount, notes = entry.member_id, entry.amount, entry.notes
        elif isinstance(entry, dict):
            member_id, amount, notes = entry.get("member_id"), entry.get("amount"), entry.get("notes")
        else:
            member_id, amount = entry
            notes = None

        if not member_id:
            raise LedgerValidationError(f"Entry {i}: member_id is required")
        try:
            amount = money(amount)
        except (InvalidOperation, TypeError, ValueError):
            raise LedgerValidationError(f"Entry {i}: invalid amount '{amount}'")
        if amount <= 0:
            raise LedgerValidationError(f"Entry {i}: amount must be greater than zero")
        parsed.append(PaymentEntry(member_id=int(member_id), amount=amount, notes=notes))

    if not parsed:
        raise LedgerValidationError("At least one payment entry is required")
    return parsed


def _parse_date(value) -> date:
    if value is None:
        return datetime.now(APP_TZ).date()
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    try:
        return isoparse(str(value).strip()).date()
    except ValueError:
        raise LedgerValidationError(f"Invalid payment date '{value}'")


def _open_dues_map(db: Session, organization_id: int, category_id: int, member_ids) -> dict:
    """member_id → [due_id, ...] abiertas, periodo ascendente."""
    mapa = defaultdict(list)
    if not member_ids:
        return mapa
    rows = db.query(Due.id, Due.member_id).filter(
        Due.organization_id == organization_id,
        Due.contribution_type_id == category_id,
        Due.member_id.in_(list(member_ids)),
        Due.status.in_(OPEN_STATUSES),
    ).order_by(Due.period.asc(), Due.created_at.asc(), Due.id.asc()).all()
    for due_id, member_id in rows:
        mapa[member_id].append(due_id)
    return mapa


def _target_due(db: Session, organization_id: int, candidatos: List[int]) -> Optional[Due]:
    """Primera cuota del mapa que siga abierta (bloqueada para escritura)."""
    while candidatos:
        due = get_due(db, candidatos[0], organization_id, lock=True)
        if due.status in OPEN_STATUSES:
            return due
        candidatos.pop(0)
    return None


def _record_one(db: Session, tracker: BalanceTracker, organization_id: int, category_id: int,
                entry: PaymentEntry, reference: str, payment_date: date, channel: str,
                notes: Optional[str], candidatos: List[int]) -> Payment:
    now = datetime.now(timezone.utc)
    pago = Payment(
        organization_id=organization_id,
        member_id=entry.member_id,
        contribution_type_id=category_id,
        amount=entry.amount,
        status=PaymentStatus.PAID.value,
        payment_type=PaymentType.OFFLINE.value,
        channel=channel,
        reference=reference,
        payment_date=payment_date,
        notes=entry.notes or notes,
        verified_at=now,
        settled_at=now,
    )
    db.add(pago)
    db.flush()

    restante = entry.amount
    due = _target_due(db, organization_id, candidatos)
    if due is not None:
        resultado = settle(entry.amount, [DueSnapshot.of(due)])
        aplicacion = resultado.applications[0]
        if aplicacion.amount_applied > 0:
            due.paid_amount = aplicacion.due.paid_amount
            due.status = aplicacion.new_status
            db.add(PaymentAllocation(payment_id=pago.id, due_id=due.id, amount=aplicacion.amount_applied))
        pago.linked_due_id = due.id
        restante = resultado.remainder

        write_log(db, organization_id, entry.member_id, LogAction.BULK_PAYMENT_APPLIED_TO_DUE.value,
                  subject_id=pago.id, details={
                      "due_id": due.id,
                      "due_month": due.period,
                      "amount_applied": as_float(aplicacion.amount_applied),
                      "due_status": aplicacion.new_status,
                      "remaining_after_due": as_float(restante),
                  })

    if restante > 0:
        tracker.credit(entry.member_id, restante, LogAction.BULK_PAYMENT_EXCESS_TO_ADVANCE.value,
                       subject_id=pago.id, details={"excess_amount": as_float(restante)})
        pago.advance_applied_amount = restante

    db.flush()
    return pago


def record_bulk_payments(
    db: Session,
    organization_id: int,
    category_id: int,
    entries: Iterable,
    payment_date=None,
    channel: str = "cash",
    reference: Optional[str] = None,
    notes: Optional[str] = None,
    user_id: Optional[int] = None,
) -> dict:
    """
    Registra muchos pagos offline a la vez.

    Returns:
        dict con: created, skipped, failed, total_amount, details, message
    """
    # ── Validación (antes de cualquier mutación) ──────────────────────────────
    pagos = _parse_entries(entries)
    payment_date = _parse_date(payment_date)
    category = get_active_category(db, organization_id, category_id)
    channel = (channel or "cash").strip().lower()
    reference = (reference or "").strip()
    if len(reference) > MAX_REFERENCE:
        raise LedgerValidationError(f"Reference must be at most {MAX_REFERENCE} characters")

    base = reference or bulk_reference(organization_id, category.id, payment_date, channel, pagos)
    refs = entry_references(base, pagos)
    registradas = _recorded_references(db, organization_id, refs)

    result = BatchResult()
    validos = tenant_member_ids(db, organization_id, [p.member_id for p in pagos])
    a_registrar = []
    for p, ref in zip(pagos, refs):
        if p.member_id not in validos:
            result.add_skipped(p.member_id, REASON_NOT_IN_TENANT)
        elif ref in registradas:
            # Reintento de un lote ya confirmado
            result.add_skipped(p.member_id, REASON_ALREADY_RECORDED)
        else:
            a_registrar.append((p, ref))

    mapa = _open_dues_map(db, organization_id, category.id, validos)
    tracker = BalanceTracker(db, organization_id)
    total = ZERO
    notificar = []

    # ── Inserción por lotes ───────────────────────────────────────────────────
    for numero, lote in enumerate(chunked(a_registrar, BULK_PAYMENTS_BATCH_SIZE), start=1):
        lote = list(lote)
        # Copia del mapa: si el lote falla, el siguiente reintento parte del estado original
        candidatos = {p.member_id: list(mapa.get(p.member_id, [])) for p, _ in lote}
        try:
            creados = []
            with members_lock(organization_id, [p.member_id for p, _ in lote]):
                for entry, ref in lote:
                    pago = _record_one(
                        db, tracker, organization_id, category.id, entry, ref,
                        payment_date, channel, notes, candidatos[entry.member_id],
                    )
                    creados.append((entry, pago.id))
                db.commit()

            for entry, payment_id in creados:
                result.add_created(entry.member_id, payment_id)
                total += entry.amount
                notificar.append((entry, payment_id))
            for member_id, restantes in candidatos.items():
                mapa[member_id] = restantes
            logger.info(f"[bulk_payments] lote {numero}: {len(creados)} pagos registrados")

        except SQLAlchemyError as e:
            db.rollback()
            logger.error(f"[bulk_payments] lote {numero} falló ({len(lote)} pagos): {e}", exc_info=True)
            for entry, _ in lote:
                result.add_failed(entry.member_id, error_text(e))

    log_admin_action(
        db, organization_id, user_id, "BULK_PAYMENTS_RECORDED",
        details={
            "category_id": category.id,
            "payment_date": payment_date.isoformat(),
            "channel": channel,
            "created": len(result.created),
            "skipped": len(result.skipped),
            "failed": len(result.failed),
            "total_amount": as_float(total),
        },
    )
    db.commit()

    # Notificaciones después del commit; un fallo aquí no toca el ledger
    dispatcher = get_dispatcher()
    for entry, payment_id in notificar:
        dispatcher.dispatch(
            organization_id, "payment_recorded", "Payment recorded",
            f"A payment of {entry.amount} has been recorded for {category.name}.",
            member_id=entry.member_id, data={"payment_id": payment_id},
        )

    message = f"Successfully recorded {len(result.created)} payments"
    if result.skipped:
        message += f", skipped {len(result.skipped)}"
    if result.failed:
        message += f", failed {len(result.failed)}"

    return {
        **result.to_dict(),
        "total_amount": as_float(total),
        "per_member_reasons": result.per_member_reasons,
        "message": message,
    }
