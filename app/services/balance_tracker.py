"""
Balance Tracker: saldo a favor (advance) del miembro
app/services/balance_tracker.py

Cada crédito o débito escribe EXACTAMENTE una fila en
payment_reconciliation_logs dentro de la misma transacción del
llamador. El tracker nunca hace commit.
"""

import logging
from datetime import datetime, timezone
from decimal import Decimal
from typing import Optional

from sqlalchemy.orm import Session

from app.models import MemberBalance, ReconciliationLog
from app.services.settlement import ZERO, money, as_float

logger = logging.getLogger(__name__)


class BalanceTracker:
    """Lectura y mutación del advance_balance de los miembros de una organización."""

    def __init__(self, db: Session, organization_id: int):
        self.db = db
        self.organization_id = organization_id

    # ── Lectura ───────────────────────────────────────────────────────────────

    def _row(self, member_id: int, lock: bool = True) -> Optional[MemberBalance]:
        query = self.db.query(MemberBalance).filter(
            MemberBalance.organization_id == self.organization_id,
            MemberBalance.member_id == member_id,
        )
        if lock:
            query = query.with_for_update().populate_existing()
        return query.first()

    def balance_of(self, member_id: int) -> Decimal:
        row = self._row(member_id, lock=False)
        return money(row.advance_balance) if row else ZERO

    def balances_for(self, member_ids) -> dict:
        """Lectura en lote: {member_id: saldo} solo para saldos > 0."""
        ids = list(member_ids)
        if not ids:
            return {}
        rows = self.db.query(MemberBalance).filter(
            MemberBalance.organization_id == self.organization_id,
            MemberBalance.member_id.in_(ids),
            MemberBalance.advance_balance > 0,
        ).all()
        return {r.member_id: money(r.advance_balance) for r in rows}

    # ── Escritura ─────────────────────────────────────────────────────────────

    def credit(
        self,
        member_id: int,
        amount,
        action: str,
        subject_id: Optional[int] = None,
        subject_type: str = "payment",
        details: Optional[dict] = None,
    ) -> Decimal:
        """Suma `amount` (>= 0) al saldo. Crea la fila si no existe. Retorna el nuevo saldo."""
        amount = money(amount)
        if amount < 0:
            raise ValueError("credit amount must be >= 0")

        row = self._row(member_id)
        previous = money(row.advance_balance) if row else ZERO
        if amount == 0:
            return previous

        if row is None:
            row = MemberBalance(
                organization_id=self.organization_id,
                member_id=member_id,
                advance_balance=ZERO,
            )
            self.db.add(row)

        new_balance = previous + amount
        row.advance_balance = new_balance
        row.last_reconciled_at = datetime.now(timezone.utc)

        self._log(member_id, action, subject_id, subject_type, {
            **(details or {}),
            "advance_delta": as_float(amount),
            "previous_balance": as_float(previous),
            "new_balance": as_float(new_balance),
        })
        self.db.flush()
        logger.info(f"[balance] +{amount} miembro {member_id}: {previous} → {new_balance} ({action})")
        return new_balance

    def debit(
        self,
        member_id: int,
        amount,
        action: str,
        subject_id: Optional[int] = None,
        subject_type: str = "payment",
        details: Optional[dict] = None,
    ) -> Decimal:
        """
        Resta min(amount, saldo). Nunca deja el saldo negativo.
        Retorna el monto efectivamente debitado.
        """
        amount = money(amount)
        if amount < 0:
            raise ValueError("debit amount must be >= 0")

        row = self._row(member_id)
        previous = money(row.advance_balance) if row else ZERO
        debited = min(amount, previous)
        shortfall = amount - debited

        if amount == 0:
            return ZERO

        new_balance = previous - debited
        if row is not None and debited > 0:
            row.advance_balance = new_balance
            row.last_reconciled_at = datetime.now(timezone.utc)

        extra = {}
        if shortfall > 0:
            # Se pidió más de lo disponible: se recorta y queda registrado
            extra = {"anomaly": "debit_exceeds_balance", "shortfall": as_float(shortfall)}
            logger.warning(
                f"[balance] débito de {amount} excede saldo {previous} "
                f"(miembro {member_id}, {action}); recortado a {debited}"
            )

        self._log(member_id, action, subject_id, subject_type, {
            **(details or {}),
            **extra,
            "advance_delta": -as_float(debited),
            "requested": as_float(amount),
            "previous_balance": as_float(previous),
            "new_balance": as_float(new_balance),
        })
        self.db.flush()
        return debited

    def _log(self, member_id, action, subject_id, subject_type, details):
        self.db.add(ReconciliationLog(
            organization_id=self.organization_id,
            subject_id=subject_id,
            subject_type=subject_type,
            member_id=member_id,
            action=action,
            details=details,
        ))


def write_log(db: Session, organization_id: int, member_id: int, action: str,
              subject_id=None, subject_type: str = "payment", details: dict = None) -> ReconciliationLog:
    """Log de conciliación sin movimiento de saldo."""
    entry = ReconciliationLog(
        organization_id=organization_id,
        subject_id=subject_id,
        subject_type=subject_type,
        member_id=member_id,
        action=action,
        details=details or {},
    )
    db.add(entry)
    return entry
