"""
Algoritmo de imputación de montos a cuotas
app/services/settlement.py

Función pura sobre snapshots en memoria. No toca la sesión:
quien llama decide el orden de las cuotas y persiste el resultado.

    applied = min(restante, amount - paid_amount)
"""

from dataclasses import dataclass, field, replace
from decimal import Decimal, ROUND_HALF_UP
from typing import List, Optional

from app.models import DueStatus

CENT = Decimal("0.01")
ZERO = Decimal("0.00")


def money(value) -> Decimal:
    """Normaliza a Decimal con 2 decimales. Acepta int, float, str o Decimal."""
    if value is None:
        return ZERO
    if not isinstance(value, Decimal):
        value = Decimal(str(value))
    return value.quantize(CENT, ROUND_HALF_UP)


def as_float(value) -> float:
    """Para JSON (details de logs, respuestas)."""
    return float(money(value))


def status_for(paid_amount, amount) -> str:
    """Única regla de estado de una cuota."""
    paid_amount, amount = money(paid_amount), money(amount)
    if paid_amount >= amount:
        return DueStatus.PAID.value
    if paid_amount > 0:
        return DueStatus.PARTIAL.value
    return DueStatus.UNPAID.value


@dataclass(frozen=True)
class DueSnapshot:
    id: Optional[int]
    amount: Decimal
    paid_amount: Decimal
    period: str = ""

    @classmethod
    def of(cls, due) -> "DueSnapshot":
        return cls(
            id=due.id,
            amount=money(due.amount),
            paid_amount=money(due.paid_amount),
            period=due.period or "",
        )

    @property
    def outstanding(self) -> Decimal:
        return max(ZERO, self.amount - self.paid_amount)

    @property
    def status(self) -> str:
        return status_for(self.paid_amount, self.amount)


@dataclass(frozen=True)
class Application:
    due: DueSnapshot            # estado DESPUÉS de aplicar
    amount_applied: Decimal
    previous_paid: Decimal

    @property
    def new_status(self) -> str:
        return self.due.status


@dataclass
class SettlementResult:
    applications: List[Application] = field(default_factory=list)
    remainder: Decimal = ZERO

    @property
    def touched(self) -> List[Application]:
        return [a for a in self.applications if a.amount_applied > 0]

    @property
    def total_applied(self) -> Decimal:
        return sum((a.amount_applied for a in self.applications), ZERO)


def settle(amount, dues: List[DueSnapshot]) -> SettlementResult:
    """
    Aplica `amount` a las cuotas en el orden recibido.

    - Cuota ya pagada: applied = 0 (se salta).
    - amount == 0: no-op, devuelve todas las cuotas con aplicación 0.
    - Se detiene cuando el restante llega a 0; las cuotas no alcanzadas
      se devuelven con aplicación 0.
    """
    remainder = money(amount)
    if remainder < 0:
        raise ValueError("amount must be >= 0")

    result = SettlementResult()
    for due in dues:
        applied = min(remainder, due.outstanding) if remainder > 0 else ZERO
        updated = replace(due, paid_amount=due.paid_amount + applied) if applied > 0 else due
        result.applications.append(
            Application(due=updated, amount_applied=applied, previous_paid=due.paid_amount)
        )
        remainder -= applied

    result.remainder = remainder
    return result
