"""
Tope anual de contribuciones por miembro
app/services/yearly_cap.py

    tope = 12 × base_mensual + fund_raise + otros + arrastre_impago
           (o yearly_cap_override de la organización)

Un rechazo por tope NO es una excepción: es un resultado de negocio
(allowed=False) que queda en audit_logs.
"""

import logging
from dataclasses import dataclass, asdict
from datetime import date, datetime
from decimal import Decimal
from typing import Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

from app.config import APP_TZ, CAP_NEAR_LIMIT_PCT
from app.models import (
    CategoryKind, ContributionType, Due, Member, MonthlyDueSetting,
    Organization, Payment, PaymentStatus,
)
from app.services.audit import log_admin_action
from app.services.errors import LedgerNotFound, LedgerValidationError
from app.services.ledger_queries import OPEN_STATUSES
from app.services.settlement import ZERO, money, as_float

logger = logging.getLogger(__name__)

CAP_KINDS = ("payment", "due_generation")


@dataclass
class YearlySummary:
    member_id: int
    year: int
    monthly_base: Decimal = ZERO
    monthly_cap: Decimal = ZERO
    monthly_dues_count: int = 0
    fund_raise_total: Decimal = ZERO
    others_total: Decimal = ZERO
    carry_forward_unpaid: Decimal = ZERO
    yearly_cap: Decimal = ZERO
    total_dues_generated: Decimal = ZERO
    total_paid: Decimal = ZERO
    outstanding_balance: Decimal = ZERO

    @property
    def remaining_allowance(self) -> Decimal:
        return max(ZERO, self.yearly_cap - self.total_paid)

    @property
    def cap_usage_percent(self) -> float:
        if self.yearly_cap <= 0:
            return 0.0
        return round(float(self.total_paid / self.yearly_cap * 100), 2)

    @property
    def is_at_limit(self) -> bool:
        return self.yearly_cap > 0 and self.total_paid >= self.yearly_cap

    @property
    def is_near_limit(self) -> bool:
        return self.cap_usage_percent >= CAP_NEAR_LIMIT_PCT

    def to_dict(self) -> dict:
        data = {
            k: (as_float(v) if isinstance(v, Decimal) else v)
            for k, v in asdict(self).items()
        }
        data.update({
            "remaining_allowance": as_float(self.remaining_allowance),
            "cap_usage_percent": self.cap_usage_percent,
            "is_at_limit": self.is_at_limit,
            "is_near_limit": self.is_near_limit,
        })
        return data


def _current_year() -> int:
    return datetime.now(APP_TZ).year


def _monthly_base(db: Session, organization_id: int) -> Decimal:
    """Monto recurrente: configuración mensual habilitada, o default de la categoría mensual."""
    setting = (
        db.query(MonthlyDueSetting)
        .join(ContributionType, ContributionType.id == MonthlyDueSetting.contribution_type_id)
        .filter(
            MonthlyDueSetting.organization_id == organization_id,
            MonthlyDueSetting.is_enabled == True,
            ContributionType.kind == CategoryKind.MONTHLY.value,
        )
        .order_by(MonthlyDueSetting.id.asc())
        .first()
    )
    if setting:
        return money(setting.fixed_amount)

    category = db.query(ContributionType).filter(
        ContributionType.organization_id == organization_id,
        ContributionType.kind == CategoryKind.MONTHLY.value,
        ContributionType.is_active == True,
        ContributionType.default_amount.isnot(None),
    ).order_by(ContributionType.id.asc()).first()
    return money(category.default_amount) if category else ZERO


def yearly_summary(db: Session, organization_id: int, member_id: int,
                   year: Optional[int] = None) -> YearlySummary:
    year = year or _current_year()
    org = db.query(Organization).filter(Organization.id == organization_id).first()
    if not org:
        raise LedgerNotFound("Organization not found")
    member = db.query(Member.id).filter(
        Member.id == member_id, Member.organization_id == organization_id,
    ).first()
    if not member:
        raise LedgerNotFound("Member not found or does not belong to this tenant")

    summary = YearlySummary(member_id=member_id, year=year)
    summary.monthly_base = _monthly_base(db, organization_id)
    summary.monthly_cap = summary.monthly_base * 12

    # ── Cuotas generadas en el año, por tipo de categoría ─────────────────────
    dues_del_anio = (
        db.query(Due, ContributionType.kind)
        .join(ContributionType, ContributionType.id == Due.contribution_type_id)
        .filter(
            Due.organization_id == organization_id,
            Due.member_id == member_id,
            Due.period.like(f"{year}-%"),
        )
        .all()
    )
    for due, kind in dues_del_anio:
        monto = money(due.amount)
        summary.total_dues_generated += monto
        summary.outstanding_balance += max(ZERO, monto - money(due.paid_amount))
        if kind == CategoryKind.MONTHLY.value:
            summary.monthly_dues_count += 1
        elif kind == CategoryKind.FUND_RAISE.value:
            summary.fund_raise_total += monto
        else:
            summary.others_total += monto

    # ── Arrastre: impago de años anteriores ───────────────────────────────────
    arrastre = db.query(func.coalesce(func.sum(Due.amount - Due.paid_amount), 0)).filter(
        Due.organization_id == organization_id,
        Due.member_id == member_id,
        Due.period < f"{year}-01",
        Due.status.in_(OPEN_STATUSES),
    ).scalar()
    summary.carry_forward_unpaid = money(arrastre)
    summary.outstanding_balance += summary.carry_forward_unpaid

    # ── Pagado en el año ──────────────────────────────────────────────────────
    pagado = db.query(func.coalesce(func.sum(Payment.amount), 0)).filter(
        Payment.organization_id == organization_id,
        Payment.member_id == member_id,
        Payment.status == PaymentStatus.PAID.value,
        Payment.payment_date >= date(year, 1, 1),
        Payment.payment_date <= date(year, 12, 31),
    ).scalar()
    summary.total_paid = money(pagado)

    override = (org.config or {}).get("yearly_cap_override")
    if override:
        summary.yearly_cap = money(override)
    else:
        summary.yearly_cap = (
            summary.monthly_cap
            + summary.fund_raise_total
            + summary.others_total
            + summary.carry_forward_unpaid
        )
    return summary


def validate_yearly_cap(
    db: Session,
    organization_id: int,
    member_id: int,
    amount,
    kind: str = "payment",
    year: Optional[int] = None,
    user_id: Optional[int] = None,
) -> dict:
    """
    ¿Cabe `amount` dentro del tope anual del miembro?

    kind="payment":        rechaza si amount > tope - pagado_en_el_año
    kind="due_generation": rechaza si generado + amount > tope, o si ya
                           existen 12 cuotas mensuales y amount es la base.

    Con tope 0 (sin base mensual ni override) no hay límite que aplicar.
    Los rechazos se agregan a la sesión como audit; el commit es del llamador.
    """
    if kind not in CAP_KINDS:
        raise LedgerValidationError(f"Invalid kind '{kind}', expected one of {CAP_KINDS}")
    amount = money(amount)
    if amount <= 0:
        raise LedgerValidationError("Amount must be greater than zero")

    summary = yearly_summary(db, organization_id, member_id, year)

    if summary.yearly_cap <= 0:
        return {
            "allowed": True,
            "remaining_allowance": None,
            "message": "No yearly cap configured",
            "summary": summary.to_dict(),
        }

    allowed, message, audit_action = True, "Within yearly cap", None

    if kind == "payment":
        remaining = summary.remaining_allowance
        if amount > remaining:
            allowed = False
            audit_action = "YEARLY_CAP_PAYMENT_REJECTED"
            message = (
                f"Payment of {amount} exceeds the remaining yearly allowance of {remaining} "
                f"(cap {summary.yearly_cap}, paid {summary.total_paid})"
            )
    else:
        remaining = max(ZERO, summary.yearly_cap - summary.total_dues_generated)
        if summary.monthly_dues_count >= 12 and summary.monthly_base > 0 and amount == summary.monthly_base:
            allowed = False
            audit_action = "YEARLY_CAP_DUE_SKIPPED"
            message = f"Member already has 12 monthly dues in {summary.year}"
        elif summary.total_dues_generated + amount > summary.yearly_cap:
            allowed = False
            audit_action = "YEARLY_CAP_DUE_SKIPPED"
            message = (
                f"Due of {amount} would exceed the yearly cap of {summary.yearly_cap} "
                f"(already generated {summary.total_dues_generated})"
            )

    if not allowed:
        log_admin_action(
            db, organization_id, user_id, audit_action,
            entity_type="member", entity_id=member_id,
            details={
                "amount": as_float(amount),
                "kind": kind,
                "year": summary.year,
                "yearly_cap": as_float(summary.yearly_cap),
                "remaining_allowance": as_float(remaining),
                "message": message,
            },
        )
        logger.info(f"[cap] miembro {member_id}: {message}")

    return {
        "allowed": allowed,
        "remaining_allowance": as_float(remaining),
        "message": message,
        "summary": summary.to_dict(),
    }
