"""
Modelos SQLAlchemy: ledger de cuotas
app/models.py

Principios:
1. IDENTIFICABILIDAD: una cuota por (organización, miembro, categoría, periodo)
2. TRAZABILIDAD: todo cambio de saldo deja una fila en payment_reconciliation_logs
3. INMUTABILIDAD: las cuotas no se borran; los logs son solo inserción
4. CONCURRENCIA: dues y member_balances llevan columna version (bloqueo optimista)
"""

import enum

from sqlalchemy import (
    Column, Integer, String, ForeignKey, Boolean, DateTime, Date, Text,
    JSON, Numeric, UniqueConstraint, Index, CheckConstraint,
)
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from .database import Base

MONEY = Numeric(12, 2)


# ═══════════════════════════════════════════════════════════
# ENUMS
# ═══════════════════════════════════════════════════════════

class DueStatus(str, enum.Enum):
    UNPAID = "unpaid"
    PARTIAL = "partial"
    PAID = "paid"


class PaymentStatus(str, enum.Enum):
    PENDING = "pending"
    PAID = "paid"
    FAILED = "failed"
    CANCELLED = "cancelled"
    REFUNDED = "refunded"


class PaymentType(str, enum.Enum):
    OFFLINE = "offline"
    ONLINE = "online"


class CategoryKind(str, enum.Enum):
    MONTHLY = "monthly"
    FUND_RAISE = "fund_raise"
    OTHER = "other"


class LogAction(str, enum.Enum):
    """Acciones del trail de conciliación."""
    PAYMENT_RECONCILED = "PAYMENT_RECONCILED"
    ADVANCE_APPLIED_TO_DUE = "ADVANCE_APPLIED_TO_DUE"
    ADVANCE_AUTO_APPLIED = "ADVANCE_AUTO_APPLIED"              # generación programada
    ADVANCE_AUTO_APPLIED_BULK = "ADVANCE_AUTO_APPLIED_BULK"    # generación masiva (admin)
    BULK_PAYMENT_APPLIED_TO_DUE = "BULK_PAYMENT_APPLIED_TO_DUE"
    BULK_PAYMENT_EXCESS_TO_ADVANCE = "BULK_PAYMENT_EXCESS_TO_ADVANCE"
    PAYMENT_REVERSED = "PAYMENT_REVERSED"
    DUE_WAIVED = "DUE_WAIVED"
    ADVANCE_MIGRATED = "ADVANCE_MIGRATED"
    BALANCE_ANOMALY = "BALANCE_ANOMALY"


# ═══════════════════════════════════════════════════════════
# COLABORADORES EXTERNOS (roster, categorías, configuración)
# ═══════════════════════════════════════════════════════════

class Organization(Base):
    __tablename__ = "organizations"
    id = Column(Integer, primary_key=True, index=True)
    name = Column(String, nullable=False)
    slug = Column(String, unique=True)
    status = Column(String, default="active")  # active, suspended

    # Ej: {"enforce_yearly_cap": true, "yearly_cap_override": 12000}
    config = Column(JSON, default=dict)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    members = relationship("Member", back_populates="organization")


class Member(Base):
    __tablename__ = "members"
    id = Column(Integer, primary_key=True, index=True)
    organization_id = Column(Integer, ForeignKey("organizations.id"), nullable=False, index=True)

    name = Column(String, nullable=False)
    email = Column(String, nullable=True)
    phone = Column(String, nullable=True)
    status = Column(String, default="active")  # active, inactive
    joined_at = Column(DateTime(timezone=True), server_default=func.now())
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    organization = relationship("Organization", back_populates="members")


class ContributionType(Base):
    """Categoría de cobro: mensual, fund raise u otros."""
    __tablename__ = "contribution_types"
    id = Column(Integer, primary_key=True, index=True)
    organization_id = Column(Integer, ForeignKey("organizations.id"), nullable=False, index=True)

    name = Column(String(100), nullable=False)
    kind = Column(String(20), default=CategoryKind.MONTHLY.value)
    is_active = Column(Boolean, default=True)
    is_fixed_amount = Column(Boolean, default=True)
    default_amount = Column(MONEY, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())


class MonthlyDueSetting(Base):
    """Configuración de la generación automática mensual por organización."""
    __tablename__ = "monthly_due_settings"
    __table_args__ = (
        UniqueConstraint("organization_id", "contribution_type_id", name="uq_monthly_setting_org_category"),
    )

    id = Column(Integer, primary_key=True)
    organization_id = Column(Integer, ForeignKey("organizations.id"), nullable=False)
    contribution_type_id = Column(Integer, ForeignKey("contribution_types.id"), nullable=False)

    fixed_amount = Column(MONEY, nullable=False)
    generation_day = Column(Integer, default=1)       # 1..28
    start_month = Column(String(7), nullable=False)   # 'YYYY-MM'
    is_enabled = Column(Boolean, default=True)
    include_members_joined_after_generation = Column(Boolean, default=False)

    organization = relationship("Organization")
    contribution_type = relationship("ContributionType")


# ═══════════════════════════════════════════════════════════
# LEDGER
# ═══════════════════════════════════════════════════════════

class Due(Base):
    """
    Obligación de un miembro para una (categoría, periodo).

    status es función pura de paid_amount vs amount:
      paid    ⇔ paid_amount >= amount
      partial ⇔ 0 < paid_amount < amount
    """
    __tablename__ = "dues"
    __table_args__ = (
        UniqueConstraint(
            "organization_id", "member_id", "contribution_type_id", "period",
            name="uq_due_org_member_category_period",
        ),
        CheckConstraint("amount > 0", name="ck_due_amount_positive"),
        CheckConstraint("paid_amount >= 0 AND paid_amount <= amount", name="ck_due_paid_range"),
        Index("ix_dues_member_status", "member_id", "status"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    organization_id = Column(Integer, ForeignKey("organizations.id"), nullable=False)
    member_id = Column(Integer, ForeignKey("members.id"), nullable=False)
    contribution_type_id = Column(Integer, ForeignKey("contribution_types.id"), nullable=False)

    period = Column(String(7), nullable=False)            # '2025-01'
    amount = Column(MONEY, nullable=False)
    paid_amount = Column(MONEY, nullable=False, default=0)
    status = Column(String(10), nullable=False, default=DueStatus.UNPAID.value)

    # Crédito a favor aplicado (acumulado) y monto condonado
    advance_applied_total = Column(MONEY, nullable=False, default=0)
    waived_amount = Column(MONEY, nullable=False, default=0)

    notes = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())
    version = Column(Integer, nullable=False)

    __mapper_args__ = {"version_id_col": version}

    member = relationship("Member")
    contribution_type = relationship("ContributionType")
    allocations = relationship("PaymentAllocation", back_populates="due")


class Payment(Base):
    __tablename__ = "payments"
    __table_args__ = (
        CheckConstraint("amount > 0", name="ck_payment_amount_positive"),
        Index("ix_payments_member_status", "member_id", "status"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    organization_id = Column(Integer, ForeignKey("organizations.id"), nullable=False)
    member_id = Column(Integer, ForeignKey("members.id"), nullable=False)
    contribution_type_id = Column(Integer, ForeignKey("contribution_types.id"), nullable=True)

    amount = Column(MONEY, nullable=False)
    status = Column(String(20), nullable=False, default=PaymentStatus.PENDING.value)
    payment_type = Column(String(10), default=PaymentType.OFFLINE.value)
    channel = Column(String(20), default="cash")       # cash, bank, bkash, nagad, rocket, card, other

    linked_due_id = Column(Integer, ForeignKey("dues.id"), nullable=True)
    advance_applied_amount = Column(MONEY, nullable=False, default=0)

    reference = Column(String(64), unique=True, nullable=False)
    invoice_id = Column(String(100), unique=True, nullable=True)   # id de la pasarela
    payment_url = Column(String(500), nullable=True)

    # Variante etiquetada: {"kind": "requested", "at": ...} | {"kind": "approved", ...}
    approval = Column(JSON, nullable=True)
    gateway_metadata = Column(JSON, nullable=True)
    transaction_id = Column(String(100), nullable=True)
    fee = Column(MONEY, nullable=True)

    notes = Column(Text, nullable=True)
    payment_date = Column(Date, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    verified_at = Column(DateTime(timezone=True), nullable=True)   # confirmado por pasarela
    settled_at = Column(DateTime(timezone=True), nullable=True)    # conciliado contra cuotas
    reversed_at = Column(DateTime(timezone=True), nullable=True)

    member = relationship("Member")
    linked_due = relationship("Due")
    allocations = relationship("PaymentAllocation", back_populates="payment")


class PaymentAllocation(Base):
    """Cuánto de un pago se imputó a cada cuota. Fuente para recalcular en reversas."""
    __tablename__ = "payment_allocations"
    __table_args__ = (
        UniqueConstraint("payment_id", "due_id", name="uq_allocation_payment_due"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    payment_id = Column(Integer, ForeignKey("payments.id"), nullable=False, index=True)
    due_id = Column(Integer, ForeignKey("dues.id"), nullable=False, index=True)
    amount = Column(MONEY, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    payment = relationship("Payment", back_populates="allocations")
    due = relationship("Due", back_populates="allocations")


class MemberBalance(Base):
    """Crédito a favor reutilizable (advance). Nunca negativo."""
    __tablename__ = "member_balances"
    __table_args__ = (
        UniqueConstraint("organization_id", "member_id", name="uq_balance_org_member"),
        CheckConstraint("advance_balance >= 0", name="ck_balance_non_negative"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    organization_id = Column(Integer, ForeignKey("organizations.id"), nullable=False)
    member_id = Column(Integer, ForeignKey("members.id"), nullable=False)
    advance_balance = Column(MONEY, nullable=False, default=0)
    last_reconciled_at = Column(DateTime(timezone=True), nullable=True)
    version = Column(Integer, nullable=False)

    __mapper_args__ = {"version_id_col": version}


class ReconciliationLog(Base):
    """Trail de auditoría. Solo inserción."""
    __tablename__ = "payment_reconciliation_logs"
    __table_args__ = (
        Index("ix_recon_logs_subject", "subject_type", "subject_id"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    organization_id = Column(Integer, ForeignKey("organizations.id"), nullable=False)
    subject_id = Column(Integer, nullable=True)          # payment_id o due_id
    subject_type = Column(String(10), default="payment")  # payment | due
    member_id = Column(Integer, ForeignKey("members.id"), nullable=False)
    action = Column(String(40), nullable=False)
    details = Column(JSON, default=dict)
    created_at = Column(DateTime(timezone=True), server_default=func.now())


class PaymentLog(Base):
    """Transiciones de estado reportadas por la pasarela."""
    __tablename__ = "payment_logs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    payment_id = Column(Integer, ForeignKey("payments.id"), nullable=False, index=True)
    organization_id = Column(Integer, ForeignKey("organizations.id"), nullable=False)
    action = Column(String(40), nullable=False)
    previous_status = Column(String(20), nullable=True)
    new_status = Column(String(20), nullable=True)
    details = Column(JSON, default=dict)
    created_at = Column(DateTime(timezone=True), server_default=func.now())


class AuditLog(Base):
    """Acciones administrativas (bulk, condonaciones, reversas, rechazos por tope)."""
    __tablename__ = "audit_logs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    organization_id = Column(Integer, ForeignKey("organizations.id"), nullable=True)
    user_id = Column(Integer, nullable=True)
    action = Column(String(60), nullable=False)
    entity_type = Column(String(30), nullable=True)
    entity_id = Column(Integer, nullable=True)
    before_state = Column(JSON, nullable=True)
    after_state = Column(JSON, nullable=True)
    details = Column(JSON, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
