"""
Estado de aprobación de pagos solicitados por el miembro
app/services/payment_approval.py

Payment.approval guarda una variante etiquetada en JSON:

    None                                          → NoApproval
    {"kind": "requested", "at": ..., "by": 7}     → Requested
    {"kind": "approved",  "at": ..., "by": 2,
     "requested_at": ..., "requested_by": 7}      → Approved
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Optional, Union


@dataclass(frozen=True)
class NoApproval:
    kind = "none"


@dataclass(frozen=True)
class Requested:
    at: datetime
    by: Optional[int] = None
    kind = "requested"


@dataclass(frozen=True)
class Approved:
    at: datetime
    by: Optional[int] = None
    requested_at: Optional[datetime] = None
    requested_by: Optional[int] = None
    kind = "approved"


PaymentApproval = Union[NoApproval, Requested, Approved]


def _dt(value) -> Optional[datetime]:
    if value is None or isinstance(value, datetime):
        return value
    return datetime.fromisoformat(str(value))


def parse_approval(raw: Optional[dict]) -> PaymentApproval:
    if not raw:
        return NoApproval()
    kind = raw.get("kind")
    if kind == Requested.kind:
        return Requested(at=_dt(raw.get("at")), by=raw.get("by"))
    if kind == Approved.kind:
        return Approved(
            at=_dt(raw.get("at")),
            by=raw.get("by"),
            requested_at=_dt(raw.get("requested_at")),
            requested_by=raw.get("requested_by"),
        )
    raise ValueError(f"Unknown approval kind '{kind}'")


def dump_approval(approval: PaymentApproval) -> Optional[dict]:
    if isinstance(approval, NoApproval):
        return None
    data = {
        "kind": approval.kind,
        "at": approval.at.isoformat() if approval.at else None,
        "by": approval.by,
    }
    if isinstance(approval, Approved):
        data["requested_at"] = approval.requested_at.isoformat() if approval.requested_at else None
        data["requested_by"] = approval.requested_by
    return data


def approve(current: PaymentApproval, at: datetime, by: Optional[int]) -> Approved:
    """Requested → Approved. Cualquier otro estado es un error del llamador."""
    if not isinstance(current, Requested):
        raise ValueError(f"Cannot approve from state '{current.kind}'")
    return Approved(at=at, by=by, requested_at=current.at, requested_by=current.by)
