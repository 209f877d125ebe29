"""
Periodos 'YYYY-MM'
app/services/periods.py

Acepta:
  - "2025-01"
  - "2025-01-01"
  - "2025-01-01 00:00:00"
"""

import re
from typing import Optional

from app.services.errors import LedgerValidationError

_PERIOD_RE = re.compile(r'^(\d{4})-(\d{2})(?:-\d{2}(?:[ T].*)?)?$')


def parse_period(texto: str) -> Optional[str]:
    """Normaliza a 'YYYY-MM' o None si no es válido."""
    if not texto:
        return None
    m = _PERIOD_RE.match(str(texto).strip())
    if not m:
        return None
    anio, mes = int(m.group(1)), int(m.group(2))
    if not 1 <= mes <= 12:
        return None
    return f"{anio}-{mes:02d}"


def require_period(texto: str) -> str:
    periodo = parse_period(texto)
    if not periodo:
        raise LedgerValidationError(f"Invalid period '{texto}', expected YYYY-MM")
    return periodo


def period_of(d) -> str:
    """date/datetime → 'YYYY-MM'."""
    return f"{d.year}-{d.month:02d}"

