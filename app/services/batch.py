"""
Resultado estructurado de operaciones masivas
app/services/batch.py

Tres secuencias ordenadas: created, skipped(reason), failed(error).
Una operación masiva NO es atómica: el éxito parcial se reporta, nunca
se traga.
"""

from dataclasses import dataclass, field
from typing import Iterator, List, Sequence


@dataclass
class BatchResult:
    created: List[dict] = field(default_factory=list)   # {"member_id", "id"}
    skipped: List[dict] = field(default_factory=list)   # {"member_id", "reason"}
    failed: List[dict] = field(default_factory=list)    # {"member_id", "error"}

    def add_created(self, member_id: int, record_id: int):
        self.created.append({"member_id": member_id, "id": record_id})

    def add_skipped(self, member_id: int, reason: str):
        self.skipped.append({"member_id": member_id, "reason": reason})

    def add_failed(self, member_id: int, error: str):
        self.failed.append({"member_id": member_id, "error": error})

    @property
    def per_member_reasons(self) -> dict:
        reasons = {s["member_id"]: s["reason"] for s in self.skipped}
        reasons.update({f["member_id"]: f["error"] for f in self.failed})
        return reasons

    def to_dict(self) -> dict:
        return {
            "created": len(self.created),
            "skipped": len(self.skipped),
            "failed": len(self.failed),
            "details": {
                "created_ids": [c["id"] for c in self.created],
                "skipped_members": list(self.skipped),
                "failed_members": list(self.failed),
            },
        }


def error_text(exc: Exception) -> str:
    """Primera línea del error de BD (sin el SQL completo)."""
    lineas = str(exc).splitlines()
    return f"{exc.__class__.__name__}: {lineas[0] if lineas else ''}"


def chunked(items: Sequence, size: int) -> Iterator[Sequence]:
    for i in range(0, len(items), size):
        yield items[i:i + size]
