"""
Serialización por miembro
app/services/locks.py

El read-modify-write de member_balances y dues debe ser secuencial por
miembro. Tres capas:

1. Lock en proceso por (organización, miembro): member_lock()
2. SELECT ... FOR UPDATE sobre las filas a modificar (PostgreSQL)
3. version_id_col en Due/MemberBalance: si otra instancia escribió
   primero, SQLAlchemy lanza StaleDataError y retry_on_conflict()
   reintenta la unidad de trabajo completa.

El registro de locks solo guarda las claves en uso: la entrada se borra
cuando sale el último hilo que la retenía o esperaba.
"""

import logging
import threading
from contextlib import contextmanager
from typing import Dict, Iterable, List, Tuple

from sqlalchemy.orm.exc import StaleDataError
from tenacity import retry, retry_if_exception_type, stop_after_attempt

from app.config import LOCK_RETRIES

logger = logging.getLogger(__name__)

_registry_lock = threading.Lock()
# (organización, miembro) → [RLock, hilos que lo retienen o esperan]
_member_locks: Dict[Tuple[int, int], list] = {}


def _checkout(key: Tuple[int, int]) -> threading.RLock:
    with _registry_lock:
        entry = _member_locks.get(key)
        if entry is None:
            entry = [threading.RLock(), 0]
            _member_locks[key] = entry
        entry[1] += 1
        return entry[0]


def _checkin(key: Tuple[int, int]):
    with _registry_lock:
        entry = _member_locks.get(key)
        if entry is None:
            return
        entry[1] -= 1
        if entry[1] <= 0:
            del _member_locks[key]


@contextmanager
def member_lock(organization_id: int, member_id: int):
    """Retiene el lock del miembro durante el bloque."""
    with members_lock(organization_id, [member_id]):
        yield


@contextmanager
def members_lock(organization_id: int, member_ids: Iterable[int]):
    """Varios miembros a la vez, en orden de id para evitar deadlocks."""
    keys = [(organization_id, m) for m in sorted(set(member_ids))]
    tomados: List[Tuple[Tuple[int, int], threading.RLock]] = []
    try:
        for key in keys:
            lock = _checkout(key)
            lock.acquire()
            tomados.append((key, lock))
        yield
    finally:
        for key, lock in reversed(tomados):
            lock.release()
            _checkin(key)


def reset_locks():
    """Vacía el registro (tests / reinicio del proceso)."""
    with _registry_lock:
        _member_locks.clear()


def _rollback_session(retry_state):
    db = retry_state.args[0] if retry_state.args else retry_state.kwargs["db"]
    db.rollback()
    nombre = retry_state.fn.__name__
    if retry_state.attempt_number >= LOCK_RETRIES:
        logger.error(f"{nombre}: conflicto de concurrencia tras {retry_state.attempt_number} intentos")
    else:
        logger.warning(f"{nombre}: conflicto de versión, reintento {retry_state.attempt_number}")


def retry_on_conflict(func):
    """
    Reintenta la operación si el bloqueo optimista detecta una escritura
    concurrente. La función decorada recibe `db` como primer argumento;
    cada intento fallido deja la sesión en rollback.
    """
    return retry(
        retry=retry_if_exception_type(StaleDataError),
        stop=stop_after_attempt(LOCK_RETRIES),
        after=_rollback_session,
        reraise=True,
    )(func)
