"""
Rate limiting por ventana fija
app/services/rate_limit.py

Con REDIS_URL configurado los contadores viven en Redis (INCR + EXPIRE)
y se comparten entre instancias. Sin Redis, o si Redis falla, se usa un
store en memoria del proceso que se pierde al reiniciar.
"""

import logging
import threading
import time
from dataclasses import dataclass
from typing import Dict, Optional, Tuple

from app.config import RATE_LIMITS, redis_client

logger = logging.getLogger(__name__)

# Cada cuánto se purgan del store en memoria las ventanas ya vencidas
SWEEP_SECONDS = 60


@dataclass
class RateLimitResult:
    allowed: bool
    remaining: int
    reset_in: float     # segundos

    @property
    def retry_after(self) -> int:
        return max(1, int(self.reset_in + 0.999))


class RateLimiter:
    """Estado de proceso con ciclo de vida explícito: reset() lo vacía."""

    def __init__(self, limits: Dict[str, dict] = None, client=None):
        self.limits = limits or RATE_LIMITS
        self.client = client
        self._memory: Dict[str, Tuple[int, float]] = {}   # key → (count, reset_at)
        self._lock = threading.Lock()
        self._next_sweep = 0.0

    def _config(self, kind: str) -> dict:
        if kind not in self.limits:
            raise ValueError(f"Unknown rate limit type '{kind}'")
        return self.limits[kind]

    def check(self, identity: str, kind: str = "api", now: Optional[float] = None) -> RateLimitResult:
        config = self._config(kind)
        key = f"ratelimit:{kind}:{identity}"

        if self.client is not None:
            try:
                return self._check_redis(key, config)
            except Exception as e:
                logger.warning(f"⚠️ Redis Error en rate limit (usando memoria): {e}")

        return self._check_memory(key, config, now if now is not None else time.time())

    def _check_redis(self, key: str, config: dict) -> RateLimitResult:
        count = self.client.incr(key)
        if count == 1:
            self.client.expire(key, config["window"])
        ttl = self.client.ttl(key)
        reset_in = float(ttl if ttl and ttl > 0 else config["window"])
        if count > config["max"]:
            return RateLimitResult(allowed=False, remaining=0, reset_in=reset_in)
        return RateLimitResult(allowed=True, remaining=config["max"] - count, reset_in=reset_in)

    def _sweep(self, now: float):
        if now < self._next_sweep:
            return
        vencidas = [k for k, (_, reset_at) in self._memory.items() if reset_at <= now]
        for key in vencidas:
            del self._memory[key]
        self._next_sweep = now + SWEEP_SECONDS

    def _check_memory(self, key: str, config: dict, now: float) -> RateLimitResult:
        with self._lock:
            self._sweep(now)
            count, reset_at = self._memory.get(key, (0, 0.0))
            if now >= reset_at:
                # Ventana nueva
                self._memory[key] = (1, now + config["window"])
                return RateLimitResult(allowed=True, remaining=config["max"] - 1, reset_in=config["window"])

            if count >= config["max"]:
                return RateLimitResult(allowed=False, remaining=0, reset_in=reset_at - now)

            self._memory[key] = (count + 1, reset_at)
            return RateLimitResult(allowed=True, remaining=config["max"] - count - 1, reset_in=reset_at - now)

    def reset(self):
        with self._lock:
            self._memory.clear()
            self._next_sweep = 0.0


rate_limiter = RateLimiter(client=redis_client)
