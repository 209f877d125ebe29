"""
Middleware de Autorización
app/middleware/authorization.py

Dependencies de FastAPI: quién llama (JWT emitido por la capa de
identidad), qué rol tiene y si superó su rate limit.

Uso:
    @router.post("/bulk")
    def crear_cuotas(
        caller: Caller = Depends(require_role("admin")),
        _: None = Depends(rate_limited("api")),
    ):
        ...

Claims esperados: user_id, tenant_id, role ("admin" | "manager" | "member"),
member_id (solo miembros).
"""

from dataclasses import dataclass
from typing import Callable, Optional

from fastapi import Depends, HTTPException, Request
from jose import JWTError, jwt

from app.config import ALGORITHM, SECRET_KEY
from app.services.rate_limit import rate_limiter

ROLES = ("admin", "manager", "member")


@dataclass
class Caller:
    user_id: int
    organization_id: int
    role: str
    member_id: Optional[int] = None

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"


def _decode_token(token: str) -> Optional[dict]:
    try:
        return jwt.decode(token, SECRET_KEY, algorithms=[ALGORITHM])
    except JWTError:
        return None


def create_access_token(user_id: int, organization_id: int, role: str,
                        member_id: Optional[int] = None) -> str:
    """Firma un token con los claims que espera get_caller (tests, scripts)."""
    claims = {"user_id": user_id, "tenant_id": organization_id, "role": role}
    if member_id is not None:
        claims["member_id"] = member_id
    return jwt.encode(claims, SECRET_KEY, algorithm=ALGORITHM)


def get_caller(request: Request) -> Caller:
    """Extrae el usuario autenticado del header Authorization: Bearer."""
    auth_header = request.headers.get("Authorization", "")
    if not auth_header.startswith("Bearer "):
        raise HTTPException(
            status_code=401,
            detail={"error": "Not authenticated", "code": "AUTH_REQUIRED"},
        )

    payload = _decode_token(auth_header.replace("Bearer ", "", 1))
    if not payload or not payload.get("user_id") or not payload.get("tenant_id"):
        raise HTTPException(
            status_code=401,
            detail={"error": "Invalid or expired token", "code": "AUTH_INVALID"},
        )

    role = payload.get("role")
    if role not in ROLES:
        raise HTTPException(
            status_code=403,
            detail={"error": "User has no access to this tenant", "code": "NO_ACCESS"},
        )

    caller = Caller(
        user_id=int(payload["user_id"]),
        organization_id=int(payload["tenant_id"]),
        role=role,
        member_id=payload.get("member_id"),
    )
    request.state.caller = caller
    return caller


def require_role(*allowed_roles: str) -> Callable:
    """Verifica rol: require_role("admin", "manager")"""
    def verify(caller: Caller = Depends(get_caller)) -> Caller:
        if caller.role not in allowed_roles:
            raise HTTPException(
                status_code=403,
                detail={
                    "error": f"Requires role: {', '.join(allowed_roles)}",
                    "code": "FORBIDDEN",
                    "current_role": caller.role,
                },
            )
        return caller
    return verify


def rate_limited(kind: str = "api") -> Callable:
    """Ventana fija por usuario autenticado, o por IP si no hay token."""
    def verify(request: Request) -> None:
        caller = getattr(request.state, "caller", None)
        if caller is not None:
            identity = f"user:{caller.user_id}"
        else:
            identity = f"ip:{request.client.host if request.client else 'unknown'}"

        result = rate_limiter.check(identity, kind)
        if not result.allowed:
            raise HTTPException(
                status_code=429,
                detail={"error": "Too many requests. Please try again later.",
                        "retry_after": result.retry_after},
                headers={"Retry-After": str(result.retry_after)},
            )
    return verify
