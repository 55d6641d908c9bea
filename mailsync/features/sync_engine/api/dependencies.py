"""
FastAPI dependencies: JWT claims -> Actor, operator gate, request id.
"""

from fastapi import Depends, HTTPException, Request, status

from mailsync.auth.verify import auth_dependency
from mailsync.features.sync_engine.domain.models import Actor

VALID_ROLES = ("member", "operator", "service")


def get_actor(claims: dict = Depends(auth_dependency)) -> Actor:
    actor_id = claims.get("sub")
    if not actor_id:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token")

    role = claims.get("role") or (claims.get("app_metadata") or {}).get("role") or "member"
    if role not in VALID_ROLES:
        role = "member"

    tenant_id = claims.get("tenant_id") or (claims.get("app_metadata") or {}).get("tenant_id")
    return Actor(actor_id=str(actor_id), tenant_id=str(tenant_id) if tenant_id else None, role=role)


def require_operator(actor: Actor = Depends(get_actor)) -> Actor:
    if actor.role not in ("operator", "service"):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Operator role required")
    return actor


def get_request_id(request: Request) -> str | None:
    return getattr(request.state, "request_id", None)
