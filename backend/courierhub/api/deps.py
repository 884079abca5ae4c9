from typing import Callable, Optional

from fastapi import Depends, Header, HTTPException, Request, status

from courierhub.core.observability import request_id_for
from courierhub.database import get_db
from courierhub.models import ActorRole
from courierhub.services.event_sink import correlation_id_from_request_id
from courierhub.services.order_lifecycle import Actor

__all__ = [
    "get_actor",
    "get_correlation_id",
    "get_db",
    "idempotency_key",
    "require_roles",
]


def get_actor(
    x_actor_id: Optional[str] = Header(default=None, alias="X-Actor-Id"),
    x_actor_role: Optional[str] = Header(default=None, alias="X-Actor-Role"),
) -> Actor:
    """Identity forwarded by the authenticating gateway."""

    if not x_actor_id or not x_actor_role:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Not authenticated")
    try:
        actor_id = int(str(x_actor_id).strip())
    except ValueError:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid actor id")
    try:
        role = ActorRole(str(x_actor_role).strip().lower())
    except ValueError:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Unknown actor role")
    return Actor(id=actor_id, role=role)


_ACTOR_DEP = Depends(get_actor)


def require_roles(*roles: ActorRole) -> Callable:
    allowed = {r.value if isinstance(r, ActorRole) else str(r) for r in roles}

    def dependency(actor: Actor = _ACTOR_DEP) -> Actor:
        # Admin has access to everything
        if actor.is_admin:
            return actor
        if allowed and actor.role.value not in allowed:
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Insufficient role")
        return actor

    return dependency


def get_correlation_id(request: Request) -> str:
    return correlation_id_from_request_id(request_id_for(request))


def idempotency_key(
    x_idempotency_key: Optional[str] = Header(default=None, alias="X-Idempotency-Key"),
) -> Optional[str]:
    if x_idempotency_key is None:
        return None
    key = str(x_idempotency_key).strip()
    if not key:
        return None
    if len(key) > 128:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST, detail="X-Idempotency-Key is too long"
        )
    return key
