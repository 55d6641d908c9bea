"""
Tenant scoping for reads and writes.

Every service call that touches tenant-owned rows checks authorize() first;
there are no database-side row policies.
"""

from mailsync.features.sync_engine.domain.errors import AccessDenied
from mailsync.features.sync_engine.domain.models import Actor, Resource

PRIVILEGED_ROLES = frozenset({"operator", "service"})
MEMBER_ACTIONS = frozenset({"read", "write"})


def authorize(actor: Actor, resource: Resource, action: str = "read") -> bool:
    if actor.role in PRIVILEGED_ROLES:
        return True

    if actor.role != "member" or action not in MEMBER_ACTIONS:
        return False

    return actor.tenant_id is not None and str(actor.tenant_id) == str(resource.tenant_id)


def ensure_authorized(actor: Actor, resource: Resource, action: str = "read") -> None:
    """Raise AccessDenied unless authorize() allows the action."""
    if not authorize(actor, resource, action):
        raise AccessDenied(actor.actor_id, action, resource.kind)


def ensure_operator(actor: Actor, action: str = "manage") -> None:
    if actor.role not in PRIVILEGED_ROLES:
        raise AccessDenied(actor.actor_id, action, "operator endpoint")
