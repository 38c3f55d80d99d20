"""Role checks shared by the services. Run before any store I/O."""

from core.errors import AccessDeniedError
from utils.user_context import Actor, get_current_actor


def resolve_actor(actor: Actor | None = None) -> Actor:
    """The explicit actor, else the signed-in one (RuntimeError if signed out)."""
    return actor if actor is not None else get_current_actor()


def require_writer(actor: Actor | None, action: str) -> Actor:
    """Resolve the actor and reject viewers."""
    actor = resolve_actor(actor)
    if not actor.can_write:
        raise AccessDeniedError(f"User {actor.id} ({actor.role.value}) may not {action}")
    return actor


def require_admin(actor: Actor | None, action: str) -> Actor:
    """Resolve the actor and reject everyone but admins."""
    actor = resolve_actor(actor)
    if not actor.is_admin:
        raise AccessDeniedError(f"User {actor.id} ({actor.role.value}) may not {action}; admin role required")
    return actor
