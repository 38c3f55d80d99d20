"""Propagate the acting user through the call stack using contextvars."""

from contextlib import contextmanager
from contextvars import ContextVar
from dataclasses import dataclass
from enum import Enum


class ActorRole(str, Enum):
    """What an authenticated user may do."""

    ADMIN = "admin"
    REVIEWER = "reviewer"
    VIEWER = "viewer"


@dataclass(frozen=True)
class Actor:
    """
    Opaque identity handed over by the identity provider.

    The core never authenticates; it only reads the id for attribution
    and the role for authorization checks.
    """

    id: str
    role: ActorRole = ActorRole.REVIEWER

    @property
    def can_write(self) -> bool:
        return self.role != ActorRole.VIEWER

    @property
    def is_admin(self) -> bool:
        return self.role == ActorRole.ADMIN


_current_actor: ContextVar[Actor | None] = ContextVar("current_actor", default=None)


def get_current_actor() -> Actor:
    """
    Get the signed-in actor from context.

    Raises RuntimeError if nobody is signed in.
    This is fail-fast behavior - if you're in a code path that
    requires an actor and none is set, that's a bug.
    """
    actor = _current_actor.get()
    if actor is None:
        raise RuntimeError(
            "No actor context set. This usually means you're calling "
            "user-scoped code after sign-out or outside a session."
        )
    return actor


def set_current_actor(actor: Actor) -> None:
    """
    Bind the actor to the current context.

    Called when the identity provider reports a sign-in.
    """
    _current_actor.set(actor)


def clear_current_actor() -> None:
    """
    Clear actor context.

    Called when the identity provider reports a sign-out.
    """
    _current_actor.set(None)


@contextmanager
def actor_context(actor: Actor):
    """
    Context manager for temporarily acting as someone.

    Useful for:
    - Tests
    - Background jobs that iterate over users
    - Admin operations on behalf of a user

    Example:
        with actor_context(Actor(id="u1", role=ActorRole.ADMIN)):
            await invoice_service.cancel(invoice_id)
    """
    previous = _current_actor.get()
    set_current_actor(actor)
    try:
        yield actor
    finally:
        if previous is None:
            clear_current_actor()
        else:
            set_current_actor(previous)
