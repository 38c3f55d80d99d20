"""Utility modules for cross-cutting concerns."""

from utils.timezone import now_utc, now_iso, today_iso, to_utc, parse_iso, parse_date
from utils.user_context import (
    Actor,
    ActorRole,
    get_current_actor,
    set_current_actor,
    clear_current_actor,
    actor_context,
)
from utils.push_id import PushIdGenerator, push_id_timestamp
