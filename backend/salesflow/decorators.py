# Overview: Request decorators that resolve the acting user forwarded by the upstream auth proxy.

from __future__ import annotations

from dataclasses import dataclass, field
from functools import wraps

from flask import current_app, g, jsonify, request


ACTOR_HEADER = "X-Actor-Id"
ROLES_HEADER = "X-Actor-Roles"


@dataclass(frozen=True)
class ActorContext:
    actor_id: str
    roles: frozenset = field(default_factory=frozenset)
    is_privileged: bool = False

    @classmethod
    def from_roles(cls, actor_id: str, roles, privileged_roles) -> "ActorContext":
        normalized = frozenset(r.strip().lower() for r in roles if r and r.strip())
        return cls(
            actor_id=actor_id,
            roles=normalized,
            is_privileged=bool(normalized & set(privileged_roles)),
        )


def _actor_from_request() -> ActorContext | None:
    actor_id = (request.headers.get(ACTOR_HEADER) or "").strip()
    if not actor_id:
        return None
    roles = (request.headers.get(ROLES_HEADER) or "").split(",")
    return ActorContext.from_roles(actor_id, roles, current_app.config.get("PRIVILEGED_ROLES", set()))


def require_actor(f):
    """
    Require a resolved acting user.

    Authentication happens upstream; this only records who is acting.
    Sets g.actor (ActorContext). Returns 401 if the actor header is missing.
    """
    @wraps(f)
    def decorated_function(*args, **kwargs):
        actor = _actor_from_request()
        if actor is None:
            return jsonify({"error": "Acting user required"}), 401
        g.actor = actor
        return f(*args, **kwargs)

    return decorated_function


def require_privileged(f):
    """Require an actor holding one of PRIVILEGED_ROLES. Use after @require_actor."""
    @wraps(f)
    def decorated_function(*args, **kwargs):
        actor = getattr(g, "actor", None)
        if actor is None:
            return jsonify({"error": "Acting user required"}), 401
        if not actor.is_privileged:
            return jsonify({"error": "Privileged role required"}), 403
        return f(*args, **kwargs)

    return decorated_function
