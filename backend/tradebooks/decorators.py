# Overview: Request decorators for API routes.

from functools import wraps
from flask import request, g

from .errors import ValidationFailed

ACTOR_HEADER = "X-Actor-Id"


def _parse_actor(raw):
    if raw is None or raw.strip() == "":
        return None
    try:
        actor_id = int(raw)
    except ValueError:
        raise ValidationFailed("Invalid actor", errors=[f"{ACTOR_HEADER} must be an integer"])
    if actor_id <= 0:
        raise ValidationFailed("Invalid actor", errors=[f"{ACTOR_HEADER} must be positive"])
    return actor_id


def with_actor(f):
    """
    Establish the acting user for attribution.

    Sets g.actor_id from the X-Actor-Id header (None when absent). Who the
    actor is and what they may do is decided upstream; the engine only
    records the id on what it writes.
    """
    @wraps(f)
    def decorated_function(*args, **kwargs):
        g.actor_id = _parse_actor(request.headers.get(ACTOR_HEADER))
        return f(*args, **kwargs)

    return decorated_function


def json_body() -> dict:
    """The request's JSON object; anything else is a validation failure."""
    data = request.get_json(silent=True)
    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise ValidationFailed("Invalid request body", errors=["body must be a JSON object"])
    return data
