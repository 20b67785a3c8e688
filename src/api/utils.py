"""
Shared helpers for the Kudos Integrity API blueprints.

Request parsing, actor extraction and access to the per-app components.
Every helper raises IntegrityError subclasses; the error handlers in
api/__init__.py turn them into JSON responses.
"""

from datetime import datetime
from typing import Any

from flask import current_app, jsonify, request

from bootstrap import Components
from errors import ValidationError
from idempotency import get_idempotency_key
from models import Actor, parse_iso

ACTOR_HEADER = "X-Actor-Id"
COMPONENTS_KEY = "kudos_components"
MAX_ID_LENGTH = 128


def components() -> Components:
    return current_app.extensions[COMPONENTS_KEY]


def current_actor_id() -> str:
    """The caller's id from X-Actor-Id; authentication happens upstream."""
    actor_id = (request.headers.get(ACTOR_HEADER) or "").strip()
    if not actor_id:
        raise ValidationError(f"{ACTOR_HEADER} header is required", details={"header": ACTOR_HEADER})
    if len(actor_id) > MAX_ID_LENGTH:
        raise ValidationError(f"{ACTOR_HEADER} is too long", details={"header": ACTOR_HEADER})
    return actor_id


def current_actor() -> Actor:
    return components().identity.resolve(current_actor_id())


def idempotency_key() -> str | None:
    return get_idempotency_key(request.headers)


def json_body() -> dict[str, Any]:
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        raise ValidationError("Request body must be a JSON object")
    return data


def validate_json_schema(
    data: dict[str, Any],
    required_fields: dict[str, type | tuple[type, ...]],
    optional_fields: dict[str, type | tuple[type, ...]] | None = None,
    max_lengths: dict[str, int] | None = None,
) -> None:
    """
    Check field presence, types and string lengths.

    Raises:
        ValidationError: Naming the first offending field
    """
    for name, expected in required_fields.items():
        if data.get(name) is None:
            raise ValidationError(f"Missing required field: {name}", details={"field": name})
        _check_type(name, data[name], expected)

    for name, expected in (optional_fields or {}).items():
        if data.get(name) is not None:
            _check_type(name, data[name], expected)

    for name, max_len in (max_lengths or {}).items():
        value = data.get(name)
        if isinstance(value, str) and len(value) > max_len:
            raise ValidationError(
                f"Field '{name}' exceeds maximum length of {max_len}",
                details={"field": name, "max_length": max_len},
            )


def _check_type(name: str, value: Any, expected: type | tuple[type, ...]) -> None:
    allowed = expected if isinstance(expected, tuple) else (expected,)
    # bool is an int subclass
    if not isinstance(value, allowed) or (isinstance(value, bool) and bool not in allowed):
        raise ValidationError(f"Field '{name}' has the wrong type", details={"field": name})


def query_datetime(name: str) -> datetime | None:
    raw = request.args.get(name)
    if not raw:
        return None
    try:
        return parse_iso(raw)
    except ValueError as e:
        raise ValidationError(f"Invalid timestamp for '{name}'", details={"field": name}) from e


def query_list(name: str) -> list[str]:
    raw = request.args.get(name, "")
    return [part.strip().upper() for part in raw.split(",") if part.strip()]


def ok(payload: Any, status: int = 200, headers: dict[str, str] | None = None):
    return jsonify(payload), status, headers or {}
