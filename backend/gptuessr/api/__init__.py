"""Request parsing and broadcast helpers shared by the HTTP blueprints."""
from flask import request

from gptuessr import socketio
from gptuessr.errors import InvalidArgument
from gptuessr.models import User


def json_body() -> dict:
    data = request.get_json(silent=True)
    return data if isinstance(data, dict) else {}


def int_field(data: dict, name: str, required: bool = False, default=None):
    value = data.get(name)
    if value is None:
        if required:
            raise InvalidArgument(name, f"{name} is required")
        return default
    if isinstance(value, bool):
        raise InvalidArgument(name, f"{name} must be an integer")
    try:
        return int(value)
    except (TypeError, ValueError):
        raise InvalidArgument(name, f"{name} must be an integer")


def str_field(data: dict, name: str) -> str:
    value = data.get(name)
    if not isinstance(value, str) or not value.strip():
        raise InvalidArgument(name, f"{name} is required")
    return value.strip()


def users_by_id(subject_ids) -> dict:
    ids = list(subject_ids)
    if not ids:
        return {}
    return {u.subject_id: u for u in User.query.filter(User.subject_id.in_(ids)).all()}


def broadcast_state(lobby_code: str) -> None:
    socketio.emit('state_update', {'lobby_code': lobby_code}, to=f"lobby:{lobby_code}", namespace='/ws')


def broadcast_closed(lobby_code: str, reason: str) -> None:
    socketio.emit('lobby_closed', {'lobby_code': lobby_code, 'reason': reason}, to=f"lobby:{lobby_code}", namespace='/ws')
