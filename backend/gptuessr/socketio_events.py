from flask_socketio import join_room, leave_room, emit

from gptuessr import socketio


def _room_for(data):
    lobby_code = (data or {}).get('lobby_code')
    if not lobby_code or not isinstance(lobby_code, str):
        emit('error', {'message': 'lobby_code is required'})
        return None
    return f"lobby:{lobby_code.strip().upper()}"


def handle_connect():
    emit('connected', {'message': 'Connected to /ws'})


def handle_join_lobby(data):
    room = _room_for(data)
    if room:
        join_room(room)
        emit('joined', {'room': room})


def handle_leave_lobby(data):
    room = _room_for(data)
    if room:
        leave_room(room)
        emit('left', {'room': room})


def handle_ping(data):
    emit('pong', data or {})


def register_socketio_handlers(testing: bool = False) -> None:
    """Register Socket.IO event handlers.

    Rooms are named ``lobby:<CODE>``; HTTP mutations broadcast ``state_update``
    and ``lobby_closed`` to them. Always registered on '/ws'; when testing is
    True, also mirrored on '/' for the test harness.
    """
    socketio.on_event('connect', handle_connect, namespace='/ws')
    socketio.on_event('join_lobby', handle_join_lobby, namespace='/ws')
    socketio.on_event('leave_lobby', handle_leave_lobby, namespace='/ws')
    socketio.on_event('ping', handle_ping, namespace='/ws')

    if testing:
        socketio.on_event('connect', handle_connect, namespace='/')
        socketio.on_event('join_lobby', handle_join_lobby, namespace='/')
        socketio.on_event('leave_lobby', handle_leave_lobby, namespace='/')
        socketio.on_event('ping', handle_ping, namespace='/')
