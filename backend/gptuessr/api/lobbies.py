from flask import Blueprint, jsonify, current_app
from flask_login import current_user, login_required

from gptuessr.api import broadcast_closed, broadcast_state, int_field, json_body, str_field, users_by_id
from gptuessr.errors import NotHost
from gptuessr.services.lobbies import lifecycle

lobbies = Blueprint('lobbies', __name__)


def _view(lobby):
    return lobby.to_dict(viewer_id=current_user.subject_id, users=users_by_id(lobby.members))


@lobbies.route('/create', methods=['POST'])
@login_required
def create_lobby():
    data = json_body()
    lobby = lifecycle.create(
        current_user.subject_id,
        number_of_rounds=int_field(data, 'number_of_rounds', required=True),
        time_limit=int_field(data, 'time_limit', required=True),
        max_players=int_field(data, 'max_players', default=lifecycle.DEFAULT_MAX_PLAYERS),
        game_settings=data.get('game_settings'),
    )
    return jsonify(_view(lobby)), 201


@lobbies.route('/host', methods=['GET'])
@login_required
def lobbies_hosted():
    return jsonify([lobby.to_dict() for lobby in lifecycle.find_by_host(current_user.subject_id)])


@lobbies.route('/player', methods=['GET'])
@login_required
def lobbies_joined():
    return jsonify([lobby.to_dict() for lobby in lifecycle.find_by_player(current_user.subject_id)])


@lobbies.route('/active/count', methods=['GET'])
def active_count():
    return jsonify({'count': lifecycle.count_active()})


@lobbies.route('/<string:code>', methods=['GET'])
@login_required
def get_lobby(code):
    return jsonify(_view(lifecycle.get_by_code(code)))


@lobbies.route('/join', methods=['POST'])
@login_required
def join_lobby():
    code = str_field(json_body(), 'lobby_code').upper()
    lobby = lifecycle.join(code, current_user.subject_id)
    broadcast_state(lobby.code)
    return jsonify(_view(lobby))


@lobbies.route('/leave', methods=['POST'])
@login_required
def leave_lobby():
    code = str_field(json_body(), 'lobby_code').upper()
    lobby = lifecycle.leave(code, current_user.subject_id)
    if lobby is None:
        broadcast_closed(code, 'host_left')
        return jsonify({'lobby_code': code, 'closed': True})
    broadcast_state(lobby.code)
    return jsonify({'lobby_code': lobby.code, 'closed': False})


@lobbies.route('/start', methods=['POST'])
@login_required
def start_lobby_game():
    code = str_field(json_body(), 'lobby_code').upper()
    lobby = lifecycle.start_game(code, current_user.subject_id)
    broadcast_state(lobby.code)
    payload = _view(lobby)
    payload['game'] = lobby.game.to_dict()
    return jsonify(payload)


def _require_host(code, action):
    lobby = lifecycle.get_by_code(code)
    if lobby.host_id != current_user.subject_id:
        current_app.logger.error(f"[lobby] caller={current_user.subject_id} is not host of {lobby.code}")
        raise NotHost(action)
    return lobby


@lobbies.route('/end', methods=['POST'])
@login_required
def end_lobby_game():
    code = str_field(json_body(), 'lobby_code').upper()
    _require_host(code, 'end the game')
    lobby = lifecycle.end_game(code)
    broadcast_state(lobby.code)
    return jsonify(_view(lobby))


@lobbies.route('/close', methods=['POST'])
@login_required
def close_lobby():
    code = str_field(json_body(), 'lobby_code').upper()
    _require_host(code, 'close the lobby')
    lobby = lifecycle.close(code)
    broadcast_closed(lobby.code, 'closed_by_host')
    return jsonify(_view(lobby))


@lobbies.route('/<string:code>/settings', methods=['PUT'])
@login_required
def update_lobby_settings(code):
    data = json_body()
    lobby = lifecycle.update_settings(
        code,
        current_user.subject_id,
        number_of_rounds=int_field(data, 'number_of_rounds'),
        time_limit=int_field(data, 'time_limit'),
        max_players=int_field(data, 'max_players'),
        game_settings=data.get('game_settings'),
    )
    broadcast_state(lobby.code)
    return jsonify(_view(lobby))
