from flask import Blueprint, jsonify, current_app
from flask_login import current_user, login_required

from gptuessr.api import broadcast_state, int_field, json_body, str_field
from gptuessr.errors import InvalidArgument, NotHost, PlayerNotInGame, RoundNotFound
from gptuessr.services.games import engine
from gptuessr.services.games.scoring import scorer_from_results
from gptuessr.services.lobbies import lifecycle

games = Blueprint('games', __name__)


def _ranking_payload(entries):
    return [{'rank': i + 1, 'player_id': pid, 'score': score} for i, (pid, score) in enumerate(entries)]


def _member_game(game_id):
    game = engine.get_game(game_id)
    if current_user.subject_id not in game.members:
        raise PlayerNotInGame(current_user.subject_id, game_id)
    return game


def _host_game(game_id, action):
    game = engine.get_game(game_id)
    if game.lobby.host_id != current_user.subject_id:
        raise NotHost(action)
    return game


def _game_response(game_id, status=200):
    game = engine.get_game(game_id)
    broadcast_state(game.lobby.code)
    return jsonify(game.to_dict()), status


@games.route('/<int:game_id>', methods=['GET'])
@login_required
def get_game(game_id):
    return jsonify(engine.get_game(game_id).to_dict())


@games.route('/lobby/<string:code>', methods=['GET'])
@login_required
def get_game_for_lobby(code):
    return jsonify(engine.get_game_for_lobby(code).to_dict())


@games.route('/<int:game_id>/rounds', methods=['POST'])
@login_required
def begin_round(game_id):
    _host_game(game_id, 'begin a round')
    engine.begin_round(game_id)
    return _game_response(game_id, 201)


@games.route('/<int:game_id>/rounds/current/prompt', methods=['POST'])
@login_required
def submit_prompt(game_id):
    prompt = str_field(json_body(), 'prompt')
    engine.submit_prompt(game_id, current_user.subject_id, prompt)
    return _game_response(game_id)


@games.route('/<int:game_id>/rounds/current/image', methods=['POST'])
@login_required
def attach_image(game_id):
    _member_game(game_id)
    image_url = str_field(json_body(), 'image_url')
    engine.attach_image(game_id, image_url)
    return _game_response(game_id)


@games.route('/<int:game_id>/rounds/current/guess', methods=['POST'])
@login_required
def submit_guess(game_id):
    data = json_body()
    guess = engine.record_guess(
        game_id,
        current_user.subject_id,
        str_field(data, 'guess'),
        response_time_ms=int_field(data, 'response_time_ms', default=0),
    )
    broadcast_state(guess.round.game.lobby.code)
    return jsonify(guess.to_dict()), 201


@games.route('/<int:game_id>/rounds/current/scores', methods=['POST'])
@login_required
def submit_scores(game_id):
    """Complete the round with externally evaluated results.

    Body: ``{"results": {"<player_id>": {"score": int, "accuracy": float}}}``
    """
    _host_game(game_id, 'submit round results')
    results = json_body().get('results')
    if not isinstance(results, dict) or not all(isinstance(v, dict) for v in results.values()):
        raise InvalidArgument('results', 'results must map player ids to {score, accuracy}')
    rnd = engine.evaluate_round(game_id, scorer_from_results(results))
    broadcast_state(rnd.game.lobby.code)
    return jsonify(rnd.to_dict(include_guesses=True))


@games.route('/<int:game_id>/advance', methods=['POST'])
@login_required
def advance(game_id):
    game = _host_game(game_id, 'advance the game')
    code = game.lobby.code
    game = engine.advance_round(game_id)
    if game.is_over():
        current_app.logger.info(f"[advance] game={game_id} over, ending lobby {code}")
        lifecycle.end_game(code)
    return _game_response(game_id)


@games.route('/<int:game_id>/ranking', methods=['GET'])
@login_required
def game_ranking(game_id):
    game = engine.get_game(game_id)
    return jsonify({
        'game_id': game.id,
        'status': game.status.value,
        'ranking': _ranking_payload(engine.final_ranking(game)),
        'winner': engine.winner(game),
    })


@games.route('/<int:game_id>/rounds/<int:round_number>/ranking', methods=['GET'])
@login_required
def round_ranking(game_id, round_number):
    game = engine.get_game(game_id)
    rnd = game.round_by_number(round_number)
    if not rnd:
        raise RoundNotFound(round_number)
    return jsonify({
        'game_id': game.id,
        'round_number': rnd.round_number,
        'ranking': _ranking_payload(engine.round_ranking(rnd)),
        'best_guesser_id': engine.best_guesser(rnd),
    })
