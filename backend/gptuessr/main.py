from flask import Blueprint, jsonify

from gptuessr.services.lobbies import lifecycle

main = Blueprint('main', __name__)


@main.route('/')
def index():
    return jsonify({'service': 'gptuessr', 'status': 'ok'})


@main.route('/api/health')
def health():
    return jsonify({'status': 'ok', 'active_lobbies': lifecycle.count_active()})
