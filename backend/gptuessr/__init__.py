from flask import Flask, jsonify, request
from flask_sqlalchemy import SQLAlchemy
from flask_login import LoginManager
from flask_cors import CORS
from flask_migrate import Migrate
from flask_socketio import SocketIO
from sqlalchemy.exc import SQLAlchemyError
import click
from config import Config

db = SQLAlchemy()
login_manager = LoginManager()
migrate = Migrate()
socketio = SocketIO(async_mode=None)


def create_app(config_class=Config):
    flask_app = Flask(__name__)
    flask_app.config.from_object(config_class)
    flask_app.logger.setLevel(flask_app.config.get('LOG_LEVEL', 'INFO'))
    allowed_origins = flask_app.config.get('ALLOWED_ORIGINS') or []

    db.init_app(flask_app)
    login_manager.init_app(flask_app)
    migrate.init_app(flask_app, db)
    CORS(flask_app, supports_credentials=True, origins=allowed_origins)

    socketio.init_app(flask_app, cors_allowed_origins=allowed_origins)

    from gptuessr.main import main
    flask_app.register_blueprint(main)

    from gptuessr.api.lobbies import lobbies
    flask_app.register_blueprint(lobbies, url_prefix='/api/lobbies')

    from gptuessr.api.games import games
    flask_app.register_blueprint(games, url_prefix='/api/games')

    from gptuessr.api.users import users
    flask_app.register_blueprint(users, url_prefix='/api/users')

    from gptuessr.socketio_events import register_socketio_handlers
    register_socketio_handlers(testing=flask_app.config.get('TESTING', False))

    from gptuessr.errors import AuthenticationFailure, GameError, Unavailable

    @flask_app.errorhandler(GameError)
    def handle_game_error(exc):
        return jsonify(exc.to_response()), exc.http_status

    @flask_app.errorhandler(SQLAlchemyError)
    def handle_db_error(exc):
        db.session.rollback()
        flask_app.logger.exception(f"[db] {request.method} {request.path} failed")
        err = Unavailable(f"{request.method} {request.path}")
        return jsonify(err.to_response()), err.http_status

    # Session tokens come from the identity provider; no cookie sessions
    from gptuessr.services import identity
    from gptuessr.services.auth.tokens import bearer_token, subject_from_token

    @login_manager.request_loader
    def load_user_from_request(req):
        token = bearer_token(req.headers.get('Authorization'))
        if not token:
            return None
        try:
            subject_id = subject_from_token(token)
        except AuthenticationFailure:
            return None
        return identity.resolve(subject_id)

    @login_manager.unauthorized_handler
    def unauthorized():
        err = AuthenticationFailure('Authentication required')
        return jsonify(err.to_response()), err.http_status

    @click.command('db-reset')
    def db_reset_command():
        """Drops and recreates the database, then seeds three players."""
        with flask_app.app_context():
            db.drop_all()
            db.create_all()
            for name in ['testuser1', 'testuser2', 'testuser3']:
                identity.register(f"seed_{name}", name, f"{name}@example.com")
            print('Database has been reset and seeded!')

    @click.command('lobbies-sweep')
    def lobbies_sweep_command():
        """Closes waiting lobbies older than LOBBY_STALE_HOURS."""
        from gptuessr.services.lobbies.janitor import sweep
        with flask_app.app_context():
            closed = sweep()
            print(f"Closed {len(closed)} stale lobbies")

    flask_app.cli.add_command(db_reset_command)
    flask_app.cli.add_command(lobbies_sweep_command)

    return flask_app
