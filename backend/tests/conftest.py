import base64
import os
import sys
import time
import pytest

# Ensure the backend root (containing the `gptuessr` package) is on sys.path
CURRENT_DIR = os.path.dirname(__file__)
BACKEND_ROOT = os.path.abspath(os.path.join(CURRENT_DIR, '..'))
if BACKEND_ROOT not in sys.path:
    sys.path.insert(0, BACKEND_ROOT)

from flask import g
from jose import jwt

from config import Config
from gptuessr import create_app, db, socketio

JWT_SECRET = 'test-jwt-secret'
TEST_WEBHOOK_SECRET = 'whsec_' + base64.b64encode(b'test-webhook-signing-key').decode('ascii')


class TestConfig(Config):
    TESTING = True
    SECRET_KEY = os.environ.get('SECRET_KEY', 'test-secret')
    SQLALCHEMY_DATABASE_URI = 'sqlite://'
    SQLALCHEMY_TRACK_MODIFICATIONS = False
    AUTH_JWT_KEY = JWT_SECRET
    AUTH_JWT_ALGORITHMS = ['HS256']
    AUTH_JWT_ISSUER = None
    AUTH_JWT_AUDIENCE = None
    WEBHOOK_SECRET = TEST_WEBHOOK_SECRET
    MIN_PLAYERS = 3
    LOBBY_STALE_HOURS = 24
    LOBBY_JANITOR_ENABLED = False


def make_token(subject_id, expires_in=3600, key=JWT_SECRET, **claims):
    payload = {'sub': subject_id, 'iat': int(time.time()), 'exp': int(time.time()) + expires_in}
    payload.update(claims)
    return jwt.encode(payload, key, algorithm='HS256')


@pytest.fixture()
def flask_app():
    application = create_app(TestConfig)

    @application.teardown_request
    def forget_login_user(exc):
        # Client requests reuse the fixture's app context, where Flask-Login caches the user on g
        g.pop('_login_user', None)

    with application.app_context():
        # Ensure models are imported so tables are created
        import gptuessr.models  # noqa: F401
        db.create_all()
        yield application
        db.session.remove()
        db.drop_all()


@pytest.fixture()
def client(flask_app):
    return flask_app.test_client()


@pytest.fixture()
def sio_client(flask_app):
    test_client = socketio.test_client(
        flask_app,
        flask_test_client=flask_app.test_client(),
        namespace='/ws'
    )
    yield test_client
    if test_client.is_connected('/ws'):
        test_client.disconnect(namespace='/ws')


@pytest.fixture()
def make_user(flask_app):
    from gptuessr.services import identity

    def _make(subject_id, username=None, email=None):
        return identity.register(subject_id, username or subject_id, email or f"{subject_id}@example.com")

    return _make


@pytest.fixture()
def players(make_user):
    """Three registered users; the first usually hosts."""
    return [make_user(sid).subject_id for sid in ('user_host', 'user_b', 'user_c')]


@pytest.fixture()
def auth_headers():
    def _headers(subject_id):
        return {'Authorization': f"Bearer {make_token(subject_id)}"}

    return _headers
