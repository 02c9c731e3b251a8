from flask import Blueprint, jsonify, request, current_app
from flask_login import current_user, login_required

from gptuessr.api import json_body
from gptuessr.errors import AuthenticationFailure, UserNotFound
from gptuessr.services import identity
from gptuessr.services.auth import webhooks
from gptuessr.services.auth.tokens import bearer_token, subject_from_token

users = Blueprint('users', __name__)

PROFILE_FIELDS = ('username', 'email', 'first_name', 'last_name', 'profile_picture')


def _token_subject() -> str:
    token = bearer_token(request.headers.get('Authorization'))
    if not token:
        raise AuthenticationFailure('Bearer token required')
    return subject_from_token(token)


@users.route('/webhook', methods=['POST'])
def identity_webhook():
    body = request.get_data(as_text=True)
    svix_id = request.headers.get('svix-id')
    webhooks.verify_signature(
        current_app.config.get('WEBHOOK_SECRET', ''),
        svix_id,
        request.headers.get('svix-timestamp'),
        request.headers.get('svix-signature'),
        body,
        tolerance=int(current_app.config.get('WEBHOOK_TOLERANCE_SEC', 300)),
    )
    event = webhooks.decode_event(body)
    current_app.logger.info(f"[webhook] id={svix_id} event={type(event).__name__ if event else 'ignored'}")
    webhooks.dispatch(event)
    return jsonify({'received': True})


@users.route('/register', methods=['POST'])
def register():
    subject_id = _token_subject()
    data = json_body()
    existing = identity.resolve(subject_id)
    if existing:
        changes = {k: data[k] for k in PROFILE_FIELDS if data.get(k) is not None}
        user = identity.update_info(subject_id, changes)
        return jsonify(user.to_dict())

    provider_info = data.get('provider_info')
    user = identity.register(
        subject_id,
        data.get('username'),
        data.get('email'),
        data.get('first_name'),
        data.get('last_name'),
        data.get('profile_picture'),
        provider_info if isinstance(provider_info, dict) else None,
    )
    return jsonify(user.to_dict()), 201


@users.route('/login', methods=['POST'])
def login():
    subject_id = _token_subject()
    user = identity.update_on_login(subject_id, json_body().get('session_id'))
    if not user:
        raise UserNotFound(subject_id)
    return jsonify(user.to_dict())


@users.route('/logout', methods=['POST'])
def logout():
    subject_id = _token_subject()
    user = identity.update_on_logout(subject_id)
    if not user:
        raise UserNotFound(subject_id)
    return jsonify({'success': True})


@users.route('/me', methods=['GET'])
@login_required
def me():
    return jsonify(current_user.to_dict())


@users.route('/<string:subject_id>', methods=['GET'])
@login_required
def get_user(subject_id):
    user = identity.resolve(subject_id)
    if not user:
        raise UserNotFound(subject_id)
    payload = user.to_public_dict()
    payload['subject_id'] = user.subject_id
    return jsonify(payload)
