"""Identity-provider webhooks delivered through Svix.

Signature: ``v1,<base64 HMAC-SHA256>`` over ``"<svix-id>.<svix-timestamp>.<body>"``
keyed with the base64 part of the ``whsec_...`` secret. The ``svix-signature``
header may carry several space-separated signatures; any match is accepted.

Decoding is tolerant: an unknown event type or a payload missing the fields an
event needs decodes to ``None`` and the caller acknowledges it without action.
"""
import base64
import binascii
import hashlib
import hmac
import json
import time
from dataclasses import dataclass, field
from typing import Dict, Optional, Union

from flask import current_app

from gptuessr.errors import AuthenticationFailure
from gptuessr.services import identity


def _secret_bytes(secret: str) -> bytes:
    raw = secret[len('whsec_'):] if secret.startswith('whsec_') else secret
    try:
        return base64.b64decode(raw, validate=True)
    except (binascii.Error, ValueError):
        return raw.encode('utf-8')


def sign(secret: str, svix_id: str, svix_timestamp: str, body: Union[bytes, str]) -> str:
    if isinstance(body, bytes):
        body = body.decode('utf-8')
    signed = f"{svix_id}.{svix_timestamp}.{body}".encode('utf-8')
    digest = hmac.new(_secret_bytes(secret), signed, hashlib.sha256).digest()
    return 'v1,' + base64.b64encode(digest).decode('ascii')


def verify_signature(secret: str, svix_id: str, svix_timestamp: str, svix_signature: str,
                     body: Union[bytes, str], tolerance: int = 300, now: float = None) -> None:
    """Raise ``AuthenticationFailure`` unless the delivery is authentic and fresh."""
    if not secret:
        raise AuthenticationFailure('Webhook secret is not configured')
    if not (svix_id and svix_timestamp and svix_signature):
        raise AuthenticationFailure('Missing webhook signature headers')
    try:
        sent_at = int(svix_timestamp)
    except ValueError:
        raise AuthenticationFailure('Invalid webhook timestamp')
    now = time.time() if now is None else now
    if abs(now - sent_at) > tolerance:
        raise AuthenticationFailure('Webhook timestamp outside tolerance')

    expected = sign(secret, svix_id, svix_timestamp, body)
    for candidate in svix_signature.split():
        if hmac.compare_digest(candidate, expected):
            return
    raise AuthenticationFailure('Invalid webhook signature')


@dataclass
class UserCreated:
    subject_id: str
    username: Optional[str]
    email: Optional[str]
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    profile_picture: Optional[str] = None
    provider_info: Dict[str, str] = field(default_factory=dict)


@dataclass
class UserUpdated:
    subject_id: str
    changes: Dict[str, Optional[str]] = field(default_factory=dict)


@dataclass
class UserDeleted:
    subject_id: str


@dataclass
class SessionCreated:
    subject_id: str
    session_id: str


@dataclass
class SessionEnded:
    subject_id: str
    session_id: Optional[str] = None


WebhookEvent = Union[UserCreated, UserUpdated, UserDeleted, SessionCreated, SessionEnded]


def _primary_email(data: dict) -> Optional[str]:
    addresses = data.get('email_addresses') or []
    primary_id = data.get('primary_email_address_id')
    for entry in addresses:
        if isinstance(entry, dict) and entry.get('id') == primary_id and entry.get('email_address'):
            return entry['email_address']
    for entry in addresses:
        if isinstance(entry, dict) and entry.get('email_address'):
            return entry['email_address']
    return None


def _providers(data: dict) -> Dict[str, str]:
    info = {}
    for account in data.get('external_accounts') or []:
        if not isinstance(account, dict):
            continue
        provider = account.get('provider')
        provider_user_id = account.get('provider_user_id')
        if provider and provider_user_id:
            info[provider] = provider_user_id
    return info


def _profile(data: dict) -> Dict[str, Optional[str]]:
    return {
        'username': data.get('username'),
        'email': _primary_email(data),
        'first_name': data.get('first_name'),
        'last_name': data.get('last_name'),
        'profile_picture': data.get('image_url') or data.get('profile_image_url'),
    }


def decode_event(body: Union[bytes, str]) -> Optional[WebhookEvent]:
    try:
        payload = json.loads(body)
    except (TypeError, ValueError):
        return None
    if not isinstance(payload, dict) or not isinstance(payload.get('data'), dict):
        return None
    event_type = payload.get('type')
    data = payload['data']

    if event_type in ('user.created', 'user.updated', 'user.deleted'):
        subject_id = data.get('id')
        if not subject_id:
            return None
        if event_type == 'user.deleted':
            return UserDeleted(subject_id)
        profile = _profile(data)
        if event_type == 'user.updated':
            return UserUpdated(subject_id, {k: v for k, v in profile.items() if v is not None})
        # Creation needs enough to build a profile
        if not (profile['username'] or profile['email']):
            return None
        return UserCreated(subject_id, provider_info=_providers(data), **profile)

    if event_type in ('session.created', 'session.ended'):
        subject_id = data.get('user_id')
        session_id = data.get('id')
        if not subject_id:
            return None
        if event_type == 'session.created':
            return SessionCreated(subject_id, session_id) if session_id else None
        return SessionEnded(subject_id, session_id)

    return None


def dispatch(event: Optional[WebhookEvent]) -> None:
    if event is None:
        return
    if isinstance(event, UserCreated):
        identity.register(
            event.subject_id, event.username, event.email, event.first_name,
            event.last_name, event.profile_picture, event.provider_info,
        )
    elif isinstance(event, UserUpdated):
        identity.update_info(event.subject_id, event.changes)
    elif isinstance(event, SessionCreated):
        identity.update_on_login(event.subject_id, event.session_id)
    elif isinstance(event, SessionEnded):
        identity.update_on_logout(event.subject_id)
    elif isinstance(event, UserDeleted):
        # Profiles are kept so finished games still resolve their players
        current_app.logger.info(f"[webhook] user.deleted subject={event.subject_id} ignored")
