from typing import Optional

from flask import current_app
from jose import jwt
from jose.exceptions import ExpiredSignatureError, JWTError

from gptuessr.errors import AuthenticationFailure


def bearer_token(header: Optional[str]) -> Optional[str]:
    """Extract the token from an ``Authorization: Bearer <token>`` header."""
    if not header:
        return None
    scheme, _, token = header.strip().partition(' ')
    if scheme.lower() != 'bearer' or not token.strip():
        return None
    return token.strip()


def subject_from_token(token: str) -> str:
    """Verify a session token issued by the identity provider and return its subject.

    Signature and expiry are always checked; issuer and audience only when
    configured.
    """
    if not token:
        raise AuthenticationFailure('Token is required')
    cfg = current_app.config
    key = cfg.get('AUTH_JWT_KEY')
    if not key:
        current_app.logger.error('[auth] AUTH_JWT_KEY is not configured')
        raise AuthenticationFailure('Token verification is not configured')

    audience = cfg.get('AUTH_JWT_AUDIENCE')
    try:
        claims = jwt.decode(
            token,
            key,
            algorithms=list(cfg.get('AUTH_JWT_ALGORITHMS') or ['RS256']),
            issuer=cfg.get('AUTH_JWT_ISSUER'),
            audience=audience,
            options={'verify_aud': bool(audience)},
        )
    except ExpiredSignatureError:
        current_app.logger.info('[auth] token expired')
        raise AuthenticationFailure('Token has expired')
    except JWTError as exc:
        current_app.logger.warning(f"[auth] token rejected: {exc}")
        raise AuthenticationFailure('Invalid token')

    subject = claims.get('sub')
    if not subject:
        raise AuthenticationFailure('Token missing subject')
    return subject
