import secrets

from flask import current_app

from gptuessr import db
from gptuessr.errors import CodeSpaceExhausted
from gptuessr.models import Lobby

# No I, O, 0 or 1: codes are read aloud and typed from screens
CODE_ALPHABET = 'ABCDEFGHJKLMNPQRSTUVWXYZ23456789'


def code_exists(code: str) -> bool:
    return db.session.query(Lobby.query.filter_by(code=code).exists()).scalar()


def generate_code(length: int = None, max_attempts: int = None, exists=code_exists) -> str:
    """Generate a lobby code not already held by any lobby."""
    cfg = current_app.config
    length = length or int(cfg.get('LOBBY_CODE_LENGTH', 6))
    max_attempts = max_attempts or int(cfg.get('LOBBY_CODE_MAX_ATTEMPTS', 50))
    for attempt in range(1, max_attempts + 1):
        code = ''.join(secrets.choice(CODE_ALPHABET) for _ in range(length))
        if not exists(code):
            if attempt > 1:
                current_app.logger.info(f"[code-gen] code={code} after {attempt} attempts")
            return code
    current_app.logger.error(f"[code-gen] exhausted {max_attempts} attempts")
    raise CodeSpaceExhausted(max_attempts)
