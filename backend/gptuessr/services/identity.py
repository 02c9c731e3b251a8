"""Identity directory: user records keyed by the identity provider's subject id."""
import json
from typing import Iterable, Mapping, Optional

from flask import current_app

from gptuessr import db
from gptuessr.models import User, utcnow


def resolve(subject_id: str) -> Optional[User]:
    if not subject_id:
        return None
    return User.query.filter_by(subject_id=subject_id).first()


def exists_by_username(username: str) -> bool:
    return db.session.query(User.query.filter_by(username=username).exists()).scalar()


def unique_username(base: str) -> str:
    """Return ``base`` or ``base`` with the smallest numeric suffix that is free."""
    candidate = base
    counter = 1
    while exists_by_username(candidate):
        candidate = f"{base}{counter}"
        counter += 1
    return candidate


def register(subject_id: str, username: str, email: str = None, first_name: str = None,
             last_name: str = None, profile_picture: str = None,
             provider_info: Mapping[str, str] = None) -> User:
    """Create the profile for ``subject_id``, or return the existing one.

    Usernames are unique: a taken name gets a numeric suffix instead of failing.
    """
    existing = resolve(subject_id)
    if existing:
        current_app.logger.info(f"[user-register] subject={subject_id} already registered")
        return existing

    base = username or (email.split('@')[0] if email else subject_id)
    if exists_by_username(base):
        current_app.logger.warning(f"[user-register] username '{base}' taken, generating a unique one")
    user = User(
        subject_id=subject_id,
        username=unique_username(base),
        email=email,
        first_name=first_name,
        last_name=last_name,
        profile_picture=profile_picture,
        provider_info=json.dumps(dict(provider_info or {})),
        is_verified=True,
        last_login=utcnow(),
    )
    user.display_name = user.username
    user.refresh_display_name()
    db.session.add(user)
    db.session.commit()
    current_app.logger.info(f"[user-register] subject={subject_id} username={user.username}")
    return user


def update_on_login(subject_id: str, session_id: str = None) -> Optional[User]:
    user = resolve(subject_id)
    if not user:
        current_app.logger.warning(f"[user-login] subject={subject_id} not found")
        return None
    now = utcnow()
    user.session_id = session_id
    user.last_login = now
    user.last_active = now
    user.is_online = True
    db.session.commit()
    current_app.logger.info(f"[user-login] subject={subject_id}")
    return user


def update_on_logout(subject_id: str) -> Optional[User]:
    user = resolve(subject_id)
    if not user:
        current_app.logger.warning(f"[user-logout] subject={subject_id} not found")
        return None
    user.is_online = False
    user.session_id = None
    db.session.commit()
    current_app.logger.info(f"[user-logout] subject={subject_id}")
    return user


def update_info(subject_id: str, data: Mapping[str, Optional[str]]) -> Optional[User]:
    """Apply profile fields present in ``data``; a username change is skipped if taken."""
    user = resolve(subject_id)
    if not user:
        current_app.logger.warning(f"[user-update] subject={subject_id} not found")
        return None

    if 'email' in data:
        user.email = data['email']
    new_username = data.get('username')
    if new_username and new_username != user.username:
        if exists_by_username(new_username):
            current_app.logger.warning(f"[user-update] subject={subject_id} username '{new_username}' taken")
        else:
            user.username = new_username
    if 'first_name' in data:
        user.first_name = data['first_name']
    if 'last_name' in data:
        user.last_name = data['last_name']
    if 'profile_picture' in data:
        user.profile_picture = data['profile_picture']
    if 'first_name' in data or 'last_name' in data:
        user.refresh_display_name()

    db.session.commit()
    current_app.logger.info(f"[user-update] subject={subject_id}")
    return user


def record_game_result(subject_id: str, score: int, won: bool, accuracies: Iterable[float] = ()) -> Optional[User]:
    """Fold one finished game into the user's statistics. Caller commits.

    ``accuracies`` are the player's scored guesses in that game; the stored
    average is a running mean over every guess the user ever made.
    """
    user = resolve(subject_id)
    if not user:
        return None
    user.games_played += 1
    if won:
        user.games_won += 1
    else:
        user.games_lost += 1
    user.total_score += score
    user.personal_best_score = max(user.personal_best_score, score)
    accuracies = list(accuracies)
    if accuracies:
        seen = user.total_guesses
        user.average_guess_accuracy = (user.average_guess_accuracy * seen + sum(accuracies)) / (seen + len(accuracies))
        user.total_guesses = seen + len(accuracies)
    user.last_active = utcnow()
    return user
