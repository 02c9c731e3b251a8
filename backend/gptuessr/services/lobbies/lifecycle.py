"""Lobby lifecycle: creation, membership, host-only operations and status changes.

Status flow::

    WAITING -> IN_PROGRESS -> FINISHED
    WAITING | IN_PROGRESS -> CLOSED

FINISHED and CLOSED are terminal. Every mutation runs under the lobby's lock
and re-reads the row inside it, so capacity and membership checks cannot race
with another join or leave on the same code.
"""
from typing import Iterable, List, Optional

from flask import current_app

from gptuessr import db
from gptuessr.errors import (
    HostNotFound, InsufficientPlayers, InvalidArgument, InvalidState, LobbyFull, LobbyNotFound,
    MaxPlayersTooLow, NotHost, PlayerNotFound, PlayerNotInLobby,
)
from gptuessr.models import GameStatus, Lobby, LobbyStatus, utcnow
from gptuessr.services import identity
from gptuessr.services.games import engine
from gptuessr.services.lobbies.codes import generate_code
from gptuessr.services.locks import code_allocation_lock, lobby_lock

ROUNDS_RANGE = (1, 20)
TIME_LIMIT_RANGE = (1, 180)
MAX_PLAYERS_RANGE = (2, 1000)
DEFAULT_MAX_PLAYERS = 10
ACTIVE_STATUSES = (LobbyStatus.WAITING, LobbyStatus.IN_PROGRESS)
TERMINAL_STATUSES = (LobbyStatus.FINISHED, LobbyStatus.CLOSED)


def _check_range(field: str, value, bounds) -> int:
    low, high = bounds
    if isinstance(value, bool) or not isinstance(value, int):
        raise InvalidArgument(field, f"{field} must be an integer")
    if not low <= value <= high:
        raise InvalidArgument(field, f"{field} must be between {low} and {high}")
    return value


def _check_settings(settings) -> List[str]:
    if settings is None:
        return []
    if isinstance(settings, str) or not all(isinstance(tag, str) for tag in settings):
        raise InvalidArgument('game_settings', 'game_settings must be a list of strings')
    return list(settings)


def _load(code: str) -> Lobby:
    """Fresh read of the lobby row; call only while holding its lock."""
    lobby = (
        Lobby.query.filter_by(code=(code or '').upper())
        .populate_existing()
        .with_for_update()
        .first()
    )
    if not lobby:
        current_app.logger.warning(f"[lobby] code={code} not found")
        raise LobbyNotFound(code)
    return lobby


def get_by_code(code: str) -> Lobby:
    lobby = Lobby.query.filter_by(code=(code or '').upper()).first()
    if not lobby:
        raise LobbyNotFound(code)
    return lobby


def find_by_host(host_id: str) -> List[Lobby]:
    return Lobby.query.filter_by(host_id=host_id).order_by(Lobby.created_at.desc()).all()


def find_by_player(player_id: str) -> List[Lobby]:
    # player_ids is a JSON list; narrow with LIKE then confirm membership exactly
    candidates = (
        Lobby.query.filter(Lobby.player_ids.contains(f'"{player_id}"', autoescape=True))
        .order_by(Lobby.created_at.desc())
    )
    return [lobby for lobby in candidates if lobby.contains_player(player_id)]


def count_active() -> int:
    return Lobby.query.filter(Lobby.status.in_(ACTIVE_STATUSES)).count()


def create(host_id: str, number_of_rounds: int, time_limit: int, max_players: int = DEFAULT_MAX_PLAYERS,
           game_settings: Optional[Iterable[str]] = None) -> Lobby:
    current_app.logger.info(f"[lobby-create] host={host_id}")
    _check_range('number_of_rounds', number_of_rounds, ROUNDS_RANGE)
    _check_range('time_limit', time_limit, TIME_LIMIT_RANGE)
    _check_range('max_players', max_players, MAX_PLAYERS_RANGE)
    settings = _check_settings(game_settings)

    if not identity.resolve(host_id):
        current_app.logger.error(f"[lobby-create] host={host_id} not found")
        raise HostNotFound(host_id)

    # Allocation and insert are one step so two creators never get the same code
    with code_allocation_lock():
        code = generate_code()
        lobby = Lobby(
            code=code,
            host_id=host_id,
            number_of_rounds=number_of_rounds,
            time_limit=time_limit,
            max_players=max_players,
            status=LobbyStatus.WAITING,
            created_at=utcnow(),
        )
        lobby.members = [host_id]
        lobby.settings = settings
        db.session.add(lobby)
        db.session.commit()
    current_app.logger.info(f"[lobby-create] code={code} host={host_id}")
    return lobby


def join(code: str, player_id: str) -> Lobby:
    """Add ``player_id`` to a waiting lobby. Joining twice returns the lobby unchanged."""
    current_app.logger.info(f"[lobby-join] code={code} player={player_id}")
    with lobby_lock(code):
        lobby = _load(code)
        if lobby.status != LobbyStatus.WAITING:
            current_app.logger.warning(f"[lobby-join] code={lobby.code} status={lobby.status.value}")
            raise InvalidState('Cannot join lobby: game already in progress or finished')
        if lobby.contains_player(player_id):
            current_app.logger.info(f"[lobby-join] code={lobby.code} player={player_id} already a member")
            return lobby
        if lobby.is_full():
            current_app.logger.warning(
                f"[lobby-join] code={lobby.code} full players={len(lobby.members)} max={lobby.max_players}"
            )
            raise LobbyFull(lobby.code, lobby.max_players)
        if not identity.resolve(player_id):
            current_app.logger.error(f"[lobby-join] player={player_id} not found")
            raise PlayerNotFound(player_id)
        lobby.add_player(player_id)
        db.session.commit()
        current_app.logger.info(f"[lobby-join] code={lobby.code} player={player_id} players={len(lobby.members)}")
        return lobby


def leave(code: str, player_id: str) -> Optional[Lobby]:
    """Remove a player. Returns ``None`` when the host left and the lobby closed."""
    current_app.logger.info(f"[lobby-leave] code={code} player={player_id}")
    with lobby_lock(code):
        lobby = _load(code)
        if lobby.status in TERMINAL_STATUSES:
            raise InvalidState(f"Lobby {lobby.code} is {lobby.status.value}")
        if not lobby.contains_player(player_id):
            current_app.logger.warning(f"[lobby-leave] code={lobby.code} player={player_id} not in lobby")
            raise PlayerNotInLobby(player_id, lobby.code)

        if player_id == lobby.host_id:
            current_app.logger.info(f"[lobby-leave] host={player_id} left {lobby.code}, closing")
            close(lobby.code)
            return None

        lobby.remove_player(player_id)
        game = lobby.game
        if game and game.status == GameStatus.IN_PROGRESS and player_id in game.members:
            engine.remove_player(game.id, player_id, commit=False)
        db.session.commit()
        current_app.logger.info(f"[lobby-leave] code={lobby.code} player={player_id} players={len(lobby.members)}")
        return lobby


def start_game(code: str, caller_id: str) -> Lobby:
    """Start the game: host only, at least ``MIN_PLAYERS`` members, lobby still waiting."""
    current_app.logger.info(f"[lobby-start] code={code} caller={caller_id}")
    min_players = int(current_app.config.get('MIN_PLAYERS', 3))
    with lobby_lock(code):
        lobby = _load(code)
        if caller_id != lobby.host_id:
            current_app.logger.error(f"[lobby-start] caller={caller_id} is not host of {lobby.code}")
            raise NotHost('start the game')
        if lobby.status != LobbyStatus.WAITING:
            raise InvalidState(f"Lobby {lobby.code} is {lobby.status.value}")
        members = lobby.members
        if len(members) < min_players:
            current_app.logger.error(f"[lobby-start] code={lobby.code} players={len(members)} below {min_players}")
            raise InsufficientPlayers(len(members), min_players)

        lobby.status = LobbyStatus.IN_PROGRESS
        lobby.started_at = utcnow()
        engine.start_from_lobby(lobby)
        db.session.commit()
        current_app.logger.info(f"[lobby-start] code={lobby.code} game={lobby.game.id}")
        return lobby


def end_game(code: str) -> Lobby:
    """Mark an in-progress lobby finished and finish its running game."""
    current_app.logger.info(f"[lobby-end] code={code}")
    with lobby_lock(code):
        lobby = _load(code)
        if lobby.status != LobbyStatus.IN_PROGRESS:
            current_app.logger.warning(f"[lobby-end] code={lobby.code} status={lobby.status.value}")
            raise InvalidState(f"Cannot end lobby {lobby.code}: it is {lobby.status.value}")
        lobby.status = LobbyStatus.FINISHED
        lobby.ended_at = utcnow()
        db.session.commit()
        if lobby.game and lobby.game.status == GameStatus.IN_PROGRESS:
            engine.finish(lobby.game.id)
        current_app.logger.info(f"[lobby-end] code={lobby.code} finished")
        return lobby


def close(code: str) -> Lobby:
    """Close unconditionally. Host privilege is checked by the caller."""
    with lobby_lock(code):
        lobby = _load(code)
        lobby.status = LobbyStatus.CLOSED
        if not lobby.ended_at:
            lobby.ended_at = utcnow()
        db.session.commit()
        if lobby.game and lobby.game.status == GameStatus.IN_PROGRESS:
            engine.abort(lobby.game.id)
        current_app.logger.info(f"[lobby-close] code={lobby.code} closed")
        return lobby


def update_settings(code: str, caller_id: str, number_of_rounds: int = None, time_limit: int = None,
                    max_players: int = None, game_settings: Optional[Iterable[str]] = None) -> Lobby:
    """Change only the provided fields. Nothing is written unless every field is valid."""
    current_app.logger.info(f"[lobby-settings] code={code} caller={caller_id}")
    if number_of_rounds is not None:
        _check_range('number_of_rounds', number_of_rounds, ROUNDS_RANGE)
    if time_limit is not None:
        _check_range('time_limit', time_limit, TIME_LIMIT_RANGE)
    if max_players is not None:
        _check_range('max_players', max_players, MAX_PLAYERS_RANGE)
    settings = _check_settings(game_settings) if game_settings is not None else None

    with lobby_lock(code):
        lobby = _load(code)
        if caller_id != lobby.host_id:
            current_app.logger.error(f"[lobby-settings] caller={caller_id} is not host of {lobby.code}")
            raise NotHost('update lobby settings')
        if lobby.status != LobbyStatus.WAITING:
            raise InvalidState('Cannot update settings after game has started')
        current_players = len(lobby.members)
        if max_players is not None and max_players < current_players:
            current_app.logger.error(f"[lobby-settings] code={lobby.code} max={max_players} below {current_players}")
            raise MaxPlayersTooLow(max_players, current_players)

        if number_of_rounds is not None:
            lobby.number_of_rounds = number_of_rounds
        if time_limit is not None:
            lobby.time_limit = time_limit
        if max_players is not None:
            lobby.max_players = max_players
        if settings is not None:
            lobby.settings = settings
        db.session.commit()
        current_app.logger.info(f"[lobby-settings] code={lobby.code} updated")
        return lobby
