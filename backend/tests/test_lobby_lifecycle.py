import pytest

from gptuessr.errors import (
    CapacityExceeded, ErrorKind, HostNotFound, InsufficientPlayers, InvalidArgument, InvalidState,
    LobbyNotFound, NotHost, PlayerNotFound, PlayerNotInLobby,
)
from gptuessr.models import GameStatus, LobbyStatus
from gptuessr.services.lobbies import lifecycle
from gptuessr.services.lobbies.codes import CODE_ALPHABET


def test_create_adds_host_as_first_member(flask_app, players):
    host = players[0]
    lobby = lifecycle.create(host, number_of_rounds=5, time_limit=60, max_players=8, game_settings=['animals'])
    assert lobby.status == LobbyStatus.WAITING
    assert lobby.members == [host]
    assert lobby.host_id == host
    assert lobby.settings == ['animals']
    assert len(lobby.code) == 6
    assert set(lobby.code) <= set(CODE_ALPHABET)


def test_create_rejects_unknown_host(flask_app):
    with pytest.raises(HostNotFound) as excinfo:
        lifecycle.create('nobody', number_of_rounds=3, time_limit=60)
    assert excinfo.value.kind == ErrorKind.NOT_FOUND


@pytest.mark.parametrize('field,kwargs', [
    ('number_of_rounds', {'number_of_rounds': 0}),
    ('number_of_rounds', {'number_of_rounds': 21}),
    ('time_limit', {'time_limit': 181}),
    ('max_players', {'max_players': 1}),
])
def test_create_validates_ranges(flask_app, players, field, kwargs):
    args = {'number_of_rounds': 3, 'time_limit': 60, 'max_players': 8}
    args.update(kwargs)
    with pytest.raises(InvalidArgument) as excinfo:
        lifecycle.create(players[0], **args)
    assert excinfo.value.field == field


def test_scenario_create_join_start(flask_app, players):
    host, p2, p3 = players
    lobby = lifecycle.create(host, number_of_rounds=5, time_limit=60, max_players=8)
    lifecycle.join(lobby.code, p2)
    lifecycle.join(lobby.code, p3)

    started = lifecycle.start_game(lobby.code, host)
    assert started.status == LobbyStatus.IN_PROGRESS
    assert started.started_at is not None
    game = started.game
    assert game.status == GameStatus.IN_PROGRESS
    assert game.scores == {host: 0, p2: 0, p3: 0}
    assert list(game.scores) == [host, p2, p3]
    assert game.current_round == 1
    assert game.total_rounds == 5
    assert game.current_prompter == host


def test_join_is_case_insensitive(flask_app, players):
    lobby = lifecycle.create(players[0], number_of_rounds=3, time_limit=60)
    joined = lifecycle.join(lobby.code.lower(), players[1])
    assert joined.members == [players[0], players[1]]


def test_join_at_capacity(flask_app, players, make_user):
    host, p2, p3 = players
    lobby = lifecycle.create(host, number_of_rounds=3, time_limit=60, max_players=3)
    lifecycle.join(lobby.code, p2)
    # N-1 members: the last seat is still free
    full = lifecycle.join(lobby.code, p3)
    assert len(full.members) == 3

    extra = make_user('user_extra').subject_id
    with pytest.raises(CapacityExceeded) as excinfo:
        lifecycle.join(lobby.code, extra)
    assert excinfo.value.kind == ErrorKind.CAPACITY_EXCEEDED
    assert lifecycle.get_by_code(lobby.code).members == [host, p2, p3]


def test_join_twice_is_idempotent(flask_app, players):
    host, p2, _ = players
    lobby = lifecycle.create(host, number_of_rounds=3, time_limit=60)
    lifecycle.join(lobby.code, p2)
    again = lifecycle.join(lobby.code, p2)
    assert again.members == [host, p2]


def test_rejoin_full_lobby_as_member_is_idempotent(flask_app, players):
    host, p2, _ = players
    lobby = lifecycle.create(host, number_of_rounds=3, time_limit=60, max_players=2)
    lifecycle.join(lobby.code, p2)
    assert lifecycle.join(lobby.code, p2).members == [host, p2]


def test_join_errors(flask_app, players):
    host, p2, p3 = players
    with pytest.raises(LobbyNotFound):
        lifecycle.join('ZZZZZZ', p2)

    lobby = lifecycle.create(host, number_of_rounds=3, time_limit=60)
    with pytest.raises(PlayerNotFound):
        lifecycle.join(lobby.code, 'ghost')

    lifecycle.join(lobby.code, p2)
    lifecycle.join(lobby.code, p3)
    lifecycle.start_game(lobby.code, host)
    with pytest.raises(InvalidState):
        lifecycle.join(lobby.code, 'ghost')


def test_leave_as_non_host_removes_only_that_member(flask_app, players):
    host, p2, p3 = players
    lobby = lifecycle.create(host, number_of_rounds=3, time_limit=60)
    lifecycle.join(lobby.code, p2)
    lifecycle.join(lobby.code, p3)

    remaining = lifecycle.leave(lobby.code, p2)
    assert remaining.members == [host, p3]
    assert remaining.status == LobbyStatus.WAITING


def test_leave_as_host_closes_lobby(flask_app, players):
    host, p2, _ = players
    lobby = lifecycle.create(host, number_of_rounds=3, time_limit=60)
    lifecycle.join(lobby.code, p2)

    assert lifecycle.leave(lobby.code, host) is None
    closed = lifecycle.get_by_code(lobby.code)
    assert closed.status == LobbyStatus.CLOSED
    assert closed.ended_at is not None


def test_leave_errors(flask_app, players):
    host, p2, _ = players
    lobby = lifecycle.create(host, number_of_rounds=3, time_limit=60)
    with pytest.raises(PlayerNotInLobby):
        lifecycle.leave(lobby.code, p2)
    lifecycle.close(lobby.code)
    with pytest.raises(InvalidState):
        lifecycle.leave(lobby.code, host)


def test_leave_mid_game_drops_player_from_game(flask_app, players, make_user):
    host, p2, p3 = players
    p4 = make_user('user_d').subject_id
    lobby = lifecycle.create(host, number_of_rounds=3, time_limit=60)
    for pid in (p2, p3, p4):
        lifecycle.join(lobby.code, pid)
    lifecycle.start_game(lobby.code, host)

    lobby = lifecycle.leave(lobby.code, p3)
    assert lobby.status == LobbyStatus.IN_PROGRESS
    assert p3 not in lobby.game.members
    assert p3 not in lobby.game.scores


def test_leave_mid_game_is_all_or_nothing(flask_app, players, make_user, monkeypatch):
    from gptuessr import db
    from gptuessr.models import Game

    host, p2, p3 = players
    p4 = make_user('user_d').subject_id
    lobby = lifecycle.create(host, number_of_rounds=3, time_limit=60)
    for pid in (p2, p3, p4):
        lifecycle.join(lobby.code, pid)
    game = lifecycle.start_game(lobby.code, host).game

    def broken_remove(self, player_id):
        raise RuntimeError('game write failed')

    monkeypatch.setattr(Game, 'remove_player', broken_remove)
    with pytest.raises(RuntimeError):
        lifecycle.leave(lobby.code, p3)
    db.session.rollback()

    assert p3 in lifecycle.get_by_code(lobby.code).members
    assert p3 in game.members


def test_start_requires_three_players(flask_app, players):
    host, p2, p3 = players
    lobby = lifecycle.create(host, number_of_rounds=3, time_limit=60)
    lifecycle.join(lobby.code, p2)
    with pytest.raises(InsufficientPlayers) as excinfo:
        lifecycle.start_game(lobby.code, host)
    assert excinfo.value.kind == ErrorKind.INSUFFICIENT_PLAYERS
    assert lifecycle.get_by_code(lobby.code).status == LobbyStatus.WAITING

    lifecycle.join(lobby.code, p3)
    assert lifecycle.start_game(lobby.code, host).status == LobbyStatus.IN_PROGRESS


def test_start_checks_host_and_status(flask_app, players):
    host, p2, p3 = players
    lobby = lifecycle.create(host, number_of_rounds=3, time_limit=60)
    lifecycle.join(lobby.code, p2)
    lifecycle.join(lobby.code, p3)
    with pytest.raises(NotHost) as excinfo:
        lifecycle.start_game(lobby.code, p2)
    assert excinfo.value.kind == ErrorKind.PERMISSION_DENIED

    lifecycle.start_game(lobby.code, host)
    with pytest.raises(InvalidState):
        lifecycle.start_game(lobby.code, host)


def test_update_settings_below_member_count_changes_nothing(flask_app, players):
    host, p2, p3 = players
    lobby = lifecycle.create(host, number_of_rounds=3, time_limit=60, max_players=8)
    lifecycle.join(lobby.code, p2)
    lifecycle.join(lobby.code, p3)

    with pytest.raises(CapacityExceeded):
        lifecycle.update_settings(lobby.code, host, number_of_rounds=10, time_limit=90, max_players=2)
    unchanged = lifecycle.get_by_code(lobby.code)
    assert unchanged.number_of_rounds == 3
    assert unchanged.time_limit == 60
    assert unchanged.max_players == 8


def test_update_settings_invalid_field_changes_nothing(flask_app, players):
    lobby = lifecycle.create(players[0], number_of_rounds=3, time_limit=60)
    with pytest.raises(InvalidArgument):
        lifecycle.update_settings(lobby.code, players[0], number_of_rounds=10, time_limit=500)
    assert lifecycle.get_by_code(lobby.code).number_of_rounds == 3


def test_update_settings_partial(flask_app, players):
    host, p2, _ = players
    lobby = lifecycle.create(host, number_of_rounds=3, time_limit=60, game_settings=['a'])
    updated = lifecycle.update_settings(lobby.code, host, time_limit=120, game_settings=['b', 'c'])
    assert updated.time_limit == 120
    assert updated.number_of_rounds == 3
    assert updated.settings == ['b', 'c']
    with pytest.raises(NotHost):
        lifecycle.update_settings(lobby.code, p2, time_limit=30)


def test_end_game_finishes_lobby_and_game(flask_app, players):
    host, p2, p3 = players
    lobby = lifecycle.create(host, number_of_rounds=3, time_limit=60)
    lifecycle.join(lobby.code, p2)
    lifecycle.join(lobby.code, p3)
    lifecycle.start_game(lobby.code, host)

    ended = lifecycle.end_game(lobby.code)
    assert ended.status == LobbyStatus.FINISHED
    assert ended.ended_at is not None
    assert ended.game.status == GameStatus.FINISHED
    with pytest.raises(InvalidState):
        lifecycle.end_game(lobby.code)


def test_end_game_requires_running_lobby(flask_app, players):
    lobby = lifecycle.create(players[0], number_of_rounds=3, time_limit=60)
    with pytest.raises(InvalidState):
        lifecycle.end_game(lobby.code)
    waiting = lifecycle.get_by_code(lobby.code)
    assert waiting.status == LobbyStatus.WAITING
    assert waiting.ended_at is None


def test_close_aborts_running_game(flask_app, players):
    host, p2, p3 = players
    lobby = lifecycle.create(host, number_of_rounds=3, time_limit=60)
    lifecycle.join(lobby.code, p2)
    lifecycle.join(lobby.code, p3)
    lifecycle.start_game(lobby.code, host)

    closed = lifecycle.close(lobby.code)
    assert closed.status == LobbyStatus.CLOSED
    assert closed.game.status == GameStatus.ABORTED


def test_queries(flask_app, players):
    host, p2, p3 = players
    first = lifecycle.create(host, number_of_rounds=3, time_limit=60)
    second = lifecycle.create(p2, number_of_rounds=3, time_limit=60)
    lifecycle.join(second.code, p3)
    lifecycle.close(first.code)

    assert [lobby.code for lobby in lifecycle.find_by_host(host)] == [first.code]
    assert [lobby.code for lobby in lifecycle.find_by_player(p3)] == [second.code]
    assert lifecycle.count_active() == 1
    with pytest.raises(LobbyNotFound):
        lifecycle.get_by_code('ZZZZZZ')
