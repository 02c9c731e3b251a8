"""Game engine: round sequencing, prompter rotation, guesses and results.

Public mutators hold the game's lock from first read to commit. Rounds move
strictly forward through ``RoundStatus``; nothing here advances a round on a
timer, the caller (HTTP route or external image/scoring service) drives each
step.
"""
from typing import List, Optional, Tuple

from flask import current_app

from gptuessr import db
from gptuessr.errors import (
    DuplicateGuess, GameNotFound, InvalidArgument, InvalidState, PlayerNotInGame, RoundNotFound,
)
from gptuessr.models import (
    Game, GameStatus, Guess, Lobby, Round, RoundStatus, ROUND_STATUS_ORDER, utcnow,
)
from gptuessr.services import identity
from gptuessr.services.games.scoring import GuessScorer
from gptuessr.services.locks import game_lock


def _load(game_id: int, for_update: bool = True) -> Game:
    query = Game.query.filter_by(id=game_id)
    if for_update:
        query = query.populate_existing().with_for_update()
    game = query.first()
    if not game:
        raise GameNotFound(game_id)
    return game


def get_game(game_id: int) -> Game:
    return _load(game_id, for_update=False)


def get_game_for_lobby(lobby_code: str) -> Game:
    game = Game.query.join(Lobby).filter(Lobby.code == lobby_code.upper()).first()
    if not game:
        raise GameNotFound(lobby_code, f"No game for lobby {lobby_code}")
    return game


def _require_in_progress(game: Game) -> None:
    if game.status != GameStatus.IN_PROGRESS:
        raise InvalidState(f"Game {game.id} is {game.status.value}")


def _next_prompter(game: Game, previous: Optional[str]) -> Optional[str]:
    """First remaining member after ``previous`` in the start-of-game order.

    Walking the fixed order skips departed players without shifting the turn
    of anyone who is still playing.
    """
    members = game.members
    if not members:
        return None
    order = game.rotation or members
    if previous not in order:
        return members[0]
    start = order.index(previous)
    for offset in range(1, len(order) + 1):
        candidate = order[(start + offset) % len(order)]
        if candidate in members:
            return candidate
    return None


def _current_round(game: Game) -> Round:
    rnd = game.round_by_number(game.current_round)
    if not rnd:
        raise RoundNotFound(game.current_round, f"Round {game.current_round} has not begun")
    return rnd


def _transition(rnd: Round, target: RoundStatus) -> None:
    current = ROUND_STATUS_ORDER.index(rnd.status)
    if ROUND_STATUS_ORDER.index(target) != current + 1:
        raise InvalidState(f"Round {rnd.round_number} cannot move from {rnd.status.value} to {target.value}")
    rnd.status = target
    if target == RoundStatus.COMPLETED:
        rnd.ended_at = utcnow()


def start_from_lobby(lobby: Lobby) -> Game:
    """Build the game for a lobby that is starting. The caller commits."""
    members = lobby.members
    game = Game(
        lobby=lobby,
        total_rounds=lobby.number_of_rounds,
        current_round=1,
        status=GameStatus.IN_PROGRESS,
        started_at=lobby.started_at or utcnow(),
    )
    game.members = members
    game.rotation = members
    game.scores = {pid: 0 for pid in members}
    game.current_prompter = members[0] if members else None
    db.session.add(game)
    current_app.logger.info(f"[game-start] lobby={lobby.code} players={len(members)} rounds={lobby.number_of_rounds}")
    return game


def remove_player(game_id: int, player_id: str, commit: bool = True) -> Game:
    """Drop a player and their score mid-game.

    The in-flight round is left as is, including its prompter. Later rotations
    skip the departed player. With ``commit=False`` the caller commits, so a
    lobby departure and this removal land together.
    """
    with game_lock(game_id):
        game = _load(game_id)
        if player_id not in game.members:
            raise PlayerNotInGame(player_id, game_id)
        game.remove_player(player_id)
        if commit:
            db.session.commit()
        current_app.logger.info(f"[game-leave] game={game_id} player={player_id} remaining={len(game.members)}")
        return game


def begin_round(game_id: int) -> Round:
    """Append the round for ``current_round`` with the rotated prompter."""
    with game_lock(game_id):
        game = _load(game_id)
        _require_in_progress(game)
        if game.is_over():
            raise InvalidState(f"Game {game_id} has no rounds left")
        if game.round_by_number(game.current_round):
            raise InvalidState(f"Round {game.current_round} already begun")
        prompter = game.current_prompter
        if prompter not in game.members:
            prompter = _next_prompter(game, prompter)
        if prompter is None:
            raise InvalidState(f"Game {game_id} has no players")
        rnd = Round(
            game=game,
            round_number=game.current_round,
            prompter_id=prompter,
            status=RoundStatus.WAITING_FOR_PROMPT,
            time_limit=game.lobby.time_limit,
            started_at=utcnow(),
        )
        game.current_prompter = prompter
        db.session.add(rnd)
        db.session.commit()
        current_app.logger.info(f"[round-begin] game={game_id} round={rnd.round_number} prompter={prompter}")
        return rnd


def submit_prompt(game_id: int, player_id: str, prompt_text: str) -> Round:
    if not prompt_text or not prompt_text.strip():
        raise InvalidArgument('prompt', 'Prompt text is required')
    with game_lock(game_id):
        game = _load(game_id)
        _require_in_progress(game)
        rnd = _current_round(game)
        if player_id != rnd.prompter_id:
            raise InvalidState(f"Only the prompter can submit the prompt for round {rnd.round_number}")
        _transition(rnd, RoundStatus.GENERATING_IMAGE)
        rnd.prompt_text = prompt_text.strip()
        db.session.commit()
        current_app.logger.info(f"[round-prompt] game={game_id} round={rnd.round_number}")
        return rnd


def attach_image(game_id: int, image_url: str) -> Round:
    if not image_url:
        raise InvalidArgument('image_url', 'Image URL is required')
    with game_lock(game_id):
        game = _load(game_id)
        _require_in_progress(game)
        rnd = _current_round(game)
        _transition(rnd, RoundStatus.WAITING_FOR_GUESSES)
        rnd.generated_image_url = image_url
        db.session.commit()
        current_app.logger.info(f"[round-image] game={game_id} round={rnd.round_number}")
        return rnd


def record_guess(game_id: int, player_id: str, guess_text: str, response_time_ms: int = 0) -> Guess:
    """Record one guess per player per round. A second guess is rejected, never overwritten."""
    if not guess_text or not guess_text.strip():
        raise InvalidArgument('guess', 'Guess text is required')
    with game_lock(game_id):
        game = _load(game_id)
        _require_in_progress(game)
        rnd = _current_round(game)
        if rnd.status != RoundStatus.WAITING_FOR_GUESSES:
            raise InvalidState(f"Round {rnd.round_number} is not accepting guesses ({rnd.status.value})")
        if player_id not in game.members:
            raise PlayerNotInGame(player_id, game_id)
        if player_id == rnd.prompter_id:
            raise InvalidState('The prompter cannot guess their own round')
        if rnd.guess_for(player_id):
            raise DuplicateGuess(player_id, rnd.round_number)
        guess = Guess(
            round=rnd,
            player_id=player_id,
            guess_text=guess_text.strip(),
            response_time_ms=max(0, int(response_time_ms or 0)),
            submitted_at=utcnow(),
        )
        db.session.add(guess)
        db.session.commit()
        current_app.logger.info(
            f"[round-guess] game={game_id} round={rnd.round_number} player={player_id} "
            f"received={len(rnd.guesses)} complete={rnd.all_guesses_submitted(game.members)}"
        )
        return guess


def evaluate_round(game_id: int, scorer: GuessScorer) -> Round:
    """Score every guess of the current round once and complete the round.

    ``scorer(player_id, prompt, guess_text, response_time_ms)`` returns
    ``(score, accuracy)``. Scores of players who left the game are kept on the
    guess but not added to the totals.
    """
    with game_lock(game_id):
        game = _load(game_id)
        _require_in_progress(game)
        rnd = _current_round(game)
        _transition(rnd, RoundStatus.EVALUATING_GUESSES)
        members = set(game.members)
        for guess in rnd.guesses:
            if guess.scored:
                continue
            score, accuracy = scorer(guess.player_id, rnd.prompt_text or '', guess.guess_text, guess.response_time_ms)
            guess.score = int(score)
            guess.accuracy = float(accuracy)
            guess.scored = True
            if guess.player_id in members:
                game.update_score(guess.player_id, guess.score)
        _transition(rnd, RoundStatus.COMPLETED)
        db.session.commit()
        current_app.logger.info(
            f"[round-complete] game={game_id} round={rnd.round_number} best={rnd.best_guesser_id()}"
        )
        return rnd


def advance_round(game_id: int) -> Game:
    """Move the round counter forward and rotate the prompter.

    Does not check that the previous round completed.
    """
    with game_lock(game_id):
        game = _load(game_id)
        _require_in_progress(game)
        previous = game.current_round
        last_prompter = game.current_prompter
        finished_round = game.round_by_number(previous)
        if finished_round:
            last_prompter = finished_round.prompter_id
        game.current_round = previous + 1
        game.current_prompter = None if game.is_over() else _next_prompter(game, last_prompter)
        db.session.commit()
        current_app.logger.info(
            f"[round-advance] game={game_id} round {previous} -> {game.current_round} over={game.is_over()}"
        )
        return game


def update_score(game_id: int, player_id: str, delta: int) -> Game:
    with game_lock(game_id):
        game = _load(game_id)
        _require_in_progress(game)
        game.update_score(player_id, delta)
        db.session.commit()
        return game


def finish(game_id: int) -> Game:
    """Mark the game finished and fold the results into player statistics."""
    with game_lock(game_id):
        game = _load(game_id)
        if game.status == GameStatus.FINISHED:
            return game
        _require_in_progress(game)
        game.status = GameStatus.FINISHED
        game.ended_at = utcnow()
        winner_id = game.winner()
        accuracies = {}
        for rnd in game.rounds:
            for guess in rnd.guesses:
                if guess.scored:
                    accuracies.setdefault(guess.player_id, []).append(guess.accuracy)
        for player_id, score in game.scores.items():
            identity.record_game_result(player_id, score, player_id == winner_id, accuracies.get(player_id, ()))
        db.session.commit()
        current_app.logger.info(f"[game-finish] game={game_id} winner={winner_id}")
        return game


def abort(game_id: int) -> Game:
    with game_lock(game_id):
        game = _load(game_id)
        if game.status != GameStatus.IN_PROGRESS:
            return game
        game.status = GameStatus.ABORTED
        game.ended_at = utcnow()
        db.session.commit()
        current_app.logger.info(f"[game-abort] game={game_id} round={game.current_round}")
        return game


def round_ranking(rnd: Round) -> List[Tuple[str, int]]:
    return rnd.ranking()


def best_guesser(rnd: Round) -> Optional[str]:
    return rnd.best_guesser_id()


def final_ranking(game: Game) -> List[Tuple[str, int]]:
    return game.final_ranking()


def winner(game: Game) -> Optional[str]:
    return game.winner()


def is_over(game: Game) -> bool:
    return game.is_over()
