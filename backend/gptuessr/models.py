from gptuessr import db
from flask_login import UserMixin
from datetime import datetime, timezone
import enum
import json

from gptuessr.services.games.scoring import rank_entries, best_entry


def utcnow():
    """Naive UTC timestamp; stored columns carry no timezone."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _load_list(raw):
    try:
        return json.loads(raw) if raw else []
    except ValueError:
        return []


def _load_map(raw):
    try:
        return json.loads(raw) if raw else {}
    except ValueError:
        return {}


def _iso(value):
    return value.isoformat() if value else None


class LobbyStatus(str, enum.Enum):
    WAITING = 'WAITING'
    IN_PROGRESS = 'IN_PROGRESS'
    FINISHED = 'FINISHED'
    CLOSED = 'CLOSED'


class GameStatus(str, enum.Enum):
    IN_PROGRESS = 'IN_PROGRESS'
    FINISHED = 'FINISHED'
    ABORTED = 'ABORTED'


class RoundStatus(str, enum.Enum):
    WAITING_FOR_PROMPT = 'WAITING_FOR_PROMPT'
    GENERATING_IMAGE = 'GENERATING_IMAGE'
    WAITING_FOR_GUESSES = 'WAITING_FOR_GUESSES'
    EVALUATING_GUESSES = 'EVALUATING_GUESSES'
    COMPLETED = 'COMPLETED'


ROUND_STATUS_ORDER = list(RoundStatus)


class User(UserMixin, db.Model):
    __tablename__ = 'user'
    id = db.Column(db.Integer, primary_key=True)
    subject_id = db.Column(db.String(128), unique=True, nullable=False, index=True)
    username = db.Column(db.String(64), unique=True, nullable=False, index=True)
    email = db.Column(db.String(255), nullable=True)
    first_name = db.Column(db.String(128), nullable=True)
    last_name = db.Column(db.String(128), nullable=True)
    display_name = db.Column(db.String(255), nullable=True)
    profile_picture = db.Column(db.String(1024), nullable=True)
    provider_info = db.Column(db.Text, nullable=True)  # JSON object provider -> provider user id
    session_id = db.Column(db.String(128), nullable=True)
    is_online = db.Column(db.Boolean, default=False, nullable=False)
    is_verified = db.Column(db.Boolean, default=True, nullable=False)
    created_at = db.Column(db.DateTime, default=utcnow, nullable=False)
    last_login = db.Column(db.DateTime, nullable=True)
    last_active = db.Column(db.DateTime, default=utcnow, nullable=True)
    # Statistics
    games_played = db.Column(db.Integer, default=0, nullable=False)
    games_won = db.Column(db.Integer, default=0, nullable=False)
    games_lost = db.Column(db.Integer, default=0, nullable=False)
    total_score = db.Column(db.Integer, default=0, nullable=False)
    total_guesses = db.Column(db.Integer, default=0, nullable=False)
    average_guess_accuracy = db.Column(db.Float, default=0.0, nullable=False)
    personal_best_score = db.Column(db.Integer, default=0, nullable=False)
    # Social
    friends = db.Column(db.Text, nullable=True)  # JSON list of subject ids
    blocked_users = db.Column(db.Text, nullable=True)  # JSON list of subject ids

    def get_id(self):
        # Flask-Login identifies users by the provider subject id
        return self.subject_id

    @property
    def providers(self):
        return _load_map(self.provider_info)

    @property
    def friend_ids(self):
        return _load_list(self.friends)

    @property
    def blocked_ids(self):
        return _load_list(self.blocked_users)

    def add_friend(self, subject_id):
        ids = self.friend_ids
        if subject_id not in ids and subject_id not in self.blocked_ids:
            ids.append(subject_id)
            self.friends = json.dumps(ids)

    def block_user(self, subject_id):
        blocked = self.blocked_ids
        if subject_id not in blocked:
            blocked.append(subject_id)
            self.blocked_users = json.dumps(blocked)
        self.friends = json.dumps([f for f in self.friend_ids if f != subject_id])

    def refresh_display_name(self):
        if self.first_name and self.last_name:
            self.display_name = f"{self.first_name} {self.last_name}"
        elif self.first_name:
            self.display_name = self.first_name
        elif self.last_name:
            self.display_name = self.last_name
        else:
            self.display_name = self.display_name or self.username

    @property
    def win_rate(self):
        return (self.games_won / self.games_played * 100) if self.games_played else 0.0

    def to_dict(self):
        return {
            'id': self.id,
            'subject_id': self.subject_id,
            'username': self.username,
            'email': self.email,
            'display_name': self.display_name,
            'profile_picture': self.profile_picture,
            'is_online': self.is_online,
            'stats': {
                'games_played': self.games_played,
                'games_won': self.games_won,
                'games_lost': self.games_lost,
                'total_score': self.total_score,
                'average_guess_accuracy': self.average_guess_accuracy,
                'personal_best_score': self.personal_best_score,
                'win_rate': self.win_rate,
            },
        }

    def to_public_dict(self):
        return {
            'username': self.username,
            'display_name': self.display_name,
            'profile_picture': self.profile_picture,
        }


class Lobby(db.Model):
    __tablename__ = 'lobby'
    id = db.Column(db.Integer, primary_key=True)
    code = db.Column(db.String(6), unique=True, nullable=False, index=True)
    host_id = db.Column(db.String(128), nullable=False, index=True)
    player_ids = db.Column(db.Text, nullable=False, default='[]')  # JSON-encoded ordered list of subject ids
    max_players = db.Column(db.Integer, nullable=False, default=10)
    number_of_rounds = db.Column(db.Integer, nullable=False)
    time_limit = db.Column(db.Integer, nullable=False)
    status = db.Column(db.Enum(LobbyStatus, native_enum=False, length=16), nullable=False,
                       default=LobbyStatus.WAITING, index=True)
    created_at = db.Column(db.DateTime, default=utcnow, nullable=False, index=True)
    started_at = db.Column(db.DateTime, nullable=True)
    ended_at = db.Column(db.DateTime, nullable=True)
    game_settings = db.Column(db.Text, nullable=False, default='[]')  # JSON-encoded list of tags
    game = db.relationship('Game', back_populates='lobby', uselist=False)

    @property
    def members(self):
        return _load_list(self.player_ids)

    @members.setter
    def members(self, ids):
        self.player_ids = json.dumps(list(ids))

    @property
    def settings(self):
        return _load_list(self.game_settings)

    @settings.setter
    def settings(self, tags):
        self.game_settings = json.dumps(list(tags or []))

    def contains_player(self, player_id):
        return player_id in self.members

    def add_player(self, player_id):
        ids = self.members
        if player_id not in ids:
            ids.append(player_id)
            self.members = ids

    def remove_player(self, player_id):
        self.members = [p for p in self.members if p != player_id]

    def is_full(self):
        return len(self.members) >= self.max_players

    def to_dict(self, viewer_id=None, users=None):
        members = self.members
        payload = {
            'id': self.id,
            'lobby_code': self.code,
            'host_id': self.host_id,
            'player_ids': members,
            'current_players': len(members),
            'max_players': self.max_players,
            'number_of_rounds': self.number_of_rounds,
            'time_limit': self.time_limit,
            'status': self.status.value,
            'game_settings': self.settings,
            'created_at': _iso(self.created_at),
            'started_at': _iso(self.started_at),
            'ended_at': _iso(self.ended_at),
            'game_id': self.game.id if self.game else None,
        }
        if viewer_id is not None:
            payload['is_host'] = viewer_id == self.host_id
            payload['player_in_lobby'] = viewer_id in members
        if users is not None:
            payload['players'] = [
                dict({'id': pid, 'is_host': pid == self.host_id}, **(users[pid].to_public_dict() if pid in users else {}))
                for pid in members
            ]
        return payload


class Game(db.Model):
    __tablename__ = 'game'
    id = db.Column(db.Integer, primary_key=True)
    lobby_id = db.Column(db.Integer, db.ForeignKey('lobby.id'), nullable=False, unique=True)
    player_ids = db.Column(db.Text, nullable=False, default='[]')  # JSON list of subject ids
    prompt_order = db.Column(db.Text, nullable=False, default='[]')  # JSON list, members at start; never shrinks
    current_round = db.Column(db.Integer, nullable=False, default=1)
    total_rounds = db.Column(db.Integer, nullable=False)
    current_prompter = db.Column(db.String(128), nullable=True)
    player_scores = db.Column(db.Text, nullable=False, default='{}')  # JSON object, insertion ordered
    status = db.Column(db.Enum(GameStatus, native_enum=False, length=16), nullable=False,
                       default=GameStatus.IN_PROGRESS)
    started_at = db.Column(db.DateTime, default=utcnow, nullable=False)
    ended_at = db.Column(db.DateTime, nullable=True)
    lobby = db.relationship('Lobby', back_populates='game')
    rounds = db.relationship('Round', back_populates='game', order_by='Round.round_number')

    @property
    def members(self):
        return _load_list(self.player_ids)

    @members.setter
    def members(self, ids):
        self.player_ids = json.dumps(list(ids))

    @property
    def rotation(self):
        return _load_list(self.prompt_order)

    @rotation.setter
    def rotation(self, ids):
        self.prompt_order = json.dumps(list(ids))

    @property
    def scores(self):
        return _load_map(self.player_scores)

    @scores.setter
    def scores(self, mapping):
        self.player_scores = json.dumps(mapping)

    def update_score(self, player_id, delta):
        scores = self.scores
        scores[player_id] = scores.get(player_id, 0) + delta
        self.scores = scores

    def remove_player(self, player_id):
        self.members = [p for p in self.members if p != player_id]
        scores = self.scores
        scores.pop(player_id, None)
        self.scores = scores

    def is_over(self):
        return self.current_round > self.total_rounds

    def final_ranking(self):
        return rank_entries(self.scores.items())

    def winner(self):
        """Highest cumulative score once the game is finished, else None."""
        if self.status != GameStatus.FINISHED:
            return None
        best = best_entry(self.scores.items())
        return best[0] if best else None

    def round_by_number(self, number):
        for rnd in self.rounds:
            if rnd.round_number == number:
                return rnd
        return None

    def to_dict(self):
        current = self.round_by_number(self.current_round)
        return {
            'id': self.id,
            'lobby_id': self.lobby_id,
            'lobby_code': self.lobby.code if self.lobby else None,
            'player_ids': self.members,
            'current_round': self.current_round,
            'total_rounds': self.total_rounds,
            'current_prompter': self.current_prompter,
            'player_scores': self.scores,
            'status': self.status.value,
            'is_over': self.is_over(),
            'winner': self.winner(),
            'started_at': _iso(self.started_at),
            'ended_at': _iso(self.ended_at),
            'current_round_state': current.to_dict() if current else None,
        }


class Round(db.Model):
    __tablename__ = 'round'
    __table_args__ = (db.UniqueConstraint('game_id', 'round_number', name='uq_round_game_number'),)
    id = db.Column(db.Integer, primary_key=True)
    game_id = db.Column(db.Integer, db.ForeignKey('game.id'), nullable=False, index=True)
    round_number = db.Column(db.Integer, nullable=False)
    prompter_id = db.Column(db.String(128), nullable=False)
    prompt_text = db.Column(db.Text, nullable=True)
    generated_image_url = db.Column(db.String(2048), nullable=True)
    status = db.Column(db.Enum(RoundStatus, native_enum=False, length=32), nullable=False,
                       default=RoundStatus.WAITING_FOR_PROMPT)
    started_at = db.Column(db.DateTime, default=utcnow, nullable=False)
    ended_at = db.Column(db.DateTime, nullable=True)
    time_limit = db.Column(db.Integer, nullable=False)
    game = db.relationship('Game', back_populates='rounds')
    guesses = db.relationship('Guess', back_populates='round', order_by='Guess.id')

    def guess_for(self, player_id):
        for guess in self.guesses:
            if guess.player_id == player_id:
                return guess
        return None

    def all_guesses_submitted(self, player_ids):
        """True once every current member other than the prompter has guessed."""
        guessers = {pid for pid in player_ids if pid != self.prompter_id}
        guessed = {g.player_id for g in self.guesses} & guessers
        return len(guessed) >= len(guessers)

    def ranking(self):
        return rank_entries((g.player_id, g.score) for g in self.guesses)

    def best_guesser_id(self):
        best = best_entry((g.player_id, g.score) for g in self.guesses)
        return best[0] if best else None

    def to_dict(self, include_guesses=False):
        payload = {
            'round_number': self.round_number,
            'prompter_id': self.prompter_id,
            'prompt_text': self.prompt_text if self.status == RoundStatus.COMPLETED else None,
            'generated_image_url': self.generated_image_url,
            'status': self.status.value,
            'time_limit': self.time_limit,
            'started_at': _iso(self.started_at),
            'ended_at': _iso(self.ended_at),
            'guessed_player_ids': [g.player_id for g in self.guesses],
        }
        if include_guesses or self.status == RoundStatus.COMPLETED:
            payload['guesses'] = [g.to_dict() for g in self.guesses]
            payload['best_guesser_id'] = self.best_guesser_id()
        return payload


class Guess(db.Model):
    __tablename__ = 'guess'
    __table_args__ = (db.UniqueConstraint('round_id', 'player_id', name='uq_guess_round_player'),)
    id = db.Column(db.Integer, primary_key=True)
    round_id = db.Column(db.Integer, db.ForeignKey('round.id'), nullable=False, index=True)
    player_id = db.Column(db.String(128), nullable=False)
    guess_text = db.Column(db.Text, nullable=False)
    score = db.Column(db.Integer, default=0, nullable=False)
    accuracy = db.Column(db.Float, default=0.0, nullable=False)
    scored = db.Column(db.Boolean, default=False, nullable=False)
    submitted_at = db.Column(db.DateTime, default=utcnow, nullable=False)
    response_time_ms = db.Column(db.Integer, default=0, nullable=False)
    round = db.relationship('Round', back_populates='guesses')

    def to_dict(self):
        return {
            'player_id': self.player_id,
            'guess_text': self.guess_text,
            'score': self.score,
            'accuracy': self.accuracy,
            'submitted_at': _iso(self.submitted_at),
            'response_time_ms': self.response_time_ms,
        }
