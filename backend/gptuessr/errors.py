"""Typed failures raised by the lobby and game services.

Every error carries a ``kind`` (what went wrong, independent of transport) and
the HTTP status the API layer answers with. Messages are safe to show to
callers; they never include internal state beyond ids the caller supplied.
"""


class ErrorKind:
    NOT_FOUND = 'NOT_FOUND'
    INVALID_STATE = 'INVALID_STATE'
    INVALID_ARGUMENT = 'INVALID_ARGUMENT'
    PERMISSION_DENIED = 'PERMISSION_DENIED'
    CAPACITY_EXCEEDED = 'CAPACITY_EXCEEDED'
    INSUFFICIENT_PLAYERS = 'INSUFFICIENT_PLAYERS'
    DUPLICATE_RESOURCE = 'DUPLICATE_RESOURCE'
    AUTHENTICATION_FAILURE = 'AUTHENTICATION_FAILURE'
    UNAVAILABLE = 'UNAVAILABLE'


class GameError(Exception):
    """Base class for every failure the services report to callers."""

    kind = ErrorKind.INVALID_STATE
    http_status = 400

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_response(self) -> dict:
        return {'error': self.message, 'kind': self.kind}


# ---- Not found ----

class NotFound(GameError):
    kind = ErrorKind.NOT_FOUND
    http_status = 404
    resource = 'resource'

    def __init__(self, resource_id, message: str = None):
        super().__init__(message or f"{self.resource.capitalize()} '{resource_id}' not found")
        self.resource_id = resource_id

    def to_response(self) -> dict:
        payload = super().to_response()
        payload['resource'] = self.resource
        return payload


class LobbyNotFound(NotFound):
    resource = 'lobby'


class UserNotFound(NotFound):
    resource = 'user'


class HostNotFound(UserNotFound):
    def __init__(self, host_id):
        super().__init__(host_id, 'Host user not found')


class PlayerNotFound(NotFound):
    resource = 'player'

    def __init__(self, player_id):
        super().__init__(player_id, 'Player user not found')


class PlayerNotInLobby(NotFound):
    resource = 'player'

    def __init__(self, player_id, lobby_code):
        super().__init__(player_id, f"Player not in lobby {lobby_code}")


class PlayerNotInGame(NotFound):
    resource = 'player'

    def __init__(self, player_id, game_id):
        super().__init__(player_id, f"Player not in game {game_id}")


class GameNotFound(NotFound):
    resource = 'game'


class RoundNotFound(NotFound):
    resource = 'round'


# ---- Rule violations ----

class InvalidState(GameError):
    kind = ErrorKind.INVALID_STATE
    http_status = 409


class InvalidArgument(GameError):
    kind = ErrorKind.INVALID_ARGUMENT
    http_status = 400

    def __init__(self, field: str, message: str):
        super().__init__(message)
        self.field = field

    def to_response(self) -> dict:
        payload = super().to_response()
        payload['field'] = self.field
        return payload


class PermissionDenied(GameError):
    kind = ErrorKind.PERMISSION_DENIED
    http_status = 403


class NotHost(PermissionDenied):
    def __init__(self, action: str):
        super().__init__(f"Only the host can {action}")


class CapacityExceeded(GameError):
    kind = ErrorKind.CAPACITY_EXCEEDED
    http_status = 409


class LobbyFull(CapacityExceeded):
    def __init__(self, lobby_code, max_players):
        super().__init__(f"Lobby {lobby_code} is full ({max_players} players)")


class MaxPlayersTooLow(CapacityExceeded):
    def __init__(self, requested, current):
        super().__init__(f"Max players ({requested}) cannot be less than current player count ({current})")


class InsufficientPlayers(GameError):
    kind = ErrorKind.INSUFFICIENT_PLAYERS
    http_status = 409

    def __init__(self, current, minimum):
        super().__init__(f"Not enough players to start the game (minimum {minimum}, have {current})")


class DuplicateResource(GameError):
    kind = ErrorKind.DUPLICATE_RESOURCE
    http_status = 409


class DuplicateGuess(DuplicateResource):
    def __init__(self, player_id, round_number):
        super().__init__(f"Player {player_id} already guessed in round {round_number}")


class CodeSpaceExhausted(DuplicateResource):
    def __init__(self, attempts):
        super().__init__(f"Could not allocate a unique lobby code after {attempts} attempts")


# ---- Authentication / infrastructure ----

class AuthenticationFailure(GameError):
    kind = ErrorKind.AUTHENTICATION_FAILURE
    http_status = 401


class Unavailable(GameError):
    kind = ErrorKind.UNAVAILABLE
    http_status = 503

    def __init__(self, operation: str = 'request'):
        super().__init__(f"Service unavailable while processing {operation}")
