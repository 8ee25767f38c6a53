"""Race coordination errors.

Every handler entry point converts failures into one of these so the
transport can decide whether to notify the sender or drop the event.
"""


class RaceError(Exception):
    """Base class for all race coordination errors."""

    message = "Race error"

    def __init__(self, message: str | None = None):
        super().__init__(message or self.message)


class ValidationError(RaceError):
    """Malformed inbound payload."""

    message = "Invalid payload"


class StaleEvent(RaceError):
    """Event refers to a missing session, unknown player or old sentence index."""

    message = "Stale event"


class AuthorizationError(RaceError):
    message = "Not allowed"


class RoomNotFound(RaceError):
    def __init__(self, room_id: str):
        self.room_id = room_id
        super().__init__(f"Room {room_id} not found")


class SessionAlreadyExists(RaceError):
    def __init__(self, room_id: str):
        self.room_id = room_id
        super().__init__(f"A race is already running in room {room_id}")


class SessionNotFound(RaceError):
    def __init__(self, room_id: str):
        self.room_id = room_id
        super().__init__(f"No race in room {room_id}")


class InvalidSentence(RaceError):
    message = "Sentence text must not be empty"


class InvalidRoster(RaceError):
    message = "Invalid player roster"


class PersistenceFailure(RaceError):
    message = "Failed to persist race record"


class AggregateUpdateFailure(RaceError):
    def __init__(self, player_id: str, message: str | None = None):
        self.player_id = player_id
        super().__init__(message or f"Failed to update stats for player {player_id}")
