"""Outbound messages produced by the race coordinator.

The coordinator returns these instead of talking to sockets. A message with
``player_id`` set is private to that player; otherwise it goes to everyone
subscribed to ``room_id``.
"""
from __future__ import annotations

from typing import Any, List, Optional

from pydantic import BaseModel

from .models import Sentence


class Outbound(BaseModel):
    room_id: str
    player_id: Optional[str] = None

    def payload(self) -> dict[str, Any]:
        return self.model_dump(exclude={"room_id", "player_id"})


class RaceReady(Outbound):
    message: str = "The race is about to start!"
    countdown: float
    game_state: dict[str, Any]


class SentenceDispatched(Outbound):
    sentence: Sentence
    index: int
    total: int


class ProgressBroadcast(Outbound):
    players: List[dict[str, Any]]


class PlayerCompleted(Outbound):
    user_id: str
    nickname: str
    rank: int


class PlayerFinishedNotice(Outbound):
    message: str
    is_winner: bool


class RaceFinished(Outbound):
    message: str = "The race is over!"
    results: List[dict[str, Any]]
    game_record: Optional[str] = None


class RaceCancelled(Outbound):
    reason: str
