from typing import Dict, List, Literal, Optional

from pydantic import BaseModel, Field

from .utils import new_id, now_ts

Difficulty = Literal["easy", "medium", "hard"]

# States: ready -> playing -> finished
RaceStatus = Literal["ready", "playing", "finished"]


class Sentence(BaseModel):
    text: str
    difficulty: Difficulty = "medium"
    index: int = 0


class Keystroke(BaseModel):
    character: str
    is_correct: bool
    timestamp: float  # epoch seconds


class Identity(BaseModel):
    player_id: str
    nickname: str
    is_guest: bool = False


class RosterPlayer(BaseModel):
    player_id: str
    nickname: str
    is_guest: bool = False


class RoomRoster(BaseModel):
    room_id: str
    host_id: str
    players: List[RosterPlayer] = Field(default_factory=list)
    sentences: List[Sentence] = Field(default_factory=list)
    sentence_count: int = 0

    def has_player(self, player_id: str) -> bool:
        return any(p.player_id == player_id for p in self.players)


class PlayerProgress(BaseModel):
    player_id: str
    nickname: str
    is_guest: bool = False
    current_sentence_index: int = 0
    # per-sentence counters, reset when the player advances
    input_length: int = 0
    correct_characters: int = 0
    total_characters: int = 0
    completed_sentences: int = 0
    progress: float = 0.0
    wpm: float = 0.0
    accuracy: float = 100.0
    is_finished: bool = False
    finish_time: Optional[float] = None
    keystrokes: List[Keystroke] = Field(default_factory=list)
    rank: Optional[int] = None
    is_winner: bool = False

    def progress_view(self) -> dict:
        return {
            "player_id": self.player_id,
            "nickname": self.nickname,
            "progress": self.progress,
            "wpm": self.wpm,
            "accuracy": self.accuracy,
            "current_sentence_index": self.current_sentence_index,
        }


class RaceSession(BaseModel):
    room_id: str
    race_id: str = Field(default_factory=new_id)
    status: RaceStatus = "ready"
    sentences: List[Sentence]
    created_at: float = Field(default_factory=now_ts)
    started_at: Optional[float] = None
    finished_at: Optional[float] = None
    players: Dict[str, PlayerProgress] = Field(default_factory=dict)

    @property
    def total(self) -> int:
        return len(self.sentences)

    def all_finished(self) -> bool:
        return all(p.is_finished for p in self.players.values())

    def finished_count(self) -> int:
        return sum(1 for p in self.players.values() if p.is_finished)

    def snapshot(self) -> dict:
        """Session state safe to send to clients (no keystroke logs)."""
        data = self.model_dump(exclude={"players"})
        data["players"] = [p.model_dump(exclude={"keystrokes"}) for p in self.players.values()]
        data["total"] = self.total
        return data


class PlayerResult(BaseModel):
    player_id: str
    nickname: str
    final_wpm: float
    final_accuracy: float
    completed_sentences: int
    total_characters: int
    correct_characters: int
    rank: int
    is_winner: bool = False
    finish_time: Optional[float] = None
    keystrokes: List[Keystroke] = Field(default_factory=list)


class RaceSettings(BaseModel):
    difficulty: Difficulty = "medium"
    sentence_count: int


class RaceRecord(BaseModel):
    id: str = Field(default_factory=new_id)
    room_id: str
    race_id: str
    sentences: List[Sentence]
    players: List[PlayerResult]
    winner: str
    settings: RaceSettings
    duration: int  # seconds
    started_at: float
    finished_at: float
