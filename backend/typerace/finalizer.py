from __future__ import annotations

import logging
from typing import Any, List, Optional

from .db import db
from .errors import AggregateUpdateFailure, PersistenceFailure
from .models import PlayerProgress, PlayerResult, RaceRecord, RaceSession, RaceSettings
from .rooms import RoomDirectory, room_directory
from .stats import UserStatsUpdater, stats_updater

logger = logging.getLogger(__name__)


def rank_players(players: List[PlayerProgress]) -> List[PlayerProgress]:
    """Order by sentences completed, then wpm, then accuracy, all descending.

    ``sorted`` is stable, so full ties keep roster order.
    """
    return sorted(players, key=lambda p: (-p.completed_sentences, -p.wpm, -p.accuracy))


def build_record(session: RaceSession, ranked: List[PlayerProgress]) -> RaceRecord:
    started_at = session.started_at if session.started_at is not None else session.created_at
    finished_at = session.finished_at if session.finished_at is not None else started_at
    return RaceRecord(
        room_id=session.room_id,
        race_id=session.race_id,
        sentences=session.sentences,
        players=[
            PlayerResult(
                player_id=p.player_id,
                nickname=p.nickname,
                final_wpm=p.wpm,
                final_accuracy=p.accuracy,
                completed_sentences=p.completed_sentences,
                total_characters=p.total_characters,
                correct_characters=p.correct_characters,
                rank=p.rank,
                is_winner=p.is_winner,
                finish_time=p.finish_time,
                keystrokes=p.keystrokes,
            )
            for p in session.players.values()
        ],
        winner=ranked[0].player_id,
        settings=RaceSettings(
            difficulty=session.sentences[0].difficulty if session.sentences else "medium",
            sentence_count=len(session.sentences),
        ),
        duration=round(finished_at - started_at),
        started_at=started_at,
        finished_at=finished_at,
    )


class ResultFinalizer:
    def __init__(
        self,
        records: Any = None,
        stats: UserStatsUpdater | None = None,
        rooms: RoomDirectory | None = None,
    ):
        self.records = records if records is not None else db.race_records
        self.stats = stats or stats_updater
        self.rooms = rooms or room_directory

    async def finalize(self, session: RaceSession) -> Optional[str]:
        """Rank players, persist the race record and update player stats.

        Returns the record id, or ``None`` when the record could not be
        written. Stats are only touched once the record exists.
        """
        ranked = rank_players(list(session.players.values()))
        for position, player in enumerate(ranked):
            player.rank = position + 1
            player.is_winner = position == 0

        record = build_record(session, ranked)
        try:
            await self._persist(record)
        except PersistenceFailure:
            logger.exception("Failed to save race record for room %s", session.room_id)
            return None

        for player in session.players.values():
            if player.is_guest:
                continue
            try:
                await self._update_stats(player)
            except AggregateUpdateFailure:
                logger.exception("Stats update failed for player %s", player.player_id)

        try:
            await self.rooms.set_game_status(session.room_id, "finished")
        except Exception:
            logger.warning("Could not mark room %s finished", session.room_id, exc_info=True)

        logger.info("Race %s in room %s saved as record %s", session.race_id, session.room_id, record.id)
        return record.id

    async def _persist(self, record: RaceRecord) -> None:
        # One document per race, so the insert is all-or-nothing.
        try:
            await self.records.insert_one(record.model_dump())
        except Exception as exc:
            raise PersistenceFailure(str(exc)) from exc

    async def _update_stats(self, player: PlayerProgress) -> None:
        try:
            await self.stats.update(
                player.player_id,
                wpm=player.wpm,
                accuracy=player.accuracy,
                is_winner=player.is_winner,
            )
        except Exception as exc:
            raise AggregateUpdateFailure(player.player_id, str(exc)) from exc

    async def load_record(self, record_id: str) -> RaceRecord | None:
        doc = await self.records.find_one({"id": record_id})
        return RaceRecord(**doc) if doc else None


finalizer = ResultFinalizer()
