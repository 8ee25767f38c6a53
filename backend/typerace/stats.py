from __future__ import annotations

import logging
from typing import Any, Callable

from .db import db
from .utils import now_ts

logger = logging.getLogger(__name__)

BASE_EXPERIENCE = 10
WINNER_BONUS = 50
FAST_TYPIST_BONUS = 20
FAST_TYPIST_WPM = 60
ACCURATE_TYPIST_BONUS = 15
ACCURATE_TYPIST_ACCURACY = 95
EXPERIENCE_PER_LEVEL = 1000


def experience_for(wpm: float, accuracy: float, is_winner: bool) -> int:
    gained = BASE_EXPERIENCE
    if is_winner:
        gained += WINNER_BONUS
    if wpm > FAST_TYPIST_WPM:
        gained += FAST_TYPIST_BONUS
    if accuracy > ACCURATE_TYPIST_ACCURACY:
        gained += ACCURATE_TYPIST_BONUS
    return gained


def level_for(experience: int) -> int:
    return experience // EXPERIENCE_PER_LEVEL + 1


class UserStatsUpdater:
    """Folds one race result into a user's lifetime aggregates."""

    def __init__(self, users: Any = None, clock: Callable[[], float] = now_ts):
        self.users = users if users is not None else db.users
        self.clock = clock

    async def update(self, player_id: str, wpm: float, accuracy: float, is_winner: bool) -> bool:
        """Apply the result and return whether the user levelled up."""
        user = await self.users.find_one({"id": player_id})
        if not user or user.get("is_guest"):
            return False

        total_games = user.get("total_games", 0) + 1
        previous_accuracy = user.get("average_accuracy", 0)
        average_accuracy = round((previous_accuracy * (total_games - 1) + accuracy) / total_games)

        level = user.get("level", 1)
        experience = user.get("experience", 0) + experience_for(wpm, accuracy, is_winner)
        new_level = max(level, level_for(experience))

        await self.users.update_one(
            {"id": player_id},
            {
                "$inc": {"total_games": 1, "wins": 1 if is_winner else 0},
                "$set": {
                    "best_wpm": max(user.get("best_wpm", 0), wpm),
                    "average_accuracy": average_accuracy,
                    "experience": experience,
                    "level": new_level,
                    "last_active_at": self.clock(),
                },
            },
        )

        if new_level > level:
            logger.info("Player %s reached level %d", player_id, new_level)
            return True
        return False


stats_updater = UserStatsUpdater()
