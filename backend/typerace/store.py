from __future__ import annotations

import asyncio
import logging
from typing import Callable, Dict, Iterable, List

from pydantic import ValidationError as PydanticValidationError

from .cache import RaceCache, cache
from .db import settings
from .errors import SessionAlreadyExists, SessionNotFound
from .models import PlayerProgress, RaceSession, RosterPlayer, Sentence
from .utils import now_ts

logger = logging.getLogger(__name__)


class SessionStore:
    """Authoritative in-memory race sessions keyed by room id.

    Every mutation is mirrored to the cache on a best-effort basis. The
    in-memory map stays the source of truth when the cache is unavailable. Cache
    calls are bounded by ``cache_timeout`` and a timeout is logged like any
    other cache failure.
    """

    def __init__(
        self,
        race_cache: RaceCache,
        clock: Callable[[], float] = now_ts,
        cache_timeout: float | None = None,
    ):
        self.cache = race_cache
        self.clock = clock
        self.cache_timeout = settings.CACHE_TIMEOUT_SEC if cache_timeout is None else cache_timeout
        self.sessions: Dict[str, RaceSession] = {}
        self.locks: Dict[str, asyncio.Lock] = {}
        self.touched: Dict[str, float] = {}

    def lock(self, room_id: str) -> asyncio.Lock:
        self.locks.setdefault(room_id, asyncio.Lock())
        return self.locks[room_id]

    async def create(
        self,
        room_id: str,
        sentences: Iterable[Sentence],
        players: Iterable[RosterPlayer],
    ) -> RaceSession:
        if room_id in self.sessions:
            raise SessionAlreadyExists(room_id)

        session = RaceSession(
            room_id=room_id,
            sentences=[Sentence(text=s.text, difficulty=s.difficulty, index=i) for i, s in enumerate(sentences)],
            players={
                p.player_id: PlayerProgress(player_id=p.player_id, nickname=p.nickname, is_guest=p.is_guest)
                for p in players
            },
        )
        self.sessions[room_id] = session
        self.touched[room_id] = self.clock()
        await self._mirror(room_id, session)
        return session

    def get(self, room_id: str) -> RaceSession | None:
        return self.sessions.get(room_id)

    def require(self, room_id: str) -> RaceSession:
        session = self.sessions.get(room_id)
        if session is None:
            raise SessionNotFound(room_id)
        return session

    async def replace(self, room_id: str, session: RaceSession) -> None:
        if room_id not in self.sessions:
            raise SessionNotFound(room_id)
        self.sessions[room_id] = session
        self.touched[room_id] = self.clock()
        await self._mirror(room_id, session)

    async def remove(self, room_id: str) -> RaceSession | None:
        session = self.sessions.pop(room_id, None)
        self.touched.pop(room_id, None)
        if session is not None:
            try:
                await asyncio.wait_for(self.cache.delete(room_id), self.cache_timeout)
            except Exception:
                logger.warning("Failed to evict cached race for room %s", room_id, exc_info=True)
        return session

    def idle_rooms(self, now: float, ttl: float) -> List[str]:
        return [room_id for room_id, ts in self.touched.items() if now - ts > ttl]

    def prune_locks(self) -> None:
        for room_id in list(self.locks):
            if room_id not in self.sessions and not self.locks[room_id].locked():
                del self.locks[room_id]

    async def restore(self) -> int:
        """Reload cached sessions that are not in memory; returns how many were restored."""
        try:
            entries = await self.cache.load_all()
        except Exception:
            logger.warning("Could not read cached races", exc_info=True)
            return 0

        restored = 0
        for room_id, payload in entries:
            if room_id in self.sessions:
                continue
            try:
                session = RaceSession.model_validate_json(payload)
            except PydanticValidationError:
                logger.warning("Skipping undecodable cached race for room %s", room_id)
                continue
            self.sessions[room_id] = session
            self.touched[room_id] = self.clock()
            restored += 1

        if restored:
            logger.info("Restored %d race(s) from cache", restored)
        return restored

    async def _mirror(self, room_id: str, session: RaceSession) -> None:
        try:
            await asyncio.wait_for(self.cache.set(room_id, session.model_dump_json()), self.cache_timeout)
        except Exception:
            logger.warning("Failed to mirror race for room %s to cache", room_id, exc_info=True)


store = SessionStore(cache)
