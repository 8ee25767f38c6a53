from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Dict, List, Optional, Tuple

from . import metrics
from .db import settings
from .errors import InvalidRoster, InvalidSentence, StaleEvent
from .events import (
    Outbound,
    PlayerCompleted,
    PlayerFinishedNotice,
    ProgressBroadcast,
    RaceCancelled,
    RaceFinished,
    RaceReady,
    SentenceDispatched,
)
from .finalizer import ResultFinalizer, finalizer as default_finalizer
from .models import Keystroke, PlayerProgress, RaceSession, RoomRoster
from .store import SessionStore, store as default_store
from .utils import now_ts

logger = logging.getLogger(__name__)

Publisher = Callable[[List[Outbound]], Awaitable[None]]


class RaceCoordinator:
    """Drives each room's race through ready -> playing -> finished.

    Every operation on a room runs under that room's lock, including the
    awaited store and persistence calls. Operations return the messages they
    produced; only the countdown timer and the idle sweeper push messages
    through ``publisher`` themselves.
    """

    def __init__(
        self,
        store: SessionStore | None = None,
        finalizer: ResultFinalizer | None = None,
        publisher: Optional[Publisher] = None,
        countdown: float | None = None,
        min_players: int | None = None,
        clock: Callable[[], float] = now_ts,
    ):
        self.store = store or default_store
        self.finalizer = finalizer or default_finalizer
        self.publisher = publisher
        self.countdown = settings.COUNTDOWN_SEC if countdown is None else countdown
        self.min_players = settings.MIN_PLAYERS if min_players is None else min_players
        self.clock = clock
        self.arm_tasks: Dict[str, asyncio.Task] = {}

    # -- lifecycle -----------------------------------------------------

    async def create(self, roster: RoomRoster) -> List[Outbound]:
        _, messages = await self._create(roster)
        return messages

    async def start(self, roster: RoomRoster) -> List[Outbound]:
        """Create the race and arm it once the countdown elapses."""
        session, messages = await self._create(roster)
        self._schedule_arm(session.room_id, session.race_id)
        return messages

    async def _create(self, roster: RoomRoster) -> Tuple[RaceSession, List[Outbound]]:
        player_ids = [p.player_id for p in roster.players]
        if len(player_ids) < self.min_players:
            raise InvalidRoster(f"Need at least {self.min_players} players to start, got {len(player_ids)}")
        if len(set(player_ids)) != len(player_ids):
            raise InvalidRoster("Roster contains the same player twice")
        if not roster.sentences:
            raise InvalidSentence("A race needs at least one sentence")
        if any(not s.text for s in roster.sentences):
            raise InvalidSentence()

        async with self.store.lock(roster.room_id):
            session = await self.store.create(roster.room_id, roster.sentences, roster.players)

        logger.info(
            "Created race %s in room %s with %d players and %d sentences",
            session.race_id, session.room_id, len(player_ids), session.total,
        )
        return session, [
            RaceReady(room_id=session.room_id, countdown=self.countdown, game_state=session.snapshot())
        ]

    def _schedule_arm(self, room_id: str, race_id: str) -> None:
        task = asyncio.create_task(self._arm_later(room_id, race_id))
        self.arm_tasks[room_id] = task
        task.add_done_callback(lambda t: self._forget_arm(room_id, t))

    def _forget_arm(self, room_id: str, task: asyncio.Task) -> None:
        if self.arm_tasks.get(room_id) is task:
            del self.arm_tasks[room_id]

    async def _arm_later(self, room_id: str, race_id: str) -> None:
        await asyncio.sleep(self.countdown)
        try:
            await self._publish(await self.arm(room_id, race_id))
        except Exception:
            logger.exception("Failed to arm race in room %s", room_id)

    async def arm(self, room_id: str, race_id: str | None = None) -> List[Outbound]:
        """Move a ready race to playing and send everyone the first sentence."""
        async with self.store.lock(room_id):
            session = self.store.get(room_id)
            if session is None or session.status != "ready":
                return []
            if race_id is not None and session.race_id != race_id:
                return []

            session.status = "playing"
            session.started_at = self.clock()
            await self.store.replace(room_id, session)

        logger.info("Race %s in room %s is on", session.race_id, room_id)
        return [SentenceDispatched(room_id=room_id, sentence=session.sentences[0], index=0, total=session.total)]

    async def cancel(self, room_id: str, reason: str = "abandoned") -> List[Outbound]:
        """Tear the race down without a result. Missing races are a no-op."""
        async with self.store.lock(room_id):
            return await self._teardown(room_id, reason)

    async def expire_idle(self, ttl: float | None = None) -> List[Outbound]:
        ttl = settings.SESSION_TTL_SEC if ttl is None else ttl
        messages: List[Outbound] = []
        for room_id in self.store.idle_rooms(self.clock(), ttl):
            async with self.store.lock(room_id):
                # It may have seen activity while we waited for the lock.
                if room_id not in self.store.idle_rooms(self.clock(), ttl):
                    continue
                messages.extend(await self._teardown(room_id, "expired"))
        self.store.prune_locks()
        return messages

    async def _teardown(self, room_id: str, reason: str) -> List[Outbound]:
        session = await self.store.remove(room_id)
        task = self.arm_tasks.pop(room_id, None)
        if task is not None and task is not asyncio.current_task():
            task.cancel()
        if session is None:
            return []
        logger.info("Race %s in room %s cancelled (%s)", session.race_id, room_id, reason)
        return [RaceCancelled(room_id=room_id, reason=reason)]

    async def run_sweeper(self, interval: float | None = None) -> None:
        interval = settings.SWEEP_INTERVAL_SEC if interval is None else interval
        while True:
            await asyncio.sleep(interval)
            try:
                await self._publish(await self.expire_idle())
            except Exception:
                logger.exception("Idle race sweep failed")

    async def recover(self) -> int:
        """Reload cached races after a restart and re-arm the ones still counting down."""
        restored = await self.store.restore()
        for session in list(self.store.sessions.values()):
            if session.status == "ready" and session.room_id not in self.arm_tasks:
                self._schedule_arm(session.room_id, session.race_id)
        return restored

    async def shutdown(self) -> None:
        tasks = list(self.arm_tasks.values())
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

    # -- player events -------------------------------------------------

    async def progress(
        self,
        room_id: str,
        player_id: str,
        sentence_index: int,
        input_text: str,
        keystroke: str | None = None,
    ) -> List[Outbound]:
        async with self.store.lock(room_id):
            try:
                session, player = self._current(room_id, player_id, sentence_index)
            except StaleEvent as exc:
                logger.debug("Ignoring typing progress: %s", exc)
                return []

            target = session.sentences[sentence_index].text
            now = self.clock()
            if keystroke is not None:
                player.keystrokes.append(
                    Keystroke(
                        character=keystroke,
                        is_correct=metrics.keystroke_is_correct(keystroke, input_text, target),
                        timestamp=now,
                    )
                )

            player.input_length = len(input_text)
            player.total_characters = len(input_text)
            player.correct_characters = metrics.count_correct_characters(input_text, target)
            player.progress = metrics.progress(len(input_text), len(target))
            player.wpm = metrics.wpm(player.correct_characters, (now - session.started_at) * 1000)
            player.accuracy = metrics.accuracy(player.correct_characters, player.total_characters)

            # An exact match counts as completion in case the explicit signal is lost.
            if input_text == target:
                advanced = await self._advance(session, player)
            else:
                advanced = []
                await self.store.replace(room_id, session)

            return [self._progress_broadcast(session), *advanced]

    async def complete_sentence(self, room_id: str, player_id: str, sentence_index: int) -> List[Outbound]:
        async with self.store.lock(room_id):
            try:
                session, player = self._current(room_id, player_id, sentence_index)
            except StaleEvent as exc:
                logger.debug("Ignoring sentence completion: %s", exc)
                return []
            return await self._advance(session, player)

    def _current(self, room_id: str, player_id: str, sentence_index: int) -> Tuple[RaceSession, PlayerProgress]:
        session = self.store.get(room_id)
        if session is None:
            raise StaleEvent(f"no race in room {room_id}")
        if session.status != "playing":
            raise StaleEvent(f"race in room {room_id} is {session.status}")
        player = session.players.get(player_id)
        if player is None:
            raise StaleEvent(f"player {player_id} is not in the race in room {room_id}")
        if player.is_finished or sentence_index != player.current_sentence_index:
            raise StaleEvent(
                f"sentence {sentence_index} is not current for player {player_id} "
                f"(at {player.current_sentence_index})"
            )
        return session, player

    async def _advance(self, session: RaceSession, player: PlayerProgress) -> List[Outbound]:
        player.completed_sentences += 1
        player.current_sentence_index += 1
        player.input_length = 0
        player.correct_characters = 0
        player.total_characters = 0

        messages: List[Outbound] = []
        index = player.current_sentence_index
        if index == session.total:
            first_to_finish = session.finished_count() == 0
            player.is_finished = True
            player.finish_time = self.clock()
            logger.info("Player %s finished the race in room %s", player.player_id, session.room_id)
            messages.append(
                PlayerCompleted(
                    room_id=session.room_id,
                    user_id=player.player_id,
                    nickname=player.nickname,
                    rank=session.finished_count(),
                )
            )
            messages.append(
                PlayerFinishedNotice(
                    room_id=session.room_id,
                    player_id=player.player_id,
                    message=f"{player.nickname} finished the race!",
                    is_winner=first_to_finish,
                )
            )
        else:
            messages.append(
                SentenceDispatched(
                    room_id=session.room_id,
                    player_id=player.player_id,
                    sentence=session.sentences[index],
                    index=index,
                    total=session.total,
                )
            )

        if session.all_finished():
            messages.append(await self._finish(session))
        else:
            await self.store.replace(session.room_id, session)
        return messages

    async def _finish(self, session: RaceSession) -> RaceFinished:
        session.status = "finished"
        session.finished_at = self.clock()
        try:
            record_id = await self.finalizer.finalize(session)
        except Exception:
            logger.exception("Finalizing race %s in room %s failed", session.race_id, session.room_id)
            record_id = None
        await self.store.remove(session.room_id)

        logger.info("Race %s in room %s finished", session.race_id, session.room_id)
        ranked = sorted(session.players.values(), key=lambda p: p.rank or 0)
        return RaceFinished(
            room_id=session.room_id,
            results=[p.model_dump(exclude={"keystrokes"}) for p in ranked],
            game_record=record_id,
        )

    # -- helpers -------------------------------------------------------

    def _progress_broadcast(self, session: RaceSession) -> ProgressBroadcast:
        return ProgressBroadcast(
            room_id=session.room_id,
            players=[p.progress_view() for p in session.players.values()],
        )

    def snapshot(self, room_id: str) -> dict | None:
        session = self.store.get(room_id)
        return session.snapshot() if session else None

    async def _publish(self, messages: List[Outbound]) -> None:
        if messages and self.publisher is not None:
            await self.publisher(messages)


coordinator = RaceCoordinator()
