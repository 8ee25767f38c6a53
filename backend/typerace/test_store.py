from __future__ import annotations

import asyncio
from unittest import IsolatedAsyncioTestCase

from backend.typerace.errors import SessionAlreadyExists, SessionNotFound
from backend.typerace.models import RaceSession, RosterPlayer, Sentence
from backend.typerace.store import SessionStore


class _FakeCache:
    def __init__(self, *, fail: bool = False):
        self.fail = fail
        self.entries: dict[str, str] = {}
        self.deleted: list[str] = []

    async def set(self, room_id: str, payload: str) -> None:
        if self.fail:
            raise ConnectionError("redis is down")
        self.entries[room_id] = payload

    async def delete(self, room_id: str) -> None:
        if self.fail:
            raise ConnectionError("redis is down")
        self.deleted.append(room_id)
        self.entries.pop(room_id, None)

    async def load_all(self):
        if self.fail:
            raise ConnectionError("redis is down")
        return list(self.entries.items())


class _HungCache(_FakeCache):
    async def set(self, room_id: str, payload: str) -> None:
        await asyncio.Event().wait()


class _Clock:
    def __init__(self, now: float = 1_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


SENTENCES = [Sentence(text="hello world"), Sentence(text="quick brown fox")]
PLAYERS = [RosterPlayer(player_id="p1", nickname="Ann"), RosterPlayer(player_id="p2", nickname="Bo")]


class SessionStoreTests(IsolatedAsyncioTestCase):
    def setUp(self) -> None:
        self.cache = _FakeCache()
        self.clock = _Clock()
        self.store = SessionStore(self.cache, clock=self.clock)

    async def test_create_builds_zeroed_session_and_mirrors_it(self):
        session = await self.store.create("room-1", SENTENCES, PLAYERS)

        self.assertEqual(session.status, "ready")
        self.assertEqual([s.index for s in session.sentences], [0, 1])
        self.assertEqual(list(session.players), ["p1", "p2"])
        for player in session.players.values():
            self.assertEqual(player.current_sentence_index, 0)
            self.assertEqual(player.accuracy, 100)
        self.assertIs(self.store.get("room-1"), session)
        self.assertIn("room-1", self.cache.entries)

    async def test_only_one_session_per_room(self):
        await self.store.create("room-1", SENTENCES, PLAYERS)
        with self.assertRaises(SessionAlreadyExists):
            await self.store.create("room-1", SENTENCES, PLAYERS)

    async def test_missing_session(self):
        self.assertIsNone(self.store.get("nope"))
        with self.assertRaises(SessionNotFound):
            self.store.require("nope")
        with self.assertRaises(SessionNotFound):
            await self.store.replace("nope", RaceSession(room_id="nope", sentences=SENTENCES))

    async def test_replace_is_visible_to_readers(self):
        session = await self.store.create("room-1", SENTENCES, PLAYERS)
        session.status = "playing"
        await self.store.replace("room-1", session)

        self.assertEqual(self.store.require("room-1").status, "playing")
        cached = RaceSession.model_validate_json(self.cache.entries["room-1"])
        self.assertEqual(cached.status, "playing")

    async def test_remove_evicts_memory_and_cache(self):
        await self.store.create("room-1", SENTENCES, PLAYERS)
        removed = await self.store.remove("room-1")

        self.assertIsNotNone(removed)
        self.assertIsNone(self.store.get("room-1"))
        self.assertEqual(self.cache.deleted, ["room-1"])
        self.assertIsNone(await self.store.remove("room-1"))

    async def test_cache_failures_are_not_fatal(self):
        store = SessionStore(_FakeCache(fail=True), clock=self.clock)

        with self.assertLogs("backend.typerace.store", level="WARNING"):
            session = await store.create("room-1", SENTENCES, PLAYERS)
        await store.replace("room-1", session)
        await store.remove("room-1")

        self.assertIsNone(store.get("room-1"))
        self.assertEqual(await store.restore(), 0)

    async def test_idle_rooms_follow_last_write(self):
        await self.store.create("old", SENTENCES, PLAYERS)
        self.clock.now += 50
        fresh = await self.store.create("fresh", SENTENCES, PLAYERS)
        self.clock.now += 20

        self.assertEqual(self.store.idle_rooms(self.clock.now, 60), ["old"])

        await self.store.replace("fresh", fresh)
        self.clock.now += 45
        self.assertEqual(self.store.idle_rooms(self.clock.now, 60), ["old"])

    async def test_restore_reloads_cached_sessions(self):
        await self.store.create("room-1", SENTENCES, PLAYERS)
        self.cache.entries["broken"] = "{not json"

        restarted = SessionStore(self.cache, clock=self.clock)
        restored = await restarted.restore()

        self.assertEqual(restored, 1)
        self.assertEqual(restarted.require("room-1").players["p2"].nickname, "Bo")
        self.assertIsNone(restarted.get("broken"))

    async def test_prune_locks_keeps_live_rooms(self):
        await self.store.create("room-1", SENTENCES, PLAYERS)
        self.store.lock("room-1")
        self.store.lock("gone")

        self.store.prune_locks()

        self.assertIn("room-1", self.store.locks)
        self.assertNotIn("gone", self.store.locks)

    async def test_hung_cache_write_times_out_without_losing_the_write(self):
        store = SessionStore(_HungCache(), clock=self.clock, cache_timeout=0.05)

        with self.assertLogs("backend.typerace.store", level="WARNING"):
            session = await asyncio.wait_for(store.create("room-1", SENTENCES, PLAYERS), 1.0)
        session.players["p1"].input_length = 4
        with self.assertLogs("backend.typerace.store", level="WARNING"):
            await asyncio.wait_for(store.replace("room-1", session), 1.0)

        self.assertEqual(store.require("room-1").players["p1"].input_length, 4)
