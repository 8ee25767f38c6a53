from __future__ import annotations

from unittest import IsolatedAsyncioTestCase, TestCase, mock

from backend.typerace.db import InMemoryDatabase
from backend.typerace.finalizer import ResultFinalizer, rank_players
from backend.typerace.models import PlayerProgress, RaceSession, Sentence
from backend.typerace.rooms import RoomDirectory


def player(player_id: str, completed: int = 0, wpm: float = 0, accuracy: float = 100, **extra) -> PlayerProgress:
    return PlayerProgress(
        player_id=player_id,
        nickname=player_id.title(),
        completed_sentences=completed,
        current_sentence_index=completed,
        wpm=wpm,
        accuracy=accuracy,
        **extra,
    )


def finished_session(*players: PlayerProgress) -> RaceSession:
    return RaceSession(
        room_id="room-1",
        status="finished",
        sentences=[Sentence(text="hello", difficulty="easy", index=0)],
        started_at=100.0,
        finished_at=161.4,
        players={p.player_id: p for p in players},
    )


class RankPlayersTests(TestCase):
    def test_sentences_then_wpm_then_accuracy(self):
        a = player("a", completed=10, wpm=80, accuracy=97)
        b = player("b", completed=10, wpm=95, accuracy=90)
        c = player("c", completed=8, wpm=120, accuracy=99)

        self.assertEqual([p.player_id for p in rank_players([a, b, c])], ["b", "a", "c"])

    def test_accuracy_breaks_wpm_ties(self):
        a = player("a", completed=3, wpm=50, accuracy=90)
        b = player("b", completed=3, wpm=50, accuracy=95)

        self.assertEqual([p.player_id for p in rank_players([a, b])], ["b", "a"])

    def test_full_ties_keep_roster_order(self):
        players = [player(pid, completed=2, wpm=40, accuracy=99) for pid in ("x", "y", "z")]

        self.assertEqual([p.player_id for p in rank_players(players)], ["x", "y", "z"])


class ResultFinalizerTests(IsolatedAsyncioTestCase):
    def setUp(self) -> None:
        self.database = InMemoryDatabase()
        self.stats = mock.Mock()
        self.stats.update = mock.AsyncMock(return_value=False)
        self.finalizer = ResultFinalizer(self.database.race_records, self.stats, RoomDirectory(self.database.rooms))

    async def test_assigns_ranks_and_persists_one_record(self):
        session = finished_session(
            player("a", completed=1, wpm=80, accuracy=97, is_finished=True, finish_time=150.0, rank=2),
            player("b", completed=1, wpm=95, accuracy=90, is_finished=True, finish_time=160.0, rank=1),
        )

        record_id = await self.finalizer.finalize(session)

        self.assertIsNotNone(record_id)
        self.assertEqual(session.players["b"].rank, 1)
        self.assertTrue(session.players["b"].is_winner)
        self.assertEqual(session.players["a"].rank, 2)
        self.assertFalse(session.players["a"].is_winner)
        self.assertEqual(await self.database.race_records.count_documents({}), 1)

        record = await self.finalizer.load_record(record_id)
        self.assertEqual(record.room_id, "room-1")
        self.assertEqual(record.duration, 61)
        self.assertEqual(record.settings.difficulty, "easy")
        self.assertEqual(record.settings.sentence_count, 1)

    async def test_record_round_trips_ranks_and_winner(self):
        session = finished_session(
            player("a", completed=10, wpm=80, accuracy=97),
            player("b", completed=10, wpm=95, accuracy=90),
            player("c", completed=8, wpm=120, accuracy=99),
        )
        record_id = await self.finalizer.finalize(session)

        record = await self.finalizer.load_record(record_id)

        ranked = sorted(record.players, key=lambda p: p.rank)
        self.assertEqual([p.player_id for p in ranked], ["b", "a", "c"])
        self.assertEqual(record.winner, ranked[0].player_id)
        self.assertEqual([p.is_winner for p in ranked], [True, False, False])

    async def test_record_keeps_keystroke_logs(self):
        session = finished_session(
            player("a", completed=1, keystrokes=[{"character": "h", "is_correct": True, "timestamp": 101.0}]),
            player("b", completed=1),
        )

        record = await self.finalizer.load_record(await self.finalizer.finalize(session))

        by_id = {p.player_id: p for p in record.players}
        self.assertEqual([k.character for k in by_id["a"].keystrokes], ["h"])

    async def test_persistence_failure_returns_none_and_skips_stats(self):
        session = finished_session(player("a", completed=1), player("b"))

        with mock.patch.object(self.database.race_records, "insert_one", side_effect=RuntimeError("db down")):
            with self.assertLogs("backend.typerace.finalizer", level="ERROR"):
                record_id = await self.finalizer.finalize(session)

        self.assertIsNone(record_id)
        self.stats.update.assert_not_called()

    async def test_one_failed_stats_update_does_not_block_the_rest(self):
        self.stats.update.side_effect = [RuntimeError("users down"), False, True]
        session = finished_session(player("a", completed=3), player("b", completed=2), player("c", completed=1))

        with self.assertLogs("backend.typerace.finalizer", level="ERROR"):
            record_id = await self.finalizer.finalize(session)

        self.assertIsNotNone(record_id)
        self.assertEqual(self.stats.update.await_count, 3)
        self.assertEqual(await self.database.race_records.count_documents({}), 1)

    async def test_guests_get_no_stats(self):
        session = finished_session(player("a", completed=1), player("guest", is_guest=True))

        await self.finalizer.finalize(session)

        self.stats.update.assert_awaited_once_with("a", wpm=0, accuracy=100, is_winner=True)

    async def test_marks_room_finished(self):
        await self.database.rooms.insert_one({"id": "room-1", "host_id": "a", "game_status": "playing"})

        await self.finalizer.finalize(finished_session(player("a", completed=1), player("b")))

        room = await self.database.rooms.find_one({"id": "room-1"})
        self.assertEqual(room["game_status"], "finished")
