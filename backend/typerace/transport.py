from __future__ import annotations

import logging
from collections import defaultdict
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set

from pydantic import ValidationError as PydanticValidationError

from .coordinator import RaceCoordinator, coordinator as default_coordinator
from .errors import AuthorizationError, RaceError, RoomNotFound, ValidationError
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
from .models import Identity
from .rooms import RoomDirectory, room_directory
from .schemas import (
    JoinRoomIn,
    SentenceCompletedIn,
    StartGameIn,
    TypingProgressIn,
    camelize,
)

logger = logging.getLogger(__name__)

Sender = Callable[[dict[str, Any]], Awaitable[None]]


class Connection:
    """One authenticated client socket."""

    def __init__(self, identity: Identity, send: Sender):
        self.identity = identity
        self._send = send
        self.room_id: Optional[str] = None

    @property
    def player_id(self) -> str:
        return self.identity.player_id

    async def send(self, event: str, payload: dict[str, Any]) -> None:
        await self._send({"event": event, "data": camelize(payload)})


class ConnectionManager:
    """Room broadcast groups and per-player private channels."""

    def __init__(self):
        self.groups: Dict[str, Set[Connection]] = defaultdict(set)
        self.players: Dict[str, Set[Connection]] = defaultdict(set)

    def register(self, conn: Connection) -> None:
        self.players[conn.player_id].add(conn)

    def unregister(self, conn: Connection) -> None:
        self.players[conn.player_id].discard(conn)
        if not self.players[conn.player_id]:
            del self.players[conn.player_id]

    def subscribe(self, conn: Connection, room_id: str) -> Optional[str]:
        """Move ``conn`` into ``room_id``; returns the room it left if that is now empty."""
        emptied = None
        if conn.room_id and conn.room_id != room_id:
            emptied = self.unsubscribe(conn)
        self.groups[room_id].add(conn)
        conn.room_id = room_id
        return emptied

    def unsubscribe(self, conn: Connection) -> Optional[str]:
        """Drop ``conn`` from its room; returns the room id if it is now empty."""
        room_id = conn.room_id
        if room_id is None:
            return None
        conn.room_id = None
        group = self.groups.get(room_id)
        if group is None:
            return None
        group.discard(conn)
        if group:
            return None
        del self.groups[room_id]
        return room_id

    def room_size(self, room_id: str) -> int:
        return len(self.groups.get(room_id, ()))

    async def broadcast(self, room_id: str, event: str, payload: dict[str, Any]) -> None:
        for conn in list(self.groups.get(room_id, ())):
            await self._safe_send(conn, event, payload)

    async def send_to_player(self, room_id: str, player_id: str, event: str, payload: dict[str, Any]) -> None:
        for conn in list(self.players.get(player_id, ())):
            if conn.room_id == room_id:
                await self._safe_send(conn, event, payload)

    async def _safe_send(self, conn: Connection, event: str, payload: dict[str, Any]) -> None:
        try:
            await conn.send(event, payload)
        except Exception:
            # A dead socket must not stop delivery to the rest of the room.
            logger.warning("Dropping %s for player %s", event, conn.player_id, exc_info=True)


def wire_event(message: Outbound) -> str:
    if isinstance(message, RaceReady):
        return "game-started"
    if isinstance(message, SentenceDispatched):
        return "next-sentence" if message.player_id else "sentence-ready"
    if isinstance(message, ProgressBroadcast):
        return "players-progress"
    if isinstance(message, PlayerCompleted):
        return "player-completed"
    if isinstance(message, PlayerFinishedNotice):
        return "player-finished"
    if isinstance(message, RaceFinished):
        return "game-finished"
    if isinstance(message, RaceCancelled):
        return "game-cancelled"
    raise TypeError(f"No wire event for {type(message).__name__}")


class RaceGateway:
    """Maps inbound socket events to coordinator calls and fans the results out."""

    def __init__(
        self,
        coordinator: RaceCoordinator | None = None,
        connections: ConnectionManager | None = None,
        rooms: RoomDirectory | None = None,
    ):
        self.coordinator = coordinator or default_coordinator
        self.connections = connections or ConnectionManager()
        self.rooms = rooms or room_directory
        self.coordinator.publisher = self.deliver
        self.handlers = {
            "join-room": self.on_join_room,
            "start-game": self.on_start_game,
            "typing-progress": self.on_typing_progress,
            "sentence-completed": self.on_sentence_completed,
            "leave-room": self.on_leave_room,
        }

    def connect(self, conn: Connection) -> None:
        self.connections.register(conn)
        logger.info("Player %s connected", conn.player_id)

    async def disconnect(self, conn: Connection) -> None:
        await self._leave(conn)
        self.connections.unregister(conn)
        logger.info("Player %s disconnected", conn.player_id)

    async def handle(self, conn: Connection, event: str, data: dict[str, Any]) -> None:
        """Entry point for every inbound frame. Never raises."""
        handler = self.handlers.get(event)
        try:
            if handler is None:
                raise ValidationError(f"Unknown event: {event}")
            await handler(conn, data)
        except RaceError as exc:
            await self._error(conn, str(exc))
        except Exception:
            logger.exception("Handler for %s failed for player %s", event, conn.player_id)
            await self._error(conn, "Something went wrong")

    async def deliver(self, messages: List[Outbound]) -> None:
        for message in messages:
            event = wire_event(message)
            if message.player_id:
                await self.connections.send_to_player(message.room_id, message.player_id, event, message.payload())
            else:
                await self.connections.broadcast(message.room_id, event, message.payload())

    # -- handlers ------------------------------------------------------

    async def on_join_room(self, conn: Connection, data: dict[str, Any]) -> None:
        payload = self._parse(JoinRoomIn, data)
        roster = await self.rooms.get_roster(payload.room_id)
        if roster is None:
            raise RoomNotFound(payload.room_id)
        if not roster.has_player(conn.player_id):
            raise AuthorizationError("You are not a participant of this room")

        emptied = self.connections.subscribe(conn, payload.room_id)
        if emptied is not None:
            await self._abandon(emptied)
        snapshot = self.coordinator.snapshot(payload.room_id)
        if snapshot is not None:
            await conn.send("game-state", snapshot)
        else:
            await conn.send("room-joined", await self.rooms.summary(payload.room_id) or {})

    async def on_start_game(self, conn: Connection, data: dict[str, Any]) -> None:
        payload = self._parse(StartGameIn, data)
        roster = await self.rooms.get_roster(payload.room_id)
        if roster is None:
            raise RoomNotFound(payload.room_id)
        if roster.host_id != conn.player_id:
            raise AuthorizationError("Only the host can start the game")

        await self.deliver(await self.coordinator.start(roster))

    async def on_typing_progress(self, conn: Connection, data: dict[str, Any]) -> None:
        payload = self._parse(TypingProgressIn, data)
        await self.deliver(
            await self.coordinator.progress(
                payload.room_id,
                conn.player_id,
                payload.sentence_index,
                payload.input_text,
                payload.keystroke.character if payload.keystroke else None,
            )
        )

    async def on_sentence_completed(self, conn: Connection, data: dict[str, Any]) -> None:
        payload = self._parse(SentenceCompletedIn, data)
        await self.deliver(
            await self.coordinator.complete_sentence(payload.room_id, conn.player_id, payload.sentence_index)
        )

    async def on_leave_room(self, conn: Connection, data: dict[str, Any]) -> None:
        await self._leave(conn)

    # -- helpers -------------------------------------------------------

    async def _leave(self, conn: Connection) -> None:
        emptied = self.connections.unsubscribe(conn)
        if emptied is not None:
            await self._abandon(emptied)

    async def _abandon(self, room_id: str) -> None:
        # Nobody is left to race; tear it down without a result.
        await self.deliver(await self.coordinator.cancel(room_id, reason="abandoned"))

    def _parse(self, model, data: dict[str, Any]):
        try:
            return model.model_validate(data or {})
        except PydanticValidationError as exc:
            raise ValidationError(f"Invalid payload: {exc.errors()[0]['msg']}") from exc

    async def _error(self, conn: Connection, message: str) -> None:
        try:
            await conn.send("error", {"message": message})
        except Exception:
            logger.warning("Could not report error to player %s", conn.player_id, exc_info=True)


gateway = RaceGateway()
