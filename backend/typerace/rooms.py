"""Read-side views over collections owned by the room and account services."""
from __future__ import annotations

from typing import Any

from .db import db
from .models import Identity, RoomRoster, RosterPlayer, Sentence


class RoomDirectory:
    def __init__(self, rooms: Any = None):
        self.rooms = rooms if rooms is not None else db.rooms

    async def get_roster(self, room_id: str) -> RoomRoster | None:
        doc = await self.rooms.find_one({"id": room_id})
        if not doc:
            return None
        return RoomRoster(
            room_id=doc["id"],
            host_id=doc["host_id"],
            players=[
                RosterPlayer(
                    player_id=p["user_id"],
                    nickname=p["nickname"],
                    is_guest=p.get("is_guest", False),
                )
                for p in doc.get("players", [])
            ],
            sentences=[Sentence(**s) for s in doc.get("sentences", [])],
            sentence_count=doc.get("sentence_count", len(doc.get("sentences", []))),
        )

    async def summary(self, room_id: str) -> dict | None:
        doc = await self.rooms.find_one({"id": room_id})
        if not doc:
            return None
        return {
            "id": doc["id"],
            "room_name": doc.get("room_name", ""),
            "host_id": doc["host_id"],
            "game_status": doc.get("game_status", "waiting"),
            "players": [{"user_id": p["user_id"], "nickname": p["nickname"]} for p in doc.get("players", [])],
            "sentence_count": doc.get("sentence_count", len(doc.get("sentences", []))),
        }

    async def set_game_status(self, room_id: str, status: str) -> None:
        await self.rooms.update_one({"id": room_id}, {"$set": {"game_status": status}})


class IdentityResolver:
    """Maps a connection credential to the user it was issued to."""

    def __init__(self, users: Any = None):
        self.users = users if users is not None else db.users

    async def resolve(self, token: str | None) -> Identity | None:
        if not token:
            return None
        user = await self.users.find_one({"token": token})
        if not user:
            return None
        return Identity(
            player_id=user["id"],
            nickname=user["nickname"],
            is_guest=user.get("is_guest", False),
        )


room_directory = RoomDirectory()
identity_resolver = IdentityResolver()
