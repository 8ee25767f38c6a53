from __future__ import annotations

import asyncio
import copy
from functools import lru_cache
from typing import Any, Dict, List, Optional

from pydantic_settings import BaseSettings, SettingsConfigDict
from pymongo import AsyncMongoClient


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    ADMIN_KEY: str = "change-me"
    CORS_ORIGINS: str = "http://localhost:5173,http://localhost:8080"
    CORS_ORIGIN_REGEX: Optional[str] = None
    MONGO_URL: Optional[str] = None
    MONGO_DB: str = "typerace"
    REDIS_URL: Optional[str] = None
    # Cache calls slower than this are abandoned; the race carries on in memory.
    CACHE_TIMEOUT_SEC: float = 0.5
    # Upper bound on how long an idle race lives in memory and in the cache.
    SESSION_TTL_SEC: int = 3600
    COUNTDOWN_SEC: float = 3.0
    SWEEP_INTERVAL_SEC: float = 60.0
    MIN_PLAYERS: int = 2
    LOG_LEVEL: str = "INFO"


@lru_cache
def get_settings() -> Settings:
    return Settings()


settings = get_settings()


class InMemoryCollection:
    """Subset of the pymongo async collection API backed by a list."""

    def __init__(self):
        self._docs: List[Dict[str, Any]] = []
        self._lock = asyncio.Lock()

    async def find_one(self, query: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        async with self._lock:
            for doc in self._docs:
                if self._matches(doc, query):
                    return copy.deepcopy(doc)
        return None

    async def update_one(self, query: Dict[str, Any], update: Dict[str, Any]):
        async with self._lock:
            for idx, doc in enumerate(self._docs):
                if self._matches(doc, query):
                    self._docs[idx] = self._apply_update(copy.deepcopy(doc), update)
                    return

    async def insert_one(self, document: Dict[str, Any]):
        async with self._lock:
            self._docs.append(copy.deepcopy(document))

    async def count_documents(self, query: Dict[str, Any]) -> int:
        async with self._lock:
            return sum(1 for doc in self._docs if self._matches(doc, query))

    def _apply_update(self, doc: Dict[str, Any], update: Dict[str, Any]) -> Dict[str, Any]:
        for op, payload in update.items():
            if op == "$set":
                for key, value in payload.items():
                    doc[key] = copy.deepcopy(value)
            elif op == "$inc":
                for key, value in payload.items():
                    doc[key] = doc.get(key, 0) + value
            else:  # pragma: no cover - only the above operators are used today
                raise ValueError(f"Unsupported update operator: {op}")
        return doc

    def _matches(self, doc: Dict[str, Any], query: Dict[str, Any]) -> bool:
        return all(doc.get(key) == expected for key, expected in (query or {}).items())


class InMemoryDatabase:
    def __init__(self):
        self.rooms = InMemoryCollection()
        self.users = InMemoryCollection()
        self.race_records = InMemoryCollection()


def connect_database(s: Settings) -> Any:
    if s.MONGO_URL:
        return AsyncMongoClient(s.MONGO_URL)[s.MONGO_DB]
    return InMemoryDatabase()


db: Any = connect_database(settings)
