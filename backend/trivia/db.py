from __future__ import annotations

import asyncio
import copy
from functools import lru_cache
from typing import Any, Dict, Iterator, List, Optional, Sequence, Tuple

from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    ADMIN_KEY: str = "change-me"
    CORS_ORIGINS: str = "http://localhost:3000,http://localhost:5173"
    CORS_ORIGIN_REGEX: Optional[str] = None

    MONGO_URL: Optional[str] = None
    MONGO_DB: str = "trivia"
    API_BASE_URL: str = "http://localhost:8000"
    QUESTION_BANK_PATH: Optional[str] = None

    ROUND_DURATION_SECONDS: float = 15.0
    TIMING_TOLERANCE_MS: int = 500
    STREAK_BONUS_PER_LEVEL: float = 0.1
    MAX_STREAK_BONUS: float = 0.5

    DEFAULT_QUESTION_COUNT: int = 10
    MAX_QUESTION_COUNT: int = 50
    RECENT_QUESTION_WINDOW: int = 50

    SESSION_CREATE_ATTEMPTS: int = 3
    SESSION_CREATE_TIMEOUT_SECONDS: float = 30.0
    SESSION_BACKOFF_BASE_SECONDS: float = 2.0
    SESSION_BACKOFF_FACTOR: float = 1.5
    SESSION_BACKOFF_CAP_SECONDS: float = 5.0

    SUBMIT_TIMEOUT_SECONDS: float = 8.0
    SUBMIT_ATTEMPTS: int = 3
    SUBMIT_RETRY_DELAY_SECONDS: float = 1.0

    RESET_COOLDOWN_SECONDS: float = 3.0
    CLEANUP_TIMEOUT_SECONDS: float = 2.0
    REVEAL_DELAY_SECONDS: float = 2.0
    MIN_REVEAL_DELAY_SECONDS: float = 1.0
    COUNTDOWN_TICK_SECONDS: float = 0.1

    LOG_LEVEL: str = "INFO"
    LOG_FORMAT: str = "console"


@lru_cache
def get_settings() -> Settings:
    return Settings()


class InMemoryCursor:
    def __init__(self, collection: "InMemoryCollection", query: Dict[str, Any]):
        self._collection = collection
        self._query = query or {}
        self._sort_key: Optional[str] = None
        self._sort_direction: int = 1
        self._limit: Optional[int] = None
        self._materialised: Optional[Iterator[Dict[str, Any]]] = None

    def sort(self, key: str, direction: int):
        self._sort_key = key
        self._sort_direction = direction
        return self

    def limit(self, limit: int):
        self._limit = limit
        return self

    async def to_list(self, length: Optional[int] = None) -> List[Dict[str, Any]]:
        return [doc async for doc in self][:length]

    async def _ensure_materialised(self):
        if self._materialised is not None:
            return

        docs = await self._collection._find_all(self._query)

        if self._sort_key is not None:
            reverse = self._sort_direction < 0
            docs.sort(key=lambda d: d.get(self._sort_key), reverse=reverse)

        if self._limit:
            docs = docs[: self._limit]

        self._materialised = iter(docs)

    def __aiter__(self):
        return self

    async def __anext__(self):
        await self._ensure_materialised()
        assert self._materialised is not None
        try:
            return next(self._materialised)
        except StopIteration as exc:
            raise StopAsyncIteration from exc


class InMemoryCollection:
    """Async subset of the pymongo collection API backed by a list of dicts."""

    def __init__(self, name: str = ""):
        self.name = name
        self._docs: List[Dict[str, Any]] = []
        self._lock = asyncio.Lock()
        self._unique_keys: List[Tuple[str, ...]] = []

    async def create_index(self, keys: Sequence[Tuple[str, int]], unique: bool = False, **_: Any) -> str:
        fields = tuple(field for field, _direction in keys)
        if unique and fields not in self._unique_keys:
            self._unique_keys.append(fields)
        return "_".join(fields)

    async def _find_all(self, query: Dict[str, Any]) -> List[Dict[str, Any]]:
        async with self._lock:
            return [copy.deepcopy(doc) for doc in self._docs if self._matches(doc, query)]

    async def find_one(self, query: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        async with self._lock:
            for doc in self._docs:
                if self._matches(doc, query):
                    return copy.deepcopy(doc)
        return None

    def find(self, query: Optional[Dict[str, Any]] = None):
        return InMemoryCursor(self, query or {})

    async def update_one(self, query: Dict[str, Any], update: Dict[str, Any], upsert: bool = False):
        async with self._lock:
            for idx, doc in enumerate(self._docs):
                if self._matches(doc, query):
                    updated = self._apply_update(copy.deepcopy(doc), update)
                    self._docs[idx] = updated
                    return

            if upsert:
                new_doc = copy.deepcopy(query)
                new_doc = self._apply_update(new_doc, update, inserting=True)
                self._check_unique(new_doc)
                self._docs.append(new_doc)

    async def insert_one(self, document: Dict[str, Any]):
        async with self._lock:
            self._check_unique(document)
            self._docs.append(copy.deepcopy(document))

    async def find_one_and_update(
        self,
        query: Dict[str, Any],
        update: Dict[str, Any],
        *,
        upsert: bool = False,
        return_document: bool = ReturnDocument.BEFORE,
    ) -> Optional[Dict[str, Any]]:
        async with self._lock:
            for idx, doc in enumerate(self._docs):
                if self._matches(doc, query):
                    original = copy.deepcopy(doc)
                    updated = self._apply_update(copy.deepcopy(doc), update)
                    self._docs[idx] = updated
                    return copy.deepcopy(updated if return_document == ReturnDocument.AFTER else original)

            if upsert:
                new_doc = copy.deepcopy(query)
                new_doc = self._apply_update(new_doc, update, inserting=True)
                self._check_unique(new_doc)
                self._docs.append(new_doc)
                if return_document == ReturnDocument.AFTER:
                    return copy.deepcopy(new_doc)
                return None

        return None

    def _check_unique(self, document: Dict[str, Any]) -> None:
        for fields in self._unique_keys:
            key = tuple(document.get(f) for f in fields)
            if any(tuple(doc.get(f) for f in fields) == key for doc in self._docs):
                raise DuplicateKeyError(f"E11000 duplicate key error collection: {self.name} index: {fields}")

    def _apply_update(self, doc: Dict[str, Any], update: Dict[str, Any], inserting: bool = False) -> Dict[str, Any]:
        for op, payload in update.items():
            if op == "$set":
                for key, value in payload.items():
                    doc[key] = copy.deepcopy(value)
            elif op == "$setOnInsert":
                if inserting:
                    for key, value in payload.items():
                        doc[key] = copy.deepcopy(value)
            elif op == "$inc":
                for key, value in payload.items():
                    current = doc.get(key, 0)
                    doc[key] = current + value
            elif op == "$max":
                for key, value in payload.items():
                    current = doc.get(key)
                    if current is None or value > current:
                        doc[key] = value
            else:  # pragma: no cover - only the above operators are used today
                raise ValueError(f"Unsupported update operator: {op}")
        return doc

    def _matches(self, doc: Dict[str, Any], query: Dict[str, Any]) -> bool:
        for key, expected in (query or {}).items():
            actual = doc.get(key)
            if isinstance(expected, dict):
                for op, operand in expected.items():
                    if op == "$gt":
                        if actual is None or actual <= operand:
                            return False
                    elif op == "$in":
                        if actual not in operand:
                            return False
                    elif op == "$nin":
                        if actual in operand:
                            return False
                    else:  # pragma: no cover - extend as new operators are required
                        raise ValueError(f"Unsupported query operator: {op}")
            else:
                if actual != expected:
                    return False
        return True


class InMemoryDatabase:
    def __init__(self):
        self.sessions = InMemoryCollection("sessions")
        self.questions = InMemoryCollection("questions")
        self.users = InMemoryCollection("users")
        self.responses = InMemoryCollection("responses")
        self.streak_history = InMemoryCollection("streak_history")
        self.counters = InMemoryCollection("counters")


def get_database(config: Settings) -> Any:
    if not config.MONGO_URL:
        return InMemoryDatabase()

    from pymongo import AsyncMongoClient

    return AsyncMongoClient(config.MONGO_URL)[config.MONGO_DB]


async def ensure_indexes(database: Any) -> None:
    await database.responses.create_index(
        [("session_id", 1), ("question_id", 1), ("user_id", 1)], unique=True
    )
    await database.users.create_index([("identity", 1)], unique=True)
    await database.questions.create_index([("id", 1)], unique=True)
    await database.sessions.create_index([("id", 1)], unique=True)


async def next_sequence(database: Any, name: str) -> int:
    """Return the next integer id for ``name`` from the counters collection."""

    counter_doc = await database.counters.find_one_and_update(
        {"_id": name},
        {"$inc": {"seq": 1}},
        upsert=True,
        return_document=ReturnDocument.AFTER,
    )
    if not counter_doc:
        # Some Mongo-compatible providers complete the upsert but return None.
        counter_doc = await database.counters.find_one({"_id": name})
    return int((counter_doc or {}).get("seq", 1))
