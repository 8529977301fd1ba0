from __future__ import annotations

import asyncio
import copy
import logging
from functools import lru_cache
from typing import Any, Dict, List, Optional, Protocol, Tuple

from pydantic_settings import BaseSettings, SettingsConfigDict
from pymongo import MongoClient, ReturnDocument
from pymongo.errors import PyMongoError

from .errors import PersistenceUnavailable

logger = logging.getLogger(__name__)


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    ADMIN_KEY: str = "change-me"
    CORS_ORIGINS: str = "http://localhost:5173,http://localhost:8080"
    CORS_ORIGIN_REGEX: Optional[str] = None
    SESSION_ID: str = "main"

    LOCK_TIMEOUT_SEC: float = 20.0  # 0 disables the automatic lock
    DEFAULT_POINTS: int = 10
    SPEED_DECAY: bool = True
    MIN_POINTS_RATIO: float = 0.5
    # comma separated points added by correct-answer rank, e.g. "5,4,3,2,1" or a
    # full rank-order table such as "30,25,20,19,18,17,16,15,14,13,12,11,10,9,8,7,6,5,4,3,2,1"
    RANK_BONUS: str = ""

    SUBSCRIBER_BUFFER: int = 100
    LEADERBOARD_TOP_N: int = 20
    POLL_TIMEOUT_SEC: float = 25.0

    MONGO_URL: Optional[str] = None
    MONGO_DATABASE: str = "quizlive"

    AZURE_STORAGE_CONNECTION_STRING: Optional[str] = None
    AZURE_STORAGE_CONTAINER: str = "question-images"

    LOG_LEVEL: str = "INFO"

    @property
    def rank_bonus(self) -> Tuple[int, ...]:
        return tuple(int(part) for part in self.RANK_BONUS.split(",") if part.strip())


@lru_cache
def get_settings() -> Settings:
    return Settings()


settings = get_settings()


class DocumentStore(Protocol):
    """What the quiz needs from a document database, and nothing more."""

    async def put(self, collection: str, document_id: str, fields: Dict[str, Any]) -> None: ...

    async def get(self, collection: str, document_id: str) -> Optional[Dict[str, Any]]: ...

    async def list(self, collection: str) -> List[Dict[str, Any]]: ...


class InMemoryDocumentStore:
    def __init__(self):
        self._collections: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self._lock = asyncio.Lock()

    async def put(self, collection: str, document_id: str, fields: Dict[str, Any]) -> None:
        async with self._lock:
            docs = self._collections.setdefault(collection, {})
            docs[document_id] = {**copy.deepcopy(fields), "_id": document_id}

    async def get(self, collection: str, document_id: str) -> Optional[Dict[str, Any]]:
        async with self._lock:
            doc = self._collections.get(collection, {}).get(document_id)
            return copy.deepcopy(doc) if doc is not None else None

    async def list(self, collection: str) -> List[Dict[str, Any]]:
        # dicts keep insertion order, which is first-put order here
        async with self._lock:
            return [copy.deepcopy(doc) for doc in self._collections.get(collection, {}).values()]


class MongoDocumentStore:
    """``pymongo`` backed store; blocking calls run in a worker thread."""

    def __init__(self, url: str, database: str, client: Optional[MongoClient] = None):
        self._client = client or MongoClient(url, serverSelectionTimeoutMS=3000)
        self._db = self._client[database]

    async def put(self, collection: str, document_id: str, fields: Dict[str, Any]) -> None:
        doc = {**fields, "_id": document_id}
        try:
            await asyncio.to_thread(
                self._db[collection].find_one_and_replace,
                {"_id": document_id},
                doc,
                upsert=True,
                return_document=ReturnDocument.AFTER,
            )
        except PyMongoError as exc:
            raise PersistenceUnavailable(f"Could not write {collection}/{document_id}: {exc}") from exc

    async def get(self, collection: str, document_id: str) -> Optional[Dict[str, Any]]:
        try:
            return await asyncio.to_thread(self._db[collection].find_one, {"_id": document_id})
        except PyMongoError as exc:
            raise PersistenceUnavailable(f"Could not read {collection}/{document_id}: {exc}") from exc

    async def list(self, collection: str) -> List[Dict[str, Any]]:
        try:
            return await asyncio.to_thread(lambda: list(self._db[collection].find({})))
        except PyMongoError as exc:
            raise PersistenceUnavailable(f"Could not list {collection}: {exc}") from exc


def create_document_store(config: Settings) -> DocumentStore:
    if config.MONGO_URL:
        logger.info("Persisting to MongoDB database %s", config.MONGO_DATABASE)
        return MongoDocumentStore(config.MONGO_URL, config.MONGO_DATABASE)
    logger.info("MONGO_URL not set; questions and results are kept in memory only")
    return InMemoryDocumentStore()
