import asyncio
import json
import logging
import os
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from motor.motor_asyncio import AsyncIOMotorClient

from .config import ROOT_DIR

logger = logging.getLogger(__name__)

COLLECTIONS = ("users", "habits", "reminders", "notifications")


class _InMemoryResult:
    def __init__(self, *, matched_count: int = 0, deleted_count: int = 0):
        self.matched_count = matched_count
        self.deleted_count = deleted_count


def _apply_projection(doc: Dict[str, Any], projection: Optional[Dict[str, int]]) -> Dict[str, Any]:
    if not projection:
        return dict(doc)
    # Only exclusion projections like {"_id": 0, "password": 0} are used
    excluded_keys = {k for k, v in projection.items() if v == 0}
    return {k: v for k, v in doc.items() if k not in excluded_keys}


def _match_filter(doc: Dict[str, Any], query: Dict[str, Any]) -> bool:
    # Equality on top-level fields is all the stores ask for
    return all(doc.get(key) == expected for key, expected in query.items())


def _sort_key(value: Any) -> Tuple[int, Any]:
    # Documents missing the field sort first, like mongo does for null
    return (0, "") if value is None else (1, value)


class _InMemoryCursor:
    def __init__(self, docs: List[Dict[str, Any]], projection: Optional[Dict[str, int]]):
        self._docs = docs
        self._projection = projection
        self._sort: List[Tuple[str, int]] = []

    def sort(self, field, direction: int = 1):
        if isinstance(field, list):
            self._sort = list(field)
        else:
            self._sort = [(field, direction)]
        return self

    async def to_list(self, length: Optional[int]) -> List[Dict[str, Any]]:
        docs = list(self._docs)
        for field, direction in reversed(self._sort):
            docs.sort(key=lambda d: _sort_key(_dotted(d, field)), reverse=direction == -1)

        limited = docs if length is None else docs[:length]
        return [_apply_projection(d, self._projection) for d in limited]


def _dotted(doc: Dict[str, Any], field: str) -> Any:
    value: Any = doc
    for part in field.split("."):
        if not isinstance(value, dict):
            return None
        value = value.get(part)
    return value


class _InMemoryCollection:
    def __init__(self):
        self._docs: List[Dict[str, Any]] = []

    async def find_one(self, query: Dict[str, Any], projection: Optional[Dict[str, int]] = None):
        for doc in self._docs:
            if _match_filter(doc, query):
                return _apply_projection(doc, projection)
        return None

    async def insert_one(self, doc: Dict[str, Any]):
        self._docs.append(dict(doc))
        return _InMemoryResult(matched_count=1)

    def find(self, query: Dict[str, Any], projection: Optional[Dict[str, int]] = None) -> _InMemoryCursor:
        matched = [dict(d) for d in self._docs if _match_filter(d, query)]
        return _InMemoryCursor(matched, projection)

    async def update_one(self, query: Dict[str, Any], update: Dict[str, Any]):
        update_set = update.get("$set")
        if not isinstance(update_set, dict):
            return _InMemoryResult(matched_count=0)

        for doc in self._docs:
            if _match_filter(doc, query):
                doc.update(update_set)
                return _InMemoryResult(matched_count=1)
        return _InMemoryResult(matched_count=0)

    async def delete_one(self, query: Dict[str, Any]):
        for i, doc in enumerate(self._docs):
            if _match_filter(doc, query):
                del self._docs[i]
                return _InMemoryResult(deleted_count=1)
        return _InMemoryResult(deleted_count=0)


class InMemoryDB:
    def __init__(self):
        for name in COLLECTIONS:
            setattr(self, name, _InMemoryCollection())


class FileBackedDB:
    def __init__(self, path: Path):
        self._path = Path(path)
        self._path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = asyncio.Lock()
        self._data: Dict[str, List[Dict[str, Any]]] = {name: [] for name in COLLECTIONS}
        self._load_from_disk()
        for name in COLLECTIONS:
            setattr(self, name, _FileBackedCollection(self, name))

    def _load_from_disk(self) -> None:
        if not self._path.exists():
            return
        try:
            raw = self._path.read_text(encoding="utf-8")
            loaded = json.loads(raw) if raw.strip() else {}
            if isinstance(loaded, dict):
                for key in COLLECTIONS:
                    value = loaded.get(key)
                    if isinstance(value, list):
                        self._data[key] = value
        except (OSError, ValueError) as e:
            logger.warning("Failed to load file-backed DB (%s). Starting empty.", str(e))

    async def _save_to_disk(self) -> None:
        tmp_path = self._path.with_suffix(self._path.suffix + ".tmp")
        payload = json.dumps(self._data, ensure_ascii=False, separators=(",", ":"))
        tmp_path.write_text(payload, encoding="utf-8")
        os.replace(tmp_path, self._path)


class _FileBackedCollection:
    def __init__(self, db: FileBackedDB, key: str):
        self._db = db
        self._key = key

    def _docs(self) -> List[Dict[str, Any]]:
        return self._db._data[self._key]

    async def find_one(self, query: Dict[str, Any], projection: Optional[Dict[str, int]] = None):
        async with self._db._lock:
            for doc in self._docs():
                if _match_filter(doc, query):
                    return _apply_projection(doc, projection)
        return None

    async def insert_one(self, doc: Dict[str, Any]):
        async with self._db._lock:
            self._docs().append(dict(doc))
            await self._db._save_to_disk()
        return _InMemoryResult(matched_count=1)

    def find(self, query: Dict[str, Any], projection: Optional[Dict[str, int]] = None) -> _InMemoryCursor:
        # Cursor is consumed later; keep it independent of future mutations.
        matched = [dict(d) for d in self._docs() if _match_filter(d, query)]
        return _InMemoryCursor(matched, projection)

    async def update_one(self, query: Dict[str, Any], update: Dict[str, Any]):
        update_set = update.get("$set")
        if not isinstance(update_set, dict):
            return _InMemoryResult(matched_count=0)

        async with self._db._lock:
            for doc in self._docs():
                if _match_filter(doc, query):
                    doc.update(update_set)
                    await self._db._save_to_disk()
                    return _InMemoryResult(matched_count=1)
        return _InMemoryResult(matched_count=0)

    async def delete_one(self, query: Dict[str, Any]):
        async with self._db._lock:
            for i, doc in enumerate(self._docs()):
                if _match_filter(doc, query):
                    del self._docs()[i]
                    await self._db._save_to_disk()
                    return _InMemoryResult(deleted_count=1)
        return _InMemoryResult(deleted_count=0)


async def connect() -> Tuple[Optional[AsyncIOMotorClient], Any]:
    """
    Open the document store selected by the environment.

    DB_BACKEND=memory forces the in-memory store. Otherwise MongoDB is tried when
    MONGO_URL is set, falling back to the file-backed store at DATA_FILE.
    """
    backend = (os.environ.get("DB_BACKEND") or "").lower()
    if backend == "memory":
        logger.warning("Using in-memory DB (data is lost on restart).")
        return None, InMemoryDB()

    mongo_url = os.environ.get("MONGO_URL")
    db_name = os.environ.get("DB_NAME", "habit_tracker")

    if mongo_url and backend != "file":
        client = None
        try:
            client = AsyncIOMotorClient(mongo_url, serverSelectionTimeoutMS=2000)
            await client.admin.command("ping")
            logger.info("Connected to MongoDB: %s / %s", mongo_url, db_name)
            return client, client[db_name]
        except Exception as e:
            logger.warning("MongoDB not available (%s). Falling back to file-backed DB.", str(e))
            if client is not None:
                client.close()

    data_file = os.environ.get("DATA_FILE")
    path = Path(data_file) if data_file else (ROOT_DIR / "data" / "db.json")
    logger.warning("Using file-backed DB at %s (data persists between restarts).", str(path))
    return None, FileBackedDB(path)
