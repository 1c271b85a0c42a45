"""
MongoDB access for WisdomVault.

Collections:
- "users"          accounts, keyed by uid and by email
- "public-lesson"  Public Content Index (every lesson)
- "my-lessons"     Owner Content Index (same lessons, same _id)
- "posts"          free-form notes
"""
import logging
import threading
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

from bson import ObjectId
from bson.errors import InvalidId
from pymongo import ASCENDING, DESCENDING, MongoClient
from pymongo.database import Database

import config
from errors import BadRequest, Internal

logger = logging.getLogger(__name__)

USERS = "users"
PUBLIC_LESSONS = "public-lesson"
OWNER_LESSONS = "my-lessons"
POSTS = "posts"


class MongoConnection:
    """Process-wide client, opened at most once.

    The first caller opens the client under a lock; everyone else reuses it
    until close() is called at shutdown.
    """

    def __init__(
        self,
        url: Optional[str],
        name: str,
        client_factory: Callable[..., Any] = MongoClient,
    ):
        self.url = url
        self.name = name
        self._client_factory = client_factory
        self._client = None
        self._db: Optional[Database] = None
        self._lock = threading.Lock()

    @property
    def configured(self) -> bool:
        return bool(self.url and self.name)

    def get(self) -> Database:
        if self._db is not None:
            return self._db
        with self._lock:
            if self._db is None:
                if not self.configured:
                    raise Internal("Database not configured")
                self._client = self._client_factory(self.url)
                self._db = self._client[self.name]
                logger.info("MongoDB connected db=%s", self.name)
        return self._db

    def close(self) -> None:
        with self._lock:
            if self._client is not None:
                self._client.close()
                logger.info("MongoDB connection closed")
            self._client = None
            self._db = None


connection = MongoConnection(config.DATABASE_URL, config.DATABASE_NAME)


def get_db() -> Database:
    return connection.get()


def ensure_indexes(db: Database) -> None:
    db[USERS].create_index("uid", unique=True)
    db[USERS].create_index("email", unique=True)
    for name in (PUBLIC_LESSONS, OWNER_LESSONS):
        db[name].create_index("creator.email")
        db[name].create_index([("createdAt", DESCENDING)])
    db[PUBLIC_LESSONS].create_index("visibility")
    db[PUBLIC_LESSONS].create_index("creator.name")
    db[POSTS].create_index([("createdAt", DESCENDING), ("_id", ASCENDING)])


def now() -> datetime:
    return datetime.now(timezone.utc)


def to_public(doc: Optional[dict]) -> Optional[dict]:
    """Make a stored document JSON-serializable (ObjectId -> str)."""
    if not doc:
        return doc
    d = {**doc}
    _id = d.get("_id")
    if isinstance(_id, ObjectId):
        d["_id"] = str(_id)
    return d


def parse_object_id(value: str, what: str = "id") -> ObjectId:
    try:
        return ObjectId(value)
    except (InvalidId, TypeError):
        raise BadRequest(f"Invalid {what}")


def create_document(db: Database, collection_name: str, data: Dict[str, Any]) -> str:
    doc = {**data}
    doc.setdefault("createdAt", now())
    result = db[collection_name].insert_one(doc)
    return str(result.inserted_id)


def get_documents(
    db: Database,
    collection_name: str,
    filter_dict: Optional[dict] = None,
    limit: Optional[int] = None,
    sort: Optional[list] = None,
) -> List[dict]:
    cursor = db[collection_name].find(filter_dict or {})
    if sort:
        cursor = cursor.sort(sort)
    if limit:
        cursor = cursor.limit(limit)
    return [to_public(d) for d in cursor]
