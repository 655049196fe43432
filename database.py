"""
Database Helper Functions

MongoDB connection handling and the small set of document helpers the
services build on. The store is reached through a module-level ``db`` handle
that the app lifespan fills in via ``connect()``; request handlers receive it
through the ``get_db`` dependency so tests can swap in another database.
"""
import logging
import os
import time
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Sequence, Tuple, Union

from bson import ObjectId
from bson.errors import InvalidId
from dotenv import load_dotenv
from pydantic import BaseModel
from pymongo import MongoClient
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError, PyMongoError, WriteError

from errors import Conflict, NotFound, StoreUnavailable, ValidationFailed

load_dotenv()

logger = logging.getLogger(__name__)

DATABASE_URL: Optional[str] = os.getenv("DATABASE_URL")
DATABASE_NAME: str = os.getenv("DATABASE_NAME", "proposal_intake")
CONNECT_RETRIES = int(os.getenv("DB_CONNECT_RETRIES", "5"))
CONNECT_DELAY_MS = int(os.getenv("DB_CONNECT_DELAY_MS", "3000"))
MAX_POOL_SIZE = int(os.getenv("DB_MAX_POOL_SIZE", "50"))
MIN_POOL_SIZE = int(os.getenv("DB_MIN_POOL_SIZE", "5"))
SERVER_SELECTION_TIMEOUT_MS = int(os.getenv("DB_SERVER_SELECTION_TIMEOUT_MS", "10000"))
SCHEMA_VALIDATION = os.getenv("MONGO_SCHEMA_VALIDATION", "true").lower() == "true"

# MongoDB server error code for a $jsonSchema rejection
DOCUMENT_VALIDATION_FAILURE = 121

_client: Optional[MongoClient] = None
db: Optional[Database] = None


# ---------- Connection ----------

def _mask(url: str) -> str:
    if "@" not in url or "://" not in url:
        return url
    scheme, rest = url.split("://", 1)
    creds, host = rest.rsplit("@", 1)
    user = creds.split(":", 1)[0]
    return f"{scheme}://{user}:*****@{host}"


def connect_with_retry(
    url: str,
    retries: int = CONNECT_RETRIES,
    delay_ms: int = CONNECT_DELAY_MS,
) -> MongoClient:
    """Open a client and ping the server, backing off exponentially between attempts."""
    last_error: Optional[Exception] = None
    for attempt in range(1, retries + 1):
        logger.info("MongoDB connection attempt %d/%d to %s", attempt, retries, _mask(url))
        try:
            client = MongoClient(
                url,
                maxPoolSize=MAX_POOL_SIZE,
                minPoolSize=MIN_POOL_SIZE,
                serverSelectionTimeoutMS=SERVER_SELECTION_TIMEOUT_MS,
                retryWrites=True,
                retryReads=True,
                tz_aware=True,
            )
            client.admin.command("ping")
            logger.info("Connected to MongoDB")
            return client
        except PyMongoError as exc:
            last_error = exc
            logger.warning("MongoDB connection attempt %d failed: %s", attempt, exc)
            if attempt < retries:
                delay = delay_ms * (2 ** (attempt - 1)) / 1000.0
                logger.info("Retrying MongoDB connection in %.1fs", delay)
                time.sleep(delay)
    raise StoreUnavailable(f"Failed to connect to MongoDB after {retries} attempts: {last_error}")


def connect(url: Optional[str] = None, name: Optional[str] = None) -> Database:
    global _client, db
    url = url or DATABASE_URL
    if not url:
        raise StoreUnavailable("Database not available. Check DATABASE_URL environment variable.")
    _client = connect_with_retry(url)
    db = _client[name or DATABASE_NAME]
    return db


def close() -> None:
    global _client, db
    if _client is not None:
        _client.close()
    _client = None
    db = None


def get_db() -> Database:
    """FastAPI dependency yielding the shared database handle."""
    if db is None:
        raise StoreUnavailable("Database not available. Check DATABASE_URL and DATABASE_NAME environment variables.")
    return db


# ---------- Time & ids ----------

def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    # pymongo hands back naive UTC datetimes unless the client is tz_aware
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def parse_object_id(value: str, what: str = "Document") -> ObjectId:
    try:
        return ObjectId(value)
    except (InvalidId, TypeError):
        raise NotFound(f"{what} not found")


def to_str_id(doc: Dict[str, Any]) -> Dict[str, Any]:
    if not doc:
        return doc
    d = dict(doc)
    if d.get("_id") is not None:
        d["id"] = str(d.pop("_id"))
    # convert nested ObjectIds
    for k, v in list(d.items()):
        if isinstance(v, ObjectId):
            d[k] = str(v)
        if isinstance(v, list):
            d[k] = [str(x) if isinstance(x, ObjectId) else x for x in v]
    return d


def strip_id(doc: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    """Drop the internal ``_id`` for collections keyed by their own identifier."""
    if doc is None:
        return None
    d = dict(doc)
    d.pop("_id", None)
    return d


# ---------- Documents ----------

def _as_dict(data: Union[BaseModel, dict]) -> Dict[str, Any]:
    if isinstance(data, BaseModel):
        return data.model_dump(by_alias=True, exclude_none=True)
    return dict(data)


def create_document(database: Database, collection_name: str, data: Union[BaseModel, dict]) -> str:
    """Insert a single document with timestamps and return its id."""
    data_dict = _as_dict(data)
    now = utcnow()
    data_dict.setdefault("createdAt", now)
    data_dict.setdefault("updatedAt", now)
    try:
        result = database[collection_name].insert_one(data_dict)
    except WriteError as exc:
        if not isinstance(exc, DuplicateKeyError) and exc.code == DOCUMENT_VALIDATION_FAILURE:
            raise ValidationFailed(f"Document rejected by {collection_name} validator") from exc
        raise
    return str(result.inserted_id)


def insert_unique(database: Database, collection_name: str, data: Union[BaseModel, dict], what: str) -> str:
    """Insert relying on a unique index; a duplicate key becomes Conflict."""
    try:
        return create_document(database, collection_name, data)
    except DuplicateKeyError as exc:
        raise Conflict(f"{what} already exists") from exc


def get_documents(
    database: Database,
    collection_name: str,
    filter_dict: Optional[dict] = None,
    limit: Optional[int] = None,
    sort: Optional[Sequence[Tuple[str, int]]] = None,
) -> List[Dict[str, Any]]:
    """Get documents from collection"""
    cursor = database[collection_name].find(filter_dict or {})
    if sort:
        cursor = cursor.sort(list(sort))
    if limit:
        cursor = cursor.limit(limit)
    return list(cursor)
