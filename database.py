"""MongoDB access: connection, indexes and the document helpers routes share.

Routes never reach for a module-level client; they receive the Database
through the get_db dependency, which reads the handle the lifespan stored on
app.state.
"""
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple, Union

from bson import ObjectId
from bson.errors import InvalidId
from fastapi import Request
from pydantic import BaseModel
from pymongo import ASCENDING, MongoClient
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError, PyMongoError

from errors import ConflictError, DatabaseError, ValidationError
from schemas import PAYMENTS, SUBMISSIONS, TEACHER_APPLICATIONS, TEACHING_EVALUATIONS, USERS

logger = logging.getLogger(__name__)

# (collection, keys, conflict message)
UNIQUE_INDEXES: List[Tuple[str, List[Tuple[str, int]], str]] = [
    (USERS, [("uid", ASCENDING)], "User already exists"),
    (TEACHER_APPLICATIONS, [("uid", ASCENDING)], "You have already submitted a teaching application"),
    (
        SUBMISSIONS,
        [("assignmentId", ASCENDING), ("studentUid", ASCENDING)],
        "You have already submitted this assignment",
    ),
    (
        TEACHING_EVALUATIONS,
        [("classId", ASCENDING), ("studentUid", ASCENDING)],
        "You have already submitted an evaluation for this class",
    ),
    (PAYMENTS, [("transactionId", ASCENDING)], "Payment already recorded"),
]

CONFLICT_MESSAGES = {collection: message for collection, _, message in UNIQUE_INDEXES}


def connect(url: str, name: str) -> Tuple[MongoClient, Database]:
    client: MongoClient = MongoClient(url, tz_aware=True)
    return client, client[name]


def ensure_indexes(db: Database) -> None:
    for collection, keys, _ in UNIQUE_INDEXES:
        db[collection].create_index(keys, unique=True)


def get_db(request: Request) -> Database:
    db = getattr(request.app.state, "db", None)
    if db is None:
        raise DatabaseError("connect")
    return db


def oid(value: str, label: str = "id") -> ObjectId:
    try:
        return ObjectId(value)
    except (InvalidId, TypeError):
        raise ValidationError(f"Invalid {label} format", [label])


def serialize_doc(doc: Any) -> Any:
    if isinstance(doc, ObjectId):
        return str(doc)
    if isinstance(doc, datetime):
        if doc.tzinfo is None:
            doc = doc.replace(tzinfo=timezone.utc)
        return doc.astimezone(timezone.utc).isoformat()
    if isinstance(doc, dict):
        return {k: serialize_doc(v) for k, v in doc.items()}
    if isinstance(doc, list):
        return [serialize_doc(v) for v in doc]
    return doc


def create_document(db: Database, collection: str, data: Union[BaseModel, Dict[str, Any]]) -> str:
    doc = data.model_dump() if isinstance(data, BaseModel) else dict(data)
    try:
        res = db[collection].insert_one(doc)
    except DuplicateKeyError:
        raise ConflictError(CONFLICT_MESSAGES.get(collection, "Document already exists"))
    except PyMongoError:
        logger.error(f"insert into {collection} failed", exc_info=True)
        raise DatabaseError("insert")
    return str(res.inserted_id)


def get_documents(
    db: Database,
    collection: str,
    filter_dict: Optional[Dict[str, Any]] = None,
    sort: Optional[List[Tuple[str, int]]] = None,
) -> List[Dict[str, Any]]:
    try:
        cursor = db[collection].find(filter_dict or {})
        if sort:
            cursor = cursor.sort(sort)
        return [serialize_doc(d) for d in cursor]
    except PyMongoError:
        logger.error(f"find on {collection} failed", exc_info=True)
        raise DatabaseError("find")
