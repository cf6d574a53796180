"""
MongoDB access for the marketplace order core.

`db` is the shared database handle. Anything that touches stock, wallet
balances or order documents together goes through `transaction()`, which
yields a `Transaction` whose collections carry the session on every call.
"""
import logging
import os
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Iterator, Optional, Union

from dotenv import load_dotenv
from pydantic import BaseModel
from pymongo import MongoClient, ReturnDocument

load_dotenv()

logger = logging.getLogger(__name__)

client = None
db = None


class DatabaseUnavailable(RuntimeError):
    pass


def init_database(mongo_client, database_name: str):
    global client, db
    client = mongo_client
    db = mongo_client[database_name]
    return db


def connect(database_url: str, database_name: str):
    return init_database(MongoClient(database_url), database_name)


def get_db():
    if db is None:
        raise DatabaseUnavailable(
            "Database not available. Check DATABASE_URL and DATABASE_NAME environment variables."
        )
    return db


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    # pymongo hands back naive datetimes that are already UTC
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def create_document(collection_name: str, data: Union[BaseModel, dict], session=None) -> str:
    database = get_db()
    if isinstance(data, BaseModel):
        data_dict = data.model_dump()
    else:
        data_dict = data.copy()
    now = utc_now()
    data_dict.setdefault("created_at", now)
    data_dict["updated_at"] = now
    result = database[collection_name].insert_one(data_dict, session=session)
    return str(result.inserted_id)


def get_documents(collection_name: str, filter_dict: Optional[dict] = None, limit: Optional[int] = None) -> list:
    database = get_db()
    cursor = database[collection_name].find(filter_dict or {})
    if limit:
        cursor = cursor.limit(limit)
    return list(cursor)


class SessionCollection:
    """A collection whose operations all run inside one client session."""

    def __init__(self, collection, session):
        self._collection = collection
        self._session = session

    @property
    def name(self) -> str:
        return self._collection.name

    def find_one(self, filter_dict: dict, *args, **kwargs):
        return self._collection.find_one(filter_dict, *args, session=self._session, **kwargs)

    def find(self, filter_dict: Optional[dict] = None, *args, **kwargs):
        return self._collection.find(filter_dict or {}, *args, session=self._session, **kwargs)

    def insert_one(self, document: dict):
        return self._collection.insert_one(document, session=self._session)

    def update_one(self, filter_dict: dict, update: dict, upsert: bool = False):
        return self._collection.update_one(filter_dict, update, upsert=upsert, session=self._session)

    def find_one_and_update(self, filter_dict: dict, update: dict, upsert: bool = False):
        return self._collection.find_one_and_update(
            filter_dict,
            update,
            upsert=upsert,
            return_document=ReturnDocument.AFTER,
            session=self._session,
        )


class Transaction:
    def __init__(self, database, session):
        self.database = database
        self.session = session

    def __getitem__(self, collection_name: str) -> SessionCollection:
        return SessionCollection(self.database[collection_name], self.session)

    def insert(self, collection_name: str, data: Union[BaseModel, dict]) -> str:
        return create_document(collection_name, data, session=self.session)


@contextmanager
def transaction() -> Iterator[Transaction]:
    """Commit everything done through the yielded Transaction, or nothing."""
    database = get_db()
    with client.start_session() as session:
        try:
            with session.start_transaction():
                yield Transaction(database, session)
        except Exception:
            logger.debug("Transaction aborted")
            raise


database_url = os.getenv("DATABASE_URL")
database_name = os.getenv("DATABASE_NAME")
if database_url and database_name:
    connect(database_url, database_name)
