"""MongoDB connection shared by the durable stores.

One MongoClient per process. Driver connectivity errors are surfaced as
TransientInfraError so event handlers nack and HTTP callers get a 500.
"""

import threading
from contextlib import contextmanager
from typing import Iterator, Optional

from pymongo import MongoClient
from pymongo.database import Database
from pymongo.errors import ConnectionFailure

from membership_subscriptions.exceptions import TransientInfraError
from membership_subscriptions.logging_config import get_logger
from membership_subscriptions.models.settings import StorageSettings

logger = get_logger(__name__)

_client: Optional[MongoClient] = None
_client_lock = threading.Lock()


@contextmanager
def unavailable_as_transient(operation: str) -> Iterator[None]:
    """Translate lost connections and server selection timeouts."""
    try:
        yield
    except ConnectionFailure as e:
        logger.error("mongo_unavailable", operation=operation, error=str(e), error_type=type(e).__name__)
        raise TransientInfraError(f"MongoDB unavailable during {operation}: {e}") from e


def get_mongo_client(settings: StorageSettings) -> MongoClient:
    """Get or create the process-wide MongoClient."""
    global _client
    if _client is None:
        with _client_lock:
            if _client is None:
                _client = MongoClient(
                    settings.mongo_uri,
                    tz_aware=True,
                    serverSelectionTimeoutMS=settings.server_selection_timeout_ms,
                    appname="membership-subscriptions",
                )
                logger.info("mongo_client_created", database=settings.database)
    return _client


def get_database(settings: StorageSettings) -> Database:
    return get_mongo_client(settings)[settings.database]


def close_mongo_client() -> None:
    """Close the shared client; the next get_mongo_client() reconnects."""
    global _client
    with _client_lock:
        if _client is not None:
            _client.close()
            _client = None
            logger.info("mongo_client_closed")
