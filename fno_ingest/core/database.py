"""
Database connection management.

A thin wrapper around a synchronous ``pymongo.MongoClient``. The client is
thread-safe and shared by every feed; async code calls into it through
``asyncio.to_thread``.
"""

import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional, Sequence, Tuple

from pymongo import ASCENDING, MongoClient
from pymongo.collection import Collection
from pymongo.database import Database as MongoDatabase
from pymongo.errors import PyMongoError

from fno_ingest.core.config import Settings, get_settings
from fno_ingest.core.error_handling import DatabaseConnectionError

# Set up logging
logger = logging.getLogger(__name__)


#################################################
# Abstract Base Database Class
#################################################

class Database(ABC):
    """
    Abstract base class for database connections.
    Defines the interface that all database implementations must follow.
    """

    def __init__(self, settings: Optional[Settings] = None):
        """
        Initialize the database connection.

        Args:
            settings: Application settings (uses singleton if not provided)
        """
        self.settings = settings or get_settings()
        self.is_connected = False
        logger.debug(f"Initializing {self.__class__.__name__}")

    @abstractmethod
    def connect(self) -> None:
        """Establish connection to the database."""

    @abstractmethod
    def disconnect(self) -> None:
        """Close the database connection."""

    @abstractmethod
    def check_health(self) -> bool:
        """
        Check if the database connection is healthy.

        Returns:
            True if connection is healthy, False otherwise
        """

    def get_status(self) -> Dict[str, Any]:
        """
        Get database connection status information.

        Returns:
            Dictionary with status details
        """
        return {
            "name": self.__class__.__name__,
            "connected": self.is_connected
        }


#################################################
# MongoDB Implementation
#################################################

class MongoDB(Database):
    """
    MongoDB database connection manager.
    """

    def __init__(self, settings: Optional[Settings] = None, client: Optional[MongoClient] = None):
        """
        Initialize MongoDB connection manager.

        Args:
            settings: Application settings
            client: Pre-built client (tests); ``connect`` builds one otherwise
        """
        super().__init__(settings)
        self.client: Optional[MongoClient] = client
        self.db: Optional[MongoDatabase] = None
        if client is not None:
            self.db = client[self.settings.db.MONGODB_DB]
            self.is_connected = True

    def connect(self) -> None:
        """
        Establish connection to MongoDB using settings.

        Raises:
            DatabaseConnectionError: If the server cannot be reached
        """
        db_settings = self.settings.db
        try:
            self.client = MongoClient(
                db_settings.MONGODB_URI,
                maxPoolSize=db_settings.MONGODB_MAX_POOL_SIZE,
                minPoolSize=db_settings.MONGODB_MIN_POOL_SIZE,
                connectTimeoutMS=db_settings.MONGODB_CONNECT_TIMEOUT_MS,
                serverSelectionTimeoutMS=db_settings.MONGODB_SERVER_SELECTION_TIMEOUT_MS,
                tz_aware=True,
            )
            self.db = self.client[db_settings.MONGODB_DB]

            # Test connection
            self.client.admin.command("ping")

            self.is_connected = True
            logger.info(f"MongoDB connection established (db={db_settings.MONGODB_DB})")

        except PyMongoError as e:
            self.is_connected = False
            logger.error(f"Failed to connect to MongoDB: {e}")
            raise DatabaseConnectionError(
                f"Failed to connect to MongoDB: {e}",
                db_name=db_settings.MONGODB_DB
            ) from e

    def disconnect(self) -> None:
        """Close the MongoDB connection."""
        if self.client is not None:
            self.client.close()
            self.is_connected = False
            logger.info("MongoDB connection closed")

    def check_health(self) -> bool:
        """
        Check if the MongoDB connection is healthy.

        Returns:
            True if connection is healthy, False otherwise
        """
        if self.client is None:
            return False

        try:
            self.client.admin.command("ping")
            return True
        except PyMongoError as e:
            logger.error(f"MongoDB health check failed: {e}")
            return False

    def get_collection(self, collection_name: str) -> Collection:
        """
        Get a MongoDB collection reference.

        Args:
            collection_name: Name of the collection

        Returns:
            MongoDB collection reference
        """
        if self.db is None:
            raise RuntimeError("MongoDB connection not initialized. Call connect() first.")

        return self.db[collection_name]

    def ensure_unique_index(
        self,
        collection_name: str,
        fields: Sequence[str],
        name: Optional[str] = None
    ) -> bool:
        """
        Create a unique ascending compound index, best effort.

        Index creation is idempotent; a failure (permissions, a conflicting
        index that already enforces the constraint) is logged, not raised.

        Args:
            collection_name: Name of the collection
            fields: Key fields, in order
            name: Optional index name

        Returns:
            True if the index exists afterwards as far as we know
        """
        keys: List[Tuple[str, int]] = [(field, ASCENDING) for field in fields]
        try:
            self.get_collection(collection_name).create_index(keys, unique=True, name=name)
            logger.debug(f"Ensured unique index {fields} on {collection_name}")
            return True
        except PyMongoError as e:
            logger.warning(f"Could not create unique index {fields} on {collection_name}: {e}")
            return False

    def get_status(self) -> Dict[str, Any]:
        status = super().get_status()
        status["database"] = self.settings.db.MONGODB_DB
        return status
