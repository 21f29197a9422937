"""
Rockery Rule Store

SQLAlchemy-backed storage for mocking rules with exact, NULL-aware lookup.

The default database is an in-memory SQLite database shared by every
thread through a single connection. All operations are serialized behind a
store-wide lock.
"""

import logging
import threading
from typing import List, Optional

from sqlalchemy import Column, Integer, String, Text, create_engine, delete, func, insert, select
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import declarative_base
from sqlalchemy.pool import StaticPool

from .rule import MockingRule


logger = logging.getLogger("rockery.gateway.store")

Base = declarative_base()

IN_MEMORY_URLS = ('sqlite://', 'sqlite:///:memory:')


class MockingRuleRecord(Base):
    """Row layout of a persisted mocking rule."""

    __tablename__ = "mocking_rules"
    # Ids are never reused after deletion
    __table_args__ = {"sqlite_autoincrement": True}

    id = Column(Integer, primary_key=True)
    request_method = Column(String, nullable=False)
    request_url = Column(Text, nullable=False)
    request_query = Column(Text, nullable=True)
    request_data = Column(Text, nullable=True)
    response_status_code = Column(Integer, nullable=False)
    response_data = Column(Text, nullable=True)


class RuleStoreError(Exception):
    """Raised when a rule store operation fails."""


class StoreInitializationError(RuleStoreError):
    """Raised when the rule table cannot be created."""


class RuleAlreadyPersistedError(RuleStoreError):
    """Raised when creating a rule that already has an id."""


class RuleNotPersistedError(RuleStoreError):
    """Raised when deleting a rule that has no id."""


class DuplicateRuleError(RuleStoreError):
    """Raised when a rule with identical matching fields already exists."""


def create_store_engine(database_url: str = 'sqlite://') -> Engine:
    """
    Create the SQLAlchemy engine for a rule store.

    In-memory SQLite needs one connection shared across threads, otherwise
    every pooled connection would see its own empty database.
    """
    if database_url in IN_MEMORY_URLS:
        return create_engine(
            database_url,
            echo=False,
            poolclass=StaticPool,
            connect_args={'check_same_thread': False},
        )
    return create_engine(database_url, echo=False)


def _equal_or_null(column, value: Optional[str]):
    """Exact equality where ``None`` only matches NULL."""
    if value is None:
        return column.is_(None)
    return column == value


class RuleStore:
    """
    Persistent set of MockingRule rows.

    Example:
        store = RuleStore()
        store.initialize()

        rule = MockingRule(request_method='GET', request_url='/ping',
                           response_status_code=200, response_data='{"ok":true}')
        store.create(rule)
        assert store.find(url='/ping', method='GET')[0].id == rule.id
    """

    def __init__(self, database_url: str = 'sqlite://', engine: Optional[Engine] = None):
        """
        Initialize rule store.

        Args:
            database_url: SQLAlchemy URL; defaults to in-memory SQLite
            engine: Optional pre-built engine (overrides database_url)
        """
        self.database_url = database_url
        self.engine = engine or create_store_engine(database_url)
        self.table = MockingRuleRecord.__table__
        self._lock = threading.Lock()

    def initialize(self) -> None:
        """
        Create the rules table if it does not exist.

        Raises:
            StoreInitializationError: If the schema cannot be created
        """
        with self._lock:
            try:
                Base.metadata.create_all(self.engine)
            except SQLAlchemyError as e:
                raise StoreInitializationError(f"Failed to create {self.table.name} table: {e}") from e
        logger.info(f"Initialized rule store ({self.database_url})")

    def create(self, rule: MockingRule) -> MockingRule:
        """
        Persist a new rule and assign its id.

        Raises:
            RuleAlreadyPersistedError: If the rule already has an id
            DuplicateRuleError: If a rule with the same matching fields exists
            RuleStoreError: If the insert fails
        """
        if rule.id is not None:
            raise RuleAlreadyPersistedError(
                "MockingRule already exists. Cannot create records with already existing ID"
            )

        with self._lock:
            if self._find(**rule.criteria):
                raise DuplicateRuleError("Rule on this endpoint already exists!")

            statement = insert(self.table).values(
                request_method=rule.request_method,
                request_url=rule.request_url,
                request_query=rule.request_query,
                request_data=rule.request_data,
                response_status_code=rule.response_status_code,
                response_data=rule.response_data,
            )
            try:
                with self.engine.begin() as conn:
                    result = conn.execute(statement)
            except SQLAlchemyError as e:
                raise RuleStoreError(str(e)) from e

            if result.rowcount == 0:
                raise RuleStoreError("Database failed to perform insert")
            rule.id = result.inserted_primary_key[0]

        logger.debug(f"Created rule #{rule.id}: {rule.request_method} {rule.request_url}")
        return rule

    def find(
        self,
        url: Optional[str] = None,
        query: Optional[str] = None,
        method: Optional[str] = None,
        data: Optional[str] = None
    ) -> List[MockingRule]:
        """
        Find rules whose matching fields equal the given values exactly.

        An omitted (``None``) argument matches only rows where that column is
        NULL; it is not a wildcard.

        Returns:
            Matching rules in insertion order

        Raises:
            RuleStoreError: If the query fails
        """
        with self._lock:
            return self._find(url=url, query=query, method=method, data=data)

    def _find(self, url, query, method, data) -> List[MockingRule]:
        c = self.table.c
        statement = (
            select(self.table)
            .where(_equal_or_null(c.request_url, url))
            .where(_equal_or_null(c.request_query, query))
            .where(_equal_or_null(c.request_method, method))
            .where(_equal_or_null(c.request_data, data))
            .order_by(c.id)
        )
        try:
            with self.engine.connect() as conn:
                rows = conn.execute(statement).mappings().all()
        except SQLAlchemyError as e:
            raise RuleStoreError(str(e)) from e

        return [MockingRule(**dict(row)) for row in rows]

    def delete(self, rule: MockingRule) -> None:
        """
        Delete a persisted rule by id.

        Raises:
            RuleNotPersistedError: If the rule has no id
            RuleStoreError: If nothing was deleted or the delete fails
        """
        if rule.id is None:
            raise RuleNotPersistedError("Cannot delete MockingRule which does not exist in database.")

        with self._lock:
            try:
                with self.engine.begin() as conn:
                    result = conn.execute(delete(self.table).where(self.table.c.id == rule.id))
            except SQLAlchemyError as e:
                raise RuleStoreError(str(e)) from e

            if result.rowcount == 0:
                raise RuleStoreError("Database failed to perform delete")

        logger.debug(f"Deleted rule #{rule.id}")

    def count(self) -> int:
        """Count all stored rules."""
        with self._lock:
            try:
                with self.engine.connect() as conn:
                    return conn.execute(select(func.count()).select_from(self.table)).scalar_one()
            except SQLAlchemyError as e:
                raise RuleStoreError(str(e)) from e

    def close(self) -> None:
        """Dispose of the engine's connections."""
        self.engine.dispose()
