"""
Token storage backends and the relational store.

The relational store keeps one (uid, sharedToken) row per principal, using
SQLAlchemy Core so the key column and table name can follow the
deployment's existing schema.
"""

from abc import ABC, abstractmethod
from typing import Any, Optional

from sqlalchemy import Column, MetaData, String, Table, create_engine, select
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from .errors import StorageUnavailable
from .logger import get_logger

class TokenStore(ABC):
    """Get-or-create storage for shared tokens."""

    @abstractmethod
    def lookup(self, key: Any) -> Optional[str]:
        """Return the stored token for key, or None when there is none."""

    @abstractmethod
    def create(self, key: Any, token: str) -> str:
        """
        Persist token for key without overwriting an existing value.

        Returns:
            The token durably stored for key after the call. This is the
            given token unless a concurrent request stored one first.
        """


def build_table(
    metadata: MetaData,
    table_name: str = "tb_st",
    key_column: str = "uid",
    token_column: str = "sharedToken",
) -> Table:
    """Declare the shared token table: key column is the primary key."""
    return Table(
        table_name,
        metadata,
        Column(key_column, String(255), primary_key=True),
        Column(token_column, String(255), nullable=False),
    )


def get_engine(database_url: str) -> Engine:
    """
    Create an engine for database_url.

    Args:
        database_url: SQLAlchemy URL, e.g. sqlite:///data/tokens.db

    Returns:
        SQLAlchemy engine
    """
    return create_engine(database_url)


def init_database(engine: Engine, table_name: str = "tb_st", key_column: str = "uid") -> Table:
    """
    Create the shared token table if it does not exist yet.

    Returns:
        The table object
    """
    metadata = MetaData()
    table = build_table(metadata, table_name=table_name, key_column=key_column)
    metadata.create_all(engine)
    return table


class RelationalStore(TokenStore):
    """
    Shared tokens in a relational table keyed by principal.

    Each call checks a connection out of the engine pool and returns it on
    every exit path via the connection context manager.
    """

    def __init__(
        self,
        engine: Engine,
        table_name: str = "tb_st",
        key_column: str = "uid",
        token_column: str = "sharedToken",
        logger=None,
    ):
        self.engine = engine
        self.logger = logger or get_logger()
        self.key_column = key_column
        self.token_column = token_column
        self.table = build_table(MetaData(), table_name, key_column, token_column)

    @classmethod
    def from_config(cls, config, logger=None) -> "RelationalStore":
        return cls(
            get_engine(config.database_url),
            table_name=config.table_name,
            key_column=config.primary_key_name,
            logger=logger,
        )

    def lookup(self, key: str) -> Optional[str]:
        query = select(self.table.c[self.token_column]).where(
            self.table.c[self.key_column] == key
        )
        try:
            with self.engine.connect() as conn:
                token = conn.execute(query).scalar_one_or_none()
        except SQLAlchemyError as e:
            self.logger.error("Failed to read shared token from database", uid=key, error=str(e))
            raise StorageUnavailable(f"Failed to read shared token from database: {e}") from e

        self.logger.debug("Database lookup", uid=key, found=token is not None)
        return token

    def create(self, key: str, token: str) -> str:
        statement = self.table.insert().values(
            {self.key_column: key, self.token_column: token}
        )
        try:
            with self.engine.begin() as conn:
                conn.execute(statement)
        except IntegrityError as e:
            # Another request stored a value for this key first
            existing = self.lookup(key)
            if existing is None:
                self.logger.error("Failed to store shared token", uid=key, error=str(e))
                raise StorageUnavailable(f"Failed to store shared token into database: {e}") from e
            self.logger.record_conflict()
            if existing != token:
                self.logger.warning(
                    "Stored shared token differs from generated value, keeping stored value",
                    uid=key,
                )
            else:
                self.logger.info("Shared token already stored by a concurrent request", uid=key)
            return existing
        except SQLAlchemyError as e:
            self.logger.error("Failed to store shared token", uid=key, error=str(e))
            raise StorageUnavailable(f"Failed to store shared token into database: {e}") from e

        self.logger.record_stored()
        self.logger.info("Stored shared token", uid=key, token=token)
        return token
