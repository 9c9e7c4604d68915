"""SQLAlchemy models and engine helpers.

The object registry, the database lock service and the SQL metadata source
share one declarative base, so a single ``create_all`` builds every table
objectfs needs on a fresh database.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import (
    BigInteger,
    Column,
    DateTime,
    Index,
    Integer,
    String,
    create_engine,
    text,
)
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import declarative_base
from sqlalchemy.pool import StaticPool

from objectfs.base import RegistryConnectionError

Base = declarative_base()


class ObjectModel(Base):  # type: ignore
    """SQLAlchemy model for registry records."""

    __tablename__ = "objectfs_objects"

    id = Column(Integer, primary_key=True, autoincrement=True)
    contenthash = Column(String(40), unique=True, nullable=False, index=True)
    location = Column(String(20), nullable=True, index=True)
    filesize = Column(BigInteger, nullable=True)
    timecreated = Column(DateTime, nullable=True)
    timeduplicated = Column(DateTime, nullable=True)
    timeorphaned = Column(DateTime, nullable=True)

    __table_args__ = (Index("ix_objectfs_location_filesize", "location", "filesize"),)


class LockModel(Base):  # type: ignore
    """SQLAlchemy model for held object locks."""

    __tablename__ = "objectfs_locks"

    key = Column(String(255), primary_key=True)
    token = Column(String(64), nullable=False)
    expires_at = Column(DateTime, nullable=False, index=True)


class FileModel(Base):  # type: ignore
    """SQLAlchemy model for the host application's logical files.

    Owned by the host. objectfs only reads it.
    """

    __tablename__ = "files"

    id = Column(Integer, primary_key=True, autoincrement=True)
    contenthash = Column(String(40), nullable=False, index=True)
    filename = Column(String(255), nullable=False, default="")
    filesize = Column(BigInteger, nullable=False, default=0)
    timecreated = Column(DateTime, nullable=False, default=datetime.now)


def create_db_engine(
    connection_url: str,
    echo: bool = False,
    create_tables: bool = True,
    **kwargs: Any,
) -> Engine:
    """Create and test a SQLAlchemy engine.

    Args:
        connection_url: SQLAlchemy connection URL.
        echo: Whether to echo SQL statements.
        create_tables: Whether to create the objectfs tables.
        **kwargs: Extra ``create_engine`` arguments.

    Raises:
        RegistryConnectionError: If the database cannot be reached.
    """
    connect_args: dict[str, Any] = {}

    # SQLite specific settings
    if connection_url.startswith("sqlite"):
        connect_args["check_same_thread"] = False

    # In-memory SQLite lives in one connection, share it across sessions.
    if connection_url in ("sqlite://", "sqlite:///:memory:"):
        kwargs.setdefault("poolclass", StaticPool)

    try:
        engine = create_engine(
            connection_url,
            echo=echo,
            connect_args=connect_args,
            **kwargs,
        )

        # Test connection
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))

        if create_tables:
            Base.metadata.create_all(engine)

    except SQLAlchemyError as e:
        raise RegistryConnectionError(str(e)) from e

    return engine
