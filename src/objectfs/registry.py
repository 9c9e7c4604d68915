"""Object registry: the durable record of where every object lives.

The registry maps a content hash to its location, size and lifecycle
timestamps. It is the single source of truth for selectors. Manipulators
change it only through ``update_location`` and ``update_filesize``, and
records are removed only by orphan cleanup.

Location updates are compare-and-set: the caller passes the location it
read under the object lock, and the update fails with
``ConcurrentUpdateError`` if another writer got there first.

Timestamp rules applied by ``update_location``:

- entering DUPLICATED refreshes ``timeduplicated``
- entering EXTERNAL sets ``timeduplicated`` only if it was never set
- entering ORPHANED sets ``timeorphaned``
- ``timeduplicated`` is never cleared

``create`` applies the same rules to the initial location of a new record.
"""

from __future__ import annotations

import logging
import threading
from abc import ABC, abstractmethod
from collections import Counter
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Iterable, Iterator

from sqlalchemy import false, func, or_
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from objectfs.base import (
    ConcurrentUpdateError,
    ObjectLocation,
    ObjectRecord,
    RecordNotFoundError,
    RegistryConnectionError,
    validate_contenthash,
)
from objectfs.models import ObjectModel, create_db_engine

logger = logging.getLogger(__name__)


class _Unset:
    def __repr__(self) -> str:
        return "UNSET"


# Marker for "no expected location given" in compare-and-set updates.
UNSET: Any = _Unset()

# Maximum number of bound parameters per IN clause.
_IN_CHUNK = 500


@dataclass
class RecordQuery:
    """Filter over registry records.

    Every set attribute must hold for a record to match. Records whose
    filesize or timestamp is unknown never match a filter on that field.

    Attributes:
        locations: Allowed locations. ``None`` inside the tuple matches
            records that were never classified.
        exclude_locations: Locations that must not match.
        size_gt: filesize strictly greater than this.
        size_lt: filesize strictly less than this.
        size_le: filesize less than or equal to this.
        created_before: timecreated at or before this.
        duplicated_before: timeduplicated at or before this.
        orphaned_before: timeorphaned at or before this.
        limit: Maximum number of records returned.
    """

    locations: tuple[ObjectLocation | None, ...] | None = None
    exclude_locations: tuple[ObjectLocation, ...] | None = None
    size_gt: int | None = None
    size_lt: int | None = None
    size_le: int | None = None
    created_before: datetime | None = None
    duplicated_before: datetime | None = None
    orphaned_before: datetime | None = None
    limit: int | None = None

    def matches(self, record: ObjectRecord) -> bool:
        """Check if a record matches this query's filters."""
        if self.locations is not None and record.location not in self.locations:
            return False
        if (
            self.exclude_locations is not None
            and record.location in self.exclude_locations
        ):
            return False

        size = record.filesize
        if self.size_gt is not None and (size is None or size <= self.size_gt):
            return False
        if self.size_lt is not None and (size is None or size >= self.size_lt):
            return False
        if self.size_le is not None and (size is None or size > self.size_le):
            return False

        for bound, value in (
            (self.created_before, record.timecreated),
            (self.duplicated_before, record.timeduplicated),
            (self.orphaned_before, record.timeorphaned),
        ):
            if bound is not None and (value is None or value > bound):
                return False

        return True


def apply_location_change(
    record: ObjectRecord,
    location: ObjectLocation,
    now: datetime,
) -> ObjectRecord:
    """Return the record moved to ``location`` with timestamps updated."""
    changes: dict[str, Any] = {"location": location}
    if location is ObjectLocation.DUPLICATED:
        changes["timeduplicated"] = now
    elif location is ObjectLocation.EXTERNAL and record.timeduplicated is None:
        changes["timeduplicated"] = now
    elif location is ObjectLocation.ORPHANED:
        changes["timeorphaned"] = now
    return record.copy(**changes)


def stamp_new_record(record: ObjectRecord, now: datetime) -> ObjectRecord:
    """Return the record with the timestamps its initial location implies.

    Timestamps the caller already set are kept.
    """
    changes: dict[str, Any] = {}
    if record.location in (ObjectLocation.DUPLICATED, ObjectLocation.EXTERNAL):
        if record.timeduplicated is None:
            changes["timeduplicated"] = now
    elif record.location is ObjectLocation.ORPHANED and record.timeorphaned is None:
        changes["timeorphaned"] = now
    return record.copy(**changes)


# =============================================================================
# Abstract Registry
# =============================================================================


class ObjectRegistry(ABC):
    """Abstract base class for object registries."""

    def __init__(self) -> None:
        self._initialized = False

    def initialize(self) -> None:
        """Initialize the registry. Called lazily before first use."""
        if self._initialized:
            return
        self._do_initialize()
        self._initialized = True

    def _do_initialize(self) -> None:
        pass

    def close(self) -> None:
        """Release any resources held by the registry."""
        pass

    def __enter__(self) -> "ObjectRegistry":
        self.initialize()
        return self

    def __exit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        self.close()

    @abstractmethod
    def get(self, contenthash: str) -> ObjectRecord | None:
        """Fetch the record for a hash, or None if it has none."""
        pass

    def exists(self, contenthash: str) -> bool:
        return self.get(contenthash) is not None

    @abstractmethod
    def create(self, record: ObjectRecord, now: datetime | None = None) -> ObjectRecord:
        """Insert a new record.

        A record created as DUPLICATED or EXTERNAL without ``timeduplicated``
        gets ``now``, as does an ORPHANED one without ``timeorphaned``.

        Raises:
            ConcurrentUpdateError: If a record for the hash already exists.
        """
        pass

    @abstractmethod
    def update_location(
        self,
        contenthash: str,
        location: ObjectLocation,
        expected_location: ObjectLocation | None = UNSET,
        now: datetime | None = None,
    ) -> ObjectRecord:
        """Move a record to a new location.

        Setting the location a record already has is a no-op.

        Args:
            contenthash: Hash of the record to update.
            location: New location.
            expected_location: Location the caller last observed. When given,
                the update only applies if the record still has it.
            now: Timestamp for the lifecycle fields. Defaults to now.

        Returns:
            The updated record.

        Raises:
            RecordNotFoundError: If the hash has no record.
            ConcurrentUpdateError: If the location changed concurrently.
        """
        pass

    @abstractmethod
    def update_filesize(self, contenthash: str, filesize: int | None) -> ObjectRecord:
        """Record the measured size. A None size never overwrites a known one.

        Raises:
            RecordNotFoundError: If the hash has no record.
        """
        pass

    @abstractmethod
    def delete(self, contenthash: str) -> bool:
        """Physically remove a record. Returns False if it didn't exist."""
        pass

    @abstractmethod
    def query(self, query: RecordQuery) -> list[ObjectRecord]:
        """Records matching the query, ordered by content hash."""
        pass

    @abstractmethod
    def filter_missing(self, contenthashes: Iterable[str]) -> list[str]:
        """Return the given hashes that have no record, preserving order."""
        pass

    @abstractmethod
    def iter_records(self, batch_size: int = 1000) -> Iterator[ObjectRecord]:
        """Iterate over all records in content hash order."""
        pass

    @abstractmethod
    def count_by_location(self) -> dict[ObjectLocation | None, int]:
        """Number of records per location. None counts unclassified records."""
        pass

    def count(self) -> int:
        return sum(self.count_by_location().values())


def _validate_filesize(filesize: int | None) -> None:
    if filesize is not None and filesize < 0:
        raise ValueError(f"filesize must be >= 0, got {filesize}")


# =============================================================================
# In-memory Registry
# =============================================================================


class InMemoryObjectRegistry(ObjectRegistry):
    """Registry kept in a dictionary, for tests and single-process use."""

    def __init__(self) -> None:
        super().__init__()
        self._records: dict[str, ObjectRecord] = {}
        self._lock = threading.RLock()

    def get(self, contenthash: str) -> ObjectRecord | None:
        with self._lock:
            record = self._records.get(contenthash)
            return record.copy() if record else None

    def create(self, record: ObjectRecord, now: datetime | None = None) -> ObjectRecord:
        validate_contenthash(record.contenthash)
        _validate_filesize(record.filesize)
        record = stamp_new_record(record, now or datetime.now())
        with self._lock:
            existing = self._records.get(record.contenthash)
            if existing is not None:
                raise ConcurrentUpdateError(record.contenthash, None, existing.location)
            self._records[record.contenthash] = record.copy()
            return record.copy()

    def update_location(
        self,
        contenthash: str,
        location: ObjectLocation,
        expected_location: ObjectLocation | None = UNSET,
        now: datetime | None = None,
    ) -> ObjectRecord:
        with self._lock:
            record = self._records.get(contenthash)
            if record is None:
                raise RecordNotFoundError(contenthash)
            if expected_location is not UNSET and record.location != expected_location:
                raise ConcurrentUpdateError(
                    contenthash, expected_location, record.location
                )
            if record.location == location:
                return record.copy()

            updated = apply_location_change(record, location, now or datetime.now())
            self._records[contenthash] = updated
            return updated.copy()

    def update_filesize(self, contenthash: str, filesize: int | None) -> ObjectRecord:
        _validate_filesize(filesize)
        with self._lock:
            record = self._records.get(contenthash)
            if record is None:
                raise RecordNotFoundError(contenthash)
            if filesize is not None:
                record = record.copy(filesize=filesize)
                self._records[contenthash] = record
            return record.copy()

    def delete(self, contenthash: str) -> bool:
        with self._lock:
            return self._records.pop(contenthash, None) is not None

    def query(self, query: RecordQuery) -> list[ObjectRecord]:
        with self._lock:
            matched = [
                record.copy()
                for _, record in sorted(self._records.items())
                if query.matches(record)
            ]
        if query.limit is not None:
            matched = matched[: query.limit]
        return matched

    def filter_missing(self, contenthashes: Iterable[str]) -> list[str]:
        with self._lock:
            return [h for h in contenthashes if h not in self._records]

    def iter_records(self, batch_size: int = 1000) -> Iterator[ObjectRecord]:
        with self._lock:
            records = [record.copy() for _, record in sorted(self._records.items())]
        yield from records

    def count_by_location(self) -> dict[ObjectLocation | None, int]:
        with self._lock:
            return dict(Counter(r.location for r in self._records.values()))


# =============================================================================
# Database Registry
# =============================================================================


def _to_record(model: ObjectModel) -> ObjectRecord:
    return ObjectRecord(
        contenthash=model.contenthash,
        location=ObjectLocation.parse(model.location),
        filesize=model.filesize,
        timecreated=model.timecreated,
        timeduplicated=model.timeduplicated,
        timeorphaned=model.timeorphaned,
    )


def _location_value(location: ObjectLocation | None) -> str | None:
    return location.value if location is not None else None


class DatabaseObjectRegistry(ObjectRegistry):
    """SQL registry using SQLAlchemy.

    Supports PostgreSQL, MySQL, SQLite, and other SQLAlchemy-compatible
    databases.

    Example:
        >>> registry = DatabaseObjectRegistry("postgresql://user:pass@db/app")
        >>> registry.count_by_location()
        {<ObjectLocation.LOCAL: 'local'>: 1200, ...}

    Args:
        connection_url: SQLAlchemy connection URL. Ignored if ``engine`` is given.
        engine: Existing engine to share with the lock service.
        echo: Whether to echo SQL statements.
        create_tables: Whether to create tables on initialization.
    """

    def __init__(
        self,
        connection_url: str = "sqlite:///objectfs.db",
        engine: Engine | None = None,
        echo: bool = False,
        create_tables: bool = True,
    ) -> None:
        super().__init__()
        self._connection_url = connection_url
        self._engine = engine
        self._owns_engine = engine is None
        self._echo = echo
        self._create_tables = create_tables
        self._session_factory: Any = None

    @property
    def engine(self) -> Engine:
        self.initialize()
        return self._engine

    def _do_initialize(self) -> None:
        if self._engine is None:
            self._engine = create_db_engine(
                self._connection_url,
                echo=self._echo,
                create_tables=self._create_tables,
            )
        elif self._create_tables:
            try:
                ObjectModel.metadata.create_all(self._engine)
            except SQLAlchemyError as e:
                raise RegistryConnectionError(str(e)) from e
        self._session_factory = sessionmaker(bind=self._engine)

    def close(self) -> None:
        if self._engine is not None and self._owns_engine:
            self._engine.dispose()

    def _get_session(self) -> Any:
        self.initialize()
        return self._session_factory()

    def get(self, contenthash: str) -> ObjectRecord | None:
        try:
            with self._get_session() as session:
                model = (
                    session.query(ObjectModel)
                    .filter(ObjectModel.contenthash == contenthash)
                    .first()
                )
                return _to_record(model) if model else None
        except SQLAlchemyError as e:
            raise RegistryConnectionError(str(e)) from e

    def create(self, record: ObjectRecord, now: datetime | None = None) -> ObjectRecord:
        validate_contenthash(record.contenthash)
        _validate_filesize(record.filesize)
        record = stamp_new_record(record, now or datetime.now())
        try:
            with self._get_session() as session:
                session.add(
                    ObjectModel(
                        contenthash=record.contenthash,
                        location=_location_value(record.location),
                        filesize=record.filesize,
                        timecreated=record.timecreated,
                        timeduplicated=record.timeduplicated,
                        timeorphaned=record.timeorphaned,
                    )
                )
                session.commit()
        except IntegrityError as e:
            existing = self.get(record.contenthash)
            raise ConcurrentUpdateError(
                record.contenthash, None, existing.location if existing else None
            ) from e
        except SQLAlchemyError as e:
            raise RegistryConnectionError(str(e)) from e
        return record.copy()

    def update_location(
        self,
        contenthash: str,
        location: ObjectLocation,
        expected_location: ObjectLocation | None = UNSET,
        now: datetime | None = None,
    ) -> ObjectRecord:
        try:
            with self._get_session() as session:
                model = (
                    session.query(ObjectModel)
                    .filter(ObjectModel.contenthash == contenthash)
                    .first()
                )
                if model is None:
                    raise RecordNotFoundError(contenthash)

                record = _to_record(model)
                if (
                    expected_location is not UNSET
                    and record.location != expected_location
                ):
                    raise ConcurrentUpdateError(
                        contenthash, expected_location, record.location
                    )
                if record.location == location:
                    return record

                updated = apply_location_change(record, location, now or datetime.now())

                # Conditional on the location read above, so a writer that
                # slipped in between the read and this update is detected.
                current = ObjectModel.location == model.location
                if model.location is None:
                    current = ObjectModel.location.is_(None)
                count = (
                    session.query(ObjectModel)
                    .filter(ObjectModel.contenthash == contenthash, current)
                    .update(
                        {
                            ObjectModel.location: location.value,
                            ObjectModel.timeduplicated: updated.timeduplicated,
                            ObjectModel.timeorphaned: updated.timeorphaned,
                        },
                        synchronize_session=False,
                    )
                )
                if count == 0:
                    session.rollback()
                    actual = self.get(contenthash)
                    raise ConcurrentUpdateError(
                        contenthash,
                        record.location,
                        actual.location if actual else None,
                    )
                session.commit()
                return updated
        except SQLAlchemyError as e:
            raise RegistryConnectionError(str(e)) from e

    def update_filesize(self, contenthash: str, filesize: int | None) -> ObjectRecord:
        _validate_filesize(filesize)
        try:
            with self._get_session() as session:
                model = (
                    session.query(ObjectModel)
                    .filter(ObjectModel.contenthash == contenthash)
                    .first()
                )
                if model is None:
                    raise RecordNotFoundError(contenthash)
                if filesize is not None:
                    model.filesize = filesize
                    session.commit()
                return _to_record(model)
        except SQLAlchemyError as e:
            raise RegistryConnectionError(str(e)) from e

    def delete(self, contenthash: str) -> bool:
        try:
            with self._get_session() as session:
                deleted = (
                    session.query(ObjectModel)
                    .filter(ObjectModel.contenthash == contenthash)
                    .delete()
                )
                session.commit()
                return deleted > 0
        except SQLAlchemyError as e:
            raise RegistryConnectionError(str(e)) from e

    def query(self, query: RecordQuery) -> list[ObjectRecord]:
        try:
            with self._get_session() as session:
                q = session.query(ObjectModel)

                if query.locations is not None:
                    values = [loc.value for loc in query.locations if loc is not None]
                    clauses = [ObjectModel.location.in_(values)] if values else []
                    if None in query.locations:
                        clauses.append(ObjectModel.location.is_(None))
                    q = q.filter(or_(*clauses)) if clauses else q.filter(false())
                if query.exclude_locations:
                    q = q.filter(
                        or_(
                            ObjectModel.location.is_(None),
                            ObjectModel.location.notin_(
                                [loc.value for loc in query.exclude_locations]
                            ),
                        )
                    )
                if query.size_gt is not None:
                    q = q.filter(ObjectModel.filesize > query.size_gt)
                if query.size_lt is not None:
                    q = q.filter(ObjectModel.filesize < query.size_lt)
                if query.size_le is not None:
                    q = q.filter(ObjectModel.filesize <= query.size_le)
                if query.created_before is not None:
                    q = q.filter(ObjectModel.timecreated <= query.created_before)
                if query.duplicated_before is not None:
                    q = q.filter(ObjectModel.timeduplicated <= query.duplicated_before)
                if query.orphaned_before is not None:
                    q = q.filter(ObjectModel.timeorphaned <= query.orphaned_before)

                q = q.order_by(ObjectModel.contenthash.asc())
                if query.limit is not None:
                    q = q.limit(query.limit)

                return [_to_record(model) for model in q.all()]
        except SQLAlchemyError as e:
            raise RegistryConnectionError(str(e)) from e

    def filter_missing(self, contenthashes: Iterable[str]) -> list[str]:
        hashes = list(contenthashes)
        found: set[str] = set()
        try:
            with self._get_session() as session:
                for start in range(0, len(hashes), _IN_CHUNK):
                    chunk = hashes[start : start + _IN_CHUNK]
                    rows = (
                        session.query(ObjectModel.contenthash)
                        .filter(ObjectModel.contenthash.in_(chunk))
                        .all()
                    )
                    found.update(row[0] for row in rows)
        except SQLAlchemyError as e:
            raise RegistryConnectionError(str(e)) from e
        return [h for h in hashes if h not in found]

    def iter_records(self, batch_size: int = 1000) -> Iterator[ObjectRecord]:
        last_hash = ""
        while True:
            try:
                with self._get_session() as session:
                    models = (
                        session.query(ObjectModel)
                        .filter(ObjectModel.contenthash > last_hash)
                        .order_by(ObjectModel.contenthash.asc())
                        .limit(batch_size)
                        .all()
                    )
                    batch = [_to_record(model) for model in models]
            except SQLAlchemyError as e:
                raise RegistryConnectionError(str(e)) from e

            if not batch:
                return
            yield from batch
            last_hash = batch[-1].contenthash

    def count_by_location(self) -> dict[ObjectLocation | None, int]:
        try:
            with self._get_session() as session:
                rows = (
                    session.query(ObjectModel.location, func.count(ObjectModel.id))
                    .group_by(ObjectModel.location)
                    .all()
                )
        except SQLAlchemyError as e:
            raise RegistryConnectionError(str(e)) from e
        return {ObjectLocation.parse(location): count for location, count in rows}


def get_registry(connection_url: str | None = None, **kwargs: Any) -> ObjectRegistry:
    """Create a registry. No URL gives an in-memory registry."""
    if connection_url is None:
        return InMemoryObjectRegistry()
    return DatabaseObjectRegistry(connection_url, **kwargs)

