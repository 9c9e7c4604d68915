"""Read-only view of the host application's file metadata.

The host owns the catalog mapping logical files to content hashes. objectfs
only asks it two kinds of questions: which content hashes exist (with their
size and creation time), and how many logical files still reference a hash.
It never writes to it.
"""

from __future__ import annotations

import itertools
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Iterable, Iterator

from sqlalchemy import func
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from objectfs.base import RegistryConnectionError, validate_contenthash
from objectfs.models import FileModel

_IN_CHUNK = 500


@dataclass(frozen=True)
class ContentSummary:
    """Aggregated facts about one content hash.

    Attributes:
        contenthash: The content hash.
        filesize: Largest size reported by any referencing file.
        timecreated: Creation time of the oldest referencing file.
    """

    contenthash: str
    filesize: int
    timecreated: datetime | None = None


class FileMetadataSource(ABC):
    """Abstract base class for metadata collaborators."""

    @abstractmethod
    def iter_content(self, since: datetime | None = None) -> Iterator[ContentSummary]:
        """Iterate distinct content hashes in hash order.

        Args:
            since: Only hashes with a file created at or after this time.
        """
        pass

    @abstractmethod
    def reference_count(self, contenthash: str) -> int:
        """Number of logical files referencing a hash."""
        pass

    def get_summary(self, contenthash: str) -> ContentSummary | None:
        """Summary for one hash, or None if nothing references it."""
        for summary in self.iter_content():
            if summary.contenthash == contenthash:
                return summary
        return None

    def unreferenced(self, contenthashes: Iterable[str]) -> list[str]:
        """Return the given hashes that no logical file references."""
        return [h for h in contenthashes if self.reference_count(h) == 0]


class InMemoryFileMetadataSource(FileMetadataSource):
    """Metadata kept in memory, for tests and embedding.

    Example:
        >>> metadata = InMemoryFileMetadataSource()
        >>> file_id = metadata.add_file(contenthash, 20480)
        >>> metadata.remove_file(file_id)
    """

    def __init__(self, clock: Callable[[], datetime] = datetime.now) -> None:
        self._clock = clock
        self._files: dict[int, tuple[str, int, datetime]] = {}
        self._ids = itertools.count(1)
        self._lock = threading.RLock()

    def add_file(
        self,
        contenthash: str,
        filesize: int,
        timecreated: datetime | None = None,
    ) -> int:
        """Register a logical file. Returns its id.

        ``timecreated`` defaults to the source's clock.
        """
        validate_contenthash(contenthash)
        with self._lock:
            file_id = next(self._ids)
            self._files[file_id] = (contenthash, filesize, timecreated or self._clock())
            return file_id

    def remove_file(self, file_id: int) -> bool:
        with self._lock:
            return self._files.pop(file_id, None) is not None

    def remove_hash(self, contenthash: str) -> int:
        """Remove every file referencing a hash. Returns the number removed."""
        with self._lock:
            ids = [i for i, (h, _, _) in self._files.items() if h == contenthash]
            for file_id in ids:
                del self._files[file_id]
            return len(ids)

    def iter_content(self, since: datetime | None = None) -> Iterator[ContentSummary]:
        with self._lock:
            files = list(self._files.values())

        summaries: dict[str, ContentSummary] = {}
        for contenthash, filesize, timecreated in files:
            current = summaries.get(contenthash)
            if current is None:
                summaries[contenthash] = ContentSummary(contenthash, filesize, timecreated)
            else:
                summaries[contenthash] = ContentSummary(
                    contenthash,
                    max(current.filesize, filesize),
                    min(current.timecreated, timecreated),
                )

        for contenthash in sorted(summaries):
            summary = summaries[contenthash]
            if since is not None and not any(
                h == contenthash and t >= since for h, _, t in files
            ):
                continue
            yield summary

    def reference_count(self, contenthash: str) -> int:
        with self._lock:
            return sum(1 for h, _, _ in self._files.values() if h == contenthash)


class DatabaseFileMetadataSource(FileMetadataSource):
    """Metadata read from the host's ``files`` table.

    Args:
        engine: SQLAlchemy engine connected to the host database.
        batch_size: Rows fetched per round trip while iterating.
    """

    def __init__(self, engine: Engine, batch_size: int = 1000) -> None:
        self._engine = engine
        self._session_factory = sessionmaker(bind=engine)
        self._batch_size = batch_size

    def _get_session(self) -> Any:
        return self._session_factory()

    def iter_content(self, since: datetime | None = None) -> Iterator[ContentSummary]:
        last_hash = ""
        while True:
            try:
                with self._get_session() as session:
                    q = session.query(
                        FileModel.contenthash,
                        func.max(FileModel.filesize),
                        func.min(FileModel.timecreated),
                    ).filter(FileModel.contenthash > last_hash)
                    if since is not None:
                        q = q.filter(FileModel.timecreated >= since)
                    rows = (
                        q.group_by(FileModel.contenthash)
                        .order_by(FileModel.contenthash.asc())
                        .limit(self._batch_size)
                        .all()
                    )
            except SQLAlchemyError as e:
                raise RegistryConnectionError(str(e)) from e

            if not rows:
                return
            for contenthash, filesize, timecreated in rows:
                yield ContentSummary(contenthash, int(filesize or 0), timecreated)
            last_hash = rows[-1][0]

    def get_summary(self, contenthash: str) -> ContentSummary | None:
        try:
            with self._get_session() as session:
                row = (
                    session.query(
                        func.count(FileModel.id),
                        func.max(FileModel.filesize),
                        func.min(FileModel.timecreated),
                    )
                    .filter(FileModel.contenthash == contenthash)
                    .one()
                )
        except SQLAlchemyError as e:
            raise RegistryConnectionError(str(e)) from e

        count, filesize, timecreated = row
        if not count:
            return None
        return ContentSummary(contenthash, int(filesize or 0), timecreated)

    def reference_count(self, contenthash: str) -> int:
        try:
            with self._get_session() as session:
                return (
                    session.query(FileModel)
                    .filter(FileModel.contenthash == contenthash)
                    .count()
                )
        except SQLAlchemyError as e:
            raise RegistryConnectionError(str(e)) from e

    def unreferenced(self, contenthashes: Iterable[str]) -> list[str]:
        hashes = list(contenthashes)
        referenced: set[str] = set()
        try:
            with self._get_session() as session:
                for start in range(0, len(hashes), _IN_CHUNK):
                    chunk = hashes[start : start + _IN_CHUNK]
                    rows = (
                        session.query(FileModel.contenthash)
                        .filter(FileModel.contenthash.in_(chunk))
                        .distinct()
                        .all()
                    )
                    referenced.update(row[0] for row in rows)
        except SQLAlchemyError as e:
            raise RegistryConnectionError(str(e)) from e
        return [h for h in hashes if h not in referenced]
