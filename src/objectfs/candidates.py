"""Candidate selectors.

A selector is a read-only query over the registry (and, for the checker and
orphaner, the file metadata) that returns at most one batch of objects
eligible for a single transition. Selectors never mutate state and never
claim what they return: two calls with no transition in between return the
same batch.

The registry may change between selection and execution, so every selector
also exposes ``is_eligible(record)`` which the manipulator calls on a fresh
read of the record under the object lock.

Example:
    >>> selector = PushCandidates(config, registry, max_upload_size=fs.maximum_upload_size)
    >>> for candidate in selector.get():
    ...     print(candidate.contenthash, candidate.filesize)
"""

from __future__ import annotations

import time
from abc import ABC, abstractmethod
from datetime import datetime, timedelta
from itertools import islice
from typing import Callable, Iterable, Iterator

from objectfs.base import Candidate, ObjectLocation, ObjectRecord
from objectfs.config import ObjectFSConfig
from objectfs.log import NullLogger, ObjectLogger
from objectfs.metadata import FileMetadataSource
from objectfs.registry import ObjectRegistry, RecordQuery

# Hashes looked up per registry or metadata round trip while scanning.
SCAN_CHUNK_SIZE = 1000


def _chunks(iterable: Iterable, size: int) -> Iterator[list]:
    iterator = iter(iterable)
    while True:
        chunk = list(islice(iterator, size))
        if not chunk:
            return
        yield chunk


# =============================================================================
# Base Selector
# =============================================================================


class CandidateSelector(ABC):
    """Abstract base class for candidate selectors.

    Args:
        config: Configuration snapshot for the run.
        registry: Object registry to query.
        logger: Receives one ``log_object_query`` event per selection.
        clock: Source of the current time.
    """

    query_name: str = "get_candidates"

    def __init__(
        self,
        config: ObjectFSConfig,
        registry: ObjectRegistry,
        logger: ObjectLogger | None = None,
        clock: Callable[[], datetime] = datetime.now,
    ) -> None:
        self._config = config
        self._registry = registry
        self._logger = logger or NullLogger()
        self._clock = clock

    @property
    def config(self) -> ObjectFSConfig:
        return self._config

    @property
    def batch_size(self) -> int:
        return self._config.batch_size

    def get(self) -> list[Candidate]:
        """Select one batch of candidates, in content hash order."""
        start = time.monotonic()
        candidates = self._select(self._clock())[: self.batch_size]
        self._logger.log_object_query(
            self.query_name,
            len(candidates),
            sum(c.filesize or 0 for c in candidates),
            time.monotonic() - start,
        )
        return candidates

    def _query(self, query: RecordQuery) -> list[Candidate]:
        return [
            Candidate(record.contenthash, record.filesize)
            for record in self._registry.query(query)
        ]

    @abstractmethod
    def _select(self, now: datetime) -> list[Candidate]:
        pass

    @abstractmethod
    def is_eligible(self, record: ObjectRecord | None) -> bool:
        """Whether a freshly read record still qualifies for the transition."""
        pass


# =============================================================================
# Registry Selectors
# =============================================================================


class PushCandidates(CandidateSelector):
    """Local objects above the size threshold and older than the minimum age.

    Args:
        max_upload_size: Objects at or above this size are never pushed.
    """

    query_name = "get_push_candidates"

    def __init__(
        self,
        config: ObjectFSConfig,
        registry: ObjectRegistry,
        logger: ObjectLogger | None = None,
        clock: Callable[[], datetime] = datetime.now,
        max_upload_size: int | None = None,
    ) -> None:
        super().__init__(config, registry, logger, clock)
        self._max_upload_size = max_upload_size

    def _build_query(self, now: datetime) -> RecordQuery:
        return RecordQuery(
            locations=(ObjectLocation.LOCAL, None),
            size_gt=self._config.size_threshold,
            size_lt=self._max_upload_size,
            created_before=now - timedelta(seconds=self._config.minimum_age),
            limit=self.batch_size,
        )

    def _select(self, now: datetime) -> list[Candidate]:
        return self._query(self._build_query(now))

    def is_eligible(self, record: ObjectRecord | None) -> bool:
        return record is not None and self._build_query(self._clock()).matches(record)


class PullCandidates(CandidateSelector):
    """Remote objects small enough to be served locally again.

    EXTERNAL objects at or below the pull threshold are always selected.
    When remote deletion is enabled, DUPLICATED objects at or below it are
    selected too once the consistency delay has passed, so their remote
    copy can be dropped.
    """

    query_name = "get_pull_candidates"

    def _build_queries(self, now: datetime) -> list[RecordQuery]:
        limit = self._config.effective_pull_threshold
        queries = [
            RecordQuery(
                locations=(ObjectLocation.EXTERNAL,),
                size_le=limit,
                limit=self.batch_size,
            )
        ]
        if self._config.delete_remote:
            queries.append(
                RecordQuery(
                    locations=(ObjectLocation.DUPLICATED,),
                    size_le=limit,
                    duplicated_before=now
                    - timedelta(seconds=self._config.consistency_delay),
                    limit=self.batch_size,
                )
            )
        return queries

    def _select(self, now: datetime) -> list[Candidate]:
        candidates: list[Candidate] = []
        for query in self._build_queries(now):
            candidates.extend(self._query(query))
        return sorted(candidates, key=lambda c: c.contenthash)

    def is_eligible(self, record: ObjectRecord | None) -> bool:
        if record is None:
            return False
        return any(q.matches(record) for q in self._build_queries(self._clock()))


class DeleteCandidates(CandidateSelector):
    """Duplicated objects above the size threshold past the consistency delay."""

    query_name = "get_delete_candidates"

    def _build_query(self, now: datetime) -> RecordQuery:
        return RecordQuery(
            locations=(ObjectLocation.DUPLICATED,),
            size_gt=self._config.size_threshold,
            duplicated_before=now - timedelta(seconds=self._config.consistency_delay),
            limit=self.batch_size,
        )

    def _select(self, now: datetime) -> list[Candidate]:
        return self._query(self._build_query(now))

    def is_eligible(self, record: ObjectRecord | None) -> bool:
        return record is not None and self._build_query(self._clock()).matches(record)


class RecoverCandidates(CandidateSelector):
    """Objects in the ERROR location."""

    query_name = "get_recover_candidates"

    def _select(self, now: datetime) -> list[Candidate]:
        return self._query(
            RecordQuery(locations=(ObjectLocation.ERROR,), limit=self.batch_size)
        )

    def is_eligible(self, record: ObjectRecord | None) -> bool:
        return record is not None and record.location is ObjectLocation.ERROR


class OrphanCleanupCandidates(CandidateSelector):
    """Orphaned records whose grace delay has passed."""

    query_name = "get_orphan_cleanup_candidates"

    def _build_query(self, now: datetime) -> RecordQuery:
        return RecordQuery(
            locations=(ObjectLocation.ORPHANED,),
            orphaned_before=now - timedelta(seconds=self._config.orphan_grace_delay),
            limit=self.batch_size,
        )

    def _select(self, now: datetime) -> list[Candidate]:
        if not self._config.orphan_cleanup_enabled:
            return []
        return self._query(self._build_query(now))

    def is_eligible(self, record: ObjectRecord | None) -> bool:
        if record is None or not self._config.orphan_cleanup_enabled:
            return False
        return self._build_query(self._clock()).matches(record)


# =============================================================================
# Metadata Selectors
# =============================================================================


class CheckCandidates(CandidateSelector):
    """Content hashes known to the file metadata but absent from the registry.

    Zero-length content is never registered. The checker works in larger
    batches than the other manipulators since creating a record is cheap.
    """

    query_name = "get_check_candidates"

    def __init__(
        self,
        config: ObjectFSConfig,
        registry: ObjectRegistry,
        metadata: FileMetadataSource,
        logger: ObjectLogger | None = None,
        clock: Callable[[], datetime] = datetime.now,
    ) -> None:
        super().__init__(config, registry, logger, clock)
        self._metadata = metadata

    @property
    def batch_size(self) -> int:
        return self._config.checker_batch_size

    def _select(self, now: datetime) -> list[Candidate]:
        candidates: list[Candidate] = []
        summaries = (s for s in self._metadata.iter_content() if s.filesize > 0)

        for chunk in _chunks(summaries, SCAN_CHUNK_SIZE):
            sizes = {s.contenthash: s.filesize for s in chunk}
            for contenthash in self._registry.filter_missing(sizes):
                candidates.append(Candidate(contenthash, sizes[contenthash]))
                if len(candidates) >= self.batch_size:
                    return candidates
        return candidates

    def is_eligible(self, record: ObjectRecord | None) -> bool:
        return record is None


class OrphanCandidates(CandidateSelector):
    """Records no logical file references any more, not yet marked ORPHANED."""

    query_name = "get_orphan_candidates"

    def __init__(
        self,
        config: ObjectFSConfig,
        registry: ObjectRegistry,
        metadata: FileMetadataSource,
        logger: ObjectLogger | None = None,
        clock: Callable[[], datetime] = datetime.now,
    ) -> None:
        super().__init__(config, registry, logger, clock)
        self._metadata = metadata

    def _select(self, now: datetime) -> list[Candidate]:
        candidates: list[Candidate] = []
        records = (
            r
            for r in self._registry.iter_records(SCAN_CHUNK_SIZE)
            if r.location is not ObjectLocation.ORPHANED
        )

        for chunk in _chunks(records, SCAN_CHUNK_SIZE):
            sizes = {r.contenthash: r.filesize for r in chunk}
            for contenthash in self._metadata.unreferenced(sizes):
                candidates.append(Candidate(contenthash, sizes[contenthash]))
                if len(candidates) >= self.batch_size:
                    return candidates
        return candidates

    def is_eligible(self, record: ObjectRecord | None) -> bool:
        if record is None or record.location is ObjectLocation.ORPHANED:
            return False
        return self._metadata.reference_count(record.contenthash) == 0
