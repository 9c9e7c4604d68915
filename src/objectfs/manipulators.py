"""Manipulators: time-boxed batch workers that move objects between locations.

Every manipulator follows the same loop over the candidates of one batch:

1. stop once the run deadline has passed (checked before each object, never
   during one, so an in-flight transfer always completes or fails cleanly)
2. take the object lock, skipping the object if someone else holds it
3. re-read the registry record and re-check eligibility under the lock
4. perform the transition through the tiered file system
5. persist the resulting location with a compare-and-set update

A failure on one object is logged and counted and the batch moves on. Only
a lost registry connection escapes, since it makes the whole run
meaningless. Workers in a pool stop picking up objects once it happens.

Example:
    >>> pusher = Pusher(fs, registry, config, PushCandidates(config, registry))
    >>> summary = pusher.run()
    >>> print(summary.succeeded, summary.failed, summary.bytes_moved)
"""

from __future__ import annotations

import logging
import threading
import time
from abc import ABC, abstractmethod
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Callable, Sequence

from objectfs.base import (
    Candidate,
    ConcurrentUpdateError,
    ObjectLocation,
    ObjectRecord,
    RegistryConnectionError,
    StructuralError,
)
from objectfs.candidates import CandidateSelector
from objectfs.config import ObjectFSConfig
from objectfs.filesystem import TieredFileSystem
from objectfs.log import ObjectLogger, RunSummary
from objectfs.metadata import FileMetadataSource
from objectfs.registry import ObjectRegistry

logger = logging.getLogger(__name__)


class Outcome(Enum):
    """Result of processing one candidate."""

    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"
    DEADLINE = "deadline"  # Not reached before the run deadline
    ABORTED = "aborted"  # Abandoned after the registry was lost


@dataclass
class ObjectResult:
    """What happened to one candidate."""

    contenthash: str
    outcome: Outcome
    initial: ObjectLocation | None = None
    final: ObjectLocation | None = None
    filesize: int | None = None
    error: BaseException | None = None


# =============================================================================
# Base Manipulator
# =============================================================================


class Manipulator(ABC):
    """Abstract base class for manipulators.

    Args:
        filesystem: Tiered file system performing the transitions.
        registry: Registry holding object locations.
        config: Configuration snapshot for the run.
        selector: Selector producing this manipulator's candidates. Also
            used to re-check eligibility under the object lock.
        logger: Object logger. Defaults to the file system's logger.
        clock: Source of the current time for registry timestamps.
    """

    name: str = "manipulator"

    def __init__(
        self,
        filesystem: TieredFileSystem,
        registry: ObjectRegistry,
        config: ObjectFSConfig,
        selector: CandidateSelector,
        logger: ObjectLogger | None = None,
        clock: Callable[[], datetime] = datetime.now,
    ) -> None:
        self._fs = filesystem
        self._registry = registry
        self._config = config
        self._selector = selector
        self._logger = logger or filesystem.logger
        self._clock = clock
        self._deadline: float | None = None
        self._aborted = threading.Event()

    @property
    def selector(self) -> CandidateSelector:
        return self._selector

    def can_execute(self) -> bool:
        """Whether the manipulator is enabled by the current configuration."""
        return True

    @abstractmethod
    def manipulate_object(self, record: ObjectRecord) -> ObjectLocation | None:
        """Perform the transition for one locked, eligible object.

        Returns:
            The object's new location.
        """
        pass

    # -------------------------------------------------------------------------
    # Batch Execution
    # -------------------------------------------------------------------------

    def run(self) -> RunSummary:
        """Select one batch and execute it."""
        if not self.can_execute():
            logger.info(f"{self.name}: disabled by configuration, exiting early")
            return self._finish(RunSummary(name=self.name))
        return self.execute(self._selector.get())

    def execute(self, candidates: Sequence[Candidate]) -> RunSummary:
        """Process candidates until done or the deadline passes.

        Raises:
            RegistryConnectionError: If the registry becomes unreachable.
        """
        summary = RunSummary(name=self.name, candidates=len(candidates))
        self._deadline = time.monotonic() + self._config.max_task_runtime
        self._aborted.clear()

        if not self.can_execute():
            logger.info(f"{self.name}: disabled by configuration, exiting early")
            return self._finish(summary)
        if not candidates:
            logger.info(f"{self.name}: no candidate objects found")
            return self._finish(summary)

        if self._config.max_workers > 1:
            results = self._execute_parallel(candidates)
        else:
            results = self._execute_sequential(candidates)

        for result in results:
            self._record(summary, result)
        return self._finish(summary)

    def _execute_sequential(self, candidates: Sequence[Candidate]) -> list[ObjectResult]:
        results = []
        for candidate in candidates:
            result = self.process(candidate)
            results.append(result)
            if result.outcome is Outcome.DEADLINE:
                break
        return results

    def _execute_parallel(self, candidates: Sequence[Candidate]) -> list[ObjectResult]:
        with ThreadPoolExecutor(
            max_workers=self._config.max_workers,
            thread_name_prefix=f"objectfs-{self.name}",
        ) as executor:
            futures = [executor.submit(self.process, c) for c in candidates]
            # Collected in submission order so a registry failure surfaces
            # the same way it does sequentially.
            try:
                return [future.result() for future in futures]
            except RegistryConnectionError:
                # Nothing else can be recorded, drop what is still queued.
                executor.shutdown(wait=True, cancel_futures=True)
                raise

    def has_exceeded_run_time(self) -> bool:
        return self._deadline is not None and time.monotonic() >= self._deadline

    def process(self, candidate: Candidate) -> ObjectResult:
        """Process one candidate under its object lock."""
        contenthash = candidate.contenthash
        if self._aborted.is_set():
            return ObjectResult(contenthash, Outcome.ABORTED)
        if self.has_exceeded_run_time():
            return ObjectResult(contenthash, Outcome.DEADLINE)

        try:
            with self._fs.acquire_object_lock(
                contenthash, self._config.lock_timeout
            ) as handle:
                if handle is None:
                    # Being manipulated elsewhere.
                    return ObjectResult(contenthash, Outcome.SKIPPED)

                record = self._registry.get(contenthash)
                if not self._selector.is_eligible(record):
                    return ObjectResult(contenthash, Outcome.SKIPPED)
                return self._apply(candidate, record)
        except RegistryConnectionError:
            self._aborted.set()
            raise
        except ConcurrentUpdateError as e:
            logger.debug(f"{self.name}: {e}")
            return ObjectResult(contenthash, Outcome.SKIPPED, error=e)
        except Exception as e:
            self._logger.log_error(contenthash, self.name, e)
            return ObjectResult(
                contenthash, Outcome.FAILED, filesize=candidate.filesize, error=e
            )

    def _apply(self, candidate: Candidate, record: ObjectRecord | None) -> ObjectResult:
        initial = record.location
        final = self.manipulate_object(record)
        if final is None:
            final = initial

        if final != initial:
            self._registry.update_location(
                record.contenthash,
                final,
                expected_location=initial,
                now=self._clock(),
            )

        result = ObjectResult(
            record.contenthash, Outcome.SUCCEEDED, initial, final, record.filesize
        )
        if final is ObjectLocation.ERROR and initial is not ObjectLocation.ERROR:
            # The location change is kept but the object counts as failed.
            result.outcome = Outcome.FAILED
            result.error = StructuralError(
                record.contenthash, "no verifiable copy on either tier"
            )
            self._logger.log_error(record.contenthash, self.name, result.error)
        return result

    def _record(self, summary: RunSummary, result: ObjectResult) -> None:
        if result.outcome is Outcome.ABORTED:
            return
        if result.outcome is Outcome.DEADLINE:
            summary.deadline_reached = True
            return
        if result.outcome is Outcome.SKIPPED:
            summary.skipped += 1
            return

        if result.outcome is Outcome.SUCCEEDED:
            summary.succeeded += 1
        else:
            summary.failed += 1
            summary.errors.append((result.contenthash, str(result.error)))

        if result.initial is not None or result.final is not None:
            summary.record_transition(result.initial, result.final, result.filesize)

    def _finish(self, summary: RunSummary) -> RunSummary:
        summary.finish()
        self._logger.log_summary(summary)
        return summary


# =============================================================================
# Manipulators
# =============================================================================


class Checker(Manipulator):
    """Creates registry records for content the registry doesn't know yet.

    The record gets the ground-truth location, the size reported by the
    file metadata and the creation time of its oldest file.
    """

    name = "checker"

    def __init__(
        self,
        filesystem: TieredFileSystem,
        registry: ObjectRegistry,
        config: ObjectFSConfig,
        selector: CandidateSelector,
        metadata: FileMetadataSource,
        logger: ObjectLogger | None = None,
        clock: Callable[[], datetime] = datetime.now,
    ) -> None:
        super().__init__(filesystem, registry, config, selector, logger, clock)
        self._metadata = metadata

    def manipulate_object(self, record: ObjectRecord) -> ObjectLocation | None:
        return self._fs.get_verified_location(record.contenthash)

    def _apply(self, candidate: Candidate, record: ObjectRecord | None) -> ObjectResult:
        contenthash = candidate.contenthash
        summary = self._metadata.get_summary(contenthash)
        filesize = summary.filesize if summary else candidate.filesize
        timecreated = summary.timecreated if summary else None

        location = self.manipulate_object(ObjectRecord(contenthash, filesize=filesize))
        now = self._clock()
        self._registry.create(
            ObjectRecord(
                contenthash=contenthash,
                location=location,
                filesize=filesize,
                timecreated=timecreated or now,
            ),
            now=now,
        )
        return ObjectResult(contenthash, Outcome.SUCCEEDED, None, location, filesize)


class Pusher(Manipulator):
    """Copies local objects to the remote tier."""

    name = "pusher"

    def manipulate_object(self, record: ObjectRecord) -> ObjectLocation | None:
        return self._fs.copy_local_to_remote(record.contenthash, record.filesize)


class Puller(Manipulator):
    """Brings small remote objects back to the local tier.

    EXTERNAL objects are copied back and become DUPLICATED. DUPLICATED
    objects selected because remote deletion is enabled lose their remote
    copy and become LOCAL.
    """

    name = "puller"

    def manipulate_object(self, record: ObjectRecord) -> ObjectLocation | None:
        if record.location is ObjectLocation.DUPLICATED:
            return self._fs.delete_remote(record.contenthash, record.filesize)
        return self._fs.copy_remote_to_local(record.contenthash, record.filesize)


class Deleter(Manipulator):
    """Deletes local copies of duplicated objects past the consistency delay."""

    name = "deleter"

    def can_execute(self) -> bool:
        return self._config.delete_local

    def manipulate_object(self, record: ObjectRecord) -> ObjectLocation | None:
        return self._fs.delete_local(record.contenthash, record.filesize)


class Recoverer(Manipulator):
    """Re-probes ERROR objects and restores their ground-truth location."""

    name = "recoverer"

    def manipulate_object(self, record: ObjectRecord) -> ObjectLocation | None:
        return self._fs.get_verified_location(record.contenthash)


class Orphaner(Manipulator):
    """Marks records no logical file references any more as ORPHANED."""

    name = "orphaner"

    def manipulate_object(self, record: ObjectRecord) -> ObjectLocation | None:
        return ObjectLocation.ORPHANED


class OrphanCleaner(Manipulator):
    """Deletes orphaned records once their grace delay has passed.

    An object referenced again since it was orphaned gets its ground-truth
    location back instead.
    """

    name = "orphan_cleaner"

    def __init__(
        self,
        filesystem: TieredFileSystem,
        registry: ObjectRegistry,
        config: ObjectFSConfig,
        selector: CandidateSelector,
        metadata: FileMetadataSource,
        logger: ObjectLogger | None = None,
        clock: Callable[[], datetime] = datetime.now,
    ) -> None:
        super().__init__(filesystem, registry, config, selector, logger, clock)
        self._metadata = metadata

    def can_execute(self) -> bool:
        return self._config.orphan_cleanup_enabled

    def manipulate_object(self, record: ObjectRecord) -> ObjectLocation | None:
        return self._fs.get_verified_location(record.contenthash)

    def _apply(self, candidate: Candidate, record: ObjectRecord | None) -> ObjectResult:
        if self._metadata.reference_count(record.contenthash) > 0:
            return super()._apply(candidate, record)

        self._registry.delete(record.contenthash)
        return ObjectResult(
            record.contenthash,
            Outcome.SUCCEEDED,
            ObjectLocation.ORPHANED,
            None,
            record.filesize,
        )
