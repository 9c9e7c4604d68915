"""Structured event logging for object movements.

The tiered file system and the manipulators report what they do as
structured events: an object was read, an object moved between locations,
a candidate query returned some objects, a lock was (or wasn't) acquired,
an object failed. An ``ObjectLogger`` decides what to do with them:

- AggregateLogger: collects per-transition statistics and emits a summary
- RealTimeLogger: emits one log line per event
- NullLogger: discards everything

Human readable text is produced only here, through the standard
``logging`` module.
"""

from __future__ import annotations

import logging
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import TYPE_CHECKING, Any

from objectfs.base import ConfigurationError, ObjectLocation, location_to_string

if TYPE_CHECKING:
    from objectfs.locking import LockHandle

logger = logging.getLogger(__name__)


def format_bytes(size: float) -> str:
    """Format byte size as human readable (e.g. "1.5 MB")."""
    for unit in ["B", "KB", "MB", "GB", "TB"]:
        if abs(size) < 1024:
            return f"{size:.1f} {unit}"
        size /= 1024
    return f"{size:.1f} PB"


@dataclass
class ObjectStatistic:
    """Running count and byte total under one key."""

    key: str
    count: int = 0
    total_size: int = 0

    def add(self, count: int = 1, size: int | None = 0) -> None:
        self.count += count
        self.total_size += size or 0

    def to_dict(self) -> dict[str, Any]:
        return {"key": self.key, "count": self.count, "total_size": self.total_size}


Transition = tuple["ObjectLocation | None", "ObjectLocation | None"]


@dataclass
class RunSummary:
    """Aggregate result of one manipulator run.

    Attributes:
        name: Manipulator name.
        candidates: Number of candidates handed to the run.
        succeeded: Objects whose operation completed, with or without a
            location change.
        failed: Objects whose operation raised.
        skipped: Objects skipped because they were locked, no longer
            eligible, or lost a concurrent update.
        bytes_moved: Total size of objects whose location changed.
        deadline_reached: Whether the run stopped at its time limit.
        transitions: Per (from, to) location statistics.
        errors: ``(contenthash, message)`` per failed object.
    """

    name: str
    candidates: int = 0
    succeeded: int = 0
    failed: int = 0
    skipped: int = 0
    bytes_moved: int = 0
    deadline_reached: bool = False
    started_at: datetime = field(default_factory=datetime.now)
    finished_at: datetime | None = None
    transitions: dict[Transition, ObjectStatistic] = field(default_factory=dict)
    errors: list[tuple[str, str]] = field(default_factory=list)

    @property
    def processed(self) -> int:
        """Objects the run reached, whatever the outcome."""
        return self.succeeded + self.failed + self.skipped

    @property
    def remaining(self) -> int:
        """Candidates not reached before the run ended."""
        return max(self.candidates - self.processed, 0)

    @property
    def elapsed(self) -> float:
        end = self.finished_at or datetime.now()
        return (end - self.started_at).total_seconds()

    @property
    def moved(self) -> int:
        return sum(
            stat.count
            for (initial, final), stat in self.transitions.items()
            if initial != final
        )

    def record_transition(
        self,
        initial: ObjectLocation | None,
        final: ObjectLocation | None,
        size: int | None = 0,
    ) -> None:
        key = (initial, final)
        stat = self.transitions.get(key)
        if stat is None:
            stat = ObjectStatistic(
                f"{location_to_string(initial)} -> {location_to_string(final)}"
            )
            self.transitions[key] = stat
        stat.add(1, size)
        if initial != final:
            self.bytes_moved += size or 0

    def finish(self) -> "RunSummary":
        self.finished_at = datetime.now()
        return self

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "name": self.name,
            "candidates": self.candidates,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "skipped": self.skipped,
            "remaining": self.remaining,
            "bytes_moved": self.bytes_moved,
            "deadline_reached": self.deadline_reached,
            "elapsed_seconds": round(self.elapsed, 3),
            "transitions": {
                stat.key: {"count": stat.count, "total_size": stat.total_size}
                for stat in self.transitions.values()
            },
            "errors": [{"contenthash": h, "error": e} for h, e in self.errors],
        }


# =============================================================================
# Loggers
# =============================================================================


class ObjectLogger(ABC):
    """Abstract base class for object event loggers.

    Implementations must be thread-safe: a run with several workers calls
    them concurrently.
    """

    @abstractmethod
    def log_object_read(
        self,
        read_name: str,
        object_path: str,
        object_size: int | None = 0,
        duration: float | None = None,
    ) -> None:
        pass

    @abstractmethod
    def log_object_move(
        self,
        move_name: str,
        initial_location: ObjectLocation | None,
        final_location: ObjectLocation | None,
        contenthash: str,
        object_size: int | None = 0,
        duration: float | None = None,
    ) -> None:
        pass

    @abstractmethod
    def log_object_query(
        self,
        query_name: str,
        object_count: int,
        object_sum: int | None = 0,
        duration: float | None = None,
    ) -> None:
        pass

    def log_lock_timing(
        self,
        key: str,
        handle: "LockHandle | None",
        wait_time: float,
    ) -> None:
        pass

    def log_error(self, contenthash: str, operation: str, error: BaseException) -> None:
        """Report a per-object failure. Always emitted, whatever the mode."""
        logger.error(f"{operation} failed for {contenthash}: {error}")

    def log_summary(self, summary: RunSummary) -> None:
        """Emit the summary of a finished run."""
        logger.info(
            f"{summary.name}: {summary.succeeded} succeeded, {summary.failed} failed, "
            f"{summary.skipped} skipped of {summary.candidates} candidates, "
            f"{format_bytes(summary.bytes_moved)} moved in {summary.elapsed:.2f}s"
        )


class NullLogger(ObjectLogger):
    """Logger that discards object events."""

    def log_object_read(
        self,
        read_name: str,
        object_path: str,
        object_size: int | None = 0,
        duration: float | None = None,
    ) -> None:
        pass

    def log_object_move(
        self,
        move_name: str,
        initial_location: ObjectLocation | None,
        final_location: ObjectLocation | None,
        contenthash: str,
        object_size: int | None = 0,
        duration: float | None = None,
    ) -> None:
        pass

    def log_object_query(
        self,
        query_name: str,
        object_count: int,
        object_sum: int | None = 0,
        duration: float | None = None,
    ) -> None:
        pass

    def log_summary(self, summary: RunSummary) -> None:
        pass


class AggregateLogger(ObjectLogger):
    """Collects statistics and reports them once, at the end of a run.

    Example:
        >>> events = AggregateLogger()
        >>> events.log_object_move("push", LOCAL, DUPLICATED, contenthash, 2048)
        >>> events.get_move_statistics()[(LOCAL, DUPLICATED)].count
        1
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._movement: str | None = None
        self._move_statistics: dict[Transition, ObjectStatistic] = {}
        self._read_statistics: dict[str, ObjectStatistic] = {}
        self._query_statistics: dict[str, ObjectStatistic] = {}
        self._lock_acquired = 0
        self._lock_misses = 0
        self._lock_wait_seconds = 0.0

    def log_object_read(
        self,
        read_name: str,
        object_path: str,
        object_size: int | None = 0,
        duration: float | None = None,
    ) -> None:
        with self._lock:
            stat = self._read_statistics.setdefault(read_name, ObjectStatistic(read_name))
            stat.add(1, object_size)

    def log_object_move(
        self,
        move_name: str,
        initial_location: ObjectLocation | None,
        final_location: ObjectLocation | None,
        contenthash: str,
        object_size: int | None = 0,
        duration: float | None = None,
    ) -> None:
        with self._lock:
            if self._movement is None:
                self._movement = move_name
            key = (initial_location, final_location)
            stat = self._move_statistics.setdefault(key, ObjectStatistic(move_name))
            stat.add(1, object_size)

    def log_object_query(
        self,
        query_name: str,
        object_count: int,
        object_sum: int | None = 0,
        duration: float | None = None,
    ) -> None:
        with self._lock:
            stat = self._query_statistics.setdefault(
                query_name, ObjectStatistic(query_name)
            )
            stat.add(object_count, object_sum)

    def log_lock_timing(
        self,
        key: str,
        handle: "LockHandle | None",
        wait_time: float,
    ) -> None:
        with self._lock:
            if handle is None:
                self._lock_misses += 1
            else:
                self._lock_acquired += 1
            self._lock_wait_seconds += wait_time

    def get_move_statistics(self) -> dict[Transition, ObjectStatistic]:
        with self._lock:
            return dict(self._move_statistics)

    def get_read_statistics(self) -> dict[str, ObjectStatistic]:
        with self._lock:
            return dict(self._read_statistics)

    def get_query_statistics(self) -> dict[str, ObjectStatistic]:
        with self._lock:
            return dict(self._query_statistics)

    @property
    def lock_misses(self) -> int:
        return self._lock_misses

    @property
    def lock_wait_seconds(self) -> float:
        return self._lock_wait_seconds

    def output_move_statistics(self, elapsed: float | None = None) -> list[str]:
        """Emit the location change summary. Returns the emitted lines."""
        with self._lock:
            movement = self._movement or "No objects moved"
            items = list(self._move_statistics.items())

        header = f"{movement}."
        if elapsed is not None:
            header += f" Total time taken: {elapsed:.2f} seconds."
        lines = [f"{header} Location change summary:"]
        for (initial, final), stat in items:
            lines.append(
                f"{location_to_string(initial)} -> {location_to_string(final)}. "
                f"Objects moved: {stat.count}. "
                f"Total size: {format_bytes(stat.total_size)}."
            )
        for line in lines:
            logger.info(line)
        return lines

    def log_summary(self, summary: RunSummary) -> None:
        self.output_move_statistics(summary.elapsed)
        super().log_summary(summary)


class RealTimeLogger(ObjectLogger):
    """Emits one log line per event."""

    def log_object_read(
        self,
        read_name: str,
        object_path: str,
        object_size: int | None = 0,
        duration: float | None = None,
    ) -> None:
        message = f"The read action '{read_name}' was used on object with path {object_path}."
        message += _timing(duration) + _size(object_size)
        logger.info(message)

    def log_object_move(
        self,
        move_name: str,
        initial_location: ObjectLocation | None,
        final_location: ObjectLocation | None,
        contenthash: str,
        object_size: int | None = 0,
        duration: float | None = None,
    ) -> None:
        message = (
            f"The move action '{move_name}' was performed on object with hash "
            f"{contenthash}."
        )
        initial = location_to_string(initial_location)
        final = location_to_string(final_location)
        if initial == final:
            message += f" The object location did not change from {initial}."
        else:
            message += f" The object location changed from {initial} to {final}."
        message += _timing(duration) + _size(object_size)
        logger.info(message)

    def log_object_query(
        self,
        query_name: str,
        object_count: int,
        object_sum: int | None = 0,
        duration: float | None = None,
    ) -> None:
        message = (
            f"The query action '{query_name}' was performed. "
            f"{object_count} objects were returned."
        )
        message += _timing(duration)
        logger.info(message)

    def log_lock_timing(
        self,
        key: str,
        handle: "LockHandle | None",
        wait_time: float,
    ) -> None:
        if handle is not None:
            logger.info(f"Lock on {key} acquired in {wait_time:.3f} seconds.")
        else:
            logger.info(f"Can't acquire lock on {key}. Time waited {wait_time:.3f} seconds.")


def _timing(duration: float | None) -> str:
    if duration and duration > 0:
        return f" Time taken was: {duration:.3f} seconds."
    return ""


def _size(object_size: int | None) -> str:
    if object_size and object_size > 0:
        return f" The object's size was {format_bytes(object_size)}."
    return ""


_LOGGERS: dict[str, type[ObjectLogger]] = {
    "aggregate": AggregateLogger,
    "realtime": RealTimeLogger,
    "null": NullLogger,
}


def get_logger(mode: str = "aggregate") -> ObjectLogger:
    """Create an object logger for a logging mode."""
    try:
        return _LOGGERS[mode]()
    except KeyError:
        raise ConfigurationError(
            f"Unknown logging mode: {mode}. Available: {', '.join(_LOGGERS)}"
        )
