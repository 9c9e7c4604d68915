"""Maintenance jobs that sit beside the manipulators.

- ``populate_filesizes`` back-fills registry records created without a size
- ``delete_empty_dirs`` prunes empty shard directories and stale temporary
  files from the local tier
"""

from __future__ import annotations

import logging

from objectfs.config import ObjectFSConfig
from objectfs.filesystem import TieredFileSystem
from objectfs.metadata import FileMetadataSource
from objectfs.registry import ObjectRegistry

logger = logging.getLogger(__name__)

# Updates per populate_filesizes call. Run it again to continue.
MAX_FILESIZE_UPDATES = 100000


def populate_filesizes(
    registry: ObjectRegistry,
    metadata: FileMetadataSource,
    max_updates: int = MAX_FILESIZE_UPDATES,
) -> int:
    """Fill in unknown or zero registry sizes from the file metadata.

    Records whose hash has no nonzero size in the metadata are left alone.

    Returns:
        Number of records updated.
    """
    updated = 0
    for record in registry.iter_records():
        if updated >= max_updates:
            logger.info(
                f"Reached {max_updates} filesize updates, run again to continue"
            )
            break
        if record.filesize:
            continue

        summary = metadata.get_summary(record.contenthash)
        if summary is None or summary.filesize <= 0:
            continue

        registry.update_filesize(record.contenthash, summary.filesize)
        updated += 1

    logger.info(f"Populated filesize for {updated} objects")
    return updated


def delete_empty_dirs(filesystem: TieredFileSystem, config: ObjectFSConfig) -> int:
    """Prune the local tier. Skipped while tasks are disabled.

    Returns:
        Number of directories removed.
    """
    if not config.enable_tasks:
        logger.info("Tasks are not enabled, skipping empty directory cleanup")
        return 0

    removed = filesystem.delete_empty_dirs()
    logger.info(f"Removed {removed} empty directories from {filesystem.filedir}")
    return removed
