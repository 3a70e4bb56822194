"""Structural validation of downloaded extract archives."""

import os
import zipfile

import structlog

from extracts.errors import ArtifactValidationFailed

logger = structlog.get_logger(__name__)


def validate_zip_archive(path: str) -> int:
    """Check that ``path`` is a non-empty zip with at least one readable entry.

    Returns the number of entries.

    Raises:
        ArtifactValidationFailed: With the first reason the file is unusable
    """
    if not os.path.isfile(path):
        raise ArtifactValidationFailed(path, "file does not exist")

    if os.path.getsize(path) == 0:
        raise ArtifactValidationFailed(path, "file is empty")

    if not zipfile.is_zipfile(path):
        raise ArtifactValidationFailed(path, "not a zip archive")

    try:
        with zipfile.ZipFile(path) as archive:
            entries = [info for info in archive.infolist() if not info.is_dir()]
            if not entries:
                raise ArtifactValidationFailed(path, "archive has no entries")
            with archive.open(entries[0]) as entry:
                entry.read()
    except (zipfile.BadZipFile, zipfile.LargeZipFile, RuntimeError, OSError, EOFError) as e:
        raise ArtifactValidationFailed(path, f"entry not readable: {e}") from e

    logger.info("artifact_validated", path=path, entries=len(entries))
    return len(entries)
