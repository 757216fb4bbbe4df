"""
First-run migration of a free-text notes file (MEMORY.md style) into the
``memory`` namespace.

The import runs once per migration name: when it completes, a marker
segment ``system/migration/<name>`` records the counts, and later calls
return immediately.  Imported keys are derived from the section text, so a
run that crashed half-way can simply be repeated.
"""

from __future__ import annotations

import hashlib
import logging
from pathlib import Path

from .collection import SemanticNamespace
from .errors import DuplicateKeyError, EmbeddingError, StorageError
from .intelligence import split_into_sections
from .models import MarkerMetadata, MemoryMetadata, Segment

logger = logging.getLogger(__name__)

MARKER_PREFIX = "system/migration/"
MIGRATED_TAG = "migrated"


def marker_key(name: str) -> str:
    return f"{MARKER_PREFIX}{name}"


def migrated_suffix(section: str) -> str:
    return f"migrated-{hashlib.sha1(section.encode('utf-8')).hexdigest()[:16]}"


def bootstrap_memory(
    memories: SemanticNamespace,
    source: str | Path,
    name: str = "memory-md",
    batch_size: int = 10,
) -> int:
    """
    Import *source* into *memories* unless migration *name* already ran.

    Returns the number of sections written by this call.  A missing or
    blank source file is not an error and leaves no marker, so the import
    is attempted again on the next start.
    """
    store = memories.store
    key = marker_key(name)
    if store.exists(key):
        logger.debug("Migration %s already done", name)
        return 0

    path = Path(source).expanduser()
    if not path.is_file():
        logger.info("Migration source %s not found; nothing to import", path)
        return 0
    content = path.read_text(encoding="utf-8")
    if not content.strip():
        logger.info("Migration source %s is empty; nothing to import", path)
        return 0

    sections = split_into_sections(content)
    indexed = 0
    skipped = 0
    for start in range(0, len(sections), batch_size):
        batch = sections[start:start + batch_size]
        try:
            vectors = memories.embedder.embed_batch(batch)
        except EmbeddingError as exc:
            logger.warning("Skipping migration batch of %d sections: %s", len(batch), exc)
            skipped += len(batch)
            continue

        for section, vector in zip(batch, vectors):
            metadata = MemoryMetadata(tags=[MIGRATED_TAG], source=str(path))
            try:
                memories.add(migrated_suffix(section), section, metadata, embedding=vector)
            except DuplicateKeyError:
                skipped += 1
            except StorageError as exc:
                logger.warning("Could not import section from %s: %s", path, exc)
                skipped += 1
            else:
                indexed += 1

    marker = Segment(
        key=key,
        content=f"Imported {indexed} sections from {path}",
        metadata=MarkerMetadata(source=str(path), indexed=indexed, skipped=skipped),
    )
    try:
        store.write(marker)
    except DuplicateKeyError:
        logger.debug("Migration %s was completed concurrently", name)
    logger.info("Migrated %d sections from %s (%d skipped)", indexed, path, skipped)
    return indexed
