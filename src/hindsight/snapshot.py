"""
Snapshot export/import.

A snapshot is JSON Lines: a header record describing the dump, then one
fragment per line with every field, raw embedding values included. Any
backend can load it back into equivalent fragments.
"""

import logging
from datetime import datetime
from pathlib import Path
from typing import Iterable, List, Optional, Union

from pydantic import BaseModel, Field, ValidationError

from hindsight.models import Fragment, utc_now

logger = logging.getLogger(__name__)

SNAPSHOT_FORMAT = "hindsight.snapshot"
SNAPSHOT_VERSION = 1


class SnapshotHeader(BaseModel):
    format: str = SNAPSHOT_FORMAT
    version: int = SNAPSHOT_VERSION
    exported_at: datetime = Field(default_factory=utc_now)
    count: int = 0
    embedding_dimension: Optional[int] = None
    namespace: Optional[str] = None


class Snapshot(BaseModel):
    """Parsed snapshot: header, the fragments that validated, and per-line errors."""

    header: SnapshotHeader
    fragments: List[Fragment] = Field(default_factory=list)
    errors: List[str] = Field(default_factory=list)


def dumps_snapshot(
    fragments: Iterable[Fragment],
    embedding_dimension: Optional[int] = None,
    namespace: Optional[str] = None,
) -> str:
    """Serialize fragments to snapshot text."""
    fragments = list(fragments)
    header = SnapshotHeader(
        count=len(fragments), embedding_dimension=embedding_dimension, namespace=namespace
    )
    lines = [header.model_dump_json()]
    lines.extend(fragment.model_dump_json() for fragment in fragments)
    return "\n".join(lines) + "\n"


def parse_snapshot(text: str) -> Snapshot:
    """
    Parse snapshot text.

    Lines that fail to validate are reported in ``errors`` rather than
    aborting the whole load.

    Raises:
        ValueError: If the header is missing or names another format/version
    """
    lines = [line for line in text.splitlines() if line.strip()]
    if not lines:
        raise ValueError("Snapshot is empty")

    try:
        header = SnapshotHeader.model_validate_json(lines[0])
    except ValidationError as e:
        raise ValueError(f"Invalid snapshot header: {e}") from e
    if header.format != SNAPSHOT_FORMAT:
        raise ValueError(f"Not a hindsight snapshot (format '{header.format}')")
    if header.version > SNAPSHOT_VERSION:
        raise ValueError(f"Unsupported snapshot version {header.version}")

    snapshot = Snapshot(header=header)
    for number, line in enumerate(lines[1:], start=2):
        try:
            snapshot.fragments.append(Fragment.model_validate_json(line))
        except ValidationError as e:
            snapshot.errors.append(f"line {number}: {e}")

    if header.count != len(lines) - 1:
        logger.warning(f"Snapshot header announces {header.count} fragments, found {len(lines) - 1}")
    return snapshot


def dump_snapshot(
    fragments: Iterable[Fragment],
    path: Union[str, Path],
    embedding_dimension: Optional[int] = None,
    namespace: Optional[str] = None,
) -> int:
    """Write a snapshot file. Returns the number of fragments written."""
    fragments = list(fragments)
    Path(path).write_text(
        dumps_snapshot(fragments, embedding_dimension, namespace), encoding="utf-8"
    )
    logger.info(f"Wrote snapshot of {len(fragments)} fragments to {path}")
    return len(fragments)


def load_snapshot(path: Union[str, Path]) -> Snapshot:
    """Read a snapshot file."""
    snapshot = parse_snapshot(Path(path).read_text(encoding="utf-8"))
    logger.info(
        f"Read snapshot from {path}: {len(snapshot.fragments)} fragments, {len(snapshot.errors)} errors"
    )
    return snapshot
