"""
Snapshot naming, parsing and ordering.

Every stored snapshot lives at:

    <prefix>/<snap_dir>/<snap_name>

where the last segment of <prefix> is a naming-version tag:

    v1 (legacy):  <base>/v1/Backup-<created>/<Kind>-<start>-<last>-<created>[.gz][.final]
    v2 (current): <base>/v2/[Backup-<created>/]<Kind>-<start>-<last>-<created>[.gz][.final]

Kind is "Full" or "Incr", revisions are zero-padded to 8 digits and
<created> is a unix timestamp in seconds.

Invariants:
    - parse_snapshot(snapshot_path(s)) == s for every Snapshot built by
      Snapshot.create() under a tagged prefix
    - snapshot_path() is the only place segments are joined
    - Both naming-version tags stay parseable forever
    - compare_snapshots() is a total order

How to change safely:
    - Never remove a naming-version tag, only append new ones
    - New compression suffixes must not be prefixes of existing ones
    - Test parsing of objects written by previous releases before
      touching the regular expressions
"""

from __future__ import annotations

import functools
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Iterable

from .base import InvalidSnapshotNameError

NAMING_VERSION_LEGACY = "v1"
NAMING_VERSION_CURRENT = "v2"
NAMING_VERSIONS = (NAMING_VERSION_LEGACY, NAMING_VERSION_CURRENT)

SNAP_DIR_PREFIX = "Backup-"
FINAL_SUFFIX = ".final"
COMPRESSION_SUFFIXES = ("", ".gz", ".lzw", ".zlib")

_SNAP_NAME_RE = re.compile(
    r"^(?P<kind>Full|Incr)"
    r"-(?P<start>\d{8,})"
    r"-(?P<last>\d{8,})"
    r"-(?P<created>\d+)"
    r"(?P<compression>\.gz|\.lzw|\.zlib)?"
    r"(?P<final>\.final)?$"
)
_SNAP_DIR_RE = re.compile(r"^Backup-(?P<created>\d+)$")


class SnapshotKind(str, Enum):
    """Kind of snapshot encoded at the start of its name."""

    FULL = "Full"
    DELTA = "Incr"


@dataclass(frozen=True)
class Snapshot:
    """Descriptor of one stored snapshot.

    Attributes:
        kind: Full or incremental (delta)
        start_revision: First revision contained in the snapshot
        last_revision: Last revision contained in the snapshot
        created_on: Creation time, second precision, UTC
        prefix: Logical namespace ending in a naming-version tag
        snap_dir: Grouping directory ("" for flat v2 layout)
        snap_name: Leaf object name
        compression_suffix: One of COMPRESSION_SUFFIXES
        is_final: Whether this is the final snapshot before shutdown
    """

    kind: SnapshotKind
    start_revision: int
    last_revision: int
    created_on: datetime
    prefix: str
    snap_dir: str
    snap_name: str
    compression_suffix: str = ""
    is_final: bool = False

    @classmethod
    def create(
        cls,
        kind: SnapshotKind,
        start_revision: int,
        last_revision: int,
        created_on: datetime | None = None,
        prefix: str = "",
        compression_suffix: str = "",
        is_final: bool = False,
        with_dir: bool = True,
    ) -> Snapshot:
        """Build a snapshot and generate its directory and name.

        Args:
            kind: Snapshot kind
            start_revision: First revision
            last_revision: Last revision (>= start_revision)
            created_on: Creation time (defaults to now); truncated to seconds
            prefix: Logical prefix, normally the store prefix. A non-empty
                prefix must end in a naming-version tag; with an empty
                prefix the path is relative and only parses once placed
                under a tagged prefix
            compression_suffix: Compression suffix of the payload
            is_final: Mark as final snapshot
            with_dir: Place the snapshot in a Backup-<ts> directory

        Raises:
            ValueError: If revisions, suffix or prefix are invalid
        """
        if start_revision < 0 or last_revision < start_revision:
            raise ValueError(
                f"invalid revision range {start_revision}..{last_revision}"
            )
        if compression_suffix not in COMPRESSION_SUFFIXES:
            raise ValueError(f"unsupported compression suffix {compression_suffix!r}")
        if prefix.strip("/") and prefix.rstrip("/").split("/")[-1] not in NAMING_VERSIONS:
            raise ValueError(f"prefix {prefix!r} does not end in a naming-version tag")

        if created_on is None:
            created_on = datetime.now(timezone.utc)
        created_ts = int(created_on.timestamp())
        created_on = datetime.fromtimestamp(created_ts, tz=timezone.utc)

        kind = SnapshotKind(kind)
        snap_name = (
            f"{kind.value}-{start_revision:08d}-{last_revision:08d}-{created_ts}"
            f"{compression_suffix}{FINAL_SUFFIX if is_final else ''}"
        )
        snap_dir = f"{SNAP_DIR_PREFIX}{created_ts}" if with_dir else ""

        return cls(
            kind=kind,
            start_revision=start_revision,
            last_revision=last_revision,
            created_on=created_on,
            prefix=prefix,
            snap_dir=snap_dir,
            snap_name=snap_name,
            compression_suffix=compression_suffix,
            is_final=is_final,
        )

    @property
    def path(self) -> str:
        """Full object path of the snapshot."""
        return snapshot_path(self.prefix, self.snap_dir, self.snap_name)

    @property
    def is_full(self) -> bool:
        return self.kind == SnapshotKind.FULL

    def sort_key(self) -> tuple[datetime, int, int, str]:
        return (self.created_on, self.start_revision, self.last_revision, self.path)

    def __str__(self) -> str:
        return self.path


def snapshot_path(prefix: str, snap_dir: str, snap_name: str) -> str:
    """Join prefix, directory and name with the storage separator.

    Empty segments are skipped, so a flat v2 snapshot has no directory.
    """
    segments = [prefix.rstrip("/"), snap_dir.strip("/"), snap_name.strip("/")]
    return "/".join(s for s in segments if s)


def parse_snapshot(object_path: str) -> Snapshot:
    """Parse an object path into a Snapshot.

    Args:
        object_path: Full object name as returned by a listing

    Returns:
        The parsed Snapshot

    Raises:
        InvalidSnapshotNameError: If the path carries no naming-version tag,
            has the wrong shape, or its name cannot be decomposed
    """
    segments = object_path.split("/")

    tag_index = -1
    for i in range(len(segments) - 1, -1, -1):
        if segments[i] in NAMING_VERSIONS:
            tag_index = i
            break
    if tag_index == -1:
        raise InvalidSnapshotNameError(object_path, "no naming-version tag")

    version = segments[tag_index]
    prefix = "/".join(segments[: tag_index + 1])
    rest = segments[tag_index + 1 :]

    if len(rest) == 2:
        snap_dir, snap_name = rest
        if not _SNAP_DIR_RE.match(snap_dir):
            raise InvalidSnapshotNameError(object_path, f"bad snapshot directory {snap_dir!r}")
    elif len(rest) == 1 and version == NAMING_VERSION_CURRENT:
        snap_dir, snap_name = "", rest[0]
    else:
        raise InvalidSnapshotNameError(
            object_path, f"unexpected layout for naming version {version}"
        )

    match = _SNAP_NAME_RE.match(snap_name)
    if not match:
        raise InvalidSnapshotNameError(object_path, f"bad snapshot name {snap_name!r}")

    start_revision = int(match.group("start"))
    last_revision = int(match.group("last"))
    if last_revision < start_revision:
        raise InvalidSnapshotNameError(
            object_path, f"revision range {start_revision}..{last_revision} is inverted"
        )

    try:
        created_on = datetime.fromtimestamp(int(match.group("created")), tz=timezone.utc)
    except (OverflowError, OSError, ValueError) as e:
        raise InvalidSnapshotNameError(object_path, f"unparsable timestamp: {e}") from e

    return Snapshot(
        kind=SnapshotKind(match.group("kind")),
        start_revision=start_revision,
        last_revision=last_revision,
        created_on=created_on,
        prefix=prefix,
        snap_dir=snap_dir,
        snap_name=snap_name,
        compression_suffix=match.group("compression") or "",
        is_final=match.group("final") is not None,
    )


def compare_snapshots(a: Snapshot, b: Snapshot) -> int:
    """Total order: creation time, then revision range, then path."""
    ka, kb = a.sort_key(), b.sort_key()
    if ka < kb:
        return -1
    if ka > kb:
        return 1
    return 0


def has_naming_version(object_path: str) -> bool:
    """Whether any path segment is a known naming-version tag."""
    return any(segment in NAMING_VERSIONS for segment in object_path.split("/"))


def listing_prefix(store_prefix: str) -> str:
    """Drop the trailing naming-version segment of a store prefix.

    Listing under the parent finds objects written under every tag.
    """
    tokens = store_prefix.rstrip("/").split("/")
    if tokens[-1] in NAMING_VERSIONS:
        tokens = tokens[:-1]
    return "/".join(tokens)


def adapt_prefix(snap: Snapshot, store_prefix: str) -> str:
    """Prefix a snapshot is uploaded under.

    Snapshots belonging to a legacy chain keep the legacy tag so the chain
    stays under one prefix.
    """
    store_tokens = store_prefix.rstrip("/").split("/")
    snap_tag = snap.prefix.rstrip("/").split("/")[-1]
    if snap_tag == NAMING_VERSION_LEGACY and store_tokens[-1] == NAMING_VERSION_CURRENT:
        store_tokens[-1] = NAMING_VERSION_LEGACY
    return "/".join(store_tokens)


class SnapList(list):
    """List of snapshots kept in compare_snapshots() order by ChunkedSnapStore.list()."""

    def __init__(self, snapshots: Iterable[Snapshot] = ()) -> None:
        super().__init__(snapshots)

    def sort_snapshots(self) -> SnapList:
        self.sort(key=functools.cmp_to_key(compare_snapshots))
        return self

    def latest_full_and_deltas(self) -> tuple[Snapshot | None, SnapList]:
        """Find the latest full snapshot and the delta chain after it.

        Returns:
            (full, deltas) where deltas are the incremental snapshots whose
            start revision is beyond the full snapshot's last revision; full
            is None when no full snapshot exists and deltas is then every
            delta in the list
        """
        ordered = SnapList(self).sort_snapshots()
        full = None
        for snap in reversed(ordered):
            if snap.is_full:
                full = snap
                break

        floor = full.last_revision if full is not None else -1
        deltas = SnapList(
            s for s in ordered if not s.is_full and s.start_revision > floor
        )
        return full, deltas
