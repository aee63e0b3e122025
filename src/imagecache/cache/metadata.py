# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/imagecache/cache/metadata.py
from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional

from imagecache.disk.filesystem import IMAGES_METADATA, SNAPSHOTS_METADATA
from imagecache.errors import MetadataWriteError


@dataclass(frozen=True)
class SnapshotRecord:
    chain_id: str
    relative_path: str          # e.g. snapshots/12/fs
    checksum: Optional[str] = None

    def to_line(self) -> str:
        fields = [self.chain_id, self.relative_path]
        if self.checksum:
            fields.append(self.checksum)
        return " ".join(fields)

    @classmethod
    def parse(cls, line: str) -> "SnapshotRecord":
        fields = line.split()
        if len(fields) not in (2, 3):
            raise ValueError(f"malformed snapshot metadata line: {line!r}")
        return cls(
            chain_id=fields[0],
            relative_path=fields[1],
            checksum=fields[2] if len(fields) == 3 else None,
        )


def snapshots_file(mount_point: str | Path) -> Path:
    return Path(mount_point) / SNAPSHOTS_METADATA


def append_record(mount_point: str | Path, record: SnapshotRecord) -> None:
    path = snapshots_file(mount_point)
    try:
        with path.open("a") as f:
            f.write(record.to_line() + "\n")
    except OSError as e:
        raise MetadataWriteError(f"failed to write metadata for snapshot {record.chain_id}: {e}") from e


def read_records(mount_point: str | Path) -> List[SnapshotRecord]:
    """Records in file order. Raises FileNotFoundError when the metadata file is missing."""
    path = snapshots_file(mount_point)
    return [
        SnapshotRecord.parse(line)
        for line in path.read_text().splitlines()
        if line.strip()
    ]


def append_image_metadata(mount_point: str | Path, listing: str) -> None:
    path = Path(mount_point) / IMAGES_METADATA
    try:
        with path.open("a") as f:
            f.write(listing if listing.endswith("\n") or not listing else listing + "\n")
    except OSError as e:
        raise MetadataWriteError(f"failed to write image metadata: {e}") from e
