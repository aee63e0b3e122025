# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/imagecache/cache/verifier.py
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional

from imagecache.cache.checksum import tree_checksum
from imagecache.cache.metadata import read_records
from imagecache.disk.filesystem import FilesystemPreparer
from imagecache.errors import ChecksumMismatchError, MissingChecksumError, VerificationError

log = logging.getLogger("imagecache")


@dataclass
class VerificationReport:
    verified: List[str] = field(default_factory=list)
    mismatched: List[str] = field(default_factory=list)
    unreadable: List[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.mismatched and not self.unreadable

    def summary(self) -> str:
        return (
            f"VERIFIED={len(self.verified)} MISMATCHED={len(self.mismatched)} "
            f"UNREADABLE={len(self.unreadable)}"
        )


class IntegrityVerifier:
    def __init__(self, preparer: FilesystemPreparer):
        self.preparer = preparer

    def verify(self, mount_point: str | Path, device_path: Optional[str] = None) -> VerificationReport:
        """
        Recompute every stored snapshot checksum.

        Every record is checked before failing so the report names all
        broken snapshots, except that a record without a checksum fails
        immediately: the disk was built without checksums and cannot be
        verified at all.
        """
        mount_point = Path(mount_point)
        log.info("Verifying disk image integrity...")

        if not self.preparer.is_mounted(mount_point):
            if not device_path:
                raise VerificationError(f"{mount_point} is not mounted and no device was given")
            self.preparer.mount(device_path, mount_point)

        try:
            records = read_records(mount_point)
        except FileNotFoundError as e:
            raise VerificationError(f"snapshot metadata not found under {mount_point}") from e
        except ValueError as e:
            raise VerificationError(f"corrupt snapshot metadata: {e}") from e

        report = VerificationReport()
        for record in records:
            if not record.checksum:
                raise MissingChecksumError(
                    f"no checksum stored for snapshot {record.chain_id}; "
                    "rebuild with checksums enabled to verify",
                    report=report,
                )
            log.info("Verifying snapshot: %s", record.chain_id)
            try:
                actual = tree_checksum(mount_point / record.relative_path)
            except OSError as e:
                log.error("Cannot read snapshot %s: %s", record.chain_id, e)
                report.unreadable.append(record.chain_id)
                continue
            if actual == record.checksum:
                report.verified.append(record.chain_id)
            else:
                log.error(
                    "Verification failed for snapshot %s: expected %s, got %s",
                    record.chain_id, record.checksum, actual,
                )
                report.mismatched.append(record.chain_id)

        if not report.ok:
            raise ChecksumMismatchError(
                f"disk image verification failed: {report.summary()}", report=report
            )
        log.info("Disk image verification passed: %s", report.summary())
        return report
