# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/imagecache/disk/filesystem.py
from __future__ import annotations

import logging
import os
import re
from pathlib import Path
from typing import Optional

from imagecache.errors import CommandError, FormatError, MountError
from imagecache.execution.runner import CommandRunner

log = logging.getLogger("imagecache")

SNAPSHOTS_METADATA = "snapshots.metadata"
IMAGES_METADATA = "images.metadata"

MKFS_OPTIONS = ["-F", "-m", "0", "-E", "lazy_itable_init=0,lazy_journal_init=0,discard"]
MOUNT_OPTIONS = "discard,defaults"


def _unescape(field: str) -> str:
    # /proc/mounts octal-escapes whitespace and backslashes
    return re.sub(r"\\([0-7]{3})", lambda m: chr(int(m.group(1), 8)), field)


def _make_world_writable(path: Path) -> None:
    mode = path.stat().st_mode
    path.chmod(mode | 0o222)


class FilesystemPreparer:
    """
    Formats the cache disk, mounts it and lays down empty metadata files.

    Nothing here retries: a disk that fails to format or mount is unusable
    and the build has to start over.
    """

    def __init__(self, runner: CommandRunner, mounts_file: str = "/proc/self/mounts"):
        self.runner = runner
        self.mounts_file = mounts_file

    def prepare(self, device_path: str, mount_point: str | Path) -> Path:
        mount_point = Path(mount_point)
        log.info("Creating ext4 filesystem on %s", device_path)
        try:
            self.runner.run(["mkfs.ext4", *MKFS_OPTIONS, device_path], check=True)
        except CommandError as e:
            raise FormatError(f"failed to create filesystem on {device_path}: {e}") from e

        self.mount(device_path, mount_point)
        _make_world_writable(mount_point)
        self.init_metadata(mount_point)
        log.info("Disk preparation completed: %s mounted at %s", device_path, mount_point)
        return mount_point

    def init_metadata(self, mount_point: Path) -> None:
        for name in (SNAPSHOTS_METADATA, IMAGES_METADATA):
            path = mount_point / name
            path.write_text("")
            _make_world_writable(path)

    def is_mounted(self, mount_point: str | Path) -> bool:
        return os.path.ismount(str(mount_point))

    def mounted_source(self, mount_point: str | Path) -> Optional[str]:
        """Device backing ``mount_point`` according to the mount table."""
        target = os.path.realpath(str(mount_point))
        try:
            lines = Path(self.mounts_file).read_text().splitlines()
        except OSError:
            return None
        source = None
        for line in lines:
            fields = line.split()
            if len(fields) >= 2 and _unescape(fields[1]) == target:
                # later entries shadow earlier ones
                source = _unescape(fields[0])
        return source

    def mount(self, device_path: str, mount_point: str | Path) -> None:
        mount_point = Path(mount_point)
        if self.is_mounted(mount_point):
            source = self.mounted_source(mount_point)
            if source is not None and os.path.realpath(source) != os.path.realpath(device_path):
                raise MountError(
                    f"{mount_point} is already mounted from {source}, expected {device_path}"
                )
            log.debug("%s is already mounted from %s", mount_point, source or device_path)
            return
        mount_point.mkdir(parents=True, exist_ok=True)
        try:
            self.runner.run(["mount", "-o", MOUNT_OPTIONS, device_path, str(mount_point)], check=True)
        except CommandError as e:
            raise MountError(f"failed to mount {device_path} on {mount_point}: {e}") from e

    def unmount(self, mount_point: str | Path) -> None:
        if not self.is_mounted(mount_point):
            return
        try:
            self.runner.run(["umount", str(mount_point)], check=True)
        except CommandError as e:
            raise MountError(f"failed to unmount {mount_point}: {e}") from e
