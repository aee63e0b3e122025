# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/imagecache/disk/device.py
from __future__ import annotations

import logging
import os
import stat
from pathlib import Path
from typing import Callable

from imagecache.errors import DeviceNotFoundError

log = logging.getLogger("imagecache")

BY_ID_DIR = Path("/dev/disk/by-id")
DEVICE_PREFIX = "google-"
PARTITION_SUFFIX = "-part1"


def is_block_device(path: Path) -> bool:
    try:
        return stat.S_ISBLK(os.stat(path).st_mode)
    except OSError:
        return False


def resolve_device_path(
    device_name: str,
    *,
    by_id_dir: Path = BY_ID_DIR,
    exists: Callable[[Path], bool] = os.path.exists,
    is_block: Callable[[Path], bool] = is_block_device,
) -> str:
    """
    Map an attached disk's device name to the block device to format/mount.

    GCE exposes attached disks as /dev/disk/by-id/google-<device_name>. When
    the disk carries a partition table the first partition is used instead of
    the whole device.
    """
    whole = Path(by_id_dir) / f"{DEVICE_PREFIX}{device_name}"
    partition = Path(f"{whole}{PARTITION_SUFFIX}")

    if exists(partition):
        device = partition
        log.debug("using partitioned device: %s", device)
    else:
        device = whole
        log.debug("using whole device: %s", device)

    if not is_block(device):
        raise DeviceNotFoundError(f"device {device} does not exist or is not a block device")
    return str(device)
