# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/imagecache/cache/checksum.py
from __future__ import annotations

import hashlib
import os
import stat
from pathlib import Path
from typing import Iterable, Iterator

_CHUNK = 1024 * 1024


def file_md5(path: str | Path) -> str:
    h = hashlib.md5()
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(_CHUNK), b""):
            h.update(chunk)
    return h.hexdigest()


def iter_regular_files(root: str | Path) -> Iterator[str]:
    """Regular files under ``root``; symlinks and special files are skipped, links never followed."""
    for dirpath, _dirnames, filenames in os.walk(root, followlinks=False):
        for name in filenames:
            path = os.path.join(dirpath, name)
            if stat.S_ISREG(os.lstat(path).st_mode):
                yield path


def combine_digests(digests: Iterable[str]) -> str:
    """
    MD5 over the byte-sorted list of per-file digests, one per line.

    Matches ``find -type f -exec md5sum {} + | cut -d' ' -f1 | LC_ALL=C sort | md5sum``.
    """
    ordered = sorted(digests, key=lambda d: d.encode())
    text = "".join(f"{d}\n" for d in ordered)
    return hashlib.md5(text.encode()).hexdigest()


def tree_checksum(root: str | Path) -> str:
    root = Path(root)
    if not root.is_dir():
        raise FileNotFoundError(f"snapshot directory not found: {root}")
    return combine_digests(file_md5(p) for p in iter_regular_files(root))
