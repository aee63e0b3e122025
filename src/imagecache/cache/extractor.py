# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/imagecache/cache/extractor.py
from __future__ import annotations

import logging
import re
import time
from pathlib import Path
from typing import Callable, List, Optional

from imagecache.cache.checksum import tree_checksum
from imagecache.cache.metadata import SnapshotRecord, append_record
from imagecache.errors import CommandError, SnapshotCopyError, SnapshotResolutionError
from imagecache.execution.runner import CommandRunner
from imagecache.runtime.containerd import ContainerRuntime
from imagecache.utils.polling import Deadline
from imagecache.utils.retry import RetryError, call_with_retry

log = logging.getLogger("imagecache")

VIEW_PREFIX = "tmp_"

# first overlay layer directory in the `ctr snapshot mount` output
_LAYER_PATH = re.compile(r"(/[^\s:,=]+/snapshots/(\d+)/fs)")


class _UnresolvedMount(Exception):
    pass


def parse_layer_path(mount_output: str) -> Optional[tuple[str, str]]:
    """
    Return (host_path, relative_path) of the first ``.../snapshots/<n>/fs``
    directory in ``mount_output``, or None.
    """
    m = _LAYER_PATH.search(mount_output or "")
    if not m:
        return None
    return m.group(1), f"snapshots/{m.group(2)}/fs"


class SnapshotExtractor:
    """
    Copies every committed containerd snapshot onto the cache disk and
    records it in snapshots.metadata.

    Resolving a snapshot's layer directory (view + mount) is retried a fixed
    number of times; copy and metadata failures are not.
    """

    def __init__(
        self,
        runtime: ContainerRuntime,
        runner: CommandRunner,
        *,
        attempts: int = 5,
        retry_delay: float = 1.0,
        sleep: Callable[[float], None] = time.sleep,
        deadline: Optional[Deadline] = None,
    ):
        self.runtime = runtime
        self.runner = runner
        self.deadline = deadline or Deadline.never()
        self.attempts = attempts
        self.retry_delay = retry_delay
        self.sleep = sleep

    def remove_stale_views(self) -> None:
        log.info("Removing previous snapshot views...")
        try:
            views = [s.key for s in self.runtime.list_snapshots() if s.kind == "View"]
        except CommandError as e:
            log.warning("could not list snapshots: %s", e)
            return
        for key in views:
            self._remove_view(key)

    def _remove_view(self, key: str) -> None:
        try:
            self.runtime.remove_snapshot(key)
        except CommandError as e:
            log.warning("failed to remove snapshot view %s: %s", key, e)

    def resolve_layer(self, chain_id: str) -> tuple[str, str]:
        view = f"{VIEW_PREFIX}{chain_id}"

        def attempt() -> tuple[str, str]:
            try:
                self.runtime.view_snapshot(view, chain_id)
                output = self.runtime.mount_snapshot(f"/{view}", view)
            except CommandError as e:
                self._remove_view(view)
                raise _UnresolvedMount(str(e)) from e
            resolved = parse_layer_path(output)
            if resolved is None:
                self._remove_view(view)
                raise _UnresolvedMount(f"no layer path in mount output: {output.strip()!r}")
            return resolved

        def on_retry(n: int, exc: Exception) -> None:
            log.warning(
                "Failed to resolve snapshot %s (attempt %d/%d): %s", chain_id, n, self.attempts, exc
            )

        try:
            return call_with_retry(
                attempt,
                attempts=self.attempts,
                delay=self.retry_delay,
                retry_on=(_UnresolvedMount,),
                on_retry=on_retry,
                sleep=self.sleep,
            )
        except RetryError as e:
            raise SnapshotResolutionError(
                f"failed to process snapshot {chain_id} after {e.attempts} attempts: {e.__cause__}"
            ) from e

    def copy_layer(self, source: str, mount_point: Path, relative_path: str) -> Path:
        target = mount_point / relative_path
        target.parent.mkdir(parents=True, exist_ok=True)
        try:
            self.runner.run(["cp", "-r", "-p", source, str(target.parent)], check=True)
        except CommandError as e:
            raise SnapshotCopyError(f"failed to copy snapshot data from {source}: {e}") from e
        return target

    def extract_all(self, mount_point: str | Path, store_checksums: bool) -> List[SnapshotRecord]:
        mount_point = Path(mount_point)
        committed = [s for s in self.runtime.list_snapshots() if s.kind == "Committed"]
        total = len(committed)
        log.info("Processing %d snapshots...", total)

        records: List[SnapshotRecord] = []
        for i, snap in enumerate(committed, start=1):
            self.deadline.check(f"snapshot {snap.key}")
            log.info("[%d/%d] Processing snapshot: %s", i, total, snap.key)
            source, relative_path = self.resolve_layer(snap.key)
            target = self.copy_layer(source, mount_point, relative_path)

            checksum = None
            if store_checksums:
                log.info("Calculating checksum for snapshot: %s", snap.key)
                checksum = tree_checksum(target)

            record = SnapshotRecord(snap.key, relative_path, checksum)
            append_record(mount_point, record)
            records.append(record)

            self._remove_view(f"{VIEW_PREFIX}{snap.key}")

        log.info("Snapshot processing completed (%d snapshots)", len(records))
        return records
