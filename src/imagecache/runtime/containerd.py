# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/imagecache/runtime/containerd.py
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import List, Optional, Protocol

from imagecache.execution.runner import CommandRunner
from imagecache.registry.auth import AuthConfig

log = logging.getLogger("imagecache")

NAMESPACE = "k8s.io"
HOSTS_DIR = "/etc/containerd/certs.d"


@dataclass(frozen=True)
class SnapshotInfo:
    key: str
    parent: Optional[str]
    kind: str               # "Committed" | "Active" | "View"


class ContainerRuntime(Protocol):
    def pull(self, reference: str, auth: AuthConfig) -> None: ...
    def list_images(self) -> str: ...
    def remove_image(self, reference: str) -> None: ...
    def list_snapshots(self) -> List[SnapshotInfo]: ...
    def view_snapshot(self, key: str, parent: str) -> None: ...
    def mount_snapshot(self, target: str, key: str) -> str: ...
    def remove_snapshot(self, key: str) -> None: ...


def parse_snapshot_list(output: str) -> List[SnapshotInfo]:
    """
    Parse ``ctr snapshot ls``::

        KEY        PARENT     KIND
        sha256:aa             Committed
        sha256:bb  sha256:aa  Committed
    """
    snapshots: List[SnapshotInfo] = []
    for line in output.splitlines():
        fields = line.split()
        if not fields or fields[0] == "KEY":
            continue
        if len(fields) >= 3:
            key, parent, kind = fields[0], fields[1], fields[-1]
        elif len(fields) == 2:
            key, parent, kind = fields[0], None, fields[1]
        else:
            log.debug("ignoring unparsable snapshot line: %r", line)
            continue
        snapshots.append(SnapshotInfo(key=key, parent=parent, kind=kind))
    return snapshots


class CtrRuntime:
    """containerd driven through the ``ctr`` CLI."""

    def __init__(
        self,
        runner: CommandRunner,
        *,
        namespace: str = NAMESPACE,
        hosts_dir: str = HOSTS_DIR,
    ):
        self.runner = runner
        self.namespace = namespace
        self.hosts_dir = hosts_dir

    def _ctr(self, *args: str) -> List[str]:
        return ["ctr", "-n", self.namespace, *args]

    def pull(self, reference: str, auth: AuthConfig) -> None:
        cmd = self._ctr("image", "pull", "--hosts-dir", self.hosts_dir)
        user = auth.user_argument()
        if user:
            cmd += ["--user", user]
        cmd.append(reference)
        self.runner.run(cmd, check=True, redact=[auth.secret() or ""])

    def list_images(self) -> str:
        return self.runner.run(self._ctr("images", "ls"), check=True).stdout

    def remove_image(self, reference: str) -> None:
        self.runner.run(self._ctr("image", "rm", reference), check=True)

    def list_snapshots(self) -> List[SnapshotInfo]:
        out = self.runner.run(self._ctr("snapshot", "ls"), check=True).stdout
        return parse_snapshot_list(out)

    def view_snapshot(self, key: str, parent: str) -> None:
        self.runner.run(self._ctr("snapshot", "view", key, parent), check=True)

    def mount_snapshot(self, target: str, key: str) -> str:
        """Returns the mount command ctr prints, e.g. ``mount -t overlay ... -o lowerdir=...``."""
        return self.runner.run(self._ctr("snapshot", "mount", target, key), check=True).stdout

    def remove_snapshot(self, key: str) -> None:
        self.runner.run(self._ctr("snapshot", "rm", key), check=True)
