import logging
import shutil
import subprocess
from pathlib import Path

import pytest

from imagecache.errors import CommandError
from imagecache.runtime.containerd import SnapshotInfo


class FakeRunner:
    """Records commands; performs `cp` for real so copied layers land on disk."""

    def __init__(self, fail_on=()):
        self.calls = []
        self.fail_on = set(fail_on)

    def run(self, cmd, *, check=False, **kwargs):
        cmd = [str(c) for c in cmd]
        self.calls.append(cmd)
        if cmd[0] in self.fail_on:
            if check:
                raise CommandError(" ".join(cmd), 1, "", f"{cmd[0]} failed")
            return subprocess.CompletedProcess(cmd, 1, "", f"{cmd[0]} failed")
        if cmd[0] == "cp":
            src, dst = Path(cmd[-2]), Path(cmd[-1])
            shutil.copytree(src, dst / src.name, symlinks=True, dirs_exist_ok=True)
        return subprocess.CompletedProcess(cmd, 0, "", "")

    def which(self, name):
        return f"/usr/bin/{name}"

    def commands(self, name):
        return [c for c in self.calls if c[0] == name]


class FakeRuntime:
    """
    In-memory containerd. Every pulled image contributes layers; identical
    layers share one committed snapshot, numbered like overlayfs snapshots
    under <root>/snapshots/<n>/fs.
    """

    def __init__(self, root: Path, layers=None):
        self.root = Path(root)
        self.layers = layers or {}          # reference -> [(chain_id, {relpath: bytes})]
        self.snapshots = {}                 # key -> SnapshotInfo
        self.snapshot_dirs = {}             # key -> n
        self.pulled = []
        self.removed_images = []
        self.removed_snapshots = []
        self.pull_failures = set()
        self.view_failures = {}             # chain_id -> remaining failing attempts
        self.garbled_mount = {}             # chain_id -> remaining unparsable outputs
        self.auth_seen = {}
        self._next = 1

    def _commit(self, chain_id, parent, files):
        if chain_id in self.snapshots:
            return
        n = self._next
        self._next += 1
        fs = self.root / "snapshots" / str(n) / "fs"
        fs.mkdir(parents=True)
        for rel, data in files.items():
            p = fs / rel
            p.parent.mkdir(parents=True, exist_ok=True)
            p.write_bytes(data)
        self.snapshots[chain_id] = SnapshotInfo(chain_id, parent, "Committed")
        self.snapshot_dirs[chain_id] = n

    def pull(self, reference, auth):
        self.auth_seen[reference] = auth
        if reference in self.pull_failures:
            raise CommandError(f"ctr image pull {reference}", 1, "", "not found")
        parent = None
        for chain_id, files in self.layers.get(reference, []):
            self._commit(chain_id, parent, files)
            parent = chain_id
        self.pulled.append(reference)

    def list_images(self):
        lines = ["REF TYPE DIGEST SIZE PLATFORMS LABELS"]
        lines += [f"{ref} application/vnd.oci.image.index.v1+json sha256:00 1.0 MiB linux/amd64 -" for ref in self.pulled]
        return "\n".join(lines) + "\n"

    def remove_image(self, reference):
        self.removed_images.append(reference)

    def list_snapshots(self):
        return list(self.snapshots.values())

    def view_snapshot(self, key, parent):
        remaining = self.view_failures.get(parent, 0)
        if remaining:
            self.view_failures[parent] = remaining - 1
            raise CommandError(f"ctr snapshot view {key} {parent}", 1, "", "snapshot busy")
        self.snapshots[key] = SnapshotInfo(key, parent, "View")

    def mount_snapshot(self, target, key):
        parent = self.snapshots[key].parent
        remaining = self.garbled_mount.get(parent, 0)
        if remaining:
            self.garbled_mount[parent] = remaining - 1
            return "mount: nothing useful here\n"
        n = self.snapshot_dirs[parent]
        lower = self.root / "snapshots" / str(n) / "fs"
        grand = self.snapshots[parent].parent
        if grand is None:
            return f"mount -t bind {lower} {target} -o ro,rbind\n"
        lower2 = self.root / "snapshots" / str(self.snapshot_dirs[grand]) / "fs"
        return f"mount -t overlay overlay {target} -o ro,lowerdir={lower}:{lower2}\n"

    def remove_snapshot(self, key):
        self.removed_snapshots.append(key)
        self.snapshots.pop(key, None)


NGINX = "docker.io/library/nginx:latest"
REDIS = "docker.io/library/redis:alpine"

BASE_LAYER = ("sha256:base", {"etc/os-release": b"ID=debian\n", "bin/sh": b"\x7fELF-sh"})


def nginx_redis_layers():
    """nginx and redis share one base layer: three unique snapshots in total."""
    return {
        NGINX: [BASE_LAYER, ("sha256:nginx", {"usr/sbin/nginx": b"\x7fELF-nginx", "etc/nginx/nginx.conf": b"worker_processes 1;\n"})],
        REDIS: [BASE_LAYER, ("sha256:redis", {"usr/local/bin/redis-server": b"\x7fELF-redis"})],
    }


@pytest.fixture
def fake_runner():
    return FakeRunner()


@pytest.fixture
def fake_runtime(tmp_path):
    return FakeRuntime(tmp_path / "containerd", layers=nginx_redis_layers())


@pytest.fixture
def mount_point(tmp_path):
    mp = tmp_path / "mnt"
    mp.mkdir()
    (mp / "snapshots.metadata").write_text("")
    (mp / "images.metadata").write_text("")
    return mp


@pytest.fixture(autouse=True)
def _reset_imagecache_logger():
    yield
    logger = logging.getLogger("imagecache")
    for h in list(logger.handlers):
        h.close()
    logger.handlers.clear()
    logger.propagate = True
