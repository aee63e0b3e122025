import pytest

from imagecache.cache.pipeline import BuildContext, WorkerOperation, run_build, run_verify
from imagecache.config.models import AuthMechanism
from imagecache.disk.filesystem import FilesystemPreparer
from imagecache.errors import (
    BuildTimeoutError,
    ChecksumMismatchError,
    CommandError,
    DeviceNotFoundError,
    FormatError,
    ImagePullError,
    SnapshotCopyError,
)
from imagecache.execution.runner import CommandRunner
from imagecache.utils.polling import Deadline


def _ctx(runtime, runner, mount_point, **kw):
    params = dict(
        device_name="secondary-disk-image-disk",
        mount_point=str(mount_point),
        runner=runner,
        runtime=runtime,
        images=["nginx:latest", "redis:alpine"],
        resolve_device=lambda name: f"/dev/disk/by-id/google-{name}",
        sleep=lambda _: None,
    )
    params.update(kw)
    return BuildContext(**params)


def test_build_nginx_and_redis(fake_runtime, fake_runner, tmp_path):
    mp = tmp_path / "mnt"
    result = run_build(_ctx(fake_runtime, fake_runner, mp))

    assert result.device_path == "/dev/disk/by-id/google-secondary-disk-image-disk"
    assert len(result.records) == 3
    lines = (mp / "snapshots.metadata").read_text().splitlines()
    assert len(lines) == 3
    assert all(len(line.split()) == 3 for line in lines)

    listing = (mp / "images.metadata").read_text()
    assert "docker.io/library/nginx:latest" in listing
    assert "docker.io/library/redis:alpine" in listing

    assert fake_runtime.removed_images == [
        "docker.io/library/nginx:latest",
        "docker.io/library/redis:alpine",
    ]
    mkfs = fake_runner.commands("mkfs.ext4")
    assert mkfs and mkfs[0][-1] == result.device_path


def test_build_then_verify(fake_runtime, fake_runner, tmp_path):
    mp = tmp_path / "mnt"
    run_build(_ctx(fake_runtime, fake_runner, mp))
    report = run_verify(_ctx(fake_runtime, fake_runner, mp))
    assert report.ok and len(report.verified) == 3


def test_pull_failure_is_annotated_and_skips_extraction(fake_runtime, fake_runner, tmp_path):
    mp = tmp_path / "mnt"
    fake_runtime.pull_failures.add("docker.io/library/redis:alpine")
    with pytest.raises(ImagePullError) as ei:
        run_build(_ctx(fake_runtime, fake_runner, mp))
    assert ei.value.step == "pull-images"
    assert (mp / "snapshots.metadata").read_text() == ""


def test_missing_device_fails_first(fake_runtime, fake_runner, tmp_path):
    def no_device(name):
        raise DeviceNotFoundError(f"device {name} not found")

    with pytest.raises(DeviceNotFoundError) as ei:
        run_build(_ctx(fake_runtime, fake_runner, tmp_path / "mnt", resolve_device=no_device))
    assert ei.value.step == "resolve-device"
    assert fake_runner.calls == []


def test_format_failure(fake_runtime, tmp_path):
    class Runner(CommandRunner):
        def run(self, cmd, **kw):
            raise CommandError(" ".join(cmd), 1, "", "bad superblock")

    with pytest.raises(FormatError) as ei:
        run_build(_ctx(fake_runtime, Runner(), tmp_path / "mnt"))
    assert ei.value.step == "prepare-disk"


def test_service_account_token_is_fetched_once_for_cloud_registries(fake_runtime, fake_runner, tmp_path):
    calls = []

    def token():
        calls.append(1)
        return "ya29.token"

    ctx = _ctx(
        fake_runtime,
        fake_runner,
        tmp_path / "mnt",
        images=["gcr.io/p/a:v1", "us-docker.pkg.dev/p/r/b:v2", "nginx:latest"],
        auth_mechanism=AuthMechanism.SERVICE_ACCOUNT_TOKEN,
        token_source=token,
    )
    run_build(ctx)
    assert calls == [1]
    assert fake_runtime.auth_seen["gcr.io/p/a:v1"].token == "ya29.token"
    assert fake_runtime.auth_seen["docker.io/library/nginx:latest"].is_anonymous


def test_operation_markers():
    assert WorkerOperation.BUILD.success_marker == "Unpacking is completed."
    assert WorkerOperation.VERIFY.success_marker == "Verification is completed."


@pytest.fixture
def mounts(fake_runner, monkeypatch):
    """Mount table driven by the mount/umount commands the runner has seen."""
    table = {}

    def is_mounted(self, mount_point):
        table.clear()
        for cmd in fake_runner.calls:
            if cmd[0] == "mount":
                table[cmd[-1]] = cmd[-2]
            elif cmd[0] == "umount":
                table.pop(cmd[-1], None)
        return str(mount_point) in table

    monkeypatch.setattr(FilesystemPreparer, "is_mounted", is_mounted)
    monkeypatch.setattr(FilesystemPreparer, "mounted_source", lambda self, mp: table.get(str(mp)))
    return lambda mp: is_mounted(None, mp)


def test_successful_build_leaves_disk_unmounted(fake_runtime, fake_runner, mounts, tmp_path):
    mp = tmp_path / "mnt"
    run_build(_ctx(fake_runtime, fake_runner, mp))
    assert not mounts(mp)
    assert len(fake_runner.commands("umount")) == 1


def test_pull_failure_unmounts_the_disk(fake_runtime, fake_runner, mounts, tmp_path):
    mp = tmp_path / "mnt"
    fake_runtime.pull_failures.add("docker.io/library/redis:alpine")
    with pytest.raises(ImagePullError):
        run_build(_ctx(fake_runtime, fake_runner, mp))
    assert not mounts(mp)


def test_extract_failure_unmounts_the_disk(fake_runtime, fake_runner, mounts, tmp_path):
    mp = tmp_path / "mnt"
    fake_runner.fail_on.add("cp")
    with pytest.raises(SnapshotCopyError) as ei:
        run_build(_ctx(fake_runtime, fake_runner, mp))
    assert ei.value.step == "extract-snapshots"
    assert not mounts(mp)


def test_verify_failure_unmounts_the_disk(fake_runtime, fake_runner, mounts, tmp_path):
    mp = tmp_path / "mnt"
    run_build(_ctx(fake_runtime, fake_runner, mp))
    chain, path, _ = (mp / "snapshots.metadata").read_text().splitlines()[-1].split()
    (mp / path / "tampered").write_bytes(b"x")

    with pytest.raises(ChecksumMismatchError):
        run_verify(_ctx(fake_runtime, fake_runner, mp))
    assert not mounts(mp)
    assert len(fake_runner.commands("mount")) == 2


def test_build_stops_once_the_deadline_passes(fake_runtime, fake_runner, mounts, tmp_path):
    now = [0.0]
    pull = fake_runtime.pull

    def slow_pull(reference, auth):
        now[0] += 3600
        pull(reference, auth)

    fake_runtime.pull = slow_pull
    mp = tmp_path / "mnt"
    ctx = _ctx(fake_runtime, fake_runner, mp, deadline=Deadline(60, clock=lambda: now[0]))

    with pytest.raises(BuildTimeoutError) as ei:
        run_build(ctx)
    assert ei.value.step == "pull-images"
    assert fake_runtime.pulled == ["docker.io/library/nginx:latest"]
    assert fake_runner.commands("cp") == []
    assert (mp / "snapshots.metadata").read_text() == ""
    assert not mounts(mp)
