import shutil

import pytest

from imagecache.cache.extractor import SnapshotExtractor
from imagecache.cache.metadata import SnapshotRecord, append_record
from imagecache.cache.verifier import IntegrityVerifier
from imagecache.disk.filesystem import FilesystemPreparer
from imagecache.errors import ChecksumMismatchError, MissingChecksumError, VerificationError


def _built_disk(runtime, runner, mount_point, checksums=True):
    runtime.pull("docker.io/library/nginx:latest", None)
    runtime.pull("docker.io/library/redis:alpine", None)
    return SnapshotExtractor(runtime, runner, sleep=lambda _: None).extract_all(mount_point, checksums)


def test_verify_clean_disk(fake_runtime, fake_runner, mount_point):
    records = _built_disk(fake_runtime, fake_runner, mount_point)
    report = IntegrityVerifier(FilesystemPreparer(fake_runner)).verify(mount_point, "/dev/sdb")
    assert report.ok
    assert report.verified == [r.chain_id for r in records]
    assert report.summary() == "VERIFIED=3 MISMATCHED=0 UNREADABLE=0"
    # not mounted yet, so the verifier mounted the device first
    assert fake_runner.commands("mount")[-1][-2:] == ["/dev/sdb", str(mount_point)]


def test_single_corrupted_snapshot_is_reported(fake_runtime, fake_runner, mount_point):
    _built_disk(fake_runtime, fake_runner, mount_point)
    (mount_point / "snapshots/3/fs/usr/local/bin/redis-server").write_bytes(b"tampered")

    with pytest.raises(ChecksumMismatchError) as ei:
        IntegrityVerifier(FilesystemPreparer(fake_runner)).verify(mount_point, "/dev/sdb")
    report = ei.value.report
    assert report.mismatched == ["sha256:redis"]
    assert len(report.verified) == 2
    assert report.unreadable == []


def test_missing_snapshot_dir_is_unreadable(fake_runtime, fake_runner, mount_point):
    _built_disk(fake_runtime, fake_runner, mount_point)
    shutil.rmtree(mount_point / "snapshots/1")
    with pytest.raises(ChecksumMismatchError) as ei:
        IntegrityVerifier(FilesystemPreparer(fake_runner)).verify(mount_point, "/dev/sdb")
    assert ei.value.report.unreadable == ["sha256:base"]


def test_disk_built_without_checksums_cannot_be_verified(fake_runtime, fake_runner, mount_point):
    _built_disk(fake_runtime, fake_runner, mount_point, checksums=False)
    with pytest.raises(MissingChecksumError):
        IntegrityVerifier(FilesystemPreparer(fake_runner)).verify(mount_point, "/dev/sdb")


def test_missing_metadata_file(fake_runner, tmp_path):
    with pytest.raises(VerificationError) as ei:
        IntegrityVerifier(FilesystemPreparer(fake_runner)).verify(tmp_path, "/dev/sdb")
    assert "metadata" in str(ei.value)


def test_unmounted_without_device(fake_runner, mount_point):
    append_record(mount_point, SnapshotRecord("sha256:1", "snapshots/1/fs", "00"))
    with pytest.raises(VerificationError):
        IntegrityVerifier(FilesystemPreparer(fake_runner)).verify(mount_point)
