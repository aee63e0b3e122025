import pytest

from imagecache.cache.metadata import (
    SnapshotRecord,
    append_image_metadata,
    append_record,
    read_records,
)
from imagecache.errors import MetadataWriteError


def test_record_line_format():
    assert SnapshotRecord("sha256:abc", "snapshots/7/fs", "d41d8").to_line() == "sha256:abc snapshots/7/fs d41d8"
    assert SnapshotRecord("sha256:abc", "snapshots/7/fs").to_line() == "sha256:abc snapshots/7/fs"


def test_parse_with_and_without_checksum():
    r = SnapshotRecord.parse("sha256:abc snapshots/7/fs d41d8\n")
    assert (r.chain_id, r.relative_path, r.checksum) == ("sha256:abc", "snapshots/7/fs", "d41d8")
    assert SnapshotRecord.parse("sha256:abc snapshots/7/fs").checksum is None


def test_parse_rejects_malformed_line():
    with pytest.raises(ValueError):
        SnapshotRecord.parse("just-one-field")


def test_append_and_read_preserve_order(mount_point):
    append_record(mount_point, SnapshotRecord("sha256:1", "snapshots/1/fs", "aa"))
    append_record(mount_point, SnapshotRecord("sha256:2", "snapshots/2/fs", "bb"))
    assert [r.chain_id for r in read_records(mount_point)] == ["sha256:1", "sha256:2"]


def test_read_records_missing_file(tmp_path):
    with pytest.raises(FileNotFoundError):
        read_records(tmp_path)


def test_append_record_unwritable_raises_metadata_error(tmp_path):
    with pytest.raises(MetadataWriteError):
        append_record(tmp_path / "does-not-exist", SnapshotRecord("sha256:1", "snapshots/1/fs"))


def test_append_image_metadata_terminates_listing(mount_point):
    append_image_metadata(mount_point, "REF TYPE\nnginx x")
    assert (mount_point / "images.metadata").read_text() == "REF TYPE\nnginx x\n"
