import hashlib

import pytest

from imagecache.cache.checksum import combine_digests, file_md5, iter_regular_files, tree_checksum


def _tree(root, files):
    for rel, data in files.items():
        p = root / rel
        p.parent.mkdir(parents=True, exist_ok=True)
        p.write_bytes(data)
    return root


def test_file_md5_matches_hashlib(tmp_path):
    p = tmp_path / "f"
    p.write_bytes(b"hello\n")
    assert file_md5(p) == hashlib.md5(b"hello\n").hexdigest()


def test_combine_digests_is_order_independent():
    a, b, c = "0" * 32, "f" * 32, "a" * 32
    assert combine_digests([a, b, c]) == combine_digests([c, a, b])
    assert combine_digests([a, b, c]) == hashlib.md5(f"{a}\n{c}\n{b}\n".encode()).hexdigest()


def test_tree_checksum_ignores_layout_order_but_not_content(tmp_path):
    one = _tree(tmp_path / "one", {"a": b"1", "sub/b": b"2"})
    two = _tree(tmp_path / "two", {"sub/b": b"2", "a": b"1"})
    assert tree_checksum(one) == tree_checksum(two)

    (two / "sub" / "b").write_bytes(b"3")
    assert tree_checksum(one) != tree_checksum(two)


def test_tree_checksum_skips_symlinks(tmp_path):
    root = _tree(tmp_path / "root", {"real": b"data"})
    before = tree_checksum(root)
    (root / "link").symlink_to(root / "real")
    assert list(iter_regular_files(root)) == [str(root / "real")]
    assert tree_checksum(root) == before


def test_tree_checksum_of_empty_dir_is_stable(tmp_path):
    (tmp_path / "empty").mkdir()
    assert tree_checksum(tmp_path / "empty") == hashlib.md5(b"").hexdigest()


def test_tree_checksum_missing_dir_raises(tmp_path):
    with pytest.raises(FileNotFoundError):
        tree_checksum(tmp_path / "nope")
