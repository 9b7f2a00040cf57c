import hashlib

from buildcache.core.hashing import derive_cache_path, hash_files


def test_hash_of_nothing_is_empty_md5(workspace):
    assert hash_files(workspace, "**/*.lock") == "d41d8cd98f00b204e9800998ecf8427e"


def test_hash_covers_sorted_files(workspace, tree):
    tree(workspace, {"b/pom.xml": "B", "a/pom.xml": "A", "other.txt": "X"})

    assert hash_files(workspace, "**/pom.xml") == hashlib.md5(b"AB").hexdigest()


def test_hash_changes_with_content(workspace, tree):
    tree(workspace, {"package-lock.json": "1"})
    before = hash_files(workspace, "package-lock.json")

    tree(workspace, {"package-lock.json": "2"})

    assert hash_files(workspace, "package-lock.json") != before


def test_derive_cache_path():
    assert derive_cache_path(".m2") == hashlib.md5(b".m2").hexdigest()
