import typing

import pytest

from buildcache.core.errors import NotFoundError
from buildcache.core.models import StorageScope
from buildcache.core.repository import LAST_ACCESS, ObjectRepository, to_millis

from .conftest import BUCKET


def put(repository: ObjectRepository, *keys: str, data: bytes = b"content") -> None:
    for key in keys:
        repository.storage.put(repository.scope.full_key(key), data, {})


def test_find_key_first_existing_key_wins(repository):
    put(repository, "a", "b", "c")

    assert repository.find_key(["d", "b", "a", "c"]) == "b"


def test_find_key_exact_match_beats_earlier_prefix(repository):
    put(repository, "cache-a", "cache-b")

    assert repository.find_key(["cache", "cache-", "cache-b"]) == "cache-b"


def test_find_key_latest_modified_prefix_match_wins(repository):
    put(repository, "cache-1", "cache-2", "other")

    assert repository.find_key(["cache", "cache-"]) == "cache-2"


def test_find_key_prefers_primary_key_over_newer_restore_key(repository):
    put(repository, "key", "cache-1")

    assert repository.find_key(["key", "cache-"]) == "key"


def test_find_key_first_prefix_with_matches_wins(repository):
    put(repository, "linux-1", "mac-1")

    assert repository.find_key(["win-", "mac-", "linux-"]) == "mac-1"


def test_find_key_tie_on_last_modified_first_listed_wins(repository, s3_client):
    put(repository, "cache-b", "cache-a")
    same = s3_client.objects[(BUCKET, "ci/job/cache/cache-a")]["LastModified"]
    s3_client.objects[(BUCKET, "ci/job/cache/cache-b")]["LastModified"] = same

    assert repository.find_key(["cache-"]) == "cache-a"


def test_find_key_without_match(repository):
    put(repository, "cache-1")

    assert repository.find_key(["nothing", "nope-"]) is None
    assert repository.find_key(None) is None


def test_find_key_skips_empty_restore_keys(repository):
    put(repository, "cache-1")

    assert repository.find_key(["", "missing"]) is None


def test_find_key_stays_within_scope(s3_storage, clock, logger):
    other = ObjectRepository(s3_storage, StorageScope(BUCKET, "other/cache"), clock, logger)
    mine = ObjectRepository(s3_storage, StorageScope(BUCKET, "mine/cache"), clock, logger)
    put(other, "cache-1")

    assert mine.find_key(["cache-"]) is None
    assert other.find_key(["cache-"]) == "cache-1"


def test_list_follows_continuation_tokens(s3_storage, scope, clock, logger, s3_client):
    repository = ObjectRepository(s3_storage, scope, clock, logger, page_size=2)
    put(repository, "k1", "k2", "k3", "k4", "k5")

    items = list(repository.list())

    assert [item.key for item in items] == ["k1", "k2", "k3", "k4", "k5"]
    assert s3_client.calls.count("list_objects_v2") == 3
    assert all(item.last_access == 0 for item in items)


def test_list_is_lazy_and_restarts(repository, s3_client):
    put(repository, "k1", "k2")

    items = repository.list()
    assert "list_objects_v2" not in s3_client.calls
    assert len(list(items)) == 2
    assert len(list(repository.list())) == 2
    assert s3_client.calls.count("list_objects_v2") == 2


def test_truncated_listing_without_token_stops(s3_storage, scope, clock, logger, s3_client):
    repository = ObjectRepository(s3_storage, scope, clock, logger, page_size=2)
    put(repository, "k1", "k2", "k3")
    s3_client.page_token_broken = True

    assert len(list(repository.list())) == 2
    assert "Listing marked truncated but has no continuation token" in logger.messages("warning")


def test_total_size_sums_without_head(s3_storage, scope, clock, logger, s3_client):
    repository = ObjectRepository(s3_storage, scope, clock, logger, page_size=2)
    put(repository, "k1", "k2", "k3", data=b"12345")

    assert repository.total_size() == 15
    assert "head_object" not in s3_client.calls


def test_update_last_access_keeps_content(repository, clock):
    put(repository, "cache-1", data=b"payload")

    repository.update_last_access("cache-1")

    head = repository.head("cache-1")
    assert head.metadata[LAST_ACCESS] == str(to_millis(clock.now()))
    assert head.size == len(b"payload")
    with repository.open("cache-1") as stream:
        assert stream.read() == b"payload"
    [item] = repository.list()
    assert item.last_access == to_millis(clock.now())


def test_update_last_access_of_missing_key(repository):
    with pytest.raises(NotFoundError):
        repository.update_last_access("missing")


def test_invalid_last_access_metadata_reads_as_zero(repository):
    repository.storage.put(repository.scope.full_key("k"), b"x", {LAST_ACCESS: "garbage"})

    [item] = repository.list()
    assert item.last_access == 0


def test_delete_batches_requests(repository, s3_client):
    for i in range(2500):
        s3_client.objects[(BUCKET, f"ci/job/cache/k{i:04}")] = {
            "Body": b"x",
            "Metadata": {},
            "LastModified": s3_client.clock,
        }

    deleted = repository.delete(f"k{i:04}" for i in range(2500))

    assert deleted == 2500
    assert s3_client.calls.count("delete_objects") == 3
    assert s3_client.keys() == []


def test_delete_absent_keys_is_not_an_error(repository):
    put(repository, "k1")

    assert repository.delete(["k1", "missing"]) == 1


def test_delete_prefix_removes_whole_scope_only(repository, s3_client):
    put(repository, "k1", "k2")
    s3_client.put_object(Bucket=BUCKET, Key="ci/job/cachex", Body=b"x", Metadata={})

    assert repository.delete_prefix() == 2
    assert s3_client.keys() == ["ci/job/cachex"]


def test_content_length(repository):
    put(repository, "k1", data=b"abc")

    assert repository.content_length("k1") == 3
    with pytest.raises(NotFoundError):
        repository.content_length("missing")


def test_write_stream_uploads_on_close(repository):
    with repository.create_write_stream("k1", {"origin": "test"}) as out:
        out.write(b"hello ")
        out.write(b"world")

    assert out.bytes_written == 11
    assert repository.head("k1").metadata == {"origin": "test"}
    with repository.open("k1") as stream:
        assert stream.read() == b"hello world"


def test_write_stream_uploads_nothing_on_error(repository):
    with pytest.raises(RuntimeError):
        with repository.create_write_stream("k1") as out:
            out.write(b"partial")
            raise RuntimeError("boom")

    assert not repository.exists("k1")
    with pytest.raises(ValueError):
        out.write(b"more")


def test_bucket_reachable(s3_storage, clock, logger):
    assert ObjectRepository(s3_storage, StorageScope(BUCKET), clock, logger).bucket_reachable()
    assert not ObjectRepository(s3_storage, StorageScope("missing"), clock, logger).bucket_reachable()


def test_local_backend_round_trip(local_storage, scope, clock, logger):
    repository = ObjectRepository(local_storage, scope, clock, logger, page_size=2)
    put(repository, "k1", "k2", "k3", data=b"abcd")

    assert repository.exists("k2")
    assert [item.key for item in repository.list()] == ["k1", "k2", "k3"]
    assert repository.total_size() == 12

    repository.update_last_access("k1")
    assert repository.head("k1").metadata[LAST_ACCESS] == str(to_millis(clock.now()))

    assert repository.delete(["k1", "nope"]) == 1
    assert repository.delete_prefix() == 2
    assert list(repository.list()) == []
    assert repository.bucket_reachable()


def test_method_annotations_resolve():
    for name in ("list", "iter_objects", "_pages", "delete", "find_key"):
        hints = typing.get_type_hints(getattr(ObjectRepository, name))
        assert "return" in hints
