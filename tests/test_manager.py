import pytest

from buildcache.core.arbitrary import ArbitraryFileCache
from buildcache.core.archive import CompressionMethod
from buildcache.core.hashing import derive_cache_path
from buildcache.core.locks import JobLocks
from buildcache.core.manager import CacheManager

from .conftest import BUCKET

JOB = "folder/project/feature%2Fx"


@pytest.fixture
def manager(local_storage, clock, logger, metrics):
    return CacheManager(local_storage, BUCKET, "jenkins", clock, logger, metrics, locks=JobLocks())


@pytest.fixture
def echoed():
    return []


def stored_keys(manager, job=JOB):
    return sorted(obj.key for obj in manager.cache_path(job).repository.iter_objects())


def test_cache_round_trip(manager, workspace, tree, echoed):
    cache = ArbitraryFileCache(".m2", cache_name="maven")
    tree(workspace, {".m2/repo/a.jar": "jar"})

    savers = manager.cache(JOB, workspace, [cache], echo=echoed.append)
    manager.save(JOB, workspace, savers, echo=echoed.append)

    base = derive_cache_path(".m2") + "-maven"
    assert stored_keys(manager) == [f"jenkins/{JOB}/cache/{base}.tgz"]

    (workspace / ".m2" / "repo" / "a.jar").unlink()
    manager.cache(JOB, workspace, [cache], echo=echoed.append)

    assert (workspace / ".m2" / "repo" / "a.jar").read_text() == "jar"
    assert any(line.endswith("Found cache in job specific caches") for line in echoed)
    assert echoed[0].startswith(f"[Cache for .m2 (maven) with id {derive_cache_path('.m2')}] ")


def test_skip_restore(manager, workspace, tree, echoed):
    cache = ArbitraryFileCache("out")
    tree(workspace, {"out/a": "1"})
    manager.save(JOB, workspace, manager.cache(JOB, workspace, [cache], echo=echoed.append), echo=echoed.append)
    (workspace / "out" / "a").unlink()

    manager.cache(JOB, workspace, [cache], skip_restore=True, echo=echoed.append)

    assert not (workspace / "out" / "a").exists()
    assert echoed[-1].endswith("Skip restoring cache due skipRestore parameter")


def test_path_expands_environment(manager, workspace, tree, echoed):
    cache = ArbitraryFileCache("$TOOL_HOME/cache")
    tree(workspace, {"tools/cache/x": "1"})

    savers = manager.cache(JOB, workspace, [cache], env={"TOOL_HOME": "tools"}, echo=echoed.append)
    manager.save(JOB, workspace, savers, echo=echoed.append)

    assert savers[0].expanded_path == "tools/cache"
    assert len(stored_keys(manager)) == 1


def test_save_of_missing_path_is_skipped(manager, workspace, echoed):
    cache = ArbitraryFileCache("missing")

    manager.save(JOB, workspace, manager.cache(JOB, workspace, [cache], echo=echoed.append), echo=echoed.append)

    assert stored_keys(manager) == []
    assert echoed[-1].endswith("Cannot create cache as the path does not exist")


def test_default_branch_fallback(manager, workspace, tree, echoed):
    main_job = "folder/project/main"
    cache = ArbitraryFileCache("node_modules")
    tree(workspace, {"node_modules/lib.js": "main"})
    manager.save(main_job, workspace, manager.cache(main_job, workspace, [cache], echo=echoed.append), echo=echoed.append)
    (workspace / "node_modules" / "lib.js").unlink()

    manager.cache(JOB, workspace, [cache], default_branch="main", echo=echoed.append)

    assert (workspace / "node_modules" / "lib.js").read_text() == "main"
    assert any(line.endswith("Found cache in default caches") for line in echoed)


def test_changed_compression_method_replaces_archive(manager, workspace, tree, echoed):
    tree(workspace, {"build/a": "1"})
    zipped = ArbitraryFileCache("build", compression_method=CompressionMethod.ZIP)
    manager.save(JOB, workspace, manager.cache(JOB, workspace, [zipped], echo=echoed.append), echo=echoed.append)

    tarred = ArbitraryFileCache("build", compression_method="TAR")
    manager.save(JOB, workspace, manager.cache(JOB, workspace, [tarred], echo=echoed.append), echo=echoed.append)

    assert [key.rsplit(".", 1)[1] for key in stored_keys(manager)] == ["tar"]
    assert any(line.endswith("Delete existing cache as the compression method has been changed") for line in echoed)


def test_validity_deciding_file(manager, workspace, tree, echoed):
    cache = ArbitraryFileCache("deps", cache_validity_deciding_file="lock.txt,!ignored.txt")
    tree(workspace, {"deps/a": "v1", "lock.txt": "1"})
    manager.save(JOB, workspace, manager.cache(JOB, workspace, [cache], echo=echoed.append), echo=echoed.append)

    base = derive_cache_path("deps")
    assert stored_keys(manager) == [
        f"jenkins/{JOB}/cache/{base}.hash",
        f"jenkins/{JOB}/cache/{base}.tgz",
    ]

    # unchanged lock file: restore and skip the save
    (workspace / "deps" / "a").unlink()
    savers = manager.cache(JOB, workspace, [cache], echo=echoed.append)
    assert (workspace / "deps" / "a").read_text() == "v1"
    manager.save(JOB, workspace, savers, echo=echoed.append)
    assert echoed[-1].endswith("Skip cache creation as the cache is up-to-date")

    # changed lock file: outdated, not restored, saved again
    tree(workspace, {"lock.txt": "2", "deps/a": "v2"})
    (workspace / "deps" / "a").unlink()
    savers = manager.cache(JOB, workspace, [cache], echo=echoed.append)
    assert not (workspace / "deps" / "a").exists()
    assert any(line.endswith("previous hash does not match - cache outdated") for line in echoed)


def test_failed_restore_cleans_up(manager, workspace, tree, echoed, local_storage):
    cache = ArbitraryFileCache("out")
    tree(workspace, {"out/a": "1"})
    manager.save(JOB, workspace, manager.cache(JOB, workspace, [cache], echo=echoed.append), echo=echoed.append)
    archive = manager.cache_path(JOB).child(derive_cache_path("out") + ".tgz")
    local_storage.put(archive.full_key, b"not a gzip stream", {})

    manager.cache(JOB, workspace, [cache], echo=echoed.append)

    assert not (workspace / "out").exists()
    assert any("Failed to restore cache, cleaning up out..." in line for line in echoed)


def test_max_size_exceeded_removes_job_cache(manager, workspace, tree, echoed, metrics):
    cache = ArbitraryFileCache("big")
    tree(workspace, {"big/a": "1"})
    manager.save(JOB, workspace, manager.cache(JOB, workspace, [cache], echo=echoed.append), echo=echoed.append)
    tree(workspace, {"big/blob": "x" * (2 * 1024 * 1024)})

    decision = manager.save(
        JOB, workspace, manager.cache(JOB, workspace, [cache], echo=echoed.append),
        max_cache_size_mb=1, echo=echoed.append,
    )

    assert decision.exceeded
    assert stored_keys(manager) == []
    assert echoed[-1] == (
        "Removing job cache as it has grown beyond configured maximum size of 1M. "
        "Next build will start with no cache."
    )
    assert metrics.counters["buildcache.eviction.triggered"] == 1


def test_includes_and_excludes(manager, workspace, tree, echoed):
    cache = ArbitraryFileCache("target", includes="**/*.class", excludes="**/Test*.class")
    tree(workspace, {"target/A.class": "a", "target/TestA.class": "t", "target/notes.md": "n"})
    manager.save(JOB, workspace, manager.cache(JOB, workspace, [cache], echo=echoed.append), echo=echoed.append)
    for name in ("A.class", "TestA.class", "notes.md"):
        (workspace / "target" / name).unlink()

    manager.cache(JOB, workspace, [cache], echo=echoed.append)

    assert sorted(p.name for p in (workspace / "target").iterdir()) == ["A.class"]


def test_no_default_branch_root_means_no_valid_cache(workspace, tree, echoed):
    cache = ArbitraryFileCache("deps", cache_validity_deciding_file="lock.txt")
    tree(workspace, {"lock.txt": "1"})

    assert cache.resolve_valid_cache(None, workspace, echoed.append) is None


def test_savers_from_a_separate_restore(manager, workspace, tree, echoed):
    cache = ArbitraryFileCache("$TOOL_HOME/lib")
    tree(workspace, {"tools/lib/x.so": "x"})

    savers = manager.savers([cache], env={"TOOL_HOME": "tools"})
    manager.save(JOB, workspace, savers, echo=echoed.append)

    assert [saver.expanded_path for saver in savers] == ["tools/lib"]
    assert stored_keys(manager) == [f"jenkins/{JOB}/cache/{derive_cache_path('$TOOL_HOME/lib')}.tgz"]
