import os

import pytest

from ide_state_scripts import cache_cleanup_engine
from ide_state_scripts.cache_cleanup_engine import CacheCleaner, select_for_cleanup, select_protected
from ide_state_scripts.state_paths import CachePath


def make_tree(root, files):
    for rel, size in files.items():
        path = root / rel
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(b"x" * size)
    return root


def test_measure_sums_nested_files(tmp_path):
    cache = make_tree(tmp_path / "Cache", {"a": 100, "sub/b": 50, "sub/deeper/c": 25})

    sizes = CacheCleaner().measure([str(cache), str(tmp_path / "missing")])

    assert sizes == {str(cache): 175, str(tmp_path / "missing"): 0}


def test_measure_keeps_going_past_unreadable_dirs(tmp_path, monkeypatch):
    cache = make_tree(tmp_path / "Cache", {"a": 10, "locked/b": 99})
    real_scandir = os.scandir

    def scandir(path):
        if str(path).endswith("locked"):
            raise PermissionError(13, "Permission denied", str(path))
        return real_scandir(path)

    monkeypatch.setattr(cache_cleanup_engine.os, "scandir", scandir)
    cleaner = CacheCleaner()

    assert cleaner.measure([str(cache)]) == {str(cache): 10}
    assert [e["path"] for e in cleaner.error_dicts()] == [str(cache / "locked")]


def test_one_failure_does_not_stop_the_batch(tmp_path, monkeypatch):
    a = make_tree(tmp_path / "Cache", {"f": 10})
    b = make_tree(tmp_path / "GPUCache", {"f": 20})
    c = make_tree(tmp_path / "logs", {"f": 30})
    real_rmtree = cache_cleanup_engine.shutil.rmtree

    def rmtree(path, *args, **kwargs):
        if str(path) == str(b):
            raise PermissionError(13, "Permission denied", str(path))
        return real_rmtree(path, *args, **kwargs)

    monkeypatch.setattr(cache_cleanup_engine.shutil, "rmtree", rmtree)

    result = CacheCleaner().delete([str(a), str(b), str(c)])

    assert result.succeeded == {str(a), str(c)}
    assert result.failed == {str(b)}
    assert "Permission denied" in result.errors[str(b)]
    assert result.summary() == "2/3 succeeded"
    assert result.freed_bytes == 40
    assert not a.exists() and b.exists() and not c.exists()


def test_dry_run_deletes_nothing(tmp_path):
    a = make_tree(tmp_path / "Cache", {"f": 10, "g/h": 5})

    result = CacheCleaner(dry_run=True).delete([str(a)])

    assert result.dry_run
    assert result.succeeded == {str(a)}
    assert result.freed_bytes == 15
    assert (a / "g" / "h").exists()


def test_missing_path_counts_as_done(tmp_path):
    result = CacheCleaner().delete([str(tmp_path / "gone")])
    assert result.succeeded == {str(tmp_path / "gone")}
    assert result.freed_bytes == 0


def test_refuses_critical_paths(monkeypatch):
    def rmtree(*args, **kwargs):
        raise AssertionError("rmtree must not be called")

    monkeypatch.setattr(cache_cleanup_engine.shutil, "rmtree", rmtree)

    result = CacheCleaner().delete(["/"])

    assert result.failed == {"/"}
    assert result.errors["/"] == "critical_path_protection"


def test_deletes_single_file(tmp_path):
    f = tmp_path / "stray.log"
    f.write_bytes(b"1234")

    result = CacheCleaner().delete([str(f)])

    assert result.succeeded == {str(f)}
    assert result.freed_bytes == 4
    assert not f.exists()


def test_to_dict_is_sorted_and_summarised(tmp_path):
    paths = [str(make_tree(tmp_path / name, {"f": 1})) for name in ("b", "a")]

    data = CacheCleaner().delete(paths).to_dict()

    assert data["succeeded"] == sorted(paths)
    assert data["summary"] == "2/2 succeeded"
    assert data["freed_human"] == "2 B"


@pytest.mark.parametrize("light, expected", [(True, ["/c/Cache"]), (False, ["/c/Cache", "/c/User/History"])])
def test_select_for_cleanup(light, expected):
    paths = [CachePath("/c/Cache"), CachePath("/c/User/History", protected=True)]
    assert [c.path for c in select_for_cleanup(paths, light)] == expected


def test_select_protected():
    paths = [CachePath("/c/Cache"), CachePath("/c/User/History", protected=True)]
    assert select_protected(paths) == [CachePath("/c/User/History", protected=True)]
