# tests/cardinality_test/test_store.py
# Config stores: drop-lists, remote-write restrictions, reset, and file persistence with WAL replay

from __future__ import annotations

import gzip
import json
import threading
from pathlib import Path

import pytest

from cardinality import wal as WAL
from cardinality.store import FileConfigStore, InMemoryConfigStore


@pytest.fixture()
def fstore(tmp_path: Path) -> FileConfigStore:
    return FileConfigStore(tmp_path / "tcm-state")


def test_in_memory_defaults_and_last_writer_wins():
    s = InMemoryConfigStore({"api": ["a"]})
    assert s.get_drop_list("api") == frozenset({"a"})
    assert s.get_drop_list("unknown") == frozenset()
    s.set_drop_list("api", ["b"])
    assert s.get_drop_list("api") == frozenset({"b"})


def test_restrictions_and_reset():
    s = InMemoryConfigStore()
    s.set_drop_list("api", ["x"])
    s.set_remote_write_restriction("cortex", {"api": ["m1"], "web": []})
    assert s.get_remote_write_restriction("cortex") == {"api": frozenset({"m1"})}
    s.reset({"api": ["static"], "web": []})
    assert s.get_drop_list("api") == frozenset({"static"})
    assert s.get_drop_list("web") == frozenset()
    assert s.restrictions() == {}


def test_write_times_out_while_store_is_busy():
    s = InMemoryConfigStore()
    held = threading.Event()
    release = threading.Event()

    def hold():
        with s._lock:
            held.set()
            release.wait(2)

    t = threading.Thread(target=hold)
    t.start()
    try:
        assert held.wait(1)
        with pytest.raises(TimeoutError):
            s.set_drop_list("api", ["m"], timeout=0.05)
    finally:
        release.set()
        t.join()
    assert s.get_drop_list("api") == frozenset()


def test_file_store_persists_across_restart(fstore: FileConfigStore, tmp_path: Path):
    fstore.set_drop_list("api", ["m1", "m2"])
    fstore.set_remote_write_restriction("cortex", {"web": ["big"]})

    state = json.loads(Path(fstore.paths()["state"]).read_text(encoding="utf-8"))
    assert state["drop_lists"] == {"api": ["m1", "m2"]}
    assert state["seq"] == 2

    again = FileConfigStore(tmp_path / "tcm-state")
    assert again.get_drop_list("api") == frozenset({"m1", "m2"})
    assert again.get_remote_write_restriction("cortex") == {"web": frozenset({"big"})}
    assert again.seq == 2


def test_wal_records_newer_than_state_are_replayed(fstore: FileConfigStore, tmp_path: Path):
    fstore.set_drop_list("api", ["m1"])
    # a write that reached the WAL but not state.json
    WAL.append(fstore.paths()["wal"], dict(WAL.drop_list_record("api", ["m1", "m9"]), seq=2))

    again = FileConfigStore(tmp_path / "tcm-state")
    assert again.get_drop_list("api") == frozenset({"m1", "m9"})
    assert again.seq == 2


def test_wal_only_directory_and_torn_lines(tmp_path: Path):
    d = tmp_path / "walonly"
    d.mkdir()
    wal = d / "wal.log"
    WAL.append(wal, dict(WAL.drop_list_record("api", ["a"]), seq=1))
    WAL.append(wal, dict(WAL.reset_record({"api": ["s"]}), seq=2))
    with wal.open("a", encoding="utf-8") as f:
        f.write('{"type":"drop_list_set","job":"api","names":["x"\n')   # torn

    s = FileConfigStore(d)
    assert s.get_drop_list("api") == frozenset({"s"})
    assert s.seq == 2


def test_wal_skips_unknown_records(tmp_path: Path):
    wal = tmp_path / "w.log"
    WAL.append_many(wal, [{"type": "bogus", "seq": 1}, dict(WAL.drop_list_record("j", ["m"]), seq=2)])
    folded = WAL.replay(wal)
    assert folded["counts"] == {"applied": 1, "skipped": 1}
    assert folded["drop_lists"] == {"j": {"m"}}


def test_state_file_failure_does_not_undo_a_committed_write(tmp_path: Path):
    d = tmp_path / "tcm-state"
    s = FileConfigStore(d)
    (d / "state.json").mkdir()          # atomic replace of state.json now fails

    assert s.set_drop_list("api", ["m1"]) == frozenset({"m1"})
    assert s.get_drop_list("api") == frozenset({"m1"})
    assert s.seq == 1

    # the WAL record alone carries the write across a restart
    again = FileConfigStore(d)
    assert again.get_drop_list("api") == frozenset({"m1"})


def test_wal_failure_leaves_store_unchanged(tmp_path: Path):
    d = tmp_path / "tcm-state"
    s = FileConfigStore(d)
    s.set_drop_list("api", ["a"])
    (d / "wal.log").unlink()
    (d / "wal.log").mkdir()             # appends now fail

    with pytest.raises(OSError):
        s.set_drop_list("api", ["a", "b"])
    assert s.get_drop_list("api") == frozenset({"a"})
    assert s.seq == 1


def test_wal_rotates_once_state_is_saved(tmp_path: Path):
    d = tmp_path / "tcm-state"
    s = FileConfigStore(d, wal_max_lines=5, wal_keep_lines=2)
    for i in range(6):
        s.set_drop_list("api", [f"m{i}"])

    rotated = list((d / "wal-rotated").glob("*.log.gz"))
    assert len(rotated) == 1
    with gzip.open(rotated[0], "rt", encoding="utf-8") as f:
        assert len(f.read().splitlines()) == 4
    assert len((d / "wal.log").read_text(encoding="utf-8").splitlines()) == 2

    reopened = FileConfigStore(d)
    assert reopened.get_drop_list("api") == frozenset({"m5"})
    assert reopened.seq == 6
