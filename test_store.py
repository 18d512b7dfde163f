"""
Tests for the persistent command store: identity, persistence format,
errors, and the locking that keeps concurrent writers from losing updates.
"""

import json
import os
import subprocess
import sys
import threading
from concurrent.futures import ThreadPoolExecutor
from datetime import timedelta
from pathlib import Path

import pytest

from powersched.models import Command, CommandState
from powersched.store import (
    CommandStore,
    LockTimeoutError,
    NotFoundError,
    StoreCorruptError,
    StoreIOError,
)

DAY = timedelta(hours=24)


def names(store):
    return sorted(c.name for c in store.snapshot())


# ── Bootstrap and format ─────────────────────────────────────────────────────

def test_missing_file_is_an_empty_store(store):
    assert store.snapshot() == []


def test_empty_and_blank_files_are_empty_stores(store, store_path):
    store_path.write_text("")
    assert store.snapshot() == []
    store_path.write_text("  \n\t\n")
    assert store.snapshot() == []


def test_malformed_content_is_corrupt(store, store_path):
    store_path.write_text("{not json")
    with pytest.raises(StoreCorruptError):
        store.snapshot()


@pytest.mark.parametrize("content", [
    '[]',
    '{"commands": {}}',
    '{"commands": [{"executable_path": "/bin/x"}]}',
    '{"commands": [{"name": "a", "executable_path": "/bin/a", "state": "Sleeping"}]}',
    '{"commands": [{"name": "a", "executable_path": "/bin/a", "interval_seconds": 1e20}]}',
    '{"commands": [{"name": "a", "executable_path": "/bin/a", "interval_seconds": Infinity}]}',
    '{"commands": [{"name": "a", "executable_path": "/bin/a", "interval_seconds": -60}]}',
    '{"commands": [{"name": "a", "executable_path": "/bin/a"}, {"name": "a", "executable_path": "/bin/b"}]}',
])
def test_wrongly_shaped_content_is_corrupt(store, store_path, content):
    store_path.write_text(content)
    with pytest.raises(StoreCorruptError):
        store.snapshot()


def test_corrupt_store_is_not_overwritten_by_mutations(store, store_path):
    store_path.write_text("{not json")
    with pytest.raises(StoreCorruptError):
        store.upsert("a", "/bin/a", [], DAY)
    assert store_path.read_text() == "{not json"


def test_unreadable_store_raises_io_error(store_path):
    store_path.mkdir()
    store = CommandStore(store_path)
    with pytest.raises(StoreIOError):
        store.snapshot()
    with pytest.raises(StoreIOError):
        store.upsert("a", "/bin/a", [], DAY)


def test_hand_edited_whitespace_is_tolerated(store, store_path):
    store_path.write_text(
        '\n  {  "commands" : [\n'
        '   { "name": "a",\n "executable_path": "/bin/a", "arguments": ["-x"],\n'
        '     "interval_seconds": 60, "state": "Successful",\n'
        '     "last_run": "2024-03-01T11:00:00+00:00" } ] }\n\n'
    )
    [command] = store.snapshot()
    assert command.name == "a"
    assert command.arguments == ["-x"]
    assert command.interval == timedelta(minutes=1)
    assert command.state == CommandState.SUCCESSFUL


@pytest.mark.parametrize("count", [0, 1, 7])
def test_write_then_read_reproduces_store(store, store_path, clock, count):
    for i in range(count):
        store.upsert(f"cmd-{i}", f"/bin/cmd{i}", [str(i), "--flag"], timedelta(minutes=i + 1))
    if count:
        store.transition_state("cmd-0", CommandState.SUCCESSFUL)

    before = {c.name: c for c in store.snapshot()}

    # Rewrite through the store and read back with a fresh instance
    store.prune_except(before)
    after = {c.name: c for c in CommandStore(store_path).snapshot()}

    assert after == before
    assert len(after) == count


def test_file_holds_a_commands_list(store, store_path):
    store.upsert("backup", "/usr/bin/backup", ["--full"], DAY)
    data = json.loads(store_path.read_text())
    assert data == {
        'commands': [{
            'name': "backup",
            'executable_path': "/usr/bin/backup",
            'arguments': ["--full"],
            'interval_seconds': 86400.0,
            'state': "WaitingToBeRun",
            'last_run': None,
            'started_at': None,
        }]
    }


@pytest.mark.skipif(os.name == "nt", reason="POSIX permissions")
def test_store_file_is_private(store, store_path):
    store.upsert("a", "/bin/a", [], DAY)
    assert store_path.stat().st_mode & 0o777 == 0o600


# ── Upsert, remove, prune ────────────────────────────────────────────────────

def test_upsert_inserts_waiting_command_without_last_run(store):
    assert store.upsert("backup", "/usr/bin/backup", ["--full"], DAY) is False

    [command] = store.snapshot()
    assert command.name == "backup"
    assert command.executable_path == "/usr/bin/backup"
    assert command.arguments == ["--full"]
    assert command.interval == DAY
    assert command.state == CommandState.WAITING_TO_BE_RUN
    assert command.last_run is None


def test_upsert_same_name_updates_in_place(store):
    store.upsert("backup", "/usr/bin/backup", ["--full"], DAY)
    assert store.upsert("backup", "/usr/bin/backup", ["--full"], DAY) is True
    assert store.upsert("backup", "/opt/backup", [], DAY) is True
    assert names(store) == ["backup"]
    assert store.get("backup").executable_path == "/opt/backup"


def test_names_are_case_sensitive(store):
    store.upsert("Backup", "/bin/a", [], DAY)
    assert store.upsert("backup", "/bin/b", [], DAY) is False
    assert names(store) == ["Backup", "backup"]


@pytest.mark.parametrize("name", ["", "   "])
def test_empty_name_is_rejected(store, name):
    with pytest.raises(ValueError):
        store.upsert(name, "/bin/a", [], DAY)


def test_update_preserves_state_and_last_run(store, clock):
    store.upsert("backup", "/usr/bin/backup", ["--full"], DAY)
    store.transition_state("backup", CommandState.RUNNING)
    store.transition_state("backup", CommandState.SUCCESSFUL)
    stamped = store.get("backup").last_run

    clock.advance(hours=3)
    store.upsert("backup", "/usr/bin/backup", ["--incremental"], timedelta(hours=6))

    command = store.get("backup")
    assert command.arguments == ["--incremental"]
    assert command.interval == timedelta(hours=6)
    assert command.state == CommandState.SUCCESSFUL
    assert command.last_run == stamped


def test_remove(store):
    store.upsert("a", "/bin/a", [], DAY)
    store.upsert("b", "/bin/b", [], DAY)
    store.remove("a")
    assert names(store) == ["b"]


def test_remove_unknown_name(store):
    with pytest.raises(NotFoundError):
        store.remove("ghost")


def test_prune_except_keeps_only_listed_commands(store):
    store.upsert("keep", "/bin/keep", ["1"], DAY)
    store.upsert("drop", "/bin/drop", [], DAY)
    store.transition_state("keep", CommandState.FAILED)
    keep_before = store.get("keep")

    removed = store.prune_except({"keep"})

    assert removed == ["drop"]
    assert names(store) == ["keep"]
    assert store.get("keep") == keep_before


def test_prune_except_with_unknown_names_is_harmless(store):
    store.upsert("a", "/bin/a", [], DAY)
    assert store.prune_except(["a", "not-there"]) == []
    assert names(store) == ["a"]


# ── State transitions ────────────────────────────────────────────────────────

def test_success_stamps_last_run(store, clock):
    store.upsert("a", "/bin/a", [], DAY)
    store.transition_state("a", CommandState.RUNNING)
    assert store.get("a").last_run is None

    store.transition_state("a", CommandState.SUCCESSFUL)
    assert store.get("a").last_run == clock.now


def test_success_without_recording_last_run(store):
    store.upsert("a", "/bin/a", [], DAY)
    store.transition_state("a", CommandState.SUCCESSFUL, record_last_run_if_successful=False)
    command = store.get("a")
    assert command.state == CommandState.SUCCESSFUL
    assert command.last_run is None


def test_failure_keeps_previous_last_run(store, clock):
    store.upsert("a", "/bin/a", [], DAY)
    store.transition_state("a", CommandState.SUCCESSFUL)
    first = clock.now

    clock.advance(days=2)
    store.transition_state("a", CommandState.RUNNING)
    store.transition_state("a", CommandState.FAILED)

    command = store.get("a")
    assert command.state == CommandState.FAILED
    assert command.last_run == first


def test_transition_of_removed_command(store):
    store.upsert("a", "/bin/a", [], DAY)
    store.remove("a")
    with pytest.raises(NotFoundError):
        store.transition_state("a", CommandState.SUCCESSFUL)


def test_claim_marks_running_once(store, clock):
    store.upsert("a", "/bin/a", [], DAY)

    claimed = store.claim("a")
    assert claimed.state == CommandState.RUNNING
    assert claimed.started_at == clock.now
    assert store.get("a").state == CommandState.RUNNING

    assert store.claim("a") is None


def test_claim_rechecks_interval(store, clock):
    store.upsert("a", "/bin/a", [], DAY)
    store.transition_state("a", CommandState.SUCCESSFUL)
    clock.advance(hours=1)
    assert store.claim("a") is None
    assert store.get("a").state == CommandState.SUCCESSFUL


def test_claim_of_removed_command(store):
    with pytest.raises(NotFoundError):
        store.claim("ghost")


def test_reset_stale_running(store, clock):
    store.upsert("old", "/bin/old", [], DAY)
    store.upsert("fresh", "/bin/fresh", [], DAY)
    store.upsert("idle", "/bin/idle", [], DAY)
    store.claim("old")
    clock.advance(hours=5)
    store.claim("fresh")

    reset = store.reset_stale_running(timedelta(hours=1))

    assert reset == ["old"]
    assert store.get("old").state == CommandState.FAILED
    assert store.get("fresh").state == CommandState.RUNNING
    assert store.get("idle").state == CommandState.WAITING_TO_BE_RUN


# ── Concurrency ──────────────────────────────────────────────────────────────

def test_concurrent_upserts_from_threads_are_all_kept(store_path):
    def register(i):
        CommandStore(store_path).upsert(f"cmd-{i}", "/bin/true", [str(i)], DAY)

    with ThreadPoolExecutor(max_workers=8) as pool:
        list(pool.map(register, range(40)))

    assert len(CommandStore(store_path).snapshot()) == 40


def test_concurrent_transitions_of_different_commands_both_apply(store):
    for name in ("a", "b"):
        store.upsert(name, f"/bin/{name}", [], DAY)

    barrier = threading.Barrier(2)

    def transition(name, state):
        barrier.wait()
        for _ in range(20):
            store.transition_state(name, state)

    threads = [
        threading.Thread(target=transition, args=("a", CommandState.SUCCESSFUL)),
        threading.Thread(target=transition, args=("b", CommandState.FAILED)),
    ]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert store.get("a").state == CommandState.SUCCESSFUL
    assert store.get("b").state == CommandState.FAILED


def test_concurrent_transitions_of_same_command_serialize(store, store_path):
    store.upsert("a", "/bin/a", [], DAY)
    barrier = threading.Barrier(2)

    def transition(state):
        barrier.wait()
        store.transition_state("a", state)

    threads = [
        threading.Thread(target=transition, args=(CommandState.SUCCESSFUL,)),
        threading.Thread(target=transition, args=(CommandState.FAILED,)),
    ]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert store.get("a").state in (CommandState.SUCCESSFUL, CommandState.FAILED)
    # Still a single, parseable record
    assert len(json.loads(store_path.read_text())['commands']) == 1


def test_concurrent_upserts_from_processes_are_all_kept(store_path):
    script = (
        "import sys\n"
        "from datetime import timedelta\n"
        "from powersched.store import CommandStore\n"
        "store = CommandStore(sys.argv[1])\n"
        "for i in range(15):\n"
        "    store.upsert(f'p{sys.argv[2]}-{i}', '/bin/true', [], timedelta(hours=1))\n"
    )
    env = dict(os.environ)
    env['PYTHONPATH'] = os.pathsep.join(filter(None, [str(Path(__file__).parent), env.get('PYTHONPATH')]))

    procs = [
        subprocess.Popen([sys.executable, "-c", script, str(store_path), str(k)], env=env)
        for k in range(4)
    ]
    for proc in procs:
        assert proc.wait(timeout=60) == 0

    assert len(CommandStore(store_path).snapshot()) == 60


def test_lock_held_by_another_thread_times_out(store_path):
    holder = CommandStore(store_path)
    waiter = CommandStore(store_path, lock_timeout=0.2)
    locked = threading.Event()
    release = threading.Event()

    def hold():
        with holder.lock():
            locked.set()
            release.wait(5)

    t = threading.Thread(target=hold)
    t.start()
    try:
        assert locked.wait(5)
        with pytest.raises(LockTimeoutError):
            waiter.upsert("a", "/bin/a", [], DAY)
    finally:
        release.set()
        t.join()

    # Lock is free again
    assert waiter.upsert("a", "/bin/a", [], DAY) is False


@pytest.mark.skipif(os.name == "nt", reason="uses fcntl")
def test_lock_held_by_another_process_times_out(store_path):
    import fcntl

    store = CommandStore(store_path, lock_timeout=0.2)
    store.lock_path.parent.mkdir(parents=True, exist_ok=True)
    with open(store.lock_path, "a+") as handle:
        fcntl.flock(handle.fileno(), fcntl.LOCK_EX)
        try:
            with pytest.raises(LockTimeoutError):
                store.snapshot()
        finally:
            fcntl.flock(handle.fileno(), fcntl.LOCK_UN)

    assert store.snapshot() == []


def test_lock_is_released_after_errors(store, store_path):
    with pytest.raises(NotFoundError):
        store.remove("ghost")
    store_path.write_text("{not json")
    with pytest.raises(StoreCorruptError):
        store.snapshot()
    store_path.write_text("")

    other = CommandStore(store_path, lock_timeout=0.5)
    assert other.upsert("a", "/bin/a", [], DAY) is False


def test_operations_inside_held_lock_fail_instead_of_hanging(store):
    with store.lock():
        with pytest.raises(RuntimeError):
            store.upsert("a", "/bin/a", [], DAY)
        with pytest.raises(RuntimeError):
            CommandStore(store.path).snapshot()

    assert store.upsert("a", "/bin/a", [], DAY) is False
