"""
Persistent command store.

Holds every registered command and its scheduling state in a single JSON
file. Every operation runs inside one exclusive lock that spans the whole
read-modify-write, so neither a second process (for example a one-off
``powersched /path/to/cmd`` registration) nor a concurrent worker thread of
the daemon can lose an update.

The lock is taken fresh for each operation and has two layers:

- a per-path ``threading.Lock`` serializing threads of this process
- an OS advisory lock on a sidecar ``<store>.lock`` file serializing processes

The data file itself is replaced atomically on every write, which is why the
OS lock lives on the sidecar file and not on the data file.
"""

import json
import logging
import os
import tempfile
import threading
import time
from contextlib import contextmanager
from datetime import datetime, timedelta
from pathlib import Path
from typing import Callable, Dict, Iterable, Iterator, List, Optional

from powersched.models import Command, CommandState, is_eligible, utcnow

logger = logging.getLogger(__name__)

# Poll period while waiting for a contended OS lock with a timeout
_LOCK_POLL_SECONDS = 0.05

_THREAD_LOCKS: Dict[str, threading.Lock] = {}
_THREAD_LOCKS_GUARD = threading.Lock()
# Thread id currently holding each path's lock
_LOCK_OWNERS: Dict[str, int] = {}


class StoreError(Exception):
    """Base class for command store errors."""
    pass


class StoreIOError(StoreError):
    """The store file (or its lock file) could not be read or written."""
    pass


class StoreCorruptError(StoreError):
    """The store file is not empty but its content cannot be parsed."""
    pass


class NotFoundError(StoreError):
    """No command with the requested name exists in the store."""

    def __init__(self, name: str):
        self.name = name
        super().__init__(f"Command '{name}' not found in command store")


class LockTimeoutError(StoreError):
    """The store lock could not be acquired within the configured timeout."""
    pass


def _thread_lock_for(path: Path) -> threading.Lock:
    key = str(path)
    with _THREAD_LOCKS_GUARD:
        lock = _THREAD_LOCKS.get(key)
        if lock is None:
            lock = threading.Lock()
            _THREAD_LOCKS[key] = lock
        return lock


def _os_lock(handle, blocking: bool) -> bool:
    """Take an exclusive OS lock on an open file. Returns False if busy."""
    if os.name == "nt":
        import msvcrt

        handle.seek(0)
        try:
            msvcrt.locking(handle.fileno(), msvcrt.LK_LOCK if blocking else msvcrt.LK_NBLCK, 1)
        except OSError:
            if blocking:
                raise
            return False
        return True

    import fcntl

    flags = fcntl.LOCK_EX if blocking else fcntl.LOCK_EX | fcntl.LOCK_NB
    try:
        fcntl.flock(handle.fileno(), flags)
    except BlockingIOError:
        return False
    return True


def _os_unlock(handle):
    if os.name == "nt":
        import msvcrt

        handle.seek(0)
        msvcrt.locking(handle.fileno(), msvcrt.LK_UNLCK, 1)
    else:
        import fcntl

        fcntl.flock(handle.fileno(), fcntl.LOCK_UN)


class CommandStore:
    """
    Durable, crash-safe registry of commands keyed by name.

    Args:
        path: Path to the JSON store file. Created on first write.
        lock_timeout: Seconds to wait for the lock before raising
            LockTimeoutError. None waits forever.
        clock: Callable returning the current UTC datetime (for tests).
    """

    def __init__(
        self,
        path,
        lock_timeout: Optional[float] = None,
        clock: Optional[Callable[[], datetime]] = None
    ):
        self.path = Path(path).expanduser().resolve()
        self.lock_path = self.path.with_name(self.path.name + ".lock")
        self.lock_timeout = lock_timeout
        self._clock = clock or utcnow
        self._thread_lock = _thread_lock_for(self.path)

    def __repr__(self):
        return f"CommandStore(path={self.path})"

    # ── Locking ───────────────────────────────────────────────────────────────

    @contextmanager
    def lock(self) -> Iterator[None]:
        """
        Hold the exclusive store lock for the duration of the block.

        The lock is not reentrant: store operations take it themselves, so
        they must not be called from inside this block.

        Raises:
            RuntimeError: If the calling thread already holds the lock
            LockTimeoutError: If lock_timeout is set and expires
            StoreIOError: If the lock file cannot be opened
        """
        owner_key = str(self.path)
        if _LOCK_OWNERS.get(owner_key) == threading.get_ident():
            raise RuntimeError(f"Lock on {self.path} is already held by this thread")

        deadline = None if self.lock_timeout is None else time.monotonic() + self.lock_timeout

        if deadline is None:
            self._thread_lock.acquire()
        elif not self._thread_lock.acquire(timeout=max(0.0, self.lock_timeout)):
            raise LockTimeoutError(
                f"Timed out after {self.lock_timeout}s waiting for lock on {self.path}"
            )

        try:
            try:
                self.lock_path.parent.mkdir(parents=True, exist_ok=True)
                handle = open(self.lock_path, "a+")
            except OSError as e:
                raise StoreIOError(f"Cannot open lock file {self.lock_path}: {e}") from e

            with handle:
                self._acquire_os_lock(handle, deadline)
                _LOCK_OWNERS[owner_key] = threading.get_ident()
                try:
                    yield
                finally:
                    _LOCK_OWNERS.pop(owner_key, None)
                    _os_unlock(handle)
        finally:
            self._thread_lock.release()

    def _acquire_os_lock(self, handle, deadline: Optional[float]):
        try:
            if deadline is None:
                _os_lock(handle, blocking=True)
                return
            while not _os_lock(handle, blocking=False):
                if time.monotonic() >= deadline:
                    raise LockTimeoutError(
                        f"Timed out after {self.lock_timeout}s waiting for lock on {self.path} "
                        f"(held by another process)"
                    )
                time.sleep(_LOCK_POLL_SECONDS)
        except OSError as e:
            raise StoreIOError(f"Cannot lock {self.lock_path}: {e}") from e

    # ── Reading and writing (caller holds the lock) ──────────────────────────

    def _read_locked(self) -> Dict[str, Command]:
        try:
            raw = self.path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return {}
        except OSError as e:
            raise StoreIOError(f"Cannot read command store {self.path}: {e}") from e

        # An empty file is a valid, empty store (first run)
        if not raw.strip():
            return {}

        try:
            data = json.loads(raw)
        except json.JSONDecodeError as e:
            raise StoreCorruptError(f"Command store {self.path} is not valid JSON: {e}") from e

        if not isinstance(data, dict) or not isinstance(data.get('commands', []), list):
            raise StoreCorruptError(
                f"Command store {self.path} must be an object with a 'commands' list"
            )

        commands: Dict[str, Command] = {}
        for record in data.get('commands', []):
            try:
                command = Command.from_dict(record)
            except (KeyError, TypeError, ValueError, AttributeError, OverflowError) as e:
                raise StoreCorruptError(
                    f"Invalid command record in {self.path}: {record!r} ({e})"
                ) from e
            if command.name in commands:
                raise StoreCorruptError(
                    f"Duplicate command name '{command.name}' in {self.path}"
                )
            commands[command.name] = command
        return commands

    def _write_locked(self, commands: Dict[str, Command]):
        data = {'commands': [command.to_dict() for command in commands.values()]}
        payload = json.dumps(data, indent=2)

        tmp_name = None
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(
                prefix=self.path.name + ".", suffix=".tmp", dir=str(self.path.parent)
            )
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(payload)
                f.write("\n")
                f.flush()
                os.fsync(f.fileno())
            os.chmod(tmp_name, 0o600)
            os.replace(tmp_name, self.path)
            tmp_name = None
        except OSError as e:
            raise StoreIOError(f"Cannot write command store {self.path}: {e}") from e
        finally:
            if tmp_name is not None:
                try:
                    os.unlink(tmp_name)
                except OSError:
                    logger.debug(f"Could not remove temporary file {tmp_name}")

    @contextmanager
    def _mutate(self) -> Iterator[Dict[str, Command]]:
        """Lock, read, let the caller modify the dict, then write it back."""
        with self.lock():
            commands = self._read_locked()
            yield commands
            self._write_locked(commands)

    # ── Public operations ─────────────────────────────────────────────────────

    def upsert(
        self,
        name: str,
        executable_path: str,
        arguments: Iterable[str],
        interval: timedelta
    ) -> bool:
        """
        Add a command, or update the one with the same name.

        Updating overwrites executable_path, arguments and interval and keeps
        state and last_run.

        Returns:
            True if an existing command was updated, False if a new one was added
        """
        if not name or not name.strip():
            raise ValueError("Command name must not be empty")

        arguments = list(arguments)
        with self._mutate() as commands:
            existing = commands.get(name)
            if existing is not None:
                existing.executable_path = executable_path
                existing.arguments = arguments
                existing.interval = interval
                logger.info(f"Updated command: {existing.describe()}")
                return True

            command = Command(
                name=name,
                executable_path=executable_path,
                arguments=arguments,
                interval=interval,
            )
            commands[name] = command
            logger.info(f"Added command: {command.describe()}")
            return False

    def remove(self, name: str):
        """Remove a command by name. Raises NotFoundError if absent."""
        with self._mutate() as commands:
            if name not in commands:
                raise NotFoundError(name)
            del commands[name]
        logger.info(f"Removed command: {name}")

    def prune_except(self, names_to_keep: Iterable[str]) -> List[str]:
        """
        Remove every command whose name is not in names_to_keep.

        Returns:
            Names of the removed commands
        """
        keep = set(names_to_keep)
        with self._mutate() as commands:
            removed = [name for name in commands if name not in keep]
            for name in removed:
                del commands[name]

        for name in removed:
            logger.info(f"Pruned command no longer registered: {name}")
        return removed

    def transition_state(
        self,
        name: str,
        new_state: CommandState,
        record_last_run_if_successful: bool = True
    ):
        """
        Set the state of a command.

        A transition to SUCCESSFUL also stamps last_run with the current time
        unless record_last_run_if_successful is False.

        Raises:
            NotFoundError: If the command was removed in the meantime
        """
        new_state = CommandState(new_state)
        with self._mutate() as commands:
            command = commands.get(name)
            if command is None:
                raise NotFoundError(name)
            command.state = new_state
            if new_state == CommandState.SUCCESSFUL and record_last_run_if_successful:
                command.last_run = self._clock()
        logger.debug(f"Command '{name}' is now {new_state.value}")

    def claim(self, name: str, now: Optional[datetime] = None) -> Optional[Command]:
        """
        Mark a command RUNNING if it is still eligible.

        Re-reads the command under the lock, so two schedulers that both saw
        it idle in their snapshots cannot both start it.

        Returns:
            The updated command, or None if it is no longer eligible

        Raises:
            NotFoundError: If the command was removed in the meantime
        """
        now = now or self._clock()
        with self.lock():
            commands = self._read_locked()
            command = commands.get(name)
            if command is None:
                raise NotFoundError(name)
            if not is_eligible(command, now):
                return None
            command.state = CommandState.RUNNING
            command.started_at = now
            self._write_locked(commands)
            return command

    def reset_stale_running(self, older_than: timedelta, now: Optional[datetime] = None) -> List[str]:
        """
        Move commands stuck in RUNNING since before now - older_than to FAILED.

        Commands left RUNNING by a crash are otherwise never picked up again.
        Commands without a started_at timestamp count as stale.

        Returns:
            Names of the reset commands
        """
        now = now or self._clock()
        cutoff = now - older_than
        with self._mutate() as commands:
            reset = []
            for command in commands.values():
                if command.state != CommandState.RUNNING:
                    continue
                if command.started_at is None or command.started_at < cutoff:
                    command.state = CommandState.FAILED
                    reset.append(command.name)

        for name in reset:
            logger.warning(f"Reset command '{name}' left in Running state to Failed")
        return reset

    def get(self, name: str) -> Command:
        """Return a copy of one command. Raises NotFoundError if absent."""
        with self.lock():
            commands = self._read_locked()
        if name not in commands:
            raise NotFoundError(name)
        return commands[name]

    def snapshot(self) -> List[Command]:
        """Return a consistent point-in-time copy of all commands."""
        with self.lock():
            return list(self._read_locked().values())
