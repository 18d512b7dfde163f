"""
Data models for scheduled commands.
"""

import math
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Optional, List, Dict, Any


class CommandState(str, Enum):
    """Persisted state of a command. Values are written to disk as-is."""
    WAITING_TO_BE_RUN = "WaitingToBeRun"
    RUNNING = "Running"
    FAILED = "Failed"
    SUCCESSFUL = "Successful"


def utcnow() -> datetime:
    """Current time as a timezone-aware UTC datetime."""
    return datetime.now(timezone.utc)


def _format_timestamp(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    return value.isoformat()


def _parse_interval(value: Any) -> timedelta:
    seconds = float(value)
    if not math.isfinite(seconds) or seconds < 0:
        raise ValueError(f"Invalid interval_seconds: {value!r}")
    try:
        return timedelta(seconds=seconds)
    except OverflowError as e:
        raise ValueError(f"interval_seconds out of range: {value!r}") from e


def _parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    # Naive timestamps are from hand edits, read them as UTC
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


@dataclass
class Command:
    """
    A named, schedulable unit of work.

    The command store keys commands by ``name``. ``last_run`` is only set by a
    successful run; ``None`` means the command never completed successfully.
    """
    name: str
    executable_path: str
    arguments: List[str] = field(default_factory=list)
    interval: timedelta = field(default_factory=timedelta)
    state: CommandState = CommandState.WAITING_TO_BE_RUN
    last_run: Optional[datetime] = None
    started_at: Optional[datetime] = None  # set when claimed for execution

    def to_dict(self) -> Dict[str, Any]:
        """Serialize to the JSON shape used by the command store."""
        return {
            'name': self.name,
            'executable_path': self.executable_path,
            'arguments': list(self.arguments),
            'interval_seconds': self.interval.total_seconds(),
            'state': self.state.value,
            'last_run': _format_timestamp(self.last_run),
            'started_at': _format_timestamp(self.started_at),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Command':
        """
        Create from a command store record.

        Raises:
            KeyError, TypeError, ValueError: If the record is malformed
        """
        arguments = data.get('arguments') or []
        if not isinstance(arguments, list) or not all(isinstance(a, str) for a in arguments):
            raise TypeError(f"'arguments' must be a list of strings, got {arguments!r}")

        return cls(
            name=str(data['name']),
            executable_path=str(data['executable_path']),
            arguments=arguments,
            interval=_parse_interval(data.get('interval_seconds', 0)),
            state=CommandState(data.get('state', CommandState.WAITING_TO_BE_RUN.value)),
            last_run=_parse_timestamp(data.get('last_run')),
            started_at=_parse_timestamp(data.get('started_at')),
        )

    def describe(self) -> str:
        """One-line human readable summary."""
        last_run = self.last_run.isoformat() if self.last_run else "never"
        return (
            f"{self.name}: {self.executable_path} {' '.join(self.arguments)}".rstrip()
            + f" (every {self.interval}, state={self.state.value}, last run={last_run})"
        )


def is_eligible(command: Command, now: datetime) -> bool:
    """
    Whether a command is due to run at ``now``.

    A running command is never eligible. An idle command (waiting, successful
    or failed) is eligible if it never ran successfully or its interval has
    strictly elapsed since the last successful run.
    """
    if command.state == CommandState.RUNNING:
        return False
    if command.last_run is None:
        return True
    return now - command.last_run > command.interval
