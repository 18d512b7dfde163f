"""
Power-aware command scheduler

Runs registered commands at fixed intervals, but only while the machine is
on external power.

Features:
- Persistent command store (JSON), safe against concurrent writers
- Command registration from the command line or a directory of TOML files
- Concurrent command execution on a worker pool
- Graceful shutdown that lets running commands finish
"""

from powersched.models import Command, CommandState, is_eligible
from powersched.store import (
    CommandStore,
    StoreError,
    StoreIOError,
    StoreCorruptError,
    NotFoundError,
    LockTimeoutError
)
from powersched.jobs import CommandExecutor, ExecutionOutcome, ExecutionError
from powersched.power import PowerGate, PowerQueryError
from powersched.config import SchedulerConfig, ConfigError
from powersched.service import SchedulerService

__version__ = "0.1.0"
__all__ = [
    "Command",
    "CommandState",
    "is_eligible",
    "CommandStore",
    "StoreError",
    "StoreIOError",
    "StoreCorruptError",
    "NotFoundError",
    "LockTimeoutError",
    "CommandExecutor",
    "ExecutionOutcome",
    "ExecutionError",
    "PowerGate",
    "PowerQueryError",
    "SchedulerConfig",
    "ConfigError",
    "SchedulerService",
]
