"""
Command execution for scheduled commands.

Runs a command's executable with its argument list (no shell), captures the
combined stdout/stderr and records the outcome in the command store. Output is
logged but never persisted.
"""

import logging
import subprocess
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, List, Optional

from powersched.models import Command, CommandState, utcnow
from powersched.store import CommandStore, NotFoundError, StoreError

logger = logging.getLogger(__name__)


class ExecutionError(Exception):
    """Raised when a command exits non-zero or cannot be started."""

    def __init__(self, message: str, returncode: Optional[int] = None, output: bytes = b""):
        super().__init__(message)
        self.returncode = returncode
        self.output = output


@dataclass
class ExecutionOutcome:
    """Result of one attempt to run a command."""
    name: str
    run_id: str
    started_at: datetime
    finished_at: Optional[datetime] = None
    returncode: Optional[int] = None
    output: bytes = b""
    error: Optional[str] = None
    skipped: bool = False  # not started, e.g. already claimed by another scheduler

    @property
    def succeeded(self) -> bool:
        return not self.skipped and self.error is None and self.returncode == 0

    @property
    def duration_seconds(self) -> float:
        if self.finished_at is None:
            return 0.0
        return (self.finished_at - self.started_at).total_seconds()


class CommandExecutor:
    """
    Executes stored commands and drives their state transitions.

    The transition to RUNNING is a claim that re-checks eligibility inside the
    store lock. State transitions are best effort: if the store cannot be
    written, the failure is logged and execution goes on.
    """

    def __init__(self, store: CommandStore, clock: Optional[Callable[[], datetime]] = None):
        """
        Initialize command executor.

        Args:
            store: Command store to record state transitions in
            clock: Callable returning the current UTC datetime (for tests)
        """
        self.store = store
        self._clock = clock or utcnow

    def execute_command(
        self,
        executable_path: str,
        arguments: List[str],
        log_prefix: str = ""
    ) -> bytes:
        """
        Run an executable and wait for it to finish.

        Args:
            executable_path: Program to run
            arguments: Arguments passed verbatim
            log_prefix: Prefix for log lines

        Returns:
            Combined stdout and stderr

        Raises:
            ExecutionError: If the command cannot be started or exits non-zero
        """
        logger.info(f"{log_prefix}Executing `{executable_path}` with arguments: {arguments}")

        try:
            result = subprocess.run(
                [executable_path, *arguments],
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                stdin=subprocess.DEVNULL,
            )
        except (OSError, ValueError) as e:
            raise ExecutionError(f"Command could not be started: {e}") from e

        output = result.stdout or b""
        if result.returncode != 0:
            raise ExecutionError(
                f"Command failed with exit code {result.returncode}",
                returncode=result.returncode,
                output=output
            )
        return output

    def run(self, command: Command) -> ExecutionOutcome:
        """
        Claim, execute and record one command.

        Never raises for command failures; the outcome carries them.

        Args:
            command: Command as seen in the scheduler's snapshot

        Returns:
            ExecutionOutcome describing what happened
        """
        run_id = str(uuid.uuid4())[:8]
        log_prefix = f"[{command.name}:{run_id}] "
        outcome = ExecutionOutcome(name=command.name, run_id=run_id, started_at=self._clock())

        try:
            claimed = self.store.claim(command.name, now=outcome.started_at)
        except NotFoundError:
            logger.info(f"{log_prefix}Command was removed before it could run, skipping")
            outcome.skipped = True
            return outcome
        except StoreError as e:
            logger.error(f"{log_prefix}Could not mark command as running, running anyway: {e}")
            claimed = command
        else:
            if claimed is None:
                logger.info(f"{log_prefix}Command is already running or no longer due, skipping")
                outcome.skipped = True
                return outcome

        try:
            try:
                outcome.output = self.execute_command(
                    claimed.executable_path, claimed.arguments, log_prefix=log_prefix
                )
                outcome.returncode = 0
            except ExecutionError as e:
                outcome.returncode = e.returncode
                outcome.output = e.output
                outcome.error = str(e)
                logger.error(f"{log_prefix}{e}")

            outcome.finished_at = self._clock()
            self._log_output(outcome, log_prefix)
        except Exception as e:
            logger.error(f"{log_prefix}Unexpected error while running command: {e}", exc_info=True)
            # A failure after a zero exit does not make the command itself failed
            if outcome.returncode != 0:
                outcome.error = outcome.error or str(e)
        finally:
            # Never leave a claimed command in RUNNING
            if outcome.finished_at is None:
                outcome.finished_at = self._clock()
            self._record_result(outcome, log_prefix)

        if outcome.succeeded:
            logger.info(f"{log_prefix}Completed successfully in {outcome.duration_seconds:.2f}s")
        return outcome

    def _record_result(self, outcome: ExecutionOutcome, log_prefix: str):
        new_state = CommandState.SUCCESSFUL if outcome.succeeded else CommandState.FAILED
        try:
            self.store.transition_state(outcome.name, new_state)
        except NotFoundError:
            logger.warning(f"{log_prefix}Command was removed while running, result not recorded")
        except StoreError as e:
            logger.error(f"{log_prefix}Could not record {new_state.value} state: {e}")

    @staticmethod
    def _log_output(outcome: ExecutionOutcome, log_prefix: str):
        text = outcome.output.decode("utf-8", errors="replace")
        logger.info(f"{log_prefix}======== Standard out and error of command ========")
        for line in text.splitlines():
            logger.info(f"{log_prefix}{line}")
        logger.info(f"{log_prefix}======== End of standard out and error ========")
