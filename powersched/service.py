"""
Core scheduler service.

Runs the power-gated scheduling loop:

1. wait until the machine is on external power
2. take a snapshot of the command store
3. dispatch every eligible command to the worker pool, re-checking the power
   source before each one and abandoning the pass on battery power
4. sleep, repeat

Executions run on an APScheduler thread pool and are not awaited by the loop,
so a long-running command only occupies its own worker.
"""

import logging
import signal
import threading
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.executors.pool import ThreadPoolExecutor
from apscheduler.jobstores.base import ConflictingIdError
from apscheduler.events import (
    EVENT_JOB_EXECUTED,
    EVENT_JOB_ERROR,
    EVENT_JOB_MISSED,
    EVENT_JOB_MAX_INSTANCES
)

from powersched.config import SchedulerConfig, ConfigError, load_command_files
from powersched.jobs import CommandExecutor, ExecutionOutcome
from powersched.models import Command, is_eligible, utcnow
from powersched.power import PowerGate
from powersched.store import CommandStore, StoreError

logger = logging.getLogger(__name__)


class Dispatcher:
    """
    Worker pool for command executions.

    Each dispatch is a one-off APScheduler job whose id is the command name,
    so one command can only be in flight once per process. In-flight names
    can be listed and waited for.
    """

    def __init__(self, max_workers: int = 5):
        self.scheduler = BackgroundScheduler(
            executors={'default': ThreadPoolExecutor(max_workers)},
            job_defaults={
                'coalesce': True,
                'max_instances': 1,  # Prevent concurrent runs of same command
                'misfire_grace_time': None  # Run however late the pool picks it up
            },
            timezone='UTC'
        )
        self._in_flight: Dict[str, datetime] = {}
        self._condition = threading.Condition()
        self._accepting = True
        self._setup_event_listeners()

    def _setup_event_listeners(self):
        """Setup APScheduler event listeners to track finished executions."""

        def job_executed_listener(event):
            outcome: Optional[ExecutionOutcome] = event.retval
            if outcome is not None and not outcome.skipped:
                status = "succeeded" if outcome.succeeded else f"failed ({outcome.error})"
                logger.info(f"Command '{event.job_id}' {status}")
            self._finished(event.job_id)

        def job_error_listener(event):
            logger.error(
                f"Command '{event.job_id}' raised exception: {event.exception}",
                exc_info=(type(event.exception), event.exception, event.exception.__traceback__)
            )
            self._finished(event.job_id)

        def job_not_run_listener(event):
            logger.warning(f"Command '{event.job_id}' was not started by the worker pool")
            self._finished(event.job_id)

        self.scheduler.add_listener(job_executed_listener, EVENT_JOB_EXECUTED)
        self.scheduler.add_listener(job_error_listener, EVENT_JOB_ERROR)
        self.scheduler.add_listener(job_not_run_listener, EVENT_JOB_MISSED | EVENT_JOB_MAX_INSTANCES)

    def _finished(self, name: str):
        with self._condition:
            self._in_flight.pop(name, None)
            self._condition.notify_all()

    def start(self):
        """Start the worker pool."""
        if not self.scheduler.running:
            self.scheduler.start()

    def submit(self, name: str, func: Callable, *args) -> bool:
        """
        Run func(*args) on the pool unless the name is already in flight.

        Returns:
            True if dispatched, False if already in flight or shutting down
        """
        with self._condition:
            if not self._accepting or name in self._in_flight:
                return False
            self._in_flight[name] = utcnow()

        try:
            self.scheduler.add_job(func, 'date', args=list(args), id=name, name=name)
        except ConflictingIdError:
            logger.warning(f"Command '{name}' is already queued")
            self._finished(name)
            return False
        return True

    def in_flight(self) -> List[str]:
        """Names of the commands currently queued or running."""
        with self._condition:
            return list(self._in_flight)

    def wait_idle(self, timeout: Optional[float] = None) -> bool:
        """
        Wait until nothing is in flight.

        Returns:
            True if idle, False on timeout
        """
        with self._condition:
            return self._condition.wait_for(lambda: not self._in_flight, timeout=timeout)

    def shutdown(self, wait: bool = True):
        """Stop accepting work and optionally wait for running executions."""
        with self._condition:
            self._accepting = False
        if self.scheduler.running:
            pending = self.in_flight()
            if pending and wait:
                logger.info(f"Waiting for {len(pending)} running command(s): {', '.join(pending)}")
            self.scheduler.shutdown(wait=wait)

        if wait:
            # Anything left was queued but never handed to a worker
            with self._condition:
                self._in_flight.clear()
                self._condition.notify_all()


class SchedulerService:
    """
    Power-aware scheduling loop over a command store.

    All timing settings come from the SchedulerConfig passed in, so tests can
    run the service against a temporary store with short intervals.
    """

    def __init__(
        self,
        store: CommandStore,
        power_gate: PowerGate,
        executor: Optional[CommandExecutor] = None,
        config: Optional[SchedulerConfig] = None,
        clock: Optional[Callable[[], datetime]] = None
    ):
        """
        Initialize scheduler service.

        Args:
            store: Command store to schedule from
            power_gate: Power source probe
            executor: Command executor (default: one writing to store)
            config: Scheduler settings (default: SchedulerConfig())
            clock: Callable returning the current UTC datetime (for tests)
        """
        self.store = store
        self.power_gate = power_gate
        self.config = config or SchedulerConfig()
        self._clock = clock or utcnow
        self.executor = executor or CommandExecutor(store, clock=self._clock)
        self.dispatcher = Dispatcher(max_workers=self.config.max_workers)
        self._stop_event = threading.Event()

    @classmethod
    def from_config(cls, config: SchedulerConfig, power_gate: Optional[PowerGate] = None) -> 'SchedulerService':
        """Create a service with the store and power gate described by config."""
        return cls(
            store=config.create_store(),
            power_gate=power_gate or PowerGate(),
            config=config
        )

    # ── Lifecycle ─────────────────────────────────────────────────────────────

    def start(self):
        """Load command files, recover stale commands and start the worker pool."""
        logger.info(f"Starting scheduler with command store {self.store.path}")

        if self.config.config_dir:
            try:
                load_command_files(self.store, self.config.config_dir, prune=self.config.prune_unlisted)
            except ConfigError as e:
                logger.error(f"Couldn't read command files, keeping stored commands: {e}")

        if self.config.stale_running_seconds:
            try:
                self.store.reset_stale_running(timedelta(seconds=self.config.stale_running_seconds))
            except StoreError as e:
                logger.error(f"Could not reset commands left running: {e}")

        self.dispatcher.start()

    def stop(self, wait: bool = True):
        """
        Stop dispatching new commands.

        Args:
            wait: If True, wait for running commands to complete
        """
        self._stop_event.set()
        self.dispatcher.shutdown(wait=wait)
        logger.info("Scheduler stopped")

    @property
    def stopping(self) -> bool:
        return self._stop_event.is_set()

    def request_stop(self):
        """Ask run_forever() to return after its current step. Safe from signal handlers."""
        self._stop_event.set()

    def install_signal_handlers(self):
        """Stop gracefully on SIGINT and SIGTERM. Must be called from the main thread."""

        def signal_handler(signum, frame):
            logger.info(f"Received signal {signum}, shutting down...")
            self.request_stop()

        signal.signal(signal.SIGINT, signal_handler)
        signal.signal(signal.SIGTERM, signal_handler)

    def run_forever(self):
        """Run the scheduling loop until stop is requested."""
        self.start()
        try:
            while not self.stopping:
                if not self.wait_for_external_power():
                    break
                try:
                    self.run_pass()
                except Exception as e:
                    logger.error(f"Scheduling pass failed: {e}", exc_info=True)

                logger.debug(f"Sleeping for {self.config.pass_interval_seconds} seconds...")
                if self._stop_event.wait(self.config.pass_interval_seconds):
                    break
        finally:
            self.stop(wait=True)

    # ── Scheduling ────────────────────────────────────────────────────────────

    def wait_for_external_power(self) -> bool:
        """
        Block until the machine is on external power.

        Returns:
            True once on external power, False if stop was requested first
        """
        announced = False
        while self.power_gate.on_battery_or_unknown():
            if not announced:
                logger.info(
                    f"Running on battery power, checking again every "
                    f"{self.config.power_poll_seconds} seconds"
                )
                announced = True
            if self._stop_event.wait(self.config.power_poll_seconds):
                return False

        if announced:
            logger.info("External power connected")
        return not self.stopping

    def run_pass(self, now: Optional[datetime] = None) -> List[str]:
        """
        Dispatch every eligible command from a fresh snapshot of the store.

        Store errors abandon the pass. Going on battery power mid-pass
        abandons the remaining commands; already dispatched ones keep running.

        Returns:
            Names of the dispatched commands
        """
        try:
            commands = self.store.snapshot()
        except StoreError as e:
            logger.error(f"Error when reading command store, trying again later: {e}")
            return []

        if not commands:
            logger.debug("No commands in command store, waiting for new commands to be added")
            return []

        dispatched: List[str] = []
        for command in commands:
            if self.stopping:
                break
            if self.power_gate.on_battery_or_unknown():
                logger.info("Switched to battery power, abandoning the remaining commands of this pass")
                break

            if not is_eligible(command, now or self._clock()):
                continue
            if self._dispatch(command):
                dispatched.append(command.name)

        if dispatched:
            logger.info(f"Dispatched {len(dispatched)} command(s): {', '.join(dispatched)}")
        return dispatched

    def _dispatch(self, command: Command) -> bool:
        if not self.dispatcher.submit(command.name, self.executor.run, command):
            logger.debug(f"Command '{command.name}' is still in flight, not dispatching again")
            return False
        return True

    def in_flight(self) -> List[str]:
        """Names of commands this process is currently executing."""
        return self.dispatcher.in_flight()

    def wait_idle(self, timeout: Optional[float] = None) -> bool:
        """Wait for all dispatched commands to finish. False on timeout."""
        return self.dispatcher.wait_idle(timeout)
