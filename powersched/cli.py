"""
Command-line interface for powersched.

Invoked with an executable (and optionally its arguments) it registers that
command in the command store and exits:

    powersched --name backup --interval 24h /usr/bin/backup --full

Invoked without one it runs the scheduler daemon, executing due commands
while the machine is on external power.
"""

import argparse
import logging
import logging.handlers
import os
import sys
from pathlib import Path
from typing import List, Optional

from powersched.config import SchedulerConfig, ConfigError, parse_duration
from powersched.power import PowerGate, StaticPowerGate
from powersched.service import SchedulerService
from powersched.store import NotFoundError, StoreError

logger = logging.getLogger(__name__)


def setup_logging(log_file: Optional[str] = None, verbose: bool = False,
                  level: str = "INFO", max_bytes: int = 10 * 1024 * 1024, backup_count: int = 5):
    """Setup logging configuration."""
    level = logging.DEBUG if verbose else getattr(logging, level.upper(), logging.INFO)

    # Console handler
    console_handler = logging.StreamHandler()
    console_handler.setLevel(level)
    console_formatter = logging.Formatter(
        '%(asctime)s [%(levelname)s] %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    )
    console_handler.setFormatter(console_formatter)

    # Root logger
    root_logger = logging.getLogger()
    for handler in list(root_logger.handlers):
        root_logger.removeHandler(handler)
    root_logger.setLevel(level)
    root_logger.addHandler(console_handler)

    # File handler
    if log_file:
        log_path = Path(log_file).expanduser()
        log_path.parent.mkdir(parents=True, exist_ok=True)

        file_handler = logging.handlers.RotatingFileHandler(
            log_path, maxBytes=max_bytes, backupCount=backup_count
        )
        file_handler.setLevel(level)
        file_formatter = logging.Formatter(
            '%(asctime)s [%(levelname)s] %(name)s: %(message)s'
        )
        file_handler.setFormatter(file_formatter)
        root_logger.addHandler(file_handler)


def load_config(args) -> SchedulerConfig:
    """Load settings and apply command line overrides."""
    config = SchedulerConfig.load(args.config)
    if args.store:
        config.store_path = args.store
    if args.config_dir:
        config.config_dir = args.config_dir

    errors = config.validate()
    if errors:
        raise ConfigError("Invalid configuration: " + "; ".join(errors))
    return config


def cmd_register(args, config: SchedulerConfig) -> int:
    """Add or update one command in the command store."""
    executable = args.executable
    if not os.path.isabs(executable):
        logger.warning(f"'{executable}' is not an absolute path, it will be looked up in PATH when run")

    name = args.name or Path(executable).name
    try:
        interval = parse_duration(args.interval)
    except ValueError as e:
        logger.error(str(e))
        return 1

    if not args.arguments:
        logger.info("No arguments specified for the command to run.")

    store = config.create_store()
    try:
        was_updated = store.upsert(name, executable, args.arguments, interval)
    except (StoreError, ValueError) as e:
        logger.error(f"Error when adding command to command store: {e}")
        return 1

    action = "Updated" if was_updated else "Added"
    logger.info(f"{action} command '{name}' in {store.path}. It will be executed later.")
    return 0


def cmd_list(args, config: SchedulerConfig) -> int:
    """Print all commands in the command store."""
    store = config.create_store()
    try:
        commands = store.snapshot()
    except StoreError as e:
        logger.error(f"Failed to read command store: {e}")
        return 1

    print(f"\nCommand store: {store.path}")
    print(f"Commands: {len(commands)}\n")
    for command in sorted(commands, key=lambda c: c.name):
        last_run = command.last_run.isoformat() if command.last_run else "never"
        print(f"  {command.name}")
        print(f"    Executable: {command.executable_path}")
        if command.arguments:
            print(f"    Arguments:  {command.arguments}")
        print(f"    Interval:   {command.interval}")
        print(f"    State:      {command.state.value}")
        print(f"    Last run:   {last_run}")
        print()
    return 0


def cmd_remove(args, config: SchedulerConfig) -> int:
    """Remove a command from the command store."""
    store = config.create_store()
    try:
        store.remove(args.remove)
    except NotFoundError as e:
        logger.error(str(e))
        return 1
    except StoreError as e:
        logger.error(f"Failed to remove command: {e}")
        return 1
    return 0


def cmd_init(args, config: SchedulerConfig) -> int:
    """Write the current settings to the configuration file."""
    try:
        config.save()
    except OSError as e:
        logger.error(f"Failed to write configuration: {e}")
        return 1
    logger.info(f"Initialized configuration at: {config.config_path}")
    return 0


def cmd_daemon(args, config: SchedulerConfig) -> int:
    """Run the scheduler until interrupted."""
    power_gate = StaticPowerGate(on_battery=False) if args.always_on_power else PowerGate()
    service = SchedulerService.from_config(config, power_gate=power_gate)
    service.install_signal_handlers()

    logger.info("No command to run specified, running in daemon mode and executing stored commands when appropriate")
    try:
        service.run_forever()
    except Exception as e:
        logger.error(f"Scheduler stopped unexpectedly: {e}", exc_info=True)
        return 1
    return 0


def build_parser() -> argparse.ArgumentParser:
    """Build the argument parser."""
    parser = argparse.ArgumentParser(
        prog="powersched",
        description="Run commands periodically, but only while on external power",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__
    )

    parser.add_argument('-c', '--config', type=str, help='Path to settings file')
    parser.add_argument('--store', type=str, help='Path to command store file')
    parser.add_argument('--config-dir', type=str, help='Directory of *.toml command files')
    parser.add_argument('-v', '--verbose', action='store_true', help='Enable verbose logging')
    parser.add_argument('--log-file', type=str, help='Log file path (daemon mode)')

    parser.add_argument('--name', type=str, help='Name of the command to register (default: executable name)')
    parser.add_argument('--interval', type=str, default='24h',
                        help='Minimum time between successful runs, e.g. 24h, 90m (default: 24h)')

    parser.add_argument('--list', action='store_true', help='List stored commands and exit')
    parser.add_argument('--remove', type=str, metavar='NAME', help='Remove a stored command and exit')
    parser.add_argument('--init', action='store_true', help='Write a settings file with the current settings and exit')
    parser.add_argument('--always-on-power', action='store_true',
                        help='Do not check the power source (machines without a battery sensor)')

    parser.add_argument('executable', nargs='?', help='Command to register')
    parser.add_argument('arguments', nargs=argparse.REMAINDER, help='Arguments for the command')
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    """Main CLI entry point."""
    args = build_parser().parse_args(argv)

    setup_logging(verbose=args.verbose)
    try:
        config = load_config(args)
    except ConfigError as e:
        logger.error(str(e))
        return 1

    if args.init:
        return cmd_init(args, config)
    if args.list:
        return cmd_list(args, config)
    if args.remove:
        return cmd_remove(args, config)
    if args.executable:
        return cmd_register(args, config)

    setup_logging(
        log_file=args.log_file or config.logging.file,
        verbose=args.verbose,
        level=config.logging.level,
        max_bytes=config.logging.max_bytes,
        backup_count=config.logging.backup_count
    )
    return cmd_daemon(args, config)


if __name__ == '__main__':
    sys.exit(main())
