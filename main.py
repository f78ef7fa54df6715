# ============================================================================
# IMPORTS
# ============================================================================

import argparse
import logging
import sys
import threading
from pathlib import Path
from typing import List, Optional

logging.basicConfig(
    level=logging.INFO,
    format="[%(asctime)s] [%(levelname)s] [%(name)s] %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("explorer.main")

from config_loader import ConfigLoader, ConfigValidator
from dependency_injection import AppConfig, DependencyContainer, PathConfig
from error_handling import ConfigurationError, ExplorerError
from history_exporter import export_history_xlsx
from journal_events import to_wire
from journal_files import list_journals
from journal_worker import (
    EventMessage,
    ProgressMessage,
    SnapshotKind,
    SnapshotMessage,
    build_commander_profile,
)
from shutdown_manager import ShutdownManager, ShutdownPriority


# ============================================================================
# CONFIGURATION
# ============================================================================

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="elite-explorer",
        description="Tail Elite Dangerous journals and publish classified events.",
    )
    parser.add_argument("--config", type=Path, help="YAML/JSON config file")
    parser.add_argument("--journal-dir", type=Path, help="Journal directory (overrides config)")
    parser.add_argument("--data-dir", type=Path, help="Where checkpoints, database and logs live")
    parser.add_argument("--rescan", action="store_true", help="Run one full rescan after startup")
    parser.add_argument("--clear-checkpoints", action="store_true",
                        help="With --rescan: forget checkpoints and reprocess everything")
    parser.add_argument("--history", action="store_true", help="Scan all journals for jumps and exit")
    parser.add_argument("--export", type=Path, metavar="DIR",
                        help="With --history: write the jump list to an .xlsx in DIR")
    parser.add_argument("--no-database", action="store_true", help="Do not persist scans to SQLite")
    parser.add_argument("--dump-log", action="store_true", help="Print the in-memory log on exit")
    parser.add_argument("--verbose", action="store_true", help="Log events as they arrive")
    return parser


def get_config(args: argparse.Namespace) -> AppConfig:
    """Config file (explicit or discovered), then command line overrides"""
    config = ConfigLoader.load_or_default(args.config)

    if args.journal_dir or args.data_dir:
        config.paths = PathConfig.under(
            args.data_dir or config.paths.data_dir,
            args.journal_dir or config.paths.journal_dir,
        )

    problems = ConfigValidator.validate(config)
    if problems:
        raise ConfigurationError(
            "Invalid configuration: " + "; ".join(problems),
            context={"problems": problems}
        )
    return config


# ============================================================================
# SUBSCRIBERS
# ============================================================================

def log_event(message):
    if isinstance(message, EventMessage):
        event = message.event
        logger.info(f"{event.kind.value} {event.file}:{event.line} {to_wire(event.data)}")
    elif isinstance(message, SnapshotMessage) and message.kind is SnapshotKind.PROFILE:
        identity = message.data.get("identity") or {}
        logger.info(f"Commander profile: {identity.get('name')} in {identity.get('ship')}")


def log_progress(message: ProgressMessage):
    logger.info(
        f"[{message.file_index}/{message.total_files}] {message.file}: "
        f"{message.current_line}/{message.total_lines} lines"
    )


# ============================================================================
# COMMANDS
# ============================================================================

def run_history(container: DependencyContainer, export_dir: Optional[Path]) -> int:
    container.history.on_progress = log_progress
    jumps = container.history.scan() or []
    logger.info(f"{len(jumps)} jumps in history")

    if export_dir is not None:
        paths = container.config.paths
        journals = list_journals(paths.journal_dir, container.config.monitoring.journal_pattern)
        profile = build_commander_profile([f.path for f in journals]) or {}
        cmdr = (profile.get("identity") or {}).get("name") or "UnknownCMDR"
        path = export_history_xlsx(jumps, export_dir, cmdr_name=cmdr)
        if path is None:
            logger.warning("No jumps to export")
        else:
            logger.info(f"Exported jump history to {path}")
    return 0


def run_monitor(container: DependencyContainer, args: argparse.Namespace) -> int:
    stopped = threading.Event()

    shutdown = ShutdownManager(container.error_handler)
    shutdown.register_task("monitor.stop()", container.monitor.stop, ShutdownPriority.CRITICAL)
    if container.database is not None:
        shutdown.register_component("database", container.database, ShutdownPriority.HIGH)
    shutdown.on_shutdown_complete = stopped.set
    shutdown.setup_signal_handlers(exit_code=None)

    if args.verbose:
        container.dispatcher.subscribe(log_event, name="console")
    else:
        container.dispatcher.subscribe(log_event, kinds=[SnapshotKind.PROFILE], name="console")
    container.dispatcher.add_progress_listener(log_progress)

    if not container.monitor.start():
        error = container.monitor.configuration_error
        if error is not None:
            logger.error(error.user_message)
            return 2
        return 1

    if args.rescan:
        container.monitor.request_rescan(clear_checkpoints=args.clear_checkpoints)

    try:
        while not stopped.wait(1.0):
            pass
    finally:
        shutdown.restore_signal_handlers()
    return 0


# ============================================================================
# MAIN
# ============================================================================

def main(argv: Optional[List[str]] = None) -> int:
    """Main application entry point"""
    args = build_parser().parse_args(argv)

    try:
        config = get_config(args)
    except ConfigurationError as e:
        logger.error(e.message)
        return 2

    container = None
    try:
        container = DependencyContainer.create(
            config,
            with_database=not (args.no_database or args.history)
        )
        container.error_handler.on_critical_error = lambda err: logger.error(f"CRITICAL: {err.user_message}")

        if args.history:
            return run_history(container, args.export)
        return run_monitor(container, args)

    except ExplorerError as e:
        logger.error(e.message)
        return 1

    finally:
        if container is not None:
            if args.dump_log and container.memory_log is not None:
                print(container.memory_log.dump())
            container.cleanup()


# ============================================================================
# ENTRYPOINT
# ============================================================================

if __name__ == "__main__":
    sys.exit(main())
