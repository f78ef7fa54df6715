"""
Dependency Injection System
============================

Configuration objects, logging setup and the container that wires the
ingestion engine together. Every component receives its collaborators
(checkpoint store, dispatcher, error handler) from here instead of
reaching for module-level globals.
"""

# ============================================================================
# IMPORTS
# ============================================================================

from collections import deque
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional, TYPE_CHECKING
import logging
import os
import sys

if TYPE_CHECKING:
    from checkpoint_store import CheckpointStore
    from error_handling import ErrorHandler
    from event_dispatcher import EventDispatcher
    from explorer_database import ExplorerDatabase
    from history_scanner import HistoryScanner
    from journal_monitor import JournalMonitor
    from journal_state_manager import JournalStateManager


JOURNAL_DIR_ENV = "ELITE_JOURNAL_DIR"


# ============================================================================
# CONFIGURATION CLASSES
# ============================================================================

def default_journal_dir() -> Path:
    """Where the game writes its journals on this platform"""
    override = os.environ.get(JOURNAL_DIR_ENV, "").strip()
    if override:
        return Path(override).expanduser()

    home = Path.home()
    if sys.platform == "win32":
        profile = Path(os.environ.get("USERPROFILE", str(home)))
        return profile / "Saved Games" / "Frontier Developments" / "Elite Dangerous"
    if sys.platform == "darwin":
        return home / "Library" / "Application Support" / "Frontier Developments" / "Elite Dangerous"
    # Linux: Steam Proton prefix
    return (
        home / ".local" / "share" / "Steam" / "steamapps" / "compatdata" / "359320" / "pfx"
        / "drive_c" / "users" / "steamuser" / "Saved Games" / "Frontier Developments" / "Elite Dangerous"
    )


def default_data_dir() -> Path:
    if sys.platform == "win32" and os.environ.get("APPDATA"):
        return Path(os.environ["APPDATA"]) / "EliteExplorer"
    return Path.home() / ".elite_explorer"


@dataclass
class PathConfig:
    """File paths configuration"""
    journal_dir: Path
    data_dir: Path
    checkpoint_path: Path
    db_path: Path
    log_path: Path
    export_dir: Path

    @classmethod
    def from_environment(cls) -> 'PathConfig':
        """Create path configuration from environment"""
        data_dir = default_data_dir()
        return cls.under(data_dir, journal_dir=default_journal_dir())

    @classmethod
    def under(cls, data_dir: Path, journal_dir: Path) -> 'PathConfig':
        """Standard layout below one data directory"""
        data_dir = Path(data_dir)
        return cls(
            journal_dir=Path(journal_dir),
            data_dir=data_dir,
            checkpoint_path=data_dir / "lastProcessed.json",
            db_path=data_dir / "explorer.db",
            log_path=data_dir / "logs" / "explorer.log",
            export_dir=data_dir / "exports",
        )


@dataclass
class MonitoringConfig:
    """Journal monitoring configuration"""
    poll_fast_seconds: float = 0.1
    poll_slow_seconds: float = 0.25
    rotation_check_seconds: float = 5.0
    snapshot_poll_seconds: float = 0.5
    progress_interval: int = 500
    startup_file_count: int = 15
    journal_pattern: str = "Journal.*.log"


@dataclass
class AppConfig:
    """Complete application configuration"""
    app_name: str
    version: str
    paths: PathConfig
    monitoring: MonitoringConfig = field(default_factory=MonitoringConfig)

    @classmethod
    def create_default(cls) -> 'AppConfig':
        return cls(
            app_name="Elite Explorer Journal Engine",
            version="1.0.0",
            paths=PathConfig.from_environment(),
            monitoring=MonitoringConfig()
        )


# ============================================================================
# LOGGING
# ============================================================================

LOG_FORMAT = "[%(asctime)s] [%(levelname)s] [%(name)s] %(message)s"
LOG_DATEFMT = "%Y-%m-%d %H:%M:%S"


class FileLogger:
    """Rotating file log for the whole `explorer.*` logger tree.

    Keeps the small log/info/warning/error interface used by ErrorHandler and
    attaches one RotatingFileHandler per log path, so logs stay bounded and
    the file handle is opened once.
    """

    def __init__(
        self,
        log_path: Path,
        *,
        max_bytes: int = 5 * 1024 * 1024,   # 5 MB per file
        backup_count: int = 5,
    ):
        self.log_path = Path(log_path)
        self.log_path.parent.mkdir(parents=True, exist_ok=True)

        self._logger = logging.getLogger("explorer.app")
        root = logging.getLogger("explorer")
        if root.level == logging.NOTSET:
            root.setLevel(logging.INFO)

        self._handler = None
        target = str(self.log_path.resolve())
        already = any(
            getattr(handler, "baseFilename", None) == target for handler in root.handlers
        )
        if not already:
            from logging.handlers import RotatingFileHandler

            self._handler = RotatingFileHandler(
                filename=str(self.log_path),
                maxBytes=max_bytes,
                backupCount=backup_count,
                encoding="utf-8",
            )
            self._handler.setFormatter(logging.Formatter(fmt=LOG_FORMAT, datefmt=LOG_DATEFMT))
            root.addHandler(self._handler)

    def close(self):
        """Detach and close the file handler this logger added"""
        if self._handler is not None:
            logging.getLogger("explorer").removeHandler(self._handler)
            self._handler.close()
            self._handler = None

    def log(self, message: str):
        self._logger.info(message)

    def info(self, message: str):
        self._logger.info(message)

    def warning(self, message: str):
        self._logger.warning(message)

    def error(self, message: str):
        self._logger.error(message)


class MemoryLogHandler(logging.Handler):
    """Keeps the most recent formatted records for a debug dump"""

    def __init__(self, capacity: int = 2000):
        super().__init__()
        self.buffer: deque = deque(maxlen=capacity)
        self.setFormatter(logging.Formatter(fmt=LOG_FORMAT, datefmt=LOG_DATEFMT))

    def emit(self, record: logging.LogRecord):
        try:
            self.buffer.append(self.format(record))
        except Exception:
            self.handleError(record)

    def dump(self) -> str:
        return "\n".join(self.buffer)


# ============================================================================
# DEPENDENCY CONTAINER
# ============================================================================

@dataclass
class DependencyContainer:
    """
    Container for all application dependencies

    Created once at process start; cleanup() tears everything down.
    """
    config: AppConfig
    logger: FileLogger
    error_handler: 'ErrorHandler'
    checkpoints: 'CheckpointStore'
    dispatcher: 'EventDispatcher'
    state: 'JournalStateManager'
    monitor: 'JournalMonitor'
    history: 'HistoryScanner'
    database: Optional['ExplorerDatabase'] = None
    memory_log: Optional[MemoryLogHandler] = None

    @classmethod
    def create(cls, config: Optional[AppConfig] = None, with_database: bool = True) -> 'DependencyContainer':
        """
        Create and wire all components

        Args:
            config: Application configuration (uses default if None)
            with_database: Attach the SQLite subscriber
        """
        # Imported here to avoid circular imports
        from checkpoint_store import CheckpointStore
        from error_handling import ErrorHandler
        from event_dispatcher import EventDispatcher
        from history_scanner import HistoryScanner
        from journal_monitor import JournalMonitor
        from journal_state_manager import JournalStateManager

        if config is None:
            config = AppConfig.create_default()

        config.paths.data_dir.mkdir(parents=True, exist_ok=True)

        logger = FileLogger(config.paths.log_path)
        logger.info(f"Application starting: {config.app_name} v{config.version}")

        memory_log = MemoryLogHandler()
        logging.getLogger("explorer").addHandler(memory_log)

        error_handler = ErrorHandler(logger)

        checkpoints = CheckpointStore(config.paths.checkpoint_path)
        checkpoints.load()

        dispatcher = EventDispatcher(checkpoints, error_handler)

        state = JournalStateManager()
        state.attach(dispatcher)

        database = None
        if with_database:
            from explorer_database import ExplorerDatabase

            database = ExplorerDatabase(config.paths.db_path)
            database.attach(dispatcher)
            logger.info(f"Database initialized: {config.paths.db_path}")

        monitor = JournalMonitor(
            config.paths.journal_dir,
            checkpoints,
            dispatcher,
            config.monitoring,
            error_handler=error_handler
        )
        history = HistoryScanner(
            config.paths.journal_dir,
            pattern=config.monitoring.journal_pattern,
            progress_interval=config.monitoring.progress_interval
        )

        return cls(
            config=config,
            logger=logger,
            error_handler=error_handler,
            checkpoints=checkpoints,
            dispatcher=dispatcher,
            state=state,
            monitor=monitor,
            history=history,
            database=database,
            memory_log=memory_log,
        )

    def cleanup(self):
        """Stop monitoring and close resources"""
        self.monitor.stop()
        if self.database is not None:
            self.database.close()
        if self.memory_log is not None:
            logging.getLogger("explorer").removeHandler(self.memory_log)
        self.logger.info("Application shutdown complete")
        self.logger.close()
