"""
Journal Monitor
===============

Coordinates the ingestion engine on one background thread:
- Startup backlog: the most recent journals, resumed from their checkpoints,
  processed by a JournalWorker and pumped through the EventDispatcher
- Live tailing of the current journal by byte watermark
- Rotation: drain the old journal, freeze it, tail the new one from zero
- Status.json / NavRoute.json polling
- Commands: start(), request_rescan(), request_rescan(clear_checkpoints=True)

Backlog batches and live tailing share this thread, so the same journal is
never committed by two flows at once. Rescan requests are coalesced: while
one is pending or running, further requests are ignored.
"""

# ============================================================================
# IMPORTS
# ============================================================================

import logging
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional

from checkpoint_store import CheckpointStore
from dependency_injection import MonitoringConfig
from error_handling import (
    ConfigurationError,
    ErrorHandler,
    JournalDirectoryMissingError,
    JournalReadError,
    WorkerError,
)
from event_dispatcher import BatchOutcome, EventDispatcher
from journal_events import ClassifierContext, classify_lines, parse_line
from journal_files import ChangeKind, JournalDirectoryWatcher, LogFile
from journal_reader import JournalTail, offset_after_lines
from journal_worker import (
    BatchMode,
    BodiesBuilder,
    DoneMessage,
    EventMessage,
    JournalWorker,
    LiveStateBuilder,
    SnapshotKind,
    SnapshotMessage,
    WorkItem,
    feed_record,
)
from snapshot_reader import nav_route_reader, status_reader


logger = logging.getLogger("explorer.monitor")


@dataclass(frozen=True)
class ScanRequest:
    clear_checkpoints: bool = False


# ============================================================================
# JOURNAL MONITOR
# ============================================================================

class JournalMonitor:
    """Main journal monitoring coordinator"""

    def __init__(
        self,
        journal_dir: Path,
        checkpoints: CheckpointStore,
        dispatcher: EventDispatcher,
        config: Optional[MonitoringConfig] = None,
        error_handler: Optional[ErrorHandler] = None
    ):
        """
        Args:
            journal_dir: Directory containing journal files
            checkpoints: Durable line watermarks
            dispatcher: Receives every event, snapshot and commit
            config: Polling intervals and backlog size
            error_handler: Routes configuration errors to the critical channel
        """
        self.config = config or MonitoringConfig()
        self.checkpoints = checkpoints
        self.dispatcher = dispatcher
        self.error_handler = error_handler or dispatcher.error_handler
        self._configure_paths(journal_dir)

        # Live tail state
        self.tail: Optional[JournalTail] = None
        self.frozen: Dict[str, int] = {}
        self._context = ClassifierContext()
        self._live = LiveStateBuilder()
        self._bodies = BodiesBuilder()

        # Control
        self.stop_event = threading.Event()
        self.pause_event = threading.Event()
        self._wake = threading.Event()
        self.monitor_thread: Optional[threading.Thread] = None
        self.configuration_error: Optional[ConfigurationError] = None

        # Scan coalescing
        self._scan_lock = threading.Lock()
        self._scan_in_progress = False
        self._pending_scan: Optional[ScanRequest] = None
        self.batches_run = 0

        self._last_rotation_check = 0.0
        self._last_snapshot_poll = 0.0

    def _configure_paths(self, journal_dir: Path):
        self.journal_dir = Path(journal_dir).expanduser()
        self.watcher = JournalDirectoryWatcher(self.journal_dir, self.config.journal_pattern)
        self.status = status_reader(self.journal_dir, self.dispatcher.dispatch)
        self.nav_route = nav_route_reader(self.journal_dir, self.dispatcher.dispatch)

    # ========================================================================
    # COMMANDS
    # ========================================================================

    def start(self) -> bool:
        """
        Start live tailing in a background thread.

        Returns False when already running or when the journal directory is
        missing (reported once through the error handler's critical channel).
        """
        if self.monitor_thread and self.monitor_thread.is_alive():
            logger.info("Monitor already running")
            return False

        if not self.initialize():
            return False

        self.stop_event.clear()
        self.monitor_thread = threading.Thread(target=self._monitor_loop, name="JournalMonitor", daemon=True)
        self.monitor_thread.start()
        logger.info(f"Journal monitor started on {self.journal_dir}")
        return True

    def stop(self):
        self.stop_event.set()
        self._wake.set()

        if self.monitor_thread:
            self.monitor_thread.join(timeout=5.0)
            self.monitor_thread = None

        logger.info("Journal monitor stopped")

    def pause(self):
        self.pause_event.set()

    def resume(self):
        self.pause_event.clear()
        self._wake.set()

    def request_rescan(self, clear_checkpoints: bool = False) -> bool:
        """
        Ask for a full backlog rescan of every journal.

        Returns False (and does nothing) while another rescan is pending or running.
        """
        with self._scan_lock:
            if self._scan_in_progress:
                logger.info("Rescan already in progress, request ignored")
                return False
            self._scan_in_progress = True
            self._pending_scan = ScanRequest(clear_checkpoints)

        logger.info(f"Rescan requested (clear checkpoints: {clear_checkpoints})")
        self._wake.set()
        return True

    @property
    def scan_in_progress(self) -> bool:
        with self._scan_lock:
            return self._scan_in_progress

    def set_journal_dir(self, journal_dir: Path) -> bool:
        """Point the monitor at another directory and restart it."""
        was_running = self.monitor_thread is not None
        if was_running:
            self.stop()

        self._configure_paths(journal_dir)
        self.tail = None
        self.frozen = {}
        self.configuration_error = None

        return self.start() if was_running else True

    # ========================================================================
    # STARTUP
    # ========================================================================

    def initialize(self) -> bool:
        """List the journal directory; a missing directory is a configuration error."""
        try:
            self.watcher.initial_scan()
        except JournalDirectoryMissingError as e:
            self.configuration_error = e
            self.error_handler.handle_error(e)
            return False

        self.configuration_error = None
        return True

    def run_startup_backlog(self) -> Optional[BatchOutcome]:
        """Process the most recent journals, then attach the live tail."""
        try:
            files = self.watcher.initial_scan()
        except JournalDirectoryMissingError as e:
            self.error_handler.handle_error(e)
            return None

        recent = files[-self.config.startup_file_count:] if self.config.startup_file_count > 0 else []
        outcome = self.run_backlog(recent, BatchMode.ALL) if recent else None
        self._attach_current(outcome)
        return outcome

    def run_backlog(self, files: List[LogFile], mode: BatchMode = BatchMode.LIVE) -> BatchOutcome:
        """Run one worker batch over `files` (oldest first) and wait for it."""
        items = [WorkItem(f.path, self.checkpoints.get(f.name)) for f in files]
        worker = JournalWorker(items, mode, progress_interval=self.config.progress_interval)
        worker.start()
        self.batches_run += 1

        outcome = self.dispatcher.pump(worker.messages(self.config.poll_slow_seconds))
        worker.join(timeout=1.0)

        if outcome.fatal:
            logger.error("Backlog batch failed; checkpoints left unchanged")
        else:
            logger.info(
                f"Backlog batch done: {outcome.events} events, "
                f"{len(outcome.errors)} file errors, {len(items)} files"
            )
        return outcome

    def _attach_current(self, outcome: Optional[BatchOutcome]):
        """Start the live tail where the backlog (or the last commit) left off."""
        current = self.watcher.current
        if current is None:
            self.tail = None
            return

        line_index = self.checkpoints.get(current.name)
        if outcome is not None and outcome.committed and current.name in outcome.watermarks:
            offset = outcome.watermarks[current.name]
        else:
            try:
                offset = offset_after_lines(current.path, line_index)
            except JournalReadError as e:
                self.error_handler.handle_error(e, notify_user=False)
                offset, line_index = 0, 0

        self.tail = JournalTail(current.path, offset, line_index)
        self._seed_live_state()
        logger.info(f"Tailing {current.name} from byte {offset} (line {line_index})")

    def _seed_live_state(self):
        live = self.dispatcher.last(SnapshotKind.LIVE)
        bodies = self.dispatcher.last(SnapshotKind.BODIES)
        self._live = LiveStateBuilder(live.data if live else None)
        self._bodies = BodiesBuilder(bodies.data if bodies else None)

        self._context = ClassifierContext()
        if live:
            self._context.system = live.data.get("current_system")
            self._context.star_pos = live.data.get("pos")

    # ========================================================================
    # MONITORING LOOP
    # ========================================================================

    def _monitor_loop(self):
        """Main monitoring loop (runs in background thread)"""
        try:
            self.run_startup_backlog()

            while not self.stop_event.is_set():
                if self.pause_event.is_set():
                    self.stop_event.wait(self.config.poll_slow_seconds)
                    continue

                if self._pending_scan is not None:
                    self.perform_pending_scan()
                    continue

                if not self.poll_once():
                    self._wake.wait(self.config.poll_fast_seconds)
                    self._wake.clear()

        except Exception as e:
            logger.exception("Monitor crashed")
            self.error_handler.handle_error(WorkerError(f"Monitor crashed: {e}"))

    def poll_once(self, now: Optional[float] = None) -> bool:
        """
        One monitoring step: rotation check and snapshot polls on their
        intervals, then a tail read. Returns True if new lines were delivered.
        """
        now = time.monotonic() if now is None else now

        if now - self._last_rotation_check >= self.config.rotation_check_seconds:
            self._last_rotation_check = now
            self.check_rotation()

        if now - self._last_snapshot_poll >= self.config.snapshot_poll_seconds:
            self._last_snapshot_poll = now
            self.status.poll()
            self.nav_route.poll()

        if self.tail is None:
            return False
        if self.watcher.check_current() is None:
            return False
        return self._drain(self.tail)

    def check_rotation(self):
        """Switch to any newer journal that appeared since the last check."""
        try:
            changes = self.watcher.check_directory()
        except JournalDirectoryMissingError as e:
            logger.warning(f"Journal directory unavailable: {e.message}")
            return

        for change in changes:
            if change.kind is ChangeKind.ROTATED:
                self._rotate_to(change.file)
            else:
                logger.info(f"Older journal appeared: {change.file.name}")

    def _rotate_to(self, new_file: LogFile):
        if self.tail is not None:
            self._drain(self.tail)
            self.frozen[self.tail.name] = self.tail.offset
            logger.info(f"Finalized {self.tail.name} at byte {self.tail.offset}")

        self.tail = JournalTail(new_file.path, 0, 0)
        logger.info(f"Now tailing {new_file.name}")
        self._drain(self.tail)

    def _drain(self, tail: JournalTail) -> bool:
        """Deliver complete lines past the tail watermark, then commit."""
        try:
            result = tail.read()
        except JournalReadError as e:
            self.error_handler.handle_error(e, notify_user=False)
            return False

        if not result.lines:
            return False

        events = list(classify_lines(result.lines, self._context, tail.name, tail.line_index))
        for event in events:
            self.dispatcher.dispatch(EventMessage(event))

        self._update_live_snapshots(tail, result.lines)

        self.dispatcher.dispatch(DoneMessage(
            updated_checkpoints={tail.name: tail.line_index + len(result.lines)},
            watermarks={tail.name: result.end_offset},
        ))
        tail.accept(result)
        return True

    def _update_live_snapshots(self, tail: JournalTail, lines: List[str]):
        before_live, before_bodies = self._live.snapshot(), self._bodies.snapshot()
        builders = (self._live, self._bodies)
        for index, line in enumerate(lines, tail.line_index):
            parsed = parse_line(line)
            if parsed.ok:
                feed_record(builders, parsed.record, tail.name, index)

        live, bodies = self._live.snapshot(), self._bodies.snapshot()
        if live is not None and live != before_live:
            self.dispatcher.dispatch(SnapshotMessage(SnapshotKind.LIVE, live))
        if bodies is not None and bodies != before_bodies:
            self.dispatcher.dispatch(SnapshotMessage(SnapshotKind.BODIES, bodies))

    # ========================================================================
    # RESCAN
    # ========================================================================

    def perform_pending_scan(self) -> Optional[BatchOutcome]:
        """Run the pending rescan request, if any, and release the in-progress flag."""
        request = self._pending_scan
        if request is None:
            return None

        try:
            if self.tail is not None:
                self._drain(self.tail)

            if request.clear_checkpoints:
                self.checkpoints.clear()

            files = self.watcher.initial_scan()
            outcome = self.run_backlog(files, BatchMode.ALL)
            self._attach_current(outcome)
            return outcome
        except JournalDirectoryMissingError as e:
            self.error_handler.handle_error(e)
            return None
        finally:
            with self._scan_lock:
                self._pending_scan = None
                self._scan_in_progress = False
