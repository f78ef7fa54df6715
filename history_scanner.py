"""
Jump History
============

Full-history scan of every journal for FSDJump records (batch mode, no
checkpoints), plus merging of an externally fetched flight log into the
journal history.

The merge matches entries on system name and timestamp truncated to the
minute. It is approximate: clock drift of a minute or more between the two
sources yields a duplicate entry rather than a match.
"""

# ============================================================================
# IMPORTS
# ============================================================================

import logging
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional

from error_handling import WorkerError
from journal_files import JOURNAL_GLOB, list_journals
from journal_worker import (
    BatchMode,
    ErrorMessage,
    JournalWorker,
    ProgressMessage,
    SnapshotKind,
    SnapshotMessage,
    WorkItem,
)


logger = logging.getLogger("explorer.history")

Jump = Dict[str, Any]


# ============================================================================
# HISTORY SCANNER
# ============================================================================

class HistoryScanner:
    """Scans all journals for jumps; one scan at a time, last result cached"""

    def __init__(self, journal_dir: Path, pattern: str = JOURNAL_GLOB, progress_interval: int = 250):
        self.journal_dir = Path(journal_dir)
        self.pattern = pattern
        self.progress_interval = progress_interval

        self._lock = threading.Lock()
        self._scanning = False
        self._cached: Optional[List[Jump]] = None
        self._thread: Optional[threading.Thread] = None

        self.on_progress: Optional[Callable[[ProgressMessage], None]] = None
        self.on_complete: Optional[Callable[[List[Jump]], None]] = None
        self.on_error: Optional[Callable[[Exception], None]] = None

    @property
    def is_scanning(self) -> bool:
        with self._lock:
            return self._scanning

    @property
    def cached(self) -> Optional[List[Jump]]:
        with self._lock:
            return list(self._cached) if self._cached is not None else None

    def replay(self, callback: Callable[[List[Jump]], None]) -> bool:
        """Hand the cached history to a late caller. Returns False if none yet."""
        cached = self.cached
        if cached is None:
            return False
        callback(cached)
        return True

    def _claim(self) -> bool:
        with self._lock:
            if self._scanning:
                logger.info("History scan already running, request ignored")
                return False
            self._scanning = True
            return True

    def scan(self) -> Optional[List[Jump]]:
        """Scan synchronously. Returns None if a scan was already running."""
        if not self._claim():
            return None
        return self._run()

    def start_scan(self) -> bool:
        """Scan on a background thread; results go to on_complete / on_error."""
        if not self._claim():
            return False
        self._thread = threading.Thread(target=self._run_background, name="HistoryScan", daemon=True)
        self._thread.start()
        return True

    def wait(self, timeout: Optional[float] = None):
        if self._thread is not None:
            self._thread.join(timeout)

    def _run_background(self):
        try:
            self._run()
        except Exception as e:
            logger.error(f"History scan failed: {e}")
            if self.on_error:
                self.on_error(e)

    def _run(self) -> List[Jump]:
        try:
            files = list_journals(self.journal_dir, self.pattern)
            worker = JournalWorker(
                [WorkItem(f.path) for f in files],
                BatchMode.HISTORY,
                progress_interval=self.progress_interval,
                name="HistoryWorker"
            ).start()

            jumps: List[Jump] = []
            for message in worker.messages():
                if isinstance(message, ProgressMessage):
                    if self.on_progress:
                        self.on_progress(message)
                elif isinstance(message, SnapshotMessage) and message.kind is SnapshotKind.HISTORY:
                    jumps = message.data
                elif isinstance(message, ErrorMessage):
                    if message.fatal:
                        raise WorkerError(message.message)
                    logger.warning(f"History scan skipped {message.file}: {message.message}")

            with self._lock:
                self._cached = list(jumps)
            logger.info(f"History scan found {len(jumps)} jumps in {len(files)} journals")

            if self.on_complete:
                self.on_complete(list(jumps))
            return jumps
        finally:
            with self._lock:
                self._scanning = False


# ============================================================================
# REMOTE LOG MERGE
# ============================================================================

@dataclass
class MergeResult:
    jumps: List[Jump] = field(default_factory=list)
    total_remote: int = 0
    new_from_remote: int = 0
    first_discoveries_backfilled: int = 0


def merge_key(system: str, timestamp: str) -> str:
    """system|YYYY-MM-DDTHH:MM - minute resolution"""
    return system.lower() + "|" + timestamp.replace(" ", "T")[:16]


def normalize_remote_entry(entry: Dict[str, Any]) -> Jump:
    """Remote log entry ('date': 'YYYY-MM-DD HH:MM:SS') -> journal jump shape"""
    coords = entry.get("coordinates")
    return {
        "system": entry.get("system"),
        "timestamp": entry["date"].replace(" ", "T") + "Z" if entry.get("date") else None,
        "jump_dist": None,
        "pos": [coords.get("x"), coords.get("y"), coords.get("z")] if isinstance(coords, dict) else None,
        "was_discovered": entry.get("firstDiscover") is not True,
        "star_class": None,
        "body_count": None,
        "from_remote": True,
    }


def merge_remote_jumps(journal_jumps: List[Jump], remote_logs: Iterable[Dict[str, Any]]) -> MergeResult:
    """
    Merge a remote flight log into journal jumps.

    Remote entries with no journal jump at the same system and minute are
    added. Journal jumps to systems the remote log marks as first discovered
    get was_discovered=False. Output is newest first; entries without a
    timestamp go last.
    """
    journal_keys = {
        merge_key(j["system"], j["timestamp"])
        for j in journal_jumps
        if j.get("system") and j.get("timestamp")
    }

    result = MergeResult()
    additions: List[Jump] = []
    first_discovered = set()

    for entry in remote_logs:
        result.total_remote += 1
        system, date = entry.get("system"), entry.get("date")
        if not system or not date:
            continue
        if entry.get("firstDiscover") is True:
            first_discovered.add(system.lower())

        key = merge_key(system, date)
        if key not in journal_keys:
            additions.append(normalize_remote_entry(entry))
            journal_keys.add(key)

    enriched = []
    for jump in journal_jumps:
        system = jump.get("system")
        if system and system.lower() in first_discovered and jump.get("was_discovered") is not False:
            jump = dict(jump, was_discovered=False)
            result.first_discoveries_backfilled += 1
        enriched.append(jump)

    result.new_from_remote = len(additions)
    with_time = [j for j in enriched + additions if j.get("timestamp")]
    without_time = [j for j in enriched + additions if not j.get("timestamp")]
    with_time.sort(key=lambda j: j["timestamp"], reverse=True)
    result.jumps = with_time + without_time
    return result
