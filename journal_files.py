"""
Journal File Discovery
======================

Lists journal files in the game's journal directory, orders them by creation
and watches the directory for rotation (a newer journal appearing) and for
growth of the current journal.

Creation order comes from the timestamp embedded in the file name:
    Journal.2024-01-15T182345.01.log   (current naming)
    Journal.240115182345.01.log        (legacy naming)
Files whose names carry no parsable timestamp fall back to modification time.
Ties are broken by the part number, then by file name.

Nothing in this module reads journal contents.
"""

# ============================================================================
# IMPORTS
# ============================================================================

import calendar
import logging
import re
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Callable, Dict, List, Optional, Tuple

from error_handling import JournalDirectoryMissingError


logger = logging.getLogger("explorer.discovery")

JOURNAL_GLOB = "Journal.*.log"

_NAME_RE = re.compile(
    r"^Journal\.(?P<stamp>\d{4}-\d{2}-\d{2}T\d{6}|\d{12})\.(?P<part>\d+)\.log$"
)


# ============================================================================
# LOG FILE
# ============================================================================

def parse_journal_name(name: str) -> Optional[Tuple[datetime, int]]:
    """
    Extract (creation timestamp, part number) from a journal file name.

    Returns None when the name does not follow either naming scheme.
    """
    match = _NAME_RE.match(name)
    if not match:
        return None

    stamp = match.group("stamp")
    fmt = "%Y-%m-%dT%H%M%S" if "T" in stamp else "%y%m%d%H%M%S"
    try:
        created = datetime.strptime(stamp, fmt)
    except ValueError:
        return None
    return created, int(match.group("part"))


@dataclass(frozen=True)
class LogFile:
    """A journal file as seen in one directory listing"""
    path: Path
    size: int
    mtime: float
    created: Optional[datetime] = None
    part: int = 0

    @property
    def name(self) -> str:
        return self.path.name

    @property
    def sort_key(self) -> Tuple[float, int, str]:
        """Creation-order key: embedded timestamp (or mtime), part, name"""
        if self.created is not None:
            order = float(calendar.timegm(self.created.timetuple()))
        else:
            order = self.mtime
        return (order, self.part, self.name)

    @classmethod
    def from_path(cls, path: Path) -> 'LogFile':
        """Stat a path into a LogFile (raises OSError if it vanished)"""
        stat = path.stat()
        parsed = parse_journal_name(path.name)
        created, part = parsed if parsed else (None, 0)
        return cls(path=path, size=stat.st_size, mtime=stat.st_mtime, created=created, part=part)


def list_journals(journal_dir: Path, pattern: str = JOURNAL_GLOB) -> List[LogFile]:
    """
    List matching journal files, oldest first.

    Raises:
        JournalDirectoryMissingError: directory absent or not listable
    """
    journal_dir = Path(journal_dir)
    if not journal_dir.is_dir():
        raise JournalDirectoryMissingError(journal_dir)

    try:
        candidates = list(journal_dir.glob(pattern))
    except OSError as e:
        raise JournalDirectoryMissingError(journal_dir, reason=f"unreadable ({e})")

    files = []
    for path in candidates:
        try:
            files.append(LogFile.from_path(path))
        except OSError:
            # Deleted between listing and stat
            continue

    files.sort(key=lambda f: f.sort_key)
    return files


def newest_journal(files: List[LogFile]) -> Optional[LogFile]:
    """The current journal: last in creation order"""
    if not files:
        return None
    return max(files, key=lambda f: f.sort_key)


# ============================================================================
# DIRECTORY WATCHER
# ============================================================================

class ChangeKind(Enum):
    ADDED = "added"        # new file, not newer than the current one
    ROTATED = "rotated"    # new file that supersedes the current one
    GROWN = "grown"        # current file got bigger


@dataclass(frozen=True)
class FileChange:
    kind: ChangeKind
    file: LogFile
    previous: Optional[LogFile] = None


class JournalDirectoryWatcher:
    """
    Polling watcher over one journal directory.

    The owner calls check_directory() on a slow interval and check_current()
    on a fast one; both return the changes seen and also pass each change to
    the registered subscribers.
    """

    def __init__(self, journal_dir: Path, pattern: str = JOURNAL_GLOB):
        self.journal_dir = Path(journal_dir)
        self.pattern = pattern
        self.current: Optional[LogFile] = None
        self._known: Dict[str, LogFile] = {}
        self._subscribers: List[Callable[[FileChange], None]] = []

    def subscribe(self, callback: Callable[[FileChange], None]):
        self._subscribers.append(callback)

    def initial_scan(self) -> List[LogFile]:
        """
        List the directory and pick the current journal.

        Raises:
            JournalDirectoryMissingError: directory absent or not listable
        """
        files = list_journals(self.journal_dir, self.pattern)
        self._known = {f.name: f for f in files}
        self.current = newest_journal(files)
        if self.current:
            logger.info(f"Current journal: {self.current.name} ({len(files)} files)")
        else:
            logger.info(f"No journal files yet in {self.journal_dir}")
        return files

    def check_directory(self) -> List[FileChange]:
        """Detect new journal files; the newest new file past the current one rotates."""
        files = list_journals(self.journal_dir, self.pattern)
        changes = []

        for log_file in files:
            if log_file.name in self._known:
                continue
            self._known[log_file.name] = log_file

            if self.current is None or log_file.sort_key > self.current.sort_key:
                previous = self.current
                self.current = log_file
                logger.info(
                    f"Journal rotation: {previous.name if previous else '-'} -> {log_file.name}"
                )
                changes.append(FileChange(ChangeKind.ROTATED, log_file, previous))
            else:
                changes.append(FileChange(ChangeKind.ADDED, log_file))

        self._publish(changes)
        return changes

    def check_current(self) -> Optional[FileChange]:
        """Detect growth of the current journal by size"""
        if self.current is None:
            return None

        try:
            latest = LogFile.from_path(self.current.path)
        except OSError:
            return None

        if latest.size <= self.current.size:
            return None

        self.current = latest
        self._known[latest.name] = latest
        change = FileChange(ChangeKind.GROWN, latest)
        self._publish([change])
        return change

    def _publish(self, changes: List[FileChange]):
        for change in changes:
            for callback in list(self._subscribers):
                try:
                    callback(change)
                except Exception as e:
                    logger.error(f"Directory watcher subscriber failed: {e}")
