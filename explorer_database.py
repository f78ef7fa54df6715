"""
Explorer Database Module
========================

SQLite persistence for classified journal events.

Subscribes to the EventDispatcher:
- BODY_SCANNED      -> personal_scans (one row per event_id)
- LOCATION_CHANGED  -> commander_state (single row, current system)
"""

# ============================================================================
# IMPORTS
# ============================================================================

import logging
import queue
import sqlite3
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple, TYPE_CHECKING

from error_handling import DatabaseError
from journal_events import EventKind, to_wire
from journal_worker import EventMessage

if TYPE_CHECKING:
    from event_dispatcher import EventDispatcher


logger = logging.getLogger("explorer.database")


# ============================================================================
# INTERNAL TASK TYPES
# ============================================================================

@dataclass
class _DBTask:
    fn: Callable[[sqlite3.Connection], Any]
    reply_q: "queue.Queue[Tuple[bool, Any]]"


# ============================================================================
# CLASSES
# ============================================================================

class ExplorerDatabase:
    """SQLite wrapper backed by a single dedicated DB worker thread.

    Only the worker thread touches the connection; every read and write is
    funneled through a task queue, so the monitor thread and any reader can
    call in concurrently.
    """

    def __init__(self, db_path: Path):
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

        self._task_q = queue.Queue()
        self._closed = False

        self._worker = threading.Thread(
            target=self._worker_loop,
            name="ExplorerDBWorker",
            daemon=True
        )
        self._worker.start()

        self._submit(self._create_tables)

    # ------------------------------------------------------------------------
    # Worker plumbing
    # ------------------------------------------------------------------------
    def _worker_loop(self):
        conn = sqlite3.connect(str(self.db_path))
        conn.row_factory = sqlite3.Row

        try:
            conn.execute("PRAGMA journal_mode=WAL;")
        except sqlite3.DatabaseError:
            # WAL is unavailable on some filesystems
            pass
        conn.execute("PRAGMA synchronous=NORMAL;")
        conn.execute("PRAGMA busy_timeout=3000;")

        while True:
            task = self._task_q.get()
            if task is None:
                break

            try:
                result = task.fn(conn)
                task.reply_q.put((True, result))
            except Exception as e:
                task.reply_q.put((False, e))

        conn.close()

    def _submit(self, fn: Callable[[sqlite3.Connection], Any]) -> Any:
        if self._closed:
            raise DatabaseError("ExplorerDatabase is closed")

        reply_q: "queue.Queue[Tuple[bool, Any]]" = queue.Queue(maxsize=1)
        self._task_q.put(_DBTask(fn=fn, reply_q=reply_q))

        ok, payload = reply_q.get()
        if ok:
            return payload
        if isinstance(payload, sqlite3.Error):
            raise DatabaseError(str(payload), context={"db_path": str(self.db_path)}) from payload
        raise payload

    # ------------------------------------------------------------------------
    # Schema
    # ------------------------------------------------------------------------
    @staticmethod
    def _create_tables(conn: sqlite3.Connection):
        conn.execute("""
            CREATE TABLE IF NOT EXISTS personal_scans (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                event_id TEXT UNIQUE,
                system_name TEXT,
                body_name TEXT,
                body_type TEXT,
                estimated_value INTEGER,
                timestamp TEXT
            )
        """)
        conn.execute("""
            CREATE TABLE IF NOT EXISTS commander_state (
                id INTEGER PRIMARY KEY CHECK (id = 1),
                current_system TEXT,
                updated_at TEXT
            )
        """)
        conn.execute("CREATE INDEX IF NOT EXISTS idx_scans_system ON personal_scans(system_name)")
        conn.commit()

    # ------------------------------------------------------------------------
    # Dispatcher subscription
    # ------------------------------------------------------------------------
    def attach(self, dispatcher: 'EventDispatcher'):
        dispatcher.subscribe(
            self.handle,
            kinds=[EventKind.BODY_SCANNED, EventKind.LOCATION_CHANGED],
            name="ExplorerDatabase"
        )

    def handle(self, message: EventMessage):
        event = message.event
        data = to_wire(event.data)
        if event.kind is EventKind.BODY_SCANNED:
            self.record_scan(event.event_id, data)
        elif event.kind is EventKind.LOCATION_CHANGED:
            self.set_current_system(data.get("system"), data.get("timestamp"))

    # ------------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------------
    def record_scan(self, event_id: str, data: Dict[str, Any]) -> bool:
        """Insert a scan. Returns False if this event was already stored."""
        row = {
            "event_id": event_id,
            "system_name": data.get("system"),
            "body_name": data.get("body"),
            "body_type": data.get("body_type"),
            "estimated_value": data.get("estimated_value"),
            "timestamp": data.get("timestamp"),
        }

        def _task(conn: sqlite3.Connection):
            cursor = conn.execute("""
                INSERT OR IGNORE INTO personal_scans
                    (event_id, system_name, body_name, body_type, estimated_value, timestamp)
                VALUES
                    (:event_id, :system_name, :body_name, :body_type, :estimated_value, :timestamp)
            """, row)
            conn.commit()
            return cursor.rowcount == 1

        return bool(self._submit(_task))

    def set_current_system(self, system: Optional[str], updated_at: Optional[str]):
        def _task(conn: sqlite3.Connection):
            conn.execute(
                "INSERT OR REPLACE INTO commander_state (id, current_system, updated_at) VALUES (1, ?, ?)",
                (system, updated_at)
            )
            conn.commit()

        self._submit(_task)

    # ------------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------------
    def get_current_system(self) -> Optional[Dict[str, Any]]:
        def _task(conn: sqlite3.Connection):
            row = conn.execute("SELECT current_system, updated_at FROM commander_state WHERE id = 1").fetchone()
            return dict(row) if row else None

        return self._submit(_task)

    def get_scans(self, system_name: Optional[str] = None) -> List[Dict[str, Any]]:
        def _task(conn: sqlite3.Connection):
            if system_name:
                rows = conn.execute(
                    "SELECT * FROM personal_scans WHERE system_name = ? ORDER BY timestamp",
                    (system_name,)
                ).fetchall()
            else:
                rows = conn.execute("SELECT * FROM personal_scans ORDER BY timestamp").fetchall()
            return [dict(r) for r in rows]

        return self._submit(_task)

    def count_scans(self) -> int:
        return self._submit(lambda conn: conn.execute("SELECT COUNT(*) FROM personal_scans").fetchone()[0])

    # ------------------------------------------------------------------------
    # Shutdown
    # ------------------------------------------------------------------------
    def close(self):
        """Stop the DB worker thread."""
        if self._closed:
            return
        self._closed = True

        self._task_q.put(None)
        self._worker.join(timeout=10.0)
        logger.info("Database closed")
