"""
Checkpoint Store
================

Durable {journal filename -> processed line count} mapping.

- Loaded once at startup; an absent or corrupt file is treated as empty
- Every commit is read-modify-write against the persisted file, so progress
  for one journal never clobbers progress recorded for another
- Values never regress; only clear() (user-triggered full rescan) resets them
"""

# ============================================================================
# IMPORTS
# ============================================================================

import json
import logging
import os
import threading
from pathlib import Path
from typing import Dict, Mapping

from error_handling import retry_on_error


logger = logging.getLogger("explorer.checkpoints")


# ============================================================================
# CHECKPOINT STORE
# ============================================================================

class CheckpointStore:
    """Owns the per-file line watermarks of the journal directory"""

    def __init__(self, path: Path):
        """
        Args:
            path: JSON file under the application's data directory
        """
        self.path = Path(path)
        self._lock = threading.Lock()
        self._checkpoints: Dict[str, int] = {}

    # ------------------------------------------------------------------------
    # Reading
    # ------------------------------------------------------------------------

    def load(self) -> Dict[str, int]:
        """Load persisted checkpoints, replacing the in-memory copy."""
        with self._lock:
            self._checkpoints = self._read_persisted()
            logger.info(f"Loaded {len(self._checkpoints)} checkpoints from {self.path}")
            return dict(self._checkpoints)

    def get(self, file_id: str) -> int:
        """Processed line count for a file (0 when never seen)"""
        with self._lock:
            return self._checkpoints.get(file_id, 0)

    def snapshot(self) -> Dict[str, int]:
        with self._lock:
            return dict(self._checkpoints)

    def _read_persisted(self) -> Dict[str, int]:
        try:
            with self.path.open("r", encoding="utf-8") as f:
                data = json.load(f)
        except FileNotFoundError:
            return {}
        except (OSError, ValueError) as e:
            logger.warning(f"Checkpoint file unreadable, starting from zero: {e}")
            return {}

        if not isinstance(data, dict):
            logger.warning("Checkpoint file is not a JSON object, starting from zero")
            return {}

        checkpoints = {}
        for name, value in data.items():
            # bool is an int subclass; reject it along with floats and strings
            if isinstance(value, int) and not isinstance(value, bool) and value >= 0:
                checkpoints[str(name)] = value
        return checkpoints

    # ------------------------------------------------------------------------
    # Writing
    # ------------------------------------------------------------------------

    def commit(self, file_id: str, line_index: int):
        """Record that the first `line_index` lines of a file were delivered."""
        self.merge({file_id: line_index})

    def merge(self, updates: Mapping[str, int]):
        """
        Merge a batch of watermarks into the store and persist.

        Files absent from `updates` keep their committed values. A value lower
        than the committed one is ignored.
        """
        if not updates:
            return

        with self._lock:
            merged = self._read_persisted()
            for name, value in self._checkpoints.items():
                if value > merged.get(name, -1):
                    merged[name] = value

            for name, value in updates.items():
                current = merged.get(name, 0)
                if value < current:
                    logger.debug(f"Ignoring regressing checkpoint for {name}: {value} < {current}")
                    continue
                merged[name] = int(value)

            self._write(merged)
            self._checkpoints = merged

    def clear(self):
        """Forget all progress; the next scan starts every file from line 0."""
        with self._lock:
            self._checkpoints = {}
            self._write({})
            logger.info("Checkpoints cleared")

    @retry_on_error(max_attempts=3, delay_seconds=0.05, exceptions=(OSError,))
    def _write(self, data: Dict[str, int]):
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.path.with_name(self.path.name + ".tmp")
        with tmp_path.open("w", encoding="utf-8") as f:
            json.dump(data, f, indent=2, sort_keys=True)
        os.replace(tmp_path, self.path)
