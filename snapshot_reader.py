"""
Snapshot Readers (Status.json / NavRoute.json)
===============================================

The game rewrites these side files wholesale, so there is no watermark:
every change notification re-reads the whole file.

State machine per reader:
    idle -> reading -> applied -> idle
                    -> skipped -> idle   (caught mid-write; keep previous value)
"""

# ============================================================================
# IMPORTS
# ============================================================================

import json
import logging
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from journal_worker import SnapshotKind, SnapshotMessage


logger = logging.getLogger("explorer.snapshots")

STATUS_FILE = "Status.json"
NAV_ROUTE_FILE = "NavRoute.json"


# ============================================================================
# DECODERS
# ============================================================================

STATUS_FLAGS = {
    "docked": 0,
    "landed": 1,
    "landing_gear_down": 2,
    "shields_up": 3,
    "supercruise": 4,
    "flight_assist_off": 5,
    "hardpoints_deployed": 6,
    "in_wing": 7,
    "cargo_scoop_deployed": 9,
    "fsd_mass_locked": 16,
    "fsd_charging": 17,
    "fsd_cooldown": 18,
    "fuel_scooping": 20,
    "in_srv": 26,
    "on_foot": 27,
}

STATUS_FIELDS = {
    "Pips": "pips",
    "Firegroup": "firegroup",
    "GuiFocus": "gui_focus",
    "Fuel": "fuel",
    "Cargo": "cargo",
    "LegalState": "legal_state",
    "Heading": "heading",
    "Altitude": "altitude",
    "Latitude": "latitude",
    "Longitude": "longitude",
    "BodyName": "body_name",
    "PlanetRadius": "planet_radius",
    "Balance": "balance",
}


def decode_status(document: Dict[str, Any]) -> Dict[str, Any]:
    """Status.json -> flag booleans plus the plain fields"""
    if not isinstance(document, dict):
        raise ValueError("Status.json is not an object")

    flags = document.get("Flags") or 0
    if not isinstance(flags, int):
        raise ValueError(f"Flags is not an integer: {flags!r}")

    status = {name: bool(flags & (1 << bit)) for name, bit in STATUS_FLAGS.items()}
    status["flags"] = flags
    for source, target in STATUS_FIELDS.items():
        status[target] = document.get(source)
    status["timestamp"] = document.get("timestamp")
    return status


def decode_nav_route(document: Dict[str, Any]) -> List[Dict[str, Any]]:
    """NavRoute.json -> ordered route entries (empty when the route was cleared)"""
    if not isinstance(document, dict):
        raise ValueError("NavRoute.json is not an object")

    entries = document.get("Route") or []
    if not isinstance(entries, list):
        raise ValueError(f"Route is not a list: {entries!r}")

    route = []
    for entry in entries:
        if not isinstance(entry, dict):
            continue
        route.append({
            "system": entry.get("StarSystem"),
            "system_address": entry.get("SystemAddress"),
            "star_pos": entry.get("StarPos"),
            "star_class": entry.get("StarClass"),
        })
    return route


# ============================================================================
# READER
# ============================================================================

class SnapshotState(Enum):
    IDLE = "idle"
    READING = "reading"
    APPLIED = "applied"
    SKIPPED = "skipped"


class SnapshotReader:
    """Whole-file reader for one snapshot file"""

    def __init__(
        self,
        path: Path,
        kind: SnapshotKind,
        decode: Callable[[Dict[str, Any]], Any],
        on_applied: Optional[Callable[[SnapshotMessage], None]] = None
    ):
        self.path = Path(path)
        self.kind = kind
        self.decode = decode
        self.on_applied = on_applied

        self.state = SnapshotState.IDLE
        self.last_outcome: Optional[SnapshotState] = None
        self.value: Any = None
        self.skipped_reads = 0
        self._applied_mtime: Optional[float] = None

    def poll(self) -> bool:
        """Re-read if the file changed since the last applied version. Returns True if applied."""
        try:
            mtime = self.path.stat().st_mtime
        except OSError:
            return False

        if self._applied_mtime is not None and mtime == self._applied_mtime:
            return False

        return self.on_change(mtime) is SnapshotState.APPLIED

    def on_change(self, mtime: Optional[float] = None) -> SnapshotState:
        """Handle one change notification"""
        self.state = SnapshotState.READING
        try:
            text = self.path.read_text(encoding="utf-8")
            value = self.decode(json.loads(text))
        except (OSError, ValueError, TypeError) as e:
            # Usually the game is halfway through rewriting the file
            self.skipped_reads += 1
            logger.debug(f"Skipped {self.path.name} read: {e}")
            outcome = SnapshotState.SKIPPED
        else:
            self.value = value
            self._applied_mtime = mtime
            outcome = SnapshotState.APPLIED

        self.last_outcome = outcome
        self.state = SnapshotState.IDLE

        if outcome is SnapshotState.APPLIED and self.on_applied:
            try:
                self.on_applied(SnapshotMessage(self.kind, self.value))
            except Exception as e:
                logger.error(f"{self.path.name} consumer failed: {e}")

        return outcome


def status_reader(journal_dir: Path, on_applied=None) -> SnapshotReader:
    return SnapshotReader(Path(journal_dir) / STATUS_FILE, SnapshotKind.STATUS, decode_status, on_applied)


def nav_route_reader(journal_dir: Path, on_applied=None) -> SnapshotReader:
    return SnapshotReader(Path(journal_dir) / NAV_ROUTE_FILE, SnapshotKind.NAV_ROUTE, decode_nav_route, on_applied)
