"""
Journal Batch Worker
====================

Runs discovery output through reading, parsing and classification on a
background thread and reports back only through messages on a queue:

    ProgressMessage   throttled, always sent for the last line of a file
    EventMessage      one per classified DomainEvent, in line order
    SnapshotMessage   derived whole-state payloads (live, bodies, profile, history)
    DoneMessage       per-file line watermarks to commit
    ErrorMessage      per-file read error, or fatal (batch not committed)

Every batch ends with exactly one terminal message: DoneMessage, or an
ErrorMessage with fatal=True.
"""

# ============================================================================
# IMPORTS
# ============================================================================

import logging
import queue
import threading
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, Iterator, List, Optional, Sequence, Union

from error_handling import JournalReadError
from journal_events import (
    ClassifierContext,
    DomainEvent,
    EventKind,
    classify,
    parse_line,
    signal_labels,
)
from journal_reader import read_new_lines


logger = logging.getLogger("explorer.worker")

PROGRESS_INTERVAL = 500


# ============================================================================
# MESSAGES
# ============================================================================

class MessageType(Enum):
    PROGRESS = "progress"
    EVENT = "event"
    SNAPSHOT = "snapshot"
    DONE = "done"
    ERROR = "error"


class SnapshotKind(Enum):
    LIVE = "live-data"
    BODIES = "bodies-data"
    PROFILE = "profile-data"
    HISTORY = "history"
    STATUS = "status"
    NAV_ROUTE = "nav-route"


@dataclass(frozen=True)
class ProgressMessage:
    file: str
    current_line: int
    total_lines: int
    file_index: int
    total_files: int
    type: MessageType = MessageType.PROGRESS


@dataclass(frozen=True)
class EventMessage:
    event: DomainEvent
    type: MessageType = MessageType.EVENT

    @property
    def kind(self) -> EventKind:
        return self.event.kind


@dataclass(frozen=True)
class SnapshotMessage:
    kind: SnapshotKind
    data: Any
    type: MessageType = MessageType.SNAPSHOT


@dataclass(frozen=True)
class DoneMessage:
    updated_checkpoints: Dict[str, int] = field(default_factory=dict)
    watermarks: Dict[str, int] = field(default_factory=dict)
    type: MessageType = MessageType.DONE


@dataclass(frozen=True)
class ErrorMessage:
    file: Optional[str]
    message: str
    fatal: bool = False
    type: MessageType = MessageType.ERROR


WorkerMessage = Union[ProgressMessage, EventMessage, SnapshotMessage, DoneMessage, ErrorMessage]


def is_terminal(message: WorkerMessage) -> bool:
    return isinstance(message, DoneMessage) or (isinstance(message, ErrorMessage) and message.fatal)


# ============================================================================
# BATCH MODES
# ============================================================================

class BatchMode(Enum):
    """What a batch extracts from the journals"""
    LIVE = "live"         # events + live/bodies snapshots, checkpointed
    PROFILE = "profile"   # commander profile snapshot only
    HISTORY = "history"   # every FSDJump, newest first
    ALL = "all"           # LIVE + PROFILE

    @property
    def emits_events(self) -> bool:
        return self in (BatchMode.LIVE, BatchMode.ALL)

    @property
    def checkpointed(self) -> bool:
        return self in (BatchMode.LIVE, BatchMode.ALL)

    @property
    def builds_profile(self) -> bool:
        return self in (BatchMode.PROFILE, BatchMode.ALL)


@dataclass(frozen=True)
class WorkItem:
    """One journal to process, resuming after `start_line` complete lines"""
    path: Path
    start_line: int = 0

    @property
    def name(self) -> str:
        return Path(self.path).name


# ============================================================================
# RANKS
# ============================================================================

COMBAT_RANKS = ['Harmless', 'Mostly Harmless', 'Novice', 'Competent', 'Expert', 'Master', 'Dangerous', 'Deadly', 'Elite']
TRADE_RANKS = ['Penniless', 'Mostly Penniless', 'Peddler', 'Dealer', 'Merchant', 'Broker', 'Entrepreneur', 'Tycoon', 'Elite']
EXPLORE_RANKS = ['Aimless', 'Mostly Aimless', 'Scout', 'Surveyor', 'Trailblazer', 'Pathfinder', 'Ranger', 'Pioneer', 'Elite']
CQC_RANKS = ['Helpless', 'Mostly Helpless', 'Amateur', 'Semi Professional', 'Professional', 'Champion', 'Hero', 'Gladiator', 'Elite']
EMPIRE_RANKS = ['None', 'Outsider', 'Serf', 'Master', 'Squire', 'Knight', 'Lord', 'Baron', 'Viscount', 'Count', 'Earl', 'Marquis', 'Duke', 'Prince', 'King']
FEDERATION_RANKS = ['None', 'Recruit', 'Cadet', 'Midshipman', 'Petty Officer', 'Chief Petty Officer', 'Warrant Officer', 'Ensign', 'Lieutenant', 'Lieutenant Commander', 'Post Commander', 'Post Captain', 'Rear Admiral', 'Vice Admiral', 'Admiral']
EXOBIO_RANKS = ['Directionless', 'Mostly Directionless', 'Compiler', 'Collector', 'Cataloguer', 'Taxonomist', 'Ecologist', 'Geneticist', 'Elite']

ELITE_TIERS = ['Elite I', 'Elite II', 'Elite III']


def rank_name(ranks: Sequence[str], level: Optional[int]) -> str:
    """Display name for a rank level; levels past the top map to Elite I/II/III"""
    if isinstance(level, bool) or not isinstance(level, int) or level < 0:
        return ranks[0]
    if level < len(ranks):
        return ranks[level]
    tier = level - len(ranks)
    return ELITE_TIERS[tier] if tier < len(ELITE_TIERS) else f"Elite {tier + 1}"


# ============================================================================
# SNAPSHOT BUILDERS
# ============================================================================

class LiveStateBuilder:
    """Ship, fuel, location and docking state of the latest session"""

    def __init__(self, seed: Optional[Dict[str, Any]] = None):
        self.data: Optional[Dict[str, Any]] = dict(seed) if seed else None

    def _state(self) -> Dict[str, Any]:
        if self.data is None:
            self.data = {}
        return self.data

    def feed(self, record: Dict[str, Any]):
        ev = record.get("event")
        if ev in ("Location", "FSDJump", "CarrierJump"):
            state = self._state()
            state["current_system"] = record.get("StarSystem")
            pos = record.get("StarPos")
            state["pos"] = [round(float(c), 2) for c in pos] if isinstance(pos, list) else None
            if ev == "FSDJump":
                dist = record.get("JumpDist")
                state["jump_range"] = round(dist, 2) if isinstance(dist, (int, float)) else None
                state["last_jump_was_first_discovery"] = record.get("SystemAlreadyDiscovered") is False

        elif ev == "Loadout":
            state = self._state()
            state["ship"] = record.get("Ship_Localised") or record.get("Ship")
            state["ship_name"] = record.get("ShipName") or ""
            state["ship_ident"] = record.get("ShipIdent") or ""
            max_jump = record.get("MaxJumpRange")
            state["max_jump_range"] = round(max_jump, 2) if isinstance(max_jump, (int, float)) else None
            if record.get("CargoCapacity") is not None:
                state["cargo_capacity"] = record["CargoCapacity"]
            capacity = record.get("FuelCapacity")
            if isinstance(capacity, dict):
                state["fuel_capacity"] = capacity.get("Main")
            elif capacity is not None:
                state["fuel_capacity"] = capacity
            state["rebuy"] = record.get("Rebuy")
            state["hull"] = 100

        elif ev == "HullHealth":
            if record.get("Health") is not None:
                self._state()["hull"] = round(record["Health"] * 100)

        elif ev == "Resurrect":
            self._state()["hull"] = 100

        elif ev == "LoadGame":
            state = self._state()
            state["name"] = record.get("Commander")
            state["ship"] = record.get("Ship_Localised") or record.get("Ship")
            state["ship_name"] = record.get("ShipName") or ""
            state["ship_ident"] = record.get("ShipIdent") or ""
            state["credits"] = record.get("Credits")
            state["game_mode"] = record.get("GameMode") or "Open"
            if record.get("FuelLevel") is not None:
                state["fuel_total"] = record["FuelLevel"]
            if record.get("FuelCapacity") is not None:
                state["fuel_capacity"] = record["FuelCapacity"]

        elif ev in ("FuelScoop", "ReservoirReplenished"):
            state = self._state()
            if record.get("Total") is not None:
                state["fuel_total"] = record["Total"]
            if record.get("Capacity") is not None:
                state["fuel_capacity"] = record["Capacity"]

        elif ev == "Docked":
            state = self._state()
            faction = record.get("StationFaction")
            state["docked_station"] = record.get("StationName")
            state["docked_station_type"] = record.get("StationType")
            state["docked_faction"] = faction.get("Name") if isinstance(faction, dict) else None

        elif ev == "Undocked":
            state = self._state()
            state["docked_station"] = None
            state["docked_station_type"] = None
            state["docked_faction"] = None

    def snapshot(self) -> Optional[Dict[str, Any]]:
        if self.data is None:
            return None
        data = dict(self.data)
        total, capacity = data.get("fuel_total"), data.get("fuel_capacity")
        if isinstance(total, (int, float)) and isinstance(capacity, (int, float)) and capacity:
            data["fuel_pct"] = round(total / capacity * 100)
        return data


class BodiesBuilder:
    """Bodies and signals of the current system; reset on every jump"""

    def __init__(self, seed: Optional[Dict[str, Any]] = None):
        self.system: Optional[str] = None
        self.bodies: Dict[str, Dict[str, Any]] = {}
        self.signals: Dict[str, List[str]] = {}
        if seed:
            self.system = seed.get("system")
            self.bodies = {body["name"]: dict(body) for body in seed.get("bodies", [])}
            self.signals = {name: list(labels) for name, labels in seed.get("signals", {}).items()}

    def feed(self, record: Dict[str, Any]):
        ev = record.get("event")
        if ev == "FSDJump":
            self.system = record.get("StarSystem")
            self.bodies = {}
            self.signals = {}
        elif ev == "Location":
            if not self.system:
                self.system = record.get("StarSystem")
        elif ev == "Scan":
            self.system = record.get("StarSystem") or self.system
            name = record.get("BodyName") or ""
            self.bodies[name] = self._body(record)
        elif ev == "FSSDiscoveryScan":
            self.system = record.get("SystemName") or self.system
        elif ev == "SAASignalsFound":
            labels = signal_labels(record)
            if labels:
                self.signals[record.get("BodyName") or ""] = labels
        elif ev == "FSSBodySignals":
            labels = signal_labels(record)
            if labels:
                existing = self.signals.setdefault(record.get("BodyName") or "", [])
                existing.extend(label for label in labels if label not in existing)

    @staticmethod
    def _body(record: Dict[str, Any]) -> Dict[str, Any]:
        star_type = record.get("StarType")
        parents = record.get("Parents")
        parent_id = None
        if isinstance(parents, list) and parents and isinstance(parents[0], dict):
            parent_id = next(iter(parents[0].values()), None)

        radius = record.get("Radius")
        gravity = record.get("SurfaceGravity")
        temp = record.get("SurfaceTemperature")
        return {
            "name": record.get("BodyName") or "",
            "body_id": record.get("BodyID"),
            "parent_id": parent_id,
            "type": "Star" if star_type else ("Planet" if record.get("PlanetClass") else "Belt"),
            "star_type": star_type,
            "subclass": record.get("Subclass"),
            "planet_class": record.get("PlanetClass"),
            "terraformable": record.get("TerraformState") == "Terraformable",
            "atmosphere": record.get("Atmosphere") or None,
            "volcanism": record.get("Volcanism") or None,
            "landable": record.get("Landable") is True,
            "distance_from_arrival": record.get("DistanceFromArrivalLS"),
            "radius_km": round(radius / 1000) if radius is not None else None,
            "gravity_g": round(gravity / 9.80665, 2) if gravity is not None else None,
            "surface_temp_k": round(temp) if temp is not None else None,
            "rings": [
                (ring.get("RingClass") or "?").replace("eRingClass_", "")
                for ring in record.get("Rings") or [] if isinstance(ring, dict)
            ],
            "was_discovered": record.get("WasDiscovered") is not False,
            "was_mapped": record.get("WasMapped") is not False,
            "is_scoopable": bool(star_type) and star_type[0] in "KGBFOAM",
            "timestamp": record.get("timestamp"),
        }

    def snapshot(self) -> Optional[Dict[str, Any]]:
        if self.system is None and not self.bodies:
            return None
        return {
            "system": self.system,
            "bodies": list(self.bodies.values()),
            "signals": {name: list(labels) for name, labels in self.signals.items()},
        }


class HistoryBuilder:
    """Every FSDJump seen, reported newest first"""

    def __init__(self):
        self.jumps: List[Dict[str, Any]] = []

    def feed(self, record: Dict[str, Any]):
        if record.get("event") != "FSDJump":
            return
        dist = record.get("JumpDist")
        pos = record.get("StarPos")
        self.jumps.append({
            "system": record.get("StarSystem"),
            "timestamp": record.get("timestamp"),
            "jump_dist": round(dist, 2) if isinstance(dist, (int, float)) else None,
            "pos": [round(float(c), 2) for c in pos] if isinstance(pos, list) else None,
            "was_discovered": record.get("SystemAlreadyDiscovered") is not False,
            "star_class": record.get("StarClass"),
            "body_count": record.get("Body_count"),
        })

    def snapshot(self) -> List[Dict[str, Any]]:
        return list(reversed(self.jumps))


# ----------------------------------------------------------------------------
# Commander profile (backward scan)
# ----------------------------------------------------------------------------

PROFILE_EVENTS = ("LoadGame", "Rank", "Progress", "Reputation", "Statistics")


def _profile_from_records(found: Dict[str, Dict[str, Any]]) -> Dict[str, Any]:
    identity = {}
    if "LoadGame" in found:
        entry = found["LoadGame"]
        identity = {
            "name": entry.get("Commander"),
            "ship": entry.get("Ship_Localised") or entry.get("Ship"),
            "ship_name": entry.get("ShipName") or "",
            "ship_ident": entry.get("ShipIdent") or "",
            "credits": entry.get("Credits"),
            "game_mode": entry.get("GameMode") or "Open",
        }

    ranks = {}
    if "Rank" in found:
        entry = found["Rank"]
        exobio = entry.get("Exobiologist", entry.get("Soldier"))
        table = (
            ("combat", "Combat", COMBAT_RANKS),
            ("trade", "Trade", TRADE_RANKS),
            ("explore", "Explore", EXPLORE_RANKS),
            ("cqc", "CQC", CQC_RANKS),
            ("empire", "Empire", EMPIRE_RANKS),
            ("federation", "Federation", FEDERATION_RANKS),
        )
        for key, field_name, names in table:
            level = entry.get(field_name)
            ranks[key] = {"level": level or 0, "name": rank_name(names, level)}
        ranks["exobiology"] = {"level": exobio or 0, "name": rank_name(EXOBIO_RANKS, exobio)}

    progress = {}
    if "Progress" in found:
        entry = found["Progress"]
        progress = {
            "combat": entry.get("Combat"),
            "trade": entry.get("Trade"),
            "explore": entry.get("Explore"),
            "cqc": entry.get("CQC"),
            "empire": entry.get("Empire"),
            "federation": entry.get("Federation"),
            "exobiology": entry.get("Exobiologist"),
        }

    reputation = {}
    if "Reputation" in found:
        entry = found["Reputation"]
        reputation = {
            "empire": entry.get("Empire", 0),
            "federation": entry.get("Federation", 0),
            "alliance": entry.get("Alliance", 0),
            "independent": entry.get("Independent", 0),
        }

    return {
        "identity": identity,
        "ranks": ranks,
        "progress": progress,
        "reputation": reputation,
        "stats": found.get("Statistics", {}),
    }


def build_commander_profile(paths: Sequence[Path]) -> Optional[Dict[str, Any]]:
    """
    Build the commander profile by reading history backwards.

    Args:
        paths: Journals in creation order (oldest first)

    Returns:
        Profile dict, or None when no profile record exists at all.
        Unreadable files are skipped.
    """
    found: Dict[str, Dict[str, Any]] = {}

    for path in reversed(list(paths)):
        try:
            lines = read_new_lines(path, 0).lines
        except JournalReadError as e:
            logger.warning(f"Profile scan skipped {e.message}")
            continue

        for line in reversed(lines):
            result = parse_line(line)
            if not result.ok:
                continue
            ev = result.record["event"]
            if ev in PROFILE_EVENTS and ev not in found:
                found[ev] = result.record
                if len(found) == len(PROFILE_EVENTS):
                    return _profile_from_records(found)

    if not found:
        return None
    return _profile_from_records(found)


# ============================================================================
# BATCH PROCESSING
# ============================================================================

SHAPE_ERRORS = (TypeError, ValueError, KeyError, AttributeError, IndexError)


def feed_record(builders: Sequence[Any], record: Dict[str, Any], file: str = "", line: int = -1):
    """Feed one record to every builder; a badly typed field skips that builder only."""
    for builder in builders:
        try:
            builder.feed(record)
        except SHAPE_ERRORS as e:
            logger.debug(
                f"{type(builder).__name__} skipped {record.get('event')} at {file}:{line}: {e}"
            )


def run_batch(
    items: Sequence[WorkItem],
    mode: BatchMode,
    emit: Callable[[WorkerMessage], None],
    progress_interval: int = PROGRESS_INTERVAL
):
    """
    Process work items in the given order and emit messages.

    Lines before an item's start_line still update the classifier context
    and the snapshot builders but produce no events.
    """
    total_files = len(items)
    context = ClassifierContext()
    live = LiveStateBuilder() if mode.emits_events else None
    bodies = BodiesBuilder() if mode.emits_events else None
    history = HistoryBuilder() if mode is BatchMode.HISTORY else None
    builders = [b for b in (live, bodies, history) if b is not None]

    updated: Dict[str, int] = {}
    watermarks: Dict[str, int] = {}

    for file_index, item in enumerate(items, 1):
        try:
            result = read_new_lines(item.path, 0)
        except JournalReadError as e:
            logger.warning(f"Read error: {e.message}")
            emit(ErrorMessage(file=item.name, message=str(e)))
            continue

        lines = result.lines
        total_lines = len(lines)
        start = item.start_line if mode.checkpointed else 0

        for index, line in enumerate(lines):
            parsed = parse_line(line)
            if parsed.ok:
                record = parsed.record
                feed_record(builders, record, item.name, index)

                if mode.emits_events:
                    event = classify(record, context, item.name, index)
                    if event is not None and index >= start:
                        emit(EventMessage(event))

            if (index + 1) % progress_interval == 0 or index == total_lines - 1:
                emit(ProgressMessage(
                    file=item.name,
                    current_line=index + 1,
                    total_lines=total_lines,
                    file_index=file_index,
                    total_files=total_files,
                ))

        if mode.checkpointed and total_lines >= item.start_line:
            updated[item.name] = total_lines
        watermarks[item.name] = result.end_offset

    if live is not None and live.snapshot() is not None:
        emit(SnapshotMessage(SnapshotKind.LIVE, live.snapshot()))
    if bodies is not None and bodies.snapshot() is not None:
        emit(SnapshotMessage(SnapshotKind.BODIES, bodies.snapshot()))
    if history is not None:
        emit(SnapshotMessage(SnapshotKind.HISTORY, history.snapshot()))
    if mode.builds_profile:
        profile = build_commander_profile([item.path for item in items])
        if profile is not None:
            emit(SnapshotMessage(SnapshotKind.PROFILE, profile))

    emit(DoneMessage(updated_checkpoints=updated, watermarks=watermarks))


# ============================================================================
# WORKER THREAD
# ============================================================================

class JournalWorker:
    """
    One background thread per batch, reporting through a message queue.

    The consumer iterates messages(); if the thread dies without a terminal
    message, a fatal ErrorMessage is synthesised so the caller never waits
    forever and never commits.
    """

    def __init__(
        self,
        items: Sequence[WorkItem],
        mode: BatchMode = BatchMode.LIVE,
        progress_interval: int = PROGRESS_INTERVAL,
        name: str = "JournalWorker"
    ):
        self.items = list(items)
        self.mode = mode
        self.progress_interval = progress_interval
        self.queue: "queue.Queue[WorkerMessage]" = queue.Queue()
        self._thread = threading.Thread(target=self._run, name=name, daemon=True)

    def start(self) -> 'JournalWorker':
        logger.info(f"Starting {self.mode.value} batch over {len(self.items)} journal(s)")
        self._thread.start()
        return self

    def is_alive(self) -> bool:
        return self._thread.is_alive()

    def join(self, timeout: Optional[float] = None):
        self._thread.join(timeout)

    def _run(self):
        try:
            run_batch(self.items, self.mode, self.queue.put, self.progress_interval)
        except Exception as e:
            logger.exception("Journal worker crashed")
            self.queue.put(ErrorMessage(file=None, message=f"{type(e).__name__}: {e}", fatal=True))

    def messages(self, poll_seconds: float = 0.1) -> Iterator[WorkerMessage]:
        """Yield messages in order until (and including) the terminal one"""
        while True:
            try:
                message = self.queue.get(timeout=poll_seconds)
            except queue.Empty:
                if self._thread.is_alive():
                    continue
                # Thread gone; take anything it queued before exiting
                try:
                    message = self.queue.get_nowait()
                except queue.Empty:
                    yield ErrorMessage(file=None, message="worker exited without completing", fatal=True)
                    return

            yield message
            if is_terminal(message):
                return
