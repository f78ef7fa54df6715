"""
Journal Line Parser & Classifier
================================

Turns journal lines into typed domain events.

- parse_line() returns a ParseResult instead of raising; iter_records() is
  the filter-map that drops failed lines (partial writes, blank lines,
  records without an "event" discriminator)
- Classification is a table from discriminator to constructor; register new
  kinds with @classifies("EventName") without touching the reader or the
  checkpoint store
- ClassifierContext carries the current system across records within one
  processing run
- Absent numeric fields become UNKNOWN, which is distinct from zero
"""

# ============================================================================
# IMPORTS
# ============================================================================

import hashlib
import json
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, Iterable, Iterator, List, Optional, Tuple


logger = logging.getLogger("explorer.classifier")

DISCRIMINATOR = "event"


# ============================================================================
# UNKNOWN SENTINEL
# ============================================================================

class _Unknown:
    """Marker for a value the journal did not record"""
    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self):
        return "UNKNOWN"

    def __bool__(self):
        return False


UNKNOWN = _Unknown()


def is_unknown(value: Any) -> bool:
    return value is UNKNOWN


def number_or_unknown(record: Dict[str, Any], key: str):
    """Numeric field value, or UNKNOWN when absent or not numeric"""
    value = record.get(key)
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return UNKNOWN
    return value


def to_wire(value: Any) -> Any:
    """Replace UNKNOWN with None (recursively) for JSON / SQL consumers"""
    if value is UNKNOWN:
        return None
    if isinstance(value, dict):
        return {k: to_wire(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [to_wire(v) for v in value]
    return value


# ============================================================================
# PARSING
# ============================================================================

@dataclass(frozen=True)
class ParseResult:
    """Outcome of parsing one line: a record, or the reason it was skipped"""
    record: Optional[Dict[str, Any]] = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.record is not None


def parse_line(line: str) -> ParseResult:
    """Parse one journal line. Never raises."""
    text = line.strip()
    if not text:
        return ParseResult(error="blank line")

    try:
        record = json.loads(text)
    except ValueError as e:
        return ParseResult(error=f"invalid JSON: {e}")

    if not isinstance(record, dict):
        return ParseResult(error="not a JSON object")

    discriminator = record.get(DISCRIMINATOR)
    if not isinstance(discriminator, str) or not discriminator:
        return ParseResult(error="missing event discriminator")

    return ParseResult(record=record)


def iter_records(lines: Iterable[str], start_line: int = 0) -> Iterator[Tuple[int, Dict[str, Any]]]:
    """Yield (line index, record) for every line that parses; skip the rest."""
    for index, line in enumerate(lines, start_line):
        result = parse_line(line)
        if result.ok:
            yield index, result.record
        elif result.error != "blank line":
            logger.debug(f"Skipping line {index}: {result.error}")


# ============================================================================
# DOMAIN EVENTS
# ============================================================================

class EventKind(Enum):
    """Every kind of event the classifier can produce"""
    BODY_SCANNED = "journal.scan"
    LOCATION_CHANGED = "journal.location"
    DISCOVERY_SCAN = "journal.fss-scan"
    BODY_SIGNALS = "journal.body-signals"
    BODY_MAPPED = "journal.body-mapped"
    DOCKED = "journal.docked"
    UNDOCKED = "journal.undocked"
    TOUCHDOWN = "journal.touchdown"
    LIFTOFF = "journal.liftoff"
    SUPERCRUISE_ENTRY = "journal.supercruise-entry"
    SUPERCRUISE_EXIT = "journal.supercruise-exit"
    JUMP_STARTED = "journal.jump-started"
    COMMANDER = "journal.commander"


@dataclass(frozen=True)
class DomainEvent:
    kind: EventKind
    data: Dict[str, Any]
    file: str = ""
    line: int = -1
    event_id: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind.value,
            "data": to_wire(self.data),
            "file": self.file,
            "line": self.line,
            "event_id": self.event_id,
        }


def generate_event_id(record: Dict[str, Any]) -> str:
    """
    Deterministic 16-character id for a journal record.
    Same input always produces the same id.
    """
    components = [
        record.get('timestamp', ''),
        record.get('event', ''),
        str(record.get('SystemAddress', '')),
        str(record.get('BodyID', '')),
        str(record.get('BodyName', '')),
    ]
    return hashlib.sha256('|'.join(components).encode()).hexdigest()[:16]


# ============================================================================
# CLASSIFIER CONTEXT
# ============================================================================

@dataclass
class ClassifierContext:
    """
    Cross-record state for one processing run.

    Location records set it; later records that do not name their system
    are decorated from it.
    """
    system: Optional[str] = None
    system_address: Optional[int] = None
    star_pos: Optional[List[float]] = None

    def update_location(self, record: Dict[str, Any]):
        system = record.get("StarSystem") or record.get("SystemName")
        if system:
            self.system = system
        if record.get("SystemAddress") is not None:
            self.system_address = record.get("SystemAddress")
        self.star_pos = _star_pos(record) or self.star_pos


def _star_pos(record: Dict[str, Any]) -> Optional[List[float]]:
    pos = record.get("StarPos")
    if isinstance(pos, list) and len(pos) == 3:
        try:
            return [float(c) for c in pos]
        except (TypeError, ValueError):
            return None
    return None


# ============================================================================
# CLASSIFICATION TABLE
# ============================================================================

Classifier = Callable[[Dict[str, Any], ClassifierContext], Optional[Tuple[EventKind, Dict[str, Any]]]]

_CLASSIFIERS: Dict[str, Classifier] = {}


def classifies(*discriminators: str):
    """Register a constructor for one or more discriminator values"""
    def decorator(func: Classifier) -> Classifier:
        for name in discriminators:
            _CLASSIFIERS[name] = func
        return func
    return decorator


def known_discriminators() -> List[str]:
    return sorted(_CLASSIFIERS)


def classify(
    record: Dict[str, Any],
    context: ClassifierContext,
    file: str = "",
    line: int = -1
) -> Optional[DomainEvent]:
    """Map one parsed record to a DomainEvent, or None for unrecognised kinds."""
    constructor = _CLASSIFIERS.get(record.get(DISCRIMINATOR))
    if constructor is None:
        return None

    try:
        produced = constructor(record, context)
    except (TypeError, ValueError, KeyError, AttributeError) as e:
        # Record had the right discriminator but an unexpected shape
        logger.debug(f"Could not classify {record.get(DISCRIMINATOR)} at {file}:{line}: {e}")
        return None

    if produced is None:
        return None

    kind, data = produced
    return DomainEvent(kind=kind, data=data, file=file, line=line, event_id=generate_event_id(record))


def classify_lines(
    lines: Iterable[str],
    context: ClassifierContext,
    file: str = "",
    start_line: int = 0
) -> Iterator[DomainEvent]:
    """Parse and classify lines in order, dropping everything that is not an event."""
    for index, record in iter_records(lines, start_line):
        event = classify(record, context, file, index)
        if event is not None:
            yield event


# ----------------------------------------------------------------------------
# Constructors
# ----------------------------------------------------------------------------

def _body_type(record: Dict[str, Any]) -> str:
    if record.get("StarType"):
        return "Star"
    if record.get("PlanetClass"):
        return "Planet"
    return "Belt"


def signal_labels(record: Dict[str, Any]) -> List[str]:
    """'Biological ×3' style labels for a signals record"""
    labels = []
    for signal in record.get("Signals") or []:
        if not isinstance(signal, dict):
            continue
        label = signal.get("Type_Localised") or signal.get("Type") or ""
        if signal.get("Count") is not None:
            label += f" ×{signal['Count']}"
        labels.append(label)
    return labels


@classifies("Location", "FSDJump", "CarrierJump")
def _location(record, context):
    context.update_location(record)
    return EventKind.LOCATION_CHANGED, {
        "system": record.get("StarSystem") or record.get("SystemName"),
        "system_address": record.get("SystemAddress"),
        "timestamp": record.get("timestamp"),
        "coords": _star_pos(record),
        "population": number_or_unknown(record, "Population"),
        "jump_dist": number_or_unknown(record, "JumpDist"),
        "first_discovery": record.get("SystemAlreadyDiscovered") is False,
        "source": record[DISCRIMINATOR],
    }


@classifies("Scan")
def _scan(record, context):
    return EventKind.BODY_SCANNED, {
        "system": record.get("StarSystem") or context.system,
        "body": record.get("BodyName"),
        "body_type": _body_type(record),
        "body_id": record.get("BodyID"),
        "timestamp": record.get("timestamp"),
        "star_pos": record.get("StarPos") or context.star_pos,
        "distance_ls": number_or_unknown(record, "DistanceFromArrivalLS"),
        "estimated_value": number_or_unknown(record, "EstimatedValue"),
        "planet_class": record.get("PlanetClass"),
        "star_type": record.get("StarType"),
        "terraform_state": record.get("TerraformState") or None,
        "landable": record.get("Landable") is True,
        "was_discovered": record.get("WasDiscovered") is not False,
        "was_mapped": record.get("WasMapped") is not False,
    }


@classifies("FSSDiscoveryScan")
def _discovery_scan(record, context):
    return EventKind.DISCOVERY_SCAN, {
        "system": record.get("SystemName") or context.system,
        "body_count": number_or_unknown(record, "BodyCount"),
        "non_body_count": number_or_unknown(record, "NonBodyCount"),
        "timestamp": record.get("timestamp"),
    }


@classifies("SAASignalsFound", "FSSBodySignals")
def _body_signals(record, context):
    return EventKind.BODY_SIGNALS, {
        "system": record.get("StarSystem") or context.system,
        "body": record.get("BodyName"),
        "signals": signal_labels(record),
        "timestamp": record.get("timestamp"),
    }


@classifies("SAAScanComplete")
def _body_mapped(record, context):
    used = number_or_unknown(record, "ProbesUsed")
    target = number_or_unknown(record, "EfficiencyTarget")
    efficient = UNKNOWN if is_unknown(used) or is_unknown(target) else used <= target
    return EventKind.BODY_MAPPED, {
        "system": context.system,
        "body": record.get("BodyName"),
        "probes_used": used,
        "efficiency_target": target,
        "efficient": efficient,
        "timestamp": record.get("timestamp"),
    }


@classifies("Docked")
def _docked(record, context):
    faction = record.get("StationFaction")
    return EventKind.DOCKED, {
        "station": record.get("StationName"),
        "station_type": record.get("StationType"),
        "faction": faction.get("Name") if isinstance(faction, dict) else None,
        "system": record.get("StarSystem") or context.system,
        "timestamp": record.get("timestamp"),
    }


@classifies("Undocked")
def _undocked(record, context):
    return EventKind.UNDOCKED, {
        "station": record.get("StationName"),
        "timestamp": record.get("timestamp"),
    }


@classifies("Touchdown", "Liftoff")
def _surface(record, context):
    kind = EventKind.TOUCHDOWN if record[DISCRIMINATOR] == "Touchdown" else EventKind.LIFTOFF
    return kind, {
        "body": record.get("Body"),
        "latitude": number_or_unknown(record, "Latitude"),
        "longitude": number_or_unknown(record, "Longitude"),
        "timestamp": record.get("timestamp"),
    }


@classifies("SupercruiseEntry", "SupercruiseExit")
def _supercruise(record, context):
    entry = record[DISCRIMINATOR] == "SupercruiseEntry"
    return (EventKind.SUPERCRUISE_ENTRY if entry else EventKind.SUPERCRUISE_EXIT), {
        "system": record.get("StarSystem") or context.system,
        "body": record.get("Body"),
        "timestamp": record.get("timestamp"),
    }


@classifies("StartJump")
def _start_jump(record, context):
    # Supercruise StartJump records carry no target
    if record.get("JumpType") != "Hyperspace":
        return None
    return EventKind.JUMP_STARTED, {
        "target": record.get("StarSystem"),
        "star_class": record.get("StarClass"),
        "timestamp": record.get("timestamp"),
    }


@classifies("LoadGame", "Commander")
def _commander(record, context):
    return EventKind.COMMANDER, {
        "name": record.get("Commander") or record.get("Name"),
        "ship": record.get("Ship_Localised") or record.get("Ship"),
        "ship_name": record.get("ShipName") or "",
        "ship_ident": record.get("ShipIdent") or "",
        "credits": number_or_unknown(record, "Credits"),
        "game_mode": record.get("GameMode") or UNKNOWN,
        "timestamp": record.get("timestamp"),
    }
