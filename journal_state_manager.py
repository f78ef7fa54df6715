"""
Journal State Manager - Current Commander Context
=================================================

Subscribes to the EventDispatcher and keeps the commander's current
situation: system, bodies scanned here, docking/landing/supercruise,
jump in progress, Status.json flags and the plotted route.

Design:
- Thread-safe: the monitor thread writes, any thread reads
- Immutable snapshots: get_context() returns a frozen copy
- Callbacks: system changes and any state change; a failing callback is
  logged and does not affect the others
"""

# ============================================================================
# IMPORTS
# ============================================================================

import logging
from threading import RLock
from typing import Optional, Tuple, List, Callable, Dict, Any, TYPE_CHECKING
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone

from journal_events import EventKind, is_unknown
from journal_worker import EventMessage, SnapshotKind, SnapshotMessage

if TYPE_CHECKING:
    from event_dispatcher import EventDispatcher


logger = logging.getLogger("explorer.state")


# =============================================================================
# CURRENT CONTEXT (Immutable Snapshot)
# =============================================================================

@dataclass(frozen=True)
class ScannedBody:
    name: str
    body_type: str
    planet_class: Optional[str] = None
    star_type: Optional[str] = None
    signals: Tuple[str, ...] = ()
    mapped: bool = False
    efficient_map: Optional[bool] = None


@dataclass(frozen=True)
class CurrentContext:
    """Immutable snapshot of the commander's current state"""
    # System
    system_name: Optional[str] = None
    system_address: Optional[int] = None
    star_pos: Optional[Tuple[float, float, float]] = None
    population: Optional[int] = None
    jump_dist: Optional[float] = None

    # Bodies in this system
    bodies: Tuple[ScannedBody, ...] = ()
    total_bodies: Optional[int] = None
    non_body_count: Optional[int] = None

    # Activity
    docked: bool = False
    station_name: Optional[str] = None
    station_type: Optional[str] = None
    landed: bool = False
    supercruise: bool = False
    jumping: bool = False
    jump_target: Optional[str] = None

    # Commander
    cmdr_name: Optional[str] = None
    ship: Optional[str] = None

    # Side files
    status: Dict[str, Any] = field(default_factory=dict)
    nav_route: Tuple[Dict[str, Any], ...] = ()

    last_event_id: Optional[str] = None
    last_event_timestamp: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'system_name': self.system_name,
            'system_address': self.system_address,
            'star_pos': self.star_pos,
            'bodies_scanned': len(self.bodies),
            'total_bodies': self.total_bodies,
            'docked': self.docked,
            'station_name': self.station_name,
            'supercruise': self.supercruise,
            'jumping': self.jumping,
            'cmdr_name': self.cmdr_name,
            'route_length': len(self.nav_route),
        }


# =============================================================================
# SYSTEM CHANGE EVENT
# =============================================================================

@dataclass
class SystemChangeEvent:
    """Fired when the commander arrives in a different system"""
    old_system: Optional[str]
    new_system: Optional[str]
    star_pos: Optional[Tuple[float, float, float]]
    timestamp: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())


def _known(value):
    return None if is_unknown(value) else value


# =============================================================================
# JOURNAL STATE MANAGER
# =============================================================================

class JournalStateManager:
    """
    Maintains the current commander context.

    Usage:
        state = JournalStateManager()
        state.attach(dispatcher)          # replays the latest cached values
        state.register_system_callback(on_arrival)
        context = state.get_context()
    """

    def __init__(self):
        self._lock = RLock()
        self._context = CurrentContext()
        self._bodies: Dict[str, ScannedBody] = {}

        self._system_callbacks: List[Callable[[SystemChangeEvent], None]] = []
        self._state_callbacks: List[Callable[[CurrentContext], None]] = []

    def attach(self, dispatcher: 'EventDispatcher'):
        dispatcher.subscribe(self.handle, name="JournalStateManager", replay=True)

    # =========================================================================
    # MESSAGE HANDLING
    # =========================================================================

    def handle(self, message):
        """Dispatcher subscriber entry point"""
        if isinstance(message, EventMessage):
            handler = self._EVENT_HANDLERS.get(message.kind)
            if handler is None:
                return
            with self._lock:
                system_change = handler(self, message.event.data)
                self._context = replace(
                    self._context,
                    bodies=tuple(self._bodies.values()),
                    last_event_id=message.event.event_id,
                    last_event_timestamp=message.event.data.get("timestamp"),
                )
                context = self._context
        elif isinstance(message, SnapshotMessage):
            with self._lock:
                if not self._apply_snapshot(message):
                    return
                system_change = None
                context = self._context
        else:
            return

        if system_change is not None:
            self._fire(self._system_callbacks, system_change)
        self._fire(self._state_callbacks, context)

    def _on_location(self, data: Dict[str, Any]) -> Optional[SystemChangeEvent]:
        old = self._context.system_name
        new = data.get("system")
        coords = data.get("coords")
        star_pos = tuple(coords) if coords else None

        if new != old:
            self._bodies = {}
            self._context = replace(self._context, total_bodies=None, non_body_count=None)

        self._context = replace(
            self._context,
            system_name=new,
            system_address=data.get("system_address"),
            star_pos=star_pos or self._context.star_pos,
            population=_known(data.get("population")),
            jump_dist=_known(data.get("jump_dist")),
            jumping=False,
            jump_target=None,
        )
        if new != old:
            return SystemChangeEvent(old, new, self._context.star_pos)
        return None

    def _on_scan(self, data: Dict[str, Any]):
        name = data.get("body") or ""
        previous = self._bodies.get(name)
        self._bodies[name] = ScannedBody(
            name=name,
            body_type=data.get("body_type", ""),
            planet_class=data.get("planet_class"),
            star_type=data.get("star_type"),
            signals=previous.signals if previous else (),
            mapped=previous.mapped if previous else False,
            efficient_map=previous.efficient_map if previous else None,
        )

    def _on_discovery_scan(self, data: Dict[str, Any]):
        self._context = replace(
            self._context,
            total_bodies=_known(data.get("body_count")),
            non_body_count=_known(data.get("non_body_count")),
        )

    def _on_signals(self, data: Dict[str, Any]):
        body = self._bodies.get(data.get("body") or "")
        if body is not None:
            merged = body.signals + tuple(s for s in data.get("signals", []) if s not in body.signals)
            self._bodies[body.name] = replace(body, signals=merged)

    def _on_mapped(self, data: Dict[str, Any]):
        body = self._bodies.get(data.get("body") or "")
        if body is not None:
            self._bodies[body.name] = replace(body, mapped=True, efficient_map=_known(data.get("efficient")))

    def _on_docked(self, data: Dict[str, Any]):
        self._context = replace(
            self._context, docked=True,
            station_name=data.get("station"), station_type=data.get("station_type"),
        )

    def _on_undocked(self, data: Dict[str, Any]):
        self._context = replace(self._context, docked=False, station_name=None, station_type=None)

    def _on_touchdown(self, data):
        self._context = replace(self._context, landed=True)

    def _on_liftoff(self, data):
        self._context = replace(self._context, landed=False)

    def _on_supercruise_entry(self, data):
        self._context = replace(self._context, supercruise=True)

    def _on_supercruise_exit(self, data):
        self._context = replace(self._context, supercruise=False)

    def _on_jump_started(self, data: Dict[str, Any]):
        self._context = replace(self._context, jumping=True, jump_target=data.get("target"))

    def _on_commander(self, data: Dict[str, Any]):
        self._context = replace(
            self._context,
            cmdr_name=data.get("name") or self._context.cmdr_name,
            ship=data.get("ship") or self._context.ship,
        )

    _EVENT_HANDLERS = {
        EventKind.LOCATION_CHANGED: _on_location,
        EventKind.BODY_SCANNED: _on_scan,
        EventKind.DISCOVERY_SCAN: _on_discovery_scan,
        EventKind.BODY_SIGNALS: _on_signals,
        EventKind.BODY_MAPPED: _on_mapped,
        EventKind.DOCKED: _on_docked,
        EventKind.UNDOCKED: _on_undocked,
        EventKind.TOUCHDOWN: _on_touchdown,
        EventKind.LIFTOFF: _on_liftoff,
        EventKind.SUPERCRUISE_ENTRY: _on_supercruise_entry,
        EventKind.SUPERCRUISE_EXIT: _on_supercruise_exit,
        EventKind.JUMP_STARTED: _on_jump_started,
        EventKind.COMMANDER: _on_commander,
    }

    def _apply_snapshot(self, message: SnapshotMessage) -> bool:
        if message.kind is SnapshotKind.STATUS:
            status = dict(message.data)
            self._context = replace(
                self._context,
                status=status,
                docked=status.get("docked", self._context.docked),
                landed=status.get("landed", self._context.landed),
                supercruise=status.get("supercruise", self._context.supercruise),
            )
            return True
        if message.kind is SnapshotKind.NAV_ROUTE:
            self._context = replace(self._context, nav_route=tuple(message.data or ()))
            return True
        if message.kind is SnapshotKind.LIVE:
            data = message.data or {}
            self._context = replace(
                self._context,
                cmdr_name=data.get("name") or self._context.cmdr_name,
                ship=data.get("ship") or self._context.ship,
                system_name=self._context.system_name or data.get("current_system"),
            )
            return True
        return False

    # =========================================================================
    # QUERIES
    # =========================================================================

    def get_context(self) -> CurrentContext:
        """Thread-safe immutable snapshot"""
        with self._lock:
            return self._context

    def get_system_name(self) -> Optional[str]:
        with self._lock:
            return self._context.system_name

    # =========================================================================
    # CALLBACKS
    # =========================================================================

    def register_system_callback(self, callback: Callable[[SystemChangeEvent], None]):
        with self._lock:
            if callback not in self._system_callbacks:
                self._system_callbacks.append(callback)

    def register_state_callback(self, callback: Callable[[CurrentContext], None]):
        with self._lock:
            if callback not in self._state_callbacks:
                self._state_callbacks.append(callback)

    def unregister_callback(self, callback):
        with self._lock:
            for callbacks in (self._system_callbacks, self._state_callbacks):
                if callback in callbacks:
                    callbacks.remove(callback)

    def _fire(self, callbacks: List[Callable], payload):
        with self._lock:
            targets = list(callbacks)
        for callback in targets:
            try:
                callback(payload)
            except Exception as e:
                logger.error(f"State callback {getattr(callback, '__name__', callback)} failed: {e}")

    def reset(self):
        with self._lock:
            self._context = CurrentContext()
            self._bodies = {}
