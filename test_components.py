"""
Unit Tests - Components
=======================

Tests cover:
- Configuration (dataclasses, YAML/JSON loader, validator)
- Error handling
- Status.json / NavRoute.json readers
- Current context subscriber
- SQLite subscriber
- Jump history scan, remote merge and xlsx export
- Shutdown manager
"""

import json
import os
import tempfile
import unittest
from pathlib import Path
from unittest.mock import Mock

import sys
sys.path.insert(0, str(Path(__file__).parent))

import openpyxl

from checkpoint_store import CheckpointStore
from config_loader import ConfigLoader, ConfigValidator
from dependency_injection import (
    AppConfig,
    DependencyContainer,
    MonitoringConfig,
    PathConfig,
    default_journal_dir,
)
from error_handling import (
    ConfigurationError,
    DatabaseError,
    ErrorHandler,
    ErrorSeverity,
    ExplorerError,
    JournalDirectoryMissingError,
    JournalReadError,
    WorkerError,
    retry_on_error,
)
from event_dispatcher import EventDispatcher
from explorer_database import ExplorerDatabase
from history_exporter import export_history_xlsx
from history_scanner import HistoryScanner, merge_remote_jumps, normalize_remote_entry
from journal_events import ClassifierContext, classify
from journal_state_manager import JournalStateManager
from journal_worker import EventMessage, SnapshotKind, SnapshotMessage
from shutdown_manager import ShutdownManager, ShutdownPriority
from snapshot_reader import SnapshotState, decode_status, nav_route_reader, status_reader


def event_message(record, context=None, line=0):
    return EventMessage(classify(record, context or ClassifierContext(), "J.log", line))


def append_lines(path: Path, records):
    with Path(path).open("ab") as f:
        for record in records:
            f.write(json.dumps(record).encode("utf-8") + b"\n")


# ============================================================================
# TEST CONFIGURATION
# ============================================================================

class TestConfiguration(unittest.TestCase):
    """Test configuration classes and files"""

    def setUp(self):
        self._tmp = tempfile.TemporaryDirectory()
        self.dir = Path(self._tmp.name)

    def tearDown(self):
        self._tmp.cleanup()

    def test_monitoring_defaults(self):
        config = MonitoringConfig()
        self.assertEqual(config.progress_interval, 500)
        self.assertEqual(config.startup_file_count, 15)
        self.assertEqual(config.journal_pattern, "Journal.*.log")

    def test_path_layout(self):
        paths = PathConfig.under(self.dir / "data", self.dir / "journals")
        self.assertEqual(paths.checkpoint_path, self.dir / "data" / "lastProcessed.json")
        self.assertEqual(paths.db_path.name, "explorer.db")

    def test_journal_dir_env_override(self):
        old = os.environ.get("ELITE_JOURNAL_DIR")
        os.environ["ELITE_JOURNAL_DIR"] = str(self.dir)
        try:
            self.assertEqual(default_journal_dir(), self.dir)
        finally:
            if old is None:
                del os.environ["ELITE_JOURNAL_DIR"]
            else:
                os.environ["ELITE_JOURNAL_DIR"] = old

    def test_yaml_round_trip(self):
        """Test a saved YAML config loads back the same values"""
        config = AppConfig(
            app_name="Test",
            version="9.9",
            paths=PathConfig.under(self.dir / "data", self.dir / "journals"),
            monitoring=MonitoringConfig(poll_fast_seconds=0.2, startup_file_count=3),
        )
        path = self.dir / "explorer_config.yaml"
        ConfigLoader.save_to_file(config, path)

        loaded = ConfigLoader.load_from_file(path)

        self.assertEqual(loaded.app_name, "Test")
        self.assertEqual(loaded.paths.journal_dir, self.dir / "journals")
        self.assertEqual(loaded.paths.checkpoint_path, self.dir / "data" / "lastProcessed.json")
        self.assertEqual(loaded.monitoring.startup_file_count, 3)
        self.assertEqual(loaded.monitoring.poll_fast_seconds, 0.2)

    def test_json_partial_config(self):
        path = self.dir / "explorer_config.json"
        path.write_text(json.dumps({"paths": {"journal_dir": str(self.dir)}}), encoding="utf-8")

        loaded = ConfigLoader.load_from_file(path)

        self.assertEqual(loaded.paths.journal_dir, self.dir)
        self.assertEqual(loaded.monitoring, MonitoringConfig())

    def test_invalid_files_raise_configuration_error(self):
        cases = {
            "broken.yaml": "paths: [unclosed",
            "list.yaml": "- 1\n- 2\n",
            "unknown.yaml": "monitoring:\n  warp_speed: 9\n",
            "config.txt": "x",
        }
        for name, text in cases.items():
            with self.subTest(name=name):
                path = self.dir / name
                path.write_text(text, encoding="utf-8")
                with self.assertRaises(ConfigurationError):
                    ConfigLoader.load_from_file(path)

        with self.assertRaises(ConfigurationError):
            ConfigLoader.load_from_file(self.dir / "absent.yaml")

    def test_find_config_file(self):
        self.assertIsNone(ConfigLoader.find_config_file([self.dir]))
        (self.dir / "explorer_config.yml").write_text("{}", encoding="utf-8")
        self.assertEqual(ConfigLoader.find_config_file([self.dir]), self.dir / "explorer_config.yml")

    def test_validator(self):
        config = AppConfig(
            app_name="Test",
            version="1",
            paths=PathConfig.under(self.dir, self.dir),
            monitoring=MonitoringConfig(poll_fast_seconds=0, progress_interval=-1),
        )
        errors = ConfigValidator.validate(config)

        self.assertIn("poll_fast_seconds must be positive", errors)
        self.assertIn("progress_interval must be positive", errors)
        self.assertEqual(ConfigValidator.validate(AppConfig("T", "1", PathConfig.under(self.dir, self.dir))), [])


# ============================================================================
# TEST ERROR HANDLING
# ============================================================================

class TestErrorHandling(unittest.TestCase):
    """Test error handling system"""

    def setUp(self):
        self.mock_logger = Mock()
        self.error_handler = ErrorHandler(self.mock_logger)

    def test_error_hierarchy(self):
        error = JournalDirectoryMissingError("/nowhere")
        self.assertIsInstance(error, ConfigurationError)
        self.assertEqual(error.severity, ErrorSeverity.CRITICAL)
        self.assertIn("/nowhere", error.user_message)

        read_error = JournalReadError("Journal.A.log", "locked")
        self.assertEqual(read_error.severity, ErrorSeverity.WARNING)
        self.assertEqual(read_error.filename, "Journal.A.log")

        self.assertEqual(WorkerError("x").severity, ErrorSeverity.ERROR)

    def test_to_dict(self):
        data = DatabaseError("DB failed", context={"db": "x"}).to_dict()
        self.assertEqual(data["type"], "DatabaseError")
        self.assertEqual(data["severity"], "ERROR")
        self.assertEqual(data["context"], {"db": "x"})

    def test_critical_always_routed(self):
        """Test critical errors reach on_critical_error even without notify_user"""
        critical = Mock()
        regular = Mock()
        self.error_handler.on_critical_error = critical
        self.error_handler.on_error = regular

        self.error_handler.handle_error(JournalDirectoryMissingError("/x"), notify_user=False)

        critical.assert_called_once()
        regular.assert_not_called()
        self.mock_logger.error.assert_called_once()

    def test_warning_logged_as_warning(self):
        self.error_handler.handle_error(JournalReadError("J.log", "busy"), notify_user=False)
        self.mock_logger.warning.assert_called_once()

    def test_plain_exception_wrapped(self):
        error = self.error_handler.handle_error(ValueError("bad"))
        self.assertIsInstance(error, ExplorerError)
        self.assertEqual(self.error_handler.get_recent_errors(), [error])

    def test_failing_callback_isolated(self):
        self.error_handler.on_error = Mock(side_effect=RuntimeError("ui gone"))
        self.error_handler.handle_error(WorkerError("x"))
        self.assertEqual(self.mock_logger.error.call_count, 2)

    def test_retry_decorator_succeeds_on_retry(self):
        attempts = []

        @retry_on_error(max_attempts=3, delay_seconds=0.001, exceptions=(OSError,))
        def flaky():
            attempts.append(1)
            if len(attempts) < 3:
                raise OSError("busy")
            return "ok"

        self.assertEqual(flaky(), "ok")
        self.assertEqual(len(attempts), 3)

    def test_retry_decorator_fails_after_max_attempts(self):
        @retry_on_error(max_attempts=2, delay_seconds=0.001, exceptions=(OSError,))
        def broken():
            raise OSError("locked")

        with self.assertRaises(OSError):
            broken()


# ============================================================================
# TEST SNAPSHOT READERS
# ============================================================================

class TestSnapshotReaders(unittest.TestCase):
    """Test whole-file Status.json / NavRoute.json readers"""

    def setUp(self):
        self._tmp = tempfile.TemporaryDirectory()
        self.dir = Path(self._tmp.name)
        self.applied = []

    def tearDown(self):
        self._tmp.cleanup()

    def _write(self, name, text, mtime):
        path = self.dir / name
        path.write_text(text, encoding="utf-8")
        os.utime(path, (mtime, mtime))

    def test_decode_status_flags(self):
        status = decode_status({"Flags": (1 << 0) | (1 << 4) | (1 << 27), "Fuel": {"FuelMain": 8.0}})
        self.assertTrue(status["docked"])
        self.assertTrue(status["supercruise"])
        self.assertTrue(status["on_foot"])
        self.assertFalse(status["landed"])
        self.assertEqual(status["fuel"], {"FuelMain": 8.0})

    def test_skipped_read_keeps_previous_value(self):
        """Test a mid-write read is skipped and the last good value kept"""
        reader = status_reader(self.dir, self.applied.append)
        self._write("Status.json", json.dumps({"Flags": 1}), 1_000_000)
        self.assertTrue(reader.poll())

        self._write("Status.json", '{"Flags": 1', 1_000_010)
        self.assertFalse(reader.poll())

        self.assertEqual(reader.last_outcome, SnapshotState.SKIPPED)
        self.assertEqual(reader.skipped_reads, 1)
        self.assertTrue(reader.value["docked"])
        self.assertEqual(reader.state, SnapshotState.IDLE)
        self.assertEqual(len(self.applied), 1)

    def test_skipped_read_retried_on_next_poll(self):
        reader = status_reader(self.dir, self.applied.append)
        self._write("Status.json", "", 1_000_000)
        self.assertFalse(reader.poll())

        self._write("Status.json", json.dumps({"Flags": 2}), 1_000_000)
        self.assertTrue(reader.poll())
        self.assertTrue(reader.value["landed"])

    def test_unchanged_file_not_reread(self):
        reader = status_reader(self.dir, self.applied.append)
        self._write("Status.json", json.dumps({"Flags": 0}), 1_000_000)
        reader.poll()
        self.assertFalse(reader.poll())
        self.assertEqual(len(self.applied), 1)

    def test_missing_file_is_not_an_error(self):
        self.assertFalse(status_reader(self.dir).poll())

    def test_nav_route(self):
        reader = nav_route_reader(self.dir, self.applied.append)
        self._write("NavRoute.json", json.dumps({"Route": [
            {"StarSystem": "Sol", "SystemAddress": 10477373803, "StarPos": [0, 0, 0], "StarClass": "G"},
            {"StarSystem": "Alpha Centauri", "SystemAddress": 1, "StarPos": [3.0, -0.1, 3.2], "StarClass": "G"},
        ]}), 1_000_000)

        self.assertTrue(reader.poll())
        self.assertEqual([entry["system"] for entry in reader.value], ["Sol", "Alpha Centauri"])
        self.assertEqual(self.applied[0].kind, SnapshotKind.NAV_ROUTE)

        self._write("NavRoute.json", json.dumps({"event": "NavRouteClear", "Route": []}), 1_000_010)
        self.assertTrue(reader.poll())
        self.assertEqual(reader.value, [])

    def test_nav_route_with_wrong_shape_is_skipped(self):
        """Test a Route that is not a list skips the read instead of raising"""
        reader = nav_route_reader(self.dir, self.applied.append)
        self._write("NavRoute.json", json.dumps({"Route": [{"StarSystem": "Sol"}]}), 1_000_000)
        self.assertTrue(reader.poll())

        self._write("NavRoute.json", json.dumps({"Route": 5}), 1_000_010)
        self.assertFalse(reader.poll())

        self.assertEqual(reader.last_outcome, SnapshotState.SKIPPED)
        self.assertEqual(reader.state, SnapshotState.IDLE)
        self.assertEqual([entry["system"] for entry in reader.value], ["Sol"])

        self._write("NavRoute.json", json.dumps({"Route": []}), 1_000_020)
        self.assertTrue(reader.poll())
        self.assertEqual(reader.value, [])


# ============================================================================
# TEST STATE MANAGER
# ============================================================================

class TestJournalStateManager(unittest.TestCase):
    """Test the current context subscriber"""

    def setUp(self):
        self._tmp = tempfile.TemporaryDirectory()
        self.dispatcher = EventDispatcher(CheckpointStore(Path(self._tmp.name) / "cp.json"), ErrorHandler(Mock()))
        self.state = JournalStateManager()
        self.state.attach(self.dispatcher)

    def tearDown(self):
        self._tmp.cleanup()

    def test_arrival_and_scans(self):
        arrivals = []
        self.state.register_system_callback(arrivals.append)
        context = ClassifierContext()

        self.dispatcher.dispatch(event_message(
            {"event": "FSDJump", "StarSystem": "Sol", "StarPos": [0, 0, 0], "JumpDist": 8.5}, context))
        self.dispatcher.dispatch(event_message({"event": "Scan", "BodyName": "Earth", "PlanetClass": "Earthlike body"}, context))
        self.dispatcher.dispatch(event_message({"event": "FSSDiscoveryScan", "BodyCount": 0}, context))

        current = self.state.get_context()
        self.assertEqual(current.system_name, "Sol")
        self.assertEqual(current.jump_dist, 8.5)
        self.assertEqual([b.name for b in current.bodies], ["Earth"])
        self.assertEqual(current.total_bodies, 0)
        self.assertEqual(len(arrivals), 1)
        self.assertEqual(arrivals[0].new_system, "Sol")

    def test_unknown_population_is_none(self):
        self.dispatcher.dispatch(event_message({"event": "Location", "StarSystem": "Sol"}))
        self.assertIsNone(self.state.get_context().population)

    def test_new_system_clears_bodies(self):
        context = ClassifierContext()
        self.dispatcher.dispatch(event_message({"event": "FSDJump", "StarSystem": "A"}, context))
        self.dispatcher.dispatch(event_message({"event": "Scan", "BodyName": "A 1"}, context))
        self.dispatcher.dispatch(event_message({"event": "FSDJump", "StarSystem": "B"}, context))
        self.assertEqual(self.state.get_context().bodies, ())

    def test_docking_and_status(self):
        self.dispatcher.dispatch(event_message({"event": "Docked", "StationName": "Abraham Lincoln"}))
        self.assertTrue(self.state.get_context().docked)

        self.dispatcher.dispatch(SnapshotMessage(SnapshotKind.STATUS, decode_status({"Flags": 1 << 4})))
        current = self.state.get_context()
        self.assertFalse(current.docked)
        self.assertTrue(current.supercruise)

    def test_failing_callback_isolated(self):
        healthy = Mock()
        self.state.register_state_callback(Mock(side_effect=RuntimeError("x")))
        self.state.register_state_callback(healthy)

        self.dispatcher.dispatch(event_message({"event": "Touchdown", "Body": "Moon"}))

        healthy.assert_called_once()
        self.assertTrue(self.state.get_context().landed)

    def test_late_attach_replays(self):
        self.dispatcher.dispatch(SnapshotMessage(SnapshotKind.NAV_ROUTE, [{"system": "Sol"}]))
        late = JournalStateManager()
        late.attach(self.dispatcher)
        self.assertEqual(len(late.get_context().nav_route), 1)


# ============================================================================
# TEST DATABASE
# ============================================================================

class TestExplorerDatabase(unittest.TestCase):
    """Test the SQLite subscriber"""

    def setUp(self):
        self._tmp = tempfile.TemporaryDirectory()
        self.db = ExplorerDatabase(Path(self._tmp.name) / "explorer.db")
        self.dispatcher = EventDispatcher(CheckpointStore(Path(self._tmp.name) / "cp.json"), ErrorHandler(Mock()))
        self.db.attach(self.dispatcher)

    def tearDown(self):
        self.db.close()
        self._tmp.cleanup()

    def test_scans_deduplicated_by_event_id(self):
        """Test re-delivered events are stored once"""
        record = {"timestamp": "2024-01-15T10:00:00Z", "event": "Scan", "StarSystem": "Sol",
                  "BodyName": "Earth", "BodyID": 3, "PlanetClass": "Earthlike body"}
        self.dispatcher.dispatch(event_message(record))
        self.dispatcher.dispatch(event_message(record))

        scans = self.db.get_scans("Sol")
        self.assertEqual(len(scans), 1)
        self.assertEqual(scans[0]["body_name"], "Earth")
        self.assertEqual(scans[0]["body_type"], "Planet")

    def test_estimated_value_stored(self):
        """Test EstimatedValue reaches the table and an absent one stays NULL"""
        self.dispatcher.dispatch(event_message({
            "timestamp": "2024-01-15T10:00:00Z", "event": "Scan", "StarSystem": "Sol",
            "BodyName": "Earth", "PlanetClass": "Earthlike body", "EstimatedValue": 1234567,
        }))
        self.dispatcher.dispatch(event_message({
            "timestamp": "2024-01-15T10:01:00Z", "event": "Scan", "StarSystem": "Sol",
            "BodyName": "Mars", "PlanetClass": "High metal content body",
        }))

        values = {scan["body_name"]: scan["estimated_value"] for scan in self.db.get_scans("Sol")}
        self.assertEqual(values, {"Earth": 1234567, "Mars": None})

    def test_record_scan_returns_insert_status(self):
        self.assertTrue(self.db.record_scan("abc", {"system": "Sol", "body": "Mars"}))
        self.assertFalse(self.db.record_scan("abc", {"system": "Sol", "body": "Mars"}))
        self.assertEqual(self.db.count_scans(), 1)

    def test_current_system_upserted(self):
        self.dispatcher.dispatch(event_message({"timestamp": "t1", "event": "FSDJump", "StarSystem": "A"}))
        self.dispatcher.dispatch(event_message({"timestamp": "t2", "event": "FSDJump", "StarSystem": "B"}))

        self.assertEqual(self.db.get_current_system(), {"current_system": "B", "updated_at": "t2"})

    def test_closed_database_raises(self):
        self.db.close()
        with self.assertRaises(DatabaseError):
            self.db.count_scans()


# ============================================================================
# TEST HISTORY
# ============================================================================

class TestHistory(unittest.TestCase):
    """Test the jump history scan, remote merge and export"""

    def setUp(self):
        self._tmp = tempfile.TemporaryDirectory()
        self.dir = Path(self._tmp.name)

    def tearDown(self):
        self._tmp.cleanup()

    def _jump(self, system, ts, **extra):
        return dict({"event": "FSDJump", "StarSystem": system, "timestamp": ts}, **extra)

    def test_scan_all_journals_newest_first(self):
        append_lines(self.dir / "Journal.2024-01-14T100000.01.log", [self._jump("A", "2024-01-14T10:00:00Z")])
        append_lines(self.dir / "Journal.2024-01-15T100000.01.log", [
            self._jump("B", "2024-01-15T10:00:00Z"),
            {"event": "Scan", "BodyName": "B 1"},
            self._jump("C", "2024-01-15T11:00:00Z"),
        ])
        scanner = HistoryScanner(self.dir)
        completed = Mock()
        scanner.on_complete = completed

        jumps = scanner.scan()

        self.assertEqual([j["system"] for j in jumps], ["C", "B", "A"])
        completed.assert_called_once()
        self.assertFalse(scanner.is_scanning)

        replayed = []
        self.assertTrue(scanner.replay(replayed.append))
        self.assertEqual(replayed[0], jumps)

    def test_scan_coalesced_while_running(self):
        scanner = HistoryScanner(self.dir)
        scanner._scanning = True
        self.assertIsNone(scanner.scan())
        self.assertFalse(scanner.start_scan())

    def test_replay_before_scan(self):
        self.assertFalse(HistoryScanner(self.dir).replay(Mock()))

    def test_background_scan_reports_missing_directory(self):
        scanner = HistoryScanner(self.dir / "missing")
        failed = Mock()
        scanner.on_error = failed

        self.assertTrue(scanner.start_scan())
        scanner.wait(5.0)

        self.assertIsInstance(failed.call_args[0][0], JournalDirectoryMissingError)
        self.assertFalse(scanner.is_scanning)

    def test_merge_same_minute_is_a_match(self):
        """Test a remote entry in the same minute does not duplicate the jump"""
        journal = [{"system": "Sol", "timestamp": "2024-01-15T10:00:30Z", "was_discovered": True}]
        remote = [{"system": "SOL", "date": "2024-01-15 10:00:59", "firstDiscover": True}]

        result = merge_remote_jumps(journal, remote)

        self.assertEqual(len(result.jumps), 1)
        self.assertEqual(result.new_from_remote, 0)
        self.assertFalse(result.jumps[0]["was_discovered"])
        self.assertEqual(result.first_discoveries_backfilled, 1)

    def test_merge_adds_unmatched_and_sorts(self):
        journal = [
            {"system": "Sol", "timestamp": "2024-01-15T10:00:30Z"},
            {"system": "Nowhere", "timestamp": None},
        ]
        remote = [
            {"system": "Achenar", "date": "2024-01-16 08:00:00", "coordinates": {"x": 67.5, "y": -119.47, "z": 24.84}},
            {"system": "Sol", "date": "2024-01-15 10:02:00"},
        ]

        result = merge_remote_jumps(journal, remote)

        self.assertEqual(
            [(j["system"], j.get("from_remote", False)) for j in result.jumps],
            [("Achenar", True), ("Sol", True), ("Sol", False), ("Nowhere", False)]
        )
        self.assertEqual(result.total_remote, 2)
        self.assertEqual(result.jumps[0]["pos"], [67.5, -119.47, 24.84])

    def test_normalize_remote_entry(self):
        entry = normalize_remote_entry({"system": "Sol", "date": "2024-01-15 10:00:00", "firstDiscover": True})
        self.assertEqual(entry["timestamp"], "2024-01-15T10:00:00Z")
        self.assertFalse(entry["was_discovered"])
        self.assertTrue(entry["from_remote"])

    def test_export_xlsx(self):
        jumps = [
            {"system": "B", "timestamp": "2024-01-15T11:00:00Z", "jump_dist": 20.5, "pos": [1, 2, 3],
             "was_discovered": False, "star_class": "K", "body_count": 4},
            {"system": "A", "timestamp": "2024-01-15T10:00:00Z", "from_remote": True},
        ]

        path = export_history_xlsx(jumps, self.dir / "exports", cmdr_name="Jameson")

        self.assertTrue(path.exists())
        ws = openpyxl.load_workbook(path)["Jump History"]
        self.assertEqual(ws.cell(4, 1).value, "Timestamp")
        self.assertEqual(ws.cell(5, 2).value, "B")
        self.assertEqual(ws.cell(5, 9).value, "Yes")
        self.assertEqual(ws.cell(6, 10).value, "Remote")
        self.assertEqual(ws.freeze_panes, "A5")

    def test_export_nothing(self):
        self.assertIsNone(export_history_xlsx([], self.dir))


# ============================================================================
# TEST CONTAINER AND SHUTDOWN
# ============================================================================

class TestContainerAndShutdown(unittest.TestCase):

    def setUp(self):
        self._tmp = tempfile.TemporaryDirectory()
        root = Path(self._tmp.name)
        (root / "journals").mkdir()
        self.config = AppConfig("Test", "1", PathConfig.under(root / "data", root / "journals"))

    def tearDown(self):
        self._tmp.cleanup()

    def test_container_wires_subscribers(self):
        container = DependencyContainer.create(self.config)
        try:
            self.assertEqual(container.monitor.journal_dir, self.config.paths.journal_dir)
            container.dispatcher.dispatch(event_message(
                {"timestamp": "t", "event": "Scan", "StarSystem": "Sol", "BodyName": "Earth"}))

            self.assertEqual(container.database.count_scans(), 1)
            self.assertEqual(container.state.get_context().bodies[0].name, "Earth")
        finally:
            container.cleanup()

    def test_history_command_exports(self):
        import main

        paths = self.config.paths
        append_lines(paths.journal_dir / "Journal.2024-01-15T100000.01.log", [
            {"event": "LoadGame", "Commander": "Jameson"},
            {"event": "FSDJump", "StarSystem": "Sol", "timestamp": "2024-01-15T10:00:00Z"},
        ])
        export_dir = paths.data_dir / "exports"

        code = main.main([
            "--history",
            "--journal-dir", str(paths.journal_dir),
            "--data-dir", str(paths.data_dir),
            "--export", str(export_dir),
        ])

        self.assertEqual(code, 0)
        self.assertEqual(len(list(export_dir.glob("Jump_History_Jameson_*.xlsx"))), 1)

    def test_missing_journal_dir_exit_code(self):
        import main

        code = main.main([
            "--history",
            "--journal-dir", str(self.config.paths.data_dir / "missing"),
            "--data-dir", str(self.config.paths.data_dir),
        ])
        self.assertEqual(code, 1)

    def test_shutdown_runs_by_priority(self):
        order = []
        manager = ShutdownManager(ErrorHandler(Mock()))
        manager.register_task("low", lambda: order.append("low"), ShutdownPriority.LOW)
        manager.register_task("critical", lambda: order.append("critical"), ShutdownPriority.CRITICAL)
        manager.register_task("broken", Mock(side_effect=RuntimeError("x")), ShutdownPriority.HIGH)

        manager.initiate_shutdown()
        manager.initiate_shutdown()

        self.assertEqual(order, ["critical", "low"])
        self.assertTrue(manager.wait_for_shutdown(0.1))

    def test_register_component(self):
        component = Mock(spec=["stop", "close"])
        manager = ShutdownManager(ErrorHandler(Mock()))
        manager.register_component("db", component)
        manager.initiate_shutdown()

        component.stop.assert_called_once()
        component.close.assert_called_once()


if __name__ == '__main__':
    unittest.main()
