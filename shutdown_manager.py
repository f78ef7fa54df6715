"""
Graceful Shutdown Manager
=========================

Stops the journal monitor, flushes the database worker and closes logging
in a fixed priority order when the process is interrupted.
"""

# ============================================================================
# IMPORTS
# ============================================================================

import threading
import time
import signal
import sys
from typing import List, Callable, Optional
from dataclasses import dataclass
from enum import Enum

from error_handling import ErrorHandler


# ============================================================================
# CLASSES
# ============================================================================

class ShutdownPriority(Enum):
    """Shutdown priority levels (higher runs first)"""
    CRITICAL = 100   # monitor stop: no further commits
    HIGH = 75        # database close
    NORMAL = 50
    LOW = 25         # log handlers


@dataclass
class ShutdownTask:
    """A task to execute during shutdown"""
    name: str
    callback: Callable[[], None]
    priority: ShutdownPriority
    timeout: float = 5.0


class ShutdownManager:
    """
    Runs registered shutdown tasks once, highest priority first.

    Each task runs on its own thread and is abandoned after its timeout so a
    hung component cannot block exit.
    """

    def __init__(self, error_handler: ErrorHandler):
        self.error_handler = error_handler
        self.logger = error_handler.logger

        self._tasks: List[ShutdownTask] = []
        self._shutdown_initiated = False
        self._shutdown_complete = threading.Event()
        self._shutdown_lock = threading.Lock()

        self._original_sigint = None
        self._original_sigterm = None

        self.on_shutdown_start: Optional[Callable[[], None]] = None
        self.on_shutdown_complete: Optional[Callable[[], None]] = None

    def register_task(
        self,
        name: str,
        callback: Callable[[], None],
        priority: ShutdownPriority = ShutdownPriority.NORMAL,
        timeout: float = 5.0
    ):
        self._tasks.append(ShutdownTask(name=name, callback=callback, priority=priority, timeout=timeout))
        self.logger.info(f"Registered shutdown task: {name} (priority: {priority.name})")

    def register_component(
        self,
        component_name: str,
        component,
        priority: ShutdownPriority = ShutdownPriority.NORMAL
    ):
        """
        Register whichever of stop() / close() / cleanup() the component has.
        stop() runs before close() for the same component.
        """
        for method, timeout in (("stop", 3.0), ("close", 2.0), ("cleanup", 5.0)):
            callback = getattr(component, method, None)
            if callable(callback):
                self.register_task(f"{component_name}.{method}()", callback, priority, timeout)

    def setup_signal_handlers(self, exit_code: Optional[int] = 0):
        """Install SIGINT / SIGTERM handlers (main thread only)"""
        def signal_handler(signum, frame):
            signal_name = "SIGINT" if signum == signal.SIGINT else "SIGTERM"
            self.logger.info(f"Received {signal_name} signal")
            self.initiate_shutdown(exit_code)

        self._original_sigint = signal.signal(signal.SIGINT, signal_handler)
        self._original_sigterm = signal.signal(signal.SIGTERM, signal_handler)
        self.logger.info("Signal handlers installed")

    def restore_signal_handlers(self):
        if self._original_sigint:
            signal.signal(signal.SIGINT, self._original_sigint)
        if self._original_sigterm:
            signal.signal(signal.SIGTERM, self._original_sigterm)

    def initiate_shutdown(self, exit_code: Optional[int] = None):
        """
        Run all shutdown tasks

        Args:
            exit_code: Passed to sys.exit() afterwards; None returns instead
        """
        with self._shutdown_lock:
            if self._shutdown_initiated:
                self.logger.info("Shutdown already in progress")
                return
            self._shutdown_initiated = True

        self.logger.info("Graceful shutdown initiated")
        self._notify(self.on_shutdown_start, "start")

        for task in sorted(self._tasks, key=lambda t: t.priority.value, reverse=True):
            self._execute_task(task)

        self._notify(self.on_shutdown_complete, "complete")
        self._shutdown_complete.set()
        self.logger.info("Graceful shutdown complete")

        if exit_code is not None:
            sys.exit(exit_code)

    def _notify(self, callback: Optional[Callable[[], None]], stage: str):
        if callback is None:
            return
        try:
            callback()
        except Exception as e:
            self.logger.error(f"Shutdown {stage} callback failed: {e}")

    def _execute_task(self, task: ShutdownTask):
        """Execute a single shutdown task with timeout"""
        failure: List[BaseException] = []

        def run():
            try:
                task.callback()
            except Exception as e:
                failure.append(e)

        task_thread = threading.Thread(target=run, name=f"shutdown-{task.name}", daemon=True)
        start_time = time.time()
        task_thread.start()
        task_thread.join(timeout=task.timeout)
        elapsed = time.time() - start_time

        if task_thread.is_alive():
            self.logger.error(f"Task '{task.name}' did not complete within {task.timeout}s")
        elif failure:
            self.logger.error(f"Task '{task.name}' failed: {failure[0]}")
        else:
            self.logger.info(f"{task.name} completed ({elapsed:.2f}s)")

    def is_shutting_down(self) -> bool:
        with self._shutdown_lock:
            return self._shutdown_initiated

    def wait_for_shutdown(self, timeout: Optional[float] = None) -> bool:
        """True once every task has run, False on timeout"""
        return self._shutdown_complete.wait(timeout)
