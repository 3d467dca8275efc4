"""
Bounded background execution of operations.

Requests are acknowledged as soon as their task is queued; the work itself
runs on a fixed-size thread pool. A semaphore caps running plus queued tasks,
so a burst of requests is turned away with ExecutorSaturated instead of
piling up without limit.

Each task runs exactly once and always drives its operation to a terminal
status. Exceptions never leave the worker.
"""

from __future__ import annotations

import logging
from collections import OrderedDict
from concurrent.futures import Future, ThreadPoolExecutor
from enum import Enum
from pathlib import Path
from threading import BoundedSemaphore, Lock
from typing import Callable, Dict, List, Optional, Sequence

from .errors import ExecutorSaturated
from .models import OperationRecord, OutputFile
from .registry import OperationRegistry

logger = logging.getLogger(__name__)

Work = Callable[[OperationRecord], Sequence[Path]]


class TaskState(str, Enum):
    SCHEDULED = "scheduled"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


def describe_output(path: Path) -> OutputFile:
    return OutputFile(filename=path.name, storage_path=str(path), size_bytes=path.stat().st_size)


class BackgroundExecutor:
    """
    Runs operation work after the client has been acknowledged.

    Attributes:
        registry: Registry receiving the status transitions
        capacity: Maximum number of running plus queued tasks
    """

    def __init__(
        self,
        registry: OperationRegistry,
        max_workers: int = 2,
        max_pending: int = 32,
        history_size: int = 256,
    ) -> None:
        self.registry = registry
        self.capacity = max_workers + max_pending
        self.history_size = history_size
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="pdf-ops")
        self._slots = BoundedSemaphore(self.capacity)
        self._lock = Lock()
        # Held from the shutdown check until the task is queued
        self._admission = Lock()
        self._closed = False
        self._states: Dict[str, TaskState] = {}
        self._finished: "OrderedDict[str, TaskState]" = OrderedDict()
        self._futures: Dict[str, Future] = {}
        self._in_flight = 0

    @property
    def in_flight(self) -> int:
        with self._lock:
            return self._in_flight

    @property
    def tracked(self) -> int:
        """Number of task states held in memory, active and finished."""
        with self._lock:
            return len(self._states) + len(self._finished)

    def task_state(self, operation_id: str) -> Optional[TaskState]:
        """
        State of a queued, running or recently finished task.

        Only the last ``history_size`` finished tasks are remembered; the
        registry remains the durable record of an operation's outcome.
        """
        with self._lock:
            state = self._states.get(operation_id)
            return state if state is not None else self._finished.get(operation_id)

    def submit(self, operation_id: str, work: Work, prepare: Optional[Callable[[], None]] = None) -> Future:
        """
        Queue ``work`` for ``operation_id``.

        ``prepare`` runs after a slot is reserved and before the task is
        queued; the request handler uses it to create the pending record, so
        a saturated or shut down executor rejects the request before any
        record exists.

        Raises:
            ExecutorSaturated: If the executor is at capacity or shut down
        """
        if not self._slots.acquire(blocking=False):
            raise ExecutorSaturated("Too many operations in progress, please retry shortly")

        with self._admission:
            if self._closed:
                self._slots.release()
                raise ExecutorSaturated("Executor is not accepting new operations")
            try:
                if prepare is not None:
                    prepare()
                with self._lock:
                    self._states[operation_id] = TaskState.SCHEDULED
                    self._in_flight += 1
                future = self._executor.submit(self._run, operation_id, work)
            except RuntimeError as exc:
                self._release(operation_id)
                raise ExecutorSaturated("Executor is not accepting new operations") from exc
            except Exception:
                self._slots.release()
                raise

        with self._lock:
            self._futures[operation_id] = future
        future.add_done_callback(lambda _: self._forget(operation_id))
        logger.debug("Scheduled operation %s", operation_id)
        return future

    def _run(self, operation_id: str, work: Work) -> TaskState:
        try:
            return self.run_operation(operation_id, work)
        finally:
            self._release(operation_id)

    def _release(self, operation_id: str) -> None:
        with self._lock:
            if self._states.get(operation_id) == TaskState.SCHEDULED:
                self._states.pop(operation_id, None)
            self._in_flight = max(self._in_flight - 1, 0)
        self._slots.release()

    def _forget(self, operation_id: str) -> None:
        with self._lock:
            self._futures.pop(operation_id, None)

    def _set_state(self, operation_id: str, state: TaskState) -> None:
        with self._lock:
            if state in (TaskState.SUCCEEDED, TaskState.FAILED):
                self._states.pop(operation_id, None)
                self._finished[operation_id] = state
                self._finished.move_to_end(operation_id)
                while len(self._finished) > self.history_size:
                    self._finished.popitem(last=False)
            else:
                self._states[operation_id] = state

    def run_operation(self, operation_id: str, work: Work) -> TaskState:
        """
        Drive one operation from pending to a terminal status.

        Returns:
            The final task state
        """
        try:
            record = self.registry.mark_processing(operation_id)
        except Exception:
            logger.exception("Operation %s could not be started", operation_id)
            self._set_state(operation_id, TaskState.FAILED)
            return TaskState.FAILED

        self._set_state(operation_id, TaskState.RUNNING)
        written: List[Path] = []
        try:
            written = list(work(record))
            self.registry.mark_completed(operation_id, [describe_output(path) for path in written])
        except Exception as exc:
            logger.warning("Operation %s failed: %s", operation_id, exc)
            self._discard(written)
            self._fail(operation_id, str(exc) or exc.__class__.__name__)
            self._set_state(operation_id, TaskState.FAILED)
            return TaskState.FAILED

        self._set_state(operation_id, TaskState.SUCCEEDED)
        return TaskState.SUCCEEDED

    def _fail(self, operation_id: str, message: str) -> None:
        try:
            self.registry.mark_failed(operation_id, message)
        except Exception:
            logger.exception("Operation %s could not be marked failed", operation_id)

    def _discard(self, paths: Sequence[Path]) -> None:
        for path in paths:
            try:
                path.unlink(missing_ok=True)
            except OSError as exc:
                logger.warning("Could not remove output %s of failed operation: %s", path, exc)

    def wait(self, operation_id: str, timeout: Optional[float] = None) -> Optional[TaskState]:
        """Block until the task for ``operation_id`` finishes, if it is still queued or running."""
        with self._lock:
            future = self._futures.get(operation_id)
        if future is not None:
            return future.result(timeout=timeout)
        return self.task_state(operation_id)

    def shutdown(self, wait: bool = True) -> None:
        with self._admission:
            self._closed = True
        logger.info("Shutting down background executor (%d in flight)", self.in_flight)
        self._executor.shutdown(wait=wait)
