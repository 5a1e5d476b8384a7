"""Long-running worker process hosting the task hub service."""

from __future__ import annotations

import logging
import signal
import time
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass

from agent_taskhub.orchestrator.errors import TaskHubError
from agent_taskhub.orchestrator.retention import RetentionSweeper
from agent_taskhub.orchestrator.services import TaskHubService

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class WorkerRunSummary:
    """Aggregate worker counters for CLI reporting."""

    passes: int = 0
    control_requests: int = 0
    dispatched: int = 0
    archived: int = 0
    idle_polls: int = 0


class TaskHubWorker:
    """Polls for cross-process work and keeps the runner slot busy."""

    def __init__(
        self,
        *,
        service: TaskHubService,
        sweeper: RetentionSweeper | None = None,
        poll_interval_seconds: float = 1.0,
        archive_interval_seconds: float = 3_600.0,
    ) -> None:
        self.service = service
        self.sweeper = sweeper
        self.poll_interval_seconds = poll_interval_seconds
        self.archive_interval_seconds = archive_interval_seconds
        self._stop_requested = False
        self._stop_signal_name: str | None = None
        self._last_archive_at: float | None = None

    @property
    def stop_signal_name(self) -> str | None:
        return self._stop_signal_name

    def run_once(self) -> WorkerRunSummary:
        """Apply control requests, pick up new submissions, and run retention when due."""

        summary = WorkerRunSummary(passes=1)
        if self._stop_requested:
            return summary

        summary.control_requests = self.service.apply_control_requests()
        self.service.sync_queue()
        if self.service.dispatch_next() is not None:
            summary.dispatched = 1
        summary.archived = self._archive_if_due()

        if (
            summary.control_requests == 0
            and summary.dispatched == 0
            and self.service.supervisor.is_idle
            and self.service.queue.count() == 0
        ):
            summary.idle_polls = 1
        return summary

    def run_loop(self, *, max_idle_polls: int | None = None) -> WorkerRunSummary:
        """Serve until stopped by a signal or after ``max_idle_polls`` idle passes.

        The runner is connected on entry and disconnected on exit, so an agent
        still running when the loop stops is interrupted and picked up again by
        the next worker's startup recovery.
        """

        aggregate = WorkerRunSummary()
        consecutive_idle = 0
        with self._signal_handlers():
            self.service.start()
            try:
                while not self._stop_requested:
                    try:
                        summary = self.run_once()
                    except TaskHubError:
                        logger.exception("Worker pass failed")
                        summary = WorkerRunSummary(passes=1)
                    aggregate.passes += summary.passes
                    aggregate.control_requests += summary.control_requests
                    aggregate.dispatched += summary.dispatched
                    aggregate.archived += summary.archived
                    aggregate.idle_polls += summary.idle_polls

                    if summary.idle_polls:
                        consecutive_idle += 1
                        if max_idle_polls is not None and consecutive_idle >= max_idle_polls:
                            break
                    else:
                        consecutive_idle = 0
                    self._sleep_with_stop(self.poll_interval_seconds)
            finally:
                self.service.stop()
        if self._stop_signal_name is not None:
            logger.info("Worker stopped by %s", self._stop_signal_name)
        return aggregate

    def request_stop(self) -> None:
        self._request_stop(signal_name="request")

    def _archive_if_due(self) -> int:
        if self.sweeper is None:
            return 0
        now = time.monotonic()
        if (
            self._last_archive_at is not None
            and now - self._last_archive_at < self.archive_interval_seconds
        ):
            return 0
        self._last_archive_at = now
        return len(self.sweeper.archive_expired().archived)

    def _sleep_with_stop(self, seconds: float) -> None:
        deadline = time.monotonic() + seconds
        while not self._stop_requested and time.monotonic() < deadline:
            time.sleep(min(0.1, max(0.0, deadline - time.monotonic())))

    @contextmanager
    def _signal_handlers(self) -> Iterator[None]:
        original_sigint = signal.getsignal(signal.SIGINT)
        original_sigterm = signal.getsignal(signal.SIGTERM)

        def _handler(signum: int, _: object | None) -> None:
            try:
                name = signal.Signals(signum).name
            except ValueError:
                name = str(signum)
            self._request_stop(signal_name=name)

        installed = True
        try:
            signal.signal(signal.SIGINT, _handler)
            signal.signal(signal.SIGTERM, _handler)
        except ValueError:
            # Signal handlers can only be installed in main thread.
            installed = False
        try:
            yield
        finally:
            if installed:
                signal.signal(signal.SIGINT, original_sigint)
                signal.signal(signal.SIGTERM, original_sigterm)

    def _request_stop(self, *, signal_name: str) -> None:
        if not self._stop_requested:
            logger.info("Stop requested (%s); finishing current pass", signal_name)
        self._stop_requested = True
        self._stop_signal_name = signal_name
