"""Retention sweep: archive settled tasks after the retention window."""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta

from agent_taskhub.orchestrator.events import EventBroadcaster, EventType, TaskEvent
from agent_taskhub.orchestrator.repository import TaskRepository
from agent_taskhub.storage.common import utc_now

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class ArchiveReport:
    cutoff: datetime
    archived: list[int] = field(default_factory=list)
    skipped: list[int] = field(default_factory=list)


class RetentionSweeper:
    """Soft-deletes terminal and interrupted tasks older than ``retention_hours``."""

    def __init__(
        self,
        *,
        store: TaskRepository,
        broadcaster: EventBroadcaster,
        retention_hours: int = 24,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.store = store
        self.broadcaster = broadcaster
        self.retention_hours = retention_hours
        self._clock = clock

    def archive_expired(self, now: datetime | None = None) -> ArchiveReport:
        now = now or self._clock()
        report = ArchiveReport(cutoff=now - timedelta(hours=self.retention_hours))
        for task in self.store.find_expired(cutoff=report.cutoff):
            if not self.store.archive(task.task_id, now=now):
                report.skipped.append(task.task_id)
                continue
            report.archived.append(task.task_id)
            archived = self.store.find_by_id(task.task_id) or task
            self.broadcaster.publish(TaskEvent.for_task(EventType.TASK_ARCHIVED, archived))
        if report.archived:
            logger.info(
                "Archived %s tasks settled before %s",
                len(report.archived),
                report.cutoff.isoformat(),
            )
        return report

    def purge_archived(self) -> int:
        purged = self.store.purge_archived()
        if purged:
            logger.info("Purged %s archived tasks", purged)
        return purged
