from __future__ import annotations

import asyncio
import math
from datetime import datetime
from typing import Callable, Iterable, List, Optional, Set

from .config import (
    REMINDER_LEAD_MINUTES,
    REMINDER_MIN_CHECK_INTERVAL_SECONDS,
    REMINDER_OVERDUE_GRACE_MINUTES,
    REMINDER_POLL_SECONDS,
)
from .exceptions import CompanionError
from .logger import setup_logger
from .models import Task
from .notifier import VoiceNotifier


def _local_now() -> datetime:
    return datetime.now().astimezone()


def _aware(value: datetime) -> datetime:
    return value if value.tzinfo is not None else value.astimezone()


def _at_location(task: Task) -> str:
    return f" at {task.location}" if task.location else ""


def minutes_until_due(task: Task, now: datetime) -> int:
    """Whole minutes until the task is due, rounded down (negative once overdue)."""
    delta = _aware(task.scheduled_time) - _aware(now)
    return math.floor(delta.total_seconds() / 60)


def due_message(task: Task) -> str:
    return f"Reminder: It's time for {task.name}{_at_location(task)}."


def upcoming_message(task: Task, minutes: int) -> str:
    unit = "minutes" if minutes > 1 else "minute"
    return f"Reminder: {task.name} is coming up in {minutes} {unit}{_at_location(task)}."


def manual_message(task: Task) -> str:
    return f"Reminder: {task.name}{_at_location(task)}."


class TaskReminderScheduler:
    """Speaks one reminder per task per continuous pending period.

    The memo holds ids of tasks already reminded. It is pruned on every task
    list update, so a task that leaves the pending state (or the list) can be
    reminded again if it ever comes back.

    With a ``task_source`` the poller reloads the list before every check, so
    edits made by other processes sharing the store are picked up.
    """

    def __init__(
        self,
        notifier: VoiceNotifier,
        lead_minutes: int = REMINDER_LEAD_MINUTES,
        overdue_grace_minutes: int = REMINDER_OVERDUE_GRACE_MINUTES,
        poll_seconds: float = REMINDER_POLL_SECONDS,
        min_check_interval: float = REMINDER_MIN_CHECK_INTERVAL_SECONDS,
        clock: Callable[[], datetime] = _local_now,
        task_source: Optional[Callable[[], List[Task]]] = None,
    ):
        self.notifier = notifier
        self.lead_minutes = lead_minutes
        self.overdue_grace_minutes = overdue_grace_minutes
        self.poll_seconds = poll_seconds
        self.min_check_interval = min_check_interval
        self.clock = clock
        self.task_source = task_source
        self.logger = setup_logger(self.__class__.__name__)

        self.tasks: List[Task] = []
        self.enabled = True
        self.reminded: Set[str] = set()
        self.last_check: Optional[datetime] = None
        self._poller: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._poller is not None and not self._poller.done()

    def start(
        self,
        tasks: Iterable[Task],
        enabled: bool = True,
        lead_minutes: Optional[int] = None,
    ) -> None:
        if lead_minutes is not None:
            self.lead_minutes = lead_minutes
        self.enabled = enabled
        self.update_tasks(tasks)
        if not enabled:
            self.stop()
            return
        if not self.running:
            self._poller = asyncio.get_running_loop().create_task(self._poll())
            self.logger.info(
                "Reminders started for %d tasks (lead %d min, poll %.0fs)",
                len(self.tasks),
                self.lead_minutes,
                self.poll_seconds,
            )

    def stop(self) -> None:
        if self._poller is not None:
            self._poller.cancel()
            self._poller = None
            self.logger.info("Reminders stopped")

    def update_tasks(self, tasks: Iterable[Task]) -> None:
        self.tasks = list(tasks or [])
        pending_ids = {task.id for task in self.tasks if task.is_pending}
        released = self.reminded - pending_ids
        if released:
            self.reminded -= released
            self.logger.debug("Released %d reminder(s) for tasks no longer pending", len(released))

    def check(self, now: Optional[datetime] = None) -> List[str]:
        """Evaluate the task list once; returns the reminder texts that were spoken."""
        now = now or self.clock()
        if not self.enabled or not self.notifier.enabled or not self.tasks:
            return []
        if self.last_check is not None:
            elapsed = (now - self.last_check).total_seconds()
            if 0 <= elapsed < self.min_check_interval:
                return []
        self.last_check = now

        spoken: List[str] = []
        for task in self.tasks:
            if not task.is_pending or task.id in self.reminded:
                continue
            minutes = minutes_until_due(task, now)
            if -self.overdue_grace_minutes <= minutes <= 0:
                message = due_message(task)
            elif 0 < minutes <= self.lead_minutes:
                message = upcoming_message(task, minutes)
            else:
                continue
            self.logger.info("Reminding task %s (%d min until due)", task.id, minutes)
            self.notifier.speak(message)
            self.reminded.add(task.id)
            spoken.append(message)

        present = {task.id for task in self.tasks}
        self.reminded &= present
        return spoken

    def remind_now(self, task: Task) -> bool:
        return self.notifier.speak(manual_message(task))

    def reset_reminders(self) -> None:
        self.reminded.clear()
        self.logger.info("Reminder memo cleared")

    async def refresh(self) -> None:
        if self.task_source is None:
            return
        try:
            tasks = await asyncio.to_thread(self.task_source)
        except CompanionError as exc:
            self.logger.warning("Could not reload tasks, keeping previous list: %s", exc)
            return
        self.update_tasks(tasks)

    async def _poll(self) -> None:
        while True:
            await self.refresh()
            self.check()
            await asyncio.sleep(self.poll_seconds)
