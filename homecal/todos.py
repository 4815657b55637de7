"""
Recurring todo lifecycle.

A recurring group has at most one live (uncompleted) instance. Completing or
deleting it spawns the next instance in the same transaction, or ends the
series when the rule has no further occurrences.
"""

import logging
import uuid
from datetime import datetime
from typing import Callable, Optional

from .errors import NotFoundError, ValidationError
from .event_storage import EventStorageBackend
from .models import Todo
from .recurrence import next_due_date, parse_rule
from .timezone_utils import utc_now

logger = logging.getLogger(__name__)


class TodoService:

    def __init__(self, storage: EventStorageBackend, now: Callable[[], datetime] = utc_now):
        self.storage = storage
        self._now = now

    def create_todo(
        self,
        title: str,
        rrule: Optional[str] = None,
        due_date: Optional[datetime] = None,
        reference: Optional[datetime] = None,
        description: str = "",
    ) -> Todo:
        """
        Create a todo. With a rule and no due date, the first occurrence on or
        after ``reference`` becomes the due date.
        """
        if not title or not title.strip():
            raise ValidationError("Todo title must not be empty")

        group_id = None
        if rrule:
            if parse_rule(rrule) is None:
                raise ValidationError("Invalid rrule: freq is required")
            group_id = str(uuid.uuid4())
            if due_date is None:
                if reference is None:
                    reference = self._now()
                due_date = next_due_date(rrule, reference, None, reference)
                if due_date is None:
                    raise ValidationError(f"Rule has no occurrences: {rrule}")

        todo = Todo(
            title=title.strip(),
            description=description,
            due_date=due_date,
            rrule=rrule or None,
            recurring_group_id=group_id,
        )
        self.storage.insert_todo(todo)
        logger.info("Created todo %d '%s'%s", todo.id, todo.title,
                    f" ({rrule})" if rrule else "")
        return todo

    def complete_todo(self, todo_id: int, reference: Optional[datetime] = None) -> Optional[Todo]:
        """
        Mark a todo completed.

        Returns:
            The newly spawned instance, or None when nothing was spawned.
        """
        with self.storage.transaction():
            todo = self._require(todo_id)
            if todo.completed:
                return None
            todo.completed = True
            self.storage.update_todo(todo)
            return self._advance(todo, reference)

    def delete_todo(self, todo_id: int, stop_recurrence: bool = False,
                    reference: Optional[datetime] = None) -> Optional[Todo]:
        """Delete a todo, spawning the next instance unless ``stop_recurrence``."""
        with self.storage.transaction():
            todo = self._require(todo_id)
            anchor = self._anchor(todo)
            self.storage.delete_todo(todo_id)
            if stop_recurrence or todo.completed:
                return None
            return self._advance(todo, reference, anchor)

    def live_instances(self, group_id: str) -> list[Todo]:
        return self.storage.list_todos(group_id=group_id, completed=False)

    def _require(self, todo_id: int) -> Todo:
        todo = self.storage.get_todo(todo_id)
        if todo is None:
            raise NotFoundError(f"Unknown todo: {todo_id}")
        return todo

    def _anchor(self, todo: Todo) -> Optional[datetime]:
        """Due date of the earliest instance in the group."""
        if not todo.is_recurring:
            return todo.due_date
        dates = [t.due_date for t in self.storage.list_todos(group_id=todo.recurring_group_id)
                 if t.due_date is not None]
        return min(dates) if dates else todo.due_date

    def _advance(self, todo: Todo, reference: Optional[datetime],
                 anchor: Optional[datetime] = None) -> Optional[Todo]:
        if not todo.is_recurring:
            return None
        if self.live_instances(todo.recurring_group_id):
            logger.warning("Group %s already has a live instance", todo.recurring_group_id)
            return None

        if reference is None:
            reference = self._now()
        if anchor is None:
            anchor = self._anchor(todo)
        if anchor is None:
            anchor = reference

        due = next_due_date(todo.rrule, anchor, todo.due_date, reference)
        if due is None:
            logger.info("Series %s of '%s' has ended", todo.recurring_group_id, todo.title)
            return None

        successor = Todo(
            title=todo.title,
            description=todo.description,
            due_date=due,
            rrule=todo.rrule,
            recurring_group_id=todo.recurring_group_id,
        )
        self.storage.insert_todo(successor)
        logger.debug("Spawned todo %d due %s", successor.id, due.date().isoformat())
        return successor
