"""
Action and contingency registries.

Both registries are ordered collections shared by everyone working on a
patient's handover.  Entries get their id, timestamp and sequence number
from the registry, never from the caller, and are listed deterministically:

* action items -- open items first, then completed ones; each group by
  submission time ascending.
* contingency plans -- active plans first, then planned ones; each group
  by submission time ascending.

Priority is not used for ordering.

Deletion is restricted to the assigned physician (see
``relevo.permissions``); completion of an action item is open to anyone on
the team.
"""

from __future__ import annotations

import abc
import logging
import uuid
from datetime import datetime
from typing import Callable, Iterator, Optional

from relevo.errors import ValidationError
from relevo.models import (
    ActionItem,
    Clinician,
    ContingencyPlan,
    ContingencyStatus,
    Priority,
    utcnow,
)
from relevo.permissions import (
    can_delete_action_item,
    can_delete_contingency_plan,
    require,
)

logger = logging.getLogger(__name__)


def _require_text(value: Optional[str], field: str) -> str:
    if value is None or not value.strip():
        raise ValidationError(f"{field} must not be empty.")
    return value.strip()


class _Registry(abc.ABC):
    """Storage, id/sequence assignment and lookup shared by both registries."""

    _kind = "entry"

    def __init__(self, clock: Callable[[], datetime] = utcnow) -> None:
        self._clock = clock
        self._entries: dict[str, object] = {}
        self._next_sequence = 1

    def _assign(self) -> tuple[str, datetime, int]:
        sequence = self._next_sequence
        self._next_sequence += 1
        return str(uuid.uuid4()), self._clock(), sequence

    def _lookup(self, entry_id: str):
        try:
            return self._entries[entry_id]
        except KeyError:
            raise ValidationError(f"Unknown {self._kind} '{entry_id}'.") from None

    @abc.abstractmethod
    def _sort_key(self, entry) -> tuple:
        """Ordering key for listing entries."""

    def _ordered(self) -> list:
        return sorted(self._entries.values(), key=self._sort_key)

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, entry_id: str) -> bool:
        return entry_id in self._entries

    def __iter__(self) -> Iterator:
        return iter([entry.model_copy() for entry in self._ordered()])


# ---------------------------------------------------------------------------
# Action registry
# ---------------------------------------------------------------------------

class ActionRegistry(_Registry):
    """Cross-shift action items for one patient."""

    _kind = "action item"

    def add(
        self,
        task: str,
        submitted_by: Clinician,
        shift_tag: str,
        priority: Priority = Priority.MEDIUM,
        due_time: Optional[str] = None,
    ) -> ActionItem:
        """Append a new open item.

        Raises:
            ValidationError: If ``task`` is empty or whitespace.
        """
        task = _require_text(task, "Task")
        shift_tag = _require_text(shift_tag, "Shift tag")
        item_id, now, sequence = self._assign()
        item = ActionItem(
            item_id=item_id,
            task=task,
            priority=Priority(priority),
            due_time=(due_time or "").strip() or None,
            submitted_by=submitted_by.clinician_id,
            submitted_by_name=submitted_by.name,
            submitted_at=now,
            shift_tag=shift_tag,
            sequence=sequence,
        )
        self._entries[item.item_id] = item
        logger.info("Action item %s added by %s (%s)", item.item_id, submitted_by.clinician_id, shift_tag)
        return item.model_copy()

    def restore(self, item: ActionItem) -> ActionItem:
        """Insert an existing item unchanged except for a fresh sequence number.

        Used when carrying open items over from a previous shift; the
        original id, submitter, timestamp and shift tag are preserved.
        """
        if item.item_id in self._entries:
            raise ValidationError(f"Action item '{item.item_id}' already present.")
        restored = item.model_copy(update={"sequence": self._next_sequence})
        self._next_sequence += 1
        self._entries[restored.item_id] = restored
        return restored.model_copy()

    def get(self, item_id: str) -> ActionItem:
        return self._lookup(item_id).model_copy()

    def toggle_complete(self, item_id: str, actor: Clinician) -> ActionItem:
        """Flip ``completed``.  Any participant may do this."""
        item: ActionItem = self._lookup(item_id)
        completed = not item.completed
        updated = item.model_copy(update={
            "completed": completed,
            "completed_by": actor.clinician_id if completed else None,
            "completed_at": self._clock() if completed else None,
        })
        self._entries[item_id] = updated
        logger.info(
            "Action item %s marked %s by %s",
            item_id, "complete" if completed else "open", actor.clinician_id,
        )
        return updated.model_copy()

    def delete(
        self,
        item_id: str,
        actor: Clinician,
        assigned_physician: Clinician,
        current_shift_tag: str,
    ) -> ActionItem:
        """Remove an item.

        Raises:
            ValidationError: If the item does not exist.
            PermissionDeniedError: Unless the assigned physician deletes an
                open item created in the current shift transition.
        """
        item: ActionItem = self._lookup(item_id)
        require(
            can_delete_action_item(actor, item, assigned_physician, current_shift_tag),
            actor,
            "delete_action_item",
            target=item_id,
        )
        del self._entries[item_id]
        logger.info("Action item %s deleted by %s", item_id, actor.clinician_id)
        return item.model_copy()

    def items(self) -> list[ActionItem]:
        return [item.model_copy() for item in self._ordered()]

    def pending(self) -> list[ActionItem]:
        return [item for item in self.items() if not item.completed]

    def completed(self) -> list[ActionItem]:
        return [item for item in self.items() if item.completed]

    def _sort_key(self, item: ActionItem) -> tuple:
        return (item.completed, item.submitted_at, item.sequence)


# ---------------------------------------------------------------------------
# Contingency registry
# ---------------------------------------------------------------------------

_STATUS_ORDER = {ContingencyStatus.ACTIVE: 0, ContingencyStatus.PLANNED: 1}


class ContingencyRegistry(_Registry):
    """If/then contingency plans for one patient."""

    _kind = "contingency plan"

    def __init__(
        self,
        clock: Callable[[], datetime] = utcnow,
        require_current_shift: bool = False,
    ) -> None:
        super().__init__(clock)
        self._require_current_shift = require_current_shift

    def add(
        self,
        condition: str,
        action: str,
        submitted_by: Clinician,
        shift_tag: str,
        priority: Priority = Priority.MEDIUM,
        status: ContingencyStatus = ContingencyStatus.ACTIVE,
    ) -> ContingencyPlan:
        """Append a new plan.

        Raises:
            ValidationError: If ``condition`` or ``action`` is empty.
        """
        condition = _require_text(condition, "Condition")
        action = _require_text(action, "Action")
        shift_tag = _require_text(shift_tag, "Shift tag")
        plan_id, now, sequence = self._assign()
        plan = ContingencyPlan(
            plan_id=plan_id,
            condition=condition,
            action=action,
            priority=Priority(priority),
            status=ContingencyStatus(status),
            submitted_by=submitted_by.clinician_id,
            submitted_by_name=submitted_by.name,
            submitted_at=now,
            shift_tag=shift_tag,
            sequence=sequence,
        )
        self._entries[plan.plan_id] = plan
        logger.info("Contingency plan %s added by %s", plan.plan_id, submitted_by.clinician_id)
        return plan.model_copy()

    def restore(self, plan: ContingencyPlan) -> ContingencyPlan:
        if plan.plan_id in self._entries:
            raise ValidationError(f"Contingency plan '{plan.plan_id}' already present.")
        restored = plan.model_copy(update={"sequence": self._next_sequence})
        self._next_sequence += 1
        self._entries[restored.plan_id] = restored
        return restored.model_copy()

    def get(self, plan_id: str) -> ContingencyPlan:
        return self._lookup(plan_id).model_copy()

    def delete(
        self,
        plan_id: str,
        actor: Clinician,
        assigned_physician: Clinician,
        current_shift_tag: str,
    ) -> ContingencyPlan:
        """Remove a plan.

        Raises:
            ValidationError: If the plan does not exist.
            PermissionDeniedError: Unless the assigned physician deletes it
                (and, under a shift-restricted policy, it belongs to the
                current shift transition).
        """
        plan: ContingencyPlan = self._lookup(plan_id)
        require(
            can_delete_contingency_plan(
                actor,
                plan,
                assigned_physician,
                current_shift_tag,
                require_current_shift=self._require_current_shift,
            ),
            actor,
            "delete_contingency_plan",
            target=plan_id,
        )
        del self._entries[plan_id]
        logger.info("Contingency plan %s deleted by %s", plan_id, actor.clinician_id)
        return plan.model_copy()

    def plans(self) -> list[ContingencyPlan]:
        return [plan.model_copy() for plan in self._ordered()]

    def active(self) -> list[ContingencyPlan]:
        return [p for p in self.plans() if p.status is ContingencyStatus.ACTIVE]

    def _sort_key(self, plan: ContingencyPlan) -> tuple:
        return (_STATUS_ORDER[plan.status], plan.submitted_at, plan.sequence)
