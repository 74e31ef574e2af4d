"""
Tests for relevo.registries -- Action and Contingency Registries.

Covers: validation of empty text, ordering by submission time with a
sequence tiebreaker, completed items sorting last, toggling by any
participant, shift-scoped deletion, carried-over items, contingency plan
ordering by status, and the policy switch restricting plan deletion.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from relevo.errors import PermissionDeniedError, ValidationError
from relevo.models import Clinician, ContingencyStatus, Priority
from relevo.registries import ActionRegistry, ContingencyRegistry, _Registry

SHIFT = "Day→Evening"
PREVIOUS_SHIFT = "Night→Day"

DAY = Clinician(clinician_id="dr-day", name="Dr. Day")
EVENING = Clinician(clinician_id="dr-evening", name="Dr. Evening")
NURSE = Clinician(clinician_id="rn-1", name="Alex")

T0 = datetime(2026, 3, 1, 15, 0, tzinfo=timezone.utc)


class _Clock:
    """Manually advanced clock."""

    def __init__(self, start: datetime = T0) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


# ---------------------------------------------------------------------------
# 1. Action registry: add and order
# ---------------------------------------------------------------------------

class TestActionRegistryAdd:
    def test_base_registry_requires_sort_key(self):
        with pytest.raises(TypeError):
            _Registry()

    def test_add_assigns_identity_and_metadata(self):
        clock = _Clock()
        registry = ActionRegistry(clock=clock)
        item = registry.add("  Recheck potassium ", DAY, SHIFT, priority=Priority.HIGH, due_time="18:00")
        assert item.task == "Recheck potassium"
        assert item.submitted_by == "dr-day"
        assert item.submitted_by_name == "Dr. Day"
        assert item.submitted_at == T0
        assert item.shift_tag == SHIFT
        assert item.priority is Priority.HIGH
        assert item.due_time == "18:00"
        assert not item.completed
        assert item.item_id in registry

    @pytest.mark.parametrize("task", ["", "   ", None])
    def test_empty_task_rejected(self, task):
        registry = ActionRegistry()
        with pytest.raises(ValidationError):
            registry.add(task, DAY, SHIFT)
        assert len(registry) == 0

    def test_same_timestamp_ordered_by_sequence(self):
        """A frozen clock still gives a deterministic insertion order."""
        registry = ActionRegistry(clock=_Clock())
        first = registry.add("first", DAY, SHIFT)
        second = registry.add("second", NURSE, SHIFT)
        third = registry.add("third", EVENING, SHIFT)
        assert [i.item_id for i in registry.items()] == [
            first.item_id, second.item_id, third.item_id,
        ]

    def test_completed_items_sort_last(self):
        clock = _Clock()
        registry = ActionRegistry(clock=clock)
        first = registry.add("first", DAY, SHIFT)
        clock.advance(60)
        second = registry.add("second", DAY, SHIFT)
        registry.toggle_complete(first.item_id, NURSE)
        assert [i.item_id for i in registry.items()] == [second.item_id, first.item_id]
        assert [i.item_id for i in registry.pending()] == [second.item_id]
        assert [i.item_id for i in registry.completed()] == [first.item_id]

    def test_returned_items_are_copies(self):
        registry = ActionRegistry()
        item = registry.add("task", DAY, SHIFT)
        item.task = "mutated"
        assert registry.get(item.item_id).task == "task"


# ---------------------------------------------------------------------------
# 2. Action registry: toggle and delete
# ---------------------------------------------------------------------------

class TestActionRegistryMutations:
    def test_any_participant_toggles(self):
        clock = _Clock()
        registry = ActionRegistry(clock=clock)
        item = registry.add("task", DAY, SHIFT)
        clock.advance(30)
        done = registry.toggle_complete(item.item_id, NURSE)
        assert done.completed
        assert done.completed_by == "rn-1"
        assert done.completed_at == T0 + timedelta(seconds=30)

        reopened = registry.toggle_complete(item.item_id, EVENING)
        assert not reopened.completed
        assert reopened.completed_by is None
        assert reopened.completed_at is None

    def test_toggle_unknown_item_rejected(self):
        with pytest.raises(ValidationError, match="Unknown action item"):
            ActionRegistry().toggle_complete("missing", DAY)

    def test_assigned_physician_deletes_current_shift_item(self):
        registry = ActionRegistry()
        item = registry.add("task", NURSE, SHIFT)
        registry.delete(item.item_id, DAY, DAY, SHIFT)
        assert item.item_id not in registry

    def test_non_assigned_delete_rejected_and_item_kept(self):
        registry = ActionRegistry()
        item = registry.add("task", DAY, SHIFT)
        with pytest.raises(PermissionDeniedError):
            registry.delete(item.item_id, EVENING, DAY, SHIFT)
        assert item.item_id in registry

    def test_carried_over_item_cannot_be_deleted_but_can_be_completed(self):
        registry = ActionRegistry()
        old = registry.add("from last night", DAY, PREVIOUS_SHIFT)
        with pytest.raises(PermissionDeniedError):
            registry.delete(old.item_id, DAY, DAY, SHIFT)
        assert registry.toggle_complete(old.item_id, EVENING).completed

    def test_completed_item_cannot_be_deleted(self):
        registry = ActionRegistry()
        item = registry.add("task", DAY, SHIFT)
        registry.toggle_complete(item.item_id, DAY)
        with pytest.raises(PermissionDeniedError):
            registry.delete(item.item_id, DAY, DAY, SHIFT)

    def test_delete_unknown_item_rejected(self):
        with pytest.raises(ValidationError):
            ActionRegistry().delete("missing", DAY, DAY, SHIFT)


# ---------------------------------------------------------------------------
# 3. Restore (carry-over)
# ---------------------------------------------------------------------------

class TestRestore:
    def test_restore_preserves_origin(self):
        source = ActionRegistry(clock=_Clock())
        item = source.add("carry me", DAY, PREVIOUS_SHIFT)

        target = ActionRegistry()
        restored = target.restore(item)
        assert restored.item_id == item.item_id
        assert restored.shift_tag == PREVIOUS_SHIFT
        assert restored.submitted_by == "dr-day"
        assert restored.submitted_at == T0

    def test_restore_duplicate_rejected(self):
        registry = ActionRegistry()
        item = registry.add("task", DAY, SHIFT)
        with pytest.raises(ValidationError, match="already present"):
            registry.restore(item)


# ---------------------------------------------------------------------------
# 4. Contingency registry
# ---------------------------------------------------------------------------

class TestContingencyRegistry:
    def test_add_plan(self):
        registry = ContingencyRegistry(clock=_Clock())
        plan = registry.add("If SpO2 < 90%", "Start high-flow O2", NURSE, SHIFT)
        assert plan.status is ContingencyStatus.ACTIVE
        assert plan.submitted_by == "rn-1"
        assert len(registry) == 1

    @pytest.mark.parametrize("condition,action", [("", "act"), ("cond", "  ")])
    def test_empty_fields_rejected(self, condition, action):
        with pytest.raises(ValidationError):
            ContingencyRegistry().add(condition, action, DAY, SHIFT)

    def test_active_plans_before_planned(self):
        clock = _Clock()
        registry = ContingencyRegistry(clock=clock)
        planned = registry.add("If febrile", "Blood cultures", DAY, SHIFT,
                               status=ContingencyStatus.PLANNED)
        clock.advance(60)
        active = registry.add("If hypotensive", "Bolus", DAY, SHIFT)
        assert [p.plan_id for p in registry.plans()] == [active.plan_id, planned.plan_id]
        assert [p.plan_id for p in registry.active()] == [active.plan_id]

    def test_assigned_physician_deletes_old_plan_by_default(self):
        registry = ContingencyRegistry()
        plan = registry.add("cond", "act", DAY, PREVIOUS_SHIFT)
        registry.delete(plan.plan_id, DAY, DAY, SHIFT)
        assert len(registry) == 0

    def test_shift_restricted_policy_protects_old_plans(self):
        registry = ContingencyRegistry(require_current_shift=True)
        old = registry.add("cond", "act", DAY, PREVIOUS_SHIFT)
        with pytest.raises(PermissionDeniedError):
            registry.delete(old.plan_id, DAY, DAY, SHIFT)
        current = registry.add("cond", "act", DAY, SHIFT)
        registry.delete(current.plan_id, DAY, DAY, SHIFT)
        assert [p.plan_id for p in registry.plans()] == [old.plan_id]

    def test_non_assigned_cannot_delete_plan(self):
        registry = ContingencyRegistry()
        plan = registry.add("cond", "act", NURSE, SHIFT)
        with pytest.raises(PermissionDeniedError):
            registry.delete(plan.plan_id, NURSE, DAY, SHIFT)
