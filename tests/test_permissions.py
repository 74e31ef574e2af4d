"""
Tests for relevo.permissions -- Permission Guard.

Covers: section writer table, assigned-physician-only clinical sections,
open situation awareness, receiving-physician-only synthesis, identity by
id rather than display name, action item deletion scope (shift tag and
completion), contingency plan deletion with and without the shift
restriction, and the enforcement helpers.
"""

from __future__ import annotations

import pytest

from relevo.errors import HandoverError, PermissionDeniedError
from relevo.models import ActionItem, Clinician, ContingencyPlan, Patient, SectionKind, WriterRole
from relevo.permissions import (
    can_confirm_synthesis,
    can_delete_action_item,
    can_delete_contingency_plan,
    can_edit_clinical_section,
    can_edit_situation_awareness,
    can_write_section,
    require,
    require_section_writer,
    writer_role_for,
)

SHIFT = "Day→Evening"

DAY = Clinician(clinician_id="dr-day", name="Dr. Kim", role="Day Attending")
EVENING = Clinician(clinician_id="dr-evening", name="Dr. Kim", role="Evening Attending")
NURSE = Clinician(clinician_id="rn-1", name="Alex", role="Nurse")


def _make_patient(assigned: Clinician = DAY, receiving: Clinician = EVENING) -> Patient:
    return Patient(
        patient_id="p-01",
        name="Test Patient",
        room="12A",
        assigned_physician=assigned,
        receiving_physician=receiving,
    )


def _make_item(shift_tag: str = SHIFT, completed: bool = False) -> ActionItem:
    return ActionItem(
        task="Recheck potassium",
        submitted_by=DAY.clinician_id,
        shift_tag=shift_tag,
        completed=completed,
    )


def _make_plan(shift_tag: str = SHIFT) -> ContingencyPlan:
    return ContingencyPlan(
        condition="If MAP < 65",
        action="Give fluid bolus and call ICU",
        submitted_by=DAY.clinician_id,
        shift_tag=shift_tag,
    )


# ---------------------------------------------------------------------------
# 1. Section writer table
# ---------------------------------------------------------------------------

class TestWriterTable:
    def test_clinical_sections_bound_to_assigned_physician(self):
        assert writer_role_for(SectionKind.ILLNESS_SEVERITY) is WriterRole.ASSIGNED_PHYSICIAN
        assert writer_role_for(SectionKind.PATIENT_SUMMARY) is WriterRole.ASSIGNED_PHYSICIAN

    def test_collaborative_sections_open_to_any_participant(self):
        assert writer_role_for(SectionKind.ACTION_LIST) is WriterRole.ANY_PARTICIPANT
        assert writer_role_for(SectionKind.SITUATION_AWARENESS) is WriterRole.ANY_PARTICIPANT

    def test_synthesis_bound_to_receiving_physician(self):
        assert writer_role_for(SectionKind.SYNTHESIS) is WriterRole.RECEIVING_PHYSICIAN


# ---------------------------------------------------------------------------
# 2. Section predicates
# ---------------------------------------------------------------------------

class TestSectionPredicates:
    def test_assigned_physician_edits_clinical_section(self):
        assert can_edit_clinical_section(DAY, DAY)

    def test_receiving_physician_cannot_edit_clinical_section(self):
        assert not can_edit_clinical_section(EVENING, DAY)

    def test_identity_is_by_id_not_display_name(self):
        """Both physicians are called 'Dr. Kim'; only the id counts."""
        assert DAY.name == EVENING.name
        assert not can_edit_clinical_section(EVENING, DAY)
        twin = Clinician(clinician_id="dr-day", name="Someone Else")
        assert can_edit_clinical_section(twin, DAY)

    def test_any_participant_edits_situation_awareness(self):
        for actor in (DAY, EVENING, NURSE):
            assert can_edit_situation_awareness(actor)

    def test_only_receiving_physician_confirms_synthesis(self):
        assert can_confirm_synthesis(EVENING, EVENING)
        assert not can_confirm_synthesis(DAY, EVENING)
        assert not can_confirm_synthesis(NURSE, EVENING)

    def test_can_write_section_dispatches_on_role(self):
        patient = _make_patient()
        assert can_write_section(DAY, SectionKind.PATIENT_SUMMARY, patient)
        assert not can_write_section(NURSE, SectionKind.ILLNESS_SEVERITY, patient)
        assert can_write_section(NURSE, SectionKind.SITUATION_AWARENESS, patient)
        assert can_write_section(NURSE, SectionKind.ACTION_LIST, patient)
        assert can_write_section(EVENING, SectionKind.SYNTHESIS, patient)
        assert not can_write_section(DAY, SectionKind.SYNTHESIS, patient)

    def test_reassignment_takes_effect_immediately(self):
        """Predicates read the current patient record; nothing is cached."""
        before = _make_patient(assigned=DAY)
        after = _make_patient(assigned=NURSE)
        assert can_write_section(DAY, SectionKind.PATIENT_SUMMARY, before)
        assert not can_write_section(DAY, SectionKind.PATIENT_SUMMARY, after)
        assert can_write_section(NURSE, SectionKind.PATIENT_SUMMARY, after)


# ---------------------------------------------------------------------------
# 3. Deletion scope
# ---------------------------------------------------------------------------

class TestActionItemDeletion:
    def test_assigned_physician_deletes_current_shift_item(self):
        assert can_delete_action_item(DAY, _make_item(), DAY, SHIFT)

    def test_other_clinician_cannot_delete(self):
        assert not can_delete_action_item(EVENING, _make_item(), DAY, SHIFT)

    def test_item_from_earlier_shift_cannot_be_deleted(self):
        item = _make_item(shift_tag="Night→Day")
        assert not can_delete_action_item(DAY, item, DAY, SHIFT)

    def test_completed_item_cannot_be_deleted(self):
        assert not can_delete_action_item(DAY, _make_item(completed=True), DAY, SHIFT)


class TestContingencyPlanDeletion:
    def test_assigned_physician_deletes_any_plan_by_default(self):
        plan = _make_plan(shift_tag="Night→Day")
        assert can_delete_contingency_plan(DAY, plan, DAY, SHIFT)

    def test_shift_restriction_applies_when_required(self):
        old_plan = _make_plan(shift_tag="Night→Day")
        assert not can_delete_contingency_plan(
            DAY, old_plan, DAY, SHIFT, require_current_shift=True
        )
        assert can_delete_contingency_plan(
            DAY, _make_plan(), DAY, SHIFT, require_current_shift=True
        )

    def test_non_assigned_clinician_cannot_delete(self):
        assert not can_delete_contingency_plan(NURSE, _make_plan(), DAY, SHIFT)


# ---------------------------------------------------------------------------
# 4. Enforcement helpers
# ---------------------------------------------------------------------------

class TestEnforcement:
    def test_require_passes_when_allowed(self):
        require(True, DAY, "edit_patient_summary")

    def test_require_raises_typed_error(self):
        with pytest.raises(PermissionDeniedError, match="not permitted") as exc_info:
            require(False, NURSE, "delete_action_item", target="item-1")
        assert isinstance(exc_info.value, HandoverError)
        assert exc_info.value.code == "PERMISSION_DENIED"
        assert "rn-1" in str(exc_info.value)
        assert "item-1" in str(exc_info.value)

    def test_require_section_writer(self):
        patient = _make_patient()
        require_section_writer(EVENING, SectionKind.SYNTHESIS, patient)
        with pytest.raises(PermissionDeniedError, match="edit_synthesis"):
            require_section_writer(DAY, SectionKind.SYNTHESIS, patient)
