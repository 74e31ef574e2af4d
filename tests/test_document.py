"""
Tests for relevo.document -- I-PASS Document.

Covers: severity seeding and aliases, section writer enforcement,
last-writer-wins arbitration, arrival-order policy, derived DRAFT /
UNDER_REVIEW state, confirmation and locking, section serialization,
carry-over from the previous shift, and audit entries for edits.
"""

from __future__ import annotations

import json
from datetime import datetime, timedelta, timezone

import pytest

from relevo.audit import AuditEventType, AuditLog
from relevo.config import DEFAULT_CONFIRMATION_ITEMS, ConflictPolicy, HandoverPolicy
from relevo.document import IPassDocument
from relevo.errors import (
    AlreadyFinalizedError,
    PermissionDeniedError,
    StaleEditError,
    ValidationError,
)
from relevo.models import (
    Clinician,
    ContingencyStatus,
    DocumentState,
    IllnessSeverity,
    Patient,
    SectionKind,
)

SHIFT = "Day→Evening"
NEXT_SHIFT = "Evening→Night"

DAY = Clinician(clinician_id="dr-day", name="Dr. Day", role="Day Attending")
EVENING = Clinician(clinician_id="dr-evening", name="Dr. Evening", role="Evening Attending")
NURSE = Clinician(clinician_id="rn-1", name="Alex", role="Nurse")

T0 = datetime(2026, 3, 1, 18, 0, tzinfo=timezone.utc)
REQUIRED_IDS = [t.item_id for t in DEFAULT_CONFIRMATION_ITEMS if t.required]


def _make_patient(severity: IllnessSeverity = IllnessSeverity.WATCHER) -> Patient:
    return Patient(
        patient_id="p-01",
        name="Test Patient",
        room="12A",
        illness_severity=severity,
        assigned_physician=DAY,
        receiving_physician=EVENING,
    )


def _make_document(policy: HandoverPolicy | None = None, audit_log: AuditLog | None = None):
    kwargs = {"audit_log": audit_log, "clock": lambda: T0}
    if policy is not None:
        kwargs["policy"] = policy
    return IPassDocument(_make_patient(), SHIFT, **kwargs)


def _fill_all_sections(doc: IPassDocument) -> None:
    doc.update_patient_summary(DAY, "Day 3 of pneumonia, on ceftriaxone.")
    doc.add_action_item(DAY, "Follow up blood cultures")
    doc.update_situation_awareness(NURSE, "Weaning oxygen.")
    doc.update_synthesis(EVENING, "Understood; will recheck at 22:00.")


# ---------------------------------------------------------------------------
# 1. Construction and severity
# ---------------------------------------------------------------------------

class TestConstruction:
    def test_severity_seeded_from_patient(self):
        doc = _make_document()
        assert doc.illness_severity is IllnessSeverity.WATCHER
        assert doc.state is DocumentState.DRAFT

    def test_empty_shift_tag_rejected(self):
        with pytest.raises(ValidationError):
            IPassDocument(_make_patient(), "  ")

    def test_guarded_is_alias_of_watcher(self):
        doc = _make_document()
        doc.set_illness_severity(DAY, "guarded")
        assert doc.illness_severity is IllnessSeverity.WATCHER

    def test_unknown_severity_rejected(self):
        with pytest.raises(ValidationError, match="Unknown illness severity"):
            _make_document().set_illness_severity(DAY, "terrible")

    def test_permission_checked_before_severity_value(self):
        with pytest.raises(PermissionDeniedError):
            _make_document().set_illness_severity(EVENING, "terrible")


# ---------------------------------------------------------------------------
# 2. Writer enforcement
# ---------------------------------------------------------------------------

class TestWriterEnforcement:
    def test_receiving_physician_cannot_edit_summary(self):
        doc = _make_document()
        with pytest.raises(PermissionDeniedError):
            doc.update_patient_summary(EVENING, "overwrite")
        assert doc.text(SectionKind.PATIENT_SUMMARY) == ""

    def test_assigned_physician_cannot_write_synthesis(self):
        with pytest.raises(PermissionDeniedError):
            _make_document().update_synthesis(DAY, "notes")

    def test_anyone_edits_situation_awareness(self):
        doc = _make_document()
        section = doc.update_situation_awareness(NURSE, "Watching urine output.")
        assert section.last_edited_by == "rn-1"
        assert section.revision == 1

    def test_only_receiving_physician_checks_confirmations(self):
        with pytest.raises(PermissionDeniedError):
            _make_document().check_confirmation_item(DAY, "illness-severity")


# ---------------------------------------------------------------------------
# 3. Concurrent edits
# ---------------------------------------------------------------------------

class TestConflictPolicy:
    def test_older_edit_by_other_clinician_is_stale(self):
        audit = AuditLog()
        doc = _make_document(audit_log=audit)
        doc.update_situation_awareness(NURSE, "newer", edited_at=T0)
        with pytest.raises(StaleEditError):
            doc.update_situation_awareness(DAY, "older", edited_at=T0 - timedelta(seconds=5))
        assert doc.text(SectionKind.SITUATION_AWARENESS) == "newer"
        assert audit.query(event_type=AuditEventType.EDIT_SUPERSEDED)

    def test_same_clinician_edits_always_apply(self):
        doc = _make_document()
        doc.update_situation_awareness(NURSE, "first", edited_at=T0)
        doc.update_situation_awareness(NURSE, "second", edited_at=T0 - timedelta(seconds=5))
        assert doc.text(SectionKind.SITUATION_AWARENESS) == "second"

    def test_newer_edit_by_other_clinician_wins(self):
        doc = _make_document()
        doc.update_situation_awareness(NURSE, "first", edited_at=T0)
        doc.update_situation_awareness(DAY, "second", edited_at=T0 + timedelta(seconds=1))
        assert doc.text(SectionKind.SITUATION_AWARENESS) == "second"
        assert doc.section(SectionKind.SITUATION_AWARENESS).last_edited_by == "dr-day"

    def test_arrival_order_policy_applies_everything(self):
        policy = HandoverPolicy(
            unit_id="ward", unit_name="Ward", conflict_policy=ConflictPolicy.ARRIVAL_ORDER
        )
        doc = _make_document(policy=policy)
        doc.update_situation_awareness(NURSE, "newer", edited_at=T0)
        doc.update_situation_awareness(DAY, "older", edited_at=T0 - timedelta(seconds=5))
        assert doc.text(SectionKind.SITUATION_AWARENESS) == "older"

    def test_naive_edit_timestamp_rejected(self):
        doc = _make_document()
        doc.update_situation_awareness(NURSE, "aware", edited_at=T0)
        with pytest.raises(ValidationError, match="timezone-aware"):
            doc.update_situation_awareness(DAY, "naive", edited_at=datetime(2026, 3, 1, 17, 0))
        assert doc.text(SectionKind.SITUATION_AWARENESS) == "aware"


# ---------------------------------------------------------------------------
# 4. Document state
# ---------------------------------------------------------------------------

class TestDocumentState:
    def test_under_review_once_every_section_has_content(self):
        doc = _make_document()
        _fill_all_sections(doc)
        assert doc.state is DocumentState.UNDER_REVIEW

    def test_reverts_to_draft_when_content_removed(self):
        doc = _make_document()
        _fill_all_sections(doc)
        doc.update_patient_summary(DAY, "   ")
        assert doc.state is DocumentState.DRAFT

    def test_finalize_confirms_and_locks(self):
        audit = AuditLog()
        doc = _make_document(audit_log=audit)
        for item_id in REQUIRED_IDS:
            doc.check_confirmation_item(EVENING, item_id)
        finalized_at = doc.finalize(EVENING)
        assert finalized_at == T0
        assert doc.state is DocumentState.CONFIRMED
        assert doc.is_confirmed
        assert audit.query(event_type=AuditEventType.HANDOVER_FINALIZED)

        with pytest.raises(AlreadyFinalizedError):
            doc.update_situation_awareness(NURSE, "late note")
        with pytest.raises(AlreadyFinalizedError):
            doc.add_action_item(NURSE, "late task")
        with pytest.raises(AlreadyFinalizedError):
            doc.check_confirmation_item(EVENING, "family")

    def test_state_changes_are_audited(self):
        audit = AuditLog()
        doc = _make_document(audit_log=audit)
        _fill_all_sections(doc)
        changes = audit.query(event_type=AuditEventType.DOCUMENT_STATE_CHANGED)
        assert len(changes) == 1
        assert changes[0].metadata == {"from": "draft", "to": "under_review"}


# ---------------------------------------------------------------------------
# 5. Registries through the document
# ---------------------------------------------------------------------------

class TestDocumentRegistries:
    def test_items_tagged_with_current_shift(self):
        doc = _make_document()
        item = doc.add_action_item(NURSE, "Check lactate")
        plan = doc.add_contingency_plan(NURSE, "If lactate > 4", "Call ICU")
        assert item.shift_tag == SHIFT
        assert plan.shift_tag == SHIFT
        assert doc.is_section_filled(SectionKind.ACTION_LIST)
        assert doc.is_section_filled(SectionKind.SITUATION_AWARENESS)

    def test_only_assigned_physician_deletes(self):
        doc = _make_document()
        item = doc.add_action_item(NURSE, "Check lactate")
        with pytest.raises(PermissionDeniedError):
            doc.delete_action_item(NURSE, item.item_id)
        doc.delete_action_item(DAY, item.item_id)
        assert len(doc.actions) == 0

    def test_toggle_by_any_participant(self):
        doc = _make_document()
        item = doc.add_action_item(DAY, "Check lactate")
        assert doc.toggle_action_item(EVENING, item.item_id).completed


# ---------------------------------------------------------------------------
# 6. Serialization
# ---------------------------------------------------------------------------

class TestSerialization:
    def test_text_sections_serialize_as_plain_text(self):
        doc = _make_document()
        doc.update_patient_summary(DAY, "Summary text")
        assert doc.serialize_section(SectionKind.PATIENT_SUMMARY) == "Summary text"
        assert doc.serialize_section(SectionKind.ILLNESS_SEVERITY) == "watcher"

    def test_situation_awareness_includes_plans(self):
        doc = _make_document()
        doc.update_situation_awareness(NURSE, "Narrative")
        doc.add_contingency_plan(NURSE, "If febrile", "Cultures", status=ContingencyStatus.PLANNED)
        payload = json.loads(doc.serialize_section(SectionKind.SITUATION_AWARENESS))
        assert payload["narrative"] == "Narrative"
        assert payload["contingency_plans"][0]["condition"] == "If febrile"
        assert payload["contingency_plans"][0]["status"] == "planned"

    def test_synthesis_includes_checklist(self):
        doc = _make_document()
        doc.check_confirmation_item(EVENING, "illness-severity")
        payload = json.loads(doc.serialize_section(SectionKind.SYNTHESIS))
        checked = [i["item_id"] for i in payload["checklist"] if i["checked"]]
        assert checked == ["illness-severity"]

    def test_serialization_is_deterministic(self):
        doc = _make_document()
        doc.add_action_item(DAY, "A")
        assert doc.serialize_section(SectionKind.ACTION_LIST) == doc.serialize_section(
            SectionKind.ACTION_LIST
        )


# ---------------------------------------------------------------------------
# 7. Carry-over from the previous shift
# ---------------------------------------------------------------------------

class TestFromPreviousShift:
    def test_open_items_and_plans_carry_over(self):
        previous = _make_document()
        previous.update_patient_summary(DAY, "Carried summary")
        open_item = previous.add_action_item(DAY, "Still open")
        done_item = previous.add_action_item(DAY, "Already done")
        previous.toggle_action_item(DAY, done_item.item_id)
        plan = previous.add_contingency_plan(DAY, "If febrile", "Cultures")
        previous.update_synthesis(EVENING, "Old synthesis")

        current = IPassDocument.from_previous_shift(previous, NEXT_SHIFT, clock=lambda: T0)
        assert current.current_shift_tag == NEXT_SHIFT
        assert current.text(SectionKind.PATIENT_SUMMARY) == "Carried summary"
        assert current.text(SectionKind.SYNTHESIS) == ""
        assert [i.item_id for i in current.actions.items()] == [open_item.item_id]
        assert current.actions.get(open_item.item_id).shift_tag == SHIFT
        assert [p.plan_id for p in current.contingencies.plans()] == [plan.plan_id]
        assert not current.gate.any_checked()

    def test_carried_item_cannot_be_deleted_in_new_shift(self):
        previous = _make_document()
        item = previous.add_action_item(DAY, "Still open")
        current = IPassDocument.from_previous_shift(previous, NEXT_SHIFT)
        with pytest.raises(PermissionDeniedError):
            current.delete_action_item(DAY, item.item_id)
        assert current.toggle_action_item(EVENING, item.item_id).completed
