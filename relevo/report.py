"""
Handover Summary Report.

Builds a structured summary of one patient's I-PASS handover for the
receiving team: severity, the free-text sections, open and completed
action items, contingency plans, confirmation progress and a timeline of
document state changes taken from the audit log.

The report is a read-only snapshot.  It can be generated at any point of
the handover; ``finalized`` tells whether the receiving physician has
accepted responsibility.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Optional

from relevo.audit import AuditEventType, AuditLog
from relevo.document import IPassDocument
from relevo.models import SectionKind


class HandoverReport:
    """A structured handover summary for one patient."""

    def __init__(
        self,
        patient_id: str,
        room: str,
        shift_tag: str,
        state: str,
        illness_severity: Optional[str],
        sections: dict[str, str],
        open_actions: list[dict[str, Any]],
        completed_actions: list[dict[str, Any]],
        contingency_plans: list[dict[str, Any]],
        checklist_progress: tuple[int, int],
        finalized_by: Optional[str],
        finalized_at: Optional[str],
        timeline: list[dict[str, str]],
        generated_at: str,
    ) -> None:
        self.patient_id = patient_id
        self.room = room
        self.shift_tag = shift_tag
        self.state = state
        self.illness_severity = illness_severity
        self.sections = sections
        self.open_actions = open_actions
        self.completed_actions = completed_actions
        self.contingency_plans = contingency_plans
        self.checklist_progress = checklist_progress
        self.finalized_by = finalized_by
        self.finalized_at = finalized_at
        self.timeline = timeline
        self.generated_at = generated_at

    @property
    def finalized(self) -> bool:
        return self.finalized_at is not None

    def to_dict(self) -> dict[str, Any]:
        """Serialize the report to a dictionary."""
        checked, total = self.checklist_progress
        return {
            "report_type": "I-PASS Handover Summary",
            "patient_id": self.patient_id,
            "room": self.room,
            "shift_tag": self.shift_tag,
            "state": self.state,
            "illness_severity": self.illness_severity,
            "sections": self.sections,
            "open_actions": self.open_actions,
            "completed_actions": self.completed_actions,
            "contingency_plans": self.contingency_plans,
            "checklist": {"checked_required": checked, "total_required": total},
            "finalized": self.finalized,
            "finalized_by": self.finalized_by,
            "finalized_at": self.finalized_at,
            "timeline": self.timeline,
            "generated_at": self.generated_at,
        }

    def __repr__(self) -> str:
        return (
            f"HandoverReport(patient_id={self.patient_id}, "
            f"shift={self.shift_tag}, state={self.state})"
        )


def generate_handover_report(
    document: IPassDocument,
    audit_log: Optional[AuditLog] = None,
) -> HandoverReport:
    """Generate a handover summary from a patient's document.

    Args:
        document: The patient's I-PASS document.
        audit_log: Optional audit log; when given, the report carries a
            timeline of state changes and finalization for the patient.

    Returns:
        A ``HandoverReport`` instance.
    """
    gate = document.gate
    severity = document.illness_severity
    return HandoverReport(
        patient_id=document.patient_id,
        room=document.patient.room,
        shift_tag=document.current_shift_tag,
        state=document.state.value,
        illness_severity=severity.value if severity is not None else None,
        sections={
            SectionKind.PATIENT_SUMMARY.value: document.text(SectionKind.PATIENT_SUMMARY),
            SectionKind.SITUATION_AWARENESS.value: document.text(SectionKind.SITUATION_AWARENESS),
            SectionKind.SYNTHESIS.value: document.text(SectionKind.SYNTHESIS),
        },
        open_actions=[_action_row(item) for item in document.actions.pending()],
        completed_actions=[_action_row(item) for item in document.actions.completed()],
        contingency_plans=[
            {
                "condition": plan.condition,
                "action": plan.action,
                "priority": plan.priority.value,
                "status": plan.status.value,
                "submitted_by": plan.submitted_by_name or plan.submitted_by,
                "shift_tag": plan.shift_tag,
            }
            for plan in document.contingencies.plans()
        ],
        checklist_progress=gate.progress(),
        finalized_by=gate.finalized_by,
        finalized_at=gate.finalized_at.isoformat() if gate.finalized_at else None,
        timeline=_build_timeline(document.patient_id, audit_log) if audit_log else [],
        generated_at=datetime.now(timezone.utc).isoformat(),
    )


def _action_row(item) -> dict[str, Any]:
    return {
        "task": item.task,
        "priority": item.priority.value,
        "due_time": item.due_time,
        "submitted_by": item.submitted_by_name or item.submitted_by,
        "shift_tag": item.shift_tag,
        "completed_by": item.completed_by,
    }


def _build_timeline(patient_id: str, audit_log: AuditLog) -> list[dict[str, str]]:
    """Chronological document state changes and finalization."""
    events: list[dict[str, str]] = []
    for entry in audit_log.query(patient_id=patient_id):
        if entry.event_type is AuditEventType.DOCUMENT_STATE_CHANGED:
            description = (
                f"Document moved from {entry.metadata.get('from')} "
                f"to {entry.metadata.get('to')}."
            )
        elif entry.event_type is AuditEventType.HANDOVER_FINALIZED:
            description = f"Handover accepted by {entry.actor_id}."
        elif entry.event_type is AuditEventType.FINALIZE_REJECTED:
            description = f"Finalize rejected: {entry.metadata.get('error')}."
        else:
            continue
        events.append({
            "event": entry.event_type.value,
            "timestamp": entry.timestamp.isoformat(),
            "description": description,
        })
    return events
