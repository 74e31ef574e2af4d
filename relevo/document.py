"""
The five-section I-PASS document for one patient.

**State machine:**

    DRAFT <-> UNDER_REVIEW -> CONFIRMED

``UNDER_REVIEW`` is derived from content: it holds while all five sections
are non-empty and reverts to ``DRAFT`` if one is cleared.  ``CONFIRMED`` is
set only by finalizing the confirmation gate (from either earlier state,
because the checklist alone decides readiness) and is terminal: afterwards
every mutation fails with ``AlreadyFinalizedError``.

**Guarded mutations:**  every command checks the permission guard before
any state changes.  Clinical sections (illness severity, patient summary)
belong to the assigned physician, situation awareness and the action list
to every participant, the synthesis to the receiving physician.

**Concurrent free-text edits:**  under ``last_writer_wins`` an edit carrying
a timestamp older than the section's latest edit by a different clinician
is rejected with ``StaleEditError``.  A clinician's own edits always apply
in submission order.

A section is non-empty when:

* ILLNESS_SEVERITY -- a severity is set.
* PATIENT_SUMMARY -- the text is not blank.
* ACTION_LIST -- at least one item exists.
* SITUATION_AWARENESS -- narrative text or at least one contingency plan.
* SYNTHESIS -- receiver notes or at least one checked confirmation.
"""

from __future__ import annotations

import json
import logging
from datetime import datetime
from typing import Callable, Optional

from pydantic import BaseModel, Field

from relevo.audit import AuditEventType, AuditLog
from relevo.checklist import ConfirmationGate, items_from_templates
from relevo.config import DEFAULT_POLICY, ConflictPolicy, HandoverPolicy
from relevo.errors import (
    AlreadyFinalizedError,
    InvalidTransitionError,
    StaleEditError,
    ValidationError,
)
from relevo.models import (
    ActionItem,
    ChecklistItem,
    Clinician,
    ContingencyPlan,
    ContingencyStatus,
    DocumentState,
    IllnessSeverity,
    Patient,
    Priority,
    SectionKind,
    WriterRole,
    utcnow,
)
from relevo.permissions import (
    can_edit_situation_awareness,
    require,
    require_section_writer,
    writer_role_for,
)
from relevo.registries import ActionRegistry, ContingencyRegistry

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Valid state transitions
# ---------------------------------------------------------------------------

_VALID_TRANSITIONS: dict[DocumentState, set[DocumentState]] = {
    DocumentState.DRAFT: {DocumentState.UNDER_REVIEW, DocumentState.CONFIRMED},
    DocumentState.UNDER_REVIEW: {DocumentState.DRAFT, DocumentState.CONFIRMED},
    DocumentState.CONFIRMED: set(),  # terminal state
}

class IPassSection(BaseModel):
    """Edit metadata and free-text content of one section.

    For ILLNESS_SEVERITY ``content`` is the severity value; for ACTION_LIST
    it is unused (items live in the registry).
    """

    kind: SectionKind
    writer_role: WriterRole
    content: str = ""
    last_edited_by: Optional[str] = None
    last_edited_at: Optional[datetime] = None
    revision: int = Field(default=0, description="Incremented on every accepted change.")


class IPassDocument:
    """Composite I-PASS document: free-text sections plus the action and
    contingency registries and the confirmation gate."""

    def __init__(
        self,
        patient: Patient,
        current_shift_tag: str,
        policy: HandoverPolicy = DEFAULT_POLICY,
        audit_log: Optional[AuditLog] = None,
        clock: Callable[[], datetime] = utcnow,
        seed_severity: bool = True,
    ) -> None:
        if not current_shift_tag or not current_shift_tag.strip():
            raise ValidationError("current_shift_tag must not be empty.")
        self._patient = patient
        self._shift_tag = current_shift_tag
        self._policy = policy
        self._audit = audit_log
        self._clock = clock
        self._state = DocumentState.DRAFT
        self._sections: dict[SectionKind, IPassSection] = {
            kind: IPassSection(kind=kind, writer_role=writer_role_for(kind))
            for kind in SectionKind
        }
        if seed_severity:
            self._sections[SectionKind.ILLNESS_SEVERITY].content = patient.illness_severity.value
        self._actions = ActionRegistry(clock=clock)
        self._contingencies = ContingencyRegistry(
            clock=clock,
            require_current_shift=policy.contingency_delete_requires_current_shift,
        )
        self._gate = ConfirmationGate(
            items_from_templates(policy.confirmation_items),
            receiving_physician=patient.receiving_physician,
            clock=clock,
        )

    @classmethod
    def from_previous_shift(
        cls,
        previous: "IPassDocument",
        current_shift_tag: str,
        patient: Optional[Patient] = None,
        policy: Optional[HandoverPolicy] = None,
        audit_log: Optional[AuditLog] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> "IPassDocument":
        """Seed a new shift's document from the previous shift's document.

        Severity, patient summary and situation narrative are copied with
        their edit metadata.  Open action items and all contingency plans
        carry over with their original shift tag and submitter; completed
        items are dropped.  Synthesis and checklist start fresh.
        """
        document = cls(
            patient or previous.patient,
            current_shift_tag,
            policy=policy or previous.policy,
            audit_log=audit_log,
            clock=clock,
            seed_severity=False,
        )
        for kind in (
            SectionKind.ILLNESS_SEVERITY,
            SectionKind.PATIENT_SUMMARY,
            SectionKind.SITUATION_AWARENESS,
        ):
            carried = previous._sections[kind]
            document._sections[kind] = carried.model_copy(update={"revision": 0})
        if not document._sections[SectionKind.ILLNESS_SEVERITY].content:
            document._sections[SectionKind.ILLNESS_SEVERITY].content = (
                document.patient.illness_severity.value
            )
        for item in previous.actions.pending():
            document._actions.restore(item)
        for plan in previous.contingencies.plans():
            document._contingencies.restore(plan)
        document._refresh_state("SYSTEM")
        logger.info(
            "Seeded document for patient %s from previous shift (%d open items, %d plans)",
            document.patient_id, len(document._actions), len(document._contingencies),
        )
        return document

    # -- properties --

    @property
    def patient(self) -> Patient:
        return self._patient

    @property
    def patient_id(self) -> str:
        return self._patient.patient_id

    @property
    def policy(self) -> HandoverPolicy:
        return self._policy

    @property
    def current_shift_tag(self) -> str:
        return self._shift_tag

    @property
    def state(self) -> DocumentState:
        return self._state

    @property
    def is_confirmed(self) -> bool:
        return self._state is DocumentState.CONFIRMED

    @property
    def actions(self) -> ActionRegistry:
        return self._actions

    @property
    def contingencies(self) -> ContingencyRegistry:
        return self._contingencies

    @property
    def gate(self) -> ConfirmationGate:
        return self._gate

    @property
    def illness_severity(self) -> Optional[IllnessSeverity]:
        content = self._sections[SectionKind.ILLNESS_SEVERITY].content
        return IllnessSeverity(content) if content else None

    def section(self, kind: SectionKind) -> IPassSection:
        return self._sections[SectionKind(kind)].model_copy()

    def text(self, kind: SectionKind) -> str:
        return self._sections[SectionKind(kind)].content

    def is_section_filled(self, kind: SectionKind) -> bool:
        kind = SectionKind(kind)
        content = self._sections[kind].content.strip()
        if kind is SectionKind.ILLNESS_SEVERITY:
            return bool(content)
        if kind is SectionKind.PATIENT_SUMMARY:
            return bool(content)
        if kind is SectionKind.ACTION_LIST:
            return len(self._actions) > 0
        if kind is SectionKind.SITUATION_AWARENESS:
            return bool(content) or len(self._contingencies) > 0
        if kind is SectionKind.SYNTHESIS:
            return bool(content) or self._gate.any_checked()
        raise ValueError(f"Unhandled section kind: {kind!r}")

    # -- free-text sections --

    def set_illness_severity(
        self,
        actor: Clinician,
        severity: IllnessSeverity | str,
        edited_at: Optional[datetime] = None,
    ) -> IPassSection:
        """Assigned physician only."""
        require_section_writer(actor, SectionKind.ILLNESS_SEVERITY, self._patient)
        try:
            severity = IllnessSeverity(severity)
        except ValueError:
            raise ValidationError(f"Unknown illness severity '{severity}'.") from None
        return self._apply_edit(SectionKind.ILLNESS_SEVERITY, actor, severity.value, edited_at)

    def update_patient_summary(
        self, actor: Clinician, text: str, edited_at: Optional[datetime] = None
    ) -> IPassSection:
        """Assigned physician only."""
        return self._apply_edit(SectionKind.PATIENT_SUMMARY, actor, text, edited_at)

    def update_situation_awareness(
        self, actor: Clinician, text: str, edited_at: Optional[datetime] = None
    ) -> IPassSection:
        """Any participant."""
        return self._apply_edit(SectionKind.SITUATION_AWARENESS, actor, text, edited_at)

    def update_synthesis(
        self, actor: Clinician, text: str, edited_at: Optional[datetime] = None
    ) -> IPassSection:
        """Receiving physician only."""
        return self._apply_edit(SectionKind.SYNTHESIS, actor, text, edited_at)

    # -- action list --

    def add_action_item(
        self,
        actor: Clinician,
        task: str,
        priority: Priority = Priority.MEDIUM,
        due_time: Optional[str] = None,
    ) -> ActionItem:
        require_section_writer(actor, SectionKind.ACTION_LIST, self._patient)
        self._require_editable()
        item = self._actions.add(task, actor, self._shift_tag, priority=priority, due_time=due_time)
        self._touch(SectionKind.ACTION_LIST, actor)
        self._emit(AuditEventType.ACTION_ITEM_ADDED, actor, SectionKind.ACTION_LIST,
                   target=item.item_id, metadata={"priority": item.priority.value})
        self._refresh_state(actor.clinician_id)
        return item

    def toggle_action_item(self, actor: Clinician, item_id: str) -> ActionItem:
        """Any participant may mark an item done or reopen it."""
        require_section_writer(actor, SectionKind.ACTION_LIST, self._patient)
        self._require_editable()
        item = self._actions.toggle_complete(item_id, actor)
        self._touch(SectionKind.ACTION_LIST, actor)
        self._emit(AuditEventType.ACTION_ITEM_TOGGLED, actor, SectionKind.ACTION_LIST,
                   target=item_id, metadata={"completed": item.completed})
        return item

    def delete_action_item(self, actor: Clinician, item_id: str) -> ActionItem:
        self._require_editable()
        item = self._actions.delete(
            item_id, actor, self._patient.assigned_physician, self._shift_tag
        )
        self._touch(SectionKind.ACTION_LIST, actor)
        self._emit(AuditEventType.ACTION_ITEM_DELETED, actor, SectionKind.ACTION_LIST,
                   target=item_id, metadata={"shift_tag": item.shift_tag})
        self._refresh_state(actor.clinician_id)
        return item

    # -- contingency plans (part of situation awareness) --

    def add_contingency_plan(
        self,
        actor: Clinician,
        condition: str,
        action: str,
        priority: Priority = Priority.MEDIUM,
        status: ContingencyStatus = ContingencyStatus.ACTIVE,
    ) -> ContingencyPlan:
        require(
            can_edit_situation_awareness(actor), actor, "add_contingency_plan",
            target=self.patient_id,
        )
        self._require_editable()
        plan = self._contingencies.add(
            condition, action, actor, self._shift_tag, priority=priority, status=status
        )
        self._touch(SectionKind.SITUATION_AWARENESS, actor)
        self._emit(AuditEventType.CONTINGENCY_PLAN_ADDED, actor, SectionKind.SITUATION_AWARENESS,
                   target=plan.plan_id, metadata={"status": plan.status.value})
        self._refresh_state(actor.clinician_id)
        return plan

    def delete_contingency_plan(self, actor: Clinician, plan_id: str) -> ContingencyPlan:
        self._require_editable()
        plan = self._contingencies.delete(
            plan_id, actor, self._patient.assigned_physician, self._shift_tag
        )
        self._touch(SectionKind.SITUATION_AWARENESS, actor)
        self._emit(AuditEventType.CONTINGENCY_PLAN_DELETED, actor, SectionKind.SITUATION_AWARENESS,
                   target=plan_id)
        self._refresh_state(actor.clinician_id)
        return plan

    # -- synthesis / confirmation --

    def check_confirmation_item(
        self, actor: Clinician, item_id: str, checked: bool = True
    ) -> ChecklistItem:
        item = self._gate.check(item_id, actor, checked=checked)
        self._touch(SectionKind.SYNTHESIS, actor)
        self._emit(AuditEventType.CHECKLIST_ITEM_CHANGED, actor, SectionKind.SYNTHESIS,
                   target=item_id, metadata={"checked": checked, "critical": item.critical})
        self._refresh_state(actor.clinician_id)
        return item

    def ensure_can_finalize(self, actor: Clinician) -> None:
        self._gate.ensure_can_finalize(actor)

    def finalize(self, actor: Clinician) -> datetime:
        """Finalize the gate and confirm the document.

        Raises:
            PermissionDeniedError: If ``actor`` is not the receiving physician.
            AlreadyFinalizedError: If already finalized.
            NotReadyError: If required confirmations are outstanding.
        """
        finalized_at = self._gate.finalize(actor)
        self._transition(DocumentState.CONFIRMED, actor.clinician_id)
        self._emit(AuditEventType.HANDOVER_FINALIZED, actor, SectionKind.SYNTHESIS,
                   metadata={"finalized_at": finalized_at.isoformat()})
        return finalized_at

    # -- persistence payloads --

    def serialize_section(self, kind: SectionKind) -> str:
        """Content of a section as saved by the persistence backend."""
        kind = SectionKind(kind)
        if kind in (SectionKind.ILLNESS_SEVERITY, SectionKind.PATIENT_SUMMARY):
            return self._sections[kind].content
        if kind is SectionKind.ACTION_LIST:
            payload = [item.model_dump(mode="json") for item in self._actions.items()]
        elif kind is SectionKind.SITUATION_AWARENESS:
            payload = {
                "narrative": self._sections[kind].content,
                "contingency_plans": [p.model_dump(mode="json") for p in self._contingencies.plans()],
            }
        elif kind is SectionKind.SYNTHESIS:
            payload = {
                "notes": self._sections[kind].content,
                "checklist": [i.model_dump(mode="json") for i in self._gate.items()],
            }
        else:
            raise ValueError(f"Unhandled section kind: {kind!r}")
        return json.dumps(payload, sort_keys=True)

    # -- helpers --

    def _apply_edit(
        self,
        kind: SectionKind,
        actor: Clinician,
        text: str,
        edited_at: Optional[datetime],
    ) -> IPassSection:
        require_section_writer(actor, kind, self._patient)
        self._require_editable()
        if text is None:
            raise ValidationError(f"Content for {kind.value} must be a string.")
        if edited_at is not None and edited_at.tzinfo is None:
            raise ValidationError(f"Edit timestamp for {kind.value} must be timezone-aware.")
        section = self._sections[kind]
        edited_at = edited_at or self._clock()

        if (
            self._policy.conflict_policy is ConflictPolicy.LAST_WRITER_WINS
            and section.last_edited_by not in (None, actor.clinician_id)
            and section.last_edited_at is not None
            and edited_at < section.last_edited_at
        ):
            self._emit(AuditEventType.EDIT_SUPERSEDED, actor, kind, metadata={
                "edited_at": edited_at.isoformat(),
                "current_edited_at": section.last_edited_at.isoformat(),
                "current_editor": section.last_edited_by,
            })
            raise StaleEditError(
                f"Edit to {kind.value} at {edited_at.isoformat()} is older than the "
                f"latest edit by '{section.last_edited_by}'."
            )

        self._sections[kind] = section.model_copy(update={
            "content": text,
            "last_edited_by": actor.clinician_id,
            "last_edited_at": edited_at,
            "revision": section.revision + 1,
        })
        self._emit(AuditEventType.SECTION_EDITED, actor, kind,
                   metadata={"revision": section.revision + 1, "length": len(text)})
        logger.info("Section %s of patient %s edited by %s", kind.value, self.patient_id, actor.clinician_id)
        self._refresh_state(actor.clinician_id)
        return self._sections[kind].model_copy()

    def _touch(self, kind: SectionKind, actor: Clinician) -> None:
        section = self._sections[kind]
        self._sections[kind] = section.model_copy(update={
            "last_edited_by": actor.clinician_id,
            "last_edited_at": self._clock(),
            "revision": section.revision + 1,
        })

    def _require_editable(self) -> None:
        if self._state is DocumentState.CONFIRMED:
            raise AlreadyFinalizedError(
                f"Handover for patient '{self.patient_id}' is confirmed; the document is locked."
            )

    def _refresh_state(self, actor_id: str) -> None:
        if self._state is DocumentState.CONFIRMED:
            return
        filled = all(self.is_section_filled(kind) for kind in SectionKind)
        target = DocumentState.UNDER_REVIEW if filled else DocumentState.DRAFT
        if target is not self._state:
            self._transition(target, actor_id)

    def _transition(self, target: DocumentState, actor_id: str) -> None:
        allowed = _VALID_TRANSITIONS[self._state]
        if target not in allowed:
            raise InvalidTransitionError(
                f"Cannot transition from {self._state.value} to {target.value}. "
                f"Allowed transitions: {[s.value for s in allowed]}"
            )
        previous = self._state
        self._state = target
        if self._audit is not None:
            self._audit.record(
                AuditEventType.DOCUMENT_STATE_CHANGED,
                actor_id=actor_id,
                patient_id=self.patient_id,
                metadata={"from": previous.value, "to": target.value},
                timestamp=self._clock(),
            )
        logger.info("Document for patient %s: %s -> %s", self.patient_id, previous.value, target.value)

    def _emit(
        self,
        event_type: AuditEventType,
        actor: Clinician,
        section: SectionKind,
        target: str = "",
        metadata: dict | None = None,
    ) -> None:
        if self._audit is None:
            return
        self._audit.record(
            event_type,
            actor_id=actor.clinician_id,
            actor_role=actor.role or "CLINICIAN",
            patient_id=self.patient_id,
            section=section.value,
            target_entity=target,
            metadata=metadata,
            timestamp=self._clock(),
        )
