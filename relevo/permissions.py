"""
Permission guard for the I-PASS handover.

Pure predicates deciding whether an actor may mutate a section, delete a
registry entry or confirm the handover.  They are evaluated on every
mutation attempt and never cached, so a change of assigned or receiving
physician takes effect immediately.

Identity is compared by ``Clinician.clinician_id``.  Display names are never
used for authorization: two clinicians called "Dr. Kim" are two people.

**Section writers:**

* ILLNESS_SEVERITY, PATIENT_SUMMARY -- assigned physician only.
* ACTION_LIST, SITUATION_AWARENESS  -- any participant (deletion is restricted
  separately).
* SYNTHESIS                         -- receiving physician only.
"""

from __future__ import annotations

from typing import Optional

from relevo.errors import PermissionDeniedError
from relevo.models import (
    ActionItem,
    Clinician,
    ContingencyPlan,
    Patient,
    SectionKind,
    WriterRole,
)


# ---------------------------------------------------------------------------
# Section writer table
# ---------------------------------------------------------------------------

_SECTION_WRITERS: dict[SectionKind, WriterRole] = {
    SectionKind.ILLNESS_SEVERITY: WriterRole.ASSIGNED_PHYSICIAN,
    SectionKind.PATIENT_SUMMARY: WriterRole.ASSIGNED_PHYSICIAN,
    SectionKind.ACTION_LIST: WriterRole.ANY_PARTICIPANT,
    SectionKind.SITUATION_AWARENESS: WriterRole.ANY_PARTICIPANT,
    SectionKind.SYNTHESIS: WriterRole.RECEIVING_PHYSICIAN,
}


def writer_role_for(section: SectionKind) -> WriterRole:
    """Return the writer role bound to a section."""
    return _SECTION_WRITERS[section]


# ---------------------------------------------------------------------------
# Predicates
# ---------------------------------------------------------------------------

def can_edit_clinical_section(actor: Clinician, assigned_physician: Clinician) -> bool:
    """True iff the actor is the assigned physician."""
    return actor.same_identity(assigned_physician)


def can_edit_situation_awareness(actor: Clinician) -> bool:
    """Situation awareness is an open collaboration section."""
    return actor is not None


def can_confirm_synthesis(actor: Clinician, receiving_physician: Clinician) -> bool:
    """True iff the actor is the receiving physician."""
    return actor.same_identity(receiving_physician)


def can_delete_action_item(
    actor: Clinician,
    item: ActionItem,
    assigned_physician: Clinician,
    current_shift_tag: str,
) -> bool:
    """True iff the assigned physician deletes an open item of the current shift.

    Items created during an earlier shift transition are read-only for
    deletion; they remain completable by anyone.
    """
    return (
        actor.same_identity(assigned_physician)
        and item.shift_tag == current_shift_tag
        and not item.completed
    )


def can_delete_contingency_plan(
    actor: Clinician,
    plan: ContingencyPlan,
    assigned_physician: Clinician,
    current_shift_tag: str,
    require_current_shift: bool = False,
) -> bool:
    """True iff the assigned physician deletes the plan.

    The shift restriction is unit policy (``require_current_shift``); by
    default any plan may be deleted by the assigned physician.
    """
    if not actor.same_identity(assigned_physician):
        return False
    if require_current_shift and plan.shift_tag != current_shift_tag:
        return False
    return True


def can_write_section(actor: Clinician, section: SectionKind, patient: Patient) -> bool:
    """Dispatch on the section's writer role."""
    role = writer_role_for(section)
    if role is WriterRole.ASSIGNED_PHYSICIAN:
        return can_edit_clinical_section(actor, patient.assigned_physician)
    if role is WriterRole.ANY_PARTICIPANT:
        return can_edit_situation_awareness(actor)
    if role is WriterRole.RECEIVING_PHYSICIAN:
        return can_confirm_synthesis(actor, patient.receiving_physician)
    raise ValueError(f"Unhandled writer role: {role!r}")


# ---------------------------------------------------------------------------
# Enforcement
# ---------------------------------------------------------------------------

def require(allowed: bool, actor: Clinician, action: str, target: Optional[str] = None) -> None:
    """Raise ``PermissionDeniedError`` unless ``allowed``.

    Args:
        allowed: Result of one of the predicates above.
        actor: The clinician attempting the action.
        action: Action name used in the error message (e.g. 'delete_action_item').
        target: Optional identifier of the affected entity.

    Raises:
        PermissionDeniedError: If ``allowed`` is False.
    """
    if not allowed:
        suffix = f" on '{target}'" if target else ""
        raise PermissionDeniedError(
            f"Clinician '{actor.clinician_id}' is not permitted to perform "
            f"'{action}'{suffix}."
        )


def require_section_writer(actor: Clinician, section: SectionKind, patient: Patient) -> None:
    """Enforce ``can_write_section``."""
    require(
        can_write_section(actor, section, patient),
        actor,
        f"edit_{section.value}",
        target=patient.patient_id,
    )
