"""
Core data models for the RELEVO handover core.

Patients and alerts are owned by the external patient-data collaborator and
are treated as immutable here.  Action items, contingency plans and checklist
items are created and mutated by the handover workflow.

Every closed set of values (severity, priority, sync status, ...) is a
``str`` enum so that values serialize as plain strings on the wire.
"""

from __future__ import annotations

import enum
import uuid
from datetime import datetime, timezone
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


def utcnow() -> datetime:
    """Timezone-aware current UTC time (default clock)."""
    return datetime.now(timezone.utc)


def make_shift_tag(outgoing: str, incoming: str) -> str:
    """Build a shift-transition tag, e.g. ``make_shift_tag("Night", "Day")``
    -> ``"Night→Day"``."""
    return f"{outgoing.strip()}→{incoming.strip()}"


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------

class IllnessSeverity(str, enum.Enum):
    """I-PASS illness severity levels, least to most severe.

    ``"guarded"`` is accepted as an alias of ``WATCHER``.
    """

    STABLE = "stable"
    WATCHER = "watcher"
    UNSTABLE = "unstable"
    CRITICAL = "critical"

    @classmethod
    def _missing_(cls, value):
        if isinstance(value, str):
            normalized = value.strip().lower()
            if normalized == "guarded":
                return cls.WATCHER
            for member in cls:
                if member.value == normalized:
                    return member
        return None


class AlertLevel(str, enum.Enum):
    HIGH = "HIGH"
    MEDIUM = "MEDIUM"
    INFORMATIONAL = "INFORMATIONAL"


class AlertStatus(str, enum.Enum):
    ACTIVE = "ACTIVE"
    RESOLVED = "RESOLVED"


class Priority(str, enum.Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class ContingencyStatus(str, enum.Enum):
    ACTIVE = "active"
    PLANNED = "planned"


class SyncStatus(str, enum.Enum):
    """Persistence state of a section (or of a whole session).

    * ``SYNCED``  -- the latest local content is acknowledged by the backend.
    * ``PENDING`` -- local content is newer than the acknowledged content.
    * ``ERROR``   -- the latest save attempt failed.
    * ``OFFLINE`` -- no network; supersedes PENDING/SYNCED for display.
    """

    SYNCED = "synced"
    PENDING = "pending"
    ERROR = "error"
    OFFLINE = "offline"


class SectionKind(str, enum.Enum):
    """The five I-PASS sections, in protocol order."""

    ILLNESS_SEVERITY = "illness_severity"
    PATIENT_SUMMARY = "patient_summary"
    ACTION_LIST = "action_list"
    SITUATION_AWARENESS = "situation_awareness"
    SYNTHESIS = "synthesis"


class WriterRole(str, enum.Enum):
    """Who may mutate a section."""

    ASSIGNED_PHYSICIAN = "assigned_physician"
    ANY_PARTICIPANT = "any_participant"
    RECEIVING_PHYSICIAN = "receiving_physician"


class DocumentState(str, enum.Enum):
    """Lifecycle of a patient's I-PASS document.

    ``DRAFT -> UNDER_REVIEW -> CONFIRMED``.  ``CONFIRMED`` is only reachable
    through finalization of the confirmation checklist and is terminal.
    """

    DRAFT = "draft"
    UNDER_REVIEW = "under_review"
    CONFIRMED = "confirmed"


# ---------------------------------------------------------------------------
# People
# ---------------------------------------------------------------------------

class Clinician(BaseModel):
    """An actor in the handover.

    Permission checks compare ``clinician_id`` only; ``name`` is a display
    label and two clinicians may share it.
    """

    model_config = ConfigDict(frozen=True)

    clinician_id: str = Field(..., min_length=1, description="Stable, opaque identity.")
    name: str = Field(default="", description="Display name.")
    role: str = Field(default="", description="Display role, e.g. 'Day Attending'.")

    def same_identity(self, other: Optional["Clinician"]) -> bool:
        return other is not None and self.clinician_id == other.clinician_id


class Collaborator(BaseModel):
    """A participant currently viewing or editing a patient's handover."""

    model_config = ConfigDict(frozen=True)

    collaborator_id: str
    name: str = ""
    role: str = ""


# ---------------------------------------------------------------------------
# Patient data (read-only to the core)
# ---------------------------------------------------------------------------

class Alert(BaseModel):
    """A clinical alert attached to a patient.  Immutable once created."""

    model_config = ConfigDict(frozen=True)

    alert_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    patient_id: str
    level: AlertLevel
    status: AlertStatus = AlertStatus.ACTIVE
    description: str = ""
    author: str = ""
    source: str = ""
    created_at: datetime = Field(default_factory=utcnow)


class Patient(BaseModel):
    """A patient in the handover queue."""

    model_config = ConfigDict(frozen=True)

    patient_id: str = Field(..., min_length=1)
    name: str = ""
    room: str = ""
    mrn: str = ""
    diagnosis: str = ""
    illness_severity: IllnessSeverity = IllnessSeverity.STABLE
    assigned_physician: Clinician
    receiving_physician: Clinician
    alerts: tuple[Alert, ...] = ()


# ---------------------------------------------------------------------------
# Handover content
# ---------------------------------------------------------------------------

class ActionItem(BaseModel):
    """A cross-shift task.

    Items persist across shift boundaries until completed or deleted.
    ``shift_tag`` records the shift transition that created the item and
    scopes who may delete it.
    """

    item_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    task: str
    priority: Priority = Priority.MEDIUM
    due_time: Optional[str] = None
    completed: bool = False
    completed_by: Optional[str] = None
    completed_at: Optional[datetime] = None
    submitted_by: str
    submitted_by_name: str = ""
    submitted_at: datetime = Field(default_factory=utcnow)
    shift_tag: str
    sequence: int = Field(default=0, description="Registry-assigned tiebreaker for equal timestamps.")


class ContingencyPlan(BaseModel):
    """An "if <condition>, then <action>" plan for anticipated deterioration."""

    plan_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    condition: str
    action: str
    priority: Priority = Priority.MEDIUM
    status: ContingencyStatus = ContingencyStatus.ACTIVE
    submitted_by: str
    submitted_by_name: str = ""
    submitted_at: datetime = Field(default_factory=utcnow)
    shift_tag: str
    sequence: int = 0


class ChecklistItem(BaseModel):
    """A receiver confirmation item.

    ``critical`` marks the formal acceptance of responsibility; once checked
    it cannot be unchecked.
    """

    item_id: str
    label: str
    description: str = ""
    required: bool = True
    critical: bool = False
    checked: bool = False
    checked_by: Optional[str] = None
    checked_at: Optional[datetime] = None
