"""
External collaborators consumed by the handover core.

* ``PatientDataProvider`` -- patients and their alerts (read-only).
* ``PersistenceService``  -- section saves and handover finalization.
* ``PresenceService``     -- who else is looking at a patient right now.

The core only depends on the abstract interfaces.  The in-memory
implementations below back the examples and tests and document the
contract: saves are idempotent for identical content, and every call
returns a ``CommandResult`` instead of raising.
"""

from __future__ import annotations

import abc
import hashlib
from datetime import datetime
from typing import Callable, Iterable, Optional

from pydantic import BaseModel

from relevo.errors import CommandResult, FinalizeError, SyncError
from relevo.models import Alert, Collaborator, Patient, utcnow


# ---------------------------------------------------------------------------
# Acknowledgments
# ---------------------------------------------------------------------------

class SaveAck(BaseModel):
    patient_id: str
    section_id: str
    revision: int
    content_hash: str
    saved_at: datetime


class FinalizeAck(BaseModel):
    patient_id: str
    actor_id: str
    finalized_at: datetime


# ---------------------------------------------------------------------------
# Interfaces
# ---------------------------------------------------------------------------

class PatientDataProvider(abc.ABC):
    """Source of patient records and alerts."""

    @abc.abstractmethod
    def get_patients(self) -> list[Patient]:
        ...

    @abc.abstractmethod
    def get_alerts(self, patient_id: str) -> list[Alert]:
        ...


class PersistenceService(abc.ABC):
    """Persistence backend for handover documents.

    Both calls return a ``CommandResult``: ``SaveAck`` / ``FinalizeAck`` on
    success, ``SyncError`` / ``FinalizeError`` on failure.
    """

    @abc.abstractmethod
    async def save_section(self, patient_id: str, section_id: str, content: str) -> CommandResult:
        ...

    @abc.abstractmethod
    async def finalize_handover(self, patient_id: str, actor_id: str) -> CommandResult:
        ...


class PresenceService(abc.ABC):
    """Active collaborators per patient.  Informational only."""

    @abc.abstractmethod
    async def list_active_collaborators(self, patient_id: str) -> list[Collaborator]:
        ...


# ---------------------------------------------------------------------------
# In-memory implementations
# ---------------------------------------------------------------------------

class InMemoryPatientProvider(PatientDataProvider):
    """Serves a fixed list of patients; alerts come from the patient records
    plus any added with ``add_alert``."""

    def __init__(self, patients: Iterable[Patient]) -> None:
        self._patients = list(patients)
        self._extra_alerts: dict[str, list[Alert]] = {}

    def get_patients(self) -> list[Patient]:
        return list(self._patients)

    def get_alerts(self, patient_id: str) -> list[Alert]:
        alerts: list[Alert] = []
        for patient in self._patients:
            if patient.patient_id == patient_id:
                alerts.extend(patient.alerts)
        alerts.extend(self._extra_alerts.get(patient_id, []))
        return alerts

    def add_alert(self, alert: Alert) -> None:
        self._extra_alerts.setdefault(alert.patient_id, []).append(alert)


class InMemoryPersistenceService(PersistenceService):
    """Dictionary-backed persistence.

    Re-saving identical content returns the existing acknowledgment without
    bumping the revision.  Set ``fail_saves`` / ``fail_finalize`` to simulate
    a failing backend.
    """

    def __init__(self, clock: Callable[[], datetime] = utcnow) -> None:
        self._clock = clock
        self._sections: dict[tuple[str, str], tuple[str, SaveAck]] = {}
        self._finalized: dict[str, FinalizeAck] = {}
        self.fail_saves = False
        self.fail_finalize = False
        self.save_calls = 0

    async def save_section(self, patient_id: str, section_id: str, content: str) -> CommandResult:
        self.save_calls += 1
        if self.fail_saves:
            return CommandResult.failure(
                SyncError(f"Simulated network error saving {patient_id}/{section_id}")
            )
        key = (patient_id, section_id)
        content_hash = hashlib.sha256(content.encode("utf-8")).hexdigest()
        existing = self._sections.get(key)
        if existing is not None and existing[1].content_hash == content_hash:
            return CommandResult.success(existing[1])
        revision = existing[1].revision + 1 if existing else 1
        ack = SaveAck(
            patient_id=patient_id,
            section_id=section_id,
            revision=revision,
            content_hash=content_hash,
            saved_at=self._clock(),
        )
        self._sections[key] = (content, ack)
        return CommandResult.success(ack)

    async def finalize_handover(self, patient_id: str, actor_id: str) -> CommandResult:
        if self.fail_finalize:
            return CommandResult.failure(
                FinalizeError(f"Simulated backend error finalizing {patient_id}")
            )
        ack = self._finalized.get(patient_id)
        if ack is None:
            ack = FinalizeAck(patient_id=patient_id, actor_id=actor_id, finalized_at=self._clock())
            self._finalized[patient_id] = ack
        return CommandResult.success(ack)

    def saved_content(self, patient_id: str, section_id: str) -> Optional[str]:
        entry = self._sections.get((patient_id, section_id))
        return entry[0] if entry else None

    def saved_revision(self, patient_id: str, section_id: str) -> int:
        entry = self._sections.get((patient_id, section_id))
        return entry[1].revision if entry else 0

    def is_finalized(self, patient_id: str) -> bool:
        return patient_id in self._finalized


class StaticPresenceService(PresenceService):
    """Presence feed backed by a dictionary of patient id -> collaborators."""

    def __init__(self, collaborators: Optional[dict[str, list[Collaborator]]] = None) -> None:
        self._collaborators = {k: list(v) for k, v in (collaborators or {}).items()}

    async def list_active_collaborators(self, patient_id: str) -> list[Collaborator]:
        return list(self._collaborators.get(patient_id, []))

    def join(self, patient_id: str, collaborator: Collaborator) -> None:
        self._collaborators.setdefault(patient_id, []).append(collaborator)

    def leave(self, patient_id: str, collaborator_id: str) -> None:
        self._collaborators[patient_id] = [
            c for c in self._collaborators.get(patient_id, [])
            if c.collaborator_id != collaborator_id
        ]
