"""
Handover session store.

A ``HandoverSession`` holds the queue of patients for one shift transition.
Each patient has an ``IPassDocument`` (with its confirmation gate) and one
``SyncStatusTracker`` per I-PASS section.

**Commands** (edits, registry changes, checklist confirmations,
finalization) are coroutines returning a ``CommandResult``.  Errors raised
by the document, registries or gate are caught here and returned typed:
a rejected command never raises into the caller and never crashes the
session.  Permission denials are additionally logged at WARNING and
recorded as ``PERMISSION_DENIED`` audit entries.  While a patient's
``finalize`` awaits its flush and the backend, other commands on that
patient are rejected with ``FinalizeInProgressError``.

**Queries** (``document``, ``sync_status``, ``tracker``, ``retry``,
``alerts``, ``activity_feed``, ``report``) are plain calls that raise
``ValidationError`` for a patient not in the queue.  Queries do not mutate
the handover, so an unknown patient id is a caller bug rather than a
rejected clinical action.  The presence and alert feeds are informational:
any failure of their services is logged at WARNING and degrades to an
empty list (presence) or the alerts on the patient record (alerts).

**Optimistic edits:**  accepted edits are applied to local state at once;
the section's tracker then debounces and saves the new content through the
``PersistenceService``.

**Navigation** (``next``/``previous``/``select``) only moves the cursor.
It neither saves nor discards anything; persistence is per section.

**Completion** of a patient is set only by a successful ``finalize``.
"""

from __future__ import annotations

import asyncio
import functools
import logging
import time
from datetime import datetime
from typing import Callable, Iterable, Mapping, Optional

from relevo.audit import AuditEntry, AuditEventType, AuditLog
from relevo.config import DEFAULT_POLICY, HandoverPolicy
from relevo.document import IPassDocument
from relevo.errors import (
    CommandResult,
    FinalizeError,
    FinalizeInProgressError,
    HandoverError,
    PermissionDeniedError,
    ValidationError,
)
from relevo.models import (
    Alert,
    AlertLevel,
    AlertStatus,
    Clinician,
    Collaborator,
    ContingencyStatus,
    IllnessSeverity,
    Patient,
    Priority,
    SectionKind,
    SyncStatus,
    utcnow,
)
from relevo.report import HandoverReport, generate_handover_report
from relevo.services import PatientDataProvider, PersistenceService, PresenceService
from relevo.sync import SyncStatusTracker

logger = logging.getLogger(__name__)

_ALERT_LEVEL_ORDER = {AlertLevel.HIGH: 0, AlertLevel.MEDIUM: 1, AlertLevel.INFORMATIONAL: 2}

# Displayed precedence when aggregating several trackers.
_SYNC_PRECEDENCE = [SyncStatus.OFFLINE, SyncStatus.ERROR, SyncStatus.PENDING, SyncStatus.SYNCED]


def aggregate_sync_status(statuses: Iterable[SyncStatus]) -> SyncStatus:
    """Combine section statuses: OFFLINE > ERROR > PENDING > SYNCED."""
    present = set(statuses)
    for status in _SYNC_PRECEDENCE:
        if status in present:
            return status
    return SyncStatus.SYNCED


def format_duration(minutes: int) -> str:
    """``12 -> "12 min"``, ``60 -> "1h"``, ``65 -> "1h 5m"``."""
    if minutes < 60:
        return f"{minutes} min"
    hours, mins = divmod(minutes, 60)
    if mins == 0:
        return f"{hours}h"
    return f"{hours}h {mins}m"


class _PatientEntry:
    """A patient's document and its per-section trackers."""

    def __init__(self, document: IPassDocument, trackers: dict[SectionKind, SyncStatusTracker]) -> None:
        self.document = document
        self.trackers = trackers
        self.finalizing = False

    @property
    def patient_id(self) -> str:
        return self.document.patient_id


class HandoverSession:
    """Orchestrates the handover of a queue of patients.

    Args:
        patients: The queue, in handover order.
        current_shift_tag: The shift transition being handed over
            (e.g. ``"Day→Evening"``).
        persistence: Backend for section saves and finalization.
        presence: Optional presence feed; absence yields no collaborators.
        patient_provider: Optional source of up-to-date alerts.
        policy: Unit policy (sync timing, conflict policy, checklist).
        audit_log: Audit trail; a new one is created if omitted.
        clock: Wall clock for timestamps.
        monotonic: Monotonic clock for elapsed session time.
        previous_documents: Previous shift's documents by patient id; used
            to seed the new documents.
        online: Initial connectivity.
    """

    def __init__(
        self,
        patients: Iterable[Patient],
        current_shift_tag: str,
        persistence: PersistenceService,
        presence: Optional[PresenceService] = None,
        patient_provider: Optional[PatientDataProvider] = None,
        policy: HandoverPolicy = DEFAULT_POLICY,
        audit_log: Optional[AuditLog] = None,
        clock: Callable[[], datetime] = utcnow,
        monotonic: Callable[[], float] = time.monotonic,
        previous_documents: Optional[Mapping[str, IPassDocument]] = None,
        online: bool = True,
    ) -> None:
        self._shift_tag = current_shift_tag
        self._persistence = persistence
        self._presence = presence
        self._provider = patient_provider
        self._policy = policy
        self._audit = audit_log if audit_log is not None else AuditLog()
        self._clock = clock
        self._monotonic = monotonic
        self._started = monotonic()
        self._online = online
        self._current_index = 0

        previous_documents = previous_documents or {}
        self._entries: list[_PatientEntry] = []
        self._by_id: dict[str, _PatientEntry] = {}
        for patient in patients:
            if patient.patient_id in self._by_id:
                raise ValidationError(f"Patient '{patient.patient_id}' queued twice.")
            previous = previous_documents.get(patient.patient_id)
            if previous is not None:
                document = IPassDocument.from_previous_shift(
                    previous, current_shift_tag, patient=patient, policy=policy,
                    audit_log=self._audit, clock=clock,
                )
            else:
                document = IPassDocument(
                    patient, current_shift_tag, policy=policy,
                    audit_log=self._audit, clock=clock,
                )
            entry = _PatientEntry(document, self._make_trackers(patient.patient_id))
            self._entries.append(entry)
            self._by_id[patient.patient_id] = entry

        logger.info(
            "Handover session %s started with %d patients", current_shift_tag, len(self._entries)
        )

    @classmethod
    def from_provider(
        cls,
        provider: PatientDataProvider,
        current_shift_tag: str,
        persistence: PersistenceService,
        **kwargs,
    ) -> "HandoverSession":
        """Build a session from the provider's current patient list."""
        return cls(
            provider.get_patients(),
            current_shift_tag,
            persistence,
            patient_provider=provider,
            **kwargs,
        )

    def _make_trackers(self, patient_id: str) -> dict[SectionKind, SyncStatusTracker]:
        trackers = {}
        for kind in SectionKind:
            persist = functools.partial(self._persistence.save_section, patient_id, kind.value)
            trackers[kind] = SyncStatusTracker(
                f"{patient_id}/{kind.value}",
                persist,
                settings=self._policy.sync,
                on_change=functools.partial(self._on_sync_change, patient_id, kind),
                online=self._online,
            )
        return trackers

    # ------------------------------------------------------------------
    # Queue, navigation and progress
    # ------------------------------------------------------------------

    @property
    def shift_tag(self) -> str:
        return self._shift_tag

    @property
    def audit_log(self) -> AuditLog:
        return self._audit

    @property
    def patients(self) -> list[Patient]:
        return [entry.document.patient for entry in self._entries]

    @property
    def total_patients(self) -> int:
        return len(self._entries)

    @property
    def current_index(self) -> int:
        return self._current_index

    @property
    def current_patient(self) -> Optional[Patient]:
        if not self._entries:
            return None
        return self._entries[self._current_index].document.patient

    @property
    def current_document(self) -> Optional[IPassDocument]:
        if not self._entries:
            return None
        return self._entries[self._current_index].document

    def document(self, patient_id: str) -> IPassDocument:
        """Raises ``ValidationError`` for an unknown patient."""
        return self._entry(patient_id).document

    def next(self) -> int:
        if self._current_index < len(self._entries) - 1:
            self._current_index += 1
        return self._current_index

    def previous(self) -> int:
        if self._current_index > 0:
            self._current_index -= 1
        return self._current_index

    def select(self, index: int) -> bool:
        """Jump to ``index``; returns False (cursor unchanged) if out of range."""
        if 0 <= index < len(self._entries):
            self._current_index = index
            return True
        return False

    def select_patient(self, patient_id: str) -> bool:
        for index, entry in enumerate(self._entries):
            if entry.patient_id == patient_id:
                self._current_index = index
                return True
        return False

    @property
    def completed_count(self) -> int:
        return sum(1 for entry in self._entries if entry.document.is_confirmed)

    @property
    def progress_percentage(self) -> float:
        if not self._entries:
            return 0.0
        return self.completed_count / len(self._entries) * 100

    @property
    def is_complete(self) -> bool:
        return bool(self._entries) and self.completed_count == len(self._entries)

    @property
    def elapsed_seconds(self) -> float:
        return max(0.0, self._monotonic() - self._started)

    def elapsed_display(self) -> str:
        return format_duration(int(self.elapsed_seconds // 60))

    # ------------------------------------------------------------------
    # Section commands
    # ------------------------------------------------------------------

    async def set_illness_severity(
        self,
        actor: Clinician,
        severity: IllnessSeverity | str,
        patient_id: Optional[str] = None,
        edited_at: Optional[datetime] = None,
    ) -> CommandResult:
        return self._execute(
            "set_illness_severity", actor, patient_id, [SectionKind.ILLNESS_SEVERITY],
            lambda doc: doc.set_illness_severity(actor, severity, edited_at=edited_at),
        )

    async def update_patient_summary(
        self,
        actor: Clinician,
        text: str,
        patient_id: Optional[str] = None,
        edited_at: Optional[datetime] = None,
    ) -> CommandResult:
        return self._execute(
            "update_patient_summary", actor, patient_id, [SectionKind.PATIENT_SUMMARY],
            lambda doc: doc.update_patient_summary(actor, text, edited_at=edited_at),
        )

    async def update_situation_awareness(
        self,
        actor: Clinician,
        text: str,
        patient_id: Optional[str] = None,
        edited_at: Optional[datetime] = None,
    ) -> CommandResult:
        return self._execute(
            "update_situation_awareness", actor, patient_id, [SectionKind.SITUATION_AWARENESS],
            lambda doc: doc.update_situation_awareness(actor, text, edited_at=edited_at),
        )

    async def update_synthesis(
        self,
        actor: Clinician,
        text: str,
        patient_id: Optional[str] = None,
        edited_at: Optional[datetime] = None,
    ) -> CommandResult:
        return self._execute(
            "update_synthesis", actor, patient_id, [SectionKind.SYNTHESIS],
            lambda doc: doc.update_synthesis(actor, text, edited_at=edited_at),
        )

    # -- action list --

    async def add_action_item(
        self,
        actor: Clinician,
        task: str,
        priority: Priority = Priority.MEDIUM,
        due_time: Optional[str] = None,
        patient_id: Optional[str] = None,
    ) -> CommandResult:
        return self._execute(
            "add_action_item", actor, patient_id, [SectionKind.ACTION_LIST],
            lambda doc: doc.add_action_item(actor, task, priority=priority, due_time=due_time),
        )

    async def toggle_action_item(
        self, actor: Clinician, item_id: str, patient_id: Optional[str] = None
    ) -> CommandResult:
        return self._execute(
            "toggle_action_item", actor, patient_id, [SectionKind.ACTION_LIST],
            lambda doc: doc.toggle_action_item(actor, item_id),
        )

    async def delete_action_item(
        self, actor: Clinician, item_id: str, patient_id: Optional[str] = None
    ) -> CommandResult:
        return self._execute(
            "delete_action_item", actor, patient_id, [SectionKind.ACTION_LIST],
            lambda doc: doc.delete_action_item(actor, item_id),
        )

    # -- contingency plans --

    async def add_contingency_plan(
        self,
        actor: Clinician,
        condition: str,
        action: str,
        priority: Priority = Priority.MEDIUM,
        status: ContingencyStatus = ContingencyStatus.ACTIVE,
        patient_id: Optional[str] = None,
    ) -> CommandResult:
        return self._execute(
            "add_contingency_plan", actor, patient_id, [SectionKind.SITUATION_AWARENESS],
            lambda doc: doc.add_contingency_plan(
                actor, condition, action, priority=priority, status=status
            ),
        )

    async def delete_contingency_plan(
        self, actor: Clinician, plan_id: str, patient_id: Optional[str] = None
    ) -> CommandResult:
        return self._execute(
            "delete_contingency_plan", actor, patient_id, [SectionKind.SITUATION_AWARENESS],
            lambda doc: doc.delete_contingency_plan(actor, plan_id),
        )

    # -- confirmation --

    async def check_confirmation_item(
        self,
        actor: Clinician,
        item_id: str,
        checked: bool = True,
        patient_id: Optional[str] = None,
    ) -> CommandResult:
        return self._execute(
            "check_confirmation_item", actor, patient_id, [SectionKind.SYNTHESIS],
            lambda doc: doc.check_confirmation_item(actor, item_id, checked=checked),
        )

    async def finalize(self, actor: Clinician, patient_id: Optional[str] = None) -> CommandResult:
        """Finalize a patient's handover.

        Preconditions are checked first (receiving physician, not yet
        finalized, every required confirmation checked).  Pending section
        saves are flushed, the preconditions re-checked, then the backend is
        asked to finalize; only on its acknowledgment is the gate finalized
        and the document confirmed.  Until the outcome is known every other
        command on the patient fails with ``FinalizeInProgressError``.
        On any failure the handover stays open and may be finalized again.
        """
        try:
            entry = self._entry(patient_id)
            if entry.finalizing:
                raise FinalizeInProgressError(
                    f"Handover of patient '{entry.patient_id}' is already being finalized."
                )
            entry.document.ensure_can_finalize(actor)
        except HandoverError as exc:
            return self._reject("finalize", actor, patient_id, exc, finalize=True)

        entry.finalizing = True
        try:
            return await self._finalize_entry(entry, actor)
        finally:
            entry.finalizing = False

    async def _finalize_entry(self, entry: _PatientEntry, actor: Clinician) -> CommandResult:
        await self._flush_entry(entry)
        try:
            entry.document.ensure_can_finalize(actor)
        except HandoverError as exc:
            return self._reject("finalize", actor, entry.patient_id, exc, finalize=True)

        try:
            result = await self._persistence.finalize_handover(entry.patient_id, actor.clinician_id)
        except (ConnectionError, OSError, asyncio.TimeoutError) as exc:
            result = CommandResult.failure(FinalizeError(f"Finalize failed: {exc}"))
        if not result.ok:
            error = result.error
            if not isinstance(error, FinalizeError):
                error = FinalizeError(str(error))
            logger.warning("Finalize of patient %s not acknowledged: %s", entry.patient_id, error)
            return self._reject("finalize", actor, entry.patient_id, error, finalize=True)

        try:
            finalized_at = entry.document.finalize(actor)
        except HandoverError as exc:
            return self._reject("finalize", actor, entry.patient_id, exc, finalize=True)

        logger.info(
            "Handover of patient %s confirmed by %s (%d/%d complete)",
            entry.patient_id, actor.clinician_id, self.completed_count, self.total_patients,
        )
        return CommandResult.success(finalized_at)

    # ------------------------------------------------------------------
    # Synchronization
    # ------------------------------------------------------------------

    def sync_status(
        self,
        patient_id: Optional[str] = None,
        section: Optional[SectionKind] = None,
    ) -> SyncStatus:
        """Status of one section, one patient, or (no arguments) the session."""
        if patient_id is None and section is None:
            return aggregate_sync_status(
                tracker.status for entry in self._entries for tracker in entry.trackers.values()
            )
        entry = self._entry(patient_id)
        if section is not None:
            return entry.trackers[SectionKind(section)].status
        return aggregate_sync_status(tracker.status for tracker in entry.trackers.values())

    def tracker(self, patient_id: str, section: SectionKind) -> SyncStatusTracker:
        return self._entry(patient_id).trackers[SectionKind(section)]

    def set_online(self, online: bool) -> None:
        """Connectivity change reported by the hosting application."""
        if online == self._online:
            return
        self._online = online
        for entry in self._entries:
            for tracker in entry.trackers.values():
                tracker.set_online(online)
        self._audit.record(
            AuditEventType.CONNECTIVITY_CHANGED,
            actor_id="SYSTEM",
            metadata={"online": online},
            timestamp=self._clock(),
        )
        logger.info("Connectivity %s", "restored" if online else "lost")

    def retry(self, patient_id: str, section: SectionKind) -> bool:
        """Explicitly re-attempt a failed save."""
        return self._entry(patient_id).trackers[SectionKind(section)].retry()

    async def flush(self) -> SyncStatus:
        """Save everything pending now and wait for all saves to settle."""
        for entry in self._entries:
            await self._flush_entry(entry)
        return self.sync_status()

    async def _flush_entry(self, entry: _PatientEntry) -> None:
        for tracker in entry.trackers.values():
            await tracker.flush()

    def _on_sync_change(
        self,
        patient_id: str,
        section: SectionKind,
        key: str,
        before: SyncStatus,
        after: SyncStatus,
    ) -> None:
        if after is SyncStatus.SYNCED and before is SyncStatus.PENDING:
            event_type = AuditEventType.SECTION_SYNCED
        elif after is SyncStatus.ERROR:
            event_type = AuditEventType.SECTION_SYNC_FAILED
        else:
            return
        self._audit.record(
            event_type,
            actor_id="SYSTEM",
            patient_id=patient_id,
            section=section.value,
            metadata={"from": before.value, "to": after.value},
            timestamp=self._clock(),
        )

    # ------------------------------------------------------------------
    # Read-only collaborators
    # ------------------------------------------------------------------

    async def active_collaborators(self, patient_id: Optional[str] = None) -> list[Collaborator]:
        """Collaborators viewing the patient.  Empty if presence is unavailable."""
        entry = self._entry(patient_id)
        if self._presence is None:
            return []
        try:
            return list(await self._presence.list_active_collaborators(entry.patient_id))
        except Exception as exc:
            logger.warning("Presence unavailable for patient %s: %s", entry.patient_id, exc)
            return []

    def alerts(self, patient_id: Optional[str] = None, active_only: bool = True) -> list[Alert]:
        """Patient alerts, most severe first, then oldest first."""
        entry = self._entry(patient_id)
        patient = entry.document.patient
        alerts: list[Alert] = list(patient.alerts)
        if self._provider is not None:
            try:
                alerts = list(self._provider.get_alerts(patient.patient_id))
            except Exception as exc:
                logger.warning("Alert provider unavailable for patient %s: %s", patient.patient_id, exc)
        if active_only:
            alerts = [a for a in alerts if a.status is AlertStatus.ACTIVE]
        return sorted(alerts, key=lambda a: (_ALERT_LEVEL_ORDER[a.level], a.created_at))

    def activity_feed(self, patient_id: Optional[str] = None, limit: int = 20) -> list[AuditEntry]:
        """Most recent audit entries for the patient, newest first."""
        entry = self._entry(patient_id)
        entries = self._audit.query(patient_id=entry.patient_id)
        entries.reverse()
        return entries[:limit]

    def report(self, patient_id: Optional[str] = None) -> HandoverReport:
        """Handover summary for the patient, with its audit timeline."""
        return generate_handover_report(self._entry(patient_id).document, self._audit)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _entry(self, patient_id: Optional[str]) -> _PatientEntry:
        if patient_id is None:
            if not self._entries:
                raise ValidationError("The handover queue is empty.")
            return self._entries[self._current_index]
        try:
            return self._by_id[patient_id]
        except KeyError:
            raise ValidationError(f"Patient '{patient_id}' is not in this handover.") from None

    def _execute(
        self,
        action: str,
        actor: Clinician,
        patient_id: Optional[str],
        sections: list[SectionKind],
        operation: Callable[[IPassDocument], object],
    ) -> CommandResult:
        try:
            entry = self._entry(patient_id)
            if entry.finalizing:
                raise FinalizeInProgressError(
                    f"Handover of patient '{entry.patient_id}' is being finalized."
                )
            value = operation(entry.document)
        except HandoverError as exc:
            return self._reject(action, actor, patient_id, exc)
        for kind in sections:
            entry.trackers[kind].on_edit(entry.document.serialize_section(kind))
        return CommandResult.success(value)

    def _reject(
        self,
        action: str,
        actor: Clinician,
        patient_id: Optional[str],
        error: HandoverError,
        finalize: bool = False,
    ) -> CommandResult:
        if patient_id is None and self._entries:
            patient_id = self._entries[self._current_index].patient_id
        if isinstance(error, PermissionDeniedError):
            logger.warning(
                "Permission denied: %s attempted %s on patient %s",
                actor.clinician_id, action, patient_id,
            )
            event_type = AuditEventType.PERMISSION_DENIED
        elif finalize:
            logger.info("Finalize rejected for patient %s: %s", patient_id, error.code)
            event_type = AuditEventType.FINALIZE_REJECTED
        else:
            logger.info("%s rejected for patient %s: %s", action, patient_id, error.code)
            return CommandResult.failure(error)
        self._audit.record(
            event_type,
            actor_id=actor.clinician_id,
            actor_role=actor.role or "CLINICIAN",
            patient_id=patient_id or "",
            metadata={"action": action, "error": error.code, "detail": str(error)},
            timestamp=self._clock(),
        )
        return CommandResult.failure(error)
