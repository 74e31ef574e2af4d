"""
Append-Only Handover Audit Trail (Hash-Chained).

Every command outcome in a handover session is recorded here: section
edits, rejected edits, permission denials, registry changes, checklist
confirmations, finalization and persistence results.  A denied command is
therefore always distinguishable from a successful one after the fact.

Entries are linked by a SHA-256 hash chain; modifying any entry after it was
appended breaks ``verify_chain()``.  Queries and exports are scoped by
``patient_id``.
"""

from __future__ import annotations

import enum
import hashlib
import json
import logging
import re
import uuid
from datetime import datetime, timezone
from typing import Any, Optional

from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Audit event types
# ---------------------------------------------------------------------------

class AuditEventType(str, enum.Enum):
    """Auditable handover events."""

    # Section content
    SECTION_EDITED = "SECTION_EDITED"
    EDIT_SUPERSEDED = "EDIT_SUPERSEDED"

    # Authorization
    PERMISSION_DENIED = "PERMISSION_DENIED"

    # Registries
    ACTION_ITEM_ADDED = "ACTION_ITEM_ADDED"
    ACTION_ITEM_TOGGLED = "ACTION_ITEM_TOGGLED"
    ACTION_ITEM_DELETED = "ACTION_ITEM_DELETED"
    CONTINGENCY_PLAN_ADDED = "CONTINGENCY_PLAN_ADDED"
    CONTINGENCY_PLAN_DELETED = "CONTINGENCY_PLAN_DELETED"

    # Confirmation
    CHECKLIST_ITEM_CHANGED = "CHECKLIST_ITEM_CHANGED"
    DOCUMENT_STATE_CHANGED = "DOCUMENT_STATE_CHANGED"
    HANDOVER_FINALIZED = "HANDOVER_FINALIZED"
    FINALIZE_REJECTED = "FINALIZE_REJECTED"

    # Persistence
    SECTION_SYNCED = "SECTION_SYNCED"
    SECTION_SYNC_FAILED = "SECTION_SYNC_FAILED"
    CONNECTIVITY_CHANGED = "CONNECTIVITY_CHANGED"

    # Audit operations
    AUDIT_EXPORTED = "AUDIT_EXPORTED"


# ---------------------------------------------------------------------------
# Audit entry model
# ---------------------------------------------------------------------------

class AuditEntry(BaseModel):
    """A single audit record: who did what to which patient's handover, when."""

    entry_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    patient_id: str = Field(
        default="",
        description="Patient whose handover is affected; empty for session-wide events.",
    )
    actor_id: str = Field(..., description="Clinician id, or 'SYSTEM'.")
    actor_role: str = Field(default="SYSTEM")
    event_type: AuditEventType
    section: str = Field(default="", description="I-PASS section, when applicable.")
    target_entity: str = Field(default="", description="Item, plan or checklist id.")
    metadata: dict[str, Any] = Field(default_factory=dict)
    previous_hash: str = Field(
        default="",
        description="SHA-256 of the previous entry; empty for the first entry.",
    )

    def canonical_bytes(self) -> bytes:
        """Deterministic byte representation used for hashing."""
        data = {
            "entry_id": self.entry_id,
            "timestamp": self.timestamp.isoformat(),
            "patient_id": self.patient_id,
            "actor_id": self.actor_id,
            "actor_role": self.actor_role,
            "event_type": self.event_type.value,
            "section": self.section,
            "target_entity": self.target_entity,
            "metadata": self.metadata,
            "previous_hash": self.previous_hash,
        }
        return json.dumps(data, sort_keys=True, default=str).encode("utf-8")

    def compute_hash(self) -> str:
        return hashlib.sha256(self.canonical_bytes()).hexdigest()


# ---------------------------------------------------------------------------
# Identifier redaction
# ---------------------------------------------------------------------------

_IDENTIFIER_PATTERNS: dict[str, re.Pattern] = {
    "mrn": re.compile(r"\bMRN[-:\s]*\d{5,}\b", re.IGNORECASE),
    "date": re.compile(r"\b\d{4}-\d{2}-\d{2}\b"),
    "phone": re.compile(r"\(?\b\d{3}\)?[-.\s]?\d{3}[-.]?\d{4}\b"),
    "email": re.compile(r"\b[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}\b"),
}

_IDENTIFIER_KEYS = {"name", "patient_name", "full_name", "mrn", "dob", "date_of_birth",
                    "phone", "email", "address", "emergency_contact"}


def redact_identifiers(metadata: dict[str, Any]) -> dict[str, Any]:
    """Return a copy of ``metadata`` with identifying values replaced.

    Keys known to hold identifiers are blanked entirely; string values are
    scrubbed of MRNs, dates, phone numbers and e-mail addresses.
    """
    redacted: dict[str, Any] = {}
    for key, value in metadata.items():
        if key.lower() in _IDENTIFIER_KEYS:
            redacted[key] = "[REDACTED]"
        elif isinstance(value, str):
            scrubbed = value
            for label, pattern in _IDENTIFIER_PATTERNS.items():
                scrubbed = pattern.sub(f"[REDACTED-{label.upper()}]", scrubbed)
            redacted[key] = scrubbed
        elif isinstance(value, dict):
            redacted[key] = redact_identifiers(value)
        else:
            redacted[key] = value
    return redacted


# ---------------------------------------------------------------------------
# Audit log
# ---------------------------------------------------------------------------

class AuditLog:
    """Append-only audit log with SHA-256 hash chaining.

    There is no update or delete.  ``query()`` returns deep copies, so
    callers cannot alter recorded entries through the results.
    """

    def __init__(self) -> None:
        self._entries: list[AuditEntry] = []
        self._hashes: list[str] = []

    def append(self, entry: AuditEntry) -> AuditEntry:
        """Chain ``entry`` to the previous one and store it."""
        entry.previous_hash = self._hashes[-1] if self._hashes else ""
        self._entries.append(entry)
        self._hashes.append(entry.compute_hash())
        return entry

    def record(
        self,
        event_type: AuditEventType,
        actor_id: str,
        patient_id: str = "",
        actor_role: str = "SYSTEM",
        section: str = "",
        target_entity: str = "",
        metadata: dict[str, Any] | None = None,
        timestamp: datetime | None = None,
    ) -> AuditEntry:
        """Build and append an entry in one call."""
        entry = AuditEntry(
            patient_id=patient_id,
            actor_id=actor_id,
            actor_role=actor_role,
            event_type=event_type,
            section=section,
            target_entity=target_entity,
            metadata=metadata or {},
        )
        if timestamp is not None:
            entry.timestamp = timestamp
        return self.append(entry)

    def verify_chain(self) -> tuple[bool, Optional[int]]:
        """Validate every hash link.

        Returns:
            ``(valid, broken_at)``; ``broken_at`` is the index of the first
            broken entry, or None when the chain is intact.
        """
        for i, entry in enumerate(self._entries):
            if i == 0:
                if entry.previous_hash != "":
                    return (False, 0)
            elif entry.previous_hash != self._entries[i - 1].compute_hash():
                return (False, i)
            if self._hashes[i] != entry.compute_hash():
                return (False, i)
        return (True, None)

    def query(
        self,
        patient_id: Optional[str] = None,
        event_type: Optional[AuditEventType] = None,
        actor_id: Optional[str] = None,
        section: Optional[str] = None,
        time_start: Optional[datetime] = None,
        time_end: Optional[datetime] = None,
    ) -> list[AuditEntry]:
        """Return copies of matching entries in append order."""
        results = []
        for entry in self._entries:
            if patient_id is not None and entry.patient_id != patient_id:
                continue
            if event_type is not None and entry.event_type != event_type:
                continue
            if actor_id is not None and entry.actor_id != actor_id:
                continue
            if section is not None and entry.section != section:
                continue
            if time_start is not None and entry.timestamp < time_start:
                continue
            if time_end is not None and entry.timestamp > time_end:
                continue
            results.append(entry.model_copy(deep=True))
        return results

    def export_for_review(self, patient_id: str, requested_by: str = "SYSTEM") -> dict[str, Any]:
        """JSON-serializable export of one patient's handover trail.

        Identifiers in metadata are redacted and the chain verification
        result is included.  The export itself is recorded.
        """
        entries = self.query(patient_id=patient_id)
        exported = []
        for entry in entries:
            data = entry.model_dump(mode="json")
            data["metadata"] = redact_identifiers(entry.metadata)
            exported.append(data)

        chain_valid, broken_at = self.verify_chain()
        bundle = {
            "export_metadata": {
                "patient_id": patient_id,
                "exported_at": datetime.now(timezone.utc).isoformat(),
                "entry_count": len(exported),
                "chain_integrity": "VALID" if chain_valid else f"BROKEN_AT_INDEX_{broken_at}",
            },
            "entries": exported,
        }
        self.record(
            AuditEventType.AUDIT_EXPORTED,
            actor_id=requested_by,
            patient_id=patient_id,
            metadata={"entry_count": len(exported)},
        )
        logger.info("Exported %d audit entries for patient %s", len(exported), patient_id)
        return bundle

    def __len__(self) -> int:
        return len(self._entries)
