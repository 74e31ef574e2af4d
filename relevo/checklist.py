"""
Confirmation gate: the receiving clinician's checklist.

The gate holds the confirmation items for one patient.  Only the receiving
physician may check items or finalize.  ``is_ready()`` is true exactly when
every required item is checked; optional items never affect readiness.

**Finalization is terminal.**  Once finalized, every further ``check`` or
``finalize`` call fails with ``AlreadyFinalizedError``; the handover cannot
be un-confirmed.

**Order of checks** (fail closed): permission, then finalized, then
readiness.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Callable, Iterable, Optional

from relevo.config import ChecklistItemTemplate
from relevo.errors import AlreadyFinalizedError, NotReadyError, ValidationError
from relevo.models import ChecklistItem, Clinician, utcnow
from relevo.permissions import can_confirm_synthesis, require

logger = logging.getLogger(__name__)


def items_from_templates(templates: Iterable[ChecklistItemTemplate]) -> list[ChecklistItem]:
    """Instantiate unchecked checklist items from policy templates."""
    return [
        ChecklistItem(
            item_id=t.item_id,
            label=t.label,
            description=t.description,
            required=t.required,
            critical=t.critical,
        )
        for t in templates
    ]


class ConfirmationGate:
    """Checklist of required/optional confirmations for one patient."""

    def __init__(
        self,
        items: Iterable[ChecklistItem],
        receiving_physician: Clinician,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._items: dict[str, ChecklistItem] = {}
        for item in items:
            if item.item_id in self._items:
                raise ValidationError(f"Duplicate checklist item '{item.item_id}'.")
            self._items[item.item_id] = item.model_copy()
        self._receiving_physician = receiving_physician
        self._clock = clock
        self._finalized_by: Optional[str] = None
        self._finalized_at: Optional[datetime] = None

    # -- queries --

    @property
    def finalized(self) -> bool:
        return self._finalized_at is not None

    @property
    def finalized_by(self) -> Optional[str]:
        return self._finalized_by

    @property
    def finalized_at(self) -> Optional[datetime]:
        return self._finalized_at

    @property
    def receiving_physician(self) -> Clinician:
        return self._receiving_physician

    def items(self) -> list[ChecklistItem]:
        return [item.model_copy() for item in self._items.values()]

    def get(self, item_id: str) -> ChecklistItem:
        return self._lookup(item_id).model_copy()

    def is_ready(self) -> bool:
        """True iff every required item is checked."""
        return all(item.checked for item in self._items.values() if item.required)

    def progress(self) -> tuple[int, int]:
        """Return ``(checked_required, total_required)``."""
        required = [item for item in self._items.values() if item.required]
        return (sum(1 for item in required if item.checked), len(required))

    def remaining_required(self) -> list[ChecklistItem]:
        return [
            item.model_copy()
            for item in self._items.values()
            if item.required and not item.checked
        ]

    def any_checked(self) -> bool:
        return any(item.checked for item in self._items.values())

    # -- commands --

    def check(self, item_id: str, actor: Clinician, checked: bool = True) -> ChecklistItem:
        """Set an item's checked state.

        Raises:
            PermissionDeniedError: If ``actor`` is not the receiving physician.
            AlreadyFinalizedError: If the gate is finalized.
            ValidationError: If the item is unknown, or a checked critical
                item would be unchecked.
        """
        require(
            can_confirm_synthesis(actor, self._receiving_physician),
            actor,
            "check_confirmation_item",
            target=item_id,
        )
        self._require_open()
        item = self._lookup(item_id)
        if item.critical and item.checked and not checked:
            raise ValidationError(
                f"Critical confirmation '{item_id}' cannot be withdrawn once given."
            )
        updated = item.model_copy(update={
            "checked": checked,
            "checked_by": actor.clinician_id if checked else None,
            "checked_at": self._clock() if checked else None,
        })
        self._items[item_id] = updated
        logger.info(
            "Confirmation item %s %s by %s",
            item_id, "checked" if checked else "unchecked", actor.clinician_id,
        )
        return updated.model_copy()

    def ensure_can_finalize(self, actor: Clinician) -> None:
        """Run every finalize precondition without changing state.

        Raises:
            PermissionDeniedError: If ``actor`` is not the receiving physician.
            AlreadyFinalizedError: If the gate is already finalized.
            NotReadyError: If a required item is unchecked.
        """
        require(
            can_confirm_synthesis(actor, self._receiving_physician),
            actor,
            "finalize_handover",
        )
        self._require_open()
        if not self.is_ready():
            missing = [item.item_id for item in self.remaining_required()]
            raise NotReadyError(
                f"Cannot finalize: {len(missing)} required confirmation(s) "
                f"outstanding: {missing}"
            )

    def finalize(self, actor: Clinician) -> datetime:
        """Terminal transition; returns the finalization time."""
        self.ensure_can_finalize(actor)
        self._finalized_by = actor.clinician_id
        self._finalized_at = self._clock()
        logger.info("Confirmation gate finalized by %s", actor.clinician_id)
        return self._finalized_at

    # -- helpers --

    def _lookup(self, item_id: str) -> ChecklistItem:
        try:
            return self._items[item_id]
        except KeyError:
            raise ValidationError(f"Unknown confirmation item '{item_id}'.") from None

    def _require_open(self) -> None:
        if self.finalized:
            raise AlreadyFinalizedError(
                f"Handover already finalized by '{self._finalized_by}'."
            )
