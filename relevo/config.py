"""
Unit Policy Configuration for the handover core.

Every clinical unit (PICU, internal medicine ward, emergency department)
runs handover a little differently: how aggressively edits are saved, how
concurrent edits are arbitrated, whether contingency plans from an earlier
shift may be deleted, and which confirmation items the receiving clinician
must work through.  Those choices are captured here as validated policy
objects, loadable from YAML and looked up per ``unit_id``.
"""

from __future__ import annotations

import copy
import enum
from pathlib import Path

import yaml
from pydantic import BaseModel, Field, field_validator


# ---------------------------------------------------------------------------
# Sync settings
# ---------------------------------------------------------------------------

class SyncSettings(BaseModel):
    """Timing of section persistence."""

    debounce_seconds: float = Field(
        default=1.0,
        ge=0,
        description=(
            "Quiet period after the last edit before the section is saved. "
            "Avoids one save per keystroke.  Zero saves immediately."
        ),
    )
    reconnect_attempts: int = Field(
        default=3,
        ge=1,
        description="Save attempts for pending content when connectivity returns.",
    )
    reconnect_backoff_seconds: float = Field(
        default=0.5,
        ge=0,
        description="Base delay between reconnect attempts; doubles per attempt.",
    )


class ConflictPolicy(str, enum.Enum):
    """Arbitration of edits to the same free-text section by different clinicians.

    * ``LAST_WRITER_WINS`` -- an edit whose timestamp is older than the
      section's latest edit by someone else is rejected as stale.
    * ``ARRIVAL_ORDER``    -- edits apply in the order they are received.
    """

    LAST_WRITER_WINS = "last_writer_wins"
    ARRIVAL_ORDER = "arrival_order"


# ---------------------------------------------------------------------------
# Confirmation checklist templates
# ---------------------------------------------------------------------------

class ChecklistItemTemplate(BaseModel):
    """Definition of one confirmation item; instantiated per patient."""

    item_id: str = Field(..., min_length=1)
    label: str = Field(..., min_length=1)
    description: str = ""
    required: bool = True
    critical: bool = False


DEFAULT_CONFIRMATION_ITEMS: list[ChecklistItemTemplate] = [
    ChecklistItemTemplate(
        item_id="illness-severity",
        label="I understand the patient's current illness severity and stability",
        description="Patient condition, monitoring requirements, and severity assessment",
    ),
    ChecklistItemTemplate(
        item_id="clinical-background",
        label="I have reviewed the clinical background and patient history",
        description="Medical history, allergies, code status, and baseline information",
    ),
    ChecklistItemTemplate(
        item_id="action-items",
        label="I acknowledge all pending action items and tasks",
        description="Outstanding orders, pending results, and scheduled interventions",
    ),
    ChecklistItemTemplate(
        item_id="contingency-plans",
        label="I understand the contingency plans and potential complications",
        description="If-then scenarios, escalation triggers, and emergency protocols",
    ),
    ChecklistItemTemplate(
        item_id="questions-answered",
        label="All my questions have been answered satisfactorily",
        description="Any clarifications or concerns have been addressed",
    ),
    ChecklistItemTemplate(
        item_id="accept-responsibility",
        label="I formally accept clinical responsibility for this patient",
        description="Official transfer of care and responsibility",
        critical=True,
    ),
    ChecklistItemTemplate(
        item_id="documentation",
        label="All documentation is complete and accurate",
        required=False,
    ),
    ChecklistItemTemplate(
        item_id="family",
        label="I am aware of family communication needs and scheduled meetings",
        required=False,
    ),
]


# ---------------------------------------------------------------------------
# Handover policy
# ---------------------------------------------------------------------------

class HandoverPolicy(BaseModel):
    """Complete handover policy for one clinical unit."""

    unit_id: str = Field(..., min_length=1)
    unit_name: str = Field(..., min_length=1)
    sync: SyncSettings = Field(default_factory=SyncSettings)
    conflict_policy: ConflictPolicy = ConflictPolicy.LAST_WRITER_WINS
    contingency_delete_requires_current_shift: bool = Field(
        default=False,
        description=(
            "Restrict deletion of contingency plans to plans created in the "
            "current shift transition, as for action items."
        ),
    )
    confirmation_items: list[ChecklistItemTemplate] = Field(
        default_factory=lambda: copy.deepcopy(DEFAULT_CONFIRMATION_ITEMS),
    )

    @field_validator("confirmation_items")
    @classmethod
    def validate_confirmation_items(
        cls, v: list[ChecklistItemTemplate]
    ) -> list[ChecklistItemTemplate]:
        ids = [item.item_id for item in v]
        duplicates = sorted({i for i in ids if ids.count(i) > 1})
        if duplicates:
            raise ValueError(f"Duplicate confirmation item ids: {duplicates}")
        if not any(item.required for item in v):
            raise ValueError("At least one confirmation item must be required.")
        return v


DEFAULT_POLICY = HandoverPolicy(
    unit_id="default",
    unit_name="Default Handover Policy",
)
"""Built-in policy used when no unit-specific policy is configured."""


# ---------------------------------------------------------------------------
# Policy registry
# ---------------------------------------------------------------------------

class PolicyRegistry:
    """In-memory registry of unit policies keyed by ``unit_id``.

    Stored and returned policies are deep copies, so callers cannot alter a
    registered policy by mutating the object they hold.
    """

    def __init__(self) -> None:
        self._policies: dict[str, HandoverPolicy] = {}

    def register(self, policy: HandoverPolicy) -> None:
        """Register a new unit policy.

        Raises:
            ValueError: If ``unit_id`` is already registered.
        """
        if policy.unit_id in self._policies:
            raise ValueError(
                f"Policy for unit_id '{policy.unit_id}' already registered. "
                "Use update() to modify an existing policy."
            )
        self._policies[policy.unit_id] = copy.deepcopy(policy)

    def get(self, unit_id: str) -> HandoverPolicy:
        """Return a copy of the unit's policy.

        Raises:
            KeyError: If no policy is registered for ``unit_id``.
        """
        if unit_id not in self._policies:
            raise KeyError(f"No policy registered for unit_id '{unit_id}'")
        return copy.deepcopy(self._policies[unit_id])

    def get_or_default(self, unit_id: str) -> HandoverPolicy:
        if unit_id in self._policies:
            return self.get(unit_id)
        return copy.deepcopy(DEFAULT_POLICY)

    def update(self, policy: HandoverPolicy) -> None:
        """Replace an existing unit policy.

        Raises:
            KeyError: If the unit has no registered policy.
        """
        if policy.unit_id not in self._policies:
            raise KeyError(
                f"Cannot update: no policy registered for unit_id '{policy.unit_id}'"
            )
        self._policies[policy.unit_id] = copy.deepcopy(policy)

    def list_units(self) -> list[str]:
        return sorted(self._policies.keys())

    def __len__(self) -> int:
        return len(self._policies)

    def __contains__(self, unit_id: str) -> bool:
        return unit_id in self._policies


# ---------------------------------------------------------------------------
# YAML loader
# ---------------------------------------------------------------------------

def load_policies_from_yaml(path: str | Path) -> list[HandoverPolicy]:
    """Load unit policies from a YAML file.

    Example YAML structure::

        policies:
          - unit_id: "picu"
            unit_name: "Pediatric Intensive Care"
            sync:
              debounce_seconds: 2.0
            contingency_delete_requires_current_shift: true

    Args:
        path: Path to the YAML file.

    Returns:
        List of validated ``HandoverPolicy`` instances.

    Raises:
        FileNotFoundError: If the file does not exist.
        ValueError: If the YAML structure is invalid.
        pydantic.ValidationError: If any policy fails validation.
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Policy file not found: {path}")

    with open(path, "r", encoding="utf-8") as f:
        raw = yaml.safe_load(f)

    if not isinstance(raw, dict) or "policies" not in raw:
        raise ValueError(
            "YAML file must contain a top-level 'policies' key with a list of policy objects."
        )

    entries = raw["policies"]
    if not isinstance(entries, list):
        raise ValueError("'policies' must be a list of policy objects.")

    policies: list[HandoverPolicy] = []
    for idx, entry in enumerate(entries):
        if not isinstance(entry, dict):
            raise ValueError(f"Policy entry at index {idx} must be a mapping.")
        policies.append(HandoverPolicy.model_validate(entry))

    return policies
