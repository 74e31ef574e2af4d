"""
Handover Walkthrough: Day to Evening shift on a PICU
====================================================

This script runs one shift transition through the RELEVO handover core
using synthetic patients.  No real patient data is used.

Steps demonstrated:
  1. Load the unit policy from YAML
  2. Carry open work over from the night shift
  3. Edit I-PASS sections (including a denied edit)
  4. Survive a save failure and a connectivity drop
  5. Work through the receiving physician's checklist and finalize
  6. Generate a handover summary report
  7. Export the audit trail for review

Usage:
    python -m examples.handover_walkthrough
    # or: python examples/handover_walkthrough.py
"""

from __future__ import annotations

import asyncio
import json
import logging
import sys
from pathlib import Path

# Ensure the project root is on the path
sys.path.insert(0, str(Path(__file__).parent.parent))

from relevo.audit import AuditLog
from relevo.config import PolicyRegistry, SyncSettings, load_policies_from_yaml
from relevo.document import IPassDocument
from relevo.models import (
    Alert,
    AlertLevel,
    Clinician,
    Collaborator,
    IllnessSeverity,
    Patient,
    Priority,
    SectionKind,
    make_shift_tag,
)
from relevo.services import (
    InMemoryPatientProvider,
    InMemoryPersistenceService,
    StaticPresenceService,
)
from relevo.session import HandoverSession


def _banner(text: str) -> None:
    print(f"\n{'=' * 60}")
    print(f"  {text}")
    print(f"{'=' * 60}\n")


def _show(label: str, result) -> None:
    outcome = "ok" if result.ok else f"rejected ({result.error_code})"
    print(f"  {label}: {outcome}")


async def main() -> None:
    logging.basicConfig(level=logging.WARNING, format="%(levelname)s %(name)s: %(message)s")
    _banner("RELEVO Handover Walkthrough: PICU Day→Evening")
    print("All patients in this demo are synthetic.\n")

    # ------------------------------------------------------------------
    # Step 1: Unit policy
    # ------------------------------------------------------------------
    _banner("Step 1: Load Unit Policy")

    registry = PolicyRegistry()
    for loaded in load_policies_from_yaml(Path(__file__).parent / "unit_policies.yaml"):
        registry.register(loaded)
    policy = registry.get("picu")
    # Save immediately so the walkthrough does not wait on debounce timers.
    policy.sync = SyncSettings(debounce_seconds=0, reconnect_attempts=3, reconnect_backoff_seconds=0)
    print(f"Units configured: {registry.list_units()}")
    print(f"Using: {policy.unit_name} (conflict policy: {policy.conflict_policy.value})")

    # ------------------------------------------------------------------
    # Step 2: Patients and carry-over
    # ------------------------------------------------------------------
    _banner("Step 2: Patients and Night Shift Carry-Over")

    johnson = Clinician(clinician_id="dr-johnson", name="Dr. Johnson", role="Day Attending")
    patel = Clinician(clinician_id="dr-patel", name="Dr. Patel", role="Evening Attending")
    park = Clinician(clinician_id="dr-park", name="Dr. Park", role="Night Attending")
    nurse = Clinician(clinician_id="rn-lee", name="Sam Lee", role="Charge Nurse")

    maria = Patient(
        patient_id="PICU-01",
        name="Maria Rodriguez",
        room="PICU-01",
        diagnosis="Bronchiolitis",
        illness_severity=IllnessSeverity.WATCHER,
        assigned_physician=johnson,
        receiving_physician=patel,
        alerts=(Alert(patient_id="PICU-01", level=AlertLevel.HIGH, description="Penicillin allergy"),),
    )
    james = Patient(
        patient_id="PICU-02",
        name="James Wilson",
        room="PICU-02",
        diagnosis="Post-op appendectomy",
        assigned_physician=johnson,
        receiving_physician=patel,
    )

    night_doc = IPassDocument(maria, make_shift_tag("Night", "Day"), policy=policy)
    carried = night_doc.add_action_item(park, "Follow up on blood culture", priority=Priority.HIGH)
    night_doc.add_contingency_plan(park, "If SpO2 < 90%", "Increase high-flow, call PICU fellow")

    audit_log = AuditLog()
    persistence = InMemoryPersistenceService()
    presence = StaticPresenceService({
        "PICU-01": [Collaborator(collaborator_id="rn-lee", name="Sam Lee", role="Charge Nurse")],
    })
    session = HandoverSession.from_provider(
        InMemoryPatientProvider([maria, james]),
        make_shift_tag("Day", "Evening"),
        persistence,
        presence=presence,
        policy=policy,
        audit_log=audit_log,
        previous_documents={"PICU-01": night_doc},
    )
    print(f"Patients in queue: {session.total_patients}")
    print(f"Carried-over items for {maria.name}: "
          f"{[i.task for i in session.document('PICU-01').actions.items()]}")
    print(f"Alerts: {[a.description for a in session.alerts()]}")
    print(f"Also viewing: {[c.name for c in await session.active_collaborators()]}")

    # ------------------------------------------------------------------
    # Step 3: Edits
    # ------------------------------------------------------------------
    _banner("Step 3: I-PASS Edits")

    _show("Dr. Johnson sets severity to unstable",
          await session.set_illness_severity(johnson, IllnessSeverity.UNSTABLE))
    _show("Dr. Patel tries to change severity",
          await session.set_illness_severity(patel, IllnessSeverity.CRITICAL))
    _show("Dr. Johnson writes the summary",
          await session.update_patient_summary(johnson, "Day 2 bronchiolitis on high-flow 8L."))
    _show("Nurse adds an action item",
          await session.add_action_item(nurse, "Recheck blood gas at 21:00", priority=Priority.HIGH))
    _show("Dr. Johnson deletes the night shift's item",
          await session.delete_action_item(johnson, carried.item_id))
    _show("Nurse completes the night shift's item",
          await session.toggle_action_item(nurse, carried.item_id))
    _show("Nurse updates situation awareness",
          await session.update_situation_awareness(nurse, "Work of breathing improving."))
    print(f"\nSync status after flush: {(await session.flush()).value}")

    # ------------------------------------------------------------------
    # Step 4: Failures
    # ------------------------------------------------------------------
    _banner("Step 4: Save Failure and Connectivity Drop")

    persistence.fail_saves = True
    await session.update_synthesis(patel, "Understood; will watch work of breathing.")
    await session.flush()
    print(f"Synthesis after failed save: {session.sync_status('PICU-01', SectionKind.SYNTHESIS).value}")
    persistence.fail_saves = False
    session.retry("PICU-01", SectionKind.SYNTHESIS)
    await session.flush()
    print(f"Synthesis after retry:       {session.sync_status('PICU-01', SectionKind.SYNTHESIS).value}")

    session.set_online(False)
    await session.update_situation_awareness(nurse, "Work of breathing improving; feeding well.")
    print(f"While offline: {session.sync_status().value}")
    session.set_online(True)
    print(f"After reconnect: {(await session.flush()).value}")

    # ------------------------------------------------------------------
    # Step 5: Confirmation
    # ------------------------------------------------------------------
    _banner("Step 5: Confirmation Checklist and Finalize")

    gate = session.document("PICU-01").gate
    _show("Finalize before checklist", await session.finalize(patel))
    for item in gate.remaining_required():
        await session.check_confirmation_item(patel, item.item_id)
    checked, total = gate.progress()
    print(f"  Checklist: {checked}/{total} required confirmations")
    _show("Finalize", await session.finalize(patel))
    print(f"  Progress: {session.completed_count}/{session.total_patients} "
          f"({session.progress_percentage:.0f}%), elapsed {session.elapsed_display()}")

    # ------------------------------------------------------------------
    # Step 6: Report
    # ------------------------------------------------------------------
    _banner("Step 6: Handover Summary Report")
    print(json.dumps(session.report("PICU-01").to_dict(), indent=2))

    # ------------------------------------------------------------------
    # Step 7: Audit export
    # ------------------------------------------------------------------
    _banner("Step 7: Audit Trail Export")

    export = audit_log.export_for_review("PICU-01", requested_by="quality-review")
    print(json.dumps(export["export_metadata"], indent=2))
    print("\nRecent activity:")
    for entry in session.activity_feed("PICU-01", limit=5):
        print(f"  {entry.event_type.value:<24} {entry.actor_id:<12} {entry.section}")

    valid, broken_at = audit_log.verify_chain()
    print(f"\nFull chain verification: valid={valid}, broken_at={broken_at}")


if __name__ == "__main__":
    asyncio.run(main())
