"""
RELEVO Handover Core
====================

The workflow core of an I-PASS shift-handover tool (Illness severity,
Patient summary, Action list, Situation awareness, Synthesis by receiver).

An outgoing clinician documents each patient's state in a five-section
document; the incoming clinician reviews it, works through a confirmation
checklist and formally accepts responsibility.  Handover for a patient is
complete only when that receiving clinician finalizes it.

DISCLAIMER: This package records handover documentation.  It does not make
clinical decisions, and identity of the acting clinician is assumed to be
verified by the hosting application.
"""

__version__ = "0.1.0"
