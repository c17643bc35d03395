"""Pending-action staging package."""

from ledger_intake.staging.signing import (
    SIGNATURE_HEADER,
    SignatureMismatch,
    canonical_json,
    compute_signature,
    verify_signature,
)
from ledger_intake.staging.stager import PendingActionStager, make_batch_id

__all__ = [
    "SIGNATURE_HEADER",
    "PendingActionStager",
    "SignatureMismatch",
    "canonical_json",
    "compute_signature",
    "make_batch_id",
    "verify_signature",
]
