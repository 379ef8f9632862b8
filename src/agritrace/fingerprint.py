import hashlib
import re
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional

from .canonical_json import canonicalize

ZERO_FINGERPRINT = "0x" + "0" * 64

_FINGERPRINT_RE = re.compile(r"^0x[0-9a-fA-F]{64}$")


class VerificationOutcome(str, Enum):
    NOT_REGISTERED = "not_registered"
    VERIFIED = "verified"
    TAMPERED = "tampered"
    VERIFICATION_FAILED = "verification_failed"


class RecordState(str, Enum):
    UNREGISTERED = "unregistered"
    REGISTERED_LOCAL = "registered_local"
    ANCHORED = "anchored"


@dataclass(frozen=True)
class VerificationResult:
    outcome: VerificationOutcome
    computed_hash: str
    anchored_hash: Optional[str] = None
    reason: Optional[str] = None
    anchored_at: Optional[str] = None
    registrar: Optional[str] = None

    @property
    def verified(self) -> bool:
        return self.outcome is VerificationOutcome.VERIFIED

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.outcome.value,
            "verified": self.verified,
            "blockchain_hash": self.anchored_hash,
            "current_hash": self.computed_hash,
            "reason": self.reason,
            "timestamp": self.anchored_at,
            "registrar": self.registrar,
        }


def fingerprint(record: Dict[str, Any]) -> str:
    """
    Compute the SHA-256 fingerprint of a batch record's canonical form.
    Returns ``0x`` followed by 64 lowercase hex characters.
    """
    return "0x" + hashlib.sha256(canonicalize(record)).hexdigest()


def is_fingerprint(value: Any) -> bool:
    return isinstance(value, str) and bool(_FINGERPRINT_RE.match(value))


def is_zero_fingerprint(value: Optional[str]) -> bool:
    """True for a missing value or the ledger's all-zero "never anchored" sentinel."""
    return not value or (is_fingerprint(value) and int(value, 16) == 0)


def verify(stored_record: Dict[str, Any], anchored_fingerprint: Optional[str]) -> VerificationResult:
    """
    Recompute the fingerprint of ``stored_record`` and classify it against
    the fingerprint read from the ledger.

    A mismatch is reported as ``TAMPERED``, not raised.
    """
    computed = fingerprint(stored_record)

    if is_zero_fingerprint(anchored_fingerprint):
        return VerificationResult(VerificationOutcome.NOT_REGISTERED, computed)

    if not is_fingerprint(anchored_fingerprint):
        return VerificationResult(
            VerificationOutcome.VERIFICATION_FAILED,
            computed,
            reason="malformed_anchored_fingerprint",
        )

    anchored = anchored_fingerprint.lower()
    if anchored == computed:
        return VerificationResult(VerificationOutcome.VERIFIED, computed, anchored)
    return VerificationResult(VerificationOutcome.TAMPERED, computed, anchored)


def verification_failed(stored_record: Dict[str, Any], reason: str) -> VerificationResult:
    """Result for when the anchored fingerprint could not be retrieved at all."""
    return VerificationResult(
        VerificationOutcome.VERIFICATION_FAILED,
        fingerprint(stored_record),
        reason=reason,
    )


def record_state(record: Optional[Dict[str, Any]]) -> RecordState:
    if not record or not record.get("batch_hash"):
        return RecordState.UNREGISTERED
    if not record.get("blockchain_tx_hash"):
        return RecordState.REGISTERED_LOCAL
    return RecordState.ANCHORED
