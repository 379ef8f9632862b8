import logging
import sqlite3
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from .fingerprint import (
    RecordState,
    VerificationOutcome,
    VerificationResult,
    fingerprint,
    record_state,
    verification_failed,
    verify,
)
from .ledger import LedgerClient, LedgerError, LedgerReceipt
from .store import BatchStore

logger = logging.getLogger(__name__)

# Optional farmer fields; falsy values are stored as null.
FARMER_FIELDS = (
    "age",
    "farmer_info",
    "total_land_nali",
    "cultivated_land_nali",
    "cultivated_land_acre",
    "packaging_status",
    "crop_rotation",
    "yield_profile",
    "season_calendar",
    "post_harvest_info",
    "media",
    "locations",
    "soil_organic_carbon",
)

LEDGER_NOT_CONFIGURED = "Ledger not configured"
LEDGER_REGISTRATION_FAILED = "Batch created but blockchain registration failed"


class BatchValidationError(ValueError):
    """The batch payload is missing mandatory fields or holds non-JSON values."""


class DuplicateBatchError(ValueError):
    """A batch with this identifier already exists."""


class BatchNotFoundError(KeyError):
    """No batch is stored under this identifier."""


def _iso_now(now: Optional[datetime] = None) -> str:
    now = now or datetime.now(timezone.utc)
    return now.astimezone(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def validate_batch_payload(payload: Dict[str, Any]) -> None:
    """
    Raise BatchValidationError unless the payload carries a batch_id, a
    product, a named village and at least one farmer.
    """
    if not isinstance(payload, dict):
        raise BatchValidationError("Batch payload must be an object")
    if not payload.get("batch_id") or not payload.get("product"):
        raise BatchValidationError("batch_id and product are required")
    if not isinstance(payload["batch_id"], str) or not isinstance(payload["product"], str):
        raise BatchValidationError("batch_id and product must be strings")
    village = payload.get("village")
    if not isinstance(village, dict) or not village.get("name"):
        raise BatchValidationError("Village name is required")
    if not isinstance(village["name"], str):
        raise BatchValidationError("Village name must be a string")
    farmers = payload.get("farmers")
    if not isinstance(farmers, list) or not farmers:
        raise BatchValidationError("At least one farmer is required")
    for farmer in farmers:
        if not isinstance(farmer, dict):
            raise BatchValidationError("Each farmer must be an object")


def build_batch_record(
    batch_id: str,
    product: str,
    village: Dict[str, Any],
    farmers: List[Dict[str, Any]],
    now: Optional[datetime] = None
) -> Dict[str, Any]:
    """
    Shape operator input into the stored record layout. Provenance fields
    start out null and are filled in after fingerprinting.
    """
    timestamp = _iso_now(now)
    return {
        "batch_id": batch_id,
        "product": product,
        "batch_hash": None,
        "blockchain_tx_hash": None,
        "blockchain_timestamp": None,
        "blockchain_registrar": None,
        "created_at": timestamp,
        "updated_at": timestamp,
        "village": {
            "name": village.get("name"),
            "district": village.get("district"),
            "state": village.get("state"),
            "elevation_m": village.get("elevation_m") or None,
            "village_info": village.get("village_info") or None,
        },
        "farmers": [_build_farmer(f) for f in farmers],
    }


def _build_farmer(farmer: Dict[str, Any]) -> Dict[str, Any]:
    entry = {
        "farmer_name": farmer.get("farmer_name"),
        "gender": farmer.get("gender") or "male",
    }
    for field in FARMER_FIELDS:
        entry[field] = farmer.get(field) or None
    return entry


def batch_summary(record: Dict[str, Any]) -> Dict[str, Any]:
    village = record.get("village") or {}
    return {
        "batch_id": record.get("batch_id"),
        "product": record.get("product"),
        "batch_hash": record.get("batch_hash"),
        "blockchain_tx_hash": record.get("blockchain_tx_hash"),
        "blockchain_timestamp": record.get("blockchain_timestamp"),
        "blockchain_registrar": record.get("blockchain_registrar"),
        "created_at": record.get("created_at"),
        "updated_at": record.get("updated_at"),
        "village_name": village.get("name"),
        "district": village.get("district"),
        "state": village.get("state"),
        "farmer_count": len(record.get("farmers") or []),
    }


def search_summary(record: Dict[str, Any]) -> Dict[str, Any]:
    village = record.get("village") or {}
    return {
        "batch_id": record.get("batch_id"),
        "product": record.get("product"),
        "batch_hash": record.get("batch_hash"),
        "blockchain_tx_hash": record.get("blockchain_tx_hash"),
        "created_at": record.get("created_at"),
        "village_name": village.get("name"),
        "district": village.get("district"),
        "state": village.get("state"),
    }


@dataclass
class RegistrationResult:
    record: Dict[str, Any]
    batch_hash: str
    state: RecordState
    receipt: Optional[LedgerReceipt] = None
    warning: Optional[str] = None
    ledger_error: Optional[str] = None

    @property
    def anchored(self) -> bool:
        return self.state is RecordState.ANCHORED


class BatchRegistry:
    """
    Registers batch records and checks them against the ledger.
    Local persistence always happens first; anchoring is a follow-up step
    whose failure leaves the record REGISTERED_LOCAL.
    """

    def __init__(self, store: BatchStore, ledger: Optional[LedgerClient] = None):
        self.store = store
        self.ledger = ledger

    def create_batch(self, payload: Dict[str, Any], now: Optional[datetime] = None) -> RegistrationResult:
        """
        Validate, fingerprint, persist and anchor a new batch.

        Raises:
            BatchValidationError: mandatory fields missing, or values outside JSON.
            DuplicateBatchError: batch_id already registered.
        """
        validate_batch_payload(payload)
        batch_id = payload["batch_id"]

        record = build_batch_record(
            batch_id,
            payload["product"],
            payload["village"],
            payload["farmers"],
            now=now,
        )
        try:
            record["batch_hash"] = fingerprint(record)
        except (TypeError, ValueError) as e:
            raise BatchValidationError(f"Batch record is not valid JSON data: {e}") from e

        try:
            self.store.insert(batch_id, record)
        except sqlite3.IntegrityError:
            raise DuplicateBatchError(f"Batch {batch_id} already exists")
        logger.info("Batch %s stored with hash %s", batch_id, record["batch_hash"])

        return self._anchor(batch_id, record)

    def anchor_batch(self, batch_id: str) -> RegistrationResult:
        """
        Anchor the stored fingerprint of a REGISTERED_LOCAL batch.
        Already anchored batches are returned unchanged.
        """
        record = self.get_batch(batch_id)
        state = record_state(record)
        if state is RecordState.ANCHORED:
            return RegistrationResult(record, record["batch_hash"], state)
        if state is RecordState.UNREGISTERED:
            record["batch_hash"] = fingerprint(record)
            self.store.put(batch_id, record)
        return self._anchor(batch_id, record)

    def _anchor(self, batch_id: str, record: Dict[str, Any]) -> RegistrationResult:
        batch_hash = record["batch_hash"]
        if self.ledger is None:
            return RegistrationResult(
                record, batch_hash, RecordState.REGISTERED_LOCAL, warning=LEDGER_NOT_CONFIGURED
            )

        try:
            logger.info("Registering batch %s on ledger...", batch_id)
            receipt = self.ledger.register(batch_id, batch_hash)
        except LedgerError as e:
            logger.warning("Ledger registration failed for batch %s: %s", batch_id, e)
            return RegistrationResult(
                record,
                batch_hash,
                RecordState.REGISTERED_LOCAL,
                warning=LEDGER_REGISTRATION_FAILED,
                ledger_error=str(e),
            )

        updated = self.store.update_ledger_info(
            batch_id,
            receipt.transaction_ref,
            receipt.confirmed_at,
            receipt.submitter_address,
            _iso_now(),
        )
        logger.info("Batch %s anchored in %s", batch_id, receipt.transaction_ref)
        return RegistrationResult(updated, batch_hash, RecordState.ANCHORED, receipt=receipt)

    def get_batch(self, batch_id: str) -> Dict[str, Any]:
        record = self.store.get(batch_id)
        if record is None:
            raise BatchNotFoundError(batch_id)
        return record

    def verify_batch(self, batch_id: str) -> VerificationResult:
        """
        Recompute the stored record's fingerprint and compare it with the
        one anchored on the ledger.
        """
        record = self.get_batch(batch_id)
        return self.verify_record(batch_id, record)

    def verify_record(self, batch_id: str, record: Dict[str, Any]) -> VerificationResult:
        if self.ledger is None:
            return verification_failed(record, LEDGER_NOT_CONFIGURED)

        try:
            anchored = self.ledger.read_fingerprint(batch_id)
        except LedgerError as e:
            logger.error("Ledger read failed for batch %s: %s", batch_id, e)
            return verification_failed(record, str(e))

        result = verify(record, anchored.fingerprint)
        if result.outcome in (VerificationOutcome.VERIFIED, VerificationOutcome.TAMPERED):
            result = replace(
                result,
                anchored_at=anchored.anchored_at,
                registrar=anchored.submitter_address,
            )
        if result.outcome is VerificationOutcome.TAMPERED:
            logger.warning(
                "Batch %s does not match its anchored fingerprint: computed %s, anchored %s",
                batch_id, result.computed_hash, result.anchored_hash,
            )
        return result

    def list_batches(self) -> List[Dict[str, Any]]:
        return [batch_summary(r) for r in self.store.all_records()]

    def search(self, query: str) -> List[Dict[str, Any]]:
        """Case-insensitive substring search over id, product and village location."""
        needle = query.lower()
        results = []
        for record in self.store.all_records():
            village = record.get("village") or {}
            haystack = (
                record.get("batch_id"),
                record.get("product"),
                village.get("name"),
                village.get("district"),
                village.get("state"),
            )
            if any(isinstance(v, str) and needle in v.lower() for v in haystack):
                results.append(search_summary(record))
        return results

    def dashboard(self) -> Dict[str, int]:
        return self.store.get_dashboard_stats()
