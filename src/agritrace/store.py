import sqlite3
import logging
from typing import Optional, Dict, Any, List
from .canonical_json import CanonicalJson

logger = logging.getLogger(__name__)


class BatchStore:
    """
    Persistence layer for batch records using SQLite.
    Records are stored whole, as JSON documents keyed by batch_id.
    """

    def __init__(self, db_path: str = "batches.db"):
        self.db_path = db_path
        self._init_db()

    def _init_db(self):
        with sqlite3.connect(self.db_path) as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS batches (
                    batch_id TEXT PRIMARY KEY,
                    record TEXT NOT NULL,       -- JSON document, provenance fields included
                    created_at TEXT,            -- ISO-8601, copied from the record for ordering
                    updated_at TEXT
                );
            """)
            conn.commit()

    def ping(self) -> bool:
        try:
            with sqlite3.connect(self.db_path) as conn:
                conn.execute("SELECT 1").fetchone()
            return True
        except sqlite3.Error as e:
            logger.error("Store connection test failed: %s", e)
            return False

    def get(self, batch_id: str) -> Optional[Dict[str, Any]]:
        """
        Retrieve a batch record by batch_id.
        Returns None if not found.
        """
        with sqlite3.connect(self.db_path) as conn:
            row = conn.execute(
                "SELECT record FROM batches WHERE batch_id = ?", (batch_id,)
            ).fetchone()
        if row is None:
            return None
        return CanonicalJson.loads(row[0])

    def exists(self, batch_id: str) -> bool:
        with sqlite3.connect(self.db_path) as conn:
            row = conn.execute(
                "SELECT 1 FROM batches WHERE batch_id = ?", (batch_id,)
            ).fetchone()
        return row is not None

    def insert(self, batch_id: str, record: Dict[str, Any]) -> None:
        """
        Store a new batch record.
        Raises sqlite3.IntegrityError if batch_id already exists (idempotency guard).
        """
        with sqlite3.connect(self.db_path) as conn:
            conn.execute("""
                INSERT INTO batches (batch_id, record, created_at, updated_at)
                VALUES (?, ?, ?, ?)
            """, (
                batch_id,
                CanonicalJson.dumps(record),
                record.get("created_at"),
                record.get("updated_at"),
            ))
            conn.commit()

    def put(self, batch_id: str, record: Dict[str, Any]) -> None:
        """
        Store a batch record, replacing any record with the same batch_id.
        """
        with sqlite3.connect(self.db_path) as conn:
            conn.execute("""
                INSERT INTO batches (batch_id, record, created_at, updated_at)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(batch_id) DO UPDATE SET
                    record = excluded.record,
                    created_at = excluded.created_at,
                    updated_at = excluded.updated_at
            """, (
                batch_id,
                CanonicalJson.dumps(record),
                record.get("created_at"),
                record.get("updated_at"),
            ))
            conn.commit()

    def update_ledger_info(
        self,
        batch_id: str,
        tx_hash: str,
        timestamp: str,
        registrar: str,
        updated_at: str
    ) -> Dict[str, Any]:
        """
        Write the ledger provenance fields onto a stored record.
        Raises KeyError if the batch does not exist.
        """
        record = self.get(batch_id)
        if record is None:
            raise KeyError(batch_id)
        record.update({
            "blockchain_tx_hash": tx_hash,
            "blockchain_timestamp": timestamp,
            "blockchain_registrar": registrar,
            "updated_at": updated_at,
        })
        self.put(batch_id, record)
        return record

    def all_records(self) -> List[Dict[str, Any]]:
        """All records, newest first."""
        with sqlite3.connect(self.db_path) as conn:
            rows = conn.execute(
                "SELECT record FROM batches ORDER BY created_at DESC, batch_id"
            ).fetchall()
        return [CanonicalJson.loads(r[0]) for r in rows]

    def get_dashboard_stats(self) -> Dict[str, int]:
        """
        Compute aggregated counts for the dashboard.
        """
        villages = set()
        total = 0
        total_farmers = 0
        anchored = 0

        for record in self.all_records():
            total += 1
            village = record.get("village") or {}
            if village.get("name"):
                villages.add(village["name"])
            total_farmers += len(record.get("farmers") or [])
            if record.get("blockchain_tx_hash"):
                anchored += 1

        return {
            "total_batches": total,
            "total_farmers": total_farmers,
            "total_villages": len(villages),
            "verified_batches": anchored,
        }
