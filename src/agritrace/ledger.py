"""
Ledger clients that anchor batch fingerprints.

The registry contract exposes two calls:

    registerBatch(string batchId, bytes32 hash)
    getBatchHash(string batchId) returns (bytes32 hash, uint256 timestamp, address registrar)

``getBatchHash`` answers with an all-zero hash for a batch that was never
registered.
"""

import logging
import threading
import time
from dataclasses import dataclass
from typing import Dict, Optional, Protocol

from web3 import Web3

from .fingerprint import ZERO_FINGERPRINT, is_fingerprint

logger = logging.getLogger(__name__)

ZERO_ADDRESS = "0x" + "0" * 40

BATCH_REGISTRY_ABI = [
    {
        "type": "function",
        "name": "registerBatch",
        "stateMutability": "nonpayable",
        "inputs": [
            {"name": "_batchId", "type": "string"},
            {"name": "_hash", "type": "bytes32"},
        ],
        "outputs": [],
    },
    {
        "type": "function",
        "name": "getBatchHash",
        "stateMutability": "view",
        "inputs": [{"name": "_batchId", "type": "string"}],
        "outputs": [
            {"name": "", "type": "bytes32"},
            {"name": "", "type": "uint256"},
            {"name": "", "type": "address"},
        ],
    },
]


class LedgerError(RuntimeError):
    """The ledger could not be reached or rejected the call."""


@dataclass(frozen=True)
class LedgerReceipt:
    transaction_ref: str
    confirmed_at: str
    submitter_address: str
    block_number: Optional[int] = None
    gas_used: Optional[int] = None


@dataclass(frozen=True)
class AnchoredFingerprint:
    fingerprint: str
    anchored_at: str
    submitter_address: str


class LedgerClient(Protocol):
    def register(self, batch_id: str, fingerprint: str) -> LedgerReceipt:
        ...

    def read_fingerprint(self, batch_id: str) -> AnchoredFingerprint:
        ...


def _now_millis() -> str:
    return str(int(time.time() * 1000))


def _raw_tx_bytes(signed) -> Optional[bytes]:
    return getattr(signed, "rawTransaction", None) or getattr(signed, "raw_transaction", None)


class Web3Ledger:
    """
    Anchors fingerprints in the batch registry contract over JSON-RPC.
    Without a private key the client is read-only and ``register`` fails.
    """

    def __init__(
        self,
        rpc_url: str,
        contract_address: str,
        private_key: Optional[str] = None,
        receipt_timeout: float = 120,
        web3: Optional[Web3] = None
    ):
        self.web3 = web3 or Web3(Web3.HTTPProvider(rpc_url))
        self.contract = self.web3.eth.contract(
            address=Web3.to_checksum_address(contract_address),
            abi=BATCH_REGISTRY_ABI,
        )
        self.account = self.web3.eth.account.from_key(private_key) if private_key else None
        self.receipt_timeout = receipt_timeout

    @property
    def can_write(self) -> bool:
        return self.account is not None

    def register(self, batch_id: str, fingerprint: str) -> LedgerReceipt:
        if self.account is None:
            raise LedgerError("No submitter key configured; ledger is read-only")
        if not is_fingerprint(fingerprint):
            raise ValueError(f"Not a fingerprint: {fingerprint!r}")

        try:
            fn = self.contract.functions.registerBatch(
                batch_id, Web3.to_bytes(hexstr=fingerprint)
            )
            txn = fn.build_transaction({
                "from": self.account.address,
                "nonce": self.web3.eth.get_transaction_count(self.account.address, "pending"),
                "chainId": self.web3.eth.chain_id,
            })
            signed = self.account.sign_transaction(txn)
            raw = _raw_tx_bytes(signed)
            if raw is None:
                raise LedgerError("Unable to read signed raw transaction")

            tx_hash = self.web3.eth.send_raw_transaction(raw)
            logger.info("Transaction sent for batch %s: %s", batch_id, Web3.to_hex(tx_hash))
            receipt = self.web3.eth.wait_for_transaction_receipt(
                tx_hash, timeout=self.receipt_timeout
            )
        except LedgerError:
            raise
        except Exception as e:
            raise LedgerError(f"registerBatch failed: {e}") from e

        if receipt["status"] != 1:
            raise LedgerError(f"registerBatch reverted in transaction {Web3.to_hex(tx_hash)}")

        logger.info("Transaction confirmed in block %s", receipt["blockNumber"])
        return LedgerReceipt(
            transaction_ref=Web3.to_hex(receipt["transactionHash"]),
            confirmed_at=_now_millis(),
            submitter_address=receipt["from"],
            block_number=receipt["blockNumber"],
            gas_used=receipt["gasUsed"],
        )

    def read_fingerprint(self, batch_id: str) -> AnchoredFingerprint:
        try:
            hash_bytes, timestamp, registrar = self.contract.functions.getBatchHash(batch_id).call()
        except Exception as e:
            raise LedgerError(f"getBatchHash failed: {e}") from e
        return AnchoredFingerprint(
            fingerprint=Web3.to_hex(hash_bytes),
            anchored_at=str(timestamp),
            submitter_address=registrar,
        )


class InMemoryLedger:
    """
    Process-local ledger with the contract's semantics: a fingerprint can be
    registered once per batch, unknown batches read as the zero sentinel.
    """

    def __init__(self, submitter_address: str = "0x000000000000000000000000000000000000a11c"):
        self.submitter_address = submitter_address
        self._entries: Dict[str, AnchoredFingerprint] = {}
        self._lock = threading.Lock()
        self._tx_count = 0

    def register(self, batch_id: str, fingerprint: str) -> LedgerReceipt:
        if not is_fingerprint(fingerprint):
            raise ValueError(f"Not a fingerprint: {fingerprint!r}")
        with self._lock:
            if batch_id in self._entries:
                raise LedgerError(f"Batch {batch_id} already registered")
            self._tx_count += 1
            confirmed_at = _now_millis()
            self._entries[batch_id] = AnchoredFingerprint(
                fingerprint=fingerprint.lower(),
                anchored_at=confirmed_at,
                submitter_address=self.submitter_address,
            )
            block_number = self._tx_count
            tx_ref = "0x" + format(block_number, "064x")
        return LedgerReceipt(
            transaction_ref=tx_ref,
            confirmed_at=confirmed_at,
            submitter_address=self.submitter_address,
            block_number=block_number,
        )

    def read_fingerprint(self, batch_id: str) -> AnchoredFingerprint:
        with self._lock:
            entry = self._entries.get(batch_id)
        if entry is None:
            return AnchoredFingerprint(ZERO_FINGERPRINT, "0", ZERO_ADDRESS)
        return entry
