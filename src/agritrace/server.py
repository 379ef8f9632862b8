import hmac
import logging
import os
from datetime import datetime, timezone
from typing import Dict, Any, Optional, List
from fastapi import Depends, FastAPI, Header, HTTPException, Body, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel
from .ledger import InMemoryLedger, LedgerClient, Web3Ledger
from .registry import (
    BatchNotFoundError,
    BatchRegistry,
    BatchValidationError,
    DuplicateBatchError,
    RegistrationResult,
)
from .store import BatchStore

logger = logging.getLogger(__name__)

# --- Configuration ---
DB_PATH = os.getenv("AGRITRACE_DB_PATH", "batches.db")
DEFAULT_ADMIN_PASSWORD = "admin123"
ADMIN_PASSWORD = os.getenv("ADMIN_PASSWORD", DEFAULT_ADMIN_PASSWORD)
LEDGER_BACKEND = os.getenv("LEDGER_BACKEND", "web3")
RPC_URL = os.getenv("RPC_URL", "https://rpc-amoy.polygon.technology")
CONTRACT_ADDRESS = os.getenv("CONTRACT_ADDRESS")
PRIVATE_KEY = os.getenv("PRIVATE_KEY")
LEDGER_RECEIPT_TIMEOUT = float(os.getenv("LEDGER_RECEIPT_TIMEOUT", "120"))
FRONTEND_URL = os.getenv("FRONTEND_URL", "http://localhost:3000")
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")


def configure_logging(level: str = LOG_LEVEL) -> None:
    logging.basicConfig(
        level=level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def build_ledger() -> Optional[LedgerClient]:
    """
    Ledger client selected by LEDGER_BACKEND: "web3" (needs CONTRACT_ADDRESS),
    "memory" for local development, or "none".
    """
    backend = LEDGER_BACKEND.lower()
    if backend == "memory":
        logger.warning("Using in-memory ledger; anchors are lost on restart")
        return InMemoryLedger()
    if backend == "none" or not CONTRACT_ADDRESS:
        return None
    if backend != "web3":
        raise ValueError(f"Unknown LEDGER_BACKEND: {LEDGER_BACKEND}")
    return Web3Ledger(
        RPC_URL,
        CONTRACT_ADDRESS,
        private_key=PRIVATE_KEY,
        receipt_timeout=LEDGER_RECEIPT_TIMEOUT,
    )


# --- Models ---
class PasswordRequest(BaseModel):
    password: str = ""


class VerificationModel(BaseModel):
    status: str
    blockchain_hash: Optional[str] = None
    current_hash: str


class BatchDetailResponse(BaseModel):
    batch: Dict[str, Any]
    verification: VerificationModel


class VerifyResponse(BaseModel):
    verified: bool
    status: str
    blockchain_hash: Optional[str] = None
    current_hash: str
    reason: Optional[str] = None
    timestamp: Optional[str] = None
    registrar: Optional[str] = None


class BatchListResponse(BaseModel):
    batches: List[Dict[str, Any]]
    count: int


class SearchResponse(BaseModel):
    query: str
    results: List[Dict[str, Any]]
    count: int


class StatsResponse(BaseModel):
    dashboard: Dict[str, int]


# --- Helpers ---
def registration_payload(result: RegistrationResult) -> Dict[str, Any]:
    body: Dict[str, Any] = {
        "success": True,
        "batch": result.record,
        "batchHash": result.batch_hash,
        "state": result.state.value,
    }
    if result.receipt is not None:
        body["blockchain"] = {
            "txHash": result.receipt.transaction_ref,
            "blockNumber": result.receipt.block_number,
            "gasUsed": None if result.receipt.gas_used is None else str(result.receipt.gas_used),
            "from": result.receipt.submitter_address,
        }
    if result.warning:
        body["warning"] = result.warning
    if result.ledger_error:
        body["blockchainError"] = result.ledger_error
    return body


def get_registry(request: Request) -> BatchRegistry:
    registry = request.app.state.registry
    if registry is None:
        raise HTTPException(status_code=503, detail="Registry not initialized")
    return registry


def require_admin(authorization: Optional[str] = Header(None)) -> None:
    if not authorization:
        raise HTTPException(
            status_code=401,
            detail="Please provide admin password in Authorization header",
        )
    password = authorization[len("Bearer "):] if authorization.startswith("Bearer ") else authorization
    if not hmac.compare_digest(password.encode("utf-8"), ADMIN_PASSWORD.encode("utf-8")):
        raise HTTPException(status_code=403, detail="Incorrect admin password")


# --- Application ---
def create_app(registry: Optional[BatchRegistry] = None) -> FastAPI:
    """
    Build the HTTP service. Without an injected registry, one is built from
    the environment on startup.
    """
    app = FastAPI(
        title="Agricultural Batch Registry",
        version="0.1.0",
        description="Registers farm batch records and verifies them against fingerprints anchored on a ledger.",
    )
    app.state.registry = registry

    app.add_middleware(
        CORSMiddleware,
        allow_origins=[FRONTEND_URL],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.on_event("startup")
    def startup_event():
        if app.state.registry is not None:
            return
        ledger = build_ledger()
        app.state.registry = BatchRegistry(BatchStore(DB_PATH), ledger)
        logger.info("Store: %s", DB_PATH)
        logger.info("Ledger: %s", "configured" if ledger is not None else "not configured")
        if ADMIN_PASSWORD == DEFAULT_ADMIN_PASSWORD:
            logger.warning("Admin password is the default; set ADMIN_PASSWORD")

    # --- Routes ---

    @app.get("/health")
    def health(registry: BatchRegistry = Depends(get_registry)):
        return {
            "status": "healthy",
            "database": "connected" if registry.store.ping() else "disconnected",
            "blockchain": "configured" if registry.ledger is not None else "not configured",
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }

    @app.post("/api/admin/verify-password")
    def verify_password(req: PasswordRequest):
        if hmac.compare_digest(req.password.encode("utf-8"), ADMIN_PASSWORD.encode("utf-8")):
            return {"valid": True}
        raise HTTPException(status_code=401, detail={"valid": False})

    @app.post("/api/admin/batches", dependencies=[Depends(require_admin)])
    def create_batch(
        payload: Dict[str, Any] = Body(...),
        registry: BatchRegistry = Depends(get_registry)
    ):
        """
        Create a batch, fingerprint it and anchor the fingerprint.
        A ledger failure still returns success, with a warning.
        """
        try:
            result = registry.create_batch(payload)
        except BatchValidationError as e:
            raise HTTPException(status_code=400, detail=str(e))
        except DuplicateBatchError as e:
            raise HTTPException(status_code=409, detail=str(e))
        return registration_payload(result)

    @app.post("/api/admin/batches/{batch_id}/anchor", dependencies=[Depends(require_admin)])
    def anchor_batch(batch_id: str, registry: BatchRegistry = Depends(get_registry)):
        try:
            result = registry.anchor_batch(batch_id)
        except BatchNotFoundError:
            raise HTTPException(status_code=404, detail=f"No batch found with ID: {batch_id}")
        return registration_payload(result)

    @app.get("/api/batches", response_model=BatchListResponse)
    def list_batches(registry: BatchRegistry = Depends(get_registry)):
        batches = registry.list_batches()
        return BatchListResponse(batches=batches, count=len(batches))

    @app.get("/api/batches/{batch_id}", response_model=BatchDetailResponse)
    def get_batch(batch_id: str, registry: BatchRegistry = Depends(get_registry)):
        """
        Returns the stored batch and its verification against the ledger.
        """
        try:
            batch = registry.get_batch(batch_id)
        except BatchNotFoundError:
            raise HTTPException(status_code=404, detail=f"No batch found with ID: {batch_id}")
        result = registry.verify_record(batch_id, batch)
        return BatchDetailResponse(
            batch=batch,
            verification=VerificationModel(
                status=result.outcome.value,
                blockchain_hash=result.anchored_hash,
                current_hash=result.computed_hash,
            ),
        )

    @app.post("/api/verify/{batch_id}", response_model=VerifyResponse)
    def verify_batch(batch_id: str, registry: BatchRegistry = Depends(get_registry)):
        try:
            result = registry.verify_batch(batch_id)
        except BatchNotFoundError:
            raise HTTPException(status_code=404, detail="Batch not found")
        return VerifyResponse(**result.to_dict())

    @app.get("/api/search", response_model=SearchResponse)
    def search(q: str = Query(""), registry: BatchRegistry = Depends(get_registry)):
        if not q.strip():
            raise HTTPException(
                status_code=400,
                detail='Please provide a search query parameter "q"',
            )
        results = registry.search(q.strip())
        return SearchResponse(query=q, results=results, count=len(results))

    @app.get("/api/stats", response_model=StatsResponse)
    def stats(registry: BatchRegistry = Depends(get_registry)):
        return StatsResponse(dashboard=registry.dashboard())

    return app


app = create_app()

if __name__ == "__main__":
    import uvicorn
    configure_logging()
    uvicorn.run(app, host="0.0.0.0", port=int(os.getenv("PORT", "4000")))
