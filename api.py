"""
Land Claim Verifier: FastAPI Server
===================================

RESTful API over the claim verification and spatial conflict engine.

Endpoints:
    POST /claims                       Submit, verify and lock a claim
    GET  /claims/{claim_id}            Fetch a claim
    POST /claims/{claim_id}/lock       Retry the spatial lock
    POST /claims/{claim_id}/mint       Anchor Priority of Sale on the ledger
    POST /claims/{claim_id}/recheck    Re-run the conflict check (Priority of Sale)
    POST /conflicts/{record_id}/resolve  Close a conflict record
    POST /spatial/check                Evaluate a boundary without side effects
    GET  /health                       Health check / readiness probe

Run:
    uvicorn api:app --reload              # Dev (http://localhost:8000)
    uvicorn api:app --host 0.0.0.0        # Production

Docs:
    http://localhost:8000/docs             # Swagger UI (auto-generated)
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Optional

from dotenv import load_dotenv
from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from claim_verifier import __version__
from claim_verifier.config import get_settings
from claim_verifier.exceptions import (
    ClaimNotFound,
    ClaimVerificationError,
    InvalidGeometry,
    InvalidTransition,
    StorageUnavailable,
)
from claim_verifier.extractor_llm import OpenAIVision
from claim_verifier.models import (
    Boundary,
    Claim,
    ClaimIntake,
    ClaimReport,
    ConflictCheckResult,
    ConflictRecord,
    Coordinate,
    TransitionResult,
)
from claim_verifier.pipeline import ClaimVerificationPipeline
from claim_verifier.storage import InMemoryClaimStore, load_title_records

load_dotenv()

logger = logging.getLogger(__name__)


# ─── Application Lifespan (pre-build pipeline) ──────────────────────

_store: InMemoryClaimStore | None = None
_pipeline: ClaimVerificationPipeline | None = None


def build_pipeline() -> tuple[InMemoryClaimStore, ClaimVerificationPipeline]:
    """In-memory store seeded with the bundled title records."""
    settings = get_settings()
    store = InMemoryClaimStore(load_title_records())
    pipeline = ClaimVerificationPipeline(
        store, vision=OpenAIVision(model=settings.openai_model), settings=settings
    )
    return store, pipeline


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build the store and pipeline on startup."""
    global _store, _pipeline  # noqa: PLW0603
    _store, _pipeline = build_pipeline()
    yield
    _store, _pipeline = None, None


# ─── FastAPI App ─────────────────────────────────────────────────────

app = FastAPI(
    title="Land Claim Verifier API",
    description=(
        "Verification and spatial conflict engine for land claims. "
        "Concurrent signal agents, weighted confidence with hard overrides, "
        "geodetic overlap detection and a Priority of Sale lifecycle."
    ),
    version=__version__,
    lifespan=lifespan,
)

_STATUS_CODES: dict[type[ClaimVerificationError], int] = {
    ClaimNotFound: 404,
    InvalidTransition: 409,
    InvalidGeometry: 422,
    StorageUnavailable: 503,
}


@app.exception_handler(ClaimVerificationError)
async def _domain_error(request: Request, exc: ClaimVerificationError) -> JSONResponse:
    status = next((code for cls, code in _STATUS_CODES.items() if isinstance(exc, cls)), 500)
    return JSONResponse(
        status_code=status,
        content={"code": exc.code, "message": str(exc), "details": exc.details},
    )


# ─── Request / Response Schemas ─────────────────────────────────────


class ClaimRequest(BaseModel):
    """Request body for POST /claims."""

    claimant_id: str
    claimant_name: str
    claimant_email: str
    legal_contact_email: Optional[str] = None
    grantor_name: Optional[str] = None
    boundary: Optional[list[Coordinate]] = Field(
        default=None, description="Polygon vertices in order; closing vertex optional."
    )
    document_text: str = ""
    document_image: Optional[str] = Field(default=None, description="Base64-encoded scan")
    latitude: Optional[float] = None
    longitude: Optional[float] = None

    model_config = {"json_schema_extra": {"example": {
        "claimant_id": "user-001",
        "claimant_name": "Akua Darko",
        "claimant_email": "akua@example.com",
        "grantor_name": "Kofi Mensah",
        "boundary": [
            {"lat": 5.6000, "lng": -0.1900},
            {"lat": 5.6000, "lng": -0.1890},
            {"lat": 5.6010, "lng": -0.1890},
            {"lat": 5.6010, "lng": -0.1900},
        ],
        "document_text": "INDENTURE\nGrantor: Kofi Mensah\nParcel ID: GA12345678\n...",
    }}}

    def to_intake(self) -> ClaimIntake:
        data = self.model_dump(exclude={"boundary"})
        boundary = Boundary(coordinates=self.boundary) if self.boundary is not None else None
        return ClaimIntake(**data, boundary=boundary)


class SpatialCheckRequest(BaseModel):
    boundary: list[Coordinate]
    exclude_claim_id: Optional[str] = None


class ResolveRequest(BaseModel):
    notes: str = Field(..., min_length=1)


class HealthResponse(BaseModel):
    status: str
    version: str
    title_records_loaded: int
    claims_on_file: int


# ─── Helpers ─────────────────────────────────────────────────────────


def _get_pipeline() -> ClaimVerificationPipeline:
    if _pipeline is None:
        raise HTTPException(status_code=503, detail="Pipeline not initialised")
    return _pipeline


def _get_store() -> InMemoryClaimStore:
    if _store is None:
        raise HTTPException(status_code=503, detail="Store not initialised")
    return _store


# ─── Endpoints ───────────────────────────────────────────────────────


@app.post(
    "/claims",
    summary="Submit a land claim",
    tags=["Claims"],
    responses={422: {"description": "Malformed boundary"}, 503: {"description": "Pipeline not yet initialised"}},
)
async def submit_claim(request: ClaimRequest) -> ClaimReport:
    """Register a claim, run every signal agent, and lock its boundary when verified.

    Returns:
    - **claim**: the stored claim after processing
    - **outcome**: recommendation, overall confidence and per-signal breakdown
    - **lock**: spatial lock result, including any conflicts found
    """
    pipeline = _get_pipeline()
    return await pipeline.process(request.to_intake())


@app.get("/claims/{claim_id}", summary="Fetch a claim", tags=["Claims"])
async def get_claim(claim_id: str) -> Claim:
    claim = await _get_store().get_claim(claim_id)
    if claim is None or claim.deleted:
        raise ClaimNotFound(f"Claim {claim_id} not found", {"claim_id": claim_id})
    return claim


@app.post("/claims/{claim_id}/lock", summary="Lock a verified claim's boundary", tags=["Lifecycle"])
async def lock_claim(claim_id: str) -> TransitionResult:
    return await _get_pipeline().lock(claim_id)


@app.post("/claims/{claim_id}/mint", summary="Anchor Priority of Sale", tags=["Lifecycle"])
async def mint_claim(claim_id: str) -> TransitionResult:
    return await _get_pipeline().mint(claim_id)


@app.post("/claims/{claim_id}/recheck", summary="Re-run the conflict check", tags=["Lifecycle"])
async def recheck_claim(claim_id: str) -> TransitionResult:
    return await _get_pipeline().recheck(claim_id)


@app.post("/conflicts/{record_id}/resolve", summary="Resolve a conflict record", tags=["Conflicts"])
async def resolve_conflict(record_id: str, request: ResolveRequest) -> ConflictRecord:
    return await _get_pipeline().resolve_conflict(record_id, request.notes)


@app.post("/spatial/check", summary="Evaluate a boundary against claims on file", tags=["Conflicts"])
async def spatial_check(request: SpatialCheckRequest) -> ConflictCheckResult:
    """Pure evaluation: nothing is recorded and nobody is notified."""
    pipeline = _get_pipeline()
    existing = await _get_store().list_boundaries(request.exclude_claim_id)
    return pipeline.detector.evaluate(
        Boundary(coordinates=request.boundary), existing, request.exclude_claim_id
    )


@app.get(
    "/health",
    summary="Health check",
    tags=["System"],
    responses={503: {"description": "Pipeline not yet initialised"}},
)
def health_check() -> HealthResponse:
    """Returns service status and registry size."""
    _get_pipeline()
    store = _get_store()
    return HealthResponse(
        status="healthy",
        version=__version__,
        title_records_loaded=len(store.title_records),
        claims_on_file=len(store.claims),
    )
