"""
FastAPI Router for Scan Endpoints.

- POST /scans            submit one image for resolution
- GET  /scans/{scan_id}  persisted scan state
"""

import logging

from fastapi import APIRouter, Depends, FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from scan_engine.exceptions import (
    ConsentDenied,
    QuotaExceeded,
    ScanNotFound,
    ValidationError,
)
from scan_engine.orchestrator import ScanOrchestrator
from scan_api.schemas import (
    ErrorResponse,
    ScanDetailResponse,
    ScanRequestSchema,
    ScanResultResponse,
)


logger = logging.getLogger(__name__)

router = APIRouter(prefix="/scans", tags=["Scans"])


# =============================================================
# HELPER: Orchestrator dependency
# =============================================================

def get_orchestrator(request: Request) -> ScanOrchestrator:
    orchestrator = getattr(request.app.state, "orchestrator", None)
    if orchestrator is None:
        raise HTTPException(status_code=503, detail="Scan pipeline is not ready")
    return orchestrator


# =============================================================
# SCAN ENDPOINTS
# =============================================================

@router.post(
    "",
    response_model=ScanResultResponse,
    responses={
        400: {"model": ErrorResponse},
        403: {"model": ErrorResponse},
        429: {"model": ErrorResponse},
    },
)
async def submit_scan(
    body: ScanRequestSchema,
    orchestrator: ScanOrchestrator = Depends(get_orchestrator),
):
    """
    Submit an image for threat resolution.

    Returns the final result when the service answers within the
    synchronous window, otherwise a PENDING scan to look up later.
    """
    try:
        request = body.to_scan_request()
    except ValueError:
        raise HTTPException(status_code=400, detail="Image is not valid base64")

    try:
        response = await orchestrator.submit_scan(request)
    except ValidationError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except ConsentDenied:
        raise HTTPException(status_code=403, detail="Consent required for scanning")
    except QuotaExceeded as e:
        raise HTTPException(
            status_code=429,
            detail=f"Scan quota exceeded ({e.used}/{e.limit})",
        )

    return ScanResultResponse.from_response(response)


@router.get("/{scan_id}", response_model=ScanDetailResponse)
async def get_scan(
    scan_id: str,
    orchestrator: ScanOrchestrator = Depends(get_orchestrator),
):
    """Get a scan by id."""
    try:
        scan = await orchestrator.get_scan(scan_id)
    except ScanNotFound:
        raise HTTPException(status_code=404, detail=f"Scan {scan_id} not found")
    return ScanDetailResponse.from_scan(scan)


# =============================================================
# APP FACTORY
# =============================================================

async def _validation_error_handler(request: Request, exc: RequestValidationError):
    details = [
        {"field": ".".join(str(p) for p in err.get("loc", ())), "message": err.get("msg")}
        for err in exc.errors()
    ]
    return JSONResponse(
        status_code=400,
        content={"error": "Invalid request", "details": details},
    )


def create_app(orchestrator: ScanOrchestrator = None) -> FastAPI:
    """Build the API app; the orchestrator can also be attached later."""
    app = FastAPI(
        title="Threat Scan API",
        description="Image threat scanning with tiered alerting.",
        version="1.0.0",
    )
    app.state.orchestrator = orchestrator
    app.add_exception_handler(RequestValidationError, _validation_error_handler)
    app.include_router(router)

    @app.get("/health")
    async def health():
        return {"status": "ok"}

    return app
