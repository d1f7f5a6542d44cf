"""
FaceGate API

Face embedding matching, verification and live scanning behind revocable
API keys.

Endpoints:
- POST /identities - Enroll an identity from a face image
- GET /identities - List enrolled identities
- POST /search - Rank enrolled identities against a face
- POST /verify - Compare two faces
- POST /live-scans - Start a live verification scan
- POST /credentials - Issue an API key (admin)

Run with: uvicorn facegate.main:create_app --factory
"""
import secrets
import time
import logging
from typing import List, Optional
from contextlib import asynccontextmanager

from fastapi import (
    APIRouter, Depends, FastAPI, File, Form, Header, HTTPException, Query, Request, UploadFile
)
from fastapi.responses import JSONResponse
from fastapi.middleware.cors import CORSMiddleware

from facegate.config import (
    ADMIN_API_KEY,
    API_TITLE,
    API_DESCRIPTION,
    API_VERSION,
    AUTH_ENABLED,
    DATABASE_URL,
    DEFAULT_CHECKS_PER_SECOND,
    FACE_RECOGNITION_MODEL,
    FACE_DETECTOR_BACKEND,
    LOG_LEVEL,
    MAX_TOP_K,
    SUPPORTED_FORMATS,
    TOP_K_MATCHES
)
from facegate.credentials import CredentialInfo
from facegate.database import Database
from facegate.embedding_store import Identity
from facegate.errors import FaceGateError, Forbidden, Unauthorized
from facegate.live_scan import LiveScanSession
from facegate.matching import MatchResult
from facegate.schemas import (
    CreateResponse,
    CredentialCreate,
    CredentialIssued,
    CredentialList,
    CredentialRecord,
    DeleteResponse,
    DetectionResponse,
    EmbedResponse,
    EnrollEmbeddingRequest,
    ErrorResponse,
    IdentityList,
    IdentityRecord,
    LiveScanEmbeddingRequest,
    LiveScanList,
    LiveScanStatus,
    Match,
    MatchResponse,
    SearchEmbeddingRequest,
    VerifyEmbeddingRequest,
    VerifyResponse
)
from facegate.services import FaceGate

# Configure logging
logging.basicConfig(
    level=LOG_LEVEL,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)

router = APIRouter()

FACE_ERRORS = {
    400: {"model": ErrorResponse, "description": "Invalid input"},
    401: {"model": ErrorResponse, "description": "Missing or invalid API key"},
    422: {"model": ErrorResponse, "description": "No face or multiple faces detected"}
}


def get_services(request: Request) -> FaceGate:
    """Dependency returning the application's service container."""
    return request.app.state.services


async def require_api_key(
    request: Request,
    x_api_key: Optional[str] = Header(None),
    authorization: Optional[str] = Header(None)
) -> None:
    """Dependency rejecting requests without a valid API key."""
    if not request.app.state.auth_enabled:
        return

    presented = x_api_key
    if presented is None and authorization and authorization.lower().startswith("bearer "):
        presented = authorization[7:].strip()

    if not presented:
        raise Unauthorized("API key required (X-API-Key header or Bearer token)")

    await get_services(request).credentials.authenticate(presented)


async def require_admin(
    request: Request,
    x_admin_key: Optional[str] = Header(None)
) -> None:
    """Dependency guarding credential administration."""
    admin_key = request.app.state.admin_api_key
    if not admin_key:
        raise Forbidden("Credential administration is disabled (ADMIN_API_KEY not set)")
    if not x_admin_key or not secrets.compare_digest(x_admin_key.encode(), admin_key.encode()):
        raise Unauthorized("Invalid admin key")


def validate_image_file(file: UploadFile) -> None:
    """Validate uploaded image file."""
    if not file.filename:
        raise HTTPException(
            status_code=400,
            detail="No filename provided"
        )

    # Check file extension
    ext = "." + file.filename.lower().split(".")[-1] if "." in file.filename else ""
    if ext not in SUPPORTED_FORMATS:
        raise HTTPException(
            status_code=400,
            detail=f"Unsupported file format. Supported: {', '.join(sorted(SUPPORTED_FORMATS))}"
        )

    # Check content type
    if file.content_type and not file.content_type.startswith("image/"):
        raise HTTPException(
            status_code=400,
            detail="File must be an image"
        )


async def read_image(file: UploadFile) -> bytes:
    """Validate and read an uploaded image."""
    validate_image_file(file)

    try:
        image_bytes = await file.read()
    except Exception as e:
        raise HTTPException(status_code=400, detail=f"Failed to read image: {str(e)}")

    if len(image_bytes) == 0:
        raise HTTPException(status_code=400, detail="Empty image file")

    return image_bytes


def elapsed_ms(start_time: float) -> float:
    return round((time.time() - start_time) * 1000, 2)


def identity_to_schema(identity: Identity, include_embedding: bool = False) -> IdentityRecord:
    return IdentityRecord(
        id=identity.id,
        name=identity.name,
        dimension=len(identity.embedding),
        created_at=identity.created_at,
        embedding=identity.embedding.tolist() if include_embedding else None
    )


def match_to_schema(result: MatchResult) -> Match:
    return Match(
        id=result.identity.id,
        name=result.identity.name,
        similarity=round(result.similarity, 6),
        verified=result.verified,
        created_at=result.identity.created_at
    )


def credential_to_schema(info: CredentialInfo) -> CredentialRecord:
    return CredentialRecord(
        id=info.id,
        prefix=info.prefix,
        label=info.label,
        created_at=info.created_at,
        is_active=info.is_active,
        revoked_at=info.revoked_at
    )


def scan_to_schema(session: LiveScanSession) -> LiveScanStatus:
    return LiveScanStatus(**session.snapshot())


def build_match_response(
    results: List[MatchResult],
    threshold: float,
    start_time: float
) -> MatchResponse:
    top_matches = [match_to_schema(r) for r in results]
    recognized = bool(results) and results[0].verified
    best_match = top_matches[0] if recognized else None
    processing_time = elapsed_ms(start_time)

    if best_match:
        logger.info(
            f"Matched probe to identity {best_match.id} ('{best_match.name}') "
            f"(similarity: {best_match.similarity:.2%}) in {processing_time:.1f}ms"
        )
    else:
        top_score = top_matches[0].similarity if top_matches else "N/A"
        logger.info(f"No match found (top score: {top_score}) in {processing_time:.1f}ms")

    return MatchResponse(
        recognized=recognized,
        best_match=best_match,
        top_matches=top_matches,
        threshold=threshold,
        processing_time_ms=processing_time
    )


@router.get("/", include_in_schema=False)
async def root(services: FaceGate = Depends(get_services)):
    """Root endpoint with API info."""
    return {
        "name": API_TITLE,
        "version": API_VERSION,
        "model": FACE_RECOGNITION_MODEL,
        "detector": FACE_DETECTOR_BACKEND,
        "embedding_dim": services.engine.dimension,
        "threshold": services.engine.threshold,
        "endpoints": {
            "enroll": "POST /identities",
            "list": "GET /identities",
            "search": "POST /search",
            "verify": "POST /verify",
            "live_scan": "POST /live-scans",
            "credentials": "POST /credentials"
        }
    }


@router.get("/health")
async def health_check(services: FaceGate = Depends(get_services)):
    """Health check endpoint."""
    try:
        identity_count = await services.store.count()
        db_status = "healthy"
    except FaceGateError as e:
        logger.error(f"Database health check failed: {e}")
        identity_count = 0
        db_status = "unhealthy"

    return {
        "status": "healthy" if db_status == "healthy" else "degraded",
        "model_loaded": getattr(services.face_model, "model_loaded", False),
        "database_status": db_status,
        "total_identities": identity_count,
        "live_scans": services.live_scans.count()
    }


# ============================================================================
# IDENTITIES
# ============================================================================
@router.post(
    "/identities",
    response_model=CreateResponse,
    responses=FACE_ERRORS,
    dependencies=[Depends(require_api_key)],
    summary="Enroll an identity from a face image",
    description="""
    Register a new identity.

    **Pipeline:**
    1. Image preprocessing (resize, convert)
    2. Face detection using RetinaFace
    3. Embedding generation using ArcFace
    4. Store name and embedding

    **Requirements:**
    - Image must contain exactly one clear face
    - Supported formats: JPG, PNG, WebP, BMP
    """
)
async def enroll_identity(
    image: UploadFile = File(..., description="Face image file"),
    name: str = Form(..., min_length=1, max_length=255, description="Display name"),
    services: FaceGate = Depends(get_services)
):
    start_time = time.time()
    image_bytes = await read_image(image)

    identity = await services.enroll_image(name, image_bytes)

    logger.info(f"Enrolled identity {identity.id} ('{identity.name}') in {elapsed_ms(start_time):.1f}ms")
    return CreateResponse(
        success=True,
        message=f"Identity '{identity.name}' enrolled successfully",
        record=identity_to_schema(identity)
    )


@router.post(
    "/identities/embedding",
    response_model=CreateResponse,
    responses=FACE_ERRORS,
    dependencies=[Depends(require_api_key)],
    summary="Enroll an identity from an embedding"
)
async def enroll_identity_embedding(
    body: EnrollEmbeddingRequest,
    services: FaceGate = Depends(get_services)
):
    identity = await services.enroll(body.name, body.embedding)
    return CreateResponse(
        success=True,
        message=f"Identity '{identity.name}' enrolled successfully",
        record=identity_to_schema(identity)
    )


@router.get(
    "/identities",
    response_model=IdentityList,
    dependencies=[Depends(require_api_key)],
    summary="List enrolled identities",
    description="Retrieve enrolled identities, most recent enrollment first."
)
async def list_identities(
    skip: int = Query(0, ge=0, description="Number of records to skip"),
    limit: int = Query(100, ge=1, le=1000, description="Maximum number of records to return"),
    include_embeddings: bool = Query(False, description="Include embedding vectors"),
    services: FaceGate = Depends(get_services)
):
    total_count = await services.store.count()
    identities = await services.store.list_all(skip=skip, limit=limit)

    return IdentityList(
        total_count=total_count,
        records=[identity_to_schema(i, include_embeddings) for i in identities]
    )


@router.get(
    "/identities/{identity_id}",
    response_model=IdentityRecord,
    responses={404: {"model": ErrorResponse, "description": "Identity not found"}},
    dependencies=[Depends(require_api_key)],
    summary="Get an enrolled identity"
)
async def get_identity(
    identity_id: int,
    include_embedding: bool = Query(False, description="Include the embedding vector"),
    services: FaceGate = Depends(get_services)
):
    return identity_to_schema(await services.store.get(identity_id), include_embedding)


@router.delete(
    "/identities/{identity_id}",
    response_model=DeleteResponse,
    responses={404: {"model": ErrorResponse, "description": "Identity not found"}},
    dependencies=[Depends(require_api_key)],
    summary="Remove an enrolled identity"
)
async def delete_identity(
    identity_id: int,
    services: FaceGate = Depends(get_services)
):
    await services.remove_identity(identity_id)
    return DeleteResponse(
        success=True,
        message=f"Identity {identity_id} removed",
        deleted_id=identity_id
    )


# ============================================================================
# SEARCH
# ============================================================================
@router.post(
    "/search",
    response_model=MatchResponse,
    responses=FACE_ERRORS,
    dependencies=[Depends(require_api_key)],
    summary="Match a face against enrolled identities",
    description="""
    Find the closest enrolled identities for an input image.

    **Output:**
    - `recognized`: True if the best match meets the threshold
    - `best_match`: Best matching identity when recognized
    - `top_matches`: Top-K identities by similarity, ties broken by lower id
    """
)
async def search_image(
    image: UploadFile = File(..., description="Face image to match"),
    k: int = Query(TOP_K_MATCHES, ge=1, le=MAX_TOP_K, description="Number of top matches to return"),
    threshold: Optional[float] = Query(None, ge=0.0, le=1.0, description="Verification threshold (higher = stricter)"),
    services: FaceGate = Depends(get_services)
):
    start_time = time.time()
    image_bytes = await read_image(image)

    results = await services.search_image(image_bytes, k=k, threshold=threshold)

    applied = services.engine.threshold if threshold is None else threshold
    return build_match_response(results, applied, start_time)


@router.post(
    "/search/embedding",
    response_model=MatchResponse,
    responses=FACE_ERRORS,
    dependencies=[Depends(require_api_key)],
    summary="Match an embedding against enrolled identities"
)
async def search_embedding(
    body: SearchEmbeddingRequest,
    services: FaceGate = Depends(get_services)
):
    start_time = time.time()
    results = await services.search.search(body.embedding, k=body.k, threshold=body.threshold)

    applied = services.engine.threshold if body.threshold is None else body.threshold
    return build_match_response(results, applied, start_time)


# ============================================================================
# VERIFY
# ============================================================================
@router.post(
    "/verify",
    response_model=VerifyResponse,
    responses=FACE_ERRORS,
    dependencies=[Depends(require_api_key)],
    summary="Verify whether two images show the same person"
)
async def verify_images(
    image1: UploadFile = File(..., description="First face image"),
    image2: UploadFile = File(..., description="Second face image"),
    threshold: Optional[float] = Query(None, ge=0.0, le=1.0, description="Verification threshold"),
    services: FaceGate = Depends(get_services)
):
    start_time = time.time()
    first = await read_image(image1)
    second = await read_image(image2)

    comparison = await services.verify_images(first, second, threshold=threshold)

    return VerifyResponse(
        similarity=round(comparison.similarity, 6),
        verified=comparison.verified,
        threshold=comparison.threshold,
        processing_time_ms=elapsed_ms(start_time)
    )


@router.post(
    "/verify/embedding",
    response_model=VerifyResponse,
    responses=FACE_ERRORS,
    dependencies=[Depends(require_api_key)],
    summary="Verify whether two embeddings belong to the same person"
)
async def verify_embeddings(
    body: VerifyEmbeddingRequest,
    services: FaceGate = Depends(get_services)
):
    start_time = time.time()
    comparison = services.engine.compare(body.embedding1, body.embedding2, threshold=body.threshold)

    return VerifyResponse(
        similarity=round(comparison.similarity, 6),
        verified=comparison.verified,
        threshold=comparison.threshold,
        processing_time_ms=elapsed_ms(start_time)
    )


# ============================================================================
# FACE MODEL
# ============================================================================
@router.post(
    "/detect",
    response_model=DetectionResponse,
    responses=FACE_ERRORS,
    dependencies=[Depends(require_api_key)],
    summary="Detect the primary face in an image"
)
async def detect_face(
    image: UploadFile = File(..., description="Image to analyse"),
    services: FaceGate = Depends(get_services)
):
    detection = await services.detect_image(await read_image(image))
    return DetectionResponse(**vars(detection))


@router.post(
    "/spoofing",
    response_model=DetectionResponse,
    responses=FACE_ERRORS,
    dependencies=[Depends(require_api_key)],
    summary="Run anti-spoofing analysis on the primary face"
)
async def spoofing_analysis(
    image: UploadFile = File(..., description="Image to analyse"),
    services: FaceGate = Depends(get_services)
):
    detection = await services.spoofing_image(await read_image(image))
    return DetectionResponse(**vars(detection))


@router.post(
    "/embed",
    response_model=EmbedResponse,
    responses=FACE_ERRORS,
    dependencies=[Depends(require_api_key)],
    summary="Extract the embedding of the face in an image"
)
async def embed_face(
    image: UploadFile = File(..., description="Face image"),
    services: FaceGate = Depends(get_services)
):
    embedding = await services.embed_image(await read_image(image))
    return EmbedResponse(embedding=[float(v) for v in embedding], dimension=len(embedding))


# ============================================================================
# LIVE SCANS
# ============================================================================
@router.post(
    "/live-scans",
    response_model=LiveScanStatus,
    responses=FACE_ERRORS,
    dependencies=[Depends(require_api_key)],
    summary="Start a live scan against a target face image",
    description="""
    Starts a scan that verifies pushed frames (`POST /live-scans/{scan_id}/frames`)
    against the target face until one matches or the scan is stopped.
    """
)
async def start_live_scan(
    image: UploadFile = File(..., description="Target face image"),
    threshold: Optional[float] = Form(None, ge=0.0, le=1.0, description="Verification threshold"),
    checks_per_second: float = Form(DEFAULT_CHECKS_PER_SECOND, gt=0, description="Verification rate"),
    label: str = Form("", max_length=255, description="Free-form label"),
    services: FaceGate = Depends(get_services)
):
    target = await services.embed_image(await read_image(image))
    session = services.live_scans.create(
        target, threshold=threshold, checks_per_second=checks_per_second, label=label
    )
    return scan_to_schema(session)


@router.post(
    "/live-scans/embedding",
    response_model=LiveScanStatus,
    responses=FACE_ERRORS,
    dependencies=[Depends(require_api_key)],
    summary="Start a live scan against a target embedding"
)
async def start_live_scan_embedding(
    body: LiveScanEmbeddingRequest,
    services: FaceGate = Depends(get_services)
):
    session = services.live_scans.create(
        body.target,
        threshold=body.threshold,
        checks_per_second=body.checks_per_second,
        label=body.label
    )
    return scan_to_schema(session)


@router.get(
    "/live-scans",
    response_model=LiveScanList,
    dependencies=[Depends(require_api_key)],
    summary="List live scans"
)
async def list_live_scans(services: FaceGate = Depends(get_services)):
    scans = [scan_to_schema(s) for s in services.live_scans.list()]
    return LiveScanList(total_count=len(scans), scans=scans)


@router.get(
    "/live-scans/{scan_id}",
    response_model=LiveScanStatus,
    responses={404: {"model": ErrorResponse, "description": "Scan not found"}},
    dependencies=[Depends(require_api_key)],
    summary="Get live scan status"
)
async def get_live_scan(scan_id: str, services: FaceGate = Depends(get_services)):
    return scan_to_schema(services.live_scans.get(scan_id))


@router.post(
    "/live-scans/{scan_id}/frames",
    response_model=LiveScanStatus,
    responses={404: {"model": ErrorResponse, "description": "Scan not found"}},
    dependencies=[Depends(require_api_key)],
    summary="Push the latest camera frame to a live scan"
)
async def push_live_scan_frame(
    scan_id: str,
    image: UploadFile = File(..., description="Camera frame"),
    services: FaceGate = Depends(get_services)
):
    frame = await read_image(image)
    return scan_to_schema(services.live_scans.push_frame(scan_id, frame))


@router.post(
    "/live-scans/{scan_id}/stop",
    response_model=LiveScanStatus,
    dependencies=[Depends(require_api_key)],
    summary="Stop a live scan"
)
async def stop_live_scan(scan_id: str, services: FaceGate = Depends(get_services)):
    return scan_to_schema(services.live_scans.stop(scan_id))


@router.post(
    "/live-scans/{scan_id}/reset",
    response_model=LiveScanStatus,
    dependencies=[Depends(require_api_key)],
    summary="Return a finished live scan to idle"
)
async def reset_live_scan(scan_id: str, services: FaceGate = Depends(get_services)):
    return scan_to_schema(services.live_scans.reset(scan_id))


@router.post(
    "/live-scans/{scan_id}/restart",
    response_model=LiveScanStatus,
    dependencies=[Depends(require_api_key)],
    summary="Start a live scan again with its previous target"
)
async def restart_live_scan(scan_id: str, services: FaceGate = Depends(get_services)):
    return scan_to_schema(services.live_scans.restart(scan_id))


@router.delete(
    "/live-scans/{scan_id}",
    response_model=DeleteResponse,
    dependencies=[Depends(require_api_key)],
    summary="Stop and discard a live scan"
)
async def delete_live_scan(scan_id: str, services: FaceGate = Depends(get_services)):
    await services.live_scans.remove(scan_id)
    return DeleteResponse(success=True, message=f"Live scan {scan_id} removed")


# ============================================================================
# CREDENTIALS (admin)
# ============================================================================
@router.post(
    "/credentials",
    response_model=CredentialIssued,
    status_code=201,
    dependencies=[Depends(require_admin)],
    summary="Issue an API key",
    description="The plaintext key is returned once and never stored."
)
async def issue_credential(
    body: CredentialCreate,
    services: FaceGate = Depends(get_services)
):
    issued = await services.credentials.issue(body.label)
    return CredentialIssued(
        secret=issued.secret,
        credential=credential_to_schema(issued.credential)
    )


@router.get(
    "/credentials",
    response_model=CredentialList,
    dependencies=[Depends(require_admin)],
    summary="List API keys"
)
async def list_credentials(
    active_only: bool = Query(False, description="Only active keys"),
    services: FaceGate = Depends(get_services)
):
    credentials = [credential_to_schema(c) for c in await services.credentials.list_all(active_only)]
    return CredentialList(total_count=len(credentials), credentials=credentials)


@router.delete(
    "/credentials/{credential_id}",
    response_model=DeleteResponse,
    responses={404: {"model": ErrorResponse, "description": "Credential not found"}},
    dependencies=[Depends(require_admin)],
    summary="Revoke an API key"
)
async def revoke_credential(
    credential_id: int,
    services: FaceGate = Depends(get_services)
):
    await services.credentials.revoke(credential_id)
    return DeleteResponse(
        success=True,
        message=f"Credential {credential_id} revoked",
        deleted_id=credential_id
    )


# Exception handlers
async def facegate_exception_handler(request, exc: FaceGateError):
    """Render typed FaceGate errors."""
    if exc.status_code >= 500:
        logger.error(f"{exc.kind}: {exc.message}")
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


async def http_exception_handler(request, exc):
    """Custom HTTP exception handler."""
    return JSONResponse(
        status_code=exc.status_code,
        content={
            "error": "HTTPException",
            "detail": exc.detail
        }
    )


async def general_exception_handler(request, exc):
    """General exception handler."""
    logger.error(f"Unhandled exception: {exc}", exc_info=True)
    return JSONResponse(
        status_code=500,
        content={
            "error": "InternalServerError",
            "detail": "An unexpected error occurred"
        }
    )


def create_app(
    services: Optional[FaceGate] = None,
    auth_enabled: bool = AUTH_ENABLED,
    admin_api_key: str = ADMIN_API_KEY
) -> FastAPI:
    """
    Build the FastAPI application around a service container.

    Without ``services`` the default container is built from configuration
    with the DeepFace model.
    """
    if services is None:
        from facegate.face_service import FaceModel
        services = FaceGate(Database(DATABASE_URL), FaceModel())

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Application lifespan events."""
        logger.info("Starting FaceGate API...")
        logger.info(f"Model: {FACE_RECOGNITION_MODEL}")
        logger.info(f"Detector: {FACE_DETECTOR_BACKEND}")
        if not auth_enabled:
            logger.warning("API key authentication is DISABLED")

        await services.startup()
        yield

        await services.shutdown()
        logger.info("Shutting down FaceGate API...")

    app = FastAPI(
        title=API_TITLE,
        description=API_DESCRIPTION,
        version=API_VERSION,
        lifespan=lifespan
    )
    app.state.services = services
    app.state.auth_enabled = auth_enabled
    app.state.admin_api_key = admin_api_key

    # Add CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(router)

    app.add_exception_handler(FaceGateError, facegate_exception_handler)
    app.add_exception_handler(HTTPException, http_exception_handler)
    app.add_exception_handler(Exception, general_exception_handler)

    return app


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(create_app(), host="0.0.0.0", port=8000)
