"""
Pydantic models for API request/response schemas
"""
from pydantic import BaseModel, Field
from typing import Dict, Optional, List
from datetime import datetime

from facegate.config import DEFAULT_CHECKS_PER_SECOND, TOP_K_MATCHES, MAX_TOP_K


# ============================================================================
# Identities
# ============================================================================
class EnrollEmbeddingRequest(BaseModel):
    """Schema for enrolling an identity from a precomputed embedding"""
    name: str = Field(..., min_length=1, max_length=255, description="Display name")
    embedding: List[float] = Field(..., description="Face embedding of the deployment dimension")

    class Config:
        json_schema_extra = {
            "example": {
                "name": "Ada Lovelace",
                "embedding": [0.012, -0.043, 0.087]
            }
        }


class IdentityRecord(BaseModel):
    """Schema for an enrolled identity"""
    id: int = Field(..., description="Identity ID")
    name: str = Field(..., description="Display name")
    dimension: int = Field(..., description="Embedding length")
    created_at: datetime = Field(..., description="Timestamp when the identity was enrolled")
    embedding: Optional[List[float]] = Field(default=None, description="Embedding, when requested")

    class Config:
        json_schema_extra = {
            "example": {
                "id": 1,
                "name": "Ada Lovelace",
                "dimension": 512,
                "created_at": "2024-01-15T10:30:00Z",
                "embedding": None
            }
        }


class IdentityList(BaseModel):
    """Schema for listing enrolled identities"""
    total_count: int = Field(..., description="Total number of identities")
    records: List[IdentityRecord] = Field(..., description="Identities, most recent first")


class CreateResponse(BaseModel):
    """Schema for enrollment response"""
    success: bool = Field(..., description="Whether the operation succeeded")
    message: str = Field(..., description="Status message")
    record: Optional[IdentityRecord] = Field(default=None, description="Enrolled identity")


class DeleteResponse(BaseModel):
    """Schema for delete response"""
    success: bool = Field(..., description="Whether the operation succeeded")
    message: str = Field(..., description="Status message")
    deleted_id: Optional[int] = Field(default=None, description="ID of the deleted record")


# ============================================================================
# Search and verification
# ============================================================================
class SearchEmbeddingRequest(BaseModel):
    """Schema for a top-K search with a precomputed probe"""
    embedding: List[float] = Field(..., description="Probe embedding")
    k: int = Field(TOP_K_MATCHES, ge=1, le=MAX_TOP_K, description="Number of top matches to return")
    threshold: Optional[float] = Field(default=None, ge=0.0, le=1.0, description="Verification threshold override")


class Match(BaseModel):
    """Schema for a single ranked identity"""
    id: int = Field(..., description="Identity ID of the matched face")
    name: str = Field(..., description="Display name of the matched identity")
    similarity: float = Field(..., ge=0, le=1, description="Cosine similarity (0-1, higher is better)")
    verified: bool = Field(..., description="Whether similarity meets the threshold")
    created_at: Optional[datetime] = Field(default=None, description="Enrollment timestamp")

    class Config:
        json_schema_extra = {
            "example": {
                "id": 1,
                "name": "Ada Lovelace",
                "similarity": 0.92,
                "verified": True,
                "created_at": "2024-01-15T10:30:00Z"
            }
        }


class MatchResponse(BaseModel):
    """Schema for search response"""
    recognized: bool = Field(..., description="Whether the best match meets the threshold")
    best_match: Optional[Match] = Field(default=None, description="Best match if recognized")
    top_matches: List[Match] = Field(..., description="Top-K nearest identities")
    threshold: float = Field(..., description="Threshold applied")
    processing_time_ms: float = Field(..., description="Processing time in milliseconds")


class VerifyEmbeddingRequest(BaseModel):
    """Schema for comparing two precomputed embeddings"""
    embedding1: List[float] = Field(..., description="First embedding")
    embedding2: List[float] = Field(..., description="Second embedding")
    threshold: Optional[float] = Field(default=None, ge=0.0, le=1.0, description="Verification threshold override")


class VerifyResponse(BaseModel):
    """Schema for verification response"""
    similarity: float = Field(..., ge=0, le=1, description="Cosine similarity (0-1)")
    verified: bool = Field(..., description="Whether both inputs show the same identity")
    threshold: float = Field(..., description="Threshold applied")
    processing_time_ms: float = Field(..., description="Processing time in milliseconds")


# ============================================================================
# Face model passthrough
# ============================================================================
class EmbedResponse(BaseModel):
    """Schema for embedding extraction response"""
    embedding: List[float] = Field(..., description="L2-normalized face embedding")
    dimension: int = Field(..., description="Embedding length")


class DetectionResponse(BaseModel):
    """Schema for face detection / anti-spoofing response"""
    box: Optional[Dict[str, int]] = Field(default=None, description="Bounding box x, y, w, h")
    landmarks: Dict[str, Optional[List[int]]] = Field(default_factory=dict, description="Facial landmarks")
    confidence: float = Field(..., description="Detection confidence")
    spoofing: Optional[bool] = Field(default=None, description="True if the face looks spoofed")
    spoof_score: Optional[float] = Field(default=None, description="Anti-spoofing model score")
    multiple_faces: bool = Field(..., description="Whether more than one face was found")
    face_count: int = Field(..., description="Number of faces found")


# ============================================================================
# Live scans
# ============================================================================
class LiveScanEmbeddingRequest(BaseModel):
    """Schema for starting a live scan against a precomputed target"""
    target: List[float] = Field(..., description="Target embedding")
    threshold: Optional[float] = Field(default=None, ge=0.0, le=1.0, description="Verification threshold override")
    checks_per_second: float = Field(DEFAULT_CHECKS_PER_SECOND, gt=0, description="Verification rate")
    label: str = Field("", max_length=255, description="Free-form label")


class LiveScanStatus(BaseModel):
    """Schema for the observable state of a live scan"""
    scan_id: str
    label: str
    state: str = Field(..., description="idle, scanning or succeeded")
    threshold: float
    checks_per_second: Optional[float] = None
    last_similarity: Optional[float] = Field(default=None, description="Similarity from the latest completed check")
    last_error: Optional[str] = None
    fatal_error: Optional[str] = None
    ticks_completed: int
    ticks_skipped: int
    comparison_in_flight: bool
    frames_received: int
    created_at: datetime
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None


class LiveScanList(BaseModel):
    total_count: int
    scans: List[LiveScanStatus]


# ============================================================================
# Credentials
# ============================================================================
class CredentialCreate(BaseModel):
    """Schema for issuing a credential"""
    label: str = Field(..., min_length=1, max_length=255, description="Owner or purpose")

    class Config:
        json_schema_extra = {
            "example": {
                "label": "attendance-kiosk-3"
            }
        }


class CredentialRecord(BaseModel):
    """Schema for a credential listing. Never includes the secret or its hash."""
    id: int
    prefix: str = Field(..., description="Leading characters of the secret")
    label: str
    created_at: datetime
    is_active: bool
    revoked_at: Optional[datetime] = None


class CredentialIssued(BaseModel):
    """Schema for a freshly issued credential"""
    secret: str = Field(..., description="Plaintext API key, shown only once")
    credential: CredentialRecord
    message: str = "Store this key now, it cannot be retrieved again"


class CredentialList(BaseModel):
    total_count: int
    credentials: List[CredentialRecord]


class ErrorResponse(BaseModel):
    """Schema for error responses"""
    error: str = Field(..., description="Error type")
    detail: str = Field(..., description="Detailed error message")
    retryable: Optional[bool] = Field(default=None, description="Whether retrying may succeed")

    class Config:
        json_schema_extra = {
            "example": {
                "error": "no_face_detected",
                "detail": "No face detected in the provided image.",
                "retryable": False
            }
        }
