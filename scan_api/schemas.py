"""
Pydantic Schemas for the Scan API.
"""

from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, field_validator

from scan_engine.types import (
    ImageRef,
    Location,
    Scan,
    ScanRequest,
    ScanResponse,
    SiteMetadata,
)


# =============================================================
# REQUEST SCHEMAS
# =============================================================

class LocationSchema(BaseModel):
    lat: float = Field(..., ge=-90, le=90)
    lon: float = Field(..., ge=-180, le=180)


class ScanMetadataSchema(BaseModel):
    """Capture metadata sent with the image."""
    accountID: str = Field(..., min_length=1)
    cameraID: str = Field(..., min_length=1, max_length=100)
    location: LocationSchema
    timestamp: Optional[datetime] = None
    site: Optional[str] = Field(None, max_length=200)
    name: Optional[str] = Field(None, max_length=200)


class ScanRequestSchema(BaseModel):
    """POST /scans body."""
    image: str = Field(..., min_length=1, description="HTTP(S) URL or base64 payload")
    metadata: ScanMetadataSchema
    serviceID: Optional[str] = None

    @field_validator("image")
    @classmethod
    def check_image(cls, value: str) -> str:
        if value.startswith(("http://", "https://")) or len(value) > 100:
            return value
        raise ValueError("Image must be a valid base64 string or HTTP/HTTPS URL")

    def to_scan_request(self) -> ScanRequest:
        """
        Build the engine request.

        Raises:
            ValueError: image is not decodable base64
        """
        if self.image.startswith(("http://", "https://")):
            image = ImageRef.from_url(self.image)
        else:
            image = ImageRef.from_base64(self.image)

        meta = self.metadata
        return ScanRequest(
            account_id=meta.accountID,
            image=image,
            site=SiteMetadata(
                camera_id=meta.cameraID,
                location=Location(meta.location.lat, meta.location.lon),
                site=meta.site,
                name=meta.name,
                captured_at=meta.timestamp,
            ),
            service_id=self.serviceID,
        )


# =============================================================
# RESPONSE SCHEMAS
# =============================================================

class ScanResultResponse(BaseModel):
    """Synchronous result of POST /scans."""
    scanId: str
    status: str
    state: str
    topScore: Optional[float] = None
    matchLevel: Optional[str] = None
    viewMatchesUrl: Optional[str] = None
    errorCode: Optional[str] = None

    @classmethod
    def from_response(cls, response: ScanResponse) -> "ScanResultResponse":
        return cls(
            scanId=response.scan_id,
            status=response.status.value,
            state=response.state.value,
            topScore=response.top_score,
            matchLevel=response.tier.value if response.tier else None,
            viewMatchesUrl=response.view_url,
            errorCode=response.error_code,
        )


class ScanDetailResponse(BaseModel):
    """GET /scans/{scanId}."""
    scanId: str
    accountID: str
    state: str
    topScore: Optional[float] = None
    matchLevel: Optional[str] = None
    viewMatchesUrl: Optional[str] = None
    pollingRequired: bool = False
    cameraID: Optional[str] = None
    location: Optional[LocationSchema] = None
    subjectId: Optional[str] = None
    subjectName: Optional[str] = None
    crimes: List[Dict[str, Any]] = Field(default_factory=list)
    failureReason: Optional[str] = None
    createdAt: Optional[datetime] = None
    updatedAt: Optional[datetime] = None

    @classmethod
    def from_scan(cls, scan: Scan) -> "ScanDetailResponse":
        return cls(
            scanId=scan.scan_id,
            accountID=scan.account_id,
            state=scan.state.value,
            topScore=scan.top_score,
            matchLevel=scan.match_tier.value if scan.match_tier else None,
            viewMatchesUrl=scan.view_url,
            pollingRequired=scan.polling_required,
            cameraID=scan.camera_id,
            location=(
                LocationSchema(lat=scan.location.latitude, lon=scan.location.longitude)
                if scan.location else None
            ),
            subjectId=scan.subject_id,
            subjectName=scan.subject_name,
            crimes=scan.crimes,
            failureReason=scan.failure_reason,
            createdAt=scan.created_at,
            updatedAt=scan.updated_at,
        )


class ErrorResponse(BaseModel):
    error: str
    details: Optional[Any] = None
