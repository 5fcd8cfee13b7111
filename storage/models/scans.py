"""
Scan Domain ORM Models.

============================================================
PURPOSE
============================================================
Tables written by the scan pipeline itself.

TABLES:
- scans: scan lifecycle records
- scan_quotas: per account, per period usage counters
- threat_locations: append-only subject sightings

============================================================
"""

from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    Enum as SQLEnum,
    Float,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column

from scan_engine.types import MatchTier, ScanState

from .base import Base, TimestampMixin


# ============================================================
# SCAN MODEL
# ============================================================

class ScanModel(Base, TimestampMixin):
    """
    Persisted scan record.

    Raw imagery is never stored here.
    """

    __tablename__ = "scans"

    scan_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    account_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    service_id: Mapped[Optional[str]] = mapped_column(String(64))

    # Lifecycle
    state: Mapped[ScanState] = mapped_column(
        SQLEnum(ScanState, native_enum=False, length=32),
        nullable=False,
        index=True,
    )
    external_job_id: Mapped[Optional[str]] = mapped_column(String(128), index=True)
    polling_required: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    external_credential_ref: Mapped[Optional[str]] = mapped_column(String(128))
    failure_reason: Mapped[Optional[str]] = mapped_column(String(64))

    # Result
    top_score: Mapped[Optional[float]] = mapped_column(Float)
    match_tier: Mapped[Optional[MatchTier]] = mapped_column(
        SQLEnum(MatchTier, native_enum=False, length=16),
        index=True,
    )
    view_url: Mapped[Optional[str]] = mapped_column(Text)

    # Capture metadata
    camera_id: Mapped[Optional[str]] = mapped_column(String(100))
    latitude: Mapped[Optional[float]] = mapped_column(Float)
    longitude: Mapped[Optional[float]] = mapped_column(Float)

    # Best match
    subject_id: Mapped[Optional[str]] = mapped_column(String(128), index=True)
    subject_name: Mapped[Optional[str]] = mapped_column(String(256))
    subject_type: Mapped[Optional[str]] = mapped_column(String(64))
    subject_photo_url: Mapped[Optional[str]] = mapped_column(Text)
    biometrics: Mapped[List[Dict[str, Any]]] = mapped_column(JSON, nullable=False, default=list)
    crimes: Mapped[List[Dict[str, Any]]] = mapped_column(JSON, nullable=False, default=list)

    def __repr__(self) -> str:
        return f"<ScanModel {self.scan_id} {self.state}>"


# ============================================================
# QUOTA MODEL
# ============================================================

class QuotaModel(Base):
    """Usage counter. Mutated only through conditional updates."""

    __tablename__ = "scan_quotas"
    __table_args__ = (
        UniqueConstraint("account_id", "period", name="uq_scan_quotas_account_period"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    account_id: Mapped[str] = mapped_column(String(64), nullable=False)
    period: Mapped[str] = mapped_column(String(16), nullable=False)
    used: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    scan_limit: Mapped[int] = mapped_column(Integer, nullable=False)
    last_warned_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))


# ============================================================
# THREAT LOCATION MODEL
# ============================================================

class ThreatLocationModel(Base):
    """One sighting. Rows are only ever inserted."""

    __tablename__ = "threat_locations"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    subject_id: Mapped[str] = mapped_column(String(128), nullable=False, index=True)
    account_id: Mapped[Optional[str]] = mapped_column(String(64), index=True)
    scan_id: Mapped[Optional[str]] = mapped_column(String(64))
    latitude: Mapped[float] = mapped_column(Float, nullable=False)
    longitude: Mapped[float] = mapped_column(Float, nullable=False)
    recorded_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
