"""
Account Domain ORM Models.

============================================================
PURPOSE
============================================================
Tables owned by the account CRUD collaborators and read by the
scan pipeline.

TABLES:
- consents: per-account consent flag
- account_profiles: contact details, digest opt-out, threshold override
- service_thresholds: per-service tier floors
- webhook_subscriptions: account webhook endpoints
- device_tokens: push tokens with failure bookkeeping

============================================================
"""

from datetime import datetime
from typing import Optional

from sqlalchemy import Boolean, DateTime, Float, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base


# ============================================================
# CONSENT
# ============================================================

class ConsentModel(Base):
    """Consent flag."""

    __tablename__ = "consents"

    account_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    consent_status: Mapped[bool] = mapped_column(Boolean, nullable=False)
    updated_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))


# ============================================================
# ACCOUNT PROFILE
# ============================================================

class AccountProfileModel(Base):
    """Contact details and overrides."""

    __tablename__ = "account_profiles"

    account_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    name: Mapped[Optional[str]] = mapped_column(String(256))
    email: Mapped[Optional[str]] = mapped_column(String(320), index=True)
    phone_number: Mapped[Optional[str]] = mapped_column(String(32))

    # Digest subscription
    unsubscribe_token: Mapped[Optional[str]] = mapped_column(String(128), unique=True)
    email_opt_out: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    email_opt_out_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    email_opt_out_reason: Mapped[Optional[str]] = mapped_column(String(64))

    # Threshold override (all three set or none)
    threshold_high: Mapped[Optional[float]] = mapped_column(Float)
    threshold_medium: Mapped[Optional[float]] = mapped_column(Float)
    threshold_low: Mapped[Optional[float]] = mapped_column(Float)
    thresholds_updated_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    thresholds_updated_by: Mapped[Optional[str]] = mapped_column(String(32))


# ============================================================
# SERVICE THRESHOLDS
# ============================================================

class ServiceThresholdModel(Base):
    """Per-service tier floors."""

    __tablename__ = "service_thresholds"

    service_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    high: Mapped[float] = mapped_column(Float, nullable=False)
    medium: Mapped[float] = mapped_column(Float, nullable=False)
    low: Mapped[float] = mapped_column(Float, nullable=False)
    updated_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))


# ============================================================
# WEBHOOKS / DEVICES
# ============================================================

class WebhookSubscriptionModel(Base):
    """Account webhook endpoint."""

    __tablename__ = "webhook_subscriptions"

    webhook_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    account_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    url: Mapped[str] = mapped_column(Text, nullable=False)
    enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))


class DeviceTokenModel(Base):
    """Registered push token."""

    __tablename__ = "device_tokens"

    account_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    token: Mapped[str] = mapped_column(String(512), primary_key=True)
    platform: Mapped[Optional[str]] = mapped_column(String(16))
    app_version: Mapped[Optional[str]] = mapped_column(String(32))
    registered_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    last_used_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    failure_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_error: Mapped[Optional[str]] = mapped_column(String(128))
    stale: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
