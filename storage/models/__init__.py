"""
Storage Models Package.

ORM models for the threat scan store, organized by domain.

============================================================
MODEL ORGANIZATION
============================================================

Scan domain (scans.py)
- ScanModel
- QuotaModel
- ThreatLocationModel

Account domain (accounts.py)
- ConsentModel
- AccountProfileModel
- ServiceThresholdModel
- WebhookSubscriptionModel
- DeviceTokenModel

============================================================
"""

from .base import Base, TimestampMixin
from .scans import QuotaModel, ScanModel, ThreatLocationModel
from .accounts import (
    AccountProfileModel,
    ConsentModel,
    DeviceTokenModel,
    ServiceThresholdModel,
    WebhookSubscriptionModel,
)


__all__ = [
    "Base",
    "TimestampMixin",
    "ScanModel",
    "QuotaModel",
    "ThreatLocationModel",
    "ConsentModel",
    "AccountProfileModel",
    "ServiceThresholdModel",
    "WebhookSubscriptionModel",
    "DeviceTokenModel",
]
