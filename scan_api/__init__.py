"""
Scan API.

HTTP surface over the scan orchestrator.
"""

from .router import create_app, router
from .schemas import ScanDetailResponse, ScanRequestSchema, ScanResultResponse


__all__ = [
    "create_app",
    "router",
    "ScanRequestSchema",
    "ScanResultResponse",
    "ScanDetailResponse",
]
