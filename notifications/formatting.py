"""
Alert Message Formatting.

============================================================
PURPOSE
============================================================
Builds channel payloads from an AlertEvent.

- SMS: one short line with the view link
- Push: tiered title, short body, string-only data map
- Webhook: JSON body for subscriber endpoints

============================================================
"""

from datetime import datetime, timezone
from typing import Any, Dict, Optional

from scan_engine.types import AlertEvent, MatchTier


def format_score(score: float) -> str:
    """95.0 -> '95', 87.5 -> '87.5'."""
    return f"{score:g}"


class AlertFormatter:
    """
    Formats alert events per channel.
    """

    TIER_ICONS = {
        MatchTier.HIGH: "🚨",
        MatchTier.MEDIUM: "⚠️",
        MatchTier.LOW: "ℹ️",
    }

    TIER_LABELS = {
        MatchTier.HIGH: "High",
        MatchTier.MEDIUM: "Medium",
        MatchTier.LOW: "Low",
    }

    # --------------------------------------------------------
    # SMS
    # --------------------------------------------------------

    @staticmethod
    def sms_body(event: AlertEvent) -> str:
        return (
            f"High threat detected ({format_score(event.score)}% match). "
            f"View details: {event.view_url}"
        )

    # --------------------------------------------------------
    # PUSH
    # --------------------------------------------------------

    @classmethod
    def push_title(cls, event: AlertEvent) -> str:
        icon = cls.TIER_ICONS[event.tier]
        label = cls.TIER_LABELS[event.tier]
        return f"{icon} {label} Threat Detected ({format_score(event.score)}%)"

    @staticmethod
    def push_body(event: AlertEvent) -> str:
        if event.subject_name:
            return f"Possible match: {event.subject_name}. Tap to view details."
        return "Potential match detected. Tap to view details."

    @staticmethod
    def push_data(event: AlertEvent, now: Optional[datetime] = None) -> Dict[str, str]:
        """FCM data values must be strings."""
        timestamp = event.occurred_at or now or datetime.now(timezone.utc)
        return {
            "scanId": event.scan_id,
            "topScore": format_score(event.score),
            "matchLevel": event.tier.value,
            "threatLevel": event.tier.value.lower(),
            "viewMatchesUrl": event.view_url,
            "accountID": event.account_id,
            "timestamp": timestamp.isoformat(),
        }

    # --------------------------------------------------------
    # WEBHOOK
    # --------------------------------------------------------

    @staticmethod
    def webhook_payload(event: AlertEvent) -> Dict[str, Any]:
        return {
            "scanId": event.scan_id,
            "topScore": event.score,
            "matchLevel": event.tier.value,
            "threatLocation": event.location.to_dict() if event.location else None,
            "viewMatchesUrl": event.view_url,
        }
