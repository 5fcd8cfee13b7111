"""
Notifications.

Alert delivery channels and the dispatcher that routes alerts to them.
"""

from .dispatcher import (
    ROUTES,
    AlertDispatcher,
    ChannelOutcome,
    DispatchReport,
)
from .email import SendGridEmailClient, classify_email_error
from .formatting import AlertFormatter, format_score
from .push import BatchResult, FcmPushClient, TokenResult
from .sms import TwilioSmsClient, is_e164
from .webhook import FanOutReport, WebhookNotifier, WebhookResult


__all__ = [
    # Dispatcher
    "ROUTES",
    "AlertDispatcher",
    "ChannelOutcome",
    "DispatchReport",
    # Channels
    "TwilioSmsClient",
    "is_e164",
    "FcmPushClient",
    "BatchResult",
    "TokenResult",
    "WebhookNotifier",
    "FanOutReport",
    "WebhookResult",
    "SendGridEmailClient",
    "classify_email_error",
    # Formatting
    "AlertFormatter",
    "format_score",
]
