"""
Scan Engine - Consent Gate.

Missing consent record fails open (allowed, logged); an explicit
false denies.
"""

import logging

from .exceptions import ConsentDenied


logger = logging.getLogger(__name__)


class ConsentGate:
    """Per-account authorization check."""

    def __init__(self, store):
        self._store = store

    async def is_allowed(self, account_id: str) -> bool:
        record = await self._store.get_consent(account_id)
        if record is None:
            logger.warning(f"No consent record for account {account_id}, allowing scan")
            return True
        return bool(record.consent_status)

    async def require(self, account_id: str) -> None:
        """Raise ConsentDenied unless the account is allowed."""
        if not await self.is_allowed(account_id):
            logger.info(f"Consent denied for account {account_id}")
            raise ConsentDenied(account_id)
