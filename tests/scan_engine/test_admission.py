"""
Tests for the quota ledger and consent gate.
"""

import asyncio

import pytest

from scan_engine.config import QuotaConfig
from scan_engine.consent import ConsentGate
from scan_engine.exceptions import ConsentDenied, QuotaExceeded
from scan_engine.quota import QuotaLedger


PERIOD = "2026"


# ============================================================
# QUOTA
# ============================================================

class TestQuotaLedger:
    """Atomic reservation and usage warnings."""

    @pytest.mark.asyncio
    async def test_first_reserve_creates_record(self, store, clock):
        ledger = QuotaLedger(store, QuotaConfig(), clock)
        reservation = await ledger.reserve("acct-1", PERIOD)

        assert reservation.allowed
        assert reservation.used == 1
        assert reservation.limit == 14400

    @pytest.mark.asyncio
    async def test_full_quota_rejects_without_change(self, store, clock):
        ledger = QuotaLedger(store, QuotaConfig(), clock)
        await store.ensure_quota("acct-1", PERIOD, 14400)
        await store.set_quota_used("acct-1", PERIOD, 14400)

        with pytest.raises(QuotaExceeded) as exc_info:
            await ledger.reserve("acct-1", PERIOD)
        assert exc_info.value.used == 14400

        with pytest.raises(QuotaExceeded):
            await ledger.reserve("acct-1", PERIOD)

        record = await store.get_quota("acct-1", PERIOD)
        assert record.used == 14400

    @pytest.mark.asyncio
    async def test_check_is_fast_reject(self, store, clock):
        ledger = QuotaLedger(store, QuotaConfig(scans_per_period=1), clock)
        await ledger.check("acct-1", PERIOD)
        await ledger.reserve("acct-1", PERIOD)
        with pytest.raises(QuotaExceeded):
            await ledger.check("acct-1", PERIOD)

    @pytest.mark.asyncio
    async def test_concurrent_reserves_never_overrun(self, store, clock):
        ledger = QuotaLedger(store, QuotaConfig(scans_per_period=5), clock)
        await store.ensure_quota("acct-1", PERIOD, 5)

        async def attempt():
            try:
                await ledger.reserve("acct-1", PERIOD)
                return True
            except QuotaExceeded:
                return False

        results = await asyncio.gather(*(attempt() for _ in range(12)))

        assert sum(results) == 5
        record = await store.get_quota("acct-1", PERIOD)
        assert record.used == 5

    @pytest.mark.asyncio
    async def test_release_gives_back_one(self, store, clock):
        ledger = QuotaLedger(store, QuotaConfig(), clock)
        await ledger.reserve("acct-1", PERIOD)
        await ledger.reserve("acct-1", PERIOD)
        await ledger.release("acct-1", PERIOD)

        record = await store.get_quota("acct-1", PERIOD)
        assert record.used == 1

    @pytest.mark.asyncio
    async def test_release_never_goes_negative(self, store, clock):
        ledger = QuotaLedger(store, QuotaConfig(), clock)
        await store.ensure_quota("acct-1", PERIOD, 10)
        await ledger.release("acct-1", PERIOD)

        record = await store.get_quota("acct-1", PERIOD)
        assert record.used == 0

    @pytest.mark.asyncio
    async def test_warning_below_ratio(self, store, clock):
        ledger = QuotaLedger(store, QuotaConfig(scans_per_period=10), clock)
        await store.ensure_quota("acct-1", PERIOD, 10)
        await store.set_quota_used("acct-1", PERIOD, 7)

        assert await ledger.warn_if_needed("acct-1", PERIOD) is False

    @pytest.mark.asyncio
    async def test_warning_debounced_for_24h(self, store, clock):
        ledger = QuotaLedger(store, QuotaConfig(scans_per_period=10), clock)
        await store.ensure_quota("acct-1", PERIOD, 10)
        await store.set_quota_used("acct-1", PERIOD, 8)

        assert await ledger.warn_if_needed("acct-1", PERIOD) is True
        assert await ledger.warn_if_needed("acct-1", PERIOD) is False

        clock.advance(hours=23)
        assert await ledger.warn_if_needed("acct-1", PERIOD) is False

        clock.advance(hours=2)
        assert await ledger.warn_if_needed("acct-1", PERIOD) is True


# ============================================================
# CONSENT
# ============================================================

class TestConsentGate:
    """Fail-open on missing records, deny on explicit false."""

    @pytest.mark.asyncio
    async def test_missing_record_allows(self, store):
        gate = ConsentGate(store)
        assert await gate.is_allowed("acct-1") is True
        await gate.require("acct-1")

    @pytest.mark.asyncio
    async def test_explicit_grant(self, store):
        await store.set_consent("acct-1", True)
        assert await ConsentGate(store).is_allowed("acct-1") is True

    @pytest.mark.asyncio
    async def test_explicit_denial(self, store):
        await store.set_consent("acct-1", False)
        gate = ConsentGate(store)

        assert await gate.is_allowed("acct-1") is False
        with pytest.raises(ConsentDenied):
            await gate.require("acct-1")


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
