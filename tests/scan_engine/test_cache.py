"""
Tests for refreshable caches and the credential provider.
"""

import asyncio

import pytest

from scan_engine.cache import CredentialProvider, RefreshableValue
from scan_engine.exceptions import ConfigurationError


class TestRefreshableValue:
    """Single-flight loading."""

    @pytest.mark.asyncio
    async def test_concurrent_misses_share_one_load(self):
        calls = []

        async def loader():
            calls.append(1)
            await asyncio.sleep(0.01)
            return "value"

        cache = RefreshableValue(loader)
        results = await asyncio.gather(*(cache.get() for _ in range(10)))

        assert results == ["value"] * 10
        assert len(calls) == 1
        assert cache.load_count == 1

    @pytest.mark.asyncio
    async def test_invalidate_forces_reload(self):
        values = iter(["first", "second"])

        async def loader():
            return next(values)

        cache = RefreshableValue(loader)
        assert await cache.get() == "first"
        cache.invalidate()
        assert not cache.is_loaded
        assert await cache.get() == "second"

    @pytest.mark.asyncio
    async def test_ttl_expiry(self, clock):
        count = []

        async def loader():
            count.append(1)
            return len(count)

        cache = RefreshableValue(loader, ttl_seconds=60, clock=clock)
        assert await cache.get() == 1
        clock.advance(59)
        assert await cache.get() == 1
        clock.advance(2)
        assert await cache.get() == 2

    @pytest.mark.asyncio
    async def test_failed_load_not_cached(self):
        attempts = []

        async def loader():
            attempts.append(1)
            if len(attempts) == 1:
                raise RuntimeError("store down")
            return "ok"

        cache = RefreshableValue(loader)
        with pytest.raises(RuntimeError):
            await cache.get()
        assert await cache.get() == "ok"


class TestCredentialProvider:
    """Reference to secret resolution."""

    @pytest.mark.asyncio
    async def test_default_reference(self):
        async def loader(ref):
            return {"KEY_A": "secret-a"}.get(ref)

        provider = CredentialProvider("KEY_A", loader=loader)
        assert await provider.get() == "secret-a"

    @pytest.mark.asyncio
    async def test_missing_secret(self):
        async def loader(ref):
            return None

        provider = CredentialProvider("KEY_A", loader=loader)
        with pytest.raises(ConfigurationError):
            await provider.get("KEY_B")

    @pytest.mark.asyncio
    async def test_env_loader(self, monkeypatch):
        monkeypatch.setenv("THREAT_SCAN_TEST_KEY", "from-env")
        provider = CredentialProvider("THREAT_SCAN_TEST_KEY")
        assert await provider.get() == "from-env"


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
