"""
Tests for the scan HTTP API.
"""

import base64
from unittest.mock import AsyncMock, MagicMock

import pytest
from fastapi.testclient import TestClient

from scan_api.router import create_app
from scan_engine.exceptions import (
    ConsentDenied,
    QuotaExceeded,
    ScanNotFound,
    ValidationError,
)
from scan_engine.types import (
    Location,
    MatchTier,
    ResponseStatus,
    Scan,
    ScanResponse,
    ScanState,
)


IMAGE_B64 = base64.b64encode(b"\xff\xd8" + b"\x00" * 120).decode()


def body(**overrides):
    payload = {
        "image": IMAGE_B64,
        "metadata": {
            "accountID": "acct-1",
            "cameraID": "cam-1",
            "location": {"lat": 40.7, "lon": -74.0},
            "site": "Lobby",
        },
    }
    payload.update(overrides)
    return payload


def make_client(submit=None, get=None):
    orchestrator = MagicMock()
    orchestrator.submit_scan = submit or AsyncMock(return_value=ScanResponse(
        scan_id="scan-1",
        status=ResponseStatus.COMPLETED,
        state=ScanState.COMPLETED,
        top_score=95,
        tier=MatchTier.HIGH,
        view_url="https://view/scan-1",
    ))
    orchestrator.get_scan = get or AsyncMock()
    return TestClient(create_app(orchestrator)), orchestrator


class TestSubmitEndpoint:
    """POST /scans."""

    def test_completed(self):
        client, orchestrator = make_client()

        response = client.post("/scans", json=body())

        assert response.status_code == 200
        data = response.json()
        assert data["scanId"] == "scan-1"
        assert data["status"] == "COMPLETED"
        assert data["topScore"] == 95
        assert data["matchLevel"] == "HIGH"

        request = orchestrator.submit_scan.await_args.args[0]
        assert request.account_id == "acct-1"
        assert request.site.camera_id == "cam-1"
        assert request.site.location == Location(40.7, -74.0)

    def test_pending(self):
        submit = AsyncMock(return_value=ScanResponse(
            scan_id="scan-2", status=ResponseStatus.PENDING, state=ScanState.DEFERRED,
        ))
        client, _ = make_client(submit=submit)

        data = client.post("/scans", json=body()).json()

        assert data["status"] == "PENDING"
        assert data["state"] == "DEFERRED"
        assert data["topScore"] is None

    def test_url_image(self):
        client, orchestrator = make_client()
        response = client.post("/scans", json=body(image="https://cdn.test/frame.jpg"))

        assert response.status_code == 200
        request = orchestrator.submit_scan.await_args.args[0]
        assert request.image.url == "https://cdn.test/frame.jpg"

    @pytest.mark.parametrize("payload", [
        body(image="short"),
        body(metadata={"accountID": "acct-1", "cameraID": "", "location": {"lat": 0, "lon": 0}}),
        body(metadata={"accountID": "acct-1", "cameraID": "c" * 101, "location": {"lat": 0, "lon": 0}}),
        body(metadata={"accountID": "acct-1", "cameraID": "cam", "location": {"lat": 91, "lon": 0}}),
        body(metadata={"accountID": "acct-1", "cameraID": "cam", "location": {"lat": 0, "lon": -181}}),
        body(metadata={"cameraID": "cam", "location": {"lat": 0, "lon": 0}}),
    ])
    def test_shape_errors_are_400(self, payload):
        client, orchestrator = make_client()

        response = client.post("/scans", json=payload)

        assert response.status_code == 400
        assert response.json()["error"] == "Invalid request"
        orchestrator.submit_scan.assert_not_awaited()

    def test_bad_base64(self):
        client, orchestrator = make_client()
        response = client.post("/scans", json=body(image="A" * 101))

        assert response.status_code == 400
        orchestrator.submit_scan.assert_not_awaited()

    def test_engine_validation_error(self):
        client, _ = make_client(submit=AsyncMock(side_effect=ValidationError("image is required")))
        assert client.post("/scans", json=body()).status_code == 400

    def test_consent_denied(self):
        client, _ = make_client(submit=AsyncMock(side_effect=ConsentDenied("acct-1")))

        response = client.post("/scans", json=body())

        assert response.status_code == 403
        assert response.json()["detail"] == "Consent required for scanning"

    def test_quota_exceeded(self):
        client, _ = make_client(submit=AsyncMock(side_effect=QuotaExceeded("acct-1", 14400, 14400)))

        response = client.post("/scans", json=body())

        assert response.status_code == 429
        assert "14400/14400" in response.json()["detail"]


class TestGetEndpoint:
    """GET /scans/{scan_id}."""

    def test_found(self):
        scan = Scan(
            scan_id="scan-1",
            account_id="acct-1",
            state=ScanState.COMPLETED,
            top_score=80,
            match_tier=MatchTier.MEDIUM,
            location=Location(1.0, 2.0),
        )
        client, _ = make_client(get=AsyncMock(return_value=scan))

        data = client.get("/scans/scan-1").json()

        assert data["state"] == "COMPLETED"
        assert data["matchLevel"] == "MEDIUM"
        assert data["location"] == {"lat": 1.0, "lon": 2.0}

    def test_not_found(self):
        client, _ = make_client(get=AsyncMock(side_effect=ScanNotFound("nope")))
        assert client.get("/scans/nope").status_code == 404


class TestApp:
    """App factory."""

    def test_health(self):
        client, _ = make_client()
        assert client.get("/health").json() == {"status": "ok"}

    def test_not_ready_without_orchestrator(self):
        client = TestClient(create_app())
        assert client.post("/scans", json=body()).status_code == 503


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
