"""Unit tests for the Scans API endpoints."""

import uuid
from datetime import datetime, timezone, timedelta

import pytest
from fastapi import status

from app.models.compliance_check import ComplianceCheck
from app.models.enums import ScanStatus
from app.models.finding import Finding


async def add_scan(session, client_id, scan_status=ScanStatus.COMPLETED, started_at=None, **fields):
    started_at = started_at or datetime.now(timezone.utc)
    scan = ComplianceCheck(
        client_id=client_id,
        frameworks=fields.pop("frameworks", ["HIPAA"]),
        status=scan_status.value,
        started_at=started_at,
        completed_at=None if scan_status is ScanStatus.IN_PROGRESS else started_at + timedelta(minutes=5),
        **fields,
    )
    session.add(scan)
    await session.commit()
    return scan


class TestCreateScan:
    """Tests for POST /api/scans."""

    @pytest.mark.asyncio
    async def test_create_scan_submits_background_job(self, api_client, tenant, mock_scheduler):
        """Test that a valid request creates an in-progress scan and schedules it."""
        response = await api_client.post("/api/scans", json={"client_id": str(tenant.id)})

        assert response.status_code == status.HTTP_201_CREATED
        data = response.json()
        assert data["status"] == "in_progress"
        assert data["frameworks"] == ["HIPAA", "SOC2"]
        assert data["total_controls"] == 0
        assert data["completed_at"] is None
        mock_scheduler.submit_scan.assert_called_once_with(uuid.UUID(data["id"]))

    @pytest.mark.asyncio
    async def test_create_scan_with_explicit_frameworks(self, api_client, tenant):
        """Test that requested frameworks override the assigned ones."""
        response = await api_client.post(
            "/api/scans",
            json={"client_id": str(tenant.id), "frameworks": ["CIS"]},
        )

        assert response.status_code == status.HTTP_201_CREATED
        assert response.json()["frameworks"] == ["CIS"]

    @pytest.mark.asyncio
    async def test_create_scan_unknown_client(self, api_client, mock_scheduler):
        """Test that an unknown client returns 404."""
        response = await api_client.post("/api/scans", json={"client_id": str(uuid.uuid4())})

        assert response.status_code == status.HTTP_404_NOT_FOUND
        mock_scheduler.submit_scan.assert_not_called()

    @pytest.mark.asyncio
    async def test_create_scan_without_frameworks(self, api_client, db_session, tenant):
        """Test that a client with nothing to scan returns 400."""
        tenant.assigned_frameworks = []
        await db_session.commit()

        response = await api_client.post("/api/scans", json={"client_id": str(tenant.id)})

        assert response.status_code == status.HTTP_400_BAD_REQUEST
        assert "framework" in response.json()["detail"]

    @pytest.mark.asyncio
    async def test_create_scan_while_one_is_running(self, api_client, tenant, mock_scheduler):
        """Test that a second submission for the same client returns 409."""
        first = await api_client.post("/api/scans", json={"client_id": str(tenant.id)})
        second = await api_client.post("/api/scans", json={"client_id": str(tenant.id)})

        assert first.status_code == status.HTTP_201_CREATED
        assert second.status_code == status.HTTP_409_CONFLICT
        assert first.json()["id"] in second.json()["detail"]
        assert mock_scheduler.submit_scan.call_count == 1

    @pytest.mark.asyncio
    async def test_create_scan_invalid_body(self, api_client):
        """Test that a malformed client id returns 422."""
        response = await api_client.post("/api/scans", json={"client_id": "not-a-uuid"})

        assert response.status_code == 422


class TestListScans:
    """Tests for GET /api/scans."""

    @pytest.mark.asyncio
    async def test_list_scans_newest_first(self, api_client, db_session, tenant):
        """Test listing scans ordered by start time."""
        now = datetime.now(timezone.utc)
        older = await add_scan(db_session, tenant.id, started_at=now - timedelta(days=2))
        newer = await add_scan(db_session, tenant.id, started_at=now - timedelta(days=1))

        response = await api_client.get("/api/scans", params={"client_id": str(tenant.id)})

        assert response.status_code == status.HTTP_200_OK
        data = response.json()
        assert data["total"] == 2
        assert [item["id"] for item in data["items"]] == [str(newer.id), str(older.id)]

    @pytest.mark.asyncio
    async def test_list_scans_filter_by_status(self, api_client, db_session, tenant):
        """Test filtering scans by status."""
        await add_scan(db_session, tenant.id, ScanStatus.COMPLETED)
        failed = await add_scan(db_session, tenant.id, ScanStatus.FAILED, error_message="boom")

        response = await api_client.get("/api/scans", params={"status": "failed"})

        data = response.json()
        assert data["total"] == 1
        assert data["items"][0]["id"] == str(failed.id)
        assert data["items"][0]["error_message"] == "boom"

    @pytest.mark.asyncio
    async def test_list_scans_expires_stale_scans(self, api_client, db_session, tenant):
        """Test that an in-progress scan past the budget is reported as failed."""
        stale = await add_scan(
            db_session,
            tenant.id,
            ScanStatus.IN_PROGRESS,
            started_at=datetime.now(timezone.utc) - timedelta(hours=3),
        )

        response = await api_client.get("/api/scans")

        item = response.json()["items"][0]
        assert item["id"] == str(stale.id)
        assert item["status"] == "failed"
        assert "maximum duration" in item["error_message"]

    @pytest.mark.asyncio
    async def test_list_scans_invalid_status(self, api_client):
        """Test that an unknown status filter returns 422."""
        response = await api_client.get("/api/scans", params={"status": "paused"})

        assert response.status_code == 422


class TestGetScan:
    """Tests for GET /api/scans/{scan_id}."""

    @pytest.mark.asyncio
    async def test_get_scan_with_findings(self, api_client, db_session, tenant):
        """Test getting a scan returns its findings ordered by framework and control."""
        scan = await add_scan(db_session, tenant.id, frameworks=["HIPAA", "SOC2"], total_controls=2)
        for framework, control_id in (("SOC2", "a_control"), ("HIPAA", "z_control")):
            db_session.add(Finding(
                client_id=tenant.id,
                compliance_check_id=scan.id,
                control_id=control_id,
                control_title=control_id,
                framework=framework,
                scan_status="fail",
            ))
        await db_session.commit()

        response = await api_client.get(f"/api/scans/{scan.id}")

        assert response.status_code == status.HTTP_200_OK
        data = response.json()
        assert data["total_controls"] == 2
        assert [f["control_id"] for f in data["findings"]] == ["z_control", "a_control"]

    @pytest.mark.asyncio
    async def test_get_scan_not_found(self, api_client):
        """Test that an unknown scan returns 404."""
        response = await api_client.get(f"/api/scans/{uuid.uuid4()}")

        assert response.status_code == status.HTTP_404_NOT_FOUND
