"""Unit tests for the Metadata Merger."""

import uuid
from datetime import datetime, timezone

import pytest

from app.models.control_metadata import ControlMetadata
from app.models.enums import ControlStatus, RemediationStatus
from app.services.metadata_merger import (
    append_status_change,
    load_control_metadata,
    merge_control_metadata,
    upsert_control_metadata,
)


@pytest.fixture
def saved_metadata():
    return ControlMetadata(
        client_id=uuid.uuid4(),
        control_id="s3_bucket_versioning_enabled",
        remediation_status=RemediationStatus.IN_PROGRESS.value,
        assigned_owner_id=uuid.uuid4(),
        notes="follow up with infra team",
        status_history=[{"status": "in_progress", "changed_by": "dana", "changed_at": "2026-01-01T00:00:00+00:00"}],
        ai_business_context="Versioning protects against accidental deletion.",
        ai_remediation_guidance="Enable versioning on the bucket.",
    )


class TestMergeControlMetadata:
    """Tests for combining persisted metadata with a fresh result."""

    def test_no_metadata_failing_control_is_open(self):
        merged = merge_control_metadata(ControlStatus.FAIL, None)

        assert merged.remediation_status is RemediationStatus.OPEN
        assert merged.notes is None
        assert merged.status_history == []

    def test_no_metadata_passing_control_is_resolved(self):
        assert merge_control_metadata(ControlStatus.PASS, None).remediation_status is RemediationStatus.RESOLVED

    def test_failing_control_carries_metadata_forward(self, saved_metadata):
        merged = merge_control_metadata(ControlStatus.FAIL, saved_metadata)

        assert merged.remediation_status is RemediationStatus.IN_PROGRESS
        assert merged.assigned_owner_id == saved_metadata.assigned_owner_id
        assert merged.notes == "follow up with infra team"
        assert merged.status_history == saved_metadata.status_history
        assert merged.ai_business_context == saved_metadata.ai_business_context
        assert merged.ai_remediation_guidance == saved_metadata.ai_remediation_guidance

    def test_passing_control_is_resolved_but_keeps_notes(self, saved_metadata):
        merged = merge_control_metadata(ControlStatus.PASS, saved_metadata)

        assert merged.remediation_status is RemediationStatus.RESOLVED
        assert merged.notes == "follow up with infra team"

    @pytest.mark.parametrize("scan_status", [ControlStatus.ERROR, ControlStatus.SKIP])
    def test_error_and_skip_keep_persisted_status(self, saved_metadata, scan_status):
        assert merge_control_metadata(scan_status, saved_metadata).remediation_status is RemediationStatus.IN_PROGRESS

    def test_history_is_copied_not_shared(self, saved_metadata):
        merged = merge_control_metadata(ControlStatus.FAIL, saved_metadata)
        merged.status_history.append({"status": "open"})

        assert len(saved_metadata.status_history) == 1


class TestAppendStatusChange:
    """Tests for status history entries."""

    def test_appends_without_mutating(self):
        history = [{"status": "open", "changed_by": None, "changed_at": "2026-01-01T00:00:00+00:00"}]
        changed_at = datetime(2026, 2, 1, tzinfo=timezone.utc)

        updated = append_status_change(history, RemediationStatus.RESOLVED, "sam", changed_at)

        assert len(history) == 1
        assert updated[-1] == {
            "status": "resolved",
            "changed_by": "sam",
            "changed_at": "2026-02-01T00:00:00+00:00",
        }

    def test_starts_from_empty_history(self):
        assert len(append_status_change(None, RemediationStatus.OPEN)) == 1


class TestControlMetadataPersistence:
    """Tests for loading and upserting metadata rows."""

    @pytest.mark.asyncio
    async def test_upsert_creates_then_updates(self, db_session, tenant):
        created = await upsert_control_metadata(
            db_session,
            tenant.id,
            "iam_root_access_key",
            remediation_status=RemediationStatus.IN_PROGRESS,
            notes="rotate keys",
        )
        updated = await upsert_control_metadata(
            db_session,
            tenant.id,
            "iam_root_access_key",
            notes="keys rotated",
        )

        assert updated.id == created.id
        assert updated.remediation_status == "in_progress"
        assert updated.notes == "keys rotated"

    @pytest.mark.asyncio
    async def test_upsert_rejects_unknown_fields(self, db_session, tenant):
        with pytest.raises(ValueError, match="scan_status"):
            await upsert_control_metadata(db_session, tenant.id, "x", scan_status="pass")

    @pytest.mark.asyncio
    async def test_load_is_scoped_to_client(self, db_session, tenant):
        await upsert_control_metadata(db_session, tenant.id, "a", notes="mine")
        await upsert_control_metadata(db_session, tenant.id, "b", notes="also mine")

        loaded = await load_control_metadata(db_session, tenant.id, ["a", "c"])
        other = await load_control_metadata(db_session, uuid.uuid4(), ["a", "b"])

        assert set(loaded) == {"a"}
        assert loaded["a"].notes == "mine"
        assert other == {}

    @pytest.mark.asyncio
    async def test_load_with_no_ids(self, db_session, tenant):
        assert await load_control_metadata(db_session, tenant.id, []) == {}
