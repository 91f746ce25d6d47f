#!/usr/bin/env python3
"""
Seed script for the Compliance Scan Service demo.

This script creates sample data in the application database including:
- A demo client assigned to HIPAA and SOC2
- An AWS credential for the client, read from the environment
- A completed scan with findings and control metadata, so the findings and
  verification endpoints have something to show before the first real scan

Usage:
    cd backend
    python ../demo/seed_data.py

Or from the project root:
    PYTHONPATH=backend python demo/seed_data.py

Set AWS_ACCESS_KEY_ID, AWS_SECRET_ACCESS_KEY and optionally AWS_DEFAULT_REGION
to seed a credential that a real scan can use.
"""

import asyncio
import os
import sys
import uuid
from datetime import datetime, timedelta, timezone
from pathlib import Path

# Add backend to path for imports
backend_path = Path(__file__).parent.parent / "backend"
if backend_path.exists():
    sys.path.insert(0, str(backend_path))

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.database import async_session_maker, init_db
from app.models.client import Client
from app.models.compliance_check import ComplianceCheck
from app.models.control_metadata import ControlMetadata
from app.models.credential import Credential
from app.models.enums import ControlStatus, RemediationStatus, ScanStatus
from app.models.finding import Finding
from app.services.metadata_merger import append_status_change, merge_control_metadata
from app.services.output_normalizer import DEFAULT_PERMISSION_VOCABULARY, derive_domain


DEMO_COMPANY = "Northwind Clinics (demo)"
DEMO_FRAMEWORKS = ["HIPAA", "SOC2"]

# (framework, control id, title, status, reason)
SAMPLE_CONTROLS = [
    (
        "HIPAA",
        "cloudtrail_multi_region_trail_enabled",
        "At least one multi-region AWS CloudTrail should be present in an account",
        ControlStatus.PASS,
        "Trail org-trail is multi-region.",
    ),
    (
        "HIPAA",
        "s3_bucket_restrict_public_read_access",
        "S3 buckets should prohibit public read access",
        ControlStatus.FAIL,
        "Bucket patient-exports allows public read.",
    ),
    (
        "HIPAA",
        "kms_cmk_rotation_enabled",
        "KMS CMK rotation should be enabled",
        ControlStatus.ERROR,
        "AccessDeniedException: User is not authorized to perform: kms:ListKeys",
    ),
    (
        "HIPAA",
        "rds_db_instance_backup_enabled",
        "RDS DB instance backup should be enabled",
        ControlStatus.FAIL,
        "Instance reporting-db has backups disabled.",
    ),
    (
        "SOC2",
        "iam_root_user_no_access_keys",
        "IAM root user should not have access keys",
        ControlStatus.PASS,
        "Root user has no access keys.",
    ),
    (
        "SOC2",
        "guardduty_enabled",
        "GuardDuty should be enabled",
        ControlStatus.SKIP,
        None,
    ),
]

# Remediation work already recorded for the demo client
SAMPLE_METADATA = {
    "s3_bucket_restrict_public_read_access": {
        "remediation_status": RemediationStatus.IN_PROGRESS,
        "notes": "Exports moved to a private bucket; public bucket scheduled for deletion.",
    },
    "iam_root_user_no_access_keys": {
        "remediation_status": RemediationStatus.IN_PROGRESS,
        "notes": "Root keys deleted last sprint.",
    },
}


async def clear_existing_data(session: AsyncSession) -> None:
    """Remove the demo client; its scans, findings and credentials cascade."""
    print("Clearing existing demo data...")

    result = await session.execute(select(Client.id).where(Client.company_name == DEMO_COMPANY))
    client_ids = list(result.scalars().all())
    if client_ids:
        await session.execute(delete(ControlMetadata).where(ControlMetadata.client_id.in_(client_ids)))
        await session.execute(delete(Finding).where(Finding.client_id.in_(client_ids)))
        await session.execute(delete(ComplianceCheck).where(ComplianceCheck.client_id.in_(client_ids)))
        await session.execute(delete(Credential).where(Credential.client_id.in_(client_ids)))
        await session.execute(delete(Client).where(Client.id.in_(client_ids)))

    await session.commit()
    print(f"Removed {len(client_ids)} demo client(s).")


async def seed_client(session: AsyncSession) -> Client:
    """Create the demo client and its AWS credential."""
    print("Creating demo client...")

    client = Client(id=uuid.uuid4(), company_name=DEMO_COMPANY, assigned_frameworks=DEMO_FRAMEWORKS)
    session.add(client)

    region = os.environ.get("AWS_DEFAULT_REGION", "us-east-1")
    session.add(Credential(
        client_id=client.id,
        provider="aws",
        credentials={
            "access_key_id": os.environ.get("AWS_ACCESS_KEY_ID", "AKIADEMO"),
            "secret_access_key": os.environ.get("AWS_SECRET_ACCESS_KEY", "demo-secret"),
            "region": region,
        },
        region=region,
        is_active=True,
    ))
    await session.flush()

    print(f"  Client: {client.company_name} ({client.id})")
    return client


async def seed_metadata(session: AsyncSession, client: Client) -> dict[str, ControlMetadata]:
    """Create control metadata as if remediation had already started."""
    print("Creating control metadata...")

    rows = {}
    for control_id, fields in SAMPLE_METADATA.items():
        status = fields["remediation_status"]
        metadata = ControlMetadata(
            client_id=client.id,
            control_id=control_id,
            remediation_status=status.value,
            notes=fields["notes"],
            status_history=append_status_change(
                [],
                status,
                changed_by="demo@northwind.example",
                changed_at=datetime.now(timezone.utc) - timedelta(days=3),
            ),
        )
        session.add(metadata)
        rows[control_id] = metadata

    await session.flush()
    return rows


async def seed_scan(
    session: AsyncSession,
    client: Client,
    metadata: dict[str, ControlMetadata],
) -> ComplianceCheck:
    """Create a completed scan with findings merged with control metadata."""
    print("Creating completed scan...")

    now = datetime.now(timezone.utc)
    counts = {status: sum(1 for c in SAMPLE_CONTROLS if c[3] is status) for status in ControlStatus}
    scan = ComplianceCheck(
        client_id=client.id,
        frameworks=DEMO_FRAMEWORKS,
        status=ScanStatus.COMPLETED.value,
        started_at=now - timedelta(hours=1),
        completed_at=now - timedelta(minutes=42),
        total_controls=len(SAMPLE_CONTROLS),
        passed_controls=counts[ControlStatus.PASS],
        failed_controls=counts[ControlStatus.FAIL],
        error_controls=counts[ControlStatus.ERROR],
        skip_controls=counts[ControlStatus.SKIP],
        verification_warnings=[
            "HIPAA: Control count (4) is significantly below expected range (130-350).",
        ],
    )
    session.add(scan)
    await session.flush()

    for framework, control_id, title, status, reason in SAMPLE_CONTROLS:
        permission_error, error_type = DEFAULT_PERMISSION_VOCABULARY.classify(reason)
        merged = merge_control_metadata(status, metadata.get(control_id))
        session.add(Finding(
            client_id=client.id,
            compliance_check_id=scan.id,
            control_id=control_id,
            control_title=title,
            framework=framework,
            domain=derive_domain(control_id),
            scan_status=status.value,
            scan_reason=reason,
            scan_resources=[{"resource": f"arn:aws:::{control_id}", "status": status.value, "reason": reason}]
            if reason else None,
            permission_error=permission_error,
            error_type=error_type.value if error_type else None,
            remediation_status=merged.remediation_status.value,
            assigned_owner_id=merged.assigned_owner_id,
            notes=merged.notes,
            status_history=merged.status_history,
        ))

    await session.flush()
    print(f"  Scan {scan.id}: {scan.total_controls} controls")
    return scan


async def main() -> None:
    """Main function to seed the database."""
    print("=" * 60)
    print("Compliance Scan Service - Demo Data Seeder")
    print("=" * 60)
    print()

    await init_db()

    try:
        async with async_session_maker() as session:
            await clear_existing_data(session)

            client = await seed_client(session)
            metadata = await seed_metadata(session, client)
            scan = await seed_scan(session, client, metadata)

            await session.commit()

            print()
            print("=" * 60)
            print("Demo data seeded successfully!")
            print("=" * 60)
            print()
            print("Summary:")
            print(f"  - Client {client.id} ({', '.join(DEMO_FRAMEWORKS)})")
            print(f"  - 1 AWS credential")
            print(f"  - {len(metadata)} control metadata rows")
            print(f"  - Scan {scan.id} with {len(SAMPLE_CONTROLS)} findings")
            print()
            print("Start a real scan with:")
            print(f"  curl -X POST localhost:8000/api/scans -H 'Content-Type: application/json' "
                  f"-d '{{\"client_id\": \"{client.id}\"}}'")
            print()

    except Exception as e:
        print(f"Error seeding data: {e}")
        raise


if __name__ == "__main__":
    asyncio.run(main())
