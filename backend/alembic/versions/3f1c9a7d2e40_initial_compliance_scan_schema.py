"""Initial compliance scan schema

Revision ID: 3f1c9a7d2e40
Revises:
Create Date: 2026-10-17 09:12:44.501337

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = '3f1c9a7d2e40'
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Create tables for clients, credentials, scans, findings, history and control metadata."""

    # Create clients table
    op.create_table(
        'clients',
        sa.Column('id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('company_name', sa.String(length=255), nullable=False),
        sa.Column('status', sa.String(length=20), nullable=False, server_default='active'),
        sa.Column('assigned_frameworks', postgresql.JSONB(), nullable=False, server_default='[]'),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.PrimaryKeyConstraint('id')
    )

    # Create credentials table
    op.create_table(
        'credentials',
        sa.Column('id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('client_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('provider', sa.String(length=50), nullable=False),
        sa.Column('credentials', postgresql.JSONB(), nullable=False, server_default='{}'),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('region', sa.String(length=100), nullable=True),
        sa.Column('account_id', sa.String(length=100), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.ForeignKeyConstraint(['client_id'], ['clients.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_credentials_client_id', 'credentials', ['client_id'], unique=False)
    op.create_index('ix_credentials_provider', 'credentials', ['provider'], unique=False)

    # Create compliance_checks table
    op.create_table(
        'compliance_checks',
        sa.Column('id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('client_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('frameworks', postgresql.JSONB(), nullable=False, server_default='[]'),
        sa.Column('status', sa.String(length=20), nullable=False, server_default='in_progress'),
        sa.Column('total_controls', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('passed_controls', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('failed_controls', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('error_controls', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('skip_controls', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('verification_warnings', postgresql.JSONB(), nullable=False, server_default='[]'),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.Column('started_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column('completed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.ForeignKeyConstraint(['client_id'], ['clients.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_compliance_checks_client_id', 'compliance_checks', ['client_id'], unique=False)
    op.create_index('ix_compliance_checks_status', 'compliance_checks', ['status'], unique=False)
    op.create_index(
        'uq_compliance_checks_running_per_client',
        'compliance_checks',
        ['client_id'],
        unique=True,
        postgresql_where=sa.text("status = 'in_progress'"),
    )

    # Create findings table
    op.create_table(
        'findings',
        sa.Column('id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('client_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('compliance_check_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('control_id', sa.String(length=255), nullable=False),
        sa.Column('control_title', sa.String(length=500), nullable=False),
        sa.Column('control_description', sa.Text(), nullable=True),
        sa.Column('framework', sa.String(length=50), nullable=False),
        sa.Column('domain', sa.String(length=100), nullable=True),
        sa.Column('category', sa.String(length=100), nullable=True),
        sa.Column('scan_status', sa.String(length=20), nullable=False),
        sa.Column('scan_reason', sa.Text(), nullable=True),
        sa.Column('scan_resources', postgresql.JSONB(), nullable=True),
        sa.Column('permission_error', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('error_type', sa.String(length=50), nullable=True),
        sa.Column('remediation_status', sa.String(length=20), nullable=False, server_default='open'),
        sa.Column('assigned_owner_id', postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column('notes', sa.Text(), nullable=True),
        sa.Column('status_history', postgresql.JSONB(), nullable=False, server_default='[]'),
        sa.Column('ai_business_context', sa.Text(), nullable=True),
        sa.Column('ai_remediation_guidance', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.ForeignKeyConstraint(['client_id'], ['clients.id'], ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['compliance_check_id'], ['compliance_checks.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('compliance_check_id', 'control_id', name='uq_findings_control_per_scan')
    )
    op.create_index('ix_findings_client_id', 'findings', ['client_id'], unique=False)
    op.create_index('ix_findings_compliance_check_id', 'findings', ['compliance_check_id'], unique=False)
    op.create_index('ix_findings_control_id', 'findings', ['control_id'], unique=False)
    op.create_index('ix_findings_framework', 'findings', ['framework'], unique=False)
    op.create_index('ix_findings_scan_status', 'findings', ['scan_status'], unique=False)
    op.create_index('ix_findings_remediation_status', 'findings', ['remediation_status'], unique=False)

    # Create findings_history table (no foreign keys; rows outlive their sources)
    op.create_table(
        'findings_history',
        sa.Column('id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('original_finding_id', postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column('client_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('compliance_check_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('control_id', sa.String(length=255), nullable=False),
        sa.Column('control_title', sa.String(length=500), nullable=False),
        sa.Column('control_description', sa.Text(), nullable=True),
        sa.Column('framework', sa.String(length=50), nullable=False),
        sa.Column('domain', sa.String(length=100), nullable=True),
        sa.Column('category', sa.String(length=100), nullable=True),
        sa.Column('scan_status', sa.String(length=20), nullable=False),
        sa.Column('scan_reason', sa.Text(), nullable=True),
        sa.Column('scan_resources', postgresql.JSONB(), nullable=True),
        sa.Column('permission_error', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('error_type', sa.String(length=50), nullable=True),
        sa.Column('remediation_status', sa.String(length=20), nullable=True),
        sa.Column('assigned_owner_id', postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column('notes', sa.Text(), nullable=True),
        sa.Column('status_history', postgresql.JSONB(), nullable=True),
        sa.Column('ai_business_context', sa.Text(), nullable=True),
        sa.Column('ai_remediation_guidance', sa.Text(), nullable=True),
        sa.Column('original_created_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('original_updated_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('archived_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column('archived_by_scan_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_findings_history_client_id', 'findings_history', ['client_id'], unique=False)
    op.create_index('ix_findings_history_compliance_check_id', 'findings_history', ['compliance_check_id'], unique=False)
    op.create_index('ix_findings_history_control_id', 'findings_history', ['control_id'], unique=False)
    op.create_index('ix_findings_history_framework', 'findings_history', ['framework'], unique=False)
    op.create_index('ix_findings_history_archived_at', 'findings_history', ['archived_at'], unique=False)
    op.create_index('ix_findings_history_archived_by_scan_id', 'findings_history', ['archived_by_scan_id'], unique=False)

    # Create control_metadata table
    op.create_table(
        'control_metadata',
        sa.Column('id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('client_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('control_id', sa.String(length=255), nullable=False),
        sa.Column('remediation_status', sa.String(length=20), nullable=False, server_default='open'),
        sa.Column('assigned_owner_id', postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column('notes', sa.Text(), nullable=True),
        sa.Column('status_history', postgresql.JSONB(), nullable=False, server_default='[]'),
        sa.Column('ai_business_context', sa.Text(), nullable=True),
        sa.Column('ai_remediation_guidance', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.ForeignKeyConstraint(['client_id'], ['clients.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('client_id', 'control_id', name='uq_control_metadata_client_control')
    )
    op.create_index('ix_control_metadata_client_id', 'control_metadata', ['client_id'], unique=False)
    op.create_index('ix_control_metadata_control_id', 'control_metadata', ['control_id'], unique=False)


def downgrade() -> None:
    """Drop all tables in reverse order."""
    op.drop_table('control_metadata')
    op.drop_table('findings_history')
    op.drop_table('findings')
    op.drop_index('uq_compliance_checks_running_per_client', table_name='compliance_checks')
    op.drop_table('compliance_checks')
    op.drop_table('credentials')
    op.drop_table('clients')
