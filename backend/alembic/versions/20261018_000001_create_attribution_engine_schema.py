"""Create the attribution engine schema.

Revision ID: 20261018_000001
Revises:
Create Date: 2026-10-18 09:00:00.000000

WHAT:
    Creates every table the engine uses:
    - organizations, users, organization_members, api_credentials
    - transactions, touchpoints (ledgers, written by ingestion / capture)
    - meta_campaigns, refcode_mappings (ad platform references)
    - attribution_records, conversion_events
    - backfill_jobs, backfill_chunks (durable backfill work ledger)

WHY:
    The unique constraints carry the engine's upsert keys:
    (organization_id, transaction_id), (organization_id, refcode),
    (organization_id, granularity, attribution_key) and (job_id, chunk_index).

REFERENCES:
    - backend/donorlink/models.py
"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


# revision identifiers, used by Alembic.
revision = '20261018_000001'
down_revision = None
branch_labels = None
depends_on = None


def _id():
    return sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True,
                     server_default=sa.text('gen_random_uuid()'))


def _org_fk():
    return sa.Column('organization_id', postgresql.UUID(as_uuid=True),
                     sa.ForeignKey('organizations.id'), nullable=False)


def _timestamps():
    return [
        sa.Column('created_at', sa.DateTime(), server_default=sa.text('now()')),
        sa.Column('updated_at', sa.DateTime(), server_default=sa.text('now()')),
    ]


def upgrade() -> None:
    # =========================================================================
    # Tenancy and access
    # =========================================================================
    op.create_table(
        'organizations',
        _id(),
        sa.Column('name', sa.String(), nullable=False),
        sa.Column('created_at', sa.DateTime(), server_default=sa.text('now()')),
    )

    op.create_table(
        'users',
        _id(),
        sa.Column('email', sa.String(), nullable=False),
        sa.Column('name', sa.String(), nullable=False),
        sa.Column('is_superuser', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('created_at', sa.DateTime(), server_default=sa.text('now()')),
    )
    op.create_index('ix_users_email', 'users', ['email'], unique=True)

    role_enum = postgresql.ENUM('Owner', 'Admin', 'Viewer', name='roleenum')
    op.create_table(
        'organization_members',
        _id(),
        _org_fk(),
        sa.Column('user_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('users.id'), nullable=False),
        sa.Column('role', role_enum, nullable=False),
        sa.Column('status', sa.String(), server_default='active'),
        *_timestamps(),
        sa.UniqueConstraint('organization_id', 'user_id', name='uq_organization_member'),
    )

    op.create_table(
        'api_credentials',
        _id(),
        _org_fk(),
        sa.Column('platform', sa.String(), nullable=False),
        sa.Column('encrypted_credentials', sa.Text(), nullable=False),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        *_timestamps(),
        sa.UniqueConstraint('organization_id', 'platform', name='uq_api_credential_org_platform'),
    )

    # =========================================================================
    # Ledgers
    # =========================================================================
    op.create_table(
        'transactions',
        _id(),
        _org_fk(),
        sa.Column('transaction_id', sa.String(), nullable=False),
        sa.Column('transaction_date', sa.DateTime(), nullable=False),
        sa.Column('amount', sa.Numeric(12, 2), nullable=False, server_default='0'),
        sa.Column('fee', sa.Numeric(12, 2), nullable=True),
        sa.Column('net_amount', sa.Numeric(12, 2), nullable=True),
        sa.Column('donor_email', sa.String(), nullable=True),
        sa.Column('donor_name', sa.String(), nullable=True),
        sa.Column('phone_hash', sa.String(), nullable=True),
        sa.Column('refcode', sa.String(), nullable=True),
        sa.Column('refcode2', sa.String(), nullable=True),
        sa.Column('click_id', sa.String(), nullable=True),
        sa.Column('fbclid', sa.String(), nullable=True),
        sa.Column('is_recurring', sa.Boolean(), server_default=sa.false()),
        sa.Column('recurring_duration', sa.Integer(), nullable=True),
        sa.Column('transaction_type', sa.String(), server_default='donation'),
        sa.Column('source_campaign', sa.String(), nullable=True),
        *_timestamps(),
        sa.UniqueConstraint('organization_id', 'transaction_id', name='uq_transaction_org_external_id'),
    )
    op.create_index('ix_transactions_org_date', 'transactions', ['organization_id', 'transaction_date'])
    op.create_index('ix_transactions_donor_email', 'transactions', ['donor_email'])
    op.create_index('ix_transactions_refcode', 'transactions', ['refcode'])

    op.create_table(
        'touchpoints',
        _id(),
        _org_fk(),
        sa.Column('touchpoint_type', sa.String(), nullable=False, server_default='ad'),
        sa.Column('donor_email', sa.String(), nullable=True),
        sa.Column('refcode', sa.String(), nullable=True),
        sa.Column('utm_source', sa.String(), nullable=True),
        sa.Column('utm_medium', sa.String(), nullable=True),
        sa.Column('utm_campaign', sa.String(), nullable=True),
        sa.Column('touchpoint_metadata', sa.JSON(), nullable=True),
        sa.Column('occurred_at', sa.DateTime(), nullable=False),
        sa.Column('created_at', sa.DateTime(), server_default=sa.text('now()')),
    )
    op.create_index('ix_touchpoints_org_occurred', 'touchpoints', ['organization_id', 'occurred_at'])
    op.create_index('ix_touchpoints_donor_email', 'touchpoints', ['donor_email'])

    # =========================================================================
    # Ad platform references
    # =========================================================================
    op.create_table(
        'meta_campaigns',
        _id(),
        _org_fk(),
        sa.Column('campaign_id', sa.String(), nullable=False),
        sa.Column('campaign_name', sa.String(), nullable=True),
        sa.Column('ad_id', sa.String(), nullable=True),
        sa.Column('creative_id', sa.String(), nullable=True),
        sa.Column('refcode', sa.String(), nullable=True),
        sa.Column('status', sa.String(), nullable=True),
        sa.Column('ad_updated_at', sa.DateTime(), nullable=True),
        sa.Column('synced_at', sa.DateTime(), server_default=sa.text('now()')),
        sa.UniqueConstraint('organization_id', 'campaign_id', 'ad_id', name='uq_meta_campaign_org_campaign_ad'),
    )

    op.create_table(
        'refcode_mappings',
        _id(),
        _org_fk(),
        sa.Column('refcode', sa.String(), nullable=False),
        sa.Column('platform', sa.String(), nullable=False, server_default='meta'),
        sa.Column('campaign_id', sa.String(), nullable=True),
        sa.Column('campaign_name', sa.String(), nullable=True),
        sa.Column('ad_id', sa.String(), nullable=True),
        sa.Column('creative_id', sa.String(), nullable=True),
        sa.Column('source', sa.String(), server_default='declared'),
        sa.Column('confidence', sa.Float(), nullable=True),
        *_timestamps(),
        sa.UniqueConstraint('organization_id', 'refcode', name='uq_refcode_mapping_org_refcode'),
    )

    # =========================================================================
    # Attribution output and conversion events
    # =========================================================================
    op.create_table(
        'attribution_records',
        _id(),
        _org_fk(),
        sa.Column('granularity', sa.String(), nullable=False),
        sa.Column('attribution_key', sa.String(), nullable=False),
        sa.Column('refcode', sa.String(), nullable=True),
        sa.Column('transaction_id', sa.String(), nullable=True),
        sa.Column('platform', sa.String(), nullable=True),
        sa.Column('campaign_id', sa.String(), nullable=True),
        sa.Column('campaign_name', sa.String(), nullable=True),
        sa.Column('ad_id', sa.String(), nullable=True),
        sa.Column('creative_id', sa.String(), nullable=True),
        sa.Column('confidence', sa.Float(), nullable=False, server_default='0'),
        sa.Column('match_method', sa.String(), nullable=False, server_default='none'),
        sa.Column('match_reason', sa.String(), nullable=True),
        sa.Column('attributed_revenue', sa.Numeric(14, 2), nullable=True),
        sa.Column('attributed_transactions', sa.Integer(), nullable=True),
        sa.Column('is_auto_matched', sa.Boolean(), server_default=sa.false()),
        sa.Column('last_matched_at', sa.DateTime(), nullable=True),
        *_timestamps(),
        sa.UniqueConstraint('organization_id', 'granularity', 'attribution_key',
                            name='uq_attribution_org_granularity_key'),
    )

    op.create_table(
        'conversion_events',
        _id(),
        _org_fk(),
        sa.Column('event_id', sa.String(), nullable=False),
        sa.Column('event_name', sa.String(), nullable=False, server_default='Purchase'),
        sa.Column('source_id', sa.String(), nullable=True),
        sa.Column('fbc', sa.String(), nullable=True),
        sa.Column('fbp', sa.String(), nullable=True),
        sa.Column('status', sa.String(), nullable=False, server_default='pending'),
        sa.Column('event_metadata', sa.JSON(), nullable=True),
        sa.Column('event_time', sa.DateTime(), nullable=True),
        *_timestamps(),
    )
    op.create_index('ix_conversion_events_org_status', 'conversion_events', ['organization_id', 'status'])

    # =========================================================================
    # Backfill work ledger
    # =========================================================================
    op.create_table(
        'backfill_jobs',
        _id(),
        _org_fk(),
        sa.Column('task_name', sa.String(), nullable=False, server_default='transaction_backfill'),
        sa.Column('status', sa.String(), nullable=False, server_default='running'),
        sa.Column('total_chunks', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('processed_chunks', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('failed_chunks', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('start_date', sa.Date(), nullable=True),
        sa.Column('end_date', sa.Date(), nullable=True),
        sa.Column('chunk_size_days', sa.Integer(), nullable=True),
        sa.Column('started_at', sa.DateTime(), server_default=sa.text('now()')),
        sa.Column('last_batch_at', sa.DateTime(), nullable=True),
        sa.Column('completed_at', sa.DateTime(), nullable=True),
        sa.Column('cancelled_at', sa.DateTime(), nullable=True),
        sa.Column('cancelled_by', sa.String(), nullable=True),
        sa.Column('cancel_reason', sa.String(), nullable=True),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.Column('updated_at', sa.DateTime(), server_default=sa.text('now()')),
    )

    op.create_table(
        'backfill_chunks',
        _id(),
        sa.Column('job_id', postgresql.UUID(as_uuid=True),
                  sa.ForeignKey('backfill_jobs.id', ondelete='CASCADE'), nullable=False),
        _org_fk(),
        sa.Column('chunk_index', sa.Integer(), nullable=False),
        sa.Column('start_date', sa.Date(), nullable=False),
        sa.Column('end_date', sa.Date(), nullable=False),
        sa.Column('status', sa.String(), nullable=False, server_default='pending'),
        sa.Column('attempt_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('max_attempts', sa.Integer(), nullable=False, server_default='3'),
        sa.Column('next_retry_at', sa.DateTime(), nullable=True),
        sa.Column('processed_rows', sa.Integer(), server_default='0'),
        sa.Column('inserted_rows', sa.Integer(), server_default='0'),
        sa.Column('updated_rows', sa.Integer(), server_default='0'),
        sa.Column('skipped_rows', sa.Integer(), server_default='0'),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.Column('started_at', sa.DateTime(), nullable=True),
        sa.Column('completed_at', sa.DateTime(), nullable=True),
        sa.Column('updated_at', sa.DateTime(), server_default=sa.text('now()')),
        sa.UniqueConstraint('job_id', 'chunk_index', name='uq_backfill_chunk_job_index'),
    )
    op.create_index('ix_backfill_chunks_status', 'backfill_chunks', ['status'])


def downgrade() -> None:
    op.drop_index('ix_backfill_chunks_status', table_name='backfill_chunks')
    op.drop_table('backfill_chunks')
    op.drop_table('backfill_jobs')
    op.drop_index('ix_conversion_events_org_status', table_name='conversion_events')
    op.drop_table('conversion_events')
    op.drop_table('attribution_records')
    op.drop_table('refcode_mappings')
    op.drop_table('meta_campaigns')
    op.drop_index('ix_touchpoints_donor_email', table_name='touchpoints')
    op.drop_index('ix_touchpoints_org_occurred', table_name='touchpoints')
    op.drop_table('touchpoints')
    op.drop_index('ix_transactions_refcode', table_name='transactions')
    op.drop_index('ix_transactions_donor_email', table_name='transactions')
    op.drop_index('ix_transactions_org_date', table_name='transactions')
    op.drop_table('transactions')
    op.drop_table('api_credentials')
    op.drop_table('organization_members')
    sa.Enum(name='roleenum').drop(op.get_bind(), checkfirst=True)
    op.drop_index('ix_users_email', table_name='users')
    op.drop_table('users')
    op.drop_table('organizations')
