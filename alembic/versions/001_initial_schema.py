"""initial schema - organizations, upstream connection, mirror tables, campaigns

Revision ID: 001
Revises:
Create Date: 2026-10-19 09:00:00.000000

"""
from typing import Sequence, Union
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = '001'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _timestamps():
    return [
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
    ]


def _org_fk():
    return sa.Column(
        'organization_id', sa.String(36),
        sa.ForeignKey('organizations.id', ondelete='CASCADE'),
        nullable=False, index=True,
    )


def upgrade() -> None:
    op.create_table(
        'organizations',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('name', sa.String(255), nullable=False),
        sa.Column('pco_organization_id', sa.String(64), nullable=True, unique=True),
        *_timestamps(),
    )

    # One credential per organization
    op.create_table(
        'pco_connections',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('organization_id', sa.String(36), sa.ForeignKey('organizations.id', ondelete='CASCADE'), nullable=False, unique=True, index=True),
        sa.Column('access_token', sa.Text(), nullable=False),
        sa.Column('refresh_token', sa.Text(), nullable=False),
        sa.Column('scope', sa.String(255), nullable=True),
        sa.Column('last_refreshed_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('pco_user_id', sa.String(64), nullable=True),
        sa.Column('pco_organization_id', sa.String(64), nullable=True),
        sa.Column('connected_by', sa.String(36), nullable=True),
        *_timestamps(),
    )

    op.create_table(
        'pco_webhooks',
        sa.Column('id', sa.String(36), primary_key=True),
        _org_fk(),
        sa.Column('name', sa.String(128), nullable=False),
        sa.Column('webhook_id', sa.String(64), nullable=True),
        sa.Column('authenticity_secret', sa.Text(), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()')),
        sa.UniqueConstraint('organization_id', 'name', name='uq_pco_webhooks_org_name'),
    )

    # Mirror tables, keyed by (organization_id, upstream id)
    op.create_table(
        'people',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('organization_id', sa.String(36), nullable=False, index=True),
        sa.Column('pco_id', sa.String(64), nullable=False),
        sa.Column('first_name', sa.String(255), nullable=True),
        sa.Column('middle_name', sa.String(255), nullable=True),
        sa.Column('last_name', sa.String(255), nullable=True),
        sa.Column('nickname', sa.String(255), nullable=True),
        sa.Column('given_name', sa.String(255), nullable=True),
        *_timestamps(),
        sa.UniqueConstraint('organization_id', 'pco_id', name='uq_people_org_pco_id'),
    )

    op.create_table(
        'people_emails',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('organization_id', sa.String(36), nullable=False, index=True),
        sa.Column('pco_email_id', sa.String(64), nullable=False),
        sa.Column('pco_person_id', sa.String(64), nullable=False),
        sa.Column('email', sa.String(320), nullable=False),
        *_timestamps(),
        sa.UniqueConstraint('organization_id', 'pco_email_id', name='uq_people_emails_org_pco_email_id'),
    )
    op.create_index('ix_people_emails_org_person', 'people_emails', ['organization_id', 'pco_person_id'])

    op.create_table(
        'people_email_statuses',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('organization_id', sa.String(36), nullable=False, index=True),
        sa.Column('email_address', sa.String(320), nullable=False),
        sa.Column('status', sa.String(32), nullable=False, server_default='subscribed'),
        *_timestamps(),
        sa.UniqueConstraint('organization_id', 'email_address', name='uq_email_statuses_org_address'),
    )

    op.create_table(
        'pco_list_categories',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('organization_id', sa.String(36), nullable=False, index=True),
        sa.Column('pco_id', sa.String(64), nullable=False),
        sa.Column('pco_name', sa.String(255), nullable=True),
        *_timestamps(),
        sa.UniqueConstraint('organization_id', 'pco_id', name='uq_list_categories_org_pco_id'),
    )

    op.create_table(
        'pco_lists',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('organization_id', sa.String(36), nullable=False, index=True),
        sa.Column('pco_list_id', sa.String(64), nullable=False),
        sa.Column('pco_list_description', sa.String(1024), nullable=True),
        sa.Column('pco_last_refreshed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('pco_total_people', sa.Integer(), nullable=True),
        sa.Column('pco_list_category_id', sa.String(64), nullable=True),
        *_timestamps(),
        sa.UniqueConstraint('organization_id', 'pco_list_id', name='uq_pco_lists_org_pco_list_id'),
    )

    op.create_table(
        'pco_list_members',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('organization_id', sa.String(36), nullable=False, index=True),
        sa.Column('pco_list_id', sa.String(64), nullable=False, index=True),
        sa.Column('pco_person_id', sa.String(64), nullable=False),
        *_timestamps(),
        sa.UniqueConstraint('organization_id', 'pco_list_id', 'pco_person_id', name='uq_list_members_org_list_person'),
    )

    op.create_table(
        'pco_sync_status',
        sa.Column('id', sa.String(36), primary_key=True),
        _org_fk(),
        sa.Column('resource_type', sa.String(32), nullable=False),
        sa.Column('synced_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('pages_fetched', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('truncated', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.UniqueConstraint('organization_id', 'resource_type', name='uq_sync_status_org_resource'),
    )

    op.create_table(
        'org_email_usage',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('organization_id', sa.String(36), sa.ForeignKey('organizations.id', ondelete='CASCADE'), nullable=False, unique=True, index=True),
        sa.Column('sends_remaining', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('sends_used', sa.Integer(), nullable=False, server_default='0'),
        *_timestamps(),
    )

    op.create_table(
        'email_categories',
        sa.Column('id', sa.String(36), primary_key=True),
        _org_fk(),
        sa.Column('name', sa.String(255), nullable=False),
        *_timestamps(),
    )

    op.create_table(
        'email_category_unsubscribes',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('organization_id', sa.String(36), nullable=False, index=True),
        sa.Column('category_id', sa.String(36), sa.ForeignKey('email_categories.id', ondelete='CASCADE'), nullable=False, index=True),
        sa.Column('email_address', sa.String(320), nullable=False),
        *_timestamps(),
        sa.UniqueConstraint('organization_id', 'category_id', 'email_address', name='uq_category_unsubscribes_org_category_address'),
    )

    # Campaign status as VARCHAR, not enum
    op.create_table(
        'emails',
        sa.Column('id', sa.String(36), primary_key=True),
        _org_fk(),
        sa.Column('subject', sa.String(998), nullable=True),
        sa.Column('from_email', sa.String(320), nullable=True),
        sa.Column('from_name', sa.String(255), nullable=True),
        sa.Column('reply_to', sa.String(320), nullable=True),
        sa.Column('list_id', sa.String(36), nullable=True),
        sa.Column('category_id', sa.String(36), nullable=True),
        sa.Column('scheduled_for', sa.DateTime(timezone=True), nullable=True),
        sa.Column('status', sa.String(20), nullable=False, server_default='draft'),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.Column('recipient_count', sa.Integer(), nullable=True),
        *_timestamps(),
    )


def downgrade() -> None:
    op.drop_table('emails')
    op.drop_table('email_category_unsubscribes')
    op.drop_table('email_categories')
    op.drop_table('org_email_usage')
    op.drop_table('pco_sync_status')
    op.drop_table('pco_list_members')
    op.drop_table('pco_lists')
    op.drop_table('pco_list_categories')
    op.drop_table('people_email_statuses')
    op.drop_index('ix_people_emails_org_person', table_name='people_emails')
    op.drop_table('people_emails')
    op.drop_table('people')
    op.drop_table('pco_webhooks')
    op.drop_table('pco_connections')
    op.drop_table('organizations')
