"""Tenant schema: organizations, identities, sales, API keys, CRM records

Revision ID: a1c2e3f4b5d6
Revises:
Create Date: 2026-10-18 00:00:00.000000

Every CRM table carries organization_id (NOT NULL, ON DELETE CASCADE) with
its own index. api_keys enforces type/organization consistency with a CHECK.
"""
from alembic import op
import sqlalchemy as sa

revision = 'a1c2e3f4b5d6'
down_revision = None
branch_labels = None
depends_on = None

TENANT_TABLES = (
    'sales', 'companies', 'contacts', 'contact_notes', 'deals', 'deal_notes', 'tasks', 'tags',
)

AUDIT_EVENTS = (
    'auth.user.signup', 'auth.user.login', 'auth.user.invited', 'auth.user.updated',
    'auth.service_account.created', 'org.created', 'org.updated',
    'api_key.created', 'api_key.provisioned', 'api_key.revoked', 'gateway.master.access',
)


def _organization_id(nullable=False):
    return sa.Column(
        'organization_id', sa.Integer(),
        sa.ForeignKey('organizations.id', ondelete='CASCADE'), nullable=nullable,
    )


def _sales_id():
    return sa.Column('sales_id', sa.Integer(), sa.ForeignKey('sales.id', ondelete='SET NULL'), nullable=True)


def upgrade() -> None:
    # ---- organizations ----
    op.create_table(
        'organizations',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('name', sa.String(), nullable=False),
        sa.Column('slug', sa.String(), nullable=False),
        sa.Column('settings', sa.JSON(), nullable=False),
        sa.Column('logo_light', sa.String(), nullable=True),
        sa.Column('logo_dark', sa.String(), nullable=True),
        sa.Column('disabled', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('created_at', sa.DateTime(timezone=True)),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_organizations_slug', 'organizations', ['slug'], unique=True)

    # ---- users (auth identities) ----
    op.create_table(
        'users',
        sa.Column('id', sa.String(), nullable=False),
        sa.Column('email', sa.String(), nullable=False),
        sa.Column('password_hash', sa.String(), nullable=True),
        sa.Column('raw_user_meta_data', sa.JSON(), nullable=False),
        sa.Column('banned', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('last_sign_in_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True)),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_users_email', 'users', ['email'], unique=True)

    # ---- sales (CRM principals) ----
    op.create_table(
        'sales',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        _organization_id(),
        sa.Column('user_id', sa.String(), sa.ForeignKey('users.id', ondelete='CASCADE'), nullable=False),
        sa.Column('first_name', sa.String(), nullable=True),
        sa.Column('last_name', sa.String(), nullable=True),
        sa.Column('email', sa.String(), nullable=False),
        sa.Column('avatar', sa.JSON(), nullable=True),
        sa.Column('administrator', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('disabled', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('is_service_account', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('user_id'),
    )
    op.create_index('idx_sales_is_service_account', 'sales', ['is_service_account'])

    # ---- api_keys ----
    op.create_table(
        'api_keys',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('name', sa.String(), nullable=False),
        sa.Column('key_hash', sa.String(), nullable=False),
        sa.Column('key_prefix', sa.String(), nullable=False),
        sa.Column('type', sa.Enum('master', 'organization', name='api_key_type'), nullable=False),
        _organization_id(nullable=True),
        sa.Column('scopes', sa.JSON(), nullable=False),
        sa.Column('created_by', sa.Integer(), sa.ForeignKey('sales.id', ondelete='SET NULL'), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True)),
        sa.Column('last_used_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('expires_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('revoked_at', sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint('id'),
        sa.CheckConstraint(
            "(type = 'organization' AND organization_id IS NOT NULL) "
            "OR (type = 'master' AND organization_id IS NULL)",
            name='ck_api_keys_type_organization',
        ),
    )
    op.create_index('ix_api_keys_key_hash', 'api_keys', ['key_hash'], unique=True)
    op.create_index('ix_api_keys_organization_id', 'api_keys', ['organization_id'])

    # ---- audit_logs ----
    op.create_table(
        'audit_logs',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('event_type', sa.Enum(*AUDIT_EVENTS, name='audit_event_type'), nullable=False),
        sa.Column('organization_id', sa.Integer(),
                  sa.ForeignKey('organizations.id', ondelete='SET NULL'), nullable=True),
        sa.Column('actor_sales_id', sa.Integer(), sa.ForeignKey('sales.id', ondelete='SET NULL'), nullable=True),
        sa.Column('api_key_id', sa.Integer(), sa.ForeignKey('api_keys.id', ondelete='SET NULL'), nullable=True),
        sa.Column('resource_type', sa.String(), nullable=True),
        sa.Column('resource_id', sa.String(), nullable=True),
        sa.Column('request_id', sa.String(), nullable=True),
        sa.Column('details', sa.JSON(), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True)),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_audit_logs_event_type', 'audit_logs', ['event_type'])
    op.create_index('ix_audit_logs_organization_id', 'audit_logs', ['organization_id'])
    op.create_index('ix_audit_logs_created_at', 'audit_logs', ['created_at'])

    # ---- companies ----
    op.create_table(
        'companies',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        _organization_id(),
        _sales_id(),
        sa.Column('name', sa.String(), nullable=False),
        sa.Column('sector', sa.String(), nullable=True),
        sa.Column('size', sa.Integer(), nullable=True),
        sa.Column('linkedin_url', sa.String(), nullable=True),
        sa.Column('website', sa.String(), nullable=True),
        sa.Column('phone_number', sa.String(), nullable=True),
        sa.Column('address', sa.String(), nullable=True),
        sa.Column('zipcode', sa.String(), nullable=True),
        sa.Column('city', sa.String(), nullable=True),
        sa.Column('state_abbr', sa.String(), nullable=True),
        sa.Column('country', sa.String(), nullable=True),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('revenue', sa.String(), nullable=True),
        sa.Column('tax_identifier', sa.String(), nullable=True),
        sa.Column('logo', sa.JSON(), nullable=True),
        sa.Column('context_links', sa.JSON(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True)),
        sa.PrimaryKeyConstraint('id'),
    )

    # ---- contacts ----
    op.create_table(
        'contacts',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        _organization_id(),
        _sales_id(),
        sa.Column('first_name', sa.String(), nullable=True),
        sa.Column('last_name', sa.String(), nullable=True),
        sa.Column('gender', sa.String(), nullable=True),
        sa.Column('title', sa.String(), nullable=True),
        sa.Column('email', sa.String(), nullable=True),
        sa.Column('phone', sa.String(), nullable=True),
        sa.Column('background', sa.Text(), nullable=True),
        sa.Column('avatar', sa.JSON(), nullable=True),
        sa.Column('status', sa.String(), nullable=True),
        sa.Column('has_newsletter', sa.Boolean(), nullable=True),
        sa.Column('tags', sa.JSON(), nullable=True),
        sa.Column('linkedin_url', sa.String(), nullable=True),
        sa.Column('company_id', sa.Integer(), sa.ForeignKey('companies.id', ondelete='CASCADE'), nullable=True),
        sa.Column('first_seen', sa.DateTime(timezone=True), nullable=True),
        sa.Column('last_seen', sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_contacts_company_id', 'contacts', ['company_id'])

    # ---- contact_notes ----
    op.create_table(
        'contact_notes',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        _organization_id(),
        _sales_id(),
        sa.Column('contact_id', sa.Integer(), sa.ForeignKey('contacts.id', ondelete='CASCADE'), nullable=False),
        sa.Column('text', sa.Text(), nullable=True),
        sa.Column('status', sa.String(), nullable=True),
        sa.Column('attachments', sa.JSON(), nullable=True),
        sa.Column('date', sa.DateTime(timezone=True)),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_contact_notes_contact_id', 'contact_notes', ['contact_id'])

    # ---- deals ----
    op.create_table(
        'deals',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        _organization_id(),
        _sales_id(),
        sa.Column('name', sa.String(), nullable=False),
        sa.Column('company_id', sa.Integer(), sa.ForeignKey('companies.id', ondelete='CASCADE'), nullable=True),
        sa.Column('contact_ids', sa.JSON(), nullable=True),
        sa.Column('category', sa.String(), nullable=True),
        sa.Column('stage', sa.String(), nullable=True),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('amount', sa.Integer(), nullable=True),
        sa.Column('index', sa.Integer(), nullable=True),
        sa.Column('expected_closing_date', sa.DateTime(timezone=True), nullable=True),
        sa.Column('archived_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True)),
        sa.Column('updated_at', sa.DateTime(timezone=True)),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_deals_company_id', 'deals', ['company_id'])

    # ---- deal_notes ----
    op.create_table(
        'deal_notes',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        _organization_id(),
        _sales_id(),
        sa.Column('deal_id', sa.Integer(), sa.ForeignKey('deals.id', ondelete='CASCADE'), nullable=False),
        sa.Column('type', sa.String(), nullable=True),
        sa.Column('text', sa.Text(), nullable=True),
        sa.Column('attachments', sa.JSON(), nullable=True),
        sa.Column('date', sa.DateTime(timezone=True)),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_deal_notes_deal_id', 'deal_notes', ['deal_id'])

    # ---- tasks ----
    op.create_table(
        'tasks',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        _organization_id(),
        _sales_id(),
        sa.Column('contact_id', sa.Integer(), sa.ForeignKey('contacts.id', ondelete='CASCADE'), nullable=True),
        sa.Column('type', sa.String(), nullable=True),
        sa.Column('text', sa.Text(), nullable=True),
        sa.Column('due_date', sa.Date(), nullable=True),
        sa.Column('done_date', sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_tasks_contact_id', 'tasks', ['contact_id'])

    # ---- tags ----
    op.create_table(
        'tags',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        _organization_id(),
        sa.Column('name', sa.String(), nullable=False),
        sa.Column('color', sa.String(), nullable=False, server_default='#eddcd2'),
        sa.PrimaryKeyConstraint('id'),
    )

    # organization_id (and sales_id) indexes for every tenant table
    for table in TENANT_TABLES:
        op.create_index(f'ix_{table}_organization_id', table, ['organization_id'])
    for table in ('companies', 'contacts', 'contact_notes', 'deals', 'deal_notes', 'tasks'):
        op.create_index(f'ix_{table}_sales_id', table, ['sales_id'])


def downgrade() -> None:
    op.drop_table('tags')
    op.drop_table('tasks')
    op.drop_table('deal_notes')
    op.drop_table('deals')
    op.drop_table('contact_notes')
    op.drop_table('contacts')
    op.drop_table('companies')
    op.drop_table('audit_logs')
    op.drop_table('api_keys')
    op.drop_table('sales')
    op.drop_table('users')
    op.drop_table('organizations')
    sa.Enum(name='audit_event_type').drop(op.get_bind(), checkfirst=True)
    sa.Enum(name='api_key_type').drop(op.get_bind(), checkfirst=True)
