"""Create sales metrics schema.

Revision ID: 20240301_000001
Revises:
Create Date: 2024-03-01 12:00:00.000000

WHAT:
    Creates the tenant-scoped tables:
    - accounts (with business_timezone)
    - users, account_access, crm_users
    - contacts, dials, appointments, discoveries (with local date buckets)
    - attribution_sessions (quality / method / expires_at)

WHY:
    Metrics filter on business-local dates and resolved user ids; attribution
    sessions carry a monotonic quality tier and a fixed expiry.

REFERENCES:
    - backend/salesmetrics/models.py
"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


# revision identifiers, used by Alembic.
revision = '20240301_000001'
down_revision = None
branch_labels = None
depends_on = None


ACCESS_ROLES = ('admin', 'moderator', 'setter', 'sales_rep')
CALL_OUTCOMES = ('Show', 'No Show', 'Reschedule', 'Cancel')
SHOW_OUTCOMES = ('won', 'lost', 'follow_up')
QUALITIES = ('none', 'heuristic', 'utm', 'exact')
METHODS = ('utm_direct', 'fbclid_lookup', 'gclid_lookup', 'pixel_bridge', 'fingerprint_match', 'referrer_match')


def _local_date_columns():
    return [
        sa.Column('local_date', sa.Date(), nullable=True),
        sa.Column('local_week', sa.Date(), nullable=True),
        sa.Column('local_month', sa.Date(), nullable=True),
    ]


def _role_columns(role):
    return [
        sa.Column(role, sa.String(), nullable=True),
        sa.Column(f'crm_{role}_user_id', sa.String(), nullable=True),
        sa.Column(f'{role}_user_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('users.id'), nullable=True),
    ]


def upgrade() -> None:
    # =========================================================================
    # STEP 1: Tenancy & access
    # =========================================================================
    op.create_table(
        'accounts',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('name', sa.String(), nullable=False),
        sa.Column('business_timezone', sa.String(), nullable=False, server_default='UTC'),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('created_at', sa.DateTime(), nullable=True),
        sa.Column('updated_at', sa.DateTime(), nullable=True),
    )

    op.create_table(
        'users',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('email', sa.String(), nullable=False, unique=True),
        sa.Column('full_name', sa.String(), nullable=True),
        sa.Column('is_global_admin', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('created_at', sa.DateTime(), nullable=True),
    )

    op.create_table(
        'account_access',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('user_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('users.id'), nullable=False),
        sa.Column('account_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('accounts.id'), nullable=False),
        sa.Column('role', sa.Enum(*ACCESS_ROLES, name='accessroleenum'), nullable=False),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('created_at', sa.DateTime(), nullable=True),
        sa.Column('updated_at', sa.DateTime(), nullable=True),
        sa.UniqueConstraint('user_id', 'account_id', name='uq_account_access_user_account'),
    )

    op.create_table(
        'crm_users',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('account_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('accounts.id'), nullable=False),
        sa.Column('crm_user_id', sa.String(), nullable=False),
        sa.Column('name', sa.String(), nullable=True),
        sa.Column('email', sa.String(), nullable=True),
        sa.Column('role', sa.String(), nullable=True),
        sa.Column('user_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('users.id'), nullable=True),
        sa.Column('is_invited', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('appointment_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('dial_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('discovery_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('last_activity_at', sa.DateTime(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=True),
        sa.Column('updated_at', sa.DateTime(), nullable=True),
        sa.UniqueConstraint('account_id', 'crm_user_id', name='uq_crm_users_account_crm_id'),
    )
    op.create_index('ix_crm_users_account_id', 'crm_users', ['account_id'])

    # =========================================================================
    # STEP 2: Contacts & activity
    # =========================================================================
    op.create_table(
        'contacts',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('account_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('accounts.id'), nullable=False),
        sa.Column('crm_contact_id', sa.String(), nullable=True),
        sa.Column('name', sa.String(), nullable=True),
        sa.Column('email', sa.String(), nullable=True),
        sa.Column('phone', sa.String(), nullable=True),
        sa.Column('attribution_source', sa.JSON(), nullable=True),
        sa.Column('last_attribution_source', sa.JSON(), nullable=True),
        sa.Column('crm_created_at', sa.DateTime(), nullable=True),
        *_local_date_columns(),
        sa.Column('created_at', sa.DateTime(), nullable=True),
        sa.Column('updated_at', sa.DateTime(), nullable=True),
    )
    op.create_index('ix_contacts_account_id', 'contacts', ['account_id'])
    op.create_index('ix_contacts_account_local_date', 'contacts', ['account_id', 'local_date'])

    op.create_table(
        'dials',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('account_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('accounts.id'), nullable=False),
        sa.Column('contact_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('contacts.id'), nullable=True),
        *_role_columns('setter'),
        sa.Column('date_called', sa.DateTime(), nullable=False),
        sa.Column('answered', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('meaningful_conversation', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('booked', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('duration_seconds', sa.Integer(), nullable=True),
        *_local_date_columns(),
        sa.Column('created_at', sa.DateTime(), nullable=True),
    )
    op.create_index('ix_dials_account_id', 'dials', ['account_id'])
    op.create_index('ix_dials_account_local_date', 'dials', ['account_id', 'local_date'])

    call_outcome = sa.Enum(*CALL_OUTCOMES, name='calloutcomeenum')
    show_outcome = sa.Enum(*SHOW_OUTCOMES, name='showoutcomeenum')

    op.create_table(
        'appointments',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('account_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('accounts.id'), nullable=False),
        sa.Column('contact_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('contacts.id'), nullable=True),
        *_role_columns('setter'),
        *_role_columns('sales_rep'),
        sa.Column('date_booked', sa.DateTime(), nullable=True),
        sa.Column('date_booked_for', sa.DateTime(), nullable=False),
        sa.Column('call_outcome', call_outcome, nullable=True),
        sa.Column('show_outcome', show_outcome, nullable=True),
        sa.Column('cash_collected', sa.Numeric(12, 2), nullable=True),
        sa.Column('total_sales_value', sa.Numeric(12, 2), nullable=True),
        *_local_date_columns(),
        sa.Column('created_at', sa.DateTime(), nullable=True),
    )
    op.create_index('ix_appointments_account_id', 'appointments', ['account_id'])
    op.create_index('ix_appointments_account_local_date', 'appointments', ['account_id', 'local_date'])

    op.create_table(
        'discoveries',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('account_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('accounts.id'), nullable=False),
        sa.Column('contact_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('contacts.id'), nullable=True),
        *_role_columns('setter'),
        *_role_columns('sales_rep'),
        sa.Column('date_booked_for', sa.DateTime(), nullable=False),
        sa.Column('call_outcome', postgresql.ENUM(*CALL_OUTCOMES, name='calloutcomeenum', create_type=False), nullable=True),
        sa.Column('show_outcome', postgresql.ENUM(*SHOW_OUTCOMES, name='showoutcomeenum', create_type=False), nullable=True),
        *_local_date_columns(),
        sa.Column('created_at', sa.DateTime(), nullable=True),
    )
    op.create_index('ix_discoveries_account_id', 'discoveries', ['account_id'])
    op.create_index('ix_discoveries_account_local_date', 'discoveries', ['account_id', 'local_date'])

    # =========================================================================
    # STEP 3: Attribution sessions
    # =========================================================================
    op.create_table(
        'attribution_sessions',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('session_id', sa.String(), nullable=False, unique=True),
        sa.Column('account_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('accounts.id'), nullable=False),
        sa.Column('fbclid', sa.String(), nullable=True),
        sa.Column('gclid', sa.String(), nullable=True),
        sa.Column('fbc', sa.String(), nullable=True),
        sa.Column('fbp', sa.String(), nullable=True),
        sa.Column('utm_source', sa.String(), nullable=True),
        sa.Column('utm_medium', sa.String(), nullable=True),
        sa.Column('utm_campaign', sa.String(), nullable=True),
        sa.Column('utm_content', sa.String(), nullable=True),
        sa.Column('utm_term', sa.String(), nullable=True),
        sa.Column('utm_id', sa.String(), nullable=True),
        sa.Column('meta_campaign_id', sa.String(), nullable=True),
        sa.Column('meta_ad_set_id', sa.String(), nullable=True),
        sa.Column('meta_ad_id', sa.String(), nullable=True),
        sa.Column('landing_url', sa.String(), nullable=True),
        sa.Column('referrer_url', sa.String(), nullable=True),
        sa.Column('fingerprint_id', sa.String(), nullable=True),
        sa.Column('quality', sa.Enum(*QUALITIES, name='attributionqualityenum'), nullable=False, server_default='none'),
        sa.Column('method', sa.Enum(*METHODS, name='attributionmethodenum'), nullable=True),
        sa.Column('contact_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('contacts.id'), nullable=True),
        sa.Column('first_visit_at', sa.DateTime(), nullable=False),
        sa.Column('last_activity_at', sa.DateTime(), nullable=False),
        sa.Column('expires_at', sa.DateTime(), nullable=False),
        sa.Column('linked_at', sa.DateTime(), nullable=True),
    )
    op.create_index('ix_attribution_sessions_account_id', 'attribution_sessions', ['account_id'])
    op.create_index('ix_attribution_sessions_contact_id', 'attribution_sessions', ['contact_id'])
    op.create_index('ix_attribution_sessions_account_expires', 'attribution_sessions', ['account_id', 'expires_at'])


def downgrade() -> None:
    op.drop_table('attribution_sessions')
    op.drop_table('discoveries')
    op.drop_table('appointments')
    op.drop_table('dials')
    op.drop_table('contacts')
    op.drop_table('crm_users')
    op.drop_table('account_access')
    op.drop_table('users')
    op.drop_table('accounts')

    for enum_name in (
        'attributionmethodenum',
        'attributionqualityenum',
        'showoutcomeenum',
        'calloutcomeenum',
        'accessroleenum',
    ):
        op.execute(f'DROP TYPE IF EXISTS {enum_name}')
