"""initial cadence schema

Revision ID: 001
Revises:
Create Date: 2024-03-01 00:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = '001'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        'profiles',
        sa.Column('user_id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('entitlement_status', sa.Text(), nullable=False, server_default='none'),
        sa.Column('ever_subscribed', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('ever_started_trial', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('trial_started_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('trial_ends_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('stripe_customer_id', sa.Text(), nullable=True),
        sa.Column('active_subscription_id', sa.Text(), nullable=True),
        sa.Column('rc_customer_id', sa.Text(), nullable=True),
        sa.Column('subscription_platform', sa.Text(), nullable=True),
        sa.Column('subscription_product_id', sa.Text(), nullable=True),
        sa.Column('subscription_expires_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('original_transaction_id', sa.Text(), nullable=True),
        sa.Column('current_week_number', sa.Integer(), nullable=True),
        sa.Column('next_week_due_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('timezone', sa.Text(), nullable=True),
        sa.Column('last_result', postgresql.JSONB(), nullable=True),
        sa.Column('measurement_prefs', postgresql.JSONB(), nullable=True),
        sa.Column('smoking_prefs', postgresql.JSONB(), nullable=True),
        sa.UniqueConstraint('stripe_customer_id', name='uq_profiles_stripe_customer_id'),
        sa.CheckConstraint(
            "entitlement_status IN ('none', 'trial', 'active', 'grace', 'past_due', 'canceled')",
            name='ck_profiles_entitlement_status',
        ),
    )
    op.create_index('ix_profiles_stripe_customer_id', 'profiles', ['stripe_customer_id'])

    op.create_table(
        'lifecycle_events',
        sa.Column('event_id', sa.Text(), primary_key=True),
        sa.Column('provider', sa.Text(), nullable=False),
        sa.Column('event_type', sa.Text(), nullable=False),
        sa.Column('payload', postgresql.JSONB(), nullable=False),
        sa.Column('received_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column('processed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('outcome', sa.Text(), nullable=True),
        sa.Column('attempts', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('last_error', sa.Text(), nullable=True),
    )
    op.create_index('ix_lifecycle_events_event_type', 'lifecycle_events', ['event_type'])
    op.create_index('ix_lifecycle_events_processed_at', 'lifecycle_events', ['processed_at'])

    op.create_table(
        'weekly_checkins',
        sa.Column('checkin_id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('user_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('week_number', sa.Integer(), nullable=False),
        sa.Column('submitted_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('payload', postgresql.JSONB(), nullable=False),
        sa.Column('due_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.ForeignKeyConstraint(['user_id'], ['profiles.user_id'], ),
        sa.UniqueConstraint('user_id', 'week_number', name='uq_weekly_checkins_user_week'),
    )
    op.create_index('ix_weekly_checkins_user_id', 'weekly_checkins', ['user_id'])

    op.create_table(
        'score_history',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('user_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('source', sa.Text(), nullable=False),
        sa.Column('related_checkin_id', postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column('week_number', sa.Integer(), nullable=True),
        sa.Column('score', sa.Float(), nullable=False),
        sa.Column('potential', sa.Float(), nullable=True),
        sa.Column('model_version', sa.Text(), nullable=False),
        sa.Column('generated_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('payload', postgresql.JSONB(), nullable=False),
        sa.ForeignKeyConstraint(['user_id'], ['profiles.user_id'], ),
        sa.UniqueConstraint('related_checkin_id', name='uq_score_history_related_checkin_id'),
        sa.CheckConstraint("source IN ('intake', 'weekly_checkin', 'recalc')", name='ck_score_history_source'),
    )
    op.create_index('ix_score_history_user_id', 'score_history', ['user_id'])
    op.create_index('ix_score_history_user_generated', 'score_history', ['user_id', 'generated_at'])

    op.create_table(
        'intake_submissions',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('user_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('payload', postgresql.JSONB(), nullable=False),
        sa.Column('schema_version', sa.Text(), nullable=True),
        sa.Column('submitted_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.ForeignKeyConstraint(['user_id'], ['profiles.user_id'], ),
    )
    op.create_index('ix_intake_submissions_user_id', 'intake_submissions', ['user_id'])


def downgrade() -> None:
    op.drop_index('ix_intake_submissions_user_id', table_name='intake_submissions')
    op.drop_table('intake_submissions')
    op.drop_index('ix_score_history_user_generated', table_name='score_history')
    op.drop_index('ix_score_history_user_id', table_name='score_history')
    op.drop_table('score_history')
    op.drop_index('ix_weekly_checkins_user_id', table_name='weekly_checkins')
    op.drop_table('weekly_checkins')
    op.drop_index('ix_lifecycle_events_processed_at', table_name='lifecycle_events')
    op.drop_index('ix_lifecycle_events_event_type', table_name='lifecycle_events')
    op.drop_table('lifecycle_events')
    op.drop_index('ix_profiles_stripe_customer_id', table_name='profiles')
    op.drop_table('profiles')
