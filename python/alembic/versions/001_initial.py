"""Initial schema - Baseline migration

Revision ID: 001_initial
Revises:
Create Date: 2026-10-01 00:00:00.000000

This is the baseline migration that creates all tables for the CreditGate
service. It corresponds to the ORM models in database/models.py.
For existing databases, use `alembic stamp 001_initial` to mark as applied.
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = '001_initial'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _timestamps():
    return [
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False,
                  server_default=sa.text('NOW()')),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False,
                  server_default=sa.text('NOW()')),
    ]


def _consent_window():
    return [
        sa.Column('starts_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('expires_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('revoked', sa.Boolean, nullable=False, server_default='false'),
        sa.Column('revoked_at', sa.DateTime(timezone=True)),
    ]


def upgrade() -> None:
    """Create initial database schema."""

    # Create enums (names match SQLAlchemy's defaults for the ORM enums)
    entity_type = postgresql.ENUM('FISICA', 'MORAL', name='entitytype', create_type=True)
    entity_type.create(op.get_bind(), checkfirst=True)

    query_type = postgresql.ENUM(
        'SCORE_CALCULATION', 'SCORE_HISTORY', 'CREDIT_SUMMARY', 'FULL_HISTORY',
        'OBLIGATIONS', 'PAYMENTS', 'CONSENT_VERIFICATION',
        name='querytype', create_type=True
    )
    query_type.create(op.get_bind(), checkfirst=True)

    query_outcome = postgresql.ENUM(
        'SUCCESS', 'DENIED_NO_CONSENT', 'DENIED_INACTIVE_ENTITY',
        'DENIED_QUOTA_EXCEEDED', 'UPSTREAM_FAILURE',
        name='queryoutcome', create_type=True
    )
    query_outcome.create(op.get_bind(), checkfirst=True)

    # Create subscription_plans table
    op.create_table(
        'subscription_plans',
        sa.Column('id', sa.Integer, primary_key=True, autoincrement=True),
        sa.Column('name', sa.String(100), nullable=False, unique=True),
        sa.Column('max_monthly_queries', sa.Integer, nullable=False),
        *_timestamps(),
        sa.CheckConstraint('max_monthly_queries >= 0', name='ck_plan_max_queries')
    )

    # Create entities table
    op.create_table(
        'entities',
        sa.Column('id', sa.Integer, primary_key=True, autoincrement=True),
        sa.Column('legal_name', sa.String(300), nullable=False),
        sa.Column('tax_id', sa.String(13), nullable=False, unique=True),
        sa.Column('entity_type', postgresql.ENUM(name='entitytype', create_type=False),
                  nullable=False),
        sa.Column('is_active', sa.Boolean, nullable=False, server_default='true'),
        sa.Column('plan_id', sa.Integer,
                  sa.ForeignKey('subscription_plans.id', ondelete='SET NULL')),
        *_timestamps(),
        sa.CheckConstraint("entity_type IN ('FISICA', 'MORAL')", name='ck_entity_type')
    )
    op.create_index('ix_entities_tax_id', 'entities', ['tax_id'])
    op.create_index('ix_entities_is_active', 'entities', ['is_active'])

    # Create entity_consents table
    op.create_table(
        'entity_consents',
        sa.Column('id', sa.Integer, primary_key=True, autoincrement=True),
        sa.Column('entity_id', sa.Integer,
                  sa.ForeignKey('entities.id', ondelete='CASCADE'), nullable=False),
        *_consent_window(),
        *_timestamps(),
        sa.CheckConstraint('expires_at > starts_at', name='ck_entity_consent_window')
    )
    op.create_index('ix_entity_consents_entity_id', 'entity_consents', ['entity_id'])
    op.create_index('ix_entity_consent_lookup', 'entity_consents',
                    ['entity_id', 'revoked', 'expires_at'])

    # Create query_consents table
    op.create_table(
        'query_consents',
        sa.Column('id', sa.Integer, primary_key=True, autoincrement=True),
        sa.Column('titular_id', sa.Integer,
                  sa.ForeignKey('entities.id', ondelete='CASCADE'), nullable=False),
        sa.Column('consultant_id', sa.Integer,
                  sa.ForeignKey('entities.id', ondelete='CASCADE'), nullable=False),
        *_consent_window(),
        sa.Column('usage_count', sa.Integer, nullable=False, server_default='0'),
        sa.Column('last_used_at', sa.DateTime(timezone=True)),
        sa.Column('origin_ip', sa.String(50)),
        *_timestamps(),
        sa.CheckConstraint('titular_id <> consultant_id', name='ck_query_consent_parties'),
        sa.CheckConstraint('expires_at > starts_at', name='ck_query_consent_window')
    )
    op.create_index('ix_query_consents_titular_id', 'query_consents', ['titular_id'])
    op.create_index('ix_query_consents_consultant_id', 'query_consents', ['consultant_id'])
    op.create_index('ix_query_consent_pair', 'query_consents',
                    ['titular_id', 'consultant_id', 'revoked'])

    # Create consumption_counters table
    op.create_table(
        'consumption_counters',
        sa.Column('id', sa.Integer, primary_key=True, autoincrement=True),
        sa.Column('entity_id', sa.Integer,
                  sa.ForeignKey('entities.id', ondelete='CASCADE'), nullable=False),
        sa.Column('period_start', sa.Date, nullable=False),
        sa.Column('queries_performed', sa.Integer, nullable=False, server_default='0'),
        sa.Column('last_updated', sa.DateTime(timezone=True), nullable=False,
                  server_default=sa.text('NOW()')),
        sa.UniqueConstraint('entity_id', 'period_start', name='uq_consumption_entity_period'),
        sa.CheckConstraint('queries_performed >= 0', name='ck_consumption_non_negative')
    )

    # Create query_logs table (immutable)
    op.create_table(
        'query_logs',
        sa.Column('id', sa.Integer, primary_key=True, autoincrement=True),
        sa.Column('timestamp', sa.DateTime(timezone=True), nullable=False,
                  server_default=sa.text('NOW()')),
        sa.Column('consent_id', sa.Integer,
                  sa.ForeignKey('query_consents.id', ondelete='SET NULL')),
        sa.Column('titular_id', sa.Integer, sa.ForeignKey('entities.id'), nullable=False),
        sa.Column('consultant_id', sa.Integer, sa.ForeignKey('entities.id'), nullable=False),
        sa.Column('operator_user_id', sa.Integer),
        sa.Column('consultant_name', sa.String(300)),
        sa.Column('query_type', postgresql.ENUM(name='querytype', create_type=False),
                  nullable=False),
        sa.Column('outcome', postgresql.ENUM(name='queryoutcome', create_type=False),
                  nullable=False),
        sa.Column('detail', sa.Text),
        sa.Column('origin_ip', sa.String(50))
    )
    op.create_index('ix_query_logs_timestamp', 'query_logs', ['timestamp'])
    op.create_index('ix_query_logs_consent_id', 'query_logs', ['consent_id'])
    op.create_index('ix_query_logs_outcome', 'query_logs', ['outcome'])
    op.create_index('ix_query_log_titular', 'query_logs', ['titular_id', 'timestamp'])
    op.create_index('ix_query_log_consultant', 'query_logs', ['consultant_id', 'timestamp'])

    # Create score_snapshots table (append-only)
    op.create_table(
        'score_snapshots',
        sa.Column('id', sa.Integer, primary_key=True, autoincrement=True),
        sa.Column('entity_id', sa.Integer,
                  sa.ForeignKey('entities.id', ondelete='CASCADE'), nullable=False),
        sa.Column('score_total', sa.Integer, nullable=False),
        sa.Column('risk_tier', sa.String(20), nullable=False),
        sa.Column('no_history', sa.Boolean, nullable=False, server_default='false'),
        sa.Column('positive_factors', postgresql.JSONB, nullable=False,
                  server_default=sa.text("'[]'::jsonb")),
        sa.Column('negative_factors', postgresql.JSONB, nullable=False,
                  server_default=sa.text("'[]'::jsonb")),
        sa.Column('components', postgresql.JSONB),
        sa.Column('algorithm_version', sa.String(20)),
        sa.Column('computed_at', sa.DateTime(timezone=True), nullable=False,
                  server_default=sa.text('NOW()')),
        sa.CheckConstraint('score_total >= 0 AND score_total <= 1000',
                           name='ck_snapshot_score_range')
    )
    op.create_index('ix_snapshot_entity_date', 'score_snapshots', ['entity_id', 'computed_at'])

    # Insert default subscription plans
    op.execute("""
        INSERT INTO subscription_plans (name, max_monthly_queries)
        VALUES
            ('BASICO', 50),
            ('PROFESIONAL', 100),
            ('EMPRESARIAL', 500)
        ON CONFLICT (name) DO NOTHING
    """)


def downgrade() -> None:
    """Drop all tables and types."""
    # Drop tables in reverse order
    op.drop_table('score_snapshots')
    op.drop_table('query_logs')
    op.drop_table('consumption_counters')
    op.drop_table('query_consents')
    op.drop_table('entity_consents')
    op.drop_table('entities')
    op.drop_table('subscription_plans')

    # Drop enums
    op.execute('DROP TYPE IF EXISTS queryoutcome')
    op.execute('DROP TYPE IF EXISTS querytype')
    op.execute('DROP TYPE IF EXISTS entitytype')
