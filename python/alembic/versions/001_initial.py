"""Initial schema - Baseline migration

Revision ID: 001_initial
Revises:
Create Date: 2026-10-19 00:00:00.000000

Creates the verification engine tables (runs, hits, policies, audit logs,
scheduled tasks) and seeds the default global policy.
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


def upgrade() -> None:
    """Create initial database schema."""

    op.execute('CREATE EXTENSION IF NOT EXISTS "uuid-ossp"')

    # Create enums
    run_status = postgresql.ENUM(
        'queued', 'in_progress', 'completed', 'failed', 'cancelled',
        name='run_status', create_type=False
    )
    run_decision = postgresql.ENUM(
        'clear', 'review', 'not_clear',
        name='run_decision', create_type=False
    )
    match_type = postgresql.ENUM(
        'exact', 'fuzzy', 'phonetic',
        name='match_type', create_type=False
    )
    hit_severity = postgresql.ENUM(
        'low', 'medium', 'high', 'critical',
        name='hit_severity', create_type=False
    )
    audit_action = postgresql.ENUM(
        'verification_started', 'verification_completed', 'verification_failed',
        'verification_retried', 'notification_failed',
        name='audit_action', create_type=False
    )
    task_status = postgresql.ENUM(
        'pending', 'running', 'completed', 'failed',
        name='task_status', create_type=False
    )
    for enum_type in (run_status, run_decision, match_type, hit_severity, audit_action, task_status):
        enum_type.create(op.get_bind(), checkfirst=True)

    # Create verification_runs table
    op.create_table(
        'verification_runs',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True,
                  server_default=sa.text('uuid_generate_v4()')),
        sa.Column('application_id', sa.String(64), nullable=False),
        sa.Column('status', run_status, nullable=False, server_default='queued'),
        sa.Column('decision', run_decision),
        sa.Column('risk_score', sa.Numeric(5, 2)),
        sa.Column('reason_codes', postgresql.JSONB, nullable=False, server_default='[]'),
        sa.Column('policy_version', sa.String(50), nullable=False),
        sa.Column('policy_id', postgresql.UUID(as_uuid=True)),
        sa.Column('source_results', postgresql.JSONB, nullable=False, server_default='{}'),
        sa.Column('scoring_breakdown', postgresql.JSONB, nullable=False, server_default='{}'),
        sa.Column('started_at', sa.DateTime(timezone=True)),
        sa.Column('completed_at', sa.DateTime(timezone=True)),
        sa.Column('error_message', sa.Text),
        *_timestamps(),
        sa.CheckConstraint('risk_score IS NULL OR (risk_score >= 0 AND risk_score <= 100)',
                           name='ck_verification_risk_score_range'),
        sa.CheckConstraint("decision IS NULL OR status = 'completed'",
                           name='ck_verification_decision_completed')
    )

    # Create source_hits table
    op.create_table(
        'source_hits',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True,
                  server_default=sa.text('uuid_generate_v4()')),
        sa.Column('verification_run_id', postgresql.UUID(as_uuid=True),
                  sa.ForeignKey('verification_runs.id', ondelete='CASCADE'), nullable=False),
        sa.Column('source_name', sa.String(50), nullable=False),
        sa.Column('source_type', sa.String(100), nullable=False, server_default='database'),
        sa.Column('query_terms', postgresql.JSONB, nullable=False, server_default='{}'),
        sa.Column('match_confidence', sa.Numeric(5, 2), nullable=False, server_default='0'),
        sa.Column('match_type', match_type, nullable=False, server_default='fuzzy'),
        sa.Column('severity', hit_severity, nullable=False, server_default='low'),
        sa.Column('record_data', postgresql.JSONB, nullable=False, server_default='{}'),
        sa.Column('record_url', sa.String(1000)),
        sa.Column('jurisdiction', sa.String(100)),
        sa.Column('record_date', sa.DateTime(timezone=True)),
        sa.Column('metadata', postgresql.JSONB, nullable=False, server_default='{}'),
        *_timestamps(),
        sa.CheckConstraint('match_confidence >= 0 AND match_confidence <= 100',
                           name='ck_source_hit_confidence_range')
    )

    # Create policies table
    op.create_table(
        'policies',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True,
                  server_default=sa.text('uuid_generate_v4()')),
        sa.Column('name', sa.String(100), nullable=False),
        sa.Column('version', sa.String(50), nullable=False),
        sa.Column('description', sa.Text),
        sa.Column('rules', postgresql.JSONB, nullable=False, server_default='{}'),
        sa.Column('thresholds', postgresql.JSONB, nullable=False, server_default='{}'),
        sa.Column('source_weights', postgresql.JSONB, nullable=False, server_default='{}'),
        sa.Column('is_active', sa.Boolean, nullable=False, server_default='true'),
        sa.Column('destination_country', sa.String(3)),
        sa.Column('effective_from', sa.DateTime(timezone=True), nullable=False),
        sa.Column('effective_until', sa.DateTime(timezone=True)),
        sa.Column('created_by', sa.String(100)),
        *_timestamps(),
        sa.UniqueConstraint('name', 'version', name='uq_policy_name_version')
    )

    # runs reference the exact policy row they were pinned to
    op.create_foreign_key(
        'fk_verification_runs_policy_id', 'verification_runs', 'policies',
        ['policy_id'], ['id'], ondelete='RESTRICT'
    )

    # Create audit_logs table
    op.create_table(
        'audit_logs',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True,
                  server_default=sa.text('uuid_generate_v4()')),
        sa.Column('timestamp', sa.DateTime(timezone=True), nullable=False,
                  server_default=sa.text('NOW()')),
        sa.Column('action', audit_action, nullable=False),
        sa.Column('resource_type', sa.String(100), nullable=False),
        sa.Column('resource_id', sa.String(100)),
        sa.Column('actor_id', sa.String(100)),
        sa.Column('actor_ip', sa.String(50)),
        sa.Column('details', postgresql.JSONB),
        sa.Column('old_value', postgresql.JSONB),
        sa.Column('new_value', postgresql.JSONB),
        sa.Column('success', sa.Boolean, nullable=False, server_default='true'),
        sa.Column('error_message', sa.Text)
    )

    # Create scheduled_tasks table
    op.create_table(
        'scheduled_tasks',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True,
                  server_default=sa.text('uuid_generate_v4()')),
        sa.Column('task_type', sa.String(100), nullable=False),
        sa.Column('payload', postgresql.JSONB, nullable=False, server_default='{}'),
        sa.Column('status', task_status, nullable=False, server_default='pending'),
        sa.Column('run_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('attempts', sa.Integer, nullable=False, server_default='0'),
        sa.Column('last_error', sa.Text),
        sa.Column('completed_at', sa.DateTime(timezone=True)),
        *_timestamps()
    )

    # Create indexes
    op.create_index(
        'uq_verification_active_run', 'verification_runs', ['application_id'],
        unique=True,
        postgresql_where=sa.text("status IN ('queued', 'in_progress')")
    )
    op.create_index('ix_verification_runs_application_id', 'verification_runs', ['application_id'])
    op.create_index('ix_verification_runs_status', 'verification_runs', ['status'])
    op.create_index('ix_verification_app_created', 'verification_runs', ['application_id', 'created_at'])

    op.create_index('ix_source_hits_verification_run_id', 'source_hits', ['verification_run_id'])
    op.create_index('ix_source_hit_run_source', 'source_hits', ['verification_run_id', 'source_name'])
    op.create_index('ix_source_hit_confidence', 'source_hits', ['match_confidence'])

    op.create_index('ix_policies_destination_country', 'policies', ['destination_country'])
    op.create_index('ix_policy_active_effective', 'policies', ['is_active', 'effective_from'])

    op.create_index('ix_audit_logs_timestamp', 'audit_logs', ['timestamp'])
    op.create_index('ix_audit_logs_action', 'audit_logs', ['action'])
    op.create_index('ix_audit_logs_resource_type', 'audit_logs', ['resource_type'])
    op.create_index('ix_audit_logs_actor_id', 'audit_logs', ['actor_id'])
    op.create_index('ix_audit_timestamp_action', 'audit_logs', ['timestamp', 'action'])
    op.create_index('ix_audit_resource', 'audit_logs', ['resource_type', 'resource_id'])

    op.create_index('ix_scheduled_task_due', 'scheduled_tasks', ['status', 'run_at'])

    # Insert default global policy
    op.execute("""
        INSERT INTO policies (name, version, description, rules, thresholds, source_weights,
                              is_active, destination_country, effective_from, created_by)
        VALUES (
            'Default Global Policy', '1.0.0',
            'Default risk policy applied when no destination-specific policy is in effect',
            '{"sanctions": {"enabled": true, "match_threshold": 80, "weight": 70, "potential_weight": 30},
              "pep": {"enabled": true, "match_threshold": 80, "weight": 40, "potential_weight": 20},
              "documents": {"enabled": true, "required_types": ["passport"], "min_confidence": 70,
                            "weight": 25, "low_confidence_weight": 15}}',
            '{"clear": {"max": 30}, "review": {"min": 30, "max": 59}, "not_clear": {"min": 60}}',
            '{"sanctions": 0.4, "pep": 0.3, "documents": 0.3}',
            true, NULL, NOW(), 'system'
        )
        ON CONFLICT (name, version) DO NOTHING
    """)


def downgrade() -> None:
    """Drop all tables and types."""
    op.drop_table('scheduled_tasks')
    op.drop_table('audit_logs')
    op.drop_table('source_hits')
    op.drop_table('verification_runs')
    op.drop_table('policies')

    op.execute('DROP TYPE IF EXISTS task_status')
    op.execute('DROP TYPE IF EXISTS audit_action')
    op.execute('DROP TYPE IF EXISTS hit_severity')
    op.execute('DROP TYPE IF EXISTS match_type')
    op.execute('DROP TYPE IF EXISTS run_decision')
    op.execute('DROP TYPE IF EXISTS run_status')
