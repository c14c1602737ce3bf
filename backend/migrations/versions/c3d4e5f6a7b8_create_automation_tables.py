"""Create automation tables

Revision ID: c3d4e5f6a7b8
Revises:
Create Date: 2026-10-18

This migration adds:
- message_templates: Tenant templates with {{variable}} placeholders
- automation_sequences / automation_steps: Ordered, delayed message steps
- sequence_runs: One execution of a sequence for one lead (optimistic claims)
- message_logs: One row per send attempt or inbound message
- webhook_events: Provider callback dedupe ledger
- automation_activities: Outbox of REPLY / STAGE_AUTO_ADVANCE events
"""
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


# revision identifiers, used by Alembic.
revision = 'c3d4e5f6a7b8'
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        'message_templates',
        sa.Column('id', sa.BigInteger(), primary_key=True),
        sa.Column('tenant_id', sa.Text(), nullable=False),
        sa.Column('name', sa.Text(), nullable=False),
        sa.Column('content', sa.Text(), nullable=False),
        sa.Column('variables', postgresql.JSONB(), nullable=False, server_default='[]'),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index('idx_message_templates_tenant', 'message_templates', ['tenant_id'])

    op.create_table(
        'automation_sequences',
        sa.Column('id', sa.BigInteger(), primary_key=True),
        sa.Column('tenant_id', sa.Text(), nullable=False),
        sa.Column('name', sa.Text(), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('trigger_event', sa.Text(), nullable=False),
        sa.Column('trigger_stage', sa.Text(), nullable=True),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index('idx_automation_sequences_tenant_trigger', 'automation_sequences', ['tenant_id', 'trigger_event'])

    op.create_table(
        'automation_steps',
        sa.Column('id', sa.BigInteger(), primary_key=True),
        sa.Column('sequence_id', sa.BigInteger(),
                  sa.ForeignKey('automation_sequences.id', ondelete='CASCADE'),
                  nullable=False),
        sa.Column('template_id', sa.BigInteger(),
                  sa.ForeignKey('message_templates.id'),
                  nullable=False),
        sa.Column('delay_hours', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('business_hours_only', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('step_order', sa.Integer(), nullable=False),
        sa.UniqueConstraint('sequence_id', 'step_order', name='uq_automation_steps_sequence_order'),
        sa.CheckConstraint('delay_hours >= 0', name='ck_automation_steps_delay_non_negative'),
        sa.CheckConstraint('step_order >= 1', name='ck_automation_steps_order_positive'),
    )

    op.create_table(
        'sequence_runs',
        sa.Column('id', sa.BigInteger(), primary_key=True),
        sa.Column('tenant_id', sa.Text(), nullable=False),
        sa.Column('lead_id', sa.Text(), nullable=False),
        sa.Column('sequence_id', sa.BigInteger(),
                  sa.ForeignKey('automation_sequences.id'),
                  nullable=False),
        sa.Column('trigger_event', sa.Text(), nullable=True),

        # Scheduling state
        sa.Column('current_step_index', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('next_fire_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('status', sa.Text(), nullable=False, server_default='ACTIVE'),
        sa.Column('halt_reason', sa.Text(), nullable=True),

        # Claim tracking
        sa.Column('version', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('claimed_by', sa.Text(), nullable=True),
        sa.Column('claimed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('last_dispatched_at', sa.DateTime(timezone=True), nullable=True),

        sa.Column('started_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column('completed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=True),
    )
    # At most one ACTIVE run per (lead, sequence)
    op.create_index(
        'uq_sequence_runs_active_lead_sequence', 'sequence_runs', ['lead_id', 'sequence_id'],
        unique=True, postgresql_where=sa.text("status = 'ACTIVE'")
    )
    op.create_index('idx_sequence_runs_due', 'sequence_runs', ['status', 'next_fire_at'])
    op.create_index('idx_sequence_runs_lead', 'sequence_runs', ['lead_id'])

    op.create_table(
        'message_logs',
        sa.Column('id', sa.BigInteger(), primary_key=True),
        sa.Column('tenant_id', sa.Text(), nullable=True),
        sa.Column('lead_id', sa.Text(), nullable=True),
        sa.Column('run_id', sa.BigInteger(), sa.ForeignKey('sequence_runs.id'), nullable=True),
        sa.Column('sequence_id', sa.BigInteger(), nullable=True),
        sa.Column('step_index', sa.Integer(), nullable=True),
        sa.Column('template_id', sa.BigInteger(), nullable=True),
        sa.Column('attempt', sa.Integer(), nullable=False, server_default='1'),

        sa.Column('direction', sa.Text(), nullable=False),
        sa.Column('provider', sa.Text(), nullable=False),
        sa.Column('status', sa.Text(), nullable=False, server_default='PENDING'),
        sa.Column('content', sa.Text(), nullable=True),
        sa.Column('from_number', sa.Text(), nullable=True),
        sa.Column('to_number', sa.Text(), nullable=True),
        sa.Column('provider_message_id', sa.Text(), nullable=True),

        sa.Column('error_kind', sa.Text(), nullable=True),
        sa.Column('error_message', sa.Text(), nullable=True),

        sa.Column('sent_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('delivered_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('read_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('replied_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('failed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=True),
    )
    # At most one attempt QUEUED per (run, step)
    op.create_index(
        'uq_message_logs_queued_run_step', 'message_logs', ['run_id', 'step_index'],
        unique=True, postgresql_where=sa.text("status = 'QUEUED'")
    )
    op.create_index('idx_message_logs_run_step', 'message_logs', ['run_id', 'step_index'])
    op.create_index('idx_message_logs_provider_id', 'message_logs', ['provider', 'provider_message_id'])
    op.create_index('idx_message_logs_lead_direction', 'message_logs', ['lead_id', 'direction', 'created_at'])

    op.create_table(
        'webhook_events',
        sa.Column('id', sa.BigInteger(), primary_key=True),
        sa.Column('provider', sa.Text(), nullable=False),
        sa.Column('event_id', sa.Text(), nullable=False),
        sa.Column('kind', sa.Text(), nullable=False),
        sa.Column('payload', postgresql.JSONB(), nullable=True, server_default='{}'),
        sa.Column('received_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.UniqueConstraint('provider', 'event_id', name='uq_webhook_events_provider_event'),
    )

    op.create_table(
        'automation_activities',
        sa.Column('id', sa.BigInteger(), primary_key=True),
        sa.Column('tenant_id', sa.Text(), nullable=True),
        sa.Column('lead_id', sa.Text(), nullable=True),
        sa.Column('activity_type', sa.Text(), nullable=False),
        sa.Column('extra_data', postgresql.JSONB(), nullable=True, server_default='{}'),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column('published_at', sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index('idx_automation_activities_lead', 'automation_activities', ['lead_id'])
    op.create_index('idx_automation_activities_unpublished', 'automation_activities', ['published_at'])


def downgrade() -> None:
    op.drop_index('idx_automation_activities_unpublished', table_name='automation_activities')
    op.drop_index('idx_automation_activities_lead', table_name='automation_activities')
    op.drop_table('automation_activities')

    op.drop_table('webhook_events')

    op.drop_index('idx_message_logs_lead_direction', table_name='message_logs')
    op.drop_index('idx_message_logs_provider_id', table_name='message_logs')
    op.drop_index('idx_message_logs_run_step', table_name='message_logs')
    op.drop_index('uq_message_logs_queued_run_step', table_name='message_logs')
    op.drop_table('message_logs')

    op.drop_index('idx_sequence_runs_lead', table_name='sequence_runs')
    op.drop_index('idx_sequence_runs_due', table_name='sequence_runs')
    op.drop_index('uq_sequence_runs_active_lead_sequence', table_name='sequence_runs')
    op.drop_table('sequence_runs')

    op.drop_table('automation_steps')

    op.drop_index('idx_automation_sequences_tenant_trigger', table_name='automation_sequences')
    op.drop_table('automation_sequences')

    op.drop_index('idx_message_templates_tenant', table_name='message_templates')
    op.drop_table('message_templates')
