"""Session continuity and fix loop tables

Revision ID: 001_session_continuity
Revises:
Create Date: 2026-10-18

Creates all tables for:
- Session continuity (instances, instance_sequences, events, checkpoints)
- Adaptive fix loop (root_cause_analyses, fix_sessions, fix_attempts,
  fix_learnings)

Enum columns are stored as constrained strings, so adding a value is a
CHECK constraint change rather than an ALTER TYPE.
"""

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = '001_session_continuity'
down_revision = None
branch_labels = None
depends_on = None


EVENT_TYPES = (
    'instance_registered', 'instance_heartbeat', 'instance_stale',
    'epic_started', 'epic_completed', 'epic_failed',
    'test_started', 'test_passed', 'test_failed', 'validation_passed', 'validation_failed',
    'commit_created', 'pr_created', 'pr_merged',
    'deployment_started', 'deployment_completed', 'deployment_failed',
    'context_window_updated', 'checkpoint_created', 'checkpoint_loaded',
    'epic_planned', 'feature_requested', 'task_spawned',
)
FAILURE_CATEGORIES = ('syntax', 'logic', 'integration', 'environment', 'unknown')
COMPLEXITIES = ('simple', 'moderate', 'complex', 'requires_human')
TIERS = ('haiku', 'sonnet', 'opus')
STRATEGIES = (
    'typo_correction', 'syntax_fix', 'formatting',
    'refactor', 'algorithm_fix', 'condition_fix',
    'import_fix', 'dependency_add', 'api_update',
    'env_var_add', 'config_fix', 'permission_fix',
)


def value_enum(name: str, values: tuple, length: int) -> sa.Enum:
    return sa.Enum(*values, name=name, native_enum=False, create_constraint=True, length=length)


def upgrade() -> None:
    # ==========================================================================
    # Session Continuity
    # ==========================================================================

    op.create_table(
        'instances',
        sa.Column('instance_id', sa.String(length=100), nullable=False),
        sa.Column('project', sa.String(length=64), nullable=False),
        sa.Column('role', value_enum('instancerole', ('PS', 'MS', 'SA'), 8), nullable=False),
        sa.Column('host', sa.String(length=255), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('last_heartbeat_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('closed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('context_percent', sa.Integer(), nullable=True),
        sa.Column('current_epic', sa.String(length=100), nullable=True),
        sa.PrimaryKeyConstraint('instance_id'),
    )
    op.create_index('ix_instances_project', 'instances', ['project'], unique=False)
    op.create_index('ix_instances_project_created', 'instances', ['project', 'created_at'], unique=False)

    op.create_table(
        'instance_sequences',
        sa.Column('instance_id', sa.String(length=100), nullable=False),
        sa.Column('last_sequence_num', sa.BigInteger(), nullable=False, server_default='0'),
        sa.ForeignKeyConstraint(['instance_id'], ['instances.instance_id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('instance_id'),
    )

    op.create_table(
        'events',
        sa.Column('event_id', sa.UUID(), nullable=False),
        sa.Column('instance_id', sa.String(length=100), nullable=False),
        sa.Column('event_type', value_enum('eventtype', EVENT_TYPES, 40), nullable=False),
        sa.Column('sequence_num', sa.BigInteger(), nullable=False),
        sa.Column('timestamp', sa.DateTime(timezone=True), nullable=False),
        sa.Column('event_data', sa.JSON(), nullable=False),
        sa.Column('metadata', sa.JSON(), nullable=True),
        sa.ForeignKeyConstraint(['instance_id'], ['instances.instance_id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('event_id'),
        sa.UniqueConstraint('instance_id', 'sequence_num', name='uq_events_instance_sequence'),
    )
    op.create_index('ix_events_type_timestamp', 'events', ['event_type', 'timestamp'], unique=False)
    op.create_index('ix_events_instance_timestamp', 'events', ['instance_id', 'timestamp'], unique=False)

    op.create_table(
        'checkpoints',
        sa.Column('checkpoint_id', sa.UUID(), nullable=False),
        sa.Column('instance_id', sa.String(length=100), nullable=False),
        sa.Column(
            'checkpoint_type',
            value_enum('checkpointtype', ('context_window', 'epic_completion', 'manual'), 20),
            nullable=False,
        ),
        sa.Column('sequence_num', sa.BigInteger(), nullable=False),
        sa.Column('context_percent', sa.Integer(), nullable=True),
        sa.Column('work_state', sa.JSON(), nullable=False),
        sa.Column('trigger', sa.String(length=100), nullable=False),
        sa.Column('note', sa.Text(), nullable=True),
        sa.Column('size_bytes', sa.Integer(), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(['instance_id'], ['instances.instance_id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('checkpoint_id'),
    )
    op.create_index('ix_checkpoints_instance_sequence', 'checkpoints', ['instance_id', 'sequence_num'], unique=False)
    op.create_index('ix_checkpoints_type_created', 'checkpoints', ['checkpoint_type', 'created_at'], unique=False)

    # ==========================================================================
    # Adaptive Fix Loop
    # ==========================================================================

    op.create_table(
        'root_cause_analyses',
        sa.Column('id', sa.UUID(), nullable=False),
        sa.Column('test_id', sa.String(length=500), nullable=False),
        sa.Column('instance_id', sa.String(length=100), nullable=True),
        sa.Column('epic_id', sa.String(length=100), nullable=True),
        sa.Column('failure_category', value_enum('failurecategory', FAILURE_CATEGORIES, 20), nullable=False),
        sa.Column('complexity', value_enum('complexity', COMPLEXITIES, 20), nullable=False),
        sa.Column('root_cause', sa.Text(), nullable=False),
        sa.Column('symptoms', sa.JSON(), nullable=False),
        sa.Column('evidence', sa.JSON(), nullable=False),
        sa.Column('diagnosis_reasoning', sa.Text(), nullable=False),
        sa.Column('confidence', sa.Float(), nullable=False),
        sa.Column('recommended_strategy', value_enum('fixstrategy', STRATEGIES, 30), nullable=True),
        sa.Column('estimated_difficulty', sa.Integer(), nullable=False),
        sa.Column('analyzed_at', sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_root_cause_analyses_test_id', 'root_cause_analyses', ['test_id'], unique=False)

    op.create_table(
        'fix_sessions',
        sa.Column('id', sa.UUID(), nullable=False),
        sa.Column('test_id', sa.String(length=500), nullable=False),
        sa.Column('instance_id', sa.String(length=100), nullable=True),
        sa.Column('rca_id', sa.UUID(), nullable=True),
        sa.Column(
            'status',
            value_enum('fixsessionstatus', ('diagnosing', 'iterating', 'succeeded', 'escalated'), 20),
            nullable=False,
            server_default='diagnosing',
        ),
        sa.Column('max_retries', sa.Integer(), nullable=False),
        sa.Column(
            'escalation_reason',
            value_enum(
                'escalationreason',
                (
                    'requires_human', 'architectural_change', 'business_logic_ambiguity',
                    'max_retries_exhausted', 'unknown_failure_pattern', 'cancelled',
                ),
                30,
            ),
            nullable=True,
        ),
        sa.Column('handoff_path', sa.String(length=1000), nullable=True),
        sa.Column('started_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('completed_at', sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(['rca_id'], ['root_cause_analyses.id'], ondelete='SET NULL'),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_fix_sessions_test_id', 'fix_sessions', ['test_id'], unique=False)
    op.create_index('ix_fix_sessions_instance_id', 'fix_sessions', ['instance_id'], unique=False)

    op.create_table(
        'fix_attempts',
        sa.Column('id', sa.UUID(), nullable=False),
        sa.Column('session_id', sa.UUID(), nullable=False),
        sa.Column('test_id', sa.String(length=500), nullable=False),
        sa.Column('rca_id', sa.UUID(), nullable=True),
        sa.Column('retry_number', sa.Integer(), nullable=False),
        sa.Column('model_used', value_enum('capabilitytier', TIERS, 20), nullable=False),
        sa.Column('fix_strategy', value_enum('fixstrategy', STRATEGIES, 30), nullable=False),
        sa.Column('changes_made', sa.Text(), nullable=False, server_default=''),
        sa.Column('commit_sha', sa.String(length=64), nullable=True),
        sa.Column('success', sa.Boolean(), nullable=False),
        sa.Column('verification_passed', sa.Boolean(), nullable=True),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.Column('cost_usd', sa.Numeric(precision=10, scale=6), nullable=False, server_default='0'),
        sa.Column('tokens_used', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('duration_seconds', sa.Float(), nullable=False, server_default='0'),
        sa.Column('attempted_at', sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(['session_id'], ['fix_sessions.id'], ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['rca_id'], ['root_cause_analyses.id'], ondelete='SET NULL'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('session_id', 'retry_number', name='uq_fix_attempts_session_retry'),
    )
    op.create_index('ix_fix_attempts_test_id', 'fix_attempts', ['test_id'], unique=False)

    op.create_table(
        'fix_learnings',
        sa.Column('id', sa.UUID(), nullable=False),
        sa.Column('failure_pattern', sa.String(length=500), nullable=False),
        sa.Column('failure_category', value_enum('failurecategory', FAILURE_CATEGORIES, 20), nullable=False),
        sa.Column('fix_strategy', value_enum('fixstrategy', STRATEGIES, 30), nullable=False),
        sa.Column('model_used', value_enum('capabilitytier', TIERS, 20), nullable=False),
        sa.Column('complexity', value_enum('complexity', COMPLEXITIES, 20), nullable=True),
        sa.Column('times_tried', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('times_succeeded', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('success_rate', sa.Float(), nullable=False, server_default='0'),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('last_used', sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('failure_pattern', 'fix_strategy', name='uq_fix_learnings_pattern_strategy'),
    )
    op.create_index('ix_fix_learnings_failure_pattern', 'fix_learnings', ['failure_pattern'], unique=False)


def downgrade() -> None:
    # Drop tables in reverse order
    op.drop_table('fix_learnings')
    op.drop_table('fix_attempts')
    op.drop_table('fix_sessions')
    op.drop_table('root_cause_analyses')
    op.drop_table('checkpoints')
    op.drop_table('events')
    op.drop_table('instance_sequences')
    op.drop_table('instances')
