"""Event lineage and stored handoff text

Revision ID: 002_event_lineage_handoff_text
Revises: 001_session_continuity
Create Date: 2026-10-18

- events: parent_event_id, root_event_id, depth (causal chains)
- fix_sessions: handoff_markdown, kept when the handoff file cannot be
  written
"""

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = '002_event_lineage_handoff_text'
down_revision = '001_session_continuity'
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.add_column('events', sa.Column('parent_event_id', sa.UUID(), nullable=True))
    op.add_column('events', sa.Column('root_event_id', sa.UUID(), nullable=True))
    op.add_column('events', sa.Column('depth', sa.Integer(), nullable=False, server_default='0'))
    op.create_index('ix_events_parent_event_id', 'events', ['parent_event_id'], unique=False)
    op.create_index('ix_events_root_event_id', 'events', ['root_event_id'], unique=False)
    op.create_check_constraint('ck_events_depth', 'events', 'depth >= 0')

    # Existing events are roots of their own chains
    op.execute('UPDATE events SET root_event_id = event_id WHERE root_event_id IS NULL')

    op.add_column('fix_sessions', sa.Column('handoff_markdown', sa.Text(), nullable=True))


def downgrade() -> None:
    op.drop_column('fix_sessions', 'handoff_markdown')
    op.drop_constraint('ck_events_depth', 'events', type_='check')
    op.drop_index('ix_events_root_event_id', table_name='events')
    op.drop_index('ix_events_parent_event_id', table_name='events')
    op.drop_column('events', 'depth')
    op.drop_column('events', 'root_event_id')
    op.drop_column('events', 'parent_event_id')
