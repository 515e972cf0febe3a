"""Create computed properties tables

Revision ID: 001_create_computed_properties_tables
Revises:
Create Date: 2026-10-18

Workspaces, segment and user property definitions, current assignments,
assignment history, recompute periods, manual segment members and the user
event store.
"""
from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = '001_create_computed_properties_tables'
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    """Create computed properties tables."""
    op.create_table(
        'workspaces',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('name', sa.String(255), nullable=False, unique=True),
        sa.Column('created_at', sa.DateTime(), server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime()),
    )

    for table_name in ('segments', 'user_properties'):
        columns = [
            sa.Column('id', sa.String(36), primary_key=True),
            sa.Column('workspace_id', sa.String(36), sa.ForeignKey('workspaces.id', ondelete='CASCADE'), nullable=False, index=True),
            sa.Column('name', sa.String(255), nullable=False),
            sa.Column('definition', sa.JSON(), nullable=False),
        ]
        if table_name == 'segments':
            columns.append(sa.Column('status', sa.String(20), nullable=False, server_default='Running'))
        columns.extend([
            sa.Column('definition_updated_at', sa.DateTime(), server_default=sa.func.now()),
            sa.Column('created_at', sa.DateTime(), server_default=sa.func.now()),
            sa.Column('updated_at', sa.DateTime(), server_default=sa.func.now()),
            sa.UniqueConstraint('workspace_id', 'name', name=f'uq_{table_name}_workspace_name'),
        ])
        op.create_table(table_name, *columns)

    op.create_table(
        'segment_assignments',
        sa.Column('workspace_id', sa.String(36), primary_key=True),
        sa.Column('user_id', sa.String(255), primary_key=True),
        sa.Column('segment_id', sa.String(36), primary_key=True),
        sa.Column('in_segment', sa.Boolean(), nullable=False),
        sa.Column('max_event_time', sa.DateTime(), nullable=False),
        sa.Column('assigned_at', sa.DateTime(), nullable=False),
    )
    op.create_index('ix_segment_assignments_workspace_segment', 'segment_assignments', ['workspace_id', 'segment_id'])

    op.create_table(
        'user_property_assignments',
        sa.Column('workspace_id', sa.String(36), primary_key=True),
        sa.Column('user_id', sa.String(255), primary_key=True),
        sa.Column('user_property_id', sa.String(36), primary_key=True),
        sa.Column('value', sa.Text(), nullable=False),
        sa.Column('max_event_time', sa.DateTime(), nullable=False),
        sa.Column('assigned_at', sa.DateTime(), nullable=False),
    )
    op.create_index(
        'ix_user_property_assignments_workspace_property',
        'user_property_assignments',
        ['workspace_id', 'user_property_id'],
    )

    op.create_table(
        'computed_property_assignments',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('workspace_id', sa.String(36), nullable=False),
        sa.Column('type', sa.String(20), nullable=False),
        sa.Column('computed_property_id', sa.String(36), nullable=False),
        sa.Column('user_id', sa.String(255), nullable=False),
        sa.Column('revision', sa.Integer(), nullable=False, server_default='1'),
        sa.Column('segment_value', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('user_property_value', sa.Text(), nullable=False, server_default=''),
        sa.Column('max_event_time', sa.DateTime(), nullable=False),
        sa.Column('definition_version', sa.String(64), nullable=False),
        sa.Column('assigned_at', sa.DateTime(), nullable=False),
        sa.UniqueConstraint(
            'workspace_id', 'type', 'computed_property_id', 'user_id', 'revision',
            name='uq_computed_property_assignments_revision',
        ),
    )
    op.create_index(
        'ix_computed_property_assignments_recent',
        'computed_property_assignments',
        ['workspace_id', 'type', 'computed_property_id', 'assigned_at'],
    )

    op.create_table(
        'computed_property_periods',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('workspace_id', sa.String(36), nullable=False),
        sa.Column('step', sa.String(50), nullable=False),
        sa.Column('period_start', sa.DateTime()),
        sa.Column('period_end', sa.DateTime(), nullable=False),
        sa.Column('definition_versions', sa.JSON(), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
    )
    op.create_index(
        'ix_computed_property_periods_workspace_step',
        'computed_property_periods',
        ['workspace_id', 'step', 'period_end'],
    )

    op.create_table(
        'manual_segment_members',
        sa.Column('workspace_id', sa.String(36), primary_key=True),
        sa.Column('segment_id', sa.String(36), primary_key=True),
        sa.Column('user_id', sa.String(255), primary_key=True),
        sa.Column('version', sa.Integer(), primary_key=True),
        sa.Column('created_at', sa.DateTime(), server_default=sa.func.now()),
    )

    op.create_table(
        'user_events',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('workspace_id', sa.String(36), nullable=False),
        sa.Column('message_id', sa.String(255), nullable=False),
        sa.Column('user_id', sa.String(255), nullable=False),
        sa.Column('anonymous_id', sa.String(255)),
        sa.Column('event_type', sa.String(20), nullable=False),
        sa.Column('event', sa.String(255)),
        sa.Column('traits', sa.JSON()),
        sa.Column('properties', sa.JSON()),
        sa.Column('event_time', sa.DateTime(), nullable=False),
        sa.Column('processing_time', sa.DateTime(), nullable=False),
        sa.UniqueConstraint('workspace_id', 'message_id', name='uq_user_events_workspace_message'),
    )
    op.create_index('ix_user_events_workspace_processing_time', 'user_events', ['workspace_id', 'processing_time'])
    op.create_index('ix_user_events_workspace_user', 'user_events', ['workspace_id', 'user_id'])


def downgrade():
    """Drop computed properties tables."""
    op.drop_index('ix_user_events_workspace_user', table_name='user_events')
    op.drop_index('ix_user_events_workspace_processing_time', table_name='user_events')
    op.drop_table('user_events')
    op.drop_table('manual_segment_members')
    op.drop_index('ix_computed_property_periods_workspace_step', table_name='computed_property_periods')
    op.drop_table('computed_property_periods')
    op.drop_index('ix_computed_property_assignments_recent', table_name='computed_property_assignments')
    op.drop_table('computed_property_assignments')
    op.drop_index('ix_user_property_assignments_workspace_property', table_name='user_property_assignments')
    op.drop_table('user_property_assignments')
    op.drop_index('ix_segment_assignments_workspace_segment', table_name='segment_assignments')
    op.drop_table('segment_assignments')
    op.drop_table('user_properties')
    op.drop_table('segments')
    op.drop_table('workspaces')
