"""create_experimentation_tables

Revision ID: 5f1c2a9d7e30
Revises:
Create Date: 2026-10-17 09:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = '5f1c2a9d7e30'
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
    ]


def upgrade() -> None:
    """Create experiment, assignment, conversion, flag and analytics tables."""
    op.create_table(
        'experiments',
        sa.Column('id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('name', sa.String(length=255), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('hypothesis', sa.Text(), nullable=True),
        sa.Column('business_justification', sa.Text(), nullable=True),
        sa.Column(
            'status',
            sa.Enum('DRAFT', 'ACTIVE', 'PAUSED', 'COMPLETED', 'ARCHIVED', name='experiment_status'),
            nullable=False,
        ),
        sa.Column('feature_key', sa.String(length=255), nullable=False),
        sa.Column('variants', postgresql.JSONB(astext_type=sa.Text()), nullable=False),
        sa.Column('metrics', postgresql.JSONB(astext_type=sa.Text()), nullable=False),
        sa.Column('targeting_rules', postgresql.JSONB(astext_type=sa.Text()), nullable=False),
        sa.Column('traffic_allocation', sa.Integer(), nullable=False),
        sa.Column('statistical_config', postgresql.JSONB(astext_type=sa.Text()), nullable=False),
        sa.Column('created_by', sa.String(length=255), nullable=True),
        sa.Column('tags', postgresql.ARRAY(sa.String(length=100)), nullable=False),
        sa.Column('started_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('ended_at', sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('feature_key'),
    )
    op.create_index('ix_experiments_status', 'experiments', ['status'])

    op.create_table(
        'experiment_assignments',
        sa.Column('id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('user_id', sa.String(length=255), nullable=False),
        sa.Column('experiment_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('variant_id', sa.String(length=255), nullable=False),
        sa.Column('session_id', sa.String(length=255), nullable=False),
        sa.Column('user_agent', sa.Text(), nullable=True),
        sa.Column('user_properties', postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.Column('assigned_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.ForeignKeyConstraint(['experiment_id'], ['experiments.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('user_id', 'experiment_id', name='uq_assignments_user_experiment'),
    )
    op.create_index(
        'ix_assignments_experiment_variant',
        'experiment_assignments',
        ['experiment_id', 'variant_id'],
    )

    op.create_table(
        'conversion_events',
        sa.Column('id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('user_id', sa.String(length=255), nullable=False),
        sa.Column('experiment_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('variant_id', sa.String(length=255), nullable=False),
        sa.Column('metric_name', sa.String(length=255), nullable=False),
        sa.Column('value', sa.Float(), nullable=False),
        sa.Column('properties', postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.Column('session_id', sa.String(length=255), nullable=False),
        sa.Column('occurred_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.ForeignKeyConstraint(['experiment_id'], ['experiments.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index(
        'ix_conversions_experiment_variant_metric',
        'conversion_events',
        ['experiment_id', 'variant_id', 'metric_name'],
    )
    op.create_index('ix_conversions_user', 'conversion_events', ['user_id'])

    op.create_table(
        'feature_flags',
        sa.Column('id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('key', sa.String(length=255), nullable=False),
        sa.Column('name', sa.String(length=255), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('is_active', sa.Boolean(), nullable=False),
        sa.Column('rollout_percentage', sa.Integer(), nullable=False),
        sa.Column('targeting_rules', postgresql.JSONB(astext_type=sa.Text()), nullable=False),
        sa.Column('experiment_id', postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column('use_for_ab_test', sa.Boolean(), nullable=False),
        sa.Column('default_value', postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.Column('variant_values', postgresql.JSONB(astext_type=sa.Text()), nullable=False),
        sa.Column('created_by', sa.String(length=255), nullable=True),
        sa.Column('tags', postgresql.ARRAY(sa.String(length=100)), nullable=False),
        *_timestamps(),
        sa.ForeignKeyConstraint(['experiment_id'], ['experiments.id'], ondelete='SET NULL'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('key'),
    )
    op.create_index('ix_feature_flags_is_active', 'feature_flags', ['is_active'])
    op.create_index('ix_feature_flags_experiment', 'feature_flags', ['experiment_id'])

    op.create_table(
        'analytics_events',
        sa.Column('id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('event_name', sa.String(length=255), nullable=False),
        sa.Column(
            'event_category',
            sa.Enum('EXPOSURE', 'CONVERSION', 'FLAG_EVALUATION', 'LIFECYCLE', name='event_category'),
            nullable=False,
        ),
        sa.Column('user_id', sa.String(length=255), nullable=True),
        sa.Column('session_id', sa.String(length=255), nullable=True),
        sa.Column('properties', postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.Column('event_timestamp', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.Column('received_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_events_name_timestamp', 'analytics_events', ['event_name', 'event_timestamp'])
    op.create_index(
        'ix_events_user',
        'analytics_events',
        ['user_id'],
        postgresql_where=sa.text('user_id IS NOT NULL'),
    )
    op.create_index(
        'ix_events_category_timestamp',
        'analytics_events',
        ['event_category', 'event_timestamp'],
    )


def downgrade() -> None:
    """Drop all experimentation tables."""
    op.drop_table('analytics_events')
    op.drop_table('feature_flags')
    op.drop_table('conversion_events')
    op.drop_table('experiment_assignments')
    op.drop_table('experiments')
    sa.Enum(name='event_category').drop(op.get_bind(), checkfirst=True)
    sa.Enum(name='experiment_status').drop(op.get_bind(), checkfirst=True)
