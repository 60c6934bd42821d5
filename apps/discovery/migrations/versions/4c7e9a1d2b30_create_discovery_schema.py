"""create discovery schema

Revision ID: 4c7e9a1d2b30
Revises:
Create Date: 2026-10-19 00:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = '4c7e9a1d2b30'
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _timestamp(name: str) -> sa.Column:
    return sa.Column(name, sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False)


def upgrade() -> None:
    op.create_table(
        'content',
        sa.Column('id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('title', sa.String(), server_default='', nullable=False),
        sa.Column('popularity_score', sa.Float(), server_default='0', nullable=False),
        sa.Column('runtime_minutes', sa.Integer(), nullable=True),
        _timestamp('created_at'),
        _timestamp('updated_at'),
        sa.PrimaryKeyConstraint('id', name=op.f('pk_content')),
    )
    op.create_index('ix_content_popularity', 'content', ['popularity_score'])

    for table, column in (('content_genres', 'genre'), ('content_themes', 'theme'), ('content_moods', 'mood')):
        op.create_table(
            table,
            sa.Column('content_id', postgresql.UUID(as_uuid=True), nullable=False),
            sa.Column(column, sa.Text(), nullable=False),
            sa.ForeignKeyConstraint(
                ['content_id'], ['content.id'],
                name=op.f(f'fk_{table}_content_id_content'), ondelete='CASCADE',
            ),
            sa.PrimaryKeyConstraint('content_id', column, name=op.f(f'pk_{table}')),
        )
    op.create_index('ix_content_genres_genre', 'content_genres', ['genre'])
    op.create_index('ix_content_themes_theme', 'content_themes', ['theme'])

    op.create_table(
        'credits',
        sa.Column('content_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('person_name', sa.Text(), nullable=False),
        sa.Column('role_type', sa.String(), nullable=False),
        sa.Column('credit_order', sa.Integer(), nullable=True),
        sa.ForeignKeyConstraint(
            ['content_id'], ['content.id'],
            name=op.f('fk_credits_content_id_content'), ondelete='CASCADE',
        ),
        sa.PrimaryKeyConstraint('content_id', 'person_name', 'role_type', name=op.f('pk_credits')),
    )
    op.create_index('ix_credits_person_role', 'credits', ['person_name', 'role_type'])

    op.create_table(
        'watch_progress',
        sa.Column('user_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('content_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('completion_rate', sa.Float(), server_default='0', nullable=False),
        _timestamp('last_watched'),
        sa.ForeignKeyConstraint(
            ['content_id'], ['content.id'],
            name=op.f('fk_watch_progress_content_id_content'), ondelete='CASCADE',
        ),
        sa.PrimaryKeyConstraint('user_id', 'content_id', name=op.f('pk_watch_progress')),
    )
    op.create_index('ix_watch_progress_user_lastwatched', 'watch_progress', ['user_id', 'last_watched'])
    op.create_index('ix_watch_progress_content_user', 'watch_progress', ['content_id', 'user_id'])

    op.create_table(
        'experiments',
        sa.Column('id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('name', sa.String(length=255), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('status', sa.String(length=50), server_default='draft', nullable=False),
        sa.Column('traffic_allocation', sa.Float(), server_default='1.0', nullable=False),
        _timestamp('created_at'),
        _timestamp('updated_at'),
        sa.PrimaryKeyConstraint('id', name=op.f('pk_experiments')),
        sa.UniqueConstraint('name', name=op.f('uq_experiments_name')),
    )
    op.create_index('ix_experiments_status', 'experiments', ['status'])

    op.create_table(
        'experiment_variants',
        sa.Column('id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('experiment_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('name', sa.String(length=255), nullable=False),
        sa.Column('weight', sa.Float(), server_default='0.5', nullable=False),
        sa.Column('config', postgresql.JSONB(astext_type=sa.Text()), server_default='{}', nullable=False),
        _timestamp('created_at'),
        sa.ForeignKeyConstraint(
            ['experiment_id'], ['experiments.id'],
            name=op.f('fk_experiment_variants_experiment_id_experiments'), ondelete='CASCADE',
        ),
        sa.PrimaryKeyConstraint('id', name=op.f('pk_experiment_variants')),
        sa.UniqueConstraint('experiment_id', 'name', name=op.f('uq_experiment_variants_experiment_id')),
    )
    op.create_index('ix_experiment_variants_experiment_id', 'experiment_variants', ['experiment_id'])

    op.create_table(
        'experiment_assignments',
        sa.Column('id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('experiment_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('user_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('variant_id', postgresql.UUID(as_uuid=True), nullable=False),
        _timestamp('assigned_at'),
        sa.ForeignKeyConstraint(
            ['experiment_id'], ['experiments.id'],
            name=op.f('fk_experiment_assignments_experiment_id_experiments'), ondelete='CASCADE',
        ),
        sa.ForeignKeyConstraint(
            ['variant_id'], ['experiment_variants.id'],
            name=op.f('fk_experiment_assignments_variant_id_experiment_variants'), ondelete='CASCADE',
        ),
        sa.PrimaryKeyConstraint('id', name=op.f('pk_experiment_assignments')),
        sa.UniqueConstraint('experiment_id', 'user_id', name=op.f('uq_experiment_assignments_experiment_id')),
    )

    op.create_table(
        'experiment_metrics',
        sa.Column('id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('experiment_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('variant_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('user_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('metric_name', sa.String(length=255), nullable=False),
        sa.Column('metric_value', sa.Float(), nullable=False),
        sa.Column('metadata', postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        _timestamp('recorded_at'),
        sa.ForeignKeyConstraint(
            ['experiment_id'], ['experiments.id'],
            name=op.f('fk_experiment_metrics_experiment_id_experiments'), ondelete='CASCADE',
        ),
        sa.ForeignKeyConstraint(
            ['variant_id'], ['experiment_variants.id'],
            name=op.f('fk_experiment_metrics_variant_id_experiment_variants'), ondelete='CASCADE',
        ),
        sa.PrimaryKeyConstraint('id', name=op.f('pk_experiment_metrics')),
    )
    op.create_index(
        'ix_experiment_metrics_variant_name', 'experiment_metrics',
        ['experiment_id', 'variant_id', 'metric_name'],
    )


def downgrade() -> None:
    op.drop_index('ix_experiment_metrics_variant_name', table_name='experiment_metrics')
    op.drop_table('experiment_metrics')
    op.drop_table('experiment_assignments')
    op.drop_index('ix_experiment_variants_experiment_id', table_name='experiment_variants')
    op.drop_table('experiment_variants')
    op.drop_index('ix_experiments_status', table_name='experiments')
    op.drop_table('experiments')
    op.drop_index('ix_watch_progress_content_user', table_name='watch_progress')
    op.drop_index('ix_watch_progress_user_lastwatched', table_name='watch_progress')
    op.drop_table('watch_progress')
    op.drop_index('ix_credits_person_role', table_name='credits')
    op.drop_table('credits')
    op.drop_index('ix_content_themes_theme', table_name='content_themes')
    op.drop_index('ix_content_genres_genre', table_name='content_genres')
    for table in ('content_moods', 'content_themes', 'content_genres'):
        op.drop_table(table)
    op.drop_index('ix_content_popularity', table_name='content')
    op.drop_table('content')
