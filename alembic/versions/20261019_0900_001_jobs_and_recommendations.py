"""Jobs and optimization recommendations

Revision ID: 001
Revises:
Create Date: 2026-10-19 09:00:00.000000

Creates 2 tables:
- jobs (scheduler state, checkpoint, result, error)
- optimization_recommendations
"""
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision = '001'
down_revision = None
branch_labels = None
depends_on = None

JSONType = sa.JSON().with_variant(postgresql.JSONB(astext_type=sa.Text()), 'postgresql')


def upgrade() -> None:
    op.create_table(
        'jobs',
        sa.Column('job_id', sa.String(length=64), nullable=False),
        sa.Column('workspace_id', sa.String(length=64), nullable=False),
        sa.Column('job_type', sa.String(length=64), nullable=False),
        sa.Column('status', sa.String(length=32), nullable=False),
        sa.Column('priority', sa.String(length=16), nullable=False),
        sa.Column('effective_priority', sa.String(length=16), nullable=False),
        sa.Column('progress', sa.Float(), nullable=False),
        sa.Column('retry_count', sa.Integer(), nullable=False),
        sa.Column('max_retries', sa.Integer(), nullable=False),
        sa.Column('rerun_attempt', sa.Integer(), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.Column('started_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('completed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('parameters', JSONType, nullable=False),
        sa.Column('metadata_json', JSONType, nullable=True),
        sa.Column('progress_detail', JSONType, nullable=True),
        sa.Column('checkpoint', JSONType, nullable=True),
        sa.Column('result', JSONType, nullable=True),
        sa.Column('error', sa.Text(), nullable=True),
        sa.Column('error_code', sa.String(length=64), nullable=True),
        sa.PrimaryKeyConstraint('job_id')
    )
    op.create_index('idx_job_workspace_status', 'jobs', ['workspace_id', 'status'], unique=False)
    op.create_index('idx_job_created', 'jobs', ['created_at'], unique=False)
    op.create_index(op.f('ix_jobs_workspace_id'), 'jobs', ['workspace_id'], unique=False)

    op.create_table(
        'optimization_recommendations',
        sa.Column('id', sa.String(length=64), nullable=False),
        sa.Column('workspace_id', sa.String(length=64), nullable=False),
        sa.Column('scenario_id', sa.String(length=64), nullable=True),
        sa.Column('product_id', sa.String(length=255), nullable=True),
        sa.Column('recommendation_type', sa.String(length=32), nullable=False),
        sa.Column('title', sa.String(length=255), nullable=False),
        sa.Column('description', sa.Text(), nullable=False),
        sa.Column('impact_analysis', JSONType, nullable=False),
        sa.Column('implementation_requirements', JSONType, nullable=False),
        sa.Column('confidence_score', sa.Float(), nullable=False),
        sa.Column('priority', sa.String(length=16), nullable=False),
        sa.Column('status', sa.String(length=16), nullable=False),
        sa.Column('archived', sa.Boolean(), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('idx_recommendation_workspace_status', 'optimization_recommendations', ['workspace_id', 'status'], unique=False)
    op.create_index(op.f('ix_optimization_recommendations_workspace_id'), 'optimization_recommendations', ['workspace_id'], unique=False)
    op.create_index(op.f('ix_optimization_recommendations_scenario_id'), 'optimization_recommendations', ['scenario_id'], unique=False)
    op.create_index(op.f('ix_optimization_recommendations_product_id'), 'optimization_recommendations', ['product_id'], unique=False)


def downgrade() -> None:
    op.drop_index(op.f('ix_optimization_recommendations_product_id'), table_name='optimization_recommendations')
    op.drop_index(op.f('ix_optimization_recommendations_scenario_id'), table_name='optimization_recommendations')
    op.drop_index(op.f('ix_optimization_recommendations_workspace_id'), table_name='optimization_recommendations')
    op.drop_index('idx_recommendation_workspace_status', table_name='optimization_recommendations')
    op.drop_table('optimization_recommendations')

    op.drop_index(op.f('ix_jobs_workspace_id'), table_name='jobs')
    op.drop_index('idx_job_created', table_name='jobs')
    op.drop_index('idx_job_workspace_status', table_name='jobs')
    op.drop_table('jobs')
