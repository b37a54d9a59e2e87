"""Quality pipeline tables

Revision ID: 001_quality_pipeline
Revises:
Create Date: 2026-10-17 00:00:00.000000

"""
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision = '001_quality_pipeline'
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    # Reports table
    op.create_table(
        'reports',
        sa.Column('id', sa.String(length=36), nullable=False),
        sa.Column('title', sa.Text(), nullable=False),
        sa.Column('summary', sa.Text(), nullable=True),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('category', sa.String(length=64), nullable=True),
        sa.Column('linked_categories', postgresql.JSONB(), nullable=True),
        sa.Column('event_date', sa.Date(), nullable=True),
        sa.Column('event_date_precision', sa.String(length=16), nullable=True),
        sa.Column('event_time', sa.String(length=32), nullable=True),
        sa.Column('location_name', sa.Text(), nullable=True),
        sa.Column('city', sa.String(length=128), nullable=True),
        sa.Column('state_province', sa.String(length=128), nullable=True),
        sa.Column('country', sa.String(length=128), nullable=True),
        sa.Column('latitude', sa.Float(), nullable=True),
        sa.Column('longitude', sa.Float(), nullable=True),
        sa.Column('witness_count', sa.Integer(), nullable=True),
        sa.Column('witnesses_named', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('witness_background', sa.Text(), nullable=True),
        sa.Column('has_photo_video', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('has_physical_evidence', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('has_official_report', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('evidence_summary', sa.Text(), nullable=True),
        sa.Column('tags', postgresql.JSONB(), nullable=True),
        sa.Column('source_type', sa.String(length=64), nullable=True),
        sa.Column('original_report_id', sa.String(length=128), nullable=True),
        sa.Column('status', sa.String(length=32), nullable=False, server_default='pending'),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('quality_score', sa.Integer(), nullable=True),
        sa.Column('quality_grade', sa.String(length=1), nullable=True),
        sa.Column('quality_dimensions', postgresql.JSONB(), nullable=True),
        sa.Column('quality_scored_at', sa.DateTime(), nullable=True),
        sa.Column('scorer_version', sa.String(length=32), nullable=True),
        sa.Column('quality_input_hash', sa.String(length=64), nullable=True),
        sa.Column('coherence_degraded', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('scoring_run_id', sa.String(length=64), nullable=True),
        sa.Column('recommended_status', sa.String(length=32), nullable=True),
        sa.Column('fingerprint', sa.String(length=64), nullable=True),
        sa.Column('duplicate_of_id', sa.String(length=36), nullable=True),
        sa.PrimaryKeyConstraint('id'),
        sa.CheckConstraint(
            'quality_score IS NULL OR (quality_score >= 0 AND quality_score <= 100)',
            name='ck_report_quality_score_range'
        )
    )
    op.create_index('ix_reports_event_date', 'reports', ['event_date'])
    op.create_index('ix_reports_country', 'reports', ['country'])
    op.create_index('ix_reports_status', 'reports', ['status'])
    op.create_index('ix_reports_quality_score', 'reports', ['quality_score'])
    op.create_index('ix_reports_scorer_version', 'reports', ['scorer_version'])
    op.create_index('ix_reports_scoring_run_id', 'reports', ['scoring_run_id'])
    op.create_index('ix_reports_fingerprint', 'reports', ['fingerprint'])

    # Duplicate candidates table
    op.create_table(
        'duplicate_candidates',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('report_a_id', sa.String(length=36), nullable=False),
        sa.Column('report_b_id', sa.String(length=36), nullable=False),
        sa.Column('title_similarity', sa.Float(), nullable=False),
        sa.Column('location_similarity', sa.Float(), nullable=False),
        sa.Column('date_similarity', sa.Float(), nullable=False),
        sa.Column('content_similarity', sa.Float(), nullable=False),
        sa.Column('confidence', sa.Float(), nullable=False),
        sa.Column('confidence_label', sa.String(length=16), nullable=False),
        sa.Column('details', sa.Text(), nullable=True),
        sa.Column('status', sa.String(length=16), nullable=False, server_default='pending'),
        sa.Column('reviewed_by', sa.String(length=128), nullable=True),
        sa.Column('reviewed_at', sa.DateTime(), nullable=True),
        sa.Column('review_notes', sa.Text(), nullable=True),
        sa.Column('detected_at', sa.DateTime(), nullable=False),
        sa.Column('last_detected_at', sa.DateTime(), nullable=False),
        sa.Column('detected_run_id', sa.String(length=64), nullable=True),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('report_a_id', 'report_b_id', name='uq_duplicate_candidate_pair'),
        sa.CheckConstraint('report_a_id < report_b_id', name='ck_duplicate_candidate_ordering'),
        sa.CheckConstraint(
            'confidence >= 0 AND confidence <= 1', name='ck_duplicate_candidate_confidence'
        )
    )
    op.create_index('ix_duplicate_candidates_report_a_id', 'duplicate_candidates', ['report_a_id'])
    op.create_index('ix_duplicate_candidates_report_b_id', 'duplicate_candidates', ['report_b_id'])
    op.create_index('ix_duplicate_candidates_status', 'duplicate_candidates', ['status'])

    # Scoring runs table
    op.create_table(
        'scoring_runs',
        sa.Column('id', sa.String(length=64), nullable=False),
        sa.Column('kind', sa.String(length=32), nullable=False),
        sa.Column('trigger', sa.String(length=32), nullable=True),
        sa.Column('status', sa.String(length=20), nullable=False),
        sa.Column('started_at', sa.DateTime(), nullable=True),
        sa.Column('completed_at', sa.DateTime(), nullable=True),
        sa.Column('total_items', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('reports_processed', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('reports_succeeded', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('reports_failed', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('reports_unchanged', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('candidates_created', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('candidates_updated', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('exact_duplicates_linked', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('comparisons', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('scorer_version', sa.String(length=32), nullable=True),
        sa.Column('snapshot_version', sa.Integer(), nullable=True),
        sa.Column('parameters', postgresql.JSONB(), nullable=True),
        sa.Column('checkpoint', postgresql.JSONB(), nullable=True),
        sa.Column('checkpoint_at', sa.DateTime(), nullable=True),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.Column('errors', postgresql.JSONB(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_scoring_runs_status', 'scoring_runs', ['status'])

    # Corpus statistics snapshots
    op.create_table(
        'corpus_snapshots',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('version', sa.Integer(), nullable=False),
        sa.Column('document_count', sa.Integer(), nullable=False),
        sa.Column('term_document_frequencies', postgresql.JSONB(), nullable=False),
        sa.Column('built_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('version')
    )

    # Source provenance tiers
    op.create_table(
        'source_provenance',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('source_type', sa.String(length=64), nullable=False),
        sa.Column('tier', sa.String(length=32), nullable=False),
        sa.Column('table_version', sa.Integer(), nullable=False, server_default='1'),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('source_type')
    )


def downgrade() -> None:
    op.drop_table('source_provenance')
    op.drop_table('corpus_snapshots')
    op.drop_index('ix_scoring_runs_status', table_name='scoring_runs')
    op.drop_table('scoring_runs')
    op.drop_index('ix_duplicate_candidates_status', table_name='duplicate_candidates')
    op.drop_index('ix_duplicate_candidates_report_b_id', table_name='duplicate_candidates')
    op.drop_index('ix_duplicate_candidates_report_a_id', table_name='duplicate_candidates')
    op.drop_table('duplicate_candidates')
    op.drop_index('ix_reports_fingerprint', table_name='reports')
    op.drop_index('ix_reports_scoring_run_id', table_name='reports')
    op.drop_index('ix_reports_scorer_version', table_name='reports')
    op.drop_index('ix_reports_quality_score', table_name='reports')
    op.drop_index('ix_reports_status', table_name='reports')
    op.drop_index('ix_reports_country', table_name='reports')
    op.drop_index('ix_reports_event_date', table_name='reports')
    op.drop_table('reports')
