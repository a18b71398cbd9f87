"""Initial migration - create all tables

Revision ID: 001_initial
Revises: None
Create Date: 2026-10-19

Creates all database tables for Exam Gate:
- exams, questions, exam_questions: exam configuration read by the engine
- pin_batches, exam_pins, pin_allow_list, pin_validation_attempts: PIN registry
- candidates, exam_attempts: attempt lifecycle
- attempt_answers, attempt_answer_history: autosaved answers
- attempt_integrity_events: client behaviour signals
- exam_results, question_analytics: scoring outputs

Also creates indexes for the conditional updates and common lookups.
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

# revision identifiers
revision: str = '001_initial'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _id():
    return sa.Column('id', sa.String(36), primary_key=True)


def _created_at():
    return sa.Column('created_at', sa.DateTime(), server_default=sa.func.now(), nullable=True)


def upgrade() -> None:
    # ── Exam configuration ────────────────────────────────────
    op.create_table(
        'exams',
        _id(),
        sa.Column('title', sa.Text(), nullable=False),
        sa.Column('status', sa.Text(), nullable=False, server_default='published'),
        sa.Column('duration_minutes', sa.Integer(), nullable=False, server_default='60'),
        sa.Column('shuffle_questions', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('shuffle_options', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('max_attempts', sa.Integer(), nullable=True),
        sa.Column('passing_score', sa.Float(), nullable=True),
        _created_at(),
    )

    op.create_table(
        'questions',
        _id(),
        sa.Column('question_type', sa.Text(), nullable=False),
        sa.Column('prompt', sa.Text(), nullable=False, server_default=''),
        sa.Column('options', sa.Text(), nullable=False, server_default='[]'),
        sa.Column('correct_answer', sa.Text(), nullable=True),
        sa.Column('short_answer_rules', sa.Text(), nullable=True),
        sa.Column('subject_id', sa.String(36), nullable=True),
        _created_at(),
        sa.CheckConstraint(
            "question_type IN ('mcq_single', 'mcq_multi', 'true_false', 'short_answer')",
            name='ck_questions_type'
        ),
    )

    op.create_table(
        'exam_questions',
        _id(),
        sa.Column('exam_id', sa.String(36), sa.ForeignKey('exams.id'), nullable=False),
        sa.Column('question_id', sa.String(36), sa.ForeignKey('questions.id'), nullable=False),
        sa.Column('display_order', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('points', sa.Float(), nullable=False, server_default='1'),
        sa.UniqueConstraint('exam_id', 'question_id', name='uq_exam_questions_exam_question'),
    )
    op.create_index('ix_exam_questions_exam_id', 'exam_questions', ['exam_id'])

    # ── PIN registry ──────────────────────────────────────────
    op.create_table(
        'pin_batches',
        _id(),
        sa.Column('exam_id', sa.String(36), sa.ForeignKey('exams.id'), nullable=False),
        sa.Column('batch_name', sa.Text(), nullable=False, server_default=''),
        sa.Column('prefix', sa.Text(), nullable=True),
        sa.Column('quantity', sa.Integer(), nullable=False),
        sa.Column('charset', sa.Text(), nullable=False, server_default='alnum_upper'),
        sa.Column('length', sa.Integer(), nullable=False, server_default='8'),
        sa.Column('expires_at', sa.DateTime(), nullable=True),
        sa.Column('usage_limit_per_pin', sa.Integer(), nullable=False, server_default='1'),
        sa.Column('allow_list_enabled', sa.Boolean(), nullable=False, server_default=sa.false()),
        _created_at(),
    )
    op.create_index('ix_pin_batches_exam_id', 'pin_batches', ['exam_id'])
    op.create_index('ix_pin_batches_created_at', 'pin_batches', ['created_at'])

    op.create_table(
        'exam_pins',
        _id(),
        sa.Column('exam_id', sa.String(36), sa.ForeignKey('exams.id'), nullable=False),
        sa.Column('batch_id', sa.String(36), sa.ForeignKey('pin_batches.id'), nullable=True),
        sa.Column('pin_hash', sa.String(64), nullable=False),
        sa.Column('pin_hint', sa.Text(), nullable=False),
        sa.Column('status', sa.Text(), nullable=False, server_default='active'),
        sa.Column('max_uses', sa.Integer(), nullable=False, server_default='1'),
        sa.Column('uses_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('expires_at', sa.DateTime(), nullable=True),
        sa.Column('allow_list_enabled', sa.Boolean(), nullable=False, server_default=sa.false()),
        _created_at(),
        sa.UniqueConstraint('exam_id', 'pin_hash', name='uq_exam_pins_exam_hash'),
        sa.CheckConstraint('uses_count <= max_uses', name='ck_exam_pins_uses_within_limit'),
        sa.CheckConstraint("status IN ('active', 'revoked')", name='ck_exam_pins_status'),
    )
    op.create_index('ix_exam_pins_batch_id', 'exam_pins', ['batch_id'])

    op.create_table(
        'pin_allow_list',
        _id(),
        sa.Column('pin_id', sa.String(36), sa.ForeignKey('exam_pins.id'), nullable=False),
        sa.Column('candidate_identifier', sa.Text(), nullable=False),
        _created_at(),
        sa.UniqueConstraint('pin_id', 'candidate_identifier', name='uq_pin_allow_list_entry'),
    )

    op.create_table(
        'pin_validation_attempts',
        _id(),
        sa.Column('exam_id', sa.String(36), nullable=True),
        sa.Column('pin_id', sa.String(36), nullable=True),
        sa.Column('entered_pin_hash', sa.String(64), nullable=False),
        sa.Column('client_ip', sa.Text(), nullable=True),
        sa.Column('user_agent', sa.Text(), nullable=True),
        sa.Column('candidate_identifier', sa.Text(), nullable=True),
        sa.Column('success', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('reason', sa.Text(), nullable=False),
        _created_at(),
    )
    op.create_index('ix_pin_validation_attempts_ip_created', 'pin_validation_attempts',
                    ['client_ip', 'created_at'])

    # ── Attempts ──────────────────────────────────────────────
    op.create_table(
        'candidates',
        _id(),
        sa.Column('full_name', sa.Text(), nullable=False),
        sa.Column('external_identifier', sa.Text(), nullable=True),
        _created_at(),
    )
    op.create_index('ix_candidates_external_identifier', 'candidates', ['external_identifier'])

    op.create_table(
        'exam_attempts',
        _id(),
        sa.Column('exam_id', sa.String(36), sa.ForeignKey('exams.id'), nullable=False),
        sa.Column('candidate_id', sa.String(36), sa.ForeignKey('candidates.id'), nullable=False),
        sa.Column('pin_id', sa.String(36), sa.ForeignKey('exam_pins.id'), nullable=True),
        sa.Column('status', sa.Text(), nullable=False, server_default='in_progress'),
        sa.Column('started_at', sa.DateTime(), nullable=False),
        sa.Column('expires_at', sa.DateTime(), nullable=False),
        sa.Column('submitted_at', sa.DateTime(), nullable=True),
        sa.Column('last_saved_at', sa.DateTime(), nullable=True),
        sa.Column('current_question_index', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('question_order', sa.Text(), nullable=False, server_default='[]'),
        sa.Column('option_order', sa.Text(), nullable=False, server_default='{}'),
        sa.Column('integrity_score', sa.Float(), nullable=False, server_default='100'),
        sa.Column('integrity_events_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('attempt_metadata', sa.Text(), nullable=False, server_default='{}'),
        sa.CheckConstraint(
            "status IN ('in_progress', 'submitting', 'submitted', 'auto_submitted')",
            name='ck_exam_attempts_status'
        ),
    )
    op.create_index('ix_exam_attempts_exam_status', 'exam_attempts', ['exam_id', 'status'])
    op.create_index('ix_exam_attempts_status_expires', 'exam_attempts', ['status', 'expires_at'])
    op.create_index('ix_exam_attempts_candidate_id', 'exam_attempts', ['candidate_id'])
    op.create_index('ix_exam_attempts_pin_id', 'exam_attempts', ['pin_id'])

    op.create_table(
        'attempt_answers',
        _id(),
        sa.Column('attempt_id', sa.String(36), sa.ForeignKey('exam_attempts.id'), nullable=False),
        sa.Column('exam_id', sa.String(36), nullable=False),
        sa.Column('question_id', sa.String(36), nullable=False),
        sa.Column('answer_payload', sa.Text(), nullable=False, server_default='null'),
        sa.Column('is_final', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('saved_at', sa.DateTime(), nullable=False),
        sa.Column('version_no', sa.Integer(), nullable=False, server_default='1'),
        sa.UniqueConstraint('attempt_id', 'question_id', name='uq_attempt_answers_attempt_question'),
    )
    op.create_index('ix_attempt_answers_exam_question', 'attempt_answers', ['exam_id', 'question_id'])

    op.create_table(
        'attempt_answer_history',
        _id(),
        sa.Column('attempt_id', sa.String(36), sa.ForeignKey('exam_attempts.id'), nullable=False),
        sa.Column('question_id', sa.String(36), nullable=False),
        sa.Column('answer_payload', sa.Text(), nullable=False, server_default='null'),
        sa.Column('version_no', sa.Integer(), nullable=False),
        sa.Column('saved_at', sa.DateTime(), nullable=False),
    )
    op.create_index('ix_attempt_answer_history_attempt_question', 'attempt_answer_history',
                    ['attempt_id', 'question_id'])

    op.create_table(
        'attempt_integrity_events',
        _id(),
        sa.Column('attempt_id', sa.String(36), sa.ForeignKey('exam_attempts.id'), nullable=False),
        sa.Column('exam_id', sa.String(36), nullable=False),
        sa.Column('event_type', sa.Text(), nullable=False),
        sa.Column('severity', sa.Text(), nullable=False, server_default='info'),
        sa.Column('occurred_at', sa.DateTime(), nullable=True),
        sa.Column('received_at', sa.DateTime(), nullable=False),
        sa.Column('metadata', sa.Text(), nullable=False, server_default='{}'),
    )
    op.create_index('ix_attempt_integrity_events_attempt_id', 'attempt_integrity_events', ['attempt_id'])

    # ── Scoring outputs ───────────────────────────────────────
    op.create_table(
        'exam_results',
        _id(),
        sa.Column('attempt_id', sa.String(36), sa.ForeignKey('exam_attempts.id'),
                  nullable=False, unique=True),
        sa.Column('exam_id', sa.String(36), nullable=False),
        sa.Column('candidate_id', sa.String(36), nullable=False),
        sa.Column('total_questions', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('answered_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('correct_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('incorrect_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('score', sa.Float(), nullable=False, server_default='0'),
        sa.Column('percentage', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('grade_letter', sa.Text(), nullable=True),
        sa.Column('passed', sa.Boolean(), nullable=True),
        sa.Column('integrity_score', sa.Float(), nullable=True),
        sa.Column('subject_breakdown', sa.Text(), nullable=False, server_default='{}'),
        sa.Column('analytics_applied', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('computed_at', sa.DateTime(), nullable=False),
    )
    op.create_index('ix_exam_results_exam_id', 'exam_results', ['exam_id'])

    op.create_table(
        'question_analytics',
        _id(),
        sa.Column('question_id', sa.String(36), nullable=False, unique=True),
        sa.Column('exposure_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('answer_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('correct_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('option_popularity', sa.Text(), nullable=False, server_default='{}'),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
    )


def downgrade() -> None:
    op.drop_table('question_analytics')
    op.drop_table('exam_results')
    op.drop_table('attempt_integrity_events')
    op.drop_table('attempt_answer_history')
    op.drop_table('attempt_answers')
    op.drop_table('exam_attempts')
    op.drop_table('candidates')
    op.drop_table('pin_validation_attempts')
    op.drop_table('pin_allow_list')
    op.drop_table('exam_pins')
    op.drop_table('pin_batches')
    op.drop_table('exam_questions')
    op.drop_table('questions')
    op.drop_table('exams')
