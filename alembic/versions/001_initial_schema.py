"""Initial match engine schema

Revision ID: 001
Revises:
Create Date: 2026-02-16

Creates the tables for the GrantMatch match generation engine:
- organizations: Organization profiles used for matching
- subscriptions: Plan tier per organization (owned by billing)
- announcements: R&D funding announcements (owned by ingestion)
- generation_sessions: One row per successful match generation
- matches: Organization-to-announcement match results
- attributed_saves: Saves credited to the session that ranked them
- ranking_metric_snapshots: Stored ranking quality metrics
"""
from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

# Revision identifiers
revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _timestamp(name: str, nullable: bool = False) -> sa.Column:
    return sa.Column(
        name,
        sa.TIMESTAMP(timezone=True),
        nullable=nullable,
        server_default=None if nullable else sa.func.now(),
    )


def upgrade() -> None:
    """Create the match engine schema."""

    # ==========================================================================
    # Create organizations table
    # ==========================================================================
    op.create_table(
        "organizations",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("name", sa.Text(), nullable=False),
        sa.Column("type", sa.String(32), nullable=False),
        sa.Column("industry_sector", sa.String(64), nullable=True),
        sa.Column("employee_count_band", sa.String(32), nullable=True),
        sa.Column("technology_readiness_level", sa.Integer(), nullable=True),
        sa.Column("rd_experience", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("business_structure", sa.String(32), nullable=True),
        sa.Column("certifications", postgresql.JSONB(), nullable=False, server_default="[]"),
        sa.Column("research_focus_areas", postgresql.JSONB(), nullable=False, server_default="[]"),
        sa.Column("profile_completed", sa.Boolean(), nullable=False, server_default=sa.false()),
        _timestamp("created_at"),
        _timestamp("updated_at"),
        _timestamp("last_active_at", nullable=True),
        sa.CheckConstraint(
            "technology_readiness_level BETWEEN 0 AND 9",
            name="ck_organizations_trl_range",
        ),
    )
    op.create_index("ix_organizations_last_active_at", "organizations", ["last_active_at"])

    # ==========================================================================
    # Create subscriptions table
    # ==========================================================================
    op.create_table(
        "subscriptions",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column(
            "organization_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("organizations.id", ondelete="CASCADE"),
            nullable=False,
            unique=True,
        ),
        sa.Column("plan", sa.String(16), nullable=False, server_default="FREE"),
        sa.Column("seat_limit", sa.Integer(), nullable=True),
    )

    # ==========================================================================
    # Create announcements table
    # ==========================================================================
    op.create_table(
        "announcements",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("agency_id", sa.String(64), nullable=False),
        sa.Column("title", sa.Text(), nullable=False),
        sa.Column("category", sa.String(64), nullable=True),
        sa.Column("min_trl", sa.Integer(), nullable=True),
        sa.Column("max_trl", sa.Integer(), nullable=True),
        sa.Column("target_types", postgresql.JSONB(), nullable=False, server_default="[]"),
        sa.Column("allowed_business_structures", postgresql.JSONB(), nullable=False, server_default="[]"),
        sa.Column("rewards_rd_experience", sa.Boolean(), nullable=True),
        _timestamp("deadline", nullable=True),
        _timestamp("published_at", nullable=True),
        sa.Column("status", sa.String(16), nullable=False, server_default="ACTIVE"),
        sa.Column("announcement_type", sa.String(16), nullable=False, server_default="UNKNOWN"),
        _timestamp("updated_at"),
    )
    op.create_index("ix_announcements_status_type", "announcements", ["status", "announcement_type"])
    op.create_index("ix_announcements_category", "announcements", ["category"])

    # ==========================================================================
    # Create generation_sessions table
    # ==========================================================================
    op.create_table(
        "generation_sessions",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column(
            "organization_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("organizations.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("generated_count", sa.Integer(), nullable=False),
        sa.Column("config_name", sa.String(64), nullable=False),
        sa.Column("is_cached", sa.Boolean(), nullable=False, server_default=sa.false()),
        _timestamp("created_at"),
    )
    op.create_index("ix_generation_sessions_created_at", "generation_sessions", ["created_at"])

    # ==========================================================================
    # Create matches table
    # ==========================================================================
    op.create_table(
        "matches",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column(
            "organization_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("organizations.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column(
            "announcement_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("announcements.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("score", sa.Integer(), nullable=False),
        sa.Column("bonus", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("breakdown", postgresql.JSONB(), nullable=False, server_default="{}"),
        sa.Column("reason_codes", postgresql.JSONB(), nullable=False, server_default="[]"),
        sa.Column("confidence", sa.String(16), nullable=False),
        sa.Column("explanation", postgresql.JSONB(), nullable=False, server_default="{}"),
        sa.Column("config_name", sa.String(64), nullable=False),
        sa.Column(
            "session_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("generation_sessions.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column("rank_position", sa.Integer(), nullable=True),
        sa.Column("saved", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("viewed", sa.Boolean(), nullable=False, server_default=sa.false()),
        _timestamp("created_at"),
        _timestamp("updated_at"),
        sa.UniqueConstraint("organization_id", "announcement_id", name="uq_matches_org_announcement"),
        sa.CheckConstraint("score BETWEEN 0 AND 100", name="ck_matches_score_range"),
    )
    op.create_index("ix_matches_announcement_id", "matches", ["announcement_id"])

    # Ranked list lookups
    op.create_index(
        "ix_matches_org_rank",
        "matches",
        ["organization_id", "rank_position"],
        postgresql_where=sa.text("rank_position IS NOT NULL"),
    )

    # ==========================================================================
    # Create attributed_saves table
    # ==========================================================================
    op.create_table(
        "attributed_saves",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column(
            "session_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("generation_sessions.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("announcement_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("position", sa.Integer(), nullable=False),
        _timestamp("saved_at"),
        sa.UniqueConstraint(
            "session_id",
            "announcement_id",
            name="uq_attributed_saves_session_announcement",
        ),
    )
    op.create_index("ix_attributed_saves_saved_at", "attributed_saves", ["saved_at"])

    # ==========================================================================
    # Create ranking_metric_snapshots table
    # ==========================================================================
    op.create_table(
        "ranking_metric_snapshots",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        _timestamp("period_start"),
        _timestamp("period_end"),
        sa.Column("config_name", sa.String(64), nullable=False),
        sa.Column("precision_at_5", sa.Float(), nullable=True),
        sa.Column("precision_at_10", sa.Float(), nullable=True),
        sa.Column("ndcg_at_10", sa.Float(), nullable=True),
        sa.Column("hit_rate_at_10", sa.Float(), nullable=True),
        sa.Column("sample_size", sa.Integer(), nullable=False),
        sa.Column("cached_session_ratio", sa.Float(), nullable=True),
        sa.Column("is_sufficient_sample", sa.Boolean(), nullable=False),
        _timestamp("data_watermark"),
        _timestamp("computed_at"),
        sa.UniqueConstraint(
            "period_start",
            "period_end",
            "config_name",
            name="uq_ranking_metric_snapshots_period_config",
        ),
    )


def downgrade() -> None:
    """Drop the match engine schema."""
    op.drop_table("ranking_metric_snapshots")
    op.drop_index("ix_attributed_saves_saved_at", table_name="attributed_saves")
    op.drop_table("attributed_saves")
    op.drop_index("ix_matches_org_rank", table_name="matches")
    op.drop_index("ix_matches_announcement_id", table_name="matches")
    op.drop_table("matches")
    op.drop_index("ix_generation_sessions_created_at", table_name="generation_sessions")
    op.drop_table("generation_sessions")
    op.drop_index("ix_announcements_category", table_name="announcements")
    op.drop_index("ix_announcements_status_type", table_name="announcements")
    op.drop_table("announcements")
    op.drop_table("subscriptions")
    op.drop_index("ix_organizations_last_active_at", table_name="organizations")
    op.drop_table("organizations")
