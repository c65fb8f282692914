"""
GrantMatch Database Models
SQLAlchemy ORM models for organizations, funding announcements and matches.
"""
import enum
import uuid
from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    Enum,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    TypeDecorator,
    UniqueConstraint,
    Uuid,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


# JSONB on PostgreSQL, plain JSON elsewhere (SQLite in tests)
JSONType = JSON().with_variant(JSONB(), "postgresql")


class UTCDateTime(TypeDecorator):
    """Timezone-aware UTC datetime, also on backends that store naive values."""

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value: Optional[datetime], dialect) -> Optional[datetime]:
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)

    def process_result_value(self, value: Optional[datetime], dialect) -> Optional[datetime]:
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class OrganizationType(str, enum.Enum):
    """Kinds of organizations that can apply for R&D funding."""

    COMPANY = "COMPANY"
    RESEARCH_INSTITUTE = "RESEARCH_INSTITUTE"
    UNIVERSITY = "UNIVERSITY"


class AnnouncementStatus(str, enum.Enum):
    ACTIVE = "ACTIVE"
    EXPIRED = "EXPIRED"


class AnnouncementType(str, enum.Enum):
    """Classification assigned by the ingestion pipeline (or an admin override)."""

    R_D_PROJECT = "R_D_PROJECT"
    SURVEY = "SURVEY"
    EVENT = "EVENT"
    NOTICE = "NOTICE"
    UNKNOWN = "UNKNOWN"


class PlanTier(str, enum.Enum):
    FREE = "FREE"
    PRO = "PRO"
    TEAM = "TEAM"


class Base(DeclarativeBase):
    """Base class for all database models."""

    pass


class Organization(Base):
    """
    Organization profile used for matching.

    Every profile mutation bumps ``updated_at``; cached explanations built
    from an older profile are considered stale.
    """

    __tablename__ = "organizations"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    name: Mapped[str] = mapped_column(Text, nullable=False)
    type: Mapped[OrganizationType] = mapped_column(
        Enum(OrganizationType, native_enum=False, length=32),
        nullable=False,
    )
    industry_sector: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    employee_count_band: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    technology_readiness_level: Mapped[Optional[int]] = mapped_column(
        Integer,
        nullable=True,
        doc="TRL 0-9, NULL when not declared",
    )
    rd_experience: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    business_structure: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    certifications: Mapped[list[str]] = mapped_column(JSONType, nullable=False, default=list)
    research_focus_areas: Mapped[list[str]] = mapped_column(JSONType, nullable=False, default=list)
    profile_completed: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow)
    last_active_at: Mapped[Optional[datetime]] = mapped_column(
        UTCDateTime,
        nullable=True,
        doc="Most recent user activity; drives cache warming strategies",
    )

    subscription: Mapped[Optional["Subscription"]] = relationship(
        back_populates="organization",
        uselist=False,
    )
    matches: Mapped[list["Match"]] = relationship(back_populates="organization")


class Subscription(Base):
    """Plan tier exposed by the billing system. Read-only for the engine."""

    __tablename__ = "subscriptions"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    organization_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("organizations.id", ondelete="CASCADE"),
        nullable=False,
        unique=True,
    )
    plan: Mapped[PlanTier] = mapped_column(
        Enum(PlanTier, native_enum=False, length=16),
        nullable=False,
        default=PlanTier.FREE,
    )
    seat_limit: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)

    organization: Mapped["Organization"] = relationship(back_populates="subscription")


class Announcement(Base):
    """
    Government R&D funding announcement.

    Populated by the ingestion pipeline. The engine only writes
    ``announcement_type``/``category`` through admin reclassification.
    """

    __tablename__ = "announcements"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    agency_id: Mapped[str] = mapped_column(String(64), nullable=False)
    title: Mapped[str] = mapped_column(Text, nullable=False)
    category: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    min_trl: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    max_trl: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    target_types: Mapped[list[str]] = mapped_column(JSONType, nullable=False, default=list)
    allowed_business_structures: Mapped[list[str]] = mapped_column(JSONType, nullable=False, default=list)
    rewards_rd_experience: Mapped[Optional[bool]] = mapped_column(Boolean, nullable=True)
    deadline: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    published_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    status: Mapped[AnnouncementStatus] = mapped_column(
        Enum(AnnouncementStatus, native_enum=False, length=16),
        nullable=False,
        default=AnnouncementStatus.ACTIVE,
    )
    announcement_type: Mapped[AnnouncementType] = mapped_column(
        Enum(AnnouncementType, native_enum=False, length=16),
        nullable=False,
        default=AnnouncementType.UNKNOWN,
    )
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow)

    __table_args__ = (
        Index("ix_announcements_status_type", "status", "announcement_type"),
        Index("ix_announcements_category", "category"),
    )


class GenerationSession(Base):
    """One successful match generation; the unit ranking metrics are computed over."""

    __tablename__ = "generation_sessions"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    organization_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("organizations.id", ondelete="CASCADE"),
        nullable=False,
    )
    generated_count: Mapped[int] = mapped_column(Integer, nullable=False)
    config_name: Mapped[str] = mapped_column(String(64), nullable=False)
    is_cached: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow)

    __table_args__ = (Index("ix_generation_sessions_created_at", "created_at"),)


class Match(Base):
    """
    Organization-to-announcement match result.

    At most one row per (organization, announcement). Re-scoring updates the
    score and explanation in place; ``saved``/``viewed`` belong to the user.
    """

    __tablename__ = "matches"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    organization_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("organizations.id", ondelete="CASCADE"),
        nullable=False,
    )
    announcement_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("announcements.id", ondelete="CASCADE"),
        nullable=False,
    )
    score: Mapped[int] = mapped_column(Integer, nullable=False, doc="Weighted score 0-100")
    bonus: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    breakdown: Mapped[dict[str, Any]] = mapped_column(JSONType, nullable=False, default=dict)
    reason_codes: Mapped[list[str]] = mapped_column(JSONType, nullable=False, default=list)
    confidence: Mapped[str] = mapped_column(String(16), nullable=False)
    explanation: Mapped[dict[str, Any]] = mapped_column(JSONType, nullable=False, default=dict)
    config_name: Mapped[str] = mapped_column(String(64), nullable=False)
    session_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid,
        ForeignKey("generation_sessions.id", ondelete="SET NULL"),
        nullable=True,
    )
    rank_position: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    saved: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    viewed: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow)

    organization: Mapped["Organization"] = relationship(back_populates="matches")
    announcement: Mapped["Announcement"] = relationship()

    __table_args__ = (
        UniqueConstraint("organization_id", "announcement_id", name="uq_matches_org_announcement"),
        Index("ix_matches_announcement_id", "announcement_id"),
    )


class AttributedSave(Base):
    """A save credited to the generation session (and rank) that surfaced the item."""

    __tablename__ = "attributed_saves"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    session_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("generation_sessions.id", ondelete="CASCADE"),
        nullable=False,
    )
    announcement_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    position: Mapped[int] = mapped_column(Integer, nullable=False, doc="1-based rank position")
    saved_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow)

    __table_args__ = (
        UniqueConstraint("session_id", "announcement_id", name="uq_attributed_saves_session_announcement"),
        Index("ix_attributed_saves_saved_at", "saved_at"),
    )


class RankingMetricSnapshot(Base):
    """Stored output of a ranking metrics run."""

    __tablename__ = "ranking_metric_snapshots"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    period_start: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    period_end: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    config_name: Mapped[str] = mapped_column(String(64), nullable=False)
    precision_at_5: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    precision_at_10: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    ndcg_at_10: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    hit_rate_at_10: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    sample_size: Mapped[int] = mapped_column(Integer, nullable=False)
    cached_session_ratio: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    is_sufficient_sample: Mapped[bool] = mapped_column(Boolean, nullable=False)
    data_watermark: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    computed_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow)

    __table_args__ = (
        UniqueConstraint(
            "period_start",
            "period_end",
            "config_name",
            name="uq_ranking_metric_snapshots_period_config",
        ),
    )
