# apps/discovery/models.py
import uuid
from sqlalchemy import Column, String, DateTime, Integer, Float, func, Text
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import declarative_base
from sqlalchemy import MetaData

from sqlalchemy import ForeignKey, Index, UniqueConstraint
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import relationship

# Naming convention helps Alembic autogenerate predictable constraint names
naming_convention = {
    "ix": "ix_%(column_0_label)s",
    "uq": "uq_%(table_name)s_%(column_0_name)s",
    "ck": "ck_%(table_name)s_%(constraint_name)s",
    "fk": "fk_%(table_name)s_%(column_0_name)s_%(referred_table_name)s",
    "pk": "pk_%(table_name)s",
}
metadata = MetaData(naming_convention=naming_convention)
Base = declarative_base(metadata=metadata)


class Content(Base):
    __tablename__ = "content"

    id = Column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4, nullable=False
    )
    title = Column(String, nullable=False, default="", server_default="")
    popularity_score = Column(Float, nullable=False, server_default="0")  # 0..1
    runtime_minutes = Column(Integer, nullable=True)

    created_at = Column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )
    updated_at = Column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )

    __table_args__ = (Index("ix_content_popularity", "popularity_score"),)


class ContentGenre(Base):
    __tablename__ = "content_genres"

    content_id = Column(UUID(as_uuid=True), ForeignKey("content.id", ondelete="CASCADE"), primary_key=True, nullable=False)
    genre = Column(Text, primary_key=True, nullable=False)

    __table_args__ = (
        Index("ix_content_genres_genre", "genre"),
    )


class Credit(Base):
    __tablename__ = "credits"

    content_id = Column(UUID(as_uuid=True), ForeignKey("content.id", ondelete="CASCADE"), primary_key=True, nullable=False)
    person_name = Column(Text, primary_key=True, nullable=False)
    role_type = Column(String, primary_key=True, nullable=False)  # actor | director
    credit_order = Column(Integer, nullable=True)  # billing position, lower is more prominent

    __table_args__ = (
        Index("ix_credits_person_role", "person_name", "role_type"),
    )


class ContentTheme(Base):
    __tablename__ = "content_themes"

    content_id = Column(UUID(as_uuid=True), ForeignKey("content.id", ondelete="CASCADE"), primary_key=True, nullable=False)
    theme = Column(Text, primary_key=True, nullable=False)

    __table_args__ = (
        Index("ix_content_themes_theme", "theme"),
    )


class ContentMood(Base):
    __tablename__ = "content_moods"

    content_id = Column(UUID(as_uuid=True), ForeignKey("content.id", ondelete="CASCADE"), primary_key=True, nullable=False)
    mood = Column(Text, primary_key=True, nullable=False)


class WatchProgress(Base):
    __tablename__ = "watch_progress"

    # users live in the identity service; no FK
    user_id = Column(UUID(as_uuid=True), primary_key=True, nullable=False)
    content_id = Column(
        UUID(as_uuid=True),
        ForeignKey("content.id", ondelete="CASCADE"),
        primary_key=True,
        nullable=False,
    )

    completion_rate = Column(Float, nullable=False, server_default="0")  # 0..1
    last_watched = Column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )

    __table_args__ = (
        Index("ix_watch_progress_user_lastwatched", "user_id", "last_watched"),
        Index("ix_watch_progress_content_user", "content_id", "user_id"),
    )


class Experiment(Base):
    __tablename__ = "experiments"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4, nullable=False)
    name = Column(String(255), nullable=False, unique=True)
    description = Column(Text, nullable=True)
    status = Column(
        String(50), nullable=False, default="draft", server_default="draft"
    )  # draft|running|paused|completed
    traffic_allocation = Column(Float, nullable=False, server_default="1.0")

    created_at = Column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )
    updated_at = Column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )

    variants = relationship(
        "ExperimentVariant", back_populates="experiment", cascade="all, delete-orphan", passive_deletes=True
    )

    __table_args__ = (Index("ix_experiments_status", "status"),)


class ExperimentVariant(Base):
    __tablename__ = "experiment_variants"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4, nullable=False)
    experiment_id = Column(
        UUID(as_uuid=True), ForeignKey("experiments.id", ondelete="CASCADE"), nullable=False
    )
    name = Column(String(255), nullable=False)
    weight = Column(Float, nullable=False, server_default="0.5")
    config = Column(JSONB, nullable=False, server_default="{}")  # opaque to this service

    created_at = Column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )

    experiment = relationship("Experiment", back_populates="variants")

    __table_args__ = (
        UniqueConstraint("experiment_id", "name"),
        Index("ix_experiment_variants_experiment_id", "experiment_id"),
    )


class ExperimentAssignment(Base):
    __tablename__ = "experiment_assignments"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4, nullable=False)
    experiment_id = Column(
        UUID(as_uuid=True), ForeignKey("experiments.id", ondelete="CASCADE"), nullable=False
    )
    user_id = Column(UUID(as_uuid=True), nullable=False)
    variant_id = Column(
        UUID(as_uuid=True), ForeignKey("experiment_variants.id", ondelete="CASCADE"), nullable=False
    )
    assigned_at = Column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )

    __table_args__ = (
        UniqueConstraint("experiment_id", "user_id"),
    )


class ExperimentMetric(Base):
    __tablename__ = "experiment_metrics"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4, nullable=False)
    experiment_id = Column(
        UUID(as_uuid=True), ForeignKey("experiments.id", ondelete="CASCADE"), nullable=False
    )
    variant_id = Column(
        UUID(as_uuid=True), ForeignKey("experiment_variants.id", ondelete="CASCADE"), nullable=False
    )
    user_id = Column(UUID(as_uuid=True), nullable=False)
    metric_name = Column(String(255), nullable=False)
    metric_value = Column(Float, nullable=False)
    meta = Column("metadata", JSONB, nullable=True)  # freeform event context
    recorded_at = Column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )

    __table_args__ = (
        Index("ix_experiment_metrics_variant_name", "experiment_id", "variant_id", "metric_name"),
    )
