from datetime import datetime, timezone

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import declarative_base, relationship
from sqlalchemy.sql import func
import uuid_utils


def generate_uuid7() -> str:
    """Generate a UUIDv7 string (time ordered, index friendly)."""
    return str(uuid_utils.uuid7())


def utcnow() -> datetime:
    """Naive UTC timestamp, matching the timezone-less DateTime columns."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


# JSONB on PostgreSQL, plain JSON elsewhere (SQLite in tests).
JSONType = JSON().with_variant(JSONB(), "postgresql")

Base = declarative_base()


class CatalogEntry(Base):
    __tablename__ = 'catalog_entries'

    # sha1 of normalized title + year + category, see collector.reconciler.entry_id_for
    id = Column(String(40), primary_key=True)
    title = Column(String(500), nullable=False)
    normalized_title = Column(String(500), nullable=False)
    category = Column(String(50), nullable=False, default="")
    year = Column(String(10), nullable=False, default="")
    region = Column(String(100))
    genre = Column(String(100))
    sub_genres = Column(JSONType, nullable=False, default=list)
    cast = Column(Text)
    director = Column(String(500))
    synopsis = Column(Text)
    cover_url = Column(String(2000))
    play_index = Column(JSONType, nullable=False, default=dict)
    rating = Column(String(20))
    remark = Column(String(200))
    quality_score = Column(Integer, nullable=False, default=0)
    source_priority = Column(Integer, nullable=False, default=0)
    source_names = Column(JSONType, nullable=False, default=list)
    field_provenance = Column(JSONType, nullable=False, default=dict)
    is_valid = Column(Boolean, nullable=False, default=True)
    last_checked = Column(DateTime)
    created_at = Column(DateTime, default=func.now(), nullable=False)
    # Set explicitly by the reconciler; validation passes must not touch it.
    updated_at = Column(DateTime, default=func.now(), nullable=False)

    __table_args__ = (
        Index('ix_catalog_entries_match_key', 'normalized_title', 'year', 'category'),
        Index('ix_catalog_entries_validity', 'is_valid', 'last_checked'),
        Index('ix_catalog_entries_category_updated', 'category', 'updated_at'),
    )

    def __repr__(self):
        return (
            f"<CatalogEntry(id={self.id}, title='{self.title[:30]}', "
            f"year='{self.year}', category='{self.category}')>"
        )


class CatalogSearchEntry(Base):
    """Full-text projection of title/cast/synopsis, kept in sync with catalog writes."""

    __tablename__ = 'catalog_search'

    entry_id = Column(String(40), ForeignKey('catalog_entries.id', ondelete='CASCADE'), primary_key=True)
    title = Column(String(500), nullable=False)
    cast = Column(Text)
    director = Column(String(500))
    synopsis = Column(Text)
    document = Column(Text, nullable=False, default="")


class Source(Base):
    __tablename__ = 'sources'

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(100), nullable=False, unique=True)
    base_url = Column(String(2000), nullable=False)
    weight = Column(Integer, nullable=False, default=50)
    is_active = Column(Boolean, nullable=False, default=True)
    adapter = Column(String(50), nullable=False, default="maccms")
    response_format = Column(String(10), nullable=False, default="auto")
    category_ids = Column(JSONType, nullable=False, default=list)
    created_at = Column(DateTime, default=func.now(), nullable=False)
    updated_at = Column(DateTime, default=func.now(), onupdate=func.now(), nullable=False)

    health = relationship("SourceHealth", back_populates="source", uselist=False)

    def __repr__(self):
        return f"<Source(id={self.id}, name='{self.name}', weight={self.weight})>"


class SourceHealth(Base):
    __tablename__ = 'source_health'

    source_id = Column(Integer, ForeignKey('sources.id', ondelete='CASCADE'), primary_key=True)
    status = Column(String(20), nullable=False, default="unknown")
    latency_ms = Column(Integer, nullable=False, default=0)
    avg_latency_ms = Column(Integer, nullable=False, default=0)
    success_rate = Column(Float, nullable=False, default=0.0)
    total_checks = Column(Integer, nullable=False, default=0)
    consecutive_failures = Column(Integer, nullable=False, default=0)
    circuit_state = Column(String(20), nullable=False, default="closed")
    last_error = Column(Text)
    last_error_at = Column(DateTime)
    last_probe_at = Column(DateTime)
    updated_at = Column(DateTime, default=func.now(), onupdate=func.now(), nullable=False)

    source = relationship("Source", back_populates="health")


class CollectionTask(Base):
    __tablename__ = 'collection_tasks'

    id = Column(String(36), primary_key=True, default=generate_uuid7)
    mode = Column(String(20), nullable=False)
    status = Column(String(20), nullable=False, default="pending", index=True)
    config = Column(JSONType, nullable=False, default=dict)
    processed_count = Column(Integer, nullable=False, default=0)
    new_count = Column(Integer, nullable=False, default=0)
    updated_count = Column(Integer, nullable=False, default=0)
    skipped_count = Column(Integer, nullable=False, default=0)
    error_count = Column(Integer, nullable=False, default=0)
    checkpoint = Column(JSONType)
    last_error = Column(Text)
    created_at = Column(DateTime, default=func.now(), nullable=False, index=True)
    started_at = Column(DateTime)
    paused_at = Column(DateTime)
    finished_at = Column(DateTime)

    logs = relationship(
        "CollectionLogEntry",
        back_populates="task",
        cascade="all, delete-orphan",
        order_by="CollectionLogEntry.created_at",
    )

    def __repr__(self):
        return f"<CollectionTask(id={self.id}, mode='{self.mode}', status='{self.status}')>"


class CollectionLogEntry(Base):
    __tablename__ = 'collection_logs'

    id = Column(String(36), primary_key=True, default=generate_uuid7)
    task_id = Column(String(36), ForeignKey('collection_tasks.id', ondelete='CASCADE'), nullable=False)
    level = Column(String(10), nullable=False, default="info")
    source_name = Column(String(100))
    action = Column(String(50), nullable=False)
    message = Column(Text, nullable=False)
    details = Column(JSONType)
    entry_id = Column(String(40))
    created_at = Column(DateTime, default=func.now(), nullable=False)

    task = relationship("CollectionTask", back_populates="logs")

    __table_args__ = (
        Index('ix_collection_logs_task_created', 'task_id', 'created_at'),
    )


class InvalidUrlReport(Base):
    __tablename__ = 'invalid_url_reports'

    id = Column(String(36), primary_key=True, default=generate_uuid7)
    entry_id = Column(String(40), nullable=False, index=True)
    url = Column(String(2000), nullable=False)
    error_class = Column(String(20), nullable=False)
    reporter = Column(String(10), nullable=False, default="system")
    resolved = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime, default=func.now(), nullable=False)
    resolved_at = Column(DateTime)


class SchedulerJob(Base):
    __tablename__ = 'scheduler_jobs'

    id = Column(String(64), primary_key=True)
    name = Column(String(200), nullable=False)
    description = Column(Text)
    cron = Column(String(100), nullable=False)
    job_type = Column(String(50), nullable=False)
    params = Column(JSONType, nullable=False, default=dict)
    enabled = Column(Boolean, nullable=False, default=True)
    is_builtin = Column(Boolean, nullable=False, default=False)
    last_run_at = Column(DateTime)
    created_at = Column(DateTime, default=func.now(), nullable=False)
    updated_at = Column(DateTime, default=func.now(), onupdate=func.now(), nullable=False)


class SchedulerExecution(Base):
    __tablename__ = 'scheduler_executions'

    id = Column(String(36), primary_key=True, default=generate_uuid7)
    job_id = Column(String(64), nullable=False, index=True)
    status = Column(String(20), nullable=False)
    message = Column(Text)
    duration_ms = Column(Integer, nullable=False, default=0)
    manual = Column(Boolean, nullable=False, default=False)
    executed_at = Column(DateTime, default=func.now(), nullable=False, index=True)
