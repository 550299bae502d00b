"""SQLAlchemy models for the persisted collections.

Each collection is keyed by a UUID string and refers to other collections by
id only:
- Jobs (scheduler state, progress, parameters, result, error)
- Optimization recommendations
"""

from __future__ import annotations

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    Float,
    Index,
    Integer,
    String,
    Text,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import declarative_base

Base = declarative_base()

# JSONB on PostgreSQL, plain JSON elsewhere (SQLite in tests).
JSONType = JSON().with_variant(JSONB(), "postgresql")


class JobRow(Base):
    """Background job record.

    ``status`` transitions are applied with a compare-and-swap UPDATE on the
    current status, so two workers cannot claim the same pending job.
    """

    __tablename__ = "jobs"

    job_id = Column(String(64), primary_key=True)
    workspace_id = Column(String(64), nullable=False, index=True)
    job_type = Column(String(64), nullable=False)
    status = Column(String(32), nullable=False, default="pending")
    priority = Column(String(16), nullable=False, default="medium")
    effective_priority = Column(String(16), nullable=False, default="medium")

    progress = Column(Float, nullable=False, default=0.0)
    retry_count = Column(Integer, nullable=False, default=0)
    max_retries = Column(Integer, nullable=False, default=3)
    rerun_attempt = Column(Integer, nullable=False, default=0)

    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
    started_at = Column(DateTime(timezone=True), nullable=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    parameters = Column(JSONType, nullable=False)
    metadata_json = Column(JSONType, default=dict)
    progress_detail = Column(JSONType, nullable=True)
    checkpoint = Column(JSONType, nullable=True)
    result = Column(JSONType, nullable=True)
    error = Column(Text, nullable=True)
    error_code = Column(String(64), nullable=True)

    __table_args__ = (
        Index("idx_job_workspace_status", "workspace_id", "status"),
        Index("idx_job_created", "created_at"),
    )


class OptimizationRecommendationRow(Base):
    __tablename__ = "optimization_recommendations"

    id = Column(String(64), primary_key=True)
    workspace_id = Column(String(64), nullable=False, index=True)
    scenario_id = Column(String(64), nullable=True, index=True)
    product_id = Column(String(255), nullable=True, index=True)
    recommendation_type = Column(String(32), nullable=False)
    title = Column(String(255), nullable=False)
    description = Column(Text, nullable=False)
    impact_analysis = Column(JSONType, nullable=False)
    implementation_requirements = Column(JSONType, nullable=False)
    confidence_score = Column(Float, nullable=False)
    priority = Column(String(16), nullable=False)
    status = Column(String(16), nullable=False, default="pending")
    archived = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime(timezone=True), nullable=False)
    updated_at = Column(DateTime(timezone=True), nullable=False)

    __table_args__ = (
        Index("idx_recommendation_workspace_status", "workspace_id", "status"),
    )
