"""SQLAlchemy ORM models for StageGate.

Tables:
- workflow_instances: one row per instance, with the full instance
  document in ``document_json`` and a ``version`` column for optimistic
  concurrency
"""

from sqlalchemy import Column, DateTime, Index, Integer, String, Text, func

from src.db.base import Base


class WorkflowInstanceRecord(Base):
    """Persisted workflow instance.

    Query columns are copied out of the document on every write; the
    document is the source of truth.
    """

    __tablename__ = "workflow_instances"

    id = Column(String(32), primary_key=True)
    template_id = Column(String(64), nullable=False, index=True)
    template_version = Column(Integer, nullable=False, default=1)
    organization_id = Column(String(64), nullable=True, index=True)
    title = Column(String(256), nullable=False, default="")
    status = Column(String(20), nullable=False, index=True)
    current_stage = Column(String(64), nullable=True)
    assigned_to = Column(String(128), nullable=True)
    version = Column(Integer, nullable=False, default=1)
    document_json = Column(Text, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    __table_args__ = (
        Index("ix_workflow_instances_org_status", "organization_id", "status"),
    )
