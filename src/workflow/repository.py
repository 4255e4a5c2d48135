"""Stage-gate workflow engine - SQL persistence.

Saves and loads instances to/from the ``workflow_instances`` table.
Saves are compare-and-swap: the UPDATE is conditioned on the version the
caller loaded, and zero affected rows means someone else wrote first.
"""

import json
import logging
from typing import Callable, List, Optional, Tuple

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from src.db.engine import get_sync_session_factory
from src.db.models import WorkflowInstanceRecord

from .config import InstanceStatus
from .errors import InstanceNotFoundError, VersionConflictError
from .models import WorkflowInstance

logger = logging.getLogger(__name__)


def _document(instance: WorkflowInstance) -> str:
    return json.dumps(instance.to_dict())


def _columns(instance: WorkflowInstance) -> dict:
    return {
        "template_id": instance.template_id,
        "template_version": instance.template_version,
        "organization_id": instance.organization_id or None,
        "title": instance.title,
        "status": instance.status.value,
        "current_stage": instance.current_stage or None,
        "assigned_to": instance.assigned_to,
        "document_json": _document(instance),
    }


def insert_instance(session: Session, instance: WorkflowInstance) -> int:
    """Insert a new instance row at version 1."""
    existing = session.get(WorkflowInstanceRecord, instance.id)
    if existing is not None:
        raise VersionConflictError(instance.id, 0, existing.version)
    session.add(WorkflowInstanceRecord(id=instance.id, version=1, **_columns(instance)))
    session.flush()
    return 1


def load_instance(session: Session, instance_id: str) -> Tuple[WorkflowInstance, int]:
    rec = session.get(WorkflowInstanceRecord, instance_id)
    if rec is None:
        raise InstanceNotFoundError(instance_id)
    return WorkflowInstance.from_dict(json.loads(rec.document_json)), rec.version


def update_instance(
    session: Session, instance_id: str, instance: WorkflowInstance, expected_version: int
) -> int:
    """Conditional UPDATE. Returns the new version."""
    new_version = expected_version + 1
    result = session.execute(
        update(WorkflowInstanceRecord)
        .where(WorkflowInstanceRecord.id == instance_id)
        .where(WorkflowInstanceRecord.version == expected_version)
        .values(version=new_version, **_columns(instance))
    )
    if result.rowcount == 0:
        current = session.execute(
            select(WorkflowInstanceRecord.version).where(WorkflowInstanceRecord.id == instance_id)
        ).scalar_one_or_none()
        if current is None:
            raise InstanceNotFoundError(instance_id)
        raise VersionConflictError(instance_id, expected_version, current)
    return new_version


def list_instance_ids(session: Session, status: Optional[InstanceStatus] = None) -> List[str]:
    stmt = select(WorkflowInstanceRecord.id).order_by(WorkflowInstanceRecord.created_at)
    if status is not None:
        stmt = stmt.where(WorkflowInstanceRecord.status == status.value)
    return list(session.execute(stmt).scalars())


class SqlInstanceStore:
    """``InstanceStore`` backed by SQLAlchemy.

    Safe across processes: the version check happens in the database, so
    two engines sharing a table cannot both commit against the same
    version.
    """

    def __init__(self, session_factory: Optional[Callable[[], Session]] = None):
        self._session_factory = session_factory or get_sync_session_factory()

    def create(self, instance: WorkflowInstance) -> int:
        with self._session_factory() as session:
            version = insert_instance(session, instance)
            session.commit()
        logger.debug("Inserted instance %s", instance.id)
        return version

    def load(self, instance_id: str) -> Tuple[WorkflowInstance, int]:
        with self._session_factory() as session:
            return load_instance(session, instance_id)

    def save(self, instance_id: str, instance: WorkflowInstance, expected_version: int) -> int:
        with self._session_factory() as session:
            try:
                version = update_instance(session, instance_id, instance, expected_version)
            except (VersionConflictError, InstanceNotFoundError):
                session.rollback()
                raise
            session.commit()
        logger.debug("Saved instance %s at version %d", instance_id, version)
        return version

    def list_ids(self, status: Optional[InstanceStatus] = None) -> List[str]:
        with self._session_factory() as session:
            return list_instance_ids(session, status)
