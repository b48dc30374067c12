"""
Tables behind the SQL resource store.

All resource types share one logical table keyed by ``(resource_type,
resource_id)``; the domain payload lives in a JSON column (JSONB on
PostgreSQL). Store-owned metadata is kept in real columns so versioning can be
done with an atomic column update.
"""

import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    Column,
    DateTime,
    Index,
    Integer,
    String,
    UniqueConstraint,
)
from sqlalchemy.dialects.postgresql import JSONB

from prestrack.models.database import Base

JsonDocument = JSON().with_variant(JSONB(), "postgresql")
# SQLite only autoincrements INTEGER PRIMARY KEY
SequenceId = BigInteger().with_variant(Integer(), "sqlite")


# ---------------------------------------------------------------------------
# Resource – every FHIR-shaped document, partitioned by resource_type
# ---------------------------------------------------------------------------
class ResourceRecord(Base):
    __tablename__ = "fhir_resources"

    seq = Column(SequenceId, primary_key=True, autoincrement=True,
                 comment="Insertion order within the store")
    resource_type = Column(String(64), nullable=False)
    resource_id = Column(String(128), nullable=False)
    data = Column(JsonDocument, nullable=False, comment="Domain payload without id/meta")
    version_id = Column(Integer, nullable=False, default=1)
    last_updated = Column(DateTime(timezone=True), nullable=False)
    profile = Column(JsonDocument, nullable=False, default=list)

    __table_args__ = (
        UniqueConstraint("resource_type", "resource_id", name="uq_resource_key"),
        Index("ix_resource_type_seq", "resource_type", "seq"),
    )


# ---------------------------------------------------------------------------
# Active flag index – at most one active Flag per (subject, condition)
# ---------------------------------------------------------------------------
class ActiveFlag(Base):
    __tablename__ = "active_flags"

    subject_reference = Column(String(256), primary_key=True)
    condition_code = Column(String(64), primary_key=True)
    flag_id = Column(
        String(128),
        nullable=False,
        unique=True,
        comment="resource_id of the Flag row holding this condition",
    )


# ---------------------------------------------------------------------------
# Audit Log – one row per authorization decision
# ---------------------------------------------------------------------------
class AuditLog(Base):
    __tablename__ = "audit_log"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    actor = Column(String(128), nullable=False, comment="Principal identity id")
    role = Column(String(32), nullable=False)
    action = Column(String(64), nullable=False, comment="create | read | update | delete | search | stats | mark-read")
    resource_type = Column(String(64), nullable=False)
    resource_id = Column(String(128), nullable=True)
    allowed = Column(Boolean, nullable=False)
    detail = Column(JsonDocument, comment="Denial reason or search scope")
    timestamp = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc),
                       nullable=False)

    __table_args__ = (Index("ix_audit_timestamp", "timestamp"),)
