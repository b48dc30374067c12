"""
SQLAlchemy-backed resource store.

Each operation runs in its own short transaction so that writes made by the
alerting pipeline (Flags, Communications) commit independently of the
Observation that triggered them.
"""

from __future__ import annotations

import logging
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Iterator

from sqlalchemy import delete, func, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from prestrack.errors import ConflictError, NotFoundError
from prestrack.models.database import SessionLocal
from prestrack.models.resource import ActiveFlag, ResourceRecord
from prestrack.search.translator import FieldFilter, translate
from prestrack.store.base import (
    ResourceStore,
    active_flag_key,
    assemble,
    default_profile,
    ensure_resource_type,
    new_resource_id,
    next_timestamp,
    split_payload,
)

logger = logging.getLogger(__name__)


def _aware(value: datetime) -> datetime:
    # SQLite drops tzinfo on the way back
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


def _to_resource(record: ResourceRecord) -> dict[str, Any]:
    return assemble(
        record.resource_type,
        record.resource_id,
        record.data,
        record.version_id,
        _aware(record.last_updated),
        record.profile or [],
    )


def _payload_field(path: tuple[str, ...]):
    if path == ("id",):
        return ResourceRecord.resource_id
    # a tuple index compiles to a JSON path (#>> on PostgreSQL, JSON_EXTRACT on SQLite)
    return ResourceRecord.data[path[0] if len(path) == 1 else path].as_string()


def _filter_clause(pre_filter: FieldFilter):
    column = _payload_field(pre_filter.path)
    return or_(
        column.in_(pre_filter.values),
        *(column.like(f"%{suffix}") for suffix in pre_filter.suffixes),
    )


def _sync_active_flag(
    db: Session,
    flag_id: str,
    key: tuple[str, str] | None,
    previous: tuple[str, str] | None,
) -> None:
    if key == previous:
        return
    if previous is not None:
        db.execute(delete(ActiveFlag).where(ActiveFlag.flag_id == flag_id))
    if key is not None:
        db.add(ActiveFlag(subject_reference=key[0], condition_code=key[1], flag_id=flag_id))
    db.flush()


class SqlResourceStore(ResourceStore):
    def __init__(self, session_factory: sessionmaker = SessionLocal):
        self.session_factory = session_factory

    @contextmanager
    def _transaction(self) -> Iterator[Session]:
        with self.session_factory() as db, db.begin():
            yield db

    def _locked(self, db: Session, resource_type: str, resource_id: str) -> ResourceRecord:
        record = db.scalars(
            select(ResourceRecord)
            .where(
                ResourceRecord.resource_type == resource_type,
                ResourceRecord.resource_id == resource_id,
            )
            .with_for_update()
        ).first()
        if record is None:
            raise NotFoundError.for_resource(resource_type, resource_id)
        return record

    def create(self, resource_type: str, payload: dict[str, Any]) -> dict[str, Any]:
        ensure_resource_type(resource_type)
        body, profile = split_payload(payload)
        resource_id = payload.get("id") or new_resource_id(resource_type)

        try:
            with self._transaction() as db:
                record = ResourceRecord(
                    resource_type=resource_type,
                    resource_id=resource_id,
                    data=body,
                    version_id=1,
                    last_updated=next_timestamp(None),
                    profile=profile or default_profile(resource_type),
                )
                db.add(record)
                db.flush()
                _sync_active_flag(db, resource_id, active_flag_key(resource_type, body), None)
                created = _to_resource(record)
        except IntegrityError as exc:
            raise ConflictError(
                f"{resource_type}/{resource_id} conflicts with an existing resource or active flag"
            ) from exc

        logger.info("Created %s/%s", resource_type, resource_id)
        return created

    def read(self, resource_type: str, resource_id: str) -> dict[str, Any]:
        ensure_resource_type(resource_type)
        with self.session_factory() as db:
            record = db.scalars(
                select(ResourceRecord).where(
                    ResourceRecord.resource_type == resource_type,
                    ResourceRecord.resource_id == resource_id,
                )
            ).first()
            if record is None:
                raise NotFoundError.for_resource(resource_type, resource_id)
            return _to_resource(record)

    def update(
        self, resource_type: str, resource_id: str, payload: dict[str, Any]
    ) -> dict[str, Any]:
        ensure_resource_type(resource_type)
        body, profile = split_payload(payload)

        try:
            with self._transaction() as db:
                record = self._locked(db, resource_type, resource_id)
                previous_key = active_flag_key(resource_type, record.data)
                db.execute(
                    update(ResourceRecord)
                    .where(ResourceRecord.seq == record.seq)
                    .values(
                        data=body,
                        version_id=ResourceRecord.version_id + 1,
                        last_updated=next_timestamp(_aware(record.last_updated)),
                        profile=profile or record.profile,
                    )
                    .execution_options(synchronize_session=False)
                )
                db.refresh(record)
                _sync_active_flag(
                    db, resource_id, active_flag_key(resource_type, body), previous_key
                )
                updated = _to_resource(record)
        except IntegrityError as exc:
            raise ConflictError(
                f"{resource_type}/{resource_id} conflicts with an existing active flag"
            ) from exc

        logger.info("Updated %s/%s to version %d", resource_type, resource_id,
                    updated["meta"]["versionId"])
        return updated

    def delete(self, resource_type: str, resource_id: str) -> None:
        ensure_resource_type(resource_type)
        with self._transaction() as db:
            record = self._locked(db, resource_type, resource_id)
            _sync_active_flag(db, resource_id, None, active_flag_key(resource_type, record.data))
            db.delete(record)
        logger.info("Deleted %s/%s", resource_type, resource_id)

    def search(
        self, resource_type: str, params: dict[str, str] | None = None
    ) -> list[dict[str, Any]]:
        ensure_resource_type(resource_type)
        query = translate(resource_type, params or {})
        statement = (
            select(ResourceRecord)
            .where(
                ResourceRecord.resource_type == resource_type,
                *(_filter_clause(f) for f in query.filters),
            )
            .order_by(ResourceRecord.seq)
        )
        if query.native_limit is not None:
            statement = statement.limit(query.native_limit)
        with self.session_factory() as db:
            records = db.scalars(statement).all()
            documents = [_to_resource(record) for record in records]
        results = query.apply(documents)
        logger.debug("Found %d %s resources", len(results), resource_type)
        return results

    def stats(self) -> dict[str, int]:
        with self.session_factory() as db:
            rows = db.execute(
                select(ResourceRecord.resource_type, func.count())
                .group_by(ResourceRecord.resource_type)
                .order_by(ResourceRecord.resource_type)
            ).all()
        return {resource_type: count for resource_type, count in rows}

    def clear(self) -> None:
        with self._transaction() as db:
            db.execute(delete(ActiveFlag))
            db.execute(delete(ResourceRecord))
        logger.info("Cleared all resources")
