"""
Single-process resource store.

Used for tests and seeding. It is a faithful stand-in for the SQL store, not a
cache: same id assignment, same versioning, same active-flag constraint.
"""

from __future__ import annotations

import logging
import threading
from contextlib import nullcontext
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from prestrack.errors import ConflictError, NotFoundError
from prestrack.search.translator import translate
from prestrack.store.base import (
    RESOURCE_TYPES,
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

# writers to one resource share a stripe; unrelated keys rarely collide
KEY_LOCK_STRIPES = 64


@dataclass
class _Entry:
    body: dict[str, Any]
    version_id: int
    last_updated: datetime
    profile: list[str]


class InMemoryResourceStore(ResourceStore):
    def __init__(self) -> None:
        # insertion-ordered partitions
        self._partitions: dict[str, dict[str, _Entry]] = {t: {} for t in RESOURCE_TYPES}
        self._partition_lock = threading.Lock()
        self._key_locks = tuple(threading.Lock() for _ in range(KEY_LOCK_STRIPES))
        # (subject, condition code) -> flag id
        self._active_flags: dict[tuple[str, str], str] = {}
        self._flag_lock = threading.Lock()

    def _lock_for(self, resource_type: str, resource_id: str) -> threading.Lock:
        return self._key_locks[hash((resource_type, resource_id)) % len(self._key_locks)]

    def _flag_guard(self, resource_type: str):
        # only Flag writes touch the active-flag index
        return self._flag_lock if resource_type == "Flag" else nullcontext()

    def _entry(self, resource_type: str, resource_id: str) -> _Entry:
        entry = self._partitions[resource_type].get(resource_id)
        if entry is None:
            raise NotFoundError.for_resource(resource_type, resource_id)
        return entry

    def _claim_flag(
        self, key: tuple[str, str] | None, flag_id: str, previous: tuple[str, str] | None
    ) -> None:
        """Move the active-flag index entry for ``flag_id``; caller holds _flag_lock."""
        if key is not None:
            holder = self._active_flags.get(key)
            if holder is not None and holder != flag_id:
                raise ConflictError(
                    f"Active flag {key[1]} already exists for {key[0]} (Flag/{holder})"
                )
        if previous is not None and self._active_flags.get(previous) == flag_id:
            del self._active_flags[previous]
        if key is not None:
            self._active_flags[key] = flag_id

    def create(self, resource_type: str, payload: dict[str, Any]) -> dict[str, Any]:
        ensure_resource_type(resource_type)
        body, profile = split_payload(payload)
        resource_id = payload.get("id") or new_resource_id(resource_type)

        with self._lock_for(resource_type, resource_id), self._flag_guard(resource_type):
            if resource_id in self._partitions[resource_type]:
                raise ConflictError(f"{resource_type}/{resource_id} already exists")
            self._claim_flag(active_flag_key(resource_type, body), resource_id, None)
            entry = _Entry(
                body=body,
                version_id=1,
                last_updated=next_timestamp(None),
                profile=profile or default_profile(resource_type),
            )
            with self._partition_lock:
                self._partitions[resource_type][resource_id] = entry

        logger.info("Created %s/%s", resource_type, resource_id)
        return assemble(resource_type, resource_id, entry.body, entry.version_id,
                        entry.last_updated, entry.profile)

    def read(self, resource_type: str, resource_id: str) -> dict[str, Any]:
        ensure_resource_type(resource_type)
        entry = self._entry(resource_type, resource_id)
        return assemble(resource_type, resource_id, entry.body, entry.version_id,
                        entry.last_updated, entry.profile)

    def update(
        self, resource_type: str, resource_id: str, payload: dict[str, Any]
    ) -> dict[str, Any]:
        ensure_resource_type(resource_type)
        body, profile = split_payload(payload)

        with self._lock_for(resource_type, resource_id), self._flag_guard(resource_type):
            current = self._entry(resource_type, resource_id)
            self._claim_flag(
                active_flag_key(resource_type, body),
                resource_id,
                active_flag_key(resource_type, current.body),
            )
            entry = _Entry(
                body=body,
                version_id=current.version_id + 1,
                last_updated=next_timestamp(current.last_updated),
                profile=profile or current.profile,
            )
            with self._partition_lock:
                self._partitions[resource_type][resource_id] = entry

        logger.info("Updated %s/%s to version %d", resource_type, resource_id, entry.version_id)
        return assemble(resource_type, resource_id, entry.body, entry.version_id,
                        entry.last_updated, entry.profile)

    def delete(self, resource_type: str, resource_id: str) -> None:
        ensure_resource_type(resource_type)
        with self._lock_for(resource_type, resource_id), self._flag_guard(resource_type):
            current = self._entry(resource_type, resource_id)
            self._claim_flag(None, resource_id, active_flag_key(resource_type, current.body))
            with self._partition_lock:
                del self._partitions[resource_type][resource_id]
        logger.info("Deleted %s/%s", resource_type, resource_id)

    def search(
        self, resource_type: str, params: dict[str, str] | None = None
    ) -> list[dict[str, Any]]:
        ensure_resource_type(resource_type)
        query = translate(resource_type, params or {})
        with self._partition_lock:
            snapshot = list(self._partitions[resource_type].items())
        documents = [
            assemble(resource_type, rid, e.body, e.version_id, e.last_updated, e.profile)
            for rid, e in snapshot
        ]
        results = query.apply(documents)
        logger.debug("Found %d %s resources", len(results), resource_type)
        return results

    def stats(self) -> dict[str, int]:
        with self._partition_lock:
            return {
                resource_type: len(partition)
                for resource_type, partition in sorted(self._partitions.items())
                if partition
            }

    def clear(self) -> None:
        with self._flag_lock, self._partition_lock:
            for partition in self._partitions.values():
                partition.clear()
            self._active_flags.clear()
        logger.info("Cleared all resources")
