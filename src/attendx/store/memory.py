"""In-process store guarded by per-identity locks."""

from __future__ import annotations

import dataclasses
import logging
import threading
from collections import defaultdict
from typing import TYPE_CHECKING

from attendx.domain import EnrollmentStatus
from attendx.errors import ConflictError, UnknownIdentity

if TYPE_CHECKING:
    from attendx.domain import AttendanceRecord, Identity, Template

logger = logging.getLogger(__name__)


class MemoryStore:
    """Identities, templates and attendance records held in dictionaries.

    Operations on different identities only contend on ``_registry_lock``
    long enough to look up the identity's own lock.
    """

    def __init__(self) -> None:
        self._registry_lock = threading.Lock()
        self._identity_locks: dict[str, threading.Lock] = {}
        self._identities: dict[str, Identity] = {}
        self._templates: dict[str, Template] = {}
        self._records: dict[str, list[AttendanceRecord]] = defaultdict(list)
        self._keys: dict[tuple[str, str], AttendanceRecord] = {}

    def _lock_for(self, identity_id: str) -> threading.Lock:
        with self._registry_lock:
            lock = self._identity_locks.get(identity_id)
            if lock is None:
                lock = self._identity_locks[identity_id] = threading.Lock()
            return lock

    # -- IdentityDirectory --------------------------------------------------

    def add_identity(self, identity: Identity) -> Identity:
        with self._lock_for(identity.identity_id):
            existing = self._identities.get(identity.identity_id)
            if existing is not None:
                identity = dataclasses.replace(existing, display_name=identity.display_name)
            self._identities[identity.identity_id] = identity
            return identity

    def get_identity(self, identity_id: str) -> Identity | None:
        return self._identities.get(identity_id)

    # -- TemplateStore ------------------------------------------------------

    def get(self, identity_id: str) -> Template | None:
        return self._templates.get(identity_id)

    def atomic_replace(self, identity_id: str, template: Template, expected_prior_version: int | None) -> None:
        with self._lock_for(identity_id):
            identity = self._identities.get(identity_id)
            if identity is None:
                raise UnknownIdentity(identity_id)

            current = self._templates.get(identity_id)
            current_version = current.version if current is not None else None
            if current_version != expected_prior_version:
                raise ConflictError(identity_id, expected_prior_version, current_version)

            self._templates[identity_id] = template
            self._identities[identity_id] = dataclasses.replace(identity, status=EnrollmentStatus.ENROLLED)
            logger.debug("Stored template v%s for %s", template.version, identity_id)

    # -- AttendanceLedger ---------------------------------------------------

    def get_latest(self, identity_id: str) -> AttendanceRecord | None:
        with self._lock_for(identity_id):
            records = self._records.get(identity_id)
            if not records:
                return None
            return max(records, key=lambda r: r.recorded_at)

    def insert_if_absent(self, identity_id: str, record: AttendanceRecord, cooldown_key: str) -> AttendanceRecord:
        with self._lock_for(identity_id):
            existing = self._keys.get((identity_id, cooldown_key))
            if existing is not None:
                return existing
            stored = dataclasses.replace(record, identity_id=identity_id, cooldown_key=cooldown_key)
            self._keys[(identity_id, cooldown_key)] = stored
            self._records[identity_id].append(stored)
            return stored

    def count_records(self, identity_id: str) -> int:
        with self._lock_for(identity_id):
            return len(self._records.get(identity_id, ()))

    def close(self) -> None:
        with self._registry_lock:
            self._templates.clear()
            self._records.clear()
            self._keys.clear()
