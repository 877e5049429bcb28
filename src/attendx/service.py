"""Per-request facade over enrollment, matching and attendance recording.

All identity and time context is passed in explicitly; the service holds
only its policies and the store.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import TYPE_CHECKING

from attendx.domain import Identity
from attendx.errors import NotEnrolled, UnknownIdentity
from attendx.matching.attendance import AttendanceRecorder, CooldownPolicy, RecordOutcome
from attendx.matching.enrollment import EnrollmentCoordinator, EnrollPolicy
from attendx.matching.matcher import MatchPolicy, MatchResult, match
from attendx.store.memory import MemoryStore
from attendx.store.sql import SqlStore

if TYPE_CHECKING:
    from collections.abc import Sequence

    from attendx.config import Settings
    from attendx.domain import AttendanceRecord, Embedding, Template
    from attendx.store.base import Store

logger = logging.getLogger(__name__)


def create_store(settings: Settings) -> Store:
    """Open the configured backend; an empty database URL means in-memory."""
    if not settings.database_url:
        logger.info("Using in-memory store")
        return MemoryStore()
    logger.info("Using SQL store (%s)", settings.database_url.split("://", 1)[0])
    return SqlStore.from_url(settings.database_url)


@dataclass(frozen=True)
class VerificationAttempt:
    """One live sample scored against one identity. Logged, never stored."""

    identity_id: str
    candidate: Embedding
    result: MatchResult
    attempted_at: datetime


@dataclass(frozen=True)
class VerificationOutcome:
    attempt: VerificationAttempt
    attendance: RecordOutcome | None

    @property
    def matched(self) -> bool:
        return self.attempt.result.accepted

    @property
    def score(self) -> float:
        return self.attempt.result.score

    @property
    def already_recorded(self) -> bool:
        return self.attendance is not None and self.attendance.already_recorded


class AttendanceService:
    def __init__(
        self,
        store: Store,
        *,
        match_policy: MatchPolicy | None = None,
        enroll_policy: EnrollPolicy | None = None,
        cooldown_policy: CooldownPolicy | None = None,
    ) -> None:
        self._store = store
        self.match_policy = match_policy or MatchPolicy()
        self._enrollment = EnrollmentCoordinator(store, store, enroll_policy)
        self._recorder = AttendanceRecorder(store, cooldown_policy)

    @classmethod
    def from_settings(cls, settings: Settings, store: Store) -> AttendanceService:
        return cls(
            store,
            match_policy=MatchPolicy.from_settings(settings),
            enroll_policy=EnrollPolicy.from_settings(settings),
            cooldown_policy=CooldownPolicy.from_settings(settings),
        )

    @property
    def store(self) -> Store:
        return self._store

    def provision(self, identity_id: str, display_name: str) -> Identity:
        identity = self._store.add_identity(Identity(identity_id=identity_id, display_name=display_name))
        logger.info("Provisioned identity %s (%s)", identity_id, identity.status)
        return identity

    def get_identity(self, identity_id: str) -> Identity:
        identity = self._store.get_identity(identity_id)
        if identity is None:
            raise UnknownIdentity(identity_id)
        return identity

    def get_template(self, identity_id: str) -> Template:
        self.get_identity(identity_id)
        template = self._store.get(identity_id)
        if template is None:
            raise NotEnrolled(identity_id)
        return template

    def latest_attendance(self, identity_id: str) -> AttendanceRecord | None:
        self.get_identity(identity_id)
        return self._store.get_latest(identity_id)

    def enroll(self, identity_id: str, samples: Sequence[Embedding], *, now: datetime | None = None) -> Template:
        return self._enrollment.enroll(identity_id, samples, now=now)

    def verify(self, identity_id: str, candidate: Embedding, *, now: datetime | None = None) -> VerificationOutcome:
        """Match ``candidate`` against the identity's template and record attendance on acceptance.

        Raises:
            UnknownIdentity: The identity was never provisioned.
            NotEnrolled: The identity has no template.
            IncompatibleEmbedding: ``candidate`` does not fit the template.
        """
        now = now or datetime.now(UTC)
        template = self.get_template(identity_id)
        result = match(candidate, template, self.match_policy)
        attempt = VerificationAttempt(identity_id=identity_id, candidate=candidate, result=result, attempted_at=now)
        logger.info(
            "Verification for %s: score=%.3f threshold=%.2f accepted=%s (template v%d)",
            identity_id,
            result.score,
            self.match_policy.threshold,
            result.accepted,
            template.version,
        )
        if not result.accepted:
            return VerificationOutcome(attempt=attempt, attendance=None)
        outcome = self._recorder.record_if_absent(identity_id, result, now)
        return VerificationOutcome(attempt=attempt, attendance=outcome)

    def close(self) -> None:
        self._store.close()
