"""Attendance recording with per-identity cooldown.

Two cooldown modes are supported:

``calendar_day``
    At most one record per identity per local calendar day. The cooldown key
    is the local date, e.g. ``2026-10-19``.

``rolling``
    A new record only once ``duration`` has elapsed since the latest one. The
    cooldown key names the record it follows (``after:<record_id>``, or
    ``first``), so attempts that read the same latest record compete for the
    same key and the ledger's uniqueness check lets exactly one through.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from enum import StrEnum
from typing import TYPE_CHECKING
from zoneinfo import ZoneInfo

from attendx.domain import AttendanceRecord
from attendx.errors import DecisionNotAccepted

if TYPE_CHECKING:
    from attendx.config import Settings
    from attendx.matching.matcher import MatchResult
    from attendx.store.base import AttendanceLedger

logger = logging.getLogger(__name__)


class CooldownMode(StrEnum):
    CALENDAR_DAY = "calendar_day"
    ROLLING = "rolling"


@dataclass(frozen=True)
class CooldownPolicy:
    mode: CooldownMode = CooldownMode.CALENDAR_DAY
    duration: timedelta = timedelta(hours=1)
    timezone: str = "UTC"

    def __post_init__(self) -> None:
        object.__setattr__(self, "mode", CooldownMode(self.mode))
        if self.duration <= timedelta(0):
            raise ValueError(f"duration must be positive, got {self.duration}")
        # Fail fast on unknown zone names.
        ZoneInfo(self.timezone)

    @classmethod
    def from_settings(cls, settings: Settings) -> CooldownPolicy:
        return cls(
            mode=CooldownMode(settings.cooldown_mode),
            duration=timedelta(seconds=settings.cooldown_seconds),
            timezone=settings.timezone,
        )

    @property
    def tz(self) -> ZoneInfo:
        return ZoneInfo(self.timezone)

    def local_day(self, moment: datetime) -> str:
        return moment.astimezone(self.tz).date().isoformat()

    def is_cooling_down(self, last: datetime, now: datetime) -> bool:
        """True if a record made at ``last`` still blocks a new one at ``now``."""
        if self.mode is CooldownMode.CALENDAR_DAY:
            return self.local_day(last) == self.local_day(now)
        return now - last < self.duration

    def key_for(self, now: datetime, latest: AttendanceRecord | None) -> str:
        if self.mode is CooldownMode.CALENDAR_DAY:
            return self.local_day(now)
        return f"after:{latest.record_id}" if latest is not None else "first"


@dataclass(frozen=True)
class RecordOutcome:
    """The record now on file and whether this call created it."""

    record: AttendanceRecord
    created: bool

    @property
    def already_recorded(self) -> bool:
        return not self.created


def _aware(moment: datetime) -> datetime:
    return moment if moment.tzinfo is not None else moment.replace(tzinfo=UTC)


class AttendanceRecorder:
    """Converts accepted match decisions into idempotent attendance records."""

    def __init__(self, ledger: AttendanceLedger, policy: CooldownPolicy | None = None) -> None:
        self._ledger = ledger
        self._policy = policy or CooldownPolicy()

    @property
    def policy(self) -> CooldownPolicy:
        return self._policy

    def record_if_absent(
        self,
        identity_id: str,
        decision: MatchResult,
        now: datetime,
        policy: CooldownPolicy | None = None,
    ) -> RecordOutcome:
        """Record attendance unless the identity is still inside its cooldown window.

        A duplicate within the window is a successful outcome that returns the
        existing record with ``created=False``.

        Raises:
            DecisionNotAccepted: ``decision.accepted`` is False.
        """
        if not decision.accepted:
            raise DecisionNotAccepted("Attendance can only be recorded for an accepted match", field="decision")
        policy = policy or self._policy
        now = _aware(now)

        latest = self._ledger.get_latest(identity_id)
        if latest is not None and policy.is_cooling_down(latest.recorded_at, now):
            logger.info("Attendance for %s already recorded at %s", identity_id, latest.recorded_at.isoformat())
            return RecordOutcome(record=latest, created=False)

        key = policy.key_for(now, latest)
        candidate = AttendanceRecord(identity_id=identity_id, recorded_at=now, score=decision.score, cooldown_key=key)
        stored = self._ledger.insert_if_absent(identity_id, candidate, key)
        created = stored.record_id == candidate.record_id
        if created:
            logger.info("Recorded attendance for %s (score=%.3f, key=%s)", identity_id, decision.score, key)
        else:
            logger.info("Attendance for %s raced; keeping record %s", identity_id, stored.record_id)
        return RecordOutcome(record=stored, created=created)
