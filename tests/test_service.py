"""End-to-end tests of the attendance service over every store backend."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING

import numpy as np
import pytest
from conftest import make_embedding, similar_samples

from attendx.config import Settings
from attendx.domain import EnrollmentStatus
from attendx.errors import IncompatibleEmbedding, NotEnrolled, UnknownIdentity
from attendx.matching.attendance import CooldownMode
from attendx.matching.matcher import Aggregation
from attendx.service import AttendanceService, create_store
from attendx.store.memory import MemoryStore
from attendx.store.sql import SqlStore

if TYPE_CHECKING:
    from attendx.store.base import Store

T0 = datetime(2026, 10, 19, 8, 30, tzinfo=UTC)


class TestScenario:
    def test_enroll_verify_dedupe_reject(
        self, service: AttendanceService, store: Store, rng: np.random.Generator
    ) -> None:
        samples = similar_samples(rng)
        for i, a in enumerate(samples):
            for b in samples[i + 1 :]:
                assert float(np.dot(a.unit, b.unit)) >= 0.9

        template = service.enroll("U1", samples, now=T0)
        assert template.sample_count == 5
        assert service.get_identity("U1").status is EnrollmentStatus.ENROLLED

        first = service.verify("U1", make_embedding(samples[0].values), now=T0 + timedelta(minutes=1))
        assert first.matched
        assert first.score == pytest.approx(1.0)
        assert first.attendance is not None
        assert first.attendance.created

        again = service.verify("U1", make_embedding(samples[0].values), now=T0 + timedelta(minutes=1, seconds=1))
        assert again.matched
        assert again.already_recorded
        assert again.attendance is not None
        assert again.attendance.record.record_id == first.attendance.record.record_id

        stranger = service.verify("U1", make_embedding(rng.normal(size=128)), now=T0 + timedelta(minutes=2))
        assert not stranger.matched
        assert stranger.attendance is None
        assert not stranger.already_recorded

        assert store.count_records("U1") == 1
        latest = service.latest_attendance("U1")
        assert latest is not None
        assert latest.record_id == first.attendance.record.record_id

    def test_rejected_attempt_leaves_no_record(self, service: AttendanceService, rng: np.random.Generator) -> None:
        service.enroll("U1", similar_samples(rng))
        outcome = service.verify("U1", make_embedding(rng.normal(size=128)))
        assert not outcome.matched
        assert service.latest_attendance("U1") is None

    def test_verify_after_reenrollment_uses_new_template(
        self, service: AttendanceService, rng: np.random.Generator
    ) -> None:
        old = similar_samples(rng)
        new = similar_samples(rng)
        service.enroll("U1", old)
        service.enroll("U1", new)

        assert not service.verify("U1", old[1], now=T0).matched
        assert service.verify("U1", new[1], now=T0).matched


class TestErrors:
    def test_unknown_identity(self, service: AttendanceService, rng: np.random.Generator) -> None:
        with pytest.raises(UnknownIdentity):
            service.verify("ghost", make_embedding(rng.normal(size=128)))
        with pytest.raises(UnknownIdentity):
            service.latest_attendance("ghost")

    def test_not_enrolled(self, service: AttendanceService, rng: np.random.Generator) -> None:
        with pytest.raises(NotEnrolled):
            service.verify("U1", make_embedding(rng.normal(size=128)))
        with pytest.raises(NotEnrolled):
            service.get_template("U1")

    def test_incompatible_candidate(self, service: AttendanceService, rng: np.random.Generator) -> None:
        service.enroll("U1", similar_samples(rng))
        with pytest.raises(IncompatibleEmbedding):
            service.verify("U1", make_embedding(rng.normal(size=128), extractor_version="other/v2"))


class TestProvisioning:
    def test_reprovision_keeps_status(self, service: AttendanceService, rng: np.random.Generator) -> None:
        service.enroll("U1", similar_samples(rng))
        identity = service.provision("U1", "Renamed")
        assert identity.display_name == "Renamed"
        assert identity.status is EnrollmentStatus.ENROLLED


class TestFromSettings:
    def test_policies_follow_settings(self) -> None:
        settings = Settings(
            match_threshold=0.9,
            match_aggregation="mean",
            min_samples=3,
            min_intra_sample_similarity=0.6,
            cooldown_mode="rolling",
            cooldown_seconds=120,
            timezone="Europe/Paris",
        )
        svc = AttendanceService.from_settings(settings, MemoryStore())
        assert svc.match_policy.threshold == 0.9
        assert svc.match_policy.aggregation is Aggregation.MEAN
        assert svc._enrollment.policy.min_samples == 3
        assert svc._recorder.policy.mode is CooldownMode.ROLLING
        assert svc._recorder.policy.duration == timedelta(seconds=120)

    def test_create_store_picks_backend(self) -> None:
        assert isinstance(create_store(Settings(database_url="")), MemoryStore)
        sql = create_store(Settings(database_url="sqlite://"))
        assert isinstance(sql, SqlStore)
        sql.close()
