"""Tests specific to the SQLAlchemy store."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import TYPE_CHECKING

import numpy as np
import pytest
from conftest import similar_samples

from attendx.domain import AttendanceRecord, EnrollmentStatus, Identity, Template
from attendx.errors import ConflictError, UnknownIdentity
from attendx.store.sql import SqlStore

if TYPE_CHECKING:
    from collections.abc import Iterator

NOON = datetime(2026, 10, 19, 12, 0, tzinfo=UTC)


@pytest.fixture()
def sql_store() -> Iterator[SqlStore]:
    store = SqlStore.from_url("sqlite://")
    store.add_identity(Identity("U1", "User One"))
    yield store
    store.close()


class TestIdentities:
    def test_add_and_get(self, sql_store: SqlStore) -> None:
        identity = sql_store.get_identity("U1")
        assert identity == Identity("U1", "User One", EnrollmentStatus.UNENROLLED)
        assert sql_store.get_identity("nobody") is None

    def test_add_existing_updates_name(self, sql_store: SqlStore) -> None:
        updated = sql_store.add_identity(Identity("U1", "Renamed"))
        assert updated.display_name == "Renamed"
        assert sql_store.get_identity("U1") == updated


class TestTemplates:
    def test_round_trip_preserves_vectors(self, sql_store: SqlStore, rng: np.random.Generator) -> None:
        template = Template.from_samples("U1", similar_samples(rng), created_at=NOON)
        sql_store.atomic_replace("U1", template, None)

        loaded = sql_store.get("U1")
        assert loaded is not None
        assert loaded.version == 1
        assert loaded.created_at == NOON
        assert loaded.extractor_version == template.extractor_version
        for stored, original in zip(loaded.samples, template.samples, strict=True):
            np.testing.assert_array_equal(stored.values, original.values)
        np.testing.assert_array_equal(loaded.centroid.values, template.centroid.values)

    def test_replace_drops_old_samples(self, sql_store: SqlStore, rng: np.random.Generator) -> None:
        sql_store.atomic_replace("U1", Template.from_samples("U1", similar_samples(rng, count=7)), None)
        sql_store.atomic_replace("U1", Template.from_samples("U1", similar_samples(rng, count=5), version=2), 1)

        loaded = sql_store.get("U1")
        assert loaded is not None
        assert loaded.version == 2
        assert loaded.sample_count == 5

    def test_stale_update_leaves_template_untouched(self, sql_store: SqlStore, rng: np.random.Generator) -> None:
        original = Template.from_samples("U1", similar_samples(rng))
        sql_store.atomic_replace("U1", original, None)
        sql_store.atomic_replace("U1", Template.from_samples("U1", similar_samples(rng), version=2), 1)

        with pytest.raises(ConflictError) as exc_info:
            sql_store.atomic_replace("U1", Template.from_samples("U1", similar_samples(rng, count=9), version=2), 1)

        assert exc_info.value.expected_version == 1
        assert exc_info.value.actual_version == 2
        loaded = sql_store.get("U1")
        assert loaded is not None
        assert loaded.sample_count == 5

    def test_unknown_identity(self, sql_store: SqlStore, rng: np.random.Generator) -> None:
        with pytest.raises(UnknownIdentity):
            sql_store.atomic_replace("ghost", Template.from_samples("ghost", similar_samples(rng)), None)
        assert sql_store.get("ghost") is None


class TestLedger:
    def test_insert_if_absent_returns_holder_of_key(self, sql_store: SqlStore) -> None:
        first = AttendanceRecord(identity_id="U1", recorded_at=NOON, score=0.9)
        second = AttendanceRecord(identity_id="U1", recorded_at=NOON + timedelta(seconds=5), score=0.95)

        assert sql_store.insert_if_absent("U1", first, "2026-10-19").record_id == first.record_id
        stored = sql_store.insert_if_absent("U1", second, "2026-10-19")

        assert stored.record_id == first.record_id
        assert stored.cooldown_key == "2026-10-19"
        assert sql_store.count_records("U1") == 1

    def test_latest_is_most_recent(self, sql_store: SqlStore) -> None:
        for day in (18, 20, 19):
            record = AttendanceRecord(identity_id="U1", recorded_at=NOON.replace(day=day), score=0.9)
            sql_store.insert_if_absent("U1", record, f"2026-10-{day}")

        latest = sql_store.get_latest("U1")
        assert latest is not None
        assert latest.recorded_at == NOON.replace(day=20)
        assert latest.recorded_at.tzinfo is not None

    def test_unknown_identity(self, sql_store: SqlStore) -> None:
        with pytest.raises(UnknownIdentity):
            sql_store.insert_if_absent("ghost", AttendanceRecord(identity_id="ghost", recorded_at=NOON, score=0.9), "k")


class TestFileDatabase:
    def test_data_survives_reopen(self, tmp_path: Path, rng: np.random.Generator) -> None:
        url = f"sqlite:///{tmp_path / 'attendx.db'}"
        store = SqlStore.from_url(url)
        store.add_identity(Identity("U1", "User One"))
        store.atomic_replace("U1", Template.from_samples("U1", similar_samples(rng)), None)
        store.close()

        reopened = SqlStore.from_url(url)
        try:
            loaded = reopened.get("U1")
            assert loaded is not None
            assert loaded.sample_count == 5
            identity = reopened.get_identity("U1")
            assert identity is not None
            assert identity.status is EnrollmentStatus.ENROLLED
        finally:
            reopened.close()

    def test_only_shared_connection_is_serialized(self, tmp_path: Path, sql_store: SqlStore) -> None:
        file_store = SqlStore.from_url(f"sqlite:///{tmp_path / 'attendx.db'}")
        try:
            assert sql_store.serialized
            assert not file_store.serialized
        finally:
            file_store.close()
