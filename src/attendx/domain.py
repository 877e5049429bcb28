"""Domain types: embeddings, identities, templates and attendance records."""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from functools import cached_property
from typing import TYPE_CHECKING

import numpy as np

from attendx.errors import IncompatibleEmbedding, InvalidEmbedding

if TYPE_CHECKING:
    from collections.abc import Sequence

    from numpy.typing import ArrayLike, NDArray


@dataclass(frozen=True, eq=False)
class Embedding:
    """A face embedding tagged with the extractor that produced it.

    Values are copied into a read-only float64 vector. Empty, non-finite and
    zero-norm vectors are rejected because cosine similarity is undefined
    for them.
    """

    values: NDArray[np.float64]
    extractor_version: str

    def __post_init__(self) -> None:
        try:
            arr = np.array(self.values, dtype=np.float64)
        except (TypeError, ValueError) as exc:
            raise InvalidEmbedding(f"Embedding values are not numeric: {exc}", field="values") from None
        if arr.ndim != 1 or arr.size == 0:
            raise InvalidEmbedding("Embedding must be a non-empty 1-D vector", field="values")
        if not np.all(np.isfinite(arr)):
            raise InvalidEmbedding("Embedding contains NaN or infinite values", field="values")
        if not np.any(arr):
            raise InvalidEmbedding("Embedding has zero norm", field="values")
        if not self.extractor_version:
            raise InvalidEmbedding("Embedding has no extractor version", field="extractor_version")
        arr.setflags(write=False)
        object.__setattr__(self, "values", arr)

    @classmethod
    def from_values(cls, values: ArrayLike, extractor_version: str) -> Embedding:
        return cls(values=np.asarray(values), extractor_version=extractor_version)

    @property
    def dimensionality(self) -> int:
        return int(self.values.shape[0])

    @cached_property
    def unit(self) -> NDArray[np.float64]:
        """L2-normalized copy of the values."""
        unit = self.values / np.linalg.norm(self.values)
        unit.setflags(write=False)
        return unit

    def tolist(self) -> list[float]:
        return [float(v) for v in self.values]

    def ensure_compatible(self, other: Embedding, *, index: int | None = None) -> None:
        """Raise IncompatibleEmbedding unless ``other`` can be compared with this embedding."""
        if other.extractor_version != self.extractor_version:
            raise IncompatibleEmbedding(
                f"Extractor version mismatch: {other.extractor_version!r} vs {self.extractor_version!r}",
                field="extractor_version",
                expected=self.extractor_version,
                actual=other.extractor_version,
                index=index,
            )
        if other.dimensionality != self.dimensionality:
            raise IncompatibleEmbedding(
                f"Dimensionality mismatch: {other.dimensionality} vs {self.dimensionality}",
                field="dimensionality",
                expected=self.dimensionality,
                actual=other.dimensionality,
                index=index,
            )


def mean_embedding(samples: Sequence[Embedding]) -> Embedding:
    """Centroid of the unit-normalized samples."""
    if not samples:
        raise InvalidEmbedding("Cannot average an empty set of embeddings", field="samples")
    stacked = np.stack([s.unit for s in samples])
    return Embedding(values=stacked.mean(axis=0), extractor_version=samples[0].extractor_version)


class EnrollmentStatus(StrEnum):
    UNENROLLED = "unenrolled"
    ENROLLED = "enrolled"


@dataclass(frozen=True)
class Identity:
    identity_id: str
    display_name: str
    status: EnrollmentStatus = EnrollmentStatus.UNENROLLED


@dataclass(frozen=True, eq=False)
class Template:
    """Enrolled representation of one identity.

    Replaced wholesale on re-enrollment; ``version`` increases by one per
    committed enrollment and is what stores compare-and-swap on.
    """

    identity_id: str
    samples: tuple[Embedding, ...]
    centroid: Embedding
    created_at: datetime
    version: int = 1

    def __post_init__(self) -> None:
        if not self.samples:
            raise InvalidEmbedding("Template needs at least one sample", field="samples")
        for i, sample in enumerate(self.samples):
            self.centroid.ensure_compatible(sample, index=i)

    @classmethod
    def from_samples(
        cls,
        identity_id: str,
        samples: Sequence[Embedding],
        *,
        created_at: datetime | None = None,
        version: int = 1,
    ) -> Template:
        return cls(
            identity_id=identity_id,
            samples=tuple(samples),
            centroid=mean_embedding(samples),
            created_at=created_at or datetime.now(UTC),
            version=version,
        )

    @property
    def sample_count(self) -> int:
        return len(self.samples)

    @property
    def extractor_version(self) -> str:
        return self.centroid.extractor_version

    @property
    def dimensionality(self) -> int:
        return self.centroid.dimensionality

    @cached_property
    def sample_matrix(self) -> NDArray[np.float64]:
        """Unit sample vectors stacked row-wise, shape (sample_count, dimensionality)."""
        matrix = np.stack([s.unit for s in self.samples])
        matrix.setflags(write=False)
        return matrix


def _new_record_id() -> str:
    return uuid.uuid4().hex


@dataclass(frozen=True)
class AttendanceRecord:
    """Identity X was present at ``recorded_at`` with confidence ``score``."""

    identity_id: str
    recorded_at: datetime
    score: float
    cooldown_key: str = ""
    record_id: str = field(default_factory=_new_record_id)
