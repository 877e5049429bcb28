"""Enrollment: quality-gate a batch of samples and commit one template."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import TYPE_CHECKING

import numpy as np

from attendx.domain import Template
from attendx.errors import ConflictError, InsufficientSamples, LowQualitySample, UnknownIdentity
from attendx.matching.matcher import cosine_to_score

if TYPE_CHECKING:
    from collections.abc import Sequence

    from attendx.config import Settings
    from attendx.domain import Embedding
    from attendx.store.base import IdentityDirectory, TemplateStore

logger = logging.getLogger(__name__)

DEFAULT_MIN_SAMPLES: int = 5
DEFAULT_MIN_INTRA_SAMPLE_SIMILARITY: float = 0.75


@dataclass(frozen=True)
class EnrollPolicy:
    min_samples: int = DEFAULT_MIN_SAMPLES
    min_intra_sample_similarity: float = DEFAULT_MIN_INTRA_SAMPLE_SIMILARITY

    def __post_init__(self) -> None:
        if self.min_samples < 1:
            raise ValueError(f"min_samples must be at least 1, got {self.min_samples}")
        if not 0.0 <= self.min_intra_sample_similarity <= 1.0:
            raise ValueError(
                f"min_intra_sample_similarity must be within [0, 1], got {self.min_intra_sample_similarity}"
            )

    @classmethod
    def from_settings(cls, settings: Settings) -> EnrollPolicy:
        return cls(
            min_samples=settings.min_samples,
            min_intra_sample_similarity=settings.min_intra_sample_similarity,
        )


@dataclass(frozen=True)
class SampleAssessment:
    """Outcome of the consistency check for one enrollment sample.

    ``similarity`` is the score against the centroid of the samples accepted
    before it; the first sample seeds the centroid and scores 1.0.
    """

    index: int
    similarity: float
    accepted: bool


def assess_samples(samples: Sequence[Embedding], policy: EnrollPolicy) -> list[SampleAssessment]:
    """Run the running-centroid consistency check over every sample.

    Rejected samples never enter the centroid, so they do not affect how
    the samples after them are judged.

    Raises:
        InsufficientSamples: Fewer samples than ``policy.min_samples``.
        IncompatibleEmbedding: A sample differs from sample 0 in dimensionality
            or extractor version.
    """
    if len(samples) < policy.min_samples:
        raise InsufficientSamples(received=len(samples), required=policy.min_samples)

    first = samples[0]
    for i, sample in enumerate(samples[1:], start=1):
        first.ensure_compatible(sample, index=i)

    assessments = [SampleAssessment(index=0, similarity=1.0, accepted=True)]
    # Sum of accepted unit vectors; same direction as their centroid.
    running = np.array(first.unit, dtype=np.float64)

    for i, sample in enumerate(samples[1:], start=1):
        norm = float(np.linalg.norm(running))
        cosine = float(np.dot(running, sample.unit)) / norm if norm else 0.0
        score = cosine_to_score(cosine)
        ok = score >= policy.min_intra_sample_similarity
        assessments.append(SampleAssessment(index=i, similarity=score, accepted=ok))
        if ok:
            running += sample.unit
        else:
            logger.info(
                "Enrollment sample %d rejected (similarity %.3f < %.3f)", i, score, policy.min_intra_sample_similarity
            )
    return assessments


class EnrollmentCoordinator:
    """Turns an ordered batch of samples into a committed template."""

    def __init__(
        self, directory: IdentityDirectory, templates: TemplateStore, policy: EnrollPolicy | None = None
    ) -> None:
        self._directory = directory
        self._templates = templates
        self._policy = policy or EnrollPolicy()

    @property
    def policy(self) -> EnrollPolicy:
        return self._policy

    def enroll(
        self,
        identity_id: str,
        samples: Sequence[Embedding],
        policy: EnrollPolicy | None = None,
        *,
        now: datetime | None = None,
    ) -> Template:
        """Gate ``samples`` and atomically replace the identity's template.

        The previous template, if any, stays in place until the new one
        commits. A concurrent enrollment detected at commit time triggers one
        retry against the freshly read version.

        Raises:
            UnknownIdentity: The identity was never provisioned.
            InsufficientSamples: Too few samples.
            IncompatibleEmbedding: Samples disagree on dimensionality or extractor.
            LowQualitySample: At least one sample failed the consistency check.
            ConflictError: The template changed concurrently twice in a row.
        """
        policy = policy or self._policy
        if self._directory.get_identity(identity_id) is None:
            raise UnknownIdentity(identity_id)

        assessments = assess_samples(samples, policy)
        rejected = [a for a in assessments if not a.accepted]
        if rejected:
            raise LowQualitySample(index=rejected[0].index, assessments=assessments)

        created_at = now or datetime.now(UTC)
        try:
            template = self._commit(identity_id, samples, created_at)
        except ConflictError:
            logger.warning("Concurrent enrollment for %s, retrying once", identity_id)
            template = self._commit(identity_id, samples, created_at)

        logger.info(
            "Enrolled %s: template v%d with %d samples (%s, dim=%d)",
            identity_id,
            template.version,
            template.sample_count,
            template.extractor_version,
            template.dimensionality,
        )
        return template

    def _commit(self, identity_id: str, samples: Sequence[Embedding], created_at: datetime) -> Template:
        prior = self._templates.get(identity_id)
        expected = prior.version if prior is not None else None
        template = Template.from_samples(
            identity_id,
            samples,
            created_at=created_at,
            version=(expected or 0) + 1,
        )
        self._templates.atomic_replace(identity_id, template, expected)
        return template
