"""Similarity scoring and the accept/reject decision.

Scores are cosine similarities of L2-normalized vectors mapped to [0, 1]
with ``(cos + 1) / 2``, so 1.0 means same direction, 0.5 orthogonal and
0.0 opposite. Everything here is a pure function of its inputs.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import StrEnum
from typing import TYPE_CHECKING

import numpy as np

if TYPE_CHECKING:
    from attendx.config import Settings
    from attendx.domain import Embedding, Template

DEFAULT_THRESHOLD: float = 0.80


class Aggregation(StrEnum):
    """How per-sample similarities of a multi-sample template are combined."""

    MAX = "max"
    MEAN = "mean"
    CENTROID = "centroid"


@dataclass(frozen=True)
class MatchPolicy:
    threshold: float = DEFAULT_THRESHOLD
    aggregation: Aggregation = Aggregation.MAX

    def __post_init__(self) -> None:
        if not 0.0 <= self.threshold <= 1.0:
            raise ValueError(f"threshold must be within [0, 1], got {self.threshold}")
        object.__setattr__(self, "aggregation", Aggregation(self.aggregation))

    @classmethod
    def from_settings(cls, settings: Settings) -> MatchPolicy:
        return cls(threshold=settings.match_threshold, aggregation=Aggregation(settings.match_aggregation))


@dataclass(frozen=True)
class MatchResult:
    score: float
    accepted: bool


def cosine_to_score(cosine: float) -> float:
    """Map a cosine similarity in [-1, 1] onto [0, 1]."""
    return float(np.clip((cosine + 1.0) / 2.0, 0.0, 1.0))


def similarity(a: Embedding, b: Embedding) -> float:
    """Score between two compatible embeddings, magnitude-invariant."""
    a.ensure_compatible(b)
    return cosine_to_score(float(np.dot(a.unit, b.unit)))


def score_template(candidate: Embedding, template: Template, aggregation: Aggregation = Aggregation.MAX) -> float:
    template.centroid.ensure_compatible(candidate)
    if aggregation is Aggregation.CENTROID:
        return cosine_to_score(float(np.dot(template.centroid.unit, candidate.unit)))

    cosines = template.sample_matrix @ candidate.unit
    if aggregation is Aggregation.MEAN:
        return cosine_to_score(float(cosines.mean()))
    return cosine_to_score(float(cosines.max()))


def match(candidate: Embedding, template: Template, policy: MatchPolicy | None = None) -> MatchResult:
    """Score ``candidate`` against ``template`` and apply the threshold.

    Raises:
        IncompatibleEmbedding: If dimensionality or extractor version differ.
    """
    policy = policy or MatchPolicy()
    score = score_template(candidate, template, policy.aggregation)
    return MatchResult(score=score, accepted=score >= policy.threshold)
