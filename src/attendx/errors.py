"""Error taxonomy shared by the matching core, the stores and the API.

Every error carries a machine-readable ``kind`` and, where it applies, the
``field`` that caused it, so callers can pick a remediation without parsing
messages.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from collections.abc import Sequence

    from attendx.matching.enrollment import SampleAssessment


class AttendXError(Exception):
    """Base class for all AttendX errors."""

    kind: str = "error"

    def __init__(self, message: str, *, field: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.field = field

    def to_dict(self) -> dict[str, Any]:
        return {"detail": self.message, "kind": self.kind, "field": self.field}


# ---------------------------------------------------------------------------
# Input errors: caller-correctable, never retried
# ---------------------------------------------------------------------------


class InputError(AttendXError):
    kind = "input_error"


class InvalidEmbedding(InputError):
    kind = "invalid_embedding"


class IncompatibleEmbedding(InputError):
    """Two embeddings differ in dimensionality or extractor version."""

    kind = "incompatible_embedding"

    def __init__(self, message: str, *, field: str, expected: object, actual: object, index: int | None = None) -> None:
        super().__init__(message, field=field)
        self.expected = expected
        self.actual = actual
        self.index = index

    def to_dict(self) -> dict[str, Any]:
        data = super().to_dict()
        data.update(expected=self.expected, actual=self.actual, index=self.index)
        return data


class InsufficientSamples(InputError):
    kind = "insufficient_samples"

    def __init__(self, received: int, required: int) -> None:
        super().__init__(f"Enrollment needs at least {required} samples, got {received}", field="samples")
        self.received = received
        self.required = required

    def to_dict(self) -> dict[str, Any]:
        data = super().to_dict()
        data.update(received=self.received, required=self.required)
        return data


class LowQualitySample(InputError):
    """An enrollment sample is not consistent with the other accepted samples."""

    kind = "low_quality_sample"

    def __init__(self, index: int, assessments: Sequence[SampleAssessment]) -> None:
        super().__init__(f"Sample {index} failed the consistency check", field=f"samples[{index}]")
        self.index = index
        self.assessments = list(assessments)

    @property
    def rejected_indices(self) -> list[int]:
        return [a.index for a in self.assessments if not a.accepted]

    def to_dict(self) -> dict[str, Any]:
        data = super().to_dict()
        data.update(
            index=self.index,
            rejected_indices=self.rejected_indices,
            samples=[{"index": a.index, "similarity": a.similarity, "accepted": a.accepted} for a in self.assessments],
        )
        return data


class UnknownIdentity(InputError):
    kind = "unknown_identity"

    def __init__(self, identity_id: str) -> None:
        super().__init__(f"Unknown identity: {identity_id}", field="identity_id")
        self.identity_id = identity_id


class NotEnrolled(InputError):
    kind = "not_enrolled"

    def __init__(self, identity_id: str) -> None:
        super().__init__(f"Identity {identity_id} has no enrolled template", field="identity_id")
        self.identity_id = identity_id


class DecisionNotAccepted(InputError):
    kind = "decision_not_accepted"


# ---------------------------------------------------------------------------
# Conflict and transient errors
# ---------------------------------------------------------------------------


class ConflictError(AttendXError):
    """The stored template version moved while an enrollment was committing."""

    kind = "conflict"

    def __init__(self, identity_id: str, expected_version: int | None, actual_version: int | None) -> None:
        super().__init__(
            f"Template for {identity_id} changed concurrently "
            f"(expected version {expected_version}, found {actual_version})",
            field="identity_id",
        )
        self.identity_id = identity_id
        self.expected_version = expected_version
        self.actual_version = actual_version


class TransientError(AttendXError):
    """Retryable failure. The caller retries with backoff."""

    kind = "transient"


class OperationTimeout(TransientError):
    kind = "timeout"


class StoreUnavailable(TransientError):
    kind = "store_unavailable"


# ---------------------------------------------------------------------------
# Feature extraction
# ---------------------------------------------------------------------------


class ExtractionError(AttendXError):
    kind = "extraction_error"

    def __init__(self, message: str, *, field: str | None = "image") -> None:
        super().__init__(message, field=field)


class NoFaceDetected(ExtractionError):
    kind = "no_face_detected"


class MultipleFacesDetected(ExtractionError):
    kind = "multiple_faces_detected"


class LowImageQuality(ExtractionError):
    kind = "low_image_quality"


class ExtractorUnavailable(TransientError):
    kind = "extractor_unavailable"
