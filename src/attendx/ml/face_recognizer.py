"""Feature extractor contract and its ONNX Runtime implementation."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Protocol

import numpy as np

from attendx.domain import Embedding
from attendx.errors import ExtractionError
from attendx.ml.model_manager import get_model_spec
from attendx.ml.preprocessing import decode_face_crop, to_recognition_tensor

if TYPE_CHECKING:
    from attendx.config import Settings
    from attendx.ml.model_manager import ModelManager

logger = logging.getLogger(__name__)


class FeatureExtractor(Protocol):
    """Maps one cropped face image to an embedding.

    Implementations raise NoFaceDetected, MultipleFacesDetected or
    LowImageQuality so callers can tell the failures apart.
    """

    @property
    def model_name(self) -> str:
        """Return the model identifier string."""
        ...

    @property
    def embedding_dim(self) -> int:
        """Return the embedding dimensionality (e.g., 512)."""
        ...

    @property
    def extractor_version(self) -> str:
        """Tag stored on every embedding this extractor produces."""
        ...

    def extract(self, image_bytes: bytes) -> Embedding:
        """Embed a single face crop."""
        ...


class OnnxFaceRecognizer:
    """Embeds pre-cropped faces with an ONNX recognition model.

    The session is created on first use, so constructing the recognizer
    never touches the network.
    """

    def __init__(self, settings: Settings, models: ModelManager) -> None:
        self._settings = settings
        self._models = models
        self._spec = get_model_spec(settings.face_recognition_model)

    @property
    def model_name(self) -> str:
        return self._spec.name

    @property
    def embedding_dim(self) -> int:
        return self._spec.embedding_dim

    @property
    def extractor_version(self) -> str:
        return f"{self._spec.name}/{self._spec.filename}"

    def extract(self, image_bytes: bytes) -> Embedding:
        """Embed one face crop.

        Raises:
            ExtractionError: The image is unusable or the model output has the wrong size.
            ExtractorUnavailable: The model could not be fetched or loaded.
        """
        face = decode_face_crop(
            image_bytes,
            max_pixels=self._settings.max_image_pixels,
            min_face_pixels=self._settings.min_face_pixels,
        )
        tensor = to_recognition_tensor(face, self._spec.input_size, self._spec.input_mean, self._spec.input_std)

        session = self._models.get_session(self._spec.name)
        input_name = session.get_inputs()[0].name
        output = session.run(None, {input_name: tensor})[0]
        vector = np.asarray(output, dtype=np.float32).reshape(-1)
        if vector.shape[0] != self._spec.embedding_dim:
            raise ExtractionError(
                f"{self._spec.name} returned {vector.shape[0]} values, expected {self._spec.embedding_dim}",
                field=None,
            )
        logger.debug("Embedded %dx%d crop with %s", face.shape[1], face.shape[0], self._spec.name)
        return Embedding(values=vector, extractor_version=self.extractor_version)
