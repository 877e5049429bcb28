"""Tests for face crop preprocessing and the ONNX feature extractor."""

from __future__ import annotations

import io
from unittest.mock import MagicMock, patch

import numpy as np
import pytest
from PIL import Image

from attendx.config import Settings
from attendx.errors import ExtractionError, ExtractorUnavailable, LowImageQuality
from attendx.ml.face_recognizer import OnnxFaceRecognizer
from attendx.ml.preprocessing import decode_face_crop, to_recognition_tensor

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _png(array: np.ndarray) -> bytes:
    buf = io.BytesIO()
    Image.fromarray(array.astype(np.uint8)).save(buf, format="PNG")
    return buf.getvalue()


def _noise_face(size: int = 96, seed: int = 0) -> bytes:
    return _png(np.random.default_rng(seed).integers(0, 256, size=(size, size, 3)))


def _recognizer(output: np.ndarray | None = None) -> tuple[OnnxFaceRecognizer, MagicMock]:
    model_input = MagicMock()
    model_input.name = "input.1"
    session = MagicMock()
    session.get_inputs.return_value = [model_input]
    session.run.return_value = [output if output is not None else np.ones((1, 512), dtype=np.float32)]
    models = MagicMock()
    models.get_session.return_value = session
    return OnnxFaceRecognizer(Settings(), models), session


# ---------------------------------------------------------------------------
# Preprocessing
# ---------------------------------------------------------------------------


class TestDecodeFaceCrop:
    def test_decodes_rgb(self) -> None:
        face = decode_face_crop(_noise_face(80), max_pixels=1_000_000, min_face_pixels=32)
        assert face.shape == (80, 80, 3)
        assert face.dtype == np.uint8

    def test_garbage_bytes(self) -> None:
        with pytest.raises(ExtractionError, match="could not be decoded"):
            decode_face_crop(b"definitely not an image", max_pixels=1_000_000, min_face_pixels=32)

    def test_empty_bytes(self) -> None:
        with pytest.raises(ExtractionError):
            decode_face_crop(b"", max_pixels=1_000_000, min_face_pixels=32)

    def test_too_small(self) -> None:
        with pytest.raises(LowImageQuality):
            decode_face_crop(_noise_face(16), max_pixels=1_000_000, min_face_pixels=32)

    def test_blank_image(self) -> None:
        with pytest.raises(LowImageQuality, match="blank"):
            decode_face_crop(_png(np.full((64, 64, 3), 128)), max_pixels=1_000_000, min_face_pixels=32)

    def test_too_many_pixels(self) -> None:
        with pytest.raises(ExtractionError, match="limit"):
            decode_face_crop(_noise_face(200), max_pixels=10_000, min_face_pixels=32)

    def test_decompression_bomb_is_extraction_error(self) -> None:
        bomb = _noise_face(96)
        with patch.object(Image, "MAX_IMAGE_PIXELS", 1_000), pytest.raises(ExtractionError, match="decoded"):
            decode_face_crop(bomb, max_pixels=1_000_000, min_face_pixels=32)


class TestRecognitionTensor:
    def test_shape_and_range(self) -> None:
        face = np.random.default_rng(1).integers(0, 256, size=(90, 70, 3)).astype(np.uint8)
        tensor = to_recognition_tensor(face, (112, 112), 127.5, 127.5)
        assert tensor.shape == (1, 3, 112, 112)
        assert tensor.dtype == np.float32
        assert tensor.min() >= -1.0
        assert tensor.max() <= 1.0


# ---------------------------------------------------------------------------
# OnnxFaceRecognizer
# ---------------------------------------------------------------------------


class TestOnnxFaceRecognizer:
    def test_metadata(self) -> None:
        recognizer, _ = _recognizer()
        assert recognizer.model_name == "auraface_v1"
        assert recognizer.embedding_dim == 512
        assert recognizer.extractor_version == "auraface_v1/glintr100.onnx"

    def test_extract_returns_tagged_embedding(self) -> None:
        output = np.random.default_rng(2).normal(size=(1, 512)).astype(np.float32)
        recognizer, session = _recognizer(output)

        embedding = recognizer.extract(_noise_face())

        assert embedding.dimensionality == 512
        assert embedding.extractor_version == recognizer.extractor_version
        np.testing.assert_allclose(embedding.values, output[0], rtol=1e-6)
        feeds = session.run.call_args.args[1]
        assert feeds["input.1"].shape == (1, 3, 112, 112)

    def test_wrong_output_size(self) -> None:
        recognizer, _ = _recognizer(np.ones((1, 128), dtype=np.float32))
        with pytest.raises(ExtractionError, match="expected 512"):
            recognizer.extract(_noise_face())

    def test_model_unavailable(self) -> None:
        models = MagicMock()
        models.get_session.side_effect = ExtractorUnavailable("Model 'auraface_v1' could not be loaded")
        recognizer = OnnxFaceRecognizer(Settings(), models)
        with pytest.raises(ExtractorUnavailable):
            recognizer.extract(_noise_face())

    def test_low_quality_rejected_before_inference(self) -> None:
        recognizer, session = _recognizer()
        with pytest.raises(LowImageQuality):
            recognizer.extract(_noise_face(8))
        session.run.assert_not_called()
