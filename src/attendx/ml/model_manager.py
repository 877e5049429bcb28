"""Lifecycle of the face embedding models.

A recognition model is fetched from the HuggingFace Hub on first use, opened
as an ONNX Runtime session and reused until it sits idle for longer than
``model_ttl`` seconds. Any failure along the way surfaces as
ExtractorUnavailable, so callers see one retryable error whatever broke.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Protocol

from huggingface_hub import hf_hub_download
from huggingface_hub.utils import HfHubHTTPError
from onnxruntime import GraphOptimizationLevel, InferenceSession, SessionOptions
from onnxruntime.capi.onnxruntime_pybind11_state import ExecutionMode, Fail, InvalidProtobuf, NoSuchFile

from attendx.errors import ExtractorUnavailable

if TYPE_CHECKING:
    from attendx.config import Settings

logger = logging.getLogger(__name__)

ProviderConfig = str | tuple[str, dict[str, object]]


class ModelManager(Protocol):
    """What the feature extractor and the health endpoint need from model loading."""

    def get_session(self, model_name: str) -> InferenceSession:
        """Return an open session for ``model_name``, loading it if needed."""
        ...

    def get_loaded_models(self) -> list[str]:
        ...

    def evict_idle(self, now: float | None = None) -> list[str]:
        """Close sessions idle for longer than the TTL and return their names."""
        ...

    def shutdown(self) -> None:
        ...


@dataclass(frozen=True)
class RecognitionModelSpec:
    """Static metadata for one face recognition (embedding) model.

    Inputs are aligned RGB crops of ``input_size``, normalized as
    ``(pixel - input_mean) / input_std``.
    """

    name: str
    repo_id: str
    filename: str
    subfolder: str | None
    license: str
    insightface: bool
    embedding_dim: int
    input_size: tuple[int, int] = (112, 112)
    input_mean: float = 127.5
    input_std: float = 127.5


MODEL_REGISTRY: dict[str, RecognitionModelSpec] = {
    "auraface_v1": RecognitionModelSpec(
        name="auraface_v1",
        repo_id="fal/AuraFace-v1",
        filename="glintr100.onnx",
        subfolder=None,
        license="Apache-2.0",
        insightface=False,
        embedding_dim=512,
    ),
    "w600k_r50": RecognitionModelSpec(
        name="w600k_r50",
        repo_id="public-data/insightface",
        filename="w600k_r50.onnx",
        subfolder="models/buffalo_l",
        license="Non-commercial (InsightFace)",
        insightface=True,
        embedding_dim=512,
    ),
}


def get_model_spec(model_name: str) -> RecognitionModelSpec:
    try:
        return MODEL_REGISTRY[model_name]
    except KeyError:
        raise KeyError(f"Unknown model: {model_name}") from None


def model_status(spec: RecognitionModelSpec, settings: Settings) -> str:
    """'active' for the configured model, otherwise 'available' or 'requires_license'."""
    if spec.name == settings.face_recognition_model:
        return "active"
    if spec.insightface and not settings.accept_insightface_license:
        return "requires_license"
    return "available"


def build_providers(settings: Settings) -> list[ProviderConfig]:
    """Execution providers for the configured device, CPU always last."""
    if settings.device == "cuda":
        cuda_options: dict[str, object] = {
            "device_id": 0,
            "gpu_mem_limit": settings.gpu_mem_limit,
            "arena_extend_strategy": "kSameAsRequested",
        }
        return [("CUDAExecutionProvider", cuda_options), "CPUExecutionProvider"]
    if settings.device == "openvino":
        return [("OpenVINOExecutionProvider", {"device_type": "CPU"}), "CPUExecutionProvider"]
    return ["CPUExecutionProvider"]


def build_session_options(settings: Settings) -> SessionOptions:
    opts = SessionOptions()
    opts.intra_op_num_threads = settings.intra_op_threads
    opts.inter_op_num_threads = settings.inter_op_threads
    opts.execution_mode = ExecutionMode.ORT_SEQUENTIAL
    if settings.device == "openvino":
        # OpenVINO optimizes the graph itself.
        opts.graph_optimization_level = GraphOptimizationLevel.ORT_DISABLE_ALL
    return opts


@dataclass
class _LoadedModel:
    spec: RecognitionModelSpec
    session: InferenceSession
    last_used: float = field(default_factory=time.monotonic)


class OnnxModelManager:
    """Loads recognition models on demand and evicts idle ones.

    Loading holds a per-model lock, so concurrent first requests for the same
    model download and open it once.
    """

    def __init__(self, settings: Settings) -> None:
        self._settings = settings
        self._models_dir = Path(settings.models_dir)
        self._providers = build_providers(settings)
        self._session_options = build_session_options(settings)

        self._lock = threading.Lock()
        self._load_locks: dict[str, threading.Lock] = {}
        self._loaded: dict[str, _LoadedModel] = {}
        self._paths: dict[str, Path] = {}

    @property
    def ttl(self) -> int:
        return self._settings.model_ttl

    def fetch(self, model_name: str) -> Path:
        """Local path of the model file, downloading it on first use.

        Raises:
            ExtractorUnavailable: The model needs a license that was not
                accepted, or the download failed.
        """
        spec = get_model_spec(model_name)
        if spec.insightface and not self._settings.accept_insightface_license:
            raise ExtractorUnavailable(f"Model '{spec.name}' requires ATTENDX_ACCEPT_INSIGHTFACE_LICENSE=true")

        known = self._paths.get(model_name)
        if known is not None and known.exists():
            return known

        try:
            self._models_dir.mkdir(parents=True, exist_ok=True)
            path = Path(
                hf_hub_download(
                    repo_id=spec.repo_id,
                    filename=spec.filename,
                    subfolder=spec.subfolder,
                    local_dir=str(self._models_dir),
                )
            )
        except (HfHubHTTPError, OSError) as exc:
            logger.error("Download of %s failed: %s", model_name, exc)
            raise ExtractorUnavailable(f"Could not download {model_name}: {exc}") from exc
        self._paths[model_name] = path
        logger.info("Fetched %s to %s", model_name, path)
        return path

    def get_session(self, model_name: str) -> InferenceSession:
        with self._load_lock(model_name):
            with self._lock:
                loaded = self._loaded.get(model_name)
                if loaded is not None:
                    loaded.last_used = time.monotonic()
                    return loaded.session

            path = self.fetch(model_name)
            try:
                session = InferenceSession(str(path), sess_options=self._session_options, providers=self._providers)
            except (Fail, InvalidProtobuf, NoSuchFile, RuntimeError, OSError) as exc:
                logger.error("Could not open %s: %s", path, exc)
                raise ExtractorUnavailable(f"Could not load {model_name}: {exc}") from exc

            with self._lock:
                self._loaded[model_name] = _LoadedModel(spec=get_model_spec(model_name), session=session)
            logger.info("Loaded %s on %s", model_name, self._settings.device)
            return session

    def get_loaded_models(self) -> list[str]:
        with self._lock:
            return list(self._loaded)

    def evict_idle(self, now: float | None = None) -> list[str]:
        """Drop sessions unused for more than ``model_ttl`` seconds; a TTL of 0 keeps them forever."""
        if self.ttl == 0:
            return []
        now = time.monotonic() if now is None else now
        with self._lock:
            idle = [name for name, loaded in self._loaded.items() if now - loaded.last_used > self.ttl]
            for name in idle:
                del self._loaded[name]
        for name in idle:
            logger.info("Evicted %s after %ds idle", name, self.ttl)
        return idle

    def shutdown(self) -> None:
        with self._lock:
            names = list(self._loaded)
            self._loaded.clear()
        if names:
            logger.info("Closed model sessions: %s", ", ".join(names))

    def _load_lock(self, model_name: str) -> threading.Lock:
        with self._lock:
            return self._load_locks.setdefault(model_name, threading.Lock())
