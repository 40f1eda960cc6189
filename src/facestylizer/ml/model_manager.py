"""Model manager: download, unpack, load and cache model bundles.

A model bundle is a zip archive (``.task``) holding the face detector, the
face landmarks detector and the stylizer. Bundles come from HuggingFace (by
registry name) or from a local path. The stylizer is loaded into a cached ONNX
InferenceSession that lives until shutdown.
"""

from __future__ import annotations

import logging
import threading
import zipfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Protocol

import onnxruntime
from huggingface_hub import hf_hub_download
from onnxruntime import InferenceSession, SessionOptions
from onnxruntime.capi.onnxruntime_pybind11_state import ExecutionMode

from facestylizer.errors import ModelAssetError

if TYPE_CHECKING:
    from facestylizer.config import Settings

logger = logging.getLogger(__name__)

FACE_STYLIZER_FILE = "face_stylizer.onnx"


# ---------------------------------------------------------------------------
# Protocol (kept for test mocking)
# ---------------------------------------------------------------------------


class ModelManager(Protocol):
    """Protocol for model bundle lifecycle management."""

    def ensure_downloaded(self, bundle_name: str) -> Path:
        """Ensure a bundle is available locally and return its file path."""
        ...

    def open_bundle(self, bundle_name: str) -> ModelAssetBundle:
        """Return the unpacked contents of a bundle."""
        ...

    def get_session(self, bundle_name: str) -> InferenceSession:
        """Return a cached or newly created stylizer InferenceSession."""
        ...

    def get_loaded_models(self) -> list[str]:
        """Return names of bundles with a loaded session."""
        ...

    def shutdown(self) -> None:
        """Clear all cached sessions."""
        ...


# ---------------------------------------------------------------------------
# Bundles
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ModelAssetBundle:
    """Named model files extracted from one bundle."""

    name: str
    files: dict[str, bytes] = field(default_factory=dict)

    def get_file(self, filename: str) -> bytes:
        try:
            return self.files[filename]
        except KeyError:
            raise ModelAssetError(f"Bundle '{self.name}' does not contain '{filename}'") from None

    @classmethod
    def from_path(cls, path: Path, name: str | None = None) -> ModelAssetBundle:
        """Read every member of a zip bundle into memory."""
        try:
            with zipfile.ZipFile(path) as archive:
                files = {
                    Path(info.filename).name: archive.read(info) for info in archive.infolist() if not info.is_dir()
                }
        except (OSError, zipfile.BadZipFile) as exc:
            raise ModelAssetError(f"Cannot read model bundle {path}: {exc}") from exc
        return cls(name=name or path.stem, files=files)


@dataclass(frozen=True)
class BundleSpec:
    """Static metadata for a downloadable model bundle."""

    name: str
    repo_id: str
    filename: str
    subfolder: str | None
    style: str
    license: str


MODEL_REGISTRY: dict[str, BundleSpec] = {
    "face_stylizer_color_sketch": BundleSpec(
        name="face_stylizer_color_sketch",
        repo_id="facestylizer/face-stylizer-models",
        filename="face_stylizer_color_sketch.task",
        subfolder=None,
        style="color_sketch",
        license="Apache-2.0",
    ),
    "face_stylizer_color_ink": BundleSpec(
        name="face_stylizer_color_ink",
        repo_id="facestylizer/face-stylizer-models",
        filename="face_stylizer_color_ink.task",
        subfolder=None,
        style="color_ink",
        license="Apache-2.0",
    ),
    "face_stylizer_oil_painting": BundleSpec(
        name="face_stylizer_oil_painting",
        repo_id="facestylizer/face-stylizer-models",
        filename="face_stylizer_oil_painting.task",
        subfolder=None,
        style="oil_painting",
        license="Apache-2.0",
    ),
}


# ---------------------------------------------------------------------------
# Concrete implementation
# ---------------------------------------------------------------------------


class OnnxModelManager:
    """Downloads bundles, unpacks them, and caches stylizer sessions."""

    def __init__(self, settings: Settings) -> None:
        self._settings = settings
        self._models_dir = Path(settings.models_dir)
        self._models_dir.mkdir(parents=True, exist_ok=True)

        self._lock = threading.Lock()
        self._sessions: dict[str, InferenceSession] = {}
        self._model_paths: dict[str, Path] = {}
        self._bundles: dict[str, ModelAssetBundle] = {}

        self._providers = self._build_providers()
        self._session_options = self._build_session_options()

    # -- Public API ---------------------------------------------------------

    def ensure_downloaded(self, bundle_name: str) -> Path:
        """Download a bundle from HuggingFace unless it is a local file or already present."""
        local = Path(bundle_name)
        if bundle_name not in MODEL_REGISTRY and local.suffix in (".task", ".zip"):
            if not local.is_file():
                raise ModelAssetError(f"Model bundle not found: {local}")
            return local

        spec = self._get_spec(bundle_name)
        if bundle_name in self._model_paths:
            path = self._model_paths[bundle_name]
            if path.exists():
                return path

        downloaded = Path(
            hf_hub_download(
                repo_id=spec.repo_id,
                filename=spec.filename,
                subfolder=spec.subfolder,
                local_dir=str(self._models_dir),
            )
        )
        self._model_paths[bundle_name] = downloaded
        logger.info("Downloaded %s to %s", bundle_name, downloaded)
        return downloaded

    def open_bundle(self, bundle_name: str) -> ModelAssetBundle:
        """Return the bundle's files, reading the archive on first use."""
        with self._lock:
            cached = self._bundles.get(bundle_name)
            if cached is not None:
                return cached

        path = self.ensure_downloaded(bundle_name)
        bundle = ModelAssetBundle.from_path(path, name=bundle_name)
        with self._lock:
            self._bundles.setdefault(bundle_name, bundle)
            logger.info("Opened bundle %s (%s)", bundle_name, ", ".join(sorted(bundle.files)))
            return self._bundles[bundle_name]

    def create_session(self, model: bytes) -> InferenceSession:
        """Create an uncached session for in-memory model bytes."""
        return InferenceSession(model, sess_options=self._session_options, providers=self._providers)

    def get_session(self, bundle_name: str) -> InferenceSession:
        """Return a cached stylizer InferenceSession, creating one if needed."""
        with self._lock:
            cached = self._sessions.get(bundle_name)
            if cached is not None:
                return cached

        bundle = self.open_bundle(bundle_name)
        session = self.create_session(bundle.get_file(FACE_STYLIZER_FILE))

        with self._lock:
            # Double-check: another thread may have created it while we loaded.
            existing = self._sessions.get(bundle_name)
            if existing is not None:
                return existing
            self._sessions[bundle_name] = session
            logger.info("Loaded session for %s", bundle_name)
            return session

    def get_loaded_models(self) -> list[str]:
        """Return names of bundles with active sessions."""
        with self._lock:
            return list(self._sessions.keys())

    def shutdown(self) -> None:
        """Clear all cached sessions and bundles."""
        with self._lock:
            self._sessions.clear()
            self._bundles.clear()
            logger.info("All model sessions cleared")

    # -- Internal -----------------------------------------------------------

    @staticmethod
    def _get_spec(bundle_name: str) -> BundleSpec:
        try:
            return MODEL_REGISTRY[bundle_name]
        except KeyError:
            raise ModelAssetError(f"Unknown model bundle: {bundle_name}") from None

    def _build_providers(self) -> list[str | tuple[str, dict[str, object]]]:
        device = self._settings.device
        if device == "auto":
            device = "gpu" if "CUDAExecutionProvider" in onnxruntime.get_available_providers() else "cpu"
        if device == "gpu":
            return [
                (
                    "CUDAExecutionProvider",
                    {
                        "device_id": 0,
                        "gpu_mem_limit": self._settings.gpu_mem_limit,
                        "arena_extend_strategy": "kSameAsRequested",
                    },
                ),
                "CPUExecutionProvider",
            ]
        return ["CPUExecutionProvider"]

    def _build_session_options(self) -> SessionOptions:
        opts = SessionOptions()
        opts.intra_op_num_threads = self._settings.intra_op_threads
        opts.inter_op_num_threads = self._settings.inter_op_threads
        opts.execution_mode = ExecutionMode.ORT_SEQUENTIAL
        opts.enable_mem_pattern = True
        opts.enable_mem_reuse = True
        return opts
