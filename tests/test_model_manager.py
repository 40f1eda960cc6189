"""Tests for the model bundle manager."""

from __future__ import annotations

import zipfile
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest

from facestylizer.config import Settings
from facestylizer.errors import ModelAssetError
from facestylizer.ml.landmarker import FACE_DETECTOR_FILE, FACE_LANDMARKS_DETECTOR_FILE
from facestylizer.ml.model_manager import FACE_STYLIZER_FILE, MODEL_REGISTRY, ModelAssetBundle, OnnxModelManager

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _make_settings(**overrides: object) -> Settings:
    defaults: dict[str, object] = {
        "device": "cpu",
        "models_dir": "/tmp/facestylizer_test_models",
        "intra_op_threads": 0,
        "inter_op_threads": 1,
        "gpu_mem_limit": 2_147_483_648,
        "max_concurrent": 2,
    }
    defaults.update(overrides)
    return Settings(**defaults)  # type: ignore[arg-type]


def _write_bundle(path: Path, *, skip: str | None = None) -> Path:
    with zipfile.ZipFile(path, "w") as archive:
        for name, content in (
            (FACE_DETECTOR_FILE, b"detector"),
            (FACE_LANDMARKS_DETECTOR_FILE, b"landmarks"),
            (FACE_STYLIZER_FILE, b"stylizer"),
        ):
            if name != skip:
                archive.writestr(name, content)
    return path


# ---------------------------------------------------------------------------
# Registry and bundle tests
# ---------------------------------------------------------------------------


class TestModelRegistry:
    def test_known_bundle_lookup(self) -> None:
        spec = MODEL_REGISTRY["face_stylizer_color_sketch"]
        assert spec.name == "face_stylizer_color_sketch"
        assert spec.style == "color_sketch"
        assert spec.filename.endswith(".task")

    def test_unknown_bundle_is_absent(self) -> None:
        with pytest.raises(KeyError):
            MODEL_REGISTRY["nonexistent_model"]

    def test_registry_has_three_styles(self) -> None:
        assert {spec.style for spec in MODEL_REGISTRY.values()} == {"color_sketch", "color_ink", "oil_painting"}


class TestModelAssetBundle:
    def test_from_path_reads_members(self, tmp_path: Path) -> None:
        bundle = ModelAssetBundle.from_path(_write_bundle(tmp_path / "style.task"))
        assert bundle.name == "style"
        assert bundle.get_file(FACE_STYLIZER_FILE) == b"stylizer"

    def test_nested_members_are_flattened(self, tmp_path: Path) -> None:
        path = tmp_path / "nested.task"
        with zipfile.ZipFile(path, "w") as archive:
            archive.writestr(f"models/{FACE_STYLIZER_FILE}", b"stylizer")
        assert ModelAssetBundle.from_path(path).get_file(FACE_STYLIZER_FILE) == b"stylizer"

    def test_missing_member(self, tmp_path: Path) -> None:
        bundle = ModelAssetBundle.from_path(_write_bundle(tmp_path / "style.task", skip=FACE_DETECTOR_FILE))
        with pytest.raises(ModelAssetError, match=FACE_DETECTOR_FILE):
            bundle.get_file(FACE_DETECTOR_FILE)

    def test_corrupt_archive(self, tmp_path: Path) -> None:
        path = tmp_path / "broken.task"
        path.write_bytes(b"not a zip")
        with pytest.raises(ModelAssetError, match="Cannot read"):
            ModelAssetBundle.from_path(path)


# ---------------------------------------------------------------------------
# OnnxModelManager tests
# ---------------------------------------------------------------------------


class TestOnnxModelManager:
    @patch("facestylizer.ml.model_manager.hf_hub_download")
    def test_ensure_downloaded_calls_hf_hub_download(self, mock_download: MagicMock) -> None:
        mock_download.return_value = "/tmp/facestylizer_test_models/face_stylizer_color_ink.task"
        settings = _make_settings()
        mgr = OnnxModelManager(settings)

        path = mgr.ensure_downloaded("face_stylizer_color_ink")

        mock_download.assert_called_once_with(
            repo_id="facestylizer/face-stylizer-models",
            filename="face_stylizer_color_ink.task",
            subfolder=None,
            local_dir="/tmp/facestylizer_test_models",
        )
        assert path == Path("/tmp/facestylizer_test_models/face_stylizer_color_ink.task")

    @patch("facestylizer.ml.model_manager.hf_hub_download")
    def test_ensure_downloaded_skips_existing(self, mock_download: MagicMock, tmp_path: Path) -> None:
        bundle_file = _write_bundle(tmp_path / "face_stylizer_color_ink.task")
        mgr = OnnxModelManager(_make_settings(models_dir=str(tmp_path)))
        # Simulate a previous download by setting the cached path.
        mgr._model_paths["face_stylizer_color_ink"] = bundle_file

        assert mgr.ensure_downloaded("face_stylizer_color_ink") == bundle_file
        mock_download.assert_not_called()

    @patch("facestylizer.ml.model_manager.hf_hub_download")
    def test_local_bundle_path_is_used_directly(self, mock_download: MagicMock, tmp_path: Path) -> None:
        bundle_file = _write_bundle(tmp_path / "custom.task")
        mgr = OnnxModelManager(_make_settings(models_dir=str(tmp_path)))

        assert mgr.ensure_downloaded(str(bundle_file)) == bundle_file
        mock_download.assert_not_called()

    def test_missing_local_bundle(self, tmp_path: Path) -> None:
        mgr = OnnxModelManager(_make_settings(models_dir=str(tmp_path)))
        with pytest.raises(ModelAssetError, match="not found"):
            mgr.ensure_downloaded(str(tmp_path / "absent.task"))

    def test_open_bundle_is_cached(self, tmp_path: Path) -> None:
        bundle_file = str(_write_bundle(tmp_path / "custom.task"))
        mgr = OnnxModelManager(_make_settings(models_dir=str(tmp_path)))

        first = mgr.open_bundle(bundle_file)
        assert mgr.open_bundle(bundle_file) is first
        assert first.get_file(FACE_LANDMARKS_DETECTOR_FILE) == b"landmarks"

    @patch("facestylizer.ml.model_manager.InferenceSession")
    def test_get_session_creates_and_caches(self, mock_session_cls: MagicMock, tmp_path: Path) -> None:
        bundle_file = str(_write_bundle(tmp_path / "custom.task"))
        mock_session = MagicMock()
        mock_session_cls.return_value = mock_session
        mgr = OnnxModelManager(_make_settings(models_dir=str(tmp_path)))

        session1 = mgr.get_session(bundle_file)
        session2 = mgr.get_session(bundle_file)

        assert session1 is mock_session
        assert session2 is mock_session
        mock_session_cls.assert_called_once()
        assert mock_session_cls.call_args.args[0] == b"stylizer"
        assert mock_session_cls.call_args.kwargs["providers"] == ["CPUExecutionProvider"]

    @patch("facestylizer.ml.model_manager.InferenceSession")
    def test_get_session_without_stylizer(self, mock_session_cls: MagicMock, tmp_path: Path) -> None:
        bundle_file = str(_write_bundle(tmp_path / "custom.task", skip=FACE_STYLIZER_FILE))
        mgr = OnnxModelManager(_make_settings(models_dir=str(tmp_path)))

        with pytest.raises(ModelAssetError):
            mgr.get_session(bundle_file)
        mock_session_cls.assert_not_called()

    @patch("facestylizer.ml.model_manager.InferenceSession")
    def test_get_loaded_models(self, mock_session_cls: MagicMock, tmp_path: Path) -> None:
        bundle_file = str(_write_bundle(tmp_path / "custom.task"))
        mgr = OnnxModelManager(_make_settings(models_dir=str(tmp_path)))

        assert mgr.get_loaded_models() == []
        mgr.get_session(bundle_file)
        assert mgr.get_loaded_models() == [bundle_file]

    def test_provider_building_cpu(self) -> None:
        mgr = OnnxModelManager(_make_settings(device="cpu"))
        assert mgr._providers == ["CPUExecutionProvider"]

    def test_provider_building_gpu(self) -> None:
        mgr = OnnxModelManager(_make_settings(device="gpu", gpu_mem_limit=1024))
        assert len(mgr._providers) == 2
        provider_name, provider_opts = mgr._providers[0]  # type: ignore[misc]
        assert provider_name == "CUDAExecutionProvider"
        assert provider_opts["device_id"] == 0
        assert provider_opts["gpu_mem_limit"] == 1024
        assert mgr._providers[1] == "CPUExecutionProvider"

    @pytest.mark.parametrize(
        "available, expect_gpu",
        [
            (["CUDAExecutionProvider", "CPUExecutionProvider"], True),
            (["CPUExecutionProvider"], False),
        ],
    )
    def test_provider_building_auto(self, available: list[str], expect_gpu: bool) -> None:
        with patch("facestylizer.ml.model_manager.onnxruntime.get_available_providers", return_value=available):
            mgr = OnnxModelManager(_make_settings(device="auto"))
        assert (mgr._providers[0] != "CPUExecutionProvider") is expect_gpu

    @patch("facestylizer.ml.model_manager.InferenceSession")
    def test_shutdown_clears_sessions(self, mock_session_cls: MagicMock, tmp_path: Path) -> None:
        bundle_file = str(_write_bundle(tmp_path / "custom.task"))
        mgr = OnnxModelManager(_make_settings(models_dir=str(tmp_path)))
        mgr.get_session(bundle_file)
        assert len(mgr.get_loaded_models()) == 1

        mgr.shutdown()
        assert mgr.get_loaded_models() == []

    def test_unknown_model_raises_asset_error(self) -> None:
        mgr = OnnxModelManager(_make_settings())
        with pytest.raises(ModelAssetError, match="Unknown model bundle"):
            mgr.ensure_downloaded("totally_fake_model")

    def test_unknown_model_fails_open_bundle(self, tmp_path: Path) -> None:
        mgr = OnnxModelManager(_make_settings(models_dir=str(tmp_path)))
        with pytest.raises(ModelAssetError):
            mgr.open_bundle("face_stylizer_watercolor")
