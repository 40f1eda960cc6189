"""Face stylizer pipeline assembly.

Wires the fixed stage topology::

    image, norm_rect -> face_landmarker -> select_face -> face_to_rect
        -> image_preprocessing -> inference -> tensors_to_image
        -> (inverse_matrix) -> warp_affine [-> strip_rotation -> image_cropping]

and exposes the ``stylized_image`` and ``image`` outputs. Every shape, range
and path decision is taken here, once, before the first frame.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from dataclasses import dataclass
from enum import StrEnum
from pathlib import Path
from typing import TYPE_CHECKING, Any

import cv2
import numpy as np
from pydantic import BaseModel, ConfigDict

from facestylizer.errors import InvalidArgumentError, ModelAssetError
from facestylizer.ml.backends import select_backend
from facestylizer.ml.geometry import AffineTransform, NormalizedRect
from facestylizer.ml.graph import GraphBuilder, PipelinedRunner, Port, Stage
from facestylizer.ml.image import Image, Location, Tensor, ValueRange
from facestylizer.ml.landmarker import FACE_DETECTOR_FILE, FACE_LANDMARKS_DETECTOR_FILE, LandmarkerOptions
from facestylizer.ml.model_manager import FACE_STYLIZER_FILE
from facestylizer.ml.processors import (
    FaceCropper,
    ImagePreprocessor,
    PostprocessingConfig,
    PreprocessingConfig,
    TensorsToImage,
    WarpBack,
    invert_matrix,
    strip_rect_rotation,
)
from facestylizer.ml.region import DEFAULT_LANDMARK_SELECTION, LandmarkSelection, landmarks_to_rect, select_single_face

if TYPE_CHECKING:
    from facestylizer.ml.backends import ImageBackend
    from facestylizer.ml.graph import Graph, PendingFrame
    from facestylizer.ml.landmarker import FaceLandmarker
    from facestylizer.ml.model_manager import ModelAssetBundle
    from facestylizer.ml.stylizer_model import InferenceOperator

logger = logging.getLogger(__name__)


class Acceleration(StrEnum):
    CPU = "cpu"
    GPU = "gpu"
    AUTO = "auto"


class ModelAsset(BaseModel):
    """A model file given by path or by content."""

    model_config = ConfigDict(frozen=True)

    path: Path | None = None
    content: bytes | None = None

    @property
    def is_set(self) -> bool:
        return self.path is not None or self.content is not None

    def read(self) -> bytes:
        if self.content is not None:
            return self.content
        if self.path is None:
            raise ModelAssetError("Model asset is not set")
        try:
            return self.path.read_bytes()
        except OSError as exc:
            raise ModelAssetError(f"Cannot read model asset {self.path}: {exc}") from exc


class PipelineOptions(BaseModel):
    """Frozen configuration of one face stylizer pipeline."""

    model_config = ConfigDict(frozen=True)

    face_detector: ModelAsset = ModelAsset()
    face_landmarks_detector: ModelAsset = ModelAsset()
    stylizer: ModelAsset = ModelAsset()

    acceleration: Acceleration = Acceleration.CPU
    use_stream_mode: bool = False

    face_landmarker: LandmarkerOptions = LandmarkerOptions()
    landmark_selection: LandmarkSelection = DEFAULT_LANDMARK_SELECTION

    # None: derived from the model input dtype.
    input_tensor_range: ValueRange | None = None
    output_tensor_float_range: tuple[float, float] = (0.0, 1.0)

    output_face_crop: bool = False


def resolve_options(options: PipelineOptions, bundle: ModelAssetBundle) -> PipelineOptions:
    """Fill in model assets the options leave unset from a model bundle.

    Raises:
        ModelAssetError: If the bundle lacks a required file.
    """
    update: dict[str, ModelAsset] = {}
    if not options.face_detector.is_set:
        update["face_detector"] = ModelAsset(content=bundle.get_file(FACE_DETECTOR_FILE))
    if not options.face_landmarks_detector.is_set:
        update["face_landmarks_detector"] = ModelAsset(content=bundle.get_file(FACE_LANDMARKS_DETECTOR_FILE))
    if not options.stylizer.is_set:
        update["stylizer"] = ModelAsset(content=bundle.get_file(FACE_STYLIZER_FILE))
    return options.model_copy(update=update)


def determine_use_gpu(acceleration: Acceleration) -> bool:
    """Pick the image-processing path once, from the acceleration preference."""
    if acceleration == Acceleration.AUTO:
        return bool(cv2.ocl.haveOpenCL())
    return acceleration == Acceleration.GPU


def check_face_count(num_faces: int | None) -> None:
    if num_faces is not None and num_faces != 1:
        raise InvalidArgumentError("Face stylizer currently only supports one face.")


def configure_landmarker(options: PipelineOptions) -> LandmarkerOptions:
    """Derive the landmark sub-pipeline options from the pipeline options.

    The face count is pinned to one; stream mode and the execution path are
    inherited from the top-level options.

    Raises:
        InvalidArgumentError: If a face count other than one was requested.
    """
    check_face_count(options.face_landmarker.num_faces)
    return options.face_landmarker.model_copy(
        update={
            "num_faces": 1,
            "use_stream_mode": options.use_stream_mode,
            "use_gpu": determine_use_gpu(options.acceleration),
        }
    )


def _default_input_range(dtype: type[np.generic]) -> ValueRange:
    if np.issubdtype(dtype, np.floating):
        return ValueRange.float_range(0.0, 1.0)
    if dtype == np.uint8:
        return ValueRange.uint_range(0, 255)
    raise InvalidArgumentError(f"Unsupported model input dtype {np.dtype(dtype).name}")


def configure_preprocessing(options: PipelineOptions, inference: InferenceOperator) -> PreprocessingConfig:
    height, width, channels = inference.input_shape
    value_range = options.input_tensor_range or _default_input_range(inference.input_dtype)
    if value_range.kind == "float" and not np.issubdtype(inference.input_dtype, np.floating):
        raise InvalidArgumentError("A float input range requires a floating-point model input")
    if value_range.kind == "uint" and inference.input_dtype != np.uint8:
        raise InvalidArgumentError("A uint input range requires a uint8 model input")
    return PreprocessingConfig(
        output_width=width,
        output_height=height,
        channels=channels,
        value_range=value_range,
        keep_aspect_ratio=True,
    )


def check_model_output(inference: InferenceOperator, postprocessing: PostprocessingConfig) -> None:
    """Reject model outputs that cannot be read back as an image.

    The inverse transform is expressed in input-tensor pixels, so the output
    must have the input's height and width. Dynamic dimensions pass here and
    are checked per frame.
    """
    shape = inference.output_shape
    if shape is not None:
        if len(shape) != 3:
            raise InvalidArgumentError(f"Model output must be HxWxC, got {shape}")
        input_height, input_width, _ = inference.input_shape
        for axis, got, want in (("height", shape[0], input_height), ("width", shape[1], input_width)):
            if got is not None and got != want:
                raise InvalidArgumentError(f"Model output {axis} {got} does not match the input tensor {axis} {want}")
        channels = shape[2]
        if channels is not None and channels not in (1, 3, 4):
            raise InvalidArgumentError(f"Model output must have 1, 3 or 4 channels, got {channels}")
    dtype = inference.output_dtype
    if dtype is None:
        return
    if postprocessing.value_range.kind == "float" and not np.issubdtype(dtype, np.floating):
        raise InvalidArgumentError(f"Model output is {np.dtype(dtype).name} but a float range is configured")
    if postprocessing.value_range.kind == "uint" and dtype != np.uint8:
        raise InvalidArgumentError(f"Model output is {np.dtype(dtype).name} but a uint range is configured")


@dataclass(frozen=True)
class StylizerOutputs:
    """CPU-resident outputs of one frame. ``stylized_image`` is None when no face was found."""

    stylized_image: Image | None
    image: Image | None


class StylizerPipeline:
    """An assembled face stylizer graph plus the configuration it was built with."""

    def __init__(
        self,
        graph: Graph,
        backend: ImageBackend,
        preprocessing: PreprocessingConfig,
        postprocessing: PostprocessingConfig,
    ) -> None:
        self._graph = graph
        self._backend = backend
        self.preprocessing = preprocessing
        self.postprocessing = postprocessing

    @property
    def graph(self) -> Graph:
        return self._graph

    @property
    def use_gpu(self) -> bool:
        return self._backend.location == Location.GPU

    def _to_outputs(self, values: dict[str, Any]) -> StylizerOutputs:
        def download(image: Image | None) -> Image | None:
            return None if image is None else self._backend.download(image)

        return StylizerOutputs(
            stylized_image=download(values["stylized_image"]),
            image=download(values["image"]),
        )

    def process(
        self,
        image: Image,
        norm_rect: NormalizedRect | None = None,
        timestamp_ms: int | None = None,
    ) -> StylizerOutputs:
        """Run one frame through the graph."""
        values = self._graph.run(image=image, norm_rect=norm_rect, timestamp_ms=timestamp_ms)
        return self._to_outputs(values)

    def create_runner(self) -> PipelinedStylizer:
        return PipelinedStylizer(self)


class PipelinedStylizer:
    """Streams frames through a pipeline with per-stage workers."""

    def __init__(self, pipeline: StylizerPipeline) -> None:
        self._pipeline = pipeline
        self._runner = PipelinedRunner(pipeline.graph)

    def submit(
        self,
        image: Image,
        norm_rect: NormalizedRect | None = None,
        timestamp_ms: int | None = None,
    ) -> PendingOutputs:
        frame = self._runner.submit(image=image, norm_rect=norm_rect, timestamp_ms=timestamp_ms)
        return PendingOutputs(self._pipeline, frame)

    def shutdown(self) -> None:
        self._runner.shutdown()


class PendingOutputs:
    def __init__(self, pipeline: StylizerPipeline, frame: PendingFrame) -> None:
        self._pipeline = pipeline
        self._frame = frame

    def result(self, timeout: float | None = None) -> StylizerOutputs:
        return self._pipeline._to_outputs(self._frame.result(timeout))


def build_face_stylizer_graph(
    options: PipelineOptions,
    landmarker: FaceLandmarker,
    inference: InferenceOperator,
) -> StylizerPipeline:
    """Validate the configuration and assemble the face stylizer graph.

    Raises:
        InvalidArgumentError: On any configuration error; no graph is returned.
    """
    check_face_count(options.face_landmarker.num_faces)
    check_face_count(landmarker.num_faces)

    use_gpu = determine_use_gpu(options.acceleration)
    backend = select_backend(use_gpu)
    preprocessing = configure_preprocessing(options, inference)
    postprocessing = PostprocessingConfig.from_preprocessing(preprocessing, options.output_tensor_float_range)
    check_model_output(inference, postprocessing)

    path = backend.location
    selection = options.landmark_selection

    def detect_landmarks(
        image: Image,
        norm_rect: NormalizedRect | None = None,
        timestamp_ms: int | None = None,
    ) -> dict[str, Any]:
        region = norm_rect if norm_rect is not None else NormalizedRect.full_frame()
        return {"landmark_sets": landmarker.detect(image, region, timestamp_ms)}

    def select_face(landmark_sets: Sequence[Any]) -> dict[str, Any]:
        return {"landmarks": select_single_face(landmark_sets)}

    def image_properties(image: Image) -> dict[str, Any]:
        return {"size": image.size}

    def face_to_rect(landmarks: Sequence[Any], size: tuple[int, int]) -> dict[str, Any]:
        return {"norm_rect": landmarks_to_rect(landmarks, size, selection)}

    def infer(tensor: Tensor) -> dict[str, Any]:
        output = np.asarray(inference.run(tensor.data))
        if output.shape[:2] != tensor.data.shape[:2]:
            raise InvalidArgumentError(
                f"Model produced shape {output.shape} for a {tensor.data.shape} input; height and width must match"
            )
        if postprocessing.value_range.kind == "float":
            output = output.astype(np.float32, copy=False)
        elif output.dtype != np.uint8:
            raise InvalidArgumentError(f"Model produced {output.dtype} but a uint range is configured")
        return {"tensor": Tensor(data=output, value_range=postprocessing.value_range)}

    builder = GraphBuilder()
    image_in = builder.add_input("image", Image, location=Location.CPU)
    norm_rect_in = builder.add_input("norm_rect", NormalizedRect, optional=True)
    timestamp_in = builder.add_input("timestamp_ms", int, optional=True)

    landmarks_out = builder.add_stage(
        Stage(
            "face_landmarker",
            detect_landmarks,
            inputs={
                "image": Port(Image, location=Location.CPU),
                "norm_rect": Port(NormalizedRect, optional=True),
                "timestamp_ms": Port(int, optional=True),
            },
            outputs={"landmark_sets": Port(Sequence)},
        ),
        image=image_in,
        norm_rect=norm_rect_in,
        timestamp_ms=timestamp_in,
    )
    face_out = builder.add_stage(
        Stage("select_face", select_face, inputs={"landmark_sets": Port(Sequence)}, outputs={"landmarks": Port(Sequence)}),
        landmark_sets=landmarks_out["landmark_sets"],
    )
    size_out = builder.add_stage(
        Stage("image_properties", image_properties, inputs={"image": Port(Image)}, outputs={"size": Port(tuple)}),
        image=image_in,
    )
    rect_out = builder.add_stage(
        Stage(
            "face_to_rect",
            face_to_rect,
            inputs={"landmarks": Port(Sequence), "size": Port(tuple)},
            outputs={"norm_rect": Port(NormalizedRect)},
        ),
        landmarks=face_out["landmarks"],
        size=size_out["size"],
    )
    preprocessing_out = builder.add_stage(
        Stage(
            "image_preprocessing",
            ImagePreprocessor(preprocessing, backend),
            inputs={"image": Port(Image, location=Location.CPU), "norm_rect": Port(NormalizedRect)},
            outputs={
                "tensor": Port(Tensor),
                "matrix": Port(AffineTransform),
                "image": Port(Image, location=path),
            },
        ),
        image=image_in,
        norm_rect=rect_out["norm_rect"],
    )
    inference_out = builder.add_stage(
        Stage("inference", infer, inputs={"tensor": Port(Tensor)}, outputs={"tensor": Port(Tensor)}),
        tensor=preprocessing_out["tensor"],
    )
    tensor_image_out = builder.add_stage(
        Stage(
            "tensors_to_image",
            TensorsToImage(postprocessing, backend),
            inputs={"tensor": Port(Tensor)},
            outputs={"image": Port(Image, location=path)},
        ),
        tensor=inference_out["tensor"],
    )
    inverse_out = builder.add_stage(
        Stage(
            "inverse_matrix",
            invert_matrix,
            inputs={"matrix": Port(AffineTransform)},
            outputs={"matrix": Port(AffineTransform)},
        ),
        matrix=preprocessing_out["matrix"],
    )
    warp_out = builder.add_stage(
        Stage(
            "warp_affine",
            WarpBack(backend),
            inputs={
                "image": Port(Image, location=path),
                "matrix": Port(AffineTransform),
                "output_size": Port(tuple),
            },
            outputs={"image": Port(Image, location=path)},
        ),
        image=tensor_image_out["image"],
        matrix=inverse_out["matrix"],
        output_size=size_out["size"],
    )
    stylized = warp_out["image"]

    if options.output_face_crop:
        unrotated_out = builder.add_stage(
            Stage(
                "strip_rotation",
                strip_rect_rotation,
                inputs={"norm_rect": Port(NormalizedRect)},
                outputs={"norm_rect": Port(NormalizedRect)},
            ),
            norm_rect=rect_out["norm_rect"],
        )
        crop_out = builder.add_stage(
            Stage(
                "image_cropping",
                FaceCropper(postprocessing, backend),
                inputs={"image": Port(Image, location=path), "norm_rect": Port(NormalizedRect)},
                outputs={"image": Port(Image, location=path)},
            ),
            image=stylized,
            norm_rect=unrotated_out["norm_rect"],
        )
        stylized = crop_out["image"]

    builder.set_output("stylized_image", stylized)
    builder.set_output("image", preprocessing_out["image"])
    graph = builder.build()

    logger.info(
        "Assembled face stylizer graph (path=%s, tensor=%dx%dx%d, input_range=%s[%g, %g], face_crop=%s, stages=%d)",
        path,
        preprocessing.output_width,
        preprocessing.output_height,
        preprocessing.channels,
        preprocessing.value_range.kind,
        preprocessing.value_range.min,
        preprocessing.value_range.max,
        options.output_face_crop,
        len(graph.nodes),
    )
    return StylizerPipeline(graph, backend, preprocessing, postprocessing)
