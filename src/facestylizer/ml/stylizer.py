"""Face stylizer task API.

Running modes:
    IMAGE        ``stylize``: one independent image, synchronous.
    VIDEO        ``stylize_for_video``: frames with increasing timestamps, synchronous.
    LIVE_STREAM  ``stylize_async``: frames are pipelined across stage workers and
                 results reach the result listener in submission order.
"""

from __future__ import annotations

import logging
import queue
import threading
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import StrEnum
from typing import TYPE_CHECKING

from facestylizer.errors import FailedPreconditionError, InvalidArgumentError
from facestylizer.ml.landmarker import MediaPipeFaceLandmarker
from facestylizer.ml.stylizer_graph import (
    PipelineOptions,
    build_face_stylizer_graph,
    configure_landmarker,
    resolve_options,
)
from facestylizer.ml.stylizer_model import OnnxInferenceOperator

if TYPE_CHECKING:
    from types import TracebackType

    from facestylizer.ml.geometry import NormalizedRect
    from facestylizer.ml.image import Image
    from facestylizer.ml.landmarker import FaceLandmarker
    from facestylizer.ml.model_manager import OnnxModelManager
    from facestylizer.ml.stylizer_graph import PendingOutputs, StylizerPipeline

logger = logging.getLogger(__name__)


class RunningMode(StrEnum):
    IMAGE = "image"
    VIDEO = "video"
    LIVE_STREAM = "live_stream"


@dataclass(frozen=True)
class FaceStylizerResult:
    """Stylized output of one frame. ``stylized_image`` is None when no face was found."""

    stylized_image: Image | None
    timestamp_ms: int | None = None

    @property
    def face_found(self) -> bool:
        return self.stylized_image is not None


ResultListener = Callable[[FaceStylizerResult, "Image"], None]
ErrorListener = Callable[[Exception], None]


@dataclass(frozen=True)
class FaceStylizerOptions:
    pipeline: PipelineOptions = field(default_factory=PipelineOptions)
    running_mode: RunningMode = RunningMode.IMAGE
    result_listener: ResultListener | None = None
    error_listener: ErrorListener | None = None


class FaceStylizer:
    """Stylizes the single face in images, video frames, or a live stream."""

    def __init__(
        self,
        pipeline: StylizerPipeline,
        options: FaceStylizerOptions,
        landmarker: FaceLandmarker | None = None,
    ) -> None:
        live = options.running_mode == RunningMode.LIVE_STREAM
        if live and options.result_listener is None:
            raise InvalidArgumentError(
                "The face stylizer is in the live stream mode, a user-defined result listener "
                "must be provided in FaceStylizerOptions."
            )
        if not live and options.result_listener is not None:
            raise InvalidArgumentError("A result listener can only be used in the live stream mode.")

        self._pipeline = pipeline
        self._options = options
        self._landmarker = landmarker
        self._last_timestamp_ms: int | None = None
        self._state_lock = threading.Lock()
        self._closed = False

        self._runner = pipeline.create_runner() if live else None
        self._deliveries: queue.Queue[tuple[PendingOutputs, int, Image] | None] = queue.Queue()
        self._delivery_thread: threading.Thread | None = None
        if live:
            self._delivery_thread = threading.Thread(
                target=self._deliver,
                name="face-stylizer-results",
                daemon=True,
            )
            self._delivery_thread.start()

    @property
    def running_mode(self) -> RunningMode:
        return self._options.running_mode

    @property
    def use_gpu(self) -> bool:
        return self._pipeline.use_gpu

    # -- Public API ---------------------------------------------------------

    def stylize(self, image: Image, region: NormalizedRect | None = None) -> FaceStylizerResult:
        """Stylize the face in a single image (IMAGE mode)."""
        with self._state_lock:
            self._check_mode(RunningMode.IMAGE, "stylize")
        outputs = self._pipeline.process(image, region)
        return FaceStylizerResult(stylized_image=outputs.stylized_image)

    def stylize_for_video(
        self,
        image: Image,
        timestamp_ms: int,
        region: NormalizedRect | None = None,
    ) -> FaceStylizerResult:
        """Stylize one video frame (VIDEO mode). Timestamps must increase."""
        with self._state_lock:
            self._check_mode(RunningMode.VIDEO, "stylize_for_video")
            self._advance_clock(timestamp_ms)
        outputs = self._pipeline.process(image, region, timestamp_ms)
        return FaceStylizerResult(stylized_image=outputs.stylized_image, timestamp_ms=timestamp_ms)

    def stylize_async(self, image: Image, timestamp_ms: int, region: NormalizedRect | None = None) -> None:
        """Queue one live-stream frame (LIVE_STREAM mode).

        The result listener receives the result and the input image; failures
        go to the error listener. Both are called from a single delivery
        thread, in the order frames were submitted.
        """
        with self._state_lock:
            self._check_mode(RunningMode.LIVE_STREAM, "stylize_async")
            assert self._runner is not None
            self._advance_clock(timestamp_ms)
            pending = self._runner.submit(image, region, timestamp_ms)
            self._deliveries.put((pending, timestamp_ms, image))

    def close(self) -> None:
        """Finish in-flight frames and release resources."""
        with self._state_lock:
            if self._closed:
                return
            self._closed = True
        if self._runner is not None:
            self._runner.shutdown()
            self._deliveries.put(None)
        if self._delivery_thread is not None:
            self._delivery_thread.join()
        if self._landmarker is not None:
            self._landmarker.close()

    def __enter__(self) -> FaceStylizer:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        self.close()

    # -- Internal -----------------------------------------------------------

    def _check_mode(self, expected: RunningMode, method: str) -> None:
        if self._closed:
            raise FailedPreconditionError("The face stylizer has been closed.")
        if self._options.running_mode != expected:
            raise FailedPreconditionError(
                f"{method}() requires the {expected} running mode, "
                f"but the face stylizer was created in the {self._options.running_mode} mode."
            )

    def _advance_clock(self, timestamp_ms: int) -> None:
        if self._last_timestamp_ms is not None and timestamp_ms <= self._last_timestamp_ms:
            raise FailedPreconditionError(
                f"Input timestamp must be monotonically increasing: {timestamp_ms} <= {self._last_timestamp_ms}"
            )
        self._last_timestamp_ms = timestamp_ms

    def _deliver(self) -> None:
        result_listener = self._options.result_listener
        assert result_listener is not None
        while True:
            item = self._deliveries.get()
            if item is None:
                return
            pending, timestamp_ms, image = item
            try:
                outputs = pending.result()
            except Exception as exc:  # noqa: BLE001
                self._report(exc, timestamp_ms)
                continue
            result = FaceStylizerResult(stylized_image=outputs.stylized_image, timestamp_ms=timestamp_ms)
            try:
                result_listener(result, outputs.image or image)
            except Exception as exc:  # noqa: BLE001
                self._report(exc, timestamp_ms)

    def _report(self, exc: Exception, timestamp_ms: int) -> None:
        error_listener = self._options.error_listener
        if error_listener is None:
            logger.error("Face stylization failed for frame at %d ms", timestamp_ms, exc_info=exc)
            return
        try:
            error_listener(exc)
        except Exception:
            logger.exception("Error listener raised for frame at %d ms", timestamp_ms)


def create_face_stylizer(
    options: FaceStylizerOptions,
    model_manager: OnnxModelManager,
    bundle_name: str,
) -> FaceStylizer:
    """Build a FaceStylizer from a model bundle.

    Explicit model assets in ``options.pipeline`` take precedence over the
    bundle's files. Configuration errors are raised before any model loads.
    """
    pipeline_options = options.pipeline.model_copy(
        update={"use_stream_mode": options.running_mode != RunningMode.IMAGE}
    )
    landmarker_options = configure_landmarker(pipeline_options)
    stylizer_given = pipeline_options.stylizer.is_set
    pipeline_options = resolve_options(pipeline_options, model_manager.open_bundle(bundle_name))

    landmarker = MediaPipeFaceLandmarker(
        pipeline_options.face_detector.read(),
        pipeline_options.face_landmarks_detector.read(),
        landmarker_options,
    )
    try:
        if stylizer_given:
            session = model_manager.create_session(pipeline_options.stylizer.read())
        else:
            session = model_manager.get_session(bundle_name)
        pipeline = build_face_stylizer_graph(pipeline_options, landmarker, OnnxInferenceOperator(session))
        return FaceStylizer(pipeline, options, landmarker)
    except Exception:
        landmarker.close()
        raise
