"""Fixed-topology dataflow graph.

A graph is an arena of stage descriptors. Stages refer to the streams they
consume by ``(node index, port name)``; a stage can only consume streams that
already exist when it is added, so node order is a topological order and the
graph is acyclic by construction.

Per frame, each stage is called with its connected inputs as keyword
arguments and returns a mapping of output port name to value. An output that
is missing or ``None`` is *absent*: stages with an absent required input are
skipped for that frame and their outputs are absent as well.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable, Mapping
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Any

from facestylizer.errors import InvalidArgumentError
from facestylizer.ml.image import Location

logger = logging.getLogger(__name__)

GRAPH_INPUT: int = -1


@dataclass(frozen=True)
class Port:
    """A typed stage port. ``location`` pins Image ports to the CPU or GPU path."""

    type: type
    optional: bool = False
    location: Location | None = None


@dataclass(frozen=True)
class StreamRef:
    """Handle to a stream produced by a graph input or a node output."""

    node: int
    port: str
    type: type
    optional: bool = False
    location: Location | None = None

    @property
    def key(self) -> tuple[int, str]:
        return self.node, self.port


@dataclass(frozen=True)
class Stage:
    """A processing step: a callable plus its port declarations."""

    name: str
    fn: Callable[..., Mapping[str, Any] | None]
    inputs: Mapping[str, Port] = field(default_factory=dict)
    outputs: Mapping[str, Port] = field(default_factory=dict)


@dataclass(frozen=True)
class Node:
    stage: Stage
    sources: tuple[tuple[str, StreamRef], ...]

    @property
    def name(self) -> str:
        return self.stage.name


def _check_compatible(stage: Stage, port_name: str, port: Port, source: StreamRef) -> None:
    if not issubclass(source.type, port.type):
        raise InvalidArgumentError(
            f"Stage '{stage.name}' port '{port_name}' expects {port.type.__name__}, "
            f"got {source.type.__name__} from '{source.port}'"
        )
    if port.location is not None and source.location is not None and port.location != source.location:
        raise InvalidArgumentError(
            f"Stage '{stage.name}' port '{port_name}' is on the {port.location} path "
            f"but '{source.port}' is {source.location}-resident"
        )


class GraphBuilder:
    """Accumulates inputs, stages and outputs, validating each connection."""

    def __init__(self) -> None:
        self._inputs: dict[str, StreamRef] = {}
        self._nodes: list[Node] = []
        self._outputs: dict[str, StreamRef] = {}

    def add_input(
        self,
        name: str,
        type_: type,
        *,
        optional: bool = False,
        location: Location | None = None,
    ) -> StreamRef:
        if name in self._inputs:
            raise InvalidArgumentError(f"Duplicate graph input '{name}'")
        ref = StreamRef(GRAPH_INPUT, name, type_, optional, location)
        self._inputs[name] = ref
        return ref

    def add_stage(self, stage: Stage, **sources: StreamRef) -> dict[str, StreamRef]:
        """Append ``stage``, wiring each input port to a source stream.

        Returns:
            A mapping of the stage's output port names to stream handles.
        """
        if any(node.name == stage.name for node in self._nodes):
            raise InvalidArgumentError(f"Duplicate stage name '{stage.name}'")
        unknown = set(sources) - set(stage.inputs)
        if unknown:
            raise InvalidArgumentError(f"Stage '{stage.name}' has no input ports {sorted(unknown)}")

        wired: list[tuple[str, StreamRef]] = []
        for port_name, port in stage.inputs.items():
            source = sources.get(port_name)
            if source is None:
                if not port.optional:
                    raise InvalidArgumentError(f"Stage '{stage.name}' input '{port_name}' is not connected")
                continue
            if source.node != GRAPH_INPUT and not 0 <= source.node < len(self._nodes):
                raise InvalidArgumentError(f"Stage '{stage.name}' input '{port_name}' refers to an unknown stage")
            _check_compatible(stage, port_name, port, source)
            wired.append((port_name, source))

        index = len(self._nodes)
        self._nodes.append(Node(stage=stage, sources=tuple(wired)))
        return {
            name: StreamRef(index, name, port.type, port.optional, port.location)
            for name, port in stage.outputs.items()
        }

    def set_output(self, name: str, ref: StreamRef) -> None:
        if name in self._outputs:
            raise InvalidArgumentError(f"Duplicate graph output '{name}'")
        self._outputs[name] = ref

    def build(self) -> Graph:
        if not self._outputs:
            raise InvalidArgumentError("Graph has no outputs")
        return Graph(
            inputs=dict(self._inputs),
            nodes=tuple(self._nodes),
            outputs=dict(self._outputs),
        )


class Graph:
    """An immutable, validated stage graph evaluated once per frame."""

    def __init__(self, inputs: dict[str, StreamRef], nodes: tuple[Node, ...], outputs: dict[str, StreamRef]) -> None:
        self._inputs = inputs
        self._nodes = nodes
        self._outputs = outputs

    @property
    def input_names(self) -> tuple[str, ...]:
        return tuple(self._inputs)

    @property
    def output_names(self) -> tuple[str, ...]:
        return tuple(self._outputs)

    @property
    def nodes(self) -> tuple[Node, ...]:
        return self._nodes

    def stage_names(self) -> list[str]:
        return [node.name for node in self._nodes]

    def _check_inputs(self, inputs: Mapping[str, Any]) -> dict[tuple[int, str], Any]:
        unknown = set(inputs) - set(self._inputs)
        if unknown:
            raise InvalidArgumentError(f"Unknown graph inputs {sorted(unknown)}")
        values: dict[tuple[int, str], Any] = {}
        for name, ref in self._inputs.items():
            value = inputs.get(name)
            if value is None:
                if not ref.optional:
                    raise InvalidArgumentError(f"Missing required graph input '{name}'")
                continue
            values[ref.key] = value
        return values

    def _evaluate(self, index: int, lookup: Callable[[StreamRef], tuple[bool, Any]]) -> dict[str, Any]:
        node = self._nodes[index]
        kwargs: dict[str, Any] = {}
        for port_name, source in node.sources:
            present, value = lookup(source)
            if not present:
                if node.stage.inputs[port_name].optional:
                    continue
                logger.debug("Skipping stage %s: input %s is absent", node.name, port_name)
                return {}
            kwargs[port_name] = value
        result = node.stage.fn(**kwargs) or {}
        return {name: value for name, value in result.items() if name in node.stage.outputs and value is not None}

    def run(self, **inputs: Any) -> dict[str, Any]:
        """Evaluate every stage for one frame and return the graph outputs.

        Absent outputs are reported as ``None``.
        """
        values = self._check_inputs(inputs)

        def lookup(ref: StreamRef) -> tuple[bool, Any]:
            return ref.key in values, values.get(ref.key)

        for index in range(len(self._nodes)):
            for name, value in self._evaluate(index, lookup).items():
                values[(index, name)] = value
        return {name: values.get(ref.key) for name, ref in self._outputs.items()}


class PendingFrame:
    """Outputs of a frame submitted to a :class:`PipelinedRunner`."""

    def __init__(self, outputs: dict[str, StreamRef], node_futures: list[Future[dict[str, Any]]]) -> None:
        self._outputs = outputs
        self._node_futures = node_futures

    def result(self, timeout: float | None = None) -> dict[str, Any]:
        """Block until the frame's outputs are ready.

        Re-raises the first error raised by a stage for this frame.
        """
        resolved: dict[str, Any] = {}
        for name, ref in self._outputs.items():
            if ref.node == GRAPH_INPUT:
                raise InvalidArgumentError(f"Graph output '{name}' must come from a stage")
            resolved[name] = self._node_futures[ref.node].result(timeout).get(ref.port)
        return resolved


class PipelinedRunner:
    """Evaluates a graph over a stream of frames with one worker per stage.

    Each stage sees frames in submission order, so frames flow through the
    graph FIFO while stage N of one frame overlaps stage N-1 of the next.
    """

    def __init__(self, graph: Graph) -> None:
        self._graph = graph
        self._executors = [
            ThreadPoolExecutor(max_workers=1, thread_name_prefix=f"stage-{node.name}") for node in graph.nodes
        ]
        self._submit_lock = threading.Lock()

    def submit(self, **inputs: Any) -> PendingFrame:
        values = self._graph._check_inputs(inputs)
        node_futures: list[Future[dict[str, Any]]] = []

        def lookup(ref: StreamRef) -> tuple[bool, Any]:
            if ref.node == GRAPH_INPUT:
                return ref.key in values, values.get(ref.key)
            produced = node_futures[ref.node].result()
            return ref.port in produced, produced.get(ref.port)

        with self._submit_lock:
            for index, executor in enumerate(self._executors):
                node_futures.append(executor.submit(self._graph._evaluate, index, lookup))
        return PendingFrame(self._graph._outputs, node_futures)

    def shutdown(self) -> None:
        """Finish queued frames and stop the stage workers."""
        for executor in self._executors:
            executor.shutdown(wait=True)
