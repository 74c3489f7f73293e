"""Directed graph of layers with forward and backward passes."""
from __future__ import annotations

import logging
import struct
from dataclasses import dataclass
from typing import BinaryIO, Iterable, Optional, TextIO

import numpy as np

from .layer import (
    DATUM,
    BufferDescriptor,
    CombinedTensor,
    Layer,
    LayerError,
    LossFunctionLayer,
    StatLayer,
    TrainingLayer,
)

_log = logging.getLogger(__name__)

_HEADER = struct.Struct("<4Q")


class GraphError(Exception):
    """Raised when the graph is built or used incorrectly."""


class GradientAccumulationLayer(Layer):
    """Copies one input to several outputs and sums their gradients."""

    def __init__(self, output_count):
        super().__init__()
        if output_count < 1:
            raise ValueError("Need at least one output")
        self.output_count = int(output_count)
        self.input: Optional[CombinedTensor] = None
        self.outputs: list[CombinedTensor] = []

    def create_outputs(self, inputs):
        if len(inputs) != 1:
            raise LayerError("Only one input supported!")
        inp = inputs[0]
        if inp is None:
            raise LayerError("Null pointer input node!")
        return [
            CombinedTensor(inp.samples, inp.width, inp.height, inp.maps)
            for _ in range(self.output_count)
        ]

    def connect(self, inputs, outputs, net):
        if len(inputs) != 1:
            raise LayerError("Only one input supported!")
        if len(outputs) != self.output_count:
            raise LayerError("Wrong number of outputs!")
        inp = inputs[0]
        if inp is None or any(out is None for out in outputs):
            raise LayerError("Null pointer supplied")
        if any(out.data.shape != inp.data.shape for out in outputs):
            raise LayerError("Dimensions don't match!")
        self.input = inp
        self.outputs = list(outputs)

    def feed_forward(self):
        for out in self.outputs:
            out.data[...] = self.input.data

    def back_propagate(self):
        total = np.zeros_like(self.input.delta)
        for out in self.outputs:
            total += out.delta
        self.input.delta[...] = total

    def create_buffer_descriptors(self):
        return [BufferDescriptor(f"Output {i}") for i in range(self.output_count)]

    def description(self):
        return "Gradient Accumulation Layer"


@dataclass(eq=False)
class NetGraphConnection:
    """An input edge: which node and which of its buffers feeds this node."""

    node: "NetGraphNode"
    buffer: int = 0
    backprop: bool = True


@dataclass(eq=False)
class NetGraphBackpropConnection:
    """A gradient edge: a node that consumes one of this node's buffers."""

    node: "NetGraphNode"
    buffer: int = 0


@dataclass(eq=False)
class NetGraphBuffer:
    """One output buffer of a node."""

    description: str
    combined_tensor: Optional[CombinedTensor] = None


class NetGraphNode:
    """A layer together with its connections in the graph."""

    def __init__(self, layer, *args, is_input=False, is_output=False, unique_name=""):
        for connection in args:
            if not isinstance(connection, NetGraphConnection):
                raise TypeError("Node inputs must be NetGraphConnection instances")
        self.layer: Optional[Layer] = layer
        self.input_connections: list[NetGraphConnection] = list(args)
        self.backprop_connections: list[NetGraphBackpropConnection] = []
        self.output_buffers: list[NetGraphBuffer] = (
            []
            if layer is None
            else [NetGraphBuffer(d.description) for d in layer.create_buffer_descriptors()]
        )
        self.is_input = bool(is_input)
        self.is_output = bool(is_output)
        self.unique_name = unique_name
        self.initialized = False
        self.flag_ff_visited = False
        self.flag_bp_visited = False

    def __repr__(self) -> str:
        return f"NetGraphNode({self.unique_name!r})"


def _write_tensor(output: BinaryIO, tensor: CombinedTensor) -> None:
    output.write(_HEADER.pack(tensor.samples, tensor.width, tensor.height, tensor.maps))
    output.write(np.ascontiguousarray(tensor.data, dtype="<f4").tobytes())


def _read_tensor_data(stream: BinaryIO) -> Optional[np.ndarray]:
    header = stream.read(_HEADER.size)
    if not header:
        return None
    if len(header) != _HEADER.size:
        raise ValueError("Truncated parameter header")
    samples, width, height, maps = _HEADER.unpack(header)
    count = samples * width * height * maps
    payload = stream.read(count * 4)
    if len(payload) != count * 4:
        raise ValueError("Truncated parameter data")
    values = np.frombuffer(payload, dtype="<f4").astype(DATUM)
    return values.reshape(samples, maps, height, width)


class NetGraph:
    """Holds nodes and runs forward and backward passes over them."""

    def __init__(self) -> None:
        self.nodes: list[NetGraphNode] = []
        self.input_nodes: list[NetGraphNode] = []
        self.output_nodes: list[NetGraphNode] = []
        self.stat_nodes: list[NetGraphNode] = []
        self.loss_nodes: list[NetGraphNode] = []
        self.training_nodes: list[NetGraphNode] = []
        self.is_testing = False
        self.stat_layers_enabled = True
        self._last_uid = 0

    def add_node(self, node):
        """Register a node, naming it and wiring up its gradient edges."""
        if node is None:
            raise GraphError("Tried to add null-pointer node!")
        if node.layer is None:
            raise GraphError("Tried to add layerless node!")

        if not node.unique_name:
            self._last_uid += 1
            node.unique_name = f"node{self._last_uid}"

        self.nodes.append(node)
        if node.is_input:
            self.input_nodes.append(node)
        if node.is_output:
            self.output_nodes.append(node)
        if isinstance(node.layer, StatLayer):
            self.stat_nodes.append(node)
        if isinstance(node.layer, LossFunctionLayer):
            self.loss_nodes.append(node)
        if isinstance(node.layer, TrainingLayer):
            self.training_nodes.append(node)

        for connection in node.input_connections:
            if connection.backprop and not connection.node.is_input:
                connection.node.backprop_connections.append(
                    NetGraphBackpropConnection(node, connection.buffer)
                )
            elif connection.backprop:
                connection.backprop = False

    def is_complete(self):
        """Check the graph's structure, logging every problem found."""
        inputs = outputs = 0
        complete = True

        for node in self.nodes:
            node_okay = True
            if node is None:
                _log.warning("Null-pointer node encountered!")
                complete = False
                continue
            label = node.layer.description() if node.layer is not None else "?"
            if node.layer is not None:
                for connection in node.input_connections:
                    if connection.node is None:
                        _log.warning("Node has null-pointer connection: %s", label)
                        node_okay = False
                    elif connection.node not in self.nodes:
                        _log.warning("Node has out-of-network connection: %s", label)
                    elif connection.buffer >= len(connection.node.output_buffers):
                        _log.warning("Node's connection points to invalid buffer: %s", label)
                        node_okay = False
            else:
                _log.warning("Node has null-pointer for layer!")
                node_okay = False
            if not node.unique_name:
                _log.warning("Node has no unique identifier!")
                node_okay = False
            if node.is_input and node.is_output:
                _log.warning("Node is both input and output!")
                node_okay = False
            inputs += node.is_input
            outputs += node.is_output

            if node_okay:
                _log.debug("Node is okay: %s", label)
            else:
                _log.warning("Node is not okay: %s", label)
                complete = False

        if inputs == 0:
            _log.warning("Net has no inputs!")
            complete = False
        if outputs == 0:
            _log.warning("Net has no outputs!")
            complete = False
        _log.debug("Graph check complete.")
        return complete

    def print_graph(self, stream: TextIO):
        """Write the graph in Graphviz dot syntax to a text stream."""
        if not self.nodes:
            return
        node_parts = ["graph [ranksep=.75, esep=1];"]
        edge_parts = []
        for node in self.nodes:
            node_parts.append(f"{node.unique_name} [shape=record,")
            if node.is_input:
                node_parts.append("color=red,")
            if node.is_output:
                node_parts.append("color=blue,")
            node_parts.append(
                f' label="{{ <i> {node.unique_name}: {node.layer.description()}'
            )
            buffers = [
                f"{buffer.description} {_tensor_text(buffer.combined_tensor)}"
                for buffer in node.output_buffers
            ]
            if len(buffers) > 1:
                node_parts.append(
                    "| {" + "|".join(f"<o{i}>{text}" for i, text in enumerate(buffers)) + "}"
                )
            elif len(buffers) == 1:
                node_parts.append(f"| <o0> {buffers[0]}")
            node_parts.append('}"];\n')

            for connection in node.input_connections:
                style = "" if connection.backprop else ",style=dotted"
                edge_parts.append(
                    f"{connection.node.unique_name}:o{connection.buffer} -> "
                    f"{node.unique_name}:i[penwidth=2{style}];\n"
                )
        stream.write("".join(node_parts))
        stream.write("".join(edge_parts))

    def initialize(self):
        """Insert gradient accumulation where needed and allocate all buffers."""
        changed = True
        while changed:
            changed = False
            for node in list(self.nodes):
                if len(node.backprop_connections) > 1 and not isinstance(
                    node.layer, GradientAccumulationLayer
                ):
                    changed = True
                    _log.info(
                        "Node has multiple backprop connections: %s", node.layer.description()
                    )
                    self._insert_accumulation(node)
        for node in self.nodes:
            self._initialize_node(node)

    def _insert_accumulation(self, node: NetGraphNode) -> None:
        accumulator = GradientAccumulationLayer(len(node.backprop_connections))
        ga_node = NetGraphNode(accumulator, NetGraphConnection(node))
        self.add_node(ga_node)

        next_buffer = 0
        for backprop_connection in node.backprop_connections:
            if backprop_connection.node is ga_node:
                continue
            for target in backprop_connection.node.input_connections:
                if (
                    target.node is node
                    and target.buffer == backprop_connection.buffer
                    and target.backprop
                ):
                    target.node = ga_node
                    backprop_connection.buffer = next_buffer
                    target.buffer = next_buffer
                    next_buffer += 1
            ga_node.backprop_connections.append(backprop_connection)

        node.backprop_connections = [
            bc for bc in node.backprop_connections if bc.node is ga_node
        ]

    def _initialize_node(self, node: NetGraphNode) -> None:
        if node.initialized:
            return
        input_tensors = []
        for connection in node.input_connections:
            self._initialize_node(connection.node)
            input_tensors.append(
                connection.node.output_buffers[connection.buffer].combined_tensor
            )

        try:
            output_tensors = node.layer.create_outputs(input_tensors)
        except LayerError as error:
            first = input_tensors[0] if input_tensors else None
            raise GraphError(
                f"Layer will not create outputs: {node.layer.description()}, input0: {first}"
            ) from error

        if len(output_tensors) != len(node.output_buffers):
            raise GraphError("Node created wrong number of output buffers!")
        for buffer, tensor in zip(node.output_buffers, output_tensors):
            buffer.combined_tensor = tensor

        try:
            node.layer.connect(input_tensors, output_tensors, self)
        except LayerError as error:
            raise GraphError(f"Layer will not connect: {node.layer.description()}") from error

        node.initialized = True

    def feed_forward(self, nodes=None, clear_flag=True):
        """Run the forward pass over the given nodes (all by default)."""
        targets = self.nodes if nodes is None else list(nodes)
        if clear_flag:
            for node in targets:
                node.flag_ff_visited = False
        for node in targets:
            self._feed_forward_node(node)

    def _feed_forward_node(self, node: NetGraphNode) -> None:
        if node.flag_ff_visited:
            return
        for connection in node.input_connections:
            self._feed_forward_node(connection.node)
        node.layer.feed_forward()
        node.flag_ff_visited = True

    def back_propagate(self, nodes=None, clear_flag=True):
        """Run the backward pass over the given nodes (all by default)."""
        targets = self.nodes if nodes is None else list(nodes)
        if clear_flag:
            for node in targets:
                node.flag_bp_visited = False
        for node in targets:
            self._back_propagate_node(node)

    def _back_propagate_node(self, node: NetGraphNode) -> None:
        if node.flag_bp_visited:
            return
        for backprop_connection in node.backprop_connections:
            self._back_propagate_node(backprop_connection.node)
        node.layer.backprop_enabled = any(c.backprop for c in node.input_connections)
        node.layer.back_propagate()
        node.flag_bp_visited = True

    def get_parameters(self):
        """All parameter tensors of all layers, in node order."""
        return [param for node in self.nodes for param in node.layer.parameters]

    def serialize_parameters(self, output: BinaryIO):
        """Write every parameter tensor to a binary stream."""
        for param in self.get_parameters():
            _write_tensor(output, param)

    def deserialize_parameters(self, input: BinaryIO, last_layer=0):
        """Load parameters for nodes up to last_layer (0 means all)."""
        if last_layer == 0 or last_layer >= len(self.nodes):
            last_layer = len(self.nodes) - 1
        for index, node in enumerate(self.nodes[: last_layer + 1]):
            for p, param in enumerate(node.layer.parameters):
                values = _read_tensor_data(input)
                if values is None:
                    return
                elements_before = param.elements()
                param.data = values
                if param.delta.shape != values.shape:
                    param.delta = np.zeros(values.shape, dtype=DATUM)
                _log.info("Loaded parameters for layer %d parameter set %d: %s", index, p, param)
                if elements_before != param.elements():
                    _log.error("Deserialization changed layer parameter count!")

    def initialize_weights(self):
        """Tell each layer which layers consume its outputs, consumers first."""
        for node in self.nodes:
            node.flag_bp_visited = False
        for node in self.nodes:
            self._initialize_weights_node(node)
        for node in self.nodes:
            node.flag_bp_visited = False

    def _initialize_weights_node(self, node: NetGraphNode) -> None:
        if node.flag_bp_visited:
            return
        consumers = []
        for backprop_connection in node.backprop_connections:
            self._initialize_weights_node(backprop_connection.node)
            consumers.append(backprop_connection.node.layer)
        node.layer.on_layer_connect(consumers)
        node.flag_bp_visited = True

    def aggregate_loss(self):
        """Sum of the losses reported by all loss nodes."""
        total = 0.0
        for node in self.loss_nodes:
            if not isinstance(node.layer, LossFunctionLayer):
                raise GraphError("Null pointer in loss node encountered!")
            total += node.layer.calculate_loss()
        return total


def _tensor_text(tensor: Optional[CombinedTensor]) -> str:
    return "(unallocated)" if tensor is None else str(tensor)


def _iter_layers(nodes: Iterable[NetGraphNode]) -> Iterable[Layer]:
    return (node.layer for node in nodes)