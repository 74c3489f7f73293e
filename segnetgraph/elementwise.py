"""Layers that work element by element on their inputs."""
from __future__ import annotations

import logging

from .layer import BufferDescriptor, CombinedTensor, Layer, LayerError, SimpleLayer

_log = logging.getLogger(__name__)


class NonLinearityLayer(SimpleLayer):
    """Base for activation layers whose output has the input's shape."""

    def create_outputs(self, inputs):
        inp = self._only_input(inputs)
        return [CombinedTensor(inp.samples, inp.width, inp.height, inp.maps)]

    def connect_single(self, input, output):
        if (
            input.samples != output.samples
            or input.width != output.width
            or input.height != output.height
            or input.maps != output.maps
        ):
            raise LayerError("Input and output dimensions differ!")


class SumLayer(Layer):
    """Adds two inputs of the same shape."""

    def __init__(self) -> None:
        super().__init__()
        self.input_a: CombinedTensor | None = None
        self.input_b: CombinedTensor | None = None
        self.output: CombinedTensor | None = None
        self.maps = 0
        self.samples = 0

    def create_outputs(self, inputs):
        if len(inputs) != 2:
            raise LayerError("Needs two inputs!")
        input_a, input_b = inputs
        if input_a is None or input_b is None:
            raise LayerError("Null pointer supplied")
        if input_a.width != input_b.width and input_a.height != input_b.height:
            _log.error("Dimensions don't match!")
        if input_a.samples != input_b.samples:
            raise LayerError("Sample count doesn't match!")
        if input_a.maps != input_b.maps:
            raise LayerError("Map count doesn't match")
        return [CombinedTensor(input_a.samples, input_a.width, input_b.height, input_a.maps)]

    def connect(self, inputs, outputs, net):
        if len(inputs) != 2:
            raise LayerError("Needs two inputs!")
        if len(outputs) != 1:
            raise LayerError("Needs exactly one output!")
        input_a, input_b = inputs
        output = outputs[0]
        if input_a is None or input_b is None or output is None:
            raise LayerError("Null pointer supplied")
        if input_a.samples != input_b.samples:
            raise LayerError("Sample count doesn't match!")
        if output.elements() != input_a.elements() and output.elements() != input_b.elements():
            raise LayerError("Wrong output dimensions!")
        self.maps = input_a.maps
        self.samples = input_a.samples
        self.input_a = input_a
        self.input_b = input_b
        self.output = output

    def feed_forward(self):
        self.output.data[...] = self.input_a.data + self.input_b.data

    def back_propagate(self):
        delta = self.output.delta
        self.input_a.delta[...] = delta.reshape(self.input_a.delta.shape)
        self.input_b.delta[...] = delta.reshape(self.input_b.delta.shape)

    def create_buffer_descriptors(self):
        return [BufferDescriptor("Output")]

    def description(self):
        return "Sum Layer"