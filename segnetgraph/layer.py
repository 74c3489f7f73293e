"""Core tensor container and the abstract layer hierarchy."""
from __future__ import annotations

import abc
from dataclasses import dataclass
from typing import Any, Optional, Sequence

import numpy as np

DATUM = np.float32


class LayerError(Exception):
    """Raised when a layer cannot create its outputs or cannot connect."""


class CombinedTensor:
    """Paired data and gradient arrays, laid out as (samples, maps, height, width)."""

    def __init__(self, samples, width, height, maps):
        dims = (samples, width, height, maps)
        if any(int(d) < 0 for d in dims):
            raise ValueError(f"Tensor dimensions must be non-negative: {dims}")
        shape = (int(samples), int(maps), int(height), int(width))
        self.data = np.zeros(shape, dtype=DATUM)
        self.delta = np.zeros(shape, dtype=DATUM)

    @property
    def samples(self) -> int:
        return self.data.shape[0]

    @property
    def maps(self) -> int:
        return self.data.shape[1]

    @property
    def height(self) -> int:
        return self.data.shape[2]

    @property
    def width(self) -> int:
        return self.data.shape[3]

    def elements(self) -> int:
        """Number of scalar values held in the data array."""
        return int(self.data.size)

    def __str__(self) -> str:
        return f"({self.samples}s@{self.width}x{self.height}x{self.maps}m)"

    def __repr__(self) -> str:
        return (
            f"CombinedTensor(samples={self.samples}, width={self.width}, "
            f"height={self.height}, maps={self.maps})"
        )


@dataclass
class BufferDescriptor:
    """Describes one output buffer that a layer produces."""

    description: str


class Layer(abc.ABC):
    """A unit of computation in a network graph."""

    def __init__(self) -> None:
        self.parameters: list[CombinedTensor] = []
        self.local_lr: float = 1.0
        self.backprop_enabled: bool = True

    @abc.abstractmethod
    def create_outputs(self, inputs: Sequence[Optional[CombinedTensor]]) -> list[CombinedTensor]:
        """Return freshly allocated output tensors for the given inputs."""

    @abc.abstractmethod
    def connect(
        self,
        inputs: Sequence[Optional[CombinedTensor]],
        outputs: Sequence[Optional[CombinedTensor]],
        net: Any,
    ) -> None:
        """Bind the layer to its input and output tensors."""

    @abc.abstractmethod
    def feed_forward(self) -> None:
        """Compute outputs from inputs."""

    @abc.abstractmethod
    def back_propagate(self) -> None:
        """Compute input gradients from output gradients."""

    @abc.abstractmethod
    def create_buffer_descriptors(self) -> list[BufferDescriptor]:
        """Describe the output buffers this layer produces."""

    def description(self) -> str:
        """Short human-readable description of the layer."""
        return type(self).__name__

    def on_layer_connect(self, layers: Sequence["Layer"]) -> None:
        """Hook called with the layers consuming this layer's outputs."""


class SimpleLayer(Layer):
    """A layer with exactly one input and one output."""

    def __init__(self) -> None:
        super().__init__()
        self.input: Optional[CombinedTensor] = None
        self.output: Optional[CombinedTensor] = None
        self.net: Any = None

    @staticmethod
    def _only_input(inputs: Sequence[Optional[CombinedTensor]]) -> CombinedTensor:
        if len(inputs) != 1:
            raise LayerError("Only one input supported!")
        if inputs[0] is None:
            raise LayerError("Null pointer input node!")
        return inputs[0]

    def connect(self, inputs, outputs, net) -> None:
        if len(inputs) != 1:
            raise LayerError("Number of inputs not 1")
        if len(outputs) != 1:
            raise LayerError("Number of outputs not 1")
        if inputs[0] is None or outputs[0] is None:
            raise LayerError("Tried to connect to a null pointer!")

        # Validate before changing any state
        self.connect_single(inputs[0], outputs[0])

        self.input = inputs[0]
        self.output = outputs[0]
        self.net = net

    @abc.abstractmethod
    def connect_single(self, input: CombinedTensor, output: CombinedTensor) -> None:
        """Validate a single input/output pair; raise LayerError if unusable."""

    def create_buffer_descriptors(self) -> list[BufferDescriptor]:
        return [BufferDescriptor("Output")]


class LossFunctionLayer(Layer):
    """A layer that computes a scalar loss."""

    @abc.abstractmethod
    def calculate_loss(self) -> float:
        """Return the loss for the current batch."""


class TrainingLayer(Layer):
    """A layer that supplies training or testing samples."""

    @abc.abstractmethod
    def set_testing_mode(self, testing: bool) -> None:
        """Switch between the training and the testing set."""

    @property
    @abc.abstractmethod
    def batch_size(self) -> int:
        """Samples delivered per feed forward."""

    @property
    @abc.abstractmethod
    def label_width(self) -> int:
        """Width of the label maps."""

    @property
    @abc.abstractmethod
    def label_height(self) -> int:
        """Height of the label maps."""

    @property
    @abc.abstractmethod
    def samples_in_training_set(self) -> int:
        """Number of samples in the training set."""

    @property
    @abc.abstractmethod
    def samples_in_testing_set(self) -> int:
        """Number of samples in the testing set."""

    @property
    def loss_sampling_probability(self) -> float:
        """Probability with which a pixel contributes to the loss."""
        return 1.0


class StatLayer(Layer):
    """A layer that gathers statistics on its inputs."""

    @abc.abstractmethod
    def update_all(self) -> None:
        """Refresh all derived statistics."""

    @abc.abstractmethod
    def print_stats(self, prefix: str, training: bool) -> None:
        """Report the statistics, labelled with prefix."""