"""Layers that change the spatial shape or map count of a tensor."""
from __future__ import annotations

import numpy as np

from .layer import CombinedTensor, LayerError, SimpleLayer


class ResizeLayer(SimpleLayer):
    """Pads the input with a zero border, centred in the enlarged output."""

    def __init__(self, border_x, border_y):
        super().__init__()
        if border_x < 0 or border_y < 0:
            raise ValueError("Border sizes must be non-negative")
        self.border_x = int(border_x)
        self.border_y = int(border_y)

    def create_outputs(self, inputs):
        inp = self._only_input(inputs)
        return [
            CombinedTensor(
                inp.samples,
                inp.width + self.border_x,
                inp.height + self.border_y,
                inp.maps,
            )
        ]

    def connect_single(self, input, output):
        if (
            input.maps != output.maps
            or input.width + self.border_x != output.width
            or input.height + self.border_y != output.height
            or input.samples != output.samples
        ):
            raise LayerError("Dimensions don't match!")

    def feed_forward(self):
        source = self.input.data
        target = self.output.data
        target.fill(0)
        x0 = self.border_x // 2
        y0 = self.border_y // 2
        height, width = source.shape[2:]
        target[:, :, y0 : y0 + height, x0 : x0 + width] = source

    def back_propagate(self):
        """Gradients are not passed through a resize layer."""

    def description(self):
        return f"Resize Layer (+{self.border_x}x{self.border_y})"


class SpatialPriorLayer(SimpleLayer):
    """Prepends two maps holding the normalised x and y coordinates."""

    def create_outputs(self, inputs):
        inp = self._only_input(inputs)
        return [CombinedTensor(inp.samples, inp.width, inp.height, inp.maps + 2)]

    def connect_single(self, input, output):
        if (
            input.maps != output.maps - 2
            or input.width != output.width
            or input.height != output.height
            or input.samples != output.samples
        ):
            raise LayerError("Dimensions don't match!")

    def feed_forward(self):
        source = self.input.data
        target = self.output.data
        height, width = source.shape[2:]
        target[:, 2:] = source
        target[:, 0] = (np.arange(width, dtype=np.float64) / width)[None, None, :]
        target[:, 1] = (np.arange(height, dtype=np.float64) / height)[None, :, None]

    def back_propagate(self):
        self.input.delta[...] = self.output.delta[:, 2:]

    def description(self):
        return "Spatial Prior Layer"


class UpscaleLayer(SimpleLayer):
    """Nearest-neighbour upscaling by integer region factors."""

    def __init__(self, region_width, region_height):
        super().__init__()
        if region_width <= 0 or region_height <= 0:
            raise ValueError("Region dimensions must be positive")
        self.region_width = int(region_width)
        self.region_height = int(region_height)
        self._input_width = 0
        self._input_height = 0
        self._output_width = 0
        self._output_height = 0
        self._maps = 0

    def create_outputs(self, inputs):
        inp = self._only_input(inputs)
        return [
            CombinedTensor(
                inp.samples,
                inp.width * self.region_width,
                inp.height * self.region_height,
                inp.maps,
            )
        ]

    def connect_single(self, input, output):
        self._input_width = input.width
        self._input_height = input.height
        self._output_width = output.width
        self._output_height = output.height
        self._maps = input.maps

    def feed_forward(self):
        source = self.input.data
        enlarged = np.repeat(np.repeat(source, self.region_height, axis=2), self.region_width, axis=3)
        self.output.data[...] = enlarged

    def back_propagate(self):
        samples, maps, height, width = self.input.delta.shape
        blocks = self.output.delta.reshape(
            samples, maps, height, self.region_height, width, self.region_width
        )
        self.input.delta[...] = blocks.sum(axis=(3, 5))

    def description(self):
        return f"Upscale Layer ({self.region_width}x{self.region_height})"