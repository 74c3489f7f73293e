"""Max pooling over non-overlapping rectangular regions."""
from __future__ import annotations

import numpy as np

from .layer import CombinedTensor, LayerError, SimpleLayer


class MaxPoolingLayer(SimpleLayer):
    """Takes the maximum over each region_width x region_height block."""

    def __init__(self, region_width, region_height):
        super().__init__()
        if region_width <= 0 or region_height <= 0:
            raise ValueError("Region dimensions must be positive")
        self.region_width = int(region_width)
        self.region_height = int(region_height)
        self._max_x = np.zeros((0, 0, 0, 0), dtype=np.intp)
        self._max_y = np.zeros((0, 0, 0, 0), dtype=np.intp)
        self._output_width = 0
        self._output_height = 0

    def create_outputs(self, inputs):
        inp = self._only_input(inputs)
        if inp.width % self.region_width != 0 or inp.height % self.region_height != 0:
            raise LayerError("Input dimensions not divisible by region dimensions!")
        return [
            CombinedTensor(
                inp.samples,
                inp.width // self.region_width,
                inp.height // self.region_height,
                inp.maps,
            )
        ]

    def connect_single(self, input, output):
        self._output_width = output.width
        self._output_height = output.height
        shape = (input.samples, input.maps, output.height, output.width)
        self._max_x = np.zeros(shape, dtype=np.intp)
        self._max_y = np.zeros(shape, dtype=np.intp)

    def feed_forward(self):
        x = self.input.data
        samples, maps = x.shape[:2]
        rw, rh = self.region_width, self.region_height
        ow, oh = self._output_width, self._output_height
        region = x[:, :, : oh * rh, : ow * rw]
        # Scan order inside a region is x-major so ties go to the smallest x
        blocks = (
            region.reshape(samples, maps, oh, rh, ow, rw)
            .transpose(0, 1, 2, 4, 5, 3)
            .reshape(samples, maps, oh, ow, rw * rh)
        )
        winner = blocks.argmax(axis=-1)
        self.output.data[...] = np.take_along_axis(blocks, winner[..., None], axis=-1)[..., 0]
        self._max_x = np.arange(ow)[None, None, None, :] * rw + winner // rh
        self._max_y = np.arange(oh)[None, None, :, None] * rh + winner % rh

    def back_propagate(self):
        delta = self.input.delta
        delta.fill(0)
        samples, maps = self._max_x.shape[:2]
        s_idx = np.arange(samples)[:, None, None, None]
        m_idx = np.arange(maps)[None, :, None, None]
        delta[s_idx, m_idx, self._max_y, self._max_x] = self.output.delta

    def description(self):
        return f"Max Pooling Layer ({self.region_width}x{self.region_height})"