import numpy as np
import pytest

from segnetgraph.elementwise import NonLinearityLayer, SumLayer
from segnetgraph.layer import CombinedTensor, LayerError


class _Relu(NonLinearityLayer):
    def feed_forward(self):
        self.output.data[...] = np.maximum(self.input.data, 0)

    def back_propagate(self):
        self.input.delta[...] = self.output.delta * (self.input.data > 0)


def test_nonlinearity_output_has_input_shape():
    inp = CombinedTensor(2, 5, 3, 4)
    (out,) = _Relu().create_outputs([inp])
    assert out.data.shape == inp.data.shape


def test_nonlinearity_rejects_two_inputs():
    with pytest.raises(LayerError):
        _Relu().create_outputs([CombinedTensor(1, 2, 2, 1), CombinedTensor(1, 2, 2, 1)])


def test_nonlinearity_rejects_none_input():
    with pytest.raises(LayerError):
        NonLinearityLayer.create_outputs(_Relu(), [None])


def test_nonlinearity_connect_rejects_mismatch():
    layer = _Relu()
    with pytest.raises(LayerError):
        layer.connect([CombinedTensor(1, 2, 2, 1)], [CombinedTensor(1, 3, 2, 1)], None)
    assert layer.input is None


def test_nonlinearity_connect_and_run():
    layer = _Relu()
    inp = CombinedTensor(1, 2, 1, 1)
    (out,) = layer.create_outputs([inp])
    layer.connect([inp], [out], None)
    inp.data[...] = np.array([-1.0, 2.0]).reshape(inp.data.shape)
    layer.feed_forward()
    assert out.data.ravel().tolist() == [0.0, 2.0]


def test_sum_requires_two_inputs():
    with pytest.raises(LayerError):
        SumLayer().create_outputs([CombinedTensor(1, 2, 2, 1)])


def test_sum_rejects_none():
    with pytest.raises(LayerError):
        SumLayer().create_outputs([CombinedTensor(1, 2, 2, 1), None])


def test_sum_rejects_sample_mismatch():
    with pytest.raises(LayerError, match="Sample"):
        SumLayer().create_outputs([CombinedTensor(1, 2, 2, 1), CombinedTensor(2, 2, 2, 1)])


def test_sum_rejects_map_mismatch():
    with pytest.raises(LayerError, match="Map"):
        SumLayer().create_outputs([CombinedTensor(1, 2, 2, 1), CombinedTensor(1, 2, 2, 3)])


def test_sum_output_shape():
    a = CombinedTensor(2, 4, 3, 5)
    b = CombinedTensor(2, 4, 3, 5)
    (out,) = SumLayer().create_outputs([a, b])
    assert out.data.shape == a.data.shape


def _connected_sum():
    a = CombinedTensor(1, 3, 2, 1)
    b = CombinedTensor(1, 3, 2, 1)
    layer = SumLayer()
    (out,) = layer.create_outputs([a, b])
    layer.connect([a, b], [out], None)
    return layer, a, b, out


def test_sum_feed_forward_adds():
    layer, a, b, out = _connected_sum()
    a.data[...] = np.arange(6).reshape(a.data.shape)
    b.data[...] = 10 * np.arange(6).reshape(b.data.shape)
    layer.feed_forward()
    np.testing.assert_allclose(out.data, a.data + b.data)


def test_sum_back_propagate_copies_gradient():
    layer, a, b, out = _connected_sum()
    out.delta[...] = np.arange(6).reshape(out.delta.shape)
    layer.back_propagate()
    np.testing.assert_array_equal(a.delta, out.delta)
    np.testing.assert_array_equal(b.delta, out.delta)


def test_sum_connect_records_dimensions():
    layer, a, _, _ = _connected_sum()
    assert (layer.samples, layer.maps) == (a.samples, a.maps)


def test_sum_connect_needs_one_output():
    a = CombinedTensor(1, 2, 2, 1)
    b = CombinedTensor(1, 2, 2, 1)
    with pytest.raises(LayerError):
        SumLayer().connect([a, b], [CombinedTensor(1, 2, 2, 1), CombinedTensor(1, 2, 2, 1)], None)


def test_sum_connect_rejects_wrong_output_size():
    a = CombinedTensor(1, 2, 2, 1)
    b = CombinedTensor(1, 2, 2, 1)
    with pytest.raises(LayerError, match="output"):
        SumLayer().connect([a, b], [CombinedTensor(1, 5, 2, 1)], None)


def test_sum_buffer_descriptors():
    descriptors = SumLayer().create_buffer_descriptors()
    assert [d.description for d in descriptors] == ["Output"]