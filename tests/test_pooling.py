import numpy as np
import pytest

from segnetgraph.layer import CombinedTensor, LayerError
from segnetgraph.pooling import MaxPoolingLayer


def _build(layer, samples, width, height, maps):
    inp = CombinedTensor(samples, width, height, maps)
    (out,) = layer.create_outputs([inp])
    layer.connect([inp], [out], None)
    return inp, out


def test_output_shape():
    layer = MaxPoolingLayer(2, 3)
    inp = CombinedTensor(2, 4, 6, 3)
    (out,) = layer.create_outputs([inp])
    assert (out.samples, out.width, out.height, out.maps) == (2, 2, 2, 3)


def test_not_divisible():
    layer = MaxPoolingLayer(2, 2)
    with pytest.raises(LayerError):
        layer.create_outputs([CombinedTensor(1, 3, 4, 1)])


def test_input_count_and_null():
    layer = MaxPoolingLayer(2, 2)
    t = CombinedTensor(1, 4, 4, 1)
    with pytest.raises(LayerError):
        layer.create_outputs([t, t])
    with pytest.raises(LayerError):
        layer.create_outputs([None])


def test_invalid_region():
    with pytest.raises(ValueError):
        MaxPoolingLayer(0, 2)


def test_forward_picks_planted_maxima_and_backprop_routes_there():
    rng = np.random.default_rng(0)
    layer = MaxPoolingLayer(2, 2)
    inp, out = _build(layer, 2, 4, 4, 2)
    inp.data[...] = rng.random(inp.data.shape, dtype=np.float32)
    planted = {}
    for s in range(2):
        for m in range(2):
            for oy in range(2):
                for ox in range(2):
                    y = oy * 2 + int(rng.integers(2))
                    x = ox * 2 + int(rng.integers(2))
                    value = 10.0 + s + m + oy + ox
                    inp.data[s, m, y, x] = value
                    planted[(s, m, oy, ox)] = (y, x, value)
    layer.feed_forward()
    for (s, m, oy, ox), (_, _, value) in planted.items():
        assert out.data[s, m, oy, ox] == pytest.approx(value)

    out.delta[...] = rng.random(out.delta.shape, dtype=np.float32) + 1.0
    inp.delta[...] = 99.0
    layer.back_propagate()
    for (s, m, oy, ox), (y, x, _) in planted.items():
        assert inp.delta[s, m, y, x] == out.delta[s, m, oy, ox]
    assert np.count_nonzero(inp.delta) == out.delta.size
    assert float(inp.delta.sum()) == pytest.approx(float(out.delta.sum()))


def test_tie_goes_to_first_in_x_major_order():
    layer = MaxPoolingLayer(2, 2)
    inp, out = _build(layer, 1, 2, 2, 1)
    inp.data[0, 0, 0, 1] = 5.0  # x=1, y=0
    inp.data[0, 0, 1, 0] = 5.0  # x=0, y=1
    layer.feed_forward()
    assert out.data[0, 0, 0, 0] == 5.0
    out.delta[...] = 7.0
    layer.back_propagate()
    assert inp.delta[0, 0, 1, 0] == 7.0
    assert inp.delta[0, 0, 0, 1] == 0.0


def test_uniform_region_routes_to_origin():
    layer = MaxPoolingLayer(2, 2)
    inp, out = _build(layer, 1, 4, 2, 1)
    inp.data[...] = 1.0
    layer.feed_forward()
    out.delta[...] = 3.0
    layer.back_propagate()
    assert inp.delta[0, 0, 0, 0] == 3.0
    assert inp.delta[0, 0, 0, 2] == 3.0
    assert np.count_nonzero(inp.delta) == 2


def test_output_max_equals_input_max():
    rng = np.random.default_rng(1)
    layer = MaxPoolingLayer(3, 2)
    inp, out = _build(layer, 2, 6, 4, 3)
    inp.data[...] = rng.normal(size=inp.data.shape).astype(np.float32)
    layer.feed_forward()
    assert out.data.max() == inp.data.max()
    assert np.isin(out.data, inp.data).all()


def test_description_mentions_region():
    assert "3x2" in MaxPoolingLayer(3, 2).description()