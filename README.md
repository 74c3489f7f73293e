# segnetgraph

Build a neural network as a directed graph of layers, run it forwards and
backwards over 4-D tensors, and train its parameters with gradient descent or
QuickProp.

A `CombinedTensor` holds a `data` array and a `delta` (gradient) array of the
same shape, laid out as `(samples, maps, height, width)` in `float32`. Its
constructor takes `CombinedTensor(samples, width, height, maps)`. Layers
create their own output tensors from their inputs, so a graph only needs to
know how its nodes are wired.

## Installing

```
pip install .
```

For running the tests:

```
pip install ".[test]"
pytest
```

## Layers

- `segnetgraph.layer`: `CombinedTensor`, `BufferDescriptor`, the abstract
  `Layer` and `SimpleLayer` (one input, one output) base classes, and the
  abstract roles `LossFunctionLayer`, `TrainingLayer` and `StatLayer` that the
  graph and trainer look for. `LayerError` is raised when a layer cannot
  create its outputs or connect to its tensors.
- `segnetgraph.pooling`: `MaxPoolingLayer(region_width, region_height)` takes
  the maximum over each non-overlapping region and sends gradients back to
  the position of that maximum. Input width and height must be multiples of
  the region size.
- `segnetgraph.shape_layers`:
  - `ResizeLayer(border_x, border_y)` pads the input with zeros, centring it
    in the enlarged output. It passes no gradient back.
  - `SpatialPriorLayer` prepends two maps holding each pixel's `x / width` and
    `y / height`.
  - `UpscaleLayer(region_width, region_height)` repeats each pixel over a
    region; its backward pass sums the gradients of each region.
- `segnetgraph.elementwise`: `NonLinearityLayer`, a base for activations whose
  output has the input's shape (subclasses supply `feed_forward` and
  `back_propagate`), and `SumLayer`, which adds two inputs and passes the
  output gradient to both.

## Graphs

`segnetgraph.netgraph.NetGraph` holds `NetGraphNode` objects joined by
`NetGraphConnection(node, buffer=0, backprop=True)` edges. Add nodes with
`add_node` (unnamed nodes are called `node1`, `node2`, ...), check the wiring
with `is_complete`, then call `initialize` to create every buffer. Where one
output feeds several layers that back-propagate into it, `initialize` inserts
a `GradientAccumulationLayer` that sums their gradients. Problems with the
graph raise `GraphError`.

The package has no ready-made data source, so an input node needs a small
`Layer` of your own:

```python
import numpy as np

from segnetgraph.layer import BufferDescriptor, CombinedTensor, Layer
from segnetgraph.netgraph import NetGraph, NetGraphConnection, NetGraphNode
from segnetgraph.pooling import MaxPoolingLayer


class ImageSource(Layer):
    def __init__(self, images):
        super().__init__()
        self.images = images  # (samples, maps, height, width)
        self.output = None

    def create_outputs(self, inputs):
        samples, maps, height, width = self.images.shape
        return [CombinedTensor(samples, width, height, maps)]

    def connect(self, inputs, outputs, net):
        self.output = outputs[0]

    def feed_forward(self):
        self.output.data[...] = self.images

    def back_propagate(self):
        pass

    def create_buffer_descriptors(self):
        return [BufferDescriptor("Output")]


graph = NetGraph()
source = NetGraphNode(ImageSource(np.random.rand(1, 3, 4, 4)), is_input=True)
pool = NetGraphNode(MaxPoolingLayer(2, 2), NetGraphConnection(source), is_output=True)
graph.add_node(source)
graph.add_node(pool)
assert graph.is_complete()
graph.initialize()
graph.feed_forward()
print(pool.output_buffers[0].combined_tensor.data.shape)  # (1, 3, 2, 2)
```

Other members of `NetGraph`:

- `feed_forward(nodes=None, clear_flag=True)` and
  `back_propagate(nodes=None, clear_flag=True)` run a pass over the given
  nodes, or all of them, visiting dependencies first.
- `print_graph(stream)` writes a Graphviz description to a text stream.
- `get_parameters()` lists every layer's parameter tensors in node order.
- `serialize_parameters(output)` writes them to a binary stream: per tensor,
  four little-endian unsigned 64-bit integers (samples, width, height, maps)
  followed by the values as little-endian `float32`.
  `deserialize_parameters(input, last_layer=0)` reads that format back for the
  nodes up to `last_layer` (0 means all), stopping quietly at end of stream.
- `initialize_weights()` calls each layer's `on_layer_connect` with the
  layers that consume its outputs.
- `aggregate_loss()` sums `calculate_loss()` over all loss nodes.

## Training

`segnetgraph.trainer.Trainer(graph, settings=None, aggregator=None)` needs a
graph with at least one `TrainingLayer` node and one `LossFunctionLayer` node.

- `TrainerSettings` holds the learning rate schedule (`learning_rate`,
  `gamma`, `exponent`), `sbatchsize`, `l1_weight`, `l2_weight`, `momentum`,
  the QuickProp `mu` and `eta`, `iterations` per epoch (0 means the size of
  the training set), `epoch_training_ratio`, `testing_ratio`,
  `stats_during_training` and the `OptimizationMethod`
  (`GRADIENT_DESCENT` or `QUICKPROP`). `str(settings)` gives a one-line
  summary.
- `calculate_lr(iteration)` returns
  `learning_rate * (1 + gamma * iteration) ** -exponent`.
- `train(epochs, do_snapshots=False)` runs epochs; `epoch()` runs one and
  returns the loss per sample of each loss node, printing progress dots and
  percentages to standard output.
- `test()` evaluates on the testing set and returns the loss per sample of
  each loss node.
- `apply_gradients(lr)` updates the parameters from the accumulated
  gradients, with L1/L2 regularisation.

`StatAggregator` collects statistics registered with `register`. `update`
only counts while recording (`start_recording` / `stop_recording`), and
`snapshot()` returns a dictionary of `Stat` values by description, logs it
and starts afresh. A trainer registers its average aggregate loss, pixel
throughput, frame rate and QuickProp case percentages with its aggregator.

## What the package does not do

It provides no data-loading, loss, convolution, fully connected or
activation layers, and no statistics layers: those roles are abstract
classes for you to implement. There is no command-line tool and no way to
describe a network in a file; graphs are built in Python. Everything runs on
the CPU with numpy.