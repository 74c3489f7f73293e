"""Mini-batch training with gradient descent or QuickProp, plus run statistics."""
from __future__ import annotations

import enum
import logging
import sys
import time
import weakref
from dataclasses import dataclass, field
from typing import Callable, Optional

import numpy as np

from .layer import CombinedTensor, Layer, LossFunctionLayer, StatLayer, TrainingLayer
from .netgraph import GraphError, NetGraph

_log = logging.getLogger(__name__)

_QP_THRESHOLD = 0.00001
_QP_MAX_STEP = 1000.0


class OptimizationMethod(enum.Enum):
    """How accumulated gradients are turned into weight updates."""

    GRADIENT_DESCENT = "GD"
    QUICKPROP = "QP"


@dataclass
class TrainerSettings:
    """Hyper-parameters of a training run."""

    learning_rate: float = 0.0001
    gamma: float = 0.003
    exponent: float = 0.75
    sbatchsize: int = 1
    pbatchsize: int = 1
    l1_weight: float = 0.001
    l2_weight: float = 0.0005
    momentum: float = 0.9
    mu: float = 1.75
    eta: float = 1.5
    optimization_method: OptimizationMethod = OptimizationMethod.GRADIENT_DESCENT
    iterations: int = 0
    epoch_training_ratio: float = 1.0
    testing_ratio: float = 1.0
    stats_during_training: bool = True

    def __str__(self) -> str:
        return (
            f"LR: {self.learning_rate:g}, "
            f"GM: {self.gamma:g}, "
            f"EX: {self.exponent:g}, "
            f"SB: {self.sbatchsize}, "
            f"PB: {self.pbatchsize}, "
            f"L1: {self.l1_weight:g}, "
            f"L2: {self.l2_weight:g}, "
            f"MM: {self.momentum:g}, "
            f"MU: {self.mu:g}, "
            f"ET: {self.eta:g}, "
            f"{self.optimization_method.value}"
        )


@dataclass
class Stat:
    """A single statistic value that may be null."""

    value: float = 0.0
    is_null: bool = True


@dataclass
class HardcodedStats:
    """Counters every statistic may refer to when producing its output."""

    weights: int = 0
    iterations: int = 0
    epoch: int = 0
    seconds_elapsed: float = 0.0


def _init_null(stat: Stat) -> None:
    stat.is_null = True
    stat.value = 0.0


def _accumulate(stat: Stat, value: float) -> None:
    stat.value += value
    stat.is_null = False


@dataclass(eq=False)
class StatDescriptor:
    """Describes how a statistic is initialised, updated and reported."""

    description: str
    unit: str = ""
    nullable: bool = True
    init_function: Callable[[Stat], None] = _init_null
    update_function: Callable[[Stat, float], None] = _accumulate
    output_function: Callable[[HardcodedStats, Stat], Stat] = lambda hc, stat: Stat(
        stat.value, stat.is_null
    )
    stat_id: int = -1


class AggregatorState(enum.Enum):
    STOPPED = "stopped"
    RECORDING = "recording"


class StatAggregator:
    """Collects registered statistics while recording and reports snapshots."""

    def __init__(self) -> None:
        self.descriptors: list[StatDescriptor] = []
        self.stats: list[Stat] = []
        self.hardcoded_stats = HardcodedStats()
        self.state = AggregatorState.STOPPED
        self.snapshots: list[dict[str, Stat]] = []
        self._recording_since: Optional[float] = None

    def register(self, descriptor):
        """Add a statistic and return the id it was given."""
        descriptor.stat_id = len(self.descriptors)
        stat = Stat()
        descriptor.init_function(stat)
        self.descriptors.append(descriptor)
        self.stats.append(stat)
        return descriptor.stat_id

    def start_recording(self) -> None:
        if self.state is AggregatorState.RECORDING:
            return
        self.state = AggregatorState.RECORDING
        self._recording_since = time.monotonic()

    def stop_recording(self) -> None:
        if self.state is not AggregatorState.RECORDING:
            return
        self.hardcoded_stats.seconds_elapsed += time.monotonic() - self._recording_since
        self._recording_since = None
        self.state = AggregatorState.STOPPED

    def update(self, stat_id, value):
        """Feed a value into a statistic; ignored unless recording."""
        if not 0 <= stat_id < len(self.stats):
            raise IndexError(f"Unknown statistic id: {stat_id}")
        if self.state is AggregatorState.RECORDING:
            self.descriptors[stat_id].update_function(self.stats[stat_id], float(value))

    def reset(self) -> None:
        for descriptor, stat in zip(self.descriptors, self.stats):
            descriptor.init_function(stat)
        self.hardcoded_stats = HardcodedStats()
        if self.state is AggregatorState.RECORDING:
            self._recording_since = time.monotonic()

    def snapshot(self):
        """Report every statistic, record the report and start afresh."""
        was_recording = self.state is AggregatorState.RECORDING
        self.stop_recording()
        report = {
            descriptor.description: descriptor.output_function(self.hardcoded_stats, stat)
            for descriptor, stat in zip(self.descriptors, self.stats)
        }
        for description, stat in report.items():
            shown = "null" if stat.is_null else f"{stat.value:g}"
            _log.info("%s: %s", description, shown)
        self.snapshots.append(report)
        self.reset()
        if was_recording:
            self.start_recording()
        return report


def _average_per_iteration(hc: HardcodedStats, stat: Stat) -> Stat:
    result = Stat()
    if hc.iterations > 0:
        result.value = stat.value / float(hc.iterations)
        result.is_null = False
    return result


def _percent_per_weight(hc: HardcodedStats, stat: Stat) -> Stat:
    result = Stat()
    if hc.iterations > 0 and hc.weights > 0 and not stat.is_null:
        result.value = 100.0 * stat.value / (float(hc.iterations) * float(hc.weights))
        result.is_null = False
    return result


def _per_second(hc: HardcodedStats, stat: Stat) -> Stat:
    if hc.seconds_elapsed <= 0:
        return Stat(0.0, True)
    return Stat(stat.value / hc.seconds_elapsed, stat.is_null)


@dataclass
class _TrainerStats:
    aggloss: StatDescriptor
    qp_case_a: StatDescriptor
    qp_case_b: StatDescriptor
    qp_case_c: StatDescriptor
    qp_case_m: StatDescriptor
    sps: StatDescriptor
    fps: StatDescriptor


_registered: "weakref.WeakKeyDictionary[StatAggregator, _TrainerStats]" = (
    weakref.WeakKeyDictionary()
)


def _trainer_stats(aggregator: StatAggregator) -> _TrainerStats:
    stats = _registered.get(aggregator)
    if stats is None:
        stats = _TrainerStats(
            aggloss=StatDescriptor(
                "Average Aggregate Loss", "1/pixel", output_function=_average_per_iteration
            ),
            qp_case_a=StatDescriptor(
                "QuickProp Case A Percentage", "%", output_function=_percent_per_weight
            ),
            qp_case_b=StatDescriptor(
                "QuickProp Case B Percentage", "%", output_function=_percent_per_weight
            ),
            qp_case_c=StatDescriptor(
                "QuickProp Case C Percentage", "%", output_function=_percent_per_weight
            ),
            qp_case_m=StatDescriptor(
                "QuickProp Case M Percentage", "%", output_function=_percent_per_weight
            ),
            sps=StatDescriptor("Pixel Throughput", "pixels/s", output_function=_per_second),
            fps=StatDescriptor("Frame Rate", "frames/s", output_function=_per_second),
        )
        for descriptor in (
            stats.aggloss,
            stats.qp_case_a,
            stats.qp_case_b,
            stats.qp_case_c,
            stats.qp_case_m,
            stats.sps,
            stats.fps,
        ):
            aggregator.register(descriptor)
        _registered[aggregator] = stats
    return stats


@dataclass(eq=False)
class _ParameterState:
    layer: Layer
    param: CombinedTensor
    last_delta: np.ndarray = field(repr=False)
    last_gradient: np.ndarray = field(repr=False)
    accumulated: np.ndarray = field(repr=False)


class Trainer:
    """Optimises the parameters of a network graph."""

    def __init__(self, graph, settings=None, aggregator=None):
        self.graph: NetGraph = graph
        self.settings: TrainerSettings = settings if settings is not None else TrainerSettings()
        self.aggregator: StatAggregator = aggregator if aggregator is not None else StatAggregator()

        if not graph.training_nodes or not graph.loss_nodes:
            raise GraphError("Net doesn't have training layer or loss function layer!")

        self.parameter_states: list[_ParameterState] = [
            _ParameterState(
                layer=node.layer,
                param=param,
                last_delta=np.zeros_like(param.data),
                last_gradient=np.zeros_like(param.data),
                accumulated=np.zeros_like(param.data),
            )
            for node in graph.nodes
            for param in node.layer.parameters
        ]
        _log.debug("Optimizing %d sets of parameters.", len(self.parameter_states))

        self.weight_count = sum(state.param.elements() for state in self.parameter_states)
        _log.debug("Weights: %d", self.weight_count)

        self.first_training_layer: TrainingLayer = graph.training_nodes[0].layer
        self.sample_count = (
            self.first_training_layer.label_width
            * self.first_training_layer.label_height
            * self.first_training_layer.batch_size
        )
        self.current_epoch = 0
        self._stats = _trainer_stats(self.aggregator)

    @property
    def _recording(self) -> bool:
        return self.aggregator.state is AggregatorState.RECORDING

    def calculate_lr(self, iteration):
        """Learning rate annealed by the inverse schedule."""
        s = self.settings
        return s.learning_rate * (1.0 + s.gamma * float(iteration)) ** (-s.exponent)

    def train(self, epochs, do_snapshots=False):
        """Run the given number of training epochs."""
        self.aggregator.hardcoded_stats.weights = self.weight_count
        self.graph.is_testing = False
        self.graph.stat_layers_enabled = self.settings.stats_during_training
        for _ in range(epochs):
            self.epoch()
            if do_snapshots:
                self.aggregator.snapshot()
                self.aggregator.hardcoded_stats.weights = self.weight_count
        self.graph.stat_layers_enabled = True

    def _loss_layers(self) -> list[LossFunctionLayer]:
        return [node.layer for node in self.graph.loss_nodes]

    def _set_testing_mode(self, testing: bool) -> None:
        for node in self.graph.training_nodes:
            node.layer.set_testing_mode(testing)

    def _report_stat_layers(self, prefix: str, training: bool) -> None:
        for node in self.graph.stat_nodes:
            layer: StatLayer = node.layer
            layer.update_all()
            layer.print_stats(prefix, training)

    def test(self):
        """Evaluate on the testing set; return the loss per sample of each loss node."""
        self.aggregator.hardcoded_stats.weights = self.weight_count
        training_layer = self.first_training_layer
        loss_layers = self._loss_layers()
        loss_sums = [0.0] * len(loss_layers)

        iterations = training_layer.samples_in_testing_set // training_layer.batch_size + 1
        iterations = int(float(iterations) * self.settings.testing_ratio)

        self._set_testing_mode(True)
        self.graph.is_testing = True
        _log.debug(
            "Testing, iterations: %d, batch size: %d", iterations, training_layer.batch_size
        )

        for _ in range(iterations):
            self.graph.feed_forward()
            aggregate_loss = 0.0
            for n, layer in enumerate(loss_layers):
                loss = float(layer.calculate_loss())
                loss_sums[n] += loss
                aggregate_loss += loss
            if self._recording:
                self.aggregator.hardcoded_stats.iterations += 1
            self.aggregator.update(
                self._stats.aggloss.stat_id, aggregate_loss / self.sample_count
            )

        self.aggregator.update(
            self._stats.sps.stat_id, float(self.sample_count) * float(iterations)
        )
        self.aggregator.update(
            self._stats.fps.stat_id, float(training_layer.batch_size) * float(iterations)
        )

        denominator = float(iterations * self.sample_count)
        per_sample = [
            total / denominator if denominator else float("nan") for total in loss_sums
        ]
        for n, (layer, lps) in enumerate(zip(loss_layers, per_sample)):
            _log.info(
                "Testing (Epoch %d, node %d) %s lps: %g",
                self.current_epoch, n, layer.description(), lps,
            )

        self._report_stat_layers(f"Testing  - Epoch {self.current_epoch} -", False)
        self._set_testing_mode(False)
        return per_sample

    def epoch(self):
        """Run one training epoch; return the loss per sample of each loss node."""
        settings = self.settings
        training_layer = self.first_training_layer
        self.aggregator.hardcoded_stats.epoch = self.current_epoch

        loss_layers = self._loss_layers()
        loss_sums = [0.0] * len(loss_layers)

        iterations = settings.iterations or training_layer.samples_in_training_set
        iterations = int(float(iterations) * settings.epoch_training_ratio)

        self._set_testing_mode(False)
        _log.info(
            "Epoch: %d, it: %d, bsize: %d, current lr: %g",
            self.current_epoch,
            iterations,
            training_layer.batch_size * settings.sbatchsize,
            self.calculate_lr(self.current_epoch * iterations),
        )

        fiftieth = tenth = 0
        sampling = training_layer.loss_sampling_probability
        for i in range(iterations):
            if 50 * i // iterations > fiftieth:
                fiftieth = 50 * i // iterations
                sys.stdout.write(".")
                sys.stdout.flush()
            if 10 * i // iterations > tenth:
                tenth = 10 * i // iterations
                sys.stdout.write(f"{tenth}0%")
                sys.stdout.flush()

            for state in self.parameter_states:
                state.accumulated.fill(0)

            aggregate_loss = 0.0
            for _ in range(settings.sbatchsize):
                self.graph.feed_forward()
                for n, layer in enumerate(loss_layers):
                    loss = float(layer.calculate_loss())
                    loss_sums[n] += loss
                    aggregate_loss += loss
                self.graph.back_propagate()
                for state in self.parameter_states:
                    state.accumulated += state.param.delta.reshape(state.accumulated.shape)

            self.apply_gradients(self.calculate_lr(self.current_epoch * iterations + i))

            if self._recording:
                self.aggregator.hardcoded_stats.iterations += 1
            self.aggregator.update(
                self._stats.aggloss.stat_id,
                aggregate_loss / (sampling * self.sample_count * settings.sbatchsize),
            )

        self.aggregator.update(
            self._stats.sps.stat_id,
            float(self.sample_count) * float(iterations) * float(settings.sbatchsize),
        )
        self.aggregator.update(
            self._stats.fps.stat_id,
            float(training_layer.batch_size) * float(iterations) * float(settings.sbatchsize),
        )

        denominator = float(iterations * self.sample_count * settings.sbatchsize) * sampling
        per_sample = [
            total / denominator if denominator else float("nan") for total in loss_sums
        ]
        for n, (layer, lps) in enumerate(zip(loss_layers, per_sample)):
            _log.info(
                "Training (Epoch %d, node %d) %s lps: %g",
                self.current_epoch, n, layer.description(), lps,
            )

        if settings.stats_during_training:
            self._report_stat_layers(f"Training  - Epoch {self.current_epoch} -", True)

        self.current_epoch += 1
        return per_sample

    def apply_gradients(self, lr):
        """Update every parameter from its accumulated gradient."""
        s = self.settings
        sampling = self.first_training_layer.loss_sampling_probability
        batch_samples = float(self.sample_count * s.sbatchsize)
        case_a = case_b = case_c = case_m = 0

        for state in self.parameter_states:
            layer_lr = state.layer.local_lr
            weight = state.param.data.astype(np.float64)
            gradient = state.accumulated.reshape(weight.shape).astype(np.float64)
            last_step = state.last_delta.reshape(weight.shape).astype(np.float64)

            delta = layer_lr * (gradient / batch_samples * sampling) + layer_lr * (
                s.l2_weight * weight + s.l1_weight * np.sign(weight)
            )

            if s.optimization_method is OptimizationMethod.GRADIENT_DESCENT:
                step = lr * delta + s.momentum * last_step
            else:
                last_gradient = state.last_gradient.reshape(weight.shape).astype(np.float64)
                shrink = s.mu / (1.0 + s.mu)
                positive = last_step > _QP_THRESHOLD
                negative = last_step < -_QP_THRESHOLD
                moving = positive | negative
                still = ~moving

                descend = (positive & (delta > 0.0)) | (negative & (delta < 0.0))
                capped = (positive & (delta > shrink * last_gradient)) | (
                    negative & (delta < shrink * last_gradient)
                )
                secant = moving & ~capped

                with np.errstate(divide="ignore", invalid="ignore"):
                    quadratic = last_step * delta / (last_gradient - delta)

                step = np.zeros_like(delta)
                step += np.where(descend | still, lr * s.eta * delta, 0.0)
                step += np.where(capped, s.mu * last_step, 0.0)
                step += np.where(secant, quadratic, 0.0)
                step = np.clip(step, -_QP_MAX_STEP, _QP_MAX_STEP)

                case_a += int(np.count_nonzero(moving))
                case_b += int(np.count_nonzero(descend))
                case_c += int(np.count_nonzero(still))
                case_m += int(np.count_nonzero(capped))
                state.last_gradient[...] = delta.reshape(state.last_gradient.shape)

            state.param.data[...] = weight - step
            state.last_delta[...] = step.reshape(state.last_delta.shape)

        if s.optimization_method is OptimizationMethod.QUICKPROP:
            self.aggregator.update(self._stats.qp_case_a.stat_id, float(case_a))
            self.aggregator.update(self._stats.qp_case_b.stat_id, float(case_b))
            self.aggregator.update(self._stats.qp_case_c.stat_id, float(case_c))
            self.aggregator.update(self._stats.qp_case_m.stat_id, float(case_m))