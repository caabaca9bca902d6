"""
network.py
~~~~~~~~~~

A perceptron with a single hidden layer, trained by stochastic gradient
descent with momentum.

Bias units are modelled as an extra slot at the end of the input and
hidden layers that always holds 1.0, so every weight (bias weights
included) lives in one of two matrices:

- ``weight_hidden[i, j]``: input unit j -> hidden unit i, shape (H+1, I+1)
- ``weight_output[i, j]``: hidden unit j -> output unit i, shape (O, H+1)

The last row of ``weight_hidden`` belongs to the hidden bias unit, which
has no incoming connections, so it is never read or updated.

A Network keeps its layer values, error terms and momentum buffers as
instance state that every forward/feedback call overwrites. It is not
safe to share one instance between threads.
"""

import collections.abc
import logging
import operator
import time
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence

import numpy as np

from neuro import matrix
from neuro.activation import sigmoid, sigmoid_derivative
from neuro.exceptions import NetworkConfigError, ShapeError

logger = logging.getLogger(__name__)

DEFAULT_RATE1 = 0.25
DEFAULT_RATE2 = 0.1

# Mid-epoch progress is reported every this many samples
PROGRESS_INTERVAL = 1000


def _sparse_index(key) -> int:
    """Feature index from a sparse key; strings come from JSON objects."""
    if isinstance(key, str):
        return int(key)
    if isinstance(key, bool):
        raise TypeError(f"sparse index must be an integer, got {key!r}")
    return operator.index(key)


def _is_count(value: Any) -> bool:
    return (
        isinstance(value, (int, np.integer))
        and not isinstance(value, bool)
        and value > 0
    )


class Network:
    """
    Single hidden layer network with optional linear (regression) output.

    Args:
        input_count: Number of input features (I)
        hidden_count: Number of hidden units (H)
        output_count: Number of outputs (O)
        regression: Linear output when True, sigmoid output otherwise
        rate1: Learning rate
        rate2: Momentum coefficient
        rng: Random source for weight initialization and sample
            shuffling; a fresh unseeded generator if omitted

    Raises:
        NetworkConfigError: If any of the counts is not a positive integer
    """

    def __init__(
        self,
        input_count: int,
        hidden_count: int,
        output_count: int,
        regression: bool = False,
        rate1: float = DEFAULT_RATE1,
        rate2: float = DEFAULT_RATE2,
        rng: Optional[np.random.Generator] = None
    ):
        for name, value in (('input_count', input_count),
                            ('hidden_count', hidden_count),
                            ('output_count', output_count)):
            if not _is_count(value):
                raise NetworkConfigError(
                    f"{name} must be a positive integer, got {value!r}"
                )

        self.rng = rng if rng is not None else np.random.default_rng()
        self.regression = bool(regression)
        self.rate1 = float(rate1)
        self.rate2 = float(rate2)

        # One extra slot in the input and hidden layers for the bias unit
        n_input = int(input_count) + 1
        n_hidden = int(hidden_count) + 1
        n_output = int(output_count)

        self.input_layer = np.zeros(n_input)
        # Dense passes index every column the same way sparse passes do
        self._all_columns = np.arange(n_input)
        self.hidden_layer = np.zeros(n_hidden)
        self.output_layer = np.zeros(n_output)

        self.err_output = np.zeros(n_output)
        self.err_hidden = np.zeros(n_hidden)

        self.weight_hidden = matrix.random(
            n_hidden, n_input, -1.0, 1.0, self.rng
        )
        self.weight_output = matrix.random(
            n_output, n_hidden, -1.0, 1.0, self.rng
        )

        self.last_change_hidden = matrix.filled(n_hidden, n_input, 0.0)
        self.last_change_output = matrix.filled(n_output, n_hidden, 0.0)

        logger.debug(f"Created {self!r}")

    @classmethod
    def create_default(
        cls,
        input_count: int,
        hidden_count: int,
        output_count: int,
        regression: bool = False,
        rng: Optional[np.random.Generator] = None
    ) -> 'Network':
        """Build a network with the default learning and momentum rates."""
        return cls(input_count, hidden_count, output_count, regression,
                   DEFAULT_RATE1, DEFAULT_RATE2, rng=rng)

    def __repr__(self) -> str:
        return (f"<Network sizes={self.sizes} regression={self.regression} "
                f"rate1={self.rate1} rate2={self.rate2}>")

    @property
    def input_count(self) -> int:
        return len(self.input_layer) - 1

    @property
    def hidden_count(self) -> int:
        return len(self.hidden_layer) - 1

    @property
    def output_count(self) -> int:
        return len(self.output_layer)

    @property
    def sizes(self) -> List[int]:
        return [self.input_count, self.hidden_count, self.output_count]

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------

    def _check_input(self, inputs: Sequence[float], position: str = '') -> np.ndarray:
        values = np.asarray(inputs, dtype=float)
        if values.ndim != 1 or values.shape[0] != self.input_count:
            raise ShapeError(
                f"Expected {self.input_count} input values{position}, "
                f"got shape {values.shape}"
            )
        return values

    def _check_targets(self, targets: Sequence[float], position: str = '') -> np.ndarray:
        values = np.asarray(targets, dtype=float)
        if values.ndim != 1 or values.shape[0] != self.output_count:
            raise ShapeError(
                f"Expected {self.output_count} target values{position}, "
                f"got shape {values.shape}"
            )
        return values

    def _check_sparse(self, inputs: Mapping[int, float], position: str = ''):
        """Split a sparse sample into (indices, values, touched columns)."""
        if not isinstance(inputs, collections.abc.Mapping):
            raise ShapeError(
                f"Sparse input{position} must map index to value, "
                f"got {type(inputs).__name__}"
            )
        try:
            indices = np.fromiter((_sparse_index(k) for k in inputs.keys()),
                                  dtype=np.intp, count=len(inputs))
            values = np.fromiter((float(v) for v in inputs.values()),
                                 dtype=float, count=len(inputs))
        except (TypeError, ValueError) as e:
            raise ShapeError(f"Malformed sparse input{position}: {e}") from e

        if indices.size and (indices.min() < 0
                             or indices.max() >= self.input_count):
            raise ShapeError(
                f"Sparse input indices must lie in [0, {self.input_count})"
                f"{position}, got {list(inputs.keys())}"
            )
        if np.unique(indices).size != indices.size:
            raise ShapeError(
                f"Sparse input{position} repeats an index: "
                f"{list(inputs.keys())}"
            )
        # The bias slot is written on every pass, so it is always touched
        touched = np.append(indices, self.input_count)
        return indices, values, touched

    def _check_batch(self, inputs: Sequence, targets: Sequence, check_sample):
        if len(inputs) == 0:
            raise ShapeError("Training set is empty")
        if len(inputs) != len(targets):
            raise ShapeError(
                f"Got {len(inputs)} samples but {len(targets)} targets"
            )
        samples = [check_sample(x, f" (sample {n})")
                   for n, x in enumerate(inputs)]
        checked = [self._check_targets(t, f" (sample {n})")
                   for n, t in enumerate(targets)]
        return samples, checked

    def validate(
        self,
        inputs: Sequence,
        targets: Sequence[Sequence[float]],
        sparse: bool = False
    ) -> None:
        """
        Check a dataset against the layer sizes without touching the network.

        Raises:
            ShapeError: On the first sample or target that does not fit
        """
        check_sample = self._check_sparse if sparse else self._check_input
        self._check_batch(inputs, targets, check_sample)

    # ------------------------------------------------------------------
    # Forward pass
    # ------------------------------------------------------------------

    def _forward(self, touched) -> None:
        """Propagate the current input layer, summing only `touched` columns."""
        self.input_layer[-1] = 1.0

        hidden_sums = (self.weight_hidden[:-1, touched]
                       @ self.input_layer[touched])
        self.hidden_layer[:-1] = sigmoid(hidden_sums)
        self.hidden_layer[-1] = 1.0

        output_sums = self.weight_output @ self.hidden_layer
        if self.regression:
            self.output_layer[:] = output_sums
        else:
            self.output_layer[:] = sigmoid(output_sums)

    def forward(self, inputs: Sequence[float]) -> np.ndarray:
        """
        Run a dense sample through the network.

        Args:
            inputs: Exactly `input_count` values

        Returns:
            np.ndarray: A copy of the output layer

        Raises:
            ShapeError: If the number of values is wrong
        """
        values = self._check_input(inputs)
        self.input_layer[:-1] = values
        self._forward(self._all_columns)
        return self.output_layer.copy()

    def forward_sparse(self, inputs: Mapping[int, float]) -> np.ndarray:
        """
        Run a sparse sample (feature index -> value) through the network.

        Only the given indices are written into the input layer; every
        other input keeps whatever value it held before. Hidden sums
        include the given indices and the bias unit only.

        Raises:
            ShapeError: If an index is outside [0, input_count)
        """
        indices, values, touched = self._check_sparse(inputs)
        self.input_layer[indices] = values
        self._forward(touched)
        return self.output_layer.copy()

    # ------------------------------------------------------------------
    # Backward pass
    # ------------------------------------------------------------------

    def _backpropagate(self, targets: np.ndarray, touched) -> None:
        out = self.output_layer
        self.err_output[:] = out - targets

        if self.regression:
            delta_output = self.err_output
        else:
            delta_output = self.err_output * sigmoid_derivative(out)

        # Must use the output weights from before this update
        self.err_hidden[:-1] = delta_output @ self.weight_output[:, :-1]

        change = (self.rate1 * np.outer(delta_output, self.hidden_layer)
                  + self.rate2 * self.last_change_output)
        self.weight_output -= change
        self.last_change_output[:] = change

        delta_hidden = (self.err_hidden[:-1]
                        * sigmoid_derivative(self.hidden_layer[:-1]))
        change = (self.rate1 * np.outer(delta_hidden,
                                        self.input_layer[touched])
                  + self.rate2 * self.last_change_hidden[:-1, touched])
        self.weight_hidden[:-1, touched] -= change
        self.last_change_hidden[:-1, touched] = change

    def feedback(self, targets: Sequence[float]) -> None:
        """
        Backpropagate the error of the last forward pass and update weights.

        Raises:
            ShapeError: If the number of targets is wrong
        """
        self._backpropagate(self._check_targets(targets), self._all_columns)

    def feedback_sparse(
        self,
        targets: Sequence[float],
        inputs: Mapping[int, float]
    ) -> None:
        """
        Sparse counterpart of `feedback`.

        `inputs` must be the mapping given to the preceding
        `forward_sparse` call; only its indices (and the bias) have their
        hidden weights updated.
        """
        checked = self._check_targets(targets)
        _, _, touched = self._check_sparse(inputs)
        self._backpropagate(checked, touched)

    def compute_error(self, targets: Sequence[float]) -> float:
        """Half the sum of squared residuals of the current output layer."""
        diff = self.output_layer - self._check_targets(targets)
        return float(0.5 * np.dot(diff, diff))

    # ------------------------------------------------------------------
    # Training
    # ------------------------------------------------------------------

    def _train_step_dense(self, sample: np.ndarray, target: np.ndarray) -> None:
        self.input_layer[:-1] = sample
        self._forward(self._all_columns)
        self._backpropagate(target, self._all_columns)

    def _train_step_sparse(self, sample, target: np.ndarray) -> None:
        indices, values, touched = sample
        self.input_layer[indices] = values
        self._forward(touched)
        self._backpropagate(target, touched)

    def _report(self, callback, data: Dict[str, Any]) -> None:
        if callback is not None:
            callback(data)
        elif data['event'] == 'progress':
            logger.debug(
                f"Epoch {data['epoch']}/{data['total_epochs']} "
                f"progress {data['progress']:.2%}"
            )
        else:
            logger.info(
                f"Epoch {data['epoch']}/{data['total_epochs']} "
                f"MSE: {data['mse']:.5f}"
            )

    def _run_epochs(
        self,
        samples: List,
        targets: List[np.ndarray],
        epochs: int,
        step: Callable,
        callback: Optional[Callable[[Dict[str, Any]], None]],
        yield_func: Optional[Callable[[], None]]
    ) -> List[float]:
        n = len(samples)
        # Roughly ten epoch summaries per run
        report_every = max(1, epochs // 10)
        history = []
        start_time = time.time()

        logger.info(f"Training {self!r} on {n} samples for {epochs} epochs")

        for epoch in range(1, epochs + 1):
            order = self.rng.permutation(n)
            epoch_error = 0.0

            for count, idx in enumerate(order, start=1):
                target = targets[idx]
                step(samples[idx], target)
                epoch_error += self.compute_error(target)

                if count % PROGRESS_INTERVAL == 0:
                    self._report(callback, {
                        'event': 'progress',
                        'epoch': epoch,
                        'total_epochs': epochs,
                        'progress': count / n
                    })

                if yield_func is not None:
                    yield_func()

            mse = epoch_error / n
            history.append(mse)

            if epoch % report_every == 0:
                self._report(callback, {
                    'event': 'epoch',
                    'epoch': epoch,
                    'total_epochs': epochs,
                    'progress': 1.0,
                    'mse': mse,
                    'elapsed_time': time.time() - start_time
                })

        if history:
            logger.info(f"Training done, final MSE: {history[-1]:.5f}")
        return history

    @staticmethod
    def _check_epochs(epochs: int) -> None:
        if (not isinstance(epochs, (int, np.integer))
                or isinstance(epochs, bool) or epochs < 0):
            raise ValueError(
                f"epochs must be a non-negative integer, got {epochs!r}"
            )

    def train(
        self,
        inputs: Sequence[Sequence[float]],
        targets: Sequence[Sequence[float]],
        epochs: int,
        callback: Optional[Callable[[Dict[str, Any]], None]] = None,
        yield_func: Optional[Callable[[], None]] = None
    ) -> List[float]:
        """
        Train on dense samples for a fixed number of epochs.

        Every sample/target pair is checked before any weight changes.
        Each epoch visits the samples in a fresh random order.

        Args:
            inputs: Samples, each with `input_count` values
            targets: Target vectors paired index-for-index with `inputs`
            epochs: Number of passes over the data
            callback: Receives progress dicts. 'progress' events arrive
                every 1000 samples, 'epoch' events (with 'mse') on about
                ten evenly spaced epochs. Logged when omitted.
            yield_func: Called after every sample, for cooperative
                multitasking

        Returns:
            list: Mean squared error of every epoch

        Raises:
            ShapeError: If any sample or target has the wrong width
        """
        self._check_epochs(epochs)
        samples, checked = self._check_batch(inputs, targets,
                                             self._check_input)
        return self._run_epochs(samples, checked, epochs,
                                self._train_step_dense, callback, yield_func)

    def train_sparse(
        self,
        inputs: Sequence[Mapping[int, float]],
        targets: Sequence[Sequence[float]],
        epochs: int,
        callback: Optional[Callable[[Dict[str, Any]], None]] = None,
        yield_func: Optional[Callable[[], None]] = None
    ) -> List[float]:
        """Sparse counterpart of `train`; samples map index -> value."""
        self._check_epochs(epochs)
        samples, checked = self._check_batch(inputs, targets,
                                             self._check_sparse)
        return self._run_epochs(samples, checked, epochs,
                                self._train_step_sparse, callback, yield_func)

    def evaluate(
        self,
        inputs: Sequence[Sequence[float]],
        targets: Sequence[Sequence[float]]
    ) -> float:
        """Mean `compute_error` over a dense dataset, without training."""
        samples, checked = self._check_batch(inputs, targets,
                                             self._check_input)
        total = 0.0
        for sample, target in zip(samples, checked):
            self.input_layer[:-1] = sample
            self._forward(self._all_columns)
            total += self.compute_error(target)
        return total / len(samples)

    def evaluate_sparse(
        self,
        inputs: Sequence[Mapping[int, float]],
        targets: Sequence[Sequence[float]]
    ) -> float:
        """Mean `compute_error` over a sparse dataset, without training."""
        samples, checked = self._check_batch(inputs, targets,
                                             self._check_sparse)
        total = 0.0
        for (indices, values, touched), target in zip(samples, checked):
            self.input_layer[indices] = values
            self._forward(touched)
            total += self.compute_error(target)
        return total / len(samples)
