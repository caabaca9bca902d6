"""
test_training.py
~~~~~~~~~~~~~~~~

Tests for the dense and sparse training loops.
"""

import logging
import os
import sys

import numpy as np
import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from neuro import Network, ShapeError

XOR_INPUTS = [[0.0, 0.0], [0.0, 1.0], [1.0, 0.0], [1.0, 1.0]]
XOR_TARGETS = [[0.0], [1.0], [1.0], [0.0]]

SUM_INPUTS = [[0.0, 0.0], [0.0, 1.0], [1.0, 0.0], [1.0, 1.0]]
SUM_TARGETS = [[0.0], [1.0], [1.0], [2.0]]


@pytest.fixture
def xor_network():
    return Network(2, 3, 1, rng=np.random.default_rng(99))


@pytest.mark.unit
class TestTrainValidation:

    def test_history_has_one_entry_per_epoch(self, xor_network):
        history = xor_network.train(XOR_INPUTS, XOR_TARGETS, 7)
        assert len(history) == 7
        assert all(mse >= 0.0 for mse in history)

    def test_zero_epochs_is_a_no_op(self, xor_network):
        weights = xor_network.weight_hidden.copy()
        assert xor_network.train(XOR_INPUTS, XOR_TARGETS, 0) == []
        assert np.array_equal(xor_network.weight_hidden, weights)

    def test_every_sample_is_checked(self, xor_network):
        weights = xor_network.weight_hidden.copy()
        inputs = [[0.0, 0.0], [0.0, 1.0], [1.0], [1.0, 1.0]]

        with pytest.raises(ShapeError, match='sample 2'):
            xor_network.train(inputs, XOR_TARGETS, 10)

        assert np.array_equal(xor_network.weight_hidden, weights)

    def test_every_target_is_checked(self, xor_network):
        targets = [[0.0], [1.0], [1.0], [0.0, 1.0]]
        with pytest.raises(ShapeError, match='sample 3'):
            xor_network.train(XOR_INPUTS, targets, 10)

    def test_first_sample_width(self, xor_network):
        with pytest.raises(ShapeError):
            xor_network.train([[0.0, 0.0, 0.0]], [[0.0]], 1)

    def test_mismatched_counts(self, xor_network):
        with pytest.raises(ShapeError):
            xor_network.train(XOR_INPUTS, XOR_TARGETS[:3], 1)

    def test_empty_dataset(self, xor_network):
        with pytest.raises(ShapeError):
            xor_network.train([], [], 1)

    @pytest.mark.parametrize("epochs", [-1, 1.5, True, '3'])
    def test_bad_epochs(self, xor_network, epochs):
        with pytest.raises(ValueError):
            xor_network.train(XOR_INPUTS, XOR_TARGETS, epochs)

    def test_sparse_indices_are_checked(self, xor_network):
        inputs = [{0: 1.0}, {1: 1.0}, {2: 1.0}, {}]
        with pytest.raises(ShapeError, match='sample 2'):
            xor_network.train_sparse(inputs, XOR_TARGETS, 1)

    def test_validate_does_not_train(self, xor_network):
        weights = xor_network.weight_output.copy()
        xor_network.validate(XOR_INPUTS, XOR_TARGETS)
        xor_network.validate([{0: 1.0}], [[1.0]], sparse=True)
        assert np.array_equal(xor_network.weight_output, weights)


@pytest.mark.unit
class TestProgressReporting:

    def test_epoch_reports_are_throttled(self, xor_network):
        events = []
        xor_network.train(XOR_INPUTS, XOR_TARGETS, 20, callback=events.append)

        epochs = [e['epoch'] for e in events if e['event'] == 'epoch']
        assert epochs == [2, 4, 6, 8, 10, 12, 14, 16, 18, 20]

    def test_short_runs_report_every_epoch(self, xor_network):
        events = []
        xor_network.train(XOR_INPUTS, XOR_TARGETS, 5, callback=events.append)

        assert [e['epoch'] for e in events] == [1, 2, 3, 4, 5]
        for event in events:
            assert event['event'] == 'epoch'
            assert event['total_epochs'] == 5
            assert event['progress'] == 1.0
            assert event['mse'] >= 0.0
            assert event['elapsed_time'] >= 0.0

    def test_reported_mse_matches_history(self, xor_network):
        events = []
        history = xor_network.train(XOR_INPUTS, XOR_TARGETS, 3,
                                    callback=events.append)
        assert [e['mse'] for e in events] == history

    def test_mid_epoch_progress(self):
        net = Network(1, 2, 1, rng=np.random.default_rng(0))
        inputs = [[i / 2500.0] for i in range(2500)]
        targets = [[0.5]] * 2500
        events = []

        net.train(inputs, targets, 1, callback=events.append)

        progress = [e for e in events if e['event'] == 'progress']
        assert [e['progress'] for e in progress] == [0.4, 0.8]
        assert all(e['epoch'] == 1 for e in progress)

    def test_yield_func_runs_after_every_sample(self, xor_network):
        calls = []
        xor_network.train(XOR_INPUTS, XOR_TARGETS, 3,
                          yield_func=lambda: calls.append(1))
        assert len(calls) == 12

    def test_logs_without_callback(self, xor_network, caplog):
        with caplog.at_level(logging.INFO, logger='neuro.network'):
            xor_network.train(XOR_INPUTS, XOR_TARGETS, 2)
        assert 'Epoch 2/2 MSE' in caplog.text


@pytest.mark.unit
class TestTrainingDeterminism:

    def test_seeded_runs_are_reproducible(self):
        a = Network(2, 3, 1, rng=np.random.default_rng(5))
        b = Network(2, 3, 1, rng=np.random.default_rng(5))

        assert a.train(XOR_INPUTS, XOR_TARGETS, 25) == \
            b.train(XOR_INPUTS, XOR_TARGETS, 25)
        assert np.array_equal(a.weight_hidden, b.weight_hidden)

    @pytest.mark.parametrize("regression", [False, True])
    def test_sparse_and_dense_agree_on_full_samples(self, regression):
        dense = Network(2, 3, 1, regression=regression, rate1=0.1,
                        rng=np.random.default_rng(11))
        sparse = Network(2, 3, 1, regression=regression, rate1=0.1,
                         rng=np.random.default_rng(11))
        sparse_inputs = [{0: x[0], 1: x[1]} for x in SUM_INPUTS]

        dense_history = dense.train(SUM_INPUTS, SUM_TARGETS, 50)
        sparse_history = sparse.train_sparse(sparse_inputs, SUM_TARGETS, 50)

        assert dense_history == sparse_history
        for field in ('weight_hidden', 'weight_output',
                      'last_change_hidden', 'last_change_output'):
            assert np.array_equal(getattr(dense, field),
                                  getattr(sparse, field)), field

    def test_sparse_and_dense_weights_are_bit_identical(self):
        data_rng = np.random.default_rng(7)
        inputs = data_rng.uniform(-1.0, 1.0, size=(4, 3)).tolist()
        targets = data_rng.uniform(0.0, 1.0, size=(4, 2)).tolist()
        sparse_inputs = [dict(enumerate(x)) for x in inputs]

        dense = Network(3, 5, 2, rng=np.random.default_rng(2))
        sparse = Network(3, 5, 2, rng=np.random.default_rng(2))
        dense.train(inputs, targets, 200)
        sparse.train_sparse(sparse_inputs, targets, 200)

        assert np.array_equal(dense.weight_hidden, sparse.weight_hidden)
        assert np.array_equal(dense.weight_output, sparse.weight_output)

    def test_sparse_training_leaves_untouched_weights(self):
        net = Network(4, 3, 1, rng=np.random.default_rng(3))
        before = net.weight_hidden.copy()
        inputs = [{0: 1.0}, {0: 0.0}, {1: 1.0}]

        net.train_sparse(inputs, [[1.0], [0.0], [1.0]], 10)

        assert np.array_equal(net.weight_hidden[:, 2:4], before[:, 2:4])
        assert not np.array_equal(net.weight_hidden[:-1, 4], before[:-1, 4])

    def test_evaluate_does_not_change_weights(self, xor_network):
        weights = xor_network.weight_output.copy()
        mse = xor_network.evaluate(XOR_INPUTS, XOR_TARGETS)
        assert mse >= 0.0
        assert np.array_equal(xor_network.weight_output, weights)

    def test_evaluate_sparse_matches_dense(self, xor_network):
        sparse_inputs = [{0: x[0], 1: x[1]} for x in XOR_INPUTS]
        assert xor_network.evaluate_sparse(sparse_inputs, XOR_TARGETS) == \
            pytest.approx(xor_network.evaluate(XOR_INPUTS, XOR_TARGETS))


@pytest.mark.integration
class TestLearning:

    def test_regression_lowers_error(self):
        improved = 0
        for seed in range(10):
            net = Network(2, 3, 1, regression=True, rate1=0.1, rate2=0.1,
                          rng=np.random.default_rng(seed))
            before = net.evaluate(SUM_INPUTS, SUM_TARGETS)
            net.train(SUM_INPUTS, SUM_TARGETS, 300)
            after = net.evaluate(SUM_INPUTS, SUM_TARGETS)
            if after < before:
                improved += 1

        assert improved >= 8

    def test_xor_converges(self):
        converged = 0
        for seed in range(8):
            net = Network(2, 2, 1, rate1=0.25, rate2=0.1,
                          rng=np.random.default_rng(seed))
            net.train(XOR_INPUTS, XOR_TARGETS, 8000)

            outputs = [net.forward(x)[0] for x in XOR_INPUTS]
            if all(abs(out - t[0]) < 0.1
                   for out, t in zip(outputs, XOR_TARGETS)):
                converged += 1

        assert converged >= 5
