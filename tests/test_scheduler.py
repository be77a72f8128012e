import math

import numpy as np
import pytest

from flipmap.configs import ParallelConfig
from flipmap.physics import NumericalDivergenceError, PendulumBatch
from flipmap.scheduler import StepScheduler


def make_batch(n, seed=0, nan_at=None):
    rng = np.random.default_rng(seed)
    rows = []
    for i in range(n):
        rows.append(
            {
                "ids": 100 + i,
                "theta1": math.nan if i == nan_at else rng.uniform(0.0, 2 * np.pi),
                "theta2": rng.uniform(0.0, np.pi),
                "dtheta1": 0.0,
                "dtheta2": 0.0,
                "d2theta1": 0.0,
                "d2theta2": 0.0,
                "l1": 1.0,
                "l2": 1.0,
                "prev": math.inf,
                "steps": 0,
                "ceiling": 400,
                "stopped": False,
                "expired": False,
            }
        )
    return PendulumBatch.from_rows(rows)


@pytest.fixture(scope="module")
def batch():
    return make_batch(37)


@pytest.fixture(scope="module")
def serial_result(batch):
    with StepScheduler(ParallelConfig.serial()) as scheduler:
        return scheduler.integrate(batch, 250)


def assert_same(a, b):
    np.testing.assert_array_equal(a.ids, b.ids)
    np.testing.assert_array_equal(a.steps, b.steps)
    np.testing.assert_array_equal(a.stopped, b.stopped)
    np.testing.assert_array_equal(a.expired, b.expired)
    np.testing.assert_allclose(a.theta1, b.theta1, rtol=1e-9)
    np.testing.assert_allclose(a.theta2, b.theta2, rtol=1e-9)


class TestSerial:
    def test_not_parallel_by_default(self):
        scheduler = StepScheduler()
        assert not scheduler.parallel
        assert scheduler.n_workers == 1

    def test_single_worker_is_serial(self):
        assert not StepScheduler(ParallelConfig.threads(1)).parallel

    def test_matches_direct_integration(self, batch, serial_result):
        assert_same(serial_result, batch.integrate(250))

    def test_empty_batch(self):
        empty = PendulumBatch.from_rows([])
        with StepScheduler(ParallelConfig.threads(2)) as scheduler:
            assert len(scheduler.integrate(empty, 10)) == 0


class TestParallel:
    @pytest.mark.parametrize(
        "config",
        [
            ParallelConfig.threads(2),
            ParallelConfig(enabled=True, n_jobs=3, chunk_size=1),
            ParallelConfig(enabled=True, n_jobs=4, chunk_size=5, queue_size=1),
            ParallelConfig(enabled=True, n_jobs=2, chunk_size=100),
        ],
    )
    def test_threads_match_serial(self, batch, serial_result, config):
        with StepScheduler(config) as scheduler:
            assert_same(scheduler.integrate(batch, 250), serial_result)

    def test_processes_match_serial(self, batch, serial_result):
        config = ParallelConfig.processes(2).copy(chunk_size=10)
        with StepScheduler(config) as scheduler:
            assert_same(scheduler.integrate(batch, 250), serial_result)

    def test_every_cell_returned_once_in_order(self, batch):
        config = ParallelConfig(enabled=True, n_jobs=3, chunk_size=4, queue_size=2)
        with StepScheduler(config) as scheduler:
            result = scheduler.integrate(batch, 5)
        np.testing.assert_array_equal(result.ids, batch.ids)

    def test_input_is_not_modified(self, batch):
        before = batch.copy()
        with StepScheduler(ParallelConfig.threads(2)) as scheduler:
            scheduler.integrate(batch, 50)
        assert_same(batch, before)

    def test_progress_bar(self, batch, serial_result):
        with StepScheduler(ParallelConfig.threads(2), progress_bar=True) as scheduler:
            assert_same(scheduler.integrate(batch, 250), serial_result)

    def test_pool_is_reused_and_closed(self, batch):
        scheduler = StepScheduler(ParallelConfig.threads(2))
        scheduler.integrate(batch, 1)
        pool = scheduler._executor
        scheduler.integrate(batch, 1)
        assert scheduler._executor is pool

        scheduler.close()
        assert scheduler._executor is None
        # A closed scheduler starts a fresh pool on demand
        assert len(scheduler.integrate(batch, 1)) == len(batch)
        scheduler.close()


class TestErrors:
    @pytest.mark.parametrize(
        "config",
        [
            ParallelConfig.serial(),
            ParallelConfig(enabled=True, n_jobs=2, chunk_size=3),
            ParallelConfig(enabled=True, n_jobs=2, chunk_size=3, backend="process"),
        ],
    )
    def test_divergence_propagates(self, config):
        bad = make_batch(20, nan_at=11)
        with StepScheduler(config) as scheduler:
            with pytest.raises(NumericalDivergenceError) as info:
                scheduler.integrate(bad, 10)
        assert info.value.cell_id == 111
