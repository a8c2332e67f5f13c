"""Tests for netepi.rng: per-run stream hierarchy and replay."""

import numpy as np
import pytest

from netepi.rng import (
    RUN_STREAMS,
    create_run_rngs,
    restore_rng_state,
    rng_state_snapshot,
    rngs_from_state,
)


class TestCreateRunRngs:
    def test_one_dict_per_run(self):
        rngs = create_run_rngs(42, n_runs=4)
        assert len(rngs) == 4
        for run in rngs:
            assert set(run) == set(RUN_STREAMS)

    def test_streams_are_independent(self):
        """Different streams produce different sequences."""
        rngs = create_run_rngs(42, n_runs=3)
        vals = [rng.random() for run in rngs for rng in run.values()]
        assert len(set(vals)) == len(vals), "RNG streams produced duplicate values"

    def test_reproducibility(self):
        """Same seed produces identical sequences."""
        a = create_run_rngs(7, n_runs=2)
        b = create_run_rngs(7, n_runs=2)
        for run_a, run_b in zip(a, b):
            for name in RUN_STREAMS:
                np.testing.assert_array_equal(
                    run_a[name].random(100), run_b[name].random(100)
                )

    def test_different_seeds_differ(self):
        a = create_run_rngs(42, n_runs=1)[0]['epidemic'].random(10)
        b = create_run_rngs(43, n_runs=1)[0]['epidemic'].random(10)
        assert not np.array_equal(a, b)

    def test_run_streams_independent_of_run_count(self):
        """Adding runs does not change earlier runs' streams."""
        few = create_run_rngs(42, n_runs=2)
        many = create_run_rngs(42, n_runs=10)
        for name in RUN_STREAMS:
            np.testing.assert_array_equal(
                few[1][name].random(20), many[1][name].random(20)
            )


class TestStateSnapshot:
    def test_restore_replays_exactly(self):
        rngs = create_run_rngs(42, n_runs=1)[0]
        rngs['epidemic'].random(5)
        state = rng_state_snapshot(rngs)
        expected = rngs['epidemic'].random(50)

        restore_rng_state(rngs, state)
        np.testing.assert_array_equal(rngs['epidemic'].random(50), expected)

    def test_rngs_from_state(self):
        rngs = create_run_rngs(3, n_runs=1)[0]
        state = rng_state_snapshot(rngs)
        replay = rngs_from_state(state)
        for name in RUN_STREAMS:
            np.testing.assert_array_equal(
                rngs[name].random(10), replay[name].random(10)
            )

    def test_restore_unknown_stream(self):
        rngs = create_run_rngs(42, n_runs=1)[0]
        state = rng_state_snapshot(rngs)
        state['bogus'] = state['init']
        with pytest.raises(KeyError, match='bogus'):
            restore_rng_state(rngs, state)
