"""Tests for netepi.record: record columns, tables and result sets."""

import numpy as np
import pytest

from netepi.params import resolve_params
from netepi.record import (
    RecordBuilder,
    SimulationResults,
    record_columns,
)
from netepi.errors import InvalidTransitionError
from netepi.types import FlowType
from netepi.variants import resolve_variant


# ─── Helpers ──────────────────────────────────────────────────────────

def _names(model, n_groups, raw):
    variant = resolve_variant(model, n_groups)
    return [name for name, _ in record_columns(variant, resolve_params(raw, variant))]


def _builder(n_steps=3):
    variant = resolve_variant('SI', 1)
    params = resolve_params({'inf_prob': 0.2, 'act_rate': 0.5}, variant)
    return RecordBuilder(0, variant, params, n_steps=n_steps, dt=0.5)


def _fill(builder, rows):
    stats = {'edges': 4, 'mean_degree': 0.8, 'isolates': 0}
    for row in range(rows):
        counts = np.array([[10 - row, row, 0]])
        builder.record_row(row, counts, (0.5,), stats,
                           {(FlowType.INFECTION, 1): 1 if row else 0})


# ── Columns ───────────────────────────────────────────────────────────

class TestColumns:
    def test_si_one_group(self):
        assert _names('SI', 1, {'inf_prob': 0.2, 'act_rate': 1}) == [
            's_num', 'i_num', 'num', 'si_flow', 'act_rate', 'edges', 'mean_degree',
        ]

    def test_sir_demography(self):
        names = _names('SIR', 1, {'inf_prob': 0.2, 'act_rate': 1, 'rec_rate': 0.1,
                                  'a_rate': 0.1, 'ds_rate': 0.1, 'di_rate': 0.1,
                                  'dr_rate': 0.1})
        for col in ('r_num', 'ir_flow', 'a_flow', 'ds_flow', 'di_flow', 'dr_flow'):
            assert col in names

    def test_sis_two_groups(self):
        names = _names('SIS', 2, {'inf_prob': 0.2, 'inf_prob_g2': 0.2, 'act_rate': 1,
                                  'rec_rate': 0.1, 'rec_rate_g2': 0.1})
        for col in ('s_num_g2', 'i_num_g2', 'num_g2', 'is_flow', 'is_flow_g2', 'act_rate_g2',
                    'act_ref_num', 'act_ref_num_g2'):
            assert col in names
        assert 'r_num' not in names
        assert 'ir_flow' not in names


# ── Records ───────────────────────────────────────────────────────────

class TestRecord:
    def test_completed_record(self):
        builder = _builder(3)
        _fill(builder, 4)
        record = builder.finish()
        assert record.completed
        assert record.steps_completed == 3
        assert record.model == 'SI-1g'
        np.testing.assert_array_equal(record.column('i_num'), [0, 1, 2, 3])
        np.testing.assert_array_equal(record.column('si_flow'), [0, 1, 1, 1])
        np.testing.assert_allclose(record.time, [0.0, 0.5, 1.0, 1.5])

    def test_partial_record_keeps_rows(self):
        builder = _builder(10)
        _fill(builder, 3)
        record = builder.finish(error=InvalidTransitionError("bad module"))
        assert not record.completed
        assert record.steps_completed == 2
        assert len(record.column('s_num')) == 3
        assert record.error == "bad module"
        assert record.error_type == 'InvalidTransitionError'

    def test_as_table(self):
        builder = _builder(2)
        _fill(builder, 3)
        table = builder.finish().as_table()
        assert table.dtype.names[:2] == ('step', 'time')
        assert table['step'].tolist() == [0, 1, 2]
        assert table['num'].tolist() == [10, 10, 10]
        assert table['mean_degree'][0] == pytest.approx(0.8)

    def test_unknown_column(self):
        builder = _builder(1)
        _fill(builder, 2)
        with pytest.raises(KeyError, match='r_num'):
            builder.finish().column('r_num')


class TestSimulationResults:
    def _results(self):
        done = _builder(2)
        _fill(done, 3)
        failed = _builder(2)
        _fill(failed, 2)
        return SimulationResults(records=[
            done.finish(),
            failed.finish(error=InvalidTransitionError("x")),
        ])

    def test_completed_and_failed(self):
        results = self._results()
        assert len(results) == 2
        assert len(results.completed) == 1
        assert len(results.failed) == 1
        assert results[1].error_type == 'InvalidTransitionError'

    def test_stack_completed_runs(self):
        stacked = self._results().stack('i_num')
        assert stacked.shape == (1, 3)

    def test_stack_without_completed_runs(self):
        with pytest.raises(ValueError):
            SimulationResults().stack('i_num')
