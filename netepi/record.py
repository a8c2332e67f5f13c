"""Simulation records: per-run time series plus the final network.

Row 0 of every column holds the initial conditions (flows are zero);
row t holds the state at the end of step t. A run that fails keeps the
rows it completed. Its final network is None, since the failing step may
have committed part of its changes before the error.

Columns (group 2 columns carry the suffix ``_g2``):
  - counts:   s_num, i_num, r_num (statuses of the model only), num
  - flows:    si_flow, ir_flow (SIR) or is_flow (SIS); with demography
              a_flow, ds_flow, di_flow, dr_flow (SIR only)
  - mixing:   act_rate (balanced, per group); two-group models add
              act_ref_num, the group sizes at the start of the step that
              the act rates were balanced on (row t: sizes before step t,
              so act_ref_num[t] == num[t-1])
  - network:  edges, mean_degree
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Iterator, List, Optional, Sequence, Tuple

import networkx as nx
import numpy as np

from netepi.params import ModelParams
from netepi.types import (
    DEPARTURE_FLOWS,
    EDGE_SPELL_DTYPE,
    TRANSMISSION_DTYPE,
    DiseaseStatus,
    FlowType,
    group_column,
)
from netepi.variants import ModelVariant


def flow_types(variant: ModelVariant, params: ModelParams) -> List[FlowType]:
    """Flows recorded for a variant, in column order."""
    flows = [FlowType.INFECTION]
    if variant.recovery_destination == DiseaseStatus.R:
        flows.append(FlowType.RECOVERY)
    elif variant.recovery_destination == DiseaseStatus.S:
        flows.append(FlowType.RELAPSE)
    if params.demography:
        flows.append(FlowType.ARRIVAL)
        flows.extend(DEPARTURE_FLOWS[s] for s in variant.statuses)
    return flows


def record_columns(variant: ModelVariant, params: ModelParams) -> List[Tuple[str, Any]]:
    """(name, dtype) of every epi column for a variant."""
    columns: List[Tuple[str, Any]] = []
    for g in range(1, variant.n_groups + 1):
        for status in variant.statuses:
            columns.append((group_column(f"{status.label}_num", g), np.int64))
        columns.append((group_column('num', g), np.int64))
    for flow in flow_types(variant, params):
        for g in range(1, variant.n_groups + 1):
            columns.append((group_column(flow.value, g), np.int64))
    for g in range(1, variant.n_groups + 1):
        columns.append((group_column('act_rate', g), np.float64))
    if variant.n_groups == 2:
        for g in range(1, 3):
            columns.append((group_column('act_ref_num', g), np.int64))
    columns.append(('edges', np.int64))
    columns.append(('mean_degree', np.float64))
    return columns


# ═══════════════════════════════════════════════════════════════════════
# RECORD
# ═══════════════════════════════════════════════════════════════════════

@dataclass
class SimulationRecord:
    """Output of one run.

    network is the frozen final graph of a completed run and None for a
    run that ended with an error.
    """
    run: int
    n_steps: int
    dt: float
    model: str
    epi: Dict[str, np.ndarray] = field(default_factory=dict)
    transmissions: np.ndarray = field(
        default_factory=lambda: np.empty(0, dtype=TRANSMISSION_DTYPE)
    )
    network: Optional[nx.Graph] = None
    edge_spells: np.ndarray = field(
        default_factory=lambda: np.empty(0, dtype=EDGE_SPELL_DTYPE)
    )
    rng_state: Dict[str, dict] = field(default_factory=dict)
    completed: bool = False
    steps_completed: int = 0
    error: Optional[str] = None
    error_type: Optional[str] = None

    @property
    def n_rows(self) -> int:
        return self.steps_completed + 1

    @property
    def steps(self) -> np.ndarray:
        return np.arange(self.n_rows)

    @property
    def time(self) -> np.ndarray:
        return self.steps * self.dt

    @property
    def columns(self) -> List[str]:
        return list(self.epi)

    def column(self, name: str) -> np.ndarray:
        try:
            return self.epi[name]
        except KeyError:
            raise KeyError(
                f"No column '{name}' in a {self.model} record; "
                f"available: {', '.join(self.epi)}"
            ) from None

    def as_table(self) -> np.ndarray:
        """Structured array with one row per recorded step.

        Fields are step, time, then every epi column in order.
        """
        dtype = [('step', np.int32), ('time', np.float64)]
        dtype += [(name, values.dtype) for name, values in self.epi.items()]
        table = np.empty(self.n_rows, dtype=dtype)
        table['step'] = self.steps
        table['time'] = self.time
        for name, values in self.epi.items():
            table[name] = values
        return table


class RecordBuilder:
    """Preallocated per-step arrays for one run, truncated on finish."""

    def __init__(self, run: int, variant: ModelVariant, params: ModelParams,
                 n_steps: int, dt: float):
        self.run = run
        self.variant = variant
        self.params = params
        self.n_steps = n_steps
        self.dt = dt
        self.flows = flow_types(variant, params)
        self.epi = {
            name: np.zeros(n_steps + 1, dtype=dtype)
            for name, dtype in record_columns(variant, params)
        }
        self.transmissions: List[np.ndarray] = []
        self.last_row = -1

    def record_row(
        self,
        row: int,
        counts: np.ndarray,
        act_rates: Sequence[float],
        network_stats: Dict[str, float],
        flows: Optional[Dict[Tuple[FlowType, int], int]] = None,
        ref_sizes: Optional[Sequence[int]] = None,
    ) -> None:
        """Fill one row. ref_sizes defaults to the row's own group sizes."""
        epi = self.epi
        flows = flows or {}
        if ref_sizes is None:
            ref_sizes = tuple(int(n) for n in counts.sum(axis=1))
        two_groups = self.variant.n_groups == 2
        for g in range(1, self.variant.n_groups + 1):
            for status in self.variant.statuses:
                epi[group_column(f"{status.label}_num", g)][row] = counts[g - 1, status]
            epi[group_column('num', g)][row] = counts[g - 1].sum()
            for flow in self.flows:
                epi[group_column(flow.value, g)][row] = flows.get((flow, g), 0)
            epi[group_column('act_rate', g)][row] = act_rates[g - 1]
            if two_groups:
                epi[group_column('act_ref_num', g)][row] = ref_sizes[g - 1]
        epi['edges'][row] = network_stats['edges']
        epi['mean_degree'][row] = network_stats['mean_degree']
        self.last_row = row

    def record_step(self, outcome) -> None:
        """Append one StepOutcome as row outcome.step."""
        self.record_row(
            outcome.step, outcome.counts, outcome.act_rates,
            outcome.network_stats, outcome.flows, outcome.ref_sizes or None,
        )
        if len(outcome.transmissions):
            self.transmissions.append(outcome.transmissions)

    def finish(
        self,
        network: Optional[nx.Graph] = None,
        edge_spells: Optional[np.ndarray] = None,
        rng_state: Optional[Dict[str, dict]] = None,
        error: Optional[BaseException] = None,
    ) -> SimulationRecord:
        steps_completed = max(self.last_row, 0)
        n_rows = steps_completed + 1
        if self.transmissions:
            transmissions = np.concatenate(self.transmissions)
        else:
            transmissions = np.empty(0, dtype=TRANSMISSION_DTYPE)
        return SimulationRecord(
            run=self.run,
            n_steps=self.n_steps,
            dt=self.dt,
            model=self.variant.label,
            epi={name: values[:n_rows].copy() for name, values in self.epi.items()},
            transmissions=transmissions,
            network=network,
            edge_spells=(edge_spells if edge_spells is not None
                         else np.empty(0, dtype=EDGE_SPELL_DTYPE)),
            rng_state=rng_state or {},
            completed=error is None and steps_completed == self.n_steps,
            steps_completed=steps_completed,
            error=None if error is None else str(error),
            error_type=None if error is None else type(error).__name__,
        )


# ═══════════════════════════════════════════════════════════════════════
# RESULTS
# ═══════════════════════════════════════════════════════════════════════

@dataclass
class SimulationResults:
    """All run records of one simulation, ordered by run index."""
    records: List[SimulationRecord] = field(default_factory=list)
    config: Any = None

    def __len__(self) -> int:
        return len(self.records)

    def __iter__(self) -> Iterator[SimulationRecord]:
        return iter(self.records)

    def __getitem__(self, run: int) -> SimulationRecord:
        return self.records[run]

    @property
    def completed(self) -> List[SimulationRecord]:
        return [r for r in self.records if r.completed]

    @property
    def failed(self) -> List[SimulationRecord]:
        return [r for r in self.records if not r.completed]

    def stack(self, column: str) -> np.ndarray:
        """(n_completed_runs, n_steps + 1) array of one column.

        Raises:
            ValueError: If no run completed.
        """
        done = self.completed
        if not done:
            raise ValueError("No completed runs to stack")
        return np.vstack([r.column(column) for r in done])
