"""Simulation driver: replicate runs of the network epidemic model.

Per run:
  1. Initial population from the init counts (statuses permuted with the
     run's 'init' stream)
  2. Initial network: supplied graph, edge-list file, or a Bernoulli
     random graph at the target mean degree ('init' stream)
  3. Row 0 of the record: initial counts, act rates, network statistics
  4. Steps 1..n_steps through the StepController
  5. Record: time series, transmissions, final frozen graph, edge spells
     and the starting RNG state for exact replay

Configuration is fully validated before the first run. A SimulationError
inside a run ends only that run; its record keeps the rows it completed
and is tagged incomplete. Runs share nothing but the master seed, so they
may be executed in a process pool.
"""

from __future__ import annotations

import logging
import time
from multiprocessing import Pool
from typing import Callable, Dict, Optional

import networkx as nx
import numpy as np

from netepi.config import SimulationConfig, default_config, resolve_model, validate_config
from netepi.errors import RunTimeoutError, SimulationError
from netepi.network import (
    ContactNetwork,
    as_dynamics,
    build_dynamics,
    check_initial_graph,
    initialize_network,
    read_edgelist,
)
from netepi.population import PopulationStore
from netepi.record import RecordBuilder, SimulationRecord, SimulationResults
from netepi.rng import create_run_rngs, rng_state_snapshot
from netepi.step import StepController
from netepi.types import EDGE_SPELL_DTYPE

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[int, int, int], None]


def _initial_graph(
    config: SimulationConfig,
    initial_network: Optional[nx.Graph],
) -> Optional[nx.Graph]:
    """Externally supplied initial graph, if any (checked against init)."""
    n = config.init.size
    if initial_network is None and config.network.edgelist_file is not None:
        initial_network = read_edgelist(config.network.edgelist_file, n)
    if initial_network is not None:
        check_initial_graph(initial_network, n)
    return initial_network


# ═══════════════════════════════════════════════════════════════════════
# SINGLE RUN
# ═══════════════════════════════════════════════════════════════════════

def run_single(
    config: SimulationConfig,
    run_index: int,
    rngs: Dict[str, np.random.Generator],
    initial_network: Optional[nx.Graph] = None,
    dynamics=None,
    progress_callback: Optional[ProgressCallback] = None,
) -> SimulationRecord:
    """Run one replicate.

    Args:
        config: Validated configuration.
        run_index: Index of this run (recorded on the record).
        rngs: The run's named streams ('init', 'epidemic', 'network').
        initial_network: Optional initial graph with nodes 0..N-1.
        dynamics: Optional relational dynamics policy; defaults to the
            one selected by config.network.
        progress_callback: Called as (run_index, step, n_steps) after
            every step.

    Returns:
        SimulationRecord. completed is False if a SimulationError ended
        the run early; the error is recorded on the record.
    """
    variant, params = resolve_model(config)
    ctl = config.control
    rng_state = rng_state_snapshot(rngs)
    builder = RecordBuilder(run_index, variant, params, ctl.n_steps, ctl.dt)

    population = PopulationStore.from_initial_conditions(config.init, variant, rngs['init'])
    groups = population.individuals['group']
    if initial_network is not None:
        network = ContactNetwork.from_graph(
            initial_network, groups, track_history=ctl.track_history,
        )
    else:
        network = initialize_network(
            groups, config.network.mean_degree, rngs['init'],
            bipartite=variant.bipartite, track_history=ctl.track_history,
        )
    if dynamics is None:
        dynamics = build_dynamics(config.network, variant, ctl.dt)
    else:
        dynamics = as_dynamics(dynamics)

    controller = StepController(
        variant, params, population, network, dynamics, rngs,
        dt=ctl.dt, check_consistency=ctl.check_consistency,
    )
    builder.record_row(
        0, population.counts_by_group(), controller.current_act_rates(),
        network.statistics(),
    )

    error: Optional[SimulationError] = None
    t_start = time.monotonic()
    step = 0
    try:
        for step in range(1, ctl.n_steps + 1):
            elapsed = time.monotonic() - t_start
            if ctl.max_run_seconds is not None and elapsed > ctl.max_run_seconds:
                raise RunTimeoutError(
                    f"Run {run_index} exceeded {ctl.max_run_seconds}s after "
                    f"{step - 1} steps ({elapsed:.1f}s)"
                )
            outcome = controller.run_step(step)
            builder.record_step(outcome)

            if ctl.progress_interval and step % ctl.progress_interval == 0:
                logger.info(
                    "Run %d: step %d/%d, %s, edges=%d",
                    run_index, step, ctl.n_steps,
                    population.snapshot_counts(), network.n_edges,
                )
            if progress_callback is not None:
                progress_callback(run_index, step, ctl.n_steps)
    except SimulationError as exc:
        error = exc
        logger.warning(
            "Run %d failed at step %d: %s: %s",
            run_index, step, type(exc).__name__, exc,
        )

    edge_spells = (network.edge_spells() if ctl.track_history
                   else np.empty(0, dtype=EDGE_SPELL_DTYPE))
    return builder.finish(
        network=network.frozen_graph() if error is None else None,
        edge_spells=edge_spells,
        rng_state=rng_state,
        error=error,
    )


def _run_worker(args) -> SimulationRecord:
    """Pool entry point (must be importable at module level)."""
    config, run_index, rngs, initial_network, dynamics = args
    return run_single(config, run_index, rngs, initial_network, dynamics)


# ═══════════════════════════════════════════════════════════════════════
# REPLICATE RUNS
# ═══════════════════════════════════════════════════════════════════════

def run_network_simulation(
    config: Optional[SimulationConfig] = None,
    initial_network: Optional[nx.Graph] = None,
    dynamics=None,
    progress_callback: Optional[ProgressCallback] = None,
) -> SimulationResults:
    """Run all replicates of a network epidemic simulation.

    Each run r uses the streams spawned for it from control.seed, so a
    run's output depends only on the seed, the configuration and r.

    Args:
        config: Simulation configuration; default_config() if None.
        initial_network: Optional initial graph (nodes 0..N-1, shared by
            all runs). Takes precedence over network.edgelist_file.
        dynamics: Optional relational dynamics policy (an object with
            propose(view, rng), or a callable with that signature).
        progress_callback: Called as (run_index, step, n_steps). In a
            process pool it is called once per finished run.

    Returns:
        SimulationResults with one record per run, ordered by run index.

    Raises:
        ParameterError: If the configuration, parameters, initial
            conditions or initial network are invalid. Raised before any
            run starts.
    """
    if config is None:
        config = default_config()
    else:
        validate_config(config)
    variant, _ = resolve_model(config)
    ctl = config.control

    initial_network = _initial_graph(config, initial_network)
    if dynamics is not None:
        dynamics = as_dynamics(dynamics)

    logger.info(
        "Starting %d run(s) of %s model: %d steps, dt=%g, N0=%d, seed=%d",
        ctl.n_runs, variant.label, ctl.n_steps, ctl.dt, config.init.size, ctl.seed,
    )
    all_rngs = create_run_rngs(ctl.seed, ctl.n_runs)

    records = []
    if ctl.parallel_workers > 1 and ctl.n_runs > 1:
        tasks = [
            (config, r, all_rngs[r], initial_network, dynamics)
            for r in range(ctl.n_runs)
        ]
        with Pool(processes=min(ctl.parallel_workers, ctl.n_runs)) as pool:
            for record in pool.imap(_run_worker, tasks):
                records.append(record)
                if progress_callback is not None:
                    progress_callback(record.run, record.steps_completed, ctl.n_steps)
    else:
        for r in range(ctl.n_runs):
            logger.debug("Run %d starting", r)
            records.append(run_single(
                config, r, all_rngs[r], initial_network, dynamics, progress_callback,
            ))

    results = SimulationResults(records=records, config=config)
    logger.info(
        "Finished %d run(s): %d completed, %d failed",
        len(records), len(results.completed), len(results.failed),
    )
    return results
