"""Transition modules: infection, recovery, departure, arrival.

Each module is a pure proposal function

    propose_*(ctx: StepContext, prior: Sequence[ModuleProposal]) -> ModuleProposal

computed from the immutable population snapshot and the read-only
network view of the current step. Modules never mutate a store; the
step controller validates every proposal and commits them in the fixed
order infection → recovery → departure → arrival.

All randomness comes from ctx.rng, the run's epidemic stream, and is
consumed in a fixed order (one draw per eligible individual, ascending
identifier), so a run is bit-reproducible from its seed.

Hazards:
  - Per-act transmission probability τ, act rate α (per unit time), step
    length dt. Per discordant partnership and step:
        p_edge = 1 − (1 − τ)^(α·dt)
    A susceptible with infected partners k = 1..K is infected with
        p_inf = 1 − Π_k (1 − p_edge,k)
    (one Bernoulli draw per susceptible).
  - Rates (recovery, departure) convert to per-step probabilities as
        p = 1 − exp(−rate · dt)
  - Arrivals per group are Poisson with mean a_rate · n_ref · dt.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Dict, List, Optional, Sequence, Tuple

import numpy as np

from netepi.errors import InvalidTransitionError
from netepi.types import (
    DEPARTURE_FLOWS,
    DiseaseStatus,
    FlowType,
)

if TYPE_CHECKING:
    from netepi.network import NetworkView
    from netepi.params import ModelParams
    from netepi.population import PopulationSnapshot
    from netepi.variants import ModelVariant


# ═══════════════════════════════════════════════════════════════════════
# PROPOSAL TYPES
# ═══════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class TransitionBatch:
    """Individuals proposed for the same (from → to) move.

    to_status None means deactivation (departure). sources holds the
    attributed infector of each id for infection batches.
    """
    flow: FlowType
    ids: np.ndarray
    from_status: DiseaseStatus
    to_status: Optional[DiseaseStatus]
    sources: Optional[np.ndarray] = None

    @property
    def is_departure(self) -> bool:
        return self.to_status is None


@dataclass(frozen=True)
class ArrivalBatch:
    """New susceptible entrants for one group."""
    group: int
    count: int
    status: DiseaseStatus = DiseaseStatus.S


@dataclass
class ModuleProposal:
    """Everything one module proposes for one step."""
    module: str
    transitions: List[TransitionBatch] = field(default_factory=list)
    arrivals: List[ArrivalBatch] = field(default_factory=list)

    def departures(self) -> List[TransitionBatch]:
        return [b for b in self.transitions if b.is_departure]


@dataclass(frozen=True)
class StepContext:
    """Immutable inputs shared by every module within one step."""
    snapshot: 'PopulationSnapshot'
    network: 'NetworkView'
    params: 'ModelParams'
    variant: 'ModelVariant'
    step: int
    dt: float
    rng: np.random.Generator
    act_rates: Tuple[float, ...]


# ═══════════════════════════════════════════════════════════════════════
# DERIVED QUANTITIES
# ═══════════════════════════════════════════════════════════════════════

def rate_to_probability(rate, dt: float = 1.0):
    """Probability of at least one event in dt at a constant rate.

    p = 1 − exp(−rate · dt)

    Args:
        rate: Rate per unit time (scalar or array).
        dt: Step length in time units.
    """
    return 1.0 - np.exp(-np.asarray(rate, dtype=np.float64) * dt)


def balanced_act_rates(params: 'ModelParams', group_sizes: Sequence[int]) -> Tuple[float, ...]:
    """Act rates per group, balanced so both groups have equal total acts.

    The authoritative group's rate is taken as given; the other group's
    rate is derived as

        α_other = α_auth · n_auth / n_other

    so α_1·n_1 = α_2·n_2. An empty non-authoritative group gets 0.

    Args:
        params: Resolved parameters (act_rate, balance).
        group_sizes: Active size of each group in the current snapshot.

    Returns:
        Tuple with one act rate per group.
    """
    if params.n_groups == 1:
        return (float(params.act_rate[0]),)

    auth = params.authoritative_group
    other = 2 if auth == 1 else 1
    rate_auth = float(params.act_rate[auth - 1])
    n_auth = group_sizes[auth - 1]
    n_other = group_sizes[other - 1]
    rate_other = rate_auth * n_auth / n_other if n_other > 0 else 0.0

    rates = [0.0, 0.0]
    rates[auth - 1] = rate_auth
    rates[other - 1] = rate_other
    return tuple(rates)


def discordant_edges(
    snapshot: 'PopulationSnapshot',
    edges: np.ndarray,
    cross_group_only: bool = False,
) -> Tuple[np.ndarray, np.ndarray]:
    """Orient susceptible–infected edges as (susceptible, infected) arrays.

    Args:
        snapshot: Population snapshot of the current step.
        edges: (E, 2) array of current edges.
        cross_group_only: If True, drop pairs within the same group.
    """
    if len(edges) == 0:
        empty = np.empty(0, dtype=np.int64)
        return empty, empty
    a, b = edges[:, 0], edges[:, 1]
    st_a = snapshot.status[a]
    st_b = snapshot.status[b]
    ab = (st_a == DiseaseStatus.S) & (st_b == DiseaseStatus.I)
    ba = (st_a == DiseaseStatus.I) & (st_b == DiseaseStatus.S)
    sus = np.concatenate([a[ab], b[ba]])
    inf = np.concatenate([b[ab], a[ba]])
    if cross_group_only:
        keep = snapshot.group[sus] != snapshot.group[inf]
        sus, inf = sus[keep], inf[keep]
    return sus, inf


def transmission_probabilities(
    ctx: StepContext,
    sus: np.ndarray,
    inf: np.ndarray,
) -> np.ndarray:
    """Per-partnership transmission probability for one step.

    Uses the susceptible's group for τ and α and the infector's infection
    duration (steps since infection, first step = index 0) to index τ.
    """
    snap = ctx.snapshot
    params = ctx.params
    if len(sus) == 0:
        return np.empty(0, dtype=np.float64)

    sus_group = snap.group[sus].astype(np.int64)
    duration = ctx.step - snap.infection_step[inf].astype(np.int64)

    p_act = np.empty(len(sus), dtype=np.float64)
    for g in range(1, params.n_groups + 1):
        in_g = sus_group == g
        if not in_g.any():
            continue
        tau = params.inf_prob[g - 1]
        idx = np.clip(duration[in_g] - 1, 0, len(tau) - 1)
        p_act[in_g] = tau[idx]

    if params.intervention_active(ctx.step):
        p_act *= 1.0 - params.inter_eff

    acts = np.asarray(ctx.act_rates, dtype=np.float64)[sus_group - 1] * ctx.dt
    return 1.0 - np.power(1.0 - p_act, acts)


# ═══════════════════════════════════════════════════════════════════════
# INFECTION
# ═══════════════════════════════════════════════════════════════════════

def propose_infections(ctx: StepContext, prior: Sequence[ModuleProposal] = ()) -> ModuleProposal:
    """S → I for susceptibles with infected partners.

    Every active susceptible receives exactly one Bernoulli draw with its
    combined infection probability over all current infected partners
    (opposite-group partners only in two-group models). The infector
    credited with each new infection is drawn among the susceptible's
    infected partners, weighted by their per-partnership probability.
    """
    snap = ctx.snapshot
    proposal = ModuleProposal('infection')

    susceptible = snap.ids_with(DiseaseStatus.S)
    if len(susceptible) == 0:
        return proposal

    sus, inf = discordant_edges(
        snap, ctx.network.edge_array(), cross_group_only=ctx.variant.bipartite,
    )
    p_edge = transmission_probabilities(ctx, sus, inf)

    escape = np.ones(snap.n_issued, dtype=np.float64)
    np.multiply.at(escape, sus, 1.0 - p_edge)
    p_inf = 1.0 - escape[susceptible]

    draws = ctx.rng.random(len(susceptible)) < p_inf
    newly = susceptible[draws]

    sources = np.empty(len(newly), dtype=np.int64)
    for k, i in enumerate(newly):
        mine = sus == i
        candidates = inf[mine]
        weights = p_edge[mine]
        if len(candidates) == 1:
            sources[k] = candidates[0]
        else:
            sources[k] = candidates[ctx.rng.choice(len(candidates), p=weights / weights.sum())]

    proposal.transitions.append(TransitionBatch(
        flow=FlowType.INFECTION,
        ids=newly,
        from_status=DiseaseStatus.S,
        to_status=DiseaseStatus.I,
        sources=sources,
    ))
    return proposal


# ═══════════════════════════════════════════════════════════════════════
# RECOVERY
# ═══════════════════════════════════════════════════════════════════════

def propose_recoveries(ctx: StepContext, prior: Sequence[ModuleProposal] = ()) -> ModuleProposal:
    """I → R (SIR) or I → S (SIS) for individuals infected at step start.

    The destination depends only on the model variant. Individuals
    infected during this step are not in the snapshot's infected set and
    cannot recover in the same step.
    """
    snap = ctx.snapshot
    params = ctx.params
    dest = ctx.variant.recovery_destination
    proposal = ModuleProposal('recovery')
    if dest is None:
        return proposal

    infected = snap.ids_with(DiseaseStatus.I)
    rates = np.array(params.rec_rate, dtype=np.float64)
    p_rec = rate_to_probability(rates[snap.group[infected].astype(np.int64) - 1], ctx.dt)
    draws = ctx.rng.random(len(infected)) < p_rec

    flow = FlowType.RECOVERY if dest == DiseaseStatus.R else FlowType.RELAPSE
    proposal.transitions.append(TransitionBatch(
        flow=flow,
        ids=infected[draws],
        from_status=DiseaseStatus.I,
        to_status=dest,
    ))
    return proposal


# ═══════════════════════════════════════════════════════════════════════
# DEPARTURE
# ═══════════════════════════════════════════════════════════════════════

def propose_departures(ctx: StepContext, prior: Sequence[ModuleProposal] = ()) -> ModuleProposal:
    """Deactivation of active individuals at per-status, per-group rates.

    Status is read from the snapshot: someone infected earlier in this
    step departs at the susceptible rate.
    """
    snap = ctx.snapshot
    params = ctx.params
    proposal = ModuleProposal('departure')

    for status in ctx.variant.statuses:
        ids = snap.ids_with(status)
        rates = np.array(
            [params.departure_rate(status, g) for g in range(1, params.n_groups + 1)],
            dtype=np.float64,
        )
        p_dep = rate_to_probability(rates[snap.group[ids].astype(np.int64) - 1], ctx.dt)
        draws = ctx.rng.random(len(ids)) < p_dep
        proposal.transitions.append(TransitionBatch(
            flow=DEPARTURE_FLOWS[status],
            ids=ids[draws],
            from_status=status,
            to_status=None,
        ))
    return proposal


# ═══════════════════════════════════════════════════════════════════════
# ARRIVAL
# ═══════════════════════════════════════════════════════════════════════

def reference_sizes(
    snapshot: 'PopulationSnapshot',
    prior: Sequence[ModuleProposal],
    n_groups: int,
) -> Tuple[int, ...]:
    """Group sizes net of this step's proposed departures."""
    sizes = np.array(snapshot.group_sizes(), dtype=np.int64)
    for proposal in prior:
        for batch in proposal.departures():
            if len(batch.ids):
                sizes -= np.bincount(
                    snapshot.group[batch.ids].astype(np.int64) - 1, minlength=n_groups
                )
    return tuple(int(n) for n in sizes)


def expected_arrivals(
    params: 'ModelParams',
    sizes: Sequence[int],
    dt: float,
) -> Tuple[float, ...]:
    """Expected entrants per group for one step.

    Group 1 (and group 2 when a_rate_g2 is set) scale their own size.
    Otherwise group 2's expectation comes from the allocation policy
    applied to group 1's expectation.
    """
    expected = [params.a_rate[0] * sizes[0] * dt]
    if params.n_groups == 2:
        a2 = params.a_rate[1]
        if a2 is not None:
            expected.append(a2 * sizes[1] * dt)
        else:
            try:
                expected.append(float(params.arrival_allocation(expected[0], tuple(sizes))))
            except Exception as exc:
                raise InvalidTransitionError(
                    f"arrival_allocation failed for group 2 with sizes "
                    f"{tuple(sizes)}: {type(exc).__name__}: {exc}"
                ) from exc
    for g, lam in enumerate(expected, start=1):
        if not np.isfinite(lam) or lam < 0:
            raise InvalidTransitionError(
                f"Expected arrivals for group {g} must be finite and "
                f"non-negative, got {lam!r}"
            )
    return tuple(expected)


def propose_arrivals(ctx: StepContext, prior: Sequence[ModuleProposal] = ()) -> ModuleProposal:
    """New susceptible entrants, Poisson per group."""
    params = ctx.params
    proposal = ModuleProposal('arrival')
    sizes = reference_sizes(ctx.snapshot, prior, params.n_groups)
    expected = expected_arrivals(params, sizes, ctx.dt)
    counts = ctx.rng.poisson(expected)
    for g, n in enumerate(counts, start=1):
        proposal.arrivals.append(ArrivalBatch(group=g, count=int(n)))
    return proposal


def flow_counts(
    proposal: ModuleProposal,
    snapshot: 'PopulationSnapshot',
    n_groups: int,
    exit_status: Optional[np.ndarray] = None,
) -> Dict[Tuple[FlowType, int], int]:
    """(flow, group) → count for one module's proposal.

    exit_status, if given, holds every individual's status after commit.
    Departures are then counted by the status held when leaving, so an
    individual infected and departing in the same step is a di departure.
    """
    counts: Dict[Tuple[FlowType, int], int] = {}
    for batch in proposal.transitions:
        if batch.is_departure and exit_status is not None and len(batch.ids):
            for status in np.unique(exit_status[batch.ids]):
                ids = batch.ids[exit_status[batch.ids] == status]
                per_group = np.bincount(
                    snapshot.group[ids].astype(np.int64) - 1, minlength=n_groups
                )
                flow = DEPARTURE_FLOWS[DiseaseStatus(int(status))]
                for g in range(1, n_groups + 1):
                    key = (flow, g)
                    counts[key] = counts.get(key, 0) + int(per_group[g - 1])
            continue
        per_group = np.bincount(
            snapshot.group[batch.ids].astype(np.int64) - 1, minlength=n_groups
        ) if len(batch.ids) else np.zeros(n_groups, dtype=np.int64)
        for g in range(1, n_groups + 1):
            key = (batch.flow, g)
            counts[key] = counts.get(key, 0) + int(per_group[g - 1])
    for arrival in proposal.arrivals:
        key = (FlowType.ARRIVAL, arrival.group)
        counts[key] = counts.get(key, 0) + arrival.count
    return counts
