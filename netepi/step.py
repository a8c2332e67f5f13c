"""Step controller: one time step of the propose/validate/commit protocol.

    snapshot → propose (all modules) → validate → commit (module order)
             → advance network → consistency checks → StepOutcome

Every module sees the same immutable snapshot taken at the start of the
step. Validation runs on all proposals before anything is committed, so
a defective module aborts the run without a half-applied step.

Within a step, commit order is infection → recovery → departure →
arrival. Each deactivation is followed immediately by removal of the
individual's vertex (and with it every incident edge); arrivals get new
identifiers and enter the network with no edges before the network
advances.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Sequence, Tuple

import numpy as np

from netepi.errors import (
    AlreadyInactiveError,
    InvalidTransitionError,
    NetworkConsistencyError,
)
from netepi.network import ContactNetwork, NetworkDynamics
from netepi.params import ModelParams
from netepi.population import PopulationSnapshot, PopulationStore
from netepi.transitions import (
    ModuleProposal,
    StepContext,
    balanced_act_rates,
    flow_counts,
)
from netepi.types import TRANSMISSION_DTYPE, DiseaseStatus, FlowType
from netepi.variants import ModelVariant, build_pipeline

logger = logging.getLogger(__name__)


@dataclass
class StepOutcome:
    """Everything recorded for one committed step."""
    step: int
    counts: np.ndarray                              # (n_groups, N_STATUS), end of step
    flows: Dict[Tuple[FlowType, int], int] = field(default_factory=dict)
    act_rates: Tuple[float, ...] = ()
    ref_sizes: Tuple[int, ...] = ()                 # group sizes act_rates were balanced on
    network_stats: Dict[str, float] = field(default_factory=dict)
    transmissions: np.ndarray = field(
        default_factory=lambda: np.empty(0, dtype=TRANSMISSION_DTYPE)
    )
    n_formed: int = 0
    n_dissolved: int = 0

    def flow(self, flow: FlowType, group: int = 1) -> int:
        return self.flows.get((flow, group), 0)


# ═══════════════════════════════════════════════════════════════════════
# VALIDATION
# ═══════════════════════════════════════════════════════════════════════

def validate_proposals(
    proposals: Sequence[ModuleProposal],
    snapshot: PopulationSnapshot,
    variant: ModelVariant,
) -> None:
    """Check a step's proposals against the snapshot they were built from.

    Raises:
        InvalidTransitionError: Unknown or inactive id, status mismatch,
            transition not permitted by the model type, two status
            transitions for one individual, or a malformed arrival.
        AlreadyInactiveError: The same individual departs twice.
    """
    moved: List[np.ndarray] = []
    departed: List[np.ndarray] = []

    for proposal in proposals:
        for batch in proposal.transitions:
            ids = np.asarray(batch.ids, dtype=np.int64)
            label = f"{proposal.module} ({batch.flow.value})"
            if len(ids) == 0:
                continue
            bad = ids[(ids < 0) | (ids >= snapshot.n_issued)]
            if len(bad):
                raise InvalidTransitionError(
                    f"{label}: unknown individual {int(bad[0])} at step {snapshot.step}"
                )
            inactive = ids[~snapshot.active[ids]]
            if len(inactive):
                raise InvalidTransitionError(
                    f"{label}: individual {int(inactive[0])} is inactive at "
                    f"step {snapshot.step}"
                )
            stale = ids[snapshot.status[ids] != batch.from_status]
            if len(stale):
                i = int(stale[0])
                raise InvalidTransitionError(
                    f"{label}: individual {i} is "
                    f"{DiseaseStatus(int(snapshot.status[i])).name}, not "
                    f"{DiseaseStatus(batch.from_status).name}"
                )
            if batch.is_departure:
                departed.append(ids)
                continue
            if not variant.allows(batch.from_status, batch.to_status):
                raise InvalidTransitionError(
                    f"{label}: {DiseaseStatus(batch.from_status).name} → "
                    f"{DiseaseStatus(batch.to_status).name} is not permitted in "
                    f"a {variant.label} model"
                )
            if batch.sources is not None and len(batch.sources) != len(ids):
                raise InvalidTransitionError(
                    f"{label}: {len(batch.sources)} sources for {len(ids)} transitions"
                )
            moved.append(ids)

        for arrival in proposal.arrivals:
            if arrival.count < 0 or not 1 <= arrival.group <= variant.n_groups:
                raise InvalidTransitionError(
                    f"{proposal.module}: invalid arrival batch {arrival!r}"
                )
            if DiseaseStatus(arrival.status) not in variant.statuses:
                raise InvalidTransitionError(
                    f"{proposal.module}: arrivals in status "
                    f"{DiseaseStatus(arrival.status).name} not possible in a "
                    f"{variant.label} model"
                )

    if moved:
        all_moved = np.concatenate(moved)
        uniq, n_seen = np.unique(all_moved, return_counts=True)
        if np.any(n_seen > 1):
            raise InvalidTransitionError(
                f"Individual {int(uniq[n_seen > 1][0])} has two status "
                f"transitions at step {snapshot.step}"
            )
    if departed:
        all_departed = np.concatenate(departed)
        uniq, n_seen = np.unique(all_departed, return_counts=True)
        if np.any(n_seen > 1):
            raise AlreadyInactiveError(
                f"Individual {int(uniq[n_seen > 1][0])} proposed to depart "
                f"twice at step {snapshot.step}"
            )


# ═══════════════════════════════════════════════════════════════════════
# CONTROLLER
# ═══════════════════════════════════════════════════════════════════════

class StepController:
    """Runs single steps of one simulation run.

    Args:
        variant: Model variant (selects the module pipeline).
        params: Resolved parameters.
        population: The run's population store.
        network: The run's contact network (at the step about to run).
        dynamics: Relational dynamics policy.
        rngs: The run's named streams ('epidemic', 'network').
        dt: Step length in time units.
        check_consistency: Recount populations and compare the vertex set
            with the active set after every step.
    """

    def __init__(
        self,
        variant: ModelVariant,
        params: ModelParams,
        population: PopulationStore,
        network: ContactNetwork,
        dynamics: NetworkDynamics,
        rngs: Dict[str, np.random.Generator],
        dt: float = 1.0,
        check_consistency: bool = True,
    ):
        self.variant = variant
        self.params = params
        self.population = population
        self.network = network
        self.dynamics = dynamics
        self.rngs = rngs
        self.dt = dt
        self.check_consistency = check_consistency
        self.pipeline = build_pipeline(variant, params)

    def current_act_rates(self) -> Tuple[float, ...]:
        sizes = tuple(int(n) for n in self.population.counts_by_group().sum(axis=1))
        return balanced_act_rates(self.params, sizes)

    def propose(self, snapshot: PopulationSnapshot, step: int) -> Tuple[List[ModuleProposal], Tuple[float, ...]]:
        """Run every module of the pipeline against one snapshot."""
        act_rates = balanced_act_rates(self.params, snapshot.group_sizes())
        ctx = StepContext(
            snapshot=snapshot,
            network=self.network.view(),
            params=self.params,
            variant=self.variant,
            step=step,
            dt=self.dt,
            rng=self.rngs['epidemic'],
            act_rates=act_rates,
        )
        proposals: List[ModuleProposal] = []
        for name, module in self.pipeline:
            proposal = module(ctx, tuple(proposals))
            proposal.module = name
            proposals.append(proposal)
        return proposals, act_rates

    def run_step(self, step: int) -> StepOutcome:
        """Advance the run by one step.

        Raises:
            SimulationError: Any validation or consistency failure; the
                run cannot continue.
        """
        if self.network.step != step:
            raise NetworkConsistencyError(
                f"Network is at step {self.network.step}, expected {step}"
            )

        snapshot = self.population.snapshot(step)
        proposals, act_rates = self.propose(snapshot, step)
        validate_proposals(proposals, snapshot, self.variant)
        transmissions = self._commit(proposals, snapshot, step)

        n_formed, n_dissolved = self.network.advance_one_step(
            self.dynamics, self.rngs['network']
        )

        if self.check_consistency:
            self.population.check_consistency()
            self.network.check_consistency(self.population.active_ids())

        flows: Dict[Tuple[FlowType, int], int] = {}
        exit_status = self.population.individuals['status']
        for proposal in proposals:
            for key, n in flow_counts(
                    proposal, snapshot, self.variant.n_groups, exit_status).items():
                flows[key] = flows.get(key, 0) + n

        outcome = StepOutcome(
            step=step,
            counts=self.population.counts_by_group(),
            flows=flows,
            act_rates=act_rates,
            ref_sizes=snapshot.group_sizes(),
            network_stats=self.network.statistics(),
            transmissions=transmissions,
            n_formed=n_formed,
            n_dissolved=n_dissolved,
        )
        if logger.isEnabledFor(logging.DEBUG):
            logger.debug(
                "Step %d: %s; edges +%d/-%d",
                step,
                ", ".join(f"{f.value}[g{g}]={n}" for (f, g), n in sorted(
                    flows.items(), key=lambda kv: (kv[0][0].value, kv[0][1])) if n),
                n_formed, n_dissolved,
            )
        return outcome

    # ── Commit ───────────────────────────────────────────────────────

    def _commit(
        self,
        proposals: Sequence[ModuleProposal],
        snapshot: PopulationSnapshot,
        step: int,
    ) -> np.ndarray:
        transmissions = []
        for proposal in proposals:
            for batch in proposal.transitions:
                if batch.is_departure:
                    self.population.deactivate_many(batch.ids, at_step=step)
                    for i in batch.ids:
                        self.network.remove_vertex(int(i))
                    continue
                self.population.apply_transitions(
                    batch.ids, batch.from_status, batch.to_status, at_step=step
                )
                if batch.sources is not None and len(batch.ids):
                    transmissions.append(
                        self._transmission_rows(batch.ids, batch.sources, snapshot, step)
                    )
            for arrival in proposal.arrivals:
                if arrival.count == 0:
                    continue
                ids = self.population.add_individuals(
                    arrival.count, arrival.group, arrival.status, at_step=step
                )
                for i in ids:
                    self.network.add_vertex(int(i), arrival.group)

        if not transmissions:
            return np.empty(0, dtype=TRANSMISSION_DTYPE)
        return np.concatenate(transmissions)

    @staticmethod
    def _transmission_rows(
        ids: np.ndarray,
        sources: np.ndarray,
        snapshot: PopulationSnapshot,
        step: int,
    ) -> np.ndarray:
        rows = np.empty(len(ids), dtype=TRANSMISSION_DTYPE)
        rows['step'] = step
        rows['infected'] = ids
        rows['infector'] = sources
        rows['group'] = snapshot.group[ids]
        rows['infector_duration'] = step - snapshot.infection_step[sources]
        return rows
