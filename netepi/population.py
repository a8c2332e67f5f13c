"""Population state store.

Owns every individual's attributes (disease status, group, entry/exit
step) and the aggregate (group × status) counts derived from them.

Individuals live in a growable structured array indexed by identifier.
Identifiers are issued sequentially and never reused within a run;
departed individuals are deactivated, never removed, so identifiers that
appear in recorded history (transmissions, edge spells) stay valid.

The store is mutated only through add_individuals, apply_transition(s)
and deactivate(_many). Every mutation keeps the aggregate counts in step
with the per-individual rows; check_consistency() verifies that.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Dict, Optional

import numpy as np

from netepi.errors import (
    AlreadyInactiveError,
    InvalidTransitionError,
    ParameterError,
    PopulationConsistencyError,
)
from netepi.types import N_STATUS, DiseaseStatus, allocate_individuals

if TYPE_CHECKING:
    from netepi.config import InitSection
    from netepi.variants import ModelVariant


MIN_CAPACITY = 64


# ═══════════════════════════════════════════════════════════════════════
# SNAPSHOT
# ═══════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class PopulationSnapshot:
    """Immutable view of the population at the start of one step.

    Arrays cover every identifier issued so far (active or not) and are
    read-only. counts has shape (n_groups, N_STATUS) over active
    individuals.
    """
    step: int
    status: np.ndarray
    group: np.ndarray
    active: np.ndarray
    infection_step: np.ndarray
    counts: np.ndarray

    @property
    def n_issued(self) -> int:
        return len(self.status)

    @property
    def size(self) -> int:
        return int(self.counts.sum())

    def group_size(self, group: int) -> int:
        return int(self.counts[group - 1].sum())

    def group_sizes(self):
        return tuple(int(n) for n in self.counts.sum(axis=1))

    def ids_with(self, status: DiseaseStatus, group: Optional[int] = None) -> np.ndarray:
        """Active ids holding a status (optionally within one group), ascending."""
        mask = self.active & (self.status == status)
        if group is not None:
            mask &= self.group == group
        return np.flatnonzero(mask)

    def active_ids(self) -> np.ndarray:
        return np.flatnonzero(self.active)


# ═══════════════════════════════════════════════════════════════════════
# STORE
# ═══════════════════════════════════════════════════════════════════════

class PopulationStore:
    """Per-individual state plus aggregate counts for one run."""

    def __init__(self, variant: 'ModelVariant', capacity: int = MIN_CAPACITY):
        self.variant = variant
        self._data = allocate_individuals(max(int(capacity), MIN_CAPACITY))
        self._n = 0
        self._counts = np.zeros((variant.n_groups, N_STATUS), dtype=np.int64)

    # ── Construction ─────────────────────────────────────────────────

    @classmethod
    def from_initial_conditions(
        cls,
        init: 'InitSection',
        variant: 'ModelVariant',
        rng: np.random.Generator,
    ) -> 'PopulationStore':
        """Create the initial population.

        Group 1 identifiers come first, then group 2. Within each group
        statuses are randomly permuted with the run's init stream, so the
        initially infected are not always the lowest identifiers.
        """
        counts = init.group_counts(variant.n_groups)
        store = cls(variant, capacity=2 * int(counts.sum()))
        for g, group_counts in enumerate(counts, start=1):
            statuses = np.repeat(
                np.arange(N_STATUS, dtype=np.int8), group_counts
            )
            rng.shuffle(statuses)
            store._append(statuses, group=g, at_step=0)
        return store

    # ── Queries ──────────────────────────────────────────────────────

    @property
    def n_issued(self) -> int:
        """Number of identifiers issued so far (active or not)."""
        return self._n

    @property
    def size(self) -> int:
        """Number of active individuals."""
        return int(self._counts.sum())

    @property
    def individuals(self) -> np.ndarray:
        """Read-only view of all issued individuals."""
        view = self._data[:self._n]
        view = view.view()
        view.flags.writeable = False
        return view

    def is_active(self, individual_id: int) -> bool:
        return 0 <= individual_id < self._n and bool(self._data['active'][individual_id])

    def active_ids(self) -> np.ndarray:
        return np.flatnonzero(self._data['active'][:self._n])

    def status_of(self, individual_id: int) -> DiseaseStatus:
        self._check_known(individual_id)
        return DiseaseStatus(int(self._data['status'][individual_id]))

    def snapshot_counts(self) -> Dict[str, int]:
        """Mapping from status label to active count, over all groups."""
        totals = self._counts.sum(axis=0)
        return {s.label: int(totals[s]) for s in self.variant.statuses}

    def counts_by_group(self) -> np.ndarray:
        """Copy of the (n_groups, N_STATUS) aggregate count array."""
        return self._counts.copy()

    def snapshot(self, step: int) -> PopulationSnapshot:
        """Immutable copy of the state entering ``step``."""
        n = self._n
        arrays = {}
        for name in ('status', 'group', 'active', 'infection_step'):
            arr = self._data[name][:n].copy()
            arr.flags.writeable = False
            arrays[name] = arr
        counts = self._counts.copy()
        counts.flags.writeable = False
        return PopulationSnapshot(step=step, counts=counts, **arrays)

    # ── Mutations ────────────────────────────────────────────────────

    def add_individuals(
        self,
        count: int,
        group: int,
        status: DiseaseStatus = DiseaseStatus.S,
        at_step: int = 0,
    ) -> np.ndarray:
        """Create ``count`` new active individuals; returns their ids."""
        if group < 1 or group > self.variant.n_groups:
            raise InvalidTransitionError(
                f"Group {group} does not exist in a {self.variant.label} model"
            )
        if DiseaseStatus(status) not in self.variant.statuses:
            raise InvalidTransitionError(
                f"Status {DiseaseStatus(status).name} does not exist in a "
                f"{self.variant.label} model"
            )
        statuses = np.full(int(count), int(status), dtype=np.int8)
        return self._append(statuses, group=group, at_step=at_step)

    def apply_transition(
        self,
        individual_id: int,
        from_status: DiseaseStatus,
        to_status: DiseaseStatus,
        at_step: int,
    ) -> None:
        """Move one individual between disease states.

        Raises:
            InvalidTransitionError: If the individual is unknown or
                inactive, its recorded status is not ``from_status``, or
                the model type does not permit ``from_status → to_status``.
        """
        self.apply_transitions(
            np.array([individual_id], dtype=np.int64), from_status, to_status, at_step
        )

    def apply_transitions(
        self,
        ids: np.ndarray,
        from_status: DiseaseStatus,
        to_status: DiseaseStatus,
        at_step: int,
    ) -> None:
        """Vectorised apply_transition for one (from, to) pair.

        Checks every id before changing any row, so a rejected batch
        leaves the store untouched.
        """
        ids = np.asarray(ids, dtype=np.int64)
        if not self.variant.allows(from_status, to_status):
            raise InvalidTransitionError(
                f"{DiseaseStatus(from_status).name} → {DiseaseStatus(to_status).name} "
                f"is not permitted in a {self.variant.label} model"
            )
        if len(ids) == 0:
            return
        if len(np.unique(ids)) != len(ids):
            raise InvalidTransitionError(
                f"Duplicate ids in one {DiseaseStatus(from_status).name} → "
                f"{DiseaseStatus(to_status).name} batch"
            )
        self._check_active(ids)
        current = self._data['status'][ids]
        stale = ids[current != from_status]
        if len(stale):
            i = int(stale[0])
            raise InvalidTransitionError(
                f"Individual {i} is {DiseaseStatus(int(self._data['status'][i])).name}, "
                f"not {DiseaseStatus(from_status).name} (stale or duplicate transition)"
            )

        self._data['status'][ids] = to_status
        if to_status == DiseaseStatus.I:
            self._data['infection_step'][ids] = at_step

        groups = self._data['group'][ids]
        per_group = np.bincount(groups - 1, minlength=self.variant.n_groups)
        self._counts[:, from_status] -= per_group
        self._counts[:, to_status] += per_group

    def deactivate(self, individual_id: int, at_step: int) -> None:
        """Mark an individual as departed.

        Raises:
            AlreadyInactiveError: If it was already deactivated.
            InvalidTransitionError: If the id was never issued.
        """
        self.deactivate_many(np.array([individual_id], dtype=np.int64), at_step)

    def deactivate_many(self, ids: np.ndarray, at_step: int) -> None:
        """Vectorised deactivate; all ids are checked before any change."""
        ids = np.asarray(ids, dtype=np.int64)
        if len(ids) == 0:
            return
        for i in ids:
            self._check_known(int(i))
        uniq, n_seen = np.unique(ids, return_counts=True)
        if np.any(n_seen > 1):
            raise AlreadyInactiveError(
                f"Individual {int(uniq[n_seen > 1][0])} deactivated twice in one batch"
            )
        inactive = ids[~self._data['active'][ids]]
        if len(inactive):
            i = int(inactive[0])
            raise AlreadyInactiveError(
                f"Individual {i} already departed at step "
                f"{int(self._data['exit_step'][i])}"
            )

        self._data['active'][ids] = False
        self._data['exit_step'][ids] = at_step
        np.subtract.at(
            self._counts,
            (self._data['group'][ids] - 1, self._data['status'][ids]),
            1,
        )

    # ── Consistency ──────────────────────────────────────────────────

    def check_consistency(self) -> None:
        """Recount active individuals and compare with the aggregates.

        Raises:
            PopulationConsistencyError: On any mismatch.
        """
        data = self._data[:self._n]
        active = data['active']
        recount = np.zeros_like(self._counts)
        np.add.at(
            recount,
            (data['group'][active] - 1, data['status'][active]),
            1,
        )
        if not np.array_equal(recount, self._counts):
            raise PopulationConsistencyError(
                f"Aggregate counts {self._counts.tolist()} differ from "
                f"per-individual recount {recount.tolist()}"
            )
        if int(active.sum()) != self.size:
            raise PopulationConsistencyError(
                f"Active population {int(active.sum())} differs from "
                f"sum of compartment counts {self.size}"
            )

    # ── Internals ────────────────────────────────────────────────────

    def _append(self, statuses: np.ndarray, group: int, at_step: int) -> np.ndarray:
        n_new = len(statuses)
        self._reserve(self._n + n_new)
        ids = np.arange(self._n, self._n + n_new, dtype=np.int64)
        rows = self._data[self._n:self._n + n_new]
        rows['status'] = statuses
        rows['group'] = group
        rows['active'] = True
        rows['entry_step'] = at_step
        rows['exit_step'] = -1
        rows['infection_step'] = np.where(statuses == DiseaseStatus.I, at_step, -1)
        self._n += n_new
        self._counts[group - 1] += np.bincount(statuses, minlength=N_STATUS)
        return ids

    def _reserve(self, needed: int) -> None:
        if needed <= len(self._data):
            return
        capacity = len(self._data)
        while capacity < needed:
            capacity *= 2
        grown = allocate_individuals(capacity)
        grown[:self._n] = self._data[:self._n]
        self._data = grown

    def _check_known(self, individual_id: int) -> None:
        if not 0 <= individual_id < self._n:
            raise InvalidTransitionError(f"Unknown individual id {individual_id}")

    def _check_active(self, ids: np.ndarray) -> None:
        unknown = ids[(ids < 0) | (ids >= self._n)]
        if len(unknown):
            raise InvalidTransitionError(f"Unknown individual id {int(unknown[0])}")
        inactive = ids[~self._data['active'][ids]]
        if len(inactive):
            raise InvalidTransitionError(
                f"Individual {int(inactive[0])} is inactive (departed at step "
                f"{int(self._data['exit_step'][inactive[0]])})"
            )


def validate_initial_conditions(init: 'InitSection', variant: 'ModelVariant') -> None:
    """Check initial counts against a variant before any run starts."""
    counts = init.group_counts(variant.n_groups)
    if np.any(counts < 0):
        raise ParameterError("Initial compartment counts must be non-negative")
    if counts.sum() == 0:
        raise ParameterError("Initial population is empty")
    if DiseaseStatus.R not in variant.statuses and counts[:, DiseaseStatus.R].any():
        raise ParameterError(
            f"{variant.model_type.value} model has no recovered state; "
            f"r_num must be 0"
        )
    for g in range(variant.n_groups):
        if counts[g].sum() == 0:
            raise ParameterError(f"Initial population of group {g + 1} is empty")
