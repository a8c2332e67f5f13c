"""Model variants: the closed set of model type × group count combinations.

Each variant is selected once, at configuration time, and binds:
  - the disease statuses that exist
  - the permitted (from → to) status transitions
  - the recovery destination (R for SIR, S for SIS, none for SI)
  - the epidemic transition modules to invoke, in order

Demography modules (departure, arrival) are appended by build_pipeline
when the parameter set enables demography. The step loop then calls the
pipeline without any branching on model type.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Dict, FrozenSet, Optional, Tuple

from netepi.errors import ParameterError
from netepi.params import ModelParams
from netepi.transitions import (
    propose_arrivals,
    propose_departures,
    propose_infections,
    propose_recoveries,
)
from netepi.types import DiseaseStatus, ModelType

S, I, R = DiseaseStatus.S, DiseaseStatus.I, DiseaseStatus.R

Module = Tuple[str, Callable]


@dataclass(frozen=True)
class ModelVariant:
    """One model type for one group count."""
    model_type: ModelType
    n_groups: int
    statuses: Tuple[DiseaseStatus, ...]
    permitted: FrozenSet[Tuple[DiseaseStatus, DiseaseStatus]]
    recovery_destination: Optional[DiseaseStatus]
    epidemic_modules: Tuple[Module, ...]

    def allows(self, from_status: DiseaseStatus, to_status: DiseaseStatus) -> bool:
        return (DiseaseStatus(from_status), DiseaseStatus(to_status)) in self.permitted

    @property
    def label(self) -> str:
        return f"{self.model_type.value}-{self.n_groups}g"

    @property
    def bipartite(self) -> bool:
        """Two-group models mix only across groups."""
        return self.n_groups == 2


# ═══════════════════════════════════════════════════════════════════════
# REGISTRY
# ═══════════════════════════════════════════════════════════════════════

_FAMILIES = {
    ModelType.SI: dict(
        statuses=(S, I),
        permitted=frozenset({(S, I)}),
        recovery_destination=None,
        epidemic_modules=(('infection', propose_infections),),
    ),
    ModelType.SIR: dict(
        statuses=(S, I, R),
        permitted=frozenset({(S, I), (I, R)}),
        recovery_destination=R,
        epidemic_modules=(('infection', propose_infections),
                          ('recovery', propose_recoveries)),
    ),
    ModelType.SIS: dict(
        statuses=(S, I),
        permitted=frozenset({(S, I), (I, S)}),
        recovery_destination=S,
        epidemic_modules=(('infection', propose_infections),
                          ('recovery', propose_recoveries)),
    ),
}

VARIANTS: Dict[Tuple[ModelType, int], ModelVariant] = {
    (model_type, n_groups): ModelVariant(model_type=model_type, n_groups=n_groups, **family)
    for model_type, family in _FAMILIES.items()
    for n_groups in (1, 2)
}

DEMOGRAPHY_MODULES: Tuple[Module, ...] = (
    ('departure', propose_departures),
    ('arrival', propose_arrivals),
)


def resolve_variant(model_type, n_groups: int) -> ModelVariant:
    """Look up a variant.

    Args:
        model_type: ModelType or its string value ('SI', 'SIR', 'SIS').
        n_groups: 1 or 2.

    Raises:
        ParameterError: For an unknown model type or group count.
    """
    try:
        mt = ModelType(str(getattr(model_type, 'value', model_type)).upper())
    except ValueError:
        raise ParameterError(
            f"model_type must be one of {[m.value for m in ModelType]}, "
            f"got {model_type!r}"
        ) from None
    key = (mt, n_groups)
    if key not in VARIANTS:
        raise ParameterError(f"n_groups must be 1 or 2, got {n_groups!r}")
    return VARIANTS[key]


def build_pipeline(variant: ModelVariant, params: ModelParams) -> Tuple[Module, ...]:
    """The fixed, ordered module list for a run.

    infection → recovery (SIR/SIS) → departure → arrival (demography)
    """
    modules = variant.epidemic_modules
    if params.demography:
        modules = modules + DEMOGRAPHY_MODULES
    return modules
