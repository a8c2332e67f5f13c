"""Parameter set resolution and validation.

Turns the raw parameter mapping (name → scalar or per-group value) into
an immutable ModelParams for one model variant. All problems are raised
as ParameterError here, before any run starts.

Per-group values may be given two ways:
  inf_prob: 0.2            inf_prob_g2: 0.05
  inf_prob: {g1: 0.2, g2: 0.05}

Rates are per unit time; probabilities are per act (inf_prob) and may be
given as a sequence indexed by the infector's infection duration in steps.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Callable, Dict, Mapping, Optional, Tuple

import numpy as np

from netepi.errors import ParameterError
from netepi.types import DiseaseStatus

if TYPE_CHECKING:
    from netepi.variants import ModelVariant


# ═══════════════════════════════════════════════════════════════════════
# PARAMETER NAMES
# ═══════════════════════════════════════════════════════════════════════

# Names that take one value per group
GROUP_PARAMS = (
    'inf_prob', 'act_rate', 'rec_rate',
    'a_rate', 'ds_rate', 'di_rate', 'dr_rate',
)

# Names that take a single value for the whole model
GLOBAL_PARAMS = ('balance', 'arrival_allocation', 'inter_eff', 'inter_start')

DEMOGRAPHY_PARAMS = ('a_rate', 'ds_rate', 'di_rate', 'dr_rate')

BALANCE_OPTIONS = ('g1', 'g2')


# ═══════════════════════════════════════════════════════════════════════
# ARRIVAL ALLOCATION POLICIES
# ═══════════════════════════════════════════════════════════════════════

def allocate_proportional(expected_g1: float, sizes: Tuple[int, int]) -> float:
    """Group 2 receives group 1's expected entrants scaled by n2 / n1."""
    n1, n2 = sizes
    if n1 <= 0:
        return 0.0
    return expected_g1 * n2 / n1


def allocate_mirror(expected_g1: float, sizes: Tuple[int, int]) -> float:
    """Group 2 receives as many expected entrants as group 1."""
    return expected_g1


ARRIVAL_ALLOCATIONS: Dict[str, Callable[[float, Tuple[int, int]], float]] = {
    'proportional': allocate_proportional,
    'mirror': allocate_mirror,
}


# ═══════════════════════════════════════════════════════════════════════
# RESOLVED PARAMETERS
# ═══════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class ModelParams:
    """Validated parameters for one model variant.

    Per-group fields are tuples indexed by group - 1; entries are None
    where the parameter does not apply. inf_prob entries are 1-D arrays
    indexed by infector duration (last value persists).
    """
    n_groups: int
    inf_prob: Tuple[np.ndarray, ...]
    act_rate: Tuple[Optional[float], ...]
    rec_rate: Tuple[Optional[float], ...]
    a_rate: Tuple[Optional[float], ...]
    ds_rate: Tuple[Optional[float], ...]
    di_rate: Tuple[Optional[float], ...]
    dr_rate: Tuple[Optional[float], ...]
    balance: str = 'g1'
    arrival_allocation: Callable[[float, Tuple[int, int]], float] = allocate_proportional
    inter_eff: float = 0.0
    inter_start: Optional[int] = None
    demography: bool = False

    def value(self, name: str, group: int) -> Any:
        """Per-group value of a parameter (group is 1 or 2)."""
        if name not in GROUP_PARAMS:
            raise KeyError(f"'{name}' is not a per-group parameter")
        return getattr(self, name)[group - 1]

    def departure_rate(self, status: DiseaseStatus, group: int) -> float:
        name = {DiseaseStatus.S: 'ds_rate',
                DiseaseStatus.I: 'di_rate',
                DiseaseStatus.R: 'dr_rate'}[DiseaseStatus(status)]
        rate = self.value(name, group)
        return 0.0 if rate is None else rate

    @property
    def authoritative_group(self) -> int:
        return 1 if self.balance == 'g1' else 2

    def intervention_active(self, step: int) -> bool:
        return self.inter_start is not None and step >= self.inter_start


# ═══════════════════════════════════════════════════════════════════════
# RESOLUTION
# ═══════════════════════════════════════════════════════════════════════

def _split_groups(raw: Mapping[str, Any], n_groups: int) -> Tuple[Dict[str, list], Dict[str, Any]]:
    """Separate per-group values from global ones; reject unknown names."""
    per_group: Dict[str, list] = {name: [None] * n_groups for name in GROUP_PARAMS}
    globals_: Dict[str, Any] = {}

    for key, value in raw.items():
        if key in GLOBAL_PARAMS:
            globals_[key] = value
            continue

        base, group = key, 1
        if key.endswith('_g2'):
            base, group = key[:-3], 2
        if base not in GROUP_PARAMS:
            raise ParameterError(f"Unknown parameter '{key}'")
        if group > n_groups:
            raise ParameterError(
                f"Parameter '{key}' given for a {n_groups}-group model"
            )

        if isinstance(value, Mapping):
            if group != 1:
                raise ParameterError(
                    f"Parameter '{key}': per-group mappings go under '{base}'"
                )
            unknown = set(value) - {'g1', 'g2'}
            if unknown:
                raise ParameterError(
                    f"Parameter '{key}': unknown group keys {sorted(unknown)}"
                )
            for gkey, gvalue in value.items():
                g = int(gkey[1])
                if g > n_groups:
                    raise ParameterError(
                        f"Parameter '{key}' given for group {g} of a "
                        f"{n_groups}-group model"
                    )
                if per_group[base][g - 1] is not None:
                    raise ParameterError(f"Parameter '{base}' given twice for group {g}")
                per_group[base][g - 1] = gvalue
        else:
            if per_group[base][group - 1] is not None:
                raise ParameterError(f"Parameter '{base}' given twice for group {group}")
            per_group[base][group - 1] = value

    return per_group, globals_


def _as_rate(name: str, value: Any) -> float:
    try:
        rate = float(value)
    except (TypeError, ValueError):
        raise ParameterError(f"{name} must be a number, got {value!r}") from None
    if not math.isfinite(rate) or rate < 0:
        raise ParameterError(f"{name} must be a finite non-negative rate, got {value!r}")
    return rate


def _as_probability(name: str, value: Any) -> float:
    prob = _as_rate(name, value)
    if prob > 1.0:
        raise ParameterError(f"{name} must be in [0, 1], got {value!r}")
    return prob


def _as_prob_vector(name: str, value: Any) -> np.ndarray:
    """inf_prob: scalar or non-empty sequence of probabilities."""
    if np.isscalar(value):
        return np.array([_as_probability(name, value)], dtype=np.float64)
    values = list(value)
    if not values:
        raise ParameterError(f"{name} must not be an empty sequence")
    return np.array([_as_probability(name, v) for v in values], dtype=np.float64)


def resolve_params(raw: Optional[Mapping[str, Any]], variant: 'ModelVariant') -> ModelParams:
    """Validate a raw parameter mapping against a model variant.

    Args:
        raw: Mapping from parameter name to value.
        variant: The model variant the parameters are for.

    Returns:
        Immutable ModelParams.

    Raises:
        ParameterError: On unknown, missing, inapplicable or invalid
            parameters.
    """
    raw = dict(raw or {})
    n_groups = variant.n_groups
    per_group, globals_ = _split_groups(raw, n_groups)
    groups = range(1, n_groups + 1)

    def gname(base: str, g: int) -> str:
        return base if g == 1 else f"{base}_g{g}"

    def require(base: str, g: int) -> Any:
        value = per_group[base][g - 1]
        if value is None:
            raise ParameterError(
                f"Missing required parameter '{gname(base, g)}' for "
                f"{variant.label} model"
            )
        return value

    def forbid(base: str, g: int, reason: str) -> None:
        if per_group[base][g - 1] is not None:
            raise ParameterError(f"Parameter '{gname(base, g)}' not applicable: {reason}")

    # ── Transmission ─────────────────────────────────────────────────
    inf_prob = tuple(
        _as_prob_vector(gname('inf_prob', g), require('inf_prob', g)) for g in groups
    )

    balance = globals_.get('balance', 'g1')
    if n_groups == 1:
        if 'balance' in globals_:
            raise ParameterError("Parameter 'balance' requires a two-group model")
        act_rate = (_as_rate('act_rate', require('act_rate', 1)),)
    else:
        if balance not in BALANCE_OPTIONS:
            raise ParameterError(
                f"balance must be one of {BALANCE_OPTIONS}, got {balance!r}"
            )
        auth = 1 if balance == 'g1' else 2
        other = 2 if auth == 1 else 1
        forbid('act_rate', other,
               f"derived from group {auth} by act-rate balancing (balance={balance!r})")
        rates = [None, None]
        rates[auth - 1] = _as_rate(gname('act_rate', auth), require('act_rate', auth))
        act_rate = tuple(rates)

    # ── Recovery ─────────────────────────────────────────────────────
    if variant.recovery_destination is None:
        for g in groups:
            forbid('rec_rate', g, f"{variant.model_type.value} has no recovery")
        rec_rate = (None,) * n_groups
    else:
        rec_rate = tuple(_as_rate(gname('rec_rate', g), require('rec_rate', g))
                         for g in groups)

    # ── Demography ───────────────────────────────────────────────────
    demography = any(
        per_group[name][g - 1] is not None
        for name in DEMOGRAPHY_PARAMS for g in groups
    )
    has_r = DiseaseStatus.R in variant.statuses
    if not has_r:
        for g in groups:
            forbid('dr_rate', g, f"{variant.model_type.value} has no recovered state")

    if demography:
        ds_rate = tuple(_as_rate(gname('ds_rate', g), require('ds_rate', g)) for g in groups)
        di_rate = tuple(_as_rate(gname('di_rate', g), require('di_rate', g)) for g in groups)
        if has_r:
            dr_rate = tuple(_as_rate(gname('dr_rate', g), require('dr_rate', g))
                            for g in groups)
        else:
            dr_rate = (None,) * n_groups
        a_rate = [_as_rate('a_rate', require('a_rate', 1))]
        if n_groups == 2:
            a2 = per_group['a_rate'][1]
            a_rate.append(None if a2 is None else _as_rate('a_rate_g2', a2))
        a_rate = tuple(a_rate)
    else:
        ds_rate = di_rate = dr_rate = a_rate = (None,) * n_groups

    allocation = globals_.get('arrival_allocation', 'proportional')
    if callable(allocation):
        allocation_fn = allocation
    elif allocation in ARRIVAL_ALLOCATIONS:
        allocation_fn = ARRIVAL_ALLOCATIONS[allocation]
    else:
        raise ParameterError(
            f"arrival_allocation must be one of {sorted(ARRIVAL_ALLOCATIONS)} "
            f"or a callable, got {allocation!r}"
        )
    if 'arrival_allocation' in globals_ and (n_groups == 1 or not demography):
        raise ParameterError(
            "arrival_allocation requires a two-group model with demography"
        )
    if callable(allocation):
        try:
            trial = float(allocation_fn(1.0, (1, 1)))
        except Exception as exc:
            raise ParameterError(f"arrival_allocation failed on a trial call: {exc}") from exc
        if not math.isfinite(trial) or trial < 0:
            raise ParameterError(
                f"arrival_allocation must return a finite non-negative "
                f"expectation, got {trial!r}"
            )

    # ── Intervention ─────────────────────────────────────────────────
    has_eff = 'inter_eff' in globals_
    has_start = 'inter_start' in globals_
    if has_eff != has_start:
        raise ParameterError("inter_eff and inter_start must be given together")
    inter_eff = 0.0
    inter_start = None
    if has_eff:
        inter_eff = _as_probability('inter_eff', globals_['inter_eff'])
        start = globals_['inter_start']
        if isinstance(start, bool) or not isinstance(start, (int, np.integer)) or start < 1:
            raise ParameterError(f"inter_start must be a positive step index, got {start!r}")
        inter_start = int(start)

    return ModelParams(
        n_groups=n_groups,
        inf_prob=inf_prob,
        act_rate=act_rate,
        rec_rate=rec_rate,
        a_rate=a_rate,
        ds_rate=ds_rate,
        di_rate=di_rate,
        dr_rate=dr_rate,
        balance=balance,
        arrival_allocation=allocation_fn,
        inter_eff=inter_eff,
        inter_start=inter_start,
        demography=demography,
    )
