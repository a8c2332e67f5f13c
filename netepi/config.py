"""Configuration system for netepi.

Hierarchical YAML configuration with deep-merge support:
  base.yaml → scenario override → sweep overrides

Sections map 1:1 to YAML top-level keys:
  control   model type, group count, horizon, replicates, seeding
  init      initial compartment counts per group
  network   initial mean degree and partnership dynamics
  params    the raw epidemic parameter mapping (see netepi.params)
  logging   level and optional log file

Every problem found here is a ParameterError, raised before any run.
"""

from __future__ import annotations

import dataclasses
import logging
import math
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional, Tuple, Union

import numpy as np
import yaml

from netepi.errors import ParameterError
from netepi.params import ModelParams, resolve_params
from netepi.population import validate_initial_conditions
from netepi.types import N_STATUS
from netepi.variants import ModelVariant, resolve_variant


# ═══════════════════════════════════════════════════════════════════════
# CONFIGURATION DATACLASSES
# ═══════════════════════════════════════════════════════════════════════

@dataclass
class ControlSection:
    """Model selection, timing and replicate control."""
    model_type: str = 'SI'           # 'SI', 'SIR' or 'SIS'
    n_groups: int = 1                # 1 or 2 (two groups mix only across groups)
    n_steps: int = 100
    n_runs: int = 1
    dt: float = 1.0                  # time units per step
    seed: int = 42
    parallel_workers: int = 1        # >1 runs replicates in a process pool
    max_run_seconds: Optional[float] = None   # wall-clock budget per run
    check_consistency: bool = True
    track_history: bool = True       # keep edge spells
    progress_interval: int = 0       # log progress every N steps; 0 = off


@dataclass
class InitSection:
    """Initial compartment counts."""
    s_num: int = 500
    i_num: int = 1
    r_num: int = 0
    s_num_g2: int = 0
    i_num_g2: int = 0
    r_num_g2: int = 0

    def group_counts(self, n_groups: int) -> np.ndarray:
        """(n_groups, N_STATUS) array of initial counts."""
        counts = np.zeros((n_groups, N_STATUS), dtype=np.int64)
        counts[0] = (self.s_num, self.i_num, self.r_num)
        if n_groups == 2:
            counts[1] = (self.s_num_g2, self.i_num_g2, self.r_num_g2)
        return counts

    @property
    def size(self) -> int:
        return sum(dataclasses.astuple(self))


@dataclass
class NetworkSection:
    """Initial network and relational dynamics."""
    mean_degree: float = 2.0
    duration: Optional[float] = None  # mean partnership duration; None = static
    resimulate: bool = True           # False freezes the network (vertex changes only)
    edgelist_file: Optional[str] = None  # initial graph as "tail head" lines


@dataclass
class LoggingSection:
    level: str = 'INFO'
    log_file: Optional[str] = None


def _default_params() -> Dict[str, Any]:
    return {'inf_prob': 0.2, 'act_rate': 0.25}


@dataclass
class SimulationConfig:
    """Complete simulation configuration.

    Load from YAML via `load_config()`. Sections map 1:1 to YAML top-level keys.
    """
    control: ControlSection = field(default_factory=ControlSection)
    init: InitSection = field(default_factory=InitSection)
    network: NetworkSection = field(default_factory=NetworkSection)
    params: Dict[str, Any] = field(default_factory=_default_params)
    logging: LoggingSection = field(default_factory=LoggingSection)


SECTION_MAP = {
    'control': ControlSection,
    'init': InitSection,
    'network': NetworkSection,
    'logging': LoggingSection,
}


# ═══════════════════════════════════════════════════════════════════════
# YAML LOADING & MERGING
# ═══════════════════════════════════════════════════════════════════════

def deep_merge(base: Dict, override: Dict) -> Dict:
    """Recursively merge override into base. Modifies base in place.

    - Dict values are merged recursively
    - Non-dict values are replaced
    - Keys in override but not base are added

    Args:
        base: Base dictionary (modified in place).
        override: Override dictionary.

    Returns:
        The merged base dictionary.
    """
    for key, value in override.items():
        if (
            key in base
            and isinstance(base[key], dict)
            and isinstance(value, dict)
        ):
            deep_merge(base[key], value)
        else:
            base[key] = value
    return base


def _dict_to_section(section_cls, name: str, data: Dict) -> Any:
    """Convert a dict to a dataclass; unknown keys are an error."""
    if not isinstance(data, dict):
        raise ParameterError(f"Section '{name}' must be a mapping, got {data!r}")
    valid_fields = {f.name for f in dataclasses.fields(section_cls)}
    unknown = sorted(set(data) - valid_fields)
    if unknown:
        raise ParameterError(
            f"Unknown key(s) in section '{name}': {', '.join(unknown)}"
        )
    return section_cls(**data)


def config_from_dict(data: Optional[Dict]) -> SimulationConfig:
    """Convert a merged YAML dict to a SimulationConfig (not validated)."""
    data = data or {}
    unknown = sorted(set(data) - set(SECTION_MAP) - {'params'})
    if unknown:
        raise ParameterError(f"Unknown configuration section(s): {', '.join(unknown)}")

    sections = {}
    for key, cls in SECTION_MAP.items():
        if key in data and data[key] is not None:
            sections[key] = _dict_to_section(cls, key, data[key])
        else:
            sections[key] = cls()
    if 'params' in data:
        if not isinstance(data['params'], dict):
            raise ParameterError(f"Section 'params' must be a mapping, got {data['params']!r}")
        sections['params'] = dict(data['params'])
    return SimulationConfig(**sections)


# ═══════════════════════════════════════════════════════════════════════
# VALIDATION
# ═══════════════════════════════════════════════════════════════════════

def _is_int(value: Any) -> bool:
    return isinstance(value, (int, np.integer)) and not isinstance(value, bool)


def _is_number(value: Any) -> bool:
    return (isinstance(value, (int, float, np.integer, np.floating))
            and not isinstance(value, bool) and math.isfinite(value))


def resolve_model(config: SimulationConfig) -> Tuple[ModelVariant, ModelParams]:
    """Variant and resolved parameters for a configuration.

    Raises:
        ParameterError: If either cannot be resolved.
    """
    variant = resolve_variant(config.control.model_type, config.control.n_groups)
    params = resolve_params(config.params, variant)
    return variant, params


def validate_config(config: SimulationConfig) -> None:
    """Validate configuration constraints. Raises ParameterError on failure.

    Checks:
      - Control values are in range
      - Model type and group count name a known variant
      - The parameter set resolves for that variant
      - Initial counts are consistent with the variant
      - Network settings are in range
    """
    ctl = config.control

    for name in ('n_steps', 'n_runs', 'parallel_workers'):
        value = getattr(ctl, name)
        if not _is_int(value) or value < 1:
            raise ParameterError(f"control.{name} must be a positive integer, got {value!r}")
    if not _is_number(ctl.dt) or ctl.dt <= 0:
        raise ParameterError(f"control.dt must be positive, got {ctl.dt!r}")
    if not _is_int(ctl.seed) or ctl.seed < 0:
        raise ParameterError(f"control.seed must be a non-negative integer, got {ctl.seed!r}")
    if ctl.max_run_seconds is not None and (
            not _is_number(ctl.max_run_seconds) or ctl.max_run_seconds <= 0):
        raise ParameterError(
            f"control.max_run_seconds must be positive or null, got {ctl.max_run_seconds!r}"
        )
    if not _is_int(ctl.progress_interval) or ctl.progress_interval < 0:
        raise ParameterError(
            f"control.progress_interval must be a non-negative integer, "
            f"got {ctl.progress_interval!r}"
        )

    variant, _ = resolve_model(config)

    # Initial conditions
    for f in dataclasses.fields(InitSection):
        value = getattr(config.init, f.name)
        if not _is_int(value):
            raise ParameterError(f"init.{f.name} must be an integer, got {value!r}")
        if f.name.endswith('_g2') and variant.n_groups == 1 and value != 0:
            raise ParameterError(
                f"init.{f.name} given for a one-group model"
            )
    validate_initial_conditions(config.init, variant)

    # Network
    net = config.network
    if not _is_number(net.mean_degree) or net.mean_degree < 0:
        raise ParameterError(
            f"network.mean_degree must be non-negative, got {net.mean_degree!r}"
        )
    if net.duration is not None and (not _is_number(net.duration) or net.duration <= 0):
        raise ParameterError(
            f"network.duration must be positive or null, got {net.duration!r}"
        )
    if net.edgelist_file is not None and not Path(net.edgelist_file).exists():
        raise ParameterError(f"network.edgelist_file not found: {net.edgelist_file}")

    # Logging
    if not isinstance(logging.getLevelName(str(config.logging.level).upper()), int):
        raise ParameterError(f"logging.level '{config.logging.level}' is not a log level")


def load_config(
    base_path: Union[str, Path],
    scenario_path: Optional[Union[str, Path]] = None,
    sweep_overrides: Optional[Dict] = None,
) -> SimulationConfig:
    """Load and merge hierarchical YAML configuration.

    Merge order: base → scenario → sweep overrides.
    Each layer overrides only the fields it specifies.

    Args:
        base_path: Path to base configuration YAML.
        scenario_path: Optional scenario override YAML.
        sweep_overrides: Optional dict of parameter sweep overrides.

    Returns:
        Validated SimulationConfig.

    Raises:
        FileNotFoundError: If base_path or scenario_path doesn't exist.
        ParameterError: If validation fails.
    """
    base_path = Path(base_path)
    if not base_path.exists():
        raise FileNotFoundError(f"Config file not found: {base_path}")

    with open(base_path) as f:
        config_dict = yaml.safe_load(f) or {}

    if scenario_path is not None:
        scenario_path = Path(scenario_path)
        if not scenario_path.exists():
            raise FileNotFoundError(f"Scenario file not found: {scenario_path}")
        with open(scenario_path) as f:
            scenario = yaml.safe_load(f) or {}
        deep_merge(config_dict, scenario)

    if sweep_overrides is not None:
        deep_merge(config_dict, sweep_overrides)

    config = config_from_dict(config_dict)
    validate_config(config)
    return config


def default_config() -> SimulationConfig:
    """Return a SimulationConfig with all default values."""
    config = SimulationConfig()
    validate_config(config)
    return config
