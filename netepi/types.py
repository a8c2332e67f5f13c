"""Core data types for netepi.

This module is the SINGLE SOURCE OF TRUTH for:
  - DiseaseStatus, ModelType, FlowType enumerations
  - INDIVIDUAL_DTYPE: NumPy structured array dtype for individuals
  - TRANSMISSION_DTYPE, EDGE_SPELL_DTYPE: record dtypes
  - Group labels and per-group column naming

All modules import these types from here. No other module defines
individual fields.
"""

from enum import Enum, IntEnum
from typing import Tuple

import numpy as np


# ═══════════════════════════════════════════════════════════════════════
# ENUMERATIONS
# ═══════════════════════════════════════════════════════════════════════

class DiseaseStatus(IntEnum):
    """Disease compartments.

    S → I  (infection through a contact with an infected partner)
    I → R  (recovery with lasting immunity; SIR only, terminal)
    I → S  (recovery without immunity; SIS only)
    """
    S = 0   # Susceptible
    I = 1   # Infected (and infectious)
    R = 2   # Recovered

    @property
    def label(self) -> str:
        return self.name.lower()


N_STATUS = len(DiseaseStatus)


class ModelType(str, Enum):
    """Disease model family."""
    SI = "SI"
    SIR = "SIR"
    SIS = "SIS"


class FlowType(str, Enum):
    """Per-step flows. Values double as record column names (group 1)."""
    INFECTION = "si_flow"
    RECOVERY = "ir_flow"
    RELAPSE = "is_flow"
    ARRIVAL = "a_flow"
    DEPARTURE_S = "ds_flow"
    DEPARTURE_I = "di_flow"
    DEPARTURE_R = "dr_flow"


# Departure flow for each status a departing individual held
DEPARTURE_FLOWS = {
    DiseaseStatus.S: FlowType.DEPARTURE_S,
    DiseaseStatus.I: FlowType.DEPARTURE_I,
    DiseaseStatus.R: FlowType.DEPARTURE_R,
}


# ═══════════════════════════════════════════════════════════════════════
# GROUPS
# ═══════════════════════════════════════════════════════════════════════

GROUPS: Tuple[int, int] = (1, 2)


def group_column(name: str, group: int) -> str:
    """Column name for a per-group quantity (group 1 is unsuffixed)."""
    if group == 1:
        return name
    return f"{name}_g{group}"


# ═══════════════════════════════════════════════════════════════════════
# INDIVIDUAL_DTYPE: canonical structured array for individuals
# ═══════════════════════════════════════════════════════════════════════

INDIVIDUAL_DTYPE = np.dtype([
    ('status',         np.int8),    # DiseaseStatus (0=S, 1=I, 2=R)
    ('group',          np.int8),    # mixing group label (1 or 2)
    ('active',         np.bool_),   # False once departed; never reset
    ('entry_step',     np.int32),   # step at which the individual entered
    ('exit_step',      np.int32),   # step of departure; -1 while active
    ('infection_step', np.int32),   # step of most recent infection; -1 if never
])


def allocate_individuals(n: int) -> np.ndarray:
    """Allocate an individual array with sentinel fields set.

    Args:
        n: Array capacity.

    Returns:
        Structured array of shape (n,) with INDIVIDUAL_DTYPE; all rows
        inactive, exit_step and infection_step set to -1.
    """
    arr = np.zeros(n, dtype=INDIVIDUAL_DTYPE)
    arr['exit_step'] = -1
    arr['infection_step'] = -1
    return arr


# ═══════════════════════════════════════════════════════════════════════
# RECORD DTYPES
# ═══════════════════════════════════════════════════════════════════════

TRANSMISSION_DTYPE = np.dtype([
    ('step',              np.int32),
    ('infected',          np.int64),   # id of the newly infected individual
    ('infector',          np.int64),   # id of the attributed infected partner
    ('group',             np.int8),    # group of the newly infected individual
    ('infector_duration', np.int32),   # steps the infector had been infected
])

EDGE_SPELL_DTYPE = np.dtype([
    ('tail',     np.int64),
    ('head',     np.int64),
    ('onset',    np.int32),   # first step the edge exists
    ('terminus', np.int32),   # first step the edge no longer exists; -1 if open
])
