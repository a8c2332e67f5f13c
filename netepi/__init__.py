"""netepi: Stochastic epidemic simulation on dynamic contact networks.

An individual-based, discrete-time simulator coupling:
  - Per-individual disease states (SI, SIR, SIS) for one or two mixing groups
  - An explicit, time-evolving contact network (edge formation/dissolution)
  - Optional demography (arrivals, per-state departures)
  - Independent, reproducibly seeded replicate runs

Entry point: ``netepi.model.run_network_simulation``.
"""

__version__ = "0.1.0"
