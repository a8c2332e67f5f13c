"""Contact network store and relational dynamics.

The contact network is a networkx.Graph whose vertices are the active
individuals (node attribute 'group') and whose edges are current
partnerships. ContactNetwork is its only writer:
  - add_vertex / remove_vertex at commit time (arrivals, departures);
    removing a vertex drops all its incident edges in the same call
  - advance_one_step applies a dynamics policy's proposed formations
    and dissolutions, moving the network from step t to t + 1

Transition modules only see a NetworkView (read-only queries).

Edge history is kept as spells [onset, terminus): an edge exists at
step s iff onset <= s < terminus. Every change made while processing
step t (departure removals, dissolutions, formations) takes effect at
t + 1, so edges used by step t's proposals remain part of step t.

Dynamics:
  - StaticDynamics: partnerships only end when a partner departs
  - EdgesDissolutionDynamics: per-edge Bernoulli dissolution with
    probability 1 − exp(−dt / duration); per-dyad Bernoulli formation
    with a probability that keeps the expected edge count at
    mean_degree · n / 2 for the current population
  - any object with propose(view, rng), or a plain callable with that
    signature, as externally supplied dynamics
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, Callable, Dict, List, Optional, Set, Tuple

import networkx as nx
import numpy as np

from netepi.errors import NetworkConsistencyError, ParameterError
from netepi.types import EDGE_SPELL_DTYPE

if TYPE_CHECKING:
    from netepi.config import NetworkSection
    from netepi.variants import ModelVariant

logger = logging.getLogger(__name__)

EdgePair = Tuple[int, int]


def _empty_pairs() -> np.ndarray:
    return np.empty((0, 2), dtype=np.int64)


def _normalize_pairs(pairs) -> np.ndarray:
    """(k, 2) int64 array with tail < head in every row.

    Raises:
        ValueError: If pairs is not a (k, 2) array of integer ids.
    """
    arr = np.asarray(pairs)
    if arr.size == 0:
        return _empty_pairs()
    if arr.ndim != 2 or arr.shape[1] != 2 or not np.issubdtype(arr.dtype, np.integer):
        raise ValueError(
            f"expected a (k, 2) integer array of vertex ids, got shape "
            f"{arr.shape} and dtype {arr.dtype}"
        )
    arr = arr.astype(np.int64)
    return np.column_stack([arr.min(axis=1), arr.max(axis=1)])


# ═══════════════════════════════════════════════════════════════════════
# DYAD SPACE
# ═══════════════════════════════════════════════════════════════════════

class DyadSpace:
    """The dyads that may hold an edge, indexed 0..size-1.

    One group: every unordered pair of the n vertices. Index x maps to
    positions (s, (s + d) mod n) with s = x mod n and d = x // n + 1,
    which covers each pair exactly once for 0 <= x < n(n-1)/2.
    Bipartite: x maps to (g1[x // n2], g2[x mod n2]).

    Dyads are handled by index so that sampling never enumerates all
    O(n^2) pairs.

    Args:
        ids: Sorted vertex ids.
        groups: Group label of each id.
        bipartite: If True only cross-group dyads are eligible.
    """

    def __init__(self, ids: np.ndarray, groups: np.ndarray, bipartite: bool = False):
        self.ids = np.asarray(ids, dtype=np.int64)
        self.groups = np.asarray(groups)
        self.bipartite = bipartite
        if bipartite:
            self.g1 = self.ids[self.groups == 1]
            self.g2 = self.ids[self.groups == 2]

    @property
    def size(self) -> int:
        if self.bipartite:
            return len(self.g1) * len(self.g2)
        n = len(self.ids)
        return n * (n - 1) // 2

    def index(self, pairs) -> np.ndarray:
        """Dyad index of each pair; pairs that are not eligible are dropped."""
        pairs = np.asarray(pairs, dtype=np.int64).reshape(-1, 2)
        if len(pairs) == 0:
            return np.empty(0, dtype=np.int64)
        if not self.bipartite:
            n = len(self.ids)
            a = np.searchsorted(self.ids, pairs.min(axis=1))
            b = np.searchsorted(self.ids, pairs.max(axis=1))
            d = b - a
            wrap = 2 * d > n
            start = np.where(wrap, b, a)
            dist = np.where(wrap, n - d, d)
            return (dist - 1) * n + start
        in_g1 = np.isin(pairs, self.g1)
        cross = in_g1[:, 0] != in_g1[:, 1]
        pairs, in_g1 = pairs[cross], in_g1[cross]
        u = np.where(in_g1[:, 0], pairs[:, 0], pairs[:, 1])
        v = np.where(in_g1[:, 0], pairs[:, 1], pairs[:, 0])
        return np.searchsorted(self.g1, u) * len(self.g2) + np.searchsorted(self.g2, v)

    def pairs(self, index) -> np.ndarray:
        """(k, 2) vertex pairs with tail < head for dyad indices."""
        index = np.asarray(index, dtype=np.int64)
        if len(index) == 0:
            return _empty_pairs()
        if self.bipartite:
            a = self.g1[index // len(self.g2)]
            b = self.g2[index % len(self.g2)]
        else:
            n = len(self.ids)
            start = index % n
            a = self.ids[start]
            b = self.ids[(start + index // n + 1) % n]
        return np.column_stack([np.minimum(a, b), np.maximum(a, b)])

    def sample_free(self, k: int, rng: np.random.Generator,
                    occupied: Optional[np.ndarray] = None) -> np.ndarray:
        """k distinct dyads drawn uniformly from those not in occupied.

        Draws k + len(occupied) distinct indices without replacement,
        drops the occupied ones and keeps the first k in draw order.

        Args:
            k: Number of dyads.
            rng: Generator to draw from.
            occupied: Sorted unique indices of dyads that hold an edge.

        Raises:
            ValueError: If fewer than k free dyads exist.
        """
        if occupied is None:
            occupied = np.empty(0, dtype=np.int64)
        n_free = self.size - len(occupied)
        if k > n_free:
            raise ValueError(f"cannot sample {k} free dyads out of {n_free}")
        if k <= 0:
            return _empty_pairs()
        drawn = rng.choice(self.size, size=min(self.size, k + len(occupied)), replace=False)
        if len(occupied):
            drawn = drawn[~np.isin(drawn, occupied)]
        return self.pairs(drawn[:k])


# ═══════════════════════════════════════════════════════════════════════
# READ-ONLY VIEW
# ═══════════════════════════════════════════════════════════════════════

class NetworkView:
    """Read-only query surface over a ContactNetwork."""

    def __init__(self, network: 'ContactNetwork'):
        self._network = network

    @property
    def step(self) -> int:
        return self._network.step

    @property
    def n_vertices(self) -> int:
        return self._network.n_vertices

    @property
    def n_edges(self) -> int:
        return self._network.n_edges

    def partners_of(self, individual_id: int, at_step: Optional[int] = None) -> Set[int]:
        return self._network.partners_of(individual_id, at_step)

    def edge_array(self) -> np.ndarray:
        return self._network.edge_array()

    def vertex_array(self) -> np.ndarray:
        return self._network.vertex_array()

    def group_array(self) -> np.ndarray:
        return self._network.group_array()

    def group_of(self, individual_id: int) -> int:
        return self._network.group_of(individual_id)

    def has_edge(self, tail: int, head: int) -> bool:
        return self._network.has_edge(tail, head)


# ═══════════════════════════════════════════════════════════════════════
# CONTACT NETWORK
# ═══════════════════════════════════════════════════════════════════════

class ContactNetwork:
    """Time-indexed contact graph over active individuals."""

    def __init__(self, step: int = 1, track_history: bool = True):
        self._graph = nx.Graph()
        self._step = int(step)
        self.track_history = track_history
        self._open: Dict[EdgePair, int] = {}
        self._closed: List[Tuple[int, int, int, int]] = []
        self._edge_cache: Optional[np.ndarray] = None
        self._vertex_cache: Optional[Tuple[np.ndarray, np.ndarray]] = None

    @classmethod
    def from_graph(
        cls,
        graph: nx.Graph,
        groups: np.ndarray,
        step: int = 1,
        track_history: bool = True,
    ) -> 'ContactNetwork':
        """Wrap an externally supplied initial graph.

        Args:
            graph: Undirected graph whose nodes are exactly 0..N-1.
            groups: Group label for each of the N initial individuals.
            step: Step the network represents.
            track_history: Keep edge spells.

        Raises:
            ParameterError: If the vertex set does not match the initial
                population or the graph has self-loops.
        """
        n = len(groups)
        check_initial_graph(graph, n)

        network = cls(step=step, track_history=track_history)
        for i in range(n):
            network.add_vertex(i, int(groups[i]))
        for tail, head in _normalize_pairs(list(graph.edges())):
            network._add_edge(int(tail), int(head))
        return network

    # ── Queries ──────────────────────────────────────────────────────

    @property
    def step(self) -> int:
        return self._step

    @property
    def n_vertices(self) -> int:
        return self._graph.number_of_nodes()

    @property
    def n_edges(self) -> int:
        return self._graph.number_of_edges()

    def view(self) -> NetworkView:
        return NetworkView(self)

    def has_vertex(self, individual_id: int) -> bool:
        return self._graph.has_node(individual_id)

    def has_edge(self, tail: int, head: int) -> bool:
        return self._graph.has_edge(tail, head)

    def group_of(self, individual_id: int) -> int:
        self._require_vertex(individual_id)
        return self._graph.nodes[individual_id]['group']

    def partners_of(self, individual_id: int, at_step: Optional[int] = None) -> Set[int]:
        """Partners of an individual at the current (default) or a past step.

        Raises:
            NetworkConsistencyError: For the current step, if the
                individual is not an active vertex.
            ValueError: For a future step, or a past step without
                history tracking.
        """
        if at_step is None or at_step == self._step:
            self._require_vertex(individual_id)
            return set(self._graph.neighbors(individual_id))
        if at_step > self._step:
            raise ValueError(
                f"Cannot query step {at_step}; network is at step {self._step}"
            )
        if not self.track_history:
            raise ValueError("Past partners require track_history=True")

        partners = set()
        for (tail, head), onset in self._open.items():
            if onset <= at_step and individual_id in (tail, head):
                partners.add(head if tail == individual_id else tail)
        for tail, head, onset, terminus in self._closed:
            if onset <= at_step < terminus and individual_id in (tail, head):
                partners.add(head if tail == individual_id else tail)
        return partners

    def edge_array(self) -> np.ndarray:
        """Current edges as a sorted (E, 2) int64 array, tail < head."""
        if self._edge_cache is None:
            edges = _normalize_pairs(list(self._graph.edges()))
            if len(edges):
                edges = edges[np.lexsort((edges[:, 1], edges[:, 0]))]
            edges.flags.writeable = False
            self._edge_cache = edges
        return self._edge_cache

    def vertex_array(self) -> np.ndarray:
        """Current vertex ids, ascending."""
        return self._vertices()[0]

    def group_array(self) -> np.ndarray:
        """Group label of each id in vertex_array()."""
        return self._vertices()[1]

    def statistics(self) -> Dict[str, float]:
        """Summary statistics of the current graph."""
        n = self.n_vertices
        e = self.n_edges
        isolates = sum(1 for _, d in self._graph.degree() if d == 0)
        return {
            'edges': e,
            'mean_degree': 2.0 * e / n if n else 0.0,
            'isolates': isolates,
        }

    def edge_spells(self) -> np.ndarray:
        """All edge spells (closed and open) as an EDGE_SPELL_DTYPE array."""
        rows = list(self._closed)
        rows += [(tail, head, onset, -1) for (tail, head), onset in self._open.items()]
        spells = np.array(rows, dtype=EDGE_SPELL_DTYPE) if rows else np.empty(0, dtype=EDGE_SPELL_DTYPE)
        return np.sort(spells, order=('onset', 'tail', 'head'))

    def frozen_graph(self) -> nx.Graph:
        """Frozen copy of the current graph (safe to hand out)."""
        return nx.freeze(self._graph.copy())

    # ── Mutations ────────────────────────────────────────────────────

    def add_vertex(self, individual_id: int, group: int = 1) -> None:
        """Add a new individual with no edges."""
        if self._graph.has_node(individual_id):
            raise NetworkConsistencyError(
                f"Vertex {individual_id} already exists (identifier reuse)"
            )
        self._graph.add_node(int(individual_id), group=int(group))
        self._vertex_cache = None

    def remove_vertex(self, individual_id: int) -> None:
        """Remove an individual and every incident edge in one operation."""
        self._require_vertex(individual_id)
        boundary = self._step + 1
        if self.track_history:
            for partner in self._graph.neighbors(individual_id):
                self._close_spell(individual_id, partner, boundary)
        self._graph.remove_node(individual_id)
        self._edge_cache = None
        self._vertex_cache = None

    def advance_one_step(self, dynamics: 'NetworkDynamics', rng: np.random.Generator) -> Tuple[int, int]:
        """Apply one step of relational dynamics.

        Dissolutions are applied before formations. Every proposed dyad
        is checked against the current vertex set first, so a rejected
        proposal leaves the network untouched.

        Returns:
            (n_formed, n_dissolved)

        Raises:
            NetworkConsistencyError: If the dynamics raise or return
                anything but two (k, 2) integer arrays, or a proposal
                references a vertex that is not active, dissolves a missing
                edge, or forms an existing edge or a self-loop.
        """
        try:
            formed, dissolved = dynamics.propose(self.view(), rng)
            formed = _normalize_pairs(formed)
            dissolved = _normalize_pairs(dissolved)
        except Exception as exc:
            raise NetworkConsistencyError(
                f"Dynamics failed to produce a valid proposal at step "
                f"{self._step}: {type(exc).__name__}: {exc}"
            ) from exc

        for tail, head in np.vstack([formed, dissolved]):
            for v in (tail, head):
                if not self._graph.has_node(int(v)):
                    raise NetworkConsistencyError(
                        f"Dynamics proposed dyad ({tail}, {head}) with "
                        f"inactive vertex {v} at step {self._step}"
                    )
        for tail, head in dissolved:
            if not self._graph.has_edge(int(tail), int(head)):
                raise NetworkConsistencyError(
                    f"Dynamics dissolved missing edge ({tail}, {head})"
                )
        seen = set()
        for tail, head in formed:
            key = (int(tail), int(head))
            if tail == head or key in seen or self._graph.has_edge(*key):
                raise NetworkConsistencyError(
                    f"Dynamics formed invalid edge {key} at step {self._step}"
                )
            seen.add(key)

        boundary = self._step + 1
        for tail, head in dissolved:
            self._remove_edge(int(tail), int(head), boundary)
        for tail, head in formed:
            self._add_edge(int(tail), int(head), onset=boundary)

        self._step += 1
        return len(formed), len(dissolved)

    # ── Consistency ──────────────────────────────────────────────────

    def check_consistency(self, active_ids: np.ndarray) -> None:
        """Vertex set must equal the active individual set.

        Raises:
            NetworkConsistencyError: On any difference.
        """
        vertices = self.vertex_array()
        active = np.sort(np.asarray(active_ids, dtype=np.int64))
        if not np.array_equal(vertices, active):
            extra = np.setdiff1d(vertices, active)
            missing = np.setdiff1d(active, vertices)
            raise NetworkConsistencyError(
                f"Network vertices differ from active individuals at step "
                f"{self._step}: {len(extra)} inactive vertices "
                f"(e.g. {extra[:5].tolist()}), {len(missing)} active "
                f"individuals missing (e.g. {missing[:5].tolist()})"
            )

    # ── Internals ────────────────────────────────────────────────────

    def _vertices(self) -> Tuple[np.ndarray, np.ndarray]:
        if self._vertex_cache is None:
            ids = np.array(sorted(self._graph.nodes()), dtype=np.int64)
            groups = np.array(
                [self._graph.nodes[i]['group'] for i in ids], dtype=np.int8
            )
            ids.flags.writeable = False
            groups.flags.writeable = False
            self._vertex_cache = (ids, groups)
        return self._vertex_cache

    def _require_vertex(self, individual_id: int) -> None:
        if not self._graph.has_node(individual_id):
            raise NetworkConsistencyError(
                f"Individual {individual_id} is not an active vertex at step {self._step}"
            )

    def _add_edge(self, tail: int, head: int, onset: Optional[int] = None) -> None:
        tail, head = min(tail, head), max(tail, head)
        self._graph.add_edge(tail, head)
        if self.track_history:
            self._open[(tail, head)] = self._step if onset is None else onset
        self._edge_cache = None

    def _remove_edge(self, tail: int, head: int, boundary: int) -> None:
        self._graph.remove_edge(tail, head)
        if self.track_history:
            self._close_spell(tail, head, boundary)
        self._edge_cache = None

    def _close_spell(self, a: int, b: int, terminus: int) -> None:
        key = (min(a, b), max(a, b))
        onset = self._open.pop(key)
        self._closed.append((key[0], key[1], onset, terminus))


# ═══════════════════════════════════════════════════════════════════════
# DYNAMICS POLICIES
# ═══════════════════════════════════════════════════════════════════════

class NetworkDynamics(ABC):
    """Relational dynamics policy: proposes the changes for one step."""

    @abstractmethod
    def propose(self, view: NetworkView, rng: np.random.Generator) -> Tuple[np.ndarray, np.ndarray]:
        """Return (formed, dissolved) as (k, 2) arrays of vertex ids."""


class StaticDynamics(NetworkDynamics):
    """No relational change; edges end only when a partner departs."""

    def propose(self, view, rng):
        return _empty_pairs(), _empty_pairs()


class CallableDynamics(NetworkDynamics):
    """Adapter for a plain function ``fn(view, rng) -> (formed, dissolved)``."""

    def __init__(self, fn: Callable):
        self.fn = fn

    def propose(self, view, rng):
        return self.fn(view, rng)


class EdgesDissolutionDynamics(NetworkDynamics):
    """Edge formation/dissolution around a target mean degree.

    Each step, every current edge dissolves independently with
    probability q = 1 − exp(−dt / duration), and every eligible dyad
    without an edge forms one independently with probability

        p = clip((E* − E·(1 − q)) / n_free, 0, 1),   E* = mean_degree · n / 2

    so the expected edge count after the step is E* for the current
    number of vertices n. In bipartite mode only cross-group dyads form.

    Args:
        mean_degree: Target mean degree.
        duration: Mean partnership duration in time units.
        dt: Step length in time units.
        bipartite: Restrict formation to cross-group dyads.
    """

    def __init__(self, mean_degree: float, duration: float, dt: float = 1.0,
                 bipartite: bool = False):
        if mean_degree < 0:
            raise ParameterError(f"mean_degree must be non-negative, got {mean_degree}")
        if duration <= 0:
            raise ParameterError(f"duration must be positive, got {duration}")
        self.mean_degree = float(mean_degree)
        self.duration = float(duration)
        self.dt = float(dt)
        self.bipartite = bipartite

    @property
    def dissolution_probability(self) -> float:
        return float(1.0 - np.exp(-self.dt / self.duration))

    def target_edges(self, n_vertices: int) -> float:
        return self.mean_degree * n_vertices / 2.0

    def formation_probability(self, n_vertices: int, n_kept: float, n_free: int) -> float:
        if n_free <= 0:
            return 0.0
        p = (self.target_edges(n_vertices) - n_kept) / n_free
        return float(min(max(p, 0.0), 1.0))

    def propose(self, view, rng):
        edges = view.edge_array()
        q = self.dissolution_probability
        dissolve = rng.random(len(edges)) < q
        dissolved = edges[dissolve]

        space = DyadSpace(view.vertex_array(), view.group_array(), self.bipartite)
        occupied = np.unique(space.index(edges))
        n_free = space.size - len(occupied)
        p_form = self.formation_probability(
            len(space.ids), len(edges) * (1.0 - q), n_free,
        )
        # Independent per-dyad draws over the free dyads, counted then placed
        n_form = int(rng.binomial(n_free, p_form)) if n_free > 0 else 0
        formed = space.sample_free(n_form, rng, occupied)
        return formed, dissolved


def as_dynamics(obj) -> NetworkDynamics:
    """Accept a NetworkDynamics, any object with propose(), or a callable."""
    if isinstance(obj, NetworkDynamics):
        return obj
    if hasattr(obj, 'propose') and callable(obj.propose):
        return obj
    if callable(obj):
        return CallableDynamics(obj)
    raise ParameterError(
        f"Network dynamics must provide propose(view, rng) or be callable, got {obj!r}"
    )


def build_dynamics(
    network_cfg: 'NetworkSection',
    variant: 'ModelVariant',
    dt: float = 1.0,
) -> NetworkDynamics:
    """Dynamics policy selected by the network configuration."""
    if not network_cfg.resimulate or network_cfg.duration is None:
        return StaticDynamics()
    return EdgesDissolutionDynamics(
        mean_degree=network_cfg.mean_degree,
        duration=network_cfg.duration,
        dt=dt,
        bipartite=variant.bipartite,
    )


# ═══════════════════════════════════════════════════════════════════════
# INITIAL NETWORK
# ═══════════════════════════════════════════════════════════════════════

def check_initial_graph(graph: nx.Graph, n_vertices: int) -> None:
    """An initial graph must be undirected, loop-free, with nodes 0..N-1.

    Raises:
        ParameterError: Otherwise.
    """
    if graph.is_directed():
        raise ParameterError("Initial network must be undirected")
    nodes = set(graph.nodes())
    if nodes != set(range(n_vertices)):
        raise ParameterError(
            f"Initial network must have exactly the nodes 0..{n_vertices - 1} "
            f"(one per initial individual); got {len(nodes)} nodes"
        )
    if nx.number_of_selfloops(graph) > 0:
        raise ParameterError("Initial network must not contain self-loops")


def read_edgelist(path, n_vertices: int) -> nx.Graph:
    """Initial graph from a whitespace-separated edge list.

    Individuals without any edge need not appear in the file.
    """
    graph = nx.Graph()
    graph.add_nodes_from(range(n_vertices))
    try:
        graph.add_edges_from(nx.read_edgelist(path, nodetype=int, data=False).edges())
    except (TypeError, ValueError) as exc:
        raise ParameterError(f"Cannot read edge list {path}: {exc}") from exc
    return graph


def initialize_network(
    groups: np.ndarray,
    mean_degree: float,
    rng: np.random.Generator,
    bipartite: bool = False,
    step: int = 1,
    track_history: bool = True,
) -> ContactNetwork:
    """Default initial formation model: a Bernoulli random graph.

    Each eligible dyad holds an edge independently with probability
    E* / n_dyads, E* = mean_degree · n / 2 (capped at 1).

    Args:
        groups: Group label of individuals 0..N-1.
        mean_degree: Target mean degree.
        rng: The run's init stream.
        bipartite: Only cross-group edges.
        step: Step the network represents.
        track_history: Keep edge spells.
    """
    groups = np.asarray(groups, dtype=np.int8)
    n = len(groups)
    space = DyadSpace(np.arange(n, dtype=np.int64), groups, bipartite)

    network = ContactNetwork(step=step, track_history=track_history)
    for i in range(n):
        network.add_vertex(i, int(groups[i]))
    if space.size == 0:
        return network

    p = min(1.0, mean_degree * n / 2.0 / space.size)
    n_edges = int(rng.binomial(space.size, p))
    for tail, head in space.sample_free(n_edges, rng).tolist():
        network._add_edge(tail, head)
    logger.debug("Initial network: %d vertices, %d edges", n, network.n_edges)
    return network
