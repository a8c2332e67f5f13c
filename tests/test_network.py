"""Tests for netepi.network: contact network store and dynamics policies."""

import networkx as nx
import numpy as np
import pytest

from netepi.config import NetworkSection
from netepi.errors import NetworkConsistencyError, ParameterError
from netepi.network import (
    CallableDynamics,
    ContactNetwork,
    DyadSpace,
    EdgesDissolutionDynamics,
    StaticDynamics,
    as_dynamics,
    build_dynamics,
    initialize_network,
    read_edgelist,
)
from netepi.types import EDGE_SPELL_DTYPE
from netepi.variants import resolve_variant


# ─── Helpers ──────────────────────────────────────────────────────────

def _path_network(n=4, **kwargs):
    """0 - 1 - 2 - ... - (n-1), all group 1."""
    return ContactNetwork.from_graph(nx.path_graph(n), np.ones(n, dtype=np.int8), **kwargs)


class _FixedDynamics:
    def __init__(self, formed=(), dissolved=()):
        self.formed = np.array(formed, dtype=np.int64).reshape(-1, 2)
        self.dissolved = np.array(dissolved, dtype=np.int64).reshape(-1, 2)

    def propose(self, view, rng):
        return self.formed, self.dissolved


RNG = np.random.default_rng(0)


# ── Construction ──────────────────────────────────────────────────────

class TestFromGraph:
    def test_edges_and_vertices(self):
        net = _path_network(4)
        assert net.n_vertices == 4
        assert net.n_edges == 3
        np.testing.assert_array_equal(net.edge_array(), [[0, 1], [1, 2], [2, 3]])
        assert net.step == 1

    def test_node_set_must_match_population(self):
        with pytest.raises(ParameterError, match='0..4'):
            ContactNetwork.from_graph(nx.path_graph(4), np.ones(5, dtype=np.int8))

    def test_self_loops_rejected(self):
        g = nx.path_graph(3)
        g.add_edge(1, 1)
        with pytest.raises(ParameterError, match='self-loops'):
            ContactNetwork.from_graph(g, np.ones(3, dtype=np.int8))

    def test_directed_rejected(self):
        with pytest.raises(ParameterError, match='undirected'):
            ContactNetwork.from_graph(nx.DiGraph([(0, 1)]), np.ones(2, dtype=np.int8))


class TestReadEdgelist:
    def test_isolates_added(self, tmp_path):
        path = tmp_path / "edges.txt"
        path.write_text("0 1\n2 3\n")
        g = read_edgelist(path, 6)
        assert set(g.nodes()) == set(range(6))
        assert g.number_of_edges() == 2


class TestInitializeNetwork:
    def test_target_mean_degree(self):
        net = initialize_network(np.ones(1000, dtype=np.int8), 3.0, np.random.default_rng(1))
        assert net.statistics()['mean_degree'] == pytest.approx(3.0, abs=0.3)

    def test_bipartite_has_only_cross_group_edges(self):
        groups = np.array([1] * 50 + [2] * 50, dtype=np.int8)
        net = initialize_network(groups, 2.0, np.random.default_rng(2), bipartite=True)
        edges = net.edge_array()
        assert len(edges) > 0
        assert np.all(groups[edges[:, 0]] != groups[edges[:, 1]])

    def test_reproducible(self):
        groups = np.ones(100, dtype=np.int8)
        a = initialize_network(groups, 2.0, np.random.default_rng(5)).edge_array()
        b = initialize_network(groups, 2.0, np.random.default_rng(5)).edge_array()
        np.testing.assert_array_equal(a, b)


# ── Queries ───────────────────────────────────────────────────────────

class TestQueries:
    def test_partners_of(self):
        net = _path_network(4)
        assert net.partners_of(1) == {0, 2}
        assert net.view().partners_of(3) == {2}

    def test_partners_of_inactive(self):
        net = _path_network(4)
        net.remove_vertex(2)
        with pytest.raises(NetworkConsistencyError):
            net.partners_of(2)

    def test_statistics(self):
        net = _path_network(4)
        net.add_vertex(4, 1)
        stats = net.statistics()
        assert stats['edges'] == 3
        assert stats['mean_degree'] == pytest.approx(6 / 5)
        assert stats['isolates'] == 1

    def test_frozen_graph(self):
        g = _path_network(3).frozen_graph()
        assert nx.is_frozen(g)
        with pytest.raises(nx.NetworkXError):
            g.add_edge(0, 2)

    def test_edge_array_read_only(self):
        edges = _path_network(3).edge_array()
        with pytest.raises(ValueError):
            edges[0, 0] = 5


# ── Mutations ─────────────────────────────────────────────────────────

class TestVertexChanges:
    def test_remove_vertex_drops_incident_edges(self):
        net = _path_network(4)
        net.remove_vertex(1)
        assert not net.has_vertex(1)
        np.testing.assert_array_equal(net.edge_array(), [[2, 3]])

    def test_add_vertex_without_edges(self):
        net = _path_network(3)
        net.add_vertex(3, 1)
        assert net.partners_of(3) == set()

    def test_vertex_id_reuse_rejected(self):
        net = _path_network(3)
        with pytest.raises(NetworkConsistencyError):
            net.add_vertex(1, 1)

    def test_remove_missing_vertex(self):
        with pytest.raises(NetworkConsistencyError):
            _path_network(3).remove_vertex(7)


class TestAdvanceOneStep:
    def test_applies_dissolutions_and_formations(self):
        net = _path_network(4)
        n_formed, n_dissolved = net.advance_one_step(
            _FixedDynamics(formed=[(3, 0)], dissolved=[(1, 2)]), RNG
        )
        assert (n_formed, n_dissolved) == (1, 1)
        assert net.step == 2
        np.testing.assert_array_equal(net.edge_array(), [[0, 1], [0, 3], [2, 3]])

    def test_static_dynamics_only_advances_step(self):
        net = _path_network(4)
        net.advance_one_step(StaticDynamics(), RNG)
        assert net.step == 2
        assert net.n_edges == 3

    def test_inactive_endpoint_rejected(self):
        net = _path_network(4)
        net.remove_vertex(3)
        with pytest.raises(NetworkConsistencyError, match='inactive vertex 3'):
            net.advance_one_step(_FixedDynamics(formed=[(0, 3)]), RNG)
        assert net.n_edges == 2
        assert net.step == 1

    def test_missing_edge_dissolution_rejected(self):
        with pytest.raises(NetworkConsistencyError, match='missing edge'):
            _path_network(4).advance_one_step(_FixedDynamics(dissolved=[(0, 3)]), RNG)

    def test_existing_edge_formation_rejected(self):
        with pytest.raises(NetworkConsistencyError):
            _path_network(4).advance_one_step(_FixedDynamics(formed=[(1, 0)]), RNG)

    @pytest.mark.parametrize('formed', [
        np.array([0, 1, 2]),
        np.array([[0.0, 2.0]]),
        np.array([[0, 1, 2]]),
    ])
    def test_malformed_proposal_rejected(self, formed):
        net = _path_network(4)
        with pytest.raises(NetworkConsistencyError, match='valid proposal') as info:
            net.advance_one_step(CallableDynamics(lambda view, rng: (formed, ())), RNG)
        assert isinstance(info.value.__cause__, ValueError)
        assert net.step == 1
        assert net.n_edges == 3

    def test_dynamics_raising_becomes_network_error(self):
        def broken(view, rng):
            raise KeyError('partner table')

        with pytest.raises(NetworkConsistencyError, match='KeyError'):
            _path_network(4).advance_one_step(CallableDynamics(broken), RNG)

    def test_wrong_return_arity_rejected(self):
        with pytest.raises(NetworkConsistencyError):
            _path_network(4).advance_one_step(
                CallableDynamics(lambda view, rng: np.empty((0, 2))), RNG
            )


class TestConsistency:
    def test_matching_active_set(self):
        _path_network(4).check_consistency(np.array([3, 2, 1, 0]))

    def test_vertex_of_departed_individual(self):
        net = _path_network(4)
        with pytest.raises(NetworkConsistencyError, match='1 inactive'):
            net.check_consistency(np.array([0, 1, 2]))

    def test_missing_active_individual(self):
        with pytest.raises(NetworkConsistencyError, match='missing'):
            _path_network(3).check_consistency(np.array([0, 1, 2, 3]))


# ── History ───────────────────────────────────────────────────────────

class TestEdgeSpells:
    def test_spells_open_and_closed(self):
        net = _path_network(3)
        net.advance_one_step(_FixedDynamics(dissolved=[(0, 1)]), RNG)     # step 1 -> 2
        net.advance_one_step(_FixedDynamics(formed=[(0, 2)]), RNG)        # step 2 -> 3
        spells = net.edge_spells()
        assert spells.dtype == EDGE_SPELL_DTYPE
        rows = {(int(s['tail']), int(s['head'])): (int(s['onset']), int(s['terminus']))
                for s in spells}
        assert rows == {(0, 1): (1, 2), (1, 2): (1, -1), (0, 2): (3, -1)}

    def test_departure_closes_spells_at_next_step(self):
        net = _path_network(3)
        net.remove_vertex(2)
        spell = [s for s in net.edge_spells() if s['head'] == 2][0]
        assert spell['terminus'] == 2

    def test_partners_at_past_step(self):
        net = _path_network(3)
        net.advance_one_step(_FixedDynamics(dissolved=[(0, 1)]), RNG)
        assert net.partners_of(1) == {2}
        assert net.partners_of(1, at_step=1) == {0, 2}

    def test_future_step_rejected(self):
        with pytest.raises(ValueError):
            _path_network(3).partners_of(0, at_step=5)

    def test_history_disabled(self):
        net = _path_network(3, track_history=False)
        net.advance_one_step(StaticDynamics(), RNG)
        with pytest.raises(ValueError, match='track_history'):
            net.partners_of(0, at_step=1)
        assert len(net.edge_spells()) == 0


# ── Dynamics policies ─────────────────────────────────────────────────

class TestDyadSpace:
    def test_index_covers_every_pair_once(self):
        for n in (2, 5, 6):
            space = DyadSpace(np.arange(n) * 3, np.ones(n, dtype=np.int8))
            pairs = space.pairs(np.arange(space.size))
            assert space.size == n * (n - 1) // 2
            assert len({tuple(p) for p in pairs.tolist()}) == space.size
            assert np.all(pairs[:, 0] < pairs[:, 1])
            np.testing.assert_array_equal(space.index(pairs), np.arange(space.size))

    def test_bipartite(self):
        ids = np.array([0, 1, 2, 3])
        groups = np.array([2, 1, 1, 2], dtype=np.int8)
        space = DyadSpace(ids, groups, bipartite=True)
        pairs = space.pairs(np.arange(space.size))
        assert sorted(map(tuple, pairs.tolist())) == [(0, 1), (0, 2), (1, 3), (2, 3)]
        np.testing.assert_array_equal(space.index(pairs), np.arange(4))

    def test_within_group_pairs_not_indexed_when_bipartite(self):
        space = DyadSpace(np.arange(4), np.array([1, 1, 2, 2], dtype=np.int8), bipartite=True)
        assert len(space.index([[0, 1], [2, 3]])) == 0

    def test_sample_free_avoids_occupied(self):
        space = DyadSpace(np.arange(30), np.ones(30, dtype=np.int8))
        edges = np.array([[0, 1], [2, 9], [5, 29]])
        occupied = np.unique(space.index(edges))
        sample = space.sample_free(100, np.random.default_rng(8), occupied)
        assert sample.shape == (100, 2)
        assert len({tuple(p) for p in sample.tolist()}) == 100
        assert not {tuple(p) for p in sample.tolist()} & {tuple(e) for e in edges.tolist()}

    def test_sample_free_can_take_every_free_dyad(self):
        space = DyadSpace(np.arange(6), np.ones(6, dtype=np.int8))
        occupied = np.unique(space.index([[0, 1], [3, 4]]))
        sample = space.sample_free(13, np.random.default_rng(1), occupied)
        assert len({tuple(p) for p in sample.tolist()}) == 13
        with pytest.raises(ValueError, match='free dyads'):
            space.sample_free(14, np.random.default_rng(1), occupied)

    def test_sample_free_is_uniform(self):
        space = DyadSpace(np.arange(4), np.ones(4, dtype=np.int8))
        occupied = np.unique(space.index([[0, 1]]))
        rng = np.random.default_rng(12)
        hits = np.zeros(space.size)
        for _ in range(2000):
            hits[space.index(space.sample_free(1, rng, occupied))] += 1
        assert hits[occupied[0]] == 0
        free = np.delete(hits, occupied)
        assert np.all(np.abs(free / 2000 - 0.2) < 0.04)


class TestEdgesDissolutionDynamics:
    def test_dissolution_probability(self):
        dyn = EdgesDissolutionDynamics(mean_degree=2, duration=10, dt=1)
        assert dyn.dissolution_probability == pytest.approx(1 - np.exp(-0.1))

    def test_mean_degree_maintained(self):
        rng = np.random.default_rng(11)
        net = initialize_network(np.ones(400, dtype=np.int8), 2.0, rng)
        dyn = EdgesDissolutionDynamics(mean_degree=2.0, duration=5.0)
        degrees = []
        for _ in range(100):
            net.advance_one_step(dyn, rng)
            degrees.append(net.statistics()['mean_degree'])
        assert np.mean(degrees) == pytest.approx(2.0, abs=0.2)

    def test_edges_turn_over(self):
        rng = np.random.default_rng(3)
        net = initialize_network(np.ones(200, dtype=np.int8), 2.0, rng)
        before = {tuple(e) for e in net.edge_array().tolist()}
        dyn = EdgesDissolutionDynamics(mean_degree=2.0, duration=2.0)
        for _ in range(10):
            net.advance_one_step(dyn, rng)
        after = {tuple(e) for e in net.edge_array().tolist()}
        assert len(before & after) < len(before)

    def test_bipartite_formation(self):
        rng = np.random.default_rng(4)
        groups = np.array([1] * 60 + [2] * 60, dtype=np.int8)
        net = initialize_network(groups, 1.5, rng, bipartite=True)
        dyn = EdgesDissolutionDynamics(mean_degree=1.5, duration=3.0, bipartite=True)
        for _ in range(20):
            net.advance_one_step(dyn, rng)
        edges = net.edge_array()
        assert np.all(groups[edges[:, 0]] != groups[edges[:, 1]])

    def test_large_population_step(self):
        rng = np.random.default_rng(21)
        net = initialize_network(np.ones(50_000, dtype=np.int8), 1.0, rng)
        dyn = EdgesDissolutionDynamics(mean_degree=1.0, duration=4.0)
        formed, dissolved = dyn.propose(net.view(), rng)
        assert len(formed) > 0
        assert np.all(formed[:, 0] < formed[:, 1])
        net.advance_one_step(dyn, rng)
        assert net.statistics()['mean_degree'] == pytest.approx(1.0, abs=0.05)

    @pytest.mark.parametrize('kwargs', [
        {'mean_degree': -1, 'duration': 5},
        {'mean_degree': 2, 'duration': 0},
    ])
    def test_invalid_settings(self, kwargs):
        with pytest.raises(ParameterError):
            EdgesDissolutionDynamics(**kwargs)


class TestDynamicsSelection:
    def test_static_when_no_duration(self):
        dyn = build_dynamics(NetworkSection(duration=None), resolve_variant('SI', 1))
        assert isinstance(dyn, StaticDynamics)

    def test_static_when_not_resimulated(self):
        dyn = build_dynamics(NetworkSection(duration=10, resimulate=False),
                             resolve_variant('SI', 1))
        assert isinstance(dyn, StaticDynamics)

    def test_edges_dissolution(self):
        dyn = build_dynamics(NetworkSection(mean_degree=1.5, duration=10),
                             resolve_variant('SIR', 2), dt=0.5)
        assert isinstance(dyn, EdgesDissolutionDynamics)
        assert dyn.bipartite
        assert dyn.dt == 0.5

    def test_as_dynamics(self):
        fixed = _FixedDynamics()
        assert as_dynamics(fixed) is fixed
        wrapped = as_dynamics(lambda view, rng: (np.empty((0, 2)), np.empty((0, 2))))
        assert isinstance(wrapped, CallableDynamics)
        with pytest.raises(ParameterError):
            as_dynamics(42)

    def test_callable_dynamics_applied(self):
        net = _path_network(3)
        net.advance_one_step(as_dynamics(lambda view, rng: ([(0, 2)], [])), RNG)
        assert net.has_edge(0, 2)
