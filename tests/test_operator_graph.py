"""Tests for manifest_opr.graph module."""

import pytest

from conftest import make_manifest
from errors import CycleDetected, PhaseOrderError, UnresolvedReference
from manifest import Phase
from manifest_opr.graph import ManifestGraph


def _names(nodes):
    return [n.name for n in nodes]


class TestGraphConstruction:
    """Tests for edges and validation."""

    def test_reference_creates_edge(self):
        graph = ManifestGraph(make_manifest([
            {'name': 'a', 'kind': 'generic'},
            {'name': 'b', 'kind': 'generic', 'attributes': {'x': '${a.id}'}},
        ]))
        assert graph.dependencies('b') == ['a']
        assert graph.dependents('a') == ['b']
        assert graph.dependencies('a') == []
        assert graph.dependents('b') == []

    def test_unknown_reference(self):
        with pytest.raises(UnresolvedReference) as exc:
            ManifestGraph(make_manifest([
                {'name': 'b', 'kind': 'generic', 'attributes': {'x': '${missing.id}'}},
            ]))
        assert exc.value.source == 'b'
        assert exc.value.target == 'missing'

    def test_unknown_depends_on(self):
        with pytest.raises(UnresolvedReference):
            ManifestGraph(make_manifest([
                {'name': 'b', 'kind': 'generic', 'depends_on': ['ghost']},
            ]))

    def test_cycle_reports_path(self):
        with pytest.raises(CycleDetected) as exc:
            ManifestGraph(make_manifest([
                {'name': 'a', 'kind': 'generic', 'attributes': {'x': '${c.id}'}},
                {'name': 'b', 'kind': 'generic', 'attributes': {'x': '${a.id}'}},
                {'name': 'c', 'kind': 'generic', 'attributes': {'x': '${b.id}'}},
            ]))
        cycle = exc.value.cycle
        assert cycle[0] == cycle[-1]
        assert set(cycle) == {'a', 'b', 'c'}
        assert ' -> ' in str(exc.value)

    def test_self_reference_is_cycle(self):
        with pytest.raises(CycleDetected) as exc:
            ManifestGraph(make_manifest([
                {'name': 'a', 'kind': 'generic', 'attributes': {'x': '${a.id}'}},
            ]))
        assert exc.value.cycle == ['a', 'a']

    def test_setup_may_not_depend_on_consume(self):
        with pytest.raises(PhaseOrderError) as exc:
            ManifestGraph(make_manifest([
                {'name': 'app', 'kind': 'generic', 'phase': 'consume'},
                {'name': 'admin', 'kind': 'generic', 'phase': 'setup', 'attributes': {'x': '${app.id}'}},
            ]))
        assert exc.value.chain == ['admin', 'app']

    def test_consume_may_depend_on_setup(self):
        graph = ManifestGraph(make_manifest([
            {'name': 'admin', 'kind': 'generic', 'phase': 'setup'},
            {'name': 'app', 'kind': 'generic', 'phase': 'consume', 'attributes': {'x': '${admin.id}'}},
        ]))
        assert _names(graph.phase_nodes(Phase.CONSUME)) == ['app']


class TestGraphOrdering:
    """Tests for topological order, levels and depth."""

    @pytest.fixture
    def diamond(self):
        return ManifestGraph(make_manifest([
            {'name': 'left', 'kind': 'generic', 'attributes': {'x': '${root.id}'}},
            {'name': 'join', 'kind': 'generic', 'attributes': {'l': '${left.id}', 'r': '${right.id}'}},
            {'name': 'root', 'kind': 'generic'},
            {'name': 'right', 'kind': 'generic', 'attributes': {'x': '${root.id}'}},
        ]))

    def test_create_order_dependencies_first(self, diamond):
        assert _names(diamond.create_order()) == ['root', 'left', 'right', 'join']

    def test_destroy_order_reversed(self, diamond):
        assert _names(diamond.destroy_order()) == ['join', 'right', 'left', 'root']

    def test_levels(self, diamond):
        assert [_names(level) for level in diamond.levels()] == [['root'], ['left', 'right'], ['join']]
        assert diamond.max_depth == 2

    def test_transitive_queries(self, diamond):
        assert set(diamond.dependencies('join', transitive=True)) == {'left', 'right', 'root'}
        assert set(diamond.dependents('root', transitive=True)) == {'left', 'right', 'join'}

    def test_create_order_subset(self, diamond):
        assert _names(diamond.create_order(['join', 'root'])) == ['root', 'join']

    def test_dependency_chain(self, diamond):
        assert diamond.dependency_chain('join', 'root') == ['join', 'left', 'root']
        assert diamond.dependency_chain('root', 'join') == []

    def test_order_is_stable_across_builds(self, diamond):
        again = ManifestGraph(diamond.manifest)
        assert _names(again.create_order()) == _names(diamond.create_order())

    def test_get_node_unknown(self, diamond):
        with pytest.raises(KeyError):
            diamond.get_node('nope')
        assert 'nope' not in diamond
        assert len(diamond) == 4
