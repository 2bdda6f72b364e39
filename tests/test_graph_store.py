"""
Tests for the shared graph store and its capability views.
"""
import threading

import numpy as np
import pytest

from kg_analytics.errors import ValidationError
from kg_analytics.graph_store import DEFAULT_NODE_SIZE, GraphStore, scoped_writer


class TestStructure:

    def test_node_defaults(self):
        store = GraphStore()
        store.add_node('n1')
        attrs = store.node_attributes('n1')
        assert attrs['label'] == 'n1'
        assert attrs['node_type'] == 'general'
        assert attrs['size'] == DEFAULT_NODE_SIZE
        assert attrs['hidden'] is False

    def test_duplicate_ids_rejected(self):
        store = GraphStore()
        store.add_node('n1')
        store.add_node('n2')
        store.add_edge('e1', 'n1', 'n2')
        with pytest.raises(ValidationError):
            store.add_node('n1')
        with pytest.raises(ValidationError):
            store.add_edge('e1', 'n2', 'n1')

    def test_edge_requires_existing_endpoints(self):
        store = GraphStore()
        store.add_node('n1')
        with pytest.raises(ValidationError, match="unknown node 'missing'"):
            store.add_edge('e1', 'n1', 'missing')
        assert store.size == 0

    def test_parallel_edges_count_in_degree_not_neighbours(self, make_store):
        store = make_store(['a', 'b'], [('a', 'b'), ('a', 'b'), ('b', 'a')])
        assert store.degree('a') == 3
        assert store.neighbors('a') == ['b']
        assert store.successors('b') == ['a']

    def test_drop_node_removes_incident_edges(self, chain):
        chain.drop_node('b')
        assert not chain.has_node('b')
        assert chain.size == 1
        assert [s for _, s, _ in chain.edge_list()] == ['c']
        assert chain.neighbors('a') == []

    def test_unknown_ids_raise(self, chain):
        with pytest.raises(ValidationError):
            chain.neighbors('zzz')
        with pytest.raises(ValidationError):
            chain.set_node_attribute('zzz', 'color', '#ffffff')
        with pytest.raises(ValidationError):
            chain.edge_endpoints('zzz')

    def test_compute_components(self, make_store):
        store = make_store(['a', 'b', 'x', 'y', 'lonely'], [('a', 'b'), ('x', 'y')])
        components = sorted(sorted(c) for c in store.compute_components())
        assert components == [['a', 'b'], ['lonely'], ['x', 'y']]


class TestAdjacency:

    def test_undirected_projection_merges_reciprocal_edges(self, make_store):
        store = make_store(['a', 'b', 'c'], [('a', 'b'), ('b', 'a'), ('b', 'c'), ('c', 'c')])
        matrix, index = store.adjacency()
        dense = matrix.toarray()
        assert index == ['a', 'b', 'c']
        assert np.array_equal(dense, dense.T)
        assert dense[0, 1] == 1.0
        assert dense[2, 2] == 0.0

    def test_weighted_sums_parallel_scores(self, make_store):
        store = make_store(['a', 'b', 'c'], [('a', 'b', 0.25), ('a', 'b', 0.5), ('b', 'c')])
        matrix, _ = store.adjacency(weighted=True)
        dense = matrix.toarray()
        assert dense[0, 1] == pytest.approx(0.75)
        # Missing score counts as 1.0
        assert dense[1, 2] == pytest.approx(1.0)

    def test_weighted_rejects_non_numeric_scores(self, make_store):
        store = make_store(['a', 'b'], [('a', 'b', 'high')])
        with pytest.raises(ValidationError, match="non-numeric"):
            store.adjacency(weighted=True)
        # Unweighted projection ignores the score
        assert store.adjacency()[0].nnz == 2

    def test_directed_keeps_orientation(self, make_store):
        store = make_store(['a', 'b'], [('a', 'b')])
        dense = store.adjacency(directed=True)[0].toarray()
        assert dense[0, 1] == 1.0
        assert dense[1, 0] == 0.0

    def test_exclude_drops_incident_edges(self, chain):
        matrix, _ = chain.adjacency(exclude=['b'])
        assert matrix.nnz == 2  # only c - d, both directions


class TestAttributes:

    def test_set_many_validates_before_writing(self, chain):
        with pytest.raises(ValidationError):
            chain.set_many_node_attributes({'a': {'x': 1.0}, 'missing': {'x': 2.0}})
        assert 'x' not in chain.node_attributes('a')

    def test_bulk_update_counts_changed_nodes(self, chain):
        def hide_a(node_id, attrs):
            attrs['hidden'] = node_id == 'a'
            return attrs

        assert chain.update_each_node_attributes(hide_a) == 1
        assert chain.get_node_attribute('a', 'hidden') is True

    def test_bulk_update_illegal_field_commits_nothing(self, chain):
        def touch(node_id, attrs):
            attrs['color'] = '#000000'
            if node_id == 'd':
                attrs['label'] = 'renamed'
            return attrs

        with pytest.raises(ValidationError):
            chain.update_each_node_attributes(touch, fields=('color',))
        assert all(chain.get_node_attribute(n, 'color') is None for n in chain.nodes())

    def test_transform_returning_none_rejected(self, chain):
        with pytest.raises(ValidationError):
            chain.update_each_node_attributes(lambda node_id, attrs: None)

    def test_disjoint_writers_do_not_clobber(self, chain):
        positions = chain.writer(node_fields=('x', 'y'))
        encoding = chain.writer(node_fields=('size', 'color'))

        def move():
            for step in range(200):
                positions.update_each_node_attributes(lambda n, a: {**a, 'x': float(step), 'y': 0.0})

        def resize():
            for step in range(200):
                encoding.update_each_node_attributes(lambda n, a: {**a, 'size': float(step)})

        threads = [threading.Thread(target=move), threading.Thread(target=resize)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        for node_id in chain.nodes():
            attrs = chain.node_attributes(node_id)
            assert attrs['x'] == 199.0
            assert attrs['size'] == 199.0


class TestProperties:

    def test_namespaced_properties(self, chain):
        chain.set_node_properties('a', {'log2fc': 1.5, 'pvalue': 0.01}, namespace='DEG')
        chain.set_node_properties('b', {'log2fc': -0.5}, namespace='DEG')
        chain.set_node_properties('b', {'tpm': 12.0}, namespace='TE')
        assert chain.property_values('log2fc', 'DEG') == {'a': 1.5, 'b': -0.5}
        assert chain.property_values('tpm') == {'b': 12.0}
        assert chain.node_properties('b') == {'DEG': {'log2fc': -0.5}, 'TE': {'tpm': 12.0}}
        assert set(chain.property_names('DEG')) == {'log2fc', 'pvalue'}


class TestCapabilityViews:

    def test_read_view_hides_mutators(self, chain):
        view = chain.read_view()
        assert view.order == 4
        assert view.neighbors('b') == ['a', 'c']
        with pytest.raises(AttributeError):
            view.set_node_attribute('a', 'color', '#ffffff')
        with pytest.raises(AttributeError):
            view.add_node('e')

    def test_writer_limited_to_its_fields(self, chain):
        writer = chain.writer(node_fields=('color',))
        writer.set_node_attribute('a', 'color', '#123456')
        assert chain.get_node_attribute('a', 'color') == '#123456'
        with pytest.raises(ValidationError):
            writer.set_node_attribute('a', 'size', 10.0)
        with pytest.raises(ValidationError):
            writer.update_each_node_attributes(lambda n, a: {**a, 'hidden': True})
        assert not any(chain.get_node_attribute(n, 'hidden') for n in chain.nodes())

    def test_scoped_writer_rejects_read_view(self, chain):
        with pytest.raises(ValidationError):
            scoped_writer(chain.read_view(), node_fields=('color',))

    def test_node_frame(self, chain):
        chain.set_node_attribute('a', 'color', '#ffffff')
        frame = chain.node_frame(columns=['label', 'color'])
        assert list(frame.index) == ['a', 'b', 'c', 'd']
        assert frame.loc['a', 'color'] == '#ffffff'
